"""
Storage backends for backup artifacts.

Supports:
- LocalStorage: Copy into a local directory
- SFTPStorage: Copy to a remote host with scp
- S3Storage: Upload to an S3 bucket
"""

import os
import shutil
import logging
import subprocess
from typing import Optional

import boto3
from boto3.exceptions import S3UploadFailedError
from boto3.s3.transfer import TransferConfig
from botocore.exceptions import ClientError, BotoCoreError

from rika.models import (
    LocalStorageDefinition,
    RunOptions,
    S3StorageDefinition,
    SFTPStorageDefinition,
)


logger = logging.getLogger(__name__)

DEFAULT_SFTP_PORT = 22
DEFAULT_S3_REGION = 'us-east-1'

# Files above this size are sent with a multipart upload
MULTIPART_THRESHOLD = 100 * 1024 * 1024  # 100MB
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024  # 10MB


class DistributionError(Exception):
    """Raised when an artifact cannot be stored."""
    pass


class LocalStorage:
    """
    Handler for storing artifacts in a local directory.

    Artifacts keep their file name: {path}/{filename}
    """

    kind = 'local'

    def __init__(self, definition: LocalStorageDefinition):
        self.definition = definition

    def store(self, source_path: str, options: Optional[RunOptions] = None) -> str:
        """
        Copy an artifact into the storage directory.

        Args:
            source_path: Path to the artifact
            options: Run switches; nothing is copied under dry_run

        Returns:
            Destination path

        Raises:
            DistributionError: If the artifact is not a regular file or the copy fails
        """
        options = options or RunOptions()
        dest_path = os.path.join(self.definition.path, os.path.basename(source_path))

        logger.debug(f"Local: copying {source_path} to {dest_path}")

        if options.dry_run:
            return dest_path

        if not os.path.isfile(source_path):
            raise DistributionError(f"{source_path} is not a regular file")

        try:
            shutil.copyfile(source_path, dest_path)
        except PermissionError as e:
            raise DistributionError(f"Permission denied writing to {dest_path}: {e}") from e
        except OSError as e:
            raise DistributionError(f"Failed to store locally: {e}") from e

        return dest_path

    def __repr__(self):
        return f'<LocalStorage {self.definition.path}>'


class SFTPStorage:
    """Handler for copying artifacts to a remote host with scp."""

    kind = 'sftp'

    def __init__(self, definition: SFTPStorageDefinition):
        self.definition = definition

    def destination(self, source_path: str) -> str:
        d = self.definition
        return f"{d.user}@{d.host}:{d.path.rstrip('/')}/{os.path.basename(source_path)}"

    def construct_copy_command(self, source_path: str) -> list:
        d = self.definition
        argv = ['scp']

        if d.port and d.port != DEFAULT_SFTP_PORT:
            argv.extend(['-P', str(d.port)])

        if d.key:
            argv.extend(['-i', d.key])

        argv.extend([source_path, self.destination(source_path)])
        return argv

    def store(self, source_path: str, options: Optional[RunOptions] = None) -> str:
        """
        Copy an artifact to the remote host.

        Returns:
            Remote destination (user@host:path/filename)

        Raises:
            DistributionError: If scp cannot be started or exits non-zero
        """
        options = options or RunOptions()
        argv = self.construct_copy_command(source_path)

        logger.debug(f"SFTP: running {' '.join(argv)}")

        if options.dry_run:
            return self.destination(source_path)

        try:
            result = subprocess.run(
                argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                check=False,
            )
        except OSError as e:
            raise DistributionError(f"Failed to run scp: {e}") from e

        if options.verbose and result.stderr:
            logger.info(result.stderr.decode('utf-8', errors='replace').strip())

        if result.returncode != 0:
            stderr = result.stderr.decode('utf-8', errors='replace').strip()
            raise DistributionError(f"scp exited with status {result.returncode}: {stderr}")

        return self.destination(source_path)

    def __repr__(self):
        return f'<SFTPStorage {self.definition.user}@{self.definition.host}:{self.definition.path}>'


class S3Storage:
    """
    Handler for uploading artifacts to AWS S3 (or an S3 compatible endpoint).

    Artifacts are stored under: {prefix}/{filename}
    """

    kind = 's3'

    def __init__(self, definition: S3StorageDefinition):
        self.definition = definition
        self._client = None

    @property
    def s3_client(self):
        # Created lazily so that analysis never talks to AWS
        if self._client is None:
            d = self.definition
            kwargs = {'region_name': d.region or DEFAULT_S3_REGION}
            if d.access_key and d.secret_key:
                kwargs['aws_access_key_id'] = d.access_key
                kwargs['aws_secret_access_key'] = d.secret_key
            if d.endpoint_url:
                kwargs['endpoint_url'] = d.endpoint_url

            try:
                self._client = boto3.client('s3', **kwargs)
            except (BotoCoreError, ValueError) as e:
                raise DistributionError(f"Failed to initialize S3 client: {e}") from e

        return self._client

    def key_for(self, source_path: str) -> str:
        filename = os.path.basename(source_path)
        prefix = self.definition.prefix.strip('/')
        return f"{prefix}/{filename}" if prefix else filename

    def store(self, source_path: str, options: Optional[RunOptions] = None) -> str:
        """
        Upload an artifact to S3.

        Returns:
            S3 key of the uploaded file

        Raises:
            DistributionError: If the artifact is missing or the upload fails
        """
        options = options or RunOptions()
        s3_key = self.key_for(source_path)

        logger.debug(f"S3: uploading {source_path} to s3://{self.definition.bucket}/{s3_key}")

        if options.dry_run:
            return s3_key

        if not os.path.isfile(source_path):
            raise DistributionError(f"{source_path} is not a regular file")

        try:
            if os.path.getsize(source_path) > MULTIPART_THRESHOLD:
                self._multipart_upload(source_path, s3_key)
            else:
                self._simple_upload(source_path, s3_key)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise DistributionError(f"S3 upload failed ({error_code}): {e}") from e
        except (BotoCoreError, S3UploadFailedError) as e:
            raise DistributionError(f"S3 upload failed: {e}") from e
        except OSError as e:
            raise DistributionError(f"Failed to read {source_path}: {e}") from e

        return s3_key

    def _simple_upload(self, source_path: str, s3_key: str):
        with open(source_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.definition.bucket,
                Key=s3_key,
                Body=f
            )

    def _multipart_upload(self, source_path: str, s3_key: str):
        config = TransferConfig(
            multipart_threshold=MULTIPART_THRESHOLD,
            multipart_chunksize=MULTIPART_CHUNK_SIZE
        )
        self.s3_client.upload_file(source_path, self.definition.bucket, s3_key, Config=config)

    def __repr__(self):
        return f'<S3Storage s3://{self.definition.bucket}/{self.definition.prefix}>'
