"""
Backup runner - orchestrates one run of a resolved backup.

Workflow:
1. Create the run's temporary directory
2. Generate database artifacts
3. Generate volume artifacts
4. Store every artifact in every storage provider
5. Remove the temporary directory (also on failure)
"""

import os
import shutil
import logging
import tempfile
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from rika.config import Config
from rika.models import Backup, RunOptions, parse_backup_file
from .analyzer import analyze_backup_definition
from .compression import ExecutionError, generate_database_artifact, generate_volume_artifact
from .storage import DistributionError


logger = logging.getLogger(__name__)


class RunState(Enum):
    PENDING = 'pending'
    GENERATING_DATABASE_ARTIFACTS = 'generating_database_artifacts'
    GENERATING_VOLUME_ARTIFACTS = 'generating_volume_artifacts'
    DISTRIBUTING_ARTIFACTS = 'distributing_artifacts'
    CLEANUP = 'cleanup'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'


class BackupRunner:
    """
    Runs a resolved backup once.

    A runner owns its temporary directory and artifact list; it is not meant
    to be shared or run twice.
    """

    def __init__(
        self,
        backup: Backup,
        options: Optional[RunOptions] = None,
        temp_root: Optional[str] = None,
        keep_temp: Optional[bool] = None
    ):
        """
        Initialize backup runner.

        Args:
            backup: Backup resolved by analyze_backup_definition
            options: Run switches (dry run, verbose)
            temp_root: Parent of the run's temporary directory
            keep_temp: Keep the temporary directory after the run, for debugging
        """
        self.backup = backup
        self.options = options or RunOptions()
        self.temp_root = temp_root or Config.TEMP_DIR
        self.keep_temp = Config.KEEP_TEMP if keep_temp is None else keep_temp
        self.time = datetime.now()
        self.temp_path = None
        self.state = RunState.PENDING
        self.artifacts = []
        self.logs = []

    def get_timestamp_string(self) -> str:
        return self.time.strftime('%Y%m%d%H%M%S')

    def run(self) -> List[str]:
        """
        Execute the backup.

        Returns:
            Names of the generated artifacts, in generation order

        Raises:
            ExecutionError: If an artifact cannot be generated
            DistributionError: If an artifact cannot be stored
        """
        self._log(f"Started backup: {self.backup.name}")

        try:
            self._create_temp_dir()

            self.state = RunState.GENERATING_DATABASE_ARTIFACTS
            self._generate_database_artifacts()

            self.state = RunState.GENERATING_VOLUME_ARTIFACTS
            self._generate_volume_artifacts()

            self.state = RunState.DISTRIBUTING_ARTIFACTS
            self._distribute_artifacts()

            self.state = RunState.CLEANUP
            self._cleanup()
            self.state = RunState.SUCCEEDED

        except Exception as e:
            self.state = RunState.FAILED
            self._log(f"Backup failed: {e}", level=logging.ERROR)
            self._cleanup()
            raise

        self._log(f"Backup has finished: {self.backup.name}")
        return list(self.artifacts)

    def _create_temp_dir(self):
        os.makedirs(self.temp_root, exist_ok=True)
        self.temp_path = tempfile.mkdtemp(prefix=Config.TEMP_PREFIX, dir=self.temp_root)
        self._log(f"Temporary directory: {self.temp_path}", level=logging.DEBUG)

    def _add_artifact(self, artifact_name: str):
        self._log(f"Generated artifact: {artifact_name}", level=logging.DEBUG)
        if artifact_name:
            self.artifacts.append(artifact_name)

    def _generate_database_artifacts(self):
        self._log("Generating database artifacts")

        for database in self.backup.data_providers.databases:
            try:
                artifact_name = generate_database_artifact(database, self.temp_path, self.time, self.options)
            except ExecutionError as e:
                raise ExecutionError(f"failed generating artifact for database '{database.name}': {e}") from e

            self._add_artifact(artifact_name)

    def _generate_volume_artifacts(self):
        self._log("Generating volume artifacts")

        for volume in self.backup.data_providers.volumes:
            try:
                artifact_name = generate_volume_artifact(volume, self.temp_path, self.time, self.options)
            except ExecutionError as e:
                raise ExecutionError(f"failed generating artifact for volume '{volume.name}': {e}") from e

            self._add_artifact(artifact_name)

    def _distribute_artifacts(self):
        for storage in self.backup.storage_providers:
            self._log(f"Storing artifacts in provider: {storage.name}")

            for artifact in self.artifacts:
                artifact_path = os.path.join(self.temp_path, artifact)
                try:
                    destination = storage.storage.store(artifact_path, self.options)
                except DistributionError as e:
                    raise DistributionError(f"storage '{storage.name}' failed storing {artifact}: {e}") from e

                self._log(f"Stored {artifact} in {storage.name}: {destination}", level=logging.DEBUG)

    def _cleanup(self):
        """Remove the temporary directory unless asked to keep it."""
        if not self.temp_path or not os.path.exists(self.temp_path):
            return

        if self.keep_temp:
            self._log(f"Keeping temporary directory: {self.temp_path}")
            return

        try:
            shutil.rmtree(self.temp_path)
            self._log("Cleaned up temporary directory", level=logging.DEBUG)
        except OSError as e:
            self._log(f"Warning: Failed to cleanup temp directory: {e}", level=logging.WARNING)

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp and pass it to the logger.

        Args:
            message: Log message
            level: Logging level
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def execute_backup_file(path: str, options: Optional[RunOptions] = None) -> List[str]:
    """
    Parse, analyze and run a backup definition file.

    Args:
        path: Path to the YAML backup definition
        options: Run switches

    Returns:
        Names of the generated artifacts

    Raises:
        ConfigurationError, PreconditionError: If the definition is invalid
        ExecutionError, DistributionError: If the run fails
    """
    definition = parse_backup_file(path)
    backup = analyze_backup_definition(definition, options)

    runner = BackupRunner(backup, options)
    return runner.run()
