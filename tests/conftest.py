"""
Shared pytest fixtures for rika tests.

This module provides fixtures for:
- Executable lookup that does not depend on the host's PATH
- Volume and storage directories
- Backup definitions (YAML text and parsed)
- Mock fixtures for external services (S3)
"""

import logging
import shutil
from unittest.mock import patch

import boto3
import pytest
from moto import mock_aws

from rika.models import parse_backup_from_string


WORDPRESS_DEFINITION = """
version: 1
backup:
  name: Site Backup
  dataProviders:
    databases:
    - name: WordPress Database
      mysql:
        host: localhost
        port: 5432
        user: wordpress
        password: wordpress
      compression:
        type: xz
        args: -9
    volumes:
    - name: WordPress Uploads
      path: {uploads}
      compression:
        type: gz
  storageProviders:
  - name: Test
    local:
      path: {backups}
"""


def fake_which(command):
    """Pretend every command is installed in /usr/bin."""
    if command.startswith('/'):
        return command
    return f'/usr/bin/{command}'


@pytest.fixture
def which():
    """Patch executable lookup used by the analyzer."""
    with patch('rika.backup.analyzer.shutil.which', side_effect=fake_which) as mock_which:
        yield mock_which


@pytest.fixture
def uploads_dir(tmp_path):
    """
    Create a volume directory with a few files.

    Creates:
    - uploads/photo.jpg
    - uploads/2024/document.txt
    """
    uploads = tmp_path / 'uploads'
    uploads.mkdir()
    (uploads / 'photo.jpg').write_bytes(b'\xff\xd8\xff jpeg data')
    nested = uploads / '2024'
    nested.mkdir()
    (nested / 'document.txt').write_text('Nested test content')
    return uploads


@pytest.fixture
def backups_dir(tmp_path):
    """Local storage directory (not created yet)."""
    return tmp_path / 'backups'


@pytest.fixture
def wordpress_yaml(uploads_dir, backups_dir):
    """WordPress backup definition with one database, one volume and local storage."""
    return WORDPRESS_DEFINITION.format(uploads=uploads_dir, backups=backups_dir)


@pytest.fixture
def wordpress_definition(wordpress_yaml):
    """Parsed, not yet analyzed, WordPress backup definition."""
    return parse_backup_from_string(wordpress_yaml)


@pytest.fixture
def gzip_available():
    if shutil.which('gzip') is None:
        pytest.skip('gzip is not installed')


@pytest.fixture
def tar_available():
    if shutil.which('tar') is None:
        pytest.skip('tar is not installed')


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop handlers installed by configure_logging during a test."""
    yield
    logger = logging.getLogger('rika')
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)
