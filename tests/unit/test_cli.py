"""
Unit tests for the command line interface (rika/cli.py).
"""

from unittest.mock import patch

import pytest
from click.testing import CliRunner

from rika.backup.compression import ExecutionError
from rika.cli import cli


@pytest.fixture
def runner():
    """Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def backup_file(tmp_path, wordpress_yaml):
    path = tmp_path / 'backup.yaml'
    path.write_text(wordpress_yaml)
    return path


class TestCheckCommand:
    """Test `rika check`."""

    def test_valid_definition(self, runner, which, backup_file, backups_dir):
        result = runner.invoke(cli, ['--no-log-file', 'check', str(backup_file)])

        assert result.exit_code == 0
        assert "Backup definition 'Site Backup' is valid" in result.output
        # check never creates storage directories
        assert not backups_dir.exists()

    def test_invalid_definition(self, runner, which, tmp_path):
        path = tmp_path / 'backup.yaml'
        path.write_text('version: 2\nbackup:\n  name: Old\n')

        result = runner.invoke(cli, ['--no-log-file', 'check', str(path)])

        assert result.exit_code == 1
        assert 'invalid version' in result.output

    def test_missing_file(self, runner, tmp_path):
        result = runner.invoke(cli, ['--no-log-file', 'check', str(tmp_path / 'missing.yaml')])

        assert result.exit_code == 1
        assert 'reading backup file failed' in result.output


class TestRunCommand:
    """Test `rika run`."""

    def test_dry_run(self, runner, which, backup_file, backups_dir):
        with patch('rika.backup.compression.subprocess.Popen') as mock_popen:
            result = runner.invoke(cli, ['--no-log-file', '--dry-run', 'run', str(backup_file)])

        assert result.exit_code == 0, result.output
        mock_popen.assert_not_called()
        assert 'wordpress-database-' in result.output
        assert 'wordpress-uploads-' in result.output
        assert not backups_dir.exists()

    def test_run_failure(self, runner, which, backup_file):
        with patch('rika.backup.executor.generate_database_artifact') as mock_generate:
            mock_generate.side_effect = ExecutionError("cmd 'mysqldump' exited with status 2")

            result = runner.invoke(cli, ['--no-log-file', 'run', str(backup_file)])

        assert result.exit_code == 1
        assert 'failed running backup' in result.output
        assert 'mysqldump' in result.output

    def test_run_requires_file(self, runner):
        result = runner.invoke(cli, ['--no-log-file', 'run'])

        assert result.exit_code == 2
