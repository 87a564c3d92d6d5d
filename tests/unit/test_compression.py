"""
Unit tests for artifact generation (rika/backup/compression.py).

Tests artifact naming, the source | compressor > file pipeline and the
database and volume artifact generators.
"""

import errno
import gzip
import os
import sys
import tarfile
import threading
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest

from rika.models import (
    CompressionDefinition,
    ConfigurationError,
    DatabaseDefinition,
    DockerDefinition,
    MySQLDefinition,
    RunOptions,
    VolumeDefinition,
)
from rika.backup.compression import (
    ExecutionError,
    compression_argv,
    construct_artifact_name,
    format_name,
    generate_database_artifact,
    generate_volume_artifact,
    run_with_compressed_stdout,
    sanitize_name,
    validate_name_format,
)
from rika.backup.databases import MySQLDatabase


MOMENT = datetime(2024, 1, 15, 12, 30, 45)


def python_source(code):
    """Source command running a short Python program."""
    return [sys.executable, '-c', code]


def gzip_compression(args=''):
    return CompressionDefinition(command='gzip', extension='gz', args=args)


class TestSanitizeName:
    """Test file name sanitization."""

    def test_wordpress_database(self):
        assert sanitize_name('WordPress Database') == 'wordpress-database'

    @pytest.mark.parametrize('name', [
        'WordPress Database',
        'My_Site / Uploads!',
        '  leading and trailing  ',
        'a..b--c__d',
        'Ünïcode Nämes',
        'photos: 2024/01',
    ])
    def test_idempotent(self, name):
        once = sanitize_name(name)

        assert sanitize_name(once) == once

    def test_strips_unsafe_characters(self):
        assert sanitize_name('db/../etc:passwd') == 'db..etcpasswd'

    def test_collapses_separators(self):
        assert sanitize_name('My  Site - Uploads') == 'my-site-uploads'


class TestNameFormat:
    """Test file name templates."""

    def test_no_format_sanitizes_name(self):
        assert format_name('WordPress Database', '', MOMENT) == 'wordpress-database'

    def test_date_field(self):
        assert format_name('WordPress Database', 'wp-{date}', MOMENT) == 'wp-20240115'

    def test_all_fields(self):
        assert format_name('Site DB', '{name}_{date}_{time}', MOMENT) == 'site-db-20240115-123045'

    def test_result_is_sanitized(self):
        assert format_name('x', 'My Dump/{name}', MOMENT) == 'my-dumpx'

    def test_validate_unknown_field(self):
        with pytest.raises(ConfigurationError, match='unknown field'):
            validate_name_format('{host}-dump')

    def test_validate_malformed(self):
        with pytest.raises(ConfigurationError, match='invalid format'):
            validate_name_format('wp-{date')

    def test_validate_plain_text(self):
        validate_name_format('wordpress')


class TestConstructArtifactName:
    """Test artifact file names."""

    def test_database_artifact_name(self):
        name = construct_artifact_name('WordPress Database', '', 'sql', 'xz', MOMENT)

        assert name == 'wordpress-database-20240115123045.sql.xz'

    def test_uncompressed_artifact_name(self):
        name = construct_artifact_name('WordPress Uploads', '', 'tar', '', MOMENT)

        assert name == 'wordpress-uploads-20240115123045.tar'

    def test_formatted_artifact_name(self):
        name = construct_artifact_name('WordPress Database', 'wp', 'sql', 'gz', MOMENT)

        assert name == 'wp-20240115123045.sql.gz'


class TestCompressionArgv:
    """Test compressor invocation."""

    def test_stdout_flag(self):
        assert compression_argv(CompressionDefinition(command='/usr/bin/xz')) == ['/usr/bin/xz', '--stdout']

    def test_extra_args(self):
        compression = CompressionDefinition(command='xz', args='-9 --threads=0')

        assert compression_argv(compression) == ['xz', '--stdout', '-9', '--threads=0']

    def test_quoted_args(self):
        compression = CompressionDefinition(command='zstd', args='--patch-from "/srv/old dump.sql"')

        assert compression_argv(compression) == ['zstd', '--stdout', '--patch-from', '/srv/old dump.sql']


@pytest.mark.usefixtures('gzip_available')
class TestRunWithCompressedStdout:
    """Test the source | compressor > file pipeline with real processes."""

    def test_compresses_source_output(self, tmp_path):
        dest = tmp_path / 'out.sql.gz'

        run_with_compressed_stdout(
            python_source("print('CREATE TABLE posts (id INT);')"),
            gzip_compression(),
            str(dest)
        )

        assert gzip.decompress(dest.read_bytes()) == b'CREATE TABLE posts (id INT);\n'

    def test_large_output_is_fully_written(self, tmp_path):
        """Test that more data than a pipe buffer holds is drained completely."""
        dest = tmp_path / 'large.gz'
        code = (
            "import sys\n"
            "for i in range(200000):\n"
            "    sys.stdout.write(f'INSERT INTO t VALUES ({i});\\n')\n"
        )

        run_with_compressed_stdout(python_source(code), gzip_compression('-1'), str(dest))

        lines = gzip.decompress(dest.read_bytes()).decode().splitlines()
        assert len(lines) == 200000
        assert lines[-1] == 'INSERT INTO t VALUES (199999);'

    def test_source_environment(self, tmp_path):
        dest = tmp_path / 'env.gz'

        run_with_compressed_stdout(
            python_source("import os; print(os.environ['PGPASSWORD'])"),
            gzip_compression(),
            str(dest),
            env={'PGPASSWORD': 'secret'}
        )

        assert gzip.decompress(dest.read_bytes()) == b'secret\n'

    def test_source_failure(self, tmp_path):
        """Test that a non-zero source exit fails and removes the partial file."""
        dest = tmp_path / 'fail.gz'

        with pytest.raises(ExecutionError) as exc_info:
            run_with_compressed_stdout(
                python_source("import sys; sys.stderr.write('access denied\\n'); sys.exit(3)"),
                gzip_compression(),
                str(dest)
            )

        assert 'exited with status 3' in str(exc_info.value)
        assert 'access denied' in str(exc_info.value)
        assert not dest.exists()

    def test_source_not_found(self, tmp_path):
        dest = tmp_path / 'missing.gz'

        with pytest.raises(ExecutionError, match='failed to run cmd'):
            run_with_compressed_stdout(['/nonexistent/mysqldump'], gzip_compression(), str(dest))

        assert not dest.exists()

    def test_compressor_not_found(self, tmp_path):
        dest = tmp_path / 'missing.gz'

        with pytest.raises(ExecutionError, match='failed to run compression cmd'):
            run_with_compressed_stdout(
                python_source("print('data')"),
                CompressionDefinition(command='/nonexistent/xz', extension='xz'),
                str(dest)
            )

        assert not dest.exists()

    def test_compressor_failure(self, tmp_path):
        dest = tmp_path / 'fail.gz'

        with pytest.raises(ExecutionError, match='compression cmd'):
            run_with_compressed_stdout(
                python_source('pass'),
                gzip_compression('--no-such-option'),
                str(dest)
            )

        assert not dest.exists()

    def test_compressor_failure_blamed_over_broken_pipe(self, tmp_path):
        """Test that a compressor exiting early is reported instead of the source it cut off."""
        dest = tmp_path / 'fail.gz'
        code = (
            "import signal, sys\n"
            "signal.signal(signal.SIGPIPE, signal.SIG_DFL)\n"
            "while True:\n"
            "    sys.stdout.write('x' * 65536)\n"
            "    sys.stdout.flush()\n"
        )

        with pytest.raises(ExecutionError) as exc_info:
            run_with_compressed_stdout(python_source(code), gzip_compression('--no-such-option'), str(dest))

        assert str(exc_info.value).startswith("compression cmd 'gzip' exited with status 1")
        assert not dest.exists()

    def test_write_failure_does_not_block_pipeline(self, tmp_path):
        """Test that a failing artifact write ends the run with an error while data is still flowing."""
        dest = tmp_path / 'full.gz'
        code = (
            "import os, sys\n"
            "for _ in range(320):\n"
            "    sys.stdout.buffer.write(os.urandom(65536))\n"
        )
        outcome = {}

        def copy_then_fail(source, destination, length=0):
            destination.write(source.read(1024))
            raise OSError(errno.ENOSPC, 'No space left on device')

        def pipeline():
            try:
                run_with_compressed_stdout(python_source(code), gzip_compression('-1'), str(dest))
            except ExecutionError as e:
                outcome['error'] = e

        with patch('rika.backup.compression.shutil.copyfileobj', side_effect=copy_then_fail):
            worker = threading.Thread(target=pipeline, daemon=True)
            worker.start()
            worker.join(timeout=60)

        assert not worker.is_alive()
        assert 'No space left on device' in str(outcome['error'])
        assert not dest.exists()

    def test_verbose_forwards_stderr(self, tmp_path, caplog):
        dest = tmp_path / 'verbose.gz'

        with caplog.at_level('INFO', logger='rika.backup.compression'):
            run_with_compressed_stdout(
                python_source("import sys; sys.stderr.write('dumping table posts\\n'); print('x')"),
                gzip_compression(),
                str(dest),
                RunOptions(verbose=True)
            )

        assert 'dumping table posts' in caplog.text

    def test_stderr_not_logged_without_verbose(self, tmp_path, caplog):
        dest = tmp_path / 'quiet.gz'

        with caplog.at_level('INFO', logger='rika.backup.compression'):
            run_with_compressed_stdout(
                python_source("import sys; sys.stderr.write('dumping table posts\\n')"),
                gzip_compression(),
                str(dest)
            )

        assert 'dumping table posts' not in caplog.text


class TestDryRun:
    """Test that dry runs never spawn processes or create files."""

    @patch('rika.backup.compression.subprocess.Popen')
    def test_pipeline_dry_run(self, mock_popen, tmp_path):
        dest = tmp_path / 'dry.gz'

        run_with_compressed_stdout(
            ['mysqldump', '--all-databases'],
            gzip_compression(),
            str(dest),
            RunOptions(dry_run=True)
        )

        mock_popen.assert_not_called()
        assert not dest.exists()

    @patch('rika.backup.compression.subprocess.run')
    @patch('rika.backup.compression.subprocess.Popen')
    def test_volume_dry_run(self, mock_popen, mock_run, tmp_path, uploads_dir):
        volume = VolumeDefinition(name='Uploads', path=str(uploads_dir),
                                  compression=CompressionDefinition(command='none'))

        name = generate_volume_artifact(volume, str(tmp_path), MOMENT, RunOptions(dry_run=True))

        assert name == 'uploads-20240115123045.tar'
        mock_popen.assert_not_called()
        mock_run.assert_not_called()
        assert not (tmp_path / name).exists()


class TestGenerateDatabaseArtifact:
    """Test database artifact generation."""

    def _definition(self, docker=None):
        definition = DatabaseDefinition(
            name='WordPress Database',
            mysql=MySQLDefinition(host='localhost', port=5432, user='wordpress', password='wordpress'),
            compression=CompressionDefinition(command='/usr/bin/xz', extension='xz', args='-9'),
            docker=docker,
        )
        definition.database = MySQLDatabase(definition.mysql)
        return definition

    @patch('rika.backup.compression.run_with_compressed_stdout')
    def test_generates_named_artifact(self, mock_run, tmp_path):
        definition = self._definition()

        name = generate_database_artifact(definition, str(tmp_path), MOMENT)

        assert name == 'wordpress-database-20240115123045.sql.xz'
        argv, compression, dest = mock_run.call_args[0][:3]
        assert argv[0] == 'mysqldump'
        assert '--all-databases' in argv
        assert compression is definition.compression
        assert dest == os.path.join(str(tmp_path), name)

    @patch('rika.backup.compression.run_with_compressed_stdout')
    def test_docker_wrapped(self, mock_run, tmp_path):
        definition = self._definition(docker=DockerDefinition(container='wp_db'))

        generate_database_artifact(definition, str(tmp_path), MOMENT)

        argv = mock_run.call_args[0][0]
        assert argv[:5] == ['docker', 'exec', '-t', 'wp_db', 'mysqldump']


class TestGenerateVolumeArtifact:
    """Test volume artifact generation."""

    @patch('rika.backup.compression.run_with_compressed_stdout')
    @patch('rika.backup.compression.run_command')
    def test_no_compression_writes_tar_directly(self, mock_command, mock_pipeline, tmp_path, uploads_dir):
        volume = VolumeDefinition(name='WordPress Uploads', path=str(uploads_dir),
                                  compression=CompressionDefinition(command='none'))

        name = generate_volume_artifact(volume, str(tmp_path), MOMENT)

        assert name == 'wordpress-uploads-20240115123045.tar'
        full_path = os.path.join(str(tmp_path), name)
        mock_command.assert_called_once()
        assert mock_command.call_args[0][0] == ['tar', '-cf', full_path, str(uploads_dir)]
        mock_pipeline.assert_not_called()

    @patch('rika.backup.compression.run_with_compressed_stdout')
    def test_compressed_tar_to_stdout(self, mock_pipeline, tmp_path, uploads_dir):
        volume = VolumeDefinition(name='WordPress Uploads', path=str(uploads_dir),
                                  compression=CompressionDefinition(command='/usr/bin/gzip', extension='gz'))

        name = generate_volume_artifact(volume, str(tmp_path), MOMENT, RunOptions(verbose=True))

        assert name == 'wordpress-uploads-20240115123045.tar.gz'
        assert mock_pipeline.call_args[0][0] == ['tar', '-cvf', '-', str(uploads_dir)]

    @pytest.mark.usefixtures('tar_available', 'gzip_available')
    def test_real_compressed_archive(self, tmp_path, uploads_dir):
        volume = VolumeDefinition(name='Uploads', path=str(uploads_dir),
                                  compression=CompressionDefinition(command='gzip', extension='gz'))
        out_dir = tmp_path / 'out'
        out_dir.mkdir()

        name = generate_volume_artifact(volume, str(out_dir), MOMENT)

        with tarfile.open(out_dir / name, 'r:gz') as tar:
            names = tar.getnames()
        assert any(n.endswith('2024/document.txt') for n in names)

    @pytest.mark.usefixtures('tar_available')
    def test_real_uncompressed_archive(self, tmp_path, uploads_dir):
        volume = VolumeDefinition(name='Uploads', path=str(uploads_dir),
                                  compression=CompressionDefinition(command='none'))
        out_dir = tmp_path / 'out'
        out_dir.mkdir()

        name = generate_volume_artifact(volume, str(out_dir), MOMENT)

        with tarfile.open(out_dir / name, 'r:') as tar:
            names = tar.getnames()
        assert any(n.endswith('photo.jpg') for n in names)

    @pytest.mark.usefixtures('tar_available')
    def test_tar_failure(self, tmp_path):
        volume = VolumeDefinition(name='Gone', path=str(tmp_path / 'gone'),
                                  compression=CompressionDefinition(command='none'))

        with pytest.raises(ExecutionError, match="cmd 'tar' exited with status"):
            generate_volume_artifact(volume, str(tmp_path), MOMENT)
