"""
Artifact generation.

An artifact is one file per data provider and run:

    {name}-{YYYYMMDDHHMMSS}.{sql|tar}[.{ext}]

Databases are dumped and volumes are archived with tar. The producing process
writes to stdout, which is piped into the compression process; the
compressor's stdout is drained into the artifact file:

    source | compressor --stdout [args] > artifact

A volume whose compression is 'none' is written by tar directly.
"""

import os
import re
import shlex
import shutil
import logging
import subprocess
import threading
from collections import deque
from contextlib import ExitStack
from datetime import datetime
from string import Formatter
from typing import Dict, List, Optional

from rika.models import (
    CompressionDefinition,
    ConfigurationError,
    DatabaseDefinition,
    RunOptions,
    VolumeDefinition,
)
from .databases import to_os_command


logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = '%Y%m%d%H%M%S'
NAME_FORMAT_FIELDS = ('name', 'date', 'time')

# Lines of stderr kept per process for error messages
STDERR_TAIL_LINES = 20

_UNSAFE_CHARACTERS = re.compile(r'[^a-z0-9.\-]')
_REPEATED_SEPARATORS = re.compile(r'-{2,}')


class ExecutionError(Exception):
    """Raised when an external process cannot be started or fails."""
    pass


def sanitize_name(name: str) -> str:
    """
    Turn a provider name into a file name token.

    Lower-cases, replaces spaces and underscores with '-', drops everything
    outside [a-z0-9.-] and collapses repeated separators. Applying it to its
    own output returns the same string.
    """
    s = name.lower()
    s = s.replace(' ', '-').replace('_', '-')
    s = _UNSAFE_CHARACTERS.sub('', s)
    s = _REPEATED_SEPARATORS.sub('-', s)
    return s.strip('-.')


def validate_name_format(name_format: str):
    """
    Check a file name template such as 'wp-{date}'.

    Raises:
        ConfigurationError: If the template is malformed or uses unknown fields
    """
    try:
        fields = [f for _, f, _, _ in Formatter().parse(name_format) if f is not None]
    except ValueError as e:
        raise ConfigurationError(f"invalid format '{name_format}': {e}") from e

    for f in fields:
        if f not in NAME_FORMAT_FIELDS:
            raise ConfigurationError(
                f"invalid format '{name_format}': unknown field '{{{f}}}'. "
                f"Valid fields: {list(NAME_FORMAT_FIELDS)}"
            )


def format_name(name: str, name_format: str, moment: datetime) -> str:
    """Expand the provider's file name template, or sanitize its name when there is none."""
    if not name_format:
        return sanitize_name(name)

    expanded = name_format.format(
        name=sanitize_name(name),
        date=moment.strftime('%Y%m%d'),
        time=moment.strftime('%H%M%S'),
    )
    return sanitize_name(expanded)


def construct_artifact_name(
    name: str,
    name_format: str,
    kind: str,
    extension: str,
    moment: datetime
) -> str:
    """
    Build an artifact file name.

    Args:
        name: Data provider name
        name_format: Optional file name template
        kind: 'sql' or 'tar'
        extension: Compression extension, empty when uncompressed
        moment: Run timestamp

    Returns:
        Filename (without path)
    """
    parts = [f"{format_name(name, name_format, moment)}-{moment.strftime(TIMESTAMP_FORMAT)}", kind]
    if extension:
        parts.append(extension)
    return '.'.join(parts)


def compression_argv(compression: CompressionDefinition) -> List[str]:
    """Compressor invocation writing to stdout, plus the user's extra flags."""
    return [compression.command, '--stdout'] + shlex.split(compression.args)


class _Pipe:
    """OS pipe whose ends can be closed once, in any order."""

    def __init__(self):
        self.read_fd, self.write_fd = os.pipe()

    def close_read(self):
        if self.read_fd is not None:
            os.close(self.read_fd)
            self.read_fd = None

    def close_write(self):
        if self.write_fd is not None:
            os.close(self.write_fd)
            self.write_fd = None

    def close(self):
        self.close_read()
        self.close_write()


class _Drain(threading.Thread):
    """Copies the compressor's stdout into the artifact file and flushes it."""

    def __init__(self, source, destination):
        super().__init__(name='rika-drain', daemon=True)
        self.source = source
        self.destination = destination
        self.error = None

    def run(self):
        try:
            shutil.copyfileobj(self.source, self.destination, 1024 * 1024)
            self.destination.flush()
        except (OSError, ValueError) as e:
            self.error = e
            self._discard()

    def _discard(self):
        """Read the compressor's remaining output so it never blocks on a full pipe."""
        try:
            while self.source.read(1024 * 1024):
                pass
        except (OSError, ValueError):
            # The compressor gets EPIPE instead
            self.source.close()


class _StderrReader(threading.Thread):
    """Collects a process's stderr; forwards each line to the log when verbose."""

    def __init__(self, stream, program: str, verbose: bool):
        super().__init__(name=f'rika-stderr-{program}', daemon=True)
        self.stream = stream
        self.program = program
        self.verbose = verbose
        self.lines = deque(maxlen=STDERR_TAIL_LINES)

    def run(self):
        for raw in iter(self.stream.readline, b''):
            line = raw.decode('utf-8', errors='replace').rstrip()
            self.lines.append(line)
            if self.verbose:
                logger.info(f"[{self.program}] {line}")

    def tail(self) -> str:
        return '\n'.join(self.lines)


def _environment(extra: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
    if not extra:
        return None
    env = dict(os.environ)
    env.update(extra)
    return env


def _start(argv: List[str], what: str, **kwargs) -> subprocess.Popen:
    try:
        return subprocess.Popen(argv, stderr=subprocess.PIPE, **kwargs)
    except OSError as e:
        raise ExecutionError(f"failed to run {what} '{argv[0]}': {e}") from e


def _failure(what: str, argv: List[str], code: int, reader: _StderrReader) -> ExecutionError:
    message = f"{what} '{argv[0]}' exited with status {code}"
    tail = reader.tail()
    if tail:
        message = f"{message}: {tail}"
    return ExecutionError(message)


def _remove_partial(path: str):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to remove partial artifact {path}: {e}")


def run_with_compressed_stdout(
    source_argv: List[str],
    compression: CompressionDefinition,
    dest_path: str,
    options: Optional[RunOptions] = None,
    env: Optional[Dict[str, str]] = None
):
    """
    Run source_argv and compress its stdout into dest_path.

    The compressor starts first and reads from a pipe the source writes to.
    Its output is drained into dest_path by a separate thread, which is joined
    (and has flushed) before the compressor's exit status is checked. The
    artifact is only valid once both processes exited with status 0.

    Args:
        source_argv: Producing command (dump or tar)
        compression: Resolved compression definition
        dest_path: Artifact file to create
        options: Run switches; nothing is executed under dry_run
        env: Extra environment for the source process

    Raises:
        ExecutionError: If either process fails to start or exits non-zero
    """
    options = options or RunOptions()
    compress_argv = compression_argv(compression)

    logger.debug(f"Running {shlex.join(source_argv)} | {shlex.join(compress_argv)} > {dest_path}")

    if options.dry_run:
        return

    try:
        with ExitStack() as stack:
            outfile = stack.enter_context(open(dest_path, 'wb'))

            pipe = _Pipe()
            stack.callback(pipe.close)

            compressor = stack.enter_context(
                _start(compress_argv, 'compression cmd', stdin=pipe.read_fd, stdout=subprocess.PIPE)
            )
            pipe.close_read()

            compressor_stderr = _StderrReader(compressor.stderr, os.path.basename(compress_argv[0]), options.verbose)
            compressor_stderr.start()
            stack.callback(compressor_stderr.join)

            drain = _Drain(compressor.stdout, outfile)
            drain.start()
            stack.callback(drain.join)

            # Runs first on unwind: the compressor only sees EOF once every write end is closed
            stack.callback(pipe.close)

            source = stack.enter_context(
                _start(source_argv, 'cmd', stdout=pipe.write_fd, env=_environment(env))
            )
            pipe.close_write()

            source_stderr = _StderrReader(source.stderr, os.path.basename(source_argv[0]), options.verbose)
            source_stderr.start()
            stack.callback(source_stderr.join)

            source_code = source.wait()
            source_stderr.join()

            drain.join()
            compressor_code = compressor.wait()
            compressor_stderr.join()

            # A source killed by a signal (SIGPIPE) lost its reader: blame the compressor
            if source_code < 0 and compressor_code != 0:
                raise _failure('compression cmd', compress_argv, compressor_code, compressor_stderr)
            if source_code != 0:
                raise _failure('cmd', source_argv, source_code, source_stderr)
            if compressor_code != 0:
                raise _failure('compression cmd', compress_argv, compressor_code, compressor_stderr)
            if drain.error is not None:
                raise ExecutionError(f"failed writing {dest_path}: {drain.error}")
    except ExecutionError:
        _remove_partial(dest_path)
        raise
    except OSError as e:
        _remove_partial(dest_path)
        raise ExecutionError(f"failed writing {dest_path}: {e}") from e


def run_command(argv: List[str], dest_path: str, options: Optional[RunOptions] = None):
    """
    Run a command that writes dest_path itself.

    Raises:
        ExecutionError: If the command fails to start or exits non-zero
    """
    options = options or RunOptions()

    logger.debug(f"Running {shlex.join(argv)}")

    if options.dry_run:
        return

    try:
        result = subprocess.run(
            argv,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            check=False,
        )
    except OSError as e:
        raise ExecutionError(f"failed to run cmd '{argv[0]}': {e}") from e

    output = result.stdout.decode('utf-8', errors='replace').strip()
    if options.verbose and output:
        logger.info(output)

    if result.returncode != 0:
        _remove_partial(dest_path)
        tail = '\n'.join(output.splitlines()[-STDERR_TAIL_LINES:])
        message = f"cmd '{argv[0]}' exited with status {result.returncode}"
        raise ExecutionError(f"{message}: {tail}" if tail else message)


def generate_database_artifact(
    definition: DatabaseDefinition,
    dest_dir: str,
    moment: datetime,
    options: Optional[RunOptions] = None
) -> str:
    """
    Dump a database into a compressed artifact.

    Returns:
        Artifact filename (inside dest_dir)
    """
    dump_command = definition.database.construct_dump_command()
    file_name = construct_artifact_name(
        definition.name,
        definition.format,
        'sql',
        definition.compression.extension,
        moment
    )
    argv = to_os_command(dump_command, definition.docker)

    run_with_compressed_stdout(
        argv,
        definition.compression,
        os.path.join(dest_dir, file_name),
        options,
        env=dump_command.env
    )
    return file_name


def generate_volume_artifact(
    definition: VolumeDefinition,
    dest_dir: str,
    moment: datetime,
    options: Optional[RunOptions] = None
) -> str:
    """
    Archive a volume with tar, compressed unless compression is 'none'.

    Returns:
        Artifact filename (inside dest_dir)
    """
    options = options or RunOptions()
    compression = definition.compression
    extension = '' if compression.disabled else compression.extension

    file_name = construct_artifact_name(definition.name, definition.format, 'tar', extension, moment)
    full_path = os.path.join(dest_dir, file_name)
    flags = '-cvf' if options.verbose else '-cf'

    if compression.disabled:
        run_command(['tar', flags, full_path, definition.path], full_path, options)
    else:
        run_with_compressed_stdout(['tar', flags, '-', definition.path], compression, full_path, options)

    return file_name
