"""
Backup definition analysis.

Validates a parsed BackupDefinition in place, fills in defaults and binds the
concrete database engine and storage backend of every provider:

1. Schema version
2. Backup name
3. At least one database or volume
4. Databases (name, format, compression, engine)
5. Volumes (name, path, format, compression)
6. Storage providers (name, backend)

The first error wins. Errors are re-raised with the offending provider's name
prepended and the original error chained as __cause__.
"""

import os
import shlex
import shutil
import logging
from typing import Optional

from rika.config import Config
from rika.models import (
    Backup,
    BackupDefinition,
    CompressionDefinition,
    ConfigurationError,
    DatabaseDefinition,
    LocalStorageDefinition,
    MySQLDefinition,
    PostgreSQLDefinition,
    RunOptions,
    S3StorageDefinition,
    SFTPStorageDefinition,
    StorageDefinition,
    VolumeDefinition,
)
from .compression import validate_name_format
from .databases import MySQLDatabase, PostgreSQLDatabase
from .storage import DEFAULT_S3_REGION, DEFAULT_SFTP_PORT, LocalStorage, S3Storage, SFTPStorage


logger = logging.getLogger(__name__)


class PreconditionError(Exception):
    """Raised when the environment cannot run a valid backup definition."""
    pass


ANALYSIS_ERRORS = (ConfigurationError, PreconditionError)


def _context(error: Exception, message: str) -> Exception:
    """Return an error of the same class with message prepended."""
    return type(error)(f"{message}: {error}")


def find_executable(command: str) -> str:
    """
    Resolve a command to an absolute executable path using PATH.

    Raises:
        PreconditionError: If the command cannot be found
    """
    path = shutil.which(command)
    if not path:
        raise PreconditionError(f"could not find executable '{command}'")
    return os.path.abspath(path)


def default_compression_definition() -> CompressionDefinition:
    return CompressionDefinition(
        command=Config.DEFAULT_COMPRESSION_COMMAND,
        extension=Config.DEFAULT_COMPRESSION_EXTENSION,
    )


def analyze_compression_definition(definition: CompressionDefinition, allow_disabled: bool = False):
    if not definition.command:
        raise ConfigurationError("missing command")

    if definition.disabled:
        if not allow_disabled:
            raise ConfigurationError("compression cannot be disabled for databases")
        definition.extension = ''
        return

    try:
        shlex.split(definition.args)
    except ValueError as e:
        raise ConfigurationError(f"invalid args '{definition.args}': {e}") from e

    if not definition.extension:
        definition.extension = os.path.basename(definition.command)

    definition.command = find_executable(definition.command)


def analyze_mysql_definition(definition: MySQLDefinition):
    if not definition.host:
        raise ConfigurationError("missing host")

    if definition.port == 0:
        raise ConfigurationError("missing port")

    if not definition.user:
        raise ConfigurationError("missing user")

    if not definition.password:
        raise ConfigurationError("missing password")

    # No database name means every database on the server is dumped


def analyze_postgresql_definition(definition: PostgreSQLDefinition):
    if not definition.host:
        raise ConfigurationError("missing host")

    if definition.port == 0:
        raise ConfigurationError("missing port")

    if not definition.user:
        raise ConfigurationError("missing user")

    # Password is optional: pg_dump may authenticate through .pgpass or trust.
    # No database name means the whole cluster is dumped with pg_dumpall.


def bind_database(definition: DatabaseDefinition, database):
    """
    Bind the engine for a database definition.

    Raises:
        ConfigurationError: If an engine is already bound
    """
    if definition.database is not None:
        raise ConfigurationError("cannot define multiple databases")

    definition.database = database


def _analyze_compression(definition, allow_disabled: bool):
    if definition.compression is None:
        definition.compression = default_compression_definition()

    try:
        analyze_compression_definition(definition.compression, allow_disabled=allow_disabled)
    except ANALYSIS_ERRORS as e:
        raise _context(e, "invalid compression definition") from e


def _analyze_format(definition):
    if definition.format:
        validate_name_format(definition.format)


def analyze_database_definition(definition: DatabaseDefinition):
    if not definition.name:
        raise ConfigurationError("database definition is missing name")

    _analyze_format(definition)
    _analyze_compression(definition, allow_disabled=False)

    # Engines are bound from scratch on every analysis
    definition.database = None

    if definition.mysql is not None:
        try:
            analyze_mysql_definition(definition.mysql)
        except ConfigurationError as e:
            raise _context(e, "invalid MySQL definition") from e

        bind_database(definition, MySQLDatabase(definition.mysql))

    if definition.postgres is not None:
        try:
            analyze_postgresql_definition(definition.postgres)
        except ConfigurationError as e:
            raise _context(e, "invalid PostgreSQL definition") from e

        bind_database(definition, PostgreSQLDatabase(definition.postgres))

    if definition.database is None:
        raise ConfigurationError("no database specified")

    if definition.docker is not None and not definition.docker.container:
        raise ConfigurationError("docker definition is missing container")


def analyze_volume_definition(definition: VolumeDefinition):
    if not definition.name:
        raise ConfigurationError("missing name")

    if not definition.path:
        raise ConfigurationError("missing path")

    try:
        os.stat(definition.path)
    except OSError as e:
        raise PreconditionError(f"path {definition.path} is not accessible: {e.strerror}") from e

    _analyze_format(definition)
    _analyze_compression(definition, allow_disabled=True)


def analyze_local_storage_definition(definition: LocalStorageDefinition, options: Optional[RunOptions] = None):
    options = options or RunOptions()

    if not definition.path:
        raise ConfigurationError("missing path")

    if os.path.isdir(definition.path):
        return

    if os.path.exists(definition.path):
        raise PreconditionError(f"local storage path {definition.path} is not a directory")

    if options.dry_run:
        logger.info(f"Would create local storage path {definition.path}")
        return

    try:
        os.makedirs(definition.path, exist_ok=True)
    except OSError as e:
        raise PreconditionError(f"could not create local storage path: {e}") from e


def analyze_sftp_storage_definition(definition: SFTPStorageDefinition):
    if not definition.user:
        raise ConfigurationError("missing user")

    if not definition.host:
        raise ConfigurationError("missing host")

    if not definition.path:
        raise ConfigurationError("missing remote path")

    if definition.port == 0:
        definition.port = DEFAULT_SFTP_PORT


def analyze_s3_storage_definition(definition: S3StorageDefinition):
    if not definition.bucket:
        raise ConfigurationError("missing bucket")

    if bool(definition.access_key) != bool(definition.secret_key):
        raise ConfigurationError("access_key and secret_key must be given together")

    if not definition.region:
        definition.region = DEFAULT_S3_REGION


def analyze_storage_definition(definition: StorageDefinition, options: Optional[RunOptions] = None):
    if not definition.name:
        raise ConfigurationError("missing name")

    definition.storage = None

    # Priority order; the first backend present is bound
    if definition.local is not None:
        try:
            analyze_local_storage_definition(definition.local, options)
        except ANALYSIS_ERRORS as e:
            raise _context(e, "invalid local storage definition") from e

        definition.storage = LocalStorage(definition.local)

    if definition.storage is None and definition.sftp is not None:
        try:
            analyze_sftp_storage_definition(definition.sftp)
        except ConfigurationError as e:
            raise _context(e, "invalid SFTP storage definition") from e

        definition.storage = SFTPStorage(definition.sftp)

    if definition.storage is None and definition.s3 is not None:
        try:
            analyze_s3_storage_definition(definition.s3)
        except ConfigurationError as e:
            raise _context(e, "invalid S3 storage definition") from e

        definition.storage = S3Storage(definition.s3)

    if definition.storage is None:
        raise ConfigurationError("no storage backend specified")

    # A second backend is not rejected, only reported
    ignored = [
        kind for kind, backend in (('local', definition.local), ('sftp', definition.sftp), ('s3', definition.s3))
        if backend is not None and kind != definition.storage.kind
    ]
    if ignored:
        logger.warning(
            f"Storage '{definition.name}' defines several backends; "
            f"using {definition.storage.kind}, ignoring {', '.join(ignored)}"
        )


def analyze_backup_definition(definition: BackupDefinition, options: Optional[RunOptions] = None) -> Backup:
    """
    Validate a backup definition and bind its providers.

    Args:
        definition: Parsed backup definition, modified in place
        options: Run switches; under dry_run no storage directory is created

    Returns:
        The resolved Backup

    Raises:
        ConfigurationError: If the definition is invalid
        PreconditionError: If the environment cannot run the definition
    """
    if definition.version != Config.SCHEMA_VERSION:
        raise ConfigurationError(
            f"invalid version: expected {Config.SCHEMA_VERSION}, got {definition.version}"
        )

    backup = definition.backup
    if not backup.name:
        raise ConfigurationError("backup is missing name")

    providers = backup.data_providers
    if not providers.databases and not providers.volumes:
        raise ConfigurationError(
            "you have neither specified a database or a volume: there is nothing to back up!"
        )

    for database in providers.databases:
        try:
            analyze_database_definition(database)
        except ANALYSIS_ERRORS as e:
            raise _context(e, f"database '{database.name}' has invalid definition") from e

    for volume in providers.volumes:
        try:
            analyze_volume_definition(volume)
        except ANALYSIS_ERRORS as e:
            raise _context(e, f"volume '{volume.name}' has invalid definition") from e

    for storage in backup.storage_providers:
        try:
            analyze_storage_definition(storage, options)
        except ANALYSIS_ERRORS as e:
            raise _context(e, f"storage '{storage.name}' has invalid definition") from e

    logger.debug(f"Backup definition '{backup.name}' is valid")
    return backup
