"""
Configuration model for backup definitions.

A backup definition is a YAML document:

    version: 1
    backup:
      name: Site Backup
      dataProviders:
        databases: [...]
        volumes: [...]
      storageProviders: [...]

The classes below mirror that document. They carry no validation logic;
rika.backup.analyzer fills in defaults and binds the `database` and `storage`
capabilities.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml


NO_COMPRESSION = 'none'


class ConfigurationError(Exception):
    """Raised when a backup definition is malformed or incomplete."""
    pass


def _mapping(data: Any, what: str) -> Dict[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{what} must be a mapping, got {type(data).__name__}")
    return data


def _sequence(data: Any, what: str) -> List[Any]:
    if data is None:
        return []
    if not isinstance(data, list):
        raise ConfigurationError(f"{what} must be a list, got {type(data).__name__}")
    return data


def _string(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ''
    return str(value)


def _integer(data: Dict[str, Any], key: str) -> int:
    value = data.get(key)
    if value is None or value == '':
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{key} must be an integer, got {value!r}")


@dataclass
class RunOptions:
    """Operator switches for a single run."""
    dry_run: bool = False
    verbose: bool = False


@dataclass
class CompressionDefinition:
    command: str = ''
    extension: str = ''
    args: str = ''

    @classmethod
    def from_dict(cls, data):
        data = _mapping(data, 'compression')
        # `cmd` is the documented key, `type` is accepted as an alias
        command = _string(data, 'cmd') or _string(data, 'type')
        return cls(
            command=command,
            extension=_string(data, 'ext'),
            args=_string(data, 'args'),
        )

    @property
    def disabled(self) -> bool:
        return self.command == NO_COMPRESSION


@dataclass
class MySQLDefinition:
    host: str = ''
    port: int = 0
    user: str = ''
    password: str = ''
    database: str = ''

    @classmethod
    def from_dict(cls, data):
        data = _mapping(data, 'mysql')
        return cls(
            host=_string(data, 'host'),
            port=_integer(data, 'port'),
            user=_string(data, 'user'),
            password=_string(data, 'password'),
            database=_string(data, 'database'),
        )


@dataclass
class PostgreSQLDefinition:
    host: str = ''
    port: int = 0
    user: str = ''
    password: str = ''
    database: str = ''

    @classmethod
    def from_dict(cls, data):
        data = _mapping(data, 'postgres')
        return cls(
            host=_string(data, 'host'),
            port=_integer(data, 'port'),
            user=_string(data, 'user'),
            password=_string(data, 'password'),
            database=_string(data, 'database'),
        )


@dataclass
class DockerDefinition:
    container: str = ''

    @classmethod
    def from_dict(cls, data):
        data = _mapping(data, 'docker')
        return cls(container=_string(data, 'container'))


@dataclass
class DatabaseDefinition:
    name: str = ''
    format: str = ''
    compression: Optional[CompressionDefinition] = None
    mysql: Optional[MySQLDefinition] = None
    postgres: Optional[PostgreSQLDefinition] = None
    docker: Optional[DockerDefinition] = None

    # Bound by the analyzer (rika.backup.databases.Database)
    database: Any = None

    @classmethod
    def from_dict(cls, data):
        data = _mapping(data, 'database')
        return cls(
            name=_string(data, 'name'),
            format=_string(data, 'format'),
            compression=CompressionDefinition.from_dict(data['compression']) if data.get('compression') is not None else None,
            mysql=MySQLDefinition.from_dict(data['mysql']) if data.get('mysql') is not None else None,
            postgres=PostgreSQLDefinition.from_dict(data['postgres']) if data.get('postgres') is not None else None,
            docker=DockerDefinition.from_dict(data['docker']) if data.get('docker') is not None else None,
        )


@dataclass
class VolumeDefinition:
    name: str = ''
    path: str = ''
    format: str = ''
    compression: Optional[CompressionDefinition] = None

    @classmethod
    def from_dict(cls, data):
        data = _mapping(data, 'volume')
        return cls(
            name=_string(data, 'name'),
            path=_string(data, 'path'),
            format=_string(data, 'format'),
            compression=CompressionDefinition.from_dict(data['compression']) if data.get('compression') is not None else None,
        )


@dataclass
class LocalStorageDefinition:
    path: str = ''

    @classmethod
    def from_dict(cls, data):
        data = _mapping(data, 'local')
        return cls(path=_string(data, 'path'))


@dataclass
class SFTPStorageDefinition:
    user: str = ''
    host: str = ''
    path: str = ''
    port: int = 0
    key: str = ''

    @classmethod
    def from_dict(cls, data):
        data = _mapping(data, 'sftp')
        return cls(
            user=_string(data, 'user'),
            host=_string(data, 'host'),
            path=_string(data, 'path'),
            port=_integer(data, 'port'),
            key=_string(data, 'key'),
        )


@dataclass
class S3StorageDefinition:
    bucket: str = ''
    prefix: str = ''
    region: str = ''
    access_key: str = ''
    secret_key: str = ''
    endpoint_url: str = ''

    @classmethod
    def from_dict(cls, data):
        data = _mapping(data, 's3')
        return cls(
            bucket=_string(data, 'bucket'),
            prefix=_string(data, 'prefix'),
            region=_string(data, 'region'),
            access_key=_string(data, 'access_key'),
            secret_key=_string(data, 'secret_key'),
            endpoint_url=_string(data, 'endpoint_url'),
        )


@dataclass
class StorageDefinition:
    name: str = ''
    local: Optional[LocalStorageDefinition] = None
    sftp: Optional[SFTPStorageDefinition] = None
    s3: Optional[S3StorageDefinition] = None

    # Bound by the analyzer (rika.backup.storage.Storage)
    storage: Any = None

    @classmethod
    def from_dict(cls, data):
        data = _mapping(data, 'storage provider')
        return cls(
            name=_string(data, 'name'),
            local=LocalStorageDefinition.from_dict(data['local']) if data.get('local') is not None else None,
            sftp=SFTPStorageDefinition.from_dict(data['sftp']) if data.get('sftp') is not None else None,
            s3=S3StorageDefinition.from_dict(data['s3']) if data.get('s3') is not None else None,
        )


@dataclass
class DataProviders:
    databases: List[DatabaseDefinition] = field(default_factory=list)
    volumes: List[VolumeDefinition] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data):
        data = _mapping(data, 'dataProviders')
        return cls(
            databases=[DatabaseDefinition.from_dict(d) for d in _sequence(data.get('databases'), 'databases')],
            volumes=[VolumeDefinition.from_dict(v) for v in _sequence(data.get('volumes'), 'volumes')],
        )


@dataclass
class Backup:
    name: str = ''
    data_providers: DataProviders = field(default_factory=DataProviders)
    storage_providers: List[StorageDefinition] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data):
        data = _mapping(data, 'backup')
        return cls(
            name=_string(data, 'name'),
            data_providers=DataProviders.from_dict(data.get('dataProviders')),
            storage_providers=[
                StorageDefinition.from_dict(s)
                for s in _sequence(data.get('storageProviders'), 'storageProviders')
            ],
        )


@dataclass
class BackupDefinition:
    version: int = 0
    backup: Backup = field(default_factory=Backup)

    @classmethod
    def from_dict(cls, data):
        data = _mapping(data, 'backup definition')
        return cls(
            version=_integer(data, 'version'),
            backup=Backup.from_dict(data.get('backup')),
        )


def parse_backup_from_string(text: str) -> BackupDefinition:
    """
    Parse a backup definition from YAML text.

    Raises:
        ConfigurationError: If the text is not valid YAML or has the wrong shape
    """
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"invalid backup file format: {e}") from e

    return BackupDefinition.from_dict(data)


def parse_backup_file(path: str) -> BackupDefinition:
    """
    Read and parse a backup definition file.

    Raises:
        ConfigurationError: If the file cannot be read or parsed
    """
    try:
        with open(path, 'r') as f:
            text = f.read()
    except OSError as e:
        raise ConfigurationError(f"reading backup file failed: {e}") from e

    return parse_backup_from_string(text)
