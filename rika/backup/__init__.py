"""
Backup module for rika.

This module handles the core backup functionality including:
- Definition analysis and provider binding
- Database dump commands (MySQL, PostgreSQL, Docker)
- Artifact generation (dump/tar piped through compression)
- Storage (local, SFTP and S3)
- Run orchestration
"""

from .analyzer import analyze_backup_definition, PreconditionError
from .compression import generate_database_artifact, generate_volume_artifact, ExecutionError
from .databases import MySQLDatabase, PostgreSQLDatabase, DumpCommand
from .executor import BackupRunner, RunState, execute_backup_file
from .storage import LocalStorage, SFTPStorage, S3Storage, DistributionError

__all__ = [
    'analyze_backup_definition',
    'PreconditionError',
    'generate_database_artifact',
    'generate_volume_artifact',
    'ExecutionError',
    'MySQLDatabase',
    'PostgreSQLDatabase',
    'DumpCommand',
    'BackupRunner',
    'RunState',
    'execute_backup_file',
    'LocalStorage',
    'SFTPStorage',
    'S3Storage',
    'DistributionError'
]
