"""
Database engines and their dump commands.

Supports:
- MySQLDatabase: mysqldump, single schema or --all-databases
- PostgreSQLDatabase: pg_dump for one database, pg_dumpall for the cluster

An engine is bound to a DatabaseDefinition by the analyzer. The dump command
can be wrapped to run inside a Docker container with `docker exec`.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from rika.models import DockerDefinition, MySQLDefinition, PostgreSQLDefinition


@dataclass
class DumpCommand:
    """External program and arguments that write a dump to stdout."""
    program: str
    args: List[str] = field(default_factory=list)
    # Extra environment for the dump process
    env: Dict[str, str] = field(default_factory=dict)

    def argv(self) -> List[str]:
        return [self.program] + list(self.args)


class MySQLDatabase:
    """Dumps a MySQL (or MariaDB) server with mysqldump."""

    kind = 'mysql'
    program = 'mysqldump'

    def __init__(self, definition: MySQLDefinition):
        self.definition = definition

    def construct_dump_command(self) -> DumpCommand:
        """
        Build the mysqldump invocation.

        The password is passed as a command line flag and is therefore
        visible in the process list.
        """
        d = self.definition
        args = ['-h', d.host, '-u', d.user, '-P', str(d.port)]

        if d.password:
            args.append(f'--password={d.password}')

        if d.database:
            args.append(d.database)
        else:
            args.append('--all-databases')

        return DumpCommand(program=self.program, args=args)

    def __repr__(self):
        return f'<MySQLDatabase {self.definition.host}:{self.definition.port}>'


class PostgreSQLDatabase:
    """Dumps a PostgreSQL database with pg_dump, or the whole cluster with pg_dumpall."""

    kind = 'postgres'

    def __init__(self, definition: PostgreSQLDefinition):
        self.definition = definition

    def construct_dump_command(self) -> DumpCommand:
        d = self.definition
        args = ['-h', d.host, '-U', d.user, '-p', str(d.port)]

        if d.database:
            program = 'pg_dump'
            args.append(d.database)
        else:
            program = 'pg_dumpall'

        env = {'PGPASSWORD': d.password} if d.password else {}

        return DumpCommand(program=program, args=args, env=env)

    def __repr__(self):
        return f'<PostgreSQLDatabase {self.definition.host}:{self.definition.port}>'


def to_os_command(dump_command: DumpCommand, docker: Optional[DockerDefinition] = None) -> List[str]:
    """
    Turn a dump command into the argv to execute.

    With a Docker binding the dump tool runs inside the named container:
    docker exec -t <container> <program> <args...>
    """
    if docker is None:
        return dump_command.argv()

    argv = ['docker', 'exec', '-t']
    # Forward by name only; the value comes from the docker client's environment
    for key in sorted(dump_command.env):
        argv.extend(['-e', key])
    argv.append(docker.container)
    argv.extend(dump_command.argv())
    return argv
