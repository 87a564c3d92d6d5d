"""Command line interface: rika run FILE, rika check FILE"""
import click

from rika import __version__, configure_logging
from rika.models import ConfigurationError, RunOptions, parse_backup_file
from rika.backup.analyzer import PreconditionError, analyze_backup_definition
from rika.backup.compression import ExecutionError
from rika.backup.executor import BackupRunner
from rika.backup.storage import DistributionError


BACKUP_ERRORS = (ConfigurationError, PreconditionError, ExecutionError, DistributionError)


@click.group()
@click.version_option(__version__, prog_name='rika')
@click.option('--dry-run', is_flag=True, help='Do not touch anything, only log commands.')
@click.option('--verbose', is_flag=True, help='Increase verbosity.')
@click.option('--no-log-file', is_flag=True, help='Log to the console only.')
@click.pass_context
def cli(ctx, dry_run, verbose, no_log_file):
    """Run simple declarative backups."""
    ctx.obj = RunOptions(dry_run=dry_run, verbose=verbose)
    configure_logging(verbose=verbose, log_to_file=not no_log_file)


def _load(path, options):
    try:
        definition = parse_backup_file(path)
        return analyze_backup_definition(definition, options)
    except (ConfigurationError, PreconditionError) as e:
        raise click.ClickException(f"failed analyzing backup '{path}': {e}")


@cli.command()
@click.argument('file', type=click.Path(dir_okay=False))
@click.pass_obj
def run(options, file):
    """Run a backup from a given YAML file."""
    backup = _load(file, options)

    runner = BackupRunner(backup, options)
    try:
        artifacts = runner.run()
    except BACKUP_ERRORS as e:
        raise click.ClickException(f"failed running backup: {e}")

    for artifact in artifacts:
        click.echo(artifact)


@cli.command()
@click.argument('file', type=click.Path(dir_okay=False))
@click.pass_obj
def check(options, file):
    """Validate a backup definition without running it."""
    # Validation never creates storage directories
    options = RunOptions(dry_run=True, verbose=options.verbose)
    backup = _load(file, options)
    click.echo(f"Backup definition '{backup.name}' is valid")


def main():
    cli(prog_name='rika')
