"""
Command-line interface for directory-sync.

Pushes star model facts and collection summaries from a local specimen table to
a BBMRI-ERIC registry, once or on a cron schedule, and can build the star model
offline into CSV/Excel files.
"""

import logging
import sys
import typing

import click

from .aggregation import create_fact_tables
from .config import SUPPORTED_APIS, SUPPORTED_OUTPUT_FORMATS, SyncConfig
from .file_registry import FileRegistryClient
from .graphql_client import GraphqlRegistryClient
from .job import SyncJob, is_executable, run
from .registry import RegistryClient
from .rest_client import RestRegistryClient
from .source import TabularSource, populate_input_dataset
from .sync import Synchronizer


@click.group()
def main():
    """directory-sync: keep a biobank registry in step with local specimen data."""
    pass


def configure_logging(verbose_logging: bool, log_file_path: typing.Optional[str]) -> None:
    handlers: list[logging.Handler] = []
    if log_file_path:
        handlers.append(logging.FileHandler(log_file_path, mode="a", encoding="utf-8"))
    handlers.append(logging.StreamHandler(sys.stderr))
    logging.basicConfig(
        level=logging.DEBUG if verbose_logging else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
        force=True,
    )


def make_registry(config: SyncConfig) -> RegistryClient:
    # write_to_file wins over the configured API
    if config.write_to_file:
        return FileRegistryClient(config.output_directory, config.output_format)
    client_class = GraphqlRegistryClient if config.api == "graphql" else RestRegistryClient
    return client_class(
        config.directory_url,
        username=config.directory_user_name or None,
        password=config.directory_user_pass or None,
        token=config.directory_user_token or None,
        mock=config.mock,
    )


def _report_issues(notepad, section: str = "sync"):
    # if there were errors, show them
    if notepad.has_errors(include_subsections=True):
        click.echo(f"Errors found in {section}:")
        for err in notepad.errors():
            click.echo(f"- {err}")
    # warnings never stop a pass
    if notepad.has_warnings(include_subsections=True):
        click.echo(f"Warnings found in {section}:")
        for w in notepad.warnings():
            click.echo(f"- {w}")


def logging_options(f):
    f = click.option(
        "--log-file-path",
        type=click.Path(dir_okay=False, writable=True),
        help="Append timestamped logs to this file",
    )(f)
    f = click.option(
        "--verbose-logging",
        is_flag=True,
        help="Emit debug logs",
    )(f)
    return f


def registry_options(f):
    options = [
        click.option("--directory-url", envvar="DS_DIRECTORY_URL", help="Base URL of the registry"),
        click.option("--directory-user-name", envvar="DS_DIRECTORY_USER_NAME", help="Registry login name"),
        click.option("--directory-user-pass", envvar="DS_DIRECTORY_USER_PASS", help="Registry password"),
        click.option("--directory-user-token", envvar="DS_DIRECTORY_USER_TOKEN", help="Registry token, replaces the login"),
        click.option("--api", envvar="DS_API", type=click.Choice(SUPPORTED_APIS), default=None, help="Registry API flavour"),
        click.option("--mock/--no-mock", envvar="DS_MOCK", default=False, help="Skip all registry writes"),
    ]
    for option in reversed(options):
        f = option(f)
    return f


@main.command(name="sync")
@click.option(
    "-s",
    "--source",
    "source_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="CSV file or Excel workbook of specimens",
)
@registry_options
@click.option("--default-collection-id", envvar="DS_DEFAULT_COLLECTION_ID", help="Collection for specimens that name none")
@click.option("--min-donors", envvar="DS_MIN_DONORS", type=int, default=None, help="Suppress groups with fewer donors (default: 10)")
@click.option("--max-facts", envvar="DS_MAX_FACTS", type=int, default=None, help="Cap on the number of facts, negative for none")
@click.option("--allow-star-model/--no-star-model", envvar="DS_ALLOW_STAR_MODEL", default=True, help="Push the star model fact table")
@click.option("--retry-max", envvar="DS_RETRY_MAX", type=int, default=None, help="Passes attempted per run (default: 10)")
@click.option("--retry-interval", envvar="DS_RETRY_INTERVAL", type=int, default=None, help="Seconds between attempts (default: 20)")
@click.option("--timer-cron", envvar="DS_TIMER_CRON", default=None, help="UNIX cron expression; run once if unset")
@click.option("--write-to-file", envvar="DS_WRITE_TO_FILE", is_flag=True, help="Write to files instead of the registry")
@click.option("--output-directory", envvar="DS_OUTPUT_DIRECTORY", type=click.Path(file_okay=False), default=None, help="Target directory for --write-to-file")
@click.option("--output-format", envvar="DS_OUTPUT_FORMAT", type=click.Choice(SUPPORTED_OUTPUT_FORMATS), default=None, help="File format for --write-to-file")
@click.option("--only-login", envvar="DS_ONLY_LOGIN", is_flag=True, help="Check the registry login and stop")
@logging_options
def sync(source_path: str, verbose_logging: bool, log_file_path: typing.Optional[str], **options):
    """
    Synchronize the registry with a specimen table.
    Runs one job (with retries) unless --timer-cron is given, in which case the
    job is repeated on that schedule until interrupted.
    """
    configure_logging(verbose_logging, log_file_path)
    try:
        config = SyncConfig.from_env(**options)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)

    if config.only_login:
        sys.exit(0 if _check_login(config) else 1)
    if not is_executable(config):
        # an unconfigured registry switches the sync off, it is not a failure
        click.echo("Sync is disabled: no registry URL or credentials configured")
        return

    registry = make_registry(config)
    synchronizer = Synchronizer(TabularSource(source_path), registry, config)
    job = SyncJob(config, synchronizer.run_pass)
    succeeded = run(job)

    for step, notepad in synchronizer.step_notepads.items():
        _report_issues(notepad, step.value)
    if not succeeded and not config.timer_cron:
        click.echo("Sync failed", err=True)
        sys.exit(1)


def _check_login(config: SyncConfig) -> bool:
    if not is_executable(config):
        click.echo("Registry credentials are not configured", err=True)
        return False
    if not make_registry(config).login():
        click.echo("Login to the registry failed", err=True)
        return False
    click.echo(f"Logged in to {config.directory_url or 'the registry'}")
    return True


@main.command(name="check-login")
@registry_options
@logging_options
def check_login(verbose_logging: bool, log_file_path: typing.Optional[str], **options):
    """Check that the configured registry credentials work."""
    configure_logging(verbose_logging, log_file_path)
    config = SyncConfig.from_env(**options)
    sys.exit(0 if _check_login(config) else 1)


@main.command(name="aggregate")
@click.option(
    "-s",
    "--source",
    "source_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="CSV file or Excel workbook of specimens",
)
@click.option(
    "-o",
    "--output-dir",
    "output_dir",
    required=True,
    type=click.Path(file_okay=False),
    help="Directory to write the fact table into",
)
@click.option("--default-collection-id", default=None, help="Collection for specimens that name none")
@click.option("--min-donors", type=int, default=10, show_default=True, help="Suppress groups with fewer donors")
@click.option("--max-facts", type=int, default=-1, show_default=True, help="Cap on the number of facts, negative for none")
@click.option("--format", "file_format", type=click.Choice(SUPPORTED_OUTPUT_FORMATS), default="csv", show_default=True)
@logging_options
def aggregate(
    source_path: str,
    output_dir: str,
    default_collection_id: typing.Optional[str],
    min_donors: int,
    max_facts: int,
    file_format: str,
    verbose_logging: bool,
    log_file_path: typing.Optional[str],
):
    """Build the star model fact table offline and write it to a file."""
    configure_logging(verbose_logging, log_file_path)
    source = TabularSource(source_path)
    if not source.init_resources():
        click.echo(f"Error: could not read {source_path}", err=True)
        sys.exit(1)

    dataset = populate_input_dataset(source, default_collection_id, min_donors=min_donors)
    if dataset is None:
        click.echo("Error: no specimens could be read", err=True)
        sys.exit(1)
    fact_table = create_fact_tables(dataset, max_facts)

    registry = FileRegistryClient(output_dir, file_format)
    if not registry.update_star_model(fact_table):
        click.echo("Error: could not write the fact table", err=True)
        sys.exit(1)

    click.echo(f"Read {dataset.row_count} rows in {len(dataset.collection_ids)} collections")
    click.echo(f"Wrote {len(fact_table)} facts to {registry.path_for('DirectoryFactTables')}")


if __name__ == "__main__":
    main()
