"""Command-line interface for Node Watchdog."""

import logging
import sys
from typing import Optional, Sequence

import click

from . import __version__
from .config import resolve_config
from .exceptions import WatchdogError
from .lock import SingleInstanceGuard
from .watchdog import SupervisorLoop, setup_logging

logger = logging.getLogger("node-watchdog")


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(__version__, package_name="node-watchdog")
@click.option("-s", "--script", "script", type=click.Path(), help="Path to runner script (env SCRIPT)")
@click.option("-l", "--log", "log_file", type=click.Path(), help="Live log file (env TMP_LOG)")
@click.option("-i", "--idle", "idle_seconds", type=int, help="Idle seconds threshold (env MAX_IDLE)")
@click.option(
    "-k", "--keywords", "keywords_file",
    type=click.Path(),
    help="Keywords file, one per line. Built-in list if omitted (env KEYWORDS_FILE)",
)
@click.option(
    "-c", "--case-insensitive", "case_insensitive",
    type=click.Choice(["0", "1"]),
    help="Case-insensitive error matching (env CASE_INSENSITIVE)",
)
@click.option("--backoff-start", type=int, help="Initial backoff in seconds (env BACKOFF_START)")
@click.option("--backoff-max", type=int, help="Max backoff in seconds (env BACKOFF_MAX)")
@click.option("--lock-file", type=click.Path(), help="Single-instance lock file (env WATCHDOG_LOCK_FILE)")
@click.option(
    "--config", "config_path",
    type=click.Path(exists=True),
    help="Optional configuration file (YAML)",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose logging")
@click.pass_context
def main(
    ctx: click.Context,
    script: Optional[str],
    log_file: Optional[str],
    idle_seconds: Optional[int],
    keywords_file: Optional[str],
    case_insensitive: Optional[str],
    backoff_start: Optional[int],
    backoff_max: Optional[int],
    lock_file: Optional[str],
    config_path: Optional[str],
    verbose: bool,
):
    """Node Watchdog - restart a long-running node when it stalls or logs errors.

    Defaults come from the environment and are overridden by flags.
    """
    try:
        config = resolve_config(
            config_path,
            script=script,
            log_file=log_file,
            idle_seconds=idle_seconds,
            keywords_file=keywords_file,
            case_insensitive=case_insensitive,
            backoff_start=backoff_start,
            backoff_max=backoff_max,
            lock_file=lock_file,
            log_level="DEBUG" if verbose else None,
        )
    except (OSError, ValueError) as e:
        click.echo(f"Error loading config: {e}", err=True)
        ctx.exit(1)

    setup_logging(config.log_level, config.watchdog_log)

    errors = config.validate()
    if errors:
        click.echo("Configuration errors:", err=True)
        for error in errors:
            click.echo(f"  - {error}", err=True)
        ctx.exit(1)

    guard = SingleInstanceGuard(config.lock_file)
    try:
        guard.acquire()
    except WatchdogError as e:
        logger.error(f"{e}. Exiting.")
        ctx.exit(1)

    try:
        status = SupervisorLoop(config).run()
    finally:
        guard.release()
    ctx.exit(status)


def run(argv: Optional[Sequence[str]] = None) -> int:
    """Console entry point. Usage errors exit with status 1."""
    try:
        result = main.main(args=list(argv) if argv is not None else None, standalone_mode=False)
    except click.ClickException as e:
        e.show()
        return 1
    except click.Abort:
        click.echo("Aborted!", err=True)
        return 1
    return result or 0


if __name__ == "__main__":
    sys.exit(run())
