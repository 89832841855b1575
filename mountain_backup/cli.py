"""
Command line entry point: one invocation performs one backup run.

Exit codes:
    0    backup uploaded
    1    configuration error or failed run; also after --help
    128+N  terminated by signal N (staged archive is still removed)
"""

import logging
import signal
import sys
from typing import List, Optional

import click

from mountain_backup import configure_logging
from mountain_backup.backup.executor import BackupExecutor, BackupRunResult
from mountain_backup.config import Config, ConfigError, load_config
from mountain_backup.metrics import MetricsReporter


logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_HELP = 1


def _raise_exit(signum, frame):
    raise SystemExit(128 + signum)


def install_signal_handlers():
    """Turn termination signals into SystemExit so scoped cleanup runs."""
    signal.signal(signal.SIGTERM, _raise_exit)
    signal.signal(signal.SIGINT, _raise_exit)
    if hasattr(signal, 'SIGHUP'):
        signal.signal(signal.SIGHUP, _raise_exit)


def report_metrics(reporter: MetricsReporter, result: Optional[BackupRunResult]):
    success = bool(result and result.success)
    total = result.total_entries if result else 0
    reporter.report(success, total)


def run(config_paths: Optional[List[str]] = None, temp_dir: Optional[str] = None) -> int:
    """
    Load configuration, perform one backup run and report metrics.

    Returns:
        Process exit code
    """
    try:
        config = load_config(config_paths)
    except ConfigError as e:
        logger.critical(f"Error loading configuration: {e}")
        return EXIT_FAILURE

    reporter = MetricsReporter(config.metrics)
    executor = BackupExecutor(config, temp_dir=temp_dir)

    try:
        result = executor.execute()
    finally:
        # Fires on every exit path, including signal-triggered SystemExit
        report_metrics(reporter, executor.result)

    return EXIT_SUCCESS if result.success else EXIT_FAILURE


def _show_help(ctx: click.Context, param: click.Parameter, value: bool):
    if not value or ctx.resilient_parsing:
        return
    click.echo(f"{ctx.info_name} - File backup tool\n")
    click.echo(ctx.get_help())
    ctx.exit(EXIT_HELP)


@click.command(add_help_option=False)
@click.option('--help', '-h', is_flag=True, expose_value=False, is_eager=True,
              callback=_show_help, help='Show help text and exit with status 1')
@click.option('--config', '-c', 'config_paths', multiple=True, metavar='PATH',
              help='Configuration file or glob pattern (repeatable). '
                   'Defaults to ./*.toml and /etc/mountain-backup/*.toml')
@click.option('--temp-dir', default=None, metavar='DIR',
              help='Directory for the staged archive (default: $TEMP_DIR or /var/tmp)')
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
def main(config_paths, temp_dir, verbose):
    """Back up file trees and metrics snapshots to object storage."""
    configure_logging('DEBUG' if verbose else Config.LOG_LEVEL, Config.LOG_DIR)
    install_signal_handlers()
    sys.exit(run(list(config_paths) or None, temp_dir=temp_dir))


if __name__ == '__main__':
    main()
