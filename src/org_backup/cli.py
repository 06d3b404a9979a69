from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional, Sequence
from zoneinfo import ZoneInfo

from croniter import croniter
from dotenv import load_dotenv

from .config import (
    DEFAULT_CONFIG_PATH,
    BackupConfig,
    ConfigurationError,
    SchedulerConfig,
    describe,
    load_config,
    resolve_credentials,
)
from .exceptions import AuthError, ForgeError
from .github import GitCliSource, GitHubAPI
from .logger import configure_logging
from .orchestrator import BackupOrchestrator
from .storage import S3ObjectStore

EXIT_OK = 0
EXIT_CONFIG_ERROR = 2
EXIT_AUTH_ERROR = 3
EXIT_FORGE_UNAVAILABLE = 4


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Back up every repository of GitHub organisations to S3.")
    parser.add_argument(
        "--config",
        default=os.getenv("ORG_BACKUP_CONFIG", DEFAULT_CONFIG_PATH),
        help="Path to configuration YAML file.",
    )
    parser.add_argument(
        "--env-file",
        default=os.getenv("ORG_BACKUP_ENV_FILE", ".env"),
        help="Dotenv file loaded before the configuration; variables already set win.",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single backup even when a scheduler is configured.",
    )
    parser.add_argument(
        "--show-config",
        action="store_true",
        help="Print the configuration (without secrets) and exit.",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Log level (default INFO).",
    )
    return parser.parse_args(argv)


def load_configuration(path: Path, *, exit_on_error: bool = True) -> BackupConfig:
    try:
        return load_config(path)
    except ConfigurationError as exc:
        if exit_on_error:
            raise SystemExit(f"Configuration error: {exc}") from exc
        raise


def run_backup(config: BackupConfig) -> int:
    try:
        credentials = resolve_credentials(config)
    except ConfigurationError as exc:
        for line in describe(config):
            logging.info(line)
        logging.error("Configuration error: %s", exc)
        return EXIT_CONFIG_ERROR

    orchestrator = BackupOrchestrator(
        config=config,
        forge=GitHubAPI(credentials.username, credentials.password, base_url=config.github.api_url),
        store=S3ObjectStore.from_config(config.storage, credentials),
        source=GitCliSource(credentials.username, credentials.password),
    )

    try:
        report = orchestrator.run()
    except AuthError as exc:
        logging.error("Authentication failed; no organisations were processed: %s", exc)
        return EXIT_AUTH_ERROR
    except ForgeError as exc:
        logging.error("GitHub unavailable; no organisations were processed: %s", exc)
        return EXIT_FORGE_UNAVAILABLE

    for result in report.failed:
        logging.warning("Repository %s missing from backup %s: %s", result.repository, report.created_at, result.error)
    for organization, error in report.organization_errors.items():
        logging.warning("Organisation %s skipped in backup %s: %s", organization, report.created_at, error)
    if report.sweep_error:
        logging.warning("Retention sweep reported errors: %s", report.sweep_error)
    return EXIT_OK


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    env_file = Path(args.env_file).expanduser()
    if load_dotenv(env_file, override=False):
        logging.info("Loaded environment from %s", env_file)

    config_path = Path(args.config).expanduser()
    config = load_configuration(config_path)

    if args.show_config:
        for line in describe(config):
            print(line)
        return EXIT_OK

    if config.scheduler and not args.once:
        return run_with_scheduler(config_path=config_path, initial_config=config)
    return run_backup(config)


def run_with_scheduler(config_path: Path, initial_config: BackupConfig) -> int:
    stop_event = threading.Event()

    def _handle_signal(signum: int, _frame: Optional[object]) -> None:
        logging.info("Received signal %s; stopping scheduler", signum)
        stop_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    config = initial_config
    scheduler = _require_scheduler(config.scheduler)
    timezone = ZoneInfo(scheduler.timezone)
    next_run = datetime.now(timezone) if scheduler.run_on_startup else _next_run(scheduler.cron, datetime.now(timezone))

    if scheduler.run_on_startup:
        logging.info("Executing initial run immediately")
    else:
        logging.info("Next run scheduled for %s", next_run.isoformat())

    while not stop_event.is_set():
        now = datetime.now(timezone)
        if now >= next_run:
            try:
                config = load_configuration(config_path, exit_on_error=False)
            except ConfigurationError as exc:
                logging.error("Failed to reload configuration: %s; continuing with previous settings", exc)
            else:
                if not config.scheduler:
                    logging.info("Scheduler removed from configuration; exiting loop")
                    break
                scheduler = _require_scheduler(config.scheduler)
                timezone = ZoneInfo(scheduler.timezone)

            try:
                exit_code = run_backup(config)
            except Exception:  # noqa: BLE001
                logging.exception("Scheduled run failed; waiting for the next one")
                exit_code = None
            if exit_code not in (EXIT_OK, None):
                logging.warning("Scheduled run aborted (exit code %s)", exit_code)

            next_run = _next_run(scheduler.cron, datetime.now(timezone))
            logging.info("Next run scheduled for %s", next_run.isoformat())
            continue

        sleep_for = max((next_run - now).total_seconds(), 0)
        stop_event.wait(min(sleep_for, 60))

    logging.info("Scheduler stopped")
    return EXIT_OK


def _require_scheduler(scheduler: Optional[SchedulerConfig]) -> SchedulerConfig:
    if not scheduler:
        raise ValueError("Scheduler configuration is required")
    return scheduler


def _next_run(cron_expression: str, reference: datetime) -> datetime:
    return croniter(cron_expression, reference).get_next(datetime)


if __name__ == "__main__":
    sys.exit(main())
