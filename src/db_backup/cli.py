from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Optional, Sequence

from .catalog import ArtifactCatalog
from .config import AppConfig, ConfigurationError, load_config
from .errors import BackupError
from .logger import configure_logging
from .notifications import build_notifier
from .orchestrator import BackupOrchestrator, build_orchestrator
from .scheduler import build_schedule, build_scheduler
from .verifier import RecoveryVerifier

DEFAULT_CONFIG_PATH = "/opt/db-backup/config/db-backup.yaml"


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Database backup orchestrator CLI.")
    parser.add_argument(
        "--config",
        default=os.getenv("DB_BACKUP_CONFIG", DEFAULT_CONFIG_PATH),
        help="Path to configuration YAML file.",
    )
    actions = parser.add_mutually_exclusive_group()
    actions.add_argument(
        "--trigger",
        metavar="KIND",
        help="Run one backup of the given kind (FULL, DIFFERENTIAL or LOG) and exit.",
    )
    actions.add_argument(
        "--list-artifacts",
        action="store_true",
        help="List recorded artifacts, newest first, and exit.",
    )
    actions.add_argument(
        "--list-schedule",
        action="store_true",
        help="List the configured backup schedule and exit.",
    )
    actions.add_argument(
        "--verify",
        action="store_true",
        help="Run one restore verification pass and exit.",
    )
    parser.add_argument("--database", help="Database name for --trigger or --list-artifacts.")
    parser.add_argument("--custom-path", help="Write the backup to this directory instead of the folder layout.")
    parser.add_argument("--backup-name", help="Optional label prefixed to the artifact name.")
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL"),
        help="Log level (defaults to the configuration value, INFO otherwise).",
    )
    return parser.parse_args(argv)


def load_configuration(path: Path) -> AppConfig:
    try:
        return load_config(path)
    except ConfigurationError as exc:
        logging.error("Configuration error: %s", exc)
        raise


def trigger(orchestrator: BackupOrchestrator, args: argparse.Namespace) -> int:
    if not args.database:
        logging.error("--trigger requires --database")
        return 2
    try:
        record = orchestrator.trigger_backup(
            args.database,
            args.trigger,
            custom_path=args.custom_path,
            backup_name=args.backup_name,
        )
    except BackupError as exc:
        logging.error("Backup failed: %s", exc.diagnostics())
        return 1
    print(record.path)
    return 0


def list_artifacts(catalog: ArtifactCatalog, database: Optional[str]) -> int:
    for record in catalog.list_records(database):
        size = "-" if record.size_bytes is None else str(record.size_bytes)
        print(
            f"{record.created_at.isoformat()}\t{record.database_name}\t{record.kind.value}\t"
            f"{size}\t{record.description}\t{record.path}"
        )
    return 0


def list_schedule(config: AppConfig) -> int:
    for entry in build_schedule(config):
        print(entry.describe())
    if config.verification.enabled:
        print(f"verification {config.verification.cadence.describe()}")
    return 0


def build_verifier(orchestrator: BackupOrchestrator) -> RecoveryVerifier:
    config = orchestrator.config
    return RecoveryVerifier(
        orchestrator.engine,
        orchestrator.catalog,
        orchestrator.locks,
        config.verification,
        scratch_directory=config.engine.scratch_directory,
        notifier=build_notifier(config.notifications),
    )


def verify(orchestrator: BackupOrchestrator) -> int:
    results = build_verifier(orchestrator).run_once()
    for result in results:
        status = "PASS" if result.passed else "FAIL"
        print(f"{status}\t{result.checked_at.isoformat()}\t{result.record.path}\t{result.detail}")
    return 0 if all(result.passed for result in results) else 1


def run_with_scheduler(orchestrator: BackupOrchestrator) -> int:
    stop_event = threading.Event()

    def _handle_signal(signum: int, _frame: Optional[object]) -> None:
        logging.info("Received signal %s; draining in-flight backups", signum)
        stop_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    config = orchestrator.config
    scheduler = build_scheduler(
        orchestrator,
        verifier=build_verifier(orchestrator) if config.verification.enabled else None,
        notifier=build_notifier(config.notifications),
    )
    if not scheduler.entries:
        logging.warning("No databases configured for scheduled backups")

    scheduler.start()
    while not stop_event.is_set():
        stop_event.wait(60)
    scheduler.stop()
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level or "INFO")

    config_path = Path(args.config).expanduser()
    try:
        config = load_configuration(config_path)
    except ConfigurationError:
        return 2
    if not args.log_level:
        configure_logging(config.logging.level)

    if args.list_schedule:
        return list_schedule(config)
    if args.list_artifacts:
        return list_artifacts(ArtifactCatalog(config.catalog.path), args.database)

    try:
        orchestrator = build_orchestrator(config)
    except ConfigurationError as exc:
        logging.error("Configuration error: %s", exc)
        return 2

    if args.trigger:
        return trigger(orchestrator, args)
    if args.verify:
        return verify(orchestrator)
    return run_with_scheduler(orchestrator)


if __name__ == "__main__":
    sys.exit(main())
