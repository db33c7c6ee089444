from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

import pytest

from db_backup.catalog import ArtifactCatalog
from db_backup.config import AppConfig, CatalogConfig, DatabaseConfig, EngineConfig, StorageConfig
from db_backup.engine import BackupFile, BackupOutcome
from db_backup.models import BackupKind
from db_backup.orchestrator import BackupOrchestrator

FIXED_NOW = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeEngine:
    """Scripted stand-in for SqlServerEngine that records every call."""

    def __init__(self, databases: Sequence[str] = ("Sales",), recovery_models: Optional[dict] = None) -> None:
        self.databases = set(databases)
        self.recovery_models = dict(recovery_models or {})
        self.calls: List[Tuple] = []
        self.created_directories: List[str] = []
        self.backups: List[Tuple[str, BackupKind, str, str]] = []
        self.entered: List[str] = []
        self.restores: List[Tuple[str, str, Tuple, bool]] = []
        self.checked: List[str] = []
        self.dropped: List[str] = []
        self.verified: List[str] = []
        self.files = [
            BackupFile("Sales", "C:\\Data\\Sales.mdf", "D"),
            BackupFile("Sales_log", "C:\\Data\\Sales_log.ldf", "L"),
        ]
        self.write_files = False
        self.block: Optional[threading.Event] = None
        self.fail_backup: Optional[Exception] = None
        self.fail_directory: Optional[Exception] = None
        self.fail_restore: Optional[Exception] = None
        self.fail_verify: Optional[Exception] = None

    def database_exists(self, name: str) -> bool:
        self.calls.append(("database_exists", name))
        return name in self.databases

    def recovery_model(self, name: str) -> str:
        self.calls.append(("recovery_model", name))
        return self.recovery_models.get(name, "FULL")

    def create_directory(self, path: str) -> None:
        self.calls.append(("create_directory", path))
        if self.fail_directory:
            raise self.fail_directory
        self.created_directories.append(path)

    def backup(self, database: str, kind: BackupKind, path: str, description: str) -> BackupOutcome:
        self.calls.append(("backup", database, kind, path))
        self.entered.append(database)
        if self.block is not None:
            self.block.wait(5)
        if self.fail_backup:
            raise self.fail_backup
        if self.write_files:
            Path(path).write_bytes(f"{kind.value}:{database}".encode())
        self.backups.append((database, kind, path, description))
        return BackupOutcome(size_bytes=2048)

    def file_list(self, path: str) -> List[BackupFile]:
        self.calls.append(("file_list", path))
        return list(self.files)

    def default_data_directory(self) -> str:
        return "C:\\Data"

    def restore(self, database: str, path: str, *, moves, recovery: bool) -> None:
        self.calls.append(("restore", database, path))
        if self.fail_restore:
            raise self.fail_restore
        self.restores.append((database, path, tuple(moves), recovery))

    def verify_only(self, path: str) -> None:
        self.calls.append(("verify_only", path))
        if self.fail_verify:
            raise self.fail_verify
        self.verified.append(path)

    def check_database(self, name: str) -> None:
        self.checked.append(name)

    def drop_database(self, name: str) -> None:
        self.dropped.append(name)


class RecordingNotifier:
    def __init__(self) -> None:
        self.messages: List[Tuple[str, str]] = []

    def notify(self, subject: str, detail: str) -> None:
        self.messages.append((subject, detail))


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def make_config(
    tmp_path: Path,
    *,
    root: Optional[str] = None,
    provisioning: str = "local",
    databases: Sequence[str] = ("Sales",),
    **overrides,
) -> AppConfig:
    return AppConfig(
        storage={"local": StorageConfig(root=root or str(tmp_path / "backups"), provisioning=provisioning)},
        engine=EngineConfig(url="sqlite://"),
        catalog=CatalogConfig(path=tmp_path / "catalog" / "artifacts.jsonl"),
        databases=[DatabaseConfig(name=name) for name in databases],
        **overrides,
    )


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine(databases=("Sales", "Inventory"))


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def config(tmp_path: Path) -> AppConfig:
    return make_config(tmp_path, databases=("Sales", "Inventory"))


@pytest.fixture
def catalog(tmp_path: Path) -> ArtifactCatalog:
    return ArtifactCatalog(tmp_path / "catalog" / "artifacts.jsonl")


@pytest.fixture
def orchestrator(config: AppConfig, engine: FakeEngine) -> BackupOrchestrator:
    return BackupOrchestrator(config, engine, clock=lambda: FIXED_NOW)


@pytest.fixture(autouse=True)
def _clear_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("DB_BACKUP_ROOT", "DB_BACKUP_ENVIRONMENT", "DB_BACKUP_CONFIG", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
