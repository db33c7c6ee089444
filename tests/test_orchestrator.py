"""End-to-end tests for TriggerBackup / ListArtifacts."""

from datetime import datetime, timedelta, timezone

import pytest

from db_backup.errors import (
    DatabaseBusy,
    EngineError,
    InvalidBackupKind,
    InvalidDatabase,
    MissingBaseBackup,
    PathCreationFailure,
)
from db_backup.models import BackupKind
from db_backup.orchestrator import BackupOrchestrator, DatabaseLocks

from conftest import FIXED_NOW, FakeEngine, make_config


@pytest.fixture
def windows_orchestrator(tmp_path):
    engine = FakeEngine(databases=("Sales",))
    config = make_config(tmp_path, root="C:\\Backups", provisioning="engine")
    return BackupOrchestrator(config, engine, clock=lambda: FIXED_NOW), engine


def test_scenario_full_backup_default_name(windows_orchestrator):
    orchestrator, engine = windows_orchestrator
    record = orchestrator.trigger_backup("Sales", BackupKind.FULL)

    assert record.path == "C:\\Backups\\Sales\\Full\\Sales_FULL_20240101_120000.bak"
    assert record.description == "Sales_FULL_Backup"
    assert engine.created_directories == ["C:\\Backups\\Sales\\Full"]


def test_scenario_full_backup_with_backup_name(windows_orchestrator):
    orchestrator, _ = windows_orchestrator
    record = orchestrator.trigger_backup("Sales", "Full", backup_name="Nightly")

    assert record.path == "C:\\Backups\\Sales\\Full\\Nightly_Sales_FULL_20240101_120000.bak"
    assert record.description == "Nightly_Sales_FULL_Backup"
    assert record.backup_name == "Nightly"


def test_scenario_unknown_kind(windows_orchestrator):
    orchestrator, engine = windows_orchestrator
    with pytest.raises(InvalidBackupKind):
        orchestrator.trigger_backup("Sales", "SNAPSHOT")
    assert engine.created_directories == []
    assert engine.backups == []
    assert orchestrator.list_artifacts() == []


def test_scenario_missing_database(windows_orchestrator):
    orchestrator, engine = windows_orchestrator
    with pytest.raises(InvalidDatabase):
        orchestrator.trigger_backup("Ghost", BackupKind.FULL)
    assert engine.created_directories == []
    assert orchestrator.list_artifacts() == []


def test_local_layout_is_created(orchestrator, config, tmp_path):
    record = orchestrator.trigger_backup("Sales", BackupKind.FULL)
    assert (tmp_path / "backups" / "Sales" / "Full").is_dir()
    assert record.path == str(tmp_path / "backups" / "Sales" / "Full" / "Sales_FULL_20240101_120000.bak")


def test_custom_path_skips_taxonomy(orchestrator, tmp_path):
    adhoc = tmp_path / "adhoc"
    record = orchestrator.trigger_backup("Sales", BackupKind.FULL, custom_path=str(adhoc))
    assert adhoc.is_dir()
    assert record.path == str(adhoc / "Sales_FULL_20240101_120000.bak")


def test_same_second_requests_get_a_disambiguator(windows_orchestrator):
    orchestrator, engine = windows_orchestrator
    first = orchestrator.trigger_backup("Sales", BackupKind.FULL)
    second = orchestrator.trigger_backup("Sales", BackupKind.FULL)
    third = orchestrator.trigger_backup("Sales", BackupKind.FULL)

    assert first.path.endswith("Sales_FULL_20240101_120000.bak")
    assert second.path.endswith("Sales_FULL_20240101_120000_1.bak")
    assert third.path.endswith("Sales_FULL_20240101_120000_2.bak")
    assert len({backup[2] for backup in engine.backups}) == 3


def test_existing_file_on_disk_is_not_overwritten(orchestrator, tmp_path):
    folder = tmp_path / "backups" / "Sales" / "Full"
    folder.mkdir(parents=True)
    (folder / "Sales_FULL_20240101_120000.bak").write_bytes(b"older")
    record = orchestrator.trigger_backup("Sales", BackupKind.FULL)
    assert record.path.endswith("Sales_FULL_20240101_120000_1.bak")


def test_differential_requires_prior_full(orchestrator, engine):
    with pytest.raises(MissingBaseBackup):
        orchestrator.trigger_backup("Sales", BackupKind.DIFFERENTIAL)
    assert engine.backups == []

    orchestrator.trigger_backup("Sales", BackupKind.FULL)
    record = orchestrator.trigger_backup("Sales", BackupKind.DIFFERENTIAL)
    assert record.path.endswith("Differential/Sales_DIFFERENTIAL_20240101_120000.bak")


def test_path_creation_failure_is_reported_with_request_details(tmp_path):
    engine = FakeEngine(databases=("Sales",))
    engine.fail_directory = EngineError("permission denied")
    config = make_config(tmp_path, root="C:\\Backups", provisioning="engine")
    orchestrator = BackupOrchestrator(config, engine, clock=lambda: FIXED_NOW)

    with pytest.raises(PathCreationFailure) as excinfo:
        orchestrator.trigger_backup("Sales", BackupKind.LOG)
    assert excinfo.value.database == "Sales"
    assert excinfo.value.kind == "LOG"
    assert excinfo.value.path == "C:\\Backups\\Sales\\Log"
    assert engine.backups == []


def test_busy_database_without_waiting(orchestrator):
    lock = orchestrator.locks.get("Sales")
    lock.acquire()
    try:
        with pytest.raises(DatabaseBusy):
            orchestrator.trigger_backup("Sales", BackupKind.FULL, wait=False)
    finally:
        lock.release()
    assert orchestrator.trigger_backup("Sales", BackupKind.FULL, wait=False).kind is BackupKind.FULL


def test_list_artifacts_newest_first(config, engine):
    times = iter([FIXED_NOW + timedelta(hours=offset) for offset in range(3)])
    orchestrator = BackupOrchestrator(config, engine, clock=lambda: next(times))
    orchestrator.trigger_backup("Sales", BackupKind.FULL)
    orchestrator.trigger_backup("Inventory", BackupKind.FULL)
    orchestrator.trigger_backup("Sales", BackupKind.LOG)

    listed = orchestrator.list_artifacts()
    assert [record.created_at.hour for record in listed] == [14, 13, 12]
    assert [record.kind for record in orchestrator.list_artifacts("Sales")] == [BackupKind.LOG, BackupKind.FULL]


def test_catalog_survives_restart(config, engine):
    BackupOrchestrator(config, engine, clock=lambda: FIXED_NOW).trigger_backup("Sales", BackupKind.FULL)
    reopened = BackupOrchestrator(config, engine, clock=lambda: FIXED_NOW)
    records = reopened.list_artifacts("Sales")
    assert len(records) == 1
    assert records[0].created_at == FIXED_NOW


def test_database_locks_are_shared_per_name():
    locks = DatabaseLocks()
    assert locks.get("Sales") is locks.get("Sales")
    assert locks.get("Sales") is not locks.get("Inventory")


def test_default_clock_uses_configured_timezone(config, engine):
    orchestrator = BackupOrchestrator(config, engine)
    record = orchestrator.trigger_backup("Sales", BackupKind.FULL)
    assert record.created_at.tzinfo is not None
    assert abs(record.created_at - datetime.now(timezone.utc)) < timedelta(minutes=1)


def test_database_name_cannot_leave_the_backup_root(tmp_path):
    engine = FakeEngine(databases=("../escape",))
    orchestrator = BackupOrchestrator(make_config(tmp_path), engine, clock=lambda: FIXED_NOW)

    with pytest.raises(InvalidDatabase):
        orchestrator.trigger_backup("../escape", BackupKind.FULL)
    assert engine.backups == []
    assert not (tmp_path / "escape").exists()
    assert orchestrator.list_artifacts() == []
