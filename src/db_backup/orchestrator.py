from __future__ import annotations

import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union
from zoneinfo import ZoneInfo

from .catalog import ArtifactCatalog
from .config import AppConfig, ConfigurationError, load_config
from .dispatcher import BackupDispatcher
from .engine import DatabaseEngine, SqlServerEngine
from .errors import DatabaseBusy, PathCreationFailure
from .models import ArtifactName, ArtifactRecord, BackupKind, BackupRequest, ResolvedLocation
from .naming import format_timestamp, generate_name
from .paths import DirectoryProvisioner, build_provisioner, resolve_location
from .validator import validate_request

LOG = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class DatabaseLocks:
    """One lock per database, shared by backups and restore verification."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def get(self, database: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(database)
            if lock is None:
                lock = self._locks[database] = threading.Lock()
            return lock


class BackupOrchestrator:
    """Entry point shared by manual triggers and the scheduler.

    ``trigger_backup`` runs validation, path resolution, naming and dispatch
    while holding the database lock; ``list_artifacts`` reads the catalog.
    """

    def __init__(
        self,
        config: AppConfig,
        engine: DatabaseEngine,
        *,
        catalog: Optional[ArtifactCatalog] = None,
        provisioner: Optional[DirectoryProvisioner] = None,
        locks: Optional[DatabaseLocks] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._config = config
        self._engine = engine
        self._storage = config.active_storage()
        self._catalog = catalog if catalog is not None else ArtifactCatalog(config.catalog.path)
        self._provisioner = provisioner or build_provisioner(self._storage.provisioning, engine)
        self._locks = locks or DatabaseLocks()
        timezone = ZoneInfo(config.schedule.timezone)
        self._clock = clock or (lambda: datetime.now(timezone))
        self._dispatcher = BackupDispatcher(
            engine,
            self._catalog,
            enforce_prerequisites=config.enforce_prerequisites,
        )

    @property
    def config(self) -> AppConfig:
        return self._config

    @property
    def engine(self) -> DatabaseEngine:
        return self._engine

    @property
    def catalog(self) -> ArtifactCatalog:
        return self._catalog

    @property
    def locks(self) -> DatabaseLocks:
        return self._locks

    def trigger_backup(
        self,
        database: str,
        kind: Union[BackupKind, str],
        custom_path: Optional[str] = None,
        backup_name: Optional[str] = None,
        *,
        wait: bool = True,
    ) -> ArtifactRecord:
        request = BackupRequest(
            database_name=database,
            kind=kind,
            custom_path=custom_path,
            backup_name=backup_name,
        )
        validated = validate_request(request, self._engine)

        lock = self._locks.get(validated.database_name)
        if not lock.acquire(blocking=wait):
            raise DatabaseBusy(validated.database_name)
        try:
            return self._run(validated)
        finally:
            lock.release()

    def list_artifacts(self, database: Optional[str] = None) -> List[ArtifactRecord]:
        return self._catalog.list_records(database)

    def _run(self, request: BackupRequest) -> ArtifactRecord:
        kind = request.backup_kind
        location = resolve_location(request, self._storage.root, self._storage.path_style)
        try:
            self._provisioner.ensure(location.directory)
        except PathCreationFailure as exc:
            exc.database = request.database_name
            exc.kind = kind.value
            raise

        created_at = self._clock()
        name = self._unique_name(request, location, format_timestamp(created_at))
        LOG.debug("Resolved %s backup of %s to %s", kind.value, request.database_name, location.join(name.file_name))
        return self._dispatcher.dispatch(request, location, name, created_at)

    def _unique_name(self, request: BackupRequest, location: ResolvedLocation, timestamp: str) -> ArtifactName:
        sequence = 0
        while True:
            name = generate_name(
                request.database_name,
                request.backup_kind,
                timestamp,
                extension=self._config.naming.extension,
                backup_name=request.backup_name,
                sequence=sequence,
            )
            path = str(location.join(name.file_name))
            if not self._catalog.contains_path(path) and not Path(path).exists():
                return name
            LOG.info("Artifact name %s already taken; adding a sequence suffix", name.file_name)
            sequence += 1


def build_orchestrator(config: AppConfig, engine: Optional[DatabaseEngine] = None) -> BackupOrchestrator:
    if engine is None:
        url = config.engine.resolved_url()
        if not url:
            raise ConfigurationError("Engine connection URL could not be resolved from configuration or environment.")
        engine = SqlServerEngine(url, connect_timeout=config.engine.connect_timeout)
    return BackupOrchestrator(config=config, engine=engine)


def load_orchestrator(config_path: str) -> BackupOrchestrator:
    config = load_config(Path(config_path))
    return build_orchestrator(config)
