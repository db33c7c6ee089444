from __future__ import annotations

import hashlib
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, Tuple

from .catalog import ArtifactCatalog
from .engine import SIMPLE_RECOVERY, BackupOutcome, DatabaseEngine
from .errors import (
    EngineBackupFailure,
    EngineError,
    InvalidBackupKind,
    LogBackupUnsupported,
    MissingBaseBackup,
)
from .models import ArtifactName, ArtifactRecord, BackupKind, BackupRequest, ResolvedLocation

LOG = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


class BackupDispatcher:
    """Runs the engine backup matching a validated request and records the artifact."""

    def __init__(
        self,
        engine: DatabaseEngine,
        catalog: ArtifactCatalog,
        *,
        enforce_prerequisites: bool = True,
    ) -> None:
        self._engine = engine
        self._catalog = catalog
        self._enforce_prerequisites = enforce_prerequisites

    def dispatch(
        self,
        request: BackupRequest,
        location: ResolvedLocation,
        name: ArtifactName,
        created_at: datetime,
    ) -> ArtifactRecord:
        kind = BackupKind.parse(request.kind)
        database = request.database_name
        path = str(location.join(name.file_name))

        if kind not in (BackupKind.FULL, BackupKind.DIFFERENTIAL, BackupKind.LOG):
            raise InvalidBackupKind(f"Unsupported backup kind {kind!r}", database=database, path=path)
        if self._enforce_prerequisites:
            if kind is BackupKind.DIFFERENTIAL:
                self._require_base_backup(database, path, name.description)
            elif kind is BackupKind.LOG:
                self._require_log_support(database, path, name.description)

        try:
            outcome = self._engine.backup(database, kind, path, name.description)
        except EngineError as exc:
            LOG.error("%s backup of %s to %s failed: %s", kind.value, database, path, exc)
            raise EngineBackupFailure(
                f"Engine rejected {kind.value} backup: {exc}",
                database=database,
                kind=kind.value,
                path=path,
                description=name.description,
            ) from exc

        size_bytes, checksum = self._fingerprint(path, outcome)
        record = ArtifactRecord(
            database_name=database,
            kind=kind,
            path=path,
            description=name.description,
            created_at=created_at,
            size_bytes=size_bytes,
            checksum=checksum,
            backup_name=request.backup_name,
        )
        self._catalog.append(record)
        LOG.info("%s backup of %s written to %s", kind.value, database, path)
        return record

    def _require_base_backup(self, database: str, path: str, description: str) -> None:
        if self._catalog.latest(database, BackupKind.FULL) is None:
            raise MissingBaseBackup(
                f"No FULL backup recorded for '{database}'; a differential needs a base backup",
                database=database,
                kind=BackupKind.DIFFERENTIAL.value,
                path=path,
                description=description,
            )

    def _require_log_support(self, database: str, path: str, description: str) -> None:
        try:
            model = self._engine.recovery_model(database)
        except EngineError as exc:
            raise EngineBackupFailure(
                f"Could not read recovery model: {exc}",
                database=database,
                kind=BackupKind.LOG.value,
                path=path,
                description=description,
            ) from exc
        if model.upper() == SIMPLE_RECOVERY:
            raise LogBackupUnsupported(
                f"Database '{database}' uses the SIMPLE recovery model; log backups are not possible",
                database=database,
                kind=BackupKind.LOG.value,
                path=path,
                description=description,
            )

    @staticmethod
    def _fingerprint(path: str, outcome: BackupOutcome) -> Tuple[Optional[int], Optional[str]]:
        local = Path(path)
        if not local.is_file():
            return outcome.size_bytes, None
        try:
            return local.stat().st_size, file_checksum(local)
        except OSError as exc:
            LOG.warning("Could not fingerprint %s: %s", local, exc)
            return outcome.size_bytes, None


def file_checksum(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()
