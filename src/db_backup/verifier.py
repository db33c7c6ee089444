from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from .catalog import ArtifactCatalog
from .config import VerificationConfig
from .dispatcher import file_checksum
from .engine import DatabaseEngine
from .errors import EngineError, VerificationFailure
from .models import ArtifactRecord, BackupKind, VerificationResult
from .notifications import LogNotifier, Notifier
from .orchestrator import DatabaseLocks
from .paths import path_flavour

LOG = logging.getLogger(__name__)


class RecoveryVerifier:
    """Restores sampled artifacts into a scratch database and checks them.

    The original artifact is only ever read. Scratch databases are dropped
    whether or not the restore succeeded.
    """

    def __init__(
        self,
        engine: DatabaseEngine,
        catalog: ArtifactCatalog,
        locks: DatabaseLocks,
        config: VerificationConfig,
        *,
        scratch_directory: Optional[str] = None,
        notifier: Optional[Notifier] = None,
        token_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self._engine = engine
        self._catalog = catalog
        self._locks = locks
        self._config = config
        self._scratch_directory = scratch_directory
        self._notifier = notifier or LogNotifier()
        self._token_factory = token_factory or (lambda: uuid.uuid4().hex[:8])

    def select_samples(self) -> List[ArtifactRecord]:
        taken: Dict[Tuple[str, BackupKind], int] = {}
        samples: List[ArtifactRecord] = []
        for record in self._catalog.list_records():
            if record.kind not in self._config.kinds:
                continue
            key = (record.database_name, record.kind)
            if taken.get(key, 0) >= self._config.sample_size:
                continue
            taken[key] = taken.get(key, 0) + 1
            samples.append(record)
        return samples

    def run_once(self) -> List[VerificationResult]:
        results: List[VerificationResult] = []
        for record in self.select_samples():
            lock = self._locks.get(record.database_name)
            if not lock.acquire(blocking=False):
                LOG.info("Skipping verification of %s: database %s is busy", record.path, record.database_name)
                continue
            try:
                self.verify(record)
            except VerificationFailure as exc:
                LOG.error("Verification failed for %s: %s", record.path, exc.message)
                self._notifier.notify("Backup verification failed", exc.diagnostics())
                results.append(VerificationResult(record=record, passed=False, detail=exc.message))
            else:
                LOG.info("Verified %s backup %s", record.kind.value, record.path)
                results.append(VerificationResult(record=record, passed=True, detail="restored cleanly"))
            finally:
                lock.release()
        return results

    def verify(self, record: ArtifactRecord) -> None:
        self._check_checksum(record)

        if record.kind is BackupKind.LOG:
            try:
                self._engine.verify_only(record.path)
            except EngineError as exc:
                raise self._failure(record, f"log backup failed RESTORE VERIFYONLY: {exc}") from exc
            return

        scratch = f"{self._config.scratch_prefix}{record.database_name}_{self._token_factory()}"
        try:
            if record.kind is BackupKind.DIFFERENTIAL:
                base = self._catalog.latest(record.database_name, BackupKind.FULL, before=record.created_at)
                if base is None:
                    raise self._failure(record, "no FULL backup recorded before this differential")
                self._restore(scratch, base.path, recovery=False)
            self._restore(scratch, record.path, recovery=True)
            self._engine.check_database(scratch)
        except EngineError as exc:
            raise self._failure(record, f"restore into {scratch} failed: {exc}") from exc
        finally:
            self._drop_scratch(scratch)

    def _check_checksum(self, record: ArtifactRecord) -> None:
        if not record.checksum:
            return
        local = Path(record.path)
        if not local.is_file():
            LOG.debug("Artifact %s is not readable from this host; skipping checksum comparison", record.path)
            return
        try:
            actual = file_checksum(local)
        except OSError as exc:
            raise self._failure(record, f"could not read artifact: {exc}") from exc
        if actual != record.checksum:
            raise self._failure(record, f"checksum mismatch (expected {record.checksum}, found {actual})")

    def _restore(self, scratch: str, path: str, *, recovery: bool) -> None:
        directory = self._scratch_directory or self._engine.default_data_directory()
        flavour = path_flavour(directory)
        moves = []
        for backup_file in self._engine.file_list(path):
            original = path_flavour(backup_file.physical_name)(backup_file.physical_name)
            suffix = original.suffix
            target = flavour(directory) / f"{scratch}_{backup_file.logical_name}{suffix}"
            moves.append((backup_file.logical_name, str(target)))
        self._engine.restore(scratch, path, moves=moves, recovery=recovery)

    def _drop_scratch(self, scratch: str) -> None:
        try:
            self._engine.drop_database(scratch)
        except EngineError as exc:
            LOG.warning("Could not drop scratch database %s: %s", scratch, exc)

    @staticmethod
    def _failure(record: ArtifactRecord, reason: str) -> VerificationFailure:
        return VerificationFailure(
            reason,
            database=record.database_name,
            kind=record.kind.value,
            path=record.path,
            description=record.description,
        )
