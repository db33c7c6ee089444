from __future__ import annotations

import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from .errors import BackupError
from .models import ArtifactRecord, BackupKind

LOG = logging.getLogger(__name__)


class ArtifactCatalog:
    """Append-only store of artifact records, persisted as JSON lines.

    When ``path`` is ``None`` records only live in memory.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._records: List[ArtifactRecord] = []
        if path is not None and path.exists():
            self._records = list(self._load(path))

    def append(self, record: ArtifactRecord) -> None:
        with self._lock:
            if self._path is not None:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with self._path.open("a", encoding="utf-8") as fh:
                    fh.write(json.dumps(record.to_dict()) + "\n")
            self._records.append(record)

    def list_records(self, database: Optional[str] = None) -> List[ArtifactRecord]:
        """Records for ``database`` (or all), newest first; later appends win ties."""
        with self._lock:
            indexed = [
                (record.created_at, index, record)
                for index, record in enumerate(self._records)
                if database is None or record.database_name == database
            ]
        indexed.sort(key=lambda item: (item[0], item[1]), reverse=True)
        return [record for _, _, record in indexed]

    def latest(
        self,
        database: str,
        kind: BackupKind,
        before: Optional[datetime] = None,
    ) -> Optional[ArtifactRecord]:
        for record in self.list_records(database):
            if record.kind is not kind:
                continue
            if before is not None and record.created_at > before:
                continue
            return record
        return None

    def contains_path(self, path: str) -> bool:
        with self._lock:
            return any(record.path == path for record in self._records)

    @staticmethod
    def _load(path: Path):
        with path.open("r", encoding="utf-8") as fh:
            for line_number, line in enumerate(fh, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    yield ArtifactRecord.from_dict(json.loads(line))
                except (BackupError, KeyError, TypeError, ValueError) as exc:
                    LOG.warning("Skipping unreadable catalog entry %s:%d: %s", path, line_number, exc)
