from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import PurePath
from typing import Any, Dict, Optional, Union

from .errors import InvalidBackupKind


class BackupKind(str, Enum):
    """Closed set of backup kinds the engine supports."""

    FULL = "FULL"
    DIFFERENTIAL = "DIFFERENTIAL"
    LOG = "LOG"

    @property
    def token(self) -> str:
        return self.value

    @property
    def folder(self) -> str:
        return _FOLDERS[self]

    @classmethod
    def parse(cls, value: Union["BackupKind", str, None]) -> "BackupKind":
        if isinstance(value, BackupKind):
            return value
        if isinstance(value, str):
            normalized = value.strip().upper()
            for member in cls:
                if member.value == normalized:
                    return member
        raise InvalidBackupKind(
            f"Unsupported backup kind {value!r}; expected one of "
            + ", ".join(member.value for member in cls),
            kind=str(value),
        )


_FOLDERS: Dict[BackupKind, str] = {
    BackupKind.FULL: "Full",
    BackupKind.DIFFERENTIAL: "Differential",
    BackupKind.LOG: "Log",
}


@dataclass(frozen=True)
class BackupRequest:
    database_name: str
    kind: Union[BackupKind, str]
    custom_path: Optional[str] = None
    backup_name: Optional[str] = None

    @property
    def backup_kind(self) -> BackupKind:
        return BackupKind.parse(self.kind)

    def normalized(self) -> "BackupRequest":
        return replace(
            self,
            database_name=self.database_name.strip(),
            kind=BackupKind.parse(self.kind),
            custom_path=self.custom_path if self.custom_path else None,
            backup_name=self.backup_name.strip() if self.backup_name and self.backup_name.strip() else None,
        )


@dataclass(frozen=True)
class ResolvedLocation:
    directory: PurePath
    custom: bool = False

    def join(self, file_name: str) -> PurePath:
        return self.directory / file_name


@dataclass(frozen=True)
class ArtifactName:
    file_name: str
    description: str


@dataclass(frozen=True)
class ArtifactRecord:
    """Catalog entry for a completed backup. Never mutated once written."""

    database_name: str
    kind: BackupKind
    path: str
    description: str
    created_at: datetime
    size_bytes: Optional[int] = None
    checksum: Optional[str] = None
    backup_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "database_name": self.database_name,
            "kind": self.kind.value,
            "path": self.path,
            "description": self.description,
            "created_at": self.created_at.isoformat(),
            "size_bytes": self.size_bytes,
            "checksum": self.checksum,
            "backup_name": self.backup_name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ArtifactRecord":
        return cls(
            database_name=data["database_name"],
            kind=BackupKind.parse(data["kind"]),
            path=data["path"],
            description=data["description"],
            created_at=_parse_timestamp(data["created_at"]),
            size_bytes=data.get("size_bytes"),
            checksum=data.get("checksum"),
            backup_name=data.get("backup_name"),
        )


@dataclass
class VerificationResult:
    record: ArtifactRecord
    passed: bool
    detail: str = ""
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _parse_timestamp(value: str) -> datetime:
    # Naive timestamps are read as UTC so they sort against aware ones.
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
