from __future__ import annotations

from typing import Optional


class BackupError(Exception):
    """Base class for failures surfaced to callers of the orchestration pipeline."""

    kind_name = "BackupError"

    def __init__(
        self,
        message: str,
        *,
        database: Optional[str] = None,
        kind: Optional[str] = None,
        path: Optional[str] = None,
        description: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.database = database
        self.kind = kind
        self.path = path
        self.description = description

    def diagnostics(self) -> str:
        parts = [f"{self.kind_name}: {self.message}"]
        if self.database:
            parts.append(f"database={self.database}")
        if self.kind:
            parts.append(f"kind={self.kind}")
        if self.path:
            parts.append(f"path={self.path}")
        if self.description:
            parts.append(f"description={self.description}")
        return " ".join(parts)


class InvalidDatabase(BackupError):
    kind_name = "InvalidDatabase"


class InvalidBackupKind(BackupError):
    kind_name = "InvalidBackupKind"


class InvalidPath(BackupError):
    kind_name = "InvalidPath"


class PathCreationFailure(BackupError):
    kind_name = "PathCreationFailure"


class MissingBaseBackup(BackupError):
    kind_name = "MissingBaseBackup"


class LogBackupUnsupported(BackupError):
    kind_name = "LogBackupUnsupported"


class EngineBackupFailure(BackupError):
    kind_name = "EngineBackupFailure"


class VerificationFailure(BackupError):
    kind_name = "VerificationFailure"


class DatabaseBusy(Exception):
    """Raised when another operation already holds the database lock."""

    def __init__(self, database: str) -> None:
        super().__init__(f"Database '{database}' is busy with another operation")
        self.database = database


class EngineError(Exception):
    """Raised by the engine layer when a statement fails."""
