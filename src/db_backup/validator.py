from __future__ import annotations

import re

from .engine import DatabaseEngine
from .errors import EngineError, InvalidBackupKind, InvalidDatabase, InvalidPath
from .models import BackupKind, BackupRequest


_ILLEGAL_PATH_CHARS = set('<>"|?*')
_ILLEGAL_NAME_CHARS = _ILLEGAL_PATH_CHARS | set("/\\:")
_DRIVE_RE = re.compile(r"^[A-Za-z]:")


def validate_request(request: BackupRequest, engine: DatabaseEngine) -> BackupRequest:
    """Return a normalized copy of ``request`` or raise the matching validation error.

    Only the final database lookup touches the engine, and it is read-only.
    """
    try:
        kind = BackupKind.parse(request.kind)
    except InvalidBackupKind as exc:
        exc.database = request.database_name
        raise

    if request.custom_path is not None:
        _check_custom_path(request.custom_path, request.database_name, kind)
    if request.backup_name is not None and request.backup_name.strip():
        _check_backup_name(request.backup_name, request.database_name, kind)

    database = (request.database_name or "").strip()
    if not database:
        raise InvalidDatabase("Database name must be provided", kind=kind.value)
    _check_database_name(database, kind)

    try:
        exists = engine.database_exists(database)
    except EngineError as exc:
        raise InvalidDatabase(
            f"Could not confirm database '{database}' exists: {exc}",
            database=database,
            kind=kind.value,
        ) from exc
    if not exists:
        raise InvalidDatabase(f"Database '{database}' does not exist", database=database, kind=kind.value)

    return request.normalized()


def _check_custom_path(path: str, database: str, kind: BackupKind) -> None:
    if not path.strip():
        raise InvalidPath("Custom path must not be empty", database=database, kind=kind.value, path=path)

    for index, char in enumerate(path):
        if ord(char) < 32 or char in _ILLEGAL_PATH_CHARS:
            raise InvalidPath(
                f"Custom path contains illegal character {char!r}",
                database=database,
                kind=kind.value,
                path=path,
            )
        if char == ":" and not (index == 1 and _DRIVE_RE.match(path)):
            raise InvalidPath(
                "Custom path may only contain ':' after a drive letter",
                database=database,
                kind=kind.value,
                path=path,
            )


def _check_backup_name(name: str, database: str, kind: BackupKind) -> None:
    bad = [char for char in name if ord(char) < 32 or char in _ILLEGAL_NAME_CHARS]
    if bad:
        raise InvalidPath(
            f"Backup name {name!r} contains characters not allowed in a file name",
            database=database,
            kind=kind.value,
        )


def _check_database_name(database: str, kind: BackupKind) -> None:
    # The name becomes a folder and a file name prefix under the backup root.
    if database in (".", "..") or any(ord(char) < 32 or char in _ILLEGAL_NAME_CHARS for char in database):
        raise InvalidDatabase(
            f"Database name {database!r} cannot be used as a folder or file name",
            database=database,
            kind=kind.value,
        )
