from __future__ import annotations

from datetime import datetime
from typing import Optional

from .models import ArtifactName, BackupKind

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"


def format_timestamp(moment: datetime) -> str:
    return moment.strftime(TIMESTAMP_FORMAT)


def build_description(database: str, kind: BackupKind, backup_name: Optional[str] = None) -> str:
    return f"{_prefix(backup_name)}{database}_{kind.token}_Backup"


def generate_name(
    database: str,
    kind: BackupKind,
    timestamp: str,
    *,
    extension: str = "bak",
    backup_name: Optional[str] = None,
    sequence: int = 0,
) -> ArtifactName:
    """Build ``[<name>_]<db>_<KIND>_<timestamp>[_<sequence>].<ext>`` and its description.

    ``sequence`` is only appended when positive, so the first artifact of a
    given second keeps the plain layout.
    """
    suffix = f"_{sequence}" if sequence > 0 else ""
    file_name = f"{_prefix(backup_name)}{database}_{kind.token}_{timestamp}{suffix}.{extension.lstrip('.')}"
    return ArtifactName(file_name=file_name, description=build_description(database, kind, backup_name))


def _prefix(backup_name: Optional[str]) -> str:
    return f"{backup_name}_" if backup_name else ""
