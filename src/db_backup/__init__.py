"""Database backup orchestration package."""

from __future__ import annotations

from .config import load_config, AppConfig  # noqa: F401
from .models import ArtifactRecord, BackupKind  # noqa: F401
from .orchestrator import BackupOrchestrator  # noqa: F401

__version__ = "0.1.0"
