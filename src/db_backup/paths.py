from __future__ import annotations

import logging
import re
from pathlib import Path, PurePath, PurePosixPath, PureWindowsPath
from typing import Protocol, Type

from .engine import DatabaseEngine
from .errors import EngineError, PathCreationFailure
from .models import BackupRequest, ResolvedLocation

LOG = logging.getLogger(__name__)

_WINDOWS_ROOT_RE = re.compile(r"^([A-Za-z]:|\\\\)")


def path_flavour(root: str, style: str = "auto") -> Type[PurePath]:
    if style == "windows":
        return PureWindowsPath
    if style == "posix":
        return PurePosixPath
    if _WINDOWS_ROOT_RE.match(root):
        return PureWindowsPath
    return PurePosixPath


def resolve_location(request: BackupRequest, root: str, style: str = "auto") -> ResolvedLocation:
    """Compute the target directory for ``request`` without touching the filesystem."""
    if request.custom_path:
        flavour = path_flavour(request.custom_path, style)
        return ResolvedLocation(directory=flavour(request.custom_path), custom=True)

    kind = request.backup_kind
    flavour = path_flavour(root, style)
    return ResolvedLocation(directory=flavour(root) / request.database_name / kind.folder)


class DirectoryProvisioner(Protocol):
    def ensure(self, directory: PurePath) -> None:
        ...


class LocalDirectoryProvisioner:
    """Creates directories on the host running the orchestrator."""

    def ensure(self, directory: PurePath) -> None:
        target = Path(str(directory))
        try:
            target.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOG.error("Unable to create backup directory %s: %s", target, exc)
            raise PathCreationFailure(
                f"Unable to create directory: {exc.strerror or exc}",
                path=str(directory),
            ) from exc


class EngineDirectoryProvisioner:
    """Creates directories on the engine host, which may mount storage differently."""

    def __init__(self, engine: DatabaseEngine) -> None:
        self._engine = engine

    def ensure(self, directory: PurePath) -> None:
        try:
            self._engine.create_directory(str(directory))
        except EngineError as exc:
            LOG.error("Engine could not create backup directory %s: %s", directory, exc)
            raise PathCreationFailure(f"Engine could not create directory: {exc}", path=str(directory)) from exc


def build_provisioner(provisioning: str, engine: DatabaseEngine) -> DirectoryProvisioner:
    if provisioning == "local":
        return LocalDirectoryProvisioner()
    if provisioning == "engine":
        return EngineDirectoryProvisioner(engine)
    raise ValueError(f"Unsupported provisioning mode '{provisioning}'")
