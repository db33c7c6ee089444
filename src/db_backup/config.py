from __future__ import annotations

import os
import re
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from croniter import CroniterBadCronError, croniter
from pydantic import BaseModel, Field, field_validator, model_validator

from .errors import InvalidBackupKind
from .models import BackupKind

ENVIRONMENT_ENV = "DB_BACKUP_ENVIRONMENT"
ROOT_ENV = "DB_BACKUP_ROOT"

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhd]?)\s*$", re.IGNORECASE)
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


class ConfigurationError(Exception):
    """Raised when the backup configuration is invalid."""


def parse_duration(value: Any) -> timedelta:
    """Parse ``90``, ``"90s"``, ``"15m"``, ``"8h"`` or ``"1d"`` into a timedelta."""
    if isinstance(value, timedelta):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return timedelta(seconds=value)
    if isinstance(value, str):
        match = _DURATION_RE.match(value)
        if match:
            amount, unit = match.groups()
            return timedelta(seconds=int(amount) * _DURATION_UNITS[unit.lower()])
    raise ValueError(f"Invalid duration {value!r}; use seconds or a value like '15m', '8h', '1d'")


def _coerce_kind(value: Any) -> BackupKind:
    try:
        return BackupKind.parse(value)
    except InvalidBackupKind as exc:
        raise ValueError(exc.message) from exc


class SecretRef(BaseModel):
    """Reference to a secret stored in an environment variable or file."""

    env: Optional[str] = Field(default=None, description="Environment variable name.")
    file: Optional[Path] = Field(default=None, description="Path to a file containing the secret.")

    def resolve(self) -> Optional[str]:
        if self.env:
            value = os.getenv(self.env)
            if value:
                return value
        if self.file:
            file_path = Path(self.file)
            if file_path.exists():
                return file_path.read_text(encoding="utf-8").strip()
        return None


# --- Storage -----------------------------------------------------------------


class StorageConfig(BaseModel):
    root: str
    provisioning: Literal["local", "engine"] = "local"
    path_style: Literal["auto", "posix", "windows"] = "auto"

    @field_validator("root")
    @classmethod
    def _require_root(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Storage root must be set.")
        return value.strip()


StorageConfigMap = Dict[str, StorageConfig]


# --- Engine ------------------------------------------------------------------


class EngineConfig(BaseModel):
    url: Optional[str] = Field(default=None, description="SQLAlchemy URL (discouraged for credentials).")
    url_secret: Optional[SecretRef] = None
    scratch_directory: Optional[str] = Field(
        default=None, description="Directory on the engine host for scratch restore files."
    )
    connect_timeout: int = 30

    @model_validator(mode="after")
    def _require_url(self) -> "EngineConfig":
        if not self.url and not self.url_secret:
            raise ValueError("Either url or url_secret must be provided for the engine.")
        return self

    def resolved_url(self) -> Optional[str]:
        if self.url:
            return self.url
        if self.url_secret:
            return self.url_secret.resolve()
        return None


class NamingConfig(BaseModel):
    extension: str = "bak"

    @field_validator("extension")
    @classmethod
    def _normalize_extension(cls, value: str) -> str:
        value = value.strip().lstrip(".")
        if not value or any(ch in value for ch in "/\\:*?\"<>|."):
            raise ValueError(f"Invalid backup file extension '{value}'.")
        return value


class CatalogConfig(BaseModel):
    path: Path = Path("/var/lib/db-backup/artifacts.jsonl")

    @field_validator("path")
    @classmethod
    def _expand_path(cls, value: Path) -> Path:
        return value.expanduser()


# --- Scheduling --------------------------------------------------------------


class CadenceConfig(BaseModel):
    """Either a fixed interval or a cron expression."""

    interval: Optional[timedelta] = None
    cron: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _accept_shorthand(cls, data: Any) -> Any:
        if isinstance(data, (str, int, float, timedelta)) and not isinstance(data, bool):
            return {"interval": data}
        return data

    @field_validator("interval", mode="before")
    @classmethod
    def _parse_interval(cls, value: Any) -> Optional[timedelta]:
        if value is None:
            return None
        interval = parse_duration(value)
        if interval.total_seconds() <= 0:
            raise ValueError("Interval must be positive.")
        return interval

    @field_validator("cron")
    @classmethod
    def _validate_cron(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        try:
            croniter(value, datetime.utcnow())
        except (CroniterBadCronError, ValueError) as exc:  # pragma: no cover - library errors
            raise ValueError(f"Invalid cron expression '{value}': {exc}") from exc
        return value

    @model_validator(mode="after")
    def _exactly_one(self) -> "CadenceConfig":
        if (self.interval is None) == (self.cron is None):
            raise ValueError("Cadence needs exactly one of 'interval' or 'cron'.")
        return self

    def describe(self) -> str:
        if self.cron:
            return f"cron '{self.cron}'"
        return f"every {self.interval}"


DEFAULT_CADENCES: Dict[BackupKind, timedelta] = {
    BackupKind.FULL: timedelta(hours=24),
    BackupKind.DIFFERENTIAL: timedelta(hours=8),
    BackupKind.LOG: timedelta(minutes=15),
}


class ScheduleConfig(BaseModel):
    timezone: str = "UTC"
    run_on_startup: bool = False
    full: CadenceConfig = CadenceConfig(interval=DEFAULT_CADENCES[BackupKind.FULL])
    differential: CadenceConfig = CadenceConfig(interval=DEFAULT_CADENCES[BackupKind.DIFFERENTIAL])
    log: CadenceConfig = CadenceConfig(interval=DEFAULT_CADENCES[BackupKind.LOG])

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except ZoneInfoNotFoundError as exc:  # pragma: no cover - library errors
            raise ValueError(f"Unknown timezone '{value}'") from exc
        return value

    def cadence_for(self, kind: BackupKind) -> CadenceConfig:
        if kind is BackupKind.FULL:
            return self.full
        if kind is BackupKind.DIFFERENTIAL:
            return self.differential
        return self.log


class DatabaseConfig(BaseModel):
    name: str
    kinds: List[BackupKind] = Field(default_factory=lambda: list(BackupKind))
    schedule: Dict[BackupKind, CadenceConfig] = Field(default_factory=dict)

    @field_validator("kinds", mode="before")
    @classmethod
    def _parse_kinds(cls, value: Any) -> Any:
        if isinstance(value, (list, tuple)):
            return [_coerce_kind(item) for item in value]
        return value

    @field_validator("schedule", mode="before")
    @classmethod
    def _parse_schedule_keys(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {_coerce_kind(key): cadence for key, cadence in value.items()}
        return value

    def cadence_for(self, kind: BackupKind, defaults: ScheduleConfig) -> CadenceConfig:
        return self.schedule.get(kind) or defaults.cadence_for(kind)


class VerificationConfig(BaseModel):
    enabled: bool = False
    cadence: CadenceConfig = CadenceConfig(interval=timedelta(hours=24))
    sample_size: int = 1
    kinds: List[BackupKind] = Field(default_factory=lambda: [BackupKind.FULL])
    scratch_prefix: str = "verify_"

    @field_validator("kinds", mode="before")
    @classmethod
    def _parse_kinds(cls, value: Any) -> Any:
        if isinstance(value, (list, tuple)):
            return [_coerce_kind(item) for item in value]
        return value

    @field_validator("sample_size")
    @classmethod
    def _positive_sample(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("sample_size must be positive.")
        return value


class NotificationsConfig(BaseModel):
    slack_webhook_env: Optional[str] = None

    def resolve_slack_webhook(self) -> Optional[str]:
        if not self.slack_webhook_env:
            return None
        return os.getenv(self.slack_webhook_env)


class LoggingConfig(BaseModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.upper()


class AppConfig(BaseModel):
    environment: str = "local"
    storage: StorageConfigMap
    engine: EngineConfig
    naming: NamingConfig = NamingConfig()
    catalog: CatalogConfig = CatalogConfig()
    enforce_prerequisites: bool = True
    schedule: ScheduleConfig = ScheduleConfig()
    databases: List[DatabaseConfig] = Field(default_factory=list)
    verification: VerificationConfig = VerificationConfig()
    notifications: NotificationsConfig = NotificationsConfig()
    logging: LoggingConfig = LoggingConfig()

    @field_validator("storage")
    @classmethod
    def _require_storage(cls, value: StorageConfigMap) -> StorageConfigMap:
        if not value:
            raise ValueError("At least one storage environment must be configured.")
        return value

    @field_validator("databases")
    @classmethod
    def _unique_databases(cls, value: List[DatabaseConfig]) -> List[DatabaseConfig]:
        seen = set()
        for database in value:
            if database.name in seen:
                raise ValueError(f"Database '{database.name}' is configured more than once.")
            seen.add(database.name)
        return value

    @model_validator(mode="after")
    def _ensure_environment(self) -> "AppConfig":
        if self.environment not in self.storage:
            raise ValueError(f"Environment '{self.environment}' has no storage configuration.")
        return self

    def active_storage(self) -> StorageConfig:
        storage = self.storage[self.environment]
        root_override = os.getenv(ROOT_ENV)
        if root_override:
            return storage.model_copy(update={"root": root_override})
        return storage


def load_config(path: Path) -> AppConfig:
    if not path.exists():
        raise ConfigurationError(f"Configuration file not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh) or {}

    environment = os.getenv(ENVIRONMENT_ENV)
    if environment:
        raw["environment"] = environment

    try:
        return AppConfig.model_validate(raw)
    except Exception as exc:  # noqa: BLE001
        raise ConfigurationError(str(exc)) from exc
