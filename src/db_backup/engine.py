"""Thin adapter over the SQL Server engine's native backup and restore commands.

Nothing in here reimplements engine behaviour: every method issues one
statement (or one catalog query) and translates driver failures into
:class:`~db_backup.errors.EngineError`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .errors import EngineError
from .models import BackupKind

LOG = logging.getLogger(__name__)

SIMPLE_RECOVERY = "SIMPLE"


@dataclass(frozen=True)
class BackupOutcome:
    size_bytes: Optional[int] = None


@dataclass(frozen=True)
class BackupFile:
    logical_name: str
    physical_name: str
    file_type: str


class DatabaseEngine(Protocol):
    def database_exists(self, name: str) -> bool:
        ...

    def recovery_model(self, name: str) -> str:
        ...

    def create_directory(self, path: str) -> None:
        ...

    def backup(self, database: str, kind: BackupKind, path: str, description: str) -> BackupOutcome:
        ...

    def file_list(self, path: str) -> List[BackupFile]:
        ...

    def default_data_directory(self) -> str:
        ...

    def restore(
        self,
        database: str,
        path: str,
        *,
        moves: Sequence[Tuple[str, str]],
        recovery: bool,
    ) -> None:
        ...

    def verify_only(self, path: str) -> None:
        ...

    def check_database(self, name: str) -> None:
        ...

    def drop_database(self, name: str) -> None:
        ...


def quote_identifier(name: str) -> str:
    return "[" + name.replace("]", "]]") + "]"


def build_backup_statement(database: str, kind: BackupKind) -> str:
    target = quote_identifier(database)
    if kind is BackupKind.FULL:
        return f"BACKUP DATABASE {target} TO DISK = ? WITH INIT, NAME = ?, CHECKSUM"
    if kind is BackupKind.DIFFERENTIAL:
        return f"BACKUP DATABASE {target} TO DISK = ? WITH DIFFERENTIAL, INIT, NAME = ?, CHECKSUM"
    if kind is BackupKind.LOG:
        return f"BACKUP LOG {target} TO DISK = ? WITH INIT, NAME = ?, CHECKSUM"
    raise ValueError(f"No backup statement for kind {kind!r}")


def build_restore_statement(database: str, move_count: int, *, recovery: bool) -> str:
    options = ["MOVE ? TO ?"] * move_count
    options.extend(["REPLACE", "CHECKSUM", "RECOVERY" if recovery else "NORECOVERY"])
    return f"RESTORE DATABASE {quote_identifier(database)} FROM DISK = ? WITH " + ", ".join(options)


class SqlServerEngine:
    """Issues native T-SQL backup commands through a SQLAlchemy engine."""

    def __init__(self, url: str, *, connect_timeout: int = 30, engine: Optional[Engine] = None) -> None:
        self._engine = engine or create_engine(
            url,
            pool_pre_ping=True,
            connect_args={"timeout": connect_timeout},
        )

    # Catalog queries -------------------------------------------------------
    def database_exists(self, name: str) -> bool:
        row = self._query_one("SELECT 1 FROM sys.databases WHERE name = :name", {"name": name})
        return row is not None

    def recovery_model(self, name: str) -> str:
        row = self._query_one(
            "SELECT recovery_model_desc FROM sys.databases WHERE name = :name",
            {"name": name},
        )
        if row is None:
            raise EngineError(f"Database '{name}' not found in sys.databases")
        return str(row[0]).upper()

    def default_data_directory(self) -> str:
        row = self._query_one("SELECT CAST(SERVERPROPERTY('InstanceDefaultDataPath') AS nvarchar(4000))", {})
        if row is None or not row[0]:
            raise EngineError("Engine did not report a default data directory")
        return str(row[0])

    # Maintenance commands --------------------------------------------------
    def create_directory(self, path: str) -> None:
        self._run("EXEC master.dbo.xp_create_subdir ?", [path])

    def backup(self, database: str, kind: BackupKind, path: str, description: str) -> BackupOutcome:
        LOG.info("Starting %s backup of %s to %s", kind.value, database, path)
        self._run(build_backup_statement(database, kind), [path, description])
        row = self._query_one(
            "SELECT TOP 1 bs.backup_size FROM msdb.dbo.backupset AS bs "
            "JOIN msdb.dbo.backupmediafamily AS mf ON bs.media_set_id = mf.media_set_id "
            "WHERE mf.physical_device_name = :path ORDER BY bs.backup_finish_date DESC",
            {"path": path},
        )
        size = int(row[0]) if row is not None and row[0] is not None else None
        return BackupOutcome(size_bytes=size)

    def file_list(self, path: str) -> List[BackupFile]:
        rows = self._run("RESTORE FILELISTONLY FROM DISK = ?", [path], fetch=True)
        return [
            BackupFile(
                logical_name=str(row["LogicalName"]),
                physical_name=str(row["PhysicalName"]),
                file_type=str(row["Type"]),
            )
            for row in rows
        ]

    def restore(
        self,
        database: str,
        path: str,
        *,
        moves: Sequence[Tuple[str, str]],
        recovery: bool,
    ) -> None:
        params: List[Any] = [path]
        for logical_name, physical_name in moves:
            params.extend([logical_name, physical_name])
        self._run(build_restore_statement(database, len(moves), recovery=recovery), params)

    def verify_only(self, path: str) -> None:
        self._run("RESTORE VERIFYONLY FROM DISK = ? WITH CHECKSUM", [path])

    def check_database(self, name: str) -> None:
        self._run(f"DBCC CHECKDB ({quote_identifier(name)}) WITH NO_INFOMSGS")

    def drop_database(self, name: str) -> None:
        self._run(f"IF DB_ID(?) IS NOT NULL DROP DATABASE {quote_identifier(name)}", [name])

    # Internal helpers ------------------------------------------------------
    def _query_one(self, sql: str, params: Dict[str, Any]) -> Optional[Sequence[Any]]:
        try:
            with self._engine.connect() as conn:
                return conn.execute(text(sql), params).first()
        except SQLAlchemyError as exc:
            raise EngineError(str(exc)) from exc

    def _run(
        self,
        sql: str,
        params: Optional[Sequence[Any]] = None,
        *,
        fetch: bool = False,
    ) -> List[Dict[str, Any]]:
        # BACKUP/RESTORE/DBCC cannot run in a transaction; the statement only
        # completes once every result set has been drained.
        dbapi_error = self._engine.dialect.loaded_dbapi.Error
        try:
            connection = self._engine.raw_connection()
        except SQLAlchemyError as exc:
            raise EngineError(str(exc)) from exc
        rows: List[Dict[str, Any]] = []
        try:
            connection.driver_connection.autocommit = True
            cursor = connection.cursor()
            try:
                cursor.execute(sql, list(params or []))
                while True:
                    if fetch and cursor.description:
                        columns = [column[0] for column in cursor.description]
                        rows.extend(dict(zip(columns, row)) for row in cursor.fetchall())
                    if not cursor.nextset():
                        break
            finally:
                cursor.close()
        except dbapi_error as exc:
            LOG.debug("Statement failed: %s", sql)
            raise EngineError(str(exc)) from exc
        finally:
            connection.driver_connection.autocommit = False
            connection.close()
        return rows
