from __future__ import annotations

import logging
import threading
import traceback
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from croniter import croniter

from .config import AppConfig, CadenceConfig
from .errors import BackupError, DatabaseBusy
from .models import BackupKind
from .notifications import LogNotifier, Notifier
from .orchestrator import BackupOrchestrator
from .verifier import RecoveryVerifier

LOG = logging.getLogger(__name__)

VERIFICATION_KEY = ("*", "VERIFY")


class PairState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


class TickOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ScheduleEntry:
    database: str
    kind: BackupKind
    cadence: CadenceConfig

    @property
    def key(self) -> Tuple[str, str]:
        return (self.database, self.kind.value)

    def describe(self) -> str:
        return f"{self.database} {self.kind.value} {self.cadence.describe()}"


def next_run(cadence: CadenceConfig, reference: datetime) -> datetime:
    if cadence.cron:
        return croniter(cadence.cron, reference).get_next(datetime)
    return reference + cadence.interval


def build_schedule(config: AppConfig) -> List[ScheduleEntry]:
    entries: List[ScheduleEntry] = []
    for database in config.databases:
        for kind in BackupKind:
            if kind not in database.kinds:
                continue
            entries.append(
                ScheduleEntry(
                    database=database.name,
                    kind=kind,
                    cadence=database.cadence_for(kind, config.schedule),
                )
            )
    return entries


class Scheduler:
    """Fires backups per (database, kind) on independent cadences.

    Each pair moves IDLE -> RUNNING -> IDLE. A tick that arrives while its
    pair is RUNNING, or while another operation holds the database lock, is
    skipped rather than queued.
    """

    def __init__(
        self,
        orchestrator: BackupOrchestrator,
        entries: List[ScheduleEntry],
        *,
        verifier: Optional[RecoveryVerifier] = None,
        verification_cadence: Optional[CadenceConfig] = None,
        notifier: Optional[Notifier] = None,
        timezone: str = "UTC",
        run_on_startup: bool = False,
    ) -> None:
        self._orchestrator = orchestrator
        self._entries = list(entries)
        self._verifier = verifier
        self._verification_cadence = verification_cadence
        self._notifier = notifier or LogNotifier()
        self._timezone = ZoneInfo(timezone)
        self._run_on_startup = run_on_startup
        self._state_lock = threading.Lock()
        self._states: Dict[Tuple[str, str], PairState] = {}
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []
        self._executor: Optional[ThreadPoolExecutor] = None

    @property
    def entries(self) -> List[ScheduleEntry]:
        return list(self._entries)

    def state(self, database: str, kind: BackupKind) -> PairState:
        with self._state_lock:
            return self._states.get((database, kind.value), PairState.IDLE)

    # Ticks -----------------------------------------------------------------
    def tick(self, entry: ScheduleEntry) -> TickOutcome:
        if not self._begin(entry.key):
            LOG.info("Skipping %s %s tick: previous run still in progress", entry.database, entry.kind.value)
            return TickOutcome.SKIPPED
        return self._execute(entry)

    def verify_tick(self) -> TickOutcome:
        if self._verifier is None:
            return TickOutcome.SKIPPED
        if not self._begin(VERIFICATION_KEY):
            LOG.info("Skipping verification tick: previous verification still in progress")
            return TickOutcome.SKIPPED
        return self._execute_verification()

    def _begin(self, key: Tuple[str, str]) -> bool:
        with self._state_lock:
            if self._states.get(key) is PairState.RUNNING:
                return False
            self._states[key] = PairState.RUNNING
            return True

    def _finish(self, key: Tuple[str, str]) -> None:
        with self._state_lock:
            self._states[key] = PairState.IDLE

    def _execute(self, entry: ScheduleEntry) -> TickOutcome:
        try:
            record = self._orchestrator.trigger_backup(entry.database, entry.kind, wait=False)
        except DatabaseBusy:
            LOG.info(
                "Skipping %s %s tick: database is busy with another operation",
                entry.database,
                entry.kind.value,
            )
            return TickOutcome.SKIPPED
        except BackupError as exc:
            LOG.error("Scheduled %s backup of %s failed: %s", entry.kind.value, entry.database, exc.diagnostics())
            self._notifier.notify(f"Scheduled {entry.kind.value} backup of {entry.database} failed", exc.diagnostics())
            return TickOutcome.FAILED
        except Exception as exc:  # noqa: BLE001
            LOG.error("Unexpected error in scheduled %s backup of %s: %s", entry.kind.value, entry.database, exc)
            LOG.debug("Traceback:\n%s", "".join(traceback.format_exc()))
            self._notifier.notify(f"Scheduled {entry.kind.value} backup of {entry.database} failed", str(exc))
            return TickOutcome.FAILED
        finally:
            self._finish(entry.key)

        LOG.info("Scheduled %s backup of %s completed: %s", entry.kind.value, entry.database, record.path)
        return TickOutcome.COMPLETED

    def _execute_verification(self) -> TickOutcome:
        try:
            results = self._verifier.run_once()
        except Exception as exc:  # noqa: BLE001
            LOG.error("Verification run failed: %s", exc)
            LOG.debug("Traceback:\n%s", "".join(traceback.format_exc()))
            self._notifier.notify("Backup verification run failed", str(exc))
            return TickOutcome.FAILED
        finally:
            self._finish(VERIFICATION_KEY)

        if any(not result.passed for result in results):
            return TickOutcome.FAILED
        return TickOutcome.COMPLETED

    # Timers ----------------------------------------------------------------
    def start(self) -> None:
        if self._executor is not None:
            raise RuntimeError("Scheduler already started")
        self._stop_event.clear()
        self._executor = ThreadPoolExecutor(
            max_workers=len(self._entries) + 1,
            thread_name_prefix="db-backup",
        )

        for entry in self._entries:
            self._spawn(entry.describe(), entry.cadence, lambda entry=entry: self._fire(entry))
        if self._verifier is not None and self._verification_cadence is not None:
            self._spawn("verification", self._verification_cadence, self._fire_verification)

        LOG.info("Scheduler started with %d backup schedule(s)", len(self._entries))

    def stop(self) -> None:
        """Stop firing new ticks and wait for in-flight operations to finish."""
        self._stop_event.set()
        for thread in self._threads:
            thread.join()
        self._threads = []
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        LOG.info("Scheduler stopped")

    def _spawn(self, label: str, cadence: CadenceConfig, fire: Callable[[], None]) -> None:
        thread = threading.Thread(
            target=self._timer_loop,
            args=(label, cadence, fire),
            name=f"timer:{label}",
            daemon=True,
        )
        self._threads.append(thread)
        thread.start()

    def _timer_loop(self, label: str, cadence: CadenceConfig, fire: Callable[[], None]) -> None:
        now = datetime.now(self._timezone)
        due = now if self._run_on_startup else next_run(cadence, now)
        LOG.info("Next run of %s scheduled for %s", label, due.isoformat())

        while not self._stop_event.is_set():
            now = datetime.now(self._timezone)
            if now >= due:
                fire()
                due = next_run(cadence, now)
                LOG.debug("Next run of %s scheduled for %s", label, due.isoformat())
                continue
            sleep_for = max((due - now).total_seconds(), 0)
            self._stop_event.wait(min(sleep_for, 60))

    def _fire(self, entry: ScheduleEntry) -> None:
        if not self._begin(entry.key):
            LOG.info("Skipping %s %s tick: previous run still in progress", entry.database, entry.kind.value)
            return
        self._submit(entry.key, self._execute, entry)

    def _fire_verification(self) -> None:
        if not self._begin(VERIFICATION_KEY):
            LOG.info("Skipping verification tick: previous verification still in progress")
            return
        self._submit(VERIFICATION_KEY, self._execute_verification)

    def _submit(self, key: Tuple[str, str], fn: Callable, *args) -> None:
        executor = self._executor
        if executor is None or self._stop_event.is_set():
            self._finish(key)
            return
        try:
            executor.submit(fn, *args)
        except RuntimeError:
            self._finish(key)
            LOG.debug("Executor shut down; dropping tick for %s", key)


def build_scheduler(
    orchestrator: BackupOrchestrator,
    *,
    verifier: Optional[RecoveryVerifier] = None,
    notifier: Optional[Notifier] = None,
) -> Scheduler:
    config = orchestrator.config
    return Scheduler(
        orchestrator,
        build_schedule(config),
        verifier=verifier if config.verification.enabled else None,
        verification_cadence=config.verification.cadence if config.verification.enabled else None,
        notifier=notifier,
        timezone=config.schedule.timezone,
        run_on_startup=config.schedule.run_on_startup,
    )
