"""
authsync.core
~~~~~~~~~~~~~
The polling monitor: snapshot -> diff -> sync -> reload, every interval.

    IDLE -> SNAPSHOTTING -> DIFFING -> SYNCING -> RELOADING -> SLEEPING -> IDLE
                 |             |          |
                 +-------------+----------+--> SLEEPING   (failure)

An empty delta or a no-op sync skips the remaining stages.  A failed cycle
leaves the baseline snapshot where it was, so the next tick sees the same
changes again.
"""

from __future__ import annotations

import enum
import signal
import threading
import time
from dataclasses import dataclass
from typing import Optional

from .acls import EligibilityChecker
from .catalog import CatalogClient
from .config import Config
from .delta import compute_delta
from .errors import AuthSyncError, ReloadError
from .extractor import HashExtractor
from .logger import SyncLogger
from .models import Delta
from .reload import ReloadCoordinator, ReloadResult
from .service import Systemctl
from .snapshot import StateSnapshotter
from .state import CycleLock, FileStateStore, StateStore
from .userlist import SyncResult, UserlistSynchronizer


class State(str, enum.Enum):
    IDLE = "idle"
    SNAPSHOTTING = "snapshotting"
    DIFFING = "diffing"
    SYNCING = "syncing"
    RELOADING = "reloading"
    SLEEPING = "sleeping"


class Outcome(str, enum.Enum):
    FAILED = "failed"
    UNCHANGED = "unchanged"
    NOOP = "no-op"
    SYNCED = "synced"
    RELOAD_FAILED = "reload-failed"


@dataclass
class CycleReport:
    outcome: Outcome
    delta: Optional[Delta] = None
    sync: Optional[SyncResult] = None
    reload: Optional[ReloadResult] = None
    error: Optional[AuthSyncError] = None

    @property
    def ok(self) -> bool:
        return self.outcome not in (Outcome.FAILED, Outcome.RELOAD_FAILED)


def run_monitor(config: Config, events: SyncLogger) -> None:
    monitor, catalog = build_monitor(config, events)

    def _stop(signum, _frame):
        events.log.info("signal %d received, stopping after the current cycle", signum)
        monitor.stop()

    # both signals only set the stop event; a running cycle always completes
    previous = {sig: signal.signal(sig, _stop) for sig in (signal.SIGTERM, signal.SIGINT)}
    try:
        monitor.serve_forever()
    except KeyboardInterrupt:
        events.log.warning("monitor interrupted")
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
        catalog.close()
    print("\n▸ Monitor shut down.")


def build_monitor(cfg: Config, events: SyncLogger) -> tuple["MonitorLoop", CatalogClient]:
    catalog = CatalogClient(cfg.dsn, cfg.connect_timeout, password=cfg.superuser_password)
    extractor = HashExtractor(catalog, events, allow_plaintext_fallback=cfg.allow_plaintext_fallback)
    snapshotter = StateSnapshotter(
        catalog,
        cfg.scheme,
        eligibility=EligibilityChecker(cfg.excluded_users),
        strategy=cfg.snapshot_strategy,
        retries=cfg.snapshot_retries,
        retry_delay=cfg.snapshot_retry_delay,
        extractor=extractor,
        bootstrap_user=cfg.superuser,
        bootstrap_password=cfg.superuser_password,
        events=events,
    )
    synchronizer = UserlistSynchronizer(
        cfg.userlist_path,
        cfg.scheme,
        owner=cfg.userlist_owner,
        group=cfg.userlist_group,
        backup_keep=cfg.backup_keep,
        events=events,
    )
    monitor = MonitorLoop(
        snapshotter,
        synchronizer,
        ReloadCoordinator(cfg.proxy_service, Systemctl(), events),
        FileStateStore(cfg.state_path),
        interval=cfg.interval,
        lock=CycleLock(cfg.lock_path, cfg.lock_timeout),
        events=events,
    )
    return monitor, catalog


class MonitorLoop:
    def __init__(
        self,
        snapshotter: StateSnapshotter,
        synchronizer: UserlistSynchronizer,
        reloader: ReloadCoordinator,
        store: StateStore,
        *,
        interval: float = 30.0,
        lock: Optional[CycleLock] = None,
        events: Optional[SyncLogger] = None,
    ) -> None:
        self.snapshotter = snapshotter
        self.synchronizer = synchronizer
        self.reloader = reloader
        self.store = store
        self.interval = interval
        self.lock = lock
        self.events = events or SyncLogger(None, console=False)
        self.state = State.IDLE
        self.cycles = 0
        self._stop = threading.Event()

    # ------------------------------------------------------------------ #
    # public
    # ------------------------------------------------------------------ #

    def serve_forever(self) -> None:
        self.events.log.info(
            "starting PostgreSQL user monitor loop (interval: %gs)", self.interval
        )
        while not self._stop.is_set():
            try:
                self.run_cycle()
            except Exception as e:  # noqa: BLE001
                self.events.failure(self.state.value, e)
            self._enter(State.SLEEPING)
            self._stop.wait(self.interval)
            self._enter(State.IDLE)

    def stop(self) -> None:
        self._stop.set()

    def run_cycle(self) -> CycleReport:
        start_ts = time.monotonic()
        self.cycles += 1
        report: Optional[CycleReport] = None
        try:
            if self.lock is not None:
                self.lock.acquire()
            try:
                report = self._cycle()
            finally:
                self.store.clear_delta()
                if self.lock is not None:
                    self.lock.release()
        except AuthSyncError as e:
            self.events.failure(e.stage, e, user=e.principal)
            report = CycleReport(Outcome.FAILED, error=e)
        finally:
            if report is not None:
                self.events.cycle_end(
                    report.outcome.value,
                    report.delta.summary() if report.delta is not None else None,
                    int((time.monotonic() - start_ts) * 1000),
                )
        return report

    # ------------------------------------------------------------------ #
    # private
    # ------------------------------------------------------------------ #

    def _enter(self, state: State) -> None:
        self.events.stage("monitor", "transition", frm=self.state.value, to=state.value)
        self.state = state

    def _cycle(self) -> CycleReport:
        self._enter(State.SNAPSHOTTING)
        current = self.snapshotter.snapshot()
        self.store.save_current(current)

        try:
            self._enter(State.DIFFING)
            delta = compute_delta(self.store.load_previous(), current)
            if delta.is_empty:
                self._promote()
                return CycleReport(Outcome.UNCHANGED, delta=delta)
            self.events.log.info("user changes detected, updating pgbouncer userlist")
            self.store.write_delta(delta)

            self._enter(State.SYNCING)
            result = self.synchronizer.apply(delta)
        except AuthSyncError:
            self.store.discard()
            raise

        if not result.updated:
            self._promote()
            return CycleReport(Outcome.NOOP, delta=delta, sync=result)

        # the proxy is reloaded even when the new baseline cannot be stored
        self._enter(State.RELOADING)
        reloaded = self.reloader.reload()
        self._promote()
        if not reloaded.ok:
            # the new userlist stays; the proxy picks it up on its next reload
            err = ReloadError(f"{self.reloader.service} did not reload or restart")
            self.events.failure("reload", err)
            return CycleReport(Outcome.RELOAD_FAILED, delta=delta, sync=result, reload=reloaded, error=err)
        return CycleReport(Outcome.SYNCED, delta=delta, sync=result, reload=reloaded)

    def _promote(self) -> None:
        try:
            self.store.promote()
        except AuthSyncError:
            self.store.discard()
            raise
