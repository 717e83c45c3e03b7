"""
authsync.state
~~~~~~~~~~~~~~
Two-slot snapshot store (baseline + pending) and the single-writer lock.

On disk, for PG_USER_MONITOR_STATE_FILE=/var/lib/postgresql/state.json:

    state.json          baseline: the last promoted snapshot
    state.json.old      the baseline before that (kept for inspection)
    state.json.new      pending: this tick's snapshot, until promoted
    state.json.changes  this tick's delta, removed when the cycle ends
    state.json.lock     advisory flock held for the length of a cycle
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import IO, Any, Dict, Optional, Protocol

from .errors import LockError, SnapshotError
from .models import Delta, Snapshot

log = logging.getLogger(__name__)


class StateStore(Protocol):
    def load_previous(self) -> Optional[Snapshot]: ...

    def save_current(self, snapshot: Snapshot) -> None: ...

    def promote(self) -> None: ...

    def discard(self) -> None: ...

    def write_delta(self, delta: Delta) -> None: ...

    def clear_delta(self) -> None: ...


class MemoryStateStore:
    def __init__(self, previous: Optional[Snapshot] = None):
        self.previous = previous
        self.pending: Optional[Snapshot] = None
        self.delta: Optional[Delta] = None
        self.promotions = 0

    def load_previous(self) -> Optional[Snapshot]:
        return self.previous

    def save_current(self, snapshot: Snapshot) -> None:
        self.pending = snapshot

    def promote(self) -> None:
        if self.pending is not None:
            self.previous, self.pending = self.pending, None
            self.promotions += 1

    def discard(self) -> None:
        self.pending = None

    def write_delta(self, delta: Delta) -> None:
        self.delta = delta

    def clear_delta(self) -> None:
        self.delta = None


class FileStateStore:
    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.pending_path = self.path.with_name(self.path.name + ".new")
        self.rotated_path = self.path.with_name(self.path.name + ".old")
        self.delta_path = self.path.with_name(self.path.name + ".changes")

    def load_previous(self) -> Optional[Snapshot]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return Snapshot.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            # every principal becomes "added" next; upserts are idempotent
            log.warning("unreadable baseline %s (%s), starting from empty", self.path, e)
            return None

    def save_current(self, snapshot: Snapshot) -> None:
        try:
            _atomic_json(self.pending_path, snapshot.to_dict())
        except OSError as e:
            raise SnapshotError(f"cannot store snapshot in {self.pending_path}: {e}") from e

    def promote(self) -> None:
        if not self.pending_path.exists():
            return
        try:
            if self.path.exists():
                os.replace(self.path, self.rotated_path)
            os.replace(self.pending_path, self.path)
        except OSError as e:
            raise SnapshotError(f"cannot promote {self.pending_path}: {e}") from e

    def discard(self) -> None:
        _unlink(self.pending_path)

    def write_delta(self, delta: Delta) -> None:
        try:
            _atomic_json(self.delta_path, delta.to_dict())
        except OSError as e:
            raise SnapshotError(f"cannot store delta in {self.delta_path}: {e}") from e

    def clear_delta(self) -> None:
        _unlink(self.delta_path)


class CycleLock:
    """Exclusive flock so a manual ``sync`` and the daemon never overlap."""

    def __init__(self, path: str | Path, timeout: float = 10.0, poll: float = 0.1):
        self.path = Path(path)
        self.timeout = timeout
        self.poll = poll
        self._file: Optional[IO[str]] = None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fh = open(self.path, "a+")
        deadline = time.monotonic() + self.timeout
        while True:
            try:
                fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    fh.close()
                    raise LockError(
                        f"another sync holds {self.path} (waited {self.timeout:g}s)"
                    ) from None
                time.sleep(self.poll)
        fh.seek(0)
        fh.truncate()
        fh.write(str(os.getpid()))
        fh.flush()
        self._file = fh

    def release(self) -> None:
        if self._file is None:
            return
        try:
            fcntl.flock(self._file.fileno(), fcntl.LOCK_UN)
        finally:
            self._file.close()
            self._file = None

    def __enter__(self) -> "CycleLock":
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()


def _atomic_json(path: Path, payload: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2)
            fh.flush()
            os.fsync(fh.fileno())
        os.chmod(tmp, 0o600)
        os.replace(tmp, path)
    except OSError:
        _unlink(Path(tmp))
        raise


def _unlink(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        log.warning("cannot remove %s: %s", path, e)
