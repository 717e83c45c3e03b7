"""
authsync.userlist
~~~~~~~~~~~~~~~~~
The proxy's credential file and the synchronizer that patches it.

userlist.txt
------------
# comment
"alice" "SCRAM-SHA-256$4096:..."
"bob"   "md5a3556571e93b0d20722ba62be61e8c2d"

Quotes inside a field are doubled.  The file is always rewritten as a
whole into a temporary sibling and renamed over the original, so the
proxy can open it at any moment and never see half a file.
"""

from __future__ import annotations

import grp
import logging
import os
import pwd
import re
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .errors import WriteError
from .logger import SyncLogger
from .models import AuthFileEntry, Delta, EncryptionScheme

log = logging.getLogger(__name__)

HEADER = (
    "# pgbouncer userlist.txt - Auto-generated by pg-authsync\n"
    "# Do not edit manually - changes will be overwritten\n"
    "\n"
)
DEFAULT_MODE = 0o640

_LINE_RE = re.compile(r'^"((?:[^"]|"")*)"\s+"((?:[^"]|"")*)"')


def parse_line(line: str) -> Optional[AuthFileEntry]:
    """One entry, or None for blanks, comments and lines we cannot read."""
    line = line.strip()
    if not line or line.startswith("#") or "\ufffd" in line:
        return None
    m = _LINE_RE.match(line)
    if m is None:
        return None
    user, secret = (g.replace('""', '"') for g in m.groups())
    return AuthFileEntry(username=user, password_hash=secret)


def parse_text(text: str) -> Dict[str, str]:
    entries: Dict[str, str] = {}
    for ln in text.splitlines():
        entry = parse_line(ln)
        if entry is None:
            if ln.strip() and not ln.strip().startswith("#"):
                log.warning("ignoring malformed userlist line: %.40s", ln.strip())
            continue
        entries[entry.username] = entry.password_hash
    return entries


def render(entries: Dict[str, str]) -> str:
    body = "".join(
        AuthFileEntry(u, h).render() + "\n" for u, h in sorted(entries.items())
    )
    return HEADER + body


@dataclass
class SyncResult:
    updated: bool = False
    added: List[str] = field(default_factory=list)
    changed: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    skipped: List[Tuple[str, str]] = field(default_factory=list)
    backup: Optional[Path] = None


class UserlistSynchronizer:
    def __init__(
        self,
        path: str | Path,
        scheme: EncryptionScheme,
        *,
        owner: Optional[str] = None,
        group: Optional[str] = None,
        mode: int = DEFAULT_MODE,
        backup_keep: int = 10,
        events: Optional[SyncLogger] = None,
    ):
        self.path = Path(path)
        self.scheme = scheme
        self.owner = owner
        self.group = group
        self.mode = mode
        self.backup_keep = backup_keep
        self.events = events or SyncLogger(None, console=False)

    # ------------------------------------------------------------------ #
    # public
    # ------------------------------------------------------------------ #

    def read(self) -> Dict[str, str]:
        try:
            # undecodable lines come back with U+FFFD and are dropped as malformed
            text = self.path.read_bytes().decode("utf-8", errors="replace")
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise WriteError(f"cannot read {self.path}: {e}") from e
        return parse_text(text)

    def apply(self, delta: Delta) -> SyncResult:
        """Patch the file with *delta*; result.updated gates the reload."""
        before = self.read()
        entries = dict(before)
        result = SyncResult()

        for p in delta.deleted:
            if entries.pop(p.username, None) is not None:
                result.removed.append(p.username)
                self.events.principal("sync", p.username, "removed")

        for p in delta.added + delta.modified:
            user = p.username
            if not p.can_login:
                if entries.pop(user, None) is not None:
                    result.removed.append(user)
                    self.events.principal("sync", user, "removed", cause="login disabled")
                continue
            if not p.password_hash:
                result.skipped.append((user, "no password hash"))
                continue
            if not self.scheme.matches(p.password_hash):
                found = EncryptionScheme.of_hash(p.password_hash)
                cause = f"hash is {found.value if found else 'empty'}, proxy expects {self.scheme.value}"
                result.skipped.append((user, cause))
                self.events.skipped("sync", user, cause)
                continue
            old = entries.get(user)
            if old == p.password_hash:
                continue
            entries[user] = p.password_hash
            if old is None:
                result.added.append(user)
                self.events.principal("sync", user, "added")
            else:
                result.changed.append(user)
                self.events.principal("sync", user, "updated")

        result.updated = entries != before
        if result.updated:
            result.backup = self.write(entries)
        return result

    def write(self, entries: Dict[str, str]) -> Optional[Path]:
        """Atomically replace the file with *entries*; returns the backup path."""
        directory = self.path.parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=directory)
        except OSError as e:
            raise WriteError(f"cannot create temporary file in {directory}: {e}") from e

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(render(entries))
                fh.flush()
                os.fsync(fh.fileno())
                os.fchmod(fh.fileno(), self.mode)
                self._chown(fh.fileno())
            backup = self._backup()
            os.replace(tmp, self.path)
        except (OSError, WriteError) as e:
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                pass
            if isinstance(e, WriteError):
                raise
            raise WriteError(f"cannot replace {self.path}: {e}") from e

        _fsync_dir(directory)
        self._prune_backups()
        return backup

    def ensure_exists(self) -> bool:
        """Create an empty (header-only) file if there is none yet."""
        if self.path.exists():
            return False
        self.write({})
        return True

    # ------------------------------------------------------------------ #
    # private
    # ------------------------------------------------------------------ #

    def _chown(self, fd: int) -> None:
        if not self.owner and not self.group:
            return
        if os.geteuid() != 0:
            log.debug("not root, leaving ownership of %s as is", self.path)
            return
        try:
            uid = pwd.getpwnam(self.owner).pw_uid if self.owner else -1
            gid = grp.getgrnam(self.group).gr_gid if self.group else -1
        except KeyError as e:
            raise WriteError(f"unknown owner for {self.path}: {e}") from e
        os.fchown(fd, uid, gid)

    def _backup(self) -> Optional[Path]:
        if not self.path.exists():
            return None
        ts = datetime.now().strftime("%Y%m%dT%H%M%S%f")
        dst = self.path.with_name(f"{self.path.name}.bak.{ts}")
        try:
            shutil.copy2(self.path, dst)
        except OSError as e:
            log.warning("backup of %s failed: %s", self.path, e)
            return None
        return dst

    def _prune_backups(self) -> None:
        if self.backup_keep <= 0:
            return
        backups = sorted(self.path.parent.glob(f"{self.path.name}.bak.*"))
        for old in backups[: -self.backup_keep]:
            try:
                old.unlink()
            except OSError as e:
                log.warning("cannot remove old backup %s: %s", old, e)


def _fsync_dir(directory: Path) -> None:
    try:
        dfd = os.open(directory, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(dfd)
    except OSError:
        pass
    finally:
        os.close(dfd)
