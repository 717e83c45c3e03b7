"""
authsync.reload
~~~~~~~~~~~~~~~
Make the proxy pick up a rewritten userlist: one graceful reload, and if
that fails exactly one restart.  Never more.
"""

from __future__ import annotations

import enum

from .logger import SyncLogger
from .service import Systemctl


class ReloadResult(str, enum.Enum):
    RELOADED = "reloaded"
    RESTARTED = "restarted"
    FAILED = "failed"

    @property
    def ok(self) -> bool:
        return self is not ReloadResult.FAILED


class ReloadCoordinator:
    def __init__(self, service: str, systemctl: Systemctl | None = None, events: SyncLogger | None = None):
        self.service = service
        self.systemctl = systemctl or Systemctl()
        self.events = events or SyncLogger(None, console=False)

    def reload(self) -> ReloadResult:
        if self.systemctl.run("reload", self.service):
            result = ReloadResult.RELOADED
        else:
            self.events.log.warning("%s reload failed, attempting restart", self.service)
            if self.systemctl.run("restart", self.service):
                result = ReloadResult.RESTARTED
            else:
                result = ReloadResult.FAILED
        self.events.reload(self.service, result.value)
        return result
