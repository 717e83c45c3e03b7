"""
authsync.errors
~~~~~~~~~~~~~~~
Exception hierarchy.  Every error knows the pipeline *stage* it came from
and, where there is one, the *principal* it concerns, so the daemon can
log it and move on to the next tick.
"""

from __future__ import annotations


class AuthSyncError(Exception):
    stage = "-"

    def __init__(self, msg: str, *, principal: str | None = None, stage: str | None = None):
        self.msg = msg
        self.principal = principal
        if stage is not None:
            self.stage = stage
        super().__init__(msg)


class CatalogError(AuthSyncError):
    stage = "catalog"


class ConnectivityError(CatalogError):
    """Catalog unreachable; retried a bounded number of times."""


class PrivilegeError(CatalogError):
    """Authentication table not readable (or not writable for self-heal)."""


class SchemeMismatchError(AuthSyncError):
    stage = "extract"

    def __init__(self, principal: str, found: str, wanted: str):
        self.found = found
        self.wanted = wanted
        super().__init__(
            f"hash for {principal!r} is {found}, expected {wanted}", principal=principal
        )


class ExtractionError(AuthSyncError):
    stage = "extract"


class SnapshotError(AuthSyncError):
    stage = "snapshot"


class WriteError(AuthSyncError):
    stage = "sync"


class ReloadError(AuthSyncError):
    stage = "reload"


class LockError(AuthSyncError):
    stage = "lock"


class ServiceError(AuthSyncError):
    stage = "service"


class ConfigError(AuthSyncError, ValueError):
    stage = "config"
