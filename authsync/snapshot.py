"""
authsync.snapshot
~~~~~~~~~~~~~~~~~
Read every proxy-eligible principal from the catalog into one Snapshot.

Two read strategies give the same result:

    aggregate  one json_agg() document, filtered server-side
    rows       one row per role, filtered and typed here

A snapshot is all-or-nothing: one bad record aborts the whole read.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from .acls import EligibilityChecker
from .errors import ConnectivityError, ExtractionError, SnapshotError
from .extractor import HashExtractor
from .logger import SyncLogger
from .models import EncryptionScheme, Principal, Snapshot, utcnow

log = logging.getLogger(__name__)

STRATEGIES = ("aggregate", "rows")


class StateSnapshotter:
    def __init__(
        self,
        catalog,
        scheme: EncryptionScheme,
        *,
        eligibility: Optional[EligibilityChecker] = None,
        strategy: str = "aggregate",
        retries: int = 3,
        retry_delay: float = 5.0,
        extractor: Optional[HashExtractor] = None,
        bootstrap_user: Optional[str] = None,
        bootstrap_password: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
        events: Optional[SyncLogger] = None,
    ):
        if strategy not in STRATEGIES:
            raise ValueError(f"unknown snapshot strategy {strategy!r}, expected one of {STRATEGIES}")
        self.catalog = catalog
        self.scheme = scheme
        self.eligibility = eligibility or EligibilityChecker()
        self.strategy = strategy
        self.retries = retries
        self.retry_delay = retry_delay
        self.extractor = extractor
        self.bootstrap_user = bootstrap_user
        self.bootstrap_password = bootstrap_password
        self.sleep = sleep
        self.events = events or SyncLogger(None, console=False)

    def snapshot(self) -> Snapshot:
        taken_at = utcnow()
        records = self._read_with_retry()
        principals = [self._validate(rec, taken_at) for rec in records]
        principals = [p for p in principals if self.eligibility.permit(p.username)]

        names = [p.username for p in principals]
        if len(names) != len(set(names)):
            raise SnapshotError("catalog returned duplicate usernames")

        principals = [self._normalize(p) for p in principals]
        return Snapshot.build(principals, taken_at=taken_at)

    # ------------------------------------------------------------------ #
    # reading
    # ------------------------------------------------------------------ #

    def _read_with_retry(self) -> List[Dict[str, Any]]:
        attempt = 0
        while True:
            attempt += 1
            try:
                return self._read()
            except ConnectivityError as e:
                if attempt > self.retries:
                    raise ConnectivityError(
                        f"catalog unreachable after {attempt} attempts: {e}", stage="snapshot"
                    ) from e
                log.warning(
                    "catalog unreachable (attempt %d/%d), retrying in %gs: %s",
                    attempt, self.retries + 1, self.retry_delay, e,
                )
                self.sleep(self.retry_delay)

    def _read(self) -> List[Dict[str, Any]]:
        if self.strategy == "aggregate":
            where, params = self.eligibility.sql_filter()
            return list(self.catalog.fetch_principals_json(where, params))
        return [_row_to_record(row) for row in self.catalog.fetch_principal_rows()]

    # ------------------------------------------------------------------ #
    # validation / normalization
    # ------------------------------------------------------------------ #

    def _validate(self, rec: Any, observed: datetime) -> Principal:
        if not isinstance(rec, dict):
            raise SnapshotError(f"catalog record is {type(rec).__name__}, expected object")
        username = rec.get("username")
        if not isinstance(username, str) or not username:
            raise SnapshotError(f"catalog record without a username: {sorted(rec)}")
        secret = rec.get("password_hash")
        if secret is None:
            secret = ""
        if not isinstance(secret, str):
            raise SnapshotError("password hash is not text", principal=username)
        can_login = rec.get("can_login")
        if not isinstance(can_login, bool):
            raise SnapshotError(f"can_login is {can_login!r}", principal=username)
        return Principal(
            username=username,
            password_hash=secret.strip(),
            can_login=can_login,
            valid_until=_parse_valid_until(rec.get("valid_until"), username),
            last_observed=observed,
        )

    def _normalize(self, p: Principal) -> Principal:
        if (
            self.extractor is None
            or not self.bootstrap_password
            or p.username != self.bootstrap_user
            or not p.can_login
            or self.scheme.matches(p.password_hash)
        ):
            return p
        try:
            got = self.extractor.extract(p.username, self.scheme, self.bootstrap_password)
        except ExtractionError as e:
            self.events.failure("snapshot", e, user=p.username)
            return p
        return Principal(
            username=p.username,
            password_hash=got.entry.password_hash,
            can_login=p.can_login,
            valid_until=p.valid_until,
            last_observed=p.last_observed,
        )


def _row_to_record(row: Iterable[Any]) -> Dict[str, Any]:
    name, secret, can_login, valid_until = row
    return {
        "username": name,
        "password_hash": secret or "",
        "can_login": can_login,
        "valid_until": valid_until,
    }


def _parse_valid_until(value: Any, username: str) -> Optional[datetime]:
    if value is None or value == "" or value == "infinity":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            pass
    raise SnapshotError(f"unparseable valid_until {value!r}", principal=username)
