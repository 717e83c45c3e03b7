"""
authsync.acls
~~~~~~~~~~~~~
Which catalog principals the proxy is allowed to know about.

Reserved ``pg_*`` roles are never exported; neither is the metrics
service account (and anything else listed in PG_USER_MONITOR_EXCLUDE).
"""

from __future__ import annotations

import fnmatch
from typing import Iterable, Tuple

RESERVED_PATTERNS: Tuple[str, ...] = ("pg_*",)
METRICS_ACCOUNT = "postgres_exporter"


class EligibilityChecker:
    def __init__(self, excluded: Iterable[str] = (METRICS_ACCOUNT,)):
        self.excluded = frozenset(excluded)

    def permit(self, username: str) -> bool:  # noqa: D401
        """Return True if *username* may appear in the auth file."""
        if not username or username in self.excluded:
            return False
        return not any(fnmatch.fnmatchcase(username, pat) for pat in RESERVED_PATTERNS)

    def sql_filter(self) -> Tuple[str, list]:
        """WHERE clause equivalent of permit(), for server-side filtering."""
        clause = r"rolname NOT LIKE 'pg\_%%'"
        params = sorted(self.excluded)
        if params:
            clause += " AND rolname <> ALL(%s)"
            return clause, [params]
        return clause, []
