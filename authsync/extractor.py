"""
authsync.extractor
~~~~~~~~~~~~~~~~~~
Turn one principal's stored secret into a userlist-ready entry in the
proxy's encryption scheme.

Strategies are tried in order; each one only runs if everything before it
failed or produced a hash in the wrong scheme:

    direct     SELECT rolpassword FROM pg_authid
    self-heal  force password_encryption, re-set the known plaintext, re-read
    bulk       scan pg_shadow
    export     COPY ... TO STDOUT, re-parsed as userlist text
    plaintext  the plaintext itself (plain scheme, or unsafe mode only)

Only the bootstrap superuser ever has a plaintext available.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .errors import AuthSyncError, ExtractionError, SchemeMismatchError
from .logger import SyncLogger
from .models import AuthFileEntry, EncryptionScheme
from .userlist import parse_text

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Target:
    username: str
    plaintext: Optional[str] = field(default=None, repr=False)


@dataclass(frozen=True)
class Attempt:
    hash: Optional[str] = None
    error: Optional[Exception] = None
    insecure: bool = False

    @property
    def ok(self) -> bool:
        return self.hash is not None and self.error is None


@dataclass(frozen=True)
class ExtractedHash:
    entry: AuthFileEntry
    strategy: str
    insecure: bool = False


def _validated(username: str, stored: Optional[str], scheme: EncryptionScheme) -> Attempt:
    stored = (stored or "").strip()
    if not stored:
        return Attempt(error=ExtractionError("no stored hash", principal=username))
    if not scheme.matches(stored):
        found = EncryptionScheme.of_hash(stored)
        return Attempt(error=SchemeMismatchError(username, found.value, scheme.value))
    return Attempt(hash=stored)


class Strategy:
    name = "?"

    def attempt(self, principal: Target, scheme: EncryptionScheme) -> Attempt:
        raise NotImplementedError


class DirectRead(Strategy):
    name = "direct"

    def __init__(self, catalog):
        self.catalog = catalog

    def attempt(self, principal, scheme):
        try:
            stored = self.catalog.read_stored_hash(principal.username)
        except AuthSyncError as e:
            return Attempt(error=e)
        return _validated(principal.username, stored, scheme)


class SelfHeal(Strategy):
    """Re-derive the hash server-side from the known plaintext.

    Mutates the catalog: possibly the server-wide default scheme, and the
    principal's password (same plaintext, new encoding).
    """

    name = "self-heal"

    def __init__(self, catalog, events: SyncLogger):
        self.catalog = catalog
        self.events = events

    def attempt(self, principal, scheme):
        if principal.plaintext is None:
            return Attempt(error=ExtractionError("no plaintext credential", principal=principal.username))
        if not scheme.hashable:
            return Attempt(error=ExtractionError(f"catalog cannot derive {scheme.value}", principal=principal.username))
        try:
            current = self.catalog.password_encryption()
            if current != scheme.value:
                self.events.mutation(
                    principal.username, f"password_encryption {current} -> {scheme.value}"
                )
                self.catalog.set_default_scheme(scheme)
            self.events.mutation(principal.username, f"password re-set as {scheme.value}")
            self.catalog.reset_password(principal.username, principal.plaintext, scheme)
            stored = self.catalog.read_stored_hash(principal.username)
        except AuthSyncError as e:
            return Attempt(error=e)
        return _validated(principal.username, stored, scheme)


class BulkRead(Strategy):
    name = "bulk"

    def __init__(self, catalog):
        self.catalog = catalog

    def attempt(self, principal, scheme):
        try:
            shadow = self.catalog.read_shadow()
        except AuthSyncError as e:
            return Attempt(error=e)
        return _validated(principal.username, shadow.get(principal.username), scheme)


class ExportRead(Strategy):
    name = "export"

    def __init__(self, catalog):
        self.catalog = catalog

    def attempt(self, principal, scheme):
        try:
            text = self.catalog.export_entry(principal.username)
        except AuthSyncError as e:
            return Attempt(error=e)
        return _validated(principal.username, parse_text(text).get(principal.username), scheme)


class PlaintextFallback(Strategy):
    name = "plaintext"

    def __init__(self, allow_insecure: bool = False):
        self.allow_insecure = allow_insecure

    def attempt(self, principal, scheme):
        if principal.plaintext is None:
            return Attempt(error=ExtractionError("no plaintext credential", principal=principal.username))
        if scheme is not EncryptionScheme.PLAIN and not self.allow_insecure:
            return Attempt(
                error=ExtractionError(
                    "plaintext fallback disabled (PG_ALLOW_PLAINTEXT_FALLBACK)",
                    principal=principal.username,
                )
            )
        return Attempt(hash=principal.plaintext, insecure=True)


class HashExtractor:
    def __init__(
        self,
        catalog,
        events: Optional[SyncLogger] = None,
        allow_plaintext_fallback: bool = False,
        strategies: Optional[Sequence[Strategy]] = None,
    ):
        self.events = events or SyncLogger(None, console=False)
        if strategies is None:
            strategies = (
                DirectRead(catalog),
                SelfHeal(catalog, self.events),
                BulkRead(catalog),
                ExportRead(catalog),
                PlaintextFallback(allow_plaintext_fallback),
            )
        self.strategies: List[Strategy] = list(strategies)

    def extract(
        self,
        username: str,
        scheme: EncryptionScheme,
        plaintext: Optional[str] = None,
    ) -> ExtractedHash:
        target = Target(username, plaintext)
        causes = []
        mismatch: Optional[SchemeMismatchError] = None
        for strategy in self.strategies:
            result = strategy.attempt(target, scheme)
            if result.ok:
                if result.insecure:
                    self.events.log.warning(
                        "using plaintext as %s's userlist secret; this is not secure, "
                        "fix password_encryption and re-run setup",
                        username,
                    )
                self.events.principal("extract", username, "extracted", strategy=strategy.name)
                return ExtractedHash(
                    entry=AuthFileEntry(username, result.hash),
                    strategy=strategy.name,
                    insecure=result.insecure,
                )
            log.debug("extract %s: %s failed: %s", username, strategy.name, result.error)
            causes.append(f"{strategy.name}: {result.error}")
            if isinstance(result.error, SchemeMismatchError):
                mismatch = result.error

        if mismatch is not None and plaintext is None:
            self.events.skipped("extract", username, str(mismatch))
        raise ExtractionError(
            f"all strategies failed for {username!r} ({'; '.join(causes)})",
            principal=username,
        )
