"""
authsync.models
~~~~~~~~~~~~~~~
Plain value types shared by every stage of the pipeline.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Tuple

_MD5_RE = re.compile(r"^md5[0-9a-f]{32}$")
_SCRAM_PREFIX = "SCRAM-SHA-256$"


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class EncryptionScheme(str, enum.Enum):
    SCRAM = "scram-sha-256"
    MD5 = "md5"
    PLAIN = "plain"

    @classmethod
    def parse(cls, value: str) -> "EncryptionScheme":
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(f"unknown encryption scheme: {value!r}") from None

    @classmethod
    def of_hash(cls, secret: str) -> Optional["EncryptionScheme"]:
        """Classify a stored secret; None for an empty one."""
        if not secret:
            return None
        if secret.startswith(_SCRAM_PREFIX):
            return cls.SCRAM
        if _MD5_RE.match(secret):
            return cls.MD5
        return cls.PLAIN

    def matches(self, secret: str) -> bool:
        return EncryptionScheme.of_hash(secret) is self

    @property
    def hashable(self) -> bool:
        """True if the catalog can derive this format from a plaintext."""
        return self is not EncryptionScheme.PLAIN


@dataclass(frozen=True, slots=True)
class Principal:
    username: str
    password_hash: str
    can_login: bool
    valid_until: Optional[datetime] = None
    last_observed: datetime = field(default_factory=utcnow, compare=False)

    def same_credentials(self, other: "Principal") -> bool:
        return (
            self.password_hash == other.password_hash
            and self.can_login == other.can_login
            and self.valid_until == other.valid_until
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "username": self.username,
            "password_hash": self.password_hash,
            "can_login": self.can_login,
            "valid_until": self.valid_until.isoformat() if self.valid_until else None,
            "last_observed": self.last_observed.isoformat(),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Principal":
        vu = d.get("valid_until") or None
        lo = d.get("last_observed")
        return cls(
            username=d["username"],
            password_hash=d.get("password_hash") or "",
            can_login=bool(d["can_login"]),
            valid_until=datetime.fromisoformat(vu) if vu else None,
            last_observed=datetime.fromisoformat(lo) if lo else utcnow(),
        )


@dataclass(frozen=True, slots=True)
class Snapshot:
    taken_at: datetime
    principals: Tuple[Principal, ...]

    def __post_init__(self) -> None:
        names = [p.username for p in self.principals]
        if len(names) != len(set(names)):
            raise ValueError("snapshot contains duplicate usernames")

    @classmethod
    def build(cls, principals: Iterable[Principal], taken_at: datetime | None = None) -> "Snapshot":
        ordered = tuple(sorted(principals, key=lambda p: p.username))
        return cls(taken_at=taken_at or utcnow(), principals=ordered)

    @classmethod
    def empty(cls) -> "Snapshot":
        return cls.build(())

    def as_map(self) -> Dict[str, Principal]:
        return {p.username: p for p in self.principals}

    def __len__(self) -> int:
        return len(self.principals)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "taken_at": self.taken_at.isoformat(),
            "principals": [p.to_dict() for p in self.principals],
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Snapshot":
        return cls.build(
            (Principal.from_dict(p) for p in d.get("principals") or []),
            taken_at=datetime.fromisoformat(d["taken_at"]),
        )


@dataclass(frozen=True, slots=True)
class Delta:
    added: Tuple[Principal, ...] = ()
    modified: Tuple[Principal, ...] = ()
    deleted: Tuple[Principal, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.modified or self.deleted)

    def usernames(self) -> Tuple[set, set, set]:
        return (
            {p.username for p in self.added},
            {p.username for p in self.modified},
            {p.username for p in self.deleted},
        )

    def summary(self) -> Dict[str, int]:
        return {
            "added": len(self.added),
            "modified": len(self.modified),
            "deleted": len(self.deleted),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "added": [p.to_dict() for p in self.added],
            "modified": [p.to_dict() for p in self.modified],
            "deleted": [p.to_dict() for p in self.deleted],
        }


@dataclass(frozen=True, slots=True)
class AuthFileEntry:
    username: str
    password_hash: str

    def render(self) -> str:
        user = self.username.replace('"', '""')
        secret = self.password_hash.replace('"', '""')
        return f'"{user}" "{secret}"'
