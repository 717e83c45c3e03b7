import hashlib
from datetime import datetime
from pathlib import Path

import pytest

from authsync.errors import ConnectivityError, PrivilegeError
from authsync.logger import SyncLogger
from authsync.models import EncryptionScheme, Principal, Snapshot

SCRAM_ALICE = "SCRAM-SHA-256$4096:c2FsdA==$YWxpY2Vfc3RvcmVk:YWxpY2Vfc2VydmVy"
SCRAM_BOB_1 = "SCRAM-SHA-256$4096:c2FsdA==$Ym9iXzE=:Ym9iXzE="
SCRAM_BOB_2 = "SCRAM-SHA-256$4096:c2FsdA==$Ym9iXzI=:Ym9iXzI="


def scram_of(name: str, plaintext: str) -> str:
    digest = hashlib.sha256(f"{name}:{plaintext}".encode()).hexdigest()
    return f"SCRAM-SHA-256$4096:c2FsdA==${digest[:16]}:{digest[16:32]}"


def md5_of(name: str, plaintext: str) -> str:
    return "md5" + hashlib.md5((plaintext + name).encode()).hexdigest()


def principal(name, password_hash="", can_login=True, valid_until=None):
    return Principal(
        username=name,
        password_hash=password_hash,
        can_login=can_login,
        valid_until=valid_until,
    )


def snapshot(*principals):
    return Snapshot.build(principals)


class FakeCatalog:
    """In-memory stand-in for CatalogClient."""

    def __init__(self, encryption="scram-sha-256"):
        self.roles = {}
        self.encryption = encryption
        self.mutations = []
        self.calls = []
        self.unreachable = 0
        self.denied = set()
        self.empty = set()
        self.closed = False

    def add(self, name, password_hash="", can_login=True, valid_until=None):
        self.roles[name] = {
            "password_hash": password_hash,
            "can_login": can_login,
            "valid_until": valid_until,
        }
        return self

    def drop(self, name):
        del self.roles[name]

    def _check(self, what):
        self.calls.append(what)
        if self.unreachable:
            self.unreachable -= 1
            raise ConnectivityError(f"{what}: could not connect to server")
        if what in self.denied:
            raise PrivilegeError(f"{what}: permission denied for table pg_authid")

    # read side

    def fetch_principals_json(self, where="TRUE", params=()):
        self._check("aggregate")
        excluded = set(params[0]) if params else set()
        out = []
        for name, r in sorted(self.roles.items()):
            if name.startswith("pg_") or name in excluded:
                continue
            vu = r["valid_until"]
            out.append(
                {
                    "username": name,
                    "password_hash": r["password_hash"] or "",
                    "can_login": r["can_login"],
                    "valid_until": vu.isoformat() if isinstance(vu, datetime) else vu,
                }
            )
        return out

    def fetch_principal_rows(self):
        self._check("rows")
        return [
            (name, r["password_hash"] or None, r["can_login"], r["valid_until"])
            for name, r in sorted(self.roles.items())
        ]

    def read_stored_hash(self, username):
        self._check("direct")
        if "direct" in self.empty:
            return None
        r = self.roles.get(username)
        return r["password_hash"] if r else None

    def read_shadow(self):
        self._check("bulk")
        if "bulk" in self.empty:
            return {}
        return {n: r["password_hash"] or None for n, r in self.roles.items()}

    def export_entry(self, username):
        self._check("export")
        r = self.roles.get(username)
        if r is None or "export" in self.empty:
            return ""
        quoted = [s.replace('"', '""') for s in (username, r["password_hash"])]
        return '"{}" "{}"\n'.format(*quoted)

    def password_encryption(self):
        self._check("show")
        return self.encryption

    def server_version(self):
        return "16.4"

    def can_read(self, relation):
        return relation not in self.denied

    # write side

    def set_default_scheme(self, scheme):
        self._check("alter system")
        self.mutations.append(("password_encryption", scheme.value))
        self.encryption = scheme.value

    def reset_password(self, username, plaintext, scheme):
        self._check("alter role")
        self.mutations.append(("password", username))
        if scheme is EncryptionScheme.SCRAM:
            self.roles[username]["password_hash"] = scram_of(username, plaintext)
        else:
            self.roles[username]["password_hash"] = md5_of(username, plaintext)

    def close(self):
        self.closed = True


class FakeSystemctl:
    def __init__(self, **results):
        self.results = results
        self.calls = []

    def run(self, *args):
        self.calls.append(args)
        return self.results.get(args[0], True)

    def is_active(self, unit):
        self.calls.append(("is-active", unit))
        return self.results.get("is-active", True)


@pytest.fixture()
def events():
    return SyncLogger(None, console=False)


@pytest.fixture()
def catalog():
    return FakeCatalog()


@pytest.fixture()
def userlist_path(tmp_path: Path) -> Path:
    return tmp_path / "pgbouncer" / "userlist.txt"


@pytest.fixture()
def systemctl():
    return FakeSystemctl()
