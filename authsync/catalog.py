"""
authsync.catalog
~~~~~~~~~~~~~~~~
Typed psycopg2 client over PostgreSQL's authentication catalog.

Read side: principals from ``pg_authid`` (one aggregated JSON document or
one row per role), single stored hashes, the ``pg_shadow`` view and a
``COPY ... TO STDOUT`` export.  Write side (self-heal only): the
server-wide ``password_encryption`` default and a role's password.

Driver exceptions are translated into ConnectivityError / PrivilegeError /
CatalogError so callers never import psycopg2.
"""

from __future__ import annotations

import io
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import psycopg2
import psycopg2.errors
from psycopg2 import sql

from .errors import CatalogError, ConnectivityError, PrivilegeError
from .models import EncryptionScheme

log = logging.getLogger(__name__)

# Roles with VALID UNTIL 'infinity' come back as NULL (never expires).
_VALID_UNTIL = "CASE WHEN isfinite(rolvaliduntil) THEN rolvaliduntil END"

_AGGREGATE_SQL = f"""
SELECT COALESCE(
         json_agg(
           json_build_object(
             'username', rolname,
             'password_hash', COALESCE(rolpassword, ''),
             'can_login', rolcanlogin,
             'valid_until', {_VALID_UNTIL}
           ) ORDER BY rolname
         ),
         '[]'::json)
  FROM pg_catalog.pg_authid
 WHERE {{where}}
"""

_ROWS_SQL = f"""
SELECT rolname, rolpassword, rolcanlogin, {_VALID_UNTIL}
  FROM pg_catalog.pg_authid
 ORDER BY rolname
"""

# quotes doubled server-side, as in userlist.txt
_EXPORT_SQL = sql.SQL(
    "COPY (SELECT '\"' || replace(rolname, '\"', '\"\"') || '\" \"' "
    "|| replace(rolpassword, '\"', '\"\"') || '\"' "
    "FROM pg_catalog.pg_authid WHERE rolname = {}) TO STDOUT"
)

Row = Tuple[str, Optional[str], bool, Any]


class CatalogClient:
    def __init__(self, dsn: str, connect_timeout: int = 5, password: Optional[str] = None):
        self.dsn = dsn
        self.connect_timeout = connect_timeout
        self._password = password
        self._conn = None

    # ------------------------------------------------------------------ #
    # connection
    # ------------------------------------------------------------------ #

    def connect(self):
        if self._conn is not None and not self._conn.closed:
            return self._conn
        kwargs: Dict[str, Any] = {"connect_timeout": self.connect_timeout}
        if self._password and "password=" not in self.dsn:
            kwargs["password"] = self._password
        with _translate("connect"):
            conn = psycopg2.connect(self.dsn, **kwargs)
        # ALTER SYSTEM refuses to run inside a transaction block.
        conn.autocommit = True
        self._conn = conn
        return conn

    def close(self) -> None:
        if self._conn is not None and not self._conn.closed:
            self._conn.close()
        self._conn = None

    def __enter__(self) -> "CatalogClient":
        self.connect()
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @contextmanager
    def _cursor(self, what: str) -> Iterator[Any]:
        conn = self.connect()
        try:
            with _translate(what):
                with conn.cursor() as cur:
                    yield cur
        except ConnectivityError:
            # a dead connection must not be reused on the next attempt
            self.close()
            raise

    # ------------------------------------------------------------------ #
    # read side
    # ------------------------------------------------------------------ #

    def fetch_principals_json(self, where: str = "TRUE", params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        with self._cursor("aggregate read") as cur:
            cur.execute(_AGGREGATE_SQL.format(where=where), tuple(params))
            row = cur.fetchone()
        doc = row[0] if row else None
        if doc is None:
            return []
        if not isinstance(doc, list):
            raise CatalogError(f"aggregate read returned {type(doc).__name__}, expected list")
        return doc

    def fetch_principal_rows(self) -> List[Row]:
        with self._cursor("row read") as cur:
            cur.execute(_ROWS_SQL)
            return list(cur.fetchall())

    def read_stored_hash(self, username: str) -> Optional[str]:
        with self._cursor("hash read") as cur:
            cur.execute(
                "SELECT rolpassword FROM pg_catalog.pg_authid WHERE rolname = %s",
                (username,),
            )
            row = cur.fetchone()
        return row[0] if row else None

    def read_shadow(self) -> Dict[str, Optional[str]]:
        with self._cursor("pg_shadow read") as cur:
            cur.execute("SELECT usename, passwd FROM pg_catalog.pg_shadow")
            return {name: passwd for name, passwd in cur.fetchall()}

    def export_entry(self, username: str) -> str:
        """Userlist line(s) for *username*, produced server-side by COPY."""
        conn = self.connect()
        query = _EXPORT_SQL.format(sql.Literal(username))
        buf = io.StringIO()
        with self._cursor("export") as cur:
            cur.copy_expert(query.as_string(conn), buf)
        return buf.getvalue()

    def password_encryption(self) -> str:
        with self._cursor("show password_encryption") as cur:
            cur.execute("SHOW password_encryption")
            return str(cur.fetchone()[0]).strip()

    def server_version(self) -> str:
        with self._cursor("show server_version") as cur:
            cur.execute("SHOW server_version")
            return str(cur.fetchone()[0]).strip()

    def can_read(self, relation: str) -> bool:
        try:
            with self._cursor(f"{relation} read check") as cur:
                cur.execute(
                    sql.SQL("SELECT count(*) FROM pg_catalog.{}").format(sql.Identifier(relation))
                )
                cur.fetchone()
        except PrivilegeError:
            return False
        return True

    # ------------------------------------------------------------------ #
    # write side (self-heal only)
    # ------------------------------------------------------------------ #

    def set_default_scheme(self, scheme: EncryptionScheme) -> None:
        with self._cursor("alter system") as cur:
            cur.execute("ALTER SYSTEM SET password_encryption = %s", (scheme.value,))
            cur.execute("SELECT pg_reload_conf()")

    def reset_password(self, username: str, plaintext: str, scheme: EncryptionScheme) -> None:
        # pg_reload_conf() is asynchronous; pin the scheme for this session.
        with self._cursor("alter role") as cur:
            cur.execute("SET password_encryption = %s", (scheme.value,))
            cur.execute(
                sql.SQL("ALTER ROLE {} PASSWORD %s").format(sql.Identifier(username)),
                (plaintext,),
            )


@contextmanager
def _translate(what: str) -> Iterator[None]:
    try:
        yield
    except psycopg2.errors.InsufficientPrivilege as e:
        raise PrivilegeError(f"{what}: {e}".strip()) from e
    except psycopg2.OperationalError as e:
        raise ConnectivityError(f"{what}: {e}".strip()) from e
    except psycopg2.Error as e:
        raise CatalogError(f"{what}: {e}".strip()) from e
