from dataclasses import dataclass
import os
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv

from .errors import ConfigError
from .models import EncryptionScheme

_TRUE = {"1", "true", "yes", "y"}
_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUE


def _level(value: str) -> str:
    level = value.strip().upper()
    if level not in _LEVELS:
        raise ValueError(f"unknown log level: {value!r}")
    return level


@dataclass
class Config:
    enabled: bool
    interval: float
    scheme: EncryptionScheme
    userlist_path: str
    userlist_owner: Optional[str]
    userlist_group: Optional[str]
    backup_keep: int
    proxy_service: str
    state_path: str
    log_path: str
    log_level: str
    service_name: str
    snapshot_strategy: str
    snapshot_retries: int
    snapshot_retry_delay: float
    lock_timeout: float
    excluded_users: Tuple[str, ...]
    dsn: str
    connect_timeout: int
    superuser: str
    superuser_password: Optional[str]
    allow_plaintext_fallback: bool

    @property
    def lock_path(self) -> str:
        return self.state_path + ".lock"


def load_config():
    load_dotenv(override=True)
    try:
        return _from_env()
    except ValueError as e:
        raise ConfigError(f"invalid configuration: {e}") from e


def _from_env() -> Config:
    excluded = os.getenv("PG_USER_MONITOR_EXCLUDE", "postgres_exporter")
    return Config(
        enabled=_flag("PG_USER_MONITOR_ENABLED", "true"),
        interval=float(os.getenv("PG_USER_MONITOR_INTERVAL", 30)),
        scheme=EncryptionScheme.parse(os.getenv("PGB_AUTH_TYPE", "scram-sha-256")),
        userlist_path=os.getenv("PGB_USERLIST_PATH", "/etc/pgbouncer/userlist.txt"),
        userlist_owner=os.getenv("PGB_USERLIST_OWNER", "postgres") or None,
        userlist_group=os.getenv("PGB_USERLIST_GROUP", "postgres") or None,
        backup_keep=int(os.getenv("PGB_USERLIST_BACKUP_KEEP", 10)),
        proxy_service=os.getenv("PGB_SERVICE_NAME", "pgbouncer"),
        state_path=os.getenv(
            "PG_USER_MONITOR_STATE_FILE", "/var/lib/postgresql/user_monitor_state.json"
        ),
        log_path=os.getenv("PG_USER_MONITOR_LOG_PATH", "/var/log/pg-user-monitor.log"),
        log_level=_level(os.getenv("PG_USER_MONITOR_LOG_LEVEL", "INFO")),
        service_name=os.getenv("PG_USER_MONITOR_SERVICE_NAME", "pg-user-monitor"),
        snapshot_strategy=os.getenv("PG_USER_MONITOR_SNAPSHOT_STRATEGY", "aggregate").lower(),
        snapshot_retries=int(os.getenv("PG_USER_MONITOR_RETRIES", 3)),
        snapshot_retry_delay=float(os.getenv("PG_USER_MONITOR_RETRY_DELAY", 5)),
        lock_timeout=float(os.getenv("PG_USER_MONITOR_LOCK_TIMEOUT", 10)),
        excluded_users=tuple(u.strip() for u in excluded.split(",") if u.strip()),
        dsn=os.getenv("PG_DSN", "dbname=postgres user=postgres"),
        connect_timeout=int(os.getenv("PG_CONNECT_TIMEOUT", 5)),
        superuser=os.getenv("PG_SUPERUSER", "postgres"),
        superuser_password=os.getenv("PG_SUPERUSER_PASSWORD") or None,
        allow_plaintext_fallback=_flag("PG_ALLOW_PLAINTEXT_FALLBACK", "false"),
    )


def to_env(cfg: Config) -> Dict[str, str]:
    """The resolved config as environment variables; load_config() reads it back."""
    return {
        "PG_USER_MONITOR_ENABLED": "true" if cfg.enabled else "false",
        "PG_USER_MONITOR_INTERVAL": f"{cfg.interval:g}",
        "PGB_AUTH_TYPE": cfg.scheme.value,
        "PGB_USERLIST_PATH": cfg.userlist_path,
        "PGB_USERLIST_OWNER": cfg.userlist_owner or "",
        "PGB_USERLIST_GROUP": cfg.userlist_group or "",
        "PGB_USERLIST_BACKUP_KEEP": str(cfg.backup_keep),
        "PGB_SERVICE_NAME": cfg.proxy_service,
        "PG_USER_MONITOR_STATE_FILE": cfg.state_path,
        "PG_USER_MONITOR_LOG_PATH": cfg.log_path,
        "PG_USER_MONITOR_LOG_LEVEL": cfg.log_level,
        "PG_USER_MONITOR_SERVICE_NAME": cfg.service_name,
        "PG_USER_MONITOR_SNAPSHOT_STRATEGY": cfg.snapshot_strategy,
        "PG_USER_MONITOR_RETRIES": str(cfg.snapshot_retries),
        "PG_USER_MONITOR_RETRY_DELAY": f"{cfg.snapshot_retry_delay:g}",
        "PG_USER_MONITOR_LOCK_TIMEOUT": f"{cfg.lock_timeout:g}",
        "PG_USER_MONITOR_EXCLUDE": ",".join(cfg.excluded_users),
        "PG_DSN": cfg.dsn,
        "PG_CONNECT_TIMEOUT": str(cfg.connect_timeout),
        "PG_SUPERUSER": cfg.superuser,
        "PG_SUPERUSER_PASSWORD": cfg.superuser_password or "",
        "PG_ALLOW_PLAINTEXT_FALLBACK": "true" if cfg.allow_plaintext_fallback else "false",
    }
