"""
authsync.cli
~~~~~~~~~~~~
Command surface.  Exit codes: 0 success, 1 handled failure, 2 internal error.

    setup      one-time bootstrap: superuser hash, initial sync, systemd unit
    --daemon   run the monitor loop until SIGTERM
    sync       run exactly one cycle against the stored baseline
    start / stop / restart / status
               lifecycle of the monitor's own systemd unit
    diagnose   report why hash extraction might fail for a user
"""

from __future__ import annotations

import argparse
import configparser
import sys
from pathlib import Path
from typing import List, Optional

from .catalog import CatalogClient
from .config import Config, load_config
from .core import build_monitor, run_monitor
from .errors import AuthSyncError, ServiceError
from .extractor import HashExtractor
from .logger import SyncLogger
from .models import EncryptionScheme
from .service import MonitorService, Systemctl

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INTERNAL = 2

COMMANDS = ("setup", "start", "stop", "restart", "status", "sync", "diagnose")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="pg-authsync",
        description="Keep pgbouncer's userlist.txt in sync with PostgreSQL roles.",
    )
    p.add_argument("command", nargs="?", choices=COMMANDS, default="setup")
    p.add_argument("user", nargs="?", help="principal to inspect (diagnose only)")
    p.add_argument("--daemon", action="store_true", help="run the monitor loop (used by systemd)")
    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    events = SyncLogger(None)

    try:
        cfg = load_config()
        events = _open_log(cfg)
        if args.daemon:
            return cmd_daemon(cfg, events)
        handler = {
            "setup": cmd_setup,
            "sync": cmd_sync,
            "start": lambda c, e: _lifecycle(c, "start"),
            "stop": lambda c, e: _lifecycle(c, "stop"),
            "restart": lambda c, e: _lifecycle(c, "restart"),
            "status": lambda c, e: EXIT_OK if MonitorService(c).status() else EXIT_FAILED,
            "diagnose": lambda c, e: cmd_diagnose(c, e, args.user or c.superuser),
        }[args.command]
        return handler(cfg, events)
    except AuthSyncError as e:
        events.failure(e.stage, e, user=e.principal)
        return EXIT_FAILED
    except Exception:  # noqa: BLE001
        events.log.exception("internal error")
        return EXIT_INTERNAL


def _open_log(cfg: Config) -> SyncLogger:
    try:
        return SyncLogger(cfg.log_path, cfg.log_level)
    except OSError as e:
        events = SyncLogger(None, cfg.log_level)
        events.log.warning("cannot open log file %s (%s), logging to stderr only", cfg.log_path, e)
        return events


def cmd_daemon(cfg: Config, events: SyncLogger) -> int:
    if not cfg.enabled:
        events.log.info("PostgreSQL user monitor is disabled (PG_USER_MONITOR_ENABLED != true)")
        return EXIT_OK
    run_monitor(cfg, events)
    return EXIT_OK


def cmd_sync(cfg: Config, events: SyncLogger) -> int:
    monitor, catalog = build_monitor(cfg, events)
    try:
        report = monitor.run_cycle()
    finally:
        catalog.close()
    return EXIT_OK if report.ok else EXIT_FAILED


def cmd_setup(cfg: Config, events: SyncLogger, systemctl: Systemctl | None = None) -> int:
    if not cfg.enabled:
        events.log.info("PostgreSQL user monitor is disabled (PG_USER_MONITOR_ENABLED != true)")
        return EXIT_OK

    systemctl = systemctl or Systemctl()
    if not systemctl.is_active("postgresql"):
        raise ServiceError("PostgreSQL service is not running")

    monitor, catalog = build_monitor(cfg, events)
    try:
        if cfg.superuser_password:
            extractor = monitor.snapshotter.extractor
            got = extractor.extract(cfg.superuser, cfg.scheme, cfg.superuser_password)
            events.log.info(
                "bootstrap hash for %s obtained via %s%s",
                cfg.superuser, got.strategy, " (INSECURE)" if got.insecure else "",
            )
        monitor.synchronizer.ensure_exists()
        report = monitor.run_cycle()
    finally:
        catalog.close()
    if not report.ok:
        events.log.error("failed to create initial pgbouncer userlist")
        return EXIT_FAILED

    service = MonitorService(cfg, systemctl)
    service.install()
    service.start()
    events.log.info("PostgreSQL user monitor setup completed successfully")
    return EXIT_OK


def _lifecycle(cfg: Config, action: str) -> int:
    getattr(MonitorService(cfg), action)()
    return EXIT_OK


def cmd_diagnose(cfg: Config, events: SyncLogger, user: str) -> int:
    out = events.log
    out.info("running password hash diagnostic for user: %s", user)
    catalog = CatalogClient(cfg.dsn, cfg.connect_timeout, password=cfg.superuser_password)
    try:
        out.info("PostgreSQL version: %s", catalog.server_version())
        out.info("password_encryption: %s", catalog.password_encryption())
        for relation in ("pg_authid", "pg_shadow"):
            out.info("%s readable: %s", relation, "yes" if catalog.can_read(relation) else "NO")

        auth_type = proxy_auth_type(Path(cfg.userlist_path).parent / "pgbouncer.ini")
        out.info("pgbouncer auth_type: %s (configured: %s)", auth_type or "unknown", cfg.scheme.value)

        # no plaintext here: diagnosing must never mutate the catalog
        extractor = HashExtractor(catalog, events, allow_plaintext_fallback=False)
        try:
            got = extractor.extract(user, cfg.scheme)
        except AuthSyncError as e:
            out.error("hash extraction failed: %s", e)
            stored = catalog.read_stored_hash(user)
            found = EncryptionScheme.of_hash(stored or "")
            out.info("stored hash scheme: %s", found.value if found else "none")
            return EXIT_FAILED
        out.info('extraction succeeded via %s: "%s" "********"', got.strategy, user)
        out.info("hash is in %s format", cfg.scheme.value)
        return EXIT_OK
    finally:
        catalog.close()


def proxy_auth_type(ini_path: Path) -> Optional[str]:
    parser = configparser.ConfigParser(strict=False, interpolation=None)
    try:
        parser.read(ini_path, encoding="utf-8")
    except configparser.Error:
        return None
    if parser.has_option("pgbouncer", "auth_type"):
        return parser.get("pgbouncer", "auth_type").strip()
    return None


if __name__ == "__main__":
    sys.exit(main())
