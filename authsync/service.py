"""
authsync.service
~~~~~~~~~~~~~~~~
systemd plumbing: a thin ``systemctl`` runner, and lifecycle management
of the monitor's own unit (install / start / stop / restart / status).
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import sys
import time
from pathlib import Path
from typing import Callable, List, Sequence

from .config import Config, to_env
from .errors import ServiceError

log = logging.getLogger(__name__)

UNIT_DIR = Path("/etc/systemd/system")
ENV_DIR = Path("/etc/default")


class Systemctl:
    def __init__(self, timeout: float = 60.0, binary: str = "systemctl"):
        self.timeout = timeout
        self.binary = binary

    def run(self, *args: str) -> bool:
        cmd = [self.binary, *args]
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except (OSError, subprocess.TimeoutExpired) as e:
            log.warning("%s failed: %s", shlex.join(cmd), e)
            return False
        if proc.returncode != 0:
            log.debug("%s exited %d: %s", shlex.join(cmd), proc.returncode, proc.stderr.strip())
        return proc.returncode == 0

    def is_active(self, unit: str) -> bool:
        return self.run("is-active", "--quiet", unit)


def render_env(cfg: Config) -> str:
    """Every setting the daemon needs, in ``EnvironmentFile=`` syntax."""
    lines = ["# written by pg-authsync setup; rerun setup after changing the config"]
    for key, value in to_env(cfg).items():
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        lines.append(f'{key}="{escaped}"')
    return "\n".join(lines) + "\n"


def render_unit(cfg: Config, exec_start: Sequence[str], env_path: Path) -> str:
    lines = [
        "[Unit]",
        "Description=PostgreSQL user monitor for pgbouncer",
        f"After=postgresql.service {cfg.proxy_service}.service",
        "Requires=postgresql.service",
        f"Wants={cfg.proxy_service}.service",
        "",
        "[Service]",
        "Type=simple",
        f"EnvironmentFile={env_path}",
        f"ExecStart={shlex.join(exec_start)}",
        "Restart=always",
        "RestartSec=10",
        "",
        "[Install]",
        "WantedBy=multi-user.target",
        "",
    ]
    return "\n".join(lines)


class MonitorService:
    def __init__(
        self,
        cfg: Config,
        systemctl: Systemctl | None = None,
        unit_dir: Path = UNIT_DIR,
        sleep: Callable[[float], None] = time.sleep,
        env_dir: Path = ENV_DIR,
    ):
        self.cfg = cfg
        self.systemctl = systemctl or Systemctl()
        self.unit_path = Path(unit_dir) / f"{cfg.service_name}.service"
        self.env_path = Path(env_dir) / cfg.service_name
        self.sleep = sleep

    @property
    def unit(self) -> str:
        return self.cfg.service_name

    def install(self, exec_start: List[str] | None = None) -> Path:
        exec_start = exec_start or [sys.executable, "-m", "authsync.cli", "--daemon"]
        try:
            # holds the superuser password: owner-only from the first byte
            fd = os.open(self.env_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                os.fchmod(fh.fileno(), 0o600)
                fh.write(render_env(self.cfg))
        except OSError as e:
            raise ServiceError(f"cannot write {self.env_path}: {e}") from e
        try:
            self.unit_path.write_text(
                render_unit(self.cfg, exec_start, self.env_path), encoding="utf-8"
            )
            self.unit_path.chmod(0o644)
        except OSError as e:
            raise ServiceError(f"cannot write {self.unit_path}: {e}") from e
        if not self.systemctl.run("daemon-reload"):
            raise ServiceError("systemctl daemon-reload failed")
        if not self.systemctl.run("enable", self.unit):
            raise ServiceError(f"cannot enable {self.unit}")
        log.info("systemd unit installed and enabled: %s", self.unit_path)
        return self.unit_path

    def start(self) -> None:
        self.systemctl.run("stop", self.unit)
        if not self.systemctl.run("start", self.unit):
            raise ServiceError(f"failed to start {self.unit}")
        if not self.systemctl.is_active(self.unit):
            raise ServiceError(f"{self.unit} started but is not active")
        log.info("%s is running", self.unit)

    def stop(self) -> None:
        if not self.systemctl.run("stop", self.unit):
            raise ServiceError(f"failed to stop {self.unit}")
        log.info("%s stopped", self.unit)

    def restart(self) -> None:
        self.stop()
        self.sleep(2)
        self.start()

    def status(self) -> bool:
        active = self.systemctl.is_active(self.unit)
        if active:
            log.info("%s is running", self.unit)
        else:
            log.warning("%s is not running", self.unit)
        return active
