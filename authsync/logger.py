"""
authsync.logger
~~~~~~~~~~~~~~~
Human-readable console lines *and* JSON logs with daily rotation.

Structured events are logged as dicts; ordinary ``logging.getLogger(__name__)``
string messages from the other modules go through the same handlers.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

_ISO = "%Y-%m-%dT%H:%M:%SZ"
ROOT = "authsync"


def _now() -> str:  # RFC-3339 without microseconds
    return datetime.now(tz=timezone.utc).strftime(_ISO)


def _as_event(record: logging.LogRecord) -> Dict[str, Any]:
    if isinstance(record.msg, dict):
        return record.msg
    return {
        "event": "log",
        "ts": _now(),
        "level": record.levelname.lower(),
        "logger": record.name,
        "msg": record.getMessage(),
    }


class _PlainFormatter(logging.Formatter):
    """ e.g. 2025-06-19T15:07:02Z WARNING sync alice skipped: hash is md5 """

    def format(self, record):  # type: ignore[override]
        if not isinstance(record.msg, dict):
            line = f"{_now()} {record.levelname} {record.getMessage()}"
            if record.exc_info:
                line += "\n" + self.formatException(record.exc_info)
            return line

        d = record.msg
        parts = [
            d.get("ts", _now()),
            record.levelname,
            d.get("stage", "-"),
            d.get("user", "-"),
            d.get("event", "-"),
        ]
        for key in ("action", "outcome", "result", "cause"):
            if key in d:
                parts.append(f"{key}={d[key]}")
        if "delta" in d:
            parts.append(" ".join(f"{k}={v}" for k, v in d["delta"].items()))
        if "ms" in d:
            parts.append(f'{d["ms"]} ms')
        return " ".join(str(p) for p in parts)


class _JSONFormatter(logging.Formatter):
    def format(self, record):  # type: ignore[override]
        return json.dumps(_as_event(record), separators=(",", ":"), default=str)


class SyncLogger:
    def __init__(
        self,
        basename: str | Path | None,
        level: str = "INFO",
        console: bool = True,
    ):
        root = logging.getLogger(ROOT)
        root.setLevel(getattr(logging, level, logging.INFO))

        for old in list(root.handlers):
            if getattr(old, "_authsync", False):
                root.removeHandler(old)
                old.close()

        if basename is not None:
            basename = Path(basename).with_suffix("")  # pg-user-monitor
            jsonl_file = basename.with_suffix(".jsonl")
            jsonl_file.parent.mkdir(parents=True, exist_ok=True)

            # json lines
            h = logging.handlers.TimedRotatingFileHandler(
                jsonl_file, when="midnight", backupCount=7, encoding="utf-8"
            )
            h.setFormatter(_JSONFormatter())
            h._authsync = True  # type: ignore[attr-defined]
            root.addHandler(h)

        if console:
            c = logging.StreamHandler(sys.stderr)
            c.setFormatter(_PlainFormatter())
            c._authsync = True  # type: ignore[attr-defined]
            root.addHandler(c)

        # don't spam the root logger once we have our own handlers
        root.propagate = not root.handlers
        self.log = root

    def stage(self, stage: str, event: str, **fields: Any) -> None:
        self.log.debug({"event": event, "ts": _now(), "stage": stage, **fields})

    def principal(self, stage: str, user: str, action: str, **fields: Any) -> None:
        self.log.info(
            {"event": "principal", "ts": _now(), "stage": stage, "user": user, "action": action, **fields}
        )

    def skipped(self, stage: str, user: str, cause: str) -> None:
        self.log.warning(
            {"event": "skipped", "ts": _now(), "stage": stage, "user": user, "cause": cause}
        )

    def mutation(self, user: str, action: str) -> None:
        self.log.warning(
            {"event": "mutation", "ts": _now(), "stage": "extract", "user": user, "action": action}
        )

    def failure(self, stage: str, cause: BaseException, user: Optional[str] = None) -> None:
        self.log.error(
            {
                "event": "failure",
                "ts": _now(),
                "stage": stage,
                "user": user or "-",
                "cause": f"{type(cause).__name__}: {cause}",
            }
        )

    def cycle_end(self, outcome: str, delta: Dict[str, int] | None, duration_ms: int) -> None:
        event = {"event": "cycle", "ts": _now(), "stage": "monitor", "outcome": outcome, "ms": duration_ms}
        if delta is not None:
            event["delta"] = delta
        self.log.info(event)

    def reload(self, service: str, result: str) -> None:
        level = logging.ERROR if result == "failed" else logging.INFO
        self.log.log(
            level,
            {"event": "reload", "ts": _now(), "stage": "reload", "user": service, "result": result},
        )
