"""
guardian.logger
~~~~~~~~~~~~~~~
Access-style plain logs on stdout, or JSON lines with daily rotation.

Records are handed to a queue and written by a listener thread, so the
request path never waits on log I/O.  Ordering is best-effort.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import queue
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

_ISO = "%Y-%m-%dT%H:%M:%SZ"

_MESSAGES = {
    "auth_pass": "Authentication passed, user is {user}",
    "auth_fail": "Authentication failed",
    "authz_pass": "Authorization passed",
    "authz_fail": "Authorization failed",
    "forward": "{status} {ms} ms",
    "reload": "Reloaded {what}",
}

def _now() -> str:  # RFC-3339 without microseconds
    return datetime.now(tz=timezone.utc).strftime(_ISO)


class _PlainFormatter(logging.Formatter):
    """ e.g. 2025-06-19T15:07:02Z 127.0.0.1 "GET /_cluster/health HTTP/1.1" Authorization passed """

    def format(self, record):  # type: ignore[override]
        d: Dict[str, Any] = record.msg if isinstance(record.msg, dict) else {}
        if not d:
            return super().format(record)

        template = _MESSAGES.get(d["event"])
        msg = template.format(**d) if template else d.get("detail", d["event"])
        if "method" not in d:
            return f'{d.get("ts", _now())} {msg}'
        return '{} {} "{} {} {}" {}'.format(
            d.get("ts", _now()),
            d.get("ip", "-"),
            d.get("method", "-"),
            d.get("path", "-"),
            d.get("proto", "-"),
            msg,
        )


class _JSONFormatter(logging.Formatter):
    def format(self, record):  # type: ignore[override]
        if isinstance(record.msg, dict):
            return json.dumps(record.msg, separators=(",", ":"))
        return json.dumps(
            {"event": "log", "ts": _now(), "level": record.levelname, "detail": record.getMessage()},
            separators=(",", ":"),
        )


class _RecordQueueHandler(logging.handlers.QueueHandler):
    """Queue the record as-is; the formatters need the original dict."""

    def prepare(self, record):  # type: ignore[override]
        return record


def _target_handler(path: str) -> logging.Handler:
    if path in ("", "stdout"):
        h: logging.Handler = logging.StreamHandler(sys.stdout)
        h.setFormatter(_PlainFormatter())
        return h

    h = logging.handlers.TimedRotatingFileHandler(
        Path(path), when="midnight", backupCount=7, encoding="utf-8"
    )
    h.setFormatter(_JSONFormatter())
    return h


class GuardianLogger:
    def __init__(self, path: str | Path = "stdout", handler: Optional[logging.Handler] = None):
        root = logging.getLogger("guardian")
        root.setLevel(logging.INFO)
        root.propagate = False  # don't spam the root logger
        for old in list(root.handlers):
            root.removeHandler(old)

        if handler is None:
            handler = _target_handler(str(path))
        elif handler.formatter is None:
            handler.setFormatter(_PlainFormatter())

        q: "queue.SimpleQueue[logging.LogRecord]" = queue.SimpleQueue()
        root.addHandler(_RecordQueueHandler(q))
        self._listener = logging.handlers.QueueListener(q, handler)
        self._listener.start()
        self._closed = False

        self.log = root

    def close(self) -> None:
        """Flush pending records and stop the writer thread."""
        if self._closed:
            return
        self._closed = True
        self._listener.stop()
        for h in self._listener.handlers:
            h.close()

    def _emit(self, level: int, event: str, **fields: Any) -> None:
        self.log.log(level, {"event": event, "ts": _now(), **fields})

    def request(self, event: str, ip: str, method: str, path: str, proto: str, **extra: Any):
        level = logging.WARNING if event.endswith("_fail") else logging.INFO
        self._emit(level, event, ip=ip, method=method, path=path, proto=proto, **extra)

    def auth_pass(self, ip: str, method: str, path: str, proto: str, user: str):
        self.request("auth_pass", ip, method, path, proto, user=user)

    def auth_fail(self, ip: str, method: str, path: str, proto: str, supplied_user: str | None, reason: str):
        self.request("auth_fail", ip, method, path, proto, user=supplied_user or "-", reason=reason)

    def authz_pass(self, ip: str, method: str, path: str, proto: str, user: str):
        self.request("authz_pass", ip, method, path, proto, user=user)

    def authz_fail(self, ip: str, method: str, path: str, proto: str, user: str):
        self.request("authz_fail", ip, method, path, proto, user=user)

    def forward(self, ip: str, method: str, path: str, proto: str, user: str, status: int, duration_ms: int):
        self.request("forward", ip, method, path, proto, user=user, status=status, ms=duration_ms)

    def reload(self, what: str):
        self._emit(logging.INFO, "reload", what=what)

    def warning(self, detail: str):
        self._emit(logging.WARNING, "warning", detail=detail)

    def error(self, detail: str):
        self._emit(logging.ERROR, "error", detail=detail)
