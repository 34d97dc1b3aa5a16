from __future__ import annotations

import logging
import re
import sys
from contextlib import suppress
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog

from cookhound.config import get_settings
from cookhound.context import request_context


def _log_path() -> Path:
    s = get_settings()
    return Path(s.log_dir) / "app.log"


_BEARER_RE = re.compile(r"(?i)\bBearer\s+([A-Za-z0-9_\-\.=]+)")
_URL_CREDS_RE = re.compile(r"(?i)([a-z][a-z0-9+\-.]*://)([^:@/]*):([^@/]+)@")
_KV_RE = re.compile(
    r"(?i)\b(redis_password|redis_url|password|token|secret|api_key)\b\s*=\s*([^\s,;]+)"
)


def _session_cookie_re() -> re.Pattern[str]:
    name = re.escape(str(get_settings().session_cookie_name or "session"))
    return re.compile(rf"(?i)\b({name})=([^;\s]+)")


def _secret_literals() -> list[str]:
    """
    Return configured secret values that must never appear in logs.
    Best-effort (safe even if settings aren't fully initialized yet).
    """
    vals: list[str] = []
    with suppress(Exception):
        s = get_settings()
        pw = s.redis_password_value()
        if pw:
            vals.append(pw)
    # Ignore tiny values to avoid over-redaction.
    return [v for v in vals if len(v) >= 6]


def _redact_str(s: str) -> str:
    with suppress(Exception):
        for lit in _secret_literals():
            if lit in s:
                s = s.replace(lit, "***REDACTED***")
    s = _URL_CREDS_RE.sub(r"\1***REDACTED***@", s)
    s = _BEARER_RE.sub("Bearer ***REDACTED***", s)
    s = _KV_RE.sub(lambda m: f"{m.group(1)}=***REDACTED***", s)
    with suppress(Exception):
        s = _session_cookie_re().sub(lambda m: f"{m.group(1)}=***REDACTED***", s)
    return s


def redact_event(_, __, event_dict: dict[str, Any]) -> dict[str, Any]:
    for k, v in list(event_dict.items()):
        if isinstance(v, str):
            event_dict[k] = _redact_str(v)
    return event_dict


def add_request_context(_, __, event_dict: dict[str, Any]) -> dict[str, Any]:
    rid = request_context.get_request_id()
    if rid:
        event_dict.setdefault("request_id", rid)
    uid = request_context.get_user_id()
    if uid is not None:
        event_dict.setdefault("user_id", uid)
    path = request_context.get_request_path()
    if path:
        event_dict.setdefault("path", path)
    return event_dict


def rename_event_to_msg(_, __, event_dict: dict[str, Any]) -> dict[str, Any]:
    if "msg" not in event_dict and "event" in event_dict:
        event_dict["msg"] = event_dict.pop("event")
    return event_dict


def _configure_structlog() -> structlog.stdlib.BoundLogger:
    s = get_settings()
    level = str(s.log_level).upper()

    root = logging.getLogger()
    root.setLevel(level)

    # Avoid duplicates if re-imported
    if getattr(root, "_cookhound_structlog_configured", False):
        return structlog.get_logger("cookhound")

    foreign_pre_chain = [
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
        structlog.stdlib.add_log_level,
        add_request_context,
        redact_event,
        structlog.processors.format_exc_info,
        rename_event_to_msg,
    ]

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.processors.JSONRenderer(),
        foreign_pre_chain=foreign_pre_chain,
    )

    handlers: list[logging.Handler] = []
    try:
        log_path = _log_path()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            filename=str(log_path),
            maxBytes=int(s.log_max_bytes),
            backupCount=int(s.log_backup_count),
            encoding="utf-8",
        )
        handlers.append(file_handler)
    except OSError:
        # Read-only filesystems (containers, CI) still get stdout logging.
        pass
    handlers.append(logging.StreamHandler(sys.stdout))

    root.handlers.clear()
    for h in handlers:
        h.setFormatter(formatter)
        root.addHandler(h)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
            structlog.stdlib.add_log_level,
            add_request_context,
            redact_event,
            structlog.processors.format_exc_info,
            rename_event_to_msg,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root._cookhound_structlog_configured = True
    return structlog.get_logger("cookhound")


logger = _configure_structlog()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Component logger; the name ends up in the `logger` field of every line.
    """
    return structlog.get_logger(f"cookhound.{name}")


def set_log_level(level: str) -> None:
    """
    Best-effort runtime log level override (CLI convenience).
    Does not change handlers/formatters; only raises/lowers filtering level.
    """
    lvl = getattr(logging, str(level).upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(lvl)
    for h in root.handlers:
        h.setLevel(lvl)
