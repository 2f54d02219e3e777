# FILE: urloracle/logging.py
from __future__ import annotations

import contextvars
import datetime as _dt
import json
import logging
import os
import sys
import traceback
from typing import Any, Dict, Optional, Set

# ---------- Module-level config (env-driven, safe defaults) ----------
_LOG_SCHEMA = os.environ.get("URL_ORACLE_LOG_SCHEMA", "url-oracle.log.v1")
_LOG_SERVICE = os.environ.get("URL_ORACLE_SERVICE", "url-oracle")

# Max chars per field (truncate to keep JSON lines small)
try:
    _MAX_FIELD = int(os.environ.get("URL_ORACLE_LOG_MAX_FIELD", "4096"))
    _MAX_FIELD = max(256, _MAX_FIELD)
except ValueError:
    _MAX_FIELD = 4096

_INCLUDE_STACK = os.environ.get("URL_ORACLE_LOG_INCLUDE_STACK", "1") == "1"

# Keys whose values are bearer material and never logged (case-insensitive)
_REDACT_KEYS = {
    "authorization",
    "identity_token",
    "op_token",
    "pk_token",
    "id_token",
    "token",
    "caller_token",
    "request_token",
    "signature",
    "private_key",
}

# Raw bytes from the fetched URL stay out of logs
_FORBIDDEN_META_KEYS = {"content", "body", "raw"}

# Standard LogRecord attributes that are not treated as dynamic meta
_LOG_RECORD_STD_ATTRS: Set[str] = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
    "message",
    "asctime",
}

# Envelope picks: bound context first, then record attribute
_PICK_FIELDS = ("url", "commit_sha", "workflow_ref", "step", "check", "status")

# ---------- Context management ----------
_log_ctx: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "url_oracle_log_ctx", default={}
)


def bind(**fields: Any) -> None:
    """Merge fields into the current logging context."""
    cur = dict(_log_ctx.get())
    for k, v in fields.items():
        if v is None:
            continue
        cur[str(k)] = v
    _log_ctx.set(cur)


def unbind(*keys: str) -> None:
    cur = dict(_log_ctx.get())
    for k in keys:
        cur.pop(k, None)
    _log_ctx.set(cur)


def reset() -> None:
    _log_ctx.set({})


def context() -> Dict[str, Any]:
    return dict(_log_ctx.get())


# ---------- Helpers ----------
def _ts_iso() -> str:
    # RFC3339 with milliseconds, UTC Z
    now = _dt.datetime.now(_dt.timezone.utc)
    ms = int(now.microsecond / 1000)
    base = now.replace(microsecond=0).isoformat().replace("+00:00", "Z")
    return f"{base[:-1]}.{ms:03d}Z"


def _compact_json(obj: Dict[str, Any]) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), default=str)


def _truncate(v: Any) -> Any:
    if isinstance(v, str) and len(v) > _MAX_FIELD:
        return v[:_MAX_FIELD] + "...<truncated>"
    return v


def _redact_key(k: str) -> bool:
    return k.lower() in _REDACT_KEYS


def scrub_dict(d: Dict[str, Any]) -> Dict[str, Any]:
    """
    Scrub bearer material from a dict.

    Keys listed in `_REDACT_KEYS` get replaced by "***". Nested dictionaries
    are scrubbed recursively.
    """
    out: Dict[str, Any] = {}
    for k, v in (d or {}).items():
        if _redact_key(k):
            out[k] = "***"
        else:
            out[k] = v if not isinstance(v, dict) else scrub_dict(v)
    return out


def _meta_from_record(record: logging.LogRecord, evt_keys: Set[str]) -> Dict[str, Any]:
    meta: Dict[str, Any] = {}
    for k, v in record.__dict__.items():
        if k in _LOG_RECORD_STD_ATTRS or k in evt_keys or k.startswith("_"):
            continue
        if k.lower() in _FORBIDDEN_META_KEYS:
            continue
        if _redact_key(k):
            meta[k] = "***"
        elif isinstance(v, (bytes, bytearray)):
            meta[k] = f"<{len(v)} bytes>"
        elif isinstance(v, dict):
            meta[k] = scrub_dict(v)
        else:
            meta[k] = _truncate(v)
    return meta


def _merge_optional(dst: Dict[str, Any], **kvs: Any) -> None:
    for k, v in kvs.items():
        if v is None:
            continue
        dst[k] = _truncate(v)


# ---------- JSON formatter ----------
class JSONFormatter(logging.Formatter):
    """
    One JSON object per line with a stable envelope.

    Envelope fields:
      - schema, service, ts, lvl, logger, msg
      - url, commit_sha, workflow_ref, step, check, status (from bound context)
      - exc_type, exc_message, stack (on exceptions)
      - meta: remaining `extra=` fields, with bearer material redacted
    """

    def __init__(self, *, include_stack: bool = True):
        super().__init__()
        self.include_stack = include_stack

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        ctx = context()

        evt: Dict[str, Any] = {
            "schema": _LOG_SCHEMA,
            "service": _LOG_SERVICE,
            "ts": _ts_iso(),
            "lvl": record.levelname,
            "logger": record.name,
            "msg": str(record.getMessage()),
        }

        def _pick(name: str) -> Optional[Any]:
            if name in ctx:
                return ctx[name]
            return getattr(record, name, None)

        _merge_optional(evt, **{n: _pick(n) for n in _PICK_FIELDS})

        if record.exc_info and self.include_stack:
            exc_type, exc_val, exc_tb = record.exc_info
            evt["exc_type"] = getattr(exc_type, "__name__", str(exc_type))
            evt["exc_message"] = str(exc_val)[:_MAX_FIELD]
            evt["stack"] = "".join(
                traceback.format_exception(exc_type, exc_val, exc_tb)
            )[:_MAX_FIELD]

        meta = _meta_from_record(record, set(evt.keys()))
        extra_ctx = {k: v for k, v in ctx.items() if k not in evt}
        if extra_ctx:
            meta.update(scrub_dict(extra_ctx))
        if meta:
            evt["meta"] = meta

        return _compact_json(evt)


# ---------- Root integration ----------
def _clear_handlers(logger: logging.Logger) -> None:
    for h in list(logger.handlers):
        logger.removeHandler(h)


def configure_json_logging(
    level: str = "INFO",
    *,
    stream: Any = None,
    include_stack: bool = _INCLUDE_STACK,
) -> logging.Logger:
    """
    Configure the root logger for JSON output on stderr. stdout is left to
    command output (verification tables, `changed=` lines).
    """
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    stream = stream or sys.stderr

    h = logging.StreamHandler(stream=stream)
    h.setFormatter(JSONFormatter(include_stack=include_stack))
    h.setLevel(lvl)

    root = logging.getLogger()
    root.setLevel(lvl)
    _clear_handlers(root)
    root.addHandler(h)
    return root


__all__ = [
    "bind",
    "unbind",
    "reset",
    "context",
    "scrub_dict",
    "JSONFormatter",
    "configure_json_logging",
]
