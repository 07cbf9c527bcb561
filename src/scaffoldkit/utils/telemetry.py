"""Structured diagnostics log (JSON lines, opt-out)."""

from __future__ import annotations

import json
import os
import time
import traceback
from functools import lru_cache
from typing import Any, Iterable, Iterator

from jsonschema import Draft202012Validator

from scaffoldkit.resources import load_schema
from scaffoldkit.settings import RuntimeSettings

LEVELS = {"debug", "info", "warn", "error"}
LOG_FILENAME = "diagnostics.jsonl"

_DISABLE_VALUES = {"0", "false", "no", "off"}


def telemetry_enabled() -> bool:
    value = os.getenv("SCAFFOLDKIT_TELEMETRY", "1").lower()
    return value not in _DISABLE_VALUES


def record_structured_event(
    settings: RuntimeSettings,
    event: str,
    *,
    payload: dict[str, Any] | None = None,
    level: str = "info",
    status: str | None = None,
    component: str | None = None,
    correlation_id: str | None = None,
    duration_ms: float | None = None,
) -> None:
    if not telemetry_enabled():
        return
    record: dict[str, Any] = {
        "ts": time.time(),
        "event": event,
        "payload": payload or {},
        "level": level,
    }
    if status:
        record["status"] = status
    if component:
        record["component"] = component
    if correlation_id:
        record["correlationId"] = correlation_id
    if duration_ms is not None:
        record["durationMs"] = duration_ms
    _validate_record(record)
    _validator().validate(record)
    log_path = settings.log_dir / LOG_FILENAME
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("a", encoding="utf-8") as fh:
        fh.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")


def record_exception(
    settings: RuntimeSettings,
    event: str,
    exc: BaseException,
    *,
    component: str | None = None,
    correlation_id: str | None = None,
    payload: dict[str, Any] | None = None,
) -> None:
    """Log an error with its traceback; tracebacks live only in this file."""
    details = dict(payload or {})
    details["error"] = type(exc).__name__
    details["message"] = str(exc)
    details["traceback"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    record_structured_event(
        settings,
        event,
        payload=details,
        level="error",
        status="error",
        component=component,
        correlation_id=correlation_id,
    )


def iter_events(settings: RuntimeSettings) -> Iterator[dict[str, Any]]:
    log_path = settings.log_dir / LOG_FILENAME
    if not log_path.exists():
        return
    with log_path.open("r", encoding="utf-8") as fh:
        for line in fh:
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError:
                continue


def summarize(events: Iterable[dict[str, Any]]) -> dict[str, Any]:
    total = 0
    by_event: dict[str, int] = {}
    by_status: dict[str, int] = {}
    for evt in events:
        name = evt.get("event", "unknown")
        by_event[name] = by_event.get(name, 0) + 1
        status = evt.get("status", "unknown")
        by_status[status] = by_status.get(status, 0) + 1
        total += 1
    return {"total": total, "by_event": by_event, "by_status": by_status}


def clear(settings: RuntimeSettings) -> None:
    log_path = settings.log_dir / LOG_FILENAME
    if log_path.exists():
        log_path.unlink()


def _validate_record(record: dict[str, Any]) -> None:
    if not isinstance(record.get("event"), str) or not record["event"].strip():
        raise ValueError("Diagnostics event must have non-empty string 'event'")
    if not isinstance(record.get("payload"), dict):
        raise ValueError("Diagnostics payload must be a dict")
    level = record.get("level", "info")
    if level not in LEVELS:
        raise ValueError(f"Diagnostics level '{level}' is not supported")
    if "durationMs" in record and record["durationMs"] is not None:
        if not isinstance(record["durationMs"], (int, float)) or record["durationMs"] < 0:
            raise ValueError("Diagnostics durationMs must be a non-negative number")
    record["ts"] = float(record.get("ts", time.time()))


@lru_cache(maxsize=1)
def _validator() -> Draft202012Validator:
    return Draft202012Validator(load_schema("telemetry.schema.json"))


__all__ = [
    "clear",
    "iter_events",
    "record_exception",
    "record_structured_event",
    "summarize",
    "telemetry_enabled",
]
