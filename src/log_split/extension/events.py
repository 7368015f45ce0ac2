# src/log_split/extension/events.py
"""Typed telemetry events decoded from Telemetry API envelopes.

Every envelope is `{"time": ..., "type": ..., "record": ...}`. The `type` tag
selects exactly one variant below; tags we do not act on decode to `Ignored`
so the listener can tell known-but-uninteresting types from unknown ones.
"""

import json
from dataclasses import dataclass
from typing import Any, Callable, Dict, Union

from log_split.extension.errors import EnvelopeDecodeError

IGNORED_TYPES = frozenset(
    {
        "platform.extension",
        "platform.initReport",
        "platform.initRuntimeDone",
        "platform.telemetrySubscription",
    }
)


@dataclass(frozen=True)
class InitStart:
    initialization_type: str
    phase: str
    runtime_version: str
    runtime_version_arn: str
    time: str = ""


@dataclass(frozen=True)
class Start:
    request_id: str
    version: str
    time: str = ""


@dataclass(frozen=True)
class FunctionLog:
    text: str
    time: str = ""


@dataclass(frozen=True)
class RuntimeDone:
    request_id: str
    duration_ms: float
    status: str = ""
    time: str = ""


@dataclass(frozen=True)
class Report:
    request_id: str
    duration_ms: float
    billed_duration_ms: int
    memory_size_mb: int
    max_memory_used_mb: int
    init_duration_ms: float = 0.0
    time: str = ""


@dataclass(frozen=True)
class Ignored:
    type: str
    known: bool


TelemetryEvent = Union[InitStart, Start, FunctionLog, RuntimeDone, Report, Ignored]


def _record_object(record: Any) -> Dict[str, Any]:
    if not isinstance(record, dict):
        raise EnvelopeDecodeError(f"record must be an object, got {type(record).__name__}")
    return record


def _metrics(record: Dict[str, Any]) -> Dict[str, Any]:
    metrics = record.get("metrics") or {}
    if not isinstance(metrics, dict):
        raise EnvelopeDecodeError("metrics must be an object")
    return metrics


def _decode_init_start(record: Any, time: str) -> InitStart:
    record = _record_object(record)
    return InitStart(
        initialization_type=record.get("initializationType", ""),
        phase=record.get("phase", ""),
        runtime_version=record.get("runtimeVersion", ""),
        runtime_version_arn=record.get("runtimeVersionArn", ""),
        time=time,
    )


def _decode_start(record: Any, time: str) -> Start:
    record = _record_object(record)
    return Start(
        request_id=record["requestId"],
        version=record.get("version", ""),
        time=time,
    )


def _decode_function(record: Any, time: str) -> FunctionLog:
    # Text-format logs arrive as strings, JSON-format logs as objects
    if isinstance(record, str):
        return FunctionLog(text=record, time=time)
    return FunctionLog(text=json.dumps(record, separators=(",", ":")), time=time)


def _decode_runtime_done(record: Any, time: str) -> RuntimeDone:
    record = _record_object(record)
    metrics = _metrics(record)
    return RuntimeDone(
        request_id=record["requestId"],
        duration_ms=float(metrics.get("durationMs", 0.0)),
        status=record.get("status", ""),
        time=time,
    )


def _decode_report(record: Any, time: str) -> Report:
    record = _record_object(record)
    metrics = _metrics(record)
    return Report(
        request_id=record["requestId"],
        duration_ms=float(metrics.get("durationMs", 0.0)),
        billed_duration_ms=int(metrics.get("billedDurationMs", 0)),
        memory_size_mb=int(metrics.get("memorySizeMB", metrics.get("memorySizeMb", 0))),
        max_memory_used_mb=int(metrics.get("maxMemoryUsedMB", metrics.get("maxMemoryUsedMb", 0))),
        init_duration_ms=float(metrics.get("initDurationMs", 0.0)),
        time=time,
    )


_DECODERS: Dict[str, Callable[[Any, str], TelemetryEvent]] = {
    "platform.initStart": _decode_init_start,
    "platform.start": _decode_start,
    "function": _decode_function,
    "platform.runtimeDone": _decode_runtime_done,
    "platform.report": _decode_report,
}


def decode_envelope(envelope: Any) -> TelemetryEvent:
    """
    Decodes one Telemetry API envelope into its typed event.

    Args:
        envelope (Any): One element of the JSON array posted by the platform.

    Returns:
        TelemetryEvent: The decoded variant, or Ignored for types we drop.

    Raises:
        EnvelopeDecodeError: If the envelope or its record is malformed.
    """
    if not isinstance(envelope, dict):
        raise EnvelopeDecodeError(f"envelope must be an object, got {type(envelope).__name__}")

    event_type = envelope.get("type")
    if not isinstance(event_type, str):
        raise EnvelopeDecodeError("envelope has no type")

    decoder = _DECODERS.get(event_type)
    if decoder is None:
        return Ignored(type=event_type, known=event_type in IGNORED_TYPES)

    try:
        return decoder(envelope.get("record"), envelope.get("time", ""))
    except EnvelopeDecodeError:
        raise
    except (KeyError, TypeError, ValueError) as e:
        raise EnvelopeDecodeError(f"invalid {event_type} record: {e!r}") from e
