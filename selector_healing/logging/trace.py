from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from selector_healing.core.exceptions import HealingCancelled

logger = logging.getLogger(__name__)

Scalar = str | int | float | bool | None


class SpanStatus(str, Enum):
    OK = "ok"
    ERROR = "error"
    ABORTED = "aborted"


@dataclass(frozen=True, slots=True)
class SpanRecord:
    span_id: str
    trace_id: str
    name: str
    parent_id: str | None
    attributes: dict[str, Scalar]
    start_time: float
    end_time: float
    status: SpanStatus

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "parentId": self.parent_id,
            "attributes": dict(self.attributes),
            "startTime": self.start_time,
            "endTime": self.end_time,
            "status": self.status.value,
            "spanId": self.span_id,
            "traceId": self.trace_id,
        }


class TraceSink(Protocol):
    def append(self, record: SpanRecord) -> None: ...


class InMemoryTraceSink:
    """Keeps span records in process. Safe to share between concurrent attempts."""

    def __init__(self) -> None:
        self._records: list[SpanRecord] = []
        self._lock = threading.Lock()

    def append(self, record: SpanRecord) -> None:
        with self._lock:
            self._records.append(record)

    @property
    def records(self) -> list[SpanRecord]:
        with self._lock:
            return list(self._records)


class JsonlTraceSink:
    """Appends one JSON line per span record."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def append(self, record: SpanRecord) -> None:
        line = json.dumps(record.to_dict(), sort_keys=True) + "\n"
        with self._lock:
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line)


@dataclass(slots=True)
class _Trace:
    trace_id: str
    recorder: TraceRecorder
    records: list[SpanRecord] = field(default_factory=list)


class Span:
    """Handle on one open unit of work. Must be ended exactly once; use it as a context manager."""

    def __init__(self, trace: _Trace, name: str, parent_id: str | None, attributes: dict[str, Any]) -> None:
        self._trace = trace
        self.name = name
        self.parent_id = parent_id
        self.span_id = uuid.uuid4().hex[:16]
        self.start_time = time.time()
        self._attributes: dict[str, Scalar] = {}
        self._record: SpanRecord | None = None
        self.set_attributes(**attributes)

    @property
    def trace_id(self) -> str:
        return self._trace.trace_id

    @property
    def ended(self) -> bool:
        return self._record is not None

    @property
    def records(self) -> tuple[SpanRecord, ...]:
        """Records of every span of this trace ended so far."""

        return tuple(self._trace.records)

    def child(self, name: str, **attributes: Any) -> Span:
        return Span(self._trace, name, self.span_id, attributes)

    def set_attribute(self, key: str, value: Any) -> None:
        if self.ended:
            return
        self._attributes[key] = _scalar(value)

    def set_attributes(self, **attributes: Any) -> None:
        for key, value in attributes.items():
            self.set_attribute(key, value)

    def end(self, status: SpanStatus = SpanStatus.OK) -> SpanRecord:
        if self._record is not None:
            return self._record
        self._record = SpanRecord(
            span_id=self.span_id,
            trace_id=self._trace.trace_id,
            name=self.name,
            parent_id=self.parent_id,
            attributes=dict(self._attributes),
            start_time=self.start_time,
            end_time=time.time(),
            status=status,
        )
        self._trace.records.append(self._record)
        self._trace.recorder.export(self._record)
        return self._record

    def __enter__(self) -> Span:
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if self.ended:
            return False
        if exc_type is None:
            self.end(SpanStatus.OK)
        elif issubclass(exc_type, (asyncio.CancelledError, HealingCancelled)):
            self.set_attribute("error", str(exc) or "cancelled")
            self.end(SpanStatus.ABORTED)
        else:
            self.set_attribute("error", f"{exc_type.__name__}: {exc}")
            self.end(SpanStatus.ERROR)
        return False


class TraceRecorder:
    """Builds span trees with explicit parents and exports every ended span."""

    def __init__(self, sink: TraceSink | None = None, enabled: bool = True) -> None:
        self.sink = sink if sink is not None else InMemoryTraceSink()
        self.enabled = enabled

    def start_trace(self, name: str, **attributes: Any) -> Span:
        trace = _Trace(trace_id=uuid.uuid4().hex, recorder=self)
        return Span(trace, name, None, attributes)

    def export(self, record: SpanRecord) -> None:
        if not self.enabled:
            return
        self.sink.append(record)
        logger.debug("span %s ended with %s in %.3fs", record.name, record.status.value, record.duration)


def _scalar(value: Any) -> Scalar:
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple, dict, set)):
        return json.dumps(sorted(value) if isinstance(value, set) else value, default=str)
    return str(value)
