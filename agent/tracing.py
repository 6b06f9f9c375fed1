"""Optional observability events for agent runs.

The loop emits a ``TraceEvent`` before and after each gateway call
(``type="generation"``), each tool call (``type="span"``) and on every
handoff (``type="event"``). The "after" event reuses the "before" event's
id and carries ``end_time`` and ``output``, so a collector can treat it as
an update.

Collectors are fire-and-forget: a missing collector is a no-op and a
collector that raises is logged and ignored. Tracing never changes control
flow or results.
"""

import json
import logging
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_event_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


@dataclass
class TraceEvent:
    id: str
    name: str
    type: str  # "generation", "span" or "event"
    start_time: datetime
    end_time: Optional[datetime] = None
    input: Any = None
    output: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def finished(self, output: Any = None, **metadata) -> "TraceEvent":
        """The matching "after" event: same id, end time and output set."""
        merged = dict(self.metadata)
        merged.update(metadata)
        return TraceEvent(
            id=self.id,
            name=self.name,
            type=self.type,
            start_time=self.start_time,
            end_time=_now(),
            input=self.input,
            output=output,
            metadata=merged,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["start_time"] = self.start_time.isoformat()
        data["end_time"] = self.end_time.isoformat() if self.end_time else None
        return data


def start_event(name: str, type: str, input: Any = None, **metadata) -> TraceEvent:
    return TraceEvent(
        id=new_event_id(type),
        name=name,
        type=type,
        start_time=_now(),
        input=input,
        metadata=metadata,
    )


class TraceCollector:
    """Base collector. Subclasses override ``record``."""

    def record(self, event: TraceEvent, trace_id: str) -> None:
        pass


class InMemoryTraceCollector(TraceCollector):
    """Keeps every event in order; mainly for tests and debugging."""

    def __init__(self):
        self.events: List[TraceEvent] = []
        self.trace_ids: List[str] = []
        self._lock = threading.Lock()

    def record(self, event: TraceEvent, trace_id: str) -> None:
        with self._lock:
            self.events.append(event)
            self.trace_ids.append(trace_id)

    def by_type(self, type: str) -> List[TraceEvent]:
        return [e for e in self.events if e.type == type]


class JsonlTraceCollector(TraceCollector):
    """Appends one JSON object per event to a file."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._lock = threading.Lock()

    def record(self, event: TraceEvent, trace_id: str) -> None:
        entry = event.to_dict()
        entry["trace_id"] = trace_id
        line = json.dumps(entry, ensure_ascii=False, default=str)
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")


def emit(collector: Optional[TraceCollector], event: TraceEvent, trace_id: str) -> None:
    """Hand an event to the collector, swallowing collector failures."""
    if collector is None:
        return
    try:
        collector.record(event, trace_id)
    except Exception as e:
        logger.warning("Trace collector failed on %s (%s): %s", event.name, event.type, e)
