"""
Agentflow - Event Sinks
=======================

Durable append-only storage for published events.
"""

import json
import re
import threading
from pathlib import Path
from typing import List, Protocol

import structlog

from agentflow.core.events.types import PipelineEvent

logger = structlog.get_logger()

_SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]")


class EventSink(Protocol):
    def append(self, event: PipelineEvent) -> None: ...

    def get_events(self, request_id: str) -> List[PipelineEvent]: ...


class JsonlEventSink:
    """
    One JSON line per event, one file per request id.

    Layout: ``<directory>/<request_id>.jsonl``

    Appends do file I/O, so the bus runs them in the default executor.
    """

    blocking = True

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._write_lock = threading.Lock()

    def _path(self, request_id: str) -> Path:
        return self.directory / f"{_SAFE_NAME.sub('_', request_id)}.jsonl"

    def append(self, event: PipelineEvent) -> None:
        line = event.to_json() + "\n"
        with self._write_lock, open(self._path(event.request_id), "a", encoding="utf-8") as f:
            f.write(line)

    def get_events(self, request_id: str) -> List[PipelineEvent]:
        path = self._path(request_id)
        if not path.exists():
            return []

        events = []
        with open(path, encoding="utf-8") as f:
            for line_number, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    events.append(PipelineEvent.from_dict(json.loads(line)))
                except (ValueError, KeyError, TypeError) as e:
                    logger.warning(
                        "event_line_unreadable",
                        request_id=request_id,
                        line=line_number,
                        error=str(e),
                    )
        return events


class MemoryEventSink:
    """Keeps events in process memory. Used when no events path is configured."""

    def __init__(self, max_per_request: int = 1000):
        self.max_per_request = max_per_request
        self._events: dict[str, List[PipelineEvent]] = {}

    def append(self, event: PipelineEvent) -> None:
        bucket = self._events.setdefault(event.request_id, [])
        bucket.append(event)
        if len(bucket) > self.max_per_request:
            del bucket[0]

    def get_events(self, request_id: str) -> List[PipelineEvent]:
        return list(self._events.get(request_id, []))
