"""
JSON output callback.

Collects events during a run and dumps them, with the per-host recap, as one
JSON document.
"""

import json
import sys
from typing import Any, Dict, List, Optional, TextIO

from choreo.engine.events import Event, EventType
from choreo.engine.results import TaskResult, summarize


class JsonCallback:
    """Accumulates events; :meth:`dump` writes the document."""

    def __init__(self, stream: Optional[TextIO] = None, indent: int = 2):
        self.stream = stream or sys.stdout
        self.indent = indent
        self.events: List[Event] = []

    def __call__(self, event: Event) -> None:
        self.events.append(event)

    @property
    def results(self) -> List[TaskResult]:
        """Host results from completed and failed tasks, in arrival order."""
        return [
            result
            for event in self.events
            if event.type in (EventType.TASK_COMPLETE, EventType.TASK_FAILED)
            for result in event.results
        ]

    def to_dict(self) -> Dict[str, Any]:
        failed = any(e.type == EventType.ERROR for e in self.events)
        return {
            "success": not failed,
            "events": [e.to_dict() for e in self.events],
            "stats": {h: s.to_dict() for h, s in summarize(self.results).items()},
        }

    def dump(self) -> None:
        print(json.dumps(self.to_dict(), indent=self.indent, default=str), file=self.stream)
