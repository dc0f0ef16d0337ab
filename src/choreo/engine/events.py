"""
Choreo Lifecycle Events

Immutable records of execution transitions, delivered synchronously to
registered callbacks.
"""

import sys
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Iterable, List, Mapping, Optional, Tuple

from choreo.engine.results import TaskResult, utcnow


class EventType(Enum):
    """Kinds of lifecycle transitions."""
    PLAY_START = "play_start"
    PLAY_COMPLETE = "play_complete"
    TASK_START = "task_start"
    TASK_COMPLETE = "task_complete"
    TASK_FAILED = "task_failed"
    TASK_SKIPPED = "task_skipped"
    HANDLER_START = "handler_start"
    ERROR = "error"


@dataclass(frozen=True)
class Event:
    """A timestamped lifecycle transition.

    Carries enough context (play, task, host, error, results) to rebuild a
    timeline without consulting executor state.
    """

    type: EventType
    play: str = ""
    task: str = ""
    host: str = ""
    data: Mapping[str, Any] = field(default_factory=dict)
    error: Optional[BaseException] = None
    results: Tuple[TaskResult, ...] = ()
    timestamp: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        # Freeze the payload so sinks cannot rewrite history
        object.__setattr__(self, "data", MappingProxyType(dict(self.data)))
        object.__setattr__(self, "results", tuple(self.results))

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON output."""
        result = {
            "type": self.type.value,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.play:
            result["play"] = self.play
        if self.task:
            result["task"] = self.task
        if self.host:
            result["host"] = self.host
        if self.data:
            result["data"] = dict(self.data)
        if self.error is not None:
            result["error"] = str(self.error)
        if self.results:
            result["results"] = [r.to_dict() for r in self.results]
        return result


EventCallback = Callable[[Event], None]


class EventEmitter:
    """
    Holds the callbacks of one executor instance and fans events out to them.

    Delivery is synchronous and best-effort: a callback that raises is
    reported on stderr and the remaining callbacks still receive the event.
    """

    def __init__(self, callbacks: Optional[Iterable[EventCallback]] = None):
        self._callbacks: List[EventCallback] = list(callbacks or [])

    @property
    def callbacks(self) -> List[EventCallback]:
        return list(self._callbacks)

    def add(self, callback: EventCallback) -> None:
        self._callbacks.append(callback)

    def emit(self, event: Event) -> None:
        for callback in self._callbacks:
            try:
                callback(event)
            except Exception as e:
                print(
                    f"\033[33m[WARNING]: event callback {callback!r} failed on "
                    f"{event.type.value}: {e}\033[0m",
                    file=sys.stderr,
                )
