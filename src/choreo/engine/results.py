"""
Choreo Result Classes

Data structures for task results and per-host statistics.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional
from enum import Enum
import json


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class TaskStatus(Enum):
    """Status of a task execution."""
    OK = "ok"
    CHANGED = "changed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class TaskResult:
    """Result of executing a single task on a single host.

    Results are never mutated after creation; adjustments such as
    ``changed_when`` produce a new value via :func:`dataclasses.replace`.
    """

    host: str
    task_name: str
    success: bool = True
    changed: bool = False
    msg: str = ""
    # Additional module-specific results
    data: Dict[str, Any] = field(default_factory=dict)
    started: datetime = field(default_factory=utcnow)
    ended: datetime = field(default_factory=utcnow)
    error: Optional[BaseException] = None
    module: str = ""
    skipped: bool = False

    @classmethod
    def from_exception(
        cls,
        host: str,
        task_name: str,
        exc: BaseException,
        module: str = "",
        started: Optional[datetime] = None,
    ) -> 'TaskResult':
        """Build a failed result for a host from an exception."""
        return cls(
            host=host,
            task_name=task_name,
            success=False,
            msg=str(exc) or type(exc).__name__,
            error=exc,
            module=module,
            started=started or utcnow(),
        )

    @property
    def status(self) -> TaskStatus:
        if self.skipped:
            return TaskStatus.SKIPPED
        if not self.success:
            return TaskStatus.FAILED
        return TaskStatus.CHANGED if self.changed else TaskStatus.OK

    @property
    def failed(self) -> bool:
        """Check if the task failed."""
        return not self.success

    @property
    def ok(self) -> bool:
        """Check if the task succeeded (ok or changed)."""
        return self.status in (TaskStatus.OK, TaskStatus.CHANGED)

    @property
    def duration(self) -> float:
        """Elapsed seconds between start and end."""
        return max(0.0, (self.ended - self.started).total_seconds())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON output and condition evaluation."""
        result = {
            "host": self.host,
            "task": self.task_name,
            "status": self.status.value,
            "success": self.success,
            "failed": self.failed,
            "changed": self.changed,
            "skipped": self.skipped,
            "msg": self.msg,
            "start": self.started.isoformat(),
            "end": self.ended.isoformat(),
            "duration": self.duration,
        }
        if self.module:
            result["module"] = self.module
        if self.data:
            result["data"] = self.data
        if self.error is not None:
            result["error"] = str(self.error)
        return result


@dataclass
class HostStats:
    """Statistics for a single host across all tasks."""

    host: str
    ok: int = 0
    changed: int = 0
    failed: int = 0
    skipped: int = 0

    def record(self, status: TaskStatus) -> None:
        """Record a task result status."""
        if status == TaskStatus.OK:
            self.ok += 1
        elif status == TaskStatus.CHANGED:
            self.changed += 1
        elif status == TaskStatus.FAILED:
            self.failed += 1
        elif status == TaskStatus.SKIPPED:
            self.skipped += 1

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "host": self.host,
            "ok": self.ok,
            "changed": self.changed,
            "failed": self.failed,
            "skipped": self.skipped,
        }

    @property
    def has_failures(self) -> bool:
        """Check if host has any failures."""
        return self.failed > 0


def summarize(results: Iterable[TaskResult]) -> Dict[str, HostStats]:
    """Aggregate results into per-host statistics, in first-seen host order."""
    stats: Dict[str, HostStats] = {}
    for result in results:
        if result.host not in stats:
            stats[result.host] = HostStats(result.host)
        stats[result.host].record(result.status)
    return stats


def results_to_json(results: List[TaskResult], indent: int = 2) -> str:
    """Serialize a result list together with its per-host recap."""
    return json.dumps(
        {
            "results": [r.to_dict() for r in results],
            "stats": {h: s.to_dict() for h, s in summarize(results).items()},
        },
        indent=indent,
    )
