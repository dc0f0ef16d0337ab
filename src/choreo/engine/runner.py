"""
Choreo Runner Interface

The collaborator that actually dispatches one task to a set of hosts. The
executors make one logical call per task (or loop iteration) and await the
aggregated result list; any per-host parallelism lives behind this interface.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from choreo.engine.inventory import Host
from choreo.engine.playbook import Task
from choreo.engine.results import TaskResult


@dataclass(frozen=True)
class RunOptions:
    """Per-call execution options handed to the Runner.

    The engine never enforces ``timeout`` itself; honoring it is the Runner's
    job.
    """

    timeout: Optional[float] = None
    play: str = ""
    phase: str = "tasks"
    attempt: int = 1
    delegated: bool = False


class Runner(ABC):
    """Executes one task definition against a host set."""

    @abstractmethod
    async def run(
        self,
        task: Task,
        hosts: List[Host],
        variables: Dict[str, Any],
        options: RunOptions,
    ) -> List[TaskResult]:
        """
        Run ``task`` on every host in ``hosts``.

        Returns:
            One TaskResult per host on success (order unspecified)

        Raises:
            Exception: Any error (including cancellation or timeouts reported
                by the transport); the engine turns it into failed results
        """
