"""
Choreo Host Scheduler

Fork-style parallelism for Runner implementations: fans one task out over a
host set with asyncio, bounded by a semaphore (like Ansible's forks).
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List

from choreo.engine.inventory import Host
from choreo.engine.playbook import Task
from choreo.engine.results import TaskResult, utcnow
from choreo.engine.runner import Runner, RunOptions


HostAction = Callable[[Task, Host, Dict[str, Any], RunOptions], Awaitable[TaskResult]]


class HostPoolRunner(Runner):
    """
    Runner that executes a per-host coroutine across hosts in parallel.

    Uses asyncio with a semaphore to limit concurrency. Results come back in
    host order; a host whose action raises gets a failed result instead of
    aborting the others. ``options.timeout`` is applied per host with
    :func:`asyncio.wait_for`.
    """

    def __init__(self, action: HostAction, forks: int = 5):
        """
        Initialize the runner.

        Args:
            action: Async callable ``(task, host, variables, options) -> TaskResult``
            forks: Maximum number of parallel host executions
        """
        self.action = action
        self.forks = max(1, forks)

    async def run(
        self,
        task: Task,
        hosts: List[Host],
        variables: Dict[str, Any],
        options: RunOptions,
    ) -> List[TaskResult]:
        if not hosts:
            return []

        semaphore = asyncio.Semaphore(self.forks)

        async def run_on_host(host: Host) -> TaskResult:
            async with semaphore:
                host_vars = {**host.get_vars(), **variables}
                coro = self.action(task, host, host_vars, options)
                if options.timeout:
                    return await asyncio.wait_for(coro, timeout=options.timeout)
                return await coro

        started = utcnow()
        outcomes = await asyncio.gather(
            *(run_on_host(host) for host in hosts),
            return_exceptions=True,
        )

        # Convert exceptions to failed results
        results: List[TaskResult] = []
        for host, outcome in zip(hosts, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.TimeoutError):
                    outcome = asyncio.TimeoutError(
                        f"timed out after {options.timeout}s"
                    )
                results.append(TaskResult.from_exception(
                    host.name, task.name, outcome, module=task.module, started=started,
                ))
            else:
                results.append(outcome)
        return results
