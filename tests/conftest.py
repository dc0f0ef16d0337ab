"""
Shared test fixtures: a recording Runner and small inventories.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import pytest

from choreo.engine.inventory import Host, InventoryManager
from choreo.engine.playbook import Task
from choreo.engine.results import TaskResult
from choreo.engine.runner import Runner, RunOptions


@dataclass
class RunnerCall:
    """One recorded Runner invocation."""

    task: Task
    hosts: List[str]
    variables: Dict[str, Any]
    options: RunOptions


Responder = Callable[[Task, str, Dict[str, Any], RunOptions], TaskResult]


class RecordingRunner(Runner):
    """
    Runner double that records every call.

    By default every host succeeds. ``respond`` can build a custom result per
    host; ``fail_modules`` makes every host fail for those modules;
    ``raise_error`` makes the whole call raise.
    """

    def __init__(
        self,
        respond: Optional[Responder] = None,
        fail_modules: Optional[List[str]] = None,
        raise_error: Optional[BaseException] = None,
    ):
        self.calls: List[RunnerCall] = []
        self.respond = respond
        self.fail_modules = set(fail_modules or [])
        self.raise_error = raise_error

    async def run(self, task, hosts, variables, options):
        self.calls.append(RunnerCall(task, [h.name for h in hosts], dict(variables), options))
        if self.raise_error is not None:
            raise self.raise_error

        results = []
        for host in hosts:
            if self.respond is not None:
                results.append(self.respond(task, host.name, variables, options))
            elif task.module in self.fail_modules:
                results.append(TaskResult(
                    host=host.name, task_name=task.name, success=False,
                    msg="boom", module=task.module,
                ))
            else:
                results.append(TaskResult(
                    host=host.name, task_name=task.name, module=task.module,
                ))
        return results

    def modules_called(self) -> List[str]:
        return [c.task.module for c in self.calls]


@pytest.fixture
def runner() -> RecordingRunner:
    return RecordingRunner()


@pytest.fixture
def inventory() -> InventoryManager:
    """Three hosts: h1 and h2 in 'web', h3 in 'db'."""
    inv = InventoryManager()
    inv.add_host(Host("h1"), ["web"])
    inv.add_host(Host("h2"), ["web"])
    inv.add_host(Host("h3"), ["db"])
    return inv


@pytest.fixture
def hosts(inventory: InventoryManager) -> List[Host]:
    return inventory.get_hosts("all")


@pytest.fixture
def recording_runner_class():
    return RecordingRunner
