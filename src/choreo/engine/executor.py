"""
Choreo Play and Playbook Executors

Drives plays through their phases and playbooks through their plays::

    resolve hosts -> merge vars -> pre_tasks -> gather facts -> roles
        -> tasks -> post_tasks -> handlers

Everything here is sequential: one play, one phase, one task at a time.
Per-host parallelism is the Runner's business.
"""

import asyncio
from typing import Any, Dict, Iterable, List, Optional

from choreo.engine.config import EngineConfig
from choreo.engine.errors import (
    ChoreoError,
    ConditionError,
    DependencyError,
    ExecutionError,
    HostResolutionError,
    InventoryError,
    PlaybookError,
    PlayError,
    TaskFailedError,
    TemplateError,
)
from choreo.engine.events import Event, EventCallback, EventEmitter, EventType
from choreo.engine.inventory import Host, Inventory
from choreo.engine.playbook import Play, Playbook, Task
from choreo.engine.results import TaskResult
from choreo.engine.roles import RoleApplication, RoleManager
from choreo.engine.runner import Runner
from choreo.engine.task_executor import TaskExecutor
from choreo.engine.templating import ExpressionEvaluator, JinjaEvaluator, to_bool
from choreo.engine.variables import merge_vars


FACTS_TASK_NAME = "Gathering Facts"


class PlayExecutor:
    """
    Executes a single play.

    A task failure halts the play unless the task sets ``ignore_errors``.
    Failures raise :class:`PlayError` carrying the results accumulated so
    far; host resolution problems raise :class:`HostResolutionError`.
    """

    def __init__(
        self,
        runner: Runner,
        inventory: Inventory,
        evaluator: Optional[ExpressionEvaluator] = None,
        config: Optional[EngineConfig] = None,
        roles: Optional[RoleManager] = None,
        callbacks: Optional[Iterable[EventCallback]] = None,
    ):
        self.inventory = inventory
        self.config = config or EngineConfig()
        self.evaluator = evaluator or JinjaEvaluator()
        self.roles = roles or RoleManager()
        self.events = EventEmitter(callbacks)
        self.task_executor = TaskExecutor(runner, inventory, self.evaluator, self.config)

    def add_event_callback(self, callback: EventCallback) -> None:
        self.events.add(callback)

    async def execute_play(
        self,
        play: Play,
        vars: Optional[Dict[str, Any]] = None,
        extra_vars: Optional[Dict[str, Any]] = None,
    ) -> List[TaskResult]:
        """
        Run every phase of ``play`` and return the results in order.

        Args:
            play: Play to execute
            vars: Baseline scope (playbook vars with extra vars applied)
            extra_vars: Layered again over play vars so they keep winning
        """
        hosts = self.resolve_hosts(play)
        if not hosts:
            return []

        # play_hosts is a default; a user variable of that name wins
        scope = merge_vars({'play_hosts': [h.name for h in hosts]}, vars, play.vars, extra_vars)

        results: List[TaskResult] = []
        try:
            applications = self.roles.plan(play.roles)
        except DependencyError as e:
            self._emit(EventType.ERROR, play, error=e)
            raise PlayError(play.name, str(e), results) from e

        for batch in self._batches(hosts, play.serial):
            await self._run_batch(play, batch, scope, applications, results)

        return results

    def resolve_hosts(self, play: Play) -> List[Host]:
        """De-duplicated union of every host pattern; first occurrence wins."""
        seen = set()
        hosts: List[Host] = []
        for pattern in play.host_patterns():
            try:
                matched = self.inventory.get_hosts(pattern)
            except InventoryError as e:
                raise HostResolutionError(pattern, play.name, e) from e
            for host in matched:
                if host.name not in seen:
                    seen.add(host.name)
                    hosts.append(host)
        return hosts

    @staticmethod
    def _batches(hosts: List[Host], serial: int) -> List[List[Host]]:
        if serial <= 0:
            return [hosts]
        return [hosts[i:i + serial] for i in range(0, len(hosts), serial)]

    async def _run_batch(
        self,
        play: Play,
        hosts: List[Host],
        scope: Dict[str, Any],
        applications: List[RoleApplication],
        results: List[TaskResult],
    ) -> None:
        # Handler trigger name -> notifying host names
        notified: Dict[str, List[str]] = {}
        handler_scopes: Dict[int, Dict[str, Any]] = {}

        await self._run_phase(play, 'pre_tasks', play.pre_tasks, hosts, scope, results, notified)

        if self.should_gather_facts(play, scope):
            await self._gather_facts(play, hosts, scope, results)

        for app in applications:
            role_scope = app.scope(scope)
            for handler in app.role.handlers:
                handler_scopes[id(handler)] = role_scope
            if app.when is not None and not self._role_enabled(play, app, role_scope, results):
                continue
            await self._run_phase(play, 'roles', app.tasks(), hosts, role_scope, results, notified)

        await self._run_phase(play, 'tasks', play.tasks, hosts, scope, results, notified)
        await self._run_phase(play, 'post_tasks', play.post_tasks, hosts, scope, results, notified)

        handlers = [h for app in applications for h in app.role.handlers] + list(play.handlers)
        await self._run_handlers(play, handlers, hosts, scope, handler_scopes, results, notified)

    async def _run_phase(
        self,
        play: Play,
        phase: str,
        tasks: List[Task],
        hosts: List[Host],
        scope: Dict[str, Any],
        results: List[TaskResult],
        notified: Dict[str, List[str]],
    ) -> None:
        for index, task in enumerate(tasks):
            if not self.config.selects(task.tags + play.tags):
                self._emit(EventType.TASK_SKIPPED, play, task, phase=phase, reason='tags')
                continue
            await self._run_task(play, phase, index, task, hosts, scope, results, notified)

    async def _run_task(
        self,
        play: Play,
        phase: str,
        index: int,
        task: Task,
        hosts: List[Host],
        scope: Dict[str, Any],
        results: List[TaskResult],
        notified: Optional[Dict[str, List[str]]],
    ) -> None:
        self._emit(EventType.TASK_START, play, task, phase=phase, task_index=index)

        try:
            task_results = await self.task_executor.execute_task(
                task, hosts, scope, play=play.name, phase=phase,
            )
        except (TaskFailedError, ConditionError) as e:
            results.extend(e.results)
            self._emit(EventType.TASK_FAILED, play, task, error=e, results=e.results, phase=phase)
            if not task.ignore_errors:
                raise PlayError(play.name, str(e), results) from e
            self._notify(task, e.results, notified)
            return
        except ExecutionError as e:
            # Delegation errors are never ignored
            results.extend(e.results)
            self._emit(EventType.TASK_FAILED, play, task, error=e, results=e.results, phase=phase)
            raise PlayError(play.name, str(e), results) from e

        if not task_results:
            self._emit(EventType.TASK_SKIPPED, play, task, phase=phase, reason='conditional')
            return

        results.extend(task_results)
        self._notify(task, task_results, notified)
        self._emit(
            EventType.TASK_COMPLETE, play, task,
            results=task_results, phase=phase, results_count=len(task_results),
        )

    def should_gather_facts(self, play: Play, scope: Dict[str, Any]) -> bool:
        """Scope ``gather_facts`` wins, then the play keyword, then the config."""
        if 'gather_facts' in scope:
            return to_bool(scope['gather_facts'])
        if play.gather_facts is not None:
            return bool(play.gather_facts)
        return self.config.gather_facts

    async def _gather_facts(
        self,
        play: Play,
        hosts: List[Host],
        scope: Dict[str, Any],
        results: List[TaskResult],
    ) -> None:
        task = Task(name=FACTS_TASK_NAME, module=self.config.fact_module)
        self._emit(EventType.TASK_START, play, task, phase='gather_facts')

        try:
            fact_results = await self.task_executor.execute_task(
                task, hosts, scope, play=play.name, phase='gather_facts',
            )
        except ExecutionError as e:
            # Fact gathering failure is always fatal
            results.extend(e.results)
            self._emit(EventType.TASK_FAILED, play, task, error=e, results=e.results)
            raise PlayError(play.name, f"failed to gather facts: {e}", results) from e

        by_name = {h.name: h for h in hosts}
        for result in fact_results:
            facts = result.data.get('ansible_facts')
            if isinstance(facts, dict) and result.host in by_name:
                by_name[result.host].set_variable('ansible_facts', facts)

        results.extend(fact_results)
        self._emit(
            EventType.TASK_COMPLETE, play, task,
            results=fact_results, phase='gather_facts', results_count=len(fact_results),
        )

    def _role_enabled(
        self,
        play: Play,
        app: RoleApplication,
        scope: Dict[str, Any],
        results: List[TaskResult],
    ) -> bool:
        try:
            return app.when.evaluate(self.evaluator, scope)
        except TemplateError as e:
            error = ConditionError(f"role {app.name}", str(app.when), e)
            self._emit(EventType.ERROR, play, error=error)
            raise PlayError(play.name, str(error), results) from e

    async def _run_handlers(
        self,
        play: Play,
        handlers: List[Task],
        hosts: List[Host],
        scope: Dict[str, Any],
        handler_scopes: Dict[int, Dict[str, Any]],
        results: List[TaskResult],
        notified: Dict[str, List[str]],
    ) -> None:
        """Run each notified handler once, on the hosts that notified it."""
        if not notified:
            return

        ran = set()
        for index, handler in enumerate(handlers):
            if handler.name in ran:
                continue
            triggered = set()
            for trigger in [handler.name] + handler.listen:
                triggered.update(notified.get(trigger, []))
            if not triggered:
                continue

            ran.add(handler.name)
            targets = [h for h in hosts if h.name in triggered]
            self._emit(EventType.HANDLER_START, play, handler, hosts=[h.name for h in targets])
            await self._run_task(
                play, 'handlers', index, handler, targets,
                handler_scopes.get(id(handler), scope), results, None,
            )

    @staticmethod
    def _notify(
        task: Task,
        task_results: List[TaskResult],
        notified: Optional[Dict[str, List[str]]],
    ) -> None:
        if notified is None or not task.notify:
            return
        for result in task_results:
            if not result.changed or result.failed:
                continue
            for name in task.notify:
                hosts = notified.setdefault(name, [])
                if result.host not in hosts:
                    hosts.append(result.host)

    def _emit(
        self,
        event_type: EventType,
        play: Play,
        task: Optional[Task] = None,
        error: Optional[BaseException] = None,
        results: Iterable[TaskResult] = (),
        **data: Any,
    ) -> None:
        self.events.emit(Event(
            type=event_type,
            play=play.name,
            task=task.name if task else "",
            data=data,
            error=error,
            results=tuple(results),
        ))


class PlaybookExecutor:
    """
    Executes the plays of a playbook in document order.

    Playbook vars with extra vars layered on top form the baseline scope
    handed to every play. The first failing play stops the playbook with a
    :class:`PlaybookError` carrying every result produced up to that point.
    """

    def __init__(
        self,
        runner: Runner,
        inventory: Inventory,
        evaluator: Optional[ExpressionEvaluator] = None,
        config: Optional[EngineConfig] = None,
        roles: Optional[RoleManager] = None,
        callbacks: Optional[Iterable[EventCallback]] = None,
    ):
        self.play_executor = PlayExecutor(
            runner, inventory,
            evaluator=evaluator,
            config=config,
            roles=roles,
            callbacks=callbacks,
        )
        self.events = self.play_executor.events

    def add_event_callback(self, callback: EventCallback) -> None:
        self.events.add(callback)

    async def execute(
        self,
        playbook: Playbook,
        extra_vars: Optional[Dict[str, Any]] = None,
    ) -> List[TaskResult]:
        """
        Run all plays and return the concatenated results.

        Raises:
            ValidationError: The playbook is structurally invalid
            PlaybookError: A play failed; ``results`` holds partial results
        """
        playbook.validate()
        baseline = merge_vars(playbook.vars, extra_vars)
        results: List[TaskResult] = []

        for play in playbook.plays:
            self.events.emit(Event(
                type=EventType.PLAY_START,
                play=play.name,
                data={'hosts': play.host_patterns(), 'serial': play.serial},
            ))

            try:
                play_results = await self.play_executor.execute_play(play, baseline, extra_vars)
            except ChoreoError as e:
                partial = e.results if isinstance(e, ExecutionError) else []
                results.extend(partial)
                self.events.emit(Event(
                    type=EventType.ERROR,
                    play=play.name,
                    error=e,
                    results=tuple(partial),
                ))
                raise PlaybookError(playbook.path, play.name, str(e), results) from e

            results.extend(play_results)
            self.events.emit(Event(
                type=EventType.PLAY_COMPLETE,
                play=play.name,
                results=tuple(play_results),
                data={'results_count': len(play_results)},
            ))

        return results

    def run(
        self,
        playbook: Playbook,
        extra_vars: Optional[Dict[str, Any]] = None,
    ) -> List[TaskResult]:
        """Synchronous entry point; must not be called from a running event loop."""
        return asyncio.run(self.execute(playbook, extra_vars))
