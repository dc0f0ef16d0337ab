"""
Choreo Task Executor

Decides, for one task and one candidate host set, whether the task runs, how
many times, and on which hosts, then hands each invocation to the Runner.

Decision order once ``when`` has passed (first match wins):

1. loop        - one Runner call per item, against all candidate hosts
2. delegate_to - the delegate host only
3. run_once    - the first candidate host only
4. default     - all candidate hosts
"""

import asyncio
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional

from choreo.engine.config import EngineConfig
from choreo.engine.errors import (
    ConditionError,
    DelegateHostNotFoundError,
    InventoryError,
    TaskFailedError,
    TemplateError,
)
from choreo.engine.inventory import Host, Inventory
from choreo.engine.playbook import Condition, Task
from choreo.engine.results import TaskResult, utcnow
from choreo.engine.runner import Runner, RunOptions
from choreo.engine.templating import ExpressionEvaluator, JinjaEvaluator
from choreo.engine.variables import bind_loop_item, merge_vars


class TaskExecutor:
    """
    Runs a single task definition against a candidate host set.

    Results come back iteration-major, host-minor, in candidate host order.
    A failure that the task does not ignore raises :class:`TaskFailedError`
    carrying every result produced so far.
    """

    def __init__(
        self,
        runner: Runner,
        inventory: Inventory,
        evaluator: Optional[ExpressionEvaluator] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.runner = runner
        self.inventory = inventory
        self.evaluator = evaluator or JinjaEvaluator()
        self.config = config or EngineConfig()

    async def execute_task(
        self,
        task: Task,
        hosts: List[Host],
        scope: Dict[str, Any],
        play: str = "",
        phase: str = "tasks",
    ) -> List[TaskResult]:
        """
        Execute ``task`` against ``hosts`` with ``scope`` as its variables.

        Returns:
            Results in execution order; empty if the task was skipped

        Raises:
            ConditionError: A condition could not be evaluated
            TaskFailedError: A host failed and the task does not ignore errors
            DelegateHostNotFoundError: The delegate host is unknown
        """
        task_scope = merge_vars(scope, task.vars)

        if task.when is not None and not self._check(task, task.when, task_scope):
            return []

        options = RunOptions(
            timeout=task.timeout or self.config.task_timeout,
            play=play,
            phase=phase,
        )

        if task.is_looped:
            return await self._execute_loop(task, hosts, task_scope, options)

        if task.delegate_to:
            delegate = self._resolve_delegate(task, task_scope)
            options = replace(options, delegated=True)
            return self._raise_on_failure(
                task, await self._run(task, [delegate], task_scope, options)
            )

        if task.run_once:
            if not hosts:
                return []
            hosts = hosts[:1]

        return self._raise_on_failure(task, await self._run(task, hosts, task_scope, options))

    async def _execute_loop(
        self,
        task: Task,
        hosts: List[Host],
        scope: Dict[str, Any],
        options: RunOptions,
    ) -> List[TaskResult]:
        items = self.resolve_loop_items(task, scope)
        results: List[TaskResult] = []

        for index, item in enumerate(items):
            item_task = task.copy(loop=None)
            item_scope = bind_loop_item(
                scope, item, index,
                loop_var=self.config.loop_var,
                index_var=self.config.index_var,
            )
            try:
                iteration = await self._run(item_task, hosts, item_scope, options)
            except ConditionError as e:
                e.results = results + e.results
                raise
            results.extend(iteration)

            # Stop remaining iterations on failure
            if not task.ignore_errors and any(r.failed for r in iteration):
                self._raise_on_failure(task, iteration, results)

        return results

    def resolve_loop_items(self, task: Task, scope: Dict[str, Any]) -> List[Any]:
        """
        Turn a task's loop source into a list of items.

        A literal list is rendered item by item. A string is resolved
        against the scope; if it yields a list that list is used, otherwise
        the loop collapses to a single item holding the rendered value.
        """
        loop = task.loop
        if isinstance(loop, (list, tuple)):
            return [self._template(task, item, scope) for item in loop]

        if isinstance(loop, str):
            name = loop.strip()
            if '{{' not in loop and name in scope:
                # Bare variable name
                value = scope[name]
            else:
                try:
                    value = self.evaluator.resolve(loop, scope)
                except TemplateError as e:
                    raise TaskFailedError(task.name, [], message=str(e)) from e
            if isinstance(value, (list, tuple)):
                return list(value)
            return [value]

        return [loop]

    def _resolve_delegate(self, task: Task, scope: Dict[str, Any]) -> Host:
        name = str(self._template(task, task.delegate_to, scope)).strip()
        try:
            host = self.inventory.get_host(name)
        except InventoryError as e:
            raise DelegateHostNotFoundError(task.name, name, cause=e)
        if host is None:
            raise DelegateHostNotFoundError(task.name, name)
        return host

    async def _run(
        self,
        task: Task,
        hosts: List[Host],
        scope: Dict[str, Any],
        options: RunOptions,
    ) -> List[TaskResult]:
        """One logical Runner call plus retries, with result conditions applied."""
        if not hosts:
            return []

        results = {
            r.host: r for r in await self._invoke(task, hosts, scope, options)
        }
        if task.until is None and task.retries <= 0:
            return self._in_host_order(hosts, results)

        attempts = {h.name: 1 for h in hosts}
        try:
            pending = [h for h in hosts if not self._settled(task, results.get(h.name), scope)]

            for attempt in range(2, task.retries + 2):
                if not pending:
                    break
                if task.delay:
                    await asyncio.sleep(task.delay)
                retry = await self._invoke(task, pending, scope, replace(options, attempt=attempt))
                for result in retry:
                    results[result.host] = result
                    attempts[result.host] = attempt
                pending = [h for h in pending if not self._settled(task, results.get(h.name), scope)]
        except ConditionError as e:
            # Report the latest result of every host, not just the failing call
            for result in e.results:
                results[result.host] = result
            e.results = self._in_host_order(hosts, results)
            raise

        for host in hosts:
            result = results.get(host.name)
            if result is None:
                continue
            data = {**result.data, 'attempts': attempts[host.name]}
            if task.until is not None and host in pending:
                results[host.name] = replace(
                    result,
                    success=False,
                    data=data,
                    msg=f"Retried {attempts[host.name]} time(s); condition not met: {task.until}",
                )
            else:
                results[host.name] = replace(result, data=data)

        return self._in_host_order(hosts, results)

    async def _invoke(
        self,
        task: Task,
        hosts: List[Host],
        scope: Dict[str, Any],
        options: RunOptions,
    ) -> List[TaskResult]:
        started = utcnow()
        try:
            results = await self.runner.run(task, hosts, scope, options)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Runner errors count as failures on every host in the call
            results = [
                TaskResult.from_exception(h.name, task.name, e, module=task.module, started=started)
                for h in hosts
            ]

        results = self._reconcile(task, hosts, results, started)
        try:
            return [self._apply_result_conditions(task, r, scope) for r in results]
        except ConditionError as e:
            e.results = results
            raise

    @staticmethod
    def _reconcile(
        task: Task,
        hosts: List[Host],
        results: List[TaskResult],
        started: datetime,
    ) -> List[TaskResult]:
        """Exactly one result per called host, in host order.

        A host the Runner returned no result for, or more than one, gets a
        failed result saying so.
        """
        by_host: Dict[str, List[TaskResult]] = {}
        for result in results:
            by_host.setdefault(result.host, []).append(result)

        reconciled: List[TaskResult] = []
        for host in hosts:
            returned = by_host.pop(host.name, [])
            if len(returned) == 1:
                reconciled.append(returned[0])
                continue
            reconciled.append(TaskResult(
                host=host.name,
                task_name=task.name,
                success=False,
                msg=f"Runner returned {len(returned)} results for this host, expected 1",
                module=task.module,
                started=started,
            ))

        # Results for hosts outside the call keep Runner order
        for extra in by_host.values():
            reconciled.extend(extra)
        return reconciled

    def _apply_result_conditions(
        self,
        task: Task,
        result: TaskResult,
        scope: Dict[str, Any],
    ) -> TaskResult:
        if task.changed_when is None and task.failed_when is None:
            return result

        result_scope = merge_vars(scope, {'result': result.to_dict()})
        if task.changed_when is not None:
            result = replace(result, changed=self._check(task, task.changed_when, result_scope))
        if task.failed_when is not None:
            failed = self._check(task, task.failed_when, result_scope)
            result = replace(
                result,
                success=not failed,
                msg=result.msg or (f"failed_when condition met: {task.failed_when}" if failed else ""),
            )
        return result

    def _settled(self, task: Task, result: Optional[TaskResult], scope: Dict[str, Any]) -> bool:
        """Whether a host needs no further retries."""
        if result is None:
            return True
        if task.until is None:
            return result.success
        return self._check(task, task.until, merge_vars(scope, {'result': result.to_dict()}))

    def _check(self, task: Task, condition: Condition, scope: Dict[str, Any]) -> bool:
        try:
            return condition.evaluate(self.evaluator, scope)
        except TemplateError as e:
            raise ConditionError(task.name, str(condition), e) from e

    def _template(self, task: Task, value: Any, scope: Dict[str, Any]) -> Any:
        try:
            return self.evaluator.render(value, scope)
        except TemplateError as e:
            raise TaskFailedError(task.name, [], message=str(e)) from e

    @staticmethod
    def _in_host_order(hosts: List[Host], results: Dict[str, TaskResult]) -> List[TaskResult]:
        ordered = [results.pop(h.name) for h in hosts if h.name in results]
        # Results for hosts outside the call keep Runner order
        return ordered + list(results.values())

    @staticmethod
    def _raise_on_failure(
        task: Task,
        results: List[TaskResult],
        accumulated: Optional[List[TaskResult]] = None,
    ) -> List[TaskResult]:
        failed = [r for r in results if r.failed]
        if failed and not task.ignore_errors:
            raise TaskFailedError(
                task.name,
                [r.host for r in failed],
                accumulated if accumulated is not None else results,
                message=failed[0].msg,
            )
        return results
