"""
Tests for the task execution unit: skip, loop, delegation, run_once,
retries and result conditions.
"""

import asyncio

import pytest

from choreo.engine.config import EngineConfig
from choreo.engine.errors import (
    ConditionError,
    DelegateHostNotFoundError,
    TaskFailedError,
)
from choreo.engine.playbook import Task
from choreo.engine.results import TaskResult
from choreo.engine.task_executor import TaskExecutor


@pytest.fixture
def executor(runner, inventory):
    return TaskExecutor(runner, inventory)


class TestSkip:
    """Test conditional skipping."""

    @pytest.mark.asyncio
    async def test_false_when_skips_without_runner_call(self, executor, runner, hosts):
        """A false condition yields no results and no invocation."""
        task = Task(name="skip me", module="debug", when="enabled")
        results = await executor.execute_task(task, hosts, {"enabled": False})

        assert results == []
        assert runner.calls == []

    @pytest.mark.asyncio
    async def test_literal_false(self, executor, runner, hosts):
        results = await executor.execute_task(Task(name="t", module="debug", when=False), hosts, {})
        assert results == []
        assert runner.calls == []

    @pytest.mark.asyncio
    async def test_when_sees_task_vars(self, executor, runner, hosts):
        task = Task(name="t", module="debug", when="flag", vars={"flag": True})
        results = await executor.execute_task(task, hosts, {})
        assert len(results) == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("token, expected", [
        ("yes", 3), ("Yes", 3), ("true", 3), ("True", 3), ("on", 3), ("1", 3),
        ("no", 0), ("No", 0), ("false", 0), ("False", 0), ("off", 0), ("0", 0),
    ])
    async def test_boolean_word_conditions(self, executor, runner, hosts, token, expected):
        """A when that is just a boolean word is taken literally, not as a variable."""
        results = await executor.execute_task(Task(name="t", module="debug", when=token), hosts, {})
        assert len(results) == expected
        assert len(runner.calls) == (1 if expected else 0)

    @pytest.mark.asyncio
    async def test_undefined_condition_raises(self, executor, runner, hosts):
        task = Task(name="t", module="debug", when="ghost == 1")
        with pytest.raises(ConditionError):
            await executor.execute_task(task, hosts, {})
        assert runner.calls == []


class TestLoop:
    """Test loop expansion."""

    @pytest.mark.asyncio
    async def test_three_items_two_hosts(self, executor, runner, hosts):
        """3 items x 2 hosts = 6 results, iteration-major."""
        task = Task(name="loop", module="debug", loop=["a", "b", "c"])
        results = await executor.execute_task(task, hosts[:2], {})

        assert len(results) == 6
        assert len(runner.calls) == 3
        assert [c.variables["item"] for c in runner.calls] == ["a", "b", "c"]
        assert [c.variables["item_index"] for c in runner.calls] == [0, 1, 2]
        assert [r.host for r in results] == ["h1", "h2"] * 3
        for call in runner.calls:
            assert call.hosts == ["h1", "h2"]

    @pytest.mark.asyncio
    async def test_loop_copies_do_not_mutate_template(self, executor, runner, hosts):
        task = Task(name="loop", module="debug", loop=["a"])
        await executor.execute_task(task, hosts, {})
        assert task.loop == ["a"]
        assert runner.calls[0].task.loop is None

    @pytest.mark.asyncio
    async def test_loop_from_variable(self, executor, runner, hosts):
        task = Task(name="loop", module="debug", loop="{{ packages }}")
        await executor.execute_task(task, hosts[:1], {"packages": ["nginx", "git"]})
        assert [c.variables["item"] for c in runner.calls] == ["nginx", "git"]

    @pytest.mark.asyncio
    async def test_loop_from_bare_name(self, executor, runner, hosts):
        task = Task(name="loop", module="debug", loop="packages")
        await executor.execute_task(task, hosts[:1], {"packages": ["a", "b"]})
        assert len(runner.calls) == 2

    @pytest.mark.asyncio
    async def test_non_list_collapses_to_single_item(self, executor, runner, hosts):
        task = Task(name="loop", module="debug", loop="{{ name }}-x")
        await executor.execute_task(task, hosts[:1], {"name": "web"})
        assert [c.variables["item"] for c in runner.calls] == ["web-x"]

    @pytest.mark.asyncio
    async def test_literal_items_are_rendered(self, executor, runner, hosts):
        task = Task(name="loop", module="debug", loop=["{{ base }}/a"])
        await executor.execute_task(task, hosts[:1], {"base": "/srv"})
        assert runner.calls[0].variables["item"] == "/srv/a"

    @pytest.mark.asyncio
    async def test_failure_aborts_remaining_iterations(self, recording_runner_class, inventory, hosts):
        """Failed iteration stops the loop and carries earlier results."""
        def respond(task, host, variables, options):
            return TaskResult(host=host, task_name=task.name, success=variables["item"] != "b")

        runner = recording_runner_class(respond=respond)
        executor = TaskExecutor(runner, inventory)
        task = Task(name="loop", module="debug", loop=["a", "b", "c"])

        with pytest.raises(TaskFailedError) as exc_info:
            await executor.execute_task(task, hosts[:2], {})

        assert len(runner.calls) == 2
        assert len(exc_info.value.results) == 4
        assert exc_info.value.failed_hosts == ["h1", "h2"]

    @pytest.mark.asyncio
    async def test_ignore_errors_continues_iterations(self, recording_runner_class, inventory, hosts):
        def respond(task, host, variables, options):
            return TaskResult(host=host, task_name=task.name, success=variables["item"] != "b")

        runner = recording_runner_class(respond=respond)
        executor = TaskExecutor(runner, inventory)
        task = Task(name="loop", module="debug", loop=["a", "b", "c"], ignore_errors=True)

        results = await executor.execute_task(task, hosts[:2], {})
        assert len(results) == 6
        assert [r.success for r in results] == [True, True, False, False, True, True]

    @pytest.mark.asyncio
    async def test_custom_loop_var_names(self, runner, inventory, hosts):
        executor = TaskExecutor(runner, inventory, config=EngineConfig(loop_var="pkg", index_var="i"))
        await executor.execute_task(Task(name="t", module="debug", loop=["x"]), hosts[:1], {})
        assert runner.calls[0].variables["pkg"] == "x"
        assert runner.calls[0].variables["i"] == 0


class TestDelegation:
    """Test delegate_to."""

    @pytest.mark.asyncio
    async def test_runs_on_delegate_only(self, executor, runner, hosts):
        task = Task(name="t", module="debug", delegate_to="h3")
        results = await executor.execute_task(task, hosts[:2], {})

        assert [r.host for r in results] == ["h3"]
        assert runner.calls[0].hosts == ["h3"]
        assert runner.calls[0].options.delegated is True

    @pytest.mark.asyncio
    async def test_templated_delegate(self, executor, runner, hosts):
        task = Task(name="t", module="debug", delegate_to="{{ target }}")
        await executor.execute_task(task, hosts, {"target": "h2"})
        assert runner.calls[0].hosts == ["h2"]

    @pytest.mark.asyncio
    async def test_unknown_delegate_is_fatal(self, executor, runner, hosts):
        """Delegate-not-found is raised even with ignore_errors."""
        task = Task(name="t", module="debug", delegate_to="nowhere", ignore_errors=True)
        with pytest.raises(DelegateHostNotFoundError) as exc_info:
            await executor.execute_task(task, hosts, {})

        assert exc_info.value.delegate == "nowhere"
        assert runner.calls == []


class TestRunOnce:
    """Test run_once."""

    @pytest.mark.asyncio
    async def test_first_host_only(self, executor, runner, hosts):
        results = await executor.execute_task(Task(name="t", module="debug", run_once=True), hosts, {})

        assert [r.host for r in results] == ["h1"]
        assert runner.calls[0].hosts == ["h1"]

    @pytest.mark.asyncio
    async def test_empty_hosts(self, executor, runner):
        results = await executor.execute_task(Task(name="t", module="debug", run_once=True), [], {})
        assert results == []
        assert runner.calls == []


class TestDefaultExecution:
    """Test the default path and runner error handling."""

    @pytest.mark.asyncio
    async def test_all_hosts(self, executor, runner, hosts):
        results = await executor.execute_task(Task(name="t", module="debug"), hosts, {"x": 1})
        assert [r.host for r in results] == ["h1", "h2", "h3"]
        assert runner.calls[0].variables["x"] == 1

    @pytest.mark.asyncio
    async def test_failure_raises(self, recording_runner_class, inventory, hosts):
        runner = recording_runner_class(fail_modules=["fail"])
        executor = TaskExecutor(runner, inventory)

        with pytest.raises(TaskFailedError) as exc_info:
            await executor.execute_task(Task(name="t", module="fail"), hosts, {})
        assert len(exc_info.value.results) == 3

    @pytest.mark.asyncio
    async def test_runner_exception_becomes_failed_results(self, recording_runner_class, inventory, hosts):
        runner = recording_runner_class(raise_error=RuntimeError("transport down"))
        executor = TaskExecutor(runner, inventory)

        task = Task(name="t", module="debug", ignore_errors=True)
        results = await executor.execute_task(task, hosts, {})

        assert [r.failed for r in results] == [True, True, True]
        assert results[0].msg == "transport down"
        assert isinstance(results[0].error, RuntimeError)

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, recording_runner_class, inventory, hosts):
        runner = recording_runner_class(raise_error=asyncio.CancelledError())
        executor = TaskExecutor(runner, inventory)

        with pytest.raises(asyncio.CancelledError):
            await executor.execute_task(Task(name="t", module="debug"), hosts, {})

    @pytest.mark.asyncio
    async def test_timeout_passed_to_runner(self, runner, inventory, hosts):
        executor = TaskExecutor(runner, inventory, config=EngineConfig(task_timeout=30))

        await executor.execute_task(Task(name="a", module="debug"), hosts, {}, play="p", phase="tasks")
        await executor.execute_task(Task(name="b", module="debug", timeout=5), hosts, {})

        assert runner.calls[0].options.timeout == 30
        assert runner.calls[0].options.play == "p"
        assert runner.calls[1].options.timeout == 5


class TestResultConditions:
    """Test changed_when and failed_when."""

    @pytest.mark.asyncio
    async def test_changed_when(self, executor, hosts):
        task = Task(name="t", module="debug", changed_when=True)
        results = await executor.execute_task(task, hosts[:1], {})
        assert results[0].changed is True

    @pytest.mark.asyncio
    async def test_failed_when_sees_result(self, executor, hosts):
        task = Task(name="t", module="debug", failed_when="result.host == 'h2'", ignore_errors=True)
        results = await executor.execute_task(task, hosts, {})
        assert [r.failed for r in results] == [False, True, False]

    @pytest.mark.asyncio
    async def test_failed_when_false_clears_failure(self, recording_runner_class, inventory, hosts):
        runner = recording_runner_class(fail_modules=["command"])
        executor = TaskExecutor(runner, inventory)

        results = await executor.execute_task(
            Task(name="t", module="command", failed_when=False), hosts, {},
        )
        assert all(r.success for r in results)

    @pytest.mark.asyncio
    async def test_condition_error_keeps_runner_results(self, executor, runner, hosts):
        task = Task(name="t", module="debug", failed_when="result.nope.deeper")
        with pytest.raises(ConditionError) as exc_info:
            await executor.execute_task(task, hosts, {})

        assert len(runner.calls) == 1
        assert [r.host for r in exc_info.value.results] == ["h1", "h2", "h3"]

    @pytest.mark.asyncio
    async def test_condition_error_in_loop_keeps_every_iteration(self, executor, runner, hosts):
        task = Task(
            name="t", module="debug", loop=["a", "b"],
            changed_when="item == 'a' or result.nope.deeper",
        )
        with pytest.raises(ConditionError) as exc_info:
            await executor.execute_task(task, hosts[:2], {})

        assert len(runner.calls) == 2
        assert [r.host for r in exc_info.value.results] == ["h1", "h2", "h1", "h2"]

    @pytest.mark.asyncio
    async def test_until_error_keeps_results_of_all_hosts(self, executor, runner, hosts):
        task = Task(name="t", module="debug", until="result.nope.deeper", retries=2)
        with pytest.raises(ConditionError) as exc_info:
            await executor.execute_task(task, hosts, {})

        assert [r.host for r in exc_info.value.results] == ["h1", "h2", "h3"]


class TestRunnerContract:
    """Test results that do not match the hosts of the call."""

    @pytest.mark.asyncio
    async def test_missing_result_becomes_failure(self, recording_runner_class, inventory, hosts):
        class Forgetful(recording_runner_class):
            async def run(self, task, hosts, variables, options):
                results = await super().run(task, hosts, variables, options)
                return [r for r in results if r.host != "h2"]

        executor = TaskExecutor(Forgetful(), inventory)
        results = await executor.execute_task(
            Task(name="t", module="debug", ignore_errors=True), hosts, {},
        )

        assert [r.host for r in results] == ["h1", "h2", "h3"]
        assert results[1].failed
        assert "returned 0 results" in results[1].msg

    @pytest.mark.asyncio
    async def test_duplicate_results_become_failure(self, recording_runner_class, inventory, hosts):
        class Chatty(recording_runner_class):
            async def run(self, task, hosts, variables, options):
                results = await super().run(task, hosts, variables, options)
                return results + results[:1]

        executor = TaskExecutor(Chatty(), inventory)
        with pytest.raises(TaskFailedError) as exc_info:
            await executor.execute_task(Task(name="t", module="debug"), hosts, {})

        results = exc_info.value.results
        assert [r.host for r in results] == ["h1", "h2", "h3"]
        assert results[0].failed
        assert "returned 2 results" in results[0].msg
        assert results[1].success


class TestRetries:
    """Test until/retries/delay."""

    @pytest.mark.asyncio
    async def test_retries_until_condition(self, recording_runner_class, inventory, hosts):
        """Only hosts that have not met 'until' are retried."""
        counts = {}

        def respond(task, host, variables, options):
            counts[host] = counts.get(host, 0) + 1
            ready = host == "h1" or counts[host] >= 3
            return TaskResult(host=host, task_name=task.name, data={"ready": ready})

        runner = recording_runner_class(respond=respond)
        executor = TaskExecutor(runner, inventory)
        task = Task(name="wait", module="check", until="result.data.ready", retries=5)

        results = await executor.execute_task(task, hosts[:2], {})

        assert [c.hosts for c in runner.calls] == [["h1", "h2"], ["h2"], ["h2"]]
        assert [c.options.attempt for c in runner.calls] == [1, 2, 3]
        assert [r.host for r in results] == ["h1", "h2"]
        assert results[0].data["attempts"] == 1
        assert results[1].data["attempts"] == 3
        assert all(r.success for r in results)

    @pytest.mark.asyncio
    async def test_until_never_met_fails(self, executor, runner, hosts):
        task = Task(name="wait", module="check", until=False, retries=2)
        with pytest.raises(TaskFailedError) as exc_info:
            await executor.execute_task(task, hosts[:1], {})

        assert len(runner.calls) == 3
        result = exc_info.value.results[0]
        assert result.failed
        assert result.data["attempts"] == 3

    @pytest.mark.asyncio
    async def test_retries_without_until_retry_failures(self, recording_runner_class, inventory, hosts):
        attempts = []

        def respond(task, host, variables, options):
            attempts.append(options.attempt)
            return TaskResult(host=host, task_name=task.name, success=options.attempt == 2)

        runner = recording_runner_class(respond=respond)
        executor = TaskExecutor(runner, inventory)

        results = await executor.execute_task(
            Task(name="t", module="flaky", retries=3), hosts[:1], {},
        )
        assert attempts == [1, 2]
        assert results[0].success

    @pytest.mark.asyncio
    async def test_delay_sleeps_between_attempts(self, executor, hosts, monkeypatch):
        delays = []

        async def fake_sleep(seconds):
            delays.append(seconds)

        monkeypatch.setattr(asyncio, "sleep", fake_sleep)
        task = Task(name="wait", module="check", until=False, retries=2, delay=1.5, ignore_errors=True)
        await executor.execute_task(task, hosts[:1], {})

        assert delays == [1.5, 1.5]
