# Copyright (c) 2024 Choreo Contributors
# MIT License

"""
Choreo Error Classes.

All custom exceptions for clear error handling and exit codes.
Execution errors carry the partial results accumulated before the failure so
callers can see exactly how far a run progressed.
"""

from __future__ import annotations

import enum
from typing import TYPE_CHECKING, List, Optional, Sequence

if TYPE_CHECKING:
    from choreo.engine.results import TaskResult


class ExitCode(enum.IntEnum):
    """Standard exit codes matching ansible-playbook behavior."""

    SUCCESS = 0
    GENERIC_ERROR = 1
    HOST_FAILED = 2
    PARSE_ERROR = 3
    UNSUPPORTED_FEATURE = 4
    KEYBOARD_INTERRUPT = 130


class ChoreoError(Exception):
    """Base exception for all Choreo errors."""

    exit_code: int = ExitCode.GENERIC_ERROR

    def __init__(self, message: str, details: str | None = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}\n  Details: {self.details}"
        return self.message


class ParseError(ChoreoError):
    """Error parsing a playbook, role or inventory document."""

    exit_code: int = ExitCode.PARSE_ERROR

    def __init__(
        self,
        message: str,
        file_path: str | None = None,
        line: int | None = None,
        details: str | None = None,
    ) -> None:
        self.file_path = file_path
        self.line = line
        location = ""
        if file_path:
            location = f" in {file_path}"
            if line:
                location += f" at line {line}"
        super().__init__(f"Parse error{location}: {message}", details)


class ValidationError(ChoreoError):
    """A structural invariant of a playbook, play or task does not hold."""

    exit_code: int = ExitCode.PARSE_ERROR

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(f"Invalid '{field}': {message}")


class UnsupportedFeatureError(ChoreoError):
    """Error when a playbook uses a feature the engine does not support."""

    exit_code: int = ExitCode.UNSUPPORTED_FEATURE

    def __init__(self, feature: str, suggestion: str | None = None) -> None:
        self.feature = feature
        msg = f"Unsupported feature: {feature}"
        if suggestion:
            msg += f"\n  Suggestion: {suggestion}"
        super().__init__(msg)


class TemplateError(ChoreoError):
    """Error rendering a Jinja2 template or expression."""

    exit_code: int = ExitCode.PARSE_ERROR

    def __init__(
        self,
        message: str,
        template: str | None = None,
        variable: str | None = None,
    ) -> None:
        self.template = template
        self.variable = variable

        details = None
        if template:
            # Truncate long templates
            truncated = template[:100] + "..." if len(template) > 100 else template
            details = f"Template: {truncated}"

        super().__init__(f"Template error: {message}", details)


class DependencyError(ChoreoError):
    """Role dependency graph cannot be resolved."""


class CircularDependencyError(DependencyError):
    """A role was reached again while its own dependencies were being resolved."""

    def __init__(self, role: str, cycle: Sequence[str] = ()) -> None:
        self.role = role
        self.cycle = list(cycle)
        details = " -> ".join(self.cycle) if self.cycle else None
        super().__init__(f"Circular dependency detected involving role '{role}'", details)


class MissingDependencyError(DependencyError):
    """A role declares a dependency on a role that was never registered."""

    def __init__(self, dependency: str, dependent: str) -> None:
        self.dependency = dependency
        self.dependent = dependent
        super().__init__(f"Dependency '{dependency}' of role '{dependent}' not found")


class InventoryError(ChoreoError):
    """Error in inventory data or host lookup."""

    def __init__(self, message: str, source: str | None = None) -> None:
        self.source = source
        prefix = f"Inventory {source}: " if source else "Inventory: "
        super().__init__(prefix + message)


class HostResolutionError(InventoryError):
    """A play's host pattern could not be resolved by the inventory."""

    exit_code: int = ExitCode.HOST_FAILED

    def __init__(self, pattern: str, play: str, cause: Exception | None = None) -> None:
        self.pattern = pattern
        self.play = play
        reason = f": {cause}" if cause else ""
        super().__init__(f"failed to resolve hosts '{pattern}' for play '{play}'{reason}")


class ExecutionError(ChoreoError):
    """Base for failures raised while executing tasks, plays or playbooks."""

    exit_code: int = ExitCode.HOST_FAILED

    def __init__(
        self,
        message: str,
        results: Optional[List["TaskResult"]] = None,
        details: str | None = None,
    ) -> None:
        self.results: List["TaskResult"] = list(results or [])
        super().__init__(message, details)


class ConditionError(ExecutionError):
    """A task condition (when/until/changed_when/failed_when) could not be evaluated."""

    def __init__(self, task: str, condition: str, cause: Exception) -> None:
        self.task = task
        self.condition = condition
        super().__init__(
            f"Error evaluating condition for task '{task}': {cause}",
            details=f"Condition: {condition}",
        )


class TaskFailedError(ExecutionError):
    """A task failed on one or more hosts and does not ignore errors."""

    def __init__(
        self,
        task: str,
        failed_hosts: Sequence[str],
        results: Optional[List["TaskResult"]] = None,
        message: str | None = None,
    ) -> None:
        self.task = task
        self.failed_hosts = list(failed_hosts)
        hosts = ", ".join(self.failed_hosts) if self.failed_hosts else "no hosts"
        super().__init__(
            f"Task '{task}' failed on {hosts}",
            results,
            details=message,
        )


class DelegateHostNotFoundError(ExecutionError):
    """The host named by delegate_to is unknown to the inventory.

    This is a configuration error: ignore_errors never recovers it.
    """

    def __init__(self, task: str, delegate: str, cause: Exception | None = None) -> None:
        self.task = task
        self.delegate = delegate
        super().__init__(
            f"Delegate host '{delegate}' for task '{task}' not found",
            details=str(cause) if cause else None,
        )


class PlayError(ExecutionError):
    """A play stopped before completing."""

    def __init__(
        self,
        play: str,
        message: str,
        results: Optional[List["TaskResult"]] = None,
    ) -> None:
        self.play = play
        super().__init__(f"Play '{play}': {message}", results)


class PlaybookError(ExecutionError):
    """A playbook stopped because one of its plays failed."""

    def __init__(
        self,
        playbook: str,
        play: str,
        message: str,
        results: Optional[List["TaskResult"]] = None,
    ) -> None:
        self.playbook = playbook
        self.play = play
        location = f"{playbook}[{play}]" if play else playbook
        super().__init__(f"Playbook {location}: {message}", results)
