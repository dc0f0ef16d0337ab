"""
Choreo Playbook Model

Plays, tasks and the conditions attached to them. These objects are built
once by a loader (or by library users directly) and treated as read-only by
the executors.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence, Union

from choreo.engine.errors import ValidationError
from choreo.engine.templating import ExpressionEvaluator


@dataclass(frozen=True)
class Condition:
    """
    A boolean-producing condition over a variable scope.

    Two variants: a boolean literal (``literal`` set) or an opaque expression
    handed to the injected :class:`ExpressionEvaluator`.
    """

    literal: Optional[bool] = None
    expression: Optional[str] = None

    @classmethod
    def of(cls, value: Any) -> Optional['Condition']:
        """
        Build a condition from a raw value.

        Accepts a Condition, a bool, a string expression, or a list of those
        (AND-ed together). ``None`` means "no condition".
        """
        if value is None or isinstance(value, Condition):
            return value
        if isinstance(value, bool):
            return cls(literal=value)
        if isinstance(value, (list, tuple)):
            parts = [cls.of(v) for v in value]
            parts = [p for p in parts if p is not None]
            if any(p.literal is False for p in parts):
                return cls(literal=False)
            expressions = [p.expression for p in parts if p.expression is not None]
            if not expressions:
                return cls(literal=True)
            if len(expressions) == 1:
                return cls(expression=expressions[0])
            return cls(expression=' and '.join(f'({e})' for e in expressions))
        return cls(expression=str(value))

    @property
    def is_literal(self) -> bool:
        return self.literal is not None

    def evaluate(self, evaluator: ExpressionEvaluator, variables: Dict[str, Any]) -> bool:
        if self.literal is not None:
            return self.literal
        return evaluator.evaluate(self.expression or '', variables)

    def __str__(self) -> str:
        if self.literal is not None:
            return str(self.literal)
        return self.expression or ''


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


@dataclass(frozen=True)
class Task:
    """Represents a single task: a module call plus its modifiers."""

    name: str
    module: str
    args: Dict[str, Any] = field(default_factory=dict)
    when: Optional[Condition] = None
    loop: Optional[Any] = None
    vars: Dict[str, Any] = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)
    ignore_errors: bool = False
    run_once: bool = False
    delegate_to: Optional[str] = None
    notify: List[str] = field(default_factory=list)  # Handlers to notify
    listen: List[str] = field(default_factory=list)  # Handler triggers
    until: Optional[Condition] = None
    retries: int = 0
    delay: float = 0
    changed_when: Optional[Condition] = None
    failed_when: Optional[Condition] = None
    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        # Normalize raw YAML-ish values; frozen, so go through object.__setattr__
        for name in ('when', 'until', 'changed_when', 'failed_when'):
            object.__setattr__(self, name, Condition.of(getattr(self, name)))
        for name in ('tags', 'notify', 'listen'):
            object.__setattr__(self, name, [str(v) for v in _as_list(getattr(self, name))])
        if self.retries < 0:
            raise ValidationError('retries', f"must not be negative, got {self.retries}")

    @property
    def is_looped(self) -> bool:
        return self.loop is not None

    def copy(self, **changes: Any) -> 'Task':
        """Return a modified copy; the original is left untouched."""
        return replace(self, **changes)

    def validate(self) -> None:
        if not self.module:
            raise ValidationError('module', f"task '{self.name}' has no module")

    def __repr__(self) -> str:
        return f"Task(name={self.name!r}, module={self.module!r})"


@dataclass
class RoleReference:
    """A play's use of a role, with the parameters passed to it."""

    name: str
    vars: Dict[str, Any] = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)
    when: Optional[Condition] = None

    def __post_init__(self) -> None:
        self.when = Condition.of(self.when)
        self.tags = [str(t) for t in _as_list(self.tags)]


@dataclass
class Play:
    """Represents a single play in a playbook."""

    name: str
    hosts: Union[str, List[str]]
    pre_tasks: List[Task] = field(default_factory=list)
    tasks: List[Task] = field(default_factory=list)
    post_tasks: List[Task] = field(default_factory=list)
    handlers: List[Task] = field(default_factory=list)
    roles: List[RoleReference] = field(default_factory=list)
    vars: Dict[str, Any] = field(default_factory=dict)
    serial: int = 0
    strategy: str = "linear"
    gather_facts: Optional[bool] = None
    tags: List[str] = field(default_factory=list)

    def host_patterns(self) -> List[str]:
        """Split the host expression into individual pattern tokens."""
        raw: Sequence[Any] = self.hosts if isinstance(self.hosts, (list, tuple)) else [self.hosts]
        patterns: List[str] = []
        for entry in raw:
            for token in str(entry).replace(';', ',').split(','):
                token = token.strip()
                if token:
                    patterns.append(token)
        return patterns

    def validate(self) -> None:
        if not self.name or not str(self.name).strip():
            raise ValidationError('name', "play must have a non-empty name")
        if not self.host_patterns():
            raise ValidationError('hosts', f"play '{self.name}' must target at least one host pattern")
        if self.serial < 0:
            raise ValidationError('serial', f"play '{self.name}' has negative serial {self.serial}")
        for task in self.pre_tasks + self.tasks + self.post_tasks + self.handlers:
            task.validate()

    def __repr__(self) -> str:
        return f"Play(name={self.name!r}, hosts={self.hosts!r}, tasks={len(self.tasks)})"


@dataclass
class Playbook:
    """An ordered sequence of plays plus top-level variables."""

    plays: List[Play] = field(default_factory=list)
    vars: Dict[str, Any] = field(default_factory=dict)
    path: str = "playbook"

    def validate(self) -> None:
        if not self.plays:
            raise ValidationError('plays', f"{self.path} must contain at least one play")
        for play in self.plays:
            play.validate()
