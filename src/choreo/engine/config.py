"""
Choreo Engine Configuration

Settings shared by the play and task executors.
"""

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Optional, Set, Union

import yaml

from choreo.engine.errors import ParseError, ValidationError


ALWAYS_TAG = 'always'
NEVER_TAG = 'never'


@dataclass
class EngineConfig:
    """
    Configuration for playbook execution.

    Attributes:
        gather_facts: Gather facts before the main task list unless a play
            or its scope says otherwise
        fact_module: Module the Runner is asked to run for fact gathering
        task_timeout: Default per-task timeout in seconds handed to the Runner
        tags: Only run tasks carrying one of these tags (empty = all)
        skip_tags: Never run tasks carrying one of these tags
        loop_var: Scope key bound to the current loop item
        index_var: Scope key bound to the current loop index
        roles_path: Directories searched for roles by the loader
    """

    gather_facts: bool = True
    fact_module: str = "setup"
    task_timeout: Optional[float] = None
    tags: Set[str] = field(default_factory=set)
    skip_tags: Set[str] = field(default_factory=set)
    loop_var: str = "item"
    index_var: str = "item_index"
    roles_path: List[str] = field(default_factory=lambda: ["roles"])

    def __post_init__(self) -> None:
        self.tags = set(_split_tags(self.tags))
        self.skip_tags = set(_split_tags(self.skip_tags))
        if isinstance(self.roles_path, str):
            self.roles_path = [p for p in self.roles_path.split(':') if p]
        if self.task_timeout is not None and self.task_timeout <= 0:
            raise ValidationError('task_timeout', f"must be positive, got {self.task_timeout}")

    def selects(self, task_tags: Iterable[str]) -> bool:
        """Check whether a task with these tags passes the tag filters."""
        task_tags = set(task_tags)

        if task_tags & self.skip_tags:
            return False

        if NEVER_TAG in task_tags:
            # Only when explicitly asked for
            return bool(self.tags & (task_tags - {NEVER_TAG})) or NEVER_TAG in self.tags

        if not self.tags or 'all' in self.tags:
            return True
        if ALWAYS_TAG in task_tags:
            return True
        return bool(task_tags & self.tags)

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> 'EngineConfig':
        """Build a config from a mapping, rejecting unknown keys."""
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValidationError('config', f"unknown setting(s): {', '.join(unknown)}")
        return cls(**data)

    @classmethod
    def load(cls, path: Union[str, Path]) -> 'EngineConfig':
        """Load a YAML config file whose root is a mapping of settings."""
        path = Path(path)
        try:
            data = yaml.safe_load(path.read_text(encoding='utf-8'))
        except FileNotFoundError:
            raise ParseError("config file not found", file_path=str(path))
        except yaml.YAMLError as e:
            raise ParseError(f"YAML syntax error: {e}", file_path=str(path))

        if data is not None and not isinstance(data, dict):
            raise ParseError("config root must be a mapping", file_path=str(path))
        return cls.from_mapping(data)


def _split_tags(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        value = value.split(',')
    return [str(t).strip() for t in value if str(t).strip()]
