"""
Choreo Engine Module

Orchestration core: play/task execution and role dependency resolution.
"""

from choreo.engine.config import EngineConfig
from choreo.engine.events import Event, EventEmitter, EventType
from choreo.engine.executor import PlayExecutor, PlaybookExecutor
from choreo.engine.inventory import Host, Inventory, InventoryManager
from choreo.engine.loader import PlaybookLoader, RoleLoader
from choreo.engine.playbook import Condition, Play, Playbook, RoleReference, Task
from choreo.engine.results import TaskResult, TaskStatus, HostStats
from choreo.engine.roles import DependencyResolver, Role, RoleDependency, RoleManager
from choreo.engine.runner import Runner, RunOptions
from choreo.engine.scheduler import HostPoolRunner
from choreo.engine.task_executor import TaskExecutor
from choreo.engine.templating import ExpressionEvaluator, JinjaEvaluator
from choreo.engine.variables import merge_vars
from choreo.engine.errors import (
    ChoreoError,
    ParseError,
    ValidationError,
    DependencyError,
    CircularDependencyError,
    MissingDependencyError,
    TaskFailedError,
    PlayError,
    PlaybookError,
)

__all__ = [
    'EngineConfig',
    'Event',
    'EventEmitter',
    'EventType',
    'PlayExecutor',
    'PlaybookExecutor',
    'Host',
    'Inventory',
    'InventoryManager',
    'PlaybookLoader',
    'RoleLoader',
    'Condition',
    'Play',
    'Playbook',
    'RoleReference',
    'Task',
    'TaskResult',
    'TaskStatus',
    'HostStats',
    'DependencyResolver',
    'Role',
    'RoleDependency',
    'RoleManager',
    'Runner',
    'RunOptions',
    'HostPoolRunner',
    'TaskExecutor',
    'ExpressionEvaluator',
    'JinjaEvaluator',
    'merge_vars',
    'ChoreoError',
    'ParseError',
    'ValidationError',
    'DependencyError',
    'CircularDependencyError',
    'MissingDependencyError',
    'TaskFailedError',
    'PlayError',
    'PlaybookError',
]
