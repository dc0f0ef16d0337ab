"""
Choreo Roles

Role model, the dependency resolver that orders roles so every dependency
runs before its dependents, and the role manager that turns a play's role
references into an ordered list of role applications.
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Iterable, Iterator, List, Optional, Tuple

from choreo.engine.errors import (
    CircularDependencyError,
    DependencyError,
    MissingDependencyError,
)
from choreo.engine.playbook import Condition, RoleReference, Task
from choreo.engine.variables import merge_vars

if TYPE_CHECKING:
    from choreo.engine.loader import RoleLoader


@dataclass
class RoleDependency:
    """A role's declared dependency on another role."""

    role: str
    version: Optional[str] = None
    src: Optional[str] = None
    vars: Dict[str, Any] = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)


@dataclass
class Role:
    """A named bundle of tasks, handlers, vars and defaults."""

    name: str
    tasks: List[Task] = field(default_factory=list)
    handlers: List[Task] = field(default_factory=list)
    vars: Dict[str, Any] = field(default_factory=dict)
    defaults: Dict[str, Any] = field(default_factory=dict)
    dependencies: List[RoleDependency] = field(default_factory=list)
    path: Optional[str] = None

    def dependency_names(self) -> List[str]:
        return [dep.role for dep in self.dependencies]

    def __repr__(self) -> str:
        return f"Role(name={self.name!r}, deps={self.dependency_names()!r})"


_IN_PROGRESS = 1
_RESOLVED = 2


class DependencyResolver:
    """
    Orders registered roles so that dependencies come first.

    Traversal is an iterative depth-first walk over role names in
    lexicographic order, visiting each role's dependencies in declaration
    order and emitting a role only after all of its dependencies. The result
    depends only on the registered roles and edges, never on registration
    order.
    """

    def __init__(self, roles: Optional[Iterable[Role]] = None):
        self._roles: Dict[str, Role] = {}
        self._order: List[str] = []
        for role in roles or []:
            self.add_role(role)

    @property
    def roles(self) -> List[str]:
        return sorted(self._roles)

    def add_role(self, role: Role) -> None:
        """Register a role; a role with the same name is replaced."""
        self._roles[role.name] = role

    def resolve(self) -> List[Role]:
        """
        Return every registered role in dependency order.

        Raises:
            CircularDependencyError: If a role is reached again while its
                own dependencies are being resolved
            MissingDependencyError: If a dependency was never registered
        """
        state: Dict[str, int] = {}
        order: List[str] = []

        for root in sorted(self._roles):
            if state.get(root) == _RESOLVED:
                continue

            state[root] = _IN_PROGRESS
            stack: List[Tuple[str, Iterator[str]]] = [
                (root, iter(self._roles[root].dependency_names()))
            ]

            while stack:
                name, pending = stack[-1]
                for dep in pending:
                    if dep not in self._roles:
                        raise MissingDependencyError(dep, name)
                    dep_state = state.get(dep)
                    if dep_state == _RESOLVED:
                        continue
                    if dep_state == _IN_PROGRESS:
                        path = [n for n, _ in stack]
                        raise CircularDependencyError(dep, path[path.index(dep):] + [dep])
                    state[dep] = _IN_PROGRESS
                    stack.append((dep, iter(self._roles[dep].dependency_names())))
                    break
                else:
                    # All dependencies resolved: post-order append
                    stack.pop()
                    state[name] = _RESOLVED
                    order.append(name)

        self._order = order
        return [self._roles[name] for name in order]

    def get_execution_order(self) -> List[str]:
        """Names in the order produced by the last successful resolve()."""
        return list(self._order)

    def get_dependency_graph(self) -> Dict[str, List[str]]:
        """Map of role name to the names it depends on."""
        return {
            name: self._roles[name].dependency_names()
            for name in sorted(self._roles)
        }

    def get_dependents(self, role_name: str) -> List[str]:
        """Names of registered roles that directly depend on ``role_name``."""
        return sorted(
            name for name, role in self._roles.items()
            if name != role_name and role_name in role.dependency_names()
        )


@dataclass
class RoleApplication:
    """One role to apply within a play, with the parameters it receives."""

    role: Role
    params: Dict[str, Any] = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)
    when: Optional[Condition] = None
    reference: str = ""

    @property
    def name(self) -> str:
        return self.role.name

    def scope(self, base: Dict[str, Any]) -> Dict[str, Any]:
        """Role defaults < base scope < role vars < role parameters."""
        return merge_vars(self.role.defaults, base, self.role.vars, self.params)

    def tasks(self) -> List[Task]:
        """Role tasks with the application's tags added."""
        if not self.tags:
            return list(self.role.tasks)
        return [
            task.copy(tags=task.tags + [t for t in self.tags if t not in task.tags])
            for task in self.role.tasks
        ]


class RoleManager:
    """
    Registry of known roles, optionally backed by a loader for roles on disk.

    ``plan()`` expands a play's role references into applications: each
    reference's reachable dependency subgraph is ordered by a
    :class:`DependencyResolver`, references are processed in play order,
    and every role is applied at most once per plan.
    """

    def __init__(
        self,
        roles: Optional[Iterable[Role]] = None,
        loader: Optional['RoleLoader'] = None,
    ):
        self._roles: Dict[str, Role] = {}
        self.loader = loader
        for role in roles or []:
            self.register(role)

    def register(self, role: Role) -> None:
        self._roles[role.name] = role

    def get(self, name: str) -> Optional[Role]:
        """Return a registered role, loading it on first use if a loader is set."""
        if name not in self._roles and self.loader is not None and self.loader.exists(name):
            self._roles[name] = self.loader.load(name)
        return self._roles.get(name)

    def resolver(self) -> DependencyResolver:
        """A resolver over every role registered so far."""
        return DependencyResolver(self._roles.values())

    def plan(self, references: Iterable[RoleReference]) -> List[RoleApplication]:
        """
        Order role applications for a play.

        Raises:
            DependencyError: If a referenced role is unknown, a dependency is
                missing, or the dependency graph has a cycle
        """
        applied: set = set()
        applications: List[RoleApplication] = []

        for ref in references:
            closure = self._closure(ref.name)
            order = DependencyResolver(closure.values()).resolve()

            for role in order:
                if role.name in applied:
                    continue
                applied.add(role.name)

                params, tags = self._dependency_params(role.name, closure)
                if role.name == ref.name:
                    params = merge_vars(params, ref.vars)
                tags += [t for t in ref.tags if t not in tags]

                applications.append(RoleApplication(
                    role=role,
                    params=params,
                    tags=tags,
                    when=ref.when,
                    reference=ref.name,
                ))

        return applications

    def _closure(self, name: str) -> Dict[str, Role]:
        """All roles reachable from ``name``; unknown dependencies are left out."""
        root = self.get(name)
        if root is None:
            raise DependencyError(f"Role '{name}' not found")

        closure: Dict[str, Role] = {}
        pending = [root]
        while pending:
            role = pending.pop()
            if role.name in closure:
                continue
            closure[role.name] = role
            for dep_name in role.dependency_names():
                dep = self.get(dep_name)
                if dep is not None and dep_name not in closure:
                    pending.append(dep)
        return closure

    @staticmethod
    def _dependency_params(
        name: str,
        closure: Dict[str, Role],
    ) -> Tuple[Dict[str, Any], List[str]]:
        """Vars and tags declared for ``name`` by its dependents, by dependent name."""
        params: Dict[str, Any] = {}
        tags: List[str] = []
        for dependent in sorted(closure):
            for dep in closure[dependent].dependencies:
                if dep.role != name:
                    continue
                params = merge_vars(params, dep.vars)
                tags += [t for t in dep.tags if t not in tags]
        return params, tags
