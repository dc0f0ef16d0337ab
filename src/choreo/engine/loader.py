"""
Choreo YAML Loader

Builds Playbook, Play, Task and Role objects from Ansible-style YAML
documents. Roles use the usual directory layout::

    roles/<name>/tasks/main.yml
    roles/<name>/handlers/main.yml
    roles/<name>/defaults/main.yml
    roles/<name>/vars/main.yml
    roles/<name>/meta/main.yml     (dependencies)
"""

import re
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import yaml

from choreo.engine.errors import ParseError, UnsupportedFeatureError
from choreo.engine.playbook import Condition, Play, Playbook, RoleReference, Task
from choreo.engine.roles import Role, RoleDependency


# Task keys that are NOT module names
TASK_KEYWORDS = {
    'name', 'args', 'when', 'loop', 'with_items', 'with_list', 'vars', 'tags',
    'ignore_errors', 'run_once', 'delegate_to', 'notify', 'listen', 'until',
    'retries', 'delay', 'changed_when', 'failed_when', 'timeout', 'register',
    'no_log', 'become', 'become_user', 'become_method', 'environment',
}

# Keys we refuse rather than silently ignore
UNSUPPORTED_TASK_KEYS = {
    'async', 'poll',
    'delegate_facts',
    'local_action',
    'loop_control',
    'rescue', 'always',
    'include', 'include_role', 'import_role',
}

PLAY_KEYWORDS = {
    'name', 'hosts', 'vars', 'vars_files', 'pre_tasks', 'tasks', 'post_tasks',
    'handlers', 'roles', 'serial', 'strategy', 'gather_facts', 'tags',
    'become', 'become_user', 'become_method', 'connection', 'environment',
}

# Inline module args: "src=foo dest='bar baz'"
INLINE_ARGS_PATTERN = re.compile(r'(\w+)=(?:"([^"]*)"|\'([^\']*)\'|(\S+))')


def _ensure_list(value: Any) -> List[Any]:
    """Ensure a value is a list."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _read_yaml(path: Path, source: Optional[Path] = None) -> Any:
    try:
        return yaml.safe_load(path.read_text(encoding='utf-8'))
    except FileNotFoundError:
        raise ParseError(f"File not found: {path}", file_path=str(source or path))
    except yaml.YAMLError as e:
        line = None
        mark = getattr(e, 'problem_mark', None)
        if mark is not None:
            line = mark.line + 1
        raise ParseError(f"YAML syntax error: {e}", file_path=str(path), line=line)


class TaskParser:
    """
    Turns task mappings into :class:`Task` objects.

    The module is the first key that is not a task keyword. ``block``
    entries are flattened with their ``when`` and ``tags`` pushed down;
    ``include_tasks``/``import_tasks`` are expanded statically.
    """

    def __init__(self, base_dir: Path, source: Path):
        self.base_dir = base_dir
        self.source = source

    def parse_list(self, data: Any, what: str = "tasks") -> List[Task]:
        if data is None:
            return []
        if not isinstance(data, list):
            raise ParseError(f"'{what}' must be a list", file_path=str(self.source))

        tasks: List[Task] = []
        for entry in data:
            if not isinstance(entry, dict):
                raise ParseError(
                    f"each entry in '{what}' must be a mapping, got {type(entry).__name__}",
                    file_path=str(self.source),
                )
            tasks.extend(self.parse_entry(entry))
        return tasks

    def parse_entry(self, data: Dict[str, Any]) -> List[Task]:
        """Parse a task, block or include into one or more tasks."""
        if 'block' in data:
            return self._parse_block(data)
        if 'include_tasks' in data or 'import_tasks' in data:
            return self._parse_include_tasks(data)
        return [self.parse_task(data)]

    def parse_task(self, data: Dict[str, Any]) -> Task:
        for key in UNSUPPORTED_TASK_KEYS:
            if key in data:
                raise UnsupportedFeatureError(
                    f"'{key}' in tasks",
                    suggestion=f"Remove '{key}' from task '{data.get('name', '')}'",
                )

        module_name = None
        module_args: Any = None
        for key, value in data.items():
            if key in TASK_KEYWORDS:
                continue
            module_name = str(key)
            module_args = value
            break

        if module_name is None:
            raise ParseError(
                f"Task has no module: {list(data.keys())}",
                file_path=str(self.source),
            )

        args = self._normalize_args(module_name, module_args)
        if isinstance(data.get('args'), dict):
            args = {**data['args'], **args}

        loop = None
        for key in ('loop', 'with_items', 'with_list'):
            if key in data:
                loop = data[key]
                break

        vars_data = data.get('vars') or {}
        if not isinstance(vars_data, dict):
            raise ParseError(
                f"'vars' of task '{data.get('name', module_name)}' must be a dictionary",
                file_path=str(self.source),
            )

        return Task(
            name=str(data.get('name') or f'{module_name} task'),
            module=module_name,
            args=args,
            when=data.get('when'),
            loop=loop,
            vars=vars_data,
            tags=_ensure_list(data.get('tags')),
            ignore_errors=bool(data.get('ignore_errors', False)),
            run_once=bool(data.get('run_once', False)),
            delegate_to=data.get('delegate_to'),
            notify=_ensure_list(data.get('notify')),
            listen=_ensure_list(data.get('listen')),
            until=data.get('until'),
            retries=int(data.get('retries', 0) or 0),
            delay=float(data.get('delay', 0) or 0),
            changed_when=data.get('changed_when'),
            failed_when=data.get('failed_when'),
            timeout=data.get('timeout'),
        )

    def _parse_block(self, data: Dict[str, Any]) -> List[Task]:
        for key in ('rescue', 'always'):
            if key in data:
                raise UnsupportedFeatureError(
                    f"'{key}' in blocks",
                    suggestion="Split the block into separate tasks with ignore_errors",
                )

        tasks = self.parse_list(data.get('block'), what='block')
        return self._push_down(tasks, data.get('when'), data.get('tags'))

    def _parse_include_tasks(self, data: Dict[str, Any]) -> List[Task]:
        tasks_file = data.get('include_tasks') or data.get('import_tasks')
        if isinstance(tasks_file, dict):
            tasks_file = tasks_file.get('file')
        if not tasks_file:
            raise ParseError(
                "include_tasks/import_tasks requires a file path",
                file_path=str(self.source),
            )

        tasks_path = self.base_dir / str(tasks_file)
        if not tasks_path.is_file():
            raise ParseError(f"Tasks file not found: {tasks_file}", file_path=str(self.source))

        nested = TaskParser(tasks_path.parent, tasks_path)
        included = nested.parse_list(_read_yaml(tasks_path) or [], what=str(tasks_file))
        return self._push_down(included, data.get('when'), data.get('tags'))

    @staticmethod
    def _push_down(tasks: List[Task], when: Any, tags: Any) -> List[Task]:
        """Apply an enclosing when (AND-ed) and tags to each task."""
        extra_tags = [str(t) for t in _ensure_list(tags)]
        result = []
        for task in tasks:
            changes: Dict[str, Any] = {}
            if when is not None:
                changes['when'] = Condition.of([when, task.when])
            if extra_tags:
                changes['tags'] = task.tags + [t for t in extra_tags if t not in task.tags]
            result.append(task.copy(**changes) if changes else task)
        return result

    @staticmethod
    def _normalize_args(module_name: str, args: Any) -> Dict[str, Any]:
        """Normalize module arguments to a dictionary."""
        if args is None:
            return {}

        if isinstance(args, dict):
            return dict(args)

        if isinstance(args, str):
            parsed = {}
            for match in INLINE_ARGS_PATTERN.finditer(args):
                key = match.group(1)
                value = match.group(2) or match.group(3) or match.group(4)
                parsed[key] = value

            # Free-form commands keep the raw string
            if not parsed:
                parsed['_raw_params'] = args
            return parsed

        return {'_raw_params': str(args)}


class RoleLoader:
    """
    Loads roles from role directories.

    Search order is the order of ``roles_path``; the first directory that
    contains ``<name>/`` wins.
    """

    def __init__(self, roles_path: Iterable[Union[str, Path]]):
        self.roles_path = [Path(p) for p in roles_path]

    def find(self, name: str) -> Optional[Path]:
        for base in self.roles_path:
            candidate = base / name
            if candidate.is_dir():
                return candidate
        return None

    def exists(self, name: str) -> bool:
        return self.find(name) is not None

    def load(self, name: str) -> Role:
        """
        Load one role by name.

        Raises:
            ParseError: If the role cannot be found or a file is malformed
        """
        role_path = self.find(name)
        if role_path is None:
            searched = ", ".join(str(p) for p in self.roles_path)
            raise ParseError(f"Role not found: {name}", details=f"Searched: {searched}")

        tasks_file = self._main_file(role_path, 'tasks')
        handlers_file = self._main_file(role_path, 'handlers')
        parser = TaskParser(role_path / 'tasks', tasks_file or role_path)

        return Role(
            name=name,
            tasks=parser.parse_list(_read_yaml(tasks_file), 'tasks') if tasks_file else [],
            handlers=(
                TaskParser(role_path / 'handlers', handlers_file).parse_list(
                    _read_yaml(handlers_file), 'handlers',
                )
                if handlers_file else []
            ),
            vars=self._load_mapping(role_path, 'vars'),
            defaults=self._load_mapping(role_path, 'defaults'),
            dependencies=self._load_dependencies(role_path),
            path=str(role_path),
        )

    @staticmethod
    def _main_file(role_path: Path, subdir: str) -> Optional[Path]:
        for filename in ('main.yml', 'main.yaml'):
            candidate = role_path / subdir / filename
            if candidate.is_file():
                return candidate
        return None

    def _load_mapping(self, role_path: Path, subdir: str) -> Dict[str, Any]:
        path = self._main_file(role_path, subdir)
        if path is None:
            return {}
        data = _read_yaml(path) or {}
        if not isinstance(data, dict):
            raise ParseError(f"'{subdir}' must be a dictionary", file_path=str(path))
        return data

    def _load_dependencies(self, role_path: Path) -> List[RoleDependency]:
        meta = self._load_mapping(role_path, 'meta')
        dependencies = []
        for entry in _ensure_list(meta.get('dependencies')):
            dependencies.append(parse_role_dependency(entry, role_path))
        return dependencies


def parse_role_dependency(entry: Any, source: Optional[Path] = None) -> RoleDependency:
    """Parse a meta/main.yml dependency entry (a name or a mapping)."""
    if isinstance(entry, str):
        return RoleDependency(role=entry)
    if not isinstance(entry, dict):
        raise ParseError(
            f"Invalid dependency entry type: {type(entry).__name__}",
            file_path=str(source) if source else None,
        )

    name = entry.get('role') or entry.get('name')
    if not name:
        raise ParseError(
            "Dependency entry must have 'role' or 'name' key",
            file_path=str(source) if source else None,
        )

    # Ansible allows role parameters inline next to 'role'
    inline = {
        k: v for k, v in entry.items()
        if k not in ('role', 'name', 'src', 'version', 'vars', 'tags', 'when')
    }
    return RoleDependency(
        role=str(name),
        version=entry.get('version'),
        src=entry.get('src'),
        vars={**inline, **(entry.get('vars') or {})},
        tags=[str(t) for t in _ensure_list(entry.get('tags'))],
    )


def parse_role_reference(entry: Any, source: Optional[Path] = None) -> RoleReference:
    """Parse a play's ``roles:`` entry."""
    if isinstance(entry, str):
        return RoleReference(name=entry)
    if not isinstance(entry, dict):
        raise ParseError(
            f"Invalid role entry type: {type(entry).__name__}",
            file_path=str(source) if source else None,
        )

    name = entry.get('role') or entry.get('name')
    if not name:
        raise ParseError(
            "Role entry must have 'role' or 'name' key",
            file_path=str(source) if source else None,
        )

    params = {k: v for k, v in entry.items() if k not in ('role', 'name', 'tags', 'when', 'vars')}
    return RoleReference(
        name=str(name),
        vars={**params, **(entry.get('vars') or {})},
        tags=entry.get('tags'),
        when=entry.get('when'),
    )


class PlaybookLoader:
    """
    Parse a YAML playbook file into a :class:`Playbook`.

    ``role_loader`` searches ``<playbook dir>/roles`` first, then the
    directories given in ``roles_path``.
    """

    def __init__(
        self,
        playbook_path: Union[str, Path],
        roles_path: Optional[Iterable[Union[str, Path]]] = None,
    ):
        self.playbook_path = Path(playbook_path)
        self._base_dir = self.playbook_path.parent
        self.role_loader = RoleLoader(
            [self._base_dir / 'roles'] + [Path(p) for p in roles_path or []]
        )
        self._tasks = TaskParser(self._base_dir, self.playbook_path)

    def load(self, vars: Optional[Dict[str, Any]] = None) -> Playbook:
        """
        Parse and validate the playbook.

        Raises:
            ParseError: If the playbook has syntax errors
            UnsupportedFeatureError: If the playbook uses unsupported features
            ValidationError: If a play is structurally invalid
        """
        if not self.playbook_path.is_file():
            raise ParseError(
                f"Playbook not found: {self.playbook_path}",
                file_path=str(self.playbook_path),
            )

        try:
            documents = list(yaml.safe_load_all(self.playbook_path.read_text(encoding='utf-8')))
        except yaml.YAMLError as e:
            raise ParseError(f"YAML syntax error: {e}", file_path=str(self.playbook_path))

        play_entries: List[Any] = []
        for doc in documents:
            if doc is None:
                continue
            play_entries.extend(doc if isinstance(doc, list) else [doc])

        plays = []
        for entry in play_entries:
            if not isinstance(entry, dict):
                raise ParseError(
                    f"each play must be a mapping, got {type(entry).__name__}",
                    file_path=str(self.playbook_path),
                )
            plays.append(self.parse_play(entry))

        playbook = Playbook(plays=plays, vars=dict(vars or {}), path=str(self.playbook_path))
        playbook.validate()
        return playbook

    def parse_play(self, data: Dict[str, Any]) -> Play:
        if 'import_playbook' in data:
            raise UnsupportedFeatureError(
                "'import_playbook'",
                suggestion="Load each playbook separately and execute them in turn",
            )
        unknown = sorted(str(k) for k in data if k not in PLAY_KEYWORDS)
        if unknown:
            raise UnsupportedFeatureError(
                f"'{unknown[0]}' in plays",
                suggestion=f"Remove '{unknown[0]}' from play '{data.get('name', '')}'",
            )
        if 'hosts' not in data:
            raise ParseError(
                "Play missing required 'hosts' field",
                file_path=str(self.playbook_path),
            )

        play_vars = data.get('vars') or {}
        if not isinstance(play_vars, dict):
            raise ParseError(
                f"'vars' must be a dictionary, got {type(play_vars).__name__}",
                file_path=str(self.playbook_path),
            )
        play_vars = dict(play_vars)
        for vars_file in _ensure_list(data.get('vars_files')):
            vars_path = self._base_dir / str(vars_file)
            if not vars_path.is_file():
                raise ParseError(
                    f"vars_file not found: {vars_file}",
                    file_path=str(self.playbook_path),
                )
            vars_data = _read_yaml(vars_path) or {}
            if isinstance(vars_data, dict):
                play_vars.update(vars_data)

        gather_facts = data.get('gather_facts')
        return Play(
            name=str(data.get('name') or 'Unnamed play'),
            hosts=data['hosts'],
            pre_tasks=self._tasks.parse_list(data.get('pre_tasks'), 'pre_tasks'),
            tasks=self._tasks.parse_list(data.get('tasks'), 'tasks'),
            post_tasks=self._tasks.parse_list(data.get('post_tasks'), 'post_tasks'),
            handlers=self._tasks.parse_list(data.get('handlers'), 'handlers'),
            roles=[
                parse_role_reference(r, self.playbook_path)
                for r in _ensure_list(data.get('roles'))
            ],
            vars=play_vars,
            serial=int(data.get('serial', 0) or 0),
            strategy=str(data.get('strategy', 'linear')),
            gather_facts=None if gather_facts is None else bool(gather_facts),
            tags=[str(t) for t in _ensure_list(data.get('tags'))],
        )
