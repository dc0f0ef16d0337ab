"""
Choreo Inventory

The :class:`Inventory` interface the executors consume, and
:class:`InventoryManager`, an in-memory implementation that can be filled
programmatically or from YAML inventory documents.
"""

import fnmatch
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from choreo.engine.errors import InventoryError


class Host:
    """Represents a single host in the inventory. Identity is the name."""

    def __init__(
        self,
        name: str,
        variables: Optional[Dict[str, Any]] = None,
        address: Optional[str] = None,
        port: Optional[int] = None,
        user: Optional[str] = None,
    ):
        self.name = name
        self.vars: Dict[str, Any] = variables.copy() if variables else {}
        self._address = address
        self._port = port
        self._user = user
        self._groups: List[str] = []

    @property
    def address(self) -> str:
        """Get the actual address to connect to (address, ansible_host or name)."""
        return self._address or self.vars.get('ansible_host', self.name)

    @property
    def port(self) -> int:
        """Get the port number."""
        if self._port is not None:
            return self._port
        return int(self.vars.get('ansible_port', 22))

    @property
    def user(self) -> Optional[str]:
        """Get the user to connect as."""
        return self._user or self.vars.get('ansible_user')

    @property
    def groups(self) -> List[str]:
        """Return list of group names this host belongs to."""
        return list(self._groups)

    def add_group(self, group_name: str) -> None:
        """Add this host to a group."""
        if group_name not in self._groups:
            self._groups.append(group_name)

    def set_variable(self, key: str, value: Any) -> None:
        self.vars[key] = value

    def get_variable(self, key: str, default: Any = None) -> Any:
        return self.vars.get(key, default)

    def get_vars(self) -> Dict[str, Any]:
        """Return all host variables including computed ones."""
        result = self.vars.copy()
        result['inventory_hostname'] = self.name
        result['inventory_hostname_short'] = self.name.split('.')[0]
        result['ansible_host'] = self.address
        return result

    def __repr__(self) -> str:
        return f"Host({self.name!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Host):
            return NotImplemented
        return self.name == other.name

    def __hash__(self) -> int:
        return hash(self.name)


class Group:
    """Represents a group of hosts."""

    def __init__(self, name: str, variables: Optional[Dict[str, Any]] = None):
        self.name = name
        self.vars: Dict[str, Any] = variables.copy() if variables else {}
        self._hosts: List[str] = []
        self._children: List[str] = []

    @property
    def hosts(self) -> List[str]:
        """Return list of host names directly in this group."""
        return list(self._hosts)

    @property
    def children(self) -> List[str]:
        """Return list of child group names."""
        return list(self._children)

    def add_host(self, host_name: str) -> None:
        if host_name not in self._hosts:
            self._hosts.append(host_name)

    def add_child(self, group_name: str) -> None:
        if group_name not in self._children:
            self._children.append(group_name)

    def __repr__(self) -> str:
        return f"Group({self.name!r}, hosts={len(self._hosts)})"


class Inventory(ABC):
    """Host lookup used by the play executor."""

    @abstractmethod
    def get_hosts(self, pattern: str) -> List[Host]:
        """Resolve a single host pattern token to hosts, in inventory order.

        Raises:
            InventoryError: If the pattern cannot be resolved
        """

    @abstractmethod
    def get_host(self, name: str) -> Optional[Host]:
        """Look up one host by exact name; None if unknown."""


class InventoryManager(Inventory):
    """
    In-memory inventory with YAML loading.

    Supported patterns:
    - "all" / "*" - all hosts
    - "group_name" - all hosts in a group (including children)
    - "host_name" - single host
    - shell-style wildcards over host names, e.g. "web*"
    - "~regex" - regular expression over host names
    """

    # Pattern for host range expansion: web[01:10].example.com
    RANGE_PATTERN = re.compile(r'\[(\d+):(\d+)\]')

    def __init__(self):
        self.hosts: Dict[str, Host] = {}
        self.groups: Dict[str, Group] = {'all': Group('all')}

    def add_host(self, host: Union[Host, str], groups: Optional[List[str]] = None) -> Host:
        """Register a host (first registration wins) and attach it to groups."""
        if isinstance(host, str):
            host = Host(host)
        existing = self.hosts.setdefault(host.name, host)
        for group_name in ['all'] + list(groups or []):
            self.add_group(group_name).add_host(existing.name)
            existing.add_group(group_name)
        return existing

    def add_group(self, name: str, variables: Optional[Dict[str, Any]] = None) -> Group:
        group = self.groups.setdefault(name, Group(name))
        if variables:
            group.vars.update(variables)
        return group

    def get_hosts(self, pattern: str = "all") -> List[Host]:
        pattern = (pattern or "all").strip()

        if pattern in ("all", "*"):
            return list(self.hosts.values())

        if pattern in self.groups:
            names = self._group_host_names(pattern, set())
            return [h for h in self.hosts.values() if h.name in names]

        if pattern in self.hosts:
            return [self.hosts[pattern]]

        if pattern.startswith('~'):
            try:
                regex = re.compile(pattern[1:])
            except re.error as e:
                raise InventoryError(f"invalid host regex '{pattern}': {e}")
            return [h for h in self.hosts.values() if regex.search(h.name)]

        if any(ch in pattern for ch in '*?['):
            return [h for h in self.hosts.values() if fnmatch.fnmatchcase(h.name, pattern)]

        # No match
        return []

    def get_host(self, name: str) -> Optional[Host]:
        return self.hosts.get(name)

    def _group_host_names(self, group_name: str, seen: set) -> set:
        """Get all host names in a group, including from child groups."""
        if group_name in seen or group_name not in self.groups:
            return set()
        seen.add(group_name)

        group = self.groups[group_name]
        names = set(group.hosts)
        for child_name in group.children:
            names |= self._group_host_names(child_name, seen)
        return names

    def get_host_vars(self, host_name: str) -> Dict[str, Any]:
        """Get all variables for a host (merged from groups and host)."""
        host = self.hosts.get(host_name)
        if host is None:
            return {}

        merged_vars: Dict[str, Any] = {}
        for group_name in ['all'] + [g for g in host.groups if g != 'all']:
            if group_name in self.groups:
                merged_vars.update(self.groups[group_name].vars)

        # Host vars override group vars
        merged_vars.update(host.get_vars())
        return merged_vars

    # YAML loading

    def parse(self, source: Union[str, Path]) -> 'InventoryManager':
        """
        Load a YAML inventory file.

        Returns:
            self for chaining
        """
        path = Path(source)
        if not path.is_file():
            raise InventoryError(f"inventory file does not exist: {path}", source=str(path))
        try:
            data = yaml.safe_load(path.read_text(encoding='utf-8'))
        except yaml.YAMLError as e:
            raise InventoryError(f"YAML syntax error: {e}", source=str(path))
        return self.load_dict(data or {}, source=str(path))

    def load_dict(self, data: Dict[str, Any], source: Optional[str] = None) -> 'InventoryManager':
        """Load an Ansible-style YAML inventory structure."""
        if not isinstance(data, dict):
            raise InventoryError("inventory root must be a mapping of groups", source=source)
        for group_name, group_data in data.items():
            self._load_group(str(group_name), group_data or {}, source)
        return self

    def _load_group(self, name: str, data: Dict[str, Any], source: Optional[str]) -> None:
        if not isinstance(data, dict):
            raise InventoryError(f"group '{name}' must be a mapping", source=source)

        group = self.add_group(name, data.get('vars') or {})

        hosts_data = data.get('hosts') or {}
        if isinstance(hosts_data, list):
            hosts_data = {h: {} for h in hosts_data}
        for host_pattern, host_vars in hosts_data.items():
            for host_name in self._expand_host_pattern(str(host_pattern)):
                host = self.add_host(Host(host_name, variables=host_vars or {}), [name])
                if host_vars:
                    host.vars.update(host_vars)

        for child_name, child_data in (data.get('children') or {}).items():
            group.add_child(str(child_name))
            self._load_group(str(child_name), child_data or {}, source)

    def _expand_host_pattern(self, pattern: str) -> List[str]:
        """Expand host patterns like web[01:03].example.com."""
        match = self.RANGE_PATTERN.search(pattern)
        if not match:
            return [pattern]

        start = int(match.group(1))
        end = int(match.group(2))
        width = len(match.group(1))

        results = []
        for i in range(start, end + 1):
            num_str = str(i).zfill(width)
            expanded = pattern[:match.start()] + num_str + pattern[match.end():]
            results.extend(self._expand_host_pattern(expanded))
        return results
