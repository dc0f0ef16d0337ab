"""
Choreo Variable Scopes

Layered variable merging used by every executor level.

Precedence, lowest first::

    extra vars over playbook vars  (baseline)
    < play vars < role defaults/vars/params < task vars < loop binding

Extra vars are layered over play vars again so they win at every level.
"""

from typing import Any, Dict, Mapping, Optional


def _copy_mapping(value: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        k: _copy_mapping(v) if isinstance(v, Mapping) else v
        for k, v in value.items()
    }


def merge_vars(*layers: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Merge variable layers left to right; later layers win.

    Nested mappings merge key by key, anything else replaces outright.
    ``None`` layers are skipped. Inputs are never mutated and the returned
    dict shares no mapping objects with them.

    Example:
        >>> merge_vars({'x': {'p': 1, 'q': 1}}, {'x': {'q': 2, 'r': 2}})
        {'x': {'p': 1, 'q': 2, 'r': 2}}
    """
    merged: Dict[str, Any] = {}
    for layer in layers:
        if not layer:
            continue
        for key, value in layer.items():
            existing = merged.get(key)
            if isinstance(existing, dict) and isinstance(value, Mapping):
                merged[key] = merge_vars(existing, value)
            elif isinstance(value, Mapping):
                merged[key] = _copy_mapping(value)
            else:
                merged[key] = value
    return merged


def bind_loop_item(
    scope: Mapping[str, Any],
    item: Any,
    index: int,
    loop_var: str = "item",
    index_var: str = "item_index",
) -> Dict[str, Any]:
    """Return a new scope with the current loop item bound on top."""
    return merge_vars(scope, {loop_var: item, index_var: index})
