# Copyright (c) 2024 Choreo Contributors
# MIT License

"""
Choreo: declarative automation engine.

Drives trees of plays (target hosts + ordered tasks) against a fleet through
a pluggable Runner, merging variables, evaluating conditionals, expanding
loops and ordering roles by their dependencies.

Features:
    - Linear play execution with pre_tasks, roles, tasks, post_tasks, handlers
    - Loop, delegation, run_once, retries and conditional skipping
    - Deterministic role dependency resolution with cycle detection
    - Structured lifecycle events for callbacks

The engine API lives in :mod:`choreo.engine`; this module carries release
metadata.
"""

from __future__ import annotations

from choreo.release import __version__, __author__, __codename__

__all__ = [
    "__version__",
    "__author__",
    "__codename__",
]
