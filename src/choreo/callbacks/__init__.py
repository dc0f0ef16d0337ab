"""
Choreo Callbacks

Event sinks that turn engine lifecycle events into human or machine output.
"""

from choreo.callbacks.console import ConsoleCallback
from choreo.callbacks.json_output import JsonCallback

__all__ = [
    'ConsoleCallback',
    'JsonCallback',
]
