"""
Console output callback.

Ansible-style PLAY/TASK banners, one coloured line per host result, and a
PLAY RECAP once the playbook has finished.
"""

import sys
from typing import Dict, List, Optional, TextIO

from choreo.engine.events import Event
from choreo.engine.results import HostStats, TaskResult, TaskStatus, summarize


COLORS = {
    'ok': '\033[32m',       # Green
    'changed': '\033[33m',  # Yellow
    'failed': '\033[31m',   # Red
    'skipped': '\033[36m',  # Cyan
}
RESET = '\033[0m'


class ConsoleCallback:
    """
    Prints events as they arrive.

    Register an instance with ``executor.add_event_callback(...)`` and call
    :meth:`print_recap` after the run.
    """

    def __init__(
        self,
        stream: Optional[TextIO] = None,
        err_stream: Optional[TextIO] = None,
        color: bool = True,
        verbosity: int = 0,
    ):
        self.stream = stream or sys.stdout
        self.err_stream = err_stream or sys.stderr
        self.color = color
        self.verbosity = verbosity
        self.results: List[TaskResult] = []

    def __call__(self, event: Event) -> None:
        handler = getattr(self, f"_on_{event.type.value}", None)
        if handler is not None:
            handler(event)

    def _on_play_start(self, event: Event) -> None:
        self._print(f"\nPLAY [{event.play}] " + "*" * 50)

    def _on_task_start(self, event: Event) -> None:
        self._print(f"\nTASK [{event.task}] " + "-" * 50)

    def _on_handler_start(self, event: Event) -> None:
        self._print(f"\nRUNNING HANDLER [{event.task}] " + "-" * 40)

    def _on_task_complete(self, event: Event) -> None:
        for result in event.results:
            self._print_host_result(result)

    def _on_task_failed(self, event: Event) -> None:
        for result in event.results:
            self._print_host_result(result)
        if event.error is not None and not event.results:
            self._print_error(str(event.error))

    def _on_task_skipped(self, event: Event) -> None:
        if self.verbosity > 0:
            reason = event.data.get('reason', '')
            self._print(self._paint('skipping', 'skipped') + f": [{event.task}] ({reason})")

    def _on_error(self, event: Event) -> None:
        self._print_error(f"ERROR! {event.error}")

    def _print_host_result(self, result: TaskResult) -> None:
        self.results.append(result)
        status = result.status.value
        line = self._paint(f"{status}: [{result.host}]", status)
        if result.msg and (result.status == TaskStatus.FAILED or self.verbosity > 0):
            line += f" => {result.msg}"
        self._print(line)

    def print_recap(self, host_stats: Optional[Dict[str, HostStats]] = None) -> None:
        """Print final recap for the results seen so far (or the given stats)."""
        if host_stats is None:
            host_stats = summarize(self.results)

        self._print("\nPLAY RECAP " + "*" * 60)
        for host, stats in sorted(host_stats.items()):
            parts = [
                self._paint(f"ok={stats.ok}", 'ok') if stats.ok else f"ok={stats.ok}",
                self._paint(f"changed={stats.changed}", 'changed') if stats.changed else f"changed={stats.changed}",
                self._paint(f"failed={stats.failed}", 'failed') if stats.failed else f"failed={stats.failed}",
                self._paint(f"skipped={stats.skipped}", 'skipped') if stats.skipped else f"skipped={stats.skipped}",
            ]
            self._print(f"{host:40} : " + "  ".join(parts))

    def _paint(self, text: str, status: str) -> str:
        if not self.color:
            return text
        return f"{COLORS.get(status, '')}{text}{RESET}"

    def _print(self, msg: str) -> None:
        print(msg, file=self.stream)

    def _print_error(self, msg: str) -> None:
        """Errors always go to stderr."""
        if self.color:
            msg = f"\033[31m{msg}{RESET}"
        print(msg, file=self.err_stream)
