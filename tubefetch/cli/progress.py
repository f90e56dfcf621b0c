"""
A console subscriber for a session's progress stream, rendered with Rich.
"""

import json
import logging
import time
from typing import Any, Optional

from rich.console import Console
from rich.markup import escape
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)

log = logging.getLogger(__name__)


class ConsoleProgressSink:
    """
    Stands in for a WebSocket: receives the serialized progress messages of one
    session and renders an overall progress bar plus one line per item.
    """

    def __init__(self, console: Console):
        self.console = console
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}"),
            BarColumn(bar_width=40),
            MofNCompleteColumn(),
            "•",
            TimeElapsedColumn(),
            console=console,
            transient=True,
        )
        self._task_id: Optional[TaskID] = None
        self._closed = False
        self._start_time = time.monotonic()
        self.messages: list[dict[str, Any]] = []
        self.files: list[str] = []
        self.errors: list[str] = []
        self.total = 0
        self.successful = 0
        self.failed = 0
        self.cancelled = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self._start_time

    def __enter__(self) -> "ConsoleProgressSink":
        self.progress.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self.progress.stop()

    async def send_str(self, data: str) -> None:
        message = json.loads(data)
        self.messages.append(message)
        self.handle(message)

    def handle(self, message: dict[str, Any]) -> None:
        kind = message.get("type")
        if kind == "start":
            self.total = message.get("total", 0)
            self._task_id = self.progress.add_task("Downloading", total=self.total)
        elif kind == "progress":
            self._describe(f"[{message['current']}/{message['total']}] working")
            log.debug(f"Processing {message.get('videoUrl')}")
        elif kind == "success":
            self.successful += 1
            self.files.append(message["fileName"])
            self.console.print(f"[green]✓[/green] {escape(message['fileName'])}")
            self._advance()
        elif kind == "error":
            self._handle_error(message)
        elif kind == "complete":
            self.successful = message.get("successful", self.successful)
            self.failed = message.get("failed", self.failed)

    def _handle_error(self, message: dict[str, Any]) -> None:
        error = message.get("error", "Unknown error")
        if message.get("errorCode") == "cancelled":
            self.cancelled = True
            self.console.print(f"[yellow]⚠️  {escape(error)}[/yellow]")
            return
        self.errors.append(error)
        if message.get("current") is None:
            self.console.print(f"[bold red]✗ {escape(error)}[/bold red]")
            return
        self.failed += 1
        source = message.get("videoUrl", "")
        self.console.print(f"[red]✗[/red] {escape(source)} [dim]({escape(error)})[/dim]")
        self._advance()

    def _describe(self, text: str) -> None:
        if self._task_id is not None:
            self.progress.update(self._task_id, description=text)

    def _advance(self) -> None:
        if self._task_id is not None:
            self.progress.advance(self._task_id)
