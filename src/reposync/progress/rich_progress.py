"""Rich-based progress reporter for terminal output."""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TaskID,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)


if TYPE_CHECKING:
    from types import TracebackType

    from rich.console import Console

    from reposync.core.ports import ProgressCallback


class RichProgressReporter:
    """Progress reporter using Rich for terminal display.

    Shows one line per repository with its current stage, and a download
    bar with speed and ETA while the archive streams. Supports multiple
    concurrent syncs.

    Example:
        with RichProgressReporter() as reporter:
            outcome = await service.sync("did:plc:abc", progress=reporter)
    """

    def __init__(self, console: Console | None = None) -> None:
        """Initialize the progress display.

        Args:
            console: Optional console to render to.
        """
        self._progress = Progress(
            TextColumn("[bold blue]{task.fields[name]}"),
            TextColumn("{task.description}"),
            BarColumn(),
            DownloadColumn(),
            TransferSpeedColumn(),
            TimeRemainingColumn(),
            console=console,
        )
        self._tasks: dict[str, TaskID] = {}
        self._started = False

    def __enter__(self) -> RichProgressReporter:
        """Start rendering repository lines."""
        self._progress.start()
        self._started = True
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Stop rendering; finished lines stay on screen."""
        self._progress.stop()
        self._started = False

    def _task(self, name: str) -> TaskID:
        # Used outside a with block
        if not self._started:
            self._progress.start()
            self._started = True

        if name not in self._tasks:
            self._tasks[name] = self._progress.add_task("", total=None, name=name)
        return self._tasks[name]

    def stage(self, name: str, message: str) -> None:
        """Show a stage message on a repository's line.

        Args:
            name: Task name (the DID).
            message: Stage description.
        """
        self._progress.update(self._task(name), description=message)

    def start_task(self, name: str, total: int) -> ProgressCallback:
        """Attach a download bar to a repository's line.

        Args:
            name: Task name (the DID).
            total: Total bytes to download, or 0 when unknown.

        Returns:
            Callback receiving cumulative bytes and the total.
        """
        task_id = self._task(name)
        self._progress.update(task_id, total=total or None, completed=0)

        def callback(downloaded: int, _total: int) -> None:
            self._progress.update(task_id, completed=downloaded)

        return callback

    def finish_task(self, name: str) -> None:
        """Fill the bar of a finished download.

        An indeterminate bar is closed at the byte count reached.

        Args:
            name: Task name (the DID).
        """
        if name in self._tasks:
            task_id = self._tasks[name]
            task = self._progress.tasks[task_id]
            self._progress.update(task_id, total=task.completed, completed=task.completed)
