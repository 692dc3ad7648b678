import threading
from typing import List, Optional
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, TaskProgressColumn, TimeElapsedColumn
from rich.table import Table
from webmify.domain.models import ConvertedVideo, JobState
from webmify.infrastructure.library import format_size

class ConsoleListener:
    """Renders one conversion as a rich progress bar and remembers how it ended."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()
        self.outcome: Optional[JobState] = None
        self.message = ""
        self.done = threading.Event()
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(bar_width=40),
            TaskProgressColumn(),
            TimeElapsedColumn(),
            console=self.console,
            expand=False
        )
        self._task_id = None

    def __enter__(self):
        self.progress.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.progress.stop()

    def on_start(self, original_size: int, total_frames: int) -> None:
        frames = f", {total_frames} frames" if total_frames > 0 else ""
        self.console.print(f"Converting {format_size(original_size)}{frames}")
        self._task_id = self.progress.add_task("Starting conversion...", total=100)

    def on_progress(self, percent: int, current_frame: int, total_frames: int) -> None:
        if self._task_id is None:
            return
        if current_frame >= 0 and total_frames > 0:
            description = f"Frame {current_frame}/{total_frames}"
        else:
            description = "Converting"
        self.progress.update(self._task_id, completed=percent, description=description)

    def on_success(self, output_path: str, original_size: int, new_size: int) -> None:
        if self._task_id is not None:
            self.progress.update(self._task_id, completed=100, description="[bold green]Done[/bold green]")
        reduction = 100.0 - (new_size * 100.0 / original_size) if original_size > 0 else 0.0
        self.message = (
            f"{output_path}\n"
            f"Original: {format_size(original_size)}  New: {format_size(new_size)}  "
            f"Reduction: {reduction:.1f}%"
        )
        self._finish(JobState.SUCCEEDED)

    def on_failure(self, message: str) -> None:
        if self._task_id is not None:
            self.progress.update(self._task_id, description="[bold red]Failed[/bold red]")
        self.message = message
        self._finish(JobState.FAILED)

    def on_cancelled(self) -> None:
        if self._task_id is not None:
            self.progress.update(self._task_id, description="[yellow]Cancelled[/yellow]")
        self.message = "Conversion cancelled"
        self._finish(JobState.CANCELLED)

    def _finish(self, outcome: JobState):
        self.outcome = outcome
        self.done.set()


def library_table(videos: List[ConvertedVideo]) -> Table:
    table = Table(title="Converted videos")
    table.add_column("File")
    table.add_column("Original", justify="right")
    table.add_column("Size", justify="right")
    table.add_column("Reduction", justify="right")
    table.add_column("Modified")
    for video in videos:
        table.add_row(
            video.name,
            format_size(video.original_size_bytes),
            format_size(video.size_bytes),
            f"{video.compression_percent:.1f}%",
            video.modified_at.strftime("%Y-%m-%d %H:%M"),
        )
    return table
