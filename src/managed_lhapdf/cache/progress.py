"""Download progress bar using rich."""

from typing import Optional

from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TaskID,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)


class DownloadProgress:
    def __init__(self, filename: str = "", total: Optional[int] = None):
        self.progress: Progress = Progress(
            TextColumn("[bold blue]{task.fields[filename]}", justify="right"),
            BarColumn(bar_width=None),
            "[progress.percentage]{task.percentage:>3.1f}%",
            "•",
            DownloadColumn(),
            "•",
            TransferSpeedColumn(),
            "•",
            TimeRemainingColumn(elapsed_when_finished=True),
        )
        self.task_id: TaskID = self.progress.add_task(
            description="", filename=filename, total=total
        )
        self.progress.start()

    def update(self, chunk_size: int) -> None:
        self.progress.update(self.task_id, advance=chunk_size)

    def close(self) -> None:
        self.progress.stop_task(self.task_id)
        self.progress.stop()
