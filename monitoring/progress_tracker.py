from typing import Callable, Dict

from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, TimeElapsedColumn

from monitoring.progress_emitter import ProgressEmitter, ProgressEvent


class ProgressTracker:
    """Renders pipeline events as one rich progress bar per document."""

    def __init__(self, console):
        self.console = console
        self._tasks: Dict[str, int] = {}

    def create_progress(self):
        return Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            TimeElapsedColumn(),
            console=self.console
        )

    def attach(self, emitter: ProgressEmitter, progress: Progress) -> Callable[[], None]:
        """Subscribe to an emitter. Returns the unsubscribe function."""

        def render(event: ProgressEvent) -> None:
            task = self._tasks.get(event.document_id)
            if task is None:
                task = progress.add_task(event.document_id[:8], total=100)
                self._tasks[event.document_id] = task

            if event.type == "progress":
                progress.update(
                    task,
                    completed=event.data["progress_percent"],
                    description=event.data["current_step"],
                )
            elif event.type == "status":
                progress.update(task, description=f"[cyan]{event.data['status']}[/cyan]")
            elif event.type == "error":
                self.console.print(f"[red]{event.document_id[:8]}: {event.data['error_message']}[/red]")
            elif event.type == "complete":
                stage = event.data.get("stage", "stage")
                progress.update(task, completed=100, description=f"[green]{stage} complete[/green]")

        return emitter.subscribe(render)
