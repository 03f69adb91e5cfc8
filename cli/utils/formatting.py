"""Rich Formatting Utilities for Job Queue Output"""

from datetime import datetime
from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

STATUS_STYLES = {
    "pending": "yellow",
    "running": "blue",
    "done": "green",
    "failed": "red",
    "dlq": "bold red",
}


def print_success(message: str):
    """Print success message with green styling"""
    console.print(f"[green]✓ {message}[/green]")


def print_error(message: str):
    """Print error message with red styling"""
    console.print(f"[red]✗ {message}[/red]")


def print_warning(message: str):
    """Print warning message with yellow styling"""
    console.print(f"[yellow]⚠ {message}[/yellow]")


def print_info(message: str):
    """Print info message with blue styling"""
    console.print(f"[blue]ℹ {message}[/blue]")


def _format_time(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


def _styled_status(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def create_jobs_table(jobs: list[Any], title: str = "Jobs") -> Table:
    """Create a formatted table for a list of jobs"""
    table = Table(title=title, box=box.ROUNDED)

    table.add_column("ID", justify="right", style="cyan", no_wrap=True)
    table.add_column("Type", justify="center", style="magenta")
    table.add_column("File", justify="right")
    table.add_column("Status", justify="center")
    table.add_column("Attempts", justify="center", style="yellow")
    table.add_column("Updated", justify="left")
    table.add_column("Error", justify="left", style="red")

    for job in jobs:
        error = job.error_message or ""
        table.add_row(
            str(job.id),
            job.job_type,
            str(job.file_id),
            _styled_status(job.status),
            f"{job.attempts}/{job.max_attempts}",
            _format_time(job.updated_at),
            error[:60] + ("…" if len(error) > 60 else ""),
        )

    return table


def create_job_panel(job: Any) -> Panel:
    """Detailed view of a single job"""
    lines = [
        f"• Type: [magenta]{job.job_type}[/magenta]",
        f"• Status: {_styled_status(job.status)}",
        f"• Owner / File: {job.owner_id} / {job.file_id}",
        f"• Priority: {job.priority}",
        f"• Attempts: [yellow]{job.attempts}/{job.max_attempts}[/yellow]",
        f"• Next attempt: {_format_time(job.next_attempt_at)}",
        f"• Locked by: {job.locked_by or '-'} ({_format_time(job.locked_at)})",
        f"• Depends on: {job.depends_on_job_id or '-'}",
        f"• Created: {_format_time(job.created_at)}",
        f"• Completed: {_format_time(job.completed_at)}",
    ]
    if job.error_message:
        lines.append(f"• Error: [red]{job.error_message}[/red]")
    if job.output_data:
        lines.append("")
        lines.append("[bold]Output[/bold]")
        lines.extend(f"  {key}: {value}" for key, value in job.output_data.items())

    return Panel("\n".join(lines), title=f"Job {job.id}", border_style="cyan")


def create_stats_table(stats: dict[str, Any]) -> Table:
    """Create formatted table for queue statistics"""
    table = Table(title="Job Queue", box=box.ROUNDED)

    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right", style="cyan")

    table.add_row("Total jobs", str(stats["total_jobs"]))
    for status, count in sorted(stats["by_status"].items()):
        table.add_row(f"  {_styled_status(status)}", str(count))
    for job_type, count in sorted(stats["by_type"].items()):
        table.add_row(f"  type [magenta]{job_type}[/magenta]", str(count))
    table.add_row("Queue depth", str(stats["queue_depth"]))
    table.add_row("Dead letter", str(stats["dead_letter"]))
    table.add_row("Stuck jobs", str(stats["stuck_jobs"]))

    return table
