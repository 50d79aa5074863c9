"""Console summaries of run results."""
from typing import Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .bootstrap import BootstrapResult
from .models import RunOutcome, RunReport, TaskStatus

STATUS_STYLES = {
    TaskStatus.SKIPPED: "dim",
    TaskStatus.CHANGED: "yellow",
    TaskStatus.FAILED: "red",
    TaskStatus.TIMEOUT: "red",
    TaskStatus.NOT_RUN: "magenta",
}


def report_table(report: RunReport, verbose: bool = False) -> Table:
    """Per play and host counts; with ``verbose`` one row per task."""
    table = Table(title="Provisioning results")
    table.add_column("Play", style="cyan")
    table.add_column("Host", style="cyan")
    if verbose:
        table.add_column("Task")
        table.add_column("Status")
        table.add_column("Message", overflow="fold")
    else:
        for status in TaskStatus:
            table.add_column(status.value, justify="right")
        table.add_column("Result")

    for play in report.plays:
        for host, run in play.hosts.items():
            results = run.results + run.handler_results
            if verbose:
                for r in results:
                    style = STATUS_STYLES[r.status]
                    label = f"{r.task} (handler)" if r.handler else r.task
                    table.add_row(play.name, host, label, f"[{style}]{r.status.value}[/{style}]", escape(r.message))
                continue
            counts = [str(sum(1 for r in results if r.status == status)) for status in TaskStatus]
            verdict = "[red]failed[/red]" if run.failed else ("[yellow]changed[/yellow]" if run.changed else "ok")
            table.add_row(play.name, host, *counts, verdict)
    return table


def print_report(report: RunReport, console: Optional[Console] = None, verbose: bool = False) -> None:
    console = console or Console()
    if report.plays:
        console.print(report_table(report, verbose=verbose))

    outcome = report.outcome
    if outcome == RunOutcome.PARTIAL_FAILURE:
        console.print(f"[bold red]❌ Run {report.summary()}[/bold red]")
        for play in report.plays:
            for host, run in play.hosts.items():
                failure = run.failure
                if failure:
                    console.print(f"  [red]{host}[/red] {play.name} / {escape(failure.task)}: {escape(failure.message)}")
                if run.dropped_handlers:
                    console.print(f"  [magenta]{host}[/magenta] handlers not run: {', '.join(run.dropped_handlers)}")
    else:
        console.print(f"[bold green]✅ Run {report.summary()}[/bold green]")


def print_bootstrap(result: BootstrapResult, console: Optional[Console] = None) -> None:
    console = console or Console()
    table = Table(title="Cluster bootstrap")
    table.add_column("Role", style="cyan")
    table.add_column("Host")
    table.add_column("Result")
    for host in result.control_succeeded:
        table.add_row("control", host, "[green]initialized[/green]")
    for host in result.workers_succeeded:
        table.add_row("worker", host, "[green]joined[/green]")
    for host, message in result.failures.items():
        table.add_row("", host, f"[red]{escape(message)}[/red]")
    console.print(table)
