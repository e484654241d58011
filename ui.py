"""
Rich terminal UI components for AgenticHQ.

WHY THIS FILE EXISTS:
--------------------
The CLI needs to display plans, live progress and results in a readable
way. Rich provides the panels, tables and colors.

COMPONENTS:
----------
- show_plan() - Steps of a plan with per-step status
- show_event() - One line per progress event while a plan runs
- show_outcome() - Final result of a run
- show_tools() - Catalogue of registered tools
- show_plans_list() - Past plans
"""

import json
from typing import Any, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from rich import box

from schemas import (
    ExecutionOutcome,
    Plan,
    ProgressEvent,
    Step,
    StepExecution,
    ToolDefinition,
)
from references import find_references

# Global console instance for consistent output
console = Console()


# =============================================================================
# COLOR SCHEMES
# =============================================================================

STATUS_COLORS = {
    "completed": "green",
    "running": "yellow",
    "pending": "dim",
    "failed": "red",
}

STATUS_ICONS = {
    "completed": "✓",
    "running": "▶",
    "pending": "·",
    "failed": "✗",
}


# =============================================================================
# HEADER/SECTION UTILITIES
# =============================================================================

def show_header(title: str, subtitle: str = "") -> None:
    """Display a styled header."""
    console.print()
    console.rule(f"[bold blue]{title}[/bold blue]")
    if subtitle:
        console.print(f"[dim]{subtitle}[/dim]", justify="center")
    console.print()


def show_success(message: str) -> None:
    """Display a success message."""
    console.print(f"[green]✓[/green] {message}")


def show_error(message: str) -> None:
    """Display an error message."""
    console.print(f"[red]✗[/red] {message}")


def show_warning(message: str) -> None:
    """Display a warning message."""
    console.print(f"[yellow]⚠[/yellow] {message}")


def show_info(message: str) -> None:
    """Display an info message."""
    console.print(f"[blue]ℹ[/blue] {message}")


def _colored(status: str) -> str:
    color = STATUS_COLORS.get(status, "white")
    return f"[{color}]{STATUS_ICONS.get(status, '?')} {status}[/{color}]"


def _truncate(value: str, limit: int = 60) -> str:
    value = value.replace("\n", " ")
    return value[:limit] + "..." if len(value) > limit else value


def format_args(step: Step) -> str:
    """Arguments as 'key=value' pairs; references shown as 'content ← step 0'."""
    refs = find_references(step)
    parts = [f"{name} ← step {index}" for name, index in refs.items()]
    for key, value in step.args.items():
        if key.endswith("Ref") and key[:-3] in refs:
            continue
        parts.append(f"{key}={_truncate(repr(value), 40)}")
    return ", ".join(parts)


def format_result(result: Any, limit: int = 80) -> str:
    """Short single-line rendering of a step result."""
    if result is None:
        return "-"
    if isinstance(result, str):
        return _truncate(result, limit)
    return _truncate(json.dumps(result, default=str), limit)


# =============================================================================
# PLAN DISPLAY
# =============================================================================

def show_plan(plan: Plan, executions: Optional[list[StepExecution]] = None) -> None:
    """
    Display a plan and, if given, the outcome of each attempted step.

    Args:
        plan: The Plan to display
        executions: Its step executions (any order)
    """
    by_index = {e.step_index: e for e in executions or []}

    show_header(f"Plan {plan.id}", f"{plan.total_steps} steps · created {plan.created_at:%Y-%m-%d %H:%M:%S}")

    table = Table(
        box=box.ROUNDED,
        show_header=True,
        header_style="bold",
        title="[bold]Steps[/bold]"
    )
    table.add_column("#", justify="right", style="cyan", width=3)
    table.add_column("Tool", style="green")
    table.add_column("Arguments")
    table.add_column("Status", justify="center")
    table.add_column("Result / Error", style="dim")

    for index, step in enumerate(plan.steps):
        execution = by_index.get(index)
        if execution is None:
            status = "pending"
            detail = ""
        else:
            status = execution.status.value
            detail = execution.error if execution.error else format_result(execution.result)
        table.add_row(str(index), step.tool, format_args(step), _colored(status), detail)

    console.print(table)

    console.print(f"\n[bold]Status:[/bold] {_colored(plan.status.value)}")
    console.print(f"[bold]Progress:[/bold] {plan.current_step}/{plan.total_steps}")
    if plan.error:
        console.print(Panel(
            plan.error,
            title="[bold red]Failure[/bold red]",
            border_style="red",
            box=box.ROUNDED
        ))


# =============================================================================
# LIVE PROGRESS
# =============================================================================

def show_event(event: ProgressEvent, total_steps: Optional[int] = None) -> None:
    """Print one line for a progress event."""
    of = f"/{total_steps}" if total_steps else ""
    kind = event.kind

    if kind == "plan_started":
        console.print(f"[bold blue]▶ Plan {event.plan_id} started[/bold blue] [dim]({event.total_steps} steps)[/dim]")
    elif kind == "plan_snapshot":
        console.print(
            f"[dim]Plan {event.plan_id} is {event.status.value}, "
            f"{event.current_step}/{event.total_steps} steps done[/dim]"
        )
    elif kind == "step_started":
        console.print(f"  [yellow]…[/yellow] step {event.step_index + 1}{of} [green]{event.step.tool}[/green]")
    elif kind == "step_completed":
        console.print(
            f"  [green]✓[/green] step {event.step_index + 1}{of} "
            f"[dim]{format_result(event.result)}[/dim]"
        )
    elif kind == "step_failed":
        console.print(f"  [red]✗[/red] step {event.step_index + 1}{of} [red]{event.error}[/red]")
    elif kind == "plan_completed":
        console.print(f"[bold green]✓ Plan {event.plan_id} completed[/bold green]")
    elif kind == "plan_failed":
        console.print(f"[bold red]✗ Plan {event.plan_id} failed:[/bold red] {event.error}")


def show_thinking(message: str = "Working..."):
    """
    Context manager that shows a spinner while processing.

    Usage:
        with show_thinking("Running 3 steps..."):
            outcome = await task
    """
    return console.status(f"[bold blue]{message}[/bold blue]", spinner="dots")


def show_outcome(outcome: ExecutionOutcome) -> None:
    """
    Display the final result of a run.

    Args:
        outcome: What ExecutionEngine.execute returned
    """
    plan = outcome.plan
    if outcome.success:
        show_success(f"Plan {plan.id} completed all {plan.total_steps} steps")
    else:
        failed = outcome.failed_execution
        where = f"step {failed.step_index} ({failed.tool})" if failed else f"step {plan.current_step}"
        show_error(f"Plan {plan.id} failed at {where}: {plan.error}")

    if outcome.outputs:
        console.print("\n[bold]Outputs:[/bold]")
        for index, result in outcome.outputs.items():
            console.print(f"  [cyan]{index}[/cyan] {format_result(result)}")


# =============================================================================
# TOOLS / PLAN LISTS
# =============================================================================

def show_tools(tools: list[ToolDefinition]) -> None:
    """Display the tool catalogue."""
    table = Table(box=box.ROUNDED, show_header=True, header_style="bold", title="[bold]Tools[/bold]")
    table.add_column("Tool", style="green")
    table.add_column("Parameters")
    table.add_column("Description")

    for tool in tools:
        params = Text()
        for i, param in enumerate(tool.parameters):
            if i:
                params.append(", ")
            params.append(param.name, style="bold" if param.required else "dim")
            params.append(f":{param.type}", style="dim")
        table.add_row(tool.name, params, tool.description)

    console.print(table)
    console.print("[dim]Bold parameters are required. Use <name>Ref: <step index> to pass an earlier step's output.[/dim]")


def show_plans_list(plans: list[Plan]) -> None:
    """
    Display a list of plans.

    Args:
        plans: Plans, newest first
    """
    if not plans:
        console.print("[dim]No plans found.[/dim]")
        return

    table = Table(box=box.ROUNDED, show_header=True, header_style="bold")
    table.add_column("ID", style="cyan")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Tools")
    table.add_column("Created", style="dim")

    for plan in plans:
        tools = ", ".join(step.tool for step in plan.steps)
        table.add_row(
            plan.id,
            _colored(plan.status.value),
            f"{plan.current_step}/{plan.total_steps}",
            _truncate(tools, 50),
            f"{plan.created_at:%Y-%m-%d %H:%M}",
        )

    console.print(table)


# =============================================================================
# WELCOME / HELP
# =============================================================================

def show_welcome() -> None:
    """Display welcome message."""
    console.print(Panel.fit(
        "[bold blue]AgenticHQ[/bold blue]\n"
        "[dim]Step-by-step plan execution across your tools[/dim]",
        border_style="blue"
    ))


def show_quick_help() -> None:
    """Display quick help."""
    console.print("""
[bold]Usage:[/bold]
  agentichq plan.yaml             Run a plan file and watch its progress
  agentichq plan.yaml --no-watch  Run without live progress
  agentichq --show PLAN_ID        Show a plan and its step results
  agentichq --list                List past plans
  agentichq --tools               List available tools
  agentichq --help                Show full help
""")
