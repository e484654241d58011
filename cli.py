#!/usr/bin/env python3
"""
AgenticHQ CLI - run tool plans step by step and watch them progress.

This is the main entry point for the command-line interface. It wraps the
execution engine with a rich terminal UI.

PLAN FILES:
----------
A plan file is YAML or JSON, either a bare list of steps or the planner's
output shape with a top-level "steps" key:

    steps:
      - tool: FileCreator.createMarkdown
        args: {filename: README.md, contents: "# Demo"}
      - tool: GitHub.createRepo
        args: {name: demo}
      - tool: GitHub.addFile
        args: {repo: demo, path: README.md, contentRef: 0}

USAGE:
------
  agentichq plan.yaml             - Run a plan and watch it
  agentichq --show PLAN_ID        - Show a stored plan
  agentichq --list                - List past plans
  agentichq --tools               - List available tools
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

import yaml
from rich.console import Console
from rich.logging import RichHandler

from config import Config, load_config
from execution import ExecutionEngine
from progress import ProgressChannel
from references import check_forward_references
from schemas import Step, parse_steps
from storage import PlanNotFoundError, create_store
from tools import create_default_tools
import ui

logger = logging.getLogger("agentichq")


# =============================================================================
# CLI ARGUMENT PARSING
# =============================================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="agentichq",
        description="Run tool plans step by step with live progress",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  agentichq plan.yaml
  agentichq plan.json --no-watch
  agentichq --show abc12345
  agentichq --list
  agentichq --tools
        """
    )

    # Positional argument for the plan file
    parser.add_argument(
        "plan_file",
        nargs="?",
        type=Path,
        help="YAML or JSON file with the steps to run"
    )

    parser.add_argument(
        "-s", "--show",
        metavar="PLAN_ID",
        help="Show a stored plan and its step results"
    )

    parser.add_argument(
        "-l", "--list",
        action="store_true",
        help="List past plans"
    )

    parser.add_argument(
        "-t", "--tools",
        action="store_true",
        help="List available tools"
    )

    parser.add_argument(
        "-c", "--config",
        type=Path,
        help="Config file (default: ~/.agentichq/config.yaml, ./agentichq.yaml)"
    )

    parser.add_argument(
        "--no-watch",
        action="store_true",
        help="Don't print live progress, only the final result"
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Debug logging"
    )

    parser.add_argument(
        "--version",
        action="version",
        version="AgenticHQ 0.1.0"
    )

    return parser


def setup_logging(level: str, verbose: bool = False) -> None:
    """Send log records to stderr through rich."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=verbose, show_path=verbose)],
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


# =============================================================================
# PLAN FILES
# =============================================================================

def load_steps(path: Path) -> list[Step]:
    """
    Read steps from a YAML or JSON plan file.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the content is not a valid step list
    """
    path = Path(path).expanduser()
    if not path.exists():
        raise FileNotFoundError(f"Plan file not found: {path}")

    text = path.read_text()
    if path.suffix.lower() == ".json":
        data = json.loads(text)
    else:
        # YAML is a superset of JSON, so anything else goes through here
        data = yaml.safe_load(text)

    steps = parse_steps(data)
    if not steps:
        raise ValueError(f"Plan file has no steps: {path}")
    return steps


# =============================================================================
# COMMANDS
# =============================================================================

def build_engine(config: Config) -> ExecutionEngine:
    """Engine wired to the configured store and the built-in tools."""
    return ExecutionEngine(
        registry=create_default_tools(config),
        store=create_store(config),
        channel=ProgressChannel(queue_size=config.progress.queue_size),
    )


async def run_plan_file(path: Path, config: Config, watch: bool = True) -> bool:
    """
    Run the steps in a plan file.

    Returns:
        True if every step completed
    """
    steps = load_steps(path)
    for problem in check_forward_references(steps):
        ui.show_warning(problem)

    engine = build_engine(config)
    plan, task = await engine.start(steps)
    ui.show_info(f"Plan {plan.id}: {plan.total_steps} steps from {path}")

    if watch:
        sub = await engine.watch(plan.id)
        # Stop watching even if the run dies before its terminal event
        task.add_done_callback(lambda _: sub.finish())
        async for event in sub.events(timeout=config.progress.watch_timeout_seconds):
            ui.show_event(event, total_steps=plan.total_steps)
        if sub.timed_out:
            ui.show_warning("No progress for a while; waiting for the plan to finish...")
    else:
        with ui.show_thinking(f"Running {plan.total_steps} steps..."):
            await asyncio.wait([task])

    outcome = await task
    ui.console.print()
    ui.show_outcome(outcome)
    return outcome.success


async def show_plan_status(plan_id: str, config: Config) -> bool:
    """Show a stored plan with its executions."""
    store = create_store(config)
    try:
        plan = await store.get_plan(plan_id)
    except PlanNotFoundError:
        ui.show_error(f"Plan not found: {plan_id}")
        return False
    executions = await store.get_step_executions(plan_id)
    ui.show_plan(plan, executions)
    return True


async def list_plans(config: Config) -> None:
    """List all past plans."""
    store = create_store(config)
    plans = await store.list_plans()

    ui.show_header("Past Plans")

    if not plans:
        ui.console.print("[dim]No plans found.[/dim]")
        ui.console.print("\nRun one with:")
        ui.console.print("  agentichq plan.yaml")
        return

    ui.show_plans_list(plans)


def list_tools(config: Config) -> None:
    """List the registered tools."""
    ui.show_tools(create_default_tools(config).list_tools())


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

async def async_main(args: argparse.Namespace, config: Optional[Config] = None) -> int:
    """
    Async main function that handles all commands.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    if config is None:
        try:
            config = load_config(args.config)
        except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
            ui.show_error(f"Failed to load config: {e}")
            return 1

    setup_logging(config.logging.level, verbose=args.verbose)

    # Handle --tools
    if args.tools:
        list_tools(config)
        return 0

    # Handle --list
    if args.list:
        await list_plans(config)
        return 0

    # Handle --show
    if args.show:
        return 0 if await show_plan_status(args.show, config) else 1

    # No plan file provided
    if not args.plan_file:
        ui.show_welcome()
        ui.show_quick_help()
        return 0

    try:
        ok = await run_plan_file(args.plan_file, config, watch=not args.no_watch)
        return 0 if ok else 1
    except KeyboardInterrupt:
        ui.console.print("\n")
        ui.show_warning("Interrupted")
        return 130
    except (FileNotFoundError, ValueError) as e:
        ui.show_error(str(e))
        return 1
    except Exception as e:
        ui.show_error(f"Run failed: {e}")
        if args.verbose:
            logger.exception("Run failed")
        return 1


def main() -> None:
    """Main entry point for the CLI."""
    parser = create_parser()
    args = parser.parse_args()

    # Run async main
    try:
        exit_code = asyncio.run(async_main(args))
        sys.exit(exit_code)
    except KeyboardInterrupt:
        ui.console.print("\n")
        sys.exit(130)


if __name__ == "__main__":
    main()
