#!/usr/bin/env python3
"""
MCP Server for AgenticHQ plan execution.

IMPORTANT: Never print to stdout - it breaks JSON-RPC communication.
All logging must go to stderr.

This server exposes the execution engine via MCP tools:
- run_plan: Run a list of steps (wait for the result or start in background)
- plan_status: A plan with its step executions
- watch_plan: Progress events of a plan for a bounded window
- list_plans: Past plans, newest first
- list_tools: Tools a plan can use

A planning model is expected to turn a user's request into steps and call
run_plan with them:

    [{"tool": "FileCreator.createMarkdown", "args": {"filename": "notes", "contents": "..."}},
     {"tool": "Gmail.sendEmail", "args": {"to": "a@b.com", "subject": "Notes", "bodyRef": 0}}]

To run:
    python mcp_server.py
"""

import sys
import json
import logging
from pathlib import Path
from typing import Optional

# CRITICAL: Configure logging to stderr BEFORE any other imports
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    stream=sys.stderr
)
logger = logging.getLogger("agentichq-mcp")

# Make the sibling modules importable when started from elsewhere
AGENTICHQ_PATH = Path(__file__).parent
sys.path.insert(0, str(AGENTICHQ_PATH))

# MCP imports
from mcp.server.fastmcp import FastMCP

from config import Config, get_default_config, load_config
from execution import ExecutionEngine
from progress import ProgressChannel
from schemas import parse_steps
from storage import PlanNotFoundError, create_store
from tools import create_default_tools

# Create MCP server
mcp = FastMCP("agentichq")

_engine: Optional[ExecutionEngine] = None
_config: Optional[Config] = None


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def _get_config() -> Config:
    """Load configuration once, falling back to defaults."""
    global _config
    if _config is None:
        try:
            _config = load_config()
        except Exception as e:
            logger.warning(f"Failed to load config, using defaults: {e}")
            _config = get_default_config()
    return _config


def _get_engine() -> ExecutionEngine:
    """One engine per server process, so background plans stay watchable."""
    global _engine
    if _engine is None:
        config = _get_config()
        _engine = ExecutionEngine(
            registry=create_default_tools(config),
            store=create_store(config),
            channel=ProgressChannel(queue_size=config.progress.queue_size),
        )
    return _engine


def _error(message: str) -> str:
    return json.dumps({"error": message})


# =============================================================================
# MCP TOOLS
# =============================================================================

@mcp.tool()
async def run_plan(steps: str, wait: bool = True) -> str:
    """
    Run a plan: an ordered list of tool calls.

    Steps run one at a time; the first failing step stops the plan. Use
    "<name>Ref": <index> in args to pass an earlier step's output (0-based),
    e.g. "contentRef": 0.

    Args:
        steps: JSON list of {"tool": "Provider.operation", "args": {...}}
        wait: If true, return the finished plan; if false, return the plan id
              immediately and let it run in the background

    Returns:
        JSON with the plan status and its step executions (or the plan id).
    """
    logger.info(f"run_plan called: wait={wait}")

    try:
        parsed = parse_steps(json.loads(steps))
    except ValueError as e:
        return _error(f"Invalid steps: {e}")

    if not parsed:
        return _error("A plan needs at least one step")

    try:
        engine = _get_engine()
        if not wait:
            plan, _ = await engine.start(parsed)
            logger.info(f"Started plan {plan.id} in the background")
            return json.dumps({"plan_id": plan.id, "status": plan.status.value})

        plan = await engine.create_plan(parsed)
        outcome = await engine.execute(plan.id)
        logger.info(f"Plan {plan.id} finished: {outcome.plan.status.value}")
        return json.dumps(await engine.get_status(plan.id), indent=2, default=str)
    except Exception as e:
        logger.error(f"run_plan failed: {e}")
        return _error(str(e))


@mcp.tool()
async def plan_status(plan_id: str) -> str:
    """
    Get a plan and the outcome of each attempted step.

    Args:
        plan_id: Id returned by run_plan

    Returns:
        JSON plan with status, current_step, error and executions.
    """
    logger.info(f"plan_status: {plan_id}")

    try:
        return json.dumps(await _get_engine().get_status(plan_id), indent=2, default=str)
    except PlanNotFoundError:
        return _error(f"Plan not found: {plan_id}")
    except Exception as e:
        logger.error(f"plan_status failed: {e}")
        return _error(str(e))


@mcp.tool()
async def watch_plan(plan_id: str, timeout_seconds: float = 0) -> str:
    """
    Collect a plan's progress events until it finishes or goes quiet.

    A running plan reports a snapshot of where it is first. Watching stops
    after `timeout_seconds` without a new event (default from config, 30s);
    the plan itself keeps running.

    Args:
        plan_id: Id returned by run_plan
        timeout_seconds: Idle window in seconds (0 = configured default)

    Returns:
        JSON with the events seen and whether the plan finished.
    """
    logger.info(f"watch_plan: {plan_id}")

    timeout = timeout_seconds or _get_config().progress.watch_timeout_seconds
    try:
        sub = await _get_engine().watch(plan_id)
    except PlanNotFoundError:
        return _error(f"Plan not found: {plan_id}")

    events = []
    finished = False
    async for event in sub.events(timeout=timeout):
        events.append(event.model_dump(mode="json"))
        finished = finished or event.is_terminal or (
            event.kind == "plan_snapshot" and event.status.value in ("completed", "failed")
        )

    return json.dumps({
        "plan_id": plan_id,
        "finished": finished,
        "timed_out": sub.timed_out,
        "dropped": sub.dropped,
        "events": events,
    }, indent=2, default=str)


@mcp.tool()
async def list_plans(limit: int = 20) -> str:
    """
    List past plans, newest first.

    Args:
        limit: Maximum number of plans to return

    Returns:
        JSON array of plan summaries (id, status, progress, tools, created_at).
    """
    logger.info(f"list_plans: limit={limit}")

    try:
        plans = await _get_engine().store.list_plans()
        return json.dumps([
            {
                "id": plan.id,
                "status": plan.status.value,
                "current_step": plan.current_step,
                "total_steps": plan.total_steps,
                "tools": [step.tool for step in plan.steps],
                "error": plan.error,
                "created_at": plan.created_at.isoformat(),
            }
            for plan in plans[:limit]
        ], indent=2)
    except Exception as e:
        logger.error(f"list_plans failed: {e}")
        return _error(str(e))


@mcp.tool()
async def list_tools() -> str:
    """
    Describe the tools a plan can use.

    Returns:
        One "Provider.operation(params) - description" line per tool, followed
        by the full parameter reference.
    """
    registry = _get_engine().registry
    return "\n".join(registry.describe_tools()) + "\n\n" + registry.get_tools_prompt()


# =============================================================================
# ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    logger.info("Starting AgenticHQ MCP Server")
    mcp.run(transport="stdio")
