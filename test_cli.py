"""
CLI Tests

Test list:
1. test_load_steps - YAML and JSON plan files
2. test_cli_runs_plan_file - A plan file run end to end from the command line
3. test_cli_show_and_list - Stored plans shown and listed
4. test_cli_run_dies_mid_watch - A run that dies while watched ends the watch
"""

import asyncio
import json
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent))

from cli import async_main, create_parser, load_steps
from config import get_default_config
from schemas import StepStatus
from storage import JsonPlanStore, MemoryPlanStore


def test_load_steps(tmp_path):
    """
    Test 1: Plan files.

    Verifies:
    - YAML with a top-level "steps" key
    - JSON as a bare list
    - Missing files, empty plans and malformed tool names are errors
    """
    yaml_file = tmp_path / "plan.yaml"
    yaml_file.write_text(
        "steps:\n"
        "  - tool: FileCreator.createMarkdown\n"
        "    args: {filename: README.md, contents: '# Demo'}\n"
        "  - tool: GitHub.addFile\n"
        "    args: {repo: demo, path: README.md, contentRef: 0}\n"
    )
    steps = load_steps(yaml_file)
    assert [s.tool for s in steps] == ["FileCreator.createMarkdown", "GitHub.addFile"]
    assert steps[1].args["contentRef"] == 0

    json_file = tmp_path / "plan.json"
    json_file.write_text(json.dumps([{"tool": "Gmail.sendEmail", "args": {"to": "a@b.co"}}]))
    assert load_steps(json_file)[0].provider == "Gmail"

    with pytest.raises(FileNotFoundError):
        load_steps(tmp_path / "missing.yaml")

    empty = tmp_path / "empty.yaml"
    empty.write_text("steps: []\n")
    with pytest.raises(ValueError):
        load_steps(empty)

    bad = tmp_path / "bad.json"
    bad.write_text(json.dumps([{"tool": "sendEmail"}]))
    with pytest.raises(ValueError):
        load_steps(bad)

    print("✓ Test 1 passed: Plan files loaded")


def make_config(tmp_path):
    config = get_default_config()
    config.storage.directory = str(tmp_path / "plans")
    config.tools.files.base = str(tmp_path / "docs")
    return config


@pytest.mark.asyncio
async def test_cli_runs_plan_file(tmp_path):
    """
    Test 2: agentichq plan.yaml

    Verifies:
    - Exit code 0 when every step completes, 1 when one fails
    - The document was written and the plan stored
    """
    config = make_config(tmp_path)
    plan_file = tmp_path / "plan.yaml"
    plan_file.write_text(
        "- tool: FileCreator.createMarkdown\n"
        "  args: {filename: notes, contents: hello}\n"
    )

    args = create_parser().parse_args([str(plan_file)])
    assert await async_main(args, config) == 0
    assert (tmp_path / "docs" / "notes.md").read_text() == "hello"

    plans = await JsonPlanStore(tmp_path / "plans").list_plans()
    assert len(plans) == 1
    assert plans[0].status.value == "completed"

    failing = tmp_path / "failing.yaml"
    failing.write_text(
        "- tool: FileCreator.createMarkdown\n"
        "  args: {filename: '../escape', contents: x}\n"
    )
    args = create_parser().parse_args([str(failing), "--no-watch"])
    assert await async_main(args, config) == 1

    args = create_parser().parse_args([str(tmp_path / "missing.yaml")])
    assert await async_main(args, config) == 1

    print("✓ Test 2 passed: Plan file run from the CLI")


@pytest.mark.asyncio
async def test_cli_show_and_list(tmp_path):
    """
    Test 3: --show / --list / --tools

    Verifies:
    - Exit code 0 for a stored plan, 1 for an unknown id
    - Listing and the tool catalogue succeed
    """
    config = make_config(tmp_path)
    plan_file = tmp_path / "plan.json"
    plan_file.write_text(json.dumps({"steps": [
        {"tool": "FileCreator.createMarkdown", "args": {"filename": "a", "contents": "a"}},
    ]}))
    await async_main(create_parser().parse_args([str(plan_file)]), config)
    plan_id = (await JsonPlanStore(tmp_path / "plans").list_plans())[0].id

    assert await async_main(create_parser().parse_args(["--show", plan_id]), config) == 0
    assert await async_main(create_parser().parse_args(["--show", "nope"]), config) == 1
    assert await async_main(create_parser().parse_args(["--list"]), config) == 0
    assert await async_main(create_parser().parse_args(["--tools"]), config) == 0

    print("✓ Test 3 passed: Stored plans shown")


class FailingResultStore(MemoryPlanStore):
    """Fails when a step result is written, so the run never publishes an end."""

    async def update_step_execution(self, plan_id, step_index, status, result=None, error=None):
        if status == StepStatus.COMPLETED:
            raise OSError("disk full")
        return await super().update_step_execution(plan_id, step_index, status, result, error)


@pytest.mark.asyncio
async def test_cli_run_dies_mid_watch(tmp_path, monkeypatch):
    """
    Test 4: The run fails inside the engine while being watched.

    Verifies:
    - The live view stops when the run task ends, not after the idle timeout
    - Exit code 1
    """
    config = make_config(tmp_path)
    config.progress.watch_timeout_seconds = 30
    monkeypatch.setattr("cli.create_store", lambda config: FailingResultStore())

    plan_file = tmp_path / "plan.yaml"
    plan_file.write_text(
        "- tool: FileCreator.createMarkdown\n"
        "  args: {filename: notes, contents: hello}\n"
    )

    args = create_parser().parse_args([str(plan_file)])
    assert await asyncio.wait_for(async_main(args, config), timeout=5) == 1

    print("✓ Test 4 passed: Watch ends with the run")
