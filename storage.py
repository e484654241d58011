"""
Persistence for plans and step executions.

WHY THIS FILE EXISTS:
--------------------
The engine records every plan and every attempted step so that:
- a client can ask "where is plan abc12345?" at any time
- a finished plan can be inspected later (which step failed, and why)
- the CLI can list past plans

Records are keyed by plan id, and step executions by (plan id, step index).

BACKENDS:
--------
MemoryPlanStore - dicts in memory, for tests and one-shot runs
JsonPlanStore   - one JSON file per plan in ~/.agentichq/plans/

    {
      "plan": {...},
      "executions": [{...}, {...}]
    }

Both enforce the same rules:
- every write is atomic and immediately readable
- statuses only move along PLAN_TRANSITIONS / STEP_TRANSITIONS
- the plan cursor never moves backwards
- one execution record per (plan id, step index)
- callers get copies, never the store's own objects
"""

import asyncio
import json
import os
import tempfile
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from schemas import (
    Plan,
    PlanStatus,
    StepExecution,
    StepStatus,
    PLAN_TRANSITIONS,
    STEP_TRANSITIONS,
    can_transition,
)


class PlanNotFoundError(LookupError):
    """No plan with this id."""


class InvalidTransitionError(ValueError):
    """A status update that the state machine does not allow."""


_UNSET: Any = object()


# =============================================================================
# STORE CONTRACT
# =============================================================================

class PlanStore(ABC):
    """
    Base class for plan stores.

    Subclasses only implement raw reads and writes of whole records; the
    rules (transitions, cursor, uniqueness) live here so every backend
    enforces them the same way.

    Usage:
        store = MemoryPlanStore()
        plan = await store.create_plan(Plan(steps=steps))
        await store.update_plan(plan.id, status=PlanStatus.RUNNING)
    """

    def __init__(self):
        self._lock = asyncio.Lock()

    # -- primitives -----------------------------------------------------------

    @abstractmethod
    async def _read(self, plan_id: str) -> Optional[tuple[Plan, list[StepExecution]]]:
        """Load a plan and its executions, or None if unknown."""

    @abstractmethod
    async def _write(self, plan: Plan, executions: list[StepExecution]) -> None:
        """Atomically replace a plan and its executions."""

    @abstractmethod
    async def _plan_ids(self) -> list[str]:
        """Ids of every stored plan."""

    # -- plans ----------------------------------------------------------------

    async def create_plan(self, plan: Plan) -> Plan:
        """
        Persist a new plan.

        Raises:
            ValueError: If a plan with the same id already exists
        """
        async with self._lock:
            if await self._read(plan.id) is not None:
                raise ValueError(f"Plan already exists: {plan.id}")
            await self._write(plan, [])
        return plan.model_copy(deep=True)

    async def get_plan(self, plan_id: str) -> Plan:
        """
        Raises:
            PlanNotFoundError: If the plan does not exist
        """
        plan, _ = await self._require(plan_id)
        return plan

    async def update_plan(
        self,
        plan_id: str,
        status: Optional[PlanStatus] = None,
        current_step: Optional[int] = None,
        error: Optional[str] = _UNSET,
    ) -> Plan:
        """
        Update a plan's status, cursor and/or error.

        Raises:
            PlanNotFoundError: If the plan does not exist
            InvalidTransitionError: If the status change is not allowed or
                the cursor would move backwards
        """
        async with self._lock:
            plan, executions = await self._require(plan_id)

            if status is not None:
                if not can_transition(plan.status, status):
                    raise InvalidTransitionError(
                        f"Invalid plan transition: {plan.status.value} -> {status.value}. "
                        f"Allowed: {[s.value for s in PLAN_TRANSITIONS.get(plan.status, [])]}"
                    )
                plan.status = status

            if current_step is not None:
                if current_step < plan.current_step:
                    raise InvalidTransitionError(
                        f"Plan cursor cannot move backwards: {plan.current_step} -> {current_step}"
                    )
                if current_step > plan.total_steps:
                    raise ValueError(
                        f"Plan cursor {current_step} beyond {plan.total_steps} steps"
                    )
                plan.current_step = current_step

            if error is not _UNSET:
                plan.error = error

            plan.updated_at = datetime.now()
            await self._write(plan, executions)
        return plan.model_copy(deep=True)

    async def list_plans(self) -> list[Plan]:
        """All plans, newest first."""
        plans = []
        for plan_id in await self._plan_ids():
            record = await self._read(plan_id)
            if record is not None:
                plans.append(record[0])
        return sorted(plans, key=lambda p: p.created_at, reverse=True)

    # -- step executions ------------------------------------------------------

    async def create_step_execution(
        self,
        plan_id: str,
        step_index: int,
        tool: str
    ) -> StepExecution:
        """
        Record a new (pending) step execution.

        Raises:
            PlanNotFoundError: If the plan does not exist
            ValueError: If the index is out of range or already recorded
        """
        async with self._lock:
            plan, executions = await self._require(plan_id)
            if not 0 <= step_index < plan.total_steps:
                raise ValueError(
                    f"Step index {step_index} out of range for plan {plan_id} "
                    f"({plan.total_steps} steps)"
                )
            if any(e.step_index == step_index for e in executions):
                raise ValueError(f"Step {step_index} of plan {plan_id} already has an execution")

            execution = StepExecution(plan_id=plan_id, step_index=step_index, tool=tool)
            executions.append(execution)
            await self._write(plan, executions)
        return execution.model_copy(deep=True)

    async def update_step_execution(
        self,
        plan_id: str,
        step_index: int,
        status: StepStatus,
        result: Optional[Any] = None,
        error: Optional[str] = None,
    ) -> StepExecution:
        """
        Move a step execution to a new status.

        ``result`` is kept only for completed executions, ``error`` only for
        failed ones.

        Raises:
            PlanNotFoundError: If the plan or execution does not exist
            InvalidTransitionError: If the status change is not allowed
        """
        async with self._lock:
            plan, executions = await self._require(plan_id)
            execution = next((e for e in executions if e.step_index == step_index), None)
            if execution is None:
                raise PlanNotFoundError(f"No execution for step {step_index} of plan {plan_id}")

            if not can_transition(execution.status, status) or execution.status == status:
                raise InvalidTransitionError(
                    f"Invalid step transition: {execution.status.value} -> {status.value}. "
                    f"Allowed: {[s.value for s in STEP_TRANSITIONS.get(execution.status, [])]}"
                )

            execution.status = status
            execution.result = result if status == StepStatus.COMPLETED else None
            execution.error = error if status == StepStatus.FAILED else None
            execution.updated_at = datetime.now()
            await self._write(plan, executions)
        return execution.model_copy(deep=True)

    async def get_step_executions(self, plan_id: str) -> list[StepExecution]:
        """
        Executions of a plan in step order.

        Raises:
            PlanNotFoundError: If the plan does not exist
        """
        _, executions = await self._require(plan_id)
        return sorted(executions, key=lambda e: e.step_index)

    async def _require(self, plan_id: str) -> tuple[Plan, list[StepExecution]]:
        record = await self._read(plan_id)
        if record is None:
            raise PlanNotFoundError(f"Plan not found: {plan_id}")
        return record


# =============================================================================
# IN-MEMORY STORE
# =============================================================================

class MemoryPlanStore(PlanStore):
    """Keeps everything in dicts. Lost when the process exits."""

    def __init__(self):
        super().__init__()
        self._plans: dict[str, Plan] = {}
        self._executions: dict[str, list[StepExecution]] = {}

    async def _read(self, plan_id: str) -> Optional[tuple[Plan, list[StepExecution]]]:
        plan = self._plans.get(plan_id)
        if plan is None:
            return None
        executions = [e.model_copy(deep=True) for e in self._executions.get(plan_id, [])]
        return plan.model_copy(deep=True), executions

    async def _write(self, plan: Plan, executions: list[StepExecution]) -> None:
        self._plans[plan.id] = plan.model_copy(deep=True)
        self._executions[plan.id] = [e.model_copy(deep=True) for e in executions]

    async def _plan_ids(self) -> list[str]:
        return list(self._plans)


# =============================================================================
# JSON FILE STORE
# =============================================================================

class JsonPlanStore(PlanStore):
    """
    One JSON file per plan.

    Files are written to a temp file in the same directory and renamed into
    place, so a reader never sees a half-written record. Disk IO runs in a
    worker thread.
    """

    def __init__(self, base_path: Optional[Path] = None):
        """
        Args:
            base_path: Directory for plan files.
                      Defaults to ~/.agentichq/plans
        """
        super().__init__()
        self.base_path = Path(base_path or Path.home() / ".agentichq" / "plans").expanduser()
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _plan_path(self, plan_id: str) -> Path:
        """Get the file path for a plan."""
        return self.base_path / f"{plan_id}.json"

    def _load_file(self, path: Path) -> Optional[tuple[Plan, list[StepExecution]]]:
        if not path.exists():
            return None
        with open(path) as f:
            data = json.load(f)
        plan = Plan.model_validate(data["plan"])
        executions = [StepExecution.model_validate(e) for e in data.get("executions", [])]
        return plan, executions

    def _dump_file(self, plan: Plan, executions: list[StepExecution]) -> None:
        data = {
            "plan": plan.model_dump(mode="json"),
            "executions": [e.model_dump(mode="json") for e in executions],
        }
        fd, tmp = tempfile.mkstemp(dir=self.base_path, prefix=f".{plan.id}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2, default=str)
            os.replace(tmp, self._plan_path(plan.id))
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    async def _read(self, plan_id: str) -> Optional[tuple[Plan, list[StepExecution]]]:
        return await asyncio.to_thread(self._load_file, self._plan_path(plan_id))

    async def _write(self, plan: Plan, executions: list[StepExecution]) -> None:
        await asyncio.to_thread(self._dump_file, plan, executions)

    async def _plan_ids(self) -> list[str]:
        return [p.stem for p in self.base_path.glob("*.json")]

    async def list_plans(self) -> list[Plan]:
        """All readable plans, newest first. Corrupt files are skipped."""
        plans = []
        for plan_id in await self._plan_ids():
            try:
                record = await self._read(plan_id)
            except (json.JSONDecodeError, KeyError, ValidationError):
                # Skip invalid plan files
                continue
            if record is not None:
                plans.append(record[0])
        return sorted(plans, key=lambda p: p.created_at, reverse=True)


def create_store(config=None) -> PlanStore:
    """
    Build the store named by the config's storage section.

    Args:
        config: Config instance (defaults are used when None)
    """
    if config is None:
        return MemoryPlanStore()

    backend = config.storage.backend
    if backend == "memory":
        return MemoryPlanStore()
    if backend == "json":
        return JsonPlanStore(config.storage.base_path)
    raise ValueError(f"Unknown storage backend: {backend}")
