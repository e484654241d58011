"""
Plan execution engine for AgenticHQ.

WHAT THIS FILE DOES:
-------------------
Takes an ordered list of steps (tool name + arguments) and runs them one
after another against the registered tools, recording every attempt and
publishing progress as it goes.

HOW IT WORKS:
------------
1. ToolRegistry: What tools exist, their typed parameters, and how to call them
2. ExecutionEngine: Drives one plan through its steps
3. run_plan: One-call helper for scripts and tests

EXECUTION FLOW:
--------------
    create_plan(steps)          -> Plan (pending), persisted
           │
           ▼
    execute(plan_id)            -> Plan running, PlanStarted
    For each step, in order:
    ├── StepStarted, execution record (running)
    ├── Resolve contentRef-style references against earlier outputs
    ├── Invoke the tool through the registry
    ├── Success: record result, StepCompleted, advance cursor
    └── Failure: record reason, StepFailed, plan failed, PlanFailed, stop
           │
           ▼
    Plan completed, PlanCompleted -> ExecutionOutcome

A failed step ends the plan. There is no retry, no skip and no undo of
earlier steps' side effects.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Union

from schemas import (
    # Plan schemas
    Plan,
    PlanStatus,
    Step,
    StepStatus,
    StepExecution,
    # Tool schemas
    ToolDefinition,
    ToolResult,
    # Progress events
    ProgressEvent,
    PlanStarted,
    StepStarted,
    StepCompleted,
    StepFailed,
    PlanCompleted,
    PlanFailed,
    PlanSnapshot,
    ExecutionOutcome,
)
from references import StepOutputs, UnresolvedReferenceError, resolve_arguments
from progress import ProgressChannel, Subscription
from storage import MemoryPlanStore, PlanStore

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 500

# Python type(s) accepted for each declared parameter type
_PARAM_TYPES = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "object": (dict,),
    "array": (list, tuple),
}


# =============================================================================
# SECTION 1: TOOL REGISTRY
# =============================================================================

class ToolRegistry:
    """
    Registry of available tools.

    WHY THIS EXISTS:
    ----------------
    The engine only knows tool names. This registry:
    1. Stores tool definitions (name, description, typed parameters)
    2. Validates arguments before anything runs
    3. Routes calls to the correct implementation
    4. Describes the catalogue for a planner or a UI

    Example usage:
        registry = ToolRegistry()
        registry.register(add_file_def, github.add_file)

        result = await registry.invoke("GitHub.addFile", {"repo": "demo", ...})

    Implementations are async (or plain) callables taking the parameters as
    keyword arguments. They return a ToolResult, or any other value which is
    taken as a successful result. Exceptions they raise are NOT caught here;
    the engine decides what an exception means for a plan.
    """

    def __init__(self):
        self._tools: dict[str, ToolDefinition] = {}
        self._implementations: dict[str, Callable[..., Any]] = {}

    def register(self, definition: ToolDefinition, implementation: Callable[..., Any]) -> None:
        """
        Register a tool with its implementation.

        Args:
            definition: ToolDefinition describing the tool
            implementation: Function that performs the tool's action
        """
        if definition.name in self._tools:
            raise ValueError(f"Tool already registered: {definition.name}")
        self._tools[definition.name] = definition
        self._implementations[definition.name] = implementation

    def get_tool(self, name: str) -> Optional[ToolDefinition]:
        """Get a tool definition by name."""
        return self._tools.get(name)

    def list_tools(self) -> list[ToolDefinition]:
        """Get all registered tools."""
        return list(self._tools.values())

    def output_field(self, name: str) -> Optional[str]:
        """Result field a reference to this tool's output should use."""
        tool = self._tools.get(name)
        return tool.output_field if tool else None

    def validate_call(self, name: str, args: dict[str, Any]) -> tuple[bool, Optional[str]]:
        """
        Validate arguments against a tool's definition.

        Returns:
            (is_valid, error_message) - error_message is None if valid
        """
        tool = self._tools.get(name)
        if not tool:
            return False, f"Unknown tool: {name}"

        # Check required parameters
        for param in tool.parameters:
            if param.required and args.get(param.name) is None:
                return False, f"Missing required parameter: {param.name}"

        # Check for unknown parameters and primitive types
        params = {p.name: p for p in tool.parameters}
        for key, value in args.items():
            param = params.get(key)
            if param is None:
                return False, f"Unknown parameter: {key}"
            if value is None:
                continue
            expected = _PARAM_TYPES[param.type]
            # bool is an int, but true is not a valid integer argument
            if isinstance(value, bool) and bool not in expected:
                return False, f"Parameter '{key}' must be {param.type}, got boolean"
            if not isinstance(value, expected):
                return False, f"Parameter '{key}' must be {param.type}, got {type(value).__name__}"

        return True, None

    async def invoke(self, name: str, args: dict[str, Any]) -> ToolResult:
        """
        Call a tool with already-resolved arguments.

        Unknown tools and invalid arguments come back as failure results.

        Returns:
            ToolResult with success/failure and payload
        """
        valid, error = self.validate_call(name, args)
        if not valid:
            return ToolResult.failure(error)

        impl = self._implementations.get(name)
        if impl is None:
            return ToolResult.failure(f"No implementation for tool: {name}")

        # Fill in declared defaults for omitted optional parameters
        call_args = dict(args)
        for param in self._tools[name].parameters:
            if param.name not in call_args and param.default is not None:
                call_args[param.name] = param.default

        output = impl(**call_args)
        if inspect.isawaitable(output):
            output = await output

        if isinstance(output, ToolResult):
            return output
        return ToolResult.ok(output)

    def describe_tools(self) -> list[str]:
        """
        One line per tool, e.g.

            GitHub.addFile(repo, path, content, message) - Add a file to a repository
        """
        return [f"{tool.signature()} - {tool.description}" for tool in self._tools.values()]

    def get_tools_prompt(self) -> str:
        """
        Generate a detailed description of all available tools.

        Suitable for including in a planner's system prompt.
        """
        lines = ["Available tools:\n"]

        for tool in self._tools.values():
            lines.append(f"## {tool.name}")
            lines.append(f"Description: {tool.description}")
            lines.append(f"Returns: {tool.returns}")
            if tool.output_field:
                lines.append(f"Referenced output: {tool.output_field}")
            lines.append("Parameters:")
            for param in tool.parameters:
                required = "(required)" if param.required else "(optional)"
                default = f" [default: {param.default}]" if param.default is not None else ""
                lines.append(f"  - {param.name} ({param.type}) {required}: {param.description}{default}")
            lines.append("")

        lines.append(
            "To use an earlier step's output as an argument, pass <name>Ref with the "
            "0-based index of that step, e.g. \"contentRef\": 0."
        )
        return "\n".join(lines)


# =============================================================================
# SECTION 2: EXECUTION ENGINE
# =============================================================================

def _error_message(exc: BaseException, tool: str) -> str:
    """Short reason for an unexpected exception: no traceback, no type name."""
    message = str(exc).strip()
    if not message:
        return f"unexpected error in {tool}"
    return message[:MAX_ERROR_LENGTH]


class ExecutionEngine:
    """
    Runs plans step by step.

    This is the central coordinator that:
    1. Creates and persists plans
    2. Runs each step in order, stopping at the first failure
    3. Resolves references between steps
    4. Records every attempt in the store
    5. Publishes progress on the channel

    Usage:
        engine = ExecutionEngine(registry, store=JsonPlanStore())
        plan = await engine.create_plan(steps)
        outcome = await engine.execute(plan.id)

        # Or in the background:
        plan, task = await engine.start(steps)
        async with await engine.watch(plan.id) as sub:
            async for event in sub:
                ...
        outcome = await task

    Several plans can run at once on the same engine; each has its own
    reference arena and they share nothing but the store and channel.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        store: Optional[PlanStore] = None,
        channel: Optional[ProgressChannel] = None
    ):
        """
        Initialize the execution engine.

        Args:
            registry: Tools steps may call
            store: Where plans and executions are recorded (in memory if None)
            channel: Where progress is published (a private one if None)
        """
        self.registry = registry
        self.store = store or MemoryPlanStore()
        self.channel = channel or ProgressChannel()

        # plan id -> latest in-memory plan record, while the plan is running
        self._running: dict[str, Plan] = {}
        self._tasks: set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # Plans
    # -------------------------------------------------------------------------

    async def create_plan(self, steps: list[Union[Step, dict]]) -> Plan:
        """
        Persist a new pending plan.

        Raises:
            ValueError: If there are no steps
        """
        if not steps:
            raise ValueError("A plan needs at least one step")
        parsed = [s if isinstance(s, Step) else Step.model_validate(s) for s in steps]
        plan = await self.store.create_plan(Plan(steps=parsed))
        logger.info(f"Created plan {plan.id} with {plan.total_steps} steps")
        return plan

    async def get_plan(self, plan_id: str) -> Plan:
        return await self.store.get_plan(plan_id)

    async def get_executions(self, plan_id: str) -> list[StepExecution]:
        return await self.store.get_step_executions(plan_id)

    async def get_status(self, plan_id: str) -> dict:
        """Plan plus its executions in step order, JSON-ready."""
        plan = await self.store.get_plan(plan_id)
        executions = await self.store.get_step_executions(plan_id)
        return {
            **plan.model_dump(mode="json"),
            "executions": [e.model_dump(mode="json") for e in executions],
        }

    def is_running(self, plan_id: str) -> bool:
        return plan_id in self._running

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def execute(
        self,
        plan_id: str,
        steps: Optional[list[Union[Step, dict]]] = None
    ) -> ExecutionOutcome:
        """
        Run a pending plan to completion or first failure.

        Args:
            plan_id: Plan created with create_plan
            steps: The plan's steps; must match the stored ones if given

        Returns:
            ExecutionOutcome with the final plan, executions and outputs

        Raises:
            ValueError: If the steps are empty or differ from the stored plan,
                or the plan is not pending
            PlanNotFoundError: If the plan does not exist
            Any store error, unchanged; the plan may then be left running
        """
        plan = await self.store.get_plan(plan_id)
        steps = self._check_steps(plan, steps)

        if plan_id in self._running:
            raise ValueError(f"Plan {plan_id} is already running")
        if plan.status != PlanStatus.PENDING:
            raise ValueError(
                f"Plan {plan_id} is {plan.status.value}; only pending plans can be executed"
            )

        self._running[plan_id] = plan
        try:
            return await self._run(plan, steps)
        except Exception:
            logger.exception(f"Plan {plan_id} aborted by an internal error")
            raise
        finally:
            self._running.pop(plan_id, None)

    async def _run(self, plan: Plan, steps: list[Step]) -> ExecutionOutcome:
        plan_id = plan.id
        outputs = StepOutputs()

        plan = await self.store.update_plan(plan_id, status=PlanStatus.RUNNING)
        self._running[plan_id] = plan
        logger.info(f"Plan {plan_id} started ({len(steps)} steps)")
        self._publish(PlanStarted(plan_id=plan_id, total_steps=len(steps)))

        for index, step in enumerate(steps):
            self._publish(StepStarted(plan_id=plan_id, step_index=index, step=step))
            await self.store.create_step_execution(plan_id, index, step.tool)
            await self.store.update_step_execution(plan_id, index, StepStatus.RUNNING)

            result = await self._run_step(step, outputs)

            if not result.success:
                error = (result.error or f"{step.tool} failed")[:MAX_ERROR_LENGTH]
                logger.warning(f"Plan {plan_id} step {index} ({step.tool}) failed: {error}")
                await self.store.update_step_execution(
                    plan_id, index, StepStatus.FAILED, error=error
                )
                self._publish(StepFailed(plan_id=plan_id, step_index=index, error=error))
                plan = await self.store.update_plan(
                    plan_id, status=PlanStatus.FAILED, current_step=index, error=error
                )
                self._publish(PlanFailed(plan_id=plan_id, error=error))
                return await self._outcome(plan, outputs)

            await self.store.update_step_execution(
                plan_id, index, StepStatus.COMPLETED, result=result.result
            )
            outputs.record(index, step.tool, result.result, self.registry.output_field(step.tool))
            logger.info(f"Plan {plan_id} step {index} ({step.tool}) completed")
            # Snapshots taken after StepCompleted must already count this step
            self._running[plan_id] = plan.model_copy(update={"current_step": index + 1})
            self._publish(StepCompleted(plan_id=plan_id, step_index=index, result=result.result))

            plan = await self.store.update_plan(plan_id, current_step=index + 1)
            self._running[plan_id] = plan

        plan = await self.store.update_plan(plan_id, status=PlanStatus.COMPLETED)
        logger.info(f"Plan {plan_id} completed")
        self._publish(PlanCompleted(plan_id=plan_id))
        return await self._outcome(plan, outputs)

    async def _run_step(self, step: Step, outputs: StepOutputs) -> ToolResult:
        """
        Resolve and invoke one step.

        Everything that can go wrong inside a step comes back as a failure
        result, so the caller has a single failure path.
        """
        try:
            args = resolve_arguments(step, outputs)
        except UnresolvedReferenceError as e:
            return ToolResult.failure(str(e))
        except Exception as e:
            logger.debug(f"Resolving arguments for {step.tool} raised", exc_info=True)
            return ToolResult.failure(_error_message(e, step.tool))

        try:
            return await self.registry.invoke(step.tool, args)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug(f"{step.tool} raised", exc_info=True)
            return ToolResult.failure(_error_message(e, step.tool))

    async def _outcome(self, plan: Plan, outputs: StepOutputs) -> ExecutionOutcome:
        executions = await self.store.get_step_executions(plan.id)
        return ExecutionOutcome(plan=plan, executions=executions, outputs=outputs.as_dict())

    def _check_steps(self, plan: Plan, steps: Optional[list[Union[Step, dict]]]) -> list[Step]:
        if steps is None:
            steps = plan.steps
        parsed = [s if isinstance(s, Step) else Step.model_validate(s) for s in steps]
        if not parsed:
            raise ValueError(f"Plan {plan.id} has no steps to execute")
        if [s.model_dump() for s in parsed] != [s.model_dump() for s in plan.steps]:
            raise ValueError(f"Steps do not match the stored steps of plan {plan.id}")
        return parsed

    def _publish(self, event: ProgressEvent) -> None:
        self.channel.publish(event)

    # -------------------------------------------------------------------------
    # Background runs and observers
    # -------------------------------------------------------------------------

    async def start(self, steps: list[Union[Step, dict]]) -> tuple[Plan, asyncio.Task]:
        """
        Create a plan and start executing it in a task.

        The caller decides whether to await the task. It resolves to the
        ExecutionOutcome (or raises whatever execute raised).
        """
        plan = await self.create_plan(steps)
        task = asyncio.create_task(self.execute(plan.id), name=f"plan-{plan.id}")
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return plan, task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background run {task.get_name()} failed: {task.exception()}")

    async def wait_all(self) -> None:
        """Wait for every plan started with start() to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def watch(self, plan_id: str) -> Subscription:
        """
        Subscribe to a plan's progress.

        - Running plan: the first event is a PlanSnapshot of where it is now,
          followed by everything published from then on.
        - Finished plan: a single PlanSnapshot, then the subscription ends.
        - Pending plan: events from PlanStarted onwards.

        Raises:
            PlanNotFoundError: If the plan does not exist
        """
        if plan_id not in self._running:
            await self.store.get_plan(plan_id)
        # No await between this check and subscribing: the snapshot and the
        # subscription must agree
        running = self._running.get(plan_id)
        if running is not None:
            return self.channel.subscribe(plan_id, initial=self._snapshot(running))

        sub = self.channel.subscribe(plan_id)
        # Read again now that nothing can be missed; the plan may have
        # finished while it was being looked up
        plan = await self.store.get_plan(plan_id)
        if plan.is_terminal:
            sub._offer(self._snapshot(plan))
            sub.finish()
        return sub

    def _snapshot(self, plan: Plan) -> PlanSnapshot:
        return PlanSnapshot(
            plan_id=plan.id,
            status=plan.status,
            current_step=plan.current_step,
            total_steps=plan.total_steps,
        )


# =============================================================================
# SECTION 3: CONVENIENCE FUNCTIONS
# =============================================================================

async def run_plan(
    steps: list[Union[Step, dict]],
    registry: ToolRegistry,
    store: Optional[PlanStore] = None,
    on_event: Optional[Callable[[ProgressEvent], Union[None, Awaitable[None]]]] = None
) -> ExecutionOutcome:
    """
    Create and execute a plan in one call.

    Args:
        steps: Steps to run
        registry: Tools available to the steps
        store: Where to record the run (in memory if None)
        on_event: Optional callback for every progress event

    Returns:
        ExecutionOutcome of the run
    """
    engine = ExecutionEngine(registry, store=store)
    plan = await engine.create_plan(steps)

    if on_event is None:
        return await engine.execute(plan.id)

    sub = await engine.watch(plan.id)
    task = asyncio.create_task(engine.execute(plan.id))
    # Stop iterating even if the run dies before its terminal event
    task.add_done_callback(lambda _: sub.finish())
    try:
        async for event in sub:
            maybe = on_event(event)
            if inspect.isawaitable(maybe):
                await maybe
    finally:
        sub.close()
    return await task
