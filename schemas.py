"""
Pydantic schemas for plans, step executions, tools and progress events.

WHY THIS FILE EXISTS:
--------------------
Every other module passes these records around: the engine mutates Plan and
StepExecution records, the stores persist them, the progress channel fans out
the events, and the CLI / MCP server render them. Keeping them in one place
means there is exactly one definition of "what a plan looks like".

A plan is produced elsewhere (a language model turns a chat message into an
ordered list of tool calls). By the time it reaches us it is just data:

    [
        {"tool": "FileCreator.createMarkdown",
         "args": {"filename": "README.md", "contents": "# Hello"}},
        {"tool": "GitHub.addFile",
         "args": {"repo": "demo", "path": "README.md", "contentRef": 0}},
    ]

Pydantic validates that shape on the way in, so the engine never has to
sniff at raw dicts.

STATE MACHINES:
--------------
Plan:           pending -> running -> completed | failed
StepExecution:  pending -> running -> completed | failed

Terminal states have no outgoing transitions. The tables live at the bottom
of this file and are enforced by the stores.
"""

import json
import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator


def new_plan_id() -> str:
    """Short random identifier for a plan."""
    return str(uuid.uuid4())[:8]


# =============================================================================
# STATUS ENUMS
# =============================================================================

class PlanStatus(str, Enum):
    """Lifecycle status of a plan."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(str, Enum):
    """Lifecycle status of a single step execution."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# =============================================================================
# PLAN SCHEMAS
# =============================================================================

class Step(BaseModel):
    """
    One unit of work within a plan: a tool name plus its arguments.

    The tool name is dotted, provider first:

        Step(tool="GitHub.createRepo", args={"name": "demo"})

    Argument values are either literals or forward references to an earlier
    step's result (see references.py). Steps are read-only at execution time.
    """
    tool: str = Field(
        description="Dotted tool name, e.g. 'GitHub.createRepo'"
    )
    args: dict[str, Any] = Field(
        default_factory=dict,
        description="Argument name -> literal value or forward reference"
    )

    @field_validator("tool")
    @classmethod
    def tool_is_dotted(cls, v: str) -> str:
        """Require 'Provider.operation'."""
        v = v.strip()
        provider, _, operation = v.partition(".")
        if not provider or not operation:
            raise ValueError(f"Tool name must look like 'Provider.operation', got '{v}'")
        return v

    @property
    def provider(self) -> str:
        return self.tool.partition(".")[0]

    @property
    def operation(self) -> str:
        return self.tool.partition(".")[2]


class Plan(BaseModel):
    """
    An ordered list of steps plus its mutable status and cursor.

    The steps are fixed when the plan is created. Only the engine mutates a
    plan afterwards, and only its status, cursor and error.
    """
    id: str = Field(
        default_factory=new_plan_id,
        description="Unique plan identifier, immutable"
    )
    steps: list[Step] = Field(
        description="Ordered steps, fixed at creation"
    )
    status: PlanStatus = Field(
        default=PlanStatus.PENDING,
        description="Current lifecycle status"
    )
    current_step: int = Field(
        default=0,
        ge=0,
        description="Zero-based index of the next step (step count once completed)"
    )
    error: Optional[str] = Field(
        default=None,
        description="Failure reason of the step that failed the plan"
    )
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    @property
    def total_steps(self) -> int:
        """Convenience property for step count."""
        return len(self.steps)

    @property
    def is_terminal(self) -> bool:
        return self.status in (PlanStatus.COMPLETED, PlanStatus.FAILED)


class StepExecution(BaseModel):
    """
    Durable record of one attempted step.

    Identity is (plan_id, step_index). Created just before the step runs and
    updated exactly once to its terminal state; steps are never re-run.
    """
    plan_id: str = Field(description="Plan this execution belongs to")
    step_index: int = Field(ge=0, description="Index of the step in the plan")
    tool: str = Field(description="Tool the step invoked")
    status: StepStatus = Field(
        default=StepStatus.PENDING,
        description="Lifecycle status of this attempt"
    )
    result: Optional[Any] = Field(
        default=None,
        description="Success payload, only when completed"
    )
    error: Optional[str] = Field(
        default=None,
        description="Human-readable failure reason, only when failed"
    )
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)


def parse_steps(data: Any) -> list[Step]:
    """
    Validate a planner's output into a list of steps.

    Accepts either a bare list of step dicts or the planner's envelope
    ``{"steps": [...]}``.
    """
    if isinstance(data, dict):
        data = data.get("steps", [])
    if not isinstance(data, list):
        raise ValueError("Plan must be a list of steps or an object with a 'steps' list")
    return [Step.model_validate(item) for item in data]


# =============================================================================
# TOOL SCHEMAS
# =============================================================================

class ToolParameter(BaseModel):
    """Schema for a single tool parameter."""
    name: str = Field(description="Parameter name")
    type: Literal["string", "integer", "number", "boolean", "object", "array"] = Field(
        description="Parameter type"
    )
    description: str = Field(description="What this parameter does")
    required: bool = Field(default=True, description="Whether this parameter is required")
    default: Optional[Any] = Field(default=None, description="Default value if not required")


class ToolDefinition(BaseModel):
    """
    Definition of an available tool.

    The registry validates every call against this before invoking the
    implementation. ``output_field`` names the field of the tool's result
    that a later step gets when it references this step (e.g. the
    ``content`` of a generated document).
    """
    name: str = Field(description="Dotted tool name, e.g. 'GitHub.addFile'")
    description: str = Field(description="Short description shown to the planner")
    parameters: list[ToolParameter] = Field(
        default_factory=list,
        description="Parameters the tool accepts"
    )
    returns: str = Field(description="What the tool returns")
    output_field: Optional[str] = Field(
        default=None,
        description="Result field substituted into forward references"
    )

    def signature(self) -> str:
        """'GitHub.addFile(repo, path, content)' style one-liner."""
        params = ", ".join(p.name for p in self.parameters)
        return f"{self.name}({params})"


class ToolResult(BaseModel):
    """
    Outcome of invoking a tool.

    Tools report "the operation failed for a reason" as a value, not an
    exception, so the engine can treat it as ordinary control flow.
    """
    success: bool = Field(description="Whether the call succeeded")
    result: Optional[Any] = Field(default=None, description="Success payload")
    error: Optional[str] = Field(default=None, description="Failure reason")

    @classmethod
    def ok(cls, result: Any = None) -> "ToolResult":
        return cls(success=True, result=result)

    @classmethod
    def failure(cls, error: str) -> "ToolResult":
        return cls(success=False, error=error)


# =============================================================================
# PROGRESS EVENTS
# =============================================================================
# Published by the engine on the progress channel. The ``kind`` field tags
# each event so a consumer can decode a JSON stream back into the right type.

class ProgressEvent(BaseModel):
    """Base class for every progress event."""
    kind: str
    plan_id: str
    timestamp: datetime = Field(default_factory=datetime.now)

    @property
    def is_terminal(self) -> bool:
        """True for the last event a plan will ever publish."""
        return self.kind in ("plan_completed", "plan_failed")

    @property
    def sse_event(self) -> str:
        """Event name used on the server-sent-events stream."""
        return "planUpdate" if self.kind.startswith("plan_") else "stepUpdate"

    def to_sse(self) -> str:
        """Render as a server-sent-events frame."""
        return f"event: {self.sse_event}\ndata: {self.model_dump_json()}\n\n"


class PlanStarted(ProgressEvent):
    kind: Literal["plan_started"] = "plan_started"
    total_steps: int


class StepStarted(ProgressEvent):
    kind: Literal["step_started"] = "step_started"
    step_index: int
    step: Step


class StepCompleted(ProgressEvent):
    kind: Literal["step_completed"] = "step_completed"
    step_index: int
    result: Optional[Any] = None


class StepFailed(ProgressEvent):
    kind: Literal["step_failed"] = "step_failed"
    step_index: int
    error: str


class PlanCompleted(ProgressEvent):
    kind: Literal["plan_completed"] = "plan_completed"


class PlanFailed(ProgressEvent):
    kind: Literal["plan_failed"] = "plan_failed"
    error: str


class PlanSnapshot(ProgressEvent):
    """
    Synthetic "where are we now" event.

    Only ever delivered as the first event of a subscription opened while
    the plan is already running, so a late observer does not have to infer
    progress from future events alone.
    """
    kind: Literal["plan_snapshot"] = "plan_snapshot"
    status: PlanStatus
    current_step: int
    total_steps: int


AnyProgressEvent = Annotated[
    Union[
        PlanStarted,
        StepStarted,
        StepCompleted,
        StepFailed,
        PlanCompleted,
        PlanFailed,
        PlanSnapshot,
    ],
    Field(discriminator="kind"),
]


class EventEnvelope(BaseModel):
    """Wrapper used to decode a single serialized event."""
    event: AnyProgressEvent


def decode_event(data: Union[str, dict]) -> ProgressEvent:
    """Decode a JSON event (as produced by ``model_dump_json``) into its type."""
    if isinstance(data, str):
        data = json.loads(data)
    return EventEnvelope.model_validate({"event": data}).event


# =============================================================================
# EXECUTION OUTCOME
# =============================================================================

class ExecutionOutcome(BaseModel):
    """
    What ``ExecutionEngine.execute`` hands back.

    ``outputs`` is a copy of the plan-scoped output arena (step index ->
    result payload) so callers and tests can see exactly what later steps
    could have referenced.
    """
    plan: Plan = Field(description="Final plan record")
    executions: list[StepExecution] = Field(
        default_factory=list,
        description="Step executions in index order"
    )
    outputs: dict[int, Any] = Field(
        default_factory=dict,
        description="Results of completed steps by index"
    )

    @property
    def success(self) -> bool:
        return self.plan.status == PlanStatus.COMPLETED

    @property
    def failed_execution(self) -> Optional[StepExecution]:
        for execution in self.executions:
            if execution.status == StepStatus.FAILED:
                return execution
        return None


# =============================================================================
# STATE MACHINES
# =============================================================================

PLAN_TRANSITIONS = {
    PlanStatus.PENDING: [PlanStatus.RUNNING],
    PlanStatus.RUNNING: [PlanStatus.COMPLETED, PlanStatus.FAILED],
    PlanStatus.COMPLETED: [],
    PlanStatus.FAILED: [],
}

STEP_TRANSITIONS = {
    StepStatus.PENDING: [StepStatus.RUNNING],
    StepStatus.RUNNING: [StepStatus.COMPLETED, StepStatus.FAILED],
    StepStatus.COMPLETED: [],
    StepStatus.FAILED: [],
}


def can_transition(current: Enum, target: Enum) -> bool:
    """
    Check if a status transition is valid.

    Staying in the same status is always allowed (a cursor-only update
    does not change status).
    """
    if current == target:
        return True
    table = PLAN_TRANSITIONS if isinstance(current, PlanStatus) else STEP_TRANSITIONS
    return target in table.get(current, [])
