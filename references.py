"""
Forward references between plan steps.

WHAT THIS FILE DOES:
-------------------
A planner cannot know what an earlier step will produce, so it writes a
reference instead of a literal:

    {"tool": "FileCreator.createMarkdown", "args": {"filename": "README.md", ...}}
    {"tool": "GitHub.addFile",
     "args": {"repo": "demo", "path": "README.md", "contentRef": 0}}

At run time ``contentRef: 0`` is replaced by ``content: <output of step 0>``.

RULES:
-----
- Any argument named ``<name>Ref`` is a reference; its resolved value is bound
  to ``<name>`` and the ``<name>Ref`` key is dropped. ``contentRef`` is the
  usual one, ``bodyRef`` -> ``body`` works the same way.
- Indices are 0-based, the same numbering as ``StepExecution.step_index``.
  The value may be an int or a string of digits ("0").
- A resolved value replaces a literal of the same name.
- Only steps that already completed can be referenced. Anything else fails
  the step with "unresolved reference: step <n>" before the tool runs.

EXTRACTION:
----------
A step's result becomes a single string like this:

1. a string result is used as-is; a number or bool is str()-ed
2. a mapping: the producing tool's ``output_field`` if it holds a string
3. otherwise the first of content / text / body holding a string
4. otherwise the whole payload as JSON with sorted keys

The same result therefore always yields the same string.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Optional

from schemas import Step


REFERENCE_SUFFIX = "Ref"
FALLBACK_FIELDS = ("content", "text", "body")

# "contentRef", "bodyRef", "fileTextRef"; not a bare "Ref"
_REFERENCE_KEY = re.compile(r"^([a-z][A-Za-z0-9_]*)Ref$")


class UnresolvedReferenceError(ValueError):
    """A step argument references output that does not exist."""


@dataclass
class StepOutput:
    """Result of one completed step, as recorded in the arena."""
    step_index: int
    tool: str
    result: Any
    output_field: Optional[str] = None


class StepOutputs:
    """
    Plan-scoped arena of completed step results.

    One arena is created per plan execution and passed through it, so two
    plans running at the same time can never see each other's outputs.
    """

    def __init__(self):
        self._outputs: dict[int, StepOutput] = {}

    def record(
        self,
        step_index: int,
        tool: str,
        result: Any,
        output_field: Optional[str] = None
    ) -> None:
        self._outputs[step_index] = StepOutput(
            step_index=step_index,
            tool=tool,
            result=result,
            output_field=output_field,
        )

    def get(self, step_index: int) -> Optional[StepOutput]:
        return self._outputs.get(step_index)

    def __contains__(self, step_index: int) -> bool:
        return step_index in self._outputs

    def __len__(self) -> int:
        return len(self._outputs)

    def as_dict(self) -> dict[int, Any]:
        """Copy of step index -> raw result."""
        return {index: out.result for index, out in sorted(self._outputs.items())}


def is_reference_key(key: str) -> bool:
    return bool(_REFERENCE_KEY.match(key))


def target_name(key: str) -> str:
    """'contentRef' -> 'content'."""
    return key[: -len(REFERENCE_SUFFIX)]


def parse_reference(key: str, value: Any) -> int:
    """
    Turn a reference value into a step index.

    Raises:
        UnresolvedReferenceError: If the value is not a non-negative index
    """
    # bool is an int subclass, but "contentRef: true" is a planner mistake
    if isinstance(value, bool):
        raise UnresolvedReferenceError(f"invalid reference: {key}={value!r}")
    if isinstance(value, int):
        if value < 0:
            raise UnresolvedReferenceError(f"invalid reference: {key}={value!r}")
        return value
    # isdigit() also accepts "²", which int() rejects
    if isinstance(value, str) and value.strip().isascii() and value.strip().isdecimal():
        return int(value.strip())
    raise UnresolvedReferenceError(f"invalid reference: {key}={value!r}")


def extract_reference_value(output: StepOutput) -> str:
    """Reduce a step's result to the string substituted into later steps."""
    result = output.result

    if isinstance(result, str):
        return result
    if isinstance(result, (int, float, bool)):
        return str(result)

    if isinstance(result, dict):
        if output.output_field and isinstance(result.get(output.output_field), str):
            return result[output.output_field]
        for field in FALLBACK_FIELDS:
            if isinstance(result.get(field), str):
                return result[field]

    try:
        return json.dumps(result, sort_keys=True, default=str)
    except (TypeError, ValueError) as e:
        raise UnresolvedReferenceError(
            f"unresolved reference: step {output.step_index} result is not serializable ({e})"
        )


def resolve_arguments(step: Step, outputs: StepOutputs) -> dict[str, Any]:
    """
    Build the concrete argument dict for a step.

    Returns a new dict; ``step.args`` is never modified.

    Raises:
        UnresolvedReferenceError: If a reference is malformed or points at a
            step that has not completed (or completed with no result)
    """
    literals: dict[str, Any] = {}
    resolved: dict[str, Any] = {}

    for key, value in step.args.items():
        if not is_reference_key(key):
            literals[key] = value
            continue

        index = parse_reference(key, value)
        output = outputs.get(index)
        if output is None or output.result is None:
            raise UnresolvedReferenceError(f"unresolved reference: step {index}")
        resolved[target_name(key)] = extract_reference_value(output)

    # Resolved values win over literals of the same name
    literals.update(resolved)
    return literals


def find_references(step: Step) -> dict[str, int]:
    """
    Map of target argument -> referenced step index, for display and checks.

    Malformed references are left out; ``resolve_arguments`` reports them.
    """
    refs = {}
    for key, value in step.args.items():
        if not is_reference_key(key):
            continue
        try:
            refs[target_name(key)] = parse_reference(key, value)
        except UnresolvedReferenceError:
            continue
    return refs


def check_forward_references(steps: list[Step]) -> list[str]:
    """
    Static check of a whole plan: every reference must point backwards.

    Returns a list of problems (empty when the plan is fine). The engine does
    not require this to pass; a bad reference simply fails its step at run
    time. Callers can use it to warn before submitting a plan.
    """
    problems = []
    for index, step in enumerate(steps):
        for name, target in find_references(step).items():
            if target >= index:
                problems.append(
                    f"step {index} ({step.tool}): {name}Ref={target} does not point at an earlier step"
                )
    return problems
