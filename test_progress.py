"""
Progress Channel Tests

Test list:
1. test_events_in_order - Subscribers see a plan's events in publish order
2. test_plans_do_not_mix - Subscribers only see their own plan
3. test_full_queue_drops - Slow subscriber drops, terminal still arrives
4. test_close_and_timeout - Closing and idle timeouts end iteration
5. test_event_encoding - SSE frames and decoding
"""

import asyncio
import json
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent))

from progress import ProgressChannel
from schemas import (
    PlanCompleted,
    PlanFailed,
    PlanSnapshot,
    PlanStarted,
    PlanStatus,
    Step,
    StepCompleted,
    StepStarted,
    decode_event,
)


def lifecycle(plan_id: str) -> list:
    """Events of a one-step plan that succeeds."""
    return [
        PlanStarted(plan_id=plan_id, total_steps=1),
        StepStarted(plan_id=plan_id, step_index=0, step=Step(tool="Docs.create", args={"name": "a"})),
        StepCompleted(plan_id=plan_id, step_index=0, result={"content": "a"}),
        PlanCompleted(plan_id=plan_id),
    ]


# =============================================================================
# TEST 1/2: Ordering And Isolation
# =============================================================================

@pytest.mark.asyncio
async def test_events_in_order():
    """
    Test 1: Publish order is delivery order.

    Verifies:
    - Two subscribers both get every event, in order
    - Iteration ends after the terminal event
    - Subscribers are removed once the plan finished
    """
    channel = ProgressChannel()
    first = channel.subscribe("p1")
    second = channel.subscribe("p1")
    assert channel.subscriber_count("p1") == 2

    for event in lifecycle("p1"):
        assert channel.publish(event) == 2

    expected = ["plan_started", "step_started", "step_completed", "plan_completed"]
    assert [e.kind async for e in first] == expected
    assert [e.kind async for e in second] == expected
    assert channel.subscriber_count("p1") == 0
    assert first.closed

    # No subscribers, nobody to deliver to
    assert channel.publish(PlanStarted(plan_id="p1", total_steps=1)) == 0

    print("✓ Test 1 passed: Events delivered in order")


@pytest.mark.asyncio
async def test_plans_do_not_mix():
    """
    Test 2: Events are routed by plan id.

    Verifies:
    - A subscriber to p1 never sees p2's events
    - An initial event is delivered before anything published later
    """
    channel = ProgressChannel()
    snapshot = PlanSnapshot(plan_id="p1", status=PlanStatus.RUNNING, current_step=1, total_steps=3)
    sub1 = channel.subscribe("p1", initial=snapshot)
    sub2 = channel.subscribe("p2")

    channel.publish(PlanFailed(plan_id="p2", error="boom"))
    channel.publish(PlanCompleted(plan_id="p1"))

    events1 = [e async for e in sub1]
    events2 = [e async for e in sub2]

    assert [e.kind for e in events1] == ["plan_snapshot", "plan_completed"]
    assert [e.kind for e in events2] == ["plan_failed"]
    assert events2[0].error == "boom"

    print("✓ Test 2 passed: Plans stay separate")


# =============================================================================
# TEST 3: Backpressure
# =============================================================================

@pytest.mark.asyncio
async def test_full_queue_drops():
    """
    Test 3: A subscriber that does not read.

    Verifies:
    - publish never blocks; extra events are dropped and counted
    - Other subscribers are unaffected
    - The terminal event still arrives, evicting the oldest queued event
    """
    channel = ProgressChannel(queue_size=2)
    slow = channel.subscribe("p1")

    events = lifecycle("p1")
    for event in events[:3]:
        channel.publish(event)
    assert slow.dropped == 1

    fast = channel.subscribe("p1")
    channel.publish(events[3])

    received = [e.kind async for e in slow]
    assert received == ["step_started", "plan_completed"]
    assert slow.dropped == 2

    assert [e.kind async for e in fast] == ["plan_completed"]
    assert fast.dropped == 0

    print("✓ Test 3 passed: Full queues drop without blocking")


# =============================================================================
# TEST 4: Ending A Subscription
# =============================================================================

@pytest.mark.asyncio
async def test_close_and_timeout():
    """
    Test 4: Closing and idle timeouts.

    Verifies:
    - close() wakes a reader blocked in next()
    - events(timeout) stops after the idle window and says so
    - Leaving the context manager unsubscribes
    """
    channel = ProgressChannel()

    sub = channel.subscribe("p1")
    reader = asyncio.create_task(sub.next())
    await asyncio.sleep(0)
    sub.close()
    assert await asyncio.wait_for(reader, timeout=1) is None
    assert channel.subscriber_count("p1") == 0

    sub = channel.subscribe("p1")
    channel.publish(PlanStarted(plan_id="p1", total_steps=2))
    seen = [e.kind async for e in sub.events(timeout=0.05)]
    assert seen == ["plan_started"]
    assert sub.timed_out
    assert sub.closed

    async with channel.subscribe("p2") as sub:
        assert channel.subscriber_count("p2") == 1
    assert channel.subscriber_count("p2") == 0

    # finish() lets queued events through, then ends
    sub = channel.subscribe("p3")
    channel.publish(PlanStarted(plan_id="p3", total_steps=1))
    sub.finish()
    assert [e.kind async for e in sub] == ["plan_started"]

    print("✓ Test 4 passed: Subscriptions end cleanly")


# =============================================================================
# TEST 5: Encoding
# =============================================================================

def test_event_encoding():
    """
    Test 5: Events on the wire.

    Verifies:
    - Plan events are 'planUpdate' frames, step events 'stepUpdate'
    - A frame's data decodes back to the same event type
    """
    completed = StepCompleted(plan_id="p1", step_index=0, result={"html_url": "u"})
    frame = completed.to_sse()

    assert frame.startswith("event: stepUpdate\ndata: ")
    assert frame.endswith("\n\n")
    data = json.loads(frame.split("data: ", 1)[1])
    assert data["kind"] == "step_completed"
    assert data["plan_id"] == "p1"

    decoded = decode_event(data)
    assert isinstance(decoded, StepCompleted)
    assert decoded.result == {"html_url": "u"}

    failed = PlanFailed(plan_id="p1", error="invalid recipient")
    assert failed.to_sse().startswith("event: planUpdate\n")
    assert failed.is_terminal
    assert not completed.is_terminal

    decoded = decode_event(failed.model_dump_json())
    assert isinstance(decoded, PlanFailed)
    assert decoded.error == "invalid recipient"

    print("✓ Test 5 passed: Events encode for SSE")
