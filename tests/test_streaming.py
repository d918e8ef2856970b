"""
Tests for SSE streaming utilities.
"""

import asyncio

import pytest

from agentrelay.protocols.events import create_narration_event
from agentrelay.server.streaming import EventStream, RunState, StreamManager


async def collect(stream, **kwargs):
    return [message async for message in stream.subscribe(**kwargs)]


class TestRunState:
    """Tests for run state transitions."""

    def test_lifecycle(self):
        run = RunState(run_id="r1", user_message="hi")
        assert run.status == "pending"

        run.add_event(create_narration_event("started"))
        assert run.status == "running"

        run.complete({"turn_id": "r1"})
        assert run.status == "completed"
        assert run.is_finished
        assert run.to_dict()["event_count"] == 1

    def test_cancelled(self):
        run = RunState(run_id="r1", user_message="hi")
        run.complete({}, cancelled=True)
        assert run.status == "cancelled"

    def test_fail(self):
        run = RunState(run_id="r1", user_message="hi")
        run.fail("boom")
        assert run.status == "failed"
        assert run.error == "boom"


class TestEventStream:
    """Tests for publish/subscribe with replay."""

    @pytest.mark.asyncio
    async def test_replay_after_close(self):
        """A late subscriber gets every event, then the stream ends."""
        stream = EventStream("r1")
        for i in range(3):
            await stream.publish(create_narration_event(f"n{i}"))
        stream.close()

        messages = await collect(stream)

        assert [m.sequence for m in messages] == [1, 2, 3]
        assert [m.event.content for m in messages] == ["n0", "n1", "n2"]

    @pytest.mark.asyncio
    async def test_from_sequence(self):
        stream = EventStream("r1")
        for i in range(3):
            await stream.publish(create_narration_event(f"n{i}"))
        stream.close()

        messages = await collect(stream, from_sequence=2)

        assert [m.sequence for m in messages] == [3]

    @pytest.mark.asyncio
    async def test_live_subscriber(self):
        """A subscriber receives replayed and live events in order."""
        stream = EventStream("r1")
        await stream.publish(create_narration_event("before"))

        task = asyncio.create_task(collect(stream))
        await asyncio.sleep(0.01)
        await stream.publish(create_narration_event("after"))
        stream.close()

        messages = await asyncio.wait_for(task, timeout=1.0)
        assert [m.event.content for m in messages] == ["before", "after"]

    @pytest.mark.asyncio
    async def test_publish_after_close_is_ignored(self):
        stream = EventStream("r1")
        stream.close()
        await stream.publish(create_narration_event("late"))

        assert stream.sequence == 0
        assert await collect(stream) == []


class TestStreamManager:
    """Tests for run bookkeeping."""

    @pytest.mark.asyncio
    async def test_create_and_complete(self):
        manager = StreamManager()
        run_id = await manager.create_run("hello", run_id="run-1")

        await manager.publish_event(run_id, create_narration_event("x"))
        await manager.complete_run(run_id, {"turn_id": run_id})

        run = await manager.get_run(run_id)
        stream = await manager.get_stream(run_id)
        assert run.status == "completed"
        assert stream.closed
        assert manager.list_runs()[0]["run_id"] == "run-1"

    @pytest.mark.asyncio
    async def test_evicts_oldest(self):
        """Creating past max_runs drops the oldest run."""
        manager = StreamManager(max_runs=2)
        first = await manager.create_run("one")
        await manager.create_run("two")
        await manager.create_run("three")

        assert await manager.get_run(first) is None
        assert len(manager.list_runs()) == 2

    @pytest.mark.asyncio
    async def test_fail_and_cleanup(self):
        manager = StreamManager()
        run_id = await manager.create_run("hello")

        await manager.fail_run(run_id, "boom")
        assert (await manager.get_run(run_id)).status == "failed"

        await manager.cleanup_run(run_id)
        assert await manager.get_run(run_id) is None
        assert await manager.get_stream(run_id) is None

    @pytest.mark.asyncio
    async def test_unknown_run_is_ignored(self):
        manager = StreamManager()
        await manager.publish_event("missing", create_narration_event("x"))
        await manager.complete_run("missing", {})
        assert manager.list_runs() == []
