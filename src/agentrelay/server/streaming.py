"""
Streaming Utilities

This module provides SSE (Server-Sent Events) streaming for relay events.
Clients can subscribe to a relay run and receive real-time updates, with
replay of anything they missed.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncGenerator, Optional

from agentrelay.protocols.events import AgentEvent, StreamMessage

logger = logging.getLogger(__name__)


@dataclass
class RunState:
    """State of a relay run.

    Attributes:
        run_id: Unique run identifier (the relay turn id)
        user_message: The request being relayed
        status: Current status ("pending", "running", "completed", "cancelled", "failed")
        started_at: When the run started
        completed_at: When the run finished
        events: List of events in this run
        result: Final turn state (if finished)
        error: Error message (if failed)
    """
    run_id: str
    user_message: str
    status: str = "pending"
    started_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None
    events: list[AgentEvent] = field(default_factory=list)
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def is_finished(self) -> bool:
        return self.completed_at is not None

    def add_event(self, event: AgentEvent) -> None:
        """Add an event to this run."""
        self.events.append(event)
        if self.status == "pending":
            self.status = "running"

    def complete(self, result: dict[str, Any], cancelled: bool = False) -> None:
        """Mark run as finished."""
        self.status = "cancelled" if cancelled else "completed"
        self.completed_at = datetime.now()
        self.result = result

    def fail(self, error: str) -> None:
        """Mark run as failed."""
        self.status = "failed"
        self.completed_at = datetime.now()
        self.error = error

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "run_id": self.run_id,
            "user_message": self.user_message,
            "status": self.status,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "event_count": len(self.events),
            "result": self.result,
            "error": self.error,
        }


class EventStream:
    """Async event stream for SSE broadcasting.

    Allows multiple clients to subscribe to relay events.
    Events are delivered in order with sequence numbers.
    """

    def __init__(self, run_id: str, keepalive_seconds: float = 30.0):
        """Initialize event stream for a run.

        Args:
            run_id: The run ID this stream is for
            keepalive_seconds: How long a subscriber waits before re-checking
        """
        self.run_id = run_id
        self.keepalive_seconds = keepalive_seconds
        self._sequence = 0
        # None wakes subscribers up when the stream closes
        self._subscribers: list[asyncio.Queue[Optional[StreamMessage]]] = []
        self._events: list[StreamMessage] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def sequence(self) -> int:
        return self._sequence

    async def publish(self, event: AgentEvent) -> None:
        """Publish an event to all subscribers.

        Args:
            event: The event to publish
        """
        if self._closed:
            return

        self._sequence += 1
        message = StreamMessage(
            event=event,
            run_id=self.run_id,
            sequence=self._sequence,
        )

        # Store for late subscribers
        self._events.append(message)

        for queue in self._subscribers:
            queue.put_nowait(message)

    async def subscribe(
        self,
        from_sequence: int = 0,
    ) -> AsyncGenerator[StreamMessage, None]:
        """Subscribe to the event stream.

        Args:
            from_sequence: Start after this sequence number (for replay)

        Yields:
            StreamMessage events
        """
        queue: asyncio.Queue[Optional[StreamMessage]] = asyncio.Queue()
        self._subscribers.append(queue)
        last_sequence = from_sequence

        try:
            # Replay any missed events
            for message in list(self._events):
                if message.sequence > last_sequence:
                    last_sequence = message.sequence
                    yield message

            # Stream new events
            while not self._closed or not queue.empty():
                try:
                    message = await asyncio.wait_for(queue.get(), timeout=self.keepalive_seconds)
                except asyncio.TimeoutError:
                    continue
                if message is None:
                    break
                if message.sequence > last_sequence:
                    last_sequence = message.sequence
                    yield message

        finally:
            self._subscribers.remove(queue)

    def close(self) -> None:
        """Close the stream and wake up subscribers."""
        if self._closed:
            return
        self._closed = True
        for queue in self._subscribers:
            queue.put_nowait(None)


class StreamManager:
    """Manages relay runs and their event streams."""

    def __init__(self, max_runs: int = 100):
        """Initialize stream manager.

        Args:
            max_runs: Maximum number of runs to keep in memory
        """
        self.max_runs = max_runs
        self._runs: dict[str, RunState] = {}
        self._streams: dict[str, EventStream] = {}
        self._lock = asyncio.Lock()

    async def create_run(
        self,
        user_message: str,
        run_id: Optional[str] = None,
    ) -> str:
        """Create a new relay run.

        Args:
            user_message: The request being relayed
            run_id: Optional explicit run ID

        Returns:
            The run ID
        """
        async with self._lock:
            run_id = run_id or str(uuid.uuid4())

            # Evict the oldest run if needed
            if len(self._runs) >= self.max_runs:
                oldest = min(self._runs.values(), key=lambda r: r.started_at)
                self._remove(oldest.run_id)

            self._runs[run_id] = RunState(run_id=run_id, user_message=user_message)
            self._streams[run_id] = EventStream(run_id)

            return run_id

    async def get_run(self, run_id: str) -> Optional[RunState]:
        """Get run state by ID."""
        return self._runs.get(run_id)

    async def get_stream(self, run_id: str) -> Optional[EventStream]:
        """Get event stream by run ID."""
        return self._streams.get(run_id)

    async def publish_event(self, run_id: str, event: AgentEvent) -> None:
        """Publish an event to a run's stream.

        Args:
            run_id: The run ID
            event: The event to publish
        """
        run = self._runs.get(run_id)
        stream = self._streams.get(run_id)

        if run:
            run.add_event(event)
        if stream:
            await stream.publish(event)

    async def complete_run(
        self,
        run_id: str,
        result: dict[str, Any],
        cancelled: bool = False,
    ) -> None:
        """Mark a run as finished and close its stream.

        Args:
            run_id: The run ID
            result: The final turn state
            cancelled: Whether the relay was stopped early
        """
        run = self._runs.get(run_id)
        stream = self._streams.get(run_id)

        if run:
            run.complete(result, cancelled=cancelled)
        if stream:
            stream.close()

    async def fail_run(self, run_id: str, error: str) -> None:
        """Mark a run as failed.

        Args:
            run_id: The run ID
            error: Error message
        """
        run = self._runs.get(run_id)
        stream = self._streams.get(run_id)

        if run:
            run.fail(error)
        if stream:
            stream.close()

    async def cleanup_run(self, run_id: str) -> None:
        """Remove a run from memory.

        Args:
            run_id: The run ID to cleanup
        """
        async with self._lock:
            self._remove(run_id)

    def _remove(self, run_id: str) -> None:
        self._runs.pop(run_id, None)
        stream = self._streams.pop(run_id, None)
        if stream:
            stream.close()

    def list_runs(self) -> list[dict[str, Any]]:
        """List all runs."""
        return [run.to_dict() for run in self._runs.values()]


# Global stream manager instance
_stream_manager: Optional[StreamManager] = None


def get_stream_manager() -> StreamManager:
    """Get the global stream manager instance."""
    global _stream_manager
    if _stream_manager is None:
        _stream_manager = StreamManager()
    return _stream_manager
