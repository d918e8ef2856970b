"""
Event Protocols for Relay Streaming

This module defines typed event schemas for streaming relay state to external
interfaces (UI, debug log, SSE clients). Events are designed to be
JSON-serializable for SSE streaming.

Event Types:
- RUN_START / RUN_END: A relay turn began or finished (or was cancelled)
- HANDOFF: Work passed from one agent to the next
- AGENT_START / AGENT_DELTA / AGENT_END: Progress of a single agent invocation
- CONVERSATION: A user message or a finished agent output
- TOOL_CALL: A capability was invoked (accepted or rejected)
- TOOL_CALL_MISS: The agent wrote a tool call as text instead of invoking it
- REVISION: An out-of-sequence revision step was scheduled
- NARRATION: Orchestrator commentary (retries, downgrades, discarded requests)
- ERROR: An error occurred
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class EventType(str, Enum):
    """Type of relay event."""

    # Debug-log kinds
    CONVERSATION = "conversation"
    TOOL_CALL = "tool_call"
    TOOL_CALL_MISS = "tool_call_miss"
    HANDOFF = "handoff"
    NARRATION = "narration"

    # Progress events
    RUN_START = "run_start"
    RUN_END = "run_end"
    AGENT_START = "agent_start"
    AGENT_DELTA = "agent_delta"
    AGENT_END = "agent_end"
    REVISION = "revision"

    # Status events
    ERROR = "error"


@dataclass
class AgentEvent:
    """Base class for all relay events.

    Attributes:
        event_type: Type of event
        actor: Who produced the event ("User", "System", an agent name, a tool name)
        content: Human-readable description
        conversation_id: Conversation the event belongs to
        turn_id: Relay turn (run) the event belongs to
        data: Event-specific data
        event_id: Unique identifier
        timestamp: When event occurred
        step_idx: Index of the agent message the event concerns
    """
    event_type: EventType
    actor: str = "System"
    content: str = ""
    conversation_id: str = ""
    turn_id: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    timestamp: datetime = field(default_factory=datetime.now)
    step_idx: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "timestamp": self.timestamp.isoformat(),
            "actor": self.actor,
            "content": self.content,
            "conversation_id": self.conversation_id,
            "turn_id": self.turn_id,
            "step_idx": self.step_idx,
            "data": self.data,
        }

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentEvent":
        """Deserialize from dictionary."""
        return cls(
            event_id=data.get("event_id", ""),
            event_type=EventType(data["event_type"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            actor=data.get("actor", "System"),
            content=data.get("content", ""),
            conversation_id=data.get("conversation_id", ""),
            turn_id=data.get("turn_id", ""),
            step_idx=data.get("step_idx", 0),
            data=data.get("data", {}),
        )


@dataclass
class StreamMessage:
    """Wrapper for SSE streaming.

    Attributes:
        event: The relay event
        run_id: Unique run identifier
        sequence: Sequence number in stream
    """
    event: AgentEvent
    run_id: str
    sequence: int

    def to_sse(self) -> str:
        """Format as Server-Sent Event."""
        data = {
            "run_id": self.run_id,
            "sequence": self.sequence,
            **self.event.to_dict(),
        }
        return f"data: {json.dumps(data, default=str)}\n\n"


# =============================================================================
# Factory Functions
# =============================================================================

def create_run_start_event(
    user_message: str,
    agent_names: list[str],
    config: dict[str, Any],
) -> AgentEvent:
    """Create a run start event."""
    return AgentEvent(
        event_type=EventType.RUN_START,
        content="Relay started",
        data={
            "user_message": user_message,
            "agents": agent_names,
            "config": config,
        },
    )


def create_run_end_event(
    cancelled: bool,
    total_messages: int,
    revision_count: int,
    failed_agents: list[str],
) -> AgentEvent:
    """Create a run end event."""
    return AgentEvent(
        event_type=EventType.RUN_END,
        content="Relay cancelled" if cancelled else "Relay finished",
        data={
            "cancelled": cancelled,
            "total_messages": total_messages,
            "revision_count": revision_count,
            "failed_agents": failed_agents,
        },
    )


def create_handoff_event(
    from_agent: str,
    to_agent: str,
    step_idx: int = 0,
) -> AgentEvent:
    """Create a handoff event."""
    return AgentEvent(
        event_type=EventType.HANDOFF,
        content=f"{from_agent} -> {to_agent}",
        step_idx=step_idx,
        data={"from_agent": from_agent, "to_agent": to_agent},
    )


def create_agent_start_event(
    agent_name: str,
    attempt: int,
    tool_names: list[str],
    step_idx: int = 0,
) -> AgentEvent:
    """Create an agent start event (one per generation attempt)."""
    return AgentEvent(
        event_type=EventType.AGENT_START,
        actor=agent_name,
        content=f"{agent_name} attempt {attempt}",
        step_idx=step_idx,
        data={"attempt": attempt, "tools": tool_names},
    )


def create_agent_delta_event(
    agent_name: str,
    text: str,
    step_idx: int = 0,
) -> AgentEvent:
    """Create a streaming progress event carrying the accumulated text."""
    return AgentEvent(
        event_type=EventType.AGENT_DELTA,
        actor=agent_name,
        content=text,
        step_idx=step_idx,
    )


def create_agent_end_event(
    agent_name: str,
    text: str,
    is_fallback: bool = False,
    cancelled: bool = False,
    step_idx: int = 0,
) -> AgentEvent:
    """Create an agent end event with the final output."""
    return AgentEvent(
        event_type=EventType.AGENT_END,
        actor=agent_name,
        content=text,
        step_idx=step_idx,
        data={"is_fallback": is_fallback, "cancelled": cancelled},
    )


def create_revision_event(
    requester_name: str,
    target_name: str,
    revision_request: str,
    revision_count: int,
    step_idx: int = 0,
) -> AgentEvent:
    """Create a revision scheduled event."""
    return AgentEvent(
        event_type=EventType.REVISION,
        actor=requester_name,
        content=f"Revision requested by {requester_name} -> {target_name}",
        step_idx=step_idx,
        data={
            "requester": requester_name,
            "target": target_name,
            "revision_request": revision_request,
            "revision_count": revision_count,
        },
    )


def create_conversation_event(
    actor: str,
    text: str,
    step_idx: int = 0,
) -> AgentEvent:
    """Create a conversation event (user message or finished agent output)."""
    return AgentEvent(
        event_type=EventType.CONVERSATION,
        actor=actor,
        content=text,
        step_idx=step_idx,
    )


def create_tool_call_event(
    tool_name: str,
    content: str,
    accepted: Optional[bool] = None,
    caller: str = "",
) -> AgentEvent:
    """Create a tool call event.

    Args:
        tool_name: Name of the invoked tool (recorded as the actor)
        content: What happened
        accepted: True/False once the outcome is known, None for the raw call
        caller: Agent whose generation invoked the tool
    """
    return AgentEvent(
        event_type=EventType.TOOL_CALL,
        actor=tool_name,
        content=content,
        data={"accepted": accepted, "caller": caller},
    )


def create_tool_call_miss_event(
    agent_name: str,
    line: str,
    step_idx: int = 0,
) -> AgentEvent:
    """Create an event for a tool call written as text instead of invoked."""
    return AgentEvent(
        event_type=EventType.TOOL_CALL_MISS,
        actor=agent_name,
        content=line,
        step_idx=step_idx,
    )


def create_narration_event(
    content: str,
    step_idx: int = 0,
    **data: Any,
) -> AgentEvent:
    """Create a narration event."""
    return AgentEvent(
        event_type=EventType.NARRATION,
        content=content,
        step_idx=step_idx,
        data=dict(data),
    )


def create_error_event(
    error: str,
    error_type: str = "unknown",
    actor: str = "System",
    step_idx: int = 0,
) -> AgentEvent:
    """Create an error event."""
    return AgentEvent(
        event_type=EventType.ERROR,
        actor=actor,
        content=error,
        step_idx=step_idx,
        data={
            "error": error,
            "error_type": error_type,
        },
    )


# =============================================================================
# Missed Tool Call Detection
# =============================================================================

MISSED_TOOL_CALL_MARKERS = (
    "tool_call",
    "call_tool",
    "tool:",
    "requestrevisiontool",
    "request_revision",
    "function:",
)


def detect_missed_tool_calls(text: str) -> list[str]:
    """Find lines where an agent wrote a tool call instead of invoking it.

    Models sometimes describe a call in prose ("tool: RequestRevision ...")
    rather than emitting a real tool call. These lines are surfaced in the
    debug log so prompt authors can spot the pattern.

    Args:
        text: Agent output text

    Returns:
        The trimmed offending lines, in order
    """
    matches = []
    for line in text.split("\n"):
        stripped = line.strip()
        if not stripped:
            continue
        lower = stripped.lower()
        if any(marker in lower for marker in MISSED_TOOL_CALL_MARKERS):
            matches.append(stripped)
    return matches
