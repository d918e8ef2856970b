"""
Relay Debug Log

In-memory record of relay events, grouped per conversation. Used for
debugging agent behaviour: who said what, which tool calls were accepted or
rejected, which tool calls were written as text instead of invoked, and how
work was handed off between agents.
"""

from __future__ import annotations

import threading
from typing import Optional

from agentrelay.protocols.events import AgentEvent, EventType

# Sections of the formatted dump, in display order
DUMP_SECTIONS: list[tuple[str, EventType]] = [
    ("Conversation", EventType.CONVERSATION),
    ("Tool Calls", EventType.TOOL_CALL),
    ("Missed Tool Calls", EventType.TOOL_CALL_MISS),
    ("Handoffs", EventType.HANDOFF),
    ("Narration", EventType.NARRATION),
]


class RelayLog:
    """Thread-safe event log.

    Tools may record from outside the orchestrator's task, so appends and
    reads share a lock.
    """

    def __init__(self, max_events: int = 5000):
        """Initialize the log.

        Args:
            max_events: Oldest events are dropped beyond this many
        """
        self.max_events = max_events
        self._events: list[AgentEvent] = []
        self._lock = threading.Lock()

    def record(self, event: AgentEvent) -> None:
        """Append an event."""
        with self._lock:
            self._events.append(event)
            overflow = len(self._events) - self.max_events
            if overflow > 0:
                del self._events[:overflow]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def events(
        self,
        kind: Optional[EventType] = None,
        conversation_id: Optional[str] = None,
    ) -> list[AgentEvent]:
        """Return events matching the optional kind and conversation filters."""
        with self._lock:
            snapshot = list(self._events)
        return [
            event for event in snapshot
            if (kind is None or event.event_type == kind)
            and (conversation_id is None or event.conversation_id == conversation_id)
        ]

    def conversation_ids(self) -> list[str]:
        """Conversation ids in order of first appearance."""
        seen: dict[str, None] = {}
        for event in self.events():
            if event.conversation_id:
                seen.setdefault(event.conversation_id, None)
        return list(seen)

    def formatted_dump(self, conversation_id: Optional[str] = None) -> str:
        """Render the log as plain text, one block per conversation."""
        ids = [conversation_id] if conversation_id else self.conversation_ids()
        sections = []

        for cid in ids:
            sections.append(f"Conversation {cid[:8]}")
            for title, kind in DUMP_SECTIONS:
                sections.append(
                    self._format_section(title, self.events(kind=kind, conversation_id=cid))
                )

        return "\n\n".join(sections)

    @staticmethod
    def _format_section(title: str, events: list[AgentEvent]) -> str:
        if not events:
            return f"{title}: (none)"
        lines = [
            f"[{event.timestamp.strftime('%H:%M:%S')}] {event.actor}: {event.content}"
            for event in events
        ]
        return f"{title}:\n" + "\n".join(lines)
