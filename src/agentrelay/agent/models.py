"""
Relay State Models

A relay turn groups one user request with the ordered agent responses it
produced, revision responses included. Messages are appended on demand as
each step begins; the invocation that owns a message mutates its text in
place while generating and finalizes it when done.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from agentrelay.agent.directory import AgentIdentity


@dataclass
class AgentMessage:
    """A message produced by an agent during a relay run.

    Attributes:
        agent: Identity of the agent writing this message
        text: Accumulated output (partial while streaming)
        is_complete: Set once the invocation finishes, fails, or is cancelled
        revised_by: Requester name if this message answers a revision request
        message_id: Unique identifier
    """
    agent: AgentIdentity
    text: str = ""
    is_complete: bool = False
    revised_by: Optional[str] = None
    message_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def is_revision(self) -> bool:
        return self.revised_by is not None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "message_id": self.message_id,
            "agent": self.agent.name,
            "agent_id": self.agent.id,
            "emoji": self.agent.emoji,
            "color": self.agent.color,
            "text": self.text,
            "is_complete": self.is_complete,
            "revised_by": self.revised_by,
        }


@dataclass
class RelayTurn:
    """One user request and the agent messages it produced.

    Attributes:
        user_message: The user's request
        agent_messages: Ordered messages, append-only
        turn_id: Unique identifier (doubles as the run id for streaming)
        created_at: When the turn started
    """
    user_message: str
    agent_messages: list[AgentMessage] = field(default_factory=list)
    turn_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=datetime.now)

    def append(self, message: AgentMessage) -> int:
        """Append a message and return its index."""
        self.agent_messages.append(message)
        return len(self.agent_messages) - 1

    @property
    def revision_messages(self) -> list[AgentMessage]:
        return [m for m in self.agent_messages if m.is_revision]

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "turn_id": self.turn_id,
            "user_message": self.user_message,
            "created_at": self.created_at.isoformat(),
            "agent_messages": [m.to_dict() for m in self.agent_messages],
        }
