"""
Revision Requests

An agent can ask an agent earlier in the relay to revise its output. The
request travels through two pieces:

- ``RequestRevisionTool``: the capability exposed to the model. It validates
  ``target | instruction`` and answers in-band with either a confirmation or
  an ``ERROR:`` message the model can react to.
- ``RevisionMailbox``: a lock-guarded single slot. The tool writes into it
  while the model is generating (possibly from another task or thread); the
  orchestrator drains it once the agent's generation has finished.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

from pydantic import BaseModel, Field

from agentrelay.protocols.events import AgentEvent, create_tool_call_event
from agentrelay.tools.base import Tool

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RevisionRequest:
    """A pending revision request.

    Attributes:
        requester_name: Agent that asked for the revision
        target_agent_name: Agent asked to revise (as typed by the requester)
        revision_request: Free-text instruction
    """
    requester_name: str
    target_agent_name: str
    revision_request: str

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "requester_name": self.requester_name,
            "target_agent_name": self.target_agent_name,
            "revision_request": self.revision_request,
        }


class RevisionMailbox:
    """Single-slot handoff for revision requests.

    At most one request is accepted per generation attempt: after a
    successful ``try_set`` every further call fails until
    ``reset_for_attempt`` runs, no matter how often the model calls the tool.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._pending: Optional[RevisionRequest] = None
        self._requested_this_attempt = False

    def reset_for_attempt(self) -> None:
        """Clear the per-attempt flag. Call before every attempt, retries included."""
        with self._lock:
            self._requested_this_attempt = False

    def try_set(
        self,
        requester_name: str,
        target_agent_name: str,
        revision_request: str,
    ) -> bool:
        """Store a request unless one was already accepted this attempt.

        Returns:
            True if stored, False if rejected as a duplicate
        """
        with self._lock:
            if self._requested_this_attempt:
                return False
            self._pending = RevisionRequest(
                requester_name=requester_name,
                target_agent_name=target_agent_name,
                revision_request=revision_request,
            )
            self._requested_this_attempt = True
            return True

    def consume(self) -> Optional[RevisionRequest]:
        """Atomically take the pending request, leaving the slot empty."""
        with self._lock:
            pending, self._pending = self._pending, None
            return pending

    @property
    def has_pending(self) -> bool:
        with self._lock:
            return self._pending is not None


class RequestRevisionTool(Tool):
    """Lets an agent request a revision from a different, earlier agent.

    Example: a reviewer finds a bug and calls the tool with
    ``"Coder | Handle empty input in parse_rows"``. Once the reviewer has
    finished, the orchestrator loops back to the coder with that request.
    """

    name = "RequestRevision"

    class Arguments(BaseModel):
        request: str = Field(
            description=(
                "Format: <target agent name> | <revision request>. "
                "Example: Carmen | Handle null input in updatePhysics."
            ),
        )

    def __init__(
        self,
        known_agent_names: Sequence[str],
        mailbox: RevisionMailbox,
        calling_agent_name: str,
        eligible_target_names: Sequence[str],
        on_event: Optional[Callable[[AgentEvent], None]] = None,
    ):
        """Initialize the tool for one generation attempt.

        Args:
            known_agent_names: Every agent in the directory
            mailbox: Shared mailbox the orchestrator drains
            calling_agent_name: Agent whose session carries this tool
            eligible_target_names: Agents that already produced output this turn
            on_event: Optional sink for tool call events
        """
        self.known_agent_names = list(known_agent_names)
        self.mailbox = mailbox
        self.calling_agent_name = calling_agent_name
        self.eligible_target_names = list(eligible_target_names)
        self.on_event = on_event

    @property
    def description(self) -> str:
        caller = self.calling_agent_name.lower()
        others = [n for n in self.eligible_target_names if n.lower() != caller]
        targets = ", ".join(others) if others else "(none yet)"
        return (
            f"Request a revision from a DIFFERENT agent in the relay. You are {self.calling_agent_name}.\n\n"
            "IMPORTANT: Call this tool ONLY ONCE per response. Do not call it multiple times.\n\n"
            f"Available targets (only agents who have already responded): {targets}\n\n"
            "Use this ONLY when you identify a specific issue that another agent should fix. "
            "After calling this tool, explain your reasoning in your response text."
        )

    async def call(self, arguments: "RequestRevisionTool.Arguments") -> str:
        self._record(f"request={arguments.request}")

        parts = [p.strip() for p in arguments.request.split("|", 1)]
        if len(parts) != 2 or not parts[0] or not parts[1]:
            return self._reject(
                "ERROR: Invalid request format. Use: <target agent name> | <revision request>.",
                f"Malformed request from {self.calling_agent_name}",
            )

        target_name, revision_request = parts
        target_key = target_name.lower()

        if target_key == self.calling_agent_name.lower():
            return self._reject(
                "ERROR: You cannot request a revision from yourself. "
                "Choose a different agent, or skip the revision request entirely.",
                f"Self-revision attempted by {self.calling_agent_name}",
            )

        if target_key not in {n.lower() for n in self.known_agent_names}:
            names = ", ".join(self.known_agent_names)
            return self._reject(
                f"ERROR: Invalid agent name '{target_name}'. Available agents: {names}",
                f"Invalid target '{target_name}'",
            )

        if target_key not in {n.lower() for n in self.eligible_target_names}:
            return self._reject(
                "ERROR: You can only request revisions from agents who have already responded in this relay.",
                f"Target not yet eligible '{target_name}'",
            )

        if not self.mailbox.try_set(self.calling_agent_name, target_name, revision_request):
            return self._reject(
                "ERROR: You have already requested a revision in this response. "
                "Do not call this tool again. Continue with your response.",
                f"Duplicate call by {self.calling_agent_name}",
            )

        logger.info(f"Revision accepted: {self.calling_agent_name} -> {target_name}")
        self._record(f"ACCEPTED: {self.calling_agent_name} -> {target_name}", accepted=True)
        return (
            f"Revision request successfully sent to {target_name}. "
            f"They will review: {revision_request}. "
            "Now continue with your own response explaining what you found."
        )

    def _reject(self, message: str, reason: str) -> str:
        logger.info(f"Revision rejected: {reason}")
        self._record(f"REJECTED: {reason}", accepted=False)
        return message

    def _record(self, content: str, accepted: Optional[bool] = None) -> None:
        if self.on_event:
            self.on_event(create_tool_call_event(
                tool_name=self.name,
                content=content,
                accepted=accepted,
                caller=self.calling_agent_name,
            ))
