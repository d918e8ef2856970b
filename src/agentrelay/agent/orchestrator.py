"""
Relay Orchestrator

Drives one relay turn: each agent in the directory runs in order, with a
fresh session and only the previous agent's output as context. An agent
may ask an earlier agent for a revision; the orchestrator then loops back
to that agent once before continuing down the line.

State machine per turn:

    Idle -> Running -> (Invoking -> [RevisionCheck -> RevisionInvoking]*) -> Idle

``stop_relay`` moves to Cancelled from any running state. Generation
failures never abort a turn: the invoker turns them into fallback
messages and the relay carries on with the last valid hand-off.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any, Callable, Optional

from agentrelay.agent.directory import (
    AgentDirectory,
    AgentIdentity,
    load_default_directory,
)
from agentrelay.agent.invoker import AgentInvoker, is_fallback
from agentrelay.agent.models import AgentMessage, RelayTurn
from agentrelay.agent.prompts import USER_AGENT_NAME, build_revision_context
from agentrelay.config import RelaySettings
from agentrelay.protocols.events import (
    AgentEvent,
    EventType,
    create_conversation_event,
    create_handoff_event,
    create_narration_event,
    create_revision_event,
    create_run_end_event,
    create_run_start_event,
    create_tool_call_miss_event,
    detect_missed_tool_calls,
)
from agentrelay.protocols.relay_log import RelayLog
from agentrelay.tools.llm_backends import LLMBackend, get_llm_backend
from agentrelay.tools.revision import RevisionMailbox, RevisionRequest

logger = logging.getLogger(__name__)

# Ids of the relay task that is emitting; each task gets its own copy
_current_turn_id: ContextVar[str] = ContextVar("agentrelay_turn_id", default="")
_current_conversation_id: ContextVar[str] = ContextVar("agentrelay_conversation_id", default="")


@dataclass
class RelayHandle:
    """Handle to a running relay turn.

    Attributes:
        turn: The turn being filled in
        task: Task executing the relay
        cancel_event: Cooperative cancellation signal checked between steps
    """
    turn: RelayTurn
    task: asyncio.Task
    cancel_event: asyncio.Event

    @property
    def run_id(self) -> str:
        return self.turn.turn_id

    @property
    def done(self) -> bool:
        return self.task.done()

    def cancel(self) -> None:
        """Signal cancellation and cancel the task."""
        self.cancel_event.set()
        self.task.cancel()

    async def wait(self) -> RelayTurn:
        """Wait for the relay to finish (or unwind after cancellation)."""
        await asyncio.wait({self.task})
        return self.turn


class RelayOrchestrator:
    """Runs relay turns over an agent directory.

    Example:
        >>> orchestrator = RelayOrchestrator(llm, load_default_directory())
        >>> handle = orchestrator.start_relay("Write a CSV parser in Python")
        >>> turn = await handle.wait()
        >>> for message in turn.agent_messages:
        ...     print(message.agent.name, message.revised_by, message.text[:80])
    """

    def __init__(
        self,
        llm: LLMBackend,
        directory: AgentDirectory,
        temperature: float = 0.7,
        use_streaming: bool = True,
        max_retries: int = 2,
        retry_delay: float = 1.0,
        handoff_delay: float = 0.5,
        max_revisions: int = 3,
        on_event: Optional[Callable[[AgentEvent], None]] = None,
        event_log: Optional[RelayLog] = None,
    ):
        """Initialize the orchestrator.

        Args:
            llm: Generation provider
            directory: Agents taking part, in relay order
            temperature: Sampling temperature for every agent
            use_streaming: Stream partial output into messages
            max_retries: Extra attempts per agent step
            retry_delay: Seconds between attempts
            handoff_delay: Seconds to pause before every agent but the first
            max_revisions: Revision loops allowed per turn
            on_event: Optional callback for every relay event
            event_log: Debug log (a fresh one by default)
        """
        self.llm = llm
        self.directory = directory
        self.use_streaming = use_streaming
        self.max_retries = max_retries
        self.handoff_delay = handoff_delay
        self.max_revisions = max_revisions
        self.on_event = on_event
        self.event_log = event_log or RelayLog()

        self.mailbox = RevisionMailbox()
        self.invoker = AgentInvoker(
            llm=llm,
            directory=directory,
            mailbox=self.mailbox,
            temperature=temperature,
            use_streaming=use_streaming,
            retry_delay=retry_delay,
            on_event=self._emit,
        )

        self.relay_turns: list[RelayTurn] = []
        self.is_running = False
        self.current_agent_index: Optional[int] = None
        self.conversation_id = str(uuid.uuid4())

        self._active: Optional[RelayHandle] = None

    @classmethod
    def from_settings(
        cls,
        settings: RelaySettings,
        llm: Optional[LLMBackend] = None,
        directory: Optional[AgentDirectory] = None,
        on_event: Optional[Callable[[AgentEvent], None]] = None,
    ) -> RelayOrchestrator:
        """Build an orchestrator from settings.

        Args:
            settings: Relay settings
            llm: Backend override (built from settings if not provided)
            directory: Roster override (loaded from settings if not provided)
            on_event: Optional event callback
        """
        if llm is None:
            llm = get_llm_backend(
                settings.llm_backend,
                model_name=settings.model_name,
                api_base=settings.api_base,
            )
        if directory is None:
            directory = (
                AgentDirectory.from_file(settings.agent_config_path)
                if settings.agent_config_path
                else load_default_directory()
            )

        return cls(
            llm=llm,
            directory=directory,
            temperature=settings.temperature,
            use_streaming=settings.use_streaming,
            max_retries=settings.max_retries,
            retry_delay=settings.retry_delay_seconds,
            handoff_delay=settings.handoff_delay_seconds,
            max_revisions=settings.max_revisions,
            on_event=on_event,
        )

    # -------------------------------------------------------------------------
    # Control
    # -------------------------------------------------------------------------

    def start_relay(
        self,
        user_message: str,
        run_id: Optional[str] = None,
    ) -> Optional[RelayHandle]:
        """Start a relay turn in the background.

        Must be called from a running event loop.

        Args:
            user_message: The user's request
            run_id: Optional id for the new turn (e.g. a stream run id)

        Returns:
            Handle to the running turn, or None if the directory is empty
            or another relay is still running
        """
        if not self.directory:
            logger.warning("Relay not started: no agents configured")
            return None
        if self.is_running:
            logger.warning("Relay not started: a relay is already running")
            return None

        turn = RelayTurn(user_message=user_message)
        if run_id:
            turn.turn_id = run_id

        cancel_event = asyncio.Event()
        relay = self._run_relay(turn, cancel_event)
        try:
            task = asyncio.create_task(relay)
        except RuntimeError:
            relay.close()
            raise

        # The task only starts at the next loop iteration, after this state is set
        self.relay_turns.append(turn)
        self.is_running = True
        self._active = RelayHandle(turn=turn, task=task, cancel_event=cancel_event)

        logger.info(f"Relay {turn.turn_id[:8]} started with {len(self.directory)} agents")
        return self._active

    def stop_relay(self) -> bool:
        """Stop the current relay, if any.

        Running state is cleared immediately; the task unwinds on its own.

        Returns:
            True if a relay was running
        """
        handle = self._active
        if handle is not None:
            handle.cancel()
            logger.info(f"Relay {handle.run_id[:8]} stopped")

        self._active = None
        self.is_running = False
        self.current_agent_index = None
        return handle is not None

    def reset(self) -> None:
        """Stop any relay, clear history, and start a new conversation."""
        self.stop_relay()
        self.relay_turns.clear()
        self.conversation_id = str(uuid.uuid4())

    # -------------------------------------------------------------------------
    # Relay pipeline
    # -------------------------------------------------------------------------

    async def _run_relay(self, turn: RelayTurn, cancel_event: asyncio.Event) -> None:
        _current_turn_id.set(turn.turn_id)
        _current_conversation_id.set(self.conversation_id)

        previous_output = turn.user_message
        previous_agent_name = USER_AGENT_NAME
        revision_count = 0
        agent_outputs: dict[str, str] = {}
        failed_agents: list[str] = []
        cancelled = False

        self._emit(create_conversation_event(USER_AGENT_NAME, turn.user_message))
        self._emit(create_run_start_event(
            user_message=turn.user_message,
            agent_names=self.directory.names,
            config={
                "use_streaming": self.use_streaming,
                "max_retries": self.max_retries,
                "max_revisions": self.max_revisions,
            },
        ))

        try:
            for agent_idx, agent in enumerate(self.directory):
                if cancel_event.is_set():
                    break

                if agent_idx > 0 and self.handoff_delay > 0:
                    await asyncio.sleep(self.handoff_delay)

                message = AgentMessage(agent=agent)
                message_idx = turn.append(message)
                self.current_agent_index = message_idx
                self._emit(create_handoff_event(previous_agent_name, agent.name, message_idx))

                output = await self.invoker.run(
                    agent=agent,
                    user_message=turn.user_message,
                    previous_agent_name=previous_agent_name,
                    previous_output=previous_output,
                    eligible_targets=list(agent_outputs),
                    message=message,
                    cancel_event=cancel_event,
                    max_retries=self.max_retries,
                    step_idx=message_idx,
                )
                agent_outputs[agent.name] = output
                self._record_output(agent.name, output, message_idx)
                if is_fallback(output):
                    failed_agents.append(agent.name)

                if cancel_event.is_set():
                    break

                revision = None if is_fallback(output) else self.mailbox.consume()
                target = self._accept_revision(revision, agent, agent_outputs, revision_count)

                if revision is not None and target is not None:
                    revision_count += 1
                    rev_output = await self._run_revision(
                        turn, revision, target, agent, output,
                        agent_outputs, revision_count, cancel_event,
                    )

                    # Requests made while revising are not honoured
                    self.mailbox.consume()

                    if is_fallback(rev_output):
                        failed_agents.append(target.name)
                        self._emit(create_narration_event(
                            f"Revision by {target.name} failed after retries",
                        ))

                    agent_outputs[target.name] = rev_output
                    previous_output = rev_output
                    previous_agent_name = target.name

                    if cancel_event.is_set():
                        break
                else:
                    if self.mailbox.consume() is not None:
                        self._emit(create_narration_event(
                            f"Discarded stale revision request from {agent.name}",
                        ))

                    # A failed agent keeps the last valid hand-off
                    if not is_fallback(output):
                        previous_output = output
                        previous_agent_name = agent.name

            cancelled = cancel_event.is_set()

        except asyncio.CancelledError:
            cancelled = True
            raise

        finally:
            if self._active is not None and self._active.task is asyncio.current_task():
                self._active = None
                self.is_running = False
                self.current_agent_index = None

            self._emit(create_run_end_event(
                cancelled=cancelled,
                total_messages=len(turn.agent_messages),
                revision_count=revision_count,
                failed_agents=failed_agents,
            ))
            logger.info(
                f"Relay {turn.turn_id[:8]} {'cancelled' if cancelled else 'finished'}: "
                f"{len(turn.agent_messages)} messages, {revision_count} revisions"
            )

    def _accept_revision(
        self,
        revision: Optional[RevisionRequest],
        agent: AgentIdentity,
        agent_outputs: dict[str, str],
        revision_count: int,
    ) -> Optional[AgentIdentity]:
        """Validate a consumed request and return the target agent if accepted."""
        if revision is None:
            return None

        if revision_count >= self.max_revisions:
            reason = f"revision limit of {self.max_revisions} reached"
            target = None
        else:
            target = self.directory.find(revision.target_agent_name)
            if target is None:
                reason = f"unknown agent '{revision.target_agent_name}'"
            elif target.name.lower() not in {name.lower() for name in agent_outputs}:
                reason = f"{target.name} has not responded yet"
                target = None
            elif target.name.lower() == agent.name.lower():
                reason = f"{agent.name} cannot revise itself"
                target = None
            else:
                return target

        self._emit(create_narration_event(
            f"Revision request from {revision.requester_name} ignored: {reason}",
        ))
        return target

    async def _run_revision(
        self,
        turn: RelayTurn,
        revision: RevisionRequest,
        target: AgentIdentity,
        requester: AgentIdentity,
        requester_output: str,
        agent_outputs: dict[str, str],
        revision_count: int,
        cancel_event: asyncio.Event,
    ) -> str:
        message = AgentMessage(agent=target, revised_by=revision.requester_name)
        message_idx = turn.append(message)
        self.current_agent_index = message_idx

        self._emit(create_revision_event(
            requester_name=revision.requester_name,
            target_name=target.name,
            revision_request=revision.revision_request,
            revision_count=revision_count,
            step_idx=message_idx,
        ))
        self._emit(create_narration_event(
            f"Revision requested by {revision.requester_name} -> {target.name}",
            step_idx=message_idx,
        ))
        self._emit(create_handoff_event(requester.name, target.name, message_idx))

        context = build_revision_context(
            requester_name=revision.requester_name,
            revision_request=revision.revision_request,
            target_original_output=agent_outputs.get(target.name),
            requester_output=requester_output,
        )

        output = await self.invoker.run(
            agent=target,
            user_message=turn.user_message,
            previous_agent_name=requester.name,
            previous_output=context,
            eligible_targets=list(agent_outputs),
            message=message,
            cancel_event=cancel_event,
            max_retries=self.max_retries,
            step_idx=message_idx,
        )
        self._record_output(target.name, output, message_idx)
        return output

    def _record_output(self, agent_name: str, output: str, step_idx: int) -> None:
        self._emit(create_conversation_event(agent_name, output, step_idx))
        for line in detect_missed_tool_calls(output):
            self._emit(create_tool_call_miss_event(agent_name, line, step_idx))

    # -------------------------------------------------------------------------
    # Events and state
    # -------------------------------------------------------------------------

    def _emit(self, event: AgentEvent) -> None:
        """Stamp an event with its conversation and turn, log it, and forward it."""
        if not event.conversation_id:
            event.conversation_id = _current_conversation_id.get() or self.conversation_id
        if not event.turn_id:
            event.turn_id = _current_turn_id.get()

        # Deltas are progress only; the final text arrives as a conversation event
        if event.event_type != EventType.AGENT_DELTA:
            self.event_log.record(event)

        if self.on_event:
            self.on_event(event)

    @property
    def current_turn(self) -> Optional[RelayTurn]:
        return self.relay_turns[-1] if self.relay_turns else None

    def snapshot(self) -> dict[str, Any]:
        """JSON-ready view of the observable state."""
        return {
            "conversation_id": self.conversation_id,
            "is_running": self.is_running,
            "current_agent_index": self.current_agent_index,
            "agents": self.directory.names,
            "relay_turns": [turn.to_dict() for turn in self.relay_turns],
        }

    def get_cost_summary(self) -> dict[str, Any]:
        """Get cost summary from the backend."""
        return self.llm.accounting.summary()
