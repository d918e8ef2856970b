"""
Agent Invoker

Runs one agent step: a fresh, single-use generation session per attempt,
a focused prompt, streaming progress into the agent's message, and a
bounded retry policy that ends in a fallback message instead of an error.

The invoker never raises for generation failures. The only exception that
escapes ``run`` is ``asyncio.CancelledError``, after the message has been
finalized with whatever text had streamed in.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from typing import Callable, Optional, Sequence

from agentrelay.agent.directory import AgentDirectory, AgentIdentity
from agentrelay.agent.models import AgentMessage
from agentrelay.agent.prompts import build_focused_prompt
from agentrelay.protocols.events import (
    AgentEvent,
    create_agent_delta_event,
    create_agent_end_event,
    create_agent_start_event,
    create_narration_event,
)
from agentrelay.tools.base import Tool
from agentrelay.tools.llm_backends import LLMBackend, ToolArgumentsError
from agentrelay.tools.revision import RequestRevisionTool, RevisionMailbox

logger = logging.getLogger(__name__)

# Marks synthesized failure text. Downstream logic keys off this prefix.
FALLBACK_PREFIX = "⚠️ "

# Literal "no value" answers some models produce instead of text
NULL_LITERALS = frozenset({"null", "nil"})


def is_fallback(text: str) -> bool:
    """Whether the text is a synthesized fallback rather than real output."""
    return text.startswith(FALLBACK_PREFIX.strip())


class AgentInvoker:
    """Invokes a single agent with retries.

    Example:
        >>> invoker = AgentInvoker(llm, directory, RevisionMailbox())
        >>> message = AgentMessage(agent=directory.find("Cody"))
        >>> text = await invoker.run(
        ...     agent=message.agent,
        ...     user_message="Write a CSV parser",
        ...     previous_agent_name="Piper",
        ...     previous_output=plan,
        ...     eligible_targets=["Piper"],
        ...     message=message,
        ... )
    """

    def __init__(
        self,
        llm: LLMBackend,
        directory: AgentDirectory,
        mailbox: RevisionMailbox,
        temperature: float = 0.7,
        use_streaming: bool = True,
        retry_delay: float = 1.0,
        on_event: Optional[Callable[[AgentEvent], None]] = None,
    ):
        """Initialize the invoker.

        Args:
            llm: Provider used to create a session per attempt
            directory: Roster (for validating revision targets)
            mailbox: Shared revision mailbox
            temperature: Sampling temperature
            use_streaming: Stream partial output into the message
            retry_delay: Seconds to wait before each retry
            on_event: Optional sink for progress and tool events
        """
        self.llm = llm
        self.directory = directory
        self.mailbox = mailbox
        self.temperature = temperature
        self.use_streaming = use_streaming
        self.retry_delay = retry_delay
        self.on_event = on_event

    def build_tools(
        self,
        agent: AgentIdentity,
        eligible_targets: Sequence[str],
    ) -> list[Tool]:
        """Build the tools available to an agent for one attempt.

        To add a tool, append an instance here. Tools are rebuilt for every
        attempt so each one knows its caller and the current eligible set.
        """
        tools: list[Tool] = []

        if not agent.can_request_revisions or not eligible_targets:
            return tools

        tools.append(RequestRevisionTool(
            known_agent_names=self.directory.names,
            mailbox=self.mailbox,
            calling_agent_name=agent.name,
            eligible_target_names=eligible_targets,
            on_event=self._emit,
        ))
        return tools

    async def run(
        self,
        agent: AgentIdentity,
        user_message: str,
        previous_agent_name: str,
        previous_output: str,
        eligible_targets: Sequence[str],
        message: AgentMessage,
        cancel_event: Optional[asyncio.Event] = None,
        max_retries: int = 2,
        step_idx: int = 0,
    ) -> str:
        """Run the agent and return its final output.

        Args:
            agent: Agent to run
            user_message: Original user request
            previous_agent_name: Predecessor name ("User" for the first step)
            previous_output: Predecessor output, or a revision context block
            eligible_targets: Agents that already produced output this turn
            message: Message to write into; finalized before returning
            cancel_event: Cooperative cancellation signal
            max_retries: Extra attempts after the first
            step_idx: Index of ``message`` within its turn (for events)

        Returns:
            The agent's output, the partial text if cancelled, or a fallback
            message starting with ``FALLBACK_PREFIX``
        """
        cancel_event = cancel_event or asyncio.Event()
        try:
            return await self._run_attempts(
                agent, user_message, previous_agent_name, previous_output,
                eligible_targets, message, cancel_event, max_retries, step_idx,
            )
        except asyncio.CancelledError:
            self._finish_cancelled(agent, message, step_idx)
            logger.info(f"{agent.name} cancelled with {len(message.text)} chars")
            raise

    async def _run_attempts(
        self,
        agent: AgentIdentity,
        user_message: str,
        previous_agent_name: str,
        previous_output: str,
        eligible_targets: Sequence[str],
        message: AgentMessage,
        cancel_event: asyncio.Event,
        max_retries: int,
        step_idx: int,
    ) -> str:
        last_error: Optional[Exception] = None
        disable_tools = False
        total_attempts = max_retries + 1

        prompt = build_focused_prompt(
            agent_name=agent.name,
            previous_agent_name=previous_agent_name,
            previous_output=previous_output,
            user_message=user_message,
        )

        for attempt in range(total_attempts):
            if cancel_event.is_set():
                return self._finish_cancelled(agent, message, step_idx)

            if attempt > 0:
                message.text = ""
                await asyncio.sleep(self.retry_delay)

            self.mailbox.reset_for_attempt()
            self.mailbox.consume()

            tools = [] if disable_tools else self.build_tools(agent, eligible_targets)
            session = self.llm.create_session(
                instructions=agent.system_prompt,
                tools=tools,
                temperature=self.temperature,
            )
            self._emit(create_agent_start_event(
                agent.name, attempt + 1, [tool.name for tool in tools], step_idx
            ))

            try:
                if self.use_streaming:
                    async with aclosing(session.stream_response(prompt)) as stream:
                        async for partial in stream:
                            if cancel_event.is_set():
                                break
                            message.text = partial
                            self._emit(create_agent_delta_event(agent.name, partial, step_idx))
                else:
                    response = await session.respond(prompt)
                    message.text = response.content
            except ToolArgumentsError as e:
                last_error = e
                disable_tools = True
                logger.warning(f"{agent.name} attempt {attempt + 1}: {e}")
                self._narrate(
                    f"{FALLBACK_PREFIX}Disabling tools for {agent.name} retry due to tool argument parse failure",
                    step_idx,
                )
                continue
            except Exception as e:
                last_error = e
                logger.warning(f"{agent.name} attempt {attempt + 1} failed: {e}")
                self._narrate(
                    f"{FALLBACK_PREFIX}{agent.name} error on attempt {attempt + 1}: {e}",
                    step_idx,
                )
                continue

            if cancel_event.is_set():
                return self._finish_cancelled(agent, message, step_idx)

            result = message.text.strip()
            if not result:
                last_error = None
                logger.info(f"{agent.name} returned an empty response on attempt {attempt + 1}")
                continue
            if result.lower() in NULL_LITERALS:
                last_error = None
                self._narrate(
                    f"{FALLBACK_PREFIX}{agent.name} returned literal '{result}' on attempt {attempt + 1}",
                    step_idx,
                )
                continue

            message.is_complete = True
            self._emit(create_agent_end_event(agent.name, message.text, step_idx=step_idx))
            return message.text

        if cancel_event.is_set():
            return self._finish_cancelled(agent, message, step_idx)

        if last_error is not None:
            fallback = (
                f"{FALLBACK_PREFIX}{agent.name} encountered an error after "
                f"{total_attempts} attempts: {last_error}"
            )
        else:
            fallback = (
                f"{FALLBACK_PREFIX}{agent.name} failed to produce a valid response after "
                f"{total_attempts} attempts. The model may be temporarily unavailable. "
                "Try again in a moment."
            )

        logger.error(f"{agent.name} exhausted {total_attempts} attempts")
        message.text = fallback
        message.is_complete = True
        self._emit(create_agent_end_event(agent.name, fallback, is_fallback=True, step_idx=step_idx))
        return fallback

    def _finish_cancelled(self, agent: AgentIdentity, message: AgentMessage, step_idx: int) -> str:
        message.is_complete = True
        self._emit(create_agent_end_event(agent.name, message.text, cancelled=True, step_idx=step_idx))
        return message.text

    def _narrate(self, content: str, step_idx: int) -> None:
        self._emit(create_narration_event(content, step_idx=step_idx))

    def _emit(self, event: AgentEvent) -> None:
        if self.on_event:
            self.on_event(event)
