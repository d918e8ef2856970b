"""
Unit Tests for Agentrelay

Run with: pytest tests/ -v

Shared fakes:
- ScriptedBackend: an LLMBackend whose sessions answer from a per-agent script
- make_agent / make_directory: small rosters built in code
"""

from __future__ import annotations

import asyncio
import inspect
import json
import re
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Optional, Sequence

import pytest

from agentrelay.agent.directory import AgentDirectory, AgentIdentity
from agentrelay.agent.orchestrator import RelayOrchestrator
from agentrelay.tools.base import Tool
from agentrelay.tools.llm_backends import (
    BackendConfig,
    GenerationSession,
    LLMBackend,
    LLMResponse,
)

AGENT_NAME_PATTERN = re.compile(r"\[You are: (.+?)\]")


@dataclass
class StreamScript:
    """Streams the given chunks; optionally hangs afterwards until cancelled."""
    chunks: list[str]
    hang: bool = False


def revise(request: str, text: str) -> Callable[["ScriptedSession"], Any]:
    """Script step: call RequestRevision (if available) then answer with text."""

    async def step(session: ScriptedSession) -> str:
        for tool in session.tools:
            if tool.name == "RequestRevision":
                session.tool_results.append(
                    await tool.invoke(json.dumps({"request": request}))
                )
        return text

    return step


class ScriptedSession(GenerationSession):
    """Session that answers from the backend's script."""

    def __init__(self, backend: ScriptedBackend, instructions: str, tools: Sequence[Tool], temperature: float):
        super().__init__(instructions, tools, temperature)
        self.backend = backend
        self.prompt: Optional[str] = None
        self.agent_name: Optional[str] = None
        self.tool_results: list[str] = []

    async def _produce(self, prompt: str) -> Any:
        self.prompt = prompt
        match = AGENT_NAME_PATTERN.search(prompt)
        self.agent_name = match.group(1) if match else None
        step = self.backend.next_step(self.agent_name or "")

        if isinstance(step, BaseException):
            raise step
        if callable(step):
            step = step(self)
            if inspect.isawaitable(step):
                step = await step
        return step

    def _record(self, prompt: str, text: str) -> LLMResponse:
        response = LLMResponse(
            content=text,
            input_tokens=len(prompt) // 4,
            output_tokens=len(text) // 4,
            latency_ms=0.0,
            cost_usd=0.0,
            model=self.backend.config.model_name,
        )
        self.backend.accounting.record(response)
        return response

    async def respond(self, prompt: str) -> LLMResponse:
        self._claim()
        step = await self._produce(prompt)
        text = "".join(step.chunks) if isinstance(step, StreamScript) else step
        return self._record(prompt, text)

    async def stream_response(self, prompt: str) -> AsyncIterator[str]:
        self._claim()
        step = await self._produce(prompt)

        if isinstance(step, StreamScript):
            chunks, hang = step.chunks, step.hang
        else:
            chunks, hang = re.findall(r"\S+\s*", step) or ([step] if step else []), False

        text = ""
        for chunk in chunks:
            text += chunk
            yield text
            await asyncio.sleep(0)

        if hang:
            await asyncio.Event().wait()

        self._record(prompt, text)


class ScriptedBackend(LLMBackend):
    """LLM backend driven by a per-agent script.

    Each script entry is one of:
    - str: the response text
    - Exception: raised from the session
    - callable(session): returns (or awaits to) a str
    - StreamScript: explicit streamed chunks

    Agents without remaining script entries answer "<name> output".
    """

    def __init__(self, script: Optional[dict[str, list[Any]]] = None):
        super().__init__(BackendConfig(
            model_name="scripted",
            api_base="http://scripted.invalid",
            api_key_env="SCRIPTED_API_KEY",
        ))
        self.script = {name: list(steps) for name, steps in (script or {}).items()}
        self.sessions: list[ScriptedSession] = []

    def create_session(self, instructions: str, tools: Sequence[Tool] = (), temperature: float = 0.7) -> ScriptedSession:
        session = ScriptedSession(self, instructions, tools, temperature)
        self.sessions.append(session)
        return session

    def next_step(self, agent_name: str) -> Any:
        steps = self.script.get(agent_name)
        if steps:
            return steps.pop(0)
        return f"{agent_name} output"

    def sessions_for(self, agent_name: str) -> list[ScriptedSession]:
        return [s for s in self.sessions if s.agent_name == agent_name]

    def prompts_for(self, agent_name: str) -> list[str]:
        return [s.prompt for s in self.sessions_for(agent_name) if s.prompt is not None]


def make_agent(name: str, order: int, can_request_revisions: bool = True) -> AgentIdentity:
    return AgentIdentity(
        id=name.lower(),
        name=name,
        system_prompt=f"You are {name}.",
        order=order,
        can_request_revisions=can_request_revisions,
    )


def make_directory(*names: str, can_request_revisions: bool = True) -> AgentDirectory:
    return AgentDirectory([
        make_agent(name, order, can_request_revisions)
        for order, name in enumerate(names, start=1)
    ])


def make_orchestrator(
    backend: LLMBackend,
    directory: AgentDirectory,
    **kwargs: Any,
) -> RelayOrchestrator:
    """Orchestrator with all delays disabled."""
    kwargs.setdefault("retry_delay", 0.0)
    kwargs.setdefault("handoff_delay", 0.0)
    return RelayOrchestrator(llm=backend, directory=directory, **kwargs)


@pytest.fixture
def two_agents() -> AgentDirectory:
    return make_directory("A", "B")


@pytest.fixture
def three_agents() -> AgentDirectory:
    return make_directory("A", "B", "C")


@dataclass
class EventCollector:
    """Callable event sink that remembers everything it receives."""
    events: list[Any] = field(default_factory=list)

    def __call__(self, event: Any) -> None:
        self.events.append(event)

    def of_type(self, event_type: Any) -> list[Any]:
        return [e for e in self.events if e.event_type == event_type]


@pytest.fixture
def collector() -> EventCollector:
    return EventCollector()
