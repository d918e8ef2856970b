"""
Agentrelay: Sequential Multi-Agent Relay Orchestration

A user request travels down a line of independent agents. Each agent runs
in a fresh, isolated generation session and sees only the original request
plus the previous agent's output, so context never grows with the length of
the relay. Any agent may ask an earlier agent for a targeted revision; the
relay loops back once, bounded per turn, before continuing.

Package Structure:
    - agent/: Roster, turn state, prompts, invoker and orchestrator
    - tools/: LLM backends (generation sessions) and model-callable tools
    - protocols/: Typed event schemas and the debug event log
    - server/: FastAPI server and SSE streaming endpoints
    - config.py: Environment-driven settings
"""

__version__ = "0.1.0"
__author__ = "Agentrelay Team"

from agentrelay.agent.directory import AgentDirectory, AgentIdentity
from agentrelay.agent.orchestrator import RelayHandle, RelayOrchestrator
from agentrelay.tools.llm_backends import LLMBackend, get_llm_backend
from agentrelay.protocols.events import AgentEvent, EventType

__all__ = [
    "AgentDirectory",
    "AgentIdentity",
    "RelayOrchestrator",
    "RelayHandle",
    "LLMBackend",
    "get_llm_backend",
    "AgentEvent",
    "EventType",
    "__version__",
]
