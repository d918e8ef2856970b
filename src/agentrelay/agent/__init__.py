"""
Agentrelay Agent Module

This module contains the agent roster, relay state models, focused prompt
building, the single-agent invoker, and the relay orchestrator.
"""

from agentrelay.agent.directory import AgentDirectory, AgentIdentity, load_default_directory
from agentrelay.agent.invoker import FALLBACK_PREFIX, AgentInvoker, is_fallback
from agentrelay.agent.models import AgentMessage, RelayTurn
from agentrelay.agent.orchestrator import RelayHandle, RelayOrchestrator
from agentrelay.agent.prompts import USER_AGENT_NAME, build_focused_prompt, build_revision_context

__all__ = [
    "AgentDirectory",
    "AgentIdentity",
    "load_default_directory",
    "AgentMessage",
    "RelayTurn",
    "AgentInvoker",
    "FALLBACK_PREFIX",
    "is_fallback",
    "RelayHandle",
    "RelayOrchestrator",
    "USER_AGENT_NAME",
    "build_focused_prompt",
    "build_revision_context",
]
