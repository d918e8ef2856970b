"""
Agentrelay Tools Module

This module contains the generation-provider boundary (LLM backends and
single-use sessions), the model-callable tool interface, and the revision
request capability.
"""

from agentrelay.tools.base import Tool
from agentrelay.tools.llm_backends import (
    BackendConfig,
    ChatCompletionsBackend,
    CostAccounting,
    GenerationSession,
    LLMBackend,
    LLMError,
    LLMResponse,
    LocalBackend,
    OpenAIBackend,
    OpenRouterBackend,
    ToolArgumentsError,
    get_llm_backend,
)
from agentrelay.tools.revision import (
    RequestRevisionTool,
    RevisionMailbox,
    RevisionRequest,
)

__all__ = [
    # Tool interface
    "Tool",
    # LLM Backends
    "LLMBackend",
    "GenerationSession",
    "ChatCompletionsBackend",
    "OpenAIBackend",
    "OpenRouterBackend",
    "LocalBackend",
    "get_llm_backend",
    "BackendConfig",
    "LLMResponse",
    "CostAccounting",
    "LLMError",
    "ToolArgumentsError",
    # Revision requests
    "RequestRevisionTool",
    "RevisionMailbox",
    "RevisionRequest",
]
