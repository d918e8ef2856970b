"""
LLM Backend Implementations

This module provides the generation-provider boundary used by the relay:

- ``LLMBackend.create_session(instructions, tools, temperature)`` returns a
  brand-new, single-use ``GenerationSession``
- ``GenerationSession.respond(prompt)`` awaits one final response
- ``GenerationSession.stream_response(prompt)`` yields growing snapshots

The concrete backends speak the OpenAI-compatible ``/chat/completions``
protocol over httpx (OpenAI, OpenRouter, or any local server such as Ollama).
Tools are run in-band: when the model asks for a tool call, the session
executes it, feeds the result back, and re-queries.

Each backend tracks token usage and cost.
"""

from __future__ import annotations

import json
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, AsyncIterator, Literal, Optional, Sequence

import httpx
import tiktoken
from pydantic import ValidationError

from agentrelay.tools.base import Tool

logger = logging.getLogger(__name__)


class LLMError(Exception):
    """Generation failed at the provider level."""


class ToolArgumentsError(LLMError):
    """The model produced tool arguments that do not match the tool schema.

    The invoker treats this failure class specially: the next attempt runs
    without tools instead of repeating the same malformed call.
    """

    def __init__(self, tool_name: str, raw_arguments: str, detail: str):
        self.tool_name = tool_name
        self.raw_arguments = raw_arguments
        super().__init__(
            f"Failed to deserialize arguments for tool '{tool_name}': {detail}"
        )


@dataclass
class BackendConfig:
    """Configuration for an LLM backend.

    Attributes:
        model_name: The model identifier (e.g., "gpt-4o-mini")
        api_base: Base URL for the API
        api_key_env: Environment variable name for API key
        max_tokens: Maximum output tokens
        max_context: Maximum context window in tokens
        input_price_per_1k: Price per 1K input tokens in USD
        output_price_per_1k: Price per 1K output tokens in USD
        supports_tools: Whether tool definitions may be sent to this model
        supports_stream_usage: Whether the server honours stream_options.include_usage
        timeout: Request timeout in seconds
    """
    model_name: str
    api_base: str
    api_key_env: str
    max_tokens: int = 4096
    max_context: int = 128000
    input_price_per_1k: float = 0.0
    output_price_per_1k: float = 0.0
    supports_tools: bool = True
    supports_stream_usage: bool = True
    timeout: float = 120.0


@dataclass
class LLMResponse:
    """Response from a generation session.

    Attributes:
        content: The text response
        input_tokens: Number of input tokens (summed over tool rounds)
        output_tokens: Number of output tokens (summed over tool rounds)
        latency_ms: Response latency in milliseconds
        cost_usd: Estimated cost in USD
        model: Model used for the query
        tool_calls_made: Number of tool calls executed during generation
        raw_response: Raw API response of the final round, for debugging
    """
    content: str
    input_tokens: int
    output_tokens: int
    latency_ms: float
    cost_usd: float
    model: str
    tool_calls_made: int = 0
    raw_response: Optional[dict[str, Any]] = None


@dataclass
class CostAccounting:
    """Tracks cumulative costs and usage across queries.

    Attributes:
        total_input_tokens: Total input tokens across all queries
        total_output_tokens: Total output tokens across all queries
        total_cost_usd: Total cost in USD
        total_queries: Number of queries made
        total_latency_ms: Total latency in milliseconds
        queries_by_model: Number of queries per model
    """
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cost_usd: float = 0.0
    total_queries: int = 0
    total_latency_ms: float = 0.0
    queries_by_model: dict[str, int] = field(default_factory=dict)

    def record(self, response: LLMResponse) -> None:
        """Record a query response for accounting."""
        self.total_input_tokens += response.input_tokens
        self.total_output_tokens += response.output_tokens
        self.total_cost_usd += response.cost_usd
        self.total_queries += 1
        self.total_latency_ms += response.latency_ms
        self.queries_by_model[response.model] = (
            self.queries_by_model.get(response.model, 0) + 1
        )

    def summary(self) -> dict[str, Any]:
        """Return a summary of the accounting."""
        return {
            "total_input_tokens": self.total_input_tokens,
            "total_output_tokens": self.total_output_tokens,
            "total_cost_usd": round(self.total_cost_usd, 4),
            "total_queries": self.total_queries,
            "avg_latency_ms": round(
                self.total_latency_ms / max(1, self.total_queries), 2
            ),
            "queries_by_model": self.queries_by_model,
        }


class GenerationSession(ABC):
    """A single-use generation context.

    A session carries one standing instruction (the agent persona) and a
    fixed tool set, and serves exactly one prompt. Reusing a session raises
    ``RuntimeError``; callers create a fresh one per attempt.
    """

    def __init__(
        self,
        instructions: str,
        tools: Sequence[Tool] = (),
        temperature: float = 0.7,
    ):
        self.instructions = instructions
        self.tools = list(tools)
        self.temperature = temperature
        self._used = False

    def _claim(self) -> None:
        if self._used:
            raise RuntimeError("GenerationSession is single-use; create a new session")
        self._used = True

    @abstractmethod
    async def respond(self, prompt: str) -> LLMResponse:
        """Generate a complete response to the prompt."""

    @abstractmethod
    def stream_response(self, prompt: str) -> AsyncIterator[str]:
        """Generate a response, yielding the accumulated text after each increment."""


class LLMBackend(ABC):
    """Abstract base class for LLM backends.

    All backends must implement ``create_session`` and provide cost
    tracking through the accounting property.
    """

    def __init__(self, config: BackendConfig):
        self.config = config
        self._accounting = CostAccounting()

    @property
    def accounting(self) -> CostAccounting:
        """Get the cost accounting tracker."""
        return self._accounting

    @abstractmethod
    def create_session(
        self,
        instructions: str,
        tools: Sequence[Tool] = (),
        temperature: float = 0.7,
    ) -> GenerationSession:
        """Create a fresh session scoped to a single generation.

        Args:
            instructions: Standing instruction (system prompt) for the session
            tools: Tools the model may call during this generation
            temperature: Sampling temperature
        """

    def estimate_tokens(self, text: str) -> int:
        """Estimate the number of tokens in a text string.

        Uses tiktoken for known models, cl100k_base otherwise, and a
        character heuristic when no encoding can be loaded.
        """
        try:
            try:
                encoding = tiktoken.encoding_for_model(self.config.model_name)
            except KeyError:
                encoding = tiktoken.get_encoding("cl100k_base")
            return len(encoding.encode(text))
        except Exception:
            # Encoding files unavailable (e.g. offline): ~4 chars per token
            return len(text) // 4

    def calculate_cost(self, input_tokens: int, output_tokens: int) -> float:
        """Calculate the cost in USD for a query."""
        input_cost = (input_tokens / 1000) * self.config.input_price_per_1k
        output_cost = (output_tokens / 1000) * self.config.output_price_per_1k
        return input_cost + output_cost

    async def close(self) -> None:
        """Release any held resources."""


# =============================================================================
# OpenAI-compatible Chat Completions
# =============================================================================

class ChatCompletionsBackend(LLMBackend):
    """Backend for any OpenAI-compatible ``/chat/completions`` endpoint."""

    def __init__(
        self,
        config: BackendConfig,
        api_key: Optional[str] = None,
        max_tool_rounds: int = 3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the backend.

        Args:
            config: Backend configuration
            api_key: API key (reads from ``config.api_key_env`` if not provided)
            max_tool_rounds: Tool-call rounds per generation before a final
                tool-free request
            transport: Optional httpx transport (used for testing)
        """
        super().__init__(config)

        self.api_key = api_key or os.environ.get(config.api_key_env, "")
        self.max_tool_rounds = max_tool_rounds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

        if not self.api_key and self.requires_api_key:
            logger.warning(
                f"No API key found for {config.model_name}. "
                f"Set {config.api_key_env} environment variable."
            )

    @property
    def requires_api_key(self) -> bool:
        return True

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.config.api_base,
                headers=self._headers(),
                timeout=self.config.timeout,
                transport=self._transport,
            )
        return self._client

    def create_session(
        self,
        instructions: str,
        tools: Sequence[Tool] = (),
        temperature: float = 0.7,
    ) -> ChatCompletionsSession:
        if tools and not self.config.supports_tools:
            logger.debug(f"{self.config.model_name} does not support tools; dropping {len(tools)}")
            tools = ()
        return ChatCompletionsSession(self, instructions, tools, temperature)

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()


class ChatCompletionsSession(GenerationSession):
    """One generation against a chat completions endpoint, tool loop included."""

    def __init__(
        self,
        backend: ChatCompletionsBackend,
        instructions: str,
        tools: Sequence[Tool] = (),
        temperature: float = 0.7,
    ):
        super().__init__(instructions, tools, temperature)
        self.backend = backend
        self._tools_by_name = {tool.name: tool for tool in self.tools}

    # -- request building ----------------------------------------------------

    def _initial_messages(self, prompt: str) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        if self.instructions:
            messages.append({"role": "system", "content": self.instructions})
        messages.append({"role": "user", "content": prompt})
        return messages

    def _tools_enabled(self, round_idx: int) -> bool:
        # The last round goes out without tools so the model must answer in text
        return bool(self.tools) and round_idx < self.backend.max_tool_rounds

    def _request_body(
        self,
        messages: list[dict[str, Any]],
        round_idx: int,
        stream: bool,
    ) -> dict[str, Any]:
        config = self.backend.config
        body: dict[str, Any] = {
            "model": config.model_name,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": config.max_tokens,
        }
        if self._tools_enabled(round_idx):
            body["tools"] = [tool.to_schema() for tool in self.tools]
            body["tool_choice"] = "auto"
        if stream:
            body["stream"] = True
            if config.supports_stream_usage:
                body["stream_options"] = {"include_usage": True}
        return body

    # -- tool execution ------------------------------------------------------

    async def _run_tool_call(self, tool_call: dict[str, Any]) -> dict[str, Any]:
        """Execute one tool call and build the tool message fed back to the model."""
        function = tool_call.get("function") or {}
        name = function.get("name", "")
        raw_arguments = function.get("arguments") or ""

        tool = self._tools_by_name.get(name)
        if tool is None:
            available = ", ".join(self._tools_by_name) or "(none)"
            result = f"ERROR: Unknown tool '{name}'. Available tools: {available}"
        else:
            try:
                arguments = tool.parse_arguments(raw_arguments)
            except ValidationError as e:
                raise ToolArgumentsError(name, raw_arguments, str(e)) from e
            result = await tool.call(arguments)

        return {
            "role": "tool",
            "tool_call_id": tool_call.get("id", ""),
            "content": result,
        }

    async def _run_tool_calls(
        self,
        messages: list[dict[str, Any]],
        content: Optional[str],
        tool_calls: list[dict[str, Any]],
    ) -> None:
        messages.append({
            "role": "assistant",
            "content": content or None,
            "tool_calls": tool_calls,
        })
        for tool_call in tool_calls:
            messages.append(await self._run_tool_call(tool_call))

    # -- accounting ----------------------------------------------------------

    def _finish(
        self,
        prompt: str,
        content: str,
        start_time: float,
        usage: dict[str, int],
        tool_calls_made: int,
        raw_response: Optional[dict[str, Any]] = None,
    ) -> LLMResponse:
        backend = self.backend
        latency_ms = (time.perf_counter() - start_time) * 1000
        input_tokens = usage.get("prompt_tokens") or backend.estimate_tokens(
            self.instructions + prompt
        )
        output_tokens = usage.get("completion_tokens") or backend.estimate_tokens(content)
        cost = backend.calculate_cost(input_tokens, output_tokens)

        response = LLMResponse(
            content=content,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            latency_ms=latency_ms,
            cost_usd=cost,
            model=backend.config.model_name,
            tool_calls_made=tool_calls_made,
            raw_response=raw_response,
        )
        backend.accounting.record(response)

        logger.debug(
            f"Chat completion ({backend.config.model_name}): {input_tokens} in, "
            f"{output_tokens} out, {tool_calls_made} tool calls, "
            f"${cost:.4f}, {latency_ms:.0f}ms"
        )
        return response

    @staticmethod
    def _add_usage(total: dict[str, int], usage: Optional[dict[str, Any]]) -> None:
        for key in ("prompt_tokens", "completion_tokens"):
            if usage and usage.get(key):
                total[key] = total.get(key, 0) + int(usage[key])

    @staticmethod
    def _join(parts: list[str]) -> str:
        return "\n\n".join(part for part in parts if part)

    # -- generation ----------------------------------------------------------

    async def respond(self, prompt: str) -> LLMResponse:
        """Query the endpoint, running any requested tools in-band."""
        self._claim()
        client = await self.backend._get_client()
        messages = self._initial_messages(prompt)

        start_time = time.perf_counter()
        usage: dict[str, int] = {}
        parts: list[str] = []
        tool_calls_made = 0
        data: dict[str, Any] = {}

        for round_idx in range(self.backend.max_tool_rounds + 1):
            body = self._request_body(messages, round_idx, stream=False)
            try:
                response = await client.post("/chat/completions", json=body)
                response.raise_for_status()
                data = response.json()
            except httpx.HTTPError as e:
                logger.error(f"Chat completions API error ({self.backend.config.model_name}): {e}")
                raise

            choices = data.get("choices") or []
            if not choices:
                raise LLMError(f"{self.backend.config.model_name} returned no choices")

            self._add_usage(usage, data.get("usage"))
            message = choices[0].get("message") or {}
            content = message.get("content") or ""
            parts.append(content)

            tool_calls = message.get("tool_calls") or []
            if tool_calls and self._tools_enabled(round_idx):
                await self._run_tool_calls(messages, content, tool_calls)
                tool_calls_made += len(tool_calls)
                continue
            break

        return self._finish(
            prompt, self._join(parts), start_time, usage, tool_calls_made, raw_response=data
        )

    async def stream_response(self, prompt: str) -> AsyncIterator[str]:
        """Stream the response over SSE, yielding the accumulated text."""
        self._claim()
        client = await self.backend._get_client()
        messages = self._initial_messages(prompt)

        start_time = time.perf_counter()
        usage: dict[str, int] = {}
        parts: list[str] = []
        tool_calls_made = 0

        for round_idx in range(self.backend.max_tool_rounds + 1):
            body = self._request_body(messages, round_idx, stream=True)
            round_text = ""
            pending_calls: dict[int, dict[str, Any]] = {}

            try:
                async with client.stream("POST", "/chat/completions", json=body) as response:
                    response.raise_for_status()
                    async for line in response.aiter_lines():
                        chunk = self._parse_sse_line(line)
                        if chunk is None:
                            continue
                        self._add_usage(usage, chunk.get("usage"))
                        for choice in chunk.get("choices") or []:
                            delta = choice.get("delta") or {}
                            if delta.get("content"):
                                round_text += delta["content"]
                                yield self._join(parts + [round_text])
                            for call_delta in delta.get("tool_calls") or []:
                                self._merge_tool_call_delta(pending_calls, call_delta)
            except httpx.HTTPError as e:
                logger.error(f"Chat completions stream error ({self.backend.config.model_name}): {e}")
                raise

            parts.append(round_text)
            if pending_calls and self._tools_enabled(round_idx):
                tool_calls = [pending_calls[i] for i in sorted(pending_calls)]
                await self._run_tool_calls(messages, round_text, tool_calls)
                tool_calls_made += len(tool_calls)
                continue
            break

        self._finish(prompt, self._join(parts), start_time, usage, tool_calls_made)

    @staticmethod
    def _parse_sse_line(line: str) -> Optional[dict[str, Any]]:
        line = line.strip()
        if not line.startswith("data:"):
            return None
        payload = line[5:].strip()
        if not payload or payload == "[DONE]":
            return None
        try:
            return json.loads(payload)
        except json.JSONDecodeError:
            logger.warning(f"Skipping malformed stream chunk: {payload[:200]}")
            return None

    @staticmethod
    def _merge_tool_call_delta(
        pending: dict[int, dict[str, Any]],
        delta: dict[str, Any],
    ) -> None:
        """Accumulate a streamed tool call fragment (arguments arrive in pieces)."""
        entry = pending.setdefault(delta.get("index", 0), {
            "id": "",
            "type": "function",
            "function": {"name": "", "arguments": ""},
        })
        if delta.get("id"):
            entry["id"] = delta["id"]
        function = delta.get("function") or {}
        if function.get("name"):
            entry["function"]["name"] = function["name"]
        if function.get("arguments"):
            entry["function"]["arguments"] += function["arguments"]


class OpenAIBackend(ChatCompletionsBackend):
    """OpenAI API backend."""

    GPT4O_CONFIG = BackendConfig(
        model_name="gpt-4o",
        api_base="https://api.openai.com/v1",
        api_key_env="OPENAI_API_KEY",
        max_tokens=4096,
        max_context=128000,
        input_price_per_1k=0.0025,
        output_price_per_1k=0.01,
    )

    GPT4O_MINI_CONFIG = BackendConfig(
        model_name="gpt-4o-mini",
        api_base="https://api.openai.com/v1",
        api_key_env="OPENAI_API_KEY",
        max_tokens=4096,
        max_context=128000,
        input_price_per_1k=0.00015,
        output_price_per_1k=0.0006,
    )

    def __init__(
        self,
        config: Optional[BackendConfig] = None,
        api_key: Optional[str] = None,
        **kwargs: Any,
    ):
        super().__init__(config or self.GPT4O_MINI_CONFIG, api_key=api_key, **kwargs)


class OpenRouterBackend(ChatCompletionsBackend):
    """OpenRouter backend - unified access to multiple LLM providers.

    Get your API key at: https://openrouter.ai/keys
    """

    GPT4O_MINI_CONFIG = BackendConfig(
        model_name="openai/gpt-4o-mini",
        api_base="https://openrouter.ai/api/v1",
        api_key_env="OPENROUTER_API_KEY",
        input_price_per_1k=0.00015,
        output_price_per_1k=0.0006,
    )

    CLAUDE_HAIKU_CONFIG = BackendConfig(
        model_name="anthropic/claude-3-haiku",
        api_base="https://openrouter.ai/api/v1",
        api_key_env="OPENROUTER_API_KEY",
        max_context=200000,
        input_price_per_1k=0.00025,
        output_price_per_1k=0.00125,
    )

    LLAMA_70B_CONFIG = BackendConfig(
        model_name="meta-llama/llama-3.1-70b-instruct",
        api_base="https://openrouter.ai/api/v1",
        api_key_env="OPENROUTER_API_KEY",
        max_context=131072,
        input_price_per_1k=0.00035,
        output_price_per_1k=0.0004,
    )

    def __init__(
        self,
        config: Optional[BackendConfig] = None,
        api_key: Optional[str] = None,
        site_name: Optional[str] = None,
        site_url: Optional[str] = None,
        **kwargs: Any,
    ):
        """Initialize OpenRouter backend.

        Args:
            config: Backend configuration
            api_key: OpenRouter API key (reads from OPENROUTER_API_KEY if not provided)
            site_name: Optional site name for rankings
            site_url: Optional site URL for rankings
        """
        self.site_name = site_name or os.environ.get("OPENROUTER_SITE_NAME", "agentrelay")
        self.site_url = site_url or os.environ.get("OPENROUTER_SITE_URL", "")
        super().__init__(config or self.GPT4O_MINI_CONFIG, api_key=api_key, **kwargs)

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        headers["HTTP-Referer"] = self.site_url
        headers["X-Title"] = self.site_name
        return headers

    @classmethod
    def get_available_models(cls) -> dict[str, BackendConfig]:
        """Return a dict of preset model configurations."""
        return {
            config.model_name: config
            for config in (cls.GPT4O_MINI_CONFIG, cls.CLAUDE_HAIKU_CONFIG, cls.LLAMA_70B_CONFIG)
        }


class LocalBackend(ChatCompletionsBackend):
    """Local OpenAI-compatible server (Ollama, LM Studio, llama.cpp, vLLM).

    No API key is required and usage is free.
    """

    OLLAMA_CONFIG = BackendConfig(
        model_name="llama3.1",
        api_base="http://localhost:11434/v1",
        api_key_env="AGENTRELAY_LOCAL_API_KEY",
        max_context=131072,
        supports_stream_usage=False,
        timeout=300.0,
    )

    def __init__(
        self,
        config: Optional[BackendConfig] = None,
        api_key: Optional[str] = None,
        **kwargs: Any,
    ):
        super().__init__(config or self.OLLAMA_CONFIG, api_key=api_key, **kwargs)

    @property
    def requires_api_key(self) -> bool:
        return False


def get_llm_backend(
    backend_type: Literal["openai", "openrouter", "local"] = "openrouter",
    model_name: Optional[str] = None,
    api_key: Optional[str] = None,
    api_base: Optional[str] = None,
) -> ChatCompletionsBackend:
    """Factory function to create LLM backends.

    Args:
        backend_type: The backend provider to use (default: openrouter)
        model_name: Optional model name override
        api_key: Optional API key override
        api_base: Optional base URL override (e.g. a remote Ollama host)

    Returns:
        Configured LLM backend instance

    Example:
        >>> llm = get_llm_backend("openrouter", model_name="anthropic/claude-3-haiku")
        >>> llm = get_llm_backend("local", model_name="qwen2.5:7b")
    """
    if backend_type == "openrouter":
        available = OpenRouterBackend.get_available_models()
        config = available.get(model_name or "", OpenRouterBackend.GPT4O_MINI_CONFIG)
        backend_cls: type[ChatCompletionsBackend] = OpenRouterBackend
    elif backend_type == "openai":
        config = (
            OpenAIBackend.GPT4O_CONFIG if model_name == "gpt-4o"
            else OpenAIBackend.GPT4O_MINI_CONFIG
        )
        backend_cls = OpenAIBackend
    elif backend_type == "local":
        config = LocalBackend.OLLAMA_CONFIG
        backend_cls = LocalBackend
    else:
        raise ValueError(f"Unknown backend type: {backend_type}")

    if model_name and model_name != config.model_name:
        config = replace(config, model_name=model_name)
    if api_base:
        config = replace(config, api_base=api_base)

    return backend_cls(config=config, api_key=api_key)
