"""
Tool Interface

Tools are capabilities a generation session exposes to the model. The model
decides whether and when to call them; the session parses the model's JSON
arguments against the tool's pydantic ``Arguments`` model, runs the tool, and
feeds the returned text back into generation.

To add a tool:
1. Subclass ``Tool`` and set ``name``
2. Define a nested ``Arguments`` pydantic model with field descriptions
3. Implement ``description`` and ``call(arguments) -> str``
4. Return an instance from ``AgentInvoker.build_tools``
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, ClassVar

from pydantic import BaseModel


class Tool(ABC):
    """Abstract base class for model-callable tools.

    Tool results are plain text. Contract violations by the model (bad
    target, wrong format, ...) should be returned as descriptive text so the
    model can read and correct them, not raised.
    """

    name: ClassVar[str]
    Arguments: ClassVar[type[BaseModel]]

    @property
    @abstractmethod
    def description(self) -> str:
        """Description shown to the model."""

    @abstractmethod
    async def call(self, arguments: Any) -> str:
        """Run the tool with validated arguments.

        Args:
            arguments: An instance of ``self.Arguments``

        Returns:
            Text fed back to the model
        """

    def parameters_schema(self) -> dict[str, Any]:
        """JSON schema for the tool arguments."""
        return self.Arguments.model_json_schema()

    def to_schema(self) -> dict[str, Any]:
        """OpenAI-style function tool definition."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters_schema(),
            },
        }

    def parse_arguments(self, raw_arguments: str) -> BaseModel:
        """Validate the model's raw JSON arguments.

        Raises:
            pydantic.ValidationError: If the arguments are not valid JSON or
                do not match the ``Arguments`` schema
        """
        return self.Arguments.model_validate_json(raw_arguments or "")

    async def invoke(self, raw_arguments: str) -> str:
        """Parse raw JSON arguments and run the tool."""
        return await self.call(self.parse_arguments(raw_arguments))
