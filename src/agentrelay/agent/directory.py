"""
Agent Directory

The roster of agents taking part in a relay, loaded from a JSON array such
as the bundled ``agent_configuration.json``::

    [
      {
        "id": "coder",
        "name": "Cody",
        "emoji": "🧑‍💻",
        "color": "#4F8EF7",
        "systemPrompt": "You are Cody, a careful software engineer...",
        "order": 2,
        "canRequestRevisions": false
      }
    ]

Keys may be camelCase (as above) or snake_case.
"""

from __future__ import annotations

import logging
from importlib import resources
from pathlib import Path
from typing import Iterator, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_RESOURCE = "agent_configuration.json"


class AgentIdentity(BaseModel):
    """A single agent definition. Immutable."""

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
    )

    id: str = Field(description="Unique agent identifier")
    name: str = Field(description="Display name, also the key for revision requests")
    system_prompt: str = Field(description="Persona used as the session instructions")
    order: int = Field(description="Position in the relay, ascending")
    can_request_revisions: bool = Field(default=False)
    emoji: str = Field(default="")
    color: str = Field(default="", description="Hex color, e.g. #4F8EF7")

    def to_dict(self) -> dict:
        """Serialize to dictionary (snake_case keys)."""
        return self.model_dump()


_ROSTER_ADAPTER = TypeAdapter(list[AgentIdentity])


class AgentDirectory:
    """Ordered, read-only collection of agent identities.

    Example:
        >>> directory = AgentDirectory.from_file("agents.json")
        >>> directory.find("cody").order
        2
    """

    def __init__(self, agents: Sequence[AgentIdentity] = ()):
        self._agents = sorted(agents, key=lambda agent: agent.order)

    @classmethod
    def from_json(cls, text: Union[str, bytes]) -> AgentDirectory:
        """Parse a JSON roster. Malformed input yields an empty directory."""
        try:
            agents = _ROSTER_ADAPTER.validate_json(text)
        except ValidationError as e:
            logger.warning(f"Failed to decode agent configuration: {e}")
            return cls()
        return cls(agents)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> AgentDirectory:
        """Load a JSON roster from disk. A missing file yields an empty directory."""
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            logger.warning(f"Agent configuration not found at {path}: {e}")
            return cls()

        directory = cls.from_json(text)
        logger.info(f"Loaded {len(directory)} agents from {path}")
        return directory

    @property
    def agents(self) -> list[AgentIdentity]:
        return list(self._agents)

    @property
    def names(self) -> list[str]:
        return [agent.name for agent in self._agents]

    def find(self, name: str) -> Optional[AgentIdentity]:
        """Look up an agent by name, case-insensitively."""
        key = name.strip().lower()
        for agent in self._agents:
            if agent.name.lower() == key:
                return agent
        return None

    def to_list(self) -> list[dict]:
        return [agent.to_dict() for agent in self._agents]

    def __iter__(self) -> Iterator[AgentIdentity]:
        return iter(self._agents)

    def __len__(self) -> int:
        return len(self._agents)

    def __bool__(self) -> bool:
        return bool(self._agents)

    def __repr__(self) -> str:
        return f"AgentDirectory({self.names})"


def load_default_directory() -> AgentDirectory:
    """Load the roster bundled with the package."""
    resource = resources.files("agentrelay").joinpath(DEFAULT_CONFIG_RESOURCE)
    try:
        text = resource.read_text(encoding="utf-8")
    except OSError as e:
        logger.warning(f"Bundled agent configuration unavailable: {e}")
        return AgentDirectory()
    return AgentDirectory.from_json(text)
