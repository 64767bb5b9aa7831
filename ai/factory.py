"""
Generator factory and agent registry.

create_generator() builds a configured vendor adapter from an AiAgentConfig.
AgentRegistry resolves agent ids (from settings.agents or inline flow
definitions) to configs and caches one generator per agent.
"""
from __future__ import annotations

from typing import Any, Iterable, Optional, Union

import structlog

from ai.base import AiGenerator
from ai.providers import (
    DeepSeekGenerator, GeminiGenerator, OllamaGenerator, OpenAIGenerator, OtherGenerator,
)
from models.schemas import AgentType, AiAgentConfig
from utils.errors import AgentError

logger = structlog.get_logger()

GENERATORS: dict[AgentType, type[AiGenerator]] = {
    AgentType.GEMINI: GeminiGenerator,
    AgentType.DEEPSEEK: DeepSeekGenerator,
    AgentType.OPENAI: OpenAIGenerator,
    AgentType.OLLAMA: OllamaGenerator,
    AgentType.OTHER: OtherGenerator,
}


def create_generator(agent: AiAgentConfig) -> AiGenerator:
    """Build a generator for the agent. Agents default to JSON replies."""
    cls = GENERATORS.get(agent.type)
    if cls is None:
        raise AgentError(f"unsupported agent type: {agent.type}", vendor=str(agent.type))

    generator = cls()
    generator.set_api_key(agent.api_key)
    generator.set_host(agent.host)
    generator.set_model(agent.model)
    generator.set_system_instruction(agent.system_instruction)

    config = agent.content_config.model_copy(deep=True)
    if not config.response_mime_type:
        config.response_mime_type = "application/json"
    generator.set_content_config(config)
    return generator


AgentLike = Union[AiAgentConfig, dict[str, Any]]


class AgentRegistry:
    """id -> agent config, with one cached generator per agent."""

    def __init__(self, agents: Iterable[AgentLike] = ()):
        self._agents: dict[str, AiAgentConfig] = {}
        self._generators: dict[str, AiGenerator] = {}
        for agent in agents:
            self.register(agent)

    @classmethod
    def from_settings(cls, settings) -> "AgentRegistry":
        return cls(settings.agents)

    def register(self, agent: AgentLike) -> AiAgentConfig:
        if isinstance(agent, dict):
            agent = AiAgentConfig.model_validate(agent)
        self._agents[agent.id] = agent
        self._generators.pop(agent.id, None)
        logger.info("agent_registered", agent_id=agent.id, type=agent.type.value)
        return agent

    def has(self, agent_id: str) -> bool:
        return agent_id in self._agents

    def get(self, agent_id: str) -> AiAgentConfig:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise AgentError(f"unknown agent: {agent_id}")
        return agent

    def resolve(self, agent_id: str = "", inline: Optional[AiAgentConfig] = None) -> AiAgentConfig:
        """Inline definitions win over registered ones with the same id."""
        if inline is not None:
            if inline.id and inline.id not in self._agents:
                self.register(inline)
            return inline
        return self.get(agent_id)

    def generator_for(self, agent: AiAgentConfig) -> AiGenerator:
        cached = self._generators.get(agent.id) if agent.id else None
        if cached is not None and self._agents.get(agent.id) is agent:
            return cached
        generator = create_generator(agent)
        if agent.id and self._agents.get(agent.id) is agent:
            self._generators[agent.id] = generator
        return generator

    def set_generator(self, agent_id: str, generator: AiGenerator) -> None:
        """Pin a pre-built generator for an agent (custom vendors, tests)."""
        self._generators[agent_id] = generator
