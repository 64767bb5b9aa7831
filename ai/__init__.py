from ai.base import AiGenerator, strip_code_fence
from ai.factory import GENERATORS, AgentRegistry, create_generator
from ai.history import AgentHistoryStore
from ai.providers import (
    DeepSeekGenerator, GeminiGenerator, OllamaGenerator, OpenAIGenerator, OtherGenerator,
)

__all__ = [
    "AiGenerator", "strip_code_fence",
    "GeminiGenerator", "OpenAIGenerator", "DeepSeekGenerator", "OllamaGenerator", "OtherGenerator",
    "GENERATORS", "create_generator", "AgentRegistry",
    "AgentHistoryStore",
]
