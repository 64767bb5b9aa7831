"""Per-conversation AI chat history, bounded by the agent's history_length."""
from __future__ import annotations

from collections import deque

from models.schemas import AiMessage


class AgentHistoryStore:

    def __init__(self, default_length: int = 10):
        self.default_length = default_length
        self._histories: dict[tuple[str, str], deque[AiMessage]] = {}

    def get(self, agent_id: str, conversation_key: str) -> list[AiMessage]:
        return list(self._histories.get((agent_id, conversation_key), ()))

    def append(self, agent_id: str, conversation_key: str, *messages: AiMessage,
               max_length: int | None = None) -> None:
        limit = max_length if max_length is not None else self.default_length
        if limit <= 0:
            return
        key = (agent_id, conversation_key)
        history = self._histories.get(key)
        if history is None or history.maxlen != limit:
            history = deque(history or (), maxlen=limit)
            self._histories[key] = history
        history.extend(messages)

    def clear(self, agent_id: str, conversation_key: str) -> None:
        self._histories.pop((agent_id, conversation_key), None)

    def clear_conversation(self, conversation_key: str) -> None:
        for key in [k for k in self._histories if k[1] == conversation_key]:
            del self._histories[key]
