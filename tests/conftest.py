"""Shared test fixtures for the conversational flow engine."""
import json
from typing import Any
from unittest.mock import AsyncMock

import httpx
import pytest

from ai.factory import AgentRegistry
from core.chatbot import ChatBotService, load_chatbot_flow
from database.store_factory import reset_store
from database.store_memory import InMemoryStateStore
from flow_engine.executor import FlowEngine
from models.schemas import ChannelType, NormalizedMessage


@pytest.fixture(autouse=True)
def _reset_store_singleton():
    reset_store()
    yield
    reset_store()


@pytest.fixture
def order_bot_definition() -> dict[str, Any]:
    """Menu + email form from the reference chatbot flow format."""
    return {
        "keywords": {"menu": "main"},
        "flows": {
            "main": {
                "type": "menu",
                "text": "Pick:",
                "options": [
                    {"input": "1", "display": "Order", "next_flow": "order_form"},
                    {"input": "2", "display": "Hours", "response": "We are open 9-5."},
                ],
            },
            "order_form": {
                "type": "form",
                "completion_message": "Done.",
                "back_to_flow": "main",
                "steps": [
                    {
                        "field": "email",
                        "question": "Email?",
                        "validation": {"type": "email", "error_message": "Invalid."},
                    },
                ],
            },
        },
        "fallback_response_type": "text",
        "fallback_response": "Say 'menu'.",
    }


@pytest.fixture
def order_bot(order_bot_definition):
    return load_chatbot_flow(order_bot_definition)


@pytest.fixture
def memory_store():
    return InMemoryStateStore()


@pytest.fixture
def agent_registry():
    return AgentRegistry([
        {"id": "helper", "name": "Helper", "type": "other"},
    ])


@pytest.fixture
def chatbot(memory_store, agent_registry):
    return ChatBotService(store=memory_store, agents=agent_registry)


class ReplyRecorder:
    """on_reply callback that records every response text."""

    def __init__(self):
        self.calls: list[tuple[str, str, str, str, int]] = []

    async def __call__(self, sender, user_text, response, conversation_key, total_token_count):
        self.calls.append((sender, user_text, response, conversation_key, total_token_count))

    @property
    def texts(self) -> list[str]:
        return [c[2] for c in self.calls]

    def clear(self):
        self.calls.clear()


@pytest.fixture
def replies():
    return ReplyRecorder()


@pytest.fixture
def ai_hook():
    return AsyncMock(return_value=None)


def make_message(text: str, sender: str = "6281234", key: str = "6281234@main") -> NormalizedMessage:
    return NormalizedMessage(
        channel=ChannelType.WHATSAPP, sender_id=sender, conversation_key=key, text=text,
    )


@pytest.fixture
def say(chatbot, order_bot, replies, ai_hook):
    """Send one user message through the driver on a fixed conversation."""
    async def _say(text: str, flow=None, key: str = "6281234@main"):
        await chatbot.run(make_message(text, key=key), key, text, flow or order_bot, replies, ai_hook)
        return replies.texts
    return _say


@pytest.fixture
def engine():
    return FlowEngine()


def json_transport(status: int = 200, body: Any = None, seen: list = None) -> httpx.MockTransport:
    """MockTransport answering every request with one JSON response."""
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        content = b"" if body is None else json.dumps(body).encode()
        return httpx.Response(status, content=content,
                              headers={"Content-Type": "application/json"})
    return httpx.MockTransport(handler)


@pytest.fixture
def message_factory():
    return make_message


@pytest.fixture
def transport_factory():
    return json_transport
