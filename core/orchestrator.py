"""
Orchestrator — wires channel transports to the chat-bot driver.

Architecture:
  Inbound:  webhook payload → adapter.decode_inbound → NormalizedMessage
            → (optional) media download → ChatBotService.run
  Replies:  driver on_reply → adapter.send_outbound
  AI:       driver on_ai_generate → AgentHistoryStore + AiGenerator
            → AiResponse parsed from the model's JSON reply

The orchestrator holds no conversation state of its own; frames live in
the state store and AI histories in the history store.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional, Union

import structlog

from ai.base import AiGenerator
from ai.factory import AgentRegistry
from ai.history import AgentHistoryStore
from channels.base import ChannelAdapter, ChannelError, ChannelRegistry
from channels.instagram_adapter import InstagramAdapter
from channels.telegram_adapter import TelegramAdapter
from channels.whatsapp_adapter import WhatsAppAdapter
from config.settings import Settings, get_settings
from core.chatbot import ChatBotService, load_chatbot_flow_from_file
from models.schemas import (
    AiAgentConfig, AiAttachment, AiMessage, AiResponse, AiRole, ChannelType, ChatbotFlow,
    NormalizedMessage,
)
from utils.errors import ConfigError

logger = structlog.get_logger()


def parse_ai_response(message: AiMessage, wants_json: bool = True) -> AiResponse:
    """
    Turn a model reply into an AiResponse.

    JSON replies are read as {response, type, command, params}; anything
    else is treated as a plain-text response.
    """
    tokens = message.total_token_count
    if wants_json and message.content:
        try:
            data = json.loads(message.content)
        except ValueError:
            data = None
        if isinstance(data, dict):
            params = data.get("params")
            return AiResponse(
                response=str(data.get("response", "") or ""),
                type=str(data.get("type", "") or ""),
                command=str(data.get("command", "") or ""),
                params=params if isinstance(params, dict) else {},
                total_token_count=tokens,
            )
    return AiResponse(response=message.content, total_token_count=tokens)


class Orchestrator:
    """
    Generic orchestrator. Conversation logic lives in the ChatbotFlow.

    This class:
    1. Decodes webhooks through the channel's adapter
    2. Downloads inbound media for AI hand-offs
    3. Runs the chat-bot driver with reply and AI callbacks bound to the channel
    """

    def __init__(
        self,
        chatbot: ChatBotService,
        channels: ChannelRegistry,
        chatbot_flow: ChatbotFlow,
        history: AgentHistoryStore = None,
    ):
        self.chatbot = chatbot
        self.channels = channels
        self.chatbot_flow = chatbot_flow
        self.history = history or AgentHistoryStore()

    def _adapter(self, channel: Union[ChannelType, str]) -> ChannelAdapter:
        adapter = self.channels.get(channel)
        if adapter is None:
            raise ConfigError(f"channel {channel} not registered")
        return adapter

    # ── Webhooks ──────────────────────────────────────────────

    def verify_webhook(self, channel: Union[ChannelType, str], params: dict[str, Any]) -> Optional[str]:
        adapter = self._adapter(channel)
        verify = getattr(adapter, "verify_webhook", None)
        return verify(params) if verify else None

    async def handle_inbound_message(
        self, channel: Union[ChannelType, str], raw_payload: dict[str, Any],
    ) -> Optional[NormalizedMessage]:
        adapter = self._adapter(channel)
        msg = await adapter.decode_inbound(raw_payload)
        if msg is None:
            return None

        logger.info("inbound_message", channel=msg.channel.value, sender=msg.sender_id,
                    conversation_key=msg.conversation_key, has_media=msg.media_ref is not None)

        attachment = await self._fetch_attachment(adapter, msg)

        async def on_reply(sender: str, user_text: str, response: str,
                           conversation_key: str, total_token_count: int) -> None:
            await adapter.send_outbound(sender, response)

        async def on_ai_generate(generator: AiGenerator, agent: AiAgentConfig, sender: str,
                                 conversation_key: str, user_text: str) -> AiResponse:
            return await self.generate_ai_reply(generator, agent, conversation_key,
                                                user_text, attachment)

        await self.chatbot.run(msg, msg.conversation_key, msg.text, self.chatbot_flow,
                               on_reply, on_ai_generate)
        return msg

    async def _fetch_attachment(self, adapter: ChannelAdapter,
                                msg: NormalizedMessage) -> Optional[AiAttachment]:
        if msg.media_ref is None:
            return None
        try:
            media = await adapter.download_media(msg.media_ref)
        except ChannelError as e:
            logger.warning("inbound_media_download_failed", channel=adapter.name,
                           media_id=msg.media_ref.id, error=str(e))
            return None
        return AiAttachment(mime_type=media.mime_type, data=media.data)

    # ── AI ────────────────────────────────────────────────────

    async def generate_ai_reply(
        self,
        generator: AiGenerator,
        agent: AiAgentConfig,
        conversation_key: str,
        user_text: str,
        attachment: Optional[AiAttachment] = None,
    ) -> AiResponse:
        history = self.history.get(agent.id, conversation_key)
        reply = await generator.generate(user_text, attachment, history)
        self.history.append(
            agent.id, conversation_key,
            AiMessage(role=AiRole.USER, content=user_text),
            AiMessage(role=AiRole.MODEL, content=reply.content),
            max_length=agent.history_length,
        )
        parsed = parse_ai_response(reply, generator.content_config.wants_json)
        logger.info("ai_reply_generated", agent_id=agent.id, conversation_key=conversation_key,
                    type=parsed.type, tokens=parsed.total_token_count)
        return parsed

    async def reset_conversation(self, conversation_key: str) -> None:
        await self.chatbot.reset(conversation_key)
        self.history.clear_conversation(conversation_key)

    async def shutdown(self) -> None:
        await self.channels.shutdown_all()
        await self.chatbot.store.close()


# ══════════════════════════════════════════════════════════════
#  FACTORY
# ══════════════════════════════════════════════════════════════

ADAPTERS: dict[ChannelType, type[ChannelAdapter]] = {
    ChannelType.WHATSAPP: WhatsAppAdapter,
    ChannelType.TELEGRAM: TelegramAdapter,
    ChannelType.INSTAGRAM: InstagramAdapter,
}


async def create_orchestrator(settings: Settings = None,
                              chatbot_flow: ChatbotFlow = None) -> Orchestrator:
    """Build store, agents, driver and every enabled channel from settings."""
    settings = settings or get_settings()
    from database.store_factory import create_store

    if chatbot_flow is None:
        if not settings.chatbot.flows_file:
            raise ConfigError("chatbot.flows_file is not configured")
        chatbot_flow = load_chatbot_flow_from_file(Path(settings.chatbot.flows_file))

    chatbot = ChatBotService(
        store=create_store(settings.store),
        agents=AgentRegistry.from_settings(settings),
        key_suffix=settings.store.key_suffix,
        default_validation_message=settings.chatbot.default_validation_message,
    )

    registry = ChannelRegistry()
    for name, cfg in settings.channels.items():
        if not cfg.enabled:
            continue
        channel = ChannelType(name)
        registry.register(ADAPTERS[channel]())
    await registry.initialize_all(settings.channels)

    logger.info("orchestrator_created", channels=[c.value for c in registry.get_available()],
                flows=len(chatbot_flow.flows))
    return Orchestrator(chatbot, registry, chatbot_flow)
