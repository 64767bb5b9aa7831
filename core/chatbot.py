"""
Chat-Bot Session Driver — one inbound message in, zero or more replies out.

Each turn:
  1. Keyword match on trim(lower(text))
  2. Load the latest frame for conversation_key + ":state"
  3. Pick the flow: keyword > menu option of the previous menu >
     continuation of a form or agent flow > initial_flow (new
     conversations only)
  4. Resolve the flow: agent hand-off, menu render, or form step
  5. Nothing resolved: fallback text or fallback flow

Frames are appended, never rewritten. Turns on the same conversation key
are serialized with an asyncio lock so frame order matches arrival order.
Validation failures re-ask the same question. Other errors are logged and
surface to the user only as the flow's generic error_response; state
writes and transport failures propagate so the caller can retry.
"""
from __future__ import annotations

import asyncio
import json
import weakref
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Union

import structlog
import yaml
from pydantic import ValidationError

from ai.base import AiGenerator
from ai.factory import AgentRegistry
from config.settings import get_settings
from core.validators import validate_answer
from database.store_base import BaseStateStore
from flow_engine.registry import FunctionRegistry
from models.schemas import (
    AiAgentConfig, AiResponse, ChatbotFlow, ConversationFrame, FallbackType,
    Flow, FlowType, FrameStatus, NormalizedMessage,
)
from utils.errors import (
    ConfigError, FlowError, InputValidationError, StateError, TransportError,
)

logger = structlog.get_logger()

# on_reply(sender, user_text, response, conversation_key, total_token_count)
OnReply = Callable[[str, str, str, str, int], Awaitable[Any]]

# on_ai_generate(generator, agent, sender, conversation_key, user_text)
OnAiGenerate = Callable[
    [AiGenerator, AiAgentConfig, str, str, str], Awaitable[Optional[AiResponse]]
]


def render_menu(flow: Flow) -> str:
    lines = [f"[{opt.input}] {opt.display}" for opt in flow.options]
    return f"{flow.text}\n\n" + "\n\n".join(lines)


def load_chatbot_flow(source: Union[ChatbotFlow, dict, str, bytes]) -> ChatbotFlow:
    """Build a ChatbotFlow from a dict or a JSON document."""
    if isinstance(source, ChatbotFlow):
        return source
    try:
        if isinstance(source, (str, bytes)):
            return ChatbotFlow.model_validate_json(source)
        return ChatbotFlow.model_validate(source)
    except ValidationError as e:
        raise ConfigError(f"invalid chatbot flow: {e}") from e


def load_chatbot_flow_from_file(path: Union[str, Path]) -> ChatbotFlow:
    path = Path(path)
    try:
        text = path.read_text()
    except OSError as e:
        raise ConfigError(f"cannot read chatbot flow {path}: {e}") from e
    if path.suffix in (".yaml", ".yml"):
        try:
            data = yaml.safe_load(text) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"invalid YAML in {path}: {e}") from e
        return load_chatbot_flow(data)
    return load_chatbot_flow(text)


@dataclass
class _Turn:
    msg: NormalizedMessage
    conversation_key: str
    state_key: str
    text: str
    trigger: str
    chatbot_flow: ChatbotFlow
    on_reply: OnReply
    on_ai_generate: Optional[OnAiGenerate]

    @property
    def sender(self) -> str:
        return self.msg.sender_id


class ChatBotService:
    """
    Drives conversations through a ChatbotFlow.

    Form submit handlers are registered under the form's flow key and are
    called with the collected answers once the last field validates.
    """

    def __init__(
        self,
        store: BaseStateStore = None,
        agents: AgentRegistry = None,
        registry: FunctionRegistry = None,
        key_suffix: str = None,
        default_validation_message: str = None,
    ):
        settings = get_settings()
        if store is None:
            from database.store_factory import get_store
            store = get_store()
        self.store = store
        self.agents = agents or AgentRegistry.from_settings(settings)
        self.registry = registry or FunctionRegistry()
        self.key_suffix = key_suffix if key_suffix is not None else settings.store.key_suffix
        self.default_validation_message = (
            default_validation_message or settings.chatbot.default_validation_message
        )
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    # ── Registration ──────────────────────────────────────────

    def register_function(self, name: str, handler: Callable) -> None:
        self.registry.register(name, handler)

    def register_functions(self, names: list[str], handler: Callable) -> None:
        self.registry.register_many(names, handler)

    # ── State ─────────────────────────────────────────────────

    def state_key(self, conversation_key: str) -> str:
        return conversation_key + self.key_suffix

    def _lock_for(self, conversation_key: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_key] = lock
        return lock

    async def reset(self, conversation_key: str) -> None:
        """Forget the conversation so the next message starts over."""
        async with self._lock_for(conversation_key):
            await self.store.clear(self.state_key(conversation_key))
        logger.info("chatbot_conversation_reset", conversation_key=conversation_key)

    async def _load_frame(self, turn: _Turn) -> Optional[ConversationFrame]:
        try:
            return await self.store.latest(turn.state_key)
        except StateError as e:
            logger.warning("chatbot_state_unavailable", key=turn.state_key, error=str(e))
            return None

    async def _save(self, turn: _Turn, flow_key: str, flow: Optional[Flow], step: int = 0,
                    status: FrameStatus = FrameStatus.NONE,
                    collected: Optional[dict[str, Any]] = None) -> ConversationFrame:
        frame = ConversationFrame(
            flow_key=flow_key,
            step_index=step,
            status=status,
            user_input=turn.text,
            collected_data=dict(collected or {}),
            flow=flow.model_dump(mode="json", exclude={"agent": {"api_key"}}) if flow else None,
        )
        await self.store.append(turn.state_key, frame)
        return frame

    async def _emit(self, turn: _Turn, text: str, tokens: int = 0) -> None:
        if not text:
            return
        await turn.on_reply(turn.sender, turn.text, text, turn.conversation_key, tokens)

    # ── Entry point ───────────────────────────────────────────

    async def run(
        self,
        msg: NormalizedMessage,
        conversation_key: str,
        user_text: str,
        chatbot_flow: ChatbotFlow,
        on_reply: OnReply,
        on_ai_generate: Optional[OnAiGenerate] = None,
    ) -> None:
        if chatbot_flow is None:
            raise ConfigError("chatbot flow not found")

        turn = _Turn(
            msg=msg,
            conversation_key=conversation_key,
            state_key=self.state_key(conversation_key),
            text=user_text,
            trigger=user_text.strip().lower(),
            chatbot_flow=chatbot_flow,
            on_reply=on_reply,
            on_ai_generate=on_ai_generate,
        )

        async with self._lock_for(conversation_key):
            try:
                await self._dispatch(turn)
            except (StateError, TransportError) as e:
                logger.error("chatbot_turn_failed", conversation_key=conversation_key,
                             kind=e.kind, error=str(e))
                raise
            except FlowError as e:
                logger.error("chatbot_turn_failed", conversation_key=conversation_key,
                             kind=e.kind, error=str(e))
                error_response = chatbot_flow.error_response or get_settings().chatbot.error_response
                await self._emit(turn, error_response)

    async def _dispatch(self, turn: _Turn) -> None:
        cf = turn.chatbot_flow
        selected = self._match_keyword(cf, turn.trigger)
        step, status, collected = 0, FrameStatus.NONE, {}

        frame = await self._load_frame(turn)
        prev = cf.flows.get(frame.flow_key) if frame is not None else None

        if selected:
            logger.info("chatbot_keyword_matched", conversation_key=turn.conversation_key,
                        flow=selected)
        elif prev is not None and prev.type == FlowType.MENU:
            option = next((o for o in prev.options if o.input.strip().lower() == turn.trigger), None)
            if option is not None:
                if option.next_flow:
                    selected = option.next_flow
                elif option.response:
                    await self._emit(turn, option.response)
                    await self._save(turn, frame.flow_key, prev)
                    return
        elif prev is not None:
            selected = frame.flow_key
            step, status = frame.step_index, frame.status
            collected = dict(frame.collected_data)
        elif frame is None and cf.initial_flow:
            selected = cf.initial_flow

        if selected:
            await self._enter(turn, selected, step, status, collected)
        else:
            await self._fallback(turn)

    @staticmethod
    def _match_keyword(cf: ChatbotFlow, trigger: str) -> str:
        for word, flow_key in cf.keywords.items():
            if word.strip().lower() == trigger:
                return flow_key
        return ""

    # ── Flow resolution ───────────────────────────────────────

    async def _enter(self, turn: _Turn, flow_key: str, step: int = 0,
                     status: FrameStatus = FrameStatus.NONE,
                     collected: Optional[dict[str, Any]] = None) -> None:
        flow = turn.chatbot_flow.flows.get(flow_key)
        if flow is None:
            raise ConfigError(f"flow {flow_key} not found")

        if flow.type == FlowType.AGENT:
            await self._hand_to_agent(turn, flow)
            await self._save(turn, flow_key, flow)
        elif flow.type == FlowType.MENU:
            await self._emit(turn, render_menu(flow))
            await self._save(turn, flow_key, flow)
        else:
            await self._advance_form(turn, flow_key, flow, step, status, collected or {})

    async def _fallback(self, turn: _Turn) -> None:
        cf = turn.chatbot_flow
        if cf.fallback_response_type == FallbackType.FLOW:
            logger.info("chatbot_fallback", conversation_key=turn.conversation_key,
                        flow=cf.fallback_response)
            await self._enter(turn, cf.fallback_response)
            return
        await self._emit(turn, cf.fallback_response)

    async def _hand_to_agent(self, turn: _Turn, flow: Flow) -> None:
        if turn.on_ai_generate is None:
            raise ConfigError("agent flow reached without an AI generate handler")
        agent = self.agents.resolve(flow.agent_id, flow.agent)
        generator = self.agents.generator_for(agent)
        logger.info("chatbot_agent_handoff", conversation_key=turn.conversation_key,
                    agent_id=agent.id, vendor=agent.type.value)
        reply = await turn.on_ai_generate(
            generator, agent, turn.sender, turn.conversation_key, turn.text,
        )
        if reply is not None:
            await self._emit(turn, reply.response, reply.total_token_count)

    # ── Forms ─────────────────────────────────────────────────

    async def _advance_form(self, turn: _Turn, flow_key: str, flow: Flow, step: int,
                            status: FrameStatus, collected: dict[str, Any]) -> None:
        if step >= len(flow.steps):
            logger.debug("chatbot_form_complete", conversation_key=turn.conversation_key,
                         flow=flow_key)
            return

        current = flow.steps[step]
        if status != FrameStatus.WAITING_INPUT:
            await self._emit(turn, current.question)
            await self._save(turn, flow_key, flow, step, FrameStatus.WAITING_INPUT, collected)
            return

        try:
            validate_answer(current.validation, turn.text, field=current.field,
                            default_message=self.default_validation_message)
        except InputValidationError as e:
            logger.info("chatbot_validation_failed", conversation_key=turn.conversation_key,
                        flow=flow_key, field=current.field)
            await self._emit(turn, str(e))
            await self._save(turn, flow_key, flow, step, FrameStatus.WAITING_INPUT, collected)
            return

        collected[current.field] = turn.text
        await self._save(turn, flow_key, flow, step, FrameStatus.NONE, collected)

        if step + 1 == len(flow.steps):
            await self._complete_form(turn, flow_key, flow, collected)
            return

        step += 1
        await self._emit(turn, flow.steps[step].question)
        await self._save(turn, flow_key, flow, step, FrameStatus.WAITING_INPUT, collected)

    async def _complete_form(self, turn: _Turn, flow_key: str, flow: Flow,
                             collected: dict[str, Any]) -> None:
        logger.info("chatbot_form_completed", conversation_key=turn.conversation_key,
                    flow=flow_key, fields=list(collected))
        if self.registry.has(flow_key):
            await self.registry.submit(flow_key, collected)

        await self._emit(turn, flow.completion_message)

        if not flow.back_to_flow:
            await self._save(turn, flow_key, flow, len(flow.steps), FrameStatus.NONE, collected)
            return

        target_key = flow.back_to_flow
        target = turn.chatbot_flow.flows[target_key]
        if target.type == FlowType.MENU:
            await self._emit(turn, render_menu(target))
            await self._save(turn, target_key, target)
        elif target.type == FlowType.FORM:
            await self._advance_form(turn, target_key, target, 0, FrameStatus.NONE, {})
        else:
            await self._save(turn, target_key, target)
