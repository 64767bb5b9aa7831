"""
Core data models for the conversational flow engine.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import re
import time
from enum import Enum
from typing import Any, Optional

from pydantic import (
    AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator,
)

from utils.errors import ConfigError


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class StepType(str, Enum):
    FUNCTION = "function"
    API_CALL = "api_call"
    CONDITIONAL = "conditional"
    DELAY = "delay"
    PARALLEL = "parallel"
    WAIT_INPUT = "wait_input"


class FlowType(str, Enum):
    MENU = "menu"
    FORM = "form"
    AGENT = "agent"


class ValidationType(str, Enum):
    MIN_LENGTH = "min_length"
    EMAIL = "email"
    REGEX = "regex"


class FallbackType(str, Enum):
    TEXT = "text"
    FLOW = "flow"


class FrameStatus(str, Enum):
    NONE = ""
    WAITING_INPUT = "waiting_input"


class AgentType(str, Enum):
    GEMINI = "gemini"
    DEEPSEEK = "deepseek"
    OPENAI = "openai"
    OLLAMA = "ollama"
    OTHER = "other"


class AiRole(str, Enum):
    USER = "user"
    MODEL = "model"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ChannelType(str, Enum):
    WHATSAPP = "whatsapp"
    TELEGRAM = "telegram"
    INSTAGRAM = "instagram"


# ──────────────────────────────────────────────────────────────
#  Flow engine
# ──────────────────────────────────────────────────────────────

class FlowStep(BaseModel):
    """One node of a workflow. Control keys live inside `params`."""
    name: str
    description: str = ""
    type: StepType
    function: str = ""
    params: dict[str, Any] = Field(default_factory=dict)
    next_on_success: str = ""
    next_on_error: str = ""

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("step name must not be empty")
        return v


# ──────────────────────────────────────────────────────────────
#  AI agents
# ──────────────────────────────────────────────────────────────

class ContentConfig(BaseModel):
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    candidate_count: Optional[int] = None
    max_output_tokens: Optional[int] = None
    stop_sequences: list[str] = Field(default_factory=list)
    presence_penalty: Optional[float] = None
    frequency_penalty: Optional[float] = None
    seed: Optional[int] = None
    response_mime_type: str = ""

    @property
    def wants_json(self) -> bool:
        return "json" in self.response_mime_type.lower()


class AiAgentConfig(BaseModel):
    id: str
    name: str = ""
    type: AgentType = AgentType.OTHER
    api_key: str = ""
    model: str = ""
    system_instruction: str = ""
    host: str = ""
    content_config: ContentConfig = Field(default_factory=ContentConfig)
    history_length: int = 10


class AiAttachment(BaseModel):
    mime_type: str
    data: bytes


class AiMessage(BaseModel):
    role: AiRole = AiRole.USER
    content: str = ""
    attachment: Optional[AiAttachment] = None
    total_token_count: int = 0


class AiResponse(BaseModel):
    """Structured reply an agent is instructed to produce in JSON mode."""
    response: str = ""
    type: str = ""
    command: str = ""
    params: dict[str, Any] = Field(default_factory=dict)
    total_token_count: int = 0


# ──────────────────────────────────────────────────────────────
#  Chat-bot flows
# ──────────────────────────────────────────────────────────────

class FieldValidation(BaseModel):
    type: Optional[ValidationType] = None
    value: str = ""
    pattern: str = ""
    error_message: str = ""

    @field_validator("type", mode="before")
    @classmethod
    def _blank_type(cls, v: Any) -> Any:
        return v or None

    @field_validator("value", mode="before")
    @classmethod
    def _value_as_text(cls, v: Any) -> str:
        return "" if v is None else str(v)


class FormStep(BaseModel):
    field: str
    question: str = ""
    validation: Optional[FieldValidation] = None


class MenuOption(BaseModel):
    input: str
    display: str = ""
    next_flow: str = ""
    response: str = ""


class Flow(BaseModel):
    type: FlowType
    text: str = ""
    options: list[MenuOption] = Field(default_factory=list)
    default_response: str = ""
    steps: list[FormStep] = Field(default_factory=list)
    completion_message: str = ""
    back_to_flow: str = ""
    agent_id: str = ""
    agent: Optional[AiAgentConfig] = None

    @property
    def resolved_agent_id(self) -> str:
        return self.agent_id or (self.agent.id if self.agent else "")


class ChatbotFlow(BaseModel):
    """
    Declarative flow graph for one chat-bot.

    Building one checks that every keyword, option, fallback and
    back_to_flow target exists and that every regex rule compiles.
    """
    ref_id: str = ""
    keywords: dict[str, str] = Field(default_factory=dict)
    flows: dict[str, Flow] = Field(default_factory=dict)
    initial_flow: str = ""
    fallback_response_type: FallbackType = FallbackType.TEXT
    fallback_response: str = ""
    error_response: str = "Sorry, something went wrong. Please try again later."

    @model_validator(mode="after")
    def _check_references(self) -> "ChatbotFlow":
        missing: list[str] = []
        for word, key in self.keywords.items():
            if key not in self.flows:
                missing.append(f"keyword '{word}' -> '{key}'")
        for name, flow in self.flows.items():
            for opt in flow.options:
                if opt.next_flow and opt.next_flow not in self.flows:
                    missing.append(f"option '{name}/{opt.input}' -> '{opt.next_flow}'")
            if flow.back_to_flow and flow.back_to_flow not in self.flows:
                missing.append(f"back_to_flow '{name}' -> '{flow.back_to_flow}'")
            for step in flow.steps:
                rule = step.validation
                if rule and rule.type == ValidationType.REGEX:
                    try:
                        re.compile(rule.pattern or rule.value)
                    except re.error as e:
                        raise ConfigError(
                            f"invalid regex for field '{step.field}' in flow '{name}': {e}"
                        )
            if flow.type == FlowType.AGENT and not flow.resolved_agent_id:
                raise ConfigError(f"agent flow '{name}' has no agent_id")
        if self.initial_flow and self.initial_flow not in self.flows:
            missing.append(f"initial_flow -> '{self.initial_flow}'")
        if (self.fallback_response_type == FallbackType.FLOW
                and self.fallback_response not in self.flows):
            missing.append(f"fallback -> '{self.fallback_response}'")
        if missing:
            raise ConfigError("unknown flow references: " + ", ".join(missing))
        return self


class ConversationFrame(BaseModel):
    """One snapshot of conversation state. The latest frame is authoritative."""
    model_config = ConfigDict(populate_by_name=True)

    flow_key: str = Field("", alias="key")
    step_index: int = Field(0, alias="step")
    status: FrameStatus = FrameStatus.NONE
    user_input: str = Field(
        "", validation_alias=AliasChoices("user_input", "userInput"),
        serialization_alias="user_input",
    )
    collected_data: dict[str, Any] = Field(default_factory=dict)
    flow: Optional[dict[str, Any]] = None
    timestamp: float = Field(default_factory=time.time)

    @field_validator("collected_data", mode="before")
    @classmethod
    def _null_data(cls, v: Any) -> Any:
        return v or {}

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "ConversationFrame":
        return cls.model_validate_json(raw)


# ──────────────────────────────────────────────────────────────
#  Channels
# ──────────────────────────────────────────────────────────────

class MediaRef(BaseModel):
    """Channel-side handle for inbound media (WhatsApp media id, Telegram file_id)."""
    id: str
    mime_type: str = ""
    url: str = ""
    filename: str = ""


class MediaPayload(BaseModel):
    data: bytes = b""
    mime_type: str = "application/octet-stream"
    filename: str = ""
    url: str = ""
    caption: str = ""


class NormalizedMessage(BaseModel):
    channel: ChannelType
    sender_id: str
    sender_name: str = ""
    conversation_key: str
    text: str = ""
    media_ref: Optional[MediaRef] = None
    message_id: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)


class DeliveryAck(BaseModel):
    channel: ChannelType
    recipient: str
    message_id: str = ""
    status: str = "sent"
    attempts: int = 1
    latency_ms: float = 0.0
    raw: dict[str, Any] = Field(default_factory=dict)
