"""
AI Generator — uniform contract over LLM vendors.

Every vendor adapter exposes the same setters and one coroutine:

    generate(prompt, attachment=None, history=None) -> AiMessage

Guarantees shared by all adapters:
  - history is replayed in order, role labels mapped to the vendor's terms
  - the system instruction travels on the vendor's system channel
  - when content_config.response_mime_type mentions json, the reply is
    requested as JSON and checked to parse before it is returned
  - every failure surfaces as AgentError; vendor SDK types never escape
"""
from __future__ import annotations

import abc
import json
import re
from typing import Optional

import structlog

from models.schemas import AiAttachment, AiMessage, ContentConfig
from utils.errors import AgentError

logger = structlog.get_logger()

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def strip_code_fence(text: str) -> str:
    """Models sometimes wrap JSON in a markdown fence; unwrap it."""
    m = _FENCE_RE.match(text.strip())
    return m.group(1) if m else text.strip()


class AiGenerator(abc.ABC):
    """Base class for all vendor adapters."""

    vendor: str = "other"
    default_model: str = ""

    def __init__(self, api_key: str = "", model: str = "", host: str = ""):
        self.api_key = api_key
        self.model = model or self.default_model
        self.host = host
        self.system_instruction = ""
        self.content_config = ContentConfig()

    # ── Configuration ─────────────────────────────────────────

    def set_api_key(self, api_key: str) -> None:
        if api_key != self.api_key:
            self.api_key = api_key
            self._reset_client()

    def set_system_instruction(self, instruction: str) -> None:
        if instruction:
            self.system_instruction = instruction

    def set_model(self, model: str) -> None:
        if model:
            self.model = model

    def set_host(self, host: str) -> None:
        if host != self.host:
            self.host = host
            self._reset_client()

    def set_content_config(self, config: Optional[ContentConfig]) -> None:
        if config is not None:
            self.content_config = config

    def _reset_client(self) -> None:
        pass

    # ── Generation ────────────────────────────────────────────

    async def generate(
        self,
        prompt: str,
        attachment: Optional[AiAttachment] = None,
        history: Optional[list[AiMessage]] = None,
    ) -> AiMessage:
        if not self.model:
            raise AgentError("model is required", vendor=self.vendor)

        try:
            reply = await self._generate(prompt, attachment, list(history or []))
        except AgentError:
            raise
        except Exception as e:
            logger.error("ai_generate_failed", vendor=self.vendor, model=self.model, error=str(e))
            raise AgentError(str(e), vendor=self.vendor) from e

        if self.content_config.wants_json:
            reply.content = strip_code_fence(reply.content)
            try:
                json.loads(reply.content)
            except ValueError as e:
                raise AgentError(f"malformed JSON response: {e}", vendor=self.vendor) from e

        logger.info("ai_generated", vendor=self.vendor, model=self.model,
                    tokens=reply.total_token_count)
        return reply

    @abc.abstractmethod
    async def _generate(
        self,
        prompt: str,
        attachment: Optional[AiAttachment],
        history: list[AiMessage],
    ) -> AiMessage:
        ...
