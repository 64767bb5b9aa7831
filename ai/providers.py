"""
Vendor adapters for the AiGenerator contract.

  - GeminiGenerator    google-genai SDK (client.aio.models.generate_content)
  - OpenAIGenerator    openai SDK chat completions
  - DeepSeekGenerator  OpenAI-compatible endpoint at api.deepseek.com
  - OllamaGenerator    local Ollama server, POST {host}/api/chat via httpx
  - OtherGenerator     placeholder vendor, always replies with empty content
"""
from __future__ import annotations

import base64
from typing import Any, Optional

import httpx
import structlog

from ai.base import AiGenerator
from models.schemas import AiAttachment, AiMessage, AiRole
from utils.errors import AgentError

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  GEMINI
# ══════════════════════════════════════════════════════════════

class GeminiGenerator(AiGenerator):
    """Gemini API. System instruction goes in GenerateContentConfig."""

    vendor = "gemini"
    default_model = "gemini-1.5-flash"

    _ROLES = {
        AiRole.USER: "user",
        AiRole.MODEL: "model",
        AiRole.ASSISTANT: "model",
    }

    def __init__(self, api_key: str = "", model: str = "", host: str = "", client: Any = None):
        super().__init__(api_key=api_key, model=model, host=host)
        self._client = client

    def _reset_client(self) -> None:
        self._client = None

    def _get_client(self):
        if self._client is None:
            if not self.api_key:
                raise AgentError("api key is required", vendor=self.vendor)
            from google import genai
            self._client = genai.Client(api_key=self.api_key)
            logger.info("ai_client_initialized", vendor=self.vendor, model=self.model)
        return self._client

    @staticmethod
    def _content(role: str, text: str, attachment: Optional[AiAttachment]):
        from google.genai import types
        parts = [types.Part(text=text)]
        if attachment is not None:
            parts.append(types.Part.from_bytes(data=attachment.data, mime_type=attachment.mime_type))
        return types.Content(role=role, parts=parts)

    def _build_request(self, prompt: str, attachment: Optional[AiAttachment],
                       history: list[AiMessage]):
        from google.genai import types

        system_parts = [self.system_instruction] if self.system_instruction else []
        contents = []
        for msg in history:
            if msg.role == AiRole.SYSTEM:
                system_parts.append(msg.content)
                continue
            contents.append(self._content(self._ROLES[msg.role], msg.content, msg.attachment))
        contents.append(self._content("user", prompt, attachment))

        cfg = self.content_config
        mime = None
        if cfg.wants_json:
            mime = "application/json"
        elif cfg.response_mime_type:
            mime = "text/plain"
        config = types.GenerateContentConfig(
            system_instruction="\n\n".join(system_parts) or None,
            temperature=cfg.temperature,
            top_p=cfg.top_p,
            top_k=cfg.top_k,
            candidate_count=cfg.candidate_count,
            max_output_tokens=cfg.max_output_tokens,
            stop_sequences=cfg.stop_sequences or None,
            presence_penalty=cfg.presence_penalty,
            frequency_penalty=cfg.frequency_penalty,
            seed=cfg.seed,
            response_mime_type=mime,
        )
        return contents, config

    async def _generate(self, prompt, attachment, history) -> AiMessage:
        client = self._get_client()
        contents, config = self._build_request(prompt, attachment, history)
        resp = await client.aio.models.generate_content(
            model=self.model, contents=contents, config=config,
        )
        usage = getattr(resp, "usage_metadata", None)
        return AiMessage(
            role=AiRole.MODEL,
            content=resp.text or "",
            total_token_count=(getattr(usage, "total_token_count", 0) or 0) if usage else 0,
        )


# ══════════════════════════════════════════════════════════════
#  OPENAI / DEEPSEEK
# ══════════════════════════════════════════════════════════════

class OpenAIGenerator(AiGenerator):
    """Chat completions. System instruction is the leading system message."""

    vendor = "openai"
    default_model = "gpt-4o"
    base_url: Optional[str] = None
    supports_images = True

    _ROLES = {
        AiRole.USER: "user",
        AiRole.MODEL: "assistant",
        AiRole.ASSISTANT: "assistant",
        AiRole.SYSTEM: "system",
    }

    def __init__(self, api_key: str = "", model: str = "", host: str = "", client: Any = None):
        super().__init__(api_key=api_key, model=model, host=host)
        self._client = client

    def _reset_client(self) -> None:
        self._client = None

    def _get_client(self):
        if self._client is None:
            if not self.api_key:
                raise AgentError("api key is required", vendor=self.vendor)
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=self.api_key, base_url=self.host or self.base_url)
            logger.info("ai_client_initialized", vendor=self.vendor, model=self.model)
        return self._client

    def _user_content(self, text: str, attachment: Optional[AiAttachment]) -> Any:
        if attachment is None:
            return text
        if not self.supports_images or not attachment.mime_type.startswith("image/"):
            logger.warning("ai_attachment_dropped", vendor=self.vendor, mime_type=attachment.mime_type)
            return text
        encoded = base64.b64encode(attachment.data).decode("ascii")
        return [
            {"type": "text", "text": text},
            {"type": "image_url", "image_url": {"url": f"data:{attachment.mime_type};base64,{encoded}"}},
        ]

    def build_messages(self, prompt: str, attachment: Optional[AiAttachment],
                       history: list[AiMessage]) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        if self.system_instruction:
            messages.append({"role": "system", "content": self.system_instruction})
        for msg in history:
            role = self._ROLES[msg.role]
            content = self._user_content(msg.content, msg.attachment) if role == "user" else msg.content
            messages.append({"role": role, "content": content})
        messages.append({"role": "user", "content": self._user_content(prompt, attachment)})
        return messages

    def build_options(self) -> dict[str, Any]:
        cfg = self.content_config
        options: dict[str, Any] = {
            "temperature": cfg.temperature,
            "top_p": cfg.top_p,
            "max_tokens": cfg.max_output_tokens,
            "stop": cfg.stop_sequences or None,
            "presence_penalty": cfg.presence_penalty,
            "frequency_penalty": cfg.frequency_penalty,
            "seed": cfg.seed,
            "n": cfg.candidate_count,
        }
        options = {k: v for k, v in options.items() if v is not None}
        if cfg.wants_json:
            options["response_format"] = {"type": "json_object"}
        return options

    async def _generate(self, prompt, attachment, history) -> AiMessage:
        client = self._get_client()
        resp = await client.chat.completions.create(
            model=self.model,
            messages=self.build_messages(prompt, attachment, history),
            **self.build_options(),
        )
        if not resp.choices:
            raise AgentError("no choices in response", vendor=self.vendor)
        usage = getattr(resp, "usage", None)
        return AiMessage(
            role=AiRole.MODEL,
            content=resp.choices[0].message.content or "",
            total_token_count=(getattr(usage, "total_tokens", 0) or 0) if usage else 0,
        )


class DeepSeekGenerator(OpenAIGenerator):
    vendor = "deepseek"
    default_model = "deepseek-chat"
    base_url = "https://api.deepseek.com"
    supports_images = False


# ══════════════════════════════════════════════════════════════
#  OLLAMA
# ══════════════════════════════════════════════════════════════

class OllamaGenerator(AiGenerator):
    """Local Ollama server. Non-streaming /api/chat."""

    vendor = "ollama"
    default_host = "http://localhost:11434"
    num_ctx = 8192

    _ROLES = {
        AiRole.USER: "user",
        AiRole.MODEL: "assistant",
        AiRole.ASSISTANT: "assistant",
        AiRole.SYSTEM: "system",
    }

    def __init__(self, api_key: str = "", model: str = "", host: str = "",
                 client: Optional[httpx.AsyncClient] = None, timeout: float = 120.0):
        super().__init__(api_key=api_key, model=model, host=host or self.default_host)
        self._client = client
        self._timeout = timeout

    def set_host(self, host: str) -> None:
        super().set_host(host or self.default_host)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    def _message(self, role: str, text: str, attachment: Optional[AiAttachment]) -> dict[str, Any]:
        msg: dict[str, Any] = {"role": role, "content": text}
        if attachment is not None and attachment.mime_type.startswith("image/"):
            msg["images"] = [base64.b64encode(attachment.data).decode("ascii")]
        return msg

    def build_payload(self, prompt: str, attachment: Optional[AiAttachment],
                      history: list[AiMessage]) -> dict[str, Any]:
        messages = []
        if self.system_instruction:
            messages.append({"role": "system", "content": self.system_instruction})
        for msg in history:
            messages.append(self._message(self._ROLES[msg.role], msg.content, msg.attachment))
        messages.append(self._message("user", prompt, attachment))

        cfg = self.content_config
        options: dict[str, Any] = {
            "num_ctx": self.num_ctx,
            "temperature": cfg.temperature,
            "top_p": cfg.top_p,
            "top_k": cfg.top_k,
            "seed": cfg.seed,
            "num_predict": cfg.max_output_tokens,
            "stop": cfg.stop_sequences or None,
            "presence_penalty": cfg.presence_penalty,
            "frequency_penalty": cfg.frequency_penalty,
        }
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "stream": False,
            "options": {k: v for k, v in options.items() if v is not None},
        }
        if cfg.wants_json:
            payload["format"] = "json"
        return payload

    async def _generate(self, prompt, attachment, history) -> AiMessage:
        url = f"{self.host.rstrip('/')}/api/chat"
        resp = await self._get_client().post(url, json=self.build_payload(prompt, attachment, history))
        if resp.status_code >= 400:
            raise AgentError(f"HTTP {resp.status_code}: {resp.text[:300]}", vendor=self.vendor)
        try:
            data = resp.json()
            content = data["message"]["content"]
        except (ValueError, KeyError, TypeError) as e:
            raise AgentError(f"malformed response: {e}", vendor=self.vendor) from e
        tokens = int(data.get("prompt_eval_count", 0) or 0) + int(data.get("eval_count", 0) or 0)
        return AiMessage(role=AiRole.MODEL, content=content or "", total_token_count=tokens)


# ══════════════════════════════════════════════════════════════
#  OTHER
# ══════════════════════════════════════════════════════════════

class OtherGenerator(AiGenerator):
    """Unconfigured vendor. Replies with an empty model message."""

    vendor = "other"

    async def generate(self, prompt, attachment=None, history=None) -> AiMessage:
        return AiMessage(role=AiRole.MODEL, content="")

    async def _generate(self, prompt, attachment, history) -> AiMessage:
        return AiMessage(role=AiRole.MODEL, content="")
