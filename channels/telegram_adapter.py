"""
Telegram Channel Adapter — Telegram Bot API integration.

Provides:
- Inbound: message / edited_message updates with text, photo, document,
  audio, voice and video
- Outbound: sendMessage, or sendPhoto / sendAudio / sendVideo / sendDocument
  chosen by MIME type (upload or URL)
- Media download via getFile
"""
from __future__ import annotations

import mimetypes
from typing import Any, Optional

import structlog

from channels.base import ChannelAdapter, PermanentError
from models.schemas import ChannelType, MediaPayload, MediaRef, NormalizedMessage
from utils.errors import ConfigError

logger = structlog.get_logger()

DEFAULT_API_URL = "https://api.telegram.org"

# mime major type → (method, field)
_SEND_METHODS = {
    "image": ("sendPhoto", "photo"),
    "audio": ("sendAudio", "audio"),
    "video": ("sendVideo", "video"),
}


def send_method(mime_type: str) -> tuple[str, str]:
    major = (mime_type or "").split("/", 1)[0]
    return _SEND_METHODS.get(major, ("sendDocument", "document"))


class TelegramAdapter(ChannelAdapter):

    channel_type = ChannelType.TELEGRAM

    def __init__(self, http_client=None):
        super().__init__(http_client)
        self._bot_token: str = ""
        self._api_url: str = DEFAULT_API_URL

    async def initialize(self, config: dict[str, Any]) -> None:
        self._config = dict(config)
        self._bot_token = config.get("bot_token", "")
        self._api_url = (config.get("api_url") or DEFAULT_API_URL).rstrip("/")
        if not self._bot_token:
            raise ConfigError("telegram requires bot_token")
        self._init_rate_limiter(config, rate=30, burst=30)
        self._initialized = True
        logger.info("telegram_initialized")

    def _method_url(self, method: str) -> str:
        return f"{self._api_url}/bot{self._bot_token}/{method}"

    async def _call(self, method: str, **kwargs) -> dict[str, Any]:
        data = await self._request_json("POST", self._method_url(method), **kwargs)
        if not data.get("ok", False):
            raise PermanentError(data.get("description", f"{method} failed"), channel=self.name)
        return data.get("result") or {}

    # ── Send ──────────────────────────────────────────────────

    async def _do_send(self, recipient: str, text: str,
                       media: Optional[MediaPayload]) -> dict[str, Any]:
        if media is None:
            result = await self._call("sendMessage", json={"chat_id": recipient, "text": text})
        else:
            method, field = send_method(media.mime_type)
            caption = text or media.caption
            if media.url:
                body: dict[str, Any] = {"chat_id": recipient, field: media.url}
                if caption:
                    body["caption"] = caption
                result = await self._call(method, json=body)
            else:
                form = {"chat_id": recipient}
                if caption:
                    form["caption"] = caption
                filename = media.filename or "file" + (mimetypes.guess_extension(media.mime_type) or "")
                result = await self._call(
                    method, data=form, files={field: (filename, media.data, media.mime_type)},
                )
        return {**result, "message_id": result.get("message_id", "")}

    # ── Media download ────────────────────────────────────────

    async def download_media(self, media_ref: MediaRef) -> MediaPayload:
        info = await self._call("getFile", json={"file_id": media_ref.id})
        file_path = info.get("file_path")
        if not file_path:
            raise PermanentError(f"no file_path for {media_ref.id}", channel=self.name)
        url = f"{self._api_url}/file/bot{self._bot_token}/{file_path}"
        resp = await self._request("GET", url)
        mime_type = (
            media_ref.mime_type
            or mimetypes.guess_type(file_path)[0]
            or "application/octet-stream"
        )
        return MediaPayload(
            data=resp.content,
            mime_type=mime_type,
            filename=media_ref.filename or file_path.rsplit("/", 1)[-1],
        )

    # ── Inbound parsing ───────────────────────────────────────

    async def _parse_inbound(self, raw_payload: dict[str, Any]) -> Optional[NormalizedMessage]:
        msg = raw_payload.get("message") or raw_payload.get("edited_message")
        if not msg:
            return None

        chat_id = str(msg.get("chat", {}).get("id", ""))
        if not chat_id:
            return None
        sender = msg.get("from", {})
        sender_name = " ".join(
            p for p in (sender.get("first_name", ""), sender.get("last_name", "")) if p
        ) or sender.get("username", "")

        text = msg.get("text") or msg.get("caption") or ""
        media_ref: Optional[MediaRef] = None
        message_type = "text"
        if msg.get("photo"):
            largest = msg["photo"][-1]
            media_ref = MediaRef(id=largest.get("file_id", ""), mime_type="image/jpeg")
            message_type = "photo"
        else:
            for kind in ("document", "audio", "voice", "video"):
                if kind in msg:
                    item = msg[kind]
                    media_ref = MediaRef(
                        id=item.get("file_id", ""),
                        mime_type=item.get("mime_type", ""),
                        filename=item.get("file_name", ""),
                    )
                    message_type = kind
                    break

        return NormalizedMessage(
            channel=self.channel_type,
            sender_id=chat_id,
            sender_name=sender_name,
            conversation_key=self.conversation_key(chat_id),
            text=text,
            media_ref=media_ref,
            message_id=f"{chat_id}:{msg.get('message_id', '')}",
            metadata={
                "update_id": raw_payload.get("update_id"),
                "username": sender.get("username", ""),
                "message_type": message_type,
            },
        )
