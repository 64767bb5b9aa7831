"""Instagram Channel Adapter — Instagram Messaging API (Graph API)."""
from __future__ import annotations

from typing import Any, Optional

import structlog

from channels.base import ChannelAdapter, PermanentError
from models.schemas import ChannelType, MediaPayload, MediaRef, NormalizedMessage
from utils.errors import ConfigError

logger = structlog.get_logger()

DEFAULT_GRAPH_URL = "https://graph.instagram.com/v21.0"

_ATTACHMENT_MIME = {
    "image": "image/jpeg",
    "video": "video/mp4",
    "audio": "audio/mpeg",
}


class InstagramAdapter(ChannelAdapter):
    """Direct messages to and from an Instagram professional account."""

    channel_type = ChannelType.INSTAGRAM

    def __init__(self, http_client=None):
        super().__init__(http_client)
        self._access_token: str = ""
        self._account_id: str = ""
        self._graph_url: str = DEFAULT_GRAPH_URL

    async def initialize(self, config: dict[str, Any]) -> None:
        self._config = dict(config)
        self._access_token = config.get("access_token", "")
        self._account_id = str(config.get("account_id", ""))
        self._graph_url = (config.get("graph_url") or DEFAULT_GRAPH_URL).rstrip("/")
        if not self._access_token or not self._account_id:
            raise ConfigError("instagram requires access_token and account_id")
        self._init_rate_limiter(config, rate=10, burst=20)
        self._initialized = True
        logger.info("instagram_initialized", account_id=self._account_id)

    async def _do_send(self, recipient: str, text: str,
                       media: Optional[MediaPayload]) -> dict[str, Any]:
        if media is None:
            message: dict[str, Any] = {"text": text}
        else:
            if not media.url:
                raise PermanentError("instagram media must be sent by url", channel=self.name)
            kind = media.mime_type.split("/", 1)[0]
            message = {"attachment": {
                "type": kind if kind in _ATTACHMENT_MIME else "file",
                "payload": {"url": media.url},
            }}

        data = await self._request_json(
            "POST", f"{self._graph_url}/{self._account_id}/messages",
            json={"recipient": {"id": recipient}, "message": message},
            headers={"Authorization": f"Bearer {self._access_token}"},
        )
        return {**data, "message_id": data.get("message_id", "")}

    async def download_media(self, media_ref: MediaRef) -> MediaPayload:
        if not media_ref.url:
            raise PermanentError(f"no url for media {media_ref.id}", channel=self.name)
        resp = await self._request("GET", media_ref.url)
        return MediaPayload(
            data=resp.content,
            mime_type=media_ref.mime_type or resp.headers.get("content-type", "application/octet-stream"),
            filename=media_ref.filename,
            url=media_ref.url,
        )

    async def _parse_inbound(self, raw_payload: dict[str, Any]) -> Optional[NormalizedMessage]:
        try:
            event = raw_payload["entry"][0]["messaging"][0]
        except (IndexError, KeyError, TypeError):
            return None

        msg = event.get("message")
        if not msg or msg.get("is_echo"):
            return None
        sender = str(event.get("sender", {}).get("id", ""))
        if not sender:
            return None

        media_ref: Optional[MediaRef] = None
        attachments = msg.get("attachments") or []
        if attachments:
            att = attachments[0]
            media_ref = MediaRef(
                id=msg.get("mid", ""),
                mime_type=_ATTACHMENT_MIME.get(att.get("type", ""), ""),
                url=att.get("payload", {}).get("url", ""),
            )

        return NormalizedMessage(
            channel=self.channel_type,
            sender_id=sender,
            conversation_key=self.conversation_key(sender),
            text=msg.get("text", ""),
            media_ref=media_ref,
            message_id=msg.get("mid", ""),
            metadata={"recipient_id": event.get("recipient", {}).get("id", ""),
                      "timestamp": event.get("timestamp")},
        )
