"""
WhatsApp Channel Adapter — WhatsApp Business Cloud API integration.

Provides:
- Webhook verification (hub.verify_token challenge)
- Phone number normalization
- phone_number_id → session mapping for conversation keys
- Inbound: text, interactive (button_reply, list_reply), image, audio,
  video, document, location
- Outbound: text, or media by id (uploaded) or by link
- Media download via the Graph API media endpoint
"""
from __future__ import annotations

import re
from typing import Any, Optional

import structlog

from channels.base import ChannelAdapter, PermanentError
from models.schemas import ChannelType, MediaPayload, MediaRef, NormalizedMessage
from utils.errors import ConfigError

logger = structlog.get_logger()

DEFAULT_GRAPH_URL = "https://graph.facebook.com/v21.0"

_MEDIA_TYPES = ("image", "audio", "video", "document", "sticker")


def media_kind(mime_type: str) -> str:
    """WhatsApp message type for a MIME type."""
    major = (mime_type or "").split("/", 1)[0]
    if major in ("image", "audio", "video"):
        return major
    return "document"


class WhatsAppAdapter(ChannelAdapter):
    """
    WhatsApp Business Cloud API adapter.

    One adapter serves one or more business numbers. Each inbound message is
    keyed by `sender@session`, where the session comes from the `sessions`
    map (phone_number_id → session name) or the default `session`.
    """

    channel_type = ChannelType.WHATSAPP

    def __init__(self, http_client=None):
        super().__init__(http_client)
        self._phone_number_id: str = ""
        self._access_token: str = ""
        self._verify_token: str = ""
        self._graph_url: str = DEFAULT_GRAPH_URL
        self._session: str = ""
        self._sessions: dict[str, str] = {}

    async def initialize(self, config: dict[str, Any]) -> None:
        self._config = dict(config)
        self._phone_number_id = str(config.get("phone_number_id", ""))
        self._access_token = config.get("access_token", "")
        self._verify_token = config.get("verify_token", "")
        self._graph_url = (config.get("graph_url") or DEFAULT_GRAPH_URL).rstrip("/")
        self._session = config.get("session", "")
        self._sessions = {str(k): v for k, v in (config.get("sessions") or {}).items()}
        if not self._access_token or not self._phone_number_id:
            raise ConfigError("whatsapp requires access_token and phone_number_id")
        self._init_rate_limiter(config, rate=80, burst=100)
        self._initialized = True
        logger.info("whatsapp_initialized", phone_number_id=self._phone_number_id)

    @property
    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._access_token}"}

    # ── Phone normalization ───────────────────────────────────

    @staticmethod
    def _normalize_phone(phone: str) -> str:
        """Normalize phone to digits only, stripping +, spaces, dashes."""
        return re.sub(r"[^\d]", "", phone)

    # ── Webhook verification ──────────────────────────────────

    def verify_webhook(self, params: dict[str, Any]) -> Optional[str]:
        """
        Verify the WhatsApp webhook subscription.
        Returns the challenge string on success, None on failure.
        """
        mode = params.get("hub.mode", "")
        token = params.get("hub.verify_token", "")
        challenge = params.get("hub.challenge", "")

        if mode == "subscribe" and self._verify_token and token == self._verify_token:
            return challenge
        logger.warning("whatsapp_webhook_verification_failed", mode=mode)
        return None

    # ── Sessions ──────────────────────────────────────────────

    def session_for(self, phone_number_id: str) -> str:
        return self._sessions.get(phone_number_id) or self._session or phone_number_id

    # ── Send ──────────────────────────────────────────────────

    async def _do_send(self, recipient: str, text: str,
                       media: Optional[MediaPayload]) -> dict[str, Any]:
        phone = self._normalize_phone(recipient)
        if not phone:
            raise PermanentError(f"invalid WhatsApp number: {recipient!r}", channel=self.name)

        payload: dict[str, Any] = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": phone,
        }
        if media is None:
            payload["type"] = "text"
            payload["text"] = {"preview_url": False, "body": text}
        else:
            kind = media_kind(media.mime_type)
            body: dict[str, Any] = {}
            if media.url:
                body["link"] = media.url
            else:
                body["id"] = await self.upload_media(media)
            caption = text or media.caption
            if caption and kind != "audio":
                body["caption"] = caption
            if kind == "document" and media.filename:
                body["filename"] = media.filename
            payload["type"] = kind
            payload[kind] = body

        url = f"{self._graph_url}/{self._phone_number_id}/messages"
        data = await self._request_json("POST", url, json=payload, headers=self._headers)
        messages = data.get("messages") or [{}]
        return {**data, "message_id": messages[0].get("id", "")}

    async def upload_media(self, media: MediaPayload) -> str:
        url = f"{self._graph_url}/{self._phone_number_id}/media"
        data = await self._request_json(
            "POST", url,
            headers=self._headers,
            data={"messaging_product": "whatsapp", "type": media.mime_type},
            files={"file": (media.filename or "file", media.data, media.mime_type)},
        )
        media_id = data.get("id")
        if not media_id:
            raise PermanentError("media upload returned no id", channel=self.name)
        logger.info("whatsapp_media_uploaded", media_id=media_id, mime_type=media.mime_type)
        return media_id

    # ── Media download ────────────────────────────────────────

    async def download_media(self, media_ref: MediaRef) -> MediaPayload:
        url, mime_type = media_ref.url, media_ref.mime_type
        if not url:
            meta = await self._request_json(
                "GET", f"{self._graph_url}/{media_ref.id}",
                params={"phone_number_id": self._phone_number_id},
                headers=self._headers,
            )
            url = meta.get("url", "")
            mime_type = mime_type or meta.get("mime_type", "")
            if not url:
                raise PermanentError(f"no download url for media {media_ref.id}", channel=self.name)

        resp = await self._request("GET", url, headers=self._headers)
        return MediaPayload(
            data=resp.content,
            mime_type=mime_type or resp.headers.get("content-type", "application/octet-stream"),
            filename=media_ref.filename,
            url=url,
        )

    # ── Inbound parsing ───────────────────────────────────────

    async def _parse_inbound(self, raw_payload: dict[str, Any]) -> Optional[NormalizedMessage]:
        """Parse WhatsApp Cloud API webhook payload."""
        try:
            value = raw_payload["entry"][0]["changes"][0]["value"]
        except (IndexError, KeyError, TypeError):
            return None

        # status updates (delivered/read) carry no messages
        messages = value.get("messages") or []
        if not messages:
            return None

        msg = messages[0]
        sender = msg.get("from", "")
        msg_type = msg.get("type", "text")
        if not sender:
            return None

        contacts = value.get("contacts") or [{}]
        sender_name = contacts[0].get("profile", {}).get("name", "")
        phone_number_id = str(value.get("metadata", {}).get("phone_number_id", self._phone_number_id))

        text = ""
        media_ref: Optional[MediaRef] = None
        extra_metadata: dict[str, Any] = {"message_type": msg_type}

        if msg_type == "text":
            text = msg.get("text", {}).get("body", "")

        elif msg_type == "interactive":
            interactive = msg.get("interactive", {})
            itype = interactive.get("type", "")
            reply = interactive.get(itype, {}) if itype in ("button_reply", "list_reply") else {}
            text = reply.get("title", "")
            extra_metadata["message_type"] = itype or msg_type
            extra_metadata["reply_id"] = reply.get("id", "")

        elif msg_type == "button":
            text = msg.get("button", {}).get("text", "")

        elif msg_type in _MEDIA_TYPES:
            media = msg.get(msg_type, {})
            text = media.get("caption", "")
            media_ref = MediaRef(
                id=media.get("id", ""),
                mime_type=media.get("mime_type", ""),
                filename=media.get("filename", ""),
            )

        elif msg_type == "location":
            loc = msg.get("location", {})
            lat, lng = loc.get("latitude", 0), loc.get("longitude", 0)
            text = f"Location: {lat}, {lng}"
            extra_metadata["latitude"] = lat
            extra_metadata["longitude"] = lng

        session = self.session_for(phone_number_id)
        return NormalizedMessage(
            channel=self.channel_type,
            sender_id=sender,
            sender_name=sender_name,
            conversation_key=self.conversation_key(sender, session),
            text=text,
            media_ref=media_ref,
            message_id=msg.get("id", ""),
            metadata={"phone_number_id": phone_number_id, "session": session, **extra_metadata},
        )
