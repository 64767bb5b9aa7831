"""
Tests for the channel transports.

Coverage:
  Base:      error taxonomy, retry, rate limiting, circuit breaker, metrics,
             dedup, sanitizing, registry
  WhatsApp:  send text/media, inbound parse, webhook verification, media download
  Telegram:  send method selection, inbound parse, getFile download
  Instagram: send, inbound parse, echo filtering
"""
import json

import httpx
import pytest
from tenacity import wait_none

from channels.base import (
    ChannelRegistry, ChannelMetrics, CircuitBreaker, CircuitOpenError, InputSanitizer,
    MessageDeduplicator, NotAuthorizedError, PermanentError, RateLimitedError,
    TokenBucketRateLimiter, TransientError, error_for_status,
)
from channels.instagram_adapter import InstagramAdapter
from channels.telegram_adapter import TelegramAdapter, send_method
from channels.whatsapp_adapter import WhatsAppAdapter, media_kind
from models.schemas import ChannelType, MediaPayload, MediaRef
from utils.errors import ConfigError

WA_CONFIG = {
    "phone_number_id": "12345",
    "access_token": "test_token",
    "verify_token": "my_verify",
    "session": "main",
}


# ── Fixtures ──────────────────────────────────────────

class FakeGraph:
    """MockTransport handler answering from a queue of (status, body) per path."""

    def __init__(self, routes=None):
        self.routes = {k: list(v) for k, v in (routes or {}).items()}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get(request.url.path)
        if not queue:
            return httpx.Response(404, json={"error": "no route"})
        status, body = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(body, bytes):
            return httpx.Response(status, content=body, headers={"Content-Type": "image/jpeg"})
        return httpx.Response(status, json=body)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


async def whatsapp(graph: FakeGraph, **overrides) -> WhatsAppAdapter:
    adapter = WhatsAppAdapter(http_client=graph.client())
    adapter._retry_wait = wait_none()
    await adapter.initialize({**WA_CONFIG, **overrides})
    return adapter


def wa_payload(message: dict, phone_number_id: str = "12345", name: str = "John") -> dict:
    return {"entry": [{"changes": [{"value": {
        "metadata": {"phone_number_id": phone_number_id},
        "messages": [{"from": "919876543210", "id": "wamid.1", **message}],
        "contacts": [{"profile": {"name": name}}],
    }}]}]}


WA_SENT = (200, {"messages": [{"id": "wamid.out"}]})


# ══════════════════════════════════════════════════════════════
#  BASE — Error taxonomy
# ══════════════════════════════════════════════════════════════

class TestErrorForStatus:
    @pytest.mark.parametrize("status,cls,failure,retryable", [
        (401, NotAuthorizedError, "not_authorized", False),
        (403, NotAuthorizedError, "not_authorized", False),
        (429, RateLimitedError, "rate_limited", True),
        (500, TransientError, "transient", True),
        (503, TransientError, "transient", True),
        (400, PermanentError, "permanent", False),
        (404, PermanentError, "permanent", False),
    ])
    def test_mapping(self, status, cls, failure, retryable):
        err = error_for_status(status, "detail", channel="whatsapp")
        assert type(err) is cls
        assert err.failure == failure
        assert err.retryable is retryable
        assert err.status_code == status
        assert err.kind == "transport_error"
        assert str(err) == f"HTTP {status}: detail"

    def test_circuit_open_not_retryable(self):
        assert CircuitOpenError("whatsapp").retryable is False


# ══════════════════════════════════════════════════════════════
#  BASE — Rate limiter, breaker, metrics, hygiene
# ══════════════════════════════════════════════════════════════

class TestTokenBucketRateLimiter:
    @pytest.mark.asyncio
    async def test_acquire_within_burst(self):
        rl = TokenBucketRateLimiter(rate=10, burst=5)
        for _ in range(5):
            assert await rl.acquire(timeout=0.1) is True

    @pytest.mark.asyncio
    async def test_acquire_exceeds_burst(self):
        rl = TokenBucketRateLimiter(rate=10, burst=2)
        assert await rl.acquire(timeout=0.1) is True
        assert await rl.acquire(timeout=0.1) is True
        assert await rl.acquire(timeout=0.05) is False


class TestCircuitBreaker:
    def test_opens_after_threshold(self):
        cb = CircuitBreaker(failure_threshold=3, recovery_timeout=60)
        cb.record_failure()
        cb.record_failure()
        assert cb.state == "closed"
        cb.record_failure()
        assert cb.is_open

    def test_half_open_success_closes(self):
        cb = CircuitBreaker(failure_threshold=1, recovery_timeout=0)
        cb.record_failure()
        assert cb.state == "half_open"
        cb.record_success()
        assert cb.state == "closed"


class TestChannelMetrics:
    def test_record_and_query(self):
        m = ChannelMetrics(ChannelType.TELEGRAM)
        m.record_send(100.0)
        m.record_send(200.0)
        m.record_failure("boom")
        m.record_inbound()
        assert m.avg_latency_ms == 150.0
        assert 0.3 < m.failure_rate < 0.4
        d = m.to_dict()
        assert (d["sent"], d["failed"], d["received"]) == (2, 1, 1)
        assert d["recent_errors"] == ["boom"]


class TestHygiene:
    def test_dedup(self):
        dedup = MessageDeduplicator()
        assert dedup.is_duplicate("a") is False
        assert dedup.is_duplicate("a") is True

    def test_dedup_evicts_oldest_when_full(self):
        dedup = MessageDeduplicator(max_size=2)
        dedup.is_duplicate("a")
        dedup.is_duplicate("b")
        dedup.is_duplicate("c")
        assert dedup.is_duplicate("a") is False

    def test_sanitize_strips_control_chars(self):
        assert InputSanitizer().sanitize("  hi\x00\x07 there \n") == "hi there"

    def test_sanitize_truncates(self):
        out = InputSanitizer(max_length=5).sanitize("abcdefgh")
        assert out == "abcde... [truncated]"


# ══════════════════════════════════════════════════════════════
#  BASE — Send resilience (through the WhatsApp adapter)
# ══════════════════════════════════════════════════════════════

class TestSendOutbound:
    @pytest.mark.asyncio
    async def test_retries_transient_then_succeeds(self):
        graph = FakeGraph({"/v21.0/12345/messages": [(503, {"error": "busy"}), WA_SENT]})
        adapter = await whatsapp(graph)
        ack = await adapter.send_outbound("+91 98765-43210", "hello")
        assert ack.message_id == "wamid.out"
        assert ack.attempts == 2
        assert ack.channel == ChannelType.WHATSAPP
        assert len(graph.requests) == 2

    @pytest.mark.asyncio
    async def test_permanent_failure_not_retried(self):
        graph = FakeGraph({"/v21.0/12345/messages": [(400, {"error": "bad number"})]})
        adapter = await whatsapp(graph)
        with pytest.raises(PermanentError) as exc_info:
            await adapter.send_outbound("919876543210", "hello")
        assert exc_info.value.status_code == 400
        assert len(graph.requests) == 1
        assert adapter._breaker.stats["failure_count"] == 0

    @pytest.mark.asyncio
    async def test_not_authorized_surfaces(self):
        graph = FakeGraph({"/v21.0/12345/messages": [(401, {"error": "expired"})]})
        adapter = await whatsapp(graph)
        with pytest.raises(NotAuthorizedError):
            await adapter.send_outbound("919876543210", "hello")
        assert len(graph.requests) == 1

    @pytest.mark.asyncio
    async def test_retries_exhausted(self):
        graph = FakeGraph({"/v21.0/12345/messages": [(500, {"error": "down"})]})
        adapter = await whatsapp(graph)
        with pytest.raises(TransientError):
            await adapter.send_outbound("919876543210", "hello")
        assert len(graph.requests) == adapter.max_attempts
        assert adapter._metrics.messages_failed == 1

    @pytest.mark.asyncio
    async def test_open_circuit_blocks_send(self):
        graph = FakeGraph({"/v21.0/12345/messages": [WA_SENT]})
        adapter = await whatsapp(graph)
        adapter._breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=60)
        adapter._breaker.record_failure()
        with pytest.raises(CircuitOpenError):
            await adapter.send_outbound("919876543210", "hello")
        assert graph.requests == []

    @pytest.mark.asyncio
    async def test_uninitialized(self):
        with pytest.raises(PermanentError, match="not initialized"):
            await WhatsAppAdapter().send_outbound("1", "hi")

    @pytest.mark.asyncio
    async def test_rate_limited(self):
        graph = FakeGraph({"/v21.0/12345/messages": [WA_SENT]})
        adapter = await whatsapp(graph)
        adapter._rate_limiter = TokenBucketRateLimiter(rate=0.001, burst=1)
        await adapter.send_outbound("919876543210", "one")
        adapter._rate_limiter.acquire = _never_acquire
        with pytest.raises(RateLimitedError):
            await adapter.send_outbound("919876543210", "two")


async def _never_acquire(timeout: float = 0.0) -> bool:
    return False


# ══════════════════════════════════════════════════════════════
#  WHATSAPP
# ══════════════════════════════════════════════════════════════

class TestWhatsAppAdapter:
    @pytest.mark.asyncio
    async def test_initialize_requires_credentials(self):
        with pytest.raises(ConfigError):
            await WhatsAppAdapter().initialize({"phone_number_id": "1"})

    @pytest.mark.asyncio
    async def test_send_text_payload(self):
        graph = FakeGraph({"/v21.0/12345/messages": [WA_SENT]})
        adapter = await whatsapp(graph)
        await adapter.send_outbound("+91 98765-43210", "Test message")

        request = graph.requests[0]
        assert request.headers["Authorization"] == "Bearer test_token"
        assert json.loads(request.content) == {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": "919876543210",
            "type": "text",
            "text": {"preview_url": False, "body": "Test message"},
        }

    @pytest.mark.asyncio
    async def test_send_media_by_link(self):
        graph = FakeGraph({"/v21.0/12345/messages": [WA_SENT]})
        adapter = await whatsapp(graph)
        media = MediaPayload(url="https://cdn/x.pdf", mime_type="application/pdf", filename="x.pdf")
        await adapter.send_outbound("919876543210", "Your invoice", media)
        body = json.loads(graph.requests[0].content)
        assert body["type"] == "document"
        assert body["document"] == {"link": "https://cdn/x.pdf", "caption": "Your invoice",
                                    "filename": "x.pdf"}

    @pytest.mark.asyncio
    async def test_send_media_upload(self):
        graph = FakeGraph({
            "/v21.0/12345/media": [(200, {"id": "media_9"})],
            "/v21.0/12345/messages": [WA_SENT],
        })
        adapter = await whatsapp(graph)
        media = MediaPayload(data=b"OggS", mime_type="audio/ogg")
        await adapter.send_outbound("919876543210", "ignored for audio", media)
        body = json.loads(graph.requests[-1].content)
        assert body["type"] == "audio"
        assert body["audio"] == {"id": "media_9"}

    def test_media_kind(self):
        assert media_kind("image/png") == "image"
        assert media_kind("video/mp4") == "video"
        assert media_kind("application/zip") == "document"

    def test_phone_normalization(self):
        assert WhatsAppAdapter._normalize_phone("+91 98765-43210") == "919876543210"

    @pytest.mark.asyncio
    async def test_webhook_verification(self):
        adapter = await whatsapp(FakeGraph())
        params = {"hub.mode": "subscribe", "hub.verify_token": "my_verify", "hub.challenge": "42"}
        assert adapter.verify_webhook(params) == "42"
        assert adapter.verify_webhook({**params, "hub.verify_token": "wrong"}) is None

    @pytest.mark.asyncio
    async def test_inbound_text(self):
        adapter = await whatsapp(FakeGraph())
        msg = await adapter.decode_inbound(wa_payload({"type": "text", "text": {"body": "menu"}}))
        assert msg.channel == ChannelType.WHATSAPP
        assert msg.sender_id == "919876543210"
        assert msg.sender_name == "John"
        assert msg.text == "menu"
        assert msg.conversation_key == "919876543210@main"
        assert msg.message_id == "wamid.1"
        assert msg.metadata["message_type"] == "text"

    @pytest.mark.asyncio
    async def test_session_map(self):
        adapter = await whatsapp(FakeGraph(), sessions={"777": "sales"})
        msg = await adapter.decode_inbound(
            wa_payload({"type": "text", "text": {"body": "hi"}}, phone_number_id="777"))
        assert msg.conversation_key == "919876543210@sales"

    @pytest.mark.asyncio
    async def test_inbound_button_reply(self):
        adapter = await whatsapp(FakeGraph())
        msg = await adapter.decode_inbound(wa_payload({
            "type": "interactive",
            "interactive": {"type": "button_reply",
                            "button_reply": {"id": "btn_yes", "title": "Yes"}},
        }))
        assert msg.text == "Yes"
        assert msg.metadata["reply_id"] == "btn_yes"
        assert msg.metadata["message_type"] == "button_reply"

    @pytest.mark.asyncio
    async def test_inbound_image(self):
        adapter = await whatsapp(FakeGraph())
        msg = await adapter.decode_inbound(wa_payload({
            "type": "image",
            "image": {"id": "media_123", "caption": "Receipt", "mime_type": "image/jpeg"},
        }))
        assert msg.text == "Receipt"
        assert msg.media_ref == MediaRef(id="media_123", mime_type="image/jpeg")

    @pytest.mark.asyncio
    async def test_inbound_location(self):
        adapter = await whatsapp(FakeGraph())
        msg = await adapter.decode_inbound(wa_payload({
            "type": "location", "location": {"latitude": 12.97, "longitude": 77.59},
        }))
        assert "12.97" in msg.text
        assert msg.metadata["longitude"] == 77.59

    @pytest.mark.asyncio
    async def test_status_update_is_not_a_message(self):
        adapter = await whatsapp(FakeGraph())
        payload = {"entry": [{"changes": [{"value": {
            "statuses": [{"id": "wamid.1", "status": "delivered"}],
        }}]}]}
        assert await adapter.decode_inbound(payload) is None

    @pytest.mark.asyncio
    async def test_redelivered_webhook_dropped(self):
        adapter = await whatsapp(FakeGraph())
        payload = wa_payload({"type": "text", "text": {"body": "hi"}})
        assert await adapter.decode_inbound(payload) is not None
        assert await adapter.decode_inbound(payload) is None
        assert adapter._metrics.messages_received == 1

    @pytest.mark.asyncio
    async def test_download_media(self):
        graph = FakeGraph({
            "/v21.0/media_123": [(200, {"url": "https://lookaside.fbsbx.com/m/123",
                                        "mime_type": "image/jpeg"})],
            "/m/123": [(200, b"\xff\xd8jpeg")],
        })
        adapter = await whatsapp(graph)
        media = await adapter.download_media(MediaRef(id="media_123"))
        assert media.data == b"\xff\xd8jpeg"
        assert media.mime_type == "image/jpeg"
        assert graph.requests[0].url.params["phone_number_id"] == "12345"


# ══════════════════════════════════════════════════════════════
#  TELEGRAM
# ══════════════════════════════════════════════════════════════

class TestTelegramAdapter:
    async def make(self, graph: FakeGraph) -> TelegramAdapter:
        adapter = TelegramAdapter(http_client=graph.client())
        adapter._retry_wait = wait_none()
        await adapter.initialize({"bot_token": "T0K", "session": "main"})
        return adapter

    @pytest.mark.parametrize("mime,expected", [
        ("image/png", ("sendPhoto", "photo")),
        ("audio/mpeg", ("sendAudio", "audio")),
        ("video/mp4", ("sendVideo", "video")),
        ("application/pdf", ("sendDocument", "document")),
        ("", ("sendDocument", "document")),
    ])
    def test_send_method(self, mime, expected):
        assert send_method(mime) == expected

    @pytest.mark.asyncio
    async def test_send_text(self):
        graph = FakeGraph({"/botT0K/sendMessage": [(200, {"ok": True, "result": {"message_id": 77}})]})
        adapter = await self.make(graph)
        ack = await adapter.send_outbound("555", "hello")
        assert ack.message_id == "77"
        assert json.loads(graph.requests[0].content) == {"chat_id": "555", "text": "hello"}

    @pytest.mark.asyncio
    async def test_send_photo_by_url(self):
        graph = FakeGraph({"/botT0K/sendPhoto": [(200, {"ok": True, "result": {"message_id": 5}})]})
        adapter = await self.make(graph)
        await adapter.send_outbound("555", "look", MediaPayload(url="https://x/p.png",
                                                                mime_type="image/png"))
        assert json.loads(graph.requests[0].content) == {
            "chat_id": "555", "photo": "https://x/p.png", "caption": "look",
        }

    @pytest.mark.asyncio
    async def test_api_not_ok(self):
        graph = FakeGraph({"/botT0K/sendMessage": [(200, {"ok": False, "description": "chat not found"})]})
        adapter = await self.make(graph)
        with pytest.raises(PermanentError, match="chat not found"):
            await adapter.send_outbound("555", "hello")

    @pytest.mark.asyncio
    async def test_inbound_text(self):
        adapter = await self.make(FakeGraph())
        msg = await adapter.decode_inbound({
            "update_id": 1,
            "message": {"message_id": 9, "chat": {"id": 555},
                        "from": {"first_name": "Ana", "last_name": "B", "username": "ana"},
                        "text": "menu"},
        })
        assert msg.sender_id == "555"
        assert msg.sender_name == "Ana B"
        assert msg.conversation_key == "555@main"
        assert msg.message_id == "555:9"
        assert msg.text == "menu"

    @pytest.mark.asyncio
    async def test_inbound_photo_uses_largest_size(self):
        adapter = await self.make(FakeGraph())
        msg = await adapter.decode_inbound({"message": {
            "message_id": 10, "chat": {"id": 555}, "caption": "receipt",
            "photo": [{"file_id": "small"}, {"file_id": "large"}],
        }})
        assert msg.text == "receipt"
        assert msg.media_ref.id == "large"
        assert msg.media_ref.mime_type == "image/jpeg"

    @pytest.mark.asyncio
    async def test_non_message_update(self):
        adapter = await self.make(FakeGraph())
        assert await adapter.decode_inbound({"update_id": 2, "callback_query": {}}) is None

    @pytest.mark.asyncio
    async def test_download_media(self):
        graph = FakeGraph({
            "/botT0K/getFile": [(200, {"ok": True, "result": {"file_path": "photos/p1.jpg"}})],
            "/file/botT0K/photos/p1.jpg": [(200, b"jpegbytes")],
        })
        adapter = await self.make(graph)
        media = await adapter.download_media(MediaRef(id="large"))
        assert media.data == b"jpegbytes"
        assert media.mime_type == "image/jpeg"
        assert media.filename == "p1.jpg"


# ══════════════════════════════════════════════════════════════
#  INSTAGRAM
# ══════════════════════════════════════════════════════════════

class TestInstagramAdapter:
    async def make(self, graph: FakeGraph) -> InstagramAdapter:
        adapter = InstagramAdapter(http_client=graph.client())
        adapter._retry_wait = wait_none()
        await adapter.initialize({"access_token": "IGT", "account_id": "17841", "session": "main"})
        return adapter

    @pytest.mark.asyncio
    async def test_send_text(self):
        graph = FakeGraph({"/v21.0/17841/messages": [(200, {"recipient_id": "99", "message_id": "m_1"})]})
        adapter = await self.make(graph)
        ack = await adapter.send_outbound("99", "hello")
        assert ack.message_id == "m_1"
        request = graph.requests[0]
        assert request.headers["Authorization"] == "Bearer IGT"
        assert json.loads(request.content) == {"recipient": {"id": "99"}, "message": {"text": "hello"}}

    @pytest.mark.asyncio
    async def test_media_needs_url(self):
        adapter = await self.make(FakeGraph())
        with pytest.raises(PermanentError, match="url"):
            await adapter.send_outbound("99", "", MediaPayload(data=b"x", mime_type="image/png"))

    @pytest.mark.asyncio
    async def test_inbound(self):
        adapter = await self.make(FakeGraph())
        msg = await adapter.decode_inbound({"entry": [{"messaging": [{
            "sender": {"id": "99"}, "recipient": {"id": "17841"}, "timestamp": 1,
            "message": {"mid": "m_2", "text": "menu",
                        "attachments": [{"type": "image", "payload": {"url": "https://cdn/i.jpg"}}]},
        }]}]})
        assert msg.conversation_key == "99@main"
        assert msg.text == "menu"
        assert msg.media_ref.url == "https://cdn/i.jpg"
        assert msg.media_ref.mime_type == "image/jpeg"

    @pytest.mark.asyncio
    async def test_echo_ignored(self):
        adapter = await self.make(FakeGraph())
        payload = {"entry": [{"messaging": [{
            "sender": {"id": "17841"}, "message": {"mid": "m_3", "text": "sent by us", "is_echo": True},
        }]}]}
        assert await adapter.decode_inbound(payload) is None


# ══════════════════════════════════════════════════════════════
#  REGISTRY
# ══════════════════════════════════════════════════════════════

class TestChannelRegistry:
    @pytest.mark.asyncio
    async def test_initialize_all_skips_misconfigured(self):
        from config.settings import ChannelConfig
        registry = ChannelRegistry()
        wa, tg = WhatsAppAdapter(), TelegramAdapter()
        registry.register(wa)
        registry.register(tg)
        await registry.initialize_all({
            "whatsapp": ChannelConfig(enabled=True, credentials=WA_CONFIG),
            "telegram": ChannelConfig(enabled=True, credentials={}),
        })
        assert wa._initialized and not tg._initialized
        assert registry.get("whatsapp") is wa
        assert registry.get("sms") is None

    @pytest.mark.asyncio
    async def test_health(self):
        registry = ChannelRegistry()
        registry.register(WhatsAppAdapter())
        health = await registry.health_check_all()
        assert health["whatsapp"]["circuit_breaker"]["state"] == "closed"
        assert registry.get_healthy_channels() == [ChannelType.WHATSAPP]
