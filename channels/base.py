"""
Channel Transports — Shared infrastructure for every messaging channel.

Provides:
- ChannelError: transport error taxonomy (not_authorized, rate_limited,
  transient, permanent), derived from HTTP status
- TokenBucketRateLimiter: async token bucket with configurable burst
- CircuitBreaker: failure-counting breaker with half-open probe
- ChannelMetrics: per-channel send/fail/latency tracking
- MessageDeduplicator / InputSanitizer: inbound hygiene
- ChannelAdapter: abstract base wrapping every send with resilience
- ChannelRegistry: adapter lookup, initialization, health checks
"""
from __future__ import annotations

import abc
import asyncio
import hashlib
import time
from typing import Any, Optional

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from models.schemas import ChannelType, DeliveryAck, MediaPayload, MediaRef, NormalizedMessage
from utils.errors import FlowError, TransportError, failure_for_status

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(TransportError):
    """Base exception for all channel operations."""

    failure_kind = "permanent"

    def __init__(self, message: str, channel: str = "", status_code: Optional[int] = None):
        self.channel = channel
        super().__init__(message, failure=self.failure_kind, status_code=status_code)


class NotAuthorizedError(ChannelError):
    failure_kind = "not_authorized"


class RateLimitedError(ChannelError):
    failure_kind = "rate_limited"


class TransientError(ChannelError):
    failure_kind = "transient"


class PermanentError(ChannelError):
    failure_kind = "permanent"


class CircuitOpenError(ChannelError):
    failure_kind = "transient"

    def __init__(self, channel: str = ""):
        super().__init__(f"Circuit breaker open for {channel}", channel)
        self.retryable = False


_ERRORS_BY_FAILURE: dict[str, type[ChannelError]] = {
    "not_authorized": NotAuthorizedError,
    "rate_limited": RateLimitedError,
    "transient": TransientError,
    "permanent": PermanentError,
}


def error_for_status(status_code: int, detail: str = "", channel: str = "") -> ChannelError:
    cls = _ERRORS_BY_FAILURE[failure_for_status(status_code)]
    message = f"HTTP {status_code}" + (f": {detail}" if detail else "")
    return cls(message, channel=channel, status_code=status_code)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ChannelError) and exc.retryable


# ══════════════════════════════════════════════════════════════
#  TOKEN BUCKET RATE LIMITER
# ══════════════════════════════════════════════════════════════

class TokenBucketRateLimiter:
    """
    Async token bucket rate limiter.
    Tokens refill at `rate` per second up to `burst` capacity.
    """

    def __init__(self, rate: float = 10.0, burst: int = 10):
        self.rate = rate
        self.burst = burst
        self._tokens: float = float(burst)
        self._last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self, timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        while True:
            async with self._lock:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(1.0 / max(self.rate, 0.001), remaining))

    def _refill(self):
        now = time.monotonic()
        self._tokens = min(self.burst, self._tokens + (now - self._last_refill) * self.rate)
        self._last_refill = now


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    closed → open (after threshold failures) → half_open (after timeout) →
    closed (on success) or open (on failure).
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = "closed"
        self._failure_count = 0
        self._opened_at: float = 0.0
        self._total_failures = 0
        self._total_successes = 0

    @property
    def state(self) -> str:
        if self._state == "open" and time.monotonic() - self._opened_at >= self.recovery_timeout:
            return "half_open"
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    def record_failure(self):
        self._total_failures += 1
        self._failure_count += 1
        if self.state == "half_open" or self._failure_count >= self.failure_threshold:
            self._open()

    def record_success(self):
        self._total_successes += 1
        if self.state == "half_open":
            self._close()
        else:
            self._failure_count = 0

    def _open(self):
        self._state = "open"
        self._opened_at = time.monotonic()
        logger.warning("circuit_opened", failures=self._failure_count)

    def _close(self):
        self._state = "closed"
        self._failure_count = 0

    def reset(self):
        self._close()

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "failure_count": self._failure_count,
            "total_failures": self._total_failures,
            "total_successes": self._total_successes,
        }


# ══════════════════════════════════════════════════════════════
#  CHANNEL METRICS
# ══════════════════════════════════════════════════════════════

class ChannelMetrics:
    """Tracks per-channel send, failure and latency metrics."""

    def __init__(self, channel: ChannelType):
        self.channel = channel
        self.messages_sent: int = 0
        self.messages_failed: int = 0
        self.messages_received: int = 0
        self._latencies: list[float] = []
        self._errors: list[str] = []

    def record_send(self, latency_ms: float = 0.0):
        self.messages_sent += 1
        if latency_ms > 0:
            self._latencies.append(latency_ms)

    def record_failure(self, error: str = ""):
        self.messages_failed += 1
        if error:
            self._errors.append(error)

    def record_inbound(self):
        self.messages_received += 1

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    @property
    def failure_rate(self) -> float:
        total = self.messages_sent + self.messages_failed
        return self.messages_failed / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel.value,
            "sent": self.messages_sent,
            "failed": self.messages_failed,
            "received": self.messages_received,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "failure_rate": round(self.failure_rate, 4),
            "recent_errors": self._errors[-10:],
        }


# ══════════════════════════════════════════════════════════════
#  MESSAGE DEDUPLICATOR
# ══════════════════════════════════════════════════════════════

class MessageDeduplicator:
    """TTL-based seen-set; webhooks are redelivered on slow acks."""

    def __init__(self, ttl_seconds: float = 300.0, max_size: int = 5000):
        self.ttl = ttl_seconds
        self.max_size = max_size
        self._seen: dict[str, float] = {}

    def is_duplicate(self, key: str) -> bool:
        self._prune()
        if key in self._seen:
            return True
        if len(self._seen) >= self.max_size:
            oldest = min(self._seen, key=self._seen.get)
            del self._seen[oldest]
        self._seen[key] = time.monotonic()
        return False

    def check_content(self, content: str, recipient: str) -> bool:
        h = hashlib.md5(f"{recipient}:{content}".encode()).hexdigest()
        return self.is_duplicate(f"content_{h}")

    def _prune(self):
        cutoff = time.monotonic() - self.ttl
        for k in [k for k, t in self._seen.items() if t < cutoff]:
            del self._seen[k]


# ══════════════════════════════════════════════════════════════
#  INPUT SANITIZER
# ══════════════════════════════════════════════════════════════

class InputSanitizer:
    def __init__(self, max_length: int = 10000):
        self.max_length = max_length

    def sanitize(self, content: str) -> str:
        if not content:
            return ""
        content = "".join(c for c in content if c in ("\n", "\t", "\r") or ord(c) >= 32)
        if len(content) > self.max_length:
            content = content[: self.max_length] + "... [truncated]"
        return content.strip()

    def sanitize_metadata(self, metadata: dict[str, Any]) -> dict[str, Any]:
        safe = {}
        for k, v in metadata.items():
            if isinstance(v, (str, int, float, bool)) or v is None:
                safe[k] = v
            elif isinstance(v, dict):
                safe[k] = self.sanitize_metadata(v)
            elif isinstance(v, list):
                safe[k] = [self.sanitize_metadata(i) if isinstance(i, dict) else i for i in v[:50]]
            else:
                safe[k] = str(v)[:500]
        return safe


# ══════════════════════════════════════════════════════════════
#  CHANNEL ADAPTER — Abstract Base
# ══════════════════════════════════════════════════════════════

class ChannelAdapter(abc.ABC):
    """
    Base class for all channel transports.

    Subclasses implement _parse_inbound, _do_send and download_media. The
    base class wraps every send with rate limiting, circuit breaker,
    retry on retryable failures, and metrics.
    """

    channel_type: ChannelType
    max_attempts = 3

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None):
        self._initialized = False
        self._config: dict[str, Any] = {}
        self._client = http_client
        self._breaker = CircuitBreaker()
        self._rate_limiter: Optional[TokenBucketRateLimiter] = None
        self._metrics = ChannelMetrics(self.channel_type)
        self._deduplicator = MessageDeduplicator()
        self._sanitizer = InputSanitizer()
        self._retry_wait = wait_exponential(multiplier=0.5, max=10)

    @property
    def name(self) -> str:
        return self.channel_type.value

    # ── Abstract hooks ────────────────────────────────────────

    @abc.abstractmethod
    async def initialize(self, config: dict[str, Any]) -> None:
        ...

    @abc.abstractmethod
    async def _parse_inbound(self, raw_payload: dict[str, Any]) -> Optional[NormalizedMessage]:
        ...

    @abc.abstractmethod
    async def _do_send(self, recipient: str, text: str,
                       media: Optional[MediaPayload]) -> dict[str, Any]:
        """Deliver one message. Returns the vendor response; must carry `message_id`."""
        ...

    @abc.abstractmethod
    async def download_media(self, media_ref: MediaRef) -> MediaPayload:
        ...

    # ── Setup helpers ─────────────────────────────────────────

    def _init_rate_limiter(self, config: dict[str, Any], rate: float, burst: int):
        rate = float(config.get("rate_per_second", rate))
        if rate > 0:
            self._rate_limiter = TokenBucketRateLimiter(rate=rate, burst=int(config.get("burst", burst)))

    def conversation_key(self, sender_id: str, session: str = "") -> str:
        """Key that partitions conversation state: `user@session`."""
        return f"{sender_id}@{session or self._config.get('session') or self.name}"

    # ── HTTP ──────────────────────────────────────────────────

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(30.0, connect=10.0))
        return self._client

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        client = await self._get_client()
        try:
            resp = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientError(f"timeout: {e}", channel=self.name) from e
        except httpx.HTTPError as e:
            raise TransientError(str(e) or type(e).__name__, channel=self.name) from e
        if resp.status_code >= 400:
            logger.error("channel_api_error", channel=self.name,
                         status=resp.status_code, body=resp.text[:500])
            raise error_for_status(resp.status_code, resp.text[:300], channel=self.name)
        return resp

    async def _request_json(self, method: str, url: str, **kwargs) -> dict[str, Any]:
        resp = await self._request(method, url, **kwargs)
        if not resp.content:
            return {}
        try:
            data = resp.json()
        except ValueError as e:
            raise PermanentError(f"non-JSON response: {resp.text[:200]}", channel=self.name) from e
        return data if isinstance(data, dict) else {"data": data}

    # ── Outbound ──────────────────────────────────────────────

    async def send_outbound(self, recipient: str, text: str = "",
                            media: Optional[MediaPayload] = None) -> DeliveryAck:
        if not self._initialized:
            raise PermanentError(f"{self.name} adapter not initialized", channel=self.name)
        start = time.monotonic()

        if self._rate_limiter and not await self._rate_limiter.acquire(timeout=10.0):
            self._metrics.record_failure("rate_limited")
            raise RateLimitedError(f"Rate limit exceeded for {self.name}", channel=self.name)

        if self._breaker.is_open:
            self._metrics.record_failure("circuit_open")
            raise CircuitOpenError(self.name)

        attempts = 0
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=self._retry_wait,
                retry=retry_if_exception(_is_retryable),
                reraise=True,
            ):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    try:
                        result = await self._do_send(recipient, text, media)
                    except ChannelError as e:
                        if e.failure != "permanent":
                            self._breaker.record_failure()
                        logger.warning("channel_send_attempt_failed", channel=self.name,
                                       attempt=attempts, failure=e.failure, error=str(e))
                        raise
        except ChannelError as e:
            self._metrics.record_failure(str(e))
            raise

        latency = (time.monotonic() - start) * 1000
        self._breaker.record_success()
        self._metrics.record_send(latency)
        logger.info("channel_message_sent", channel=self.name, recipient=recipient,
                    attempts=attempts, latency_ms=round(latency, 1))
        return DeliveryAck(
            channel=self.channel_type,
            recipient=recipient,
            message_id=str(result.get("message_id", "")),
            attempts=attempts,
            latency_ms=round(latency, 1),
            raw=result,
        )

    # ── Inbound ───────────────────────────────────────────────

    async def decode_inbound(self, raw_payload: dict[str, Any]) -> Optional[NormalizedMessage]:
        """Normalize a webhook payload. None for non-message events and duplicates."""
        msg = await self._parse_inbound(raw_payload)
        if msg is None:
            return None

        if msg.message_id and self._deduplicator.is_duplicate(f"{self.name}:{msg.message_id}"):
            logger.info("channel_inbound_duplicate", channel=self.name, message_id=msg.message_id)
            return None

        self._metrics.record_inbound()
        return msg.model_copy(update={
            "text": self._sanitizer.sanitize(msg.text),
            "metadata": self._sanitizer.sanitize_metadata(msg.metadata),
        })

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        return {
            "channel": self.name,
            "initialized": self._initialized,
            "circuit_breaker": self._breaker.stats,
            "metrics": self._metrics.to_dict(),
        }

    async def shutdown(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()


# ══════════════════════════════════════════════════════════════
#  CHANNEL REGISTRY
# ══════════════════════════════════════════════════════════════

class ChannelRegistry:
    def __init__(self):
        self._adapters: dict[ChannelType, ChannelAdapter] = {}

    def register(self, adapter: ChannelAdapter):
        self._adapters[adapter.channel_type] = adapter

    def get(self, channel_type: ChannelType) -> Optional[ChannelAdapter]:
        try:
            return self._adapters.get(ChannelType(channel_type))
        except ValueError:
            return None

    def get_available(self) -> list[ChannelType]:
        return list(self._adapters.keys())

    def get_healthy_channels(self) -> list[ChannelType]:
        return [ch for ch, a in self._adapters.items() if not a._breaker.is_open]

    async def health_check_all(self) -> dict[str, Any]:
        return {ch.value: await a.health_check() for ch, a in self._adapters.items()}

    async def initialize_all(self, configs: dict[str, Any]):
        for ch, adapter in self._adapters.items():
            ch_cfg = configs.get(ch.value, {})
            # ChannelConfig dataclass → dict so adapters can call .get()
            if hasattr(ch_cfg, "credentials"):
                ch_cfg = ch_cfg.credentials
            try:
                await adapter.initialize(ch_cfg)
            except FlowError as e:
                logger.error("channel_init_failed", channel=ch.value, error=str(e))

    async def shutdown_all(self):
        for ch, adapter in self._adapters.items():
            try:
                await adapter.shutdown()
            except httpx.HTTPError as e:
                logger.warning("channel_shutdown_failed", channel=ch.value, error=str(e))
