"""Core types and DTOs for the image generation gateway."""

from __future__ import annotations

import asyncio
import base64
import uuid
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from image_gateway.core.logging import mask_secret


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ImageService(str, Enum):
    """Image generation services a caller can request."""

    POLLINATIONS_FLUX = "pollinations-flux"
    POLLINATIONS_TURBO = "pollinations-turbo"
    POLLINATIONS_ENHANCER = "pollinations-enhancer"
    POLLINATIONS_PLAYGROUND = "pollinations-playground"
    POLLINATIONS_KONTEXT = "pollinations-kontext"
    POLLINATIONS_KREA = "pollinations-krea"
    GEMINI_IMAGEN_3 = "gemini-imagen-3"
    GEMINI_IMAGEN_4_FAST = "gemini-imagen-4-fast"
    GEMINI_IMAGEN_4_ULTRA = "gemini-imagen-4-ultra"

    @property
    def is_premium(self) -> bool:
        """Premium (credentialed) tiers are served ahead of free ones."""
        return self.value.startswith("gemini-")


class RequestPriority(int, Enum):
    """Priority bands for the request queue (higher = served first)."""

    NORMAL = 0
    PREMIUM = 10
    ADMIN = 1000  # Admin/system traffic, always ahead of user traffic


class TaskStatus(str, Enum):
    """Lifecycle of a queued task."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    RETRY_PENDING = "retry_pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"  # Cleared or shut down before completion


class CacheStatus(str, Enum):
    HIT = "HIT"
    MISS = "MISS"


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


@dataclass
class CacheEntry:
    """A single cached value with access bookkeeping."""

    key: str
    value: Any
    created_at: float
    last_accessed_at: float
    access_count: int = 1
    size_bytes: int = 0


@dataclass
class CacheStats:
    entry_count: int = 0
    total_size_bytes: int = 0
    hit_rate: float = 0.0
    miss_rate: float = 0.0
    eviction_count: int = 0

    def to_dict(self) -> dict:
        return {
            "entry_count": self.entry_count,
            "total_size_bytes": self.total_size_bytes,
            "hit_rate": round(self.hit_rate, 4),
            "miss_rate": round(self.miss_rate, 4),
            "eviction_count": self.eviction_count,
        }


# ---------------------------------------------------------------------------
# Rate limiter
# ---------------------------------------------------------------------------


@dataclass
class RateLimitConfig:
    """Sliding-window limits applied to every identity."""

    max_requests: int = 5
    window_seconds: float = 60.0
    block_duration_seconds: float = 60.0
    retention_seconds: float = 3600.0


@dataclass
class RateLimitInfo:
    """Result of a rate limit check for one identity."""

    remaining: int
    reset_time: float
    blocked: bool
    block_until: float | None = None


@dataclass
class RateWindowState:
    """Per-identity sliding window state."""

    requests: deque[float] = field(default_factory=deque)
    block_until: float | None = None
    total_requests: int = 0
    first_request_at: float = 0.0
    last_seen_at: float = 0.0


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


@dataclass
class Credential:
    """One rotatable API key in a fixed-size pool."""

    index: int
    secret: str = field(repr=False)
    is_active: bool = True
    quota_exhausted: bool = False
    error_count: int = 0
    request_count: int = 0
    last_used_at: float = 0.0
    next_available_at: float = 0.0

    def is_available(self, now: float) -> bool:
        return self.is_active and not self.quota_exhausted and now >= self.next_available_at

    @property
    def masked(self) -> str:
        return mask_secret(self.secret)

    def describe(self) -> str:
        """Status line used in exhaustion errors (never includes the secret)."""
        activity = "active" if self.is_active else "disabled"
        quota = "quota exhausted" if self.quota_exhausted else "quota ok"
        return f"Key {self.index}: {activity}, {quota}"


@dataclass
class RetryConfig:
    """Attempt budget and backoff curve for credential rotation."""

    max_retries: int = 11
    base_delay: float = 1.0
    max_delay: float = 8.0
    backoff_multiplier: float = 2.0
    inter_attempt_delay_cap: float = 1.0  # Pause between failed attempts


@dataclass
class CredentialPolicy:
    """Cooldown and deactivation thresholds for credentials."""

    max_errors: int = 3
    deactivation_multiplier: int = 2
    quota_cooldown: float = 60 * 60
    error_cooldown: float = 30.0
    disabled_cooldown: float = 5 * 60

    @property
    def generic_error_threshold(self) -> int:
        return self.max_errors * self.deactivation_multiplier


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------


@dataclass
class QueuedTask:
    """A unit of work waiting in (or being served by) the request queue."""

    identity: str
    payload: str
    operation: Callable[[], Awaitable[Any]]
    future: asyncio.Future
    priority: int = RequestPriority.NORMAL.value
    task_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    enqueued_at: float = 0.0
    retry_count: int = 0
    status: TaskStatus = TaskStatus.PENDING


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------


@dataclass
class StyleParams:
    """Provider-agnostic generation parameters."""

    model: str = ""
    width: int = 1024
    height: int = 1024
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class GeneratedImage:
    """Binary image returned by a provider."""

    data: bytes = field(repr=False)
    content_type: str = "image/png"
    provider: str = ""
    model: str = ""
    credential_index: int = -1

    @property
    def size_bytes(self) -> int:
        return len(self.data)

    def to_data_url(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.content_type};base64,{encoded}"


@dataclass
class GenerationResult:
    """What the gateway hands back to the caller."""

    request_id: str
    image: GeneratedImage
    cache_status: CacheStatus = CacheStatus.MISS
    processing_time_ms: int = 0

    def to_dict(self) -> dict:
        return {
            "request_id": self.request_id,
            "cache_status": self.cache_status.value,
            "provider": self.image.provider,
            "model": self.image.model,
            "content_type": self.image.content_type,
            "size_bytes": self.image.size_bytes,
            "processing_time_ms": self.processing_time_ms,
            "image": self.image.to_data_url(),
        }


@dataclass
class OptimizationResult:
    payload: bytes = field(repr=False)
    original_size: int = 0
    new_size: int = 0
    compression_ratio: float = 1.0
    format: str = ""
    processing_time_ms: int = 0
    quality: int | None = None


@dataclass
class GenerationRecord:
    """Audit record persisted to the metadata store after a generation."""

    request_id: str
    identity: str
    prompt: str
    service: str
    cache_status: str = CacheStatus.MISS.value
    image_path: str = ""
    provider: str = ""
    credential_index: int = -1
    processing_time_ms: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "request_id": self.request_id,
            "identity": self.identity,
            "prompt": self.prompt,
            "service": self.service,
            "cache_status": self.cache_status,
            "image_path": self.image_path,
            "provider": self.provider,
            "credential_index": self.credential_index,
            "processing_time_ms": self.processing_time_ms,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class UploadResult:
    url: str
    path: str
