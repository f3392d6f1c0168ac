"""Shared test doubles: fake clock, recording sleep, stub providers, gateway factory."""

import io
import random

from PIL import Image

from image_gateway.gateway.cache import CacheRegistry, ResponseCache
from image_gateway.gateway.key_rotator import CredentialRotator
from image_gateway.gateway.optimizer import ResponseOptimizer
from image_gateway.gateway.orchestrator import ImageGateway
from image_gateway.gateway.persistence import InMemoryMetadataStore
from image_gateway.gateway.providers import BaseImageProvider
from image_gateway.gateway.queue_manager import RequestQueue
from image_gateway.gateway.rate_limiter import UserRateLimiter
from image_gateway.gateway.types import (
    CredentialPolicy,
    GeneratedImage,
    RateLimitConfig,
    RetryConfig,
)


class FakeClock:
    """Manually advanced clock for time-dependent components."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Async sleep replacement that records delays and advances a FakeClock."""

    def __init__(self, clock: FakeClock | None = None):
        self.clock = clock
        self.calls: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)
        if self.clock is not None:
            self.clock.advance(delay)


class StubProvider(BaseImageProvider):
    """Provider returning canned bytes, or raising the queued errors first."""

    def __init__(self, name: str, requires_credential: bool = False, errors=None, data: bytes = b"img"):
        super().__init__()
        self.name = name
        self.requires_credential = requires_credential
        self.errors = list(errors or [])
        self.data = data
        self.calls: list[tuple[str, str, int | None]] = []

    async def generate(self, prompt, style, credential=None):
        self.calls.append((prompt, style.model, credential.index if credential else None))
        if self.errors:
            error = self.errors.pop(0)
            if error is not None:
                raise error
        return GeneratedImage(
            data=self.data,
            provider=self.name,
            model=style.model,
            credential_index=credential.index if credential else -1,
        )


def make_png(width: int = 64, height: int = 64, noise: bool = False) -> bytes:
    """Encode a test image; *noise* makes it hard to compress."""
    if noise:
        image = Image.frombytes("RGB", (width, height), random.Random(42).randbytes(width * height * 3))
    else:
        image = Image.new("RGB", (width, height), color=(200, 30, 30))
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def build_gateway(
    credentialed: StubProvider | None = None,
    keyless: StubProvider | None = None,
    secrets: list[str] | None = None,
    max_requests: int = 5,
    queue_retries: int = 0,
    sleep=None,
    metadata_store=None,
    blob_store=None,
    app_env: str = "development",
) -> ImageGateway:
    """Gateway wired with stub providers and fast, test-sized components."""
    rotator = None
    if secrets is None:
        secrets = ["key-alpha-0001", "key-bravo-0002"]
    if secrets:
        rotator = CredentialRotator(
            secrets,
            policy=CredentialPolicy(),
            retry=RetryConfig(),
            sleep=sleep or RecordingSleep(),
        )
    caches = CacheRegistry(
        image=ResponseCache("image", max_size_bytes=1024 * 1024, max_entries=50, ttl_seconds=3600),
        prompt=ResponseCache("prompt", max_size_bytes=1024 * 1024, max_entries=50, ttl_seconds=3600),
        session=ResponseCache("session", max_size_bytes=1024 * 1024, max_entries=50, ttl_seconds=3600),
    )
    return ImageGateway(
        rate_limiter=UserRateLimiter(RateLimitConfig(max_requests=max_requests)),
        caches=caches,
        queue=RequestQueue(requests_per_second=1000, max_retries=queue_retries),
        rotator=rotator,
        optimizer=ResponseOptimizer(),
        credentialed_provider=credentialed or StubProvider("gemini", requires_credential=True),
        keyless_provider=keyless or StubProvider("pollinations"),
        metadata_store=metadata_store or InMemoryMetadataStore(),
        blob_store=blob_store,
        app_env=app_env,
    )
