"""Image Gateway — orchestrator integrating all gateway components.

Main entry point for generating images:
  1. Rejects rate-limited identities (UserRateLimiter)
  2. Serves repeated requests from the image cache (ResponseCache)
  3. Schedules misses on the paced priority queue (RequestQueue)
  4. Runs the provider fallback chain:
       credentialed provider through the CredentialRotator,
       then the key-less provider and its URL variants
  5. Shrinks large payloads (ResponseOptimizer) and caches the result
  6. Writes an audit record in the background (MetadataStore / BlobStore)

Usage:
    gateway = ImageGateway.from_settings(settings)
    gateway.start()

    result = await gateway.generate("a red fox in the snow", "gemini-imagen-4-fast", user_id="u-1")

    await gateway.close()
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
import uuid

from image_gateway.core.exceptions import (
    AllProvidersFailedError,
    ConfigurationError,
    GatewayError,
    ProviderError,
    QueueRetryExhaustedError,
    RateLimitedError,
)
from image_gateway.core.metrics import GENERATION_REQUESTS
from image_gateway.gateway.cache import CacheRegistry, generate_key
from image_gateway.gateway.key_rotator import CredentialRotator
from image_gateway.gateway.optimizer import ResponseOptimizer
from image_gateway.gateway.persistence import (
    BlobStore,
    HttpMetadataStore,
    InMemoryMetadataStore,
    LocalBlobStore,
    MetadataStore,
)
from image_gateway.gateway.providers import (
    BaseImageProvider,
    GeminiImagenProvider,
    PollinationsProvider,
    enhance_prompt,
    style_for,
)
from image_gateway.gateway.queue_manager import RequestQueue
from image_gateway.gateway.rate_limiter import UserRateLimiter
from image_gateway.gateway.types import (
    CacheStatus,
    CredentialPolicy,
    GeneratedImage,
    GenerationRecord,
    GenerationResult,
    ImageService,
    RateLimitConfig,
    RequestPriority,
    RetryConfig,
)

logger = logging.getLogger(__name__)

ANONYMOUS = "anonymous"
FALLBACK_SERVICE = ImageService.POLLINATIONS_FLUX


def normalize_prompt(prompt: str) -> str:
    """Case- and whitespace-insensitive form used for fingerprints."""
    return " ".join(prompt.split()).lower()


class ImageGateway:
    """Main gateway orchestrator.

    Integrates:
      - UserRateLimiter: per-identity sliding window
      - CacheRegistry: image / prompt / session caches
      - RequestQueue: paced priority scheduling with retries
      - CredentialRotator: API key pool for the credentialed provider
      - Providers: Gemini Imagen (credentialed), Pollinations (key-less)
      - ResponseOptimizer: payload shrinkage before caching
    """

    def __init__(
        self,
        rate_limiter: UserRateLimiter,
        caches: CacheRegistry,
        queue: RequestQueue,
        rotator: CredentialRotator | None = None,
        optimizer: ResponseOptimizer | None = None,
        credentialed_provider: BaseImageProvider | None = None,
        keyless_provider: BaseImageProvider | None = None,
        metadata_store: MetadataStore | None = None,
        blob_store: BlobStore | None = None,
        app_env: str = "development",
    ):
        self.rate_limiter = rate_limiter
        self.caches = caches
        self.queue = queue
        self.rotator = rotator
        self.optimizer = optimizer or ResponseOptimizer()
        self.credentialed_provider = credentialed_provider or GeminiImagenProvider()
        self.keyless_provider = keyless_provider or PollinationsProvider()
        self.metadata_store = metadata_store or InMemoryMetadataStore()
        self.blob_store = blob_store
        self.app_env = app_env

        self._background: set[asyncio.Task] = set()
        self._started_at = time.time()
        self._generated = 0
        self._cache_hits = 0
        self._failures = 0

    @classmethod
    def from_settings(cls, settings, allow_keyless: bool = False) -> ImageGateway:
        """Build every component from Settings.

        Raises ConfigurationError when no credential is configured, unless
        *allow_keyless* lets premium services run on the key-less fallback.
        """
        secrets = settings.credential_secrets
        if not secrets and not allow_keyless:
            raise ConfigurationError(
                "No Gemini API keys configured. Set GEMINI_API_KEY_1 .. GEMINI_API_KEY_11 or GEMINI_API_KEY."
            )

        rotator = None
        if secrets:
            rotator = CredentialRotator(
                secrets,
                policy=CredentialPolicy(
                    max_errors=settings.key_max_errors,
                    deactivation_multiplier=settings.key_deactivation_multiplier,
                    quota_cooldown=settings.key_quota_cooldown_seconds,
                    error_cooldown=settings.key_error_cooldown_seconds,
                    disabled_cooldown=settings.key_disabled_cooldown_seconds,
                ),
                retry=RetryConfig(
                    max_retries=settings.retry_max_retries,
                    base_delay=settings.retry_base_delay_seconds,
                    max_delay=settings.retry_max_delay_seconds,
                    backoff_multiplier=settings.retry_backoff_multiplier,
                    inter_attempt_delay_cap=settings.retry_inter_attempt_delay_cap_seconds,
                ),
                sweep_interval=settings.key_sweep_interval_seconds,
            )
        else:
            logger.warning("No API keys configured; premium services will use the key-less fallback only")

        metadata_store: MetadataStore
        if settings.storage_api_url:
            metadata_store = HttpMetadataStore(settings.storage_api_url)
        else:
            metadata_store = InMemoryMetadataStore()

        return cls(
            rate_limiter=UserRateLimiter(
                RateLimitConfig(
                    max_requests=settings.rate_limit_max_requests,
                    window_seconds=settings.rate_limit_window_seconds,
                    block_duration_seconds=settings.rate_limit_block_seconds,
                    retention_seconds=settings.rate_limit_retention_seconds,
                ),
                cleanup_interval=settings.rate_limit_cleanup_interval_seconds,
            ),
            caches=CacheRegistry.from_settings(settings),
            queue=RequestQueue(
                requests_per_second=settings.queue_requests_per_second,
                max_retries=settings.queue_max_retries,
                max_in_flight=settings.queue_max_in_flight,
            ),
            rotator=rotator,
            optimizer=ResponseOptimizer.from_settings(settings),
            credentialed_provider=GeminiImagenProvider(
                api_url=settings.gemini_api_url,
                timeout=settings.provider_timeout_seconds,
            ),
            keyless_provider=PollinationsProvider(
                timeout=settings.provider_timeout_seconds,
                variant_delay=settings.pollinations_variant_delay_seconds,
            ),
            metadata_store=metadata_store,
            blob_store=LocalBlobStore(settings.blob_store_dir),
            app_env=settings.app_env,
        )

    # -- lifecycle -------------------------------------------------------------

    def start(self) -> None:
        """Start the queue consumer and every background sweep."""
        self.queue.start()
        self.caches.start()
        self.rate_limiter.start()
        if self.rotator:
            self.rotator.start()
        logger.info("Image gateway started (env=%s)", self.app_env)

    async def close(self) -> None:
        await self.queue.close()
        await self.caches.close()
        await self.rate_limiter.close()
        if self.rotator:
            await self.rotator.close()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self.metadata_store.close()
        logger.info("Image gateway stopped")

    # -- generation --------------------------------------------------------------

    async def generate(
        self,
        prompt: str,
        service: ImageService | str,
        user_id: str | None = None,
    ) -> GenerationResult:
        """Generate (or serve from cache) one image for *prompt*.

        Raises RateLimitedError before any work is queued, or a single
        aggregated GatewayError when every provider failed.
        """
        service = ImageService(service)
        identity = user_id or ANONYMOUS
        request_id = uuid.uuid4().hex
        started = time.perf_counter()
        log_extra = {"request_id": request_id, "identity": identity}

        if not self.rate_limiter.record_request(identity):
            retry_after = math.ceil(self.rate_limiter.get_cooldown_time(identity))
            GENERATION_REQUESTS.labels(service=service.value, outcome="rate_limited").inc()
            logger.warning("Request rejected by rate limiter (retry in %ds)", retry_after, extra=log_extra)
            raise RateLimitedError(
                f"Rate limit exceeded. Try again in {retry_after} seconds.",
                retry_after_seconds=retry_after,
            )

        cache_key = generate_key([normalize_prompt(prompt), service.value, identity])
        cached = self.caches.image.get(cache_key)
        if cached is not None:
            self._cache_hits += 1
            GENERATION_REQUESTS.labels(service=service.value, outcome="hit").inc()
            logger.info("Cache hit for %s", service.value, extra=log_extra)
            return GenerationResult(
                request_id=request_id,
                image=cached,
                cache_status=CacheStatus.HIT,
                processing_time_ms=int((time.perf_counter() - started) * 1000),
            )

        priority = RequestPriority.PREMIUM if service.is_premium else RequestPriority.NORMAL

        async def operation() -> GeneratedImage:
            image = await self._run_provider_chain(request_id, prompt, service)
            image = await self._optimize(image, request_id)
            self.caches.image.set(cache_key, image)
            return image

        future = self.queue.enqueue(identity, prompt, operation, priority=priority.value)
        try:
            image = await future
        except QueueRetryExhaustedError as e:
            self._failures += 1
            GENERATION_REQUESTS.labels(service=service.value, outcome="failed").inc()
            # Surface the chain's own aggregated failure
            if isinstance(e.__cause__, GatewayError):
                raise e.__cause__ from None
            raise
        except GatewayError:
            self._failures += 1
            GENERATION_REQUESTS.labels(service=service.value, outcome="failed").inc()
            raise

        self._generated += 1
        GENERATION_REQUESTS.labels(service=service.value, outcome="miss").inc()
        processing_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "Generated image via %s/%s (%d bytes, %dms)",
            image.provider,
            image.model,
            image.size_bytes,
            processing_ms,
            extra=log_extra,
        )

        if user_id:
            self._schedule_audit(
                GenerationRecord(
                    request_id=request_id,
                    identity=identity,
                    prompt=prompt,
                    service=service.value,
                    cache_status=CacheStatus.MISS.value,
                    provider=image.provider,
                    credential_index=image.credential_index,
                    processing_time_ms=processing_ms,
                ),
                image,
            )

        return GenerationResult(
            request_id=request_id,
            image=image,
            cache_status=CacheStatus.MISS,
            processing_time_ms=processing_ms,
        )

    def _enhanced_prompt(self, prompt: str, service: ImageService) -> str:
        key = generate_key([normalize_prompt(prompt), service.value])
        enhanced = self.caches.prompt.get(key)
        if enhanced is None:
            enhanced = enhance_prompt(prompt, service)
            self.caches.prompt.set(key, enhanced)
        return enhanced

    async def _run_provider_chain(self, request_id: str, prompt: str, service: ImageService) -> GeneratedImage:
        """Try each provider stage in order; raise AllProvidersFailedError naming them all."""
        stages: list[str] = []
        log_extra = {"request_id": request_id}

        keyless_service = service
        if service.is_premium:
            keyless_service = FALLBACK_SERVICE
            if self.rotator is None:
                stages.append(f"{self.credentialed_provider.name}: no API keys configured")
            else:
                enhanced = self._enhanced_prompt(prompt, service)
                style = style_for(service)
                try:
                    return await self.rotator.execute_with_retry(
                        lambda cred: self.credentialed_provider.generate(enhanced, style, credential=cred),
                        label=f"{service.value} generation",
                    )
                except GatewayError as e:
                    stages.append(f"{self.credentialed_provider.name} ({service.value}): {e.message}")
                    logger.warning(
                        "Credentialed provider failed, falling back to %s: %s",
                        keyless_service.value,
                        e.message,
                        extra=log_extra,
                    )

        try:
            return await self.keyless_provider.generate(
                self._enhanced_prompt(prompt, keyless_service),
                style_for(keyless_service),
            )
        except ProviderError as e:
            stages.append(f"{self.keyless_provider.name} ({keyless_service.value}): {e.message}")

        logger.error("All providers failed: %s", stages, extra=log_extra)
        raise AllProvidersFailedError(
            f"All providers failed for {service.value}: " + " | ".join(stages),
            stages=stages,
        )

    async def _optimize(self, image: GeneratedImage, request_id: str) -> GeneratedImage:
        if not self.optimizer.should_optimize(image.size_bytes):
            return image
        result = await asyncio.to_thread(self.optimizer.optimize, image.data)
        if result.new_size >= result.original_size:
            return image
        logger.info(
            "Payload optimized %d -> %d bytes (ratio %.2f)",
            result.original_size,
            result.new_size,
            result.compression_ratio,
            extra={"request_id": request_id},
        )
        return GeneratedImage(
            data=result.payload,
            content_type=f"image/{result.format}",
            provider=image.provider,
            model=image.model,
            credential_index=image.credential_index,
        )

    # -- audit -------------------------------------------------------------------

    def _schedule_audit(self, record: GenerationRecord, image: GeneratedImage) -> None:
        task = asyncio.create_task(self._persist(record, image))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _persist(self, record: GenerationRecord, image: GeneratedImage) -> None:
        extra = {"request_id": record.request_id, "identity": record.identity}
        try:
            if self.app_env == "production" and self.blob_store is not None:
                extension = image.content_type.split("/")[-1] or "png"
                upload = await self.blob_store.upload(
                    image.data, f"images/{record.identity}/{record.request_id}.{extension}"
                )
                record.image_path = upload.path
            else:
                record.image_path = f"dev_images/{record.identity}/{record.request_id}.png"

            await self.metadata_store.save_record(record)
            self.caches.session.delete(record.identity)
            logger.info("Audit record saved (%s)", record.image_path, extra=extra)
        except Exception as e:
            # Never fails the generation that produced it
            logger.error("Failed to save audit record: %s", e, extra=extra, exc_info=True)

    async def recent_generations(self, user_id: str, limit: int = 10) -> list[dict]:
        """Recent audit records for *user_id*, served from the session cache when warm."""
        records = self.caches.session.get(user_id)
        if records is None:
            records = await self.metadata_store.get_recent(user_id, self.caches.session.max_entries)
            self.caches.session.set(user_id, records)
        return records[:limit]

    # -- admin ---------------------------------------------------------------------

    def clear_caches(self) -> None:
        self.caches.clear()
        logger.warning("All caches cleared")

    def reset_rate_limits(self, user_id: str) -> None:
        self.rate_limiter.reset_user(user_id)

    def bypass_rate_limit(self, user_id: str, reason: str) -> None:
        self.rate_limiter.bypass_limit(user_id, reason)

    def emergency_reset_keys(self) -> int:
        if self.rotator is None:
            return 0
        return self.rotator.emergency_reset_all()

    def clear_queue(self) -> int:
        return self.queue.clear_queue()

    # -- introspection ---------------------------------------------------------------

    def get_stats(self) -> dict:
        """Headline numbers for dashboards."""
        uptime = time.time() - self._started_at
        return {
            "uptime_seconds": round(uptime, 1),
            "generated": self._generated,
            "cache_hits": self._cache_hits,
            "failures": self._failures,
            "queue_length": self.queue.depth(),
            "tracked_users": self.rate_limiter.tracked_identities(),
            "active_keys": sum(1 for c in self.rotator.credentials if c.is_active) if self.rotator else 0,
            "total_keys": len(self.rotator) if self.rotator else 0,
            "image_cache_entries": len(self.caches.image),
        }

    def get_detailed_stats(self) -> dict:
        return {
            "gateway": self.get_stats(),
            "caches": self.caches.get_stats(),
            "rate_limiter": self.rate_limiter.get_stats(),
            "queue": self.queue.get_metrics(),
            "keys": self.rotator.get_stats() if self.rotator else None,
        }

    def get_key_debug_info(self) -> dict | None:
        return self.rotator.get_distribution_debug_info() if self.rotator else None
