"""Response Optimizer — best-effort image shrinkage before caching.

Payloads under the threshold pass through untouched. Larger ones are
downscaled to fit ``max_dimension`` and re-encoded as JPEG. If the result is
still above ``max_bytes`` the quality is lowered step by step.

Optimization never fails a request: any decoding/encoding error returns the
original payload, and so does a re-encode that turns out larger.
"""

from __future__ import annotations

import io
import logging
import time

from PIL import Image

from image_gateway.gateway.types import OptimizationResult

logger = logging.getLogger(__name__)

QUALITY_START = 90
QUALITY_FLOOR = 30
QUALITY_STEP = 10


class ResponseOptimizer:
    """Re-encodes oversized images to keep cached payloads small.

    Usage:
        optimizer = ResponseOptimizer(threshold_bytes=100 * 1024)
        result = optimizer.optimize(image_bytes)
        cache.set(key, result.payload)
    """

    def __init__(
        self,
        threshold_bytes: int = 100 * 1024,
        max_bytes: int = 1024 * 1024,
        max_dimension: int = 1920,
        quality: int = 80,
    ):
        self.threshold_bytes = threshold_bytes
        self.max_bytes = max_bytes
        self.max_dimension = max_dimension
        self.quality = quality

    def should_optimize(self, size: int) -> bool:
        return size > self.threshold_bytes

    def _passthrough(self, payload: bytes, started: float, fmt: str = "original") -> OptimizationResult:
        return OptimizationResult(
            payload=payload,
            original_size=len(payload),
            new_size=len(payload),
            compression_ratio=1.0,
            format=fmt,
            processing_time_ms=int((time.perf_counter() - started) * 1000),
        )

    def _load(self, payload: bytes) -> Image.Image:
        image = Image.open(io.BytesIO(payload))
        image.load()
        if image.width > self.max_dimension or image.height > self.max_dimension:
            image.thumbnail((self.max_dimension, self.max_dimension), Image.Resampling.LANCZOS)
        if image.mode != "RGB":
            image = image.convert("RGB")
        return image

    @staticmethod
    def _encode(image: Image.Image, quality: int) -> bytes:
        buffer = io.BytesIO()
        image.save(buffer, format="JPEG", quality=quality, optimize=True)
        return buffer.getvalue()

    def _result(self, payload: bytes, encoded: bytes, quality: int, started: float) -> OptimizationResult:
        if len(encoded) >= len(payload):
            logger.debug("Re-encode did not shrink payload (%d >= %d), keeping original", len(encoded), len(payload))
            return self._passthrough(payload, started)

        result = OptimizationResult(
            payload=encoded,
            original_size=len(payload),
            new_size=len(encoded),
            compression_ratio=len(payload) / len(encoded),
            format="jpeg",
            processing_time_ms=int((time.perf_counter() - started) * 1000),
            quality=quality,
        )
        logger.info(
            "Image optimized: %d -> %d bytes (ratio %.2f, quality %d, %dms)",
            result.original_size,
            result.new_size,
            result.compression_ratio,
            quality,
            result.processing_time_ms,
        )
        return result

    def optimize(self, payload: bytes, quality: int | None = None) -> OptimizationResult:
        """Shrink *payload* if it is above the threshold; never raises."""
        started = time.perf_counter()
        if not self.should_optimize(len(payload)):
            return self._passthrough(payload, started)

        quality = quality or self.quality
        try:
            image = self._load(payload)
            encoded = self._encode(image, quality)
            while len(encoded) > self.max_bytes and quality > QUALITY_FLOOR:
                quality = max(quality - QUALITY_STEP, QUALITY_FLOOR)
                encoded = self._encode(image, quality)
        except Exception as e:
            logger.warning("Image optimization failed, returning original: %s", e)
            return self._passthrough(payload, started)

        return self._result(payload, encoded, quality, started)

    def adaptive_optimize(self, payload: bytes, target_size_bytes: int = 500 * 1024) -> OptimizationResult:
        """Lower quality from 90 toward 30 until the payload fits *target_size_bytes*.

        Returns whatever was reached at the floor if the target is never met.
        """
        started = time.perf_counter()
        if len(payload) <= target_size_bytes:
            return self._passthrough(payload, started)

        try:
            image = self._load(payload)
            quality = QUALITY_START
            encoded = self._encode(image, quality)
            while len(encoded) > target_size_bytes and quality > QUALITY_FLOOR:
                quality -= QUALITY_STEP
                encoded = self._encode(image, quality)
        except Exception as e:
            logger.warning("Adaptive optimization failed, returning original: %s", e)
            return self._passthrough(payload, started)

        if len(encoded) > target_size_bytes:
            logger.info(
                "Adaptive optimization hit quality floor %d at %d bytes (target %d)",
                quality,
                len(encoded),
                target_size_bytes,
            )
        return self._result(payload, encoded, quality, started)

    @classmethod
    def from_settings(cls, settings) -> ResponseOptimizer:
        return cls(
            threshold_bytes=settings.optimize_threshold_bytes,
            max_bytes=settings.optimize_max_bytes,
            max_dimension=settings.optimize_max_dimension,
            quality=settings.optimize_quality,
        )
