"""Tests for the best-effort response optimizer."""

from __future__ import annotations

import io

from PIL import Image

from image_gateway.gateway.optimizer import ResponseOptimizer
from tests.helpers import make_png


class TestShouldOptimize:
    def test_threshold(self):
        optimizer = ResponseOptimizer(threshold_bytes=100)
        assert optimizer.should_optimize(101)
        assert not optimizer.should_optimize(100)


class TestOptimize:
    def test_small_payload_passes_through(self):
        payload = make_png(8, 8)
        result = ResponseOptimizer(threshold_bytes=100 * 1024).optimize(payload)
        assert result.payload is payload
        assert result.new_size == result.original_size
        assert result.compression_ratio == 1.0

    def test_large_payload_shrinks(self):
        payload = make_png(300, 300, noise=True)
        assert len(payload) > 100 * 1024

        result = ResponseOptimizer().optimize(payload)

        assert result.format == "jpeg"
        assert result.new_size < result.original_size
        assert result.compression_ratio > 1.0
        assert Image.open(io.BytesIO(result.payload)).format == "JPEG"

    def test_downscales_to_max_dimension(self):
        payload = make_png(400, 200, noise=True)
        result = ResponseOptimizer(threshold_bytes=1, max_dimension=100).optimize(payload)
        image = Image.open(io.BytesIO(result.payload))
        assert max(image.size) == 100
        assert image.size == (100, 50)

    def test_garbage_returns_original(self):
        payload = b"not an image" * 20000
        result = ResponseOptimizer().optimize(payload)
        assert result.payload is payload
        assert result.format == "original"

    def test_no_gain_keeps_original(self):
        # A flat image is already tiny as PNG; the threshold forces an attempt
        payload = make_png(32, 32)
        result = ResponseOptimizer(threshold_bytes=1).optimize(payload)
        assert len(result.payload) <= len(payload)


class TestAdaptiveOptimize:
    def test_under_target_passes_through(self):
        payload = make_png(8, 8)
        result = ResponseOptimizer().adaptive_optimize(payload, target_size_bytes=1024 * 1024)
        assert result.payload is payload

    def test_lowers_quality_to_reach_target(self):
        payload = make_png(300, 300, noise=True)
        optimizer = ResponseOptimizer()
        first_pass = optimizer.adaptive_optimize(payload, target_size_bytes=len(payload) - 1)
        assert first_pass.quality == 90

        tight = optimizer.adaptive_optimize(payload, target_size_bytes=first_pass.new_size - 1)
        assert tight.quality < 90
        assert tight.new_size < first_pass.new_size

    def test_floor_returns_best_effort(self):
        payload = make_png(300, 300, noise=True)
        result = ResponseOptimizer().adaptive_optimize(payload, target_size_bytes=10)
        assert result.quality == 30
        assert result.new_size > 10
        assert result.new_size < result.original_size

    def test_failure_returns_original(self):
        payload = b"\x89PNG broken" * 100
        result = ResponseOptimizer().adaptive_optimize(payload, target_size_bytes=10)
        assert result.payload is payload
