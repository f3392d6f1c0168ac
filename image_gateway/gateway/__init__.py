"""Image Generation Gateway Layer.

Async infrastructure between callers and quota-limited image providers:
  - Response Cache (LRU + TTL with byte budgets)
  - Per-identity Rate Limiter (sliding window with block state)
  - Credential Rotator (round-robin API keys with cooldowns)
  - Request Queue (paced priority scheduling with a retry lane)
  - Image Providers (Gemini Imagen, Pollinations URL variants)
  - Response Optimizer (best-effort JPEG re-encode)
  - Orchestrator (rate limit → cache → queue → fallback chain)
"""
