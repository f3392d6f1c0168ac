from pydantic_settings import BaseSettings, SettingsConfigDict

# Number of enumerated credential slots (GEMINI_API_KEY_1 .. GEMINI_API_KEY_11)
CREDENTIAL_SLOTS = 11


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Credential pool (Gemini Imagen)
    gemini_api_key_1: str = ""
    gemini_api_key_2: str = ""
    gemini_api_key_3: str = ""
    gemini_api_key_4: str = ""
    gemini_api_key_5: str = ""
    gemini_api_key_6: str = ""
    gemini_api_key_7: str = ""
    gemini_api_key_8: str = ""
    gemini_api_key_9: str = ""
    gemini_api_key_10: str = ""
    gemini_api_key_11: str = ""
    gemini_api_key: str = ""  # single-key fallback
    api_key: str = ""  # legacy single-key fallback

    @property
    def credential_secrets(self) -> list[str]:
        """Configured secrets in slot order; falls back to the single-key settings."""
        secrets = [getattr(self, f"gemini_api_key_{i}") for i in range(1, CREDENTIAL_SLOTS + 1)]
        secrets = [s.strip() for s in secrets if s and s.strip()]
        if not secrets:
            fallback = (self.api_key or self.gemini_api_key).strip()
            if fallback:
                secrets = [fallback]
        return secrets

    # Per-identity rate limiter
    rate_limit_max_requests: int = 5
    rate_limit_window_seconds: float = 60.0
    rate_limit_block_seconds: float = 60.0
    rate_limit_retention_seconds: float = 3600.0  # idle identities dropped after this
    rate_limit_cleanup_interval_seconds: float = 60.0

    # Caches, each with its own budget
    image_cache_max_bytes: int = 50 * 1024 * 1024
    image_cache_max_entries: int = 500
    image_cache_ttl_seconds: float = 2 * 60 * 60
    prompt_cache_max_bytes: int = 20 * 1024 * 1024
    prompt_cache_max_entries: int = 1000
    prompt_cache_ttl_seconds: float = 60 * 60
    session_cache_max_bytes: int = 10 * 1024 * 1024
    session_cache_max_entries: int = 100
    session_cache_ttl_seconds: float = 30 * 60
    cache_sweep_interval_seconds: float = 5 * 60

    # Request queue pacing
    queue_requests_per_second: float = 50.0
    queue_max_retries: int = 3
    queue_max_in_flight: int = 10

    # Retry / backoff for the credential rotator
    retry_max_retries: int = 11
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 8.0
    retry_backoff_multiplier: float = 2.0
    retry_inter_attempt_delay_cap_seconds: float = 1.0

    # Credential health
    key_max_errors: int = 3
    key_deactivation_multiplier: int = 2  # generic errors tolerate max_errors * multiplier
    key_quota_cooldown_seconds: float = 60 * 60
    key_error_cooldown_seconds: float = 30.0
    key_disabled_cooldown_seconds: float = 5 * 60
    key_sweep_interval_seconds: float = 30.0

    # Response optimizer
    optimize_threshold_bytes: int = 100 * 1024
    optimize_max_bytes: int = 1024 * 1024
    optimize_max_dimension: int = 1920
    optimize_quality: int = 80

    # Providers
    provider_timeout_seconds: float = 60.0
    pollinations_variant_delay_seconds: float = 1.0
    gemini_api_url: str = "https://generativelanguage.googleapis.com/v1beta"

    # Persistence
    storage_api_url: str = ""  # empty → in-memory metadata store
    blob_store_dir: str = "generated_images"

    # App
    app_env: str = "development"
    app_debug: bool = True
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # CORS
    allowed_origins: str = "*"  # comma-separated

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    # Sentry
    sentry_dsn: str = ""  # leave empty to disable
    sentry_traces_sample_rate: float = 0.1


settings = Settings()


def validate_settings_for_production() -> None:
    """Validate critical settings. Called on startup in non-test environments."""
    errors: list[str] = []

    if settings.rate_limit_max_requests < 1:
        errors.append("RATE_LIMIT_MAX_REQUESTS must be at least 1")

    if settings.queue_requests_per_second <= 0:
        errors.append("QUEUE_REQUESTS_PER_SECOND must be positive")

    if settings.retry_base_delay_seconds > settings.retry_max_delay_seconds:
        errors.append("RETRY_BASE_DELAY_SECONDS must not exceed RETRY_MAX_DELAY_SECONDS")

    if settings.app_env == "production":
        if not settings.credential_secrets:
            errors.append("At least one GEMINI_API_KEY_<n> must be set in production")
        if settings.allowed_origins == "*":
            errors.append("ALLOWED_ORIGINS must not be '*' in production")
        if settings.app_debug:
            errors.append("APP_DEBUG must be false in production")

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))
