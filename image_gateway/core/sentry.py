"""Sentry error tracking integration.

Initializes Sentry SDK if SENTRY_DSN env variable is set.
Does nothing otherwise, so it is safe to call unconditionally.

Gateway errors that map to a 4xx answer (rate limiting, bad input) are
expected traffic and never reported. Provider API keys are replaced with
their masked preview in exception values and breadcrumbs before an event
leaves the process.
"""

import logging
from collections.abc import Iterable

from image_gateway.core.config import settings
from image_gateway.core.exceptions import GatewayError
from image_gateway.core.logging import mask_secret

logger = logging.getLogger(__name__)


def _redact(text: str, secrets: Iterable[str]) -> str:
    for secret in secrets:
        text = text.replace(secret, mask_secret(secret))
    return text


def make_before_send(secrets: Iterable[str]):
    """Build the ``before_send`` hook for the given provider keys."""
    known = [s for s in secrets if s]

    def before_send(event: dict, hint: dict) -> dict | None:
        exc_info = hint.get("exc_info")
        if exc_info:
            error = exc_info[1]
            if isinstance(error, GatewayError) and error.status_code < 500:
                return None

        if not known:
            return event

        for value in event.get("exception", {}).get("values", []):
            if isinstance(value.get("value"), str):
                value["value"] = _redact(value["value"], known)
        for crumb in event.get("breadcrumbs", {}).get("values", []):
            if isinstance(crumb.get("message"), str):
                crumb["message"] = _redact(crumb["message"], known)
        if isinstance(event.get("message"), str):
            event["message"] = _redact(event["message"], known)
        return event

    return before_send


def init_sentry() -> bool:
    """Initialize Sentry if SENTRY_DSN is configured. Returns True if enabled."""
    if not settings.sentry_dsn:
        logger.debug("Sentry DSN not configured, skipping")
        return False

    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.httpx import HttpxIntegration

    secrets = settings.credential_secrets
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.app_env,
        traces_sample_rate=settings.sentry_traces_sample_rate,
        send_default_pii=False,
        before_send=make_before_send(secrets),
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            HttpxIntegration(),
        ],
    )
    sentry_sdk.set_tag("gateway.keyless", not secrets)
    sentry_sdk.set_tag("gateway.key_count", len(secrets))
    logger.info("Sentry initialized (env=%s, keys=%d)", settings.app_env, len(secrets))
    return True
