"""Image Providers — protocol-level handling for each image generation backend.

Each provider turns a prompt plus StyleParams into image bytes, or raises a
ProviderError subclass the orchestrator and credential rotator understand.

Provider-specific behaviors:
  - Pollinations: key-less GET, tries several URL variants in order with a
    short pause between them; an empty body counts as a failure
  - Gemini Imagen: credentialed POST to the ``:predict`` endpoint,
    429 → QuotaExceededError, 5xx / timeout → TransientProviderError
"""

from __future__ import annotations

import asyncio
import base64
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import quote

import httpx

from image_gateway.core.exceptions import (
    ProviderError,
    QuotaExceededError,
    TransientProviderError,
)
from image_gateway.core.metrics import PROVIDER_CALLS
from image_gateway.gateway.types import Credential, GeneratedImage, ImageService, StyleParams

logger = logging.getLogger(__name__)

# Appended to every prompt before service-specific enhancement
PROMPT_DIRECTIVE = " Don't add any additional effects or styles"

# service -> (model, prompt suffix)
SERVICE_PROFILES: dict[ImageService, tuple[str, str]] = {
    ImageService.POLLINATIONS_FLUX: ("flux", ", high quality, detailed, artistic"),
    ImageService.POLLINATIONS_TURBO: ("turbo", ", fast generation, good quality"),
    ImageService.POLLINATIONS_ENHANCER: ("enhancer", ", enhanced details, improved quality"),
    ImageService.POLLINATIONS_PLAYGROUND: ("playground", ", creative, experimental style"),
    ImageService.POLLINATIONS_KONTEXT: ("kontext", ""),
    ImageService.POLLINATIONS_KREA: ("krea", ""),
    ImageService.GEMINI_IMAGEN_3: ("imagen-3.0-generate-002", ""),
    ImageService.GEMINI_IMAGEN_4_FAST: ("imagen-4.0-fast-generate-001", ", high quality, fast generation"),
    ImageService.GEMINI_IMAGEN_4_ULTRA: (
        "imagen-4.0-ultra-generate-001",
        ", ultra realistic, 4k, detailed, photorealistic, masterpiece",
    ),
}

USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"


def enhance_prompt(prompt: str, service: ImageService) -> str:
    """Caller prompt plus the generation directive and the service's style suffix."""
    _, suffix = SERVICE_PROFILES[service]
    return f"{prompt.strip()}{PROMPT_DIRECTIVE}{suffix}"


def style_for(service: ImageService) -> StyleParams:
    model, _ = SERVICE_PROFILES[service]
    return StyleParams(model=model)


class BaseImageProvider(ABC):
    """Base class for all image providers."""

    name: str = ""
    requires_credential: bool = False

    def __init__(self, timeout: float = 60.0):
        self.timeout = timeout

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        style: StyleParams,
        credential: Credential | None = None,
    ) -> GeneratedImage:
        """Generate one image or raise ProviderError."""
        ...


# ---------------------------------------------------------------------------
# Pollinations (key-less)
# ---------------------------------------------------------------------------


class PollinationsProvider(BaseImageProvider):
    """Key-less provider with a chain of equivalent URL variants."""

    name = "pollinations"
    requires_credential = False
    base_url = "https://image.pollinations.ai/prompt"
    short_url = "https://pollinations.ai/p"
    default_model = "flux"

    def __init__(
        self,
        timeout: float = 60.0,
        variant_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        super().__init__(timeout)
        self.variant_delay = variant_delay
        self._sleep = sleep

    def build_urls(self, prompt: str, style: StyleParams) -> list[str]:
        encoded = quote(prompt, safe="")
        model = style.model or self.default_model
        return [
            f"{self.base_url}/{encoded}?model={model}&width={style.width}&height={style.height}&nologo=true",
            f"{self.base_url}/{encoded}?model={model}&size={style.width}x{style.height}",
            f"{self.base_url}/{encoded}?model={model}",
            f"{self.short_url}/{encoded}?model={model}",
        ]

    async def _fetch(self, client: httpx.AsyncClient, url: str) -> httpx.Response:
        try:
            return await client.get(url, headers={"User-Agent": USER_AGENT})
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"Timeout: {e}", provider=self.name) from e
        except httpx.HTTPError as e:
            raise TransientProviderError(f"Transport error: {e}", provider=self.name) from e

    async def generate(
        self,
        prompt: str,
        style: StyleParams,
        credential: Credential | None = None,
    ) -> GeneratedImage:
        urls = self.build_urls(prompt, style)
        model = style.model or self.default_model
        last_error: ProviderError | None = None

        async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
            for attempt, url in enumerate(urls, start=1):
                try:
                    resp = await self._fetch(client, url)
                    if resp.status_code != 200:
                        raise ProviderError(
                            f"HTTP {resp.status_code}: {resp.reason_phrase}",
                            status=resp.status_code,
                            provider=self.name,
                        )
                    if not resp.content:
                        raise ProviderError("Empty response received", status=resp.status_code, provider=self.name)

                    PROVIDER_CALLS.labels(provider=self.name, outcome="success").inc()
                    logger.info(
                        "Pollinations variant %d succeeded (model=%s, %d KB)",
                        attempt,
                        model,
                        len(resp.content) // 1024,
                    )
                    return GeneratedImage(
                        data=resp.content,
                        content_type=resp.headers.get("content-type", "image/png").split(";")[0],
                        provider=self.name,
                        model=model,
                    )
                except ProviderError as e:
                    last_error = e
                    PROVIDER_CALLS.labels(provider=self.name, outcome="failure").inc()
                    logger.warning(
                        "Pollinations variant %d/%d failed (model=%s): %s",
                        attempt,
                        len(urls),
                        model,
                        e,
                    )
                    if attempt < len(urls):
                        await self._sleep(self.variant_delay)

        raise ProviderError(
            f"All Pollinations URL variants failed ({model}): {last_error}",
            status=last_error.status if last_error else 0,
            provider=self.name,
        )


# ---------------------------------------------------------------------------
# Gemini Imagen (credentialed)
# ---------------------------------------------------------------------------


class GeminiImagenProvider(BaseImageProvider):
    """Google Imagen through the Generative Language ``:predict`` endpoint."""

    name = "gemini"
    requires_credential = True
    default_model = "imagen-3.0-generate-002"

    def __init__(self, api_url: str = "https://generativelanguage.googleapis.com/v1beta", timeout: float = 60.0):
        super().__init__(timeout)
        self.api_url = api_url.rstrip("/")

    async def generate(
        self,
        prompt: str,
        style: StyleParams,
        credential: Credential | None = None,
    ) -> GeneratedImage:
        if credential is None:
            raise ProviderError("Gemini Imagen requires an API key", provider=self.name)

        model = style.model or self.default_model
        url = f"{self.api_url}/models/{model}:predict"
        payload = {
            "instances": [{"prompt": prompt}],
            "parameters": {"sampleCount": 1},
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    url,
                    json=payload,
                    headers={
                        "x-goog-api-key": credential.secret,
                        "Content-Type": "application/json",
                    },
                )
        except httpx.TimeoutException as e:
            PROVIDER_CALLS.labels(provider=self.name, outcome="timeout").inc()
            raise TransientProviderError(f"Timeout: {e}", provider=self.name) from e
        except httpx.HTTPError as e:
            PROVIDER_CALLS.labels(provider=self.name, outcome="failure").inc()
            raise TransientProviderError(f"Transport error: {e}", provider=self.name) from e

        if resp.status_code == 429:
            PROVIDER_CALLS.labels(provider=self.name, outcome="quota").inc()
            raise QuotaExceededError(
                "Quota exceeded (429 Too Many Requests)",
                status=429,
                error_code="RESOURCE_EXHAUSTED",
                provider=self.name,
            )
        if resp.status_code >= 500:
            PROVIDER_CALLS.labels(provider=self.name, outcome="failure").inc()
            raise TransientProviderError(
                f"Server error {resp.status_code}: {resp.text[:200]}",
                status=resp.status_code,
                provider=self.name,
            )
        if resp.status_code != 200:
            PROVIDER_CALLS.labels(provider=self.name, outcome="failure").inc()
            raise ProviderError(
                f"HTTP {resp.status_code}: {resp.text[:200]}",
                status=resp.status_code,
                error_code=self._error_status(resp),
                provider=self.name,
            )

        try:
            prediction = resp.json()["predictions"][0]
            data = base64.b64decode(prediction["bytesBase64Encoded"])
        except (KeyError, IndexError, TypeError, ValueError) as e:
            PROVIDER_CALLS.labels(provider=self.name, outcome="failure").inc()
            raise ProviderError(f"Malformed Imagen response: {e}", status=200, provider=self.name) from e
        if not data:
            PROVIDER_CALLS.labels(provider=self.name, outcome="failure").inc()
            raise ProviderError("Empty image in Imagen response", status=200, provider=self.name)

        PROVIDER_CALLS.labels(provider=self.name, outcome="success").inc()
        return GeneratedImage(
            data=data,
            content_type=prediction.get("mimeType", "image/png"),
            provider=self.name,
            model=model,
            credential_index=credential.index,
        )

    @staticmethod
    def _error_status(resp: httpx.Response) -> str:
        try:
            return resp.json().get("error", {}).get("status", "")
        except ValueError:
            return ""
