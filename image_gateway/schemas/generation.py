from pydantic import BaseModel, Field

from image_gateway.gateway.types import ImageService


class GenerateRequest(BaseModel):
    prompt: str = Field(min_length=1, max_length=4000)
    service: ImageService = ImageService.POLLINATIONS_FLUX
    user_id: str | None = Field(None, max_length=255)


class GenerateResponse(BaseModel):
    request_id: str
    cache_status: str
    provider: str
    model: str
    content_type: str
    size_bytes: int
    processing_time_ms: int
    image: str  # data URL


class BypassRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class RateLimitStatus(BaseModel):
    user_id: str
    remaining: int
    blocked: bool
    reset_time: float
    cooldown_seconds: float


class AdminActionResponse(BaseModel):
    status: str = "ok"
    affected: int = 0
