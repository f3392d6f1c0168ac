"""Administrative overrides: cache flush, rate-limit reset/bypass, key reset, queue clear.

Every action is logged at WARNING by the component it touches.
"""

from fastapi import APIRouter, Depends

from image_gateway.core.dependencies import get_gateway
from image_gateway.gateway.orchestrator import ImageGateway
from image_gateway.schemas.generation import AdminActionResponse, BypassRequest, RateLimitStatus

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/caches/clear", response_model=AdminActionResponse)
async def clear_caches(gateway: ImageGateway = Depends(get_gateway)):
    cleared = sum(len(cache) for cache in gateway.caches.all())
    gateway.clear_caches()
    return AdminActionResponse(affected=cleared)


@router.get("/rate-limits/{user_id}", response_model=RateLimitStatus)
async def rate_limit_status(user_id: str, gateway: ImageGateway = Depends(get_gateway)):
    info = gateway.rate_limiter.get_status(user_id)
    return RateLimitStatus(
        user_id=user_id,
        remaining=info.remaining,
        blocked=info.blocked,
        reset_time=info.reset_time,
        cooldown_seconds=gateway.rate_limiter.get_cooldown_time(user_id),
    )


@router.post("/rate-limits/{user_id}/reset", response_model=AdminActionResponse)
async def reset_rate_limit(user_id: str, gateway: ImageGateway = Depends(get_gateway)):
    gateway.reset_rate_limits(user_id)
    return AdminActionResponse(affected=1)


@router.post("/rate-limits/{user_id}/bypass", response_model=AdminActionResponse)
async def bypass_rate_limit(user_id: str, body: BypassRequest, gateway: ImageGateway = Depends(get_gateway)):
    gateway.bypass_rate_limit(user_id, body.reason)
    return AdminActionResponse(affected=1)


@router.post("/keys/reset", response_model=AdminActionResponse)
async def reset_keys(gateway: ImageGateway = Depends(get_gateway)):
    return AdminActionResponse(affected=gateway.emergency_reset_keys())


@router.post("/queue/clear", response_model=AdminActionResponse)
async def clear_queue(gateway: ImageGateway = Depends(get_gateway)):
    return AdminActionResponse(affected=gateway.clear_queue())
