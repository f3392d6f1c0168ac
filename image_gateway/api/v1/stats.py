from fastapi import APIRouter, Depends

from image_gateway.core.dependencies import get_gateway
from image_gateway.gateway.orchestrator import ImageGateway

router = APIRouter(prefix="/stats", tags=["stats"])


@router.get("")
async def gateway_stats(detailed: bool = False, gateway: ImageGateway = Depends(get_gateway)):
    if detailed:
        return gateway.get_detailed_stats()
    return gateway.get_stats()


@router.get("/keys")
async def key_distribution(gateway: ImageGateway = Depends(get_gateway)):
    """Rotation cursor and per-key status (never includes key material)."""
    info = gateway.get_key_debug_info()
    if info is None:
        return {"total_keys": 0, "keys": []}
    return info
