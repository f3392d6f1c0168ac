"""Image generation endpoints."""

from fastapi import APIRouter, Depends, Query

from image_gateway.core.dependencies import get_gateway
from image_gateway.gateway.orchestrator import ImageGateway
from image_gateway.schemas.generation import GenerateRequest, GenerateResponse

router = APIRouter(prefix="/images", tags=["images"])


@router.post("/generate", response_model=GenerateResponse)
async def generate_image(body: GenerateRequest, gateway: ImageGateway = Depends(get_gateway)):
    result = await gateway.generate(body.prompt, body.service, user_id=body.user_id)
    return GenerateResponse(**result.to_dict())


@router.get("/recent/{user_id}")
async def recent_images(
    user_id: str,
    limit: int = Query(10, ge=1, le=100),
    gateway: ImageGateway = Depends(get_gateway),
):
    records = await gateway.recent_generations(user_id, limit=limit)
    return {"user_id": user_id, "items": records, "total": len(records)}
