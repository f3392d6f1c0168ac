from fastapi import APIRouter

from image_gateway.api.v1.admin import router as admin_router
from image_gateway.api.v1.images import router as images_router
from image_gateway.api.v1.stats import router as stats_router

api_v1_router = APIRouter(prefix="/api/v1")
api_v1_router.include_router(images_router)
api_v1_router.include_router(stats_router)
api_v1_router.include_router(admin_router)
