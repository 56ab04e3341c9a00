from fastapi import APIRouter

from shipyard.api.v1.endpoints.cache_admin import router as cache_admin_router
from shipyard.api.v1.endpoints.clusters import router as clusters_router
from shipyard.api.v1.endpoints.health import router as health_router

router = APIRouter()
router.include_router(health_router, tags=["meta"])
router.include_router(clusters_router, prefix="/clusters", tags=["clusters"])
router.include_router(cache_admin_router, prefix="/cache", tags=["cache"])
