from fastapi import APIRouter

from dealer_sync.api.v1.endpoints import dealer_sync, health

router = APIRouter(prefix='/api/v1')
router.include_router(health.router, tags=['health'])
router.include_router(dealer_sync.router, prefix='/dealer-sync', tags=['dealer-sync'])
