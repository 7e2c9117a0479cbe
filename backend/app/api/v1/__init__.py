from fastapi import APIRouter

from app.api.v1.completion import context_router, router as completion_router

router = APIRouter(tags=["v1"])

router.include_router(completion_router)
router.include_router(context_router)
