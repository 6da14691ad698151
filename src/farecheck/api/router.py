from __future__ import annotations

from fastapi import APIRouter

from farecheck.modules.analysis.api import router as analysis_router
from farecheck.modules.review.api import router as review_router
from farecheck.modules.trips.api import router as trips_router
from farecheck.modules.uploads.api import router as uploads_router

router = APIRouter()

router.include_router(uploads_router, prefix="/api")
router.include_router(trips_router, prefix="/api")
router.include_router(analysis_router, prefix="/api")
router.include_router(review_router, prefix="/api")


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}
