"""APIRouter registration for the test-support surface."""

from __future__ import annotations

from fastapi import APIRouter

from dualmode.routes.test_support import router as test_support_router

api_router = APIRouter()
api_router.include_router(test_support_router, tags=["TestSupport"])

__all__ = ["api_router"]
