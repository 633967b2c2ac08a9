"""
API routes - combined router from all domain modules.
"""

from fastapi import APIRouter

from league_engine.api.routes.leagues import router as leagues_router
from league_engine.api.routes.matches import router as matches_router
from league_engine.api.routes.box_weeks import router as box_weeks_router
from league_engine.api.routes.ladder import router as ladder_router
from league_engine.api.routes.notifications import router as notifications_router
from league_engine.api.routes.admin import router as admin_router

router = APIRouter()
router.include_router(leagues_router)
router.include_router(matches_router)
router.include_router(box_weeks_router)
router.include_router(ladder_router)
router.include_router(notifications_router)
router.include_router(admin_router)
