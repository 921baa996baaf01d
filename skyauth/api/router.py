"""Sky Planner Auth API Router - aggregates all API routes."""

from fastapi import APIRouter

from skyauth.api import auth, health, sessions, sso, two_factor

api_router = APIRouter()

api_router.include_router(auth.router)
api_router.include_router(two_factor.router)
api_router.include_router(sessions.router)
api_router.include_router(sso.router)
api_router.include_router(health.router)
