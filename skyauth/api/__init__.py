# Sky Planner Auth API Routes
from skyauth.api.router import api_router

__all__ = ["api_router"]
