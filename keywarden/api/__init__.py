"""API routers for KeyWarden."""

from fastapi import APIRouter

from keywarden.api import auth, projects, requests, resources

api_router = APIRouter(prefix="/api")

# Device login (public)
api_router.include_router(auth.router, tags=["authentication"])

# Bearer token or resource API key required
api_router.include_router(resources.router, tags=["resources"])
api_router.include_router(requests.router, tags=["requests"])
api_router.include_router(projects.router, tags=["projects"])

__all__ = ["api_router"]
