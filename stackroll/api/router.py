from fastapi import APIRouter

from stackroll.api.routes import commits, health, jobs

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["operations"])
api_router.include_router(commits.router, prefix="/commits", tags=["operations"])
