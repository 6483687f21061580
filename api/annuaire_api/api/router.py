from fastapi import APIRouter

from annuaire_api.api.routes import health, indicators, mutations, publications, scheduler, sync, tasks

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(sync.router, tags=["dashboard"])
api_router.include_router(publications.router, prefix="/publications", tags=["dashboard"])
api_router.include_router(indicators.router, prefix="/indicators", tags=["dashboard"])
api_router.include_router(tasks.router, prefix="/tasks", tags=["worker"])
api_router.include_router(scheduler.router, prefix="/scheduler", tags=["scheduler"])
api_router.include_router(mutations.router, prefix="/mutations", tags=["mutations"])
