from fastapi import APIRouter
from growroom.api.v1.endpoints import automations, proposals, jobs

api_router = APIRouter()

api_router.include_router(automations.router, prefix="/automations", tags=["Automations"])
api_router.include_router(proposals.router, prefix="/proposals", tags=["Proposals"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["Scheduled Jobs"])
