from fastapi import APIRouter
from querygate.api.endpoints import skill

api_router = APIRouter()

# Combine all sub-routers into one
api_router.include_router(skill.router)
