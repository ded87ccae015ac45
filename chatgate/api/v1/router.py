from fastapi import APIRouter

from chatgate.api.v1.models import router as models_router
from chatgate.api.v1.sessions import router as sessions_router
from chatgate.api.v1.turns import router as turns_router

api_v1_router = APIRouter(prefix="/api/v1")
api_v1_router.include_router(turns_router)
api_v1_router.include_router(models_router)
api_v1_router.include_router(sessions_router)
