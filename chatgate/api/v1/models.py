from fastapi import APIRouter, Depends

from chatgate.core.dependencies import get_gateway
from chatgate.gateway.gateway import ChatGateway
from chatgate.schemas.turn import ModelResponse

router = APIRouter(prefix="/models", tags=["models"])


@router.get("", response_model=list[ModelResponse])
async def list_models(gateway: ChatGateway = Depends(get_gateway)):
    """Models of the providers this deployment has credentials for."""
    return [m.to_dict() for m in gateway.available_models()]
