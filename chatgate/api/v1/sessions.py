from fastapi import APIRouter, Depends

from chatgate.core.dependencies import Caller, get_caller, get_gateway
from chatgate.gateway.gateway import ChatGateway
from chatgate.schemas.turn import HistoryClearResponse, SessionStatsResponse

router = APIRouter(prefix="/sessions", tags=["sessions"])


@router.get("/{session_id}/stats", response_model=SessionStatsResponse)
async def session_stats(
    session_id: str,
    caller: Caller = Depends(get_caller),
    gateway: ChatGateway = Depends(get_gateway),
):
    stats = await gateway.session_stats(caller.user_id, session_id)
    return SessionStatsResponse(session_id=session_id, **stats)


@router.delete("/{session_id}/history", response_model=HistoryClearResponse)
async def clear_history(
    session_id: str,
    caller: Caller = Depends(get_caller),
    gateway: ChatGateway = Depends(get_gateway),
):
    cleared = await gateway.clear_history(caller.user_id, session_id)
    return HistoryClearResponse(session_id=session_id, cleared=cleared)
