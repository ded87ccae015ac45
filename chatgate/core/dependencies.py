from dataclasses import dataclass

from fastapi import Header, HTTPException, Request

from chatgate.gateway.gateway import ChatGateway


@dataclass
class Caller:
    """Identity forwarded by the upstream authentication layer."""

    user_id: str
    tier: str | None = None


def get_gateway(request: Request) -> ChatGateway:
    return request.app.state.gateway


async def get_caller(
    x_user_id: str | None = Header(None, description="Authenticated user id"),
    x_user_tier: str | None = Header(None, description="Rate-limit tier (free | pro | admin)"),
) -> Caller:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return Caller(user_id=x_user_id.strip(), tier=(x_user_tier or "").strip().lower() or None)
