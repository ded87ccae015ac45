from pydantic import BaseModel, Field


class TurnCreate(BaseModel):
    session_id: str = Field(min_length=1, max_length=128)
    model: str = Field(min_length=1, max_length=100)
    message: str = Field(min_length=1, max_length=100_000)
    stream: bool = False
    temperature: float | None = Field(None, ge=0, le=2)
    max_tokens: int | None = Field(None, ge=1, le=200_000)


class TurnResponse(BaseModel):
    content: str
    model: str
    tokens_used: int
    finish_reason: str
    provider: str
    cached: bool
    latency_ms: int


class ModelResponse(BaseModel):
    id: str
    provider: str
    name: str
    context_window: int
    max_output_tokens: int
    cost_per_k_tokens: float


class SessionStatsResponse(BaseModel):
    session_id: str
    message_count: int
    approx_tokens: int
    first_message_at: str | None = None
    last_message_at: str | None = None


class HistoryClearResponse(BaseModel):
    session_id: str
    cleared: bool
