from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from erasehub.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from erasehub.apps.api.response import SuccessEnvelope, success_response
from erasehub.persistence.db import get_session, pool_stats
from erasehub.services.telemetry import availability, counters_snapshot, migration_stats, p95_latency

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)

# Rolling window for request availability and latency.
REQUEST_WINDOW_S = 300


class RequestWindow(BaseModel):
    window_s: int
    availability_pct: float | None
    p95_latency_ms: float | None
    private_cloud_p95_latency_ms: float | None


class HealthResponse(BaseModel):
    status: str
    database: str
    pool: dict[str, int | None]
    requests: RequestWindow
    migrations: dict[str, float | int | None]
    counters: dict[str, int]


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    # Degraded rather than failing so load balancers can still read the payload.
    database = "ok"
    try:
        async with get_session() as session:
            await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError):
        database = "unavailable"
    payload = HealthResponse(
        status="ok" if database == "ok" else "degraded",
        database=database,
        pool=pool_stats(),
        requests=RequestWindow(
            window_s=REQUEST_WINDOW_S,
            availability_pct=availability(REQUEST_WINDOW_S),
            p95_latency_ms=p95_latency(REQUEST_WINDOW_S),
            private_cloud_p95_latency_ms=p95_latency(REQUEST_WINDOW_S, path_prefix="/v1/private-cloud"),
        ),
        migrations=migration_stats(),
        counters=counters_snapshot(),
    )
    return success_response(request=request, data=payload)
