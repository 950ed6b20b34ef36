"""Dashboard endpoints: the pipeline board and headline metrics.

Both read the caller's visible deals once and derive everything in memory.
A failed read fails the request; there is no partial board.
"""

from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Query, Request

from src.crm.api.deps import get_current_principal, get_deal_repository
from src.crm.auth.principal import Principal
from src.crm.deals.pipeline import aggregate_pipeline, compute_dashboard_metrics
from src.crm.deals.schemas import DashboardMetrics, PipelineStage

router = APIRouter(prefix="/dashboard", tags=["dashboard"])

SortField = Literal["value", "probability", "created_at", "expected_close_date", "title"]


@router.get("/pipeline", response_model=list[PipelineStage])
async def get_pipeline(
    request: Request,
    sort_by: SortField | None = Query(default=None, description="Sort deals within each stage"),
    descending: bool = Query(default=False),
    principal: Principal = Depends(get_current_principal),
) -> list[PipelineStage]:
    """One aggregate per pipeline stage, in stage order, empty stages included."""
    repo = get_deal_repository(request)
    deals = await repo.list_visible(principal)
    return aggregate_pipeline(deals, sort_by=sort_by, descending=descending)


@router.get("/metrics", response_model=DashboardMetrics)
async def get_metrics(
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> DashboardMetrics:
    """Open pipeline value, active deals, conversion rate, new deals this week."""
    repo = get_deal_repository(request)
    deals = await repo.list_visible(principal)
    return compute_dashboard_metrics(deals)
