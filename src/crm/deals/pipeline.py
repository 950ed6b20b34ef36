"""Pipeline aggregation and dashboard metrics over an in-memory deal list.

Both functions are pure: the caller supplies the deals already filtered to
what the principal may see (DealRepository.list_visible) and gets derived,
unpersisted views back. Neither catches anything, so a failed read upstream
fails the whole request rather than producing a partial board.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime, time, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import structlog

from src.crm.deals.schemas import (
    DashboardMetrics,
    DealRead,
    DealStage,
    PipelineStage,
)

logger = structlog.get_logger(__name__)

ZERO = Decimal("0")
_PERCENT_QUANTUM = Decimal("0.01")


def _nullable(attr: str) -> Callable[[DealRead], Any]:
    # None sorts last regardless of direction
    def key(deal: DealRead) -> tuple[bool, Any]:
        value = getattr(deal, attr)
        return (value is None, value)

    return key


SORT_KEYS: dict[str, Callable[[DealRead], Any]] = {
    "value": lambda deal: deal.value,
    "probability": lambda deal: deal.probability,
    "created_at": _nullable("created_at"),
    "expected_close_date": _nullable("expected_close_date"),
    "title": lambda deal: deal.title.casefold(),
}


def aggregate_pipeline(
    deals: Iterable[DealRead],
    sort_by: str | None = None,
    descending: bool = False,
) -> list[PipelineStage]:
    """Group deals by stage, one aggregate per DealStage in canonical order.

    Stages with no deals are present with an empty list and a zero total.
    Within a stage, deals keep their input order unless ``sort_by`` names a
    key from SORT_KEYS. Deals whose stage is not a DealStage value are left
    out of every bucket and reported with a ``pipeline.unknown_stage``
    warning; the rest of the board is still returned.

    Raises:
        KeyError: ``sort_by`` is not a known sort key.
    """
    sort_key = SORT_KEYS[sort_by] if sort_by is not None else None

    buckets: dict[DealStage, list[DealRead]] = {stage: [] for stage in DealStage}
    for deal in deals:
        stage = DealStage.parse(deal.stage)
        if stage is None:
            logger.warning("pipeline.unknown_stage", deal_id=deal.id, stage=deal.stage)
            continue
        buckets[stage].append(deal)

    aggregates: list[PipelineStage] = []
    for stage in DealStage:
        members = buckets[stage]
        if sort_key is not None:
            members = sorted(members, key=sort_key, reverse=descending)
        aggregates.append(
            PipelineStage(
                stage=stage,
                deals=members,
                total=sum((deal.value for deal in members), ZERO),
                count=len(members),
            )
        )
    return aggregates


def start_of_week(now: datetime) -> datetime:
    """Midnight UTC on the Sunday starting ``now``'s week."""
    now = now.astimezone(timezone.utc)
    days_since_sunday = (now.weekday() + 1) % 7
    sunday = now.date() - timedelta(days=days_since_sunday)
    return datetime.combine(sunday, time.min, tzinfo=timezone.utc)


def compute_dashboard_metrics(
    deals: Iterable[DealRead],
    now: datetime | None = None,
) -> DashboardMetrics:
    """Summarise visible deals for the dashboard cards.

    Open pipeline value and active count cover every canonical stage except
    won and lost. Conversion rate is won / (won + lost) as a percentage with
    two decimals, and 0 while nothing has closed.
    """
    now = now or datetime.now(timezone.utc)
    week_start = start_of_week(now)

    open_value = ZERO
    active = won = lost = new_this_week = 0
    won_revenue = ZERO

    for deal in deals:
        stage = DealStage.parse(deal.stage)
        if stage is None:
            continue
        if stage is DealStage.WON:
            won += 1
            won_revenue += deal.value
        elif stage is DealStage.LOST:
            lost += 1
        else:
            active += 1
            open_value += deal.value
        if deal.created_at is not None and deal.created_at >= week_start:
            new_this_week += 1

    closed = won + lost
    rate = (
        (Decimal(won) * 100 / Decimal(closed)).quantize(_PERCENT_QUANTUM, rounding=ROUND_HALF_UP)
        if closed
        else ZERO
    )

    return DashboardMetrics(
        total_pipeline_value=open_value,
        active_deals=active,
        won_deals=won,
        lost_deals=lost,
        won_revenue=won_revenue,
        conversion_rate=rate,
        new_deals_this_week=new_this_week,
    )
