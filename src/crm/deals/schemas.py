"""Pydantic schemas for deals and the derived pipeline views.

Defines:
- DealStage: the closed, ordered stage enumeration
- DealCreate / DealUpdate / DealRead / StageMove: deal payloads
- PipelineStage: per-stage aggregate (derived, never persisted)
- DashboardMetrics: headline numbers for the dashboard

Monetary values are Decimal end to end. JSON output renders them as
strings so no float rounding is introduced on the way out either.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ── Enums ───────────────────────────────────────────────────────────────────


class DealStage(str, Enum):
    """Sales pipeline stages in canonical order.

    Iteration order is the display order of the pipeline board; the
    aggregator relies on it.
    """

    PROSPECTING = "prospecting"
    QUALIFICATION = "qualification"
    PROPOSAL = "proposal"
    CLOSING = "closing"
    WON = "won"
    LOST = "lost"

    @property
    def is_closed(self) -> bool:
        return self in CLOSED_STAGES

    @classmethod
    def parse(cls, value: object) -> DealStage | None:
        """Return the member for ``value`` or None when it is not a stage."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            return None


CLOSED_STAGES: frozenset[DealStage] = frozenset({DealStage.WON, DealStage.LOST})
OPEN_STAGES: tuple[DealStage, ...] = tuple(s for s in DealStage if s not in CLOSED_STAGES)


# ── Deal Payloads ───────────────────────────────────────────────────────────


class DealCreate(BaseModel):
    """Request body for creating a deal."""

    title: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    value: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)
    stage: DealStage = DealStage.PROSPECTING
    probability: int = Field(default=0, ge=0, le=100)
    expected_close_date: date | None = None
    contact_id: uuid.UUID | None = None
    company_id: uuid.UUID | None = None


_NULLABLE_UPDATE_FIELDS = frozenset(
    {"description", "expected_close_date", "contact_id", "company_id"}
)


class DealUpdate(BaseModel):
    """Partial update; only fields that are set are applied.

    Omitting a field leaves it unchanged. An explicit null is accepted only
    for the columns in _NULLABLE_UPDATE_FIELDS.
    """

    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    value: Decimal | None = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    stage: DealStage | None = None
    probability: int | None = Field(default=None, ge=0, le=100)
    expected_close_date: date | None = None
    contact_id: uuid.UUID | None = None
    company_id: uuid.UUID | None = None

    @model_validator(mode="before")
    @classmethod
    def _reject_required_nulls(cls, data: object) -> object:
        if isinstance(data, dict):
            nulled = sorted(
                name for name, value in data.items()
                if value is None
                and name in cls.model_fields
                and name not in _NULLABLE_UPDATE_FIELDS
            )
            if nulled:
                raise ValueError(f"fields cannot be null: {', '.join(nulled)}")
        return data


class StageMove(BaseModel):
    """Request body for moving a deal to another stage."""

    stage: DealStage


class DealRead(BaseModel):
    """Deal as returned by the repository and the API.

    ``stage`` is a plain string here: rows written before a constraint
    existed may hold values outside DealStage, and reading them must not
    fail. The aggregator decides what to do with such rows.
    """

    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    description: str | None = None
    value: Decimal
    stage: str
    probability: int = 0
    expected_close_date: date | None = None
    actual_close_date: date | None = None
    contact_id: uuid.UUID | None = None
    company_id: uuid.UUID | None = None
    owner_id: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ── Derived Views ───────────────────────────────────────────────────────────


class PipelineStage(BaseModel):
    """One column of the pipeline board."""

    stage: DealStage
    deals: list[DealRead] = Field(default_factory=list)
    total: Decimal = Decimal("0")
    count: int = 0


class DashboardMetrics(BaseModel):
    """Headline numbers computed from the deals visible to the caller."""

    total_pipeline_value: Decimal = Decimal("0")
    active_deals: int = 0
    won_deals: int = 0
    lost_deals: int = 0
    won_revenue: Decimal = Decimal("0")
    conversion_rate: Decimal = Decimal("0")
    new_deals_this_week: int = 0
