"""Deal repository -- async CRUD plus the visibility-filtered bulk read.

Uses the session_factory callable pattern shared with SqlApiKeyStore.
Visibility: admins and sales managers see every deal, sales reps only the
deals they own. The pipeline board and dashboard metrics are computed from
list_visible() by src.crm.deals.pipeline.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import date, datetime, timezone

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.crm.auth.principal import Principal
from src.crm.deals.models import DealModel
from src.crm.deals.schemas import CLOSED_STAGES, DealCreate, DealRead, DealStage, DealUpdate

logger = structlog.get_logger(__name__)


class DealNotFoundError(ValueError):
    """Raised when an update or move targets a deal that does not exist."""

    def __init__(self, deal_id: str) -> None:
        self.deal_id = deal_id
        super().__init__(f"Deal not found: {deal_id}")


# ── Stage Rules ─────────────────────────────────────────────────────────────


def close_date_after_move(
    previous: DealStage | None,
    target: DealStage,
    current: date | None,
    today: date,
) -> date | None:
    """actual_close_date after a deal moves from ``previous`` to ``target``.

    Entering won or lost from an open stage stamps today; moving between
    won and lost keeps the existing date; reopening clears it.
    """
    if target in CLOSED_STAGES:
        if previous in CLOSED_STAGES and current is not None:
            return current
        return today
    return None


def is_visible_to(deal: DealRead, principal: Principal) -> bool:
    return principal.is_manager or deal.owner_id == principal.user_id


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_deal(model: DealModel) -> DealRead:
    """Convert DealModel to DealRead schema."""
    return DealRead(
        id=str(model.id),
        title=model.title,
        description=model.description,
        value=model.value,
        stage=DealStage(model.stage).value,
        probability=model.probability,
        expected_close_date=model.expected_close_date,
        actual_close_date=model.actual_close_date,
        contact_id=model.contact_id,
        company_id=model.company_id,
        owner_id=str(model.owner_id),
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


class DealRepository:
    """Async persistence for deals.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def create(self, owner_id: str, data: DealCreate) -> DealRead:
        """Insert a deal owned by ``owner_id``."""
        today = datetime.now(timezone.utc).date()
        async for session in self._session_factory():
            model = DealModel(
                title=data.title,
                description=data.description,
                value=data.value,
                stage=data.stage,
                probability=data.probability,
                expected_close_date=data.expected_close_date,
                actual_close_date=close_date_after_move(None, data.stage, None, today),
                contact_id=data.contact_id,
                company_id=data.company_id,
                owner_id=uuid.UUID(owner_id),
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            logger.info("deals.created", deal_id=str(model.id), owner_id=owner_id)
            return _model_to_deal(model)

    async def get(self, deal_id: str) -> DealRead | None:
        async for session in self._session_factory():
            model = await session.get(DealModel, uuid.UUID(deal_id))
            return _model_to_deal(model) if model is not None else None

    async def list_visible(self, principal: Principal) -> list[DealRead]:
        """Deals the principal may see, newest first.

        Storage errors propagate unchanged to the caller.
        """
        async for session in self._session_factory():
            stmt = select(DealModel).order_by(DealModel.created_at.desc())
            if not principal.is_manager:
                stmt = stmt.where(DealModel.owner_id == uuid.UUID(principal.user_id))
            result = await session.execute(stmt)
            return [_model_to_deal(m) for m in result.scalars().all()]

    async def update(self, deal_id: str, data: DealUpdate) -> DealRead:
        """Apply the fields set on ``data``.

        Raises:
            DealNotFoundError: No deal with ``deal_id``.
        """
        changes = data.model_dump(exclude_unset=True)
        async for session in self._session_factory():
            model = await session.get(DealModel, uuid.UUID(deal_id))
            if model is None:
                raise DealNotFoundError(deal_id)

            target = changes.pop("stage", None)
            for field, value in changes.items():
                setattr(model, field, value)
            if target is not None:
                self._apply_stage(model, DealStage(target))

            await session.commit()
            await session.refresh(model)
            return _model_to_deal(model)

    async def move_stage(self, deal_id: str, stage: DealStage) -> DealRead:
        """Move a deal to ``stage``, maintaining actual_close_date.

        Raises:
            DealNotFoundError: No deal with ``deal_id``.
        """
        async for session in self._session_factory():
            model = await session.get(DealModel, uuid.UUID(deal_id))
            if model is None:
                raise DealNotFoundError(deal_id)
            previous = DealStage(model.stage)
            self._apply_stage(model, stage)
            await session.commit()
            await session.refresh(model)
            logger.info(
                "deals.stage_moved",
                deal_id=deal_id,
                from_stage=previous.value,
                to_stage=stage.value,
            )
            return _model_to_deal(model)

    async def delete(self, deal_id: str) -> bool:
        """Delete a deal. Returns False when it did not exist."""
        async for session in self._session_factory():
            result = await session.execute(
                delete(DealModel).where(DealModel.id == uuid.UUID(deal_id))
            )
            await session.commit()
            return result.rowcount > 0

    @staticmethod
    def _apply_stage(model: DealModel, target: DealStage) -> None:
        previous = DealStage(model.stage)
        model.actual_close_date = close_date_after_move(
            previous,
            target,
            model.actual_close_date,
            datetime.now(timezone.utc).date(),
        )
        model.stage = target
