"""REST API endpoints for deals.

CRUD plus an explicit stage move. All endpoints require an authenticated
principal. Sales reps only see and change their own deals; a deal owned by
someone else answers 404 so its existence is not disclosed.
"""

from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from src.crm.api.deps import get_current_principal, get_deal_repository
from src.crm.auth.principal import Principal
from src.crm.deals.repository import DealNotFoundError, is_visible_to
from src.crm.deals.schemas import DealCreate, DealRead, DealUpdate, StageMove

router = APIRouter(prefix="/deals", tags=["deals"])


def _not_found(deal_id: uuid.UUID) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Deal not found: {deal_id}",
    )


async def _load_visible(repo: Any, deal_id: uuid.UUID, principal: Principal) -> DealRead:
    deal = await repo.get(str(deal_id))
    if deal is None or not is_visible_to(deal, principal):
        raise _not_found(deal_id)
    return deal


@router.get("", response_model=list[DealRead])
async def list_deals(
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> list[DealRead]:
    """List deals visible to the caller, newest first."""
    repo = get_deal_repository(request)
    return await repo.list_visible(principal)


@router.post("", response_model=DealRead, status_code=status.HTTP_201_CREATED)
async def create_deal(
    body: DealCreate,
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> DealRead:
    """Create a deal owned by the caller."""
    repo = get_deal_repository(request)
    return await repo.create(principal.user_id, body)


@router.get("/{deal_id}", response_model=DealRead)
async def get_deal(
    deal_id: uuid.UUID,
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> DealRead:
    repo = get_deal_repository(request)
    return await _load_visible(repo, deal_id, principal)


@router.patch("/{deal_id}", response_model=DealRead)
async def update_deal(
    deal_id: uuid.UUID,
    body: DealUpdate,
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> DealRead:
    """Partially update a deal. A stage change follows the same close-date
    rules as the move endpoint."""
    repo = get_deal_repository(request)
    await _load_visible(repo, deal_id, principal)
    try:
        return await repo.update(str(deal_id), body)
    except DealNotFoundError:
        raise _not_found(deal_id)


@router.post("/{deal_id}/move", response_model=DealRead)
async def move_deal(
    deal_id: uuid.UUID,
    body: StageMove,
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> DealRead:
    """Move a deal to another pipeline stage."""
    repo = get_deal_repository(request)
    await _load_visible(repo, deal_id, principal)
    try:
        return await repo.move_stage(str(deal_id), body.stage)
    except DealNotFoundError:
        raise _not_found(deal_id)


@router.delete("/{deal_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_deal(
    deal_id: uuid.UUID,
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> Response:
    repo = get_deal_repository(request)
    await _load_visible(repo, deal_id, principal)
    if not await repo.delete(str(deal_id)):
        raise _not_found(deal_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
