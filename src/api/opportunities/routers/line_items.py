"""
Line Item API

Products and bundles attached to an opportunity. Every write returns the
rows touched; the opportunity amount follows the line item total.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, status

from ....core.opportunities.models import LineItemPatch, NewLineItem
from ....core.opportunities.service import OpportunityService
from ...shared.middleware import get_trace_id
from ...shared.responses import SuccessResponse
from ..dependencies import get_actor_id, get_restrict_owner_ids, get_service

router = APIRouter(prefix="/api/opportunities", tags=["line-items"])


@router.get("/{opportunity_id}/line-items")
async def list_line_items(
    opportunity_id: str,
    restrict_owner_ids: Optional[List[str]] = Depends(get_restrict_owner_ids),
    service: OpportunityService = Depends(get_service),
):
    items = await service.list_line_items(opportunity_id, restrict_owner_ids=restrict_owner_ids)
    return SuccessResponse.create(items, correlation_id=opportunity_id, trace_id=get_trace_id())


@router.post("/{opportunity_id}/line-items", status_code=status.HTTP_201_CREATED)
async def add_line_item(
    opportunity_id: str,
    body: NewLineItem,
    actor_id: Optional[str] = Depends(get_actor_id),
    service: OpportunityService = Depends(get_service),
):
    """Add a product; a bundle product expands into parent, child and discount rows."""
    rows = await service.add_line_item(opportunity_id, body, actor_id=actor_id)
    return SuccessResponse.create(rows, correlation_id=opportunity_id, trace_id=get_trace_id())


@router.put("/{opportunity_id}/line-items/{item_id}")
async def update_line_item(
    opportunity_id: str,
    item_id: str,
    body: LineItemPatch,
    actor_id: Optional[str] = Depends(get_actor_id),
    service: OpportunityService = Depends(get_service),
):
    item = await service.update_line_item(opportunity_id, item_id, body, actor_id=actor_id)
    return SuccessResponse.create(item, correlation_id=opportunity_id, trace_id=get_trace_id())


@router.delete("/{opportunity_id}/line-items/{item_id}")
async def remove_line_item(
    opportunity_id: str,
    item_id: str,
    actor_id: Optional[str] = Depends(get_actor_id),
    service: OpportunityService = Depends(get_service),
):
    await service.remove_line_item(opportunity_id, item_id, actor_id=actor_id)
    return SuccessResponse.create(
        {"id": item_id, "deleted": True},
        correlation_id=opportunity_id,
        trace_id=get_trace_id(),
    )
