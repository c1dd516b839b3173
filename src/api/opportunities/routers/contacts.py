"""
Contact Role API
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, status

from ....core.opportunities.models import ContactRoleInput
from ....core.opportunities.service import OpportunityService
from ...shared.middleware import get_trace_id
from ...shared.responses import SuccessResponse
from ..dependencies import get_actor_id, get_restrict_owner_ids, get_service

router = APIRouter(prefix="/api/opportunities", tags=["contacts"])


@router.get("/{opportunity_id}/contacts")
async def list_contact_roles(
    opportunity_id: str,
    restrict_owner_ids: Optional[List[str]] = Depends(get_restrict_owner_ids),
    service: OpportunityService = Depends(get_service),
):
    roles = await service.list_contact_roles(opportunity_id, restrict_owner_ids=restrict_owner_ids)
    return SuccessResponse.create(roles, correlation_id=opportunity_id, trace_id=get_trace_id())


@router.post("/{opportunity_id}/contacts", status_code=status.HTTP_201_CREATED)
async def add_contact_role(
    opportunity_id: str,
    body: ContactRoleInput,
    actor_id: Optional[str] = Depends(get_actor_id),
    service: OpportunityService = Depends(get_service),
):
    role = await service.add_contact_role(opportunity_id, body, actor_id=actor_id)
    return SuccessResponse.create(role, correlation_id=opportunity_id, trace_id=get_trace_id())


@router.delete("/{opportunity_id}/contacts/{contact_id}")
async def remove_contact_role(
    opportunity_id: str,
    contact_id: str,
    actor_id: Optional[str] = Depends(get_actor_id),
    service: OpportunityService = Depends(get_service),
):
    await service.remove_contact_role(opportunity_id, contact_id, actor_id=actor_id)
    return SuccessResponse.create(
        {"contact_id": contact_id, "deleted": True},
        correlation_id=opportunity_id,
        trace_id=get_trace_id(),
    )
