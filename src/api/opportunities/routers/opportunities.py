"""
Opportunity API

CRUD, lifecycle transitions, stage history, duplicate check, pipeline
board and forecast.
"""

from datetime import date
from decimal import Decimal
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query, status

from ....core.opportunities.models import OpportunityCreate, OpportunityFilters, OpportunityPatch
from ....core.opportunities.repository import SORT_COLUMNS
from ....core.opportunities.service import MAX_PAGE_SIZE, OpportunityService
from ...shared.exceptions import ValidationError
from ...shared.middleware import get_trace_id
from ...shared.responses import ListResponse, SuccessResponse
from ..dependencies import get_actor_id, get_restrict_owner_ids, get_service
from ..schemas import (
    ChangeStageRequest,
    CloseLostRequest,
    CloseWonRequest,
    DuplicateCheckResult,
    ReopenRequest,
)

router = APIRouter(prefix="/api/opportunities", tags=["opportunities"])


@router.get("")
async def list_opportunities(
    search: Optional[str] = Query(None, description="Match on opportunity or account name"),
    pipeline_id: Optional[str] = None,
    stage_id: Optional[str] = None,
    owner_id: Optional[str] = None,
    account_id: Optional[str] = None,
    priority_id: Optional[str] = None,
    type: Optional[str] = None,
    source: Optional[str] = None,
    forecast_category: Optional[str] = None,
    min_amount: Optional[Decimal] = None,
    max_amount: Optional[Decimal] = None,
    close_date_from: Optional[date] = None,
    close_date_to: Optional[date] = None,
    tag: Optional[str] = None,
    is_open: Optional[bool] = None,
    ownership: Literal["all", "my_deals", "created_by_me"] = "all",
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=MAX_PAGE_SIZE),
    sort_by: str = Query("created_at"),
    sort_order: Literal["asc", "desc"] = "desc",
    actor_id: Optional[str] = Depends(get_actor_id),
    restrict_owner_ids: Optional[List[str]] = Depends(get_restrict_owner_ids),
    service: OpportunityService = Depends(get_service),
):
    """List opportunities with filters, sorting and pagination."""
    if sort_by not in SORT_COLUMNS:
        raise ValidationError(f"Unknown sort field '{sort_by}'. Valid: {', '.join(sorted(SORT_COLUMNS))}")

    filters = OpportunityFilters(
        search=search,
        pipeline_id=pipeline_id,
        stage_id=stage_id,
        owner_id=owner_id,
        account_id=account_id,
        priority_id=priority_id,
        type=type,
        source=source,
        forecast_category=forecast_category,
        min_amount=min_amount,
        max_amount=max_amount,
        close_date_from=close_date_from,
        close_date_to=close_date_to,
        tag=tag,
        is_open=is_open,
        ownership=ownership,
    )
    result = await service.list_opportunities(
        filters,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
        actor_id=actor_id,
        restrict_owner_ids=restrict_owner_ids,
    )
    return ListResponse.create(
        data=result.items,
        total=result.total,
        page=result.page,
        limit=result.limit,
        trace_id=get_trace_id(),
    )


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_opportunity(
    body: OpportunityCreate,
    actor_id: Optional[str] = Depends(get_actor_id),
    service: OpportunityService = Depends(get_service),
):
    opportunity = await service.create_opportunity(body, actor_id=actor_id)
    return SuccessResponse.create(opportunity, correlation_id=opportunity.id, trace_id=get_trace_id())


@router.get("/check-duplicates")
async def check_duplicates(
    name: Optional[str] = None,
    account_id: Optional[str] = None,
    exclude_id: Optional[str] = None,
    restrict_owner_ids: Optional[List[str]] = Depends(get_restrict_owner_ids),
    service: OpportunityService = Depends(get_service),
):
    """Open opportunities that look like the one being entered."""
    duplicates = await service.find_duplicates(
        name=name,
        account_id=account_id,
        exclude_id=exclude_id,
        restrict_owner_ids=restrict_owner_ids,
    )
    result = DuplicateCheckResult(has_duplicates=bool(duplicates), duplicates=duplicates)
    return SuccessResponse.create(result, trace_id=get_trace_id())


@router.get("/board")
async def get_pipeline_board(
    pipeline_id: str,
    restrict_owner_ids: Optional[List[str]] = Depends(get_restrict_owner_ids),
    service: OpportunityService = Depends(get_service),
):
    columns = await service.get_pipeline_board(pipeline_id, restrict_owner_ids=restrict_owner_ids)
    return SuccessResponse.create(columns, trace_id=get_trace_id())


@router.get("/forecast")
async def get_forecast(
    pipeline_id: Optional[str] = None,
    restrict_owner_ids: Optional[List[str]] = Depends(get_restrict_owner_ids),
    service: OpportunityService = Depends(get_service),
):
    forecast = await service.get_forecast(pipeline_id, restrict_owner_ids=restrict_owner_ids)
    return SuccessResponse.create(forecast, trace_id=get_trace_id())


@router.get("/{opportunity_id}")
async def get_opportunity(
    opportunity_id: str,
    restrict_owner_ids: Optional[List[str]] = Depends(get_restrict_owner_ids),
    service: OpportunityService = Depends(get_service),
):
    """Opportunity with stage, pipeline, history, contacts, line items and team."""
    detail = await service.get_opportunity(opportunity_id, restrict_owner_ids=restrict_owner_ids)
    return SuccessResponse.create(detail, correlation_id=opportunity_id, trace_id=get_trace_id())


@router.put("/{opportunity_id}")
async def update_opportunity(
    opportunity_id: str,
    body: OpportunityPatch,
    actor_id: Optional[str] = Depends(get_actor_id),
    service: OpportunityService = Depends(get_service),
):
    opportunity = await service.update_opportunity(opportunity_id, body, actor_id=actor_id)
    return SuccessResponse.create(opportunity, correlation_id=opportunity_id, trace_id=get_trace_id())


@router.delete("/{opportunity_id}")
async def delete_opportunity(
    opportunity_id: str,
    actor_id: Optional[str] = Depends(get_actor_id),
    service: OpportunityService = Depends(get_service),
):
    await service.soft_delete(opportunity_id, actor_id=actor_id)
    return SuccessResponse.create(
        {"id": opportunity_id, "deleted": True},
        correlation_id=opportunity_id,
        trace_id=get_trace_id(),
    )


@router.post("/{opportunity_id}/change-stage")
async def change_stage(
    opportunity_id: str,
    body: ChangeStageRequest,
    actor_id: Optional[str] = Depends(get_actor_id),
    service: OpportunityService = Depends(get_service),
):
    opportunity = await service.change_stage(
        opportunity_id,
        body.stage_id,
        actor_id=actor_id,
        field_values=body.field_values,
        note=body.note,
        probability=body.probability,
        forecast_category=body.forecast_category,
    )
    return SuccessResponse.create(opportunity, correlation_id=opportunity_id, trace_id=get_trace_id())


@router.post("/{opportunity_id}/close-won")
async def close_won(
    opportunity_id: str,
    body: CloseWonRequest,
    actor_id: Optional[str] = Depends(get_actor_id),
    service: OpportunityService = Depends(get_service),
):
    opportunity = await service.close_won(
        opportunity_id,
        close_reason_id=body.close_reason_id,
        actor_id=actor_id,
        final_amount=body.final_amount,
        close_date=body.close_date,
        notes=body.notes,
        competitor=body.competitor,
    )
    return SuccessResponse.create(opportunity, correlation_id=opportunity_id, trace_id=get_trace_id())


@router.post("/{opportunity_id}/close-lost")
async def close_lost(
    opportunity_id: str,
    body: CloseLostRequest,
    actor_id: Optional[str] = Depends(get_actor_id),
    service: OpportunityService = Depends(get_service),
):
    opportunity = await service.close_lost(
        opportunity_id,
        close_reason_id=body.close_reason_id,
        actor_id=actor_id,
        close_date=body.close_date,
        notes=body.notes,
        competitor=body.competitor,
    )
    return SuccessResponse.create(opportunity, correlation_id=opportunity_id, trace_id=get_trace_id())


@router.post("/{opportunity_id}/reopen")
async def reopen(
    opportunity_id: str,
    body: ReopenRequest,
    actor_id: Optional[str] = Depends(get_actor_id),
    service: OpportunityService = Depends(get_service),
):
    opportunity = await service.reopen(
        opportunity_id,
        body.stage_id,
        reason=body.reason,
        actor_id=actor_id,
        probability=body.probability,
    )
    return SuccessResponse.create(opportunity, correlation_id=opportunity_id, trace_id=get_trace_id())


@router.get("/{opportunity_id}/stage-history")
async def get_stage_history(
    opportunity_id: str,
    restrict_owner_ids: Optional[List[str]] = Depends(get_restrict_owner_ids),
    service: OpportunityService = Depends(get_service),
):
    history = await service.get_stage_history(opportunity_id, restrict_owner_ids=restrict_owner_ids)
    return SuccessResponse.create(history, correlation_id=opportunity_id, trace_id=get_trace_id())
