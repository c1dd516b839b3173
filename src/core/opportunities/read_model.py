"""
Opportunity read models

Composes the detail view, the pipeline board and the forecast from the
stores and the external directories. Read-only.
"""

import logging
from collections import OrderedDict
from typing import Dict, List, Optional, Sequence, Tuple

from ..collaborators.references import ReferenceDirectory
from ..collaborators.stages import PipelineStage, StageDirectory
from ..errors import NotFoundError
from ..money import ZERO, to_money
from .contacts import ContactRoleManager
from .line_items import LineItemRepository
from .models import (
    ENTITY_TYPE,
    BoardColumn,
    Forecast,
    ForecastBucket,
    ForecastSummary,
    Opportunity,
    OpportunityDetail,
    StageHistoryEntry,
)
from .repository import OpportunityRepository

logger = logging.getLogger(__name__)

BOARD_COLUMN_LIMIT = 50


class OpportunityReadModel:
    def __init__(
        self,
        directory: StageDirectory,
        repository: OpportunityRepository,
        line_items: LineItemRepository,
        contacts: ContactRoleManager,
        references: ReferenceDirectory,
    ):
        self.directory = directory
        self.repository = repository
        self.line_items = line_items
        self.contacts = contacts
        self.references = references

    async def _stage_names(self, stages: Sequence[PipelineStage], ids: Sequence[str]) -> Dict[str, str]:
        names = {stage.id: stage.name for stage in stages}
        for stage_id in ids:
            if stage_id and stage_id not in names:
                stage = await self.directory.get_stage(stage_id)
                if stage is not None:
                    names[stage_id] = stage.name
        return names

    async def stage_history(
        self,
        opportunity_id: str,
        stages: Optional[Sequence[PipelineStage]] = None,
    ) -> List[StageHistoryEntry]:
        """History newest first, with stage names resolved where the stage still exists."""
        history = await self.repository.list_history(opportunity_id)
        ids = [e.from_stage_id for e in history] + [e.to_stage_id for e in history]
        names = await self._stage_names(stages or [], ids)
        return [
            entry.model_copy(update={
                "from_stage_name": names.get(entry.from_stage_id) if entry.from_stage_id else None,
                "to_stage_name": names.get(entry.to_stage_id),
            })
            for entry in history
        ]

    async def detail(self, opportunity: Opportunity) -> OpportunityDetail:
        stages = await self.directory.list_stages(opportunity.pipeline_id)
        stage = next((s for s in stages if s.id == opportunity.stage_id), None)
        if stage is None:
            stage = await self.directory.get_stage(opportunity.stage_id)

        owner = await self.references.get_user(opportunity.owner_id) if opportunity.owner_id else None
        account = await self.references.get_account(opportunity.account_id) if opportunity.account_id else None
        primary_contact = (
            await self.references.get_contact(opportunity.primary_contact_id)
            if opportunity.primary_contact_id else None
        )

        return OpportunityDetail(
            **opportunity.model_dump(exclude={"weighted_amount"}),
            stage=stage,
            pipeline=await self.directory.get_pipeline(opportunity.pipeline_id),
            all_stages=stages,
            stage_history=await self.stage_history(opportunity.id, stages),
            contact_roles=await self.contacts.list_contact_roles(opportunity.id),
            line_items=await self.line_items.list(opportunity.id),
            owner=owner,
            account=account,
            primary_contact=primary_contact,
            team_members=await self.references.list_team_members(ENTITY_TYPE, opportunity.id),
        )

    async def pipeline_board(
        self,
        pipeline_id: str,
        restrict_owner_ids: Optional[Sequence[str]] = None,
    ) -> List[BoardColumn]:
        """One column per active stage, each holding its largest deals first."""
        pipeline = await self.directory.get_pipeline(pipeline_id)
        if pipeline is None:
            raise NotFoundError("Pipeline", pipeline_id)

        stages = await self.directory.list_stages(pipeline_id)
        totals = await self.repository.stage_totals(pipeline_id, restrict_owner_ids)

        columns = []
        for stage in stages:
            count, total_amount, weighted_amount = totals.get(stage.id, (0, ZERO, ZERO))
            opportunities = await self.repository.list_in_stage(
                pipeline_id, stage.id, BOARD_COLUMN_LIMIT, restrict_owner_ids
            )
            columns.append(BoardColumn(
                stage=stage,
                opportunities=opportunities,
                count=count,
                total_amount=total_amount,
                weighted_amount=weighted_amount,
            ))
        return columns

    async def forecast(
        self,
        pipeline_id: Optional[str] = None,
        restrict_owner_ids: Optional[Sequence[str]] = None,
    ) -> Forecast:
        """Open deals with a close date, bucketed by forecast category and close month."""
        opportunities = await self.repository.list_forecastable(pipeline_id, restrict_owner_ids)

        buckets: "OrderedDict[Tuple[str, str], ForecastBucket]" = OrderedDict()
        total_amount = ZERO
        weighted_total = ZERO
        probability_sum = 0

        for opportunity in opportunities:
            month = opportunity.close_date.strftime("%Y-%m")
            key = (opportunity.forecast_category, month)
            bucket = buckets.get(key)
            if bucket is None:
                bucket = ForecastBucket(forecast_category=opportunity.forecast_category, month=month)
                buckets[key] = bucket

            amount = opportunity.amount or ZERO
            weighted = opportunity.weighted_amount or ZERO
            bucket.deal_count += 1
            bucket.total_amount = to_money(bucket.total_amount + amount)
            bucket.weighted_amount = to_money(bucket.weighted_amount + weighted)

            total_amount += amount
            weighted_total += weighted
            probability_sum += opportunity.probability

        won_count, lost_count = await self.repository.outcome_counts(pipeline_id, restrict_owner_ids)
        deal_count = len(opportunities)
        summary = ForecastSummary(
            total_deals=deal_count,
            total_amount=to_money(total_amount),
            weighted_amount=to_money(weighted_total),
            avg_probability=round(probability_sum / deal_count, 2) if deal_count else 0.0,
            won_count=won_count,
            lost_count=lost_count,
        )
        ordered = sorted(buckets.values(), key=lambda b: (b.month, b.forecast_category))
        return Forecast(buckets=ordered, summary=summary)
