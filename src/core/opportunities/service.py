"""
Opportunity Service

Entry point for every opportunity operation. Each mutation runs in one
database transaction together with its audit and activity side effects;
reads compose the read models.
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ..collaborators.catalog import ProductCatalog, SqlProductCatalog
from ..collaborators.references import ReferenceDirectory, SqlReferenceDirectory
from ..collaborators.stages import StageDirectory, StageKind, SqlStageDirectory
from ..config import get_settings
from ..database import DatabaseAdapter
from ..errors import InvalidStateError, NotFoundError, ValidationError
from ..events.models import ActivityEntry, AuditEntry
from ..events.taxonomy import ActivityType, AuditAction
from ..money import to_money
from ..observability import add_correlation_id_to_span, record_counter, traced
from ..outbox.transactional import TransactionalPublisher, transactional_publish
from .contacts import ContactRoleManager, ContactRoleRepository
from .duplicates import DuplicateDetector
from .forecast import categorize
from .line_items import LineItemPricingEngine, LineItemRepository
from .models import (
    ENTITY_TYPE,
    TRACKED_FIELDS,
    BoardColumn,
    ContactRole,
    ContactRoleInput,
    Forecast,
    LineItem,
    LineItemPatch,
    LineItemType,
    NewLineItem,
    Opportunity,
    OpportunityCreate,
    OpportunityDetail,
    OpportunityFilters,
    OpportunityPage,
    OpportunityPatch,
    StageHistoryEntry,
    utcnow,
)
from .read_model import OpportunityReadModel
from .repository import OpportunityRepository
from .transitions import StageTransition, StageTransitionEngine

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


def _json_values(opportunity: Opportunity, fields: Iterable[str]) -> Dict[str, Any]:
    dumped = opportunity.model_dump(mode="json")
    return {name: dumped.get(name) for name in fields}


def diff_fields(before: Opportunity, after: Opportunity, fields: Iterable[str]) -> Dict[str, Dict[str, Any]]:
    """{field: {"from": old, "to": new}} for every field whose value changed."""
    old = _json_values(before, fields)
    new = _json_values(after, fields)
    return {name: {"from": old[name], "to": new[name]} for name in old if old[name] != new[name]}


def _visible(opportunity: Opportunity, restrict_owner_ids: Optional[Sequence[str]]) -> bool:
    return restrict_owner_ids is None or opportunity.owner_id in restrict_owner_ids


class OpportunityService:
    """
    Opportunity aggregate operations.

    Collaborators default to the SQL-backed adapters on the same database.
    """

    def __init__(
        self,
        db: Optional[DatabaseAdapter] = None,
        directory: Optional[StageDirectory] = None,
        catalog: Optional[ProductCatalog] = None,
        references: Optional[ReferenceDirectory] = None,
    ):
        self.db = db
        self.directory = directory or SqlStageDirectory(db)
        self.catalog = catalog or SqlProductCatalog(db)
        self.references = references or SqlReferenceDirectory(db)

        self.repository = OpportunityRepository(db)
        self.line_item_repository = LineItemRepository(db)
        self.transitions = StageTransitionEngine(self.directory, self.repository)
        self.pricing = LineItemPricingEngine(self.catalog, self.line_item_repository, self.repository)
        self.contacts = ContactRoleManager(ContactRoleRepository(db), self.repository, self.references)
        self.duplicates = DuplicateDetector(self.repository)
        self.read_model = OpportunityReadModel(
            self.directory, self.repository, self.line_item_repository, self.contacts, self.references
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load(self, opportunity_id: str, for_update: bool = False) -> Opportunity:
        opportunity = await self.repository.get(opportunity_id, for_update=for_update)
        if opportunity is None:
            raise NotFoundError("Opportunity", opportunity_id)
        return opportunity

    async def _load_visible(
        self, opportunity_id: str, restrict_owner_ids: Optional[Sequence[str]]
    ) -> Opportunity:
        """Load for a scoped read; records outside the scope are reported as missing."""
        opportunity = await self._load(opportunity_id)
        if not _visible(opportunity, restrict_owner_ids):
            raise NotFoundError("Opportunity", opportunity_id)
        return opportunity

    async def _emit(
        self,
        txn: TransactionalPublisher,
        opportunity_id: str,
        action: AuditAction,
        activity_type: ActivityType,
        title: str,
        actor_id: Optional[str],
        changes: Optional[Dict[str, Dict[str, Any]]] = None,
        previous_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        await txn.emit_audit(AuditEntry(
            entity_type=ENTITY_TYPE,
            entity_id=opportunity_id,
            action=action,
            changes=changes or {},
            previous_values=previous_values,
            new_values=new_values,
            performed_by=actor_id,
        ))
        await txn.emit_activity(ActivityEntry(
            entity_type=ENTITY_TYPE,
            entity_id=opportunity_id,
            activity_type=activity_type,
            title=title,
            description=description,
            metadata=metadata or {},
            performed_by=actor_id,
        ))

    async def _emit_transition(
        self,
        txn: TransactionalPublisher,
        transition: StageTransition,
        activity_type: ActivityType,
        title: str,
        actor_id: Optional[str],
        description: Optional[str] = None,
    ) -> None:
        fields = TRACKED_FIELDS + ("stage_id", "won_at", "lost_at", "close_reason_id", "close_notes")
        changes = diff_fields(transition.previous, transition.opportunity, fields)
        seconds = transition.history.time_in_stage.total_seconds() if transition.history.time_in_stage else None
        await self._emit(
            txn,
            transition.opportunity.id,
            AuditAction.UPDATE,
            activity_type,
            title,
            actor_id,
            changes=changes,
            previous_values={name: change["from"] for name, change in changes.items()},
            new_values={name: change["to"] for name, change in changes.items()},
            description=description,
            metadata={
                "from_stage_id": transition.from_stage.id if transition.from_stage else transition.previous.stage_id,
                "from_stage_name": transition.from_stage.name if transition.from_stage else None,
                "to_stage_id": transition.to_stage.id,
                "to_stage_name": transition.to_stage.name,
                "time_in_stage_seconds": seconds,
            },
        )

    async def _emit_amount_change(
        self,
        txn: TransactionalPublisher,
        opportunity: Opportunity,
        new_amount: Optional[Decimal],
        activity_type: ActivityType,
        title: str,
        actor_id: Optional[str],
        line_item: LineItem,
    ) -> None:
        changes = {}
        if new_amount is not None and new_amount != opportunity.amount:
            changes["amount"] = {
                "from": str(opportunity.amount) if opportunity.amount is not None else None,
                "to": str(new_amount),
            }
        await self._emit(
            txn,
            opportunity.id,
            AuditAction.UPDATE,
            activity_type,
            title,
            actor_id,
            changes=changes,
            new_values={"line_item": line_item.model_dump(mode="json")},
            metadata={"line_item_id": line_item.id, "product_id": line_item.product_id},
        )

    # ------------------------------------------------------------------
    # Opportunities
    # ------------------------------------------------------------------

    @traced("opportunity.create")
    async def create_opportunity(self, data: OpportunityCreate, actor_id: Optional[str] = None) -> Opportunity:
        """
        Create an opportunity in its pipeline's first open stage, or in the
        given open stage.

        Raises:
            NotFoundError: Pipeline or stage missing or inactive
            InvalidStateError: Stage is won/lost, or the pipeline has no open stage
        """
        async with transactional_publish(self.db) as txn:
            pipeline = await self.directory.get_pipeline(data.pipeline_id)
            if pipeline is None:
                raise NotFoundError("Pipeline", data.pipeline_id)

            if data.stage_id:
                stage = await self.directory.get_stage(data.stage_id)
                if stage is None or stage.pipeline_id != pipeline.id:
                    raise NotFoundError("Stage", data.stage_id)
                if stage.kind != StageKind.OPEN:
                    raise InvalidStateError(
                        f"Opportunities cannot be created in {stage.kind.value} stage '{stage.name}'"
                    )
            else:
                stage = await self.directory.get_first_open_stage(pipeline.id)
                if stage is None:
                    raise InvalidStateError(f"Pipeline '{pipeline.name}' has no open stage")

            now = utcnow()
            probability = stage.probability if data.probability is None else data.probability
            opportunity = Opportunity(
                name=data.name,
                pipeline_id=pipeline.id,
                stage_id=stage.id,
                amount=to_money(data.amount) if data.amount is not None else None,
                currency=data.currency or get_settings().DEFAULT_CURRENCY,
                close_date=data.close_date,
                probability=probability,
                forecast_category=data.forecast_category or categorize(probability).value,
                owner_id=data.owner_id or actor_id,
                account_id=data.account_id,
                primary_contact_id=data.primary_contact_id,
                priority_id=data.priority_id,
                type=data.type,
                source=data.source,
                lead_id=data.lead_id,
                next_step=data.next_step,
                description=data.description,
                competitor=data.competitor,
                tags=data.tags,
                custom_fields=data.custom_fields,
                stage_entered_at=now,
                created_by=actor_id,
                updated_by=actor_id,
                created_at=now,
                updated_at=now,
            )
            add_correlation_id_to_span(opportunity.id)

            await self.repository.insert(opportunity)
            await self.transitions.record_creation(opportunity, stage, actor_id)
            await self._emit(
                txn,
                opportunity.id,
                AuditAction.CREATE,
                ActivityType.CREATED,
                f"Opportunity created: {opportunity.name}",
                actor_id,
                new_values=opportunity.model_dump(mode="json"),
                metadata={"pipeline_id": pipeline.id, "stage_id": stage.id},
            )

        record_counter("opportunities_created_total", attributes={"pipeline_id": pipeline.id})
        logger.info(
            f"Created opportunity {opportunity.id}",
            extra={"opportunity_id": opportunity.id, "stage_id": stage.id},
        )
        return opportunity

    @traced("opportunity.list")
    async def list_opportunities(
        self,
        filters: Optional[OpportunityFilters] = None,
        page: int = 1,
        limit: int = 20,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        actor_id: Optional[str] = None,
        restrict_owner_ids: Optional[Sequence[str]] = None,
    ) -> OpportunityPage:
        page = max(page, 1)
        limit = min(max(limit, 1), MAX_PAGE_SIZE)
        items, total = await self.repository.list(
            filters or OpportunityFilters(),
            page=page,
            limit=limit,
            sort_by=sort_by,
            sort_order=sort_order,
            actor_id=actor_id,
            restrict_owner_ids=restrict_owner_ids,
        )
        return OpportunityPage(items=items, total=total, page=page, limit=limit)

    @traced("opportunity.get")
    async def get_opportunity(
        self,
        opportunity_id: str,
        restrict_owner_ids: Optional[Sequence[str]] = None,
    ) -> OpportunityDetail:
        opportunity = await self._load_visible(opportunity_id, restrict_owner_ids)
        return await self.read_model.detail(opportunity)

    @traced("opportunity.update")
    async def update_opportunity(
        self,
        opportunity_id: str,
        patch: OpportunityPatch,
        actor_id: Optional[str] = None,
    ) -> Opportunity:
        """
        Apply the attributes the caller set. A probability change without
        an explicit forecast category re-derives the category. No effective
        change means no write and no side effects.
        """
        changes = patch.changes()
        async with transactional_publish(self.db) as txn:
            current = await self._load(opportunity_id, for_update=True)

            if "name" in changes and not changes["name"]:
                raise ValidationError("Name is required", field="name")

            values = dict(changes)
            if values.get("tags", []) is None:
                values["tags"] = []
            if values.get("custom_fields", {}) is None:
                values["custom_fields"] = {}
            if values.get("amount") is not None:
                values["amount"] = to_money(values["amount"])
            if "probability" in values and values["probability"] is None:
                raise ValidationError("Probability cannot be cleared", field="probability")
            if "probability" in values and "forecast_category" not in values:
                values["forecast_category"] = categorize(values["probability"]).value
            if "forecast_category" in values and values["forecast_category"] is None:
                values["forecast_category"] = categorize(values.get("probability", current.probability)).value

            candidate = Opportunity.model_validate({**current.model_dump(), **values})
            diff = diff_fields(current, candidate, TRACKED_FIELDS)
            if not diff:
                return current

            updated = candidate.model_copy(update={"updated_by": actor_id, "updated_at": utcnow()})
            await self.repository.save(updated)

            if "primary_contact_id" in diff:
                await self.contacts.sync_primary(opportunity_id, updated.primary_contact_id)

            await self._emit(
                txn,
                opportunity_id,
                AuditAction.UPDATE,
                ActivityType.UPDATED,
                "Opportunity updated",
                actor_id,
                changes=diff,
                previous_values={name: change["from"] for name, change in diff.items()},
                new_values={name: change["to"] for name, change in diff.items()},
                metadata={"fields": sorted(diff)},
            )

        logger.info(
            f"Updated opportunity {opportunity_id}: {', '.join(sorted(diff))}",
            extra={"opportunity_id": opportunity_id},
        )
        return updated

    @traced("opportunity.change_stage")
    async def change_stage(
        self,
        opportunity_id: str,
        target_stage_id: str,
        actor_id: Optional[str] = None,
        field_values: Optional[Dict[str, Any]] = None,
        note: Optional[str] = None,
        probability: Optional[int] = None,
        forecast_category: Optional[str] = None,
    ) -> Opportunity:
        async with transactional_publish(self.db) as txn:
            current = await self._load(opportunity_id, for_update=True)
            transition = await self.transitions.change_stage(
                current,
                target_stage_id,
                actor_id=actor_id,
                field_values=field_values,
                note=note,
                probability=probability,
                forecast_category=forecast_category,
            )
            primary_contact_id = transition.opportunity.primary_contact_id
            if primary_contact_id != current.primary_contact_id:
                await self.contacts.sync_primary(opportunity_id, primary_contact_id)
            from_name = transition.from_stage.name if transition.from_stage else None
            await self._emit_transition(
                txn,
                transition,
                ActivityType.STAGE_CHANGED,
                f"Stage changed to {transition.to_stage.name}",
                actor_id,
                description=f"Moved from {from_name} to {transition.to_stage.name}" if from_name else note,
            )
        return transition.opportunity

    @traced("opportunity.close_won")
    async def close_won(
        self,
        opportunity_id: str,
        close_reason_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        final_amount: Optional[Decimal] = None,
        close_date: Optional[date] = None,
        notes: Optional[str] = None,
        competitor: Optional[str] = None,
    ) -> Opportunity:
        async with transactional_publish(self.db) as txn:
            current = await self._load(opportunity_id, for_update=True)
            transition = await self.transitions.close_won(
                current,
                close_reason_id=close_reason_id,
                actor_id=actor_id,
                final_amount=final_amount,
                close_date=close_date,
                notes=notes,
                competitor=competitor,
            )
            await self._emit_transition(
                txn, transition, ActivityType.WON, f"Opportunity won: {current.name}", actor_id, description=notes
            )
        return transition.opportunity

    @traced("opportunity.close_lost")
    async def close_lost(
        self,
        opportunity_id: str,
        close_reason_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        close_date: Optional[date] = None,
        notes: Optional[str] = None,
        competitor: Optional[str] = None,
    ) -> Opportunity:
        async with transactional_publish(self.db) as txn:
            current = await self._load(opportunity_id, for_update=True)
            transition = await self.transitions.close_lost(
                current,
                close_reason_id=close_reason_id,
                actor_id=actor_id,
                close_date=close_date,
                notes=notes,
                competitor=competitor,
            )
            await self._emit_transition(
                txn, transition, ActivityType.LOST, f"Opportunity lost: {current.name}", actor_id, description=notes
            )
        return transition.opportunity

    @traced("opportunity.reopen")
    async def reopen(
        self,
        opportunity_id: str,
        target_stage_id: str,
        reason: Optional[str] = None,
        actor_id: Optional[str] = None,
        probability: Optional[int] = None,
    ) -> Opportunity:
        async with transactional_publish(self.db) as txn:
            current = await self._load(opportunity_id, for_update=True)
            transition = await self.transitions.reopen(
                current,
                target_stage_id,
                reason=reason,
                actor_id=actor_id,
                probability=probability,
            )
            await self._emit_transition(
                txn,
                transition,
                ActivityType.REOPENED,
                f"Opportunity reopened in {transition.to_stage.name}",
                actor_id,
                description=reason,
            )
        return transition.opportunity

    @traced("opportunity.delete")
    async def soft_delete(self, opportunity_id: str, actor_id: Optional[str] = None) -> None:
        async with transactional_publish(self.db) as txn:
            current = await self._load(opportunity_id, for_update=True)
            await self.repository.soft_delete(opportunity_id, actor_id, utcnow())
            await self._emit(
                txn,
                opportunity_id,
                AuditAction.DELETE,
                ActivityType.DELETED,
                f"Opportunity deleted: {current.name}",
                actor_id,
                previous_values=current.model_dump(mode="json"),
            )
        logger.info(f"Deleted opportunity {opportunity_id}", extra={"opportunity_id": opportunity_id})

    @traced("opportunity.stage_history")
    async def get_stage_history(
        self,
        opportunity_id: str,
        restrict_owner_ids: Optional[Sequence[str]] = None,
    ) -> List[StageHistoryEntry]:
        opportunity = await self._load_visible(opportunity_id, restrict_owner_ids)
        stages = await self.directory.list_stages(opportunity.pipeline_id)
        return await self.read_model.stage_history(opportunity_id, stages)

    # ------------------------------------------------------------------
    # Line items
    # ------------------------------------------------------------------

    @traced("opportunity.line_items.list")
    async def list_line_items(
        self,
        opportunity_id: str,
        restrict_owner_ids: Optional[Sequence[str]] = None,
    ) -> List[LineItem]:
        await self._load_visible(opportunity_id, restrict_owner_ids)
        return await self.pricing.list_line_items(opportunity_id)

    @traced("opportunity.line_items.add")
    async def add_line_item(
        self,
        opportunity_id: str,
        data: NewLineItem,
        actor_id: Optional[str] = None,
    ) -> List[LineItem]:
        async with transactional_publish(self.db) as txn:
            current = await self._load(opportunity_id, for_update=True)
            rows = await self.pricing.add_line_item(opportunity_id, data)
            new_amount = await self.pricing.recalculate_amount(opportunity_id, actor_id)

            head = rows[0]
            is_bundle = head.line_item_type == LineItemType.BUNDLE_PARENT
            label = head.product_name or head.description or "line item"
            await self._emit_amount_change(
                txn,
                current,
                new_amount,
                ActivityType.BUNDLE_ADDED if is_bundle else ActivityType.LINE_ITEM_ADDED,
                f"Bundle added: {label}" if is_bundle else f"Line item added: {label}",
                actor_id,
                head,
            )
        return rows

    @traced("opportunity.line_items.update")
    async def update_line_item(
        self,
        opportunity_id: str,
        item_id: str,
        patch: LineItemPatch,
        actor_id: Optional[str] = None,
    ) -> LineItem:
        async with transactional_publish(self.db) as txn:
            current = await self._load(opportunity_id, for_update=True)
            _, updated = await self.pricing.update_line_item(opportunity_id, item_id, patch)
            new_amount = await self.pricing.recalculate_amount(opportunity_id, actor_id)
            await self._emit_amount_change(
                txn,
                current,
                new_amount,
                ActivityType.LINE_ITEM_UPDATED,
                f"Line item updated: {updated.product_name or updated.description or item_id}",
                actor_id,
                updated,
            )
        return updated

    @traced("opportunity.line_items.remove")
    async def remove_line_item(
        self,
        opportunity_id: str,
        item_id: str,
        actor_id: Optional[str] = None,
    ) -> None:
        async with transactional_publish(self.db) as txn:
            current = await self._load(opportunity_id, for_update=True)
            removed = await self.pricing.remove_line_item(opportunity_id, item_id)
            new_amount = await self.pricing.recalculate_amount(opportunity_id, actor_id)

            is_bundle = removed.line_item_type == LineItemType.BUNDLE_PARENT
            label = removed.product_name or removed.description or item_id
            await self._emit_amount_change(
                txn,
                current,
                new_amount,
                ActivityType.BUNDLE_REMOVED if is_bundle else ActivityType.LINE_ITEM_REMOVED,
                f"Bundle removed: {label}" if is_bundle else f"Line item removed: {label}",
                actor_id,
                removed,
            )

    # ------------------------------------------------------------------
    # Contact roles
    # ------------------------------------------------------------------

    @traced("opportunity.contacts.list")
    async def list_contact_roles(
        self,
        opportunity_id: str,
        restrict_owner_ids: Optional[Sequence[str]] = None,
    ) -> List[ContactRole]:
        await self._load_visible(opportunity_id, restrict_owner_ids)
        return await self.contacts.list_contact_roles(opportunity_id)

    @traced("opportunity.contacts.add")
    async def add_contact_role(
        self,
        opportunity_id: str,
        data: ContactRoleInput,
        actor_id: Optional[str] = None,
    ) -> ContactRole:
        async with transactional_publish(self.db) as txn:
            current = await self._load(opportunity_id, for_update=True)
            role, created = await self.contacts.add_contact_role(current, data, actor_id)

            changes = {}
            if data.is_primary and current.primary_contact_id != data.contact_id:
                changes["primary_contact_id"] = {"from": current.primary_contact_id, "to": data.contact_id}
            elif not data.is_primary and current.primary_contact_id == data.contact_id:
                changes["primary_contact_id"] = {"from": current.primary_contact_id, "to": None}

            await self._emit(
                txn,
                opportunity_id,
                AuditAction.UPDATE,
                ActivityType.CONTACT_ADDED,
                f"Contact {'added' if created else 'updated'}"
                + (f" as {data.role}" if data.role else ""),
                actor_id,
                changes=changes,
                new_values={"contact_role": role.model_dump(mode="json", exclude={"contact"})},
                metadata={"contact_id": data.contact_id, "role": data.role, "is_primary": data.is_primary},
            )
        return role

    @traced("opportunity.contacts.remove")
    async def remove_contact_role(
        self,
        opportunity_id: str,
        contact_id: str,
        actor_id: Optional[str] = None,
    ) -> None:
        async with transactional_publish(self.db) as txn:
            current = await self._load(opportunity_id, for_update=True)
            removed = await self.contacts.remove_contact_role(current, contact_id, actor_id)

            changes = {}
            if current.primary_contact_id == contact_id:
                changes["primary_contact_id"] = {"from": contact_id, "to": None}
            await self._emit(
                txn,
                opportunity_id,
                AuditAction.UPDATE,
                ActivityType.CONTACT_REMOVED,
                "Contact removed",
                actor_id,
                changes=changes,
                previous_values={"contact_role": removed.model_dump(mode="json", exclude={"contact"})},
                metadata={"contact_id": contact_id, "role": removed.role},
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @traced("opportunity.find_duplicates", record_args=())
    async def find_duplicates(
        self,
        name: Optional[str] = None,
        account_id: Optional[str] = None,
        exclude_id: Optional[str] = None,
        restrict_owner_ids: Optional[Sequence[str]] = None,
    ) -> List[Opportunity]:
        return await self.duplicates.find_duplicates(
            name=name,
            account_id=account_id,
            exclude_id=exclude_id,
            restrict_owner_ids=restrict_owner_ids,
        )

    @traced("opportunity.board", record_args=("pipeline_id",))
    async def get_pipeline_board(
        self,
        pipeline_id: str,
        restrict_owner_ids: Optional[Sequence[str]] = None,
    ) -> List[BoardColumn]:
        return await self.read_model.pipeline_board(pipeline_id, restrict_owner_ids)

    @traced("opportunity.forecast", record_args=("pipeline_id",))
    async def get_forecast(
        self,
        pipeline_id: Optional[str] = None,
        restrict_owner_ids: Optional[Sequence[str]] = None,
    ) -> Forecast:
        return await self.read_model.forecast(pipeline_id, restrict_owner_ids)


# Global service instance
_opportunity_service: Optional[OpportunityService] = None


def get_opportunity_service() -> OpportunityService:
    """Get the global opportunity service instance."""
    global _opportunity_service
    if _opportunity_service is None:
        _opportunity_service = OpportunityService()
    return _opportunity_service


def reset_opportunity_service() -> None:
    global _opportunity_service
    _opportunity_service = None
