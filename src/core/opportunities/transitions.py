"""
Opportunity Stage Transition Engine

Moves opportunities between pipeline stages and through the Open / Won /
Lost lifecycle, enforcing stage requirements and writing stage history.

Callers hold the opportunity row lock (repository.get(for_update=True))
and the surrounding transaction; the engine only reads the directory,
saves the row and appends history.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from ..collaborators.requirements import is_empty, unmet_requirements
from ..collaborators.stages import PipelineStage, StageDirectory, StageKind
from ..errors import InvalidStateError, NotFoundError, RequiredFieldsError, ValidationError
from ..money import to_money
from ..observability import record_counter, record_histogram
from .forecast import ForecastCategory, categorize
from .models import LifecycleState, Opportunity, StageHistoryEntry, utcnow
from .repository import OpportunityRepository

logger = logging.getLogger(__name__)

# field_values keys written to columns; other column names are refused, the rest land in custom_fields
STRUCTURAL_FIELDS = (
    "amount",
    "close_date",
    "next_step",
    "description",
    "currency",
    "competitor",
    "type",
    "source",
    "account_id",
    "owner_id",
    "primary_contact_id",
    "priority_id",
    "lead_id",
)

CUSTOM_VALUE_TYPES = (str, int, float, bool)

FIELD_ALIASES = {
    "closeDate": "close_date",
    "nextStep": "next_step",
    "accountId": "account_id",
    "ownerId": "owner_id",
    "primaryContactId": "primary_contact_id",
    "priorityId": "priority_id",
    "leadId": "lead_id",
    "forecastCategory": "forecast_category",
}

CREATED_NOTE = "Opportunity created"
WON_NOTE = "Closed Won"
LOST_NOTE = "Closed Lost"


class TransitionKind(str, Enum):
    CREATED = "created"
    STAGE_CHANGED = "stage_changed"
    WON = "won"
    LOST = "lost"
    REOPENED = "reopened"


@dataclass
class StageTransition:
    """Record of a stage transition."""
    kind: TransitionKind
    previous: Optional[Opportunity]
    opportunity: Opportunity
    from_stage: Optional[PipelineStage]
    to_stage: PipelineStage
    history: StageHistoryEntry
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def canonical_field(name: str) -> str:
    return FIELD_ALIASES.get(name, name)


def resolve_field(opportunity: Opportunity, field_values: Dict[str, Any], name: str) -> Any:
    """
    Value of a required field: caller-supplied values first, then the
    opportunity's own attribute, then its custom_fields. Empty values at
    any tier fall through to the next one.
    """
    canonical = canonical_field(name)
    for key in (name, canonical):
        if key in field_values and not is_empty(field_values[key]):
            return field_values[key]

    if canonical in Opportunity.model_fields:
        value = getattr(opportunity, canonical)
        if not is_empty(value):
            return value

    for key in (name, canonical):
        if not is_empty(opportunity.custom_fields.get(key)):
            return opportunity.custom_fields[key]
    return None


def _coerce_structural(name: str, canonical: str, value: Any) -> Any:
    if canonical == "amount":
        try:
            return to_money(value)
        except (InvalidOperation, TypeError, ValueError):
            raise ValidationError(f"'{name}' must be a number", field=name)
    if canonical == "close_date" and isinstance(value, str):
        try:
            return date.fromisoformat(value)
        except ValueError:
            raise ValidationError(f"'{name}' must be an ISO date (YYYY-MM-DD)", field=name)
    return value


def apply_field_values(opportunity: Opportunity, field_values: Dict[str, Any]) -> Opportunity:
    """
    Copy of the opportunity with field_values written to columns or
    custom_fields. Empty values never overwrite what is stored.

    Raises:
        ValidationError: A value cannot be stored under its field
    """
    if not field_values:
        return opportunity

    updates: Dict[str, Any] = {}
    custom = dict(opportunity.custom_fields)
    for name, value in field_values.items():
        if is_empty(value):
            continue
        canonical = canonical_field(name)
        if canonical in STRUCTURAL_FIELDS:
            updates[canonical] = _coerce_structural(name, canonical, value)
        elif canonical in Opportunity.model_fields:
            raise ValidationError(f"'{name}' cannot be set through field values", field=name)
        elif isinstance(value, CUSTOM_VALUE_TYPES):
            custom[name] = value
        else:
            raise ValidationError(f"'{name}' must be a string, number or boolean", field=name)
    updates["custom_fields"] = custom

    try:
        return Opportunity.model_validate({**opportunity.model_dump(), **updates})
    except PydanticValidationError as e:
        error = e.errors()[0]
        location = ".".join(str(part) for part in error.get("loc", ()))
        raise ValidationError(f"Invalid field value: {error.get('msg')}", field=location or None)


def time_in_stage_since(entered_at: Optional[datetime], now: datetime):
    if entered_at is None:
        return None
    if entered_at.tzinfo is None:
        entered_at = entered_at.replace(tzinfo=timezone.utc)
    return now - entered_at


class StageTransitionEngine:
    """
    Manages opportunity lifecycle and stage transitions.
    """

    def __init__(self, directory: StageDirectory, repository: OpportunityRepository):
        self.directory = directory
        self.repository = repository

    async def _require_stage(self, stage_id: str, pipeline_id: str) -> PipelineStage:
        stage = await self.directory.get_stage(stage_id)
        # a stage of another pipeline counts as missing
        if stage is None or stage.pipeline_id != pipeline_id:
            raise NotFoundError("Stage", stage_id)
        return stage

    async def _current_stage(self, opportunity: Opportunity) -> Optional[PipelineStage]:
        return await self.directory.get_stage(opportunity.stage_id)

    async def _write_history(
        self,
        opportunity: Opportunity,
        from_stage_id: Optional[str],
        from_stage: Optional[PipelineStage],
        to_stage: PipelineStage,
        actor_id: Optional[str],
        now: datetime,
        note: Optional[str],
        entered_at: Optional[datetime],
    ) -> StageHistoryEntry:
        entry = StageHistoryEntry(
            opportunity_id=opportunity.id,
            from_stage_id=from_stage_id,
            to_stage_id=to_stage.id,
            from_stage_name=from_stage.name if from_stage else None,
            to_stage_name=to_stage.name,
            changed_by=actor_id,
            time_in_stage=time_in_stage_since(entered_at, now),
            note=note,
            created_at=now,
        )
        await self.repository.add_history(entry)
        if entry.time_in_stage is not None and from_stage is not None:
            record_histogram(
                "opportunity_time_in_stage_seconds",
                entry.time_in_stage.total_seconds(),
                attributes={"stage": from_stage.slug or from_stage.id},
            )
        return entry

    def _record(self, kind: TransitionKind) -> None:
        record_counter("opportunity_transitions_total", attributes={"kind": kind.value})

    async def record_creation(
        self,
        opportunity: Opportunity,
        stage: PipelineStage,
        actor_id: Optional[str] = None,
    ) -> StageTransition:
        """Initial history entry for a freshly inserted opportunity."""
        now = opportunity.stage_entered_at or utcnow()
        entry = await self._write_history(opportunity, None, None, stage, actor_id, now, CREATED_NOTE, None)
        self._record(TransitionKind.CREATED)
        return StageTransition(
            kind=TransitionKind.CREATED,
            previous=None,
            opportunity=opportunity,
            from_stage=None,
            to_stage=stage,
            history=entry,
            timestamp=now,
        )

    async def change_stage(
        self,
        opportunity: Opportunity,
        target_stage_id: str,
        actor_id: Optional[str] = None,
        field_values: Optional[Dict[str, Any]] = None,
        note: Optional[str] = None,
        probability: Optional[int] = None,
        forecast_category: Optional[str] = None,
    ) -> StageTransition:
        """
        Move an open opportunity to another open stage.

        Args:
            opportunity: Locked opportunity row
            target_stage_id: Destination stage
            actor_id: User performing the change
            field_values: Values satisfying the target's requirements
            note: Free-text note kept on the history entry
            probability: Override of the stage's default probability
            forecast_category: Override of the derived forecast category

        Returns:
            StageTransition record

        Raises:
            InvalidStateError: Opportunity is closed, or target is a won/lost stage
            NotFoundError: Target stage missing, inactive or in another pipeline
            RequiredFieldsError: Target stage requirements unmet (all listed)
        """
        if not opportunity.is_open:
            raise InvalidStateError(
                f"Cannot change stage of a {opportunity.state.value} opportunity. Reopen it first."
            )

        target = await self._require_stage(target_stage_id, opportunity.pipeline_id)
        if target.is_terminal:
            raise InvalidStateError(
                f"Stage '{target.name}' is a {target.kind.value} stage; use Close Won/Lost instead."
            )

        field_values = field_values or {}
        missing = unmet_requirements(
            target.required_fields,
            lambda name: resolve_field(opportunity, field_values, name),
        )
        if missing:
            raise RequiredFieldsError(target.name, missing)

        from_stage = await self._current_stage(opportunity)
        now = utcnow()
        updated = apply_field_values(opportunity, field_values)
        new_probability = target.probability if probability is None else probability
        updated = Opportunity.model_validate({
            **updated.model_dump(),
            "stage_id": target.id,
            "stage_entered_at": now,
            "probability": new_probability,
            "forecast_category": forecast_category or categorize(new_probability).value,
            "updated_by": actor_id,
            "updated_at": now,
        })

        await self.repository.save(updated)
        entry = await self._write_history(
            updated, opportunity.stage_id, from_stage, target, actor_id, now, note, opportunity.stage_entered_at
        )
        self._record(TransitionKind.STAGE_CHANGED)

        logger.info(
            "Opportunity stage changed",
            extra={
                "opportunity_id": opportunity.id,
                "from_stage_id": opportunity.stage_id,
                "to_stage_id": target.id,
            },
        )
        return StageTransition(
            kind=TransitionKind.STAGE_CHANGED,
            previous=opportunity,
            opportunity=updated,
            from_stage=from_stage,
            to_stage=target,
            history=entry,
            timestamp=now,
        )

    def _check_closable(self, opportunity: Opportunity) -> None:
        if opportunity.state == LifecycleState.WON:
            raise InvalidStateError("Opportunity is already closed as won")
        if opportunity.state == LifecycleState.LOST:
            raise InvalidStateError("Opportunity is closed as lost. Reopen it first.")

    async def close_won(
        self,
        opportunity: Opportunity,
        close_reason_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        final_amount: Optional[Decimal] = None,
        close_date: Optional[date] = None,
        notes: Optional[str] = None,
        competitor: Optional[str] = None,
    ) -> StageTransition:
        """Close an open opportunity as won in its pipeline's won stage."""
        self._check_closable(opportunity)
        won_stage = await self.directory.get_won_stage(opportunity.pipeline_id)
        if won_stage is None:
            raise InvalidStateError("No won stage configured for this pipeline")

        now = utcnow()
        amount = to_money(final_amount) if final_amount is not None else opportunity.amount
        return await self._close(
            TransitionKind.WON,
            opportunity,
            won_stage,
            actor_id,
            now,
            {
                "won_at": now,
                "probability": 100,
                "forecast_category": ForecastCategory.CLOSED.value,
                "amount": amount,
                "close_date": close_date or now.date(),
                "close_reason_id": close_reason_id,
                "close_notes": notes,
                "competitor": competitor if competitor is not None else opportunity.competitor,
            },
            WON_NOTE,
        )

    async def close_lost(
        self,
        opportunity: Opportunity,
        close_reason_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        close_date: Optional[date] = None,
        notes: Optional[str] = None,
        competitor: Optional[str] = None,
    ) -> StageTransition:
        """Close an open opportunity as lost in its pipeline's lost stage."""
        if opportunity.state == LifecycleState.LOST:
            raise InvalidStateError("Opportunity is already closed as lost")
        if opportunity.state == LifecycleState.WON:
            raise InvalidStateError("Opportunity is closed as won. Reopen it first.")
        lost_stage = await self.directory.get_lost_stage(opportunity.pipeline_id)
        if lost_stage is None:
            raise InvalidStateError("No lost stage configured for this pipeline")

        now = utcnow()
        return await self._close(
            TransitionKind.LOST,
            opportunity,
            lost_stage,
            actor_id,
            now,
            {
                "lost_at": now,
                "probability": 0,
                "forecast_category": ForecastCategory.OMITTED.value,
                "close_date": close_date or now.date(),
                "close_reason_id": close_reason_id,
                "close_notes": notes,
                "competitor": competitor if competitor is not None else opportunity.competitor,
            },
            LOST_NOTE,
        )

    async def _close(
        self,
        kind: TransitionKind,
        opportunity: Opportunity,
        stage: PipelineStage,
        actor_id: Optional[str],
        now: datetime,
        updates: Dict[str, Any],
        note: str,
    ) -> StageTransition:
        from_stage = await self._current_stage(opportunity)
        updated = Opportunity.model_validate({
            **opportunity.model_dump(),
            **updates,
            "stage_id": stage.id,
            "stage_entered_at": now,
            "updated_by": actor_id,
            "updated_at": now,
        })
        await self.repository.save(updated)
        entry = await self._write_history(
            updated, opportunity.stage_id, from_stage, stage, actor_id, now, note, opportunity.stage_entered_at
        )
        self._record(kind)

        logger.info(
            f"Opportunity closed {kind.value}",
            extra={"opportunity_id": opportunity.id, "to_stage_id": stage.id},
        )
        return StageTransition(
            kind=kind,
            previous=opportunity,
            opportunity=updated,
            from_stage=from_stage,
            to_stage=stage,
            history=entry,
            timestamp=now,
        )

    async def reopen(
        self,
        opportunity: Opportunity,
        target_stage_id: str,
        reason: Optional[str] = None,
        actor_id: Optional[str] = None,
        probability: Optional[int] = None,
    ) -> StageTransition:
        """Bring a won or lost opportunity back into an open stage."""
        if opportunity.is_open:
            raise InvalidStateError("Only won or lost opportunities can be reopened")

        target = await self._require_stage(target_stage_id, opportunity.pipeline_id)
        if target.kind != StageKind.OPEN:
            raise InvalidStateError(f"Stage '{target.name}' is not an open stage")

        from_stage = await self._current_stage(opportunity)
        now = utcnow()
        new_probability = target.probability if probability is None else probability
        updated = Opportunity.model_validate({
            **opportunity.model_dump(),
            "won_at": None,
            "lost_at": None,
            "close_reason_id": None,
            "close_notes": None,
            "stage_id": target.id,
            "stage_entered_at": now,
            "probability": new_probability,
            "forecast_category": categorize(new_probability).value,
            "updated_by": actor_id,
            "updated_at": now,
        })
        await self.repository.save(updated)
        entry = await self._write_history(
            updated, opportunity.stage_id, from_stage, target, actor_id, now, f"Reopened: {reason or ''}".rstrip(),
            opportunity.stage_entered_at,
        )
        self._record(TransitionKind.REOPENED)

        logger.info(
            "Opportunity reopened",
            extra={"opportunity_id": opportunity.id, "to_stage_id": target.id},
        )
        return StageTransition(
            kind=TransitionKind.REOPENED,
            previous=opportunity,
            opportunity=updated,
            from_stage=from_stage,
            to_stage=target,
            history=entry,
            timestamp=now,
        )
