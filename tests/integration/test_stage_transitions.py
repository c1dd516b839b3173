"""
Integration tests for stage changes and the Open / Won / Lost lifecycle.
"""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from src.core.errors import InvalidStateError, NotFoundError, RequiredFieldsError, ValidationError
from src.core.events.taxonomy import ActivityType, AuditAction
from src.core.opportunities import ContactRoleInput, LifecycleState

from tests.seed import (
    ACCOUNT_ACME,
    ALICE,
    BOB,
    CONTACT_JANE,
    CONTACT_JOHN,
    STAGE_DISCOVERY,
    STAGE_LOST,
    STAGE_NEGOTIATION,
    STAGE_PROPOSAL,
    STAGE_PROSPECT,
    STAGE_RENEWAL_DUE,
    STAGE_RETIRED,
    STAGE_WON,
)


class TestCreate:

    async def test_starts_in_first_open_stage(self, make_opportunity, service, audit_log, activity_log):
        opp = await make_opportunity()

        assert opp.stage_id == STAGE_PROSPECT
        assert opp.probability == 10
        assert opp.forecast_category == "pipeline"
        assert opp.owner_id == ALICE
        assert opp.created_by == ALICE
        assert opp.currency == "USD"
        assert opp.state == LifecycleState.OPEN

        history = await service.get_stage_history(opp.id)
        assert len(history) == 1
        assert history[0].from_stage_id is None
        assert history[0].to_stage_id == STAGE_PROSPECT
        assert history[0].note == "Opportunity created"

        assert [e.action for e in audit_log.entries] == [AuditAction.CREATE]
        assert [e.activity_type for e in activity_log.entries] == [ActivityType.CREATED]

    async def test_explicit_open_stage_and_probability(self, make_opportunity):
        opp = await make_opportunity(stage_id=STAGE_NEGOTIATION, probability=55, owner_id=BOB)

        assert opp.stage_id == STAGE_NEGOTIATION
        assert opp.probability == 55
        assert opp.forecast_category == "best_case"
        assert opp.owner_id == BOB

    async def test_terminal_stage_refused(self, make_opportunity, service):
        with pytest.raises(InvalidStateError):
            await make_opportunity(stage_id=STAGE_WON)

        page = await service.list_opportunities()
        assert page.total == 0

    async def test_unknown_pipeline(self, make_opportunity):
        with pytest.raises(NotFoundError) as exc_info:
            await make_opportunity(pipeline_id="pipe-missing")
        assert exc_info.value.resource == "Pipeline"


class TestChangeStage:

    async def test_missing_requirement_rejected_without_side_effects(
        self, make_opportunity, service, activity_log
    ):
        opp = await make_opportunity()

        with pytest.raises(RequiredFieldsError) as exc_info:
            await service.change_stage(opp.id, STAGE_DISCOVERY, actor_id=ALICE)

        assert exc_info.value.missing_fields == ["budget"]
        assert exc_info.value.details() == [
            {"field": "budget", "message": "'budget' is required", "code": "required"}
        ]

        detail = await service.get_opportunity(opp.id)
        assert detail.stage_id == STAGE_PROSPECT
        assert len(detail.stage_history) == 1
        assert len(activity_log.entries) == 1

    async def test_field_values_satisfy_and_persist(self, make_opportunity, service):
        opp = await make_opportunity()

        moved = await service.change_stage(
            opp.id, STAGE_DISCOVERY, actor_id=BOB, field_values={"budget": 5000}, note="Budget confirmed"
        )

        assert moved.stage_id == STAGE_DISCOVERY
        assert moved.probability == 25
        assert moved.custom_fields["budget"] == 5000
        assert moved.updated_by == BOB

        history = await service.get_stage_history(opp.id)
        latest = history[0]
        assert latest.from_stage_id == STAGE_PROSPECT
        assert latest.to_stage_id == STAGE_DISCOVERY
        assert latest.from_stage_name == "Prospecting"
        assert latest.to_stage_name == "Discovery"
        assert latest.changed_by == BOB
        assert latest.note == "Budget confirmed"
        assert latest.time_in_stage is not None

    async def test_requirement_met_from_custom_fields(self, make_opportunity, service):
        opp = await make_opportunity(custom_fields={"budget": "40k"})
        moved = await service.change_stage(opp.id, STAGE_DISCOVERY)
        assert moved.stage_id == STAGE_DISCOVERY

    async def test_any_of_requirement(self, make_opportunity, service):
        opp = await make_opportunity()

        with pytest.raises(RequiredFieldsError) as exc_info:
            await service.change_stage(opp.id, STAGE_PROPOSAL)
        assert exc_info.value.missing_fields == ["email||phone"]
        assert exc_info.value.details()[0]["code"] == "required_any_of"

        moved = await service.change_stage(opp.id, STAGE_PROPOSAL, field_values={"phone": "555-0100"})
        assert moved.custom_fields["phone"] == "555-0100"

    async def test_zero_counts_as_present(self, make_opportunity, service):
        opp = await make_opportunity()
        moved = await service.change_stage(opp.id, STAGE_DISCOVERY, field_values={"budget": 0})
        assert moved.custom_fields["budget"] == 0

    async def test_structural_field_values_written_to_columns(self, make_opportunity, service):
        opp = await make_opportunity()

        moved = await service.change_stage(
            opp.id,
            STAGE_NEGOTIATION,
            field_values={"amount": "1500", "closeDate": "2026-12-31", "nextStep": "Send contract"},
        )

        assert moved.amount == Decimal("1500.00")
        assert moved.close_date == date(2026, 12, 31)
        assert moved.next_step == "Send contract"
        assert moved.custom_fields == {}

    async def test_blank_value_falls_back_to_stored_value(self, make_opportunity, service):
        opp = await make_opportunity(custom_fields={"budget": 50000})

        moved = await service.change_stage(opp.id, STAGE_DISCOVERY, field_values={"budget": ""})

        assert moved.stage_id == STAGE_DISCOVERY
        assert moved.custom_fields["budget"] == 50000

    async def test_blank_value_does_not_satisfy_requirement(self, make_opportunity, service):
        opp = await make_opportunity()
        with pytest.raises(RequiredFieldsError):
            await service.change_stage(opp.id, STAGE_DISCOVERY, field_values={"budget": "  "})

    @pytest.mark.parametrize("field_values,field", [
        ({"amount": "not-a-number"}, "amount"),
        ({"closeDate": "31/12/2026"}, "closeDate"),
        ({"budget": {"q1": 100}}, "budget"),
        ({"budget": 1000, "decision_makers": ["Jane", "John"]}, "decision_makers"),
        ({"probability": 90}, "probability"),
    ])
    async def test_malformed_field_values_rejected(self, make_opportunity, service, field_values, field):
        opp = await make_opportunity()

        with pytest.raises(ValidationError) as exc_info:
            await service.change_stage(opp.id, STAGE_NEGOTIATION, field_values=field_values)

        assert exc_info.value.field == field
        assert (await service.get_opportunity(opp.id)).stage_id == STAGE_PROSPECT

    async def test_reference_field_values_written_to_columns(self, make_opportunity, service):
        opp = await make_opportunity()
        await service.add_contact_role(opp.id, ContactRoleInput(contact_id=CONTACT_JANE, is_primary=True))

        moved = await service.change_stage(
            opp.id,
            STAGE_NEGOTIATION,
            field_values={"accountId": ACCOUNT_ACME, "owner_id": BOB, "primary_contact_id": CONTACT_JOHN},
        )

        assert moved.account_id == ACCOUNT_ACME
        assert moved.owner_id == BOB
        assert moved.primary_contact_id == CONTACT_JOHN
        assert moved.custom_fields == {}
        roles = await service.list_contact_roles(opp.id)
        assert [(r.contact_id, r.is_primary) for r in roles] == [(CONTACT_JANE, False)]

    async def test_probability_and_forecast_overrides(self, make_opportunity, service):
        opp = await make_opportunity()

        derived = await service.change_stage(opp.id, STAGE_NEGOTIATION, probability=90)
        assert derived.probability == 90
        assert derived.forecast_category == "commit"

        explicit = await service.change_stage(opp.id, STAGE_PROSPECT, forecast_category="best_case")
        assert explicit.probability == 10
        assert explicit.forecast_category == "best_case"

    async def test_terminal_target_refused(self, make_opportunity, service):
        opp = await make_opportunity()
        with pytest.raises(InvalidStateError):
            await service.change_stage(opp.id, STAGE_WON)
        with pytest.raises(InvalidStateError):
            await service.change_stage(opp.id, STAGE_LOST)

    async def test_inactive_or_unknown_stage(self, make_opportunity, service):
        opp = await make_opportunity()
        with pytest.raises(NotFoundError):
            await service.change_stage(opp.id, STAGE_RETIRED)
        with pytest.raises(NotFoundError):
            await service.change_stage(opp.id, "stage-missing")

    async def test_stage_of_another_pipeline(self, make_opportunity, service):
        opp = await make_opportunity()
        with pytest.raises(NotFoundError) as exc_info:
            await service.change_stage(opp.id, STAGE_RENEWAL_DUE)
        assert exc_info.value.resource == "Stage"
        assert (await service.get_opportunity(opp.id)).stage_id == STAGE_PROSPECT

    async def test_unknown_opportunity(self, service):
        with pytest.raises(NotFoundError) as exc_info:
            await service.change_stage("opp-missing", STAGE_NEGOTIATION)
        assert exc_info.value.resource == "Opportunity"

    async def test_side_effects(self, make_opportunity, service, audit_log, activity_log):
        opp = await make_opportunity()
        await service.change_stage(opp.id, STAGE_NEGOTIATION, actor_id=BOB)

        audit = audit_log.entries[-1]
        assert audit.action == AuditAction.UPDATE
        assert audit.performed_by == BOB
        assert audit.changes["stage_id"] == {"from": STAGE_PROSPECT, "to": STAGE_NEGOTIATION}
        assert audit.changes["probability"] == {"from": 10, "to": 80}

        activity = activity_log.entries[-1]
        assert activity.activity_type == ActivityType.STAGE_CHANGED
        assert activity.title == "Stage changed to Negotiation"
        assert activity.metadata["from_stage_id"] == STAGE_PROSPECT
        assert activity.metadata["to_stage_name"] == "Negotiation"


class TestClose:

    async def test_close_won(self, make_opportunity, service, activity_log):
        opp = await make_opportunity(amount=Decimal("1000"), competitor="Globex")

        won = await service.close_won(
            opp.id, close_reason_id="reason-price", actor_id=BOB, final_amount=Decimal("1200"), notes="Signed"
        )

        assert won.state == LifecycleState.WON
        assert won.stage_id == STAGE_WON
        assert won.probability == 100
        assert won.forecast_category == "closed"
        assert won.amount == Decimal("1200.00")
        assert won.close_date == datetime.now(timezone.utc).date()
        assert won.close_reason_id == "reason-price"
        assert won.close_notes == "Signed"
        assert won.competitor == "Globex"

        activity = activity_log.entries[-1]
        assert activity.activity_type == ActivityType.WON
        assert activity.description == "Signed"

        history = await service.get_stage_history(opp.id)
        assert history[0].note == "Closed Won"
        assert history[0].to_stage_name == "Closed Won"

    async def test_close_won_keeps_amount_without_final_amount(self, make_opportunity, service):
        opp = await make_opportunity(amount=Decimal("800"))
        won = await service.close_won(opp.id, close_date=date(2026, 6, 30))
        assert won.amount == Decimal("800.00")
        assert won.close_date == date(2026, 6, 30)

    async def test_close_lost(self, make_opportunity, service):
        opp = await make_opportunity(amount=Decimal("500"))

        lost = await service.close_lost(opp.id, close_reason_id="reason-budget", competitor="Initech")

        assert lost.state == LifecycleState.LOST
        assert lost.stage_id == STAGE_LOST
        assert lost.probability == 0
        assert lost.forecast_category == "omitted"
        assert lost.competitor == "Initech"
        assert lost.amount == Decimal("500.00")

    async def test_closed_opportunity_rules(self, make_opportunity, service):
        won = await make_opportunity()
        await service.close_won(won.id)

        with pytest.raises(InvalidStateError, match="already closed as won"):
            await service.close_won(won.id)
        with pytest.raises(InvalidStateError, match="Reopen it first"):
            await service.close_lost(won.id)
        with pytest.raises(InvalidStateError, match="Reopen it first"):
            await service.change_stage(won.id, STAGE_NEGOTIATION)

        lost = await make_opportunity()
        await service.close_lost(lost.id)
        with pytest.raises(InvalidStateError, match="already closed as lost"):
            await service.close_lost(lost.id)
        with pytest.raises(InvalidStateError, match="Reopen it first"):
            await service.close_won(lost.id)


class TestReopen:

    async def test_reopen_won(self, make_opportunity, service, activity_log):
        opp = await make_opportunity()
        await service.close_won(opp.id, close_reason_id="reason-price", notes="Signed")

        reopened = await service.reopen(opp.id, STAGE_NEGOTIATION, reason="Contract fell through", actor_id=BOB)

        assert reopened.state == LifecycleState.OPEN
        assert reopened.won_at is None
        assert reopened.close_reason_id is None
        assert reopened.close_notes is None
        assert reopened.stage_id == STAGE_NEGOTIATION
        assert reopened.probability == 80
        assert reopened.forecast_category == "commit"

        history = await service.get_stage_history(opp.id)
        assert history[0].note == "Reopened: Contract fell through"
        assert history[0].from_stage_id == STAGE_WON
        assert history[0].time_in_stage is not None
        assert activity_log.entries[-1].activity_type == ActivityType.REOPENED

    async def test_reopen_lost_with_probability(self, make_opportunity, service):
        opp = await make_opportunity()
        await service.close_lost(opp.id)

        reopened = await service.reopen(opp.id, STAGE_PROSPECT, probability=30)

        assert reopened.lost_at is None
        assert reopened.probability == 30
        history = await service.get_stage_history(opp.id)
        assert history[0].note == "Reopened:"

    async def test_reopen_open_refused(self, make_opportunity, service):
        opp = await make_opportunity()
        with pytest.raises(InvalidStateError):
            await service.reopen(opp.id, STAGE_NEGOTIATION)

    async def test_reopen_into_terminal_stage_refused(self, make_opportunity, service):
        opp = await make_opportunity()
        await service.close_lost(opp.id)
        with pytest.raises(InvalidStateError):
            await service.reopen(opp.id, STAGE_WON)

    async def test_reopen_into_another_pipeline_refused(self, make_opportunity, service):
        opp = await make_opportunity()
        await service.close_lost(opp.id)

        with pytest.raises(NotFoundError):
            await service.reopen(opp.id, STAGE_RENEWAL_DUE)

        assert (await service.get_opportunity(opp.id)).state == LifecycleState.LOST

    async def test_full_lifecycle_history_newest_first(self, make_opportunity, service):
        opp = await make_opportunity()
        await service.change_stage(opp.id, STAGE_NEGOTIATION)
        await service.close_lost(opp.id)
        await service.reopen(opp.id, STAGE_PROSPECT)
        await service.close_won(opp.id)

        history = await service.get_stage_history(opp.id)
        assert [h.to_stage_id for h in history] == [
            STAGE_WON,
            STAGE_PROSPECT,
            STAGE_LOST,
            STAGE_NEGOTIATION,
            STAGE_PROSPECT,
        ]
