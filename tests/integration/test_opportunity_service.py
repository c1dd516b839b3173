"""
Integration tests for opportunity CRUD, listing, duplicates, board and forecast.
"""

from datetime import date
from decimal import Decimal

import pytest

from src.core.collaborators.references import NullReferenceDirectory
from src.core.errors import NotFoundError, ValidationError
from src.core.events.taxonomy import ActivityType, AuditAction
from src.core.opportunities import OpportunityFilters, OpportunityPatch, OpportunityService

from tests.seed import (
    ACCOUNT_ACME,
    ALICE,
    BOB,
    OTHER_PIPELINE_ID,
    PIPELINE_ID,
    STAGE_NEGOTIATION,
    STAGE_PROSPECT,
    STAGE_RETIRED,
    STAGE_WON,
)


class TestGetOpportunity:

    async def test_detail_is_composed(self, make_opportunity, service):
        opp = await make_opportunity(account_id=ACCOUNT_ACME, amount=Decimal("1000"))

        detail = await service.get_opportunity(opp.id)

        assert detail.id == opp.id
        assert detail.stage.name == "Prospecting"
        assert detail.pipeline.name == "Sales"
        assert [s.id for s in detail.all_stages][:2] == [STAGE_PROSPECT, "stage-discovery"]
        assert STAGE_RETIRED not in {s.id for s in detail.all_stages}
        assert detail.owner.first_name == "Alice"
        assert detail.account.name == "Acme Corp"
        assert detail.weighted_amount == Decimal("100.00")
        assert len(detail.stage_history) == 1

    async def test_unknown(self, service):
        with pytest.raises(NotFoundError):
            await service.get_opportunity("opp-missing")

    async def test_outside_visible_owners(self, make_opportunity, service):
        opp = await make_opportunity(owner_id=BOB)
        with pytest.raises(NotFoundError):
            await service.get_opportunity(opp.id, restrict_owner_ids=[ALICE])
        assert (await service.get_opportunity(opp.id, restrict_owner_ids=[BOB])).id == opp.id

    async def test_sub_resources_outside_visible_owners(self, make_opportunity, service):
        opp = await make_opportunity(owner_id=BOB)

        for read in (service.get_stage_history, service.list_line_items, service.list_contact_roles):
            with pytest.raises(NotFoundError):
                await read(opp.id, restrict_owner_ids=[ALICE])
            await read(opp.id, restrict_owner_ids=[BOB])

    async def test_detail_without_reference_data(self, db, make_opportunity):
        opp = await make_opportunity(account_id=ACCOUNT_ACME)
        bare = OpportunityService(db, references=NullReferenceDirectory())

        detail = await bare.get_opportunity(opp.id)

        assert detail.owner is None
        assert detail.account is None
        assert detail.team_members == []
        assert detail.stage.name == "Prospecting"


class TestUpdateOpportunity:

    async def test_changes_audited(self, make_opportunity, service, audit_log, activity_log):
        opp = await make_opportunity()

        updated = await service.update_opportunity(
            opp.id,
            OpportunityPatch(amount=Decimal("2500"), next_step="Demo", tags=["q3", "expansion"]),
            actor_id=BOB,
        )

        assert updated.amount == Decimal("2500.00")
        assert updated.next_step == "Demo"
        assert updated.tags == ["q3", "expansion"]
        assert updated.updated_by == BOB

        audit = audit_log.entries[-1]
        assert audit.action == AuditAction.UPDATE
        assert set(audit.changes) == {"amount", "next_step", "tags"}
        assert audit.changes["amount"] == {"from": None, "to": "2500.00"}
        assert activity_log.entries[-1].activity_type == ActivityType.UPDATED

    async def test_probability_rederives_forecast(self, make_opportunity, service):
        opp = await make_opportunity()

        updated = await service.update_opportunity(opp.id, OpportunityPatch(probability=75))
        assert updated.forecast_category == "commit"

        explicit = await service.update_opportunity(
            opp.id, OpportunityPatch(probability=20, forecast_category="best_case")
        )
        assert explicit.forecast_category == "best_case"

    async def test_no_change_means_no_side_effects(self, make_opportunity, service, audit_log):
        opp = await make_opportunity(next_step="Call")
        before = len(audit_log.entries)

        result = await service.update_opportunity(opp.id, OpportunityPatch(next_step="Call"))

        assert result.next_step == "Call"
        assert len(audit_log.entries) == before

    async def test_cleared_fields(self, make_opportunity, service):
        opp = await make_opportunity(description="Old", tags=["a"])

        updated = await service.update_opportunity(opp.id, OpportunityPatch(description=None, tags=None))

        assert updated.description is None
        assert updated.tags == []

    async def test_probability_cannot_be_cleared(self, make_opportunity, service):
        opp = await make_opportunity()
        with pytest.raises(ValidationError):
            await service.update_opportunity(opp.id, OpportunityPatch(probability=None))

    async def test_closed_opportunity_can_be_edited(self, make_opportunity, service):
        opp = await make_opportunity()
        await service.close_won(opp.id)

        updated = await service.update_opportunity(opp.id, OpportunityPatch(description="Renewal in 12 months"))

        assert updated.description == "Renewal in 12 months"
        assert updated.stage_id == STAGE_WON


class TestSoftDelete:

    async def test_deleted_is_hidden(self, make_opportunity, service, audit_log, activity_log):
        opp = await make_opportunity()

        await service.soft_delete(opp.id, actor_id=BOB)

        with pytest.raises(NotFoundError):
            await service.get_opportunity(opp.id)
        assert (await service.list_opportunities()).total == 0
        assert audit_log.entries[-1].action == AuditAction.DELETE
        assert activity_log.entries[-1].activity_type == ActivityType.DELETED

    async def test_delete_twice(self, make_opportunity, service):
        opp = await make_opportunity()
        await service.soft_delete(opp.id)
        with pytest.raises(NotFoundError):
            await service.soft_delete(opp.id)


class TestListOpportunities:

    @pytest.fixture
    async def portfolio(self, make_opportunity, service):
        small = await make_opportunity(
            name="Acme Starter", amount=Decimal("500"), close_date=date(2026, 5, 10), tags=["smb"]
        )
        large = await make_opportunity(
            name="Globex Enterprise", amount=Decimal("50000"), close_date=date(2026, 7, 1),
            account_id=ACCOUNT_ACME, owner_id=BOB, tags=["enterprise"],
        )
        won = await make_opportunity(name="Initech Renewal", amount=Decimal("8000"), actor_id=BOB)
        await service.close_won(won.id, close_date=date(2026, 4, 15))
        other = await make_opportunity(name="Umbrella Renewal", pipeline_id=OTHER_PIPELINE_ID)
        return {"small": small, "large": large, "won": won, "other": other}

    async def test_pagination(self, portfolio, service):
        page = await service.list_opportunities(page=1, limit=3, sort_by="name", sort_order="asc")

        assert page.total == 4
        assert page.total_pages == 2
        assert [o.name for o in page.items] == ["Acme Starter", "Globex Enterprise", "Initech Renewal"]

        second = await service.list_opportunities(page=2, limit=3, sort_by="name", sort_order="asc")
        assert [o.name for o in second.items] == ["Umbrella Renewal"]

    async def test_limit_clamped(self, portfolio, service):
        page = await service.list_opportunities(limit=1000)
        assert page.limit == 100

    async def test_search_matches_account_name(self, portfolio, service):
        page = await service.list_opportunities(OpportunityFilters(search="acme"))
        assert {o.name for o in page.items} == {"Acme Starter", "Globex Enterprise"}

    @pytest.mark.parametrize("search", ["100%", "a_b"])
    async def test_search_wildcards_match_literally(self, make_opportunity, service, search):
        await make_opportunity(name="1000 seats")
        await make_opportunity(name="axb rollout")
        literal = await make_opportunity(name=f"Deal {search} off")

        page = await service.list_opportunities(OpportunityFilters(search=search))

        assert [o.id for o in page.items] == [literal.id]

    @pytest.mark.parametrize("filters,expected", [
        (OpportunityFilters(pipeline_id=OTHER_PIPELINE_ID), {"other"}),
        (OpportunityFilters(owner_id=BOB), {"large", "won"}),
        (OpportunityFilters(min_amount=Decimal("1000")), {"large", "won"}),
        (OpportunityFilters(max_amount=Decimal("1000")), {"small"}),
        (OpportunityFilters(close_date_from=date(2026, 6, 1)), {"large"}),
        (OpportunityFilters(close_date_to=date(2026, 6, 1)), {"small", "won"}),
        (OpportunityFilters(tag="smb"), {"small"}),
        (OpportunityFilters(is_open=False), {"won"}),
        (OpportunityFilters(is_open=True, pipeline_id=PIPELINE_ID), {"small", "large"}),
        (OpportunityFilters(forecast_category="closed"), {"won"}),
    ])
    async def test_filters(self, portfolio, service, filters, expected):
        page = await service.list_opportunities(filters)
        ids = {o.id for o in page.items}
        assert ids == {portfolio[key].id for key in expected}

    async def test_ownership_filters(self, portfolio, service):
        mine = await service.list_opportunities(OpportunityFilters(ownership="my_deals"), actor_id=BOB)
        assert {o.id for o in mine.items} == {portfolio["large"].id, portfolio["won"].id}

        created = await service.list_opportunities(OpportunityFilters(ownership="created_by_me"), actor_id=BOB)
        assert {o.id for o in created.items} == {portfolio["won"].id}

    async def test_restricted_scope(self, portfolio, service):
        page = await service.list_opportunities(restrict_owner_ids=[BOB])
        assert page.total == 2

        nothing = await service.list_opportunities(restrict_owner_ids=[])
        assert nothing.total == 0

    async def test_sort_by_weighted_amount(self, portfolio, service):
        page = await service.list_opportunities(
            OpportunityFilters(pipeline_id=PIPELINE_ID), sort_by="weighted_amount", sort_order="desc"
        )
        assert page.items[0].id == portfolio["won"].id


class TestDuplicates:

    async def test_name_words_and_account(self, make_opportunity, service):
        first = await make_opportunity(name="Acme Platform Rollout")
        second = await make_opportunity(name="Unrelated", account_id=ACCOUNT_ACME)
        closed = await make_opportunity(name="Acme Platform Legacy")
        await service.close_lost(closed.id)

        matches = await service.find_duplicates(name="Platform upgrade", account_id=ACCOUNT_ACME)

        assert {m.id for m in matches} == {first.id, second.id}

    async def test_short_words_ignored(self, make_opportunity, service):
        await make_opportunity(name="An Deal")
        assert await service.find_duplicates(name="An of") == []

    async def test_exclude_and_scope(self, make_opportunity, service):
        mine = await make_opportunity(name="Acme Platform")
        theirs = await make_opportunity(name="Acme Platform Two", owner_id=BOB)

        matches = await service.find_duplicates(name="Acme Platform", exclude_id=mine.id)
        assert [m.id for m in matches] == [theirs.id]

        scoped = await service.find_duplicates(name="Acme Platform", restrict_owner_ids=[ALICE])
        assert [m.id for m in scoped] == [mine.id]

    async def test_wildcards_in_name_match_literally(self, make_opportunity, service):
        await make_opportunity(name="1000 seats renewal")
        literal = await make_opportunity(name="100% uplift")

        matches = await service.find_duplicates(name="100% discount")

        assert [m.id for m in matches] == [literal.id]


class TestBoardAndForecast:

    async def test_pipeline_board(self, make_opportunity, service):
        await make_opportunity(name="Small", amount=Decimal("100"))
        await make_opportunity(name="Big", amount=Decimal("900"))
        await make_opportunity(name="Late", amount=Decimal("400"), stage_id=STAGE_NEGOTIATION)

        columns = await service.get_pipeline_board(PIPELINE_ID)

        assert [c.stage.name for c in columns] == [
            "Prospecting", "Discovery", "Proposal", "Negotiation", "Closed Won", "Closed Lost"
        ]
        prospect = columns[0]
        assert [o.name for o in prospect.opportunities] == ["Big", "Small"]
        assert prospect.count == 2
        assert prospect.total_amount == Decimal("1000.00")
        assert prospect.weighted_amount == Decimal("100.00")
        assert columns[3].weighted_amount == Decimal("320.00")
        assert columns[1].count == 0

    async def test_board_unknown_pipeline(self, service):
        with pytest.raises(NotFoundError):
            await service.get_pipeline_board("pipe-missing")

    async def test_forecast(self, make_opportunity, service):
        await make_opportunity(name="A", amount=Decimal("1000"), close_date=date(2026, 5, 3))
        await make_opportunity(name="B", amount=Decimal("3000"), close_date=date(2026, 5, 20))
        await make_opportunity(
            name="C", amount=Decimal("2000"), close_date=date(2026, 4, 1), stage_id=STAGE_NEGOTIATION
        )
        await make_opportunity(name="No date", amount=Decimal("9999"))
        won = await make_opportunity(name="Won", amount=Decimal("100"), close_date=date(2026, 4, 2))
        await service.close_won(won.id)

        forecast = await service.get_forecast(PIPELINE_ID)

        assert [(b.month, b.forecast_category, b.deal_count) for b in forecast.buckets] == [
            ("2026-04", "commit", 1),
            ("2026-05", "pipeline", 2),
        ]
        may = forecast.buckets[1]
        assert may.total_amount == Decimal("4000.00")
        assert may.weighted_amount == Decimal("400.00")

        summary = forecast.summary
        assert summary.total_deals == 3
        assert summary.total_amount == Decimal("6000.00")
        assert summary.weighted_amount == Decimal("2000.00")
        assert summary.avg_probability == pytest.approx(33.33)
        assert summary.won_count == 1
        assert summary.lost_count == 0
