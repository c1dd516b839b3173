"""
Integration tests for side-effect delivery through the outbox and in-process.
"""

from datetime import datetime, timedelta, timezone

import pytest

from src.core.config import reset_settings
from src.core.errors import RequiredFieldsError
from src.core.events.publisher import configure_publisher
from src.core.outbox.models import OutboxStatus
from src.core.outbox.processor import RETRY_INTERVALS, OutboxProcessor, calculate_next_attempt

from tests.seed import STAGE_DISCOVERY


class FailingAuditLogger:
    def __init__(self):
        self.calls = 0

    async def log(self, entry):
        self.calls += 1
        raise RuntimeError("audit store unavailable")


@pytest.fixture
def outbox_enabled(db, monkeypatch):
    monkeypatch.setenv("OUTBOX_ENABLED", "true")
    monkeypatch.setenv("OUTBOX_MAX_ATTEMPTS", "2")
    reset_settings()
    yield
    reset_settings()


async def outbox_rows(db):
    return await db.fetch(
        "SELECT id, event_type, status, attempts, next_attempt_at FROM outbox ORDER BY created_at ASC, event_type ASC"
    )


class TestBackoff:

    @pytest.mark.parametrize("attempts,seconds", [(0, 5), (1, 5), (2, 15), (3, 60), (5, 900), (12, 900)])
    def test_intervals(self, attempts, seconds):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert calculate_next_attempt(attempts, now) == now + timedelta(seconds=seconds)

    def test_schedule(self):
        assert RETRY_INTERVALS == [5, 15, 60, 300, 900]


class TestOutboxDelivery:

    async def test_mutation_is_delivered_by_processor(
        self, outbox_enabled, db, make_opportunity, audit_log, activity_log
    ):
        opp = await make_opportunity()

        rows = await outbox_rows(db)
        assert sorted(r["event_type"] for r in rows) == ["activity.created", "audit.create"]
        assert {r["status"] for r in rows} == {OutboxStatus.PENDING.value}
        assert audit_log.entries == []

        processor = OutboxProcessor(db=db)
        assert await processor.process_batch() == 2
        assert await processor.process_batch() == 0

        assert audit_log.entries[0].entity_id == opp.id
        assert activity_log.entries[0].title == "Opportunity created: Acme Platform Deal"
        stats = await processor.get_stats()
        assert stats[OutboxStatus.DELIVERED.value] == 2
        assert stats[OutboxStatus.PENDING.value] == 0

    async def test_rolled_back_mutation_leaves_no_rows(self, outbox_enabled, db, make_opportunity, service):
        opp = await make_opportunity()

        with pytest.raises(RequiredFieldsError):
            await service.change_stage(opp.id, STAGE_DISCOVERY)

        assert len(await outbox_rows(db)) == 2

    async def test_failures_retry_then_go_dead(self, outbox_enabled, db, make_opportunity, audit_log, activity_log):
        failing = FailingAuditLogger()
        configure_publisher(failing, activity_log)
        await make_opportunity()
        processor = OutboxProcessor(db=db)
        now = datetime.now(timezone.utc)

        assert await processor.process_batch(now) == 2
        audit_row = next(r for r in await outbox_rows(db) if r["event_type"] == "audit.create")
        assert audit_row["status"] == OutboxStatus.PENDING.value
        assert audit_row["attempts"] == 1
        assert audit_row["next_attempt_at"] is not None
        assert len(activity_log.entries) == 1

        # not due yet
        assert await processor.process_batch(now) == 0

        assert await processor.process_batch(now + timedelta(hours=1)) == 1
        dead = await processor.get_dead_letters()
        assert [d["id"] for d in dead] == [audit_row["id"]]
        assert "audit store unavailable" in dead[0]["error_message"]
        assert failing.calls == 2

        configure_publisher(audit_log, activity_log)
        assert await processor.retry_dead_letter(audit_row["id"]) is True
        assert await processor.retry_dead_letter(audit_row["id"]) is False
        assert await processor.process_batch(now + timedelta(hours=2)) == 1
        assert len(audit_log.entries) == 1


class TestInProcessDelivery:

    async def test_failing_collaborator_keeps_mutation(self, db, make_opportunity, service, activity_log):
        failing = FailingAuditLogger()
        configure_publisher(failing, activity_log)

        opp = await make_opportunity()

        assert (await service.get_opportunity(opp.id)).name == "Acme Platform Deal"
        assert failing.calls == 1
        assert [e.title for e in activity_log.entries] == ["Opportunity created: Acme Platform Deal"]
        assert await outbox_rows(db) == []

    async def test_rollback_delivers_nothing(self, make_opportunity, service, audit_log):
        opp = await make_opportunity()
        before = len(audit_log.entries)

        with pytest.raises(RequiredFieldsError):
            await service.change_stage(opp.id, STAGE_DISCOVERY)

        assert len(audit_log.entries) == before
