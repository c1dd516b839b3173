"""
Shared Test Fixtures

A migrated SQLite database seeded with one sales pipeline, a small product
catalog and reference data, plus recording side-effect collaborators.
"""

from typing import AsyncGenerator, List

import pytest

from src.core.config import reset_settings
from src.core.database import DatabaseAdapter, DatabaseConfig, apply_migrations, set_database
from src.core.events.models import ActivityEntry, AuditEntry
from src.core.events.publisher import configure_publisher, reset_publisher
from src.core.opportunities import OpportunityCreate, OpportunityService, reset_opportunity_service

from tests.seed import ALICE, PIPELINE_ID, seed_reference_data


class RecordingAuditLogger:
    def __init__(self):
        self.entries: List[AuditEntry] = []

    async def log(self, entry: AuditEntry) -> None:
        self.entries.append(entry)


class RecordingActivityRecorder:
    def __init__(self):
        self.entries: List[ActivityEntry] = []

    async def record(self, entry: ActivityEntry) -> None:
        self.entries.append(entry)


@pytest.fixture
def outbox_disabled(monkeypatch):
    """Deliver side effects in-process after commit."""
    monkeypatch.setenv("OUTBOX_ENABLED", "false")
    monkeypatch.setenv("OUTBOX_PROCESSOR_ENABLED", "false")
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
async def db(tmp_path, outbox_disabled) -> AsyncGenerator[DatabaseAdapter, None]:
    """Migrated and seeded SQLite database, installed as the global adapter."""
    adapter = DatabaseAdapter(DatabaseConfig(backend="sqlite", sqlite_path=str(tmp_path / "salesops.db")))
    await adapter.connect()
    await apply_migrations(adapter)
    await seed_reference_data(adapter)
    set_database(adapter)
    yield adapter
    set_database(None)
    reset_opportunity_service()
    await adapter.disconnect()


@pytest.fixture
def audit_log() -> RecordingAuditLogger:
    return RecordingAuditLogger()


@pytest.fixture
def activity_log() -> RecordingActivityRecorder:
    return RecordingActivityRecorder()


@pytest.fixture(autouse=True)
def publisher(audit_log, activity_log):
    configure_publisher(audit_log, activity_log)
    yield
    reset_publisher()


@pytest.fixture
def service(db) -> OpportunityService:
    return OpportunityService(db)


@pytest.fixture
def make_opportunity(service):
    """Create an opportunity in the sales pipeline; keyword overrides go to OpportunityCreate."""
    async def _make(name: str = "Acme Platform Deal", actor_id: str = ALICE, **overrides):
        data = OpportunityCreate(name=name, pipeline_id=overrides.pop("pipeline_id", PIPELINE_ID), **overrides)
        return await service.create_opportunity(data, actor_id=actor_id)

    return _make
