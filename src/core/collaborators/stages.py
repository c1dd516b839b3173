"""
Pipeline/Stage Directory

Read-only view of pipeline and stage configuration owned by the settings
service. Stage rows carry two flags (is_won, is_lost); they are folded into
a single StageKind here and a row with both set is refused.
"""

import json
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel, Field

from ..database import DatabaseAdapter, get_database
from ..errors import StageConfigurationError
from .requirements import RequiredField, parse_required_fields

logger = logging.getLogger(__name__)


class StageKind(str, Enum):
    OPEN = "open"
    WON = "won"
    LOST = "lost"


class Pipeline(BaseModel):
    id: str
    name: str
    is_default: bool = False
    is_active: bool = True


class PipelineStage(BaseModel):
    id: str
    pipeline_id: str
    name: str
    slug: Optional[str] = None
    color: Optional[str] = None
    sort_order: int = 0
    probability: int = Field(default=0, ge=0, le=100)
    kind: StageKind = StageKind.OPEN
    required_fields: List[RequiredField] = Field(default_factory=list)
    is_active: bool = True

    @property
    def is_terminal(self) -> bool:
        return self.kind != StageKind.OPEN


class StageDirectory(Protocol):
    """Stage lookups the opportunity core depends on."""

    async def get_pipeline(self, pipeline_id: str) -> Optional[Pipeline]: ...

    async def get_stage(self, stage_id: str) -> Optional[PipelineStage]: ...

    async def get_first_open_stage(self, pipeline_id: str) -> Optional[PipelineStage]: ...

    async def get_won_stage(self, pipeline_id: str) -> Optional[PipelineStage]: ...

    async def get_lost_stage(self, pipeline_id: str) -> Optional[PipelineStage]: ...

    async def list_stages(self, pipeline_id: str) -> List[PipelineStage]: ...


def stage_kind(is_won: bool, is_lost: bool, stage_id: str = "") -> StageKind:
    if is_won and is_lost:
        raise StageConfigurationError(f"Stage '{stage_id}' is flagged both won and lost")
    if is_won:
        return StageKind.WON
    if is_lost:
        return StageKind.LOST
    return StageKind.OPEN


def stage_from_row(row: Dict[str, Any]) -> PipelineStage:
    required = row.get("required_fields") or []
    if isinstance(required, str):
        required = json.loads(required) if required.strip() else []
    return PipelineStage(
        id=row["id"],
        pipeline_id=row["pipeline_id"],
        name=row["name"],
        slug=row.get("slug"),
        color=row.get("color"),
        sort_order=row.get("sort_order") or 0,
        probability=row.get("probability") or 0,
        kind=stage_kind(bool(row.get("is_won")), bool(row.get("is_lost")), row["id"]),
        required_fields=parse_required_fields(required),
        is_active=bool(row.get("is_active", True)),
    )


_STAGE_COLUMNS = """
    id, pipeline_id, name, slug, color, sort_order, probability,
    is_won, is_lost, is_active, required_fields
"""


class SqlStageDirectory:
    """StageDirectory reading the pipelines and pipeline_stages tables."""

    def __init__(self, db: Optional[DatabaseAdapter] = None):
        self._db = db

    async def _get_db(self) -> DatabaseAdapter:
        if self._db is None:
            self._db = await get_database()
        return self._db

    async def get_pipeline(self, pipeline_id: str) -> Optional[Pipeline]:
        db = await self._get_db()
        row = await db.fetchrow(
            "SELECT id, name, is_default, is_active FROM pipelines WHERE id = $1 AND is_active = $2",
            pipeline_id,
            True,
        )
        return Pipeline(**row) if row else None

    async def get_stage(self, stage_id: str) -> Optional[PipelineStage]:
        """Active stage by id; inactive stages are reported as missing."""
        db = await self._get_db()
        row = await db.fetchrow(
            f"SELECT {_STAGE_COLUMNS} FROM pipeline_stages WHERE id = $1 AND is_active = $2",
            stage_id,
            True,
        )
        return stage_from_row(row) if row else None

    async def get_first_open_stage(self, pipeline_id: str) -> Optional[PipelineStage]:
        db = await self._get_db()
        row = await db.fetchrow(
            f"""
            SELECT {_STAGE_COLUMNS} FROM pipeline_stages
            WHERE pipeline_id = $1 AND is_active = $2 AND is_won = $3 AND is_lost = $3
            ORDER BY sort_order ASC
            LIMIT 1
            """,
            pipeline_id,
            True,
            False,
        )
        return stage_from_row(row) if row else None

    async def get_won_stage(self, pipeline_id: str) -> Optional[PipelineStage]:
        return await self._get_terminal_stage(pipeline_id, "is_won")

    async def get_lost_stage(self, pipeline_id: str) -> Optional[PipelineStage]:
        return await self._get_terminal_stage(pipeline_id, "is_lost")

    async def _get_terminal_stage(self, pipeline_id: str, flag: str) -> Optional[PipelineStage]:
        db = await self._get_db()
        row = await db.fetchrow(
            f"""
            SELECT {_STAGE_COLUMNS} FROM pipeline_stages
            WHERE pipeline_id = $1 AND {flag} = $2
            ORDER BY sort_order ASC
            LIMIT 1
            """,
            pipeline_id,
            True,
        )
        return stage_from_row(row) if row else None

    async def list_stages(self, pipeline_id: str) -> List[PipelineStage]:
        db = await self._get_db()
        rows = await db.fetch(
            f"""
            SELECT {_STAGE_COLUMNS} FROM pipeline_stages
            WHERE pipeline_id = $1 AND is_active = $2
            ORDER BY sort_order ASC
            """,
            pipeline_id,
            True,
        )
        return [stage_from_row(row) for row in rows]
