"""
Opportunity store

SQL access for opportunity rows and their append-only stage history.
Every method runs inside the caller's transaction when one is open.
"""

import json
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..database import DatabaseAdapter, affected_rows, get_database
from ..money import to_money, to_optional_money
from .models import Opportunity, OpportunityFilters, StageHistoryEntry

logger = logging.getLogger(__name__)

COLUMNS = (
    "id", "name", "pipeline_id", "stage_id", "amount", "currency", "close_date",
    "probability", "forecast_category", "owner_id", "account_id",
    "primary_contact_id", "priority_id", "type", "source", "lead_id",
    "next_step", "description", "competitor", "tags", "custom_fields",
    "won_at", "lost_at", "close_reason_id", "close_notes", "stage_entered_at",
    "created_by", "updated_by", "created_at", "updated_at", "deleted_at",
)

# Everything but the key and creation stamps can be rewritten by save()
MUTABLE_COLUMNS = tuple(c for c in COLUMNS if c not in ("id", "created_by", "created_at"))

SELECT_COLUMNS = ", ".join(f"o.{c}" for c in COLUMNS)

SORT_COLUMNS = {
    "name": "o.name",
    "amount": "o.amount",
    "close_date": "o.close_date",
    "probability": "o.probability",
    "weighted_amount": "(o.amount * o.probability)",
    "created_at": "o.created_at",
    "updated_at": "o.updated_at",
    "stage": "s.sort_order",
    "account": "a.name",
}

DUPLICATE_LIMIT = 10
MIN_DUPLICATE_WORD_LENGTH = 3
MAX_DUPLICATE_WORDS = 3

# Backslash escapes wildcards on both PostgreSQL and SQLite
LIKE_ESCAPE = "ESCAPE '\\'"


def _json_value(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value) if value.strip() else default
    return value


def opportunity_from_row(row: Dict[str, Any]) -> Opportunity:
    data = {c: row.get(c) for c in COLUMNS}
    data["amount"] = to_optional_money(data["amount"])
    data["tags"] = _json_value(data["tags"], [])
    data["custom_fields"] = _json_value(data["custom_fields"], {})
    data["probability"] = data["probability"] or 0
    data["currency"] = data["currency"] or "USD"
    data["forecast_category"] = data["forecast_category"] or "pipeline"
    return Opportunity(**data)


def _column_value(opportunity: Opportunity, column: str) -> Any:
    value = getattr(opportunity, column)
    if column in ("tags", "custom_fields"):
        return json.dumps(value)
    return value


def history_from_row(row: Dict[str, Any]) -> StageHistoryEntry:
    seconds = row.get("time_in_stage_seconds")
    return StageHistoryEntry(
        id=row["id"],
        opportunity_id=row["opportunity_id"],
        from_stage_id=row.get("from_stage_id"),
        to_stage_id=row["to_stage_id"],
        changed_by=row.get("changed_by"),
        time_in_stage=timedelta(seconds=float(seconds)) if seconds is not None else None,
        note=row.get("note"),
        created_at=row["created_at"],
    )


class _Params:
    """Collects positional parameters and hands out their $n placeholders."""

    def __init__(self):
        self.values: List[Any] = []

    def add(self, value: Any) -> str:
        self.values.append(value)
        return f"${len(self.values)}"


def _owner_restriction(params: _Params, restrict_owner_ids: Optional[Sequence[str]]) -> Optional[str]:
    if restrict_owner_ids is None:
        return None
    if not restrict_owner_ids:
        return "1 = 0"
    placeholders = ", ".join(params.add(owner_id) for owner_id in restrict_owner_ids)
    return f"o.owner_id IN ({placeholders})"


def contains_pattern(text: str) -> str:
    """LIKE pattern matching 'text' literally anywhere in a value; pair with LIKE_ESCAPE."""
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def duplicate_name_words(name: Optional[str]) -> List[str]:
    """First few significant words of a candidate name, used for containment matching."""
    if not name:
        return []
    words = [w for w in name.split() if len(w) >= MIN_DUPLICATE_WORD_LENGTH]
    return words[:MAX_DUPLICATE_WORDS]


class OpportunityRepository:
    def __init__(self, db: Optional[DatabaseAdapter] = None):
        self._db = db

    async def _get_db(self) -> DatabaseAdapter:
        if self._db is None:
            self._db = await get_database()
        return self._db

    # ------------------------------------------------------------------
    # Rows
    # ------------------------------------------------------------------

    async def insert(self, opportunity: Opportunity) -> None:
        db = await self._get_db()
        placeholders = ", ".join(f"${i}" for i in range(1, len(COLUMNS) + 1))
        await db.execute(
            f"INSERT INTO opportunities ({', '.join(COLUMNS)}) VALUES ({placeholders})",
            *[_column_value(opportunity, c) for c in COLUMNS],
        )

    async def save(self, opportunity: Opportunity) -> None:
        """Rewrite every mutable column of an existing row."""
        db = await self._get_db()
        assignments = ", ".join(f"{c} = ${i}" for i, c in enumerate(MUTABLE_COLUMNS, start=1))
        await db.execute(
            f"UPDATE opportunities SET {assignments} WHERE id = ${len(MUTABLE_COLUMNS) + 1}",
            *[_column_value(opportunity, c) for c in MUTABLE_COLUMNS],
            opportunity.id,
        )

    async def get(self, opportunity_id: str, for_update: bool = False) -> Optional[Opportunity]:
        """Live (not soft-deleted) opportunity by id; locks the row when for_update."""
        db = await self._get_db()
        query = f"SELECT {SELECT_COLUMNS} FROM opportunities o WHERE o.id = $1 AND o.deleted_at IS NULL"
        if for_update:
            query += " FOR UPDATE"
        row = await db.fetchrow(query, opportunity_id)
        return opportunity_from_row(row) if row else None

    async def soft_delete(self, opportunity_id: str, actor_id: Optional[str], now: datetime) -> bool:
        db = await self._get_db()
        result = await db.execute(
            """
            UPDATE opportunities
            SET deleted_at = $1, updated_at = $1, updated_by = $2
            WHERE id = $3 AND deleted_at IS NULL
            """,
            now,
            actor_id,
            opportunity_id,
        )
        return affected_rows(result) > 0

    async def set_amount(self, opportunity_id: str, amount: Decimal, actor_id: Optional[str], now: datetime) -> None:
        db = await self._get_db()
        await db.execute(
            "UPDATE opportunities SET amount = $1, updated_at = $2, updated_by = $3 WHERE id = $4",
            amount,
            now,
            actor_id,
            opportunity_id,
        )

    async def set_primary_contact(
        self, opportunity_id: str, contact_id: Optional[str], actor_id: Optional[str], now: datetime
    ) -> None:
        db = await self._get_db()
        await db.execute(
            """
            UPDATE opportunities
            SET primary_contact_id = $1, updated_at = $2, updated_by = $3
            WHERE id = $4
            """,
            contact_id,
            now,
            actor_id,
            opportunity_id,
        )

    # ------------------------------------------------------------------
    # Stage history
    # ------------------------------------------------------------------

    async def add_history(self, entry: StageHistoryEntry) -> None:
        db = await self._get_db()
        seconds = entry.time_in_stage.total_seconds() if entry.time_in_stage is not None else None
        await db.execute(
            """
            INSERT INTO opportunity_stage_history (
                id, opportunity_id, from_stage_id, to_stage_id,
                changed_by, time_in_stage_seconds, note, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            """,
            entry.id,
            entry.opportunity_id,
            entry.from_stage_id,
            entry.to_stage_id,
            entry.changed_by,
            seconds,
            entry.note,
            entry.created_at,
        )

    async def list_history(self, opportunity_id: str) -> List[StageHistoryEntry]:
        """Stage history, newest first."""
        db = await self._get_db()
        rows = await db.fetch(
            """
            SELECT id, opportunity_id, from_stage_id, to_stage_id,
                   changed_by, time_in_stage_seconds, note, created_at
            FROM opportunity_stage_history
            WHERE opportunity_id = $1
            ORDER BY created_at DESC, id DESC
            """,
            opportunity_id,
        )
        return [history_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _where(
        self,
        params: _Params,
        filters: OpportunityFilters,
        actor_id: Optional[str],
        restrict_owner_ids: Optional[Sequence[str]],
    ) -> str:
        conditions = ["o.deleted_at IS NULL"]

        if filters.search:
            pattern = params.add(contains_pattern(filters.search.lower()))
            conditions.append(
                f"(LOWER(o.name) LIKE {pattern} {LIKE_ESCAPE} OR LOWER(a.name) LIKE {pattern} {LIKE_ESCAPE})"
            )

        for column in ("pipeline_id", "stage_id", "owner_id", "account_id", "priority_id",
                       "type", "source", "forecast_category"):
            value = getattr(filters, column)
            if value is not None:
                conditions.append(f"o.{column} = {params.add(value)}")

        if filters.min_amount is not None:
            conditions.append(f"o.amount >= {params.add(filters.min_amount)}")
        if filters.max_amount is not None:
            conditions.append(f"o.amount <= {params.add(filters.max_amount)}")
        if filters.close_date_from is not None:
            conditions.append(f"o.close_date >= {params.add(filters.close_date_from)}")
        if filters.close_date_to is not None:
            conditions.append(f"o.close_date <= {params.add(filters.close_date_to)}")
        if filters.tag:
            # tags are stored as a JSON array of strings
            conditions.append(f"o.tags LIKE {params.add(contains_pattern(json.dumps(filters.tag)))} {LIKE_ESCAPE}")

        if filters.is_open is True:
            conditions.append("o.won_at IS NULL AND o.lost_at IS NULL")
        elif filters.is_open is False:
            conditions.append("(o.won_at IS NOT NULL OR o.lost_at IS NOT NULL)")

        if filters.ownership == "my_deals" and actor_id:
            conditions.append(f"o.owner_id = {params.add(actor_id)}")
        elif filters.ownership == "created_by_me" and actor_id:
            conditions.append(f"o.created_by = {params.add(actor_id)}")

        restriction = _owner_restriction(params, restrict_owner_ids)
        if restriction:
            conditions.append(restriction)

        return " AND ".join(conditions)

    async def list(
        self,
        filters: OpportunityFilters,
        page: int = 1,
        limit: int = 20,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        actor_id: Optional[str] = None,
        restrict_owner_ids: Optional[Sequence[str]] = None,
    ) -> Tuple[List[Opportunity], int]:
        """One page of matching opportunities and the total match count."""
        db = await self._get_db()
        params = _Params()
        where = self._where(params, filters, actor_id, restrict_owner_ids)
        joins = """
            LEFT JOIN accounts a ON a.id = o.account_id
            LEFT JOIN pipeline_stages s ON s.id = o.stage_id
        """

        total = await db.fetchval(
            f"SELECT COUNT(*) FROM opportunities o {joins} WHERE {where}",
            *params.values,
        )

        sort_column = SORT_COLUMNS.get(sort_by, SORT_COLUMNS["created_at"])
        direction = "ASC" if sort_order.lower() == "asc" else "DESC"
        limit_placeholder = params.add(limit)
        offset_placeholder = params.add((page - 1) * limit)

        rows = await db.fetch(
            f"""
            SELECT {SELECT_COLUMNS}
            FROM opportunities o {joins}
            WHERE {where}
            ORDER BY {sort_column} {direction}, o.id {direction}
            LIMIT {limit_placeholder} OFFSET {offset_placeholder}
            """,
            *params.values,
        )
        return [opportunity_from_row(row) for row in rows], int(total or 0)

    async def find_duplicates(
        self,
        name: Optional[str] = None,
        account_id: Optional[str] = None,
        exclude_id: Optional[str] = None,
        restrict_owner_ids: Optional[Sequence[str]] = None,
    ) -> List[Opportunity]:
        words = duplicate_name_words(name)
        if not words and not account_id:
            return []

        db = await self._get_db()
        params = _Params()
        matches = [f"LOWER(o.name) LIKE {params.add(contains_pattern(w.lower()))} {LIKE_ESCAPE}" for w in words]
        if account_id:
            matches.append(f"o.account_id = {params.add(account_id)}")

        conditions = [
            "o.deleted_at IS NULL",
            "o.won_at IS NULL",
            "o.lost_at IS NULL",
            f"({' OR '.join(matches)})",
        ]
        if exclude_id:
            conditions.append(f"o.id <> {params.add(exclude_id)}")
        restriction = _owner_restriction(params, restrict_owner_ids)
        if restriction:
            conditions.append(restriction)

        rows = await db.fetch(
            f"""
            SELECT {SELECT_COLUMNS}
            FROM opportunities o
            WHERE {' AND '.join(conditions)}
            ORDER BY o.created_at DESC
            LIMIT {params.add(DUPLICATE_LIMIT)}
            """,
            *params.values,
        )
        return [opportunity_from_row(row) for row in rows]

    async def list_in_stage(
        self,
        pipeline_id: str,
        stage_id: str,
        limit: int,
        restrict_owner_ids: Optional[Sequence[str]] = None,
    ) -> List[Opportunity]:
        db = await self._get_db()
        params = _Params()
        conditions = [
            "o.deleted_at IS NULL",
            f"o.pipeline_id = {params.add(pipeline_id)}",
            f"o.stage_id = {params.add(stage_id)}",
        ]
        restriction = _owner_restriction(params, restrict_owner_ids)
        if restriction:
            conditions.append(restriction)

        rows = await db.fetch(
            f"""
            SELECT {SELECT_COLUMNS}
            FROM opportunities o
            WHERE {' AND '.join(conditions)}
            ORDER BY o.amount DESC, o.close_date ASC
            LIMIT {params.add(limit)}
            """,
            *params.values,
        )
        return [opportunity_from_row(row) for row in rows]

    async def stage_totals(
        self,
        pipeline_id: str,
        restrict_owner_ids: Optional[Sequence[str]] = None,
    ) -> Dict[str, Tuple[int, Decimal, Decimal]]:
        """stage_id -> (count, total amount, weighted amount) for a pipeline."""
        db = await self._get_db()
        params = _Params()
        conditions = ["o.deleted_at IS NULL", f"o.pipeline_id = {params.add(pipeline_id)}"]
        restriction = _owner_restriction(params, restrict_owner_ids)
        if restriction:
            conditions.append(restriction)

        rows = await db.fetch(
            f"""
            SELECT o.stage_id,
                   COUNT(*) AS deal_count,
                   COALESCE(SUM(o.amount), 0) AS total_amount,
                   COALESCE(SUM(o.amount * o.probability / 100.0), 0) AS weighted_amount
            FROM opportunities o
            WHERE {' AND '.join(conditions)}
            GROUP BY o.stage_id
            """,
            *params.values,
        )
        return {
            row["stage_id"]: (int(row["deal_count"]), to_money(row["total_amount"]), to_money(row["weighted_amount"]))
            for row in rows
        }

    async def list_forecastable(
        self,
        pipeline_id: Optional[str] = None,
        restrict_owner_ids: Optional[Sequence[str]] = None,
    ) -> List[Opportunity]:
        """Open, live opportunities with a close date."""
        db = await self._get_db()
        params = _Params()
        conditions = [
            "o.deleted_at IS NULL",
            "o.won_at IS NULL",
            "o.lost_at IS NULL",
            "o.close_date IS NOT NULL",
        ]
        if pipeline_id:
            conditions.append(f"o.pipeline_id = {params.add(pipeline_id)}")
        restriction = _owner_restriction(params, restrict_owner_ids)
        if restriction:
            conditions.append(restriction)

        rows = await db.fetch(
            f"""
            SELECT {SELECT_COLUMNS}
            FROM opportunities o
            WHERE {' AND '.join(conditions)}
            ORDER BY o.close_date ASC
            """,
            *params.values,
        )
        return [opportunity_from_row(row) for row in rows]

    async def outcome_counts(
        self,
        pipeline_id: Optional[str] = None,
        restrict_owner_ids: Optional[Sequence[str]] = None,
    ) -> Tuple[int, int]:
        """(won, lost) counts of live opportunities."""
        db = await self._get_db()
        params = _Params()
        conditions = ["o.deleted_at IS NULL"]
        if pipeline_id:
            conditions.append(f"o.pipeline_id = {params.add(pipeline_id)}")
        restriction = _owner_restriction(params, restrict_owner_ids)
        if restriction:
            conditions.append(restriction)

        row = await db.fetchrow(
            f"""
            SELECT
                COALESCE(SUM(CASE WHEN o.won_at IS NOT NULL THEN 1 ELSE 0 END), 0) AS won_count,
                COALESCE(SUM(CASE WHEN o.lost_at IS NOT NULL THEN 1 ELSE 0 END), 0) AS lost_count
            FROM opportunities o
            WHERE {' AND '.join(conditions)}
            """,
            *params.values,
        )
        return int(row["won_count"]), int(row["lost_count"])
