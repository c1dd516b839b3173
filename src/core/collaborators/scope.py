"""
Record scope

Decides which owners' opportunities a caller may see. None means no
restriction; a list restricts reads to those owner ids.
"""

from typing import List, Optional, Protocol


class RecordScope(Protocol):
    async def visible_owner_ids(self, actor_id: Optional[str]) -> Optional[List[str]]: ...


class UnrestrictedScope:
    """Every record is visible."""

    async def visible_owner_ids(self, actor_id: Optional[str]) -> Optional[List[str]]:
        return None


class OwnRecordsScope:
    """Only records owned by the caller are visible."""

    async def visible_owner_ids(self, actor_id: Optional[str]) -> Optional[List[str]]:
        return [actor_id] if actor_id else []
