"""
Request dependencies: acting user, record scope and the service.
"""

from typing import List, Optional

from fastapi import Depends, Header, Request

from ...core.collaborators.scope import RecordScope, UnrestrictedScope
from ...core.opportunities.service import OpportunityService, get_opportunity_service


def get_actor_id(x_actor_id: Optional[str] = Header(None, alias="X-Actor-ID")) -> Optional[str]:
    """User performing the request, from the X-Actor-ID header."""
    return x_actor_id or None


def get_record_scope(request: Request) -> RecordScope:
    return getattr(request.app.state, "record_scope", None) or UnrestrictedScope()


async def get_restrict_owner_ids(
    actor_id: Optional[str] = Depends(get_actor_id),
    scope: RecordScope = Depends(get_record_scope),
) -> Optional[List[str]]:
    """Owner ids the actor may see; None when unrestricted."""
    return await scope.visible_owner_ids(actor_id)


def get_service() -> OpportunityService:
    return get_opportunity_service()
