"""
Contact Roles

Links contacts to an opportunity with a role. At most one link is primary
and, when it is, the opportunity's primary_contact_id mirrors it.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from ..collaborators.references import ReferenceDirectory
from ..database import DatabaseAdapter, affected_rows, get_database
from ..errors import NotFoundError
from .models import ContactRole, ContactRoleInput, Opportunity, utcnow
from .repository import OpportunityRepository

logger = logging.getLogger(__name__)


def contact_role_from_row(row: Dict[str, Any]) -> ContactRole:
    return ContactRole(
        id=row["id"],
        opportunity_id=row["opportunity_id"],
        contact_id=row["contact_id"],
        role=row.get("role"),
        is_primary=bool(row["is_primary"]),
        notes=row.get("notes"),
        created_at=row["created_at"],
    )


class ContactRoleRepository:
    def __init__(self, db: Optional[DatabaseAdapter] = None):
        self._db = db

    async def _get_db(self) -> DatabaseAdapter:
        if self._db is None:
            self._db = await get_database()
        return self._db

    async def list(self, opportunity_id: str) -> List[ContactRole]:
        db = await self._get_db()
        rows = await db.fetch(
            """
            SELECT id, opportunity_id, contact_id, role, is_primary, notes, created_at
            FROM opportunity_contacts
            WHERE opportunity_id = $1
            ORDER BY is_primary DESC, created_at ASC
            """,
            opportunity_id,
        )
        return [contact_role_from_row(row) for row in rows]

    async def get(self, opportunity_id: str, contact_id: str) -> Optional[ContactRole]:
        db = await self._get_db()
        row = await db.fetchrow(
            """
            SELECT id, opportunity_id, contact_id, role, is_primary, notes, created_at
            FROM opportunity_contacts
            WHERE opportunity_id = $1 AND contact_id = $2
            """,
            opportunity_id,
            contact_id,
        )
        return contact_role_from_row(row) if row else None

    async def insert(self, role: ContactRole) -> None:
        db = await self._get_db()
        await db.execute(
            """
            INSERT INTO opportunity_contacts (id, opportunity_id, contact_id, role, is_primary, notes, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            """,
            role.id,
            role.opportunity_id,
            role.contact_id,
            role.role,
            role.is_primary,
            role.notes,
            role.created_at,
        )

    async def update(self, role: ContactRole) -> None:
        db = await self._get_db()
        await db.execute(
            "UPDATE opportunity_contacts SET role = $1, is_primary = $2, notes = $3 WHERE id = $4",
            role.role,
            role.is_primary,
            role.notes,
            role.id,
        )

    async def unset_primary_except(self, opportunity_id: str, contact_id: Optional[str]) -> int:
        """Clear is_primary on every role of the opportunity not belonging to contact_id."""
        db = await self._get_db()
        if contact_id is None:
            result = await db.execute(
                "UPDATE opportunity_contacts SET is_primary = $1 WHERE opportunity_id = $2 AND is_primary = $3",
                False,
                opportunity_id,
                True,
            )
        else:
            result = await db.execute(
                """
                UPDATE opportunity_contacts SET is_primary = $1
                WHERE opportunity_id = $2 AND contact_id <> $3 AND is_primary = $4
                """,
                False,
                opportunity_id,
                contact_id,
                True,
            )
        return affected_rows(result)

    async def delete(self, opportunity_id: str, contact_id: str) -> bool:
        db = await self._get_db()
        result = await db.execute(
            "DELETE FROM opportunity_contacts WHERE opportunity_id = $1 AND contact_id = $2",
            opportunity_id,
            contact_id,
        )
        return affected_rows(result) > 0


class ContactRoleManager:
    """Maintains contact roles and the primary-contact mirror on the opportunity."""

    def __init__(
        self,
        roles: ContactRoleRepository,
        opportunities: OpportunityRepository,
        references: ReferenceDirectory,
    ):
        self.roles = roles
        self.opportunities = opportunities
        self.references = references

    async def list_contact_roles(self, opportunity_id: str) -> List[ContactRole]:
        """Roles with contact summaries, primary first, then oldest."""
        roles = await self.roles.list(opportunity_id)
        enriched = []
        for role in roles:
            contact = await self.references.get_contact(role.contact_id)
            enriched.append(role.model_copy(update={"contact": contact}))
        return enriched

    async def add_contact_role(
        self,
        opportunity: Opportunity,
        data: ContactRoleInput,
        actor_id: Optional[str] = None,
    ) -> Tuple[ContactRole, bool]:
        """
        Link a contact to an opportunity, or update its existing link.

        Args:
            opportunity: Locked opportunity row
            data: Contact, role, primary flag and notes
            actor_id: User performing the change

        Returns:
            (role, created) where created is False when an existing link was updated
        """
        now = utcnow()
        if data.is_primary:
            # the partial unique index allows one primary, so clear others first
            await self.roles.unset_primary_except(opportunity.id, data.contact_id)

        existing = await self.roles.get(opportunity.id, data.contact_id)
        if existing is None:
            role = ContactRole(
                opportunity_id=opportunity.id,
                contact_id=data.contact_id,
                role=data.role,
                is_primary=data.is_primary,
                notes=data.notes,
                created_at=now,
            )
            await self.roles.insert(role)
        else:
            role = existing.model_copy(update={
                "role": data.role,
                "is_primary": data.is_primary,
                "notes": data.notes,
            })
            await self.roles.update(role)

        if data.is_primary:
            await self.opportunities.set_primary_contact(opportunity.id, data.contact_id, actor_id, now)
        elif opportunity.primary_contact_id == data.contact_id:
            await self.opportunities.set_primary_contact(opportunity.id, None, actor_id, now)

        contact = await self.references.get_contact(data.contact_id)
        return role.model_copy(update={"contact": contact}), existing is None

    async def remove_contact_role(
        self,
        opportunity: Opportunity,
        contact_id: str,
        actor_id: Optional[str] = None,
    ) -> ContactRole:
        """
        Unlink a contact. Clears primary_contact_id when it pointed at that
        contact; no other contact is promoted.

        Raises:
            NotFoundError: The contact is not linked to the opportunity
        """
        existing = await self.roles.get(opportunity.id, contact_id)
        if existing is None:
            raise NotFoundError("Contact role", contact_id)

        await self.roles.delete(opportunity.id, contact_id)
        if opportunity.primary_contact_id == contact_id:
            await self.opportunities.set_primary_contact(opportunity.id, None, actor_id, utcnow())
        return existing

    async def sync_primary(self, opportunity_id: str, contact_id: Optional[str]) -> int:
        """Unset is_primary on roles of contacts other than the new primary contact."""
        return await self.roles.unset_primary_except(opportunity_id, contact_id)
