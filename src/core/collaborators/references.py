"""
Reference directory

Summaries of users, accounts and contacts owned by neighbouring services,
used to enrich opportunity reads. Missing references resolve to None.
"""

from typing import List, Optional, Protocol

from pydantic import BaseModel

from ..database import DatabaseAdapter, get_database


class UserSummary(BaseModel):
    id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    avatar_url: Optional[str] = None


class AccountSummary(BaseModel):
    id: str
    name: str
    logo_url: Optional[str] = None


class ContactSummary(BaseModel):
    id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    job_title: Optional[str] = None


class TeamMember(BaseModel):
    user_id: str
    role: Optional[str] = None
    access_level: str = "read"
    user: Optional[UserSummary] = None


class ReferenceDirectory(Protocol):
    async def get_user(self, user_id: str) -> Optional[UserSummary]: ...

    async def get_account(self, account_id: str) -> Optional[AccountSummary]: ...

    async def get_contact(self, contact_id: str) -> Optional[ContactSummary]: ...

    async def list_team_members(self, entity_type: str, entity_id: str) -> List[TeamMember]: ...


class NullReferenceDirectory:
    """Resolves nothing; reads still succeed without enrichment."""

    async def get_user(self, user_id: str) -> Optional[UserSummary]:
        return None

    async def get_account(self, account_id: str) -> Optional[AccountSummary]:
        return None

    async def get_contact(self, contact_id: str) -> Optional[ContactSummary]:
        return None

    async def list_team_members(self, entity_type: str, entity_id: str) -> List[TeamMember]:
        return []


class SqlReferenceDirectory:
    def __init__(self, db: Optional[DatabaseAdapter] = None):
        self._db = db

    async def _get_db(self) -> DatabaseAdapter:
        if self._db is None:
            self._db = await get_database()
        return self._db

    async def get_user(self, user_id: str) -> Optional[UserSummary]:
        db = await self._get_db()
        row = await db.fetchrow(
            "SELECT id, first_name, last_name, email, avatar_url FROM users WHERE id = $1",
            user_id,
        )
        return UserSummary(**row) if row else None

    async def get_account(self, account_id: str) -> Optional[AccountSummary]:
        db = await self._get_db()
        row = await db.fetchrow("SELECT id, name, logo_url FROM accounts WHERE id = $1", account_id)
        return AccountSummary(**row) if row else None

    async def get_contact(self, contact_id: str) -> Optional[ContactSummary]:
        db = await self._get_db()
        row = await db.fetchrow(
            "SELECT id, first_name, last_name, email, phone, job_title FROM contacts WHERE id = $1",
            contact_id,
        )
        return ContactSummary(**row) if row else None

    async def list_team_members(self, entity_type: str, entity_id: str) -> List[TeamMember]:
        db = await self._get_db()
        rows = await db.fetch(
            """
            SELECT rtm.user_id, rtm.role, rtm.access_level,
                   u.first_name, u.last_name, u.email, u.avatar_url
            FROM record_team_members rtm
            LEFT JOIN users u ON u.id = rtm.user_id
            WHERE rtm.entity_type = $1 AND rtm.entity_id = $2
            ORDER BY rtm.created_at ASC
            """,
            entity_type,
            entity_id,
        )
        return [
            TeamMember(
                user_id=row["user_id"],
                role=row["role"],
                access_level=row["access_level"] or "read",
                user=UserSummary(
                    id=row["user_id"],
                    first_name=row["first_name"],
                    last_name=row["last_name"],
                    email=row["email"],
                    avatar_url=row["avatar_url"],
                ),
            )
            for row in rows
        ]
