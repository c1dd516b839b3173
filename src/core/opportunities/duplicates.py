"""
Duplicate detection

Finds open opportunities that look like the one being entered: same
account, or a name sharing one of its first significant words.
"""

import logging
from typing import List, Optional, Sequence

from .models import Opportunity
from .repository import OpportunityRepository, duplicate_name_words

logger = logging.getLogger(__name__)


class DuplicateDetector:
    def __init__(self, repository: OpportunityRepository):
        self.repository = repository

    async def find_duplicates(
        self,
        name: Optional[str] = None,
        account_id: Optional[str] = None,
        exclude_id: Optional[str] = None,
        restrict_owner_ids: Optional[Sequence[str]] = None,
    ) -> List[Opportunity]:
        """
        Up to ten open candidates, newest first.

        Only the first three words of at least three characters are matched,
        case-insensitively, as substrings of existing names. With no usable
        words and no account the result is empty.
        """
        if not duplicate_name_words(name) and not account_id:
            return []

        matches = await self.repository.find_duplicates(
            name=name,
            account_id=account_id,
            exclude_id=exclude_id,
            restrict_owner_ids=restrict_owner_ids,
        )
        logger.debug(f"Duplicate check for {name!r}/{account_id}: {len(matches)} candidates")
        return matches
