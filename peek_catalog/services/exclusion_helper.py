"""Per-user exclusion sets read from user_excluded_entities.

Rows with instance_id == "" are global: the id is excluded in every instance.
Rows with an instance id only exclude that (id, instance) pair. Keeping the
two apart means one set lookup per check regardless of how many instances
exist, and a global row shadows any scoped duplicate.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from peek_catalog.core.errors import InvalidEntityTypeError
from peek_catalog.core.identity import ENTITY_TYPES, EntityRef, entity_id, entity_instance_id
from peek_catalog.db.models import UserExcludedEntity

logger = logging.getLogger(__name__)


@dataclass
class ExclusionData:
    global_ids: set[str] = field(default_factory=set)
    scoped_keys: set[EntityRef] = field(default_factory=set)

    def __len__(self) -> int:
        return len(self.global_ids) + len(self.scoped_keys)


def is_excluded(entity_id: str, instance_id: str | None, data: ExclusionData) -> bool:
    """True if the entity is excluded globally or in its own instance.

    Without an instance id only a global exclusion can match.
    """
    if entity_id in data.global_ids:
        return True
    if not instance_id:
        return False
    return EntityRef(entity_id, instance_id) in data.scoped_keys


class EntityExclusionHelper:
    """Loads and applies exclusion sets for one user and entity type."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_exclusion_data(self, user_id: int | None, entity_type: str) -> ExclusionData:
        """Partition the user's exclusion rows into global ids and scoped refs.

        An anonymous context (user_id None) has no exclusions.
        """
        if entity_type not in ENTITY_TYPES:
            raise InvalidEntityTypeError(entity_type, ENTITY_TYPES)
        if user_id is None:
            return ExclusionData()

        result = await self.db.execute(
            select(UserExcludedEntity.entity_id, UserExcludedEntity.instance_id).where(
                UserExcludedEntity.user_id == user_id,
                UserExcludedEntity.entity_type == entity_type,
            )
        )

        data = ExclusionData()
        for excluded_id, instance_id in result.all():
            if instance_id:
                data.scoped_keys.add(EntityRef(excluded_id, instance_id))
            else:
                data.global_ids.add(excluded_id)
        return data

    async def get_excluded_ids(
        self,
        user_id: int | None,
        entity_type: str,
        instance_id: str | None = None,
    ) -> set[str]:
        """Flat set of excluded ids.

        With instance_id: global ids plus ids scoped to that instance.
        Without it: every recorded id regardless of scope. That form mixes
        instances and is only meant for admin/diagnostic listings.
        """
        data = await self.get_exclusion_data(user_id, entity_type)
        ids = set(data.global_ids)
        if instance_id is None:
            ids.update(ref.id for ref in data.scoped_keys)
        else:
            ids.update(ref.id for ref in data.scoped_keys if ref.instance_id == instance_id)
        return ids

    is_excluded = staticmethod(is_excluded)

    async def filter_excluded(
        self,
        entities: Iterable[Any],
        user_id: int | None,
        entity_type: str,
    ) -> list[Any]:
        """Drop excluded entities from an in-memory list (dicts or objects)."""
        entities = list(entities)
        data = await self.get_exclusion_data(user_id, entity_type)
        if not data:
            return entities

        kept = [
            e for e in entities
            if not is_excluded(entity_id(e), entity_instance_id(e), data)
        ]
        if len(kept) != len(entities):
            logger.debug(
                f"Filtered {len(entities) - len(kept)} excluded {entity_type} entities for user {user_id}"
            )
        return kept
