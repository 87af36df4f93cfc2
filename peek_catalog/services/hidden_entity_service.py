"""User hide/unhide of catalog entities.

Every mutation keeps three things in step: the user_hidden_entities row, the
materialized exclusions the list queries read, and the per-user hidden-id
cache (always invalidated last).
"""

import logging
from collections import defaultdict

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from peek_catalog.config import get_settings
from peek_catalog.core.cache import HiddenIdCache, get_hidden_id_cache
from peek_catalog.core.errors import InvalidEntityTypeError
from peek_catalog.core.identity import ENTITY_TYPES, EntityRef
from peek_catalog.db.models import UserHiddenEntity
from peek_catalog.db.schemas import PLURAL_ENTITY_TYPES, HiddenEntityIds, HiddenEntityItem
from peek_catalog.services.catalog_service import CatalogService
from peek_catalog.services.exclusion_computation import (
    ExclusionComputationService, get_exclusion_service,
)

logger = logging.getLogger(__name__)


def _check_type(entity_type: str) -> None:
    if entity_type not in ENTITY_TYPES:
        raise InvalidEntityTypeError(entity_type, ENTITY_TYPES)


class UserHiddenEntityService:
    def __init__(
        self,
        db: AsyncSession,
        cache: HiddenIdCache | None = None,
        exclusions: ExclusionComputationService | None = None,
        catalog: CatalogService | None = None,
    ):
        self.db = db
        self.cache = cache or get_hidden_id_cache()
        self.exclusions = exclusions or get_exclusion_service()
        self.catalog = catalog or CatalogService(db)
        self.settings = get_settings()

    async def hide_entity(
        self, user_id: int, entity_type: str, entity_id: str, instance_id: str = ""
    ) -> None:
        """Hide an entity. Hiding it again only refreshes hidden_at."""
        _check_type(entity_type)
        instance_id = instance_id or ""

        await self.db.execute(
            pg_insert(UserHiddenEntity)
            .values(
                user_id=user_id,
                entity_type=entity_type,
                entity_id=entity_id,
                instance_id=instance_id,
                hidden_at=func.now(),
            )
            .on_conflict_do_update(
                index_elements=["user_id", "entity_type", "entity_id", "instance_id"],
                set_={"hidden_at": func.now()},
            )
        )
        await self.db.commit()

        await self.exclusions.add_hidden_entity(user_id, entity_type, entity_id, instance_id)
        await self.cache.invalidate(user_id)
        logger.info(f"User {user_id} hid {entity_type} {entity_id!r} (instance {instance_id!r})")

    async def unhide_entity(
        self, user_id: int, entity_type: str, entity_id: str, instance_id: str = ""
    ) -> bool:
        """Unhide the exact (type, id, instance) row. Returns False if none existed."""
        _check_type(entity_type)
        instance_id = instance_id or ""

        result = await self.db.execute(
            delete(UserHiddenEntity).where(
                UserHiddenEntity.user_id == user_id,
                UserHiddenEntity.entity_type == entity_type,
                UserHiddenEntity.entity_id == entity_id,
                UserHiddenEntity.instance_id == instance_id,
            )
        )
        await self.db.commit()
        removed = (result.rowcount or 0) > 0

        self.exclusions.remove_hidden_entity(user_id, entity_type, entity_id, instance_id)
        await self.cache.invalidate(user_id)
        logger.info(f"User {user_id} unhid {entity_type} {entity_id!r} (instance {instance_id!r})")
        return removed

    async def unhide_all(self, user_id: int, entity_type: str | None = None) -> int:
        """Remove all hides, optionally of one type. Returns the count removed."""
        stmt = delete(UserHiddenEntity).where(UserHiddenEntity.user_id == user_id)
        if entity_type is not None:
            _check_type(entity_type)
            stmt = stmt.where(UserHiddenEntity.entity_type == entity_type)

        result = await self.db.execute(stmt)
        await self.db.commit()
        count = result.rowcount or 0

        if count > 0:
            await self.exclusions.recompute_for_user(user_id)
        await self.cache.invalidate(user_id)

        logger.info(f"User {user_id} unhid {count} entities (type={entity_type or 'all'})")
        return count

    async def get_hidden_entities(
        self, user_id: int, entity_type: str | None = None
    ) -> list[HiddenEntityItem]:
        """Hidden entities with their catalog data, newest first.

        Entities that no longer exist in the catalog are left out.
        """
        query = select(UserHiddenEntity).where(UserHiddenEntity.user_id == user_id)
        if entity_type is not None:
            _check_type(entity_type)
            query = query.where(UserHiddenEntity.entity_type == entity_type)
        query = query.order_by(UserHiddenEntity.hidden_at.desc(), UserHiddenEntity.id.desc())

        result = await self.db.execute(query)
        hidden = result.scalars().all()

        # Rows without an instance were written before multi-instance support;
        # they belong to the default instance
        default_instance = self.settings.default_instance_id
        lookups: dict[str, list[EntityRef]] = defaultdict(list)
        for row in hidden:
            lookups[row.entity_type].append(EntityRef(row.entity_id, row.instance_id or default_instance))

        found: dict[str, dict] = {}
        for lookup_type, refs in lookups.items():
            if lookup_type not in ENTITY_TYPES:
                continue
            found[lookup_type] = await self.catalog.get_entities(lookup_type, refs)

        items = []
        for row in hidden:
            ref = EntityRef(row.entity_id, row.instance_id or default_instance)
            entity = found.get(row.entity_type, {}).get(ref)
            if entity is None:
                continue
            items.append(HiddenEntityItem(
                entity_type=row.entity_type,
                entity_id=row.entity_id,
                instance_id=row.instance_id or "",
                hidden_at=row.hidden_at,
                entity=entity,
            ))

        if len(items) != len(hidden):
            logger.debug(f"Dropped {len(hidden) - len(items)} hidden entities missing from the catalog")
        return items

    async def get_hidden_entity_ids(self, user_id: int) -> HiddenEntityIds:
        """Hidden ids per entity type, cached per user until a mutation."""

        async def load() -> HiddenEntityIds:
            result = await self.db.execute(
                select(UserHiddenEntity.entity_type, UserHiddenEntity.entity_id).where(
                    UserHiddenEntity.user_id == user_id
                )
            )
            ids = HiddenEntityIds()
            for entity_type, entity_id in result.all():
                bucket = ids.for_type(entity_type)
                if bucket is not None:
                    bucket.add(entity_id)
            return ids

        return await self.cache.get_or_load(user_id, load)

    async def is_entity_hidden(self, user_id: int, entity_type: str, entity_id: str) -> bool:
        if entity_type not in PLURAL_ENTITY_TYPES:
            return False
        ids = await self.get_hidden_entity_ids(user_id)
        return entity_id in ids.for_type(entity_type)

    async def clear_cache(self, user_id: int) -> None:
        await self.cache.invalidate(user_id)

    async def clear_all_cache(self) -> None:
        await self.cache.clear()
