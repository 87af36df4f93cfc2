"""Lookups of catalog entities by composite key."""

import logging
from typing import Any

from sqlalchemy import select, tuple_
from sqlalchemy.ext.asyncio import AsyncSession

from peek_catalog.core.errors import InvalidEntityTypeError
from peek_catalog.core.identity import EntityRef
from peek_catalog.db.models import (
    StashGallery, StashGroup, StashImage, StashPerformer, StashScene, StashStudio, StashTag,
)

logger = logging.getLogger(__name__)

CATALOG_MODELS = {
    "scene": StashScene,
    "performer": StashPerformer,
    "studio": StashStudio,
    "tag": StashTag,
    "group": StashGroup,
    "gallery": StashGallery,
    "image": StashImage,
}


def entity_to_dict(entity) -> dict[str, Any]:
    data = {c.name: getattr(entity, c.name) for c in entity.__table__.columns}
    data["instance_id"] = data.get("stash_instance_id") or ""
    return data


class CatalogService:
    """Reads live (not soft-deleted) catalog rows."""

    def __init__(self, db: AsyncSession):
        self.db = db

    @staticmethod
    def model_for(entity_type: str):
        model = CATALOG_MODELS.get(entity_type)
        if model is None:
            raise InvalidEntityTypeError(entity_type, CATALOG_MODELS)
        return model

    async def get_entity(self, entity_type: str, ref: EntityRef) -> dict[str, Any] | None:
        found = await self.get_entities(entity_type, [ref])
        return found.get(ref)

    async def get_entities(self, entity_type: str, refs: list[EntityRef]) -> dict[EntityRef, dict[str, Any]]:
        """Batch lookup; refs that do not resolve are absent from the result."""
        model = self.model_for(entity_type)
        refs = list(dict.fromkeys(refs))
        if not refs:
            return {}

        result = await self.db.execute(
            select(model).where(
                tuple_(model.id, model.stash_instance_id).in_([(r.id, r.instance_id) for r in refs]),
                model.deleted_at.is_(None),
            )
        )
        found = {}
        for entity in result.scalars().all():
            data = entity_to_dict(entity)
            found[EntityRef(data["id"], data["instance_id"])] = data
        return found
