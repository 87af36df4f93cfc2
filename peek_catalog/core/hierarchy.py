"""Tag and studio hierarchy expansion.

A filter on a parent tag (or studio) also matches its descendants when the
filter's depth is non-zero. Descendants are resolved within the parent's
instance; a bare ref (no instance) follows edges in every instance.
"""

import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from peek_catalog.core.identity import EntityRef

logger = logging.getLogger(__name__)

# depth=-1 means "all descendants"; this bounds runaway recursion on cyclic data
HIERARCHY_MAX_DEPTH = 20

_EDGE_SOURCES = {
    # child column, parent column, instance column, table
    "tag": ("tag_id", "parent_id", "instance_id", "tag_parents"),
    "studio": ("id", "parent_id", "stash_instance_id", "stash_studios"),
}


class HierarchyService:
    """Expands tag/studio refs to include their descendants."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def expand_tags(self, refs: list[EntityRef], depth: int) -> list[EntityRef]:
        return await self._expand("tag", refs, depth)

    async def expand_studios(self, refs: list[EntityRef], depth: int) -> list[EntityRef]:
        return await self._expand("studio", refs, depth)

    async def _expand(self, kind: str, refs: list[EntityRef], depth: int) -> list[EntityRef]:
        if not refs or depth == 0:
            return list(refs)

        max_depth = HIERARCHY_MAX_DEPTH if depth < 0 else min(depth, HIERARCHY_MAX_DEPTH)
        child_col, parent_col, instance_col, table = _EDGE_SOURCES[kind]
        extra = " AND e.deleted_at IS NULL" if kind == "studio" else ""

        result = await self.db.execute(
            text(f"""
                WITH RECURSIVE tree(id, instance_id, lvl) AS (
                    SELECT seed.id, seed.instance_id, 0
                    FROM unnest(CAST(:ids AS text[]), CAST(:instances AS text[])) AS seed(id, instance_id)
                    UNION
                    SELECT e.{child_col}, e.{instance_col}, t.lvl + 1
                    FROM {table} e
                    JOIN tree t ON e.{parent_col} = t.id
                        AND (t.instance_id = '' OR e.{instance_col} = t.instance_id)
                    WHERE t.lvl < :max_depth{extra}
                )
                SELECT DISTINCT id, instance_id FROM tree
            """),
            {
                "ids": [r.id for r in refs],
                "instances": [r.instance_id for r in refs],
                "max_depth": max_depth,
            },
        )
        expanded = {EntityRef(row[0], row[1] or "") for row in result.fetchall()}
        # Seeds are always kept, even if the query returned nothing for them
        expanded.update(refs)

        logger.debug(f"Expanded {len(refs)} {kind} refs to {len(expanded)} (depth={depth})")
        return sorted(expanded, key=lambda r: (r.id, r.instance_id))
