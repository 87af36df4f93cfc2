"""
Materializes user_excluded_entities from hides and content restrictions.

The list query builders anti-join this table, so everything that should
disappear from a user's listings has to end up here:

- hidden: the user hid the entity (user_hidden_entities)
- restricted: an admin content restriction excludes it
    EXCLUDE mode -> the listed entities
    INCLUDE mode -> every entity of that type that is not listed
    restrict_empty -> scenes that have no entity of that type at all
- cascade: a related entity was hidden or restricted
    performer -> scenes
    studio    -> scenes
    tag       -> scenes, performers, studios, groups
    group     -> scenes
    gallery   -> scenes, images
- empty: nothing visible is left (checked after the rows above are written)
    gallery   -> no visible images
    performer -> no visible scenes or galleries
    studio    -> no visible scenes or images
    group     -> no visible scenes
    tag       -> not on any visible scene, performer, studio, group or gallery

Cascades are one level deep and stay inside the source's instance; a global
source (instance_id "") cascades in every instance. When one entity qualifies
for several reasons the first one wins, in the order hidden, restricted,
cascade, empty.
"""

import asyncio
import logging

from sqlalchemy import delete, select, text, union
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from peek_catalog.config import get_settings
from peek_catalog.core.identity import EntityRef, parse_refs
from peek_catalog.core.tasks import TaskManager
from peek_catalog.db.database import async_session
from peek_catalog.db.models import (
    UserContentRestriction, UserExcludedEntity, UserHiddenEntity,
)
from peek_catalog.services.catalog_service import CATALOG_MODELS

logger = logging.getLogger(__name__)

REASON_HIDDEN = "hidden"
REASON_RESTRICTED = "restricted"
REASON_CASCADE = "cascade"
REASON_EMPTY = "empty"

# Restriction entity_type (plural, as stored) -> catalog entity type
RESTRICTION_TYPES = {
    "groups": "group",
    "tags": "tag",
    "studios": "studio",
    "galleries": "gallery",
}

# source type -> [(target type, table, source column, target column, instance column)]
CASCADES = {
    "performer": [
        ("scene", "scene_performers", "performer_id", "scene_id", "instance_id"),
    ],
    "studio": [
        ("scene", "stash_scenes", "studio_id", "id", "stash_instance_id"),
    ],
    "tag": [
        ("scene", "scene_tags", "tag_id", "scene_id", "instance_id"),
        ("performer", "performer_tags", "tag_id", "performer_id", "instance_id"),
        ("studio", "studio_tags", "tag_id", "studio_id", "instance_id"),
        ("group", "group_tags", "tag_id", "group_id", "instance_id"),
    ],
    "group": [
        ("scene", "scene_groups", "group_id", "scene_id", "instance_id"),
    ],
    "gallery": [
        ("scene", "scene_galleries", "gallery_id", "scene_id", "instance_id"),
        ("image", "image_galleries", "gallery_id", "image_id", "instance_id"),
    ],
}

# Scenes that have no entity of the restricted type
EMPTY_SCENE_CONDITIONS = {
    "tag": "NOT EXISTS (SELECT 1 FROM scene_tags j WHERE j.scene_id = s.id AND j.instance_id = s.stash_instance_id)",
    "group": "NOT EXISTS (SELECT 1 FROM scene_groups j WHERE j.scene_id = s.id AND j.instance_id = s.stash_instance_id)",
    "gallery": "NOT EXISTS (SELECT 1 FROM scene_galleries j WHERE j.scene_id = s.id AND j.instance_id = s.stash_instance_id)",
    "studio": "s.studio_id IS NULL",
}

# Content that keeps an entity visible, checked in this order once the
# hidden/restricted/cascade rows are written:
# entity type -> [(target type, target table, junction, source column, target column)]
# A junction of None means the target table holds the source column itself.
EMPTY_CONTENT = {
    "gallery": [
        ("image", "stash_images", "image_galleries", "gallery_id", "image_id"),
    ],
    "performer": [
        ("scene", "stash_scenes", "scene_performers", "performer_id", "scene_id"),
        ("gallery", "stash_galleries", "gallery_performers", "performer_id", "gallery_id"),
    ],
    "studio": [
        ("scene", "stash_scenes", None, "studio_id", None),
        ("image", "stash_images", None, "studio_id", None),
    ],
    "group": [
        ("scene", "stash_scenes", "scene_groups", "group_id", "scene_id"),
    ],
    "tag": [
        ("scene", "stash_scenes", "scene_tags", "tag_id", "scene_id"),
        ("performer", "stash_performers", "performer_tags", "tag_id", "performer_id"),
        ("studio", "stash_studios", "studio_tags", "tag_id", "studio_id"),
        ("group", "stash_groups", "group_tags", "tag_id", "group_id"),
        ("gallery", "stash_galleries", "gallery_tags", "tag_id", "gallery_id"),
    ],
}

# (entity_type, ref) -> reason
ExclusionRows = dict[tuple[str, EntityRef], str]


def _visible(alias: str, entity_type: str) -> str:
    """SQL condition: the row is live and has no exclusion row for :user_id."""
    return (
        f"{alias}.deleted_at IS NULL AND NOT EXISTS ("
        f"SELECT 1 FROM user_excluded_entities ex "
        f"WHERE ex.user_id = :user_id AND ex.entity_type = '{entity_type}' "
        f"AND ex.entity_id = {alias}.id "
        f"AND (ex.instance_id = '' OR ex.instance_id = {alias}.stash_instance_id))"
    )


def _has_visible(target_type: str, table: str, junction: str | None, source_col: str, target_col: str | None) -> str:
    """SQL condition: candidate x links to at least one visible target in its own instance."""
    if junction is None:
        return (
            f"EXISTS (SELECT 1 FROM {table} t "
            f"WHERE t.{source_col} = x.id AND t.stash_instance_id = x.stash_instance_id "
            f"AND {_visible('t', target_type)})"
        )
    return (
        f"EXISTS (SELECT 1 FROM {junction} j "
        f"JOIN {table} t ON t.id = j.{target_col} AND t.stash_instance_id = j.instance_id "
        f"WHERE j.{source_col} = x.id AND j.instance_id = x.stash_instance_id "
        f"AND {_visible('t', target_type)})"
    )


class ExclusionComputationService:
    """Owns the user_excluded_entities table.

    Uses its own sessions, so recomputes can outlive the request that
    triggered them.
    """

    def __init__(self, session_factory: async_sessionmaker | None = None):
        self.session_factory = session_factory or async_session
        self.settings = get_settings()
        # Per-user coalescing: one run in flight plus at most one queued
        self._running: dict[int, asyncio.Task] = {}
        self._queued: dict[int, asyncio.Task] = {}

    # ---- full recompute ----

    async def recompute_for_user(self, user_id: int) -> None:
        """Rebuild all exclusion rows for a user in one transaction.

        A call made while a run is in flight queues one follow-up run; further
        calls join that follow-up instead of queueing more.
        """
        queued = self._queued.get(user_id)
        if queued is not None:
            return await asyncio.shield(queued)

        running = self._running.get(user_id)
        if running is not None:
            follow_up = asyncio.create_task(
                self._run_after(user_id, running), name=f"exclusions:follow-up:{user_id}"
            )
            self._queued[user_id] = follow_up
            return await asyncio.shield(follow_up)

        task = asyncio.create_task(self._run(user_id), name=f"exclusions:recompute:{user_id}")
        self._running[user_id] = task
        return await asyncio.shield(task)

    async def _run(self, user_id: int) -> None:
        try:
            await self._recompute(user_id)
        finally:
            if self._running.get(user_id) is asyncio.current_task():
                del self._running[user_id]

    async def _run_after(self, user_id: int, previous: asyncio.Task) -> None:
        # The previous run's outcome belongs to its own callers
        await asyncio.wait([previous])
        self._queued.pop(user_id, None)
        self._running[user_id] = asyncio.current_task()
        await self._run(user_id)

    async def _recompute(self, user_id: int) -> None:
        async with self.session_factory() as db:
            async with db.begin():
                await db.execute(
                    delete(UserExcludedEntity).where(UserExcludedEntity.user_id == user_id)
                )
                rows: ExclusionRows = {}
                await self._collect_hidden(db, user_id, rows)
                await self._collect_restricted(db, user_id, rows)
                direct: dict[str, list[EntityRef]] = {}
                for entity_type, ref in rows:
                    direct.setdefault(entity_type, []).append(ref)
                for entity_type, refs in direct.items():
                    await self._collect_cascades(db, entity_type, refs, rows)
                await self._insert_rows(db, user_id, rows)
                await self._collect_empty(db, user_id, rows)

        counts: dict[str, int] = {}
        for reason in rows.values():
            counts[reason] = counts.get(reason, 0) + 1
        logger.info(f"Recomputed exclusions for user {user_id}: {len(rows)} rows {counts}")

    async def recompute_all_users(self) -> dict[str, int]:
        """Recompute every user that has hides, restrictions or stale exclusions."""
        async with self.session_factory() as db:
            result = await db.execute(
                union(
                    select(UserHiddenEntity.user_id),
                    select(UserContentRestriction.user_id),
                    select(UserExcludedEntity.user_id),
                )
            )
            user_ids = sorted(row[0] for row in result.all())

        failed = 0
        for user_id in user_ids:
            try:
                await self.recompute_for_user(user_id)
            except Exception as e:
                failed += 1
                logger.error(f"Exclusion recompute failed for user {user_id}: {type(e).__name__}: {e}")

        logger.info(f"Recomputed exclusions for {len(user_ids)} users ({failed} failed)")
        return {"users": len(user_ids), "failed": failed}

    # ---- incremental updates ----

    async def add_hidden_entity(
        self, user_id: int, entity_type: str, entity_id: str, instance_id: str = ""
    ) -> int:
        """Add the hidden row and its cascades without a full recompute.

        Returns the number of rows written.
        """
        ref = EntityRef(entity_id, instance_id or "")
        rows: ExclusionRows = {(entity_type, ref): REASON_HIDDEN}

        async with self.session_factory() as db:
            async with db.begin():
                await self._collect_cascades(db, entity_type, [ref], rows)
                # An existing cascade/restricted row for this entity becomes 'hidden'
                await db.execute(
                    pg_insert(UserExcludedEntity)
                    .values(
                        user_id=user_id,
                        entity_type=entity_type,
                        entity_id=ref.id,
                        instance_id=ref.instance_id,
                        reason=REASON_HIDDEN,
                    )
                    .on_conflict_do_update(
                        index_elements=["user_id", "entity_type", "entity_id", "instance_id"],
                        set_={"reason": REASON_HIDDEN},
                    )
                )
                del rows[(entity_type, ref)]
                await self._insert_rows(db, user_id, rows)

        logger.debug(f"Added hidden {entity_type} {ref.id!r} for user {user_id} with {len(rows)} cascades")
        return len(rows) + 1

    def remove_hidden_entity(
        self, user_id: int, entity_type: str, entity_id: str, instance_id: str = ""
    ) -> asyncio.Task:
        """Schedule a background recompute.

        Cascaded rows may be shared with other sources, so they cannot be
        removed one by one.
        """
        logger.debug(f"Unhid {entity_type} {entity_id!r}/{instance_id!r} for user {user_id}, scheduling recompute")
        return TaskManager.get_instance().create_task(
            self.recompute_for_user(user_id),
            name=f"exclusions:recompute:{user_id}",
        )

    # ---- collection ----

    async def _collect_hidden(self, db: AsyncSession, user_id: int, rows: ExclusionRows) -> None:
        result = await db.execute(
            select(
                UserHiddenEntity.entity_type,
                UserHiddenEntity.entity_id,
                UserHiddenEntity.instance_id,
            ).where(UserHiddenEntity.user_id == user_id)
        )
        for entity_type, entity_id, instance_id in result.all():
            rows.setdefault((entity_type, EntityRef(entity_id, instance_id or "")), REASON_HIDDEN)

    async def _collect_restricted(self, db: AsyncSession, user_id: int, rows: ExclusionRows) -> None:
        result = await db.execute(
            select(UserContentRestriction).where(UserContentRestriction.user_id == user_id)
        )
        for restriction in result.scalars().all():
            entity_type = RESTRICTION_TYPES.get(restriction.entity_type)
            if entity_type is None:
                logger.warning(
                    f"Ignoring restriction {restriction.id} with unknown entity type {restriction.entity_type!r}"
                )
                continue

            refs = parse_refs(restriction.entity_ids or [])
            mode = (restriction.mode or "").upper()
            if mode == "EXCLUDE":
                for ref in refs:
                    rows.setdefault((entity_type, ref), REASON_RESTRICTED)
            elif mode == "INCLUDE":
                for ref in await self._not_included(db, entity_type, refs):
                    rows.setdefault((entity_type, ref), REASON_RESTRICTED)
            else:
                logger.warning(f"Ignoring restriction {restriction.id} with unknown mode {restriction.mode!r}")

            if restriction.restrict_empty:
                for ref in await self._scenes_without(db, entity_type):
                    rows.setdefault(("scene", ref), REASON_RESTRICTED)

    async def _not_included(self, db: AsyncSession, entity_type: str, refs: list[EntityRef]) -> list[EntityRef]:
        """Every live entity of the type that no ref in the allow-list matches."""
        model = CATALOG_MODELS[entity_type]
        allowed_any = {r.id for r in refs if not r.instance_id}
        allowed_scoped = {r for r in refs if r.instance_id}

        result = await db.execute(
            select(model.id, model.stash_instance_id).where(model.deleted_at.is_(None))
        )
        excluded = []
        for entity_id, instance_id in result.all():
            ref = EntityRef(entity_id, instance_id or "")
            if entity_id in allowed_any or ref in allowed_scoped:
                continue
            excluded.append(ref)
        return excluded

    async def _scenes_without(self, db: AsyncSession, entity_type: str) -> list[EntityRef]:
        condition = EMPTY_SCENE_CONDITIONS[entity_type]
        result = await db.execute(
            text(f"SELECT s.id, s.stash_instance_id FROM stash_scenes s WHERE s.deleted_at IS NULL AND {condition}")
        )
        return [EntityRef(row[0], row[1] or "") for row in result.all()]

    async def _collect_cascades(
        self, db: AsyncSession, entity_type: str, refs: list[EntityRef], rows: ExclusionRows
    ) -> None:
        targets = CASCADES.get(entity_type)
        if not targets or not refs:
            return

        global_ids = [r.id for r in refs if not r.instance_id]
        scoped = [r for r in refs if r.instance_id]

        for target_type, table, source_col, target_col, instance_col in targets:
            result = await db.execute(
                text(f"""
                    SELECT DISTINCT t.{target_col}, t.{instance_col}
                    FROM {table} t
                    WHERE t.{source_col} = ANY(CAST(:global_ids AS text[]))
                       OR (t.{source_col}, t.{instance_col}) IN (
                            SELECT * FROM unnest(CAST(:scoped_ids AS text[]), CAST(:scoped_instances AS text[]))
                       )
                """),
                {
                    "global_ids": global_ids,
                    "scoped_ids": [r.id for r in scoped],
                    "scoped_instances": [r.instance_id for r in scoped],
                },
            )
            for target_id, instance_id in result.all():
                rows.setdefault((target_type, EntityRef(target_id, instance_id or "")), REASON_CASCADE)

    async def _collect_empty(self, db: AsyncSession, user_id: int, rows: ExclusionRows) -> None:
        """Exclude entities with nothing visible left to show.

        Reads the exclusion rows already written in this transaction. Each
        type is written before the next is checked, so a gallery emptied
        here no longer keeps its performers visible.
        """
        for entity_type, content in EMPTY_CONTENT.items():
            table = CATALOG_MODELS[entity_type].__tablename__
            has_content = " OR ".join(_has_visible(*target) for target in content)
            result = await db.execute(
                text(
                    f"SELECT x.id, x.stash_instance_id FROM {table} x "
                    f"WHERE {_visible('x', entity_type)} AND NOT ({has_content})"
                ),
                {"user_id": user_id},
            )
            found: ExclusionRows = {}
            for entity_id, instance_id in result.all():
                found[(entity_type, EntityRef(entity_id, instance_id or ""))] = REASON_EMPTY
            if not found:
                continue
            logger.debug(f"User {user_id}: {len(found)} empty {entity_type} entities")
            rows.update(found)
            await self._insert_rows(db, user_id, found)

    async def _insert_rows(self, db: AsyncSession, user_id: int, rows: ExclusionRows) -> None:
        values = [
            {
                "user_id": user_id,
                "entity_type": entity_type,
                "entity_id": ref.id,
                "instance_id": ref.instance_id,
                "reason": reason,
            }
            for (entity_type, ref), reason in rows.items()
        ]
        batch_size = self.settings.exclusion_insert_batch_size
        for i in range(0, len(values), batch_size):
            await db.execute(
                pg_insert(UserExcludedEntity)
                .values(values[i:i + batch_size])
                .on_conflict_do_nothing(
                    index_elements=["user_id", "entity_type", "entity_id", "instance_id"],
                )
            )


_service: ExclusionComputationService | None = None


def get_exclusion_service() -> ExclusionComputationService:
    """Get the process-wide exclusion service (holds per-user coalescing state)."""
    global _service
    if _service is None:
        _service = ExclusionComputationService()
    return _service


def reset_exclusion_service() -> None:
    global _service
    _service = None
