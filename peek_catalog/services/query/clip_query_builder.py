"""Clip (scene marker) list query.

A clip is only visible while its parent scene is: the scene must not be soft
deleted and must not be excluded for the user, whatever apply_exclusions says.
"""

from peek_catalog.core.identity import parse_ref
from peek_catalog.db.schemas import ClipQueryOptions, QueryResult
from peek_catalog.services.query.base import BaseQueryBuilder, BuiltQuery, QueryParts, ref_predicate


class ClipQueryBuilder(BaseQueryBuilder):
    entity_type = "scene"
    table = "stash_clips"
    alias = "c"
    select_columns = (
        "c.id", "c.stash_instance_id", "c.scene_id", "c.title", "c.seconds",
        "c.end_seconds", "c.primary_tag_id", "c.is_generated", "c.stash_created_at",
        "s.title AS scene_title", "s.file_path AS scene_path", "pt.name AS primary_tag_name",
    )
    search_columns = ("c.title", "s.title")
    sort_columns = {
        "created_at": "c.stash_created_at",
        "seconds": "c.seconds",
        "title": "c.title",
        "scene_title": "s.title",
        "random": "",
    }
    text_sort_keys = frozenset({"title", "scene_title"})
    default_sort = "created_at"

    async def build(self, options: ClipQueryOptions) -> BuiltQuery:
        return await super().build(options.model_copy(update={"apply_exclusions": True}))

    async def get_clips(self, options: ClipQueryOptions) -> QueryResult:
        return await self.execute(options)

    def search_subqueries(self, pattern: str) -> list[str]:
        return [
            f"LOWER(pt.name) LIKE LOWER({pattern})",
            "EXISTS (SELECT 1 FROM clip_tags ctg "
            "JOIN stash_tags t ON t.id = ctg.tag_id AND t.stash_instance_id = ctg.instance_id "
            "WHERE ctg.clip_id = c.id AND ctg.instance_id = c.stash_instance_id "
            f"AND LOWER(t.name) LIKE LOWER({pattern}))",
        ]

    def apply_exclusions(self, options: ClipQueryOptions, parts: QueryParts) -> None:
        """Hide clips whose parent scene is excluded."""
        uid = parts.params.add(options.user_id)
        parts.joins.append(
            f"LEFT JOIN user_excluded_entities e ON e.user_id = {uid} "
            "AND e.entity_type = 'scene' "
            "AND e.entity_id = s.id "
            "AND (e.instance_id = '' OR e.instance_id = s.stash_instance_id)"
        )
        parts.where.append("e.id IS NULL")
        parts.exclusions_applied = True

    async def apply_filters(self, options: ClipQueryOptions, parts: QueryParts) -> None:
        parts.base_joins.append(
            "JOIN stash_scenes s ON s.id = c.scene_id "
            "AND s.stash_instance_id = c.stash_instance_id"
        )
        parts.base_joins.append(
            "LEFT JOIN stash_tags pt ON pt.id = c.primary_tag_id "
            "AND pt.stash_instance_id = c.stash_instance_id"
        )
        parts.base_where.append("s.deleted_at IS NULL")

        if options.scene_id:
            scene_ref = parse_ref(options.scene_id)
            if scene_ref.id:
                parts.base_where.append(
                    ref_predicate(parts.params, "c.scene_id", "c.stash_instance_id", [scene_ref])
                )

        self.apply_bool(parts, "c.is_generated", options.is_generated)

        primary = self.column_match(parts, "c.primary_tag_id", "c.stash_instance_id")
        tagged = self.junction_match(parts, "clip_tags", "clip_id", "tag_id")
        await self.apply_multi(
            parts, options.tags,
            lambda refs: f"({primary(refs)} OR {tagged(refs)})",
            expand=self.hierarchy.expand_tags,
        )
        await self.apply_multi(
            parts, options.performers,
            self.junction_match(parts, "scene_performers", "scene_id", "performer_id", owner_alias="s"),
        )
        await self.apply_multi(
            parts, options.studios,
            self.column_match(parts, "s.studio_id", "s.stash_instance_id"),
            expand=self.hierarchy.expand_studios,
        )
        await self.apply_multi(
            parts, options.scene_tags,
            self.junction_match(parts, "scene_tags", "scene_id", "tag_id", owner_alias="s"),
            expand=self.hierarchy.expand_tags,
        )
