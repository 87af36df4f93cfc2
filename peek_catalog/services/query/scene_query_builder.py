"""Scene list query."""

from peek_catalog.db.schemas import SceneQueryOptions
from peek_catalog.services.query.base import BaseQueryBuilder, QueryParts


class SceneQueryBuilder(BaseQueryBuilder):
    """Filtered, sorted, paged scenes with per-user rating and watch data."""

    entity_type = "scene"
    table = "stash_scenes"
    alias = "s"
    select_columns = (
        "s.id", "s.stash_instance_id", "s.title", "s.code", "s.date", "s.details",
        "s.file_path", "s.studio_id", "s.duration", "s.organized", "s.rating100",
        "s.stash_created_at", "s.stash_updated_at",
    )
    search_columns = ("s.title", "s.details", "s.file_path")
    sort_columns = {
        "created_at": "s.stash_created_at",
        "updated_at": "s.stash_updated_at",
        "date": "s.date",
        "title": "s.title",
        "path": "s.file_path",
        "duration": "s.duration",
        "random": "",
        "rating": "r.rating",
        "play_count": "COALESCE(w.play_count, 0)",
        "o_counter": "COALESCE(w.o_count, 0)",
        "play_duration": "COALESCE(w.play_duration, 0)",
        "last_played_at": "w.last_played_at",
    }
    text_sort_keys = frozenset({"title", "path"})
    user_sort_keys = frozenset({"rating", "play_count", "o_counter", "play_duration", "last_played_at"})
    default_sort = "created_at"

    def search_subqueries(self, pattern: str) -> list[str]:
        return [
            "EXISTS (SELECT 1 FROM scene_performers sp "
            "JOIN stash_performers p ON p.id = sp.performer_id AND p.stash_instance_id = sp.instance_id "
            "WHERE sp.scene_id = s.id AND sp.instance_id = s.stash_instance_id "
            f"AND LOWER(p.name) LIKE LOWER({pattern}))",
            "EXISTS (SELECT 1 FROM stash_studios st "
            "WHERE st.id = s.studio_id AND st.stash_instance_id = s.stash_instance_id "
            f"AND LOWER(st.name) LIKE LOWER({pattern}))",
            "EXISTS (SELECT 1 FROM scene_tags stg "
            "JOIN stash_tags t ON t.id = stg.tag_id AND t.stash_instance_id = stg.instance_id "
            "WHERE stg.scene_id = s.id AND stg.instance_id = s.stash_instance_id "
            f"AND LOWER(t.name) LIKE LOWER({pattern}))",
        ]

    def apply_user_joins(self, options: SceneQueryOptions, parts: QueryParts) -> None:
        uid = parts.params.add(options.user_id)
        # Annotation rows must match both the scene id and its instance
        parts.joins.append(
            f"LEFT JOIN scene_ratings r ON r.user_id = {uid} "
            "AND r.scene_id = s.id AND r.instance_id = s.stash_instance_id"
        )
        parts.joins.append(
            f"LEFT JOIN watch_history w ON w.user_id = {uid} "
            "AND w.scene_id = s.id AND w.instance_id = s.stash_instance_id"
        )
        parts.select_extra.extend([
            "r.rating AS user_rating",
            "COALESCE(r.favorite, FALSE) AS user_favorite",
            "COALESCE(w.play_count, 0) AS user_play_count",
            "COALESCE(w.o_count, 0) AS user_o_count",
            "w.play_duration AS user_play_duration",
            "w.resume_time AS user_resume_time",
            "w.last_played_at AS user_last_played_at",
        ])

    def null_user_columns(self) -> list[str]:
        return [
            "NULL AS user_rating",
            "FALSE AS user_favorite",
            "0 AS user_play_count",
            "0 AS user_o_count",
            "NULL AS user_play_duration",
            "NULL AS user_resume_time",
            "NULL AS user_last_played_at",
        ]

    async def apply_filters(self, options: SceneQueryOptions, parts: QueryParts) -> None:
        await self.apply_multi(
            parts, options.performers,
            self.junction_match(parts, "scene_performers", "scene_id", "performer_id"),
        )
        await self.apply_multi(
            parts, options.tags,
            self.junction_match(parts, "scene_tags", "scene_id", "tag_id"),
            expand=self.hierarchy.expand_tags,
        )
        await self.apply_multi(
            parts, options.studios,
            self.column_match(parts, "s.studio_id", "s.stash_instance_id"),
            expand=self.hierarchy.expand_studios,
        )
        await self.apply_multi(
            parts, options.groups,
            self.junction_match(parts, "scene_groups", "scene_id", "group_id"),
        )
        await self.apply_multi(
            parts, options.galleries,
            self.junction_match(parts, "scene_galleries", "scene_id", "gallery_id"),
        )

        self.apply_int(parts, "s.duration", options.duration)
        self.apply_bool(parts, "s.organized", options.organized)

        # Per-user filters need the annotation joins
        if options.user_id is None:
            return
        self.apply_int(parts, "r.rating", options.rating, per_user=True)
        self.apply_bool(parts, "COALESCE(r.favorite, FALSE)", options.favorite, per_user=True)
        self.apply_int(parts, "COALESCE(w.play_count, 0)", options.play_count, per_user=True)
        self.apply_int(parts, "COALESCE(w.o_count, 0)", options.o_counter, per_user=True)
