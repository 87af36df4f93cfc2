"""Gallery list query."""

from peek_catalog.db.schemas import GalleryQueryOptions
from peek_catalog.services.query.base import BaseQueryBuilder, QueryParts


class GalleryQueryBuilder(BaseQueryBuilder):
    entity_type = "gallery"
    table = "stash_galleries"
    alias = "g"
    select_columns = (
        "g.id", "g.stash_instance_id", "g.title", "g.details", "g.folder_path",
        "g.date", "g.studio_id", "g.rating100", "g.image_count",
        "g.stash_created_at", "g.stash_updated_at",
    )
    search_columns = ("g.title", "g.details", "g.folder_path")
    sort_columns = {
        "created_at": "g.stash_created_at",
        "updated_at": "g.stash_updated_at",
        "date": "g.date",
        "title": "g.title",
        "path": "g.folder_path",
        "image_count": "g.image_count",
        "random": "",
        "rating": "r.rating",
    }
    text_sort_keys = frozenset({"title", "path"})
    user_sort_keys = frozenset({"rating"})
    default_sort = "created_at"

    def search_subqueries(self, pattern: str) -> list[str]:
        return [
            "EXISTS (SELECT 1 FROM gallery_performers gp "
            "JOIN stash_performers p ON p.id = gp.performer_id AND p.stash_instance_id = gp.instance_id "
            "WHERE gp.gallery_id = g.id AND gp.instance_id = g.stash_instance_id "
            f"AND LOWER(p.name) LIKE LOWER({pattern}))",
            "EXISTS (SELECT 1 FROM stash_studios st "
            "WHERE st.id = g.studio_id AND st.stash_instance_id = g.stash_instance_id "
            f"AND LOWER(st.name) LIKE LOWER({pattern}))",
        ]

    def apply_user_joins(self, options: GalleryQueryOptions, parts: QueryParts) -> None:
        uid = parts.params.add(options.user_id)
        parts.joins.append(
            f"LEFT JOIN gallery_ratings r ON r.user_id = {uid} "
            "AND r.gallery_id = g.id AND r.instance_id = g.stash_instance_id"
        )
        parts.select_extra.extend([
            "r.rating AS user_rating",
            "COALESCE(r.favorite, FALSE) AS user_favorite",
        ])

    def null_user_columns(self) -> list[str]:
        return ["NULL AS user_rating", "FALSE AS user_favorite"]

    async def apply_filters(self, options: GalleryQueryOptions, parts: QueryParts) -> None:
        await self.apply_multi(
            parts, options.performers,
            self.junction_match(parts, "gallery_performers", "gallery_id", "performer_id"),
        )
        await self.apply_multi(
            parts, options.tags,
            self.junction_match(parts, "gallery_tags", "gallery_id", "tag_id"),
            expand=self.hierarchy.expand_tags,
        )
        await self.apply_multi(
            parts, options.studios,
            self.column_match(parts, "g.studio_id", "g.stash_instance_id"),
            expand=self.hierarchy.expand_studios,
        )
        await self.apply_multi(
            parts, options.scenes,
            self.junction_match(parts, "scene_galleries", "gallery_id", "scene_id"),
        )
        self.apply_int(parts, "g.image_count", options.image_count)

        if options.user_id is None:
            return
        self.apply_int(parts, "r.rating", options.rating, per_user=True)
        self.apply_bool(parts, "COALESCE(r.favorite, FALSE)", options.favorite, per_user=True)
