"""List query builders for scenes, galleries and clips."""

from peek_catalog.services.query.clip_query_builder import ClipQueryBuilder
from peek_catalog.services.query.gallery_query_builder import GalleryQueryBuilder
from peek_catalog.services.query.scene_query_builder import SceneQueryBuilder

__all__ = ["SceneQueryBuilder", "GalleryQueryBuilder", "ClipQueryBuilder"]
