"""
SQLAlchemy ORM models for the Peek catalog core.

============================================================================
COMPOSITE IDENTITY: (id, stash_instance_id)
============================================================================
Catalog tables (stash_*) are a local copy of one or more upstream Stash
instances, written by the sync job. Each upstream instance numbers its own
entities, so "42" in instance A and "42" in instance B are unrelated rows.
Every catalog primary key is therefore (id, stash_instance_id), and every
junction and per-user table carries an instance_id column.

  CORRECT:   WHERE r.scene_id = s.id AND r.instance_id = s.stash_instance_id
  WRONG:     WHERE r.scene_id = s.id          -- matches both instances

Per-user tables use instance_id = "" for legacy single-instance data. In the
exclusion table "" additionally means "this id in every instance".
============================================================================
"""

from datetime import datetime
from sqlalchemy import (
    Column, String, Integer, Float, Boolean, Text, DateTime, BigInteger,
    Index, UniqueConstraint, CheckConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB

from peek_catalog.db.database import Base


# ============ Catalog Models (synced from Stash) ============

class StashScene(Base):
    """Scene metadata synced from a Stash instance."""

    __tablename__ = "stash_scenes"

    id = Column(String(64), primary_key=True)
    stash_instance_id = Column(String(64), primary_key=True, default="")
    title = Column(Text)
    code = Column(String(200))
    date = Column(String(10))  # ISO date as reported by Stash, may be partial
    studio_id = Column(String(64))
    rating100 = Column(Integer)  # Upstream rating, not the per-user rating
    duration = Column(Float)  # Seconds
    organized = Column(Boolean, default=False)
    details = Column(Text)
    file_path = Column(Text)
    o_counter = Column(Integer, default=0)
    play_count = Column(Integer, default=0)
    play_duration = Column(Float, default=0)
    stash_created_at = Column(DateTime(timezone=True))
    stash_updated_at = Column(DateTime(timezone=True))
    deleted_at = Column(DateTime(timezone=True))

    __table_args__ = (
        Index("idx_stash_scenes_studio", "studio_id", "stash_instance_id"),
        Index("idx_stash_scenes_created", stash_created_at.desc()),
        Index("idx_stash_scenes_deleted", "deleted_at"),
    )


class StashPerformer(Base):
    """Performer metadata synced from a Stash instance."""

    __tablename__ = "stash_performers"

    id = Column(String(64), primary_key=True)
    stash_instance_id = Column(String(64), primary_key=True, default="")
    name = Column(Text, nullable=False)
    disambiguation = Column(Text)
    gender = Column(String(32))
    favorite = Column(Boolean, default=False)
    scene_count = Column(Integer, default=0)
    image_count = Column(Integer, default=0)
    deleted_at = Column(DateTime(timezone=True))

    __table_args__ = (
        Index("idx_stash_performers_name", "name"),
    )


class StashStudio(Base):
    """Studio metadata synced from a Stash instance."""

    __tablename__ = "stash_studios"

    id = Column(String(64), primary_key=True)
    stash_instance_id = Column(String(64), primary_key=True, default="")
    name = Column(Text, nullable=False)
    parent_id = Column(String(64))  # Parent studio within the same instance
    scene_count = Column(Integer, default=0)
    deleted_at = Column(DateTime(timezone=True))

    __table_args__ = (
        Index("idx_stash_studios_parent", "parent_id", "stash_instance_id"),
    )


class StashTag(Base):
    """Tag metadata synced from a Stash instance."""

    __tablename__ = "stash_tags"

    id = Column(String(64), primary_key=True)
    stash_instance_id = Column(String(64), primary_key=True, default="")
    name = Column(Text, nullable=False)
    description = Column(Text)
    scene_count = Column(Integer, default=0)
    deleted_at = Column(DateTime(timezone=True))

    __table_args__ = (
        Index("idx_stash_tags_name", "name"),
    )


class TagParent(Base):
    """Tag hierarchy edges (Stash tags can have multiple parents)."""

    __tablename__ = "tag_parents"

    tag_id = Column(String(64), primary_key=True)
    parent_id = Column(String(64), primary_key=True)
    instance_id = Column(String(64), primary_key=True, default="")

    __table_args__ = (
        Index("idx_tag_parents_parent", "parent_id", "instance_id"),
    )


class StashGroup(Base):
    """Group (movie) metadata synced from a Stash instance."""

    __tablename__ = "stash_groups"

    id = Column(String(64), primary_key=True)
    stash_instance_id = Column(String(64), primary_key=True, default="")
    name = Column(Text, nullable=False)
    studio_id = Column(String(64))
    deleted_at = Column(DateTime(timezone=True))


class StashGallery(Base):
    """Gallery metadata synced from a Stash instance."""

    __tablename__ = "stash_galleries"

    id = Column(String(64), primary_key=True)
    stash_instance_id = Column(String(64), primary_key=True, default="")
    title = Column(Text)
    details = Column(Text)
    folder_path = Column(Text)
    date = Column(String(10))
    studio_id = Column(String(64))
    rating100 = Column(Integer)
    image_count = Column(Integer, default=0)
    stash_created_at = Column(DateTime(timezone=True))
    stash_updated_at = Column(DateTime(timezone=True))
    deleted_at = Column(DateTime(timezone=True))

    __table_args__ = (
        Index("idx_stash_galleries_studio", "studio_id", "stash_instance_id"),
    )


class StashImage(Base):
    """Image metadata synced from a Stash instance."""

    __tablename__ = "stash_images"

    id = Column(String(64), primary_key=True)
    stash_instance_id = Column(String(64), primary_key=True, default="")
    title = Column(Text)
    file_path = Column(Text)
    studio_id = Column(String(64))
    file_size = Column(BigInteger)
    deleted_at = Column(DateTime(timezone=True))


class StashClip(Base):
    """Scene marker ("clip") synced from a Stash instance."""

    __tablename__ = "stash_clips"

    id = Column(String(64), primary_key=True)
    stash_instance_id = Column(String(64), primary_key=True, default="")
    scene_id = Column(String(64), nullable=False)
    title = Column(Text)
    seconds = Column(Float, nullable=False)
    end_seconds = Column(Float)
    primary_tag_id = Column(String(64))
    is_generated = Column(Boolean, default=False)  # Preview media exists upstream
    stash_created_at = Column(DateTime(timezone=True))
    deleted_at = Column(DateTime(timezone=True))

    __table_args__ = (
        Index("idx_stash_clips_scene", "scene_id", "stash_instance_id"),
        Index("idx_stash_clips_primary_tag", "primary_tag_id"),
    )


# ============ Junction Tables ============
# Related entities always come from the same instance as their parent, so one
# instance_id column covers both sides of the edge.

def _junction(name: str, left: str, right: str, extra_columns=()):
    """Build a junction model class keyed by (left, right, instance_id)."""
    attrs = {
        "__tablename__": name,
        left: Column(String(64), primary_key=True),
        right: Column(String(64), primary_key=True),
        "instance_id": Column(String(64), primary_key=True, default=""),
        "__table_args__": (
            Index(f"idx_{name}_{right}", right, "instance_id"),
        ),
    }
    for column_name, column in extra_columns:
        attrs[column_name] = column
    class_name = "".join(part.capitalize() for part in name.split("_"))
    return type(class_name, (Base,), attrs)


ScenePerformer = _junction("scene_performers", "scene_id", "performer_id")
SceneTag = _junction("scene_tags", "scene_id", "tag_id")
SceneGroup = _junction(
    "scene_groups", "scene_id", "group_id",
    extra_columns=[("scene_index", Column(Integer))],
)
SceneGallery = _junction("scene_galleries", "scene_id", "gallery_id")
ImageGallery = _junction("image_galleries", "image_id", "gallery_id")
GalleryPerformer = _junction("gallery_performers", "gallery_id", "performer_id")
GalleryTag = _junction("gallery_tags", "gallery_id", "tag_id")
ClipTag = _junction("clip_tags", "clip_id", "tag_id")
PerformerTag = _junction("performer_tags", "performer_id", "tag_id")
StudioTag = _junction("studio_tags", "studio_id", "tag_id")
GroupTag = _junction("group_tags", "group_id", "tag_id")


# ============ Per-User Annotation Models ============

class SceneRating(Base):
    """A user's rating/favorite flag for a scene."""

    __tablename__ = "scene_ratings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False)
    scene_id = Column(String(64), nullable=False)
    instance_id = Column(String(64), nullable=False, default="")
    rating = Column(Integer)  # 0-100
    favorite = Column(Boolean, default=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "scene_id", "instance_id", name="uq_scene_ratings_user_scene"),
    )


class GalleryRating(Base):
    """A user's rating/favorite flag for a gallery."""

    __tablename__ = "gallery_ratings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False)
    gallery_id = Column(String(64), nullable=False)
    instance_id = Column(String(64), nullable=False, default="")
    rating = Column(Integer)
    favorite = Column(Boolean, default=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "gallery_id", "instance_id", name="uq_gallery_ratings_user_gallery"),
    )


class WatchHistory(Base):
    """A user's aggregated playback of one scene."""

    __tablename__ = "watch_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False)
    scene_id = Column(String(64), nullable=False)
    instance_id = Column(String(64), nullable=False, default="")
    play_count = Column(Integer, nullable=False, default=0)
    play_duration = Column(Float, nullable=False, default=0)  # Seconds watched in total
    o_count = Column(Integer, nullable=False, default=0)
    resume_time = Column(Float)
    last_played_at = Column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("user_id", "scene_id", "instance_id", name="uq_watch_history_user_scene"),
        Index("idx_watch_history_user", "user_id"),
    )


# ============ Visibility Models ============

class UserHiddenEntity(Base):
    """An entity a user chose to hide."""

    __tablename__ = "user_hidden_entities"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False)
    entity_type = Column(String(20), nullable=False)
    entity_id = Column(String(64), nullable=False)
    instance_id = Column(String(64), nullable=False, default="")
    hidden_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint(
            "user_id", "entity_type", "entity_id", "instance_id",
            name="uq_user_hidden_entities_key",
        ),
        Index("idx_user_hidden_entities_user", "user_id"),
    )


class UserContentRestriction(Base):
    """Admin-managed content restriction for a user.

    entity_ids holds a JSON list of references in wire format: "id" applies to
    the id in every instance, "id:instanceId" to one instance only.
    """

    __tablename__ = "user_content_restrictions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False)
    entity_type = Column(String(20), nullable=False)  # groups, tags, studios, galleries
    mode = Column(String(10), nullable=False)  # INCLUDE or EXCLUDE
    entity_ids = Column(JSONB, nullable=False, default=list)
    restrict_empty = Column(Boolean, nullable=False, default=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "entity_type", name="uq_user_content_restrictions_type"),
        CheckConstraint("mode IN ('INCLUDE', 'EXCLUDE')", name="ck_user_content_restrictions_mode"),
    )


class UserExcludedEntity(Base):
    """Materialized exclusions joined by the query builders.

    reason: 'hidden' (user hid it), 'restricted' (content restriction),
    'cascade' (a related entity was excluded) or 'empty' (nothing visible left).
    """

    __tablename__ = "user_excluded_entities"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False)
    entity_type = Column(String(20), nullable=False)
    entity_id = Column(String(64), nullable=False)
    instance_id = Column(String(64), nullable=False, default="")
    reason = Column(String(20), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "user_id", "entity_type", "entity_id", "instance_id",
            name="uq_user_excluded_entities_key",
        ),
        Index("idx_user_excluded_lookup", "user_id", "entity_type", "entity_id"),
    )


# ============ Ranking Models ============

class UserEntityRanking(Base):
    """Precomputed engagement ranking of one entity for one user."""

    __tablename__ = "user_entity_rankings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False)
    entity_type = Column(String(20), nullable=False)  # performer, studio, tag, scene
    entity_id = Column(String(64), nullable=False)
    instance_id = Column(String(64), nullable=False, default="")
    percentile_rank = Column(Integer, nullable=False)  # 0-100
    engagement_score = Column(Float, nullable=False)
    engagement_rate = Column(Float, nullable=False)
    play_count = Column(Integer, nullable=False, default=0)
    o_count = Column(Integer, nullable=False, default=0)
    library_presence = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint(
            "user_id", "entity_type", "entity_id", "instance_id",
            name="uq_user_entity_rankings_key",
        ),
        Index("idx_user_entity_rankings_pct", "user_id", "entity_type", percentile_rank.desc()),
    )
