"""Pydantic models for query options and service results."""

import logging
from datetime import datetime
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, WrapValidator, field_validator

logger = logging.getLogger(__name__)


def _drop_invalid(value: Any, handler, info):
    """Discard a malformed filter instead of failing the whole request."""
    try:
        return handler(value)
    except ValidationError as e:
        logger.debug(f"Ignoring malformed filter {info.field_name}: {e.error_count()} error(s)")
        return None


Lenient = WrapValidator(_drop_invalid)


# ============ Filter criteria ============

class MultiFilter(BaseModel):
    """Membership filter over related entities.

    value holds refs in wire format ("id" or "id:instanceId").
    modifier: INCLUDES (any), INCLUDES_ALL (every), EXCLUDES (none).
    """

    value: list[str] = Field(default_factory=list)
    modifier: str = "INCLUDES"

    @field_validator("value", mode="before")
    @classmethod
    def _coerce_value(cls, v):
        if v is None:
            return []
        if isinstance(v, (str, int)):
            return [str(v)]
        return [str(item) for item in v if item is not None]

    @field_validator("modifier", mode="before")
    @classmethod
    def _upper_modifier(cls, v):
        return str(v or "INCLUDES").strip().upper()


class HierarchicalMultiFilter(MultiFilter):
    """MultiFilter that may also match descendants (tags, studios).

    depth: 0 = exact ids only, N = N levels down, -1 = all descendants.
    """

    depth: int = 0


class IntCriterion(BaseModel):
    """Numeric comparison.

    BETWEEN / NOT_BETWEEN use value and value2 (inclusive bounds).
    IS_NULL / NOT_NULL ignore both values.
    """

    value: float | None = None
    value2: float | None = None
    modifier: str = "EQUALS"

    @field_validator("modifier", mode="before")
    @classmethod
    def _upper_modifier(cls, v):
        return str(v or "EQUALS").strip().upper()


LenientMulti = Annotated[MultiFilter | None, Lenient]
LenientHierarchical = Annotated[HierarchicalMultiFilter | None, Lenient]
LenientInt = Annotated[IntCriterion | None, Lenient]
LenientBool = Annotated[bool | None, Lenient]


# ============ Query options ============

class BaseQueryOptions(BaseModel):
    """Options shared by all list query builders."""

    model_config = ConfigDict(extra="ignore")

    user_id: int | None = None
    apply_exclusions: bool = True

    # Instance scoping: specific_instance_id wins over allowed_instance_ids.
    # An empty allowed_instance_ids list means no restriction.
    allowed_instance_ids: list[str] | None = None
    specific_instance_id: str | None = None

    # Wire refs of the entities themselves
    ids: Annotated[list[str] | None, Lenient] = None
    q: str | None = None

    sort_by: str | None = None
    sort_dir: str | None = None
    random_seed: int | None = None
    page: int = 1
    per_page: int | None = None

    @field_validator("ids", mode="before")
    @classmethod
    def _coerce_ids(cls, v):
        # Numeric Stash ids arrive as ints from JSON bodies
        if isinstance(v, (str, int)):
            return [str(v)]
        if isinstance(v, (list, tuple)):
            return [str(item) for item in v if item is not None]
        return v

    @field_validator("page", mode="before")
    @classmethod
    def _coerce_page(cls, v):
        try:
            return int(v)
        except (TypeError, ValueError):
            return 1

    @field_validator("per_page", mode="before")
    @classmethod
    def _coerce_per_page(cls, v):
        if v is None:
            return None
        try:
            return int(v)
        except (TypeError, ValueError):
            return None


class SceneQueryOptions(BaseQueryOptions):
    performers: LenientMulti = None
    tags: LenientHierarchical = None
    studios: LenientHierarchical = None
    groups: LenientMulti = None
    galleries: LenientMulti = None

    duration: LenientInt = None
    organized: LenientBool = None

    # Per-user annotation filters (require user_id)
    rating: LenientInt = None
    favorite: LenientBool = None
    play_count: LenientInt = None
    o_counter: LenientInt = None


class GalleryQueryOptions(BaseQueryOptions):
    performers: LenientMulti = None
    tags: LenientHierarchical = None
    studios: LenientHierarchical = None
    scenes: LenientMulti = None

    image_count: LenientInt = None

    # Per-user annotation filters (require user_id)
    rating: LenientInt = None
    favorite: LenientBool = None


class ClipQueryOptions(BaseQueryOptions):
    scene_id: str | None = None  # wire ref
    is_generated: LenientBool = None
    tags: LenientHierarchical = None  # primary tag or clip tags
    performers: LenientMulti = None  # via the parent scene
    studios: LenientHierarchical = None  # via the parent scene
    scene_tags: LenientHierarchical = None


# ============ Results ============

class QueryResult(BaseModel):
    items: list[dict[str, Any]]
    total: int


class HiddenEntityIds(BaseModel):
    """Raw hidden ids per entity type (ids only, instance not included)."""

    scenes: set[str] = Field(default_factory=set)
    performers: set[str] = Field(default_factory=set)
    studios: set[str] = Field(default_factory=set)
    tags: set[str] = Field(default_factory=set)
    groups: set[str] = Field(default_factory=set)
    galleries: set[str] = Field(default_factory=set)
    images: set[str] = Field(default_factory=set)

    def for_type(self, entity_type: str) -> set[str] | None:
        field = PLURAL_ENTITY_TYPES.get(entity_type)
        if field is None:
            return None
        return getattr(self, field)


PLURAL_ENTITY_TYPES = {
    "scene": "scenes",
    "performer": "performers",
    "studio": "studios",
    "tag": "tags",
    "group": "groups",
    "gallery": "galleries",
    "image": "images",
}


class HiddenEntityItem(BaseModel):
    entity_type: str
    entity_id: str
    instance_id: str
    hidden_at: datetime
    entity: dict[str, Any]


class RankingRecord(BaseModel):
    """One computed ranking row, as persisted to user_entity_rankings."""

    entity_id: str
    instance_id: str = ""
    percentile_rank: int
    engagement_score: float
    engagement_rate: float
    play_count: int
    o_count: int
    library_presence: int
