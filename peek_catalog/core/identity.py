"""Composite (id, instance) identity for catalog entities.

Every upstream Stash instance numbers its own entities, so a bare id is not
unique across the catalog. EntityRef is the only key that may be used for
dict/set membership across instances.
"""

from dataclasses import dataclass
from typing import Any

# Joins id and instance into a flat string key (e.g. Redis payloads).
# NUL cannot appear in ids coming from Stash.
KEY_SEPARATOR = "\x00"

# Separator used by the UI wire format "id:instanceId"
WIRE_SEPARATOR = ":"

ENTITY_TYPES = ("scene", "performer", "studio", "tag", "group", "gallery", "image")


@dataclass(frozen=True, slots=True)
class EntityRef:
    """An entity's local id plus the instance that issued it.

    instance_id == "" is legacy single-instance data and only matches "".
    """

    id: str
    instance_id: str = ""

    @property
    def key(self) -> str:
        return f"{self.id}{KEY_SEPARATOR}{self.instance_id}"

    @classmethod
    def from_key(cls, key: str) -> "EntityRef":
        entity_id, _, instance_id = key.partition(KEY_SEPARATOR)
        return cls(entity_id, instance_id)

    def to_wire(self) -> str:
        if not self.instance_id:
            return self.id
        return f"{self.id}{WIRE_SEPARATOR}{self.instance_id}"


def parse_ref(value: str) -> EntityRef:
    """Parse a UI reference ("id" or "id:instanceId").

    Splits on the first colon only; anything after it is the instance id.
    """
    value = str(value).strip()
    entity_id, sep, instance_id = value.partition(WIRE_SEPARATOR)
    if not sep:
        return EntityRef(entity_id, "")
    return EntityRef(entity_id, instance_id)


def parse_refs(values) -> list[EntityRef]:
    """Parse a list of wire references, dropping empty entries and duplicates."""
    refs: list[EntityRef] = []
    seen: set[EntityRef] = set()
    for value in values or []:
        if value is None or str(value).strip() == "":
            continue
        ref = parse_ref(value)
        if not ref.id or ref in seen:
            continue
        seen.add(ref)
        refs.append(ref)
    return refs


def entity_instance_id(entity: Any) -> str:
    """Read the normalized instance id from a dict row or an ORM/attribute object.

    Accepts "instance_id" and falls back to the catalog column name
    "stash_instance_id". Missing or None becomes "".
    """
    if isinstance(entity, dict):
        value = entity.get("instance_id")
        if value is None:
            value = entity.get("stash_instance_id")
    else:
        value = getattr(entity, "instance_id", None)
        if value is None:
            value = getattr(entity, "stash_instance_id", None)
    return value or ""


def entity_id(entity: Any) -> str:
    if isinstance(entity, dict):
        return str(entity["id"])
    return str(entity.id)


def ref_of(entity: Any) -> EntityRef:
    return EntityRef(entity_id(entity), entity_instance_id(entity))
