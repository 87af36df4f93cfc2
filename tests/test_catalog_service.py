from unittest.mock import AsyncMock

import pytest

from peek_catalog.core.errors import InvalidEntityTypeError
from peek_catalog.core.identity import EntityRef
from peek_catalog.db.models import StashTag
from peek_catalog.services.catalog_service import CatalogService
from tests.helpers import make_result, sql_of


def _service(*entities):
    db = AsyncMock()
    db.execute.return_value = make_result(scalars=list(entities))
    return CatalogService(db), db


async def test_same_id_in_two_instances_stays_distinct():
    service, db = _service(
        StashTag(id="5", stash_instance_id="instA", name="Outdoor"),
        StashTag(id="5", stash_instance_id="instB", name="Kitchen"),
    )
    found = await service.get_entities("tag", [EntityRef("5", "instA"), EntityRef("5", "instB")])
    assert found[EntityRef("5", "instA")]["name"] == "Outdoor"
    assert found[EntityRef("5", "instB")]["name"] == "Kitchen"
    assert found[EntityRef("5", "instB")]["instance_id"] == "instB"


async def test_lookup_is_by_composite_key_and_skips_deleted():
    service, db = _service()
    await service.get_entities("tag", [EntityRef("5", "instA")])
    sql = sql_of(db.execute.call_args)
    assert "(stash_tags.id, stash_tags.stash_instance_id) IN" in sql
    assert "stash_tags.deleted_at IS NULL" in sql


async def test_missing_entity_is_absent():
    service, _ = _service()
    assert await service.get_entity("tag", EntityRef("404", "instA")) is None


async def test_empty_refs_skip_the_query():
    service, db = _service()
    assert await service.get_entities("scene", []) == {}
    db.execute.assert_not_called()


async def test_unknown_type():
    service, _ = _service()
    with pytest.raises(InvalidEntityTypeError):
        await service.get_entities("clip", [EntityRef("1")])
