import asyncio
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import insert, text

from peek_catalog.config import Settings
from peek_catalog.core.identity import EntityRef
from peek_catalog.core.tasks import TaskManager
from peek_catalog.db.models import (
    GalleryPerformer,
    ImageGallery,
    PerformerTag,
    SceneGroup,
    ScenePerformer,
    SceneTag,
    StashGallery,
    StashGroup,
    StashImage,
    StashPerformer,
    StashScene,
    StashStudio,
    StashTag,
    UserExcludedEntity,
)
from peek_catalog.services.exclusion_computation import ExclusionComputationService
from tests.helpers import FakeSession, FakeSessionFactory, make_result

EMPTY_QUERY = "SELECT x.id, x.stash_instance_id FROM "


def _restriction(entity_type, entity_ids, mode="EXCLUDE", restrict_empty=False, id=1):
    return SimpleNamespace(
        id=id, entity_type=entity_type, entity_ids=entity_ids, mode=mode, restrict_empty=restrict_empty
    )


def _router(hidden=(), restrictions=(), cascades=None, catalog=None, empty_scenes=None, empty=None, users=()):
    """Route each statement to canned rows by the table it reads."""
    cascades = cascades or {}
    empty = empty or {}
    catalog = catalog or {}
    empty_scenes = empty_scenes or {}

    def handler(statement, params):
        if getattr(statement, "is_insert", False):
            return make_result()
        sql = " ".join(str(statement).split())
        if sql.startswith("DELETE"):
            return make_result()
        if sql.startswith(EMPTY_QUERY):
            for table, rows in empty.items():
                if sql.startswith(f"{EMPTY_QUERY}{table} x "):
                    return make_result(rows=rows)
            return make_result()
        if "UNION" in sql:
            return make_result(rows=[(u,) for u in users])
        if "FROM user_hidden_entities" in sql:
            return make_result(rows=list(hidden))
        if "FROM user_content_restrictions" in sql:
            return make_result(scalars=list(restrictions))
        if "FROM stash_scenes s WHERE s.deleted_at IS NULL AND" in sql:
            for table, rows in empty_scenes.items():
                if table in sql:
                    return make_result(rows=rows)
            return make_result()
        for table, rows in cascades.items():
            if f"FROM {table} t " in sql:
                return make_result(rows=rows)
        for table, rows in catalog.items():
            if f"FROM {table}" in sql:
                return make_result(rows=rows)
        return make_result()

    return FakeSessionFactory(handler)


def _service(factory):
    service = ExclusionComputationService(factory)
    service._insert_rows = AsyncMock()
    return service


def _written(service):
    """Every (entity_type, ref) -> reason handed to the bulk insert."""
    written = {}
    for call in service._insert_rows.await_args_list:
        written.update(call.args[2])
    return written


def _cascade_params(factory, table):
    for statement, params in factory.calls:
        if f"FROM {table} t " in " ".join(str(statement).split()):
            return params
    return None


class TestCoalescing:
    async def test_concurrent_requests_collapse_into_one_follow_up(self):
        service = ExclusionComputationService(FakeSessionFactory())
        started = asyncio.Event()
        release = asyncio.Event()
        runs = []

        async def fake_recompute(user_id):
            runs.append(user_id)
            started.set()
            await release.wait()

        service._recompute = fake_recompute

        first = asyncio.create_task(service.recompute_for_user(1))
        await started.wait()
        second = asyncio.create_task(service.recompute_for_user(1))
        third = asyncio.create_task(service.recompute_for_user(1))
        await asyncio.sleep(0)
        release.set()
        await asyncio.gather(first, second, third)

        assert runs == [1, 1]
        assert service._running == {}
        assert service._queued == {}

    async def test_users_do_not_coalesce_with_each_other(self):
        service = ExclusionComputationService(FakeSessionFactory())
        runs = []

        async def fake_recompute(user_id):
            runs.append(user_id)
            await asyncio.sleep(0)

        service._recompute = fake_recompute
        await asyncio.gather(service.recompute_for_user(1), service.recompute_for_user(2))
        assert sorted(runs) == [1, 2]

    async def test_sequential_calls_each_run(self):
        service = ExclusionComputationService(FakeSessionFactory())
        service._recompute = AsyncMock()
        await service.recompute_for_user(5)
        await service.recompute_for_user(5)
        assert service._recompute.await_count == 2

    async def test_failure_reaches_caller_and_clears_state(self):
        service = ExclusionComputationService(FakeSessionFactory())
        service._recompute = AsyncMock(side_effect=RuntimeError("db down"))
        with pytest.raises(RuntimeError):
            await service.recompute_for_user(5)
        assert service._running == {}


class TestRecompute:
    async def test_runs_in_one_transaction_starting_with_delete(self):
        factory = _router()
        service = ExclusionComputationService(factory)
        await service.recompute_for_user(3)

        [session] = factory.sessions
        assert session.began == 1
        assert session.committed == 1
        assert factory.statements()[0].startswith("DELETE FROM user_excluded_entities")

    async def test_hidden_entities_and_their_cascades(self):
        factory = _router(
            hidden=[("performer", "p1", "instA"), ("tag", "t1", "")],
            cascades={
                "scene_performers": [("s1", "instA")],
                "scene_tags": [("s1", "instA"), ("s2", "instB")],
                # A hidden performer that also carries the tag stays 'hidden'
                "performer_tags": [("p1", "instA")],
            },
        )
        service = _service(factory)
        await service.recompute_for_user(3)

        assert _written(service) == {
            ("performer", EntityRef("p1", "instA")): "hidden",
            ("tag", EntityRef("t1", "")): "hidden",
            ("scene", EntityRef("s1", "instA")): "cascade",
            ("scene", EntityRef("s2", "instB")): "cascade",
        }

    async def test_cascade_queries_split_global_and_scoped_sources(self):
        factory = _router(hidden=[("performer", "p1", "instA"), ("tag", "t1", None)])
        service = _service(factory)
        await service.recompute_for_user(3)

        performer = _cascade_params(factory, "scene_performers")
        assert performer == {"global_ids": [], "scoped_ids": ["p1"], "scoped_instances": ["instA"]}
        tag = _cascade_params(factory, "scene_tags")
        assert tag == {"global_ids": ["t1"], "scoped_ids": [], "scoped_instances": []}

    async def test_cascades_are_one_query_per_target_table(self):
        factory = _router(hidden=[("tag", "t1", "a"), ("tag", "t2", "a"), ("tag", "t3", "b")])
        service = _service(factory)
        await service.recompute_for_user(3)
        scene_tag_queries = [s for s in factory.statements() if "FROM scene_tags t " in s]
        assert len(scene_tag_queries) == 1

    async def test_cascades_are_one_level_deep(self):
        # studio -> scenes only; the studio's tags are not followed
        factory = _router(
            hidden=[("studio", "st1", "instA")],
            cascades={"stash_scenes": [("s7", "instA")], "scene_tags": [("s9", "instA")]},
        )
        service = _service(factory)
        await service.recompute_for_user(3)
        assert set(_written(service)) == {
            ("studio", EntityRef("st1", "instA")),
            ("scene", EntityRef("s7", "instA")),
        }

    async def test_exclude_restriction(self):
        factory = _router(
            restrictions=[_restriction("tags", ["t9:instA", "t8"])],
            cascades={"scene_tags": [("s3", "instA")]},
        )
        service = _service(factory)
        await service.recompute_for_user(3)

        written = _written(service)
        assert written[("tag", EntityRef("t9", "instA"))] == "restricted"
        assert written[("tag", EntityRef("t8", ""))] == "restricted"
        assert written[("scene", EntityRef("s3", "instA"))] == "cascade"

    async def test_include_restriction_excludes_everything_not_listed(self):
        factory = _router(
            restrictions=[_restriction("studios", ["st1", "st3:instA"], mode="include")],
            catalog={"stash_studios": [
                ("st1", "instA"), ("st1", "instB"),
                ("st2", "instA"),
                ("st3", "instA"), ("st3", "instB"),
            ]},
        )
        service = _service(factory)
        await service.recompute_for_user(3)

        studios = {ref for (entity_type, ref) in _written(service) if entity_type == "studio"}
        assert studios == {EntityRef("st2", "instA"), EntityRef("st3", "instB")}

    async def test_restrict_empty_excludes_scenes_without_the_type(self):
        factory = _router(
            restrictions=[_restriction("groups", [], restrict_empty=True)],
            empty_scenes={"scene_groups": [("s4", "instA")]},
        )
        service = _service(factory)
        await service.recompute_for_user(3)
        assert _written(service) == {("scene", EntityRef("s4", "instA")): "restricted"}

    async def test_hidden_wins_over_restricted(self):
        factory = _router(
            hidden=[("tag", "t9", "instA")],
            restrictions=[_restriction("tags", ["t9:instA"])],
        )
        service = _service(factory)
        await service.recompute_for_user(3)
        assert _written(service)[("tag", EntityRef("t9", "instA"))] == "hidden"

    async def test_restricted_wins_over_cascade(self):
        factory = _router(
            hidden=[("gallery", "g1", "instA")],
            restrictions=[_restriction("tags", [], mode="EXCLUDE", restrict_empty=True)],
            cascades={"scene_galleries": [("s4", "instA")]},
            empty_scenes={"scene_tags": [("s4", "instA")]},
        )
        service = _service(factory)
        await service.recompute_for_user(3)
        assert _written(service)[("scene", EntityRef("s4", "instA"))] == "restricted"

    async def test_unknown_restrictions_are_skipped(self):
        factory = _router(restrictions=[
            _restriction("performers", ["p1"]),
            _restriction("tags", ["t1"], mode="MAYBE", id=2),
        ])
        service = _service(factory)
        await service.recompute_for_user(3)
        assert _written(service) == {}

    async def test_failure_rolls_back(self):
        def handler(statement, params):
            if "FROM user_content_restrictions" in str(statement):
                raise RuntimeError("connection lost")
            return make_result()

        factory = FakeSessionFactory(handler)
        with pytest.raises(RuntimeError):
            await ExclusionComputationService(factory).recompute_for_user(3)
        assert factory.sessions[0].rolled_back == 1


class TestEmptyEntities:
    async def test_gallery_without_visible_images(self):
        factory = _router(empty={"stash_galleries": [("g1", "instA")]})
        service = _service(factory)
        await service.recompute_for_user(3)
        assert _written(service) == {("gallery", EntityRef("g1", "instA")): "empty"}

    async def test_every_type_in_one_pass(self):
        factory = _router(empty={
            "stash_galleries": [("g1", "instA")],
            "stash_performers": [("p1", "instA")],
            "stash_studios": [("st1", "")],
            "stash_groups": [("gr1", "instB")],
            "stash_tags": [("t1", "instA")],
        })
        service = _service(factory)
        await service.recompute_for_user(3)

        assert _written(service) == {
            ("gallery", EntityRef("g1", "instA")): "empty",
            ("performer", EntityRef("p1", "instA")): "empty",
            ("studio", EntityRef("st1", "")): "empty",
            ("group", EntityRef("gr1", "instB")): "empty",
            ("tag", EntityRef("t1", "instA")): "empty",
        }

    async def test_types_checked_in_order_after_other_rows(self):
        factory = _router(hidden=[("image", "i1", "instA")])
        service = _service(factory)
        await service.recompute_for_user(3)

        statements = factory.statements()
        empty_tables = [s[len(EMPTY_QUERY):].split(" ", 1)[0] for s in statements if s.startswith(EMPTY_QUERY)]
        assert empty_tables == ["stash_galleries", "stash_performers", "stash_studios", "stash_groups", "stash_tags"]
        first_empty = next(i for i, s in enumerate(statements) if s.startswith(EMPTY_QUERY))
        hidden_at = next(i for i, s in enumerate(statements) if "FROM user_hidden_entities" in s)
        assert hidden_at < first_empty
        assert service._insert_rows.await_count == 1

    async def test_each_type_written_before_the_next_check(self):
        factory = _router(empty={"stash_galleries": [("g1", "instA")]})
        service = ExclusionComputationService(factory)
        await service.recompute_for_user(3)

        statements = factory.statements()
        insert_at = next(i for i, s in enumerate(statements) if s.startswith("INSERT"))
        performer_check_at = next(
            i for i, s in enumerate(statements) if s.startswith(f"{EMPTY_QUERY}stash_performers")
        )
        assert insert_at < performer_check_at

    async def test_queries_are_bound_to_the_user(self):
        factory = _router()
        await _service(factory).recompute_for_user(9)
        params = [p for s, p in factory.calls if str(s).startswith(EMPTY_QUERY)]
        assert len(params) == 5
        assert all(p == {"user_id": 9} for p in params)

    async def test_nothing_empty_nothing_written(self):
        factory = _router()
        service = ExclusionComputationService(factory)
        await service.recompute_for_user(3)
        assert not any(s.startswith("INSERT") for s in factory.statements())


class TestEmptyEntitiesAgainstCatalog:
    """_collect_empty run on the in-memory SQLite catalog."""

    @staticmethod
    def _seed(db, model, *rows):
        for row in rows:
            db.execute(insert(model), dict(row))

    async def _collect(self, catalog_db, user_id=3):
        service = ExclusionComputationService(FakeSessionFactory())

        async def insert_rows(db, user_id, rows):
            await db.execute(insert(UserExcludedEntity), [
                {"user_id": user_id, "entity_type": t, "entity_id": r.id, "instance_id": r.instance_id, "reason": reason}
                for (t, r), reason in rows.items()
            ])

        service._insert_rows = insert_rows
        session = FakeSession(lambda statement, params: catalog_db.execute(statement, params), [])
        rows = {}
        await service._collect_empty(session, user_id, rows)
        return rows

    def _hide(self, catalog_db, entity_type, entity_id, instance_id="instA", user_id=3):
        self._seed(catalog_db, UserExcludedEntity, {
            "user_id": user_id, "entity_type": entity_type, "entity_id": entity_id,
            "instance_id": instance_id, "reason": "hidden",
        })

    async def test_emptiness_follows_already_excluded_content(self, catalog_db):
        self._seed(catalog_db, StashImage, {"id": "i1", "stash_instance_id": "instA"},
                   {"id": "i2", "stash_instance_id": "instA", "studio_id": "st2"})
        self._seed(catalog_db, StashGallery, {"id": "g1", "stash_instance_id": "instA"},
                   {"id": "g2", "stash_instance_id": "instA"})
        self._seed(catalog_db, ImageGallery, {"image_id": "i1", "gallery_id": "g1", "instance_id": "instA"},
                   {"image_id": "i2", "gallery_id": "g2", "instance_id": "instA"})
        self._seed(catalog_db, StashScene, {"id": "s1", "stash_instance_id": "instA"})
        self._seed(catalog_db, StashPerformer, {"id": "p1", "stash_instance_id": "instA", "name": "Only in g1"},
                   {"id": "p2", "stash_instance_id": "instA", "name": "In s1"})
        self._seed(catalog_db, GalleryPerformer, {"gallery_id": "g1", "performer_id": "p1", "instance_id": "instA"})
        self._seed(catalog_db, ScenePerformer, {"scene_id": "s1", "performer_id": "p2", "instance_id": "instA"})
        self._seed(catalog_db, StashStudio, {"id": "st1", "stash_instance_id": "instA", "name": "Nothing"},
                   {"id": "st2", "stash_instance_id": "instA", "name": "Has i2"})
        self._seed(catalog_db, StashGroup, {"id": "gr1", "stash_instance_id": "instA", "name": "Has s1"})
        self._seed(catalog_db, SceneGroup, {"scene_id": "s1", "group_id": "gr1", "instance_id": "instA"})
        self._seed(catalog_db, StashTag, {"id": "t1", "stash_instance_id": "instA", "name": "Unused"},
                   {"id": "t2", "stash_instance_id": "instA", "name": "On p1"},
                   {"id": "t3", "stash_instance_id": "instA", "name": "On s1"})
        self._seed(catalog_db, PerformerTag, {"performer_id": "p1", "tag_id": "t2", "instance_id": "instA"})
        self._seed(catalog_db, SceneTag, {"scene_id": "s1", "tag_id": "t3", "instance_id": "instA"})
        self._hide(catalog_db, "image", "i1")

        rows = await self._collect(catalog_db)

        # g1's only image is hidden, p1's only gallery is g1, t2 is only on p1
        assert rows == {
            ("gallery", EntityRef("g1", "instA")): "empty",
            ("performer", EntityRef("p1", "instA")): "empty",
            ("studio", EntityRef("st1", "instA")): "empty",
            ("tag", EntityRef("t1", "instA")): "empty",
            ("tag", EntityRef("t2", "instA")): "empty",
        }
        stored = catalog_db.execute(
            text("SELECT COUNT(*) FROM user_excluded_entities WHERE reason = 'empty'")
        ).scalar_one()
        assert stored == 5

    async def test_global_exclusion_empties_every_instance(self, catalog_db):
        self._seed(catalog_db, StashScene, {"id": "s1", "stash_instance_id": "instA"},
                   {"id": "s1", "stash_instance_id": "instB"})
        self._seed(catalog_db, StashGroup, {"id": "gr1", "stash_instance_id": "instA", "name": "A"},
                   {"id": "gr1", "stash_instance_id": "instB", "name": "B"})
        self._seed(catalog_db, SceneGroup, {"scene_id": "s1", "group_id": "gr1", "instance_id": "instA"},
                   {"scene_id": "s1", "group_id": "gr1", "instance_id": "instB"})
        self._hide(catalog_db, "scene", "s1", instance_id="")

        rows = await self._collect(catalog_db)
        assert set(rows) == {("group", EntityRef("gr1", "instA")), ("group", EntityRef("gr1", "instB"))}

    async def test_scoped_exclusion_leaves_other_instance_visible(self, catalog_db):
        self._seed(catalog_db, StashScene, {"id": "s1", "stash_instance_id": "instA"},
                   {"id": "s1", "stash_instance_id": "instB"})
        self._seed(catalog_db, StashStudio, {"id": "st1", "stash_instance_id": "instA", "name": "A"},
                   {"id": "st1", "stash_instance_id": "instB", "name": "B"})
        catalog_db.execute(text("UPDATE stash_scenes SET studio_id = 'st1'"))
        self._hide(catalog_db, "scene", "s1", instance_id="instA")

        rows = await self._collect(catalog_db)
        assert set(rows) == {("studio", EntityRef("st1", "instA"))}

    async def test_already_excluded_and_deleted_entities_are_skipped(self, catalog_db):
        self._seed(catalog_db, StashTag, {"id": "t1", "stash_instance_id": "instA", "name": "Hidden"},
                   {"id": "t2", "stash_instance_id": "instA", "name": "Gone",
                    "deleted_at": datetime(2024, 1, 1, tzinfo=timezone.utc)})
        self._hide(catalog_db, "tag", "t1")

        assert await self._collect(catalog_db) == {}

    async def test_other_users_exclusions_do_not_count(self, catalog_db):
        self._seed(catalog_db, StashScene, {"id": "s1", "stash_instance_id": "instA"})
        self._seed(catalog_db, StashGroup, {"id": "gr1", "stash_instance_id": "instA", "name": "A"})
        self._seed(catalog_db, SceneGroup, {"scene_id": "s1", "group_id": "gr1", "instance_id": "instA"})
        self._hide(catalog_db, "scene", "s1", user_id=4)

        assert await self._collect(catalog_db, user_id=3) == {}


class TestBulkInsert:
    async def test_rows_are_inserted_in_batches(self):
        factory = FakeSessionFactory()
        service = ExclusionComputationService(factory)
        service.settings = Settings(exclusion_insert_batch_size=2)
        rows = {("scene", EntityRef(str(i), "a")): "hidden" for i in range(5)}

        async with factory() as db:
            await service._insert_rows(db, 1, rows)

        inserts = [s for s in factory.statements() if s.startswith("INSERT INTO user_excluded_entities")]
        assert len(inserts) == 3
        assert all("ON CONFLICT" in s and "DO NOTHING" in s for s in inserts)

    async def test_no_rows_no_insert(self):
        factory = FakeSessionFactory()
        service = ExclusionComputationService(factory)
        async with factory() as db:
            await service._insert_rows(db, 1, {})
        assert factory.calls == []


class TestIncremental:
    async def test_add_hidden_upserts_and_adds_cascades(self):
        factory = _router(cascades={"scene_performers": [("s1", "instA"), ("s2", "instA")]})
        service = ExclusionComputationService(factory)

        written = await service.add_hidden_entity(4, "performer", "p1", "instA")

        assert written == 3
        statements = factory.statements()
        assert not any(s.startswith("DELETE") for s in statements)
        upsert = next(s for s in statements if "DO UPDATE" in s)
        assert upsert.startswith("INSERT INTO user_excluded_entities")
        assert "reason" in upsert.split("DO UPDATE", 1)[1]
        assert any("DO NOTHING" in s for s in statements)
        assert factory.sessions[0].committed == 1

    async def test_add_hidden_without_cascade_targets(self):
        factory = _router()
        service = ExclusionComputationService(factory)
        assert await service.add_hidden_entity(4, "image", "i1") == 1
        inserts = [s for s in factory.statements() if s.startswith("INSERT")]
        assert len(inserts) == 1

    async def test_remove_hidden_schedules_recompute(self):
        service = ExclusionComputationService(FakeSessionFactory())
        service.recompute_for_user = AsyncMock()

        task = service.remove_hidden_entity(4, "tag", "t1", "instA")
        assert TaskManager.get_instance().get_task("exclusions:recompute:4") is task
        await task
        service.recompute_for_user.assert_awaited_once_with(4)


class TestAllUsers:
    async def test_continues_past_failures(self):
        factory = _router(users=[3, 1, 2])
        service = ExclusionComputationService(factory)
        seen = []

        async def fake_recompute(user_id):
            seen.append(user_id)
            if user_id == 2:
                raise RuntimeError("boom")

        service._recompute = fake_recompute
        summary = await service.recompute_all_users()

        assert summary == {"users": 3, "failed": 1}
        assert seen == [1, 2, 3]

    async def test_user_query_covers_all_sources(self):
        factory = _router()
        await ExclusionComputationService(factory).recompute_all_users()
        [sql] = factory.statements()
        for table in ("user_hidden_entities", "user_content_restrictions", "user_excluded_entities"):
            assert table in sql
