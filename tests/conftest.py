import hashlib

import pytest
from sqlalchemy import create_engine, event

from peek_catalog.core.cache import reset_hidden_id_cache
from peek_catalog.core.tasks import TaskManager
from peek_catalog.db.database import Base
from peek_catalog.db.models import UserContentRestriction
from peek_catalog.services.exclusion_computation import reset_exclusion_service


@pytest.fixture(autouse=True)
def reset_singletons():
    TaskManager.reset_instance()
    reset_hidden_id_cache()
    reset_exclusion_service()
    yield
    TaskManager.reset_instance()
    reset_hidden_id_cache()
    reset_exclusion_service()


@pytest.fixture
def catalog_db():
    """Connection to an in-memory SQLite copy of the schema.

    SQLite has no md5(); one is registered so seeded random sorts run. The
    restrictions table is skipped because SQLite cannot create JSONB columns.
    """
    engine = create_engine("sqlite://")

    @event.listens_for(engine, "connect")
    def _register_md5(dbapi_conn, _record):
        dbapi_conn.create_function("md5", 1, lambda v: hashlib.md5(v.encode()).hexdigest())

    tables = [t for t in Base.metadata.sorted_tables if t.name != UserContentRestriction.__tablename__]
    Base.metadata.create_all(engine, tables=tables)
    with engine.connect() as conn:
        yield conn
    engine.dispose()
