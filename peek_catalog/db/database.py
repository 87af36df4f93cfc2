"""Engine and session factory shared by the services and scripts.

Schema is owned by Alembic (alembic/versions); nothing here creates tables.
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from peek_catalog.config import get_settings

settings = get_settings()

# Lazy: no connection is opened until the first query
engine = create_async_engine(
    settings.database_url,
    pool_size=settings.database_pool_size,
    max_overflow=settings.database_max_overflow,
    pool_pre_ping=True,
    pool_recycle=300,
    connect_args={"server_settings": {"application_name": settings.app_name}},
)

# Recompute services open their own sessions from this factory so background
# work does not share a request's session
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

Base = declarative_base()
