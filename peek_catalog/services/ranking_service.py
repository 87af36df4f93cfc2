"""
Per-user engagement rankings for performers, studios, tags and scenes.

Scoring:
    engagement_score = o_count * 5 + play_duration / avg_duration + play_count
    engagement_rate  = engagement_score / max(library_presence, 1)

avg_duration is the mean scene duration across the library (shared by all
four types). Dividing by library presence keeps an entity that simply appears
in many scenes from outranking one that is watched in proportion.

Entities are ranked by rate, descending. The first index i of each tie group
out of n gives percentile_rank = round_half_up(100 * (n - i - 1) / max(n - 1, 1)),
so the top entity gets 100, the bottom 0, and ties share a value. A lone
entity gets 0.
"""

import asyncio
import logging
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import numpy as np
from sqlalchemy import delete, insert, select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from peek_catalog.config import get_settings
from peek_catalog.core.errors import InvalidEntityTypeError
from peek_catalog.core.identity import EntityRef
from peek_catalog.db.database import async_session
from peek_catalog.db.models import UserEntityRanking
from peek_catalog.db.schemas import RankingRecord

logger = logging.getLogger(__name__)

RANKED_TYPES = ("performer", "studio", "tag", "scene")

O_COUNT_WEIGHT = 5.0

_WATCH_JOIN = (
    "LEFT JOIN watch_history w ON w.user_id = :user_id "
    "AND w.scene_id = s.id AND w.instance_id = s.stash_instance_id"
)
_SUMS = (
    "COALESCE(SUM(w.play_count), 0) AS play_count, "
    "COALESCE(SUM(w.o_count), 0) AS o_count, "
    "COALESCE(SUM(w.play_duration), 0) AS play_duration"
)
_ENGAGED = "HAVING COALESCE(SUM(w.play_count), 0) > 0 OR COALESCE(SUM(w.o_count), 0) > 0"

# Aggregates per (entity_id, instance_id). library_presence counts the live
# scenes the entity appears in; only entities the user engaged with are ranked.
STATS_QUERIES = {
    "performer": f"""
        SELECT sp.performer_id AS entity_id, sp.instance_id AS instance_id, {_SUMS},
               COUNT(DISTINCT s.id) AS library_presence
        FROM scene_performers sp
        JOIN stash_scenes s ON s.id = sp.scene_id AND s.stash_instance_id = sp.instance_id
            AND s.deleted_at IS NULL
        {_WATCH_JOIN}
        GROUP BY sp.performer_id, sp.instance_id
        {_ENGAGED}
    """,
    "studio": f"""
        SELECT s.studio_id AS entity_id, s.stash_instance_id AS instance_id, {_SUMS},
               COUNT(DISTINCT s.id) AS library_presence
        FROM stash_scenes s
        {_WATCH_JOIN}
        WHERE s.deleted_at IS NULL AND s.studio_id IS NOT NULL
        GROUP BY s.studio_id, s.stash_instance_id
        {_ENGAGED}
    """,
    "tag": f"""
        SELECT st.tag_id AS entity_id, st.instance_id AS instance_id, {_SUMS},
               COUNT(DISTINCT s.id) AS library_presence
        FROM scene_tags st
        JOIN stash_scenes s ON s.id = st.scene_id AND s.stash_instance_id = st.instance_id
            AND s.deleted_at IS NULL
        {_WATCH_JOIN}
        GROUP BY st.tag_id, st.instance_id
        {_ENGAGED}
    """,
    "scene": f"""
        SELECT s.id AS entity_id, s.stash_instance_id AS instance_id, {_SUMS},
               1 AS library_presence
        FROM stash_scenes s
        {_WATCH_JOIN}
        WHERE s.deleted_at IS NULL
        GROUP BY s.id, s.stash_instance_id
        {_ENGAGED}
    """,
}

AVG_DURATION_QUERY = """
    SELECT AVG(duration) FROM stash_scenes
    WHERE deleted_at IS NULL AND duration > 0
"""


def to_int(value: Any) -> int:
    """Exact int from a driver value (int, float with noise, Decimal, None)."""
    if value is None:
        return 0
    if isinstance(value, int):
        return int(value)
    return int(Decimal(str(value)).to_integral_value(rounding=ROUND_HALF_UP))


def compute_percentiles(rates: np.ndarray) -> np.ndarray:
    """Percentile rank (0-100 ints) for each rate; equal rates share a rank."""
    n = len(rates)
    if n == 0:
        return np.zeros(0, dtype=np.int64)

    order = np.argsort(-rates, kind="stable")
    descending = rates[order]
    # First index of each value's tie group in the descending order
    first_index = np.searchsorted(-descending, -descending, side="left")
    ranks_sorted = np.floor(100.0 * (n - first_index - 1) / max(n - 1, 1) + 0.5).astype(np.int64)

    ranks = np.empty(n, dtype=np.int64)
    ranks[order] = ranks_sorted
    return ranks


def compute_rankings(stats: list[dict[str, Any]], avg_duration: float) -> list[RankingRecord]:
    """Score and rank one entity type's aggregated stats."""
    if not stats:
        return []

    play_count = np.array([to_int(s["play_count"]) for s in stats], dtype=np.float64)
    o_count = np.array([to_int(s["o_count"]) for s in stats], dtype=np.float64)
    play_duration = np.array([float(s["play_duration"] or 0) for s in stats], dtype=np.float64)
    presence = np.array([to_int(s["library_presence"]) for s in stats], dtype=np.float64)

    scores = o_count * O_COUNT_WEIGHT + play_duration / avg_duration + play_count
    rates = scores / np.maximum(presence, 1.0)
    percentiles = compute_percentiles(rates)

    records = []
    for i, s in enumerate(stats):
        records.append(RankingRecord(
            entity_id=str(s["entity_id"]),
            instance_id=s.get("instance_id") or "",
            percentile_rank=int(percentiles[i]),
            engagement_score=float(scores[i]),
            engagement_rate=float(rates[i]),
            play_count=to_int(s["play_count"]),
            o_count=to_int(s["o_count"]),
            library_presence=to_int(s["library_presence"]),
        ))
    return records


class RankingComputeService:
    """Recomputes and reads user_entity_rankings."""

    def __init__(self, session_factory: async_sessionmaker | None = None):
        self.session_factory = session_factory or async_session
        self.settings = get_settings()

    async def recompute_all_rankings(self, user_id: int) -> dict[str, int]:
        """Recompute all four types; returns rows written per type.

        Each type runs in its own session and transaction, so a failure in one
        type rolls back only that type (the error still propagates).
        """
        async with self.session_factory() as db:
            avg_duration = await self.get_average_duration(db)

        counts = await asyncio.gather(
            *(self._recompute_type(user_id, t, avg_duration) for t in RANKED_TYPES)
        )
        written = dict(zip(RANKED_TYPES, counts))
        logger.info(f"Recomputed rankings for user {user_id}: {written} (avg_duration={avg_duration:.1f}s)")
        return written

    async def get_average_duration(self, db: AsyncSession) -> float:
        result = await db.execute(text(AVG_DURATION_QUERY))
        value = result.scalar()
        if value is None or float(value) <= 0:
            return self.settings.ranking_default_avg_duration
        return float(value)

    async def _recompute_type(self, user_id: int, entity_type: str, avg_duration: float) -> int:
        async with self.session_factory() as db:
            async with db.begin():
                result = await db.execute(text(STATS_QUERIES[entity_type]), {"user_id": user_id})
                stats = [dict(row) for row in result.mappings().all()]
                records = compute_rankings(stats, avg_duration)

                # Delete and insert in one transaction: readers never see an
                # empty ranking for this type
                await db.execute(
                    delete(UserEntityRanking).where(
                        UserEntityRanking.user_id == user_id,
                        UserEntityRanking.entity_type == entity_type,
                    )
                )
                if records:
                    now = datetime.now(timezone.utc)
                    await db.execute(
                        insert(UserEntityRanking),
                        [
                            {
                                "user_id": user_id,
                                "entity_type": entity_type,
                                "updated_at": now,
                                **record.model_dump(),
                            }
                            for record in records
                        ],
                    )

        logger.debug(f"Ranked {len(records)} {entity_type} entities for user {user_id}")
        return len(records)

    async def get_rankings(
        self, user_id: int, entity_type: str, limit: int | None = None
    ) -> list[RankingRecord]:
        """Stored rankings, best first."""
        if entity_type not in RANKED_TYPES:
            raise InvalidEntityTypeError(entity_type, RANKED_TYPES)

        query = (
            select(UserEntityRanking)
            .where(
                UserEntityRanking.user_id == user_id,
                UserEntityRanking.entity_type == entity_type,
            )
            .order_by(
                UserEntityRanking.percentile_rank.desc(),
                UserEntityRanking.engagement_rate.desc(),
                UserEntityRanking.entity_id,
                UserEntityRanking.instance_id,
            )
        )
        if limit:
            query = query.limit(limit)

        async with self.session_factory() as db:
            result = await db.execute(query)
            rows = result.scalars().all()

        return [
            RankingRecord(
                entity_id=row.entity_id,
                instance_id=row.instance_id or "",
                percentile_rank=row.percentile_rank,
                engagement_score=row.engagement_score,
                engagement_rate=row.engagement_rate,
                play_count=row.play_count,
                o_count=row.o_count,
                library_presence=row.library_presence,
            )
            for row in rows
        ]

    async def get_percentile_map(self, user_id: int, entity_type: str) -> dict[EntityRef, int]:
        """Percentile rank by composite key, for boosting list results."""
        if entity_type not in RANKED_TYPES:
            raise InvalidEntityTypeError(entity_type, RANKED_TYPES)

        async with self.session_factory() as db:
            result = await db.execute(
                select(
                    UserEntityRanking.entity_id,
                    UserEntityRanking.instance_id,
                    UserEntityRanking.percentile_rank,
                ).where(
                    UserEntityRanking.user_id == user_id,
                    UserEntityRanking.entity_type == entity_type,
                )
            )
            return {
                EntityRef(entity_id, instance_id or ""): int(rank)
                for entity_id, instance_id, rank in result.all()
            }
