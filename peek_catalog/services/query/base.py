"""Shared machinery for the hand-assembled list queries.

A builder accumulates WHERE fragments and JOINs while binding every value
through SqlParams, then renders a main query (sorted, paged) and a count
query (same filters). Only names from the class-level whitelists are ever
formatted into the SQL text.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from peek_catalog.config import get_settings
from peek_catalog.core.hierarchy import HierarchyService
from peek_catalog.core.identity import EntityRef, parse_refs
from peek_catalog.core.sql import SqlParams, and_join, normalize_direction
from peek_catalog.db.schemas import (
    BaseQueryOptions, HierarchicalMultiFilter, IntCriterion, MultiFilter, QueryResult,
)

logger = logging.getLogger(__name__)

MULTI_MODIFIERS = ("INCLUDES", "INCLUDES_ALL", "EXCLUDES")


@dataclass
class QueryParts:
    """Clause accumulator for one build."""

    params: SqlParams = field(default_factory=SqlParams)
    # One-to-one joins needed by the base filters (kept in the fast count)
    base_joins: list[str] = field(default_factory=list)
    base_where: list[str] = field(default_factory=list)
    # Per-user joins (annotations, exclusions) and the filters that use them
    joins: list[str] = field(default_factory=list)
    where: list[str] = field(default_factory=list)
    select_extra: list[str] = field(default_factory=list)
    exclusions_applied: bool = False
    annotation_filters: bool = False
    _alias_seq: int = 0

    def alias(self, prefix: str) -> str:
        """Unique alias for a correlated subquery."""
        self._alias_seq += 1
        return f"{prefix}{self._alias_seq}"


@dataclass
class BuiltQuery:
    sql: str
    params: dict[str, Any]
    count_sql: str
    count_params: dict[str, Any]
    page: int
    per_page: int


def ref_predicate(params: SqlParams, id_col: str, instance_col: str, refs: list[EntityRef]) -> str:
    """Match any of the refs.

    A bare ref matches the id in every instance; a scoped ref matches the
    (id, instance) pair only.
    """
    bare = [r.id for r in refs if not r.instance_id]
    scoped = [r for r in refs if r.instance_id]
    clauses = []
    if bare:
        clauses.append(f"{id_col} IN {params.add_list(bare)}")
    if scoped:
        pairs = ", ".join(f"({params.add(r.id)}, {params.add(r.instance_id)})" for r in scoped)
        clauses.append(f"({id_col}, {instance_col}) IN ({pairs})")
    if not clauses:
        return "FALSE"
    if len(clauses) == 1:
        return clauses[0]
    return "(" + " OR ".join(clauses) + ")"


def int_criterion(params: SqlParams, column: str, criterion: IntCriterion | None) -> str | None:
    """Render a numeric criterion; None when it is malformed or unknown."""
    if criterion is None:
        return None
    modifier = criterion.modifier
    if modifier == "IS_NULL":
        return f"{column} IS NULL"
    if modifier == "NOT_NULL":
        return f"{column} IS NOT NULL"
    if criterion.value is None:
        return None
    if modifier == "EQUALS":
        return f"{column} = {params.add(criterion.value)}"
    if modifier == "NOT_EQUALS":
        return f"{column} <> {params.add(criterion.value)}"
    if modifier == "GREATER_THAN":
        return f"{column} > {params.add(criterion.value)}"
    if modifier == "LESS_THAN":
        return f"{column} < {params.add(criterion.value)}"
    if modifier in ("BETWEEN", "NOT_BETWEEN"):
        if criterion.value2 is None:
            return None
        low, high = sorted((criterion.value, criterion.value2))
        low_p, high_p = params.add(low), params.add(high)
        if modifier == "BETWEEN":
            return f"{column} BETWEEN {low_p} AND {high_p}"
        return f"({column} < {low_p} OR {column} > {high_p})"
    logger.debug(f"Ignoring unknown numeric modifier {modifier!r}")
    return None


class BaseQueryBuilder:
    """Subclasses set the whitelists below and implement apply_filters()."""

    # Exclusion entity type ('scene', 'gallery')
    entity_type: str = ""
    table: str = ""
    alias: str = "x"
    select_columns: tuple[str, ...] = ()
    # Columns searched with LOWER(col) LIKE LOWER(:q)
    search_columns: tuple[str, ...] = ()
    # sort key -> SQL expression
    sort_columns: dict[str, str] = {}
    # Keys whose expression is text (sorted case-insensitively)
    text_sort_keys: frozenset[str] = frozenset()
    # Keys whose expression reads a per-user joined column
    user_sort_keys: frozenset[str] = frozenset()
    default_sort: str = "created_at"
    default_direction: str = "DESC"

    def __init__(self, db: AsyncSession):
        self.db = db
        self.settings = get_settings()
        self.hierarchy = HierarchyService(db)

    # ---- hooks ----

    async def apply_filters(self, options: BaseQueryOptions, parts: QueryParts) -> None:
        raise NotImplementedError

    def search_subqueries(self, pattern: str) -> list[str]:
        """Correlated EXISTS fragments for related-entity names."""
        return []

    def apply_user_joins(self, options: BaseQueryOptions, parts: QueryParts) -> None:
        """Join per-user annotation tables (only called with a user_id)."""

    def null_user_columns(self) -> list[str]:
        """Placeholders selected in place of per-user columns for anonymous queries."""
        return []

    def apply_exclusions(self, options: BaseQueryOptions, parts: QueryParts) -> None:
        """Anti-join the user's exclusion rows for this entity type."""
        a = self.alias
        uid = parts.params.add(options.user_id)
        parts.joins.append(
            f"LEFT JOIN user_excluded_entities e ON e.user_id = {uid} "
            f"AND e.entity_type = '{self.entity_type}' "
            f"AND e.entity_id = {a}.id "
            f"AND (e.instance_id = '' OR e.instance_id = {a}.stash_instance_id)"
        )
        parts.where.append("e.id IS NULL")
        parts.exclusions_applied = True

    # ---- shared clauses ----

    def apply_instance_scope(self, options: BaseQueryOptions, parts: QueryParts) -> None:
        col = f"{self.alias}.stash_instance_id"
        if options.specific_instance_id:
            parts.base_where.append(f"{col} = {parts.params.add(options.specific_instance_id)}")
        elif options.allowed_instance_ids:
            in_list = parts.params.add_list(options.allowed_instance_ids)
            # Rows synced before multi-instance support carry the empty instance id
            parts.base_where.append(f"({col} IN {in_list} OR {col} = '' OR {col} IS NULL)")

    def apply_search(self, options: BaseQueryOptions, parts: QueryParts) -> None:
        q = (options.q or "").strip()
        if not q:
            return
        pattern = parts.params.like(q)
        clauses = [f"LOWER({col}) LIKE LOWER({pattern})" for col in self.search_columns]
        clauses.extend(self.search_subqueries(pattern))
        parts.base_where.append("(" + " OR ".join(clauses) + ")")

    def apply_ids(self, options: BaseQueryOptions, parts: QueryParts) -> None:
        if options.ids is None:
            return
        refs = parse_refs(options.ids)
        a = self.alias
        # An explicit empty id list matches nothing
        parts.base_where.append(ref_predicate(parts.params, f"{a}.id", f"{a}.stash_instance_id", refs))

    def junction_match(
        self,
        parts: QueryParts,
        junction: str,
        owner_col: str,
        related_col: str,
        owner_alias: str | None = None,
    ) -> Callable[[list[EntityRef]], str]:
        """Matcher: owner has a junction row pointing at any of the refs.

        The junction row must come from the owner's instance.
        """
        owner = owner_alias or self.alias

        def match(refs: list[EntityRef]) -> str:
            j = parts.alias("j")
            pred = ref_predicate(parts.params, f"{j}.{related_col}", f"{j}.instance_id", refs)
            return (
                f"EXISTS (SELECT 1 FROM {junction} {j} "
                f"WHERE {j}.{owner_col} = {owner}.id "
                f"AND {j}.instance_id = {owner}.stash_instance_id "
                f"AND {pred})"
            )

        return match

    def column_match(self, parts: QueryParts, column: str, instance_col: str) -> Callable[[list[EntityRef]], str]:
        """Matcher for a single-valued reference column (e.g. studio_id)."""

        def match(refs: list[EntityRef]) -> str:
            return ref_predicate(parts.params, column, instance_col, refs)

        return match

    async def apply_multi(
        self,
        parts: QueryParts,
        flt: MultiFilter | None,
        match: Callable[[list[EntityRef]], str],
        expand: Callable[[list[EntityRef], int], Awaitable[list[EntityRef]]] | None = None,
    ) -> None:
        """Apply an INCLUDES / INCLUDES_ALL / EXCLUDES filter.

        Hierarchical filters expand each ref to its descendants first; with
        INCLUDES_ALL every requested ref (or one of its descendants) must match.
        """
        if flt is None or flt.modifier not in MULTI_MODIFIERS:
            return
        refs = parse_refs(flt.value)
        if not refs:
            return

        depth = flt.depth if isinstance(flt, HierarchicalMultiFilter) else 0
        if flt.modifier == "INCLUDES_ALL":
            groups = [[ref] for ref in refs]
            if expand and depth:
                groups = [await expand(group, depth) for group in groups]
            parts.base_where.append(" AND ".join(match(group) for group in groups))
            return

        if expand and depth:
            refs = await expand(refs, depth)
        clause = match(refs)
        if flt.modifier == "EXCLUDES":
            # IS NOT TRUE keeps rows whose reference column is NULL
            clause = f"NOT {clause}" if clause.startswith("EXISTS") else f"({clause}) IS NOT TRUE"
        parts.base_where.append(clause)

    def apply_bool(self, parts: QueryParts, column: str, value: bool | None, per_user: bool = False) -> None:
        if value is None:
            return
        clause = f"{column} = {parts.params.add(bool(value))}"
        if per_user:
            parts.where.append(clause)
            parts.annotation_filters = True
        else:
            parts.base_where.append(clause)

    def apply_int(self, parts: QueryParts, column: str, criterion: IntCriterion | None, per_user: bool = False) -> None:
        clause = int_criterion(parts.params, column, criterion)
        if clause is None:
            return
        if per_user:
            parts.where.append(clause)
            parts.annotation_filters = True
        else:
            parts.base_where.append(clause)

    # ---- sort & paging ----

    def order_by(self, options: BaseQueryOptions, sort_params: SqlParams) -> str:
        a = self.alias
        key = options.sort_by if options.sort_by in self.sort_columns else self.default_sort
        if key in self.user_sort_keys and options.user_id is None:
            key = self.default_sort
        direction = normalize_direction(options.sort_dir, self.default_direction)
        tie_breaker = f"{a}.id ASC, {a}.stash_instance_id ASC"

        if key == "random":
            seed = sort_params.add(str(options.random_seed if options.random_seed is not None else 0))
            return (
                f"md5({a}.id || '/' || COALESCE({a}.stash_instance_id, '') || '/' || {seed}) ASC, "
                f"{tie_breaker}"
            )

        expr = self.sort_columns[key]
        if key in self.text_sort_keys:
            expr = f"LOWER({expr})"
        return f"{expr} {direction} NULLS LAST, {tie_breaker}"

    def paging(self, options: BaseQueryOptions) -> tuple[int, int]:
        page = max(options.page or 1, 1)
        per_page = options.per_page
        if per_page is None:
            per_page = self.settings.query_default_per_page
        per_page = min(max(per_page, 1), self.settings.query_max_per_page)
        return page, per_page

    # ---- build & execute ----

    async def build(self, options: BaseQueryOptions) -> BuiltQuery:
        a = self.alias
        parts = QueryParts()
        parts.base_where.append(f"{a}.deleted_at IS NULL")

        self.apply_instance_scope(options, parts)
        self.apply_ids(options, parts)
        self.apply_search(options, parts)

        if options.user_id is not None:
            self.apply_user_joins(options, parts)
        else:
            parts.select_extra.extend(self.null_user_columns())

        await self.apply_filters(options, parts)

        if options.apply_exclusions and options.user_id is not None:
            self.apply_exclusions(options, parts)

        sort_params = SqlParams("s")
        order_by = self.order_by(options, sort_params)
        page, per_page = self.paging(options)

        from_clause = " ".join([f"{self.table} {a}", *parts.base_joins])
        full_from = " ".join([from_clause, *parts.joins])
        where_sql = and_join(parts.base_where + parts.where)
        columns = ", ".join([*self.select_columns, *parts.select_extra])

        sql = (
            f"SELECT {columns} FROM {full_from} "
            f"WHERE {where_sql} "
            f"ORDER BY {order_by} "
            f"LIMIT :limit OFFSET :offset"
        )

        if not parts.exclusions_applied and not parts.annotation_filters:
            # Per-user joins are one-to-one and unfiltered here, so the base
            # table alone gives the same count
            count_sql = f"SELECT COUNT(*) FROM {from_clause} WHERE {and_join(parts.base_where)}"
        else:
            count_sql = (
                f"SELECT COUNT(DISTINCT ({a}.id, {a}.stash_instance_id)) "
                f"FROM {full_from} WHERE {where_sql}"
            )

        count_params = parts.params.values
        params = {**count_params, **sort_params.values, "limit": per_page, "offset": (page - 1) * per_page}
        return BuiltQuery(sql, params, count_sql, count_params, page, per_page)

    async def execute(self, options: BaseQueryOptions) -> QueryResult:
        built = await self.build(options)

        result = await self.db.execute(text(built.sql), built.params)
        items = [self.to_item(row) for row in result.mappings().all()]

        count_result = await self.db.execute(text(built.count_sql), built.count_params)
        total = int(count_result.scalar_one() or 0)

        logger.debug(
            f"{type(self).__name__}: {len(items)} items, total={total}, "
            f"page={built.page}, per_page={built.per_page}"
        )
        return QueryResult(items=items, total=total)

    def to_item(self, row) -> dict[str, Any]:
        item = dict(row)
        item["instance_id"] = item.get("stash_instance_id") or ""
        return item
