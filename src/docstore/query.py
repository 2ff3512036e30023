"""Statement builders for filtered, paginated reads.

Predicates are SQL fragments over the document table's columns, written by
the repository author, with named bind parameters::

    repo.query("data->>'name' = :name", {"name": "Ada"}, limit=20)
    repo.query("id IN :ids", {"ids": [a, b, c]})       # list/tuple → expanding IN

Never format caller input into the predicate text; pass it as a parameter.

The total-count statement returns a page and the number of all matching rows
in a single round trip::

    WITH base_query AS (SELECT … FROM <table> WHERE <predicate>)
    SELECT page.*, counts.total_count
    FROM (SELECT count(*) AS total_count FROM base_query) AS counts
    LEFT OUTER JOIN (SELECT … FROM base_query ORDER BY … LIMIT … OFFSET …) AS page
        ON true
    ORDER BY …

The count side always yields exactly one row, so an empty page still comes
back as one row whose entity columns are NULL.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from sqlalchemy import (
    ColumnElement,
    FromClause,
    Select,
    Table,
    TextClause,
    bindparam,
    func,
    literal_column,
    select,
    text,
    true,
)

from docstore.codec import TOTAL_COUNT
from docstore.schema import COLUMNS, CREATED_AT, ID

OrderBy = str | ColumnElement[Any]


def bind_predicate(predicate: str, params: Mapping[str, Any] | None = None) -> TextClause:
    """Build a WHERE fragment from *predicate*, binding *params* by name.

    List and tuple values are bound as expanding parameters, so ``IN :ids``
    becomes ``IN (?, ?, …)`` with one placeholder per element.
    """
    clause = text(predicate)
    if not params:
        return clause
    return clause.bindparams(
        *[
            bindparam(name, value, expanding=isinstance(value, (list, tuple)))
            for name, value in params.items()
        ]
    )


def _resolve_order(source: FromClause, order_by: OrderBy | None) -> ColumnElement[Any]:
    if order_by is None:
        return source.c[CREATED_AT]
    if isinstance(order_by, str):
        if order_by in source.c:
            return source.c[order_by]
        return literal_column(order_by)
    name = getattr(order_by, "name", None)
    if isinstance(name, str) and name in source.c and getattr(order_by, "table", None) is not None:
        return source.c[name]
    return order_by


def _ordering(source: FromClause, order_by: OrderBy | None, order_desc: bool) -> list[ColumnElement[Any]]:
    """The requested ordering, with ``id`` as tie-breaker so pages are stable."""
    primary = _resolve_order(source, order_by)
    tie_breaker = source.c[ID]
    if order_desc:
        return [primary.desc(), tie_breaker.desc()]
    return [primary.asc(), tie_breaker.asc()]


def _filtered(table: Table, predicate: str | None, params: Mapping[str, Any] | None) -> Select[Any]:
    statement = select(*[table.c[name] for name in COLUMNS])
    if predicate:
        statement = statement.where(bind_predicate(predicate, params))
    return statement


def build_select(
    table: Table,
    predicate: str | None = None,
    params: Mapping[str, Any] | None = None,
    *,
    limit: int | None = None,
    offset: int | None = None,
    order_by: OrderBy | None = None,
    order_desc: bool = False,
    for_update: bool = False,
) -> Select[Any]:
    """SELECT of the rows matching *predicate*, ordered and paginated."""
    statement = _filtered(table, predicate, params).order_by(*_ordering(table, order_by, order_desc))
    if limit is not None:
        statement = statement.limit(limit)
    if offset is not None:
        statement = statement.offset(offset)
    if for_update:
        statement = statement.with_for_update()
    return statement


def build_count_select(
    table: Table,
    predicate: str | None = None,
    params: Mapping[str, Any] | None = None,
    *,
    limit: int | None = None,
    offset: int | None = None,
    order_by: OrderBy | None = None,
    order_desc: bool = False,
) -> Select[Any]:
    """Page of matching rows plus a ``total_count`` column, in one statement."""
    base = _filtered(table, predicate, params).cte("base_query")

    page_select = select(base).order_by(*_ordering(base, order_by, order_desc))
    if limit is not None:
        page_select = page_select.limit(limit)
    if offset is not None:
        page_select = page_select.offset(offset)
    page = page_select.subquery("page")

    counts = select(func.count().label(TOTAL_COUNT)).select_from(base).subquery("counts")

    return (
        select(*[page.c[name] for name in COLUMNS], counts.c[TOTAL_COUNT])
        .select_from(counts.outerjoin(page, true()))
        .order_by(*_ordering(page, order_by, order_desc))
    )


__all__ = ["OrderBy", "bind_predicate", "build_select", "build_count_select"]
