"""Offset and keyset pagination over sequence-ordered tables."""

from __future__ import annotations

from dataclasses import dataclass
import enum
import logging
import math
from typing import Any, Callable, Generic, Mapping, Optional, Sequence, TypeVar

from sqlalchemy import ColumnElement, Engine, Table, func, select

from ledger.errors import InvalidPageRequestError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RowFactory = Callable[[Mapping[str, Any]], T]


class SortDirection(str, enum.Enum):
    ASC = "asc"
    DESC = "desc"


@dataclass(frozen=True)
class PaginatedItems(Generic[T]):
    items: list[T]
    total: int
    page: int
    per_page: int
    total_pages: int


@dataclass(frozen=True)
class CursorItems(Generic[T]):
    items: list[T]
    has_next_page: bool
    next_cursor: Optional[str]
    total: int


def _plain_row(row: Mapping[str, Any]) -> Any:
    return dict(row)


def _direction(sort: SortDirection | str) -> SortDirection:
    try:
        return SortDirection(sort)
    except ValueError as exc:
        raise InvalidPageRequestError(f"Unknown sort direction {sort!r}.") from exc


class CursorPager(Generic[T]):
    """Paginate one table by its sequence column.

    Ordering always uses the sequence number, never a timestamp: batch writers
    create many rows within the same clock tick, and only the sequence is a
    strict total order. Filters are opaque equality predicates applied next to
    the pager's own ordering clause.
    """

    def __init__(
        self,
        engine: Engine,
        table: Table,
        *,
        id_column: str = "id",
        seq_column: str = "seq",
        row_factory: RowFactory[T] | None = None,
        max_page_size: int = 100,
    ) -> None:
        if id_column not in table.c or seq_column not in table.c:
            raise InvalidPageRequestError(
                f"Table {table.name} must expose {id_column!r} and {seq_column!r} columns."
            )
        self._engine = engine
        self._table = table
        self._id = table.c[id_column]
        self._seq = table.c[seq_column]
        self._row_factory: RowFactory[Any] = row_factory or _plain_row
        self._max_page_size = max_page_size

    def _filter_clauses(self, filters: Optional[Mapping[str, Any]]) -> list[ColumnElement[bool]]:
        clauses: list[ColumnElement[bool]] = []
        for name, value in (filters or {}).items():
            if name not in self._table.c:
                raise InvalidPageRequestError(f"Unknown filter column {name!r} for table {self._table.name}.")
            column = self._table.c[name]
            if isinstance(value, (list, tuple, set, frozenset)):
                clauses.append(column.in_(list(value)))
            elif value is None:
                clauses.append(column.is_(None))
            else:
                clauses.append(column == value)
        return clauses

    def _check_size(self, name: str, value: int) -> None:
        if value < 1:
            raise InvalidPageRequestError(f"{name} must be >= 1, got {value}.")
        if value > self._max_page_size:
            raise InvalidPageRequestError(f"{name} must be <= {self._max_page_size}, got {value}.")

    def _order_by(self, sort: SortDirection) -> Any:
        return self._seq.asc() if sort is SortDirection.ASC else self._seq.desc()

    def paginate(
        self,
        filters: Optional[Mapping[str, Any]] = None,
        sort: SortDirection | str = SortDirection.DESC,
        page: int = 1,
        per_page: int = 10,
    ) -> PaginatedItems[T]:
        """Offset pagination for bounded result sets."""
        sort = _direction(sort)
        if page < 1:
            raise InvalidPageRequestError(f"page must be >= 1, got {page}.")
        self._check_size("per_page", per_page)
        clauses = self._filter_clauses(filters)

        with self._engine.connect() as conn:
            total = conn.execute(
                select(func.count()).select_from(self._table).where(*clauses)
            ).scalar_one()
            rows = conn.execute(
                select(self._table)
                .where(*clauses)
                .order_by(self._order_by(sort))
                .limit(per_page)
                .offset((page - 1) * per_page)
            ).mappings().all()

        return PaginatedItems(
            items=[self._row_factory(row) for row in rows],
            total=int(total),
            page=page,
            per_page=per_page,
            total_pages=math.ceil(int(total) / per_page),
        )

    def cursor(
        self,
        filters: Optional[Mapping[str, Any]] = None,
        sort: SortDirection | str = SortDirection.DESC,
        cursor: Optional[str] = None,
        limit: int = 10,
        include_cursor: bool = False,
    ) -> CursorItems[T]:
        """Keyset pagination; ``next_cursor`` is the id of the last returned row.

        A cursor that no longer resolves (row deleted) is ignored and the first
        page is returned. ``include_cursor`` keeps the boundary row itself.
        """
        sort = _direction(sort)
        self._check_size("limit", limit)
        clauses = self._filter_clauses(filters)

        with self._engine.connect() as conn:
            if cursor is not None:
                boundary = conn.execute(
                    select(self._seq).where(self._id == cursor)
                ).scalar_one_or_none()
                if boundary is None:
                    logger.debug("Cursor %s on %s did not resolve; serving first page", cursor, self._table.name)
                else:
                    clauses.append(self._boundary_clause(sort, boundary, include_cursor))

            rows = list(
                conn.execute(
                    select(self._table)
                    .where(*clauses)
                    .order_by(self._order_by(sort))
                    .limit(limit + 1)
                ).mappings().all()
            )

        has_next_page = len(rows) > limit
        if has_next_page:
            rows.pop()
        next_cursor = str(rows[-1][self._id.name]) if has_next_page else None

        return CursorItems(
            items=[self._row_factory(row) for row in rows],
            has_next_page=has_next_page,
            next_cursor=next_cursor,
            total=len(rows),
        )

    def _boundary_clause(self, sort: SortDirection, boundary: int, include_cursor: bool) -> ColumnElement[bool]:
        if sort is SortDirection.ASC:
            return self._seq >= boundary if include_cursor else self._seq > boundary
        return self._seq <= boundary if include_cursor else self._seq < boundary

    def iterate(
        self,
        filters: Optional[Mapping[str, Any]] = None,
        sort: SortDirection | str = SortDirection.DESC,
        limit: int = 10,
    ) -> Sequence[T]:
        """Follow ``next_cursor`` until exhausted and return every item."""
        items: list[T] = []
        cursor: Optional[str] = None
        while True:
            page = self.cursor(filters=filters, sort=sort, cursor=cursor, limit=limit)
            items.extend(page.items)
            if not page.has_next_page:
                return items
            cursor = page.next_cursor
