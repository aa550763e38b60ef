"""
Receipt store -- the three read operations the aggregation executor needs.

  aggregate_sum(filter)      -> Decimal
  group_by_merchant(filter)  -> [{"merchant": str, "total": Decimal}, ...]
  find_many(filter)          -> [ReceiptRecord, ...]

`SqlReceiptStore` implements them with SQLAlchemy Core over the
``receipts`` table; anything else exposing the same methods (see
`ReceiptStore`) can be handed to the executor instead.
"""
from __future__ import annotations

import decimal
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import and_, desc, func, literal, or_, select
from sqlalchemy.engine import Engine
from sqlalchemy.sql.elements import ColumnElement

from src.db.connection import readonly_connection
from src.db.schema import receipts
from src.core.logging import get_logger

logger = get_logger(__name__)

_ZERO = decimal.Decimal("0")


@dataclass(frozen=True)
class ReceiptFilter:
    """Scope of one store call.

    ``user_id`` and the purchase-date window are always applied.  A receipt
    passes the text filter when any of these holds:

    - its merchant contains one of ``merchant_any`` (case-insensitive substring)
    - its category contains one of ``category_any`` (case-insensitive substring)
    - it has no category and its merchant contains one of
      ``uncategorized_merchant_any`` as whole words

    All three empty means no text filter.
    """
    user_id: str
    start: datetime
    end: datetime
    end_inclusive: bool = True
    merchant_any: tuple[str, ...] = ()
    category_any: tuple[str, ...] = ()
    uncategorized_merchant_any: tuple[str, ...] = ()


@dataclass(frozen=True)
class ReceiptRecord:
    id: str
    user_id: str
    merchant: str
    category: str | None
    total: decimal.Decimal
    purchase_date: datetime
    currency: str = "USD"


class ReceiptStore(Protocol):
    def aggregate_sum(self, flt: ReceiptFilter) -> decimal.Decimal: ...

    def group_by_merchant(self, flt: ReceiptFilter, limit: int | None = None) -> list[dict[str, Any]]: ...

    def find_many(self, flt: ReceiptFilter, limit: int | None = None) -> list[ReceiptRecord]: ...


def _to_decimal(val: Any) -> decimal.Decimal:
    if val is None:
        return _ZERO
    if isinstance(val, decimal.Decimal):
        return val
    return decimal.Decimal(str(val))


def _contains_ci(column: Any, needle: str) -> ColumnElement[bool]:
    return func.lower(column).contains(needle.lower(), autoescape=True)


# punctuation treated as a word separator when matching merchant fragments
_SEPARATORS = "-.,#/&'+*():"


def _word_text(text: str) -> str:
    text = text.lower()
    for ch in _SEPARATORS:
        text = text.replace(ch, " ")
    return text.strip()


def _contains_word(column: Any, fragment: str) -> ColumnElement[bool]:
    """True when *fragment* appears in *column* as whole words.

    Both sides are lower-cased, punctuation becomes spaces and the column is
    space-padded, so ``shell`` matches "Shell #204" but not "Shellfish Shack".
    """
    expr = func.lower(column)
    for ch in _SEPARATORS:
        expr = func.replace(expr, ch, " ")
    padded = literal(" ").concat(expr).concat(" ")
    return padded.contains(f" {_word_text(fragment)} ", autoescape=True)


def build_where(flt: ReceiptFilter) -> ColumnElement[bool]:
    """Translate a ReceiptFilter into a SQLAlchemy WHERE clause."""
    c = receipts.c
    end_clause = c.purchase_date <= flt.end if flt.end_inclusive else c.purchase_date < flt.end
    parts: list[ColumnElement[bool]] = [c.user_id == flt.user_id, c.purchase_date >= flt.start, end_clause]

    text_match = [_contains_ci(c.merchant, v) for v in flt.merchant_any if v]
    text_match += [_contains_ci(c.category, v) for v in flt.category_any if v]
    fragments = [_contains_word(c.merchant, v) for v in flt.uncategorized_merchant_any if _word_text(v)]
    if fragments:
        text_match.append(and_(c.category.is_(None), or_(*fragments)))
    if text_match:
        parts.append(or_(*text_match))
    return and_(*parts)


class SqlReceiptStore:
    """ReceiptStore backed by a SQLAlchemy engine.

    Parameters
    ----------
    engine : Engine
        Any SQLAlchemy engine holding a ``receipts`` table.
    statement_timeout_ms : int, optional
        Per-statement timeout applied on Postgres.
    """

    def __init__(self, engine: Engine, statement_timeout_ms: int | None = None):
        self._engine = engine
        self._timeout_ms = statement_timeout_ms

    def aggregate_sum(self, flt: ReceiptFilter) -> decimal.Decimal:
        stmt = select(func.sum(receipts.c.total)).where(build_where(flt))
        with readonly_connection(self._engine, self._timeout_ms) as conn:
            total = conn.execute(stmt).scalar()
        logger.debug("aggregate_sum user=%s -> %s", flt.user_id, total)
        return _to_decimal(total)

    def group_by_merchant(self, flt: ReceiptFilter, limit: int | None = None) -> list[dict[str, Any]]:
        merchant_key = func.lower(receipts.c.merchant)
        total = func.sum(receipts.c.total).label("total")
        stmt = (
            select(func.min(receipts.c.merchant).label("merchant"), total)
            .where(build_where(flt))
            .group_by(merchant_key)
            .order_by(desc("total"), merchant_key)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        with readonly_connection(self._engine, self._timeout_ms) as conn:
            rows = conn.execute(stmt).all()
        return [{"merchant": row.merchant, "total": _to_decimal(row.total)} for row in rows]

    def find_many(self, flt: ReceiptFilter, limit: int | None = None) -> list[ReceiptRecord]:
        stmt = (
            select(receipts)
            .where(build_where(flt))
            .order_by(receipts.c.total.desc(), receipts.c.purchase_date.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        with readonly_connection(self._engine, self._timeout_ms) as conn:
            rows = conn.execute(stmt).mappings().all()
        logger.debug("find_many user=%s -> %d rows", flt.user_id, len(rows))
        return [
            ReceiptRecord(
                id=str(row["id"]),
                user_id=row["user_id"],
                merchant=row["merchant"],
                category=row["category"],
                total=_to_decimal(row["total"]),
                purchase_date=row["purchase_date"],
                currency=row["currency"] or "USD",
            )
            for row in rows
        ]
