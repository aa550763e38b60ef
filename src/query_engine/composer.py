"""
Response composer -- renders (intent, result) into one deterministic sentence.

Pure templates, no LLM: the same pair always produces the same text, and
zero totals use the same template as non-zero ones.  Amounts are rendered
with a ``$`` prefix and exactly two decimals.
"""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from src.query_engine.models import (
    AnomalyResult,
    IntentKind,
    Outlier,
    OutlierReason,
    ResolvedIntent,
    SpendTotal,
    TopMerchantsResult,
)
from src.query_engine.timeframe import describe

DATA_UNAVAILABLE_MESSAGE = "Sorry, I couldn't retrieve your data right now. Please try again in a moment."
INVALID_INPUT_MESSAGE = (
    "I didn't catch a question there. Try something like "
    "\"How much did I spend at Starbucks last month?\""
)

_CENT = Decimal("0.01")


def format_money(amount: Any) -> str:
    """``Decimal('1234.5')`` → ``'$1,234.50'``."""
    value = Decimal(str(amount or 0)).quantize(_CENT, rounding=ROUND_HALF_UP)
    return f"${value:,.2f}"


def _display(name: str) -> str:
    return " ".join(word[:1].upper() + word[1:] for word in name.split())


# ── Templates ────────────────────────────────────────────


def _compose_total(intent: ResolvedIntent, result: SpendTotal) -> str:
    when = describe(intent.timeframe)
    amount = format_money(result.total)
    if intent.kind is IntentKind.VENDOR_SPEND:
        return f"You spent {amount} at {_display(intent.vendor)} {when}."
    if intent.kind is IntentKind.CATEGORY_SPEND:
        return f"You spent {amount} on {intent.category} {when}."
    return f"You spent {amount} in total {when}."


def _compose_top(intent: ResolvedIntent, result: TopMerchantsResult) -> str:
    when = describe(intent.timeframe)
    n = intent.top_n or len(result.merchants)
    if not result.merchants:
        return f"Your top {n} merchants {when}: none."
    ranked = ", ".join(
        f"{i}. {m.merchant} ({format_money(m.total)})"
        for i, m in enumerate(result.merchants, start=1)
    )
    return f"Your top {n} merchants {when}: {ranked}."


def _compose_anomalies(intent: ResolvedIntent, result: AnomalyResult) -> str:
    when = describe(intent.timeframe)
    count = len(result.outliers)
    noun = "purchase" if count == 1 else "purchases"
    basis = f"more than {result.multiplier:g}x your average of {format_money(result.historical_average)}"
    if any(OutlierReason.NEW_VENDOR in o.reasons for o in result.outliers):
        basis += ", or at a new merchant"
    head = f"Found {count} unusual {noun} {when} ({basis})"
    if not result.outliers:
        return f"{head}."
    items = ", ".join(_describe_outlier(o) for o in result.outliers)
    return f"{head}: {items}."


def _describe_outlier(outlier: Outlier) -> str:
    text = f"{outlier.merchant} {format_money(outlier.total)} on {outlier.purchase_date:%b} {outlier.purchase_date.day}"
    if OutlierReason.NEW_VENDOR in outlier.reasons:
        text += " (new merchant)"
    return text


# ── Public API ───────────────────────────────────────────


def compose(intent: ResolvedIntent, result: Any) -> str:
    """Render the answer sentence for *intent* and its aggregate *result*."""
    if isinstance(result, TopMerchantsResult):
        return _compose_top(intent, result)
    if isinstance(result, AnomalyResult):
        return _compose_anomalies(intent, result)
    if isinstance(result, SpendTotal):
        return _compose_total(intent, result)
    raise TypeError(f"Cannot compose an answer for {type(result).__name__}")
