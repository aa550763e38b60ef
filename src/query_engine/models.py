"""
Typed values flowing through the query engine.

Query -> ResolvedIntent (with a TimeRange) -> AggregateResult -> QueryAnswer.
Everything here is request-local and immutable once built.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


@dataclass(frozen=True)
class Query:
    """One inbound question. Never persisted."""
    raw_text: Any
    user_id: str
    received_at: datetime


class TimeRange(BaseModel):
    """Closed-inclusive ``[start, end]`` interval."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    @model_validator(mode="after")
    def _ordered(self) -> "TimeRange":
        if self.start > self.end:
            raise ValueError(f"start {self.start.isoformat()} is after end {self.end.isoformat()}")
        return self

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


class IntentKind(str, Enum):
    VENDOR_SPEND = "VendorSpend"
    CATEGORY_SPEND = "CategorySpend"
    TIME_SPEND = "TimeSpend"
    TOP_MERCHANTS = "TopMerchants"
    ANOMALY = "Anomaly"


class ResolvedIntent(BaseModel):
    """Classified question with every slot resolved to a concrete value."""

    model_config = ConfigDict(frozen=True)

    kind: IntentKind
    timeframe: TimeRange
    vendor: str | None = Field(None, description="Canonical vendor name")
    category: str | None = Field(None, description="Canonical category name")
    top_n: int | None = Field(None, ge=1)
    fallback: bool = Field(False, description="True when no keyword class matched")

    @model_validator(mode="after")
    def _slots_match_kind(self) -> "ResolvedIntent":
        if self.kind is IntentKind.VENDOR_SPEND:
            if not self.vendor or self.category is not None:
                raise ValueError("VendorSpend needs a vendor and no category")
        elif self.kind is IntentKind.CATEGORY_SPEND:
            if not self.category or self.vendor is not None:
                raise ValueError("CategorySpend needs a category and no vendor")
        elif self.vendor is not None or self.category is not None:
            raise ValueError(f"{self.kind.value} takes no vendor or category")
        if self.top_n is not None and self.kind is not IntentKind.TOP_MERCHANTS:
            raise ValueError("top_n only applies to TopMerchants")
        return self


# ── Aggregate results ──────────────────────────────────


class SpendTotal(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["total"] = "total"
    total: Decimal = Decimal("0")


class MerchantTotal(BaseModel):
    model_config = ConfigDict(frozen=True)

    merchant: str
    total: Decimal


class TopMerchantsResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["top_merchants"] = "top_merchants"
    merchants: tuple[MerchantTotal, ...] = ()


class OutlierReason(str, Enum):
    HIGH_AMOUNT = "high_amount"
    NEW_VENDOR = "new_vendor"


class Outlier(BaseModel):
    model_config = ConfigDict(frozen=True)

    merchant: str
    total: Decimal
    purchase_date: datetime
    category: str | None = None
    receipt_id: str | None = None
    reasons: tuple[OutlierReason, ...] = (OutlierReason.HIGH_AMOUNT,)


class AnomalyResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["anomalies"] = "anomalies"
    outliers: tuple[Outlier, ...] = ()
    historical_average: Decimal = Decimal("0")
    threshold: Decimal = Decimal("0")
    multiplier: float = 2.0


AggregateResult = Annotated[
    Union[SpendTotal, TopMerchantsResult, AnomalyResult],
    Field(discriminator="kind"),
]


class QueryAnswer(BaseModel):
    """What the orchestrator hands back: always a message and a data payload."""

    message: str
    data: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    cached: bool = False
    latency_ms: int = 0
    intent: ResolvedIntent | None = None

    @property
    def success(self) -> bool:
        return self.error is None
