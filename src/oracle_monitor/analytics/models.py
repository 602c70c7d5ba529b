"""Data models for price aggregation and deviation analytics."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Protocol


class AnalyticsError(Exception):
    """Base exception for analytics errors."""


class InsufficientDataError(AnalyticsError):
    """Raised when too few protocols report a symbol to aggregate it."""

    def __init__(self, symbol: str, available: int, required: int) -> None:
        super().__init__(f"{symbol}: {available} data sources, need at least {required}")
        self.symbol = symbol
        self.available = available
        self.required = required


class OutlierMethod(str, Enum):
    THRESHOLD = "threshold"
    ZSCORE = "zscore"
    IQR = "iqr"


class TrendDirection(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


class PricePoint(Protocol):
    """Minimal observation shape consumed by the aggregator."""

    protocol: str
    chain: str
    symbol: str
    price: float
    timestamp: datetime


@dataclass(frozen=True)
class ProtocolDeviation:
    """How far one protocol's price sits from the cross-protocol consensus."""

    protocol: str
    chain: str
    price: float
    deviation_from_mean: float
    deviation_from_median: float
    is_outlier: bool


@dataclass(frozen=True)
class AggregationResult:
    """Cross-protocol consensus for one symbol at one point in time."""

    symbol: str
    timestamp: datetime
    avg_price: float
    median_price: float
    min_price: float
    max_price: float
    price_range_percent: float
    outlier_protocols: list[str]
    recommended_price: float
    protocol_deviations: list[ProtocolDeviation]
    max_deviation: float
    data_sources: int

    @property
    def prices(self) -> dict[str, float]:
        return {d.protocol: d.price for d in self.protocol_deviations}


@dataclass(frozen=True)
class DeviationPoint:
    """One bucket of deviation history."""

    timestamp: datetime
    symbol: str
    max_deviation: float
    avg_price: float
    median_price: float
    prices: dict[str, float] = field(default_factory=dict)
    outlier_protocols: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class DeviationTrend:
    symbol: str
    trend_direction: TrendDirection
    trend_strength: float
    avg_deviation: float
    max_deviation: float
    volatility: float
    anomaly_score: float
    recommendation: str
    data_points: int = 0


@dataclass(frozen=True)
class SymbolComparison:
    symbol: str
    rank: int
    avg_deviation: float
    stability: float


@dataclass(frozen=True)
class ReportSummary:
    total_symbols: int
    symbols_with_high_deviation: int
    avg_deviation_across_all: float
    most_volatile_symbol: str | None


@dataclass(frozen=True)
class DeviationReport:
    generated_at: datetime
    period_start: datetime
    period_end: datetime
    summary: ReportSummary
    trends: list[DeviationTrend]
    anomalies: list[DeviationPoint]
