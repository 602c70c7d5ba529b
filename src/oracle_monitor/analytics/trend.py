"""Deviation history, trend classification and reporting.

Deviation history is built by bucketing observations in time and
aggregating each bucket across protocols. Trends are fitted with a
Theil-Sen estimator (median of pairwise slopes), which tolerates the
occasional spike far better than least squares.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import numpy as np

from oracle_monitor.analytics.aggregation import PriceAggregator
from oracle_monitor.analytics.models import (
    DeviationPoint,
    DeviationReport,
    DeviationTrend,
    InsufficientDataError,
    PricePoint,
    ReportSummary,
    SymbolComparison,
    TrendDirection,
)
from oracle_monitor.scheduler import SYSTEM_CLOCK, Clock
from oracle_monitor.storage.repos import PriceObservationRepository

if TYPE_CHECKING:
    from oracle_monitor.config import AggregationSettings
    from oracle_monitor.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

TREND_CHANGE_THRESHOLD = 0.1
STRONG_TREND = 0.5
HIGH_ANOMALY = 0.7
MODERATE_ANOMALY = 0.4
VERY_HIGH_DEVIATION = 0.05
ELEVATED_DEVIATION = 0.01
MAX_REPORT_ANOMALIES = 50
INSUFFICIENT_DATA = "Insufficient data for analysis"


@dataclass(frozen=True)
class TrendConfig:
    analysis_window_hours: int = 24
    deviation_threshold: float = 0.01
    min_data_points: int = 10
    bucket_seconds: int = 60

    @classmethod
    def from_settings(cls, settings: AggregationSettings) -> TrendConfig:
        return cls(
            analysis_window_hours=settings.analysis_window_hours,
            deviation_threshold=settings.deviation_threshold,
            min_data_points=settings.min_data_points,
        )


def theil_sen_slope(values: Sequence[float]) -> float:
    """Median of the slopes between every pair of points."""
    y = np.asarray(values, dtype=float)
    if y.size < 2:
        return 0.0
    i, j = np.triu_indices(y.size, k=1)
    return float(np.median((y[j] - y[i]) / (j - i)))


def trend_direction(values: Sequence[float]) -> TrendDirection:
    """Classify by the robust slope's total change over the window, relative to the mean."""
    if len(values) < 2:
        return TrendDirection.STABLE
    slope = theil_sen_slope(values)
    mean = float(np.mean(values))
    if mean == 0:
        return TrendDirection.STABLE
    change = slope * (len(values) - 1) / mean
    if change > TREND_CHANGE_THRESHOLD:
        return TrendDirection.INCREASING
    if change < -TREND_CHANGE_THRESHOLD:
        return TrendDirection.DECREASING
    return TrendDirection.STABLE


def trend_strength(values: Sequence[float]) -> float:
    """Robust slope normalised by 10% of the mean, clamped to [0, 1]."""
    mean = float(np.mean(values)) if len(values) else 0.0
    if len(values) < 2 or mean == 0:
        return 0.0
    return min(abs(theil_sen_slope(values)) / (0.1 * mean), 1.0)


def build_recommendation(
    direction: TrendDirection,
    strength: float,
    avg_deviation: float,
    anomaly_score: float,
) -> str:
    parts: list[str] = []
    if anomaly_score > HIGH_ANOMALY:
        parts.append("High anomaly detected. Investigate data sources immediately.")
    elif anomaly_score > MODERATE_ANOMALY:
        parts.append("Moderate anomalies observed. Monitor closely.")

    if direction == TrendDirection.INCREASING and strength > STRONG_TREND:
        parts.append("Deviation trend is increasing significantly.")

    if avg_deviation > VERY_HIGH_DEVIATION:
        parts.append("Average deviation is very high (>5%).")
    elif avg_deviation > ELEVATED_DEVIATION:
        parts.append("Average deviation is elevated (>1%).")

    if not parts:
        return "Price deviation is within normal ranges."
    return " ".join(parts)


class DeviationAnalyzer:
    """Analyzes cross-protocol deviation over time.

    The pure methods (``build_history``, ``analyze_trend``,
    ``detect_anomalies``, ``compare_symbols``, ``generate_report``) work on
    data already in memory. With a database attached, ``history_for`` and
    ``report`` load the analysis window themselves.
    """

    def __init__(
        self,
        config: TrendConfig | None = None,
        *,
        aggregator: PriceAggregator | None = None,
        db: DatabaseManager | None = None,
        clock: Clock = SYSTEM_CLOCK,
    ) -> None:
        self._config = config or TrendConfig()
        self._aggregator = aggregator or PriceAggregator()
        self._db = db
        self._clock = clock

    @property
    def config(self) -> TrendConfig:
        return self._config

    def build_history(
        self,
        symbol: str,
        observations: Iterable[PricePoint],
        *,
        bucket_seconds: int | None = None,
    ) -> list[DeviationPoint]:
        """Bucket observations in time and aggregate each bucket.

        Buckets with too few protocols are skipped. Points are returned
        oldest first.
        """
        width = bucket_seconds or self._config.bucket_seconds
        if width <= 0:
            raise ValueError("bucket_seconds must be > 0")

        buckets: dict[int, list[PricePoint]] = defaultdict(list)
        for obs in observations:
            buckets[int(obs.timestamp.timestamp()) // width].append(obs)

        points: list[DeviationPoint] = []
        for key in sorted(buckets):
            bucket = buckets[key]
            try:
                result = self._aggregator.aggregate(symbol, bucket)
            except InsufficientDataError:
                continue
            points.append(
                DeviationPoint(
                    timestamp=result.timestamp,
                    symbol=symbol,
                    max_deviation=result.max_deviation,
                    avg_price=result.avg_price,
                    median_price=result.median_price,
                    prices=result.prices,
                    outlier_protocols=list(result.outlier_protocols),
                )
            )
        return points

    def analyze_trend(self, symbol: str, points: Sequence[DeviationPoint]) -> DeviationTrend:
        if len(points) < self._config.min_data_points:
            return DeviationTrend(
                symbol=symbol,
                trend_direction=TrendDirection.STABLE,
                trend_strength=0.0,
                avg_deviation=0.0,
                max_deviation=0.0,
                volatility=0.0,
                anomaly_score=0.0,
                recommendation=INSUFFICIENT_DATA,
                data_points=len(points),
            )

        deviations = [p.max_deviation for p in points]
        values = np.asarray(deviations, dtype=float)
        avg = float(values.mean())
        direction = trend_direction(deviations)
        strength = trend_strength(deviations)
        anomaly = self._anomaly_score(points)

        return DeviationTrend(
            symbol=symbol,
            trend_direction=direction,
            trend_strength=strength,
            avg_deviation=avg,
            max_deviation=float(values.max()),
            volatility=float(values.std()),
            anomaly_score=anomaly,
            recommendation=build_recommendation(direction, strength, avg, anomaly),
            data_points=len(points),
        )

    def detect_anomalies(self, points: Sequence[DeviationPoint]) -> list[DeviationPoint]:
        """Points beyond mean + 2 sigma or above the deviation threshold, newest first."""
        if not points:
            return []
        values = np.asarray([p.max_deviation for p in points], dtype=float)
        sigma_limit = float(values.mean() + 2 * values.std())
        anomalies = [
            p
            for p in points
            if p.max_deviation > sigma_limit or p.max_deviation > self._config.deviation_threshold
        ]
        return sorted(anomalies, key=lambda p: p.timestamp, reverse=True)

    def compare_symbols(self, trends: Iterable[DeviationTrend]) -> list[SymbolComparison]:
        """Rank symbols from least to most deviating."""
        ordered = sorted(trends, key=lambda t: t.avg_deviation)
        return [
            SymbolComparison(
                symbol=t.symbol,
                rank=rank,
                avg_deviation=t.avg_deviation,
                stability=1.0 / (1.0 + t.volatility),
            )
            for rank, t in enumerate(ordered, start=1)
        ]

    def generate_report(
        self,
        histories: dict[str, Sequence[DeviationPoint]],
        *,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
    ) -> DeviationReport:
        end = period_end or self._clock.now()
        start = period_start or end - timedelta(hours=self._config.analysis_window_hours)

        trends: list[DeviationTrend] = []
        anomalies: list[DeviationPoint] = []
        most_volatile: str | None = None
        max_volatility = 0.0
        for symbol, points in histories.items():
            trend = self.analyze_trend(symbol, points)
            trends.append(trend)
            if trend.volatility > max_volatility:
                max_volatility = trend.volatility
                most_volatile = symbol
            anomalies.extend(self.detect_anomalies(points))

        high = sum(1 for t in trends if t.avg_deviation > self._config.deviation_threshold)
        summary = ReportSummary(
            total_symbols=len(histories),
            symbols_with_high_deviation=high,
            avg_deviation_across_all=(
                float(np.mean([t.avg_deviation for t in trends])) if trends else 0.0
            ),
            most_volatile_symbol=most_volatile,
        )
        return DeviationReport(
            generated_at=self._clock.now(),
            period_start=start,
            period_end=end,
            summary=summary,
            trends=trends,
            anomalies=anomalies[:MAX_REPORT_ANOMALIES],
        )

    async def history_for(self, symbol: str) -> list[DeviationPoint]:
        """Load the analysis window for ``symbol`` and build its history."""
        db = self._require_db()
        since = self._clock.now() - timedelta(hours=self._config.analysis_window_hours)
        async with db.get_async_session() as session:
            observations = await PriceObservationRepository(session).list_for_symbol(symbol, since=since)
        return self.build_history(symbol, observations)

    async def report(self, symbols: Sequence[str] | None = None) -> DeviationReport:
        """Report over ``symbols``, or every symbol seen in the last hour."""
        db = self._require_db()
        now = self._clock.now()
        if symbols is None:
            async with db.get_async_session() as session:
                symbols = await PriceObservationRepository(session).list_symbols(
                    since=now - timedelta(hours=1)
                )
        histories = {symbol: await self.history_for(symbol) for symbol in symbols}
        return self.generate_report(histories, period_end=now)

    def _anomaly_score(self, points: Sequence[DeviationPoint]) -> float:
        if not points:
            return 0.0
        n = len(points)
        outlier_ratio = sum(1 for p in points if p.outlier_protocols) / n
        high_ratio = sum(1 for p in points if p.max_deviation > self._config.deviation_threshold) / n
        return min((outlier_ratio + high_ratio) / 2, 1.0)

    def _require_db(self) -> DatabaseManager:
        if self._db is None:
            raise RuntimeError("DeviationAnalyzer has no database attached")
        return self._db
