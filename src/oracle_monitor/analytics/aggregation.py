"""Cross-protocol price aggregation and outlier detection."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

import numpy as np

from oracle_monitor.analytics.models import (
    AggregationResult,
    InsufficientDataError,
    OutlierMethod,
    PricePoint,
    ProtocolDeviation,
)

if TYPE_CHECKING:
    from oracle_monitor.config import AggregationSettings

logger = logging.getLogger(__name__)

IQR_MULTIPLIER = 1.5
IQR_MIN_POINTS = 4


@dataclass(frozen=True)
class AggregationConfig:
    min_data_sources: int = 2
    outlier_method: OutlierMethod = OutlierMethod.ZSCORE
    # Relative distance from the median for the threshold method.
    outlier_threshold: float = 0.02
    zscore_threshold: float = 2.0

    @classmethod
    def from_settings(cls, settings: AggregationSettings) -> AggregationConfig:
        return cls(
            min_data_sources=settings.min_data_sources,
            outlier_method=OutlierMethod(settings.outlier_method),
            outlier_threshold=settings.outlier_threshold,
        )


def _relative(value: float, reference: float) -> float:
    if reference == 0:
        return 0.0
    return abs(value - reference) / reference


def latest_per_protocol(observations: Iterable[PricePoint]) -> list[PricePoint]:
    """Keep the newest observation of each protocol, ordered by protocol."""
    latest: dict[str, PricePoint] = {}
    for obs in observations:
        current = latest.get(obs.protocol)
        if current is None or obs.timestamp >= current.timestamp:
            latest[obs.protocol] = obs
    return [latest[p] for p in sorted(latest)]


def find_outliers(
    prices: np.ndarray,
    *,
    method: OutlierMethod,
    threshold: float = 0.02,
    zscore_threshold: float = 2.0,
) -> np.ndarray:
    """Boolean mask of outlying prices."""
    if prices.size == 0:
        return np.zeros(0, dtype=bool)

    if method == OutlierMethod.THRESHOLD:
        median = float(np.median(prices))
        if median == 0:
            return np.zeros(prices.size, dtype=bool)
        return np.abs(prices - median) / median > threshold

    if method == OutlierMethod.ZSCORE:
        std = float(np.std(prices))
        if std == 0:
            return np.zeros(prices.size, dtype=bool)
        return np.abs(prices - float(np.mean(prices))) / std > zscore_threshold

    if prices.size < IQR_MIN_POINTS:
        return np.zeros(prices.size, dtype=bool)
    q1, q3 = np.percentile(prices, [25, 75])
    iqr = q3 - q1
    return (prices < q1 - IQR_MULTIPLIER * iqr) | (prices > q3 + IQR_MULTIPLIER * iqr)


class PriceAggregator:
    """Builds a consensus price for a symbol from several protocols.

    The recommended price is the median, which one misbehaving protocol
    cannot drag outside the range of honest reports.

    Example:
        ```python
        aggregator = PriceAggregator(AggregationConfig(min_data_sources=2))
        result = aggregator.aggregate("ETH/USD", observations)
        print(result.recommended_price, result.outlier_protocols)
        ```
    """

    def __init__(self, config: AggregationConfig | None = None) -> None:
        self._config = config or AggregationConfig()

    @property
    def config(self) -> AggregationConfig:
        return self._config

    def aggregate(
        self,
        symbol: str,
        observations: Iterable[PricePoint],
        *,
        timestamp: datetime | None = None,
    ) -> AggregationResult:
        """Aggregate the latest observation of each protocol.

        Raises:
            InsufficientDataError: Fewer than ``min_data_sources`` protocols.
        """
        latest = [obs for obs in latest_per_protocol(observations) if obs.price > 0]
        if len(latest) < self._config.min_data_sources:
            raise InsufficientDataError(symbol, len(latest), self._config.min_data_sources)

        prices = np.array([obs.price for obs in latest], dtype=float)
        mean = float(prices.mean())
        median = float(np.median(prices))
        low = float(prices.min())
        high = float(prices.max())

        mask = find_outliers(
            prices,
            method=self._config.outlier_method,
            threshold=self._config.outlier_threshold,
            zscore_threshold=self._config.zscore_threshold,
        )

        deviations = [
            ProtocolDeviation(
                protocol=obs.protocol,
                chain=obs.chain,
                price=obs.price,
                deviation_from_mean=_relative(obs.price, mean),
                deviation_from_median=_relative(obs.price, median),
                is_outlier=bool(flag),
            )
            for obs, flag in zip(latest, mask, strict=True)
        ]
        outliers = [d.protocol for d in deviations if d.is_outlier]
        if outliers:
            logger.debug("%s outlier protocols: %s", symbol, ", ".join(outliers))

        return AggregationResult(
            symbol=symbol,
            timestamp=timestamp or max(obs.timestamp for obs in latest),
            avg_price=mean,
            median_price=median,
            min_price=low,
            max_price=high,
            price_range_percent=(high - low) / mean if mean else 0.0,
            outlier_protocols=outliers,
            recommended_price=median,
            protocol_deviations=deviations,
            max_deviation=max(d.deviation_from_median for d in deviations),
            data_sources=len(latest),
        )
