"""Analytics - cross-protocol aggregation and deviation trends."""

from oracle_monitor.analytics.aggregation import (
    AggregationConfig,
    PriceAggregator,
    find_outliers,
    latest_per_protocol,
)
from oracle_monitor.analytics.models import (
    AggregationResult,
    AnalyticsError,
    DeviationPoint,
    DeviationReport,
    DeviationTrend,
    InsufficientDataError,
    OutlierMethod,
    ProtocolDeviation,
    ReportSummary,
    SymbolComparison,
    TrendDirection,
)
from oracle_monitor.analytics.trend import (
    DeviationAnalyzer,
    TrendConfig,
    build_recommendation,
    theil_sen_slope,
    trend_direction,
    trend_strength,
)

__all__ = [
    "AggregationConfig",
    "AggregationResult",
    "AnalyticsError",
    "DeviationAnalyzer",
    "DeviationPoint",
    "DeviationReport",
    "DeviationTrend",
    "InsufficientDataError",
    "OutlierMethod",
    "PriceAggregator",
    "ProtocolDeviation",
    "ReportSummary",
    "SymbolComparison",
    "TrendConfig",
    "TrendDirection",
    "build_recommendation",
    "find_outliers",
    "latest_per_protocol",
    "theil_sen_slope",
    "trend_direction",
    "trend_strength",
]
