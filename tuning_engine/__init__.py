"""
Tuning Engine Package.

============================================================
PURPOSE
============================================================
Nightly performance analysis and bounded parameter tuning.

AUTHORITY BOUNDARIES:
    CAN:
        - Read trades, positions and NAV history
        - Write strategy settings through SettingsService
        - Append optimization reports

    MUST NOT:
        - Apply two changes to one parameter in a run
        - Apply changes beyond the conservative bounds

============================================================
MODULES
============================================================
- fifo: FIFO buy-lot matcher
- metrics: Window metrics
- recommendations: Threshold rules
- tuner: Auto-apply and reporting

============================================================
"""

from .fifo import BuyLot, RoundTrip, FifoMatcher, match_trades
from .metrics import PerformanceMetrics, compute_metrics, compute_roi, average_hold_hours
from .recommendations import (
    TuningThresholds,
    Recommendation,
    RULES,
    generate_recommendations,
)
from .tuner import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    TuningResult,
    AutoTuner,
    analysis_window,
    is_conservative,
)


__all__ = [
    "BuyLot",
    "RoundTrip",
    "FifoMatcher",
    "match_trades",
    "PerformanceMetrics",
    "compute_metrics",
    "compute_roi",
    "average_hold_hours",
    "TuningThresholds",
    "Recommendation",
    "RULES",
    "generate_recommendations",
    "STATUS_COMPLETED",
    "STATUS_FAILED",
    "TuningResult",
    "AutoTuner",
    "analysis_window",
    "is_conservative",
]
