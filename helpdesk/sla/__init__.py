"""SLA compliance clock: targets, time arithmetic and pause/resume handling."""

from .service import SLAEvaluation, SLAService
from .targets import SLA_TARGETS, SLATarget, target_for
from .timer import SLAMetrics, SLAProgress, SLASnapshot, build_snapshot, elapsed_minutes

__all__ = [
    "SLA_TARGETS",
    "SLAEvaluation",
    "SLAMetrics",
    "SLAProgress",
    "SLAService",
    "SLASnapshot",
    "SLATarget",
    "build_snapshot",
    "elapsed_minutes",
    "target_for",
]
