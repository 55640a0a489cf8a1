"""Infrastructure modules for the scalp exit monitor"""

from .alerting import AlertService, AlertSeverity  # noqa: F401
from .metrics import MetricsRecorder, TickStats  # noqa: F401
from .state_store import JsonPositionStore, PositionStore  # noqa: F401

__all__ = [
	"AlertService",
	"AlertSeverity",
	"MetricsRecorder",
	"TickStats",
	"JsonPositionStore",
	"PositionStore",
]
