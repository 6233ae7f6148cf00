"""Infrastructure modules for the P2P engine"""

from .alerting import AlertService, AlertSeverity  # noqa: F401
from .clock_sync import ClockSync  # noqa: F401
from .healthcheck import HealthServer  # noqa: F401
from .instance_lock import SingleInstanceLock  # noqa: F401
from .metrics import MetricsRecorder  # noqa: F401
from .rate_limiter import RateLimiter  # noqa: F401
from .state_store import TradeStore  # noqa: F401

__all__ = [
	"AlertService",
	"AlertSeverity",
	"ClockSync",
	"HealthServer",
	"MetricsRecorder",
	"RateLimiter",
	"SingleInstanceLock",
	"TradeStore",
]
