"""Instance Guardian: per-instance CPU limits with automatic EC2 shutdown."""

from .config import Settings
from .engine import EvaluationEngine, decide
from .scheduler import MonitoringScheduler
from .service import GuardianService

__version__ = "0.3.0"

__all__ = ["EvaluationEngine", "GuardianService", "MonitoringScheduler", "Settings", "decide"]
