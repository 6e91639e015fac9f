"""Tor control-port health sidecar package."""

from .config_manager import SidecarSettings
from .exit_verifier import EgressVerifier, VerificationEndpoint, VerificationResult
from .health_server import HealthServer
from .health_tracker import HealthEvaluator, ReadinessTracker
from .statistics_manager import MetricsSink, StatisticsManager
from .tor_control import TorControlLink
from .tor_status import StatusReader, StatusSnapshot
from .version import __version__
from .webhook_notifier import NotificationDispatcher, NotificationEvent, WebhookNotifier

__all__ = [
    "SidecarSettings",
    "EgressVerifier",
    "VerificationEndpoint",
    "VerificationResult",
    "HealthServer",
    "HealthEvaluator",
    "ReadinessTracker",
    "MetricsSink",
    "StatisticsManager",
    "TorControlLink",
    "StatusReader",
    "StatusSnapshot",
    "NotificationDispatcher",
    "NotificationEvent",
    "WebhookNotifier",
    "__version__",
]
