"""pysensync - MQTT sensor capture with dual-store reconciliation."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pysensync")
except PackageNotFoundError:
    __version__ = "0+local"
from pysensync.client import SensyncClient
from pysensync.config import SensyncConfig
from pysensync.connection import BackoffPolicy, ConnectionPhase, ConnectionState
from pysensync.exceptions import (
    BrokerConnectionError,
    CameraError,
    ReconciliationCancelledError,
    ReconciliationError,
    SensyncConfigError,
    SensyncError,
    SessionConflictError,
    SessionError,
    SessionNotFoundError,
    SessionStateError,
    StorageError,
    StorageReadError,
    StorageWriteError,
)
from pysensync.ingestion import SKIP, normalize
from pysensync.models import (
    DeviceClass,
    Reading,
    ReconciliationReport,
    RepairDetail,
    RepairType,
    SensorSubscription,
    Session,
    SessionStatus,
)
from pysensync.topics import SubscriptionHandle, TopicRouter, topic_matches

__all__ = [
    "__version__",
    "SKIP",
    "BackoffPolicy",
    "BrokerConnectionError",
    "CameraError",
    "ConnectionPhase",
    "ConnectionState",
    "DeviceClass",
    "Reading",
    "ReconciliationCancelledError",
    "ReconciliationError",
    "ReconciliationReport",
    "RepairDetail",
    "RepairType",
    "SensorSubscription",
    "SensyncClient",
    "SensyncConfig",
    "SensyncConfigError",
    "SensyncError",
    "Session",
    "SessionConflictError",
    "SessionError",
    "SessionNotFoundError",
    "SessionStateError",
    "SessionStatus",
    "StorageError",
    "StorageReadError",
    "StorageWriteError",
    "SubscriptionHandle",
    "TopicRouter",
    "normalize",
    "topic_matches",
]
