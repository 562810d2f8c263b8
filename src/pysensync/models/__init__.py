"""Data models for pysensync."""

from pysensync.models.reading import DeviceClass, Reading, SensorSubscription
from pysensync.models.reconciliation import ReconciliationReport, RepairDetail, RepairType
from pysensync.models.session import Session, SessionStatus

__all__ = [
    "DeviceClass",
    "Reading",
    "ReconciliationReport",
    "RepairDetail",
    "RepairType",
    "SensorSubscription",
    "Session",
    "SessionStatus",
]
