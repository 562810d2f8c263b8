"""Reconciliation report models."""

from __future__ import annotations

from enum import StrEnum

from pydantic import Field

from pysensync.models._base import SensyncBaseModel, UtcDatetime, utcnow


class RepairType(StrEnum):
    MISSING_IN_CONSOLIDATED = "missing_in_consolidated"
    MISSING_INDIVIDUAL_FILE = "missing_individual_file"
    MISSING_CONSOLIDATED_INDEX = "missing_consolidated_index"


class RepairDetail(SensyncBaseModel):
    type: RepairType
    sensor_id: str
    timestamp: UtcDatetime


class ReconciliationReport(SensyncBaseModel):
    """Result of one audit pass over a session.

    Parameters
    ----------
    session_id : str or None
        Audited session (``None`` for the default bucket).
    inconsistencies_found : int
        Divergences detected between the two stores.
    repaired : int
        Divergences fixed by this pass. Always ``0`` for a dry run.
    details : list of RepairDetail
        One entry per divergence.
    dry_run : bool
        Whether the pass only audited without writing.
    """

    session_id: str | None = None
    inconsistencies_found: int = 0
    repaired: int = 0
    details: list[RepairDetail] = Field(default_factory=list)
    dry_run: bool = False
    started_at: UtcDatetime = Field(default_factory=utcnow)
    finished_at: UtcDatetime | None = None

    @property
    def is_consistent(self) -> bool:
        return self.inconsistencies_found == 0

    def count(self, repair_type: RepairType) -> int:
        return sum(1 for detail in self.details if detail.type == repair_type)
