from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .records import CleanedRecord

"""Upload session state for the batch upload engine.

State transitions: idle -> running <-> paused -> (cancelled | completed)

UploadSession is mutated only by the engine's driving loop and by the
pause / resume / cancel signals. Observers get ProgressSnapshot copies.
"""

__all__ = [
    "UploadState",
    "CurrentRecord",
    "UploadedRecord",
    "UploadResults",
    "ProgressSnapshot",
    "UploadSession",
]


class UploadState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    COMPLETED = "completed"

    @property
    def is_terminal(self) -> bool:
        return self in (UploadState.CANCELLED, UploadState.COMPLETED)


@dataclass(frozen=True)
class CurrentRecord:
    """Descriptor of the record being processed (shown to observers)."""
    index: int  # 1-based position in the upload list
    row_number: int
    total: int
    patient_number: str | None = None


@dataclass
class UploadedRecord:
    index: int
    row_number: int
    record: CleanedRecord
    attempts: int
    error: str | None = None  # terminal error message for failures
    entity_id: str | None = None
    job_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "index": self.index,
            "rowNumber": self.row_number,
            "attempts": self.attempts,
            "record": self.record.to_dict(),
        }
        if self.error is not None:
            data["error"] = self.error
        if self.entity_id is not None:
            data["entityId"] = self.entity_id
        if self.job_id is not None:
            data["jobId"] = self.job_id
        return data


@dataclass
class UploadResults:
    total: int
    success_count: int = 0
    failed_count: int = 0
    pending_count: int = 0
    current_record: CurrentRecord | None = None
    success_records: list[UploadedRecord] = field(default_factory=list)
    failed_records: list[UploadedRecord] = field(default_factory=list)
    error_messages: list[str] = field(default_factory=list)
    start_time: datetime | None = None
    end_time: datetime | None = None

    @property
    def resolved_count(self) -> int:
        return self.success_count + self.failed_count

    @property
    def percentage(self) -> int:
        if self.total == 0:
            return 100
        # 0.5 は切り上げ (表示用)
        return int(self.resolved_count / self.total * 100 + 0.5)

    @property
    def elapsed_seconds(self) -> float:
        if self.start_time is None or self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()


@dataclass(frozen=True)
class ProgressSnapshot:
    """Read-only view handed to progress observers."""
    total: int
    success: int
    failed: int
    pending: int
    current_record: CurrentRecord | None
    is_paused: bool
    is_cancelled: bool
    percentage: int
    state: UploadState


@dataclass
class UploadSession:
    records: list[CleanedRecord]
    results: UploadResults
    cursor: int = 0
    is_paused: bool = False
    is_cancelled: bool = False
    state: UploadState = UploadState.IDLE

    @classmethod
    def create(cls, records: list[CleanedRecord]) -> UploadSession:
        items = list(records)
        return cls(records=items, results=UploadResults(total=len(items), pending_count=len(items)))

    def snapshot(self) -> ProgressSnapshot:
        r = self.results
        return ProgressSnapshot(
            total=r.total,
            success=r.success_count,
            failed=r.failed_count,
            pending=r.pending_count,
            current_record=r.current_record,
            is_paused=self.is_paused,
            is_cancelled=self.is_cancelled,
            percentage=r.percentage,
            state=self.state,
        )
