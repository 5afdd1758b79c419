from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .records import CleanedRecord, Transformation

"""Validation result models.

ValidationIssue is the unit of feedback produced by both the cleaner and the
validator. ValidationOutcome aggregates a whole dataset and keeps the
valid / invalid partition.
"""

__all__ = [
    "ValidationIssue",
    "DiagnosisCandidate",
    "DiagnosisSuggestion",
    "RecordValidation",
    "ValidRecord",
    "InvalidRecord",
    "DuplicateGroup",
    "DuplicateReport",
    "ValidationOutcome",
]

SEVERITIES = ("error", "warning", "info")


@dataclass(frozen=True)
class ValidationIssue:
    field: str
    message: str
    severity: str = "error"  # error / warning / info
    column: str | None = None
    value: Any = None
    row_number: int | None = None
    alternatives: tuple[DiagnosisCandidate, ...] = ()

    def __str__(self) -> str:
        prefix = f"Row {self.row_number}: " if self.row_number is not None else ""
        return f"{prefix}{self.message}"


@dataclass(frozen=True)
class DiagnosisCandidate:
    code: str
    name: str
    similarity: float


@dataclass(frozen=True)
class DiagnosisSuggestion:
    """Audit record for an auto-accepted (or proposed) diagnosis replacement."""
    row_number: int | None
    field: str
    original_code: str
    suggested_code: str
    suggested_name: str
    confidence: float
    alternatives: tuple[DiagnosisCandidate, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RecordValidation:
    valid: bool
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)


@dataclass
class ValidRecord:
    record: CleanedRecord
    row_number: int
    warnings: list[ValidationIssue] = field(default_factory=list)


@dataclass
class InvalidRecord:
    record: CleanedRecord
    row_number: int
    errors: list[ValidationIssue] = field(default_factory=list)


@dataclass(frozen=True)
class DuplicateGroup:
    value: Any
    rows: tuple[int, ...]

    @property
    def count(self) -> int:
        return len(self.rows)


@dataclass
class DuplicateReport:
    duplicates: list[DuplicateGroup] = field(default_factory=list)
    unique_count: int = 0

    @property
    def has_duplicates(self) -> bool:
        return bool(self.duplicates)


@dataclass
class ValidationOutcome:
    """Dataset-level validation result.

    Every input record lands in exactly one of valid_records / invalid_records.
    """
    total_records: int
    valid_records: list[ValidRecord] = field(default_factory=list)
    invalid_records: list[InvalidRecord] = field(default_factory=list)
    dataset_warnings: list[str] = field(default_factory=list)
    suggestions: list[DiagnosisSuggestion] = field(default_factory=list)
    transformations: list[Transformation] = field(default_factory=list)
    info: list[ValidationIssue] = field(default_factory=list)
    duplicates: DuplicateReport = field(default_factory=DuplicateReport)

    @property
    def can_proceed(self) -> bool:
        return not self.invalid_records

    @property
    def errors(self) -> list[ValidationIssue]:
        return [e for inv in self.invalid_records for e in inv.errors]

    @property
    def warnings(self) -> list[ValidationIssue]:
        return [w for v in self.valid_records for w in v.warnings]

    def records_to_upload(self) -> list[CleanedRecord]:
        return [v.record for v in self.valid_records]
