from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .validation import DiagnosisSuggestion, ValidationIssue

"""Record models: raw spreadsheet rows and their cleaned counterparts.

RawRecord mirrors one data row as read from the workbook (column -> cell).
CleanedRecord carries canonical field values plus an audit trail of every
transformation applied by the RecordCleaner.
"""

__all__ = [
    "RawRecord",
    "Transformation",
    "CleanedRecord",
]


@dataclass(frozen=True)
class RawRecord:
    """One parsed spreadsheet row. Immutable once parsed."""
    row_number: int  # 1-based, header-relative (first data row = 2)
    values: dict[str, Any]  # column name -> raw cell value (column order kept)
    sheet: str | None = None

    def is_empty(self) -> bool:
        return all(v is None or (isinstance(v, str) and v.strip() == "") for v in self.values.values())


@dataclass(frozen=True)
class Transformation:
    """Audit entry for a value changed during cleaning."""
    field: str
    original: Any
    cleaned: Any
    row_number: int | None = None


@dataclass
class CleanedRecord:
    """Record after field-by-field normalization.

    `values` is keyed by canonical field name (FieldMapping.name).
    """
    row_number: int
    values: dict[str, Any]
    transformations: list[Transformation] = field(default_factory=list)
    issues: list[ValidationIssue] = field(default_factory=list)
    suggestions: list[DiagnosisSuggestion] = field(default_factory=list)
    sheet: str | None = None

    @property
    def errors(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == "error"]

    @property
    def warnings(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == "warning"]

    @property
    def info(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == "info"]

    def get(self, name: str, default: Any = None) -> Any:
        return self.values.get(name, default)

    def to_dict(self) -> dict[str, Any]:
        return {"_rowNumber": self.row_number, **self.values}
