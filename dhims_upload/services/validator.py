from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import date
from typing import Any

from dhims_upload.models.config_models import FieldMapping, FieldType
from dhims_upload.models.records import CleanedRecord, RawRecord
from dhims_upload.models.validation import (
    DuplicateGroup,
    DuplicateReport,
    InvalidRecord,
    RecordValidation,
    ValidationIssue,
    ValidationOutcome,
    ValidRecord,
)
from dhims_upload.services.cleaner import FieldNotes, RecordCleaner, ValidationError, clean_date
from dhims_upload.services.field_mapper import FieldMapper

"""Record and dataset validation.

validate_record checks one cleaned record against the field mapping and the
cross-field rules. validate_dataset cleans + validates a whole sheet and
partitions it: every input row ends up in exactly one of valid / invalid.
"""

__all__ = [
    "Validator",
    "BOOLEAN_TOKENS",
    "MAX_TEXT_LENGTH",
]

logger = logging.getLogger(__name__)

BOOLEAN_TOKENS = frozenset({"yes", "no", "true", "false", "1", "0"})
MAX_TEXT_LENGTH = 1000
MIN_PATIENT_NUMBER_LENGTH = 6

# 単位ごとの上限 (150 年相当)
AGE_LIMITS = {"years": 150, "months": 1800, "days": 54750}


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def _parse_date(value: Any) -> date | None:
    try:
        return date.fromisoformat(clean_date(value, FieldNotes()))
    except ValidationError:
        return None


class Validator:
    ADMISSION_FIELD = "dateOfAdmission"
    DISCHARGE_FIELD = "dateOfDischarge"
    AGE_NUMBER_FIELD = "ageNumber"
    AGE_UNIT_FIELD = "ageUnit"
    PATIENT_NUMBER_FIELD = "patientNumber"

    def __init__(
        self,
        mapper: FieldMapper,
        cleaner: RecordCleaner | None = None,
        duplicate_field: str = "patientNumber",
    ) -> None:
        self.mapper = mapper
        self.cleaner = cleaner
        self.duplicate_field = duplicate_field

    # ------------------------------------------------------------------
    def validate_record(
        self,
        record: CleanedRecord | Mapping[str, Any],
        mappings: Iterable[FieldMapping] | None = None,
        row_number: int | None = None,
    ) -> RecordValidation:
        if isinstance(record, CleanedRecord):
            values = record.values
            if row_number is None:
                row_number = record.row_number
        else:
            values = dict(record)
        mapping_list = list(mappings) if mappings is not None else list(self.mapper)

        errors: list[ValidationIssue] = []
        warnings: list[ValidationIssue] = []

        if not values or all(_is_empty(v) for v in values.values()):
            errors.append(ValidationIssue(field="*", message="Record is empty", row_number=row_number))
            return RecordValidation(valid=False, errors=errors, warnings=warnings)

        for m in mapping_list:
            value = values.get(m.name)
            if _is_empty(value):
                if m.required:
                    errors.append(self._issue(m, f"Required field missing: {m.source_column}", "error", value, row_number))
                continue
            issue = self._check_type(m, value, row_number)
            if issue is not None:
                (errors if issue.severity == "error" else warnings).append(issue)

        for issue in self._cross_field(values, row_number):
            (errors if issue.severity == "error" else warnings).append(issue)

        return RecordValidation(valid=not errors, errors=errors, warnings=warnings)

    def _check_type(self, m: FieldMapping, value: Any, row_number: int | None) -> ValidationIssue | None:
        text = str(value).strip()
        if m.type is FieldType.DATE:
            if len(text) < 8 or _parse_date(value) is None:
                return self._issue(m, f"Invalid date: {text}", "error", value, row_number)
        elif m.type is FieldType.NUMBER:
            try:
                float(text)
            except ValueError:
                return self._issue(m, f"{m.source_column} must be numeric: {text}", "error", value, row_number)
        elif m.type is FieldType.BOOLEAN:
            if text.lower() not in BOOLEAN_TOKENS:
                return self._issue(m, f'Boolean field must be "true" or "false": {text}', "warning", value, row_number)
        elif m.type is FieldType.TEXT:
            if len(text) > MAX_TEXT_LENGTH:
                return self._issue(
                    m, f"{m.source_column} is longer than {MAX_TEXT_LENGTH} characters", "warning", value, row_number
                )
        elif m.type is FieldType.DROPDOWN:
            if m.options and text not in m.options:
                return self._issue(
                    m, f'Invalid option "{text}" for {m.source_column}. Valid: {", ".join(m.options)}',
                    "error", value, row_number,
                )
        return None

    def _cross_field(self, values: Mapping[str, Any], row_number: int | None) -> list[ValidationIssue]:
        issues: list[ValidationIssue] = []

        admission = values.get(self.ADMISSION_FIELD)
        discharge = values.get(self.DISCHARGE_FIELD)
        if not _is_empty(admission) and not _is_empty(discharge):
            a, d = _parse_date(admission), _parse_date(discharge)
            if a is not None and d is not None and d < a:
                issues.append(ValidationIssue(
                    field=self.DISCHARGE_FIELD,
                    message=f"Discharge date ({discharge}) cannot be before admission date ({admission})",
                    severity="warning",
                    value=discharge,
                    row_number=row_number,
                ))

        age = values.get(self.AGE_NUMBER_FIELD)
        unit = values.get(self.AGE_UNIT_FIELD)
        if not _is_empty(age) and unit in AGE_LIMITS:
            try:
                n = float(age)
            except (TypeError, ValueError):
                n = None
            if n is not None and not 0 <= n <= AGE_LIMITS[unit]:
                issues.append(ValidationIssue(
                    field=self.AGE_NUMBER_FIELD,
                    message=f"Age {age} {unit} is not realistic",
                    severity="warning",
                    value=age,
                    row_number=row_number,
                ))

        patient_number = values.get(self.PATIENT_NUMBER_FIELD)
        if not _is_empty(patient_number) and len(str(patient_number).strip()) < MIN_PATIENT_NUMBER_LENGTH:
            issues.append(ValidationIssue(
                field=self.PATIENT_NUMBER_FIELD,
                message=f"Patient number '{patient_number}' is too short (minimum {MIN_PATIENT_NUMBER_LENGTH} characters)",
                severity="error",
                value=patient_number,
                row_number=row_number,
            ))
        return issues

    # ------------------------------------------------------------------
    def validate_dataset(self, records: Iterable[RawRecord | CleanedRecord]) -> ValidationOutcome:
        items = list(records)
        outcome = ValidationOutcome(total_records=len(items))
        cleaned_records: list[CleanedRecord] = []

        for raw in items:
            if isinstance(raw, RawRecord) and raw.is_empty():
                cleaned = CleanedRecord(row_number=raw.row_number, values={}, sheet=raw.sheet)
            elif isinstance(raw, RawRecord):
                if self.cleaner is None:
                    raise TypeError("validate_dataset needs a RecordCleaner to accept raw records")
                cleaned = self.cleaner.clean(raw)
            else:
                cleaned = raw
            cleaned_records.append(cleaned)

            result = self.validate_record(cleaned)
            cleaner_errors = cleaned.errors
            failed_fields = {e.field for e in cleaner_errors}
            # クリーナーで既に失敗したフィールドの "required" 重複は出さない
            errors = cleaner_errors + [e for e in result.errors if e.field not in failed_fields]
            warnings = cleaned.warnings + result.warnings

            outcome.transformations.extend(cleaned.transformations)
            outcome.suggestions.extend(cleaned.suggestions)
            outcome.info.extend(cleaned.info)
            if errors:
                outcome.invalid_records.append(InvalidRecord(record=cleaned, row_number=cleaned.row_number, errors=errors))
            else:
                outcome.valid_records.append(ValidRecord(record=cleaned, row_number=cleaned.row_number, warnings=warnings))

        outcome.duplicates = self.check_duplicates(cleaned_records)
        for group in outcome.duplicates.duplicates:
            rows = ", ".join(str(r) for r in group.rows)
            outcome.dataset_warnings.append(
                f"Duplicate {self.duplicate_field} '{group.value}' found {group.count} times (rows {rows})"
            )

        logger.debug(
            "validated %d records: valid=%d invalid=%d suggestions=%d duplicates=%d",
            outcome.total_records,
            len(outcome.valid_records),
            len(outcome.invalid_records),
            len(outcome.suggestions),
            len(outcome.duplicates.duplicates),
        )
        return outcome

    def check_duplicates(
        self, records: Iterable[CleanedRecord | Mapping[str, Any]], unique_field: str | None = None
    ) -> DuplicateReport:
        key_field = unique_field or self.duplicate_field
        groups: dict[Any, list[int]] = {}
        for index, r in enumerate(records):
            if isinstance(r, CleanedRecord):
                key, row = r.get(key_field), r.row_number
            else:
                key, row = r.get(key_field), r.get("_rowNumber", index + 2)
            if _is_empty(key):
                continue
            groups.setdefault(key, []).append(row)
        duplicates = [DuplicateGroup(value=k, rows=tuple(rows)) for k, rows in groups.items() if len(rows) > 1]
        return DuplicateReport(duplicates=duplicates, unique_count=len(groups))

    @staticmethod
    def _issue(m: FieldMapping, message: str, severity: str, value: Any, row_number: int | None) -> ValidationIssue:
        return ValidationIssue(
            field=m.name,
            message=message,
            severity=severity,
            column=m.source_column,
            value=value,
            row_number=row_number,
        )
