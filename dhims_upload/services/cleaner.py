from __future__ import annotations

import logging
import math
import re
from collections.abc import Callable
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from dhims_upload.models.config_models import FieldMapping, FieldType
from dhims_upload.models.records import CleanedRecord, RawRecord, Transformation
from dhims_upload.models.validation import ValidationIssue
from dhims_upload.services.diagnosis import NOT_APPLICABLE_TOKENS, DiagnosisMatcher, DiagnosisMatchError
from dhims_upload.services.field_mapper import FieldMapper

"""Per-field record normalization.

RecordCleaner turns a RawRecord (column -> cell) into a CleanedRecord
(field -> canonical value). It never touches the network or disk. Every
normalizer is idempotent, so cleaning an already cleaned record is a no-op.

A normalizer receives the raw value plus a FieldNotes collector and returns the
cleaned value. It raises ValidationError to reject the value (the field
becomes None and an error issue is recorded).
"""

__all__ = [
    "RecordCleaner",
    "ValidationError",
    "NORMALIZERS",
]

logger = logging.getLogger(__name__)


class ValidationError(ValueError):
    """A single field value could not be normalized."""

    def __init__(self, message: str, field: str | None = None, value: Any = None) -> None:
        super().__init__(message)
        self.field = field
        self.value = value


class FieldNotes:
    """Non-fatal messages collected while normalizing one field."""

    def __init__(self) -> None:
        self.items: list[tuple[str, str]] = []  # (severity, message)

    def warning(self, message: str) -> None:
        self.items.append(("warning", message))

    def info(self, message: str) -> None:
        self.items.append(("info", message))


Normalizer = Callable[[Any, FieldNotes], Any]


# --- synonym tables (keys upper-case, canonical values map to themselves) ---
GENDER = {
    "M": "Male",
    "MALE": "Male",
    "F": "Female",
    "FEMALE": "Female",
}

OCCUPATION = {
    "PENSIONIER": "Pensioner",
    "PENSIONER": "Pensioner",
    "TRADER": "Trader / Shop Assistant",
    "TRADING": "Trader / Shop Assistant",
    "TEACHER": "Teacher",
    "TEACHING": "Teacher",
    "STUDENT": "Student",
    "FARMER": "Farmer",
    "FARMING": "Farmer",
}

EDUCATION = {
    "SHS": "SHS/Secondary",
    "SHS/SECONDARY": "SHS/Secondary",
    "JHS": "JHS/Middle School",
    "JHS/MIDDLE SCHOOL": "JHS/Middle School",
    "TERTIARY": "Tertiary",
    "NA": "None",
    "N/A": "None",
    "NONE": "None",
    "BASIC": "Primary School",
    "PRIMARY": "Primary School",
    "PRIMARY SCHOOL": "Primary School",
    "CHILD": "Primary School",
}

SPECIALITY = {
    "ACCIDENT EMERGENCY": "Casualty",
    "A&E": "Casualty",
    "EMERGENCY": "Casualty",
    "GENERAL": "Casualty",
    "CASUALTY": "Casualty",
}

OUTCOME = {
    "REFERRED": "Transferred",
    "TRANSFERRED": "Transferred",
    "DISCHARGE": "Discharged",
    "DISCHARGED": "Discharged",
    "DIED": "Died",
    "ABSCONDED": "Absconded",
    "UNSPECIFIED": "Unspecified",
}

TRUTHY = frozenset({"YES", "Y", "TRUE", "1", "T"})
FALSY = frozenset({"NO", "N", "FALSE", "0", "F"})

_AGE_RE = re.compile(r"(\d+)\s*(year|month|day)", re.IGNORECASE)
_AGE_UNIT_RE = re.compile(r"^(year|month|day)s?$", re.IGNORECASE)
_BARE_NUMBER_RE = re.compile(r"^\d+(\.0+)?$")
_ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})(?:[T ]00:00(?::00(?:\.0+)?)?)?$")
_DMY_DATE_RE = re.compile(r"^(\d{1,2})([-/])(\d{1,2})\2(\d{4})$")
_CURRENCY_STRIP_RE = re.compile(r"[^\d.]")


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return isinstance(value, str) and value.strip() == ""


def _as_text(value: Any) -> str:
    # Excel 数値セル (20.0) は "20" に揃える
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


# --- normalizers -----------------------------------------------------------
def clean_text(value: Any, notes: FieldNotes) -> str:
    return _as_text(value)


def clean_identifier(value: Any, notes: FieldNotes) -> str:
    return _as_text(value).upper()


def clean_number(value: Any, notes: FieldNotes) -> str:
    return _as_text(value)


def _split_age(value: Any) -> tuple[str, str] | None:
    text = _as_text(value)
    m = _AGE_RE.search(text)
    if m:
        return str(int(m.group(1))), m.group(2).lower() + "s"
    if _BARE_NUMBER_RE.match(text):
        return str(int(float(text))), "years"
    return None


def clean_age_number(value: Any, notes: FieldNotes) -> str:
    parts = _split_age(value)
    if parts is None:
        raise ValidationError(f'Invalid age format: "{value}". Expected format: "20 Year(s)"', value=value)
    return parts[0]


def clean_age_unit(value: Any, notes: FieldNotes) -> str:
    text = _as_text(value)
    unit = _AGE_UNIT_RE.match(text)
    if unit:
        return unit.group(1).lower() + "s"
    parts = _split_age(text)
    if parts is None:
        raise ValidationError(f'Invalid age format: "{value}". Expected format: "20 Year(s)"', value=value)
    return parts[1]


def _lookup(table: dict[str, str], value: Any) -> str | None:
    return table.get(_as_text(value).upper())


def clean_gender(value: Any, notes: FieldNotes) -> str:
    mapped = _lookup(GENDER, value)
    if mapped is None:
        raise ValidationError(f'Invalid gender: "{value}". Must be Male or Female', value=value)
    return mapped


def clean_occupation(value: Any, notes: FieldNotes) -> str:
    return _lookup(OCCUPATION, value) or _as_text(value)


def clean_education(value: Any, notes: FieldNotes) -> str:
    mapped = _lookup(EDUCATION, value)
    if mapped is None:
        raise ValidationError(
            f'Unknown education level: "{value}". Expected: SHS, JHS, Tertiary, Primary, or None',
            value=value,
        )
    return mapped


def clean_speciality(value: Any, notes: FieldNotes) -> str:
    text = _as_text(value)
    mapped = SPECIALITY.get(text.upper())
    if text.upper() == "GENERAL":
        notes.info('"General" has been automatically mapped to "Casualty"')
    if mapped is None:
        notes.warning(f'Unknown speciality: "{text}". Will use as-is, verify it exists in the remote system')
        return text
    return mapped


def clean_outcome(value: Any, notes: FieldNotes) -> str:
    mapped = _lookup(OUTCOME, value)
    if mapped is None:
        raise ValidationError(
            f'Unknown outcome: "{value}". Valid options: Discharged, Transferred, Died, Absconded',
            value=value,
        )
    return mapped


def clean_date(value: Any, notes: FieldNotes) -> str:
    if isinstance(value, datetime):
        parsed = value.date()
    elif isinstance(value, date):
        parsed = value
    else:
        text = _as_text(value)
        m = _ISO_DATE_RE.match(text)
        if m:
            year, month, day = int(m.group(1)), int(m.group(2)), int(m.group(3))
        else:
            m = _DMY_DATE_RE.match(text)
            if not m:
                raise ValidationError(
                    f'Invalid date format: "{text}". Expected DD-MM-YYYY, DD/MM/YYYY or YYYY-MM-DD',
                    value=value,
                )
            day, month, year = int(m.group(1)), int(m.group(3)), int(m.group(4))
        try:
            parsed = date(year, month, day)
        except ValueError as e:
            raise ValidationError(f'Invalid date: "{text}" ({e})', value=value) from e
    current_year = date.today().year
    if parsed.year < 1900 or parsed.year > current_year + 1:
        notes.warning(f"Date year {parsed.year} seems unrealistic")
    return parsed.isoformat()


def clean_currency(value: Any, notes: FieldNotes) -> str | None:
    if _as_text(value).upper() in NOT_APPLICABLE_TOKENS:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        text = str(abs(value))
    else:
        text = _CURRENCY_STRIP_RE.sub("", str(value))
    if not text:
        raise ValidationError(f'Invalid amount: "{value}"', value=value)
    try:
        amount = Decimal(text)
    except InvalidOperation as e:
        raise ValidationError(f'Invalid amount: "{value}"', value=value) from e
    return f"{amount:.2f}"


def clean_boolean(value: Any, notes: FieldNotes) -> str | None:
    if isinstance(value, bool):
        return "true" if value else "false"
    token = _as_text(value).upper()
    if token in TRUTHY:
        return "true"
    if token in FALSY:
        return "false"
    notes.warning(f'Invalid value: "{value}". Expected: Yes/No or true/false')
    return None


NORMALIZERS: dict[str, Normalizer] = {
    "text": clean_text,
    "identifier": clean_identifier,
    "number": clean_number,
    "age_number": clean_age_number,
    "age_unit": clean_age_unit,
    "gender": clean_gender,
    "occupation": clean_occupation,
    "education": clean_education,
    "speciality": clean_speciality,
    "outcome": clean_outcome,
    "date": clean_date,
    "currency": clean_currency,
    "boolean": clean_boolean,
}


class RecordCleaner:
    """Clean records field by field using the mapping's normalizer names.

    Fields without an explicit normalizer get one from their type: date,
    boolean and number have their own, dropdowns with options are matched
    case-insensitively to an option, searchable-code goes through the
    DiagnosisMatcher, everything else is trimmed text.
    """

    def __init__(self, mapper: FieldMapper, matcher: DiagnosisMatcher | None = None) -> None:
        self.mapper = mapper
        self.matcher = matcher
        for m in mapper:
            if m.normalizer is not None and m.normalizer not in NORMALIZERS and m.normalizer != "diagnosis":
                raise ValueError(f"unknown normalizer '{m.normalizer}' for field {m.name}")

    def clean(self, record: RawRecord | CleanedRecord) -> CleanedRecord:
        if isinstance(record, CleanedRecord):
            source = dict(record.values)
        else:
            source = self.mapper.extract(record)
        cleaned = CleanedRecord(row_number=record.row_number, values={}, sheet=record.sheet)
        for mapping in self.mapper:
            original = source.get(mapping.name)
            value = self._clean_field(mapping, original, cleaned)
            cleaned.values[mapping.name] = value
            if not _is_empty(original) and value != original:
                cleaned.transformations.append(
                    Transformation(field=mapping.name, original=original, cleaned=value, row_number=record.row_number)
                )
        return cleaned

    def clean_all(self, records: list[RawRecord]) -> list[CleanedRecord]:
        return [self.clean(r) for r in records]

    # ------------------------------------------------------------------
    def _clean_field(self, mapping: FieldMapping, value: Any, out: CleanedRecord) -> Any:
        if _is_empty(value):
            return None
        if mapping.normalizer == "diagnosis" or (mapping.normalizer is None and mapping.is_diagnosis):
            return self._clean_diagnosis(mapping, value, out)

        notes = FieldNotes()
        try:
            result = self._normalizer_for(mapping)(value, notes)
        except ValidationError as e:
            out.issues.append(self._issue(mapping, str(e), "error", value, out.row_number))
            result = None
        for severity, message in notes.items:
            out.issues.append(self._issue(mapping, message, severity, value, out.row_number))
        return result

    def _normalizer_for(self, mapping: FieldMapping) -> Normalizer:
        if mapping.normalizer is not None:
            return NORMALIZERS[mapping.normalizer]
        if mapping.type is FieldType.DATE:
            return clean_date
        if mapping.type is FieldType.BOOLEAN:
            return clean_boolean
        if mapping.type is FieldType.NUMBER:
            return clean_number
        if mapping.type is FieldType.DROPDOWN and mapping.options:
            return self._option_normalizer(mapping.options)
        return clean_text

    @staticmethod
    def _option_normalizer(options: tuple[str, ...]) -> Normalizer:
        canonical = {o.upper(): o for o in options}

        def clean_option(value: Any, notes: FieldNotes) -> str:
            text = _as_text(value)
            return canonical.get(text.upper(), text)

        return clean_option

    def _clean_diagnosis(self, mapping: FieldMapping, value: Any, out: CleanedRecord) -> str | None:
        text = _as_text(value)
        if text.upper() in NOT_APPLICABLE_TOKENS:
            return None
        if self.matcher is None:
            codes = DiagnosisMatcher.extract_codes(text)
            if not codes:
                out.issues.append(
                    self._issue(mapping, f'Could not extract ICD code from: "{text}"', "error", value, out.row_number)
                )
                return None
            return codes[0]
        try:
            match = self.matcher.match(text, field=mapping.name, row_number=out.row_number)
        except DiagnosisMatchError as e:
            out.issues.append(
                ValidationIssue(
                    field=mapping.name,
                    message=str(e),
                    severity="error",
                    column=mapping.source_column,
                    value=value,
                    row_number=out.row_number,
                    alternatives=e.alternatives,
                )
            )
            return None
        for note in match.notes:
            out.issues.append(self._issue(mapping, note, "info", value, out.row_number))
        if match.suggestion is not None:
            out.suggestions.append(match.suggestion)
        return match.code

    @staticmethod
    def _issue(mapping: FieldMapping, message: str, severity: str, value: Any, row_number: int) -> ValidationIssue:
        return ValidationIssue(
            field=mapping.name,
            message=message,
            severity=severity,
            column=mapping.source_column,
            value=value,
            row_number=row_number,
        )
