from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

"""Config dataclasses for the DHIMS2 event uploader.

These are the resolved, immutable forms of the `field_mappings`, `context`,
`upload` and `matching` sections of config/upload.yml. The loader in
dhims_upload/config/loader.py builds them once per upload session.
"""

__all__ = [
    "FieldType",
    "FieldMapping",
    "StaticContext",
    "UploadSettings",
    "MatchingSettings",
]


class FieldType(Enum):
    """Remote field type of a mapped column."""
    TEXT = "text"
    NUMBER = "number"
    DATE = "date"
    BOOLEAN = "boolean"
    DROPDOWN = "dropdown"
    SEARCHABLE_CODE = "searchable-code"

    @classmethod
    def parse(cls, raw: str) -> FieldType:
        # 旧設定の "searchable" / "radio" も受け付ける
        aliases = {"searchable": "searchable-code", "radio": "boolean"}
        value = aliases.get(str(raw).strip().lower(), str(raw).strip().lower())
        return cls(value)


@dataclass(frozen=True)
class FieldMapping:
    """Binding of one spreadsheet column to one remote data element.

    Several mappings may share a source column (Age -> ageNumber + ageUnit).
    """
    name: str  # canonical field name (e.g. "patientNumber")
    source_column: str  # spreadsheet header
    remote_field_id: str  # data element uid
    type: FieldType = FieldType.TEXT
    required: bool = False
    options: tuple[str, ...] | None = None  # dropdown enumeration
    normalizer: str | None = None  # explicit cleaner rule, else inferred

    @property
    def is_diagnosis(self) -> bool:
        return self.type is FieldType.SEARCHABLE_CODE


@dataclass(frozen=True)
class StaticContext:
    """Identifiers sent unchanged with every event."""
    program: str
    org_unit: str
    program_stage: str
    endpoint_url: str
    status: str = "COMPLETED"
    headers: dict[str, str] | None = None
    wrap_in_collection: bool | None = None  # None: decide from endpoint shape
    event_date_field: str = "dateOfAdmission"

    @property
    def is_tracker_endpoint(self) -> bool:
        return "/tracker" in self.endpoint_url

    @property
    def requires_collection(self) -> bool:
        if self.wrap_in_collection is not None:
            return self.wrap_in_collection
        return self.is_tracker_endpoint


@dataclass(frozen=True)
class UploadSettings:
    """Retry, rate limit and polling knobs for the batch upload engine."""
    retry_attempts: int = 3
    retry_base_delay: float = 1.0  # seconds, multiplied by attempt number
    rate_limit_seconds: float = 0.5  # pause between records
    request_timeout: float = 30.0
    job_poll_attempts: int = 10
    job_poll_interval: float = 1.0
    verify_first_record: bool = True


@dataclass(frozen=True)
class MatchingSettings:
    """Diagnosis matching policy."""
    diagnosis_codes: str | None = None  # path to option-codes JSON
    auto_accept_suggestions: bool = True
    auto_accept_threshold: float = 0.70
