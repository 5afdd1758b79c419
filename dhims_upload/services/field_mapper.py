from __future__ import annotations

from collections.abc import Iterable, Mapping
from types import MappingProxyType
from typing import Any

from dhims_upload.models.config_models import FieldMapping, StaticContext
from dhims_upload.models.records import CleanedRecord, RawRecord

"""Column <-> data element mapping and event payload construction.

FieldMapper is the only place that knows both sides of the mapping: the
spreadsheet headers (source_column) and the remote data element ids. The
mapping set is frozen at construction.
"""

__all__ = [
    "FieldMapper",
    "UnknownFieldError",
]


class UnknownFieldError(KeyError):
    pass


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


class FieldMapper:
    def __init__(self, mappings: Iterable[FieldMapping], context: StaticContext) -> None:
        ordered: dict[str, FieldMapping] = {}
        for m in mappings:
            if m.name in ordered:
                raise ValueError(f"duplicate field mapping: {m.name}")
            ordered[m.name] = m
        self._mappings: Mapping[str, FieldMapping] = MappingProxyType(ordered)
        self.context = context

    @property
    def mappings(self) -> Mapping[str, FieldMapping]:
        return self._mappings

    def __iter__(self):
        return iter(self._mappings.values())

    def __len__(self) -> int:
        return len(self._mappings)

    def get(self, name: str) -> FieldMapping:
        try:
            return self._mappings[name]
        except KeyError:
            raise UnknownFieldError(f"unknown field: {name}") from None

    def remote_field_id(self, name: str) -> str:
        return self.get(name).remote_field_id

    def source_column(self, name: str) -> str:
        return self.get(name).source_column

    # --- lookups -----------------------------------------------------------
    def fields_for_column(self, column: str) -> list[FieldMapping]:
        return [m for m in self._mappings.values() if m.source_column == column]

    def field_by_column(self, column: str) -> FieldMapping | None:
        found = self.fields_for_column(column)
        return found[0] if found else None

    def field_by_remote_id(self, remote_field_id: str) -> FieldMapping | None:
        for m in self._mappings.values():
            if m.remote_field_id == remote_field_id:
                return m
        return None

    def required_fields(self) -> list[str]:
        return [m.name for m in self._mappings.values() if m.required]

    def optional_fields(self) -> list[str]:
        return [m.name for m in self._mappings.values() if not m.required]

    def expected_columns(self) -> list[str]:
        # Age のように複数フィールドが同じ列を共有する
        return list(dict.fromkeys(m.source_column for m in self._mappings.values()))

    def missing_columns(self, columns: Iterable[str]) -> list[str]:
        present = set(columns)
        return [c for c in self.expected_columns() if c not in present]

    def missing_required(self, record: CleanedRecord) -> list[FieldMapping]:
        return [m for m in self._mappings.values() if m.required and _is_empty(record.get(m.name))]

    # --- record shaping ----------------------------------------------------
    def extract(self, raw: RawRecord) -> dict[str, Any]:
        """Project a raw row onto canonical field names (unmapped columns dropped)."""
        return {m.name: raw.values.get(m.source_column) for m in self._mappings.values()}

    def to_data_values(self, record: CleanedRecord) -> list[dict[str, str]]:
        data_values = []
        for m in self._mappings.values():
            value = record.get(m.name)
            if _is_empty(value):
                if not m.required:
                    continue
                value = ""
            data_values.append({"dataElement": m.remote_field_id, "value": str(value)})
        return data_values

    def to_event(self, record: CleanedRecord) -> dict[str, Any]:
        ctx = self.context
        date_key = "occurredAt" if ctx.is_tracker_endpoint else "eventDate"
        return {
            "program": ctx.program,
            "orgUnit": ctx.org_unit,
            "programStage": ctx.program_stage,
            date_key: record.get(ctx.event_date_field),
            "status": ctx.status,
            "dataValues": self.to_data_values(record),
        }

    def to_payload(self, record: CleanedRecord) -> dict[str, Any]:
        """Request body for a single-record submission."""
        event = self.to_event(record)
        if self.context.requires_collection:
            return {"events": [event]}
        return event

    def batch_payload(self, records: Iterable[CleanedRecord]) -> dict[str, Any]:
        return {"events": [self.to_event(r) for r in records]}

    def describe(self) -> dict[str, Any]:
        return {
            "total_fields": len(self._mappings),
            "required_fields": len(self.required_fields()),
            "optional_fields": len(self.optional_fields()),
            "expected_columns": self.expected_columns(),
        }
