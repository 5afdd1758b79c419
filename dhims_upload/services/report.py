from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import asdict
from pathlib import Path
from typing import Any

from ..models.records import CleanedRecord
from ..models.upload_session import UploadResults
from ..models.validation import ValidationIssue, ValidationOutcome
from .field_mapper import FieldMapper

"""Text reports and JSON exports written to the output directory.

    validation-report.txt   human readable validation summary
    validation-outcome.json machine readable validation outcome
    upload-report.txt       totals, success rate, failed rows
    failed-records.json     failed records for a later re-upload
    payload-preview.json    dry-run request bodies ({"events": [...]})
"""

__all__ = [
    "render_validation_report",
    "render_upload_report",
    "outcome_to_dict",
    "write_validation_report",
    "write_outcome_json",
    "write_upload_report",
    "write_failed_records",
    "write_payload_preview",
]

RULE = "=" * 60
LINE = "-" * 60


def _patient(record: CleanedRecord) -> str:
    return str(record.get("patientNumber") or "Unknown")


def _bullets(issues: Iterable[ValidationIssue]) -> list[str]:
    return [f"  - {i.message}" for i in issues]


def render_validation_report(outcome: ValidationOutcome) -> str:
    warned = [v for v in outcome.valid_records if v.warnings]
    lines = [
        RULE,
        "DHIMS2 UPLOAD - VALIDATION REPORT",
        RULE,
        "",
        "SUMMARY:",
        f"  Total Records: {outcome.total_records}",
        f"  Valid: {len(outcome.valid_records)}",
        f"  Invalid: {len(outcome.invalid_records)}",
        f"  Warnings: {len(warned)}",
        f"  Auto-fixed codes: {len(outcome.suggestions)}",
        f"  Duplicates: {len(outcome.duplicates.duplicates)}",
        "",
    ]

    if outcome.invalid_records:
        lines += ["INVALID RECORDS:", LINE]
        for inv in outcome.invalid_records:
            lines.append(f"Row {inv.row_number}: Patient {_patient(inv.record)}")
            lines += _bullets(inv.errors)
            for issue in inv.errors:
                for alt in issue.alternatives:
                    lines.append(f"      ? {alt.code}: {alt.name} ({round(alt.similarity * 100)}% match)")
        lines.append("")

    if warned:
        lines += ["WARNINGS:", LINE]
        for v in warned:
            lines.append(f"Row {v.row_number}: Patient {_patient(v.record)}")
            lines += _bullets(v.warnings)
        lines.append("")

    if outcome.info:
        lines += ["INFORMATION:", LINE]
        for issue in outcome.info:
            lines.append(f"  Row {issue.row_number}: {issue.message}")
        lines.append("")

    if outcome.suggestions:
        lines += [
            "AUTO-FIXED DIAGNOSIS CODES:",
            LINE,
            "The following codes were matched to similar codes in the vocabulary.",
            "Please review these changes to ensure they are correct.",
            "",
        ]
        for s in outcome.suggestions:
            lines += [
                f"Row {s.row_number}: {s.field}",
                f"  Original:  {s.original_code}",
                f"  Using:     {s.suggested_code} - {s.suggested_name} ({round(s.confidence * 100)}% match)",
            ]
            if s.alternatives:
                lines.append("  Other options:")
                for alt in s.alternatives:
                    lines.append(f"    - {alt.code}: {alt.name} ({round(alt.similarity * 100)}% match)")
            lines.append("")

    if outcome.dataset_warnings:
        lines += ["DUPLICATE PATIENT NUMBERS:", LINE]
        lines += [f"  {w}" for w in outcome.dataset_warnings]
        lines.append("")

    lines.append("Ready to upload." if outcome.can_proceed else "Fix invalid records before uploading.")
    return "\n".join(lines) + "\n"


def render_upload_report(results: UploadResults) -> str:
    rate = (results.success_count / results.total * 100) if results.total else 0.0
    lines = [
        RULE,
        "DHIMS2 UPLOAD - RESULTS REPORT",
        RULE,
        "",
        "SUMMARY:",
        f"  Total Records: {results.total}",
        f"  Successful: {results.success_count}",
        f"  Failed: {results.failed_count}",
        f"  Not attempted: {results.pending_count}",
        f"  Success Rate: {rate:.1f}%",
        f"  Duration: {results.elapsed_seconds:.1f}s",
    ]
    if results.start_time is not None:
        lines.append(f"  Started: {results.start_time.isoformat()}")
    if results.end_time is not None:
        lines.append(f"  Finished: {results.end_time.isoformat()}")
    lines.append("")

    if results.failed_records:
        lines += ["FAILED RECORDS:", LINE]
        for f in results.failed_records:
            lines.append(f"Row {f.row_number}: Patient {_patient(f.record)} ({f.attempts} attempts)")
            lines.append(f"  Error: {f.error}")
        lines.append("")
    return "\n".join(lines) + "\n"


def _issue_dict(issue: ValidationIssue) -> dict[str, Any]:
    data = asdict(issue)
    data["value"] = None if issue.value is None else str(issue.value)
    return data


def outcome_to_dict(outcome: ValidationOutcome) -> dict[str, Any]:
    return {
        "summary": {
            "total": outcome.total_records,
            "valid": len(outcome.valid_records),
            "invalid": len(outcome.invalid_records),
            "suggestions": len(outcome.suggestions),
            "duplicates": len(outcome.duplicates.duplicates),
            "canProceed": outcome.can_proceed,
        },
        "validRecords": [
            {"rowNumber": v.row_number, "record": v.record.to_dict(), "warnings": [_issue_dict(w) for w in v.warnings]}
            for v in outcome.valid_records
        ],
        "invalidRecords": [
            {"rowNumber": i.row_number, "record": i.record.to_dict(), "errors": [_issue_dict(e) for e in i.errors]}
            for i in outcome.invalid_records
        ],
        "suggestions": [s.to_dict() for s in outcome.suggestions],
        "transformations": [
            {"rowNumber": t.row_number, "field": t.field, "original": str(t.original), "cleaned": t.cleaned}
            for t in outcome.transformations
        ],
        "datasetWarnings": list(outcome.dataset_warnings),
    }


def _write_text(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def _write_json(path: Path, data: Any) -> Path:
    return _write_text(path, json.dumps(data, ensure_ascii=False, indent=2, default=str))


def write_validation_report(outcome: ValidationOutcome, output_dir: Path) -> Path:
    return _write_text(Path(output_dir) / "validation-report.txt", render_validation_report(outcome))


def write_outcome_json(outcome: ValidationOutcome, output_dir: Path) -> Path:
    return _write_json(Path(output_dir) / "validation-outcome.json", outcome_to_dict(outcome))


def write_upload_report(results: UploadResults, output_dir: Path) -> Path:
    return _write_text(Path(output_dir) / "upload-report.txt", render_upload_report(results))


def write_failed_records(results: UploadResults, output_dir: Path) -> Path:
    data = {
        "total": results.failed_count,
        "records": [f.to_dict() for f in results.failed_records],
    }
    return _write_json(Path(output_dir) / "failed-records.json", data)


def write_payload_preview(mapper: FieldMapper, records: Iterable[CleanedRecord], output_dir: Path) -> Path:
    return _write_json(Path(output_dir) / "payload-preview.json", mapper.batch_payload(records))
