from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta

from dhims_upload.models.upload_session import UploadedRecord, UploadResults
from dhims_upload.services.report import (
    outcome_to_dict,
    render_upload_report,
    render_validation_report,
    write_failed_records,
    write_outcome_json,
    write_payload_preview,
    write_upload_report,
    write_validation_report,
)


def _outcome(validator, make_raw):
    return validator.validate_dataset([
        make_raw(2),
        make_raw(3, values={"Patient No.": "VR-A01-AAG0003", "Gender": None}),
        make_raw(4, values={"Patient No.": "VR-A01-AAG0004", "Principal Diagnosis": "Pneumonia(J18.1)"}),
        make_raw(5),
    ])


def test_validation_report_sections(validator, make_raw):
    text = render_validation_report(_outcome(validator, make_raw))
    assert "DHIMS2 UPLOAD - VALIDATION REPORT" in text
    assert "  Total Records: 4" in text
    assert "  Valid: 3" in text
    assert "  Invalid: 1" in text
    assert "Row 3: Patient VR-A01-AAG0003" in text
    assert "  - Required field missing: Gender" in text
    assert "AUTO-FIXED DIAGNOSIS CODES:" in text
    assert "  Original:  J18.1" in text
    assert "DUPLICATE PATIENT NUMBERS:" in text
    assert text.rstrip().endswith("Fix invalid records before uploading.")


def test_validation_report_ready(validator, make_raw):
    text = render_validation_report(validator.validate_dataset([make_raw(2)]))
    assert "INVALID RECORDS:" not in text
    assert text.rstrip().endswith("Ready to upload.")


def test_outcome_to_dict_is_json_serializable(validator, make_raw):
    data = outcome_to_dict(_outcome(validator, make_raw))
    assert data["summary"] == {
        "total": 4, "valid": 3, "invalid": 1, "suggestions": 1, "duplicates": 1, "canProceed": False,
    }
    assert data["invalidRecords"][0]["rowNumber"] == 3
    assert data["suggestions"][0]["suggested_code"] == "J18.9"
    json.dumps(data, default=str)


def _results(cleaner, make_raw) -> UploadResults:
    ok = cleaner.clean(make_raw(2))
    bad = cleaner.clean(make_raw(3, values={"Patient No.": "VR-A01-AAG0003"}))
    start = datetime(2025, 6, 27, 8, 0, tzinfo=UTC)
    return UploadResults(
        total=4,
        success_count=1,
        failed_count=1,
        pending_count=2,
        success_records=[UploadedRecord(index=1, row_number=2, record=ok, attempts=1, entity_id="E1")],
        failed_records=[UploadedRecord(index=2, row_number=3, record=bad, attempts=3, error="HTTP 409: conflict")],
        start_time=start,
        end_time=start + timedelta(seconds=12),
    )


def test_upload_report(cleaner, make_raw):
    text = render_upload_report(_results(cleaner, make_raw))
    assert "  Successful: 1" in text
    assert "  Failed: 1" in text
    assert "  Not attempted: 2" in text
    assert "  Success Rate: 25.0%" in text
    assert "  Duration: 12.0s" in text
    assert "Row 3: Patient VR-A01-AAG0003 (3 attempts)" in text
    assert "  Error: HTTP 409: conflict" in text


def test_upload_report_empty():
    text = render_upload_report(UploadResults(total=0))
    assert "  Success Rate: 0.0%" in text
    assert "FAILED RECORDS:" not in text


def test_writers_create_files(tmp_path, validator, cleaner, mapper, make_raw):
    out = tmp_path / "output"
    outcome = _outcome(validator, make_raw)
    results = _results(cleaner, make_raw)

    assert write_validation_report(outcome, out).name == "validation-report.txt"
    assert json.loads(write_outcome_json(outcome, out).read_text(encoding="utf-8"))["summary"]["total"] == 4
    assert write_upload_report(results, out).read_text(encoding="utf-8").startswith("=" * 60)

    failed = json.loads(write_failed_records(results, out).read_text(encoding="utf-8"))
    assert failed["total"] == 1
    assert failed["records"][0]["rowNumber"] == 3
    assert failed["records"][0]["error"] == "HTTP 409: conflict"

    preview = json.loads(write_payload_preview(mapper, outcome.records_to_upload(), out).read_text(encoding="utf-8"))
    assert len(preview["events"]) == 3
    assert preview["events"][0]["program"] == "fFYTJRzD2qq"
