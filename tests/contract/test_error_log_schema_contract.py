from __future__ import annotations

import json
import re
from pathlib import Path

from dhims_upload.cli import main as cli_main

"""Error log (JSON Lines) schema contract.

Fixed key set per line: timestamp, file, sheet, row, error_type, message
"""

REQUIRED_KEYS = {"timestamp", "file", "sheet", "row", "error_type", "message"}
TIMESTAMP_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d+)?Z$")
ERROR_TYPE_PATTERN = re.compile(r"^[A-Z][A-Z0-9_]*$")


def _log_lines(workdir: Path) -> list[dict]:
    logs = sorted((workdir / "logs").glob("errors-*.log"))
    assert len(logs) == 1
    assert re.match(r"^errors-\d{8}-\d{6}\.log$", logs[0].name)
    return [json.loads(line) for line in logs[0].read_text(encoding="utf-8").splitlines()]


def test_error_log_lines_follow_schema(temp_workdir, write_config, make_raw, write_workbook):
    rows = [
        make_raw().values,
        dict(make_raw().values, **{"Patient No.": "VR-A01-AAG0003", "Gender": None}),
        dict(make_raw().values, **{"Patient No.": "VR-A01-AAG0004", "Principal Diagnosis": "Stroke(I63)"}),
    ]
    write_workbook(rows)
    assert cli_main(["--input", "data/ward.xlsx", "--dry-run"]) == 2

    entries = _log_lines(temp_workdir)
    assert entries
    for entry in entries:
        assert set(entry) == REQUIRED_KEYS
        assert TIMESTAMP_PATTERN.match(entry["timestamp"])
        assert ERROR_TYPE_PATTERN.match(entry["error_type"])
        assert isinstance(entry["row"], int)
        assert entry["file"] == "ward.xlsx"
    assert {e["error_type"] for e in entries} == {"VALIDATION_ERROR", "DIAGNOSIS_UNMATCHED"}


def test_file_level_error_uses_unknown_row(temp_workdir, write_config, make_raw):
    import pandas as pd

    row = dict(make_raw().values)
    row.pop("Gender")
    pd.DataFrame([row]).to_excel(temp_workdir / "data" / "ward.xlsx", index=False, engine="openpyxl")

    assert cli_main(["--input", "data/ward.xlsx"]) == 1
    entries = _log_lines(temp_workdir)
    assert len(entries) == 1
    assert entries[0]["row"] == -1
    assert "Gender" in entries[0]["message"]
