from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import UTC, datetime

"""ErrorRecord model for the JSON Lines error log.

One ErrorRecord per rejected or failed record. row=-1 is the sentinel for
file-level problems where no spreadsheet row applies (missing columns,
unreadable workbook).

Known error_type values:
    VALIDATION_ERROR     record failed cleaning / validation
    DIAGNOSIS_UNMATCHED  diagnosis code could not be matched to the vocabulary
    SUBMISSION_FAILED    record exhausted its upload attempts
"""

__all__ = [
    "ErrorRecord",
    "VALIDATION_ERROR",
    "DIAGNOSIS_UNMATCHED",
    "SUBMISSION_FAILED",
]

VALIDATION_ERROR = "VALIDATION_ERROR"
DIAGNOSIS_UNMATCHED = "DIAGNOSIS_UNMATCHED"
SUBMISSION_FAILED = "SUBMISSION_FAILED"


@dataclass(frozen=True)
class ErrorRecord:
    """Structured error record for JSON Lines logging.

    Attributes:
        timestamp: ISO8601 UTC timestamp with 'Z' suffix
        file: source workbook name
        sheet: sheet name within the workbook
        row: spreadsheet row number (header-relative, first data row = 2), -1 if unknown
        error_type: error classification in UPPER_SNAKE_CASE format
        message: human readable description
    """
    timestamp: str  # ISO8601 UTC
    file: str
    sheet: str
    row: int  # 行番号。不明な場合 -1 許容
    error_type: str  # UPPER_SNAKE
    message: str

    @staticmethod
    def create(file: str, sheet: str, row: int, error_type: str, message: str) -> ErrorRecord:
        ts = datetime.now(UTC).isoformat().replace("+00:00", "Z")
        return ErrorRecord(
            timestamp=ts,
            file=file,
            sheet=sheet,
            row=row,
            error_type=error_type,
            message=message,
        )

    def to_json_line(self) -> str:
        # 追加キー阻止: dataclass -> dict して json.dumps
        return json.dumps(asdict(self), ensure_ascii=False)
