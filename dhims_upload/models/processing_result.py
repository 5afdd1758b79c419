from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from .upload_session import UploadResults
from .validation import ValidationOutcome

"""Run-level result of one validate -> upload pipeline pass.

Holds the counters needed for the SUMMARY line plus the full validation
outcome and upload results for reporting.
"""

__all__ = [
    "PipelineResult",
]


@dataclass(frozen=True)
class PipelineResult:
    total_records: int  # 読み込んだデータ行数
    valid_records: int
    invalid_records: int
    uploaded: int  # 送信成功
    failed: int  # リトライ上限到達
    pending: int  # キャンセル等で未送信
    suggestions: int  # 自動補正された診断コード
    duplicates: int
    start_time: datetime
    end_time: datetime
    elapsed_seconds: float
    throughput_records_per_sec: float
    outcome: ValidationOutcome
    upload: UploadResults | None = None  # dry-run / strict 中断時は None
    dry_run: bool = False
    cancelled: bool = False
    report_paths: dict[str, Path] = field(default_factory=dict)

    @property
    def has_problems(self) -> bool:
        return self.invalid_records > 0 or self.failed > 0 or self.pending > 0
