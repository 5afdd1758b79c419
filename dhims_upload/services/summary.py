from __future__ import annotations

from ..models.processing_result import PipelineResult

"""SUMMARY line rendering.

Format:
SUMMARY records={total} valid={valid} invalid={invalid} uploaded={uploaded}
failed={failed} pending={pending} suggestions={n} duplicates={n}
elapsed_sec={elapsed} throughput_rps={throughput} [mode=dry-run]
"""

__all__ = [
    "render_summary_line",
    "format_number",
]


def format_number(value: float) -> str:
    """Render a metric without scientific notation or trailing zeros."""
    if value == 0:
        return "0"
    if value == int(value):
        return str(int(value))
    if value < 0.01:
        return f"{value:.6f}".rstrip("0").rstrip(".")
    return str(round(value, 3))


def render_summary_line(result: PipelineResult) -> str:
    """Render the SUMMARY line for a pipeline run.

    >>> from datetime import datetime, timezone
    >>> from dhims_upload.models.validation import ValidationOutcome
    >>> t = datetime(2025, 1, 1, tzinfo=timezone.utc)
    >>> r = PipelineResult(
    ...     total_records=3, valid_records=2, invalid_records=1, uploaded=2, failed=0,
    ...     pending=0, suggestions=0, duplicates=0, start_time=t, end_time=t,
    ...     elapsed_seconds=2.0, throughput_records_per_sec=1.0,
    ...     outcome=ValidationOutcome(total_records=3),
    ... )
    >>> render_summary_line(r)
    'SUMMARY records=3 valid=2 invalid=1 uploaded=2 failed=0 pending=0 suggestions=0 duplicates=0 elapsed_sec=2 throughput_rps=1'
    """
    line = (
        f"SUMMARY records={result.total_records} "
        f"valid={result.valid_records} "
        f"invalid={result.invalid_records} "
        f"uploaded={result.uploaded} "
        f"failed={result.failed} "
        f"pending={result.pending} "
        f"suggestions={result.suggestions} "
        f"duplicates={result.duplicates} "
        f"elapsed_sec={format_number(result.elapsed_seconds)} "
        f"throughput_rps={format_number(result.throughput_records_per_sec)}"
    )
    if result.dry_run:
        line += " mode=dry-run"
    return line
