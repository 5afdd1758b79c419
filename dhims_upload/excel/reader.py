from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path
from typing import Any

import pandas as pd
import pandas._libs.parsers as parsers

from ..models.records import RawRecord

"""Spreadsheet reader.

- 1行目をヘッダ行、2行目以降をデータ行として扱う (row_number は 2 始まり)
- .xlsx / .xls は openpyxl 経由の pandas.read_excel、.csv は read_csv
- 完全に空の行はスキップ、NaN / 空文字は None、文字列は strip
- "NA" / "N/A" は pandas の既定 NaN 変換から除外 (クリーナー側で意味を持つため)
"""

__all__ = [
    "ReaderError",
    "MissingColumnsError",
    "DEFAULT_KEEP_NA_STRINGS",
    "list_sheets",
    "read_records",
]

DEFAULT_KEEP_NA_STRINGS = ("NA", "N/A", "None")
FIRST_DATA_ROW = 2


class ReaderError(Exception):
    """Raised when the input file cannot be read."""


class MissingColumnsError(ReaderError):
    """Raised when mapped columns are missing from the header row."""

    def __init__(self, sheet: str, missing: list[str]) -> None:
        super().__init__(f"sheet '{sheet}' missing columns: {sorted(missing)}")
        self.sheet = sheet
        self.missing = sorted(missing)


def _na_values(keep_na_strings: Iterable[str]) -> list[str]:
    # pandas._libs.parsers.STR_NA_VALUES には既定のNA文字列集合が格納されている
    return sorted(set(parsers.STR_NA_VALUES) - set(keep_na_strings))


def list_sheets(path: Path) -> list[str]:
    if Path(path).suffix.lower() == ".csv":
        return [Path(path).stem]
    try:
        with pd.ExcelFile(path) as xls:
            return [str(n) for n in xls.sheet_names]
    except (OSError, ValueError) as e:
        raise ReaderError(f"cannot open workbook {path}: {e}") from e


def _read_frame(path: Path, sheet_name: str | None, keep_na_strings: Iterable[str]) -> tuple[str, pd.DataFrame]:
    na_values = _na_values(keep_na_strings)
    if path.suffix.lower() == ".csv":
        df = pd.read_csv(path, dtype=object, keep_default_na=False, na_values=na_values)
        return path.stem, df
    sheets = list_sheets(path)
    if not sheets:
        raise ReaderError(f"workbook has no sheets: {path}")
    name = sheet_name if sheet_name is not None else sheets[0]
    if name not in sheets:
        raise ReaderError(f"sheet '{name}' not found in {path.name} (available: {', '.join(sheets)})")
    df = pd.read_excel(path, sheet_name=name, engine="openpyxl", keep_default_na=False, na_values=na_values)
    return name, df


def _normalize_cell(value: Any, null_sentinels: set[str]) -> Any:
    if value is None:
        return None
    if not isinstance(value, str) and pd.isna(value):
        return None
    if isinstance(value, str):
        stripped = value.strip()
        if stripped == "" or stripped.upper() in null_sentinels:
            return None
        return stripped
    return value


def read_records(
    path: Path,
    sheet_name: str | None = None,
    null_sentinels: Iterable[str] | None = None,
    expected_columns: Iterable[str] | None = None,
    keep_na_strings: Iterable[str] = DEFAULT_KEEP_NA_STRINGS,
) -> list[RawRecord]:
    """Read one sheet into RawRecords.

    Raises:
        ReaderError: file missing / unreadable or sheet not found
        MissingColumnsError: expected columns absent from the header row
    """
    path = Path(path)
    if not path.exists():
        raise ReaderError(f"input file not found: {path}")
    try:
        name, df = _read_frame(path, sheet_name, keep_na_strings)
    except ReaderError:
        raise
    except (OSError, ValueError, KeyError) as e:
        raise ReaderError(f"cannot read {path.name}: {e}") from e

    columns = [str(c).strip() for c in df.columns]
    if expected_columns is not None:
        missing = [c for c in expected_columns if c not in set(columns)]
        if missing:
            raise MissingColumnsError(name, missing)

    sentinels = {s.upper() for s in (null_sentinels or ())}
    records: list[RawRecord] = []
    for offset, raw in enumerate(df.itertuples(index=False, name=None)):
        values = {col: _normalize_cell(val, sentinels) for col, val in zip(columns, raw, strict=False)}
        if all(v is None for v in values.values()):
            continue
        records.append(RawRecord(row_number=offset + FIRST_DATA_ROW, values=values, sheet=name))
    return records
