from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dhims_upload.models.validation import DiagnosisCandidate, DiagnosisSuggestion

"""Diagnosis code matching against the ICD-style option vocabulary.

Resolution order for one raw value (first success wins):

1. extract the code token: "Stroke(I64.00)", "Sepsis(A41.9, I10.00)" or a bare "I64"
2. exact, case-insensitive lookup
3. decimal component stripped ("I64.0" -> "I64")
4. decimal suffix narrowed one digit at a time ("A35.001" -> "A35.00" -> "A35.0")
5. similarity ranking against every vocabulary entry, top 3 kept
6. best similarity >= threshold -> auto-accept with a DiagnosisSuggestion
7. otherwise DiagnosisMatchError carrying the ranked alternatives

Steps 3 and 4 add an informational note that a parent code was used.
"""

__all__ = [
    "DiagnosisEntry",
    "DiagnosisVocabulary",
    "DiagnosisMatch",
    "DiagnosisMatcher",
    "DiagnosisMatchError",
    "NOT_APPLICABLE_TOKENS",
    "similarity",
]

logger = logging.getLogger(__name__)

_MULTI_CODE_RE = re.compile(r"\(([A-Z]\d{2,3}\.?\d*(?:\s*,\s*[A-Z]\d{2,3}\.?\d*)+)\)", re.IGNORECASE)
_SINGLE_CODE_RE = re.compile(r"\(([A-Z]\d{2,3}\.?\d*)\)", re.IGNORECASE)
_BARE_CODE_RE = re.compile(r"^[A-Z]\d{2,3}(\.\d+)?$", re.IGNORECASE)

NOT_APPLICABLE_TOKENS = frozenset({"NA", "N/A", "NOT APPLICABLE"})

DEFAULT_THRESHOLD = 0.70
DEFAULT_LIMIT = 3


class DiagnosisMatchError(Exception):
    """Raised when a diagnosis value cannot be resolved to a vocabulary code."""

    def __init__(
        self,
        message: str,
        raw_value: Any = None,
        code: str | None = None,
        alternatives: Iterable[DiagnosisCandidate] = (),
    ) -> None:
        super().__init__(message)
        self.raw_value = raw_value
        self.code = code
        self.alternatives: tuple[DiagnosisCandidate, ...] = tuple(alternatives)


@dataclass(frozen=True)
class DiagnosisEntry:
    code: str
    name: str


class DiagnosisVocabulary:
    """Immutable set of accepted diagnosis codes.

    Built once per session (typically from the option-codes JSON export) and
    injected into DiagnosisMatcher.
    """

    def __init__(self, entries: Iterable[DiagnosisEntry | Mapping[str, Any]]) -> None:
        items: list[DiagnosisEntry] = []
        for e in entries:
            entry = e if isinstance(e, DiagnosisEntry) else self._entry_from_mapping(e)
            if entry is not None:
                items.append(entry)
        self._entries: tuple[DiagnosisEntry, ...] = tuple(items)
        self._by_code: dict[str, DiagnosisEntry] = {}
        for entry in self._entries:
            # 先勝ち (重複コードは最初の定義を採用)
            self._by_code.setdefault(entry.code.upper(), entry)

    @staticmethod
    def _entry_from_mapping(raw: Mapping[str, Any]) -> DiagnosisEntry | None:
        name = str(raw.get("name") or "").strip()
        code = str(raw.get("code") or "").strip()
        if not code and name:
            # "I64 - Stroke" 形式の name しか無いエントリ
            code = name.split(" - ")[0].strip()
        if not code:
            return None
        return DiagnosisEntry(code=code, name=name or code)

    @classmethod
    def from_file(cls, path: Path) -> DiagnosisVocabulary:
        """Load an option-codes JSON file.

        Accepted shapes: a list of {code, name}; or an object holding that list
        under "Diagnosis", "diagnosis" or "options".
        """
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        if isinstance(data, Mapping):
            for key in ("Diagnosis", "diagnosis", "options"):
                if key in data:
                    data = data[key]
                    break
            else:
                raise ValueError(f"no diagnosis option list found in {path}")
        if not isinstance(data, list):
            raise ValueError(f"diagnosis option list must be an array: {path}")
        vocab = cls(data)
        logger.debug("loaded %d diagnosis codes from %s", len(vocab), path)
        return vocab

    def lookup(self, code: str) -> DiagnosisEntry | None:
        return self._by_code.get(code.upper())

    def __contains__(self, code: object) -> bool:
        return isinstance(code, str) and code.upper() in self._by_code

    def __iter__(self) -> Iterator[DiagnosisEntry]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


@dataclass(frozen=True)
class DiagnosisMatch:
    """Successful resolution of one raw diagnosis value."""
    code: str
    name: str
    raw_code: str
    notes: tuple[str, ...] = ()
    suggestion: DiagnosisSuggestion | None = None
    additional_codes: tuple[str, ...] = ()

    @property
    def is_exact(self) -> bool:
        return self.code.upper() == self.raw_code.upper()


def similarity(raw_code: str, candidate_code: str) -> float:
    """Score how close `candidate_code` is to `raw_code` (0 means unrelated).

    same 3-char base -> 0.9
    same letter, category distance d -> 0.85 (d=0), 0.7-0.1*d (d<=2), 0.5 (d<=5), 0.3
    same letter, non-numeric category -> 0.2
    """
    raw = raw_code.upper()
    cand = candidate_code.upper()
    if not raw or not cand:
        return 0.0
    if cand[:3] == raw[:3]:
        return 0.9
    if cand[0] != raw[0]:
        return 0.0
    try:
        d = abs(int(raw[1:3]) - int(cand[1:3]))
    except ValueError:
        return 0.2
    if d == 0:
        return 0.85
    if d <= 2:
        return round(0.7 - 0.1 * d, 2)
    if d <= 5:
        return 0.5
    return 0.3


class DiagnosisMatcher:
    def __init__(
        self,
        vocabulary: DiagnosisVocabulary,
        auto_accept_threshold: float = DEFAULT_THRESHOLD,
        auto_accept: bool = True,
        limit: int = DEFAULT_LIMIT,
    ) -> None:
        self.vocabulary = vocabulary
        self.auto_accept_threshold = auto_accept_threshold
        self.auto_accept = auto_accept
        self.limit = limit

    @staticmethod
    def extract_codes(raw: Any) -> list[str]:
        """Return the code tokens found in `raw`, upper-cased. Empty list if none."""
        text = str(raw).strip()
        m = _MULTI_CODE_RE.search(text)
        if m:
            return [c.strip().upper() for c in re.split(r"\s*,\s*", m.group(1))]
        m = _SINGLE_CODE_RE.search(text)
        if m:
            return [m.group(1).upper()]
        if _BARE_CODE_RE.match(text):
            return [text.upper()]
        return []

    def match(self, raw: Any, field: str = "principalDiagnosis", row_number: int | None = None) -> DiagnosisMatch:
        codes = self.extract_codes(raw)
        if not codes:
            raise DiagnosisMatchError(
                f'Could not extract ICD code from "{raw}". Expected format: "Description(Code)"',
                raw_value=raw,
            )
        result = self.match_code(codes[0], field=field, row_number=row_number)
        extra = tuple(codes[1:])
        if not extra:
            return result
        notes = result.notes
        if field == "principalDiagnosis":
            notes = notes + (
                f'Found {len(codes)} diagnosis codes. Using "{codes[0]}" as principal. '
                f'Additional code(s) "{", ".join(extra)}" should be in Additional Diagnosis field.',
            )
        return DiagnosisMatch(
            code=result.code,
            name=result.name,
            raw_code=result.raw_code,
            notes=notes,
            suggestion=result.suggestion,
            additional_codes=extra,
        )

    def match_code(self, code: str, field: str = "principalDiagnosis", row_number: int | None = None) -> DiagnosisMatch:
        raw_code = code.strip().upper()

        entry = self.vocabulary.lookup(raw_code)
        if entry is not None:
            return DiagnosisMatch(code=entry.code, name=entry.name, raw_code=raw_code)

        entry = self._match_parent(raw_code)
        if entry is not None:
            note = f'Using "{entry.code}" (matched from "{raw_code}" by removing decimal suffix)'
            return DiagnosisMatch(code=entry.code, name=entry.name, raw_code=raw_code, notes=(note,))

        candidates = self.rank_candidates(raw_code)
        if not candidates:
            raise DiagnosisMatchError(
                f'No match: code "{raw_code}" not found in the diagnosis vocabulary and no similar codes exist',
                raw_value=code,
                code=raw_code,
            )

        best = candidates[0]
        ranked = ", ".join(f"{c.code} ({round(c.similarity * 100)}%)" for c in candidates)
        if best.similarity < self.auto_accept_threshold:
            raise DiagnosisMatchError(
                f'Unmatched diagnosis: code "{raw_code}" not found. Did you mean: {ranked}',
                raw_value=code,
                code=raw_code,
                alternatives=candidates,
            )
        if not self.auto_accept:
            raise DiagnosisMatchError(
                f'Unmatched diagnosis: code "{raw_code}" not found. Closest match needs confirmation: {ranked}',
                raw_value=code,
                code=raw_code,
                alternatives=candidates,
            )

        suggestion = DiagnosisSuggestion(
            row_number=row_number,
            field=field,
            original_code=raw_code,
            suggested_code=best.code,
            suggested_name=best.name,
            confidence=best.similarity,
            alternatives=tuple(candidates[1:]),
        )
        note = (
            f'Code "{raw_code}" not found. Auto-using closest match "{best.code}" - {best.name} '
            f"({round(best.similarity * 100)}% match)"
        )
        logger.debug("row %s: %s", row_number, note)
        return DiagnosisMatch(
            code=best.code,
            name=best.name,
            raw_code=raw_code,
            notes=(note,),
            suggestion=suggestion,
        )

    def _match_parent(self, raw_code: str) -> DiagnosisEntry | None:
        if "." not in raw_code:
            return None
        base, _, suffix = raw_code.partition(".")
        entry = self.vocabulary.lookup(base)
        if entry is not None:
            return entry
        # I64.123 -> I64.12 -> I64.1
        for width in range(len(suffix) - 1, 0, -1):
            entry = self.vocabulary.lookup(f"{base}.{suffix[:width]}")
            if entry is not None:
                return entry
        return None

    def rank_candidates(self, raw_code: str, limit: int | None = None) -> list[DiagnosisCandidate]:
        scored = []
        for entry in self.vocabulary:
            score = similarity(raw_code, entry.code)
            if score > 0:
                scored.append(DiagnosisCandidate(code=entry.code, name=entry.name, similarity=score))
        # sorted() は安定ソート: 同点は語彙の並び順
        scored = sorted(scored, key=lambda c: c.similarity, reverse=True)
        return scored[: limit if limit is not None else self.limit]
