from __future__ import annotations

import sys
from typing import Any

from tqdm import tqdm
from tqdm.std import tqdm as TqdmType

from ..models.upload_session import ProgressSnapshot

"""Upload progress display with tqdm (TTY only).

UploadProgressBar is a progress observer for BatchUploadEngine: pass the
instance as `on_progress`. It advances one step per resolved record and shows
success / failed counts in the postfix. In non-TTY environments (CI) no bar
is created, so logs stay free of ANSI control sequences.
"""

__all__ = [
    "UploadProgressBar",
    "is_tty_enabled",
]


def is_tty_enabled() -> bool:
    """Return True if stdout is a TTY and progress should be displayed."""
    return sys.stdout.isatty()


class UploadProgressBar:
    """tqdm progress bar fed from ProgressSnapshot notifications."""

    def __init__(self, total_records: int, *, description: str = "Uploading records") -> None:
        """Initialize the progress bar.

        Args:
            total_records: number of records that will be submitted
            description: label shown in front of the bar
        """
        self.total_records = total_records
        self.description = description
        self.resolved = 0

        self.enabled = is_tty_enabled()
        self.pbar: TqdmType[Any] | None
        if self.enabled:
            self.pbar = tqdm(
                total=total_records,
                desc=description,
                unit="rec",
                disable=False,
                leave=True,
                position=0,
                ncols=80,
                ascii=True,
            )
        else:
            self.pbar = None

    def __call__(self, snapshot: ProgressSnapshot) -> None:
        self.update(snapshot)

    def update(self, snapshot: ProgressSnapshot) -> None:
        """Apply one snapshot (record boundary, pause/resume/cancel or completion)."""
        resolved = snapshot.success + snapshot.failed
        delta = resolved - self.resolved
        self.resolved = resolved
        if not self.enabled or self.pbar is None:
            return
        if delta > 0:
            self.pbar.update(delta)
        if snapshot.is_cancelled:
            self.pbar.set_description(f"{self.description} (cancelled)")
        elif snapshot.is_paused:
            self.pbar.set_description(f"{self.description} (paused)")
        else:
            self.pbar.set_description(self.description)
        self.pbar.set_postfix(success=snapshot.success, failed=snapshot.failed)

    def close(self) -> None:
        if self.enabled and self.pbar is not None:
            self.pbar.close()
            self.pbar = None

    def __enter__(self) -> UploadProgressBar:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
