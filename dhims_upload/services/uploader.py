from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime

from dhims_upload.models.config_models import UploadSettings
from dhims_upload.models.records import CleanedRecord
from dhims_upload.models.upload_session import (
    CurrentRecord,
    ProgressSnapshot,
    UploadedRecord,
    UploadResults,
    UploadSession,
    UploadState,
)
from dhims_upload.services.api_client import EventApiClient, JobPollTimeout, SubmissionError, SubmissionReceipt
from dhims_upload.services.field_mapper import FieldMapper

"""Sequential batch upload engine.

One worker drives the records in order. Record i is fully resolved (success
or retries exhausted) before record i+1 starts. Pause and cancel are
cooperative and observed only at record boundaries; an in-flight HTTP call
always finishes.

    idle -> running <-> paused -> (cancelled | completed)
"""

__all__ = [
    "BatchUploadEngine",
    "UploadCoordinator",
    "UploadAbortedError",
    "ProgressCallback",
]

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressSnapshot], None]


class UploadAbortedError(Exception):
    """Unexpected failure inside the upload loop. `results` holds everything resolved so far."""

    def __init__(self, message: str, results: UploadResults) -> None:
        super().__init__(message)
        self.results = results


class BatchUploadEngine:
    def __init__(
        self,
        client: EventApiClient,
        mapper: FieldMapper,
        records: list[CleanedRecord],
        settings: UploadSettings | None = None,
        on_progress: ProgressCallback | None = None,
        on_complete: Callable[[UploadResults], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.mapper = mapper
        self.settings = settings or UploadSettings()
        self.session = UploadSession.create(records)
        self._on_progress = on_progress
        self._on_complete = on_complete
        self._sleep = sleep
        self._cond = threading.Condition()

    # --- observers ---------------------------------------------------------
    @property
    def results(self) -> UploadResults:
        return self.session.results

    @property
    def state(self) -> UploadState:
        return self.session.state

    def snapshot(self) -> ProgressSnapshot:
        with self._cond:
            return self.session.snapshot()

    def _emit(self) -> None:
        if self._on_progress is not None:
            self._on_progress(self.snapshot())

    # --- control signals ---------------------------------------------------
    def pause(self) -> None:
        with self._cond:
            self.session.is_paused = True
            if self.session.state is UploadState.RUNNING:
                self.session.state = UploadState.PAUSED
            self._cond.notify_all()
        logger.info("upload paused")
        self._emit()

    def resume(self) -> None:
        with self._cond:
            self.session.is_paused = False
            if self.session.state is UploadState.PAUSED:
                self.session.state = UploadState.RUNNING
            self._cond.notify_all()
        logger.info("upload resumed")
        self._emit()

    def cancel(self) -> None:
        with self._cond:
            self.session.is_cancelled = True
            self._cond.notify_all()
        logger.info("upload cancellation requested")
        self._emit()

    def _await_turn(self) -> bool:
        """Block while paused. Returns False when the run has been cancelled."""
        with self._cond:
            self._cond.wait_for(lambda: not self.session.is_paused or self.session.is_cancelled)
            if self.session.is_cancelled:
                return False
            self.session.state = UploadState.RUNNING
            return True

    # --- driving loop ------------------------------------------------------
    def start(self) -> UploadResults:
        session = self.session
        results = session.results
        with self._cond:
            if session.state is not UploadState.IDLE:
                raise RuntimeError(f"upload session already {session.state.value}")
            if not session.is_paused:
                session.state = UploadState.RUNNING
            else:
                session.state = UploadState.PAUSED
        results.start_time = datetime.now(UTC)
        total = len(session.records)
        logger.info(f"upload started: records={total} endpoint={self.client.endpoint_url}")

        try:
            for i, record in enumerate(session.records):
                if not self._await_turn():
                    logger.info(f"upload cancelled after {results.resolved_count}/{total} records")
                    break
                session.cursor = i
                results.current_record = CurrentRecord(
                    index=i + 1,
                    row_number=record.row_number,
                    total=total,
                    patient_number=record.get("patientNumber"),
                )
                verify = i == 0 and self.settings.verify_first_record
                self.upload_record_with_retry(record, index=i + 1, verify=verify)

                session.cursor = i + 1
                results.pending_count = total - (i + 1)
                self._emit()

                if i < total - 1:
                    self._sleep(self.settings.rate_limit_seconds)
        except Exception as e:
            with self._cond:
                session.state = UploadState.CANCELLED
            results.current_record = None
            results.end_time = datetime.now(UTC)
            logger.error(f"upload aborted: {e}", exc_info=True)
            self._emit()
            raise UploadAbortedError(f"upload aborted: {e}", results) from e

        results.current_record = None
        results.end_time = datetime.now(UTC)
        with self._cond:
            cancelled = session.is_cancelled and session.cursor < total
            session.state = UploadState.CANCELLED if cancelled else UploadState.COMPLETED
        logger.info(
            f"upload {session.state.value}: success={results.success_count} "
            f"failed={results.failed_count} pending={results.pending_count}"
        )
        self._emit()
        if self._on_complete is not None:
            self._on_complete(results)
        return results

    def upload_record_with_retry(self, record: CleanedRecord, index: int = 0, verify: bool = False) -> UploadedRecord:
        """Submit one record with up to `retry_attempts` attempts and linear backoff."""
        results = self.session.results
        attempts = self.settings.retry_attempts
        last_error: SubmissionError | None = None

        for attempt in range(1, attempts + 1):
            try:
                receipt = self.upload_record(record, verify=verify)
            except SubmissionError as e:
                last_error = e
                logger.warning(f"row {record.row_number}: upload failed (attempt {attempt}/{attempts}): {e}")
                if attempt < attempts:
                    self._sleep(self.settings.retry_base_delay * attempt)
                continue
            uploaded = UploadedRecord(
                index=index,
                row_number=record.row_number,
                record=record,
                attempts=attempt,
                entity_id=receipt.entity_id,
                job_id=receipt.job_id,
            )
            results.success_count += 1
            results.success_records.append(uploaded)
            logger.debug(f"row {record.row_number}: uploaded (attempt {attempt})")
            return uploaded

        message = str(last_error) if last_error is not None else "no upload attempt made"
        uploaded = UploadedRecord(
            index=index,
            row_number=record.row_number,
            record=record,
            attempts=attempts,
            error=message,
        )
        results.failed_count += 1
        results.failed_records.append(uploaded)
        results.error_messages.append(f"Row {record.row_number}: {message}")
        logger.error(f"row {record.row_number}: giving up after {attempts} attempts: {message}")
        return uploaded

    def upload_record(self, record: CleanedRecord, verify: bool = False) -> SubmissionReceipt:
        """One submission attempt. Raises SubmissionError on any failure."""
        payload = self.mapper.to_payload(record)
        receipt = self.client.submit(payload)
        if verify:
            self._verify(receipt, record)
        return receipt

    def _verify(self, receipt: SubmissionReceipt, record: CleanedRecord) -> None:
        if receipt.is_async:
            try:
                self.client.wait_for_job(
                    receipt.location,
                    job_id=receipt.job_id,
                    attempts=self.settings.job_poll_attempts,
                    interval=self.settings.job_poll_interval,
                    sleep=self._sleep,
                )
            except JobPollTimeout as e:
                logger.warning(f"row {record.row_number}: {e}; counting submission as accepted")
                return
            logger.info(f"row {record.row_number}: job {receipt.job_id} completed")
            return
        if receipt.entity_id:
            if self.client.read_back(receipt.entity_id) is None:
                logger.warning(f"row {record.row_number}: could not read back event {receipt.entity_id}")
            else:
                logger.info(f"row {record.row_number}: event {receipt.entity_id} verified")


class UploadCoordinator:
    """Owns the single active upload engine.

    Starting a new engine first requests cancellation of the previous one.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: BatchUploadEngine | None = None

    @property
    def active(self) -> BatchUploadEngine | None:
        return self._active

    def start(self, engine: BatchUploadEngine) -> UploadResults:
        with self._lock:
            prior, self._active = self._active, engine
        if prior is not None and not prior.state.is_terminal:
            logger.info("cancelling previous upload session")
            prior.cancel()
        try:
            return engine.start()
        finally:
            with self._lock:
                if self._active is engine:
                    self._active = None

    def pause(self) -> None:
        if self._active is not None:
            self._active.pause()

    def resume(self) -> None:
        if self._active is not None:
            self._active.resume()

    def cancel(self) -> None:
        if self._active is not None:
            self._active.cancel()
