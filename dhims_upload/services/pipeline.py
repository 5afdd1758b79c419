from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

from ..config.loader import UploadConfig
from ..excel.reader import ReaderError, read_records
from ..logging.error_log import ErrorLogBuffer, ErrorRecord
from ..models.error_record import DIAGNOSIS_UNMATCHED, SUBMISSION_FAILED, VALIDATION_ERROR
from ..models.processing_result import PipelineResult
from ..models.records import RawRecord
from ..models.upload_session import UploadResults
from ..models.validation import ValidationOutcome
from . import report
from .api_client import EventApiClient
from .cleaner import RecordCleaner
from .diagnosis import DiagnosisMatcher, DiagnosisVocabulary
from .field_mapper import FieldMapper
from .progress import UploadProgressBar
from .uploader import BatchUploadEngine, UploadAbortedError, UploadCoordinator
from .validator import Validator

"""Pipeline orchestration: read -> clean/validate -> report -> upload.

UploadPipeline wires the components for one configuration. The CLI and any
embedding host use the same object; nothing here depends on argparse.

Outputs (under config.output_directory):
    validation-report.txt, validation-outcome.json   always
    payload-preview.json                             dry-run
    upload-report.txt, failed-records.json           after an upload
Errors go to logs/errors-YYYYMMDD-HHMMSS.log, flushed once per run.
"""

__all__ = [
    "UploadPipeline",
    "ProcessingError",
]

logger = logging.getLogger(__name__)


class ProcessingError(Exception):
    """Fatal pipeline error (unreadable input, missing vocabulary, aborted upload)."""
    pass


class UploadPipeline:
    def __init__(
        self,
        config: UploadConfig,
        client: EventApiClient | None = None,
        vocabulary: DiagnosisVocabulary | None = None,
        error_log: ErrorLogBuffer | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.mapper = FieldMapper(config.field_mappings, config.context)
        if vocabulary is None and config.matching.diagnosis_codes:
            vocabulary = self._load_vocabulary(Path(config.matching.diagnosis_codes))
        self.vocabulary = vocabulary
        self.matcher = (
            DiagnosisMatcher(
                vocabulary,
                auto_accept_threshold=config.matching.auto_accept_threshold,
                auto_accept=config.matching.auto_accept_suggestions,
            )
            if vocabulary is not None
            else None
        )
        self.cleaner = RecordCleaner(self.mapper, self.matcher)
        self.validator = Validator(self.mapper, self.cleaner, duplicate_field=config.duplicate_field)
        self.error_log = error_log if error_log is not None else ErrorLogBuffer()
        self.coordinator = UploadCoordinator()
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep

    @staticmethod
    def _load_vocabulary(path: Path) -> DiagnosisVocabulary:
        if not path.exists():
            raise ProcessingError(f"diagnosis code file not found: {path}")
        try:
            return DiagnosisVocabulary.from_file(path)
        except ValueError as e:
            raise ProcessingError(f"invalid diagnosis code file {path}: {e}") from e

    @property
    def client(self) -> EventApiClient:
        if self._client is None:
            creds = self.config.credentials
            if creds.is_empty:
                logger.warning("no credentials configured (set DHIMS_SESSION_ID or DHIMS_USERNAME/DHIMS_PASSWORD)")
            self._client = EventApiClient(
                self.config.context.endpoint_url,
                headers=self.config.context.headers,
                timeout=self.config.upload.request_timeout,
                session_id=creds.session_id,
                auth=creds.basic_auth,
            )
        return self._client

    @property
    def output_dir(self) -> Path:
        return Path(self.config.output_directory)

    # ------------------------------------------------------------------
    def read(self, input_path: Path, sheet: str | None = None) -> list[RawRecord]:
        return read_records(
            input_path,
            sheet_name=sheet,
            null_sentinels=self.config.null_sentinels,
            expected_columns=self.mapper.expected_columns(),
        )

    def validate(self, records: list[RawRecord]) -> ValidationOutcome:
        outcome = self.validator.validate_dataset(records)
        logger.info(
            f"validated records={outcome.total_records} valid={len(outcome.valid_records)} "
            f"invalid={len(outcome.invalid_records)}"
        )
        for s in outcome.suggestions:
            logger.info(
                f"row {s.row_number}: {s.field} {s.original_code} -> {s.suggested_code} "
                f"({round(s.confidence * 100)}% match)"
            )
        for w in outcome.dataset_warnings:
            logger.warning(w)
        return outcome

    def upload(self, outcome: ValidationOutcome) -> UploadResults:
        records = outcome.records_to_upload()
        if not records:
            logger.info("no valid records to upload")
            return UploadResults(total=0)
        with UploadProgressBar(len(records)) as bar:
            engine = BatchUploadEngine(
                self.client,
                self.mapper,
                records,
                settings=self.config.upload,
                on_progress=bar,
                sleep=self._sleep,
            )
            return self.coordinator.start(engine)

    def cancel(self) -> None:
        self.coordinator.cancel()

    def close(self) -> None:
        """Close the HTTP session if this pipeline created it."""
        if self._owns_client and self._client is not None:
            self._client.close()
            self._client = None

    # ------------------------------------------------------------------
    def _log_invalid(self, outcome: ValidationOutcome, file_name: str) -> None:
        for inv in outcome.invalid_records:
            sheet = inv.record.sheet or ""
            for issue in inv.errors:
                error_type = VALIDATION_ERROR
                if issue.field in self.mapper.mappings and self.mapper.get(issue.field).is_diagnosis:
                    error_type = DIAGNOSIS_UNMATCHED
                self.error_log.append(
                    ErrorRecord.create(file_name, sheet, inv.row_number, error_type, f"{issue.field}: {issue.message}")
                )

    def _log_failed(self, results: UploadResults, file_name: str) -> None:
        for f in results.failed_records:
            self.error_log.append(
                ErrorRecord.create(file_name, f.record.sheet or "", f.row_number, SUBMISSION_FAILED, f.error or "")
            )

    def _flush_error_log(self) -> None:
        try:
            path = self.error_log.flush()
        except OSError as e:
            # ログ書き込み失敗で処理全体を失敗させない
            logger.warning(f"could not write error log: {e}")
            return
        if path is not None:
            logger.info(f"error log written: {path}")

    def run(
        self,
        input_path: Path | None = None,
        sheet: str | None = None,
        dry_run: bool = False,
        strict: bool = False,
    ) -> PipelineResult:
        """Run the whole pipeline once, then release the HTTP session.

        Raises:
            ProcessingError: input cannot be read, or the upload loop aborted
        """
        try:
            return self._run(input_path, sheet, dry_run, strict)
        finally:
            self.close()

    def _run(
        self,
        input_path: Path | None,
        sheet: str | None,
        dry_run: bool,
        strict: bool,
    ) -> PipelineResult:
        start_time = datetime.now(UTC)
        source = input_path or (Path(self.config.source_file) if self.config.source_file else None)
        if source is None:
            raise ProcessingError("no input file given (use --input or source.file)")
        source = Path(source)
        sheet = sheet if sheet is not None else self.config.source_sheet

        try:
            records = self.read(source, sheet)
        except ReaderError as e:
            self.error_log.append(ErrorRecord.create(source.name, sheet or "", -1, VALIDATION_ERROR, str(e)))
            self._flush_error_log()
            raise ProcessingError(str(e)) from e
        logger.info(f"read {len(records)} records from {source.name}")

        outcome = self.validate(records)
        paths = {
            "validation_report": report.write_validation_report(outcome, self.output_dir),
            "validation_outcome": report.write_outcome_json(outcome, self.output_dir),
        }
        self._log_invalid(outcome, source.name)

        upload: UploadResults | None = None
        pending = 0
        if dry_run:
            paths["payload_preview"] = report.write_payload_preview(
                self.mapper, outcome.records_to_upload(), self.output_dir
            )
            logger.info(f"dry-run: payload preview written to {paths['payload_preview']}")
        elif strict and not outcome.can_proceed:
            pending = len(outcome.valid_records)
            logger.error(f"strict mode: {len(outcome.invalid_records)} invalid records, upload skipped")
        else:
            try:
                upload = self.upload(outcome)
            except UploadAbortedError as e:
                self._log_failed(e.results, source.name)
                report.write_upload_report(e.results, self.output_dir)
                report.write_failed_records(e.results, self.output_dir)
                self._flush_error_log()
                raise ProcessingError(str(e)) from e
            pending = upload.pending_count
            paths["upload_report"] = report.write_upload_report(upload, self.output_dir)
            if upload.failed_records:
                paths["failed_records"] = report.write_failed_records(upload, self.output_dir)
            self._log_failed(upload, source.name)

        self._flush_error_log()

        end_time = datetime.now(UTC)
        elapsed = (end_time - start_time).total_seconds()
        uploaded = upload.success_count if upload else 0
        return PipelineResult(
            total_records=outcome.total_records,
            valid_records=len(outcome.valid_records),
            invalid_records=len(outcome.invalid_records),
            uploaded=uploaded,
            failed=upload.failed_count if upload else 0,
            pending=pending,
            suggestions=len(outcome.suggestions),
            duplicates=len(outcome.duplicates.duplicates),
            start_time=start_time,
            end_time=end_time,
            elapsed_seconds=elapsed,
            throughput_records_per_sec=(uploaded / elapsed) if elapsed > 0 else 0.0,
            outcome=outcome,
            upload=upload,
            dry_run=dry_run,
            cancelled=bool(upload and upload.pending_count > 0),
            report_paths=paths,
        )
