"""Domain models for the Excel -> DHIMS2 uploader.

Configuration, record, validation and upload-session types shared by the
services layer.
"""

from .config_models import FieldMapping, FieldType, MatchingSettings, StaticContext, UploadSettings
from .error_record import ErrorRecord
from .processing_result import PipelineResult
from .records import CleanedRecord, RawRecord, Transformation
from .upload_session import (
    CurrentRecord,
    ProgressSnapshot,
    UploadedRecord,
    UploadResults,
    UploadSession,
    UploadState,
)
from .validation import (
    DiagnosisCandidate,
    DiagnosisSuggestion,
    DuplicateGroup,
    DuplicateReport,
    InvalidRecord,
    RecordValidation,
    ValidationIssue,
    ValidationOutcome,
    ValidRecord,
)

__all__ = [
    # Configuration models
    "FieldType",
    "FieldMapping",
    "StaticContext",
    "UploadSettings",
    "MatchingSettings",
    # Records
    "RawRecord",
    "CleanedRecord",
    "Transformation",
    # Validation
    "ValidationIssue",
    "DiagnosisCandidate",
    "DiagnosisSuggestion",
    "RecordValidation",
    "ValidRecord",
    "InvalidRecord",
    "DuplicateGroup",
    "DuplicateReport",
    "ValidationOutcome",
    # Upload session
    "UploadState",
    "CurrentRecord",
    "UploadedRecord",
    "UploadResults",
    "ProgressSnapshot",
    "UploadSession",
    # Run results
    "ErrorRecord",
    "PipelineResult",
]
