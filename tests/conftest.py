# Shared pytest fixtures
from __future__ import annotations

import json
import tempfile
from pathlib import Path
from typing import Any

import pytest

from dhims_upload.config.loader import UploadConfig, load_config
from dhims_upload.logging.init import reset_logging
from dhims_upload.models.records import RawRecord
from dhims_upload.services.cleaner import RecordCleaner
from dhims_upload.services.diagnosis import DiagnosisMatcher, DiagnosisVocabulary
from dhims_upload.services.field_mapper import FieldMapper
from dhims_upload.services.validator import Validator

VOCABULARY_ENTRIES = [
    {"code": "A01.00", "name": "A01.00 - Typhoid fever, unspecified"},
    {"code": "A35.00", "name": "A35.00 - Other tetanus"},
    {"code": "B54", "name": "B54 - Unspecified malaria"},
    {"code": "D57.00", "name": "D57.00 - Hb-SS disease with crisis, unspecified"},
    {"code": "E11.65", "name": "E11.65 - Type 2 diabetes mellitus with hyperglycemia"},
    {"code": "I10.00", "name": "I10.00 - Essential (primary) hypertension"},
    {"code": "I64", "name": "I64 - Stroke, not specified as haemorrhage or infarction"},
    {"code": "J18.9", "name": "J18.9 - Pneumonia, unspecified organism"},
]

VALID_ROW = {
    "Patient No.": "VR-A01-AAG1234",
    "Locality/Address/Residence": "Adenta",
    "Age": "20 Year(s)",
    "Gender": "Male",
    "Occupation": "Trader",
    "Educational Status": "SHS",
    "Date of Admission": "26-06-2025",
    "Date of Discharge": "27-06-2025",
    "Speciality": "Casualty",
    "Outcome of Discharge": "Discharged",
    "Principal Diagnosis": "Stroke(I64.00)",
    "Additional Diagnosis": "NA",
    "Surgical Procedure": "No",
    "Cost of Treatment": "GHS 150",
    "NHIS Status": "Yes",
}


@pytest.fixture()
def temp_workdir(monkeypatch) -> Path:
    with tempfile.TemporaryDirectory() as d:
        p = Path(d)
        (p / "config").mkdir()
        (p / "data").mkdir()
        (p / "logs").mkdir()
        monkeypatch.chdir(p)
        yield p


@pytest.fixture(autouse=True)
def _clean_logging():
    # setup_logging はモジュールグローバルを持つのでテスト毎に初期化
    reset_logging()
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _no_dhims_env(monkeypatch):
    for name in ("DHIMS_ENDPOINT_URL", "DHIMS_SESSION_ID", "DHIMS_USERNAME", "DHIMS_PASSWORD"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def sample_config_yaml() -> str:
    return """endpoint:
  url: https://events.example.org/events/api/41/tracker
  timeout_seconds: 5
context:
  program: fFYTJRzD2qq
  org_unit: duCDqCRlWG1
  program_stage: LR7JT7ZNg8E
field_mappings:
  patientNumber: {column: Patient No., data_element: h0Ef6ykTpNB, type: text, required: true, normalizer: identifier}
  address: {column: Locality/Address/Residence, data_element: nk15h7fzCLz, type: text, required: true}
  ageNumber: {column: Age, data_element: upqhIcii1iC, type: number, required: true, normalizer: age_number}
  ageUnit:
    column: Age
    data_element: WZ5rS7QuECT
    type: dropdown
    required: true
    options: [years, months, days]
    normalizer: age_unit
  gender: {column: Gender, data_element: fg8sMCaTOrK, type: dropdown, required: true, options: [Male, Female], normalizer: gender}
  occupation: {column: Occupation, data_element: qAWldjTeMIs, type: dropdown, required: true, normalizer: occupation}
  education: {column: Educational Status, data_element: Hi8Cp84CnZQ, type: dropdown, required: true, normalizer: education}
  dateOfAdmission: {column: Date of Admission, data_element: HsMaBh3wKed, type: date, required: true}
  dateOfDischarge: {column: Date of Discharge, data_element: sIPe9r0NBbq, type: date, required: true}
  speciality: {column: Speciality, data_element: xpzJAQC4DGe, type: dropdown, required: true, normalizer: speciality}
  outcome:
    column: Outcome of Discharge
    data_element: OMN7CVW4IaY
    type: dropdown
    required: true
    options: [Absconded, Discharged, Transferred, Unspecified, Died]
    normalizer: outcome
  principalDiagnosis: {column: Principal Diagnosis, data_element: yPXPzceTIvq, type: searchable, required: true}
  additionalDiagnosis: {column: Additional Diagnosis, data_element: O15UNfCqavW, type: searchable, required: false}
  surgicalProcedure: {column: Surgical Procedure, data_element: dsVClbnOnm6, type: boolean, required: true}
  cost: {column: Cost of Treatment, data_element: fRkwcThGCTM, type: number, required: false, normalizer: currency}
  nhisStatus: {column: NHIS Status, data_element: ETSl9Q3SUOG, type: boolean, required: true}
upload:
  retry_attempts: 3
  retry_base_delay: 0
  rate_limit_seconds: 0
  job_poll_attempts: 3
  job_poll_interval: 0
matching:
  diagnosis_codes: config/option-codes.json
  threshold: 0.70
output_directory: output
"""


@pytest.fixture()
def write_config(temp_workdir: Path, sample_config_yaml: str) -> Path:
    cfg = temp_workdir / "config" / "upload.yml"
    cfg.write_text(sample_config_yaml, encoding="utf-8")
    codes = temp_workdir / "config" / "option-codes.json"
    codes.write_text(json.dumps({"Diagnosis": VOCABULARY_ENTRIES}), encoding="utf-8")
    return cfg


@pytest.fixture()
def config(write_config: Path) -> UploadConfig:
    return load_config(write_config, env={})


@pytest.fixture()
def vocabulary() -> DiagnosisVocabulary:
    return DiagnosisVocabulary(VOCABULARY_ENTRIES)


@pytest.fixture()
def matcher(vocabulary: DiagnosisVocabulary) -> DiagnosisMatcher:
    return DiagnosisMatcher(vocabulary)


@pytest.fixture()
def mapper(config: UploadConfig) -> FieldMapper:
    return FieldMapper(config.field_mappings, config.context)


@pytest.fixture()
def cleaner(mapper: FieldMapper, matcher: DiagnosisMatcher) -> RecordCleaner:
    return RecordCleaner(mapper, matcher)


@pytest.fixture()
def validator(mapper: FieldMapper, cleaner: RecordCleaner) -> Validator:
    return Validator(mapper, cleaner)


@pytest.fixture()
def make_raw():
    """Factory: make_raw(row_number, values={column: value}) -> RawRecord based on VALID_ROW."""

    def _make(row_number: int = 2, values: dict[str, Any] | None = None) -> RawRecord:
        data = dict(VALID_ROW)
        if values:
            data.update(values)
        return RawRecord(row_number=row_number, values=data, sheet="Sheet1")
    return _make


@pytest.fixture()
def write_workbook(temp_workdir: Path):
    """Factory writing rows (list of column dicts) to data/<name> with pandas."""
    import pandas as pd

    def _write(rows: list[dict[str, Any]], name: str = "ward.xlsx", sheet: str = "Sheet1") -> Path:
        path = temp_workdir / "data" / name
        df = pd.DataFrame(rows, columns=list(VALID_ROW.keys()))
        if path.suffix == ".csv":
            df.to_csv(path, index=False)
        else:
            with pd.ExcelWriter(path, engine="openpyxl") as writer:
                df.to_excel(writer, sheet_name=sheet, index=False)
        return path
    return _write


def _response(status_code: int, body: Any) -> Any:
    from unittest.mock import Mock

    resp = Mock()
    resp.status_code = status_code
    resp.json.return_value = body
    resp.text = json.dumps(body)
    return resp


@pytest.fixture()
def fake_session():
    """Factory: fake_session(fail_patients=()) -> MagicMock standing in for requests.Session.

    POST answers with an import summary (HTTP 409 for events whose patient
    number is listed in fail_patients). GET answers every read-back with 200.
    """
    from unittest.mock import MagicMock

    def _make(fail_patients: tuple[str, ...] = ()) -> MagicMock:
        session = MagicMock()
        session.headers = {}
        counter = {"n": 0}

        def _post(url, json=None, timeout=None):
            event = json["events"][0] if "events" in json else json
            values = {v["dataElement"]: v["value"] for v in event["dataValues"]}
            if values.get("h0Ef6ykTpNB") in fail_patients:
                return _response(409, {"status": "ERROR", "message": "Event already exists"})
            counter["n"] += 1
            ref = f"EVT{counter['n']:04d}"
            return _response(200, {"status": "OK", "response": {"importSummaries": [{"status": "SUCCESS", "reference": ref}]}})

        session.post.side_effect = _post
        session.get.return_value = _response(200, {"event": "EVT0001"})
        return session
    return _make
