from __future__ import annotations

from datetime import datetime

import pytest

from dhims_upload.models.config_models import FieldMapping
from dhims_upload.services.cleaner import (
    FieldNotes,
    RecordCleaner,
    ValidationError,
    clean_boolean,
    clean_currency,
    clean_date,
)
from dhims_upload.services.field_mapper import FieldMapper


def _issues_for(record, field: str, severity: str | None = None):
    return [i for i in record.issues if i.field == field and (severity is None or i.severity == severity)]


def test_age_split_into_number_and_unit(cleaner: RecordCleaner, make_raw):
    rec = cleaner.clean(make_raw(values={"Age": "20 Year(s)"}))
    assert rec.get("ageNumber") == "20"
    assert rec.get("ageUnit") == "years"


@pytest.mark.parametrize(
    "raw,number,unit",
    [("3 Month(s)", "3", "months"), ("10 days", "10", "days"), (45.0, "45", "years"), ("7", "7", "years")],
)
def test_age_variants(cleaner: RecordCleaner, make_raw, raw, number, unit):
    rec = cleaner.clean(make_raw(values={"Age": raw}))
    assert (rec.get("ageNumber"), rec.get("ageUnit")) == (number, unit)


def test_invalid_age_is_error(cleaner: RecordCleaner, make_raw):
    rec = cleaner.clean(make_raw(values={"Age": "adult"}))
    assert rec.get("ageNumber") is None
    assert any("Invalid age format" in i.message for i in _issues_for(rec, "ageNumber", "error"))


def test_diagnosis_parent_code_with_info_note(cleaner: RecordCleaner, make_raw):
    rec = cleaner.clean(make_raw(values={"Principal Diagnosis": "Stroke(I64.00)"}))
    assert rec.get("principalDiagnosis") == "I64"
    info = _issues_for(rec, "principalDiagnosis", "info")
    assert info and "removing decimal suffix" in info[0].message
    assert rec.suggestions == []


def test_diagnosis_not_applicable_becomes_none(cleaner: RecordCleaner, make_raw):
    rec = cleaner.clean(make_raw(values={"Additional Diagnosis": "N/A"}))
    assert rec.get("additionalDiagnosis") is None
    assert _issues_for(rec, "additionalDiagnosis") == []


def test_diagnosis_auto_accept_records_suggestion(cleaner: RecordCleaner, make_raw):
    rec = cleaner.clean(make_raw(row_number=9, values={"Principal Diagnosis": "Pneumonia(J18.1)"}))
    assert rec.get("principalDiagnosis") == "J18.9"
    assert len(rec.suggestions) == 1
    assert rec.suggestions[0].row_number == 9


def test_diagnosis_unmatched_is_error_with_alternatives(cleaner: RecordCleaner, make_raw):
    rec = cleaner.clean(make_raw(values={"Principal Diagnosis": "Stroke(I63)"}))
    assert rec.get("principalDiagnosis") is None
    errors = _issues_for(rec, "principalDiagnosis", "error")
    assert len(errors) == 1
    assert errors[0].alternatives[0].code == "I64"


def test_diagnosis_without_matcher_extracts_code(mapper: FieldMapper, make_raw):
    plain = RecordCleaner(mapper)
    rec = plain.clean(make_raw(values={"Principal Diagnosis": "Stroke(I64.00)"}))
    assert rec.get("principalDiagnosis") == "I64.00"


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("27-06-2025", "2025-06-27"),
        ("27/06/2025", "2025-06-27"),
        ("2025-06-26", "2025-06-26"),
        ("2025-06-26T00:00:00", "2025-06-26"),
        (datetime(2025, 6, 26, 8, 30), "2025-06-26"),
    ],
)
def test_dates_normalized_to_iso(raw, expected):
    assert clean_date(raw, FieldNotes()) == expected


def test_invalid_date_raises():
    with pytest.raises(ValidationError):
        clean_date("June 27th", FieldNotes())
    with pytest.raises(ValidationError):
        clean_date("31-02-2025", FieldNotes())


def test_unrealistic_year_is_warning():
    notes = FieldNotes()
    assert clean_date("01-01-1850", notes) == "1850-01-01"
    assert notes.items and notes.items[0][0] == "warning"


def test_dropdown_synonyms(cleaner: RecordCleaner, make_raw):
    rec = cleaner.clean(make_raw(values={
        "Gender": "f",
        "Outcome of Discharge": "Referred",
        "Educational Status": "JHS",
        "Occupation": "trading",
    }))
    assert rec.get("gender") == "Female"
    assert rec.get("outcome") == "Transferred"
    assert rec.get("education") == "JHS/Middle School"
    assert rec.get("occupation") == "Trader / Shop Assistant"


def test_unknown_occupation_passes_through(cleaner: RecordCleaner, make_raw):
    rec = cleaner.clean(make_raw(values={"Occupation": "Fisherman"}))
    assert rec.get("occupation") == "Fisherman"
    assert _issues_for(rec, "occupation") == []


def test_general_speciality_mapped_with_info(cleaner: RecordCleaner, make_raw):
    rec = cleaner.clean(make_raw(values={"Speciality": "General"}))
    assert rec.get("speciality") == "Casualty"
    assert _issues_for(rec, "speciality", "info")


def test_unknown_speciality_kept_with_warning(cleaner: RecordCleaner, make_raw):
    rec = cleaner.clean(make_raw(values={"Speciality": "Dermatology"}))
    assert rec.get("speciality") == "Dermatology"
    assert _issues_for(rec, "speciality", "warning")


def test_invalid_gender_is_error(cleaner: RecordCleaner, make_raw):
    rec = cleaner.clean(make_raw(values={"Gender": "X"}))
    assert rec.get("gender") is None
    assert _issues_for(rec, "gender", "error")


def test_boolean_and_currency():
    assert clean_boolean("Yes", FieldNotes()) == "true"
    assert clean_boolean("n", FieldNotes()) == "false"
    assert clean_boolean(True, FieldNotes()) == "true"
    notes = FieldNotes()
    assert clean_boolean("maybe", notes) is None
    assert notes.items[0][0] == "warning"

    assert clean_currency("GHS 1,250.5", FieldNotes()) == "1250.50"
    assert clean_currency(150, FieldNotes()) == "150.00"
    with pytest.raises(ValidationError):
        clean_currency("free", FieldNotes())


def test_patient_number_uppercased(cleaner: RecordCleaner, make_raw):
    rec = cleaner.clean(make_raw(values={"Patient No.": " vr-a01-aag1234 "}))
    assert rec.get("patientNumber") == "VR-A01-AAG1234"


def test_empty_cells_become_none_without_issue(cleaner: RecordCleaner, make_raw):
    rec = cleaner.clean(make_raw(values={"Cost of Treatment": None, "Occupation": "  "}))
    assert rec.get("cost") is None
    assert rec.get("occupation") is None
    assert _issues_for(rec, "cost") == []


def test_transformations_only_for_changed_values(cleaner: RecordCleaner, make_raw):
    rec = cleaner.clean(make_raw(row_number=5))
    changed = {t.field for t in rec.transformations}
    assert "dateOfAdmission" in changed
    assert "address" not in changed  # "Adenta" は変化なし
    t = next(t for t in rec.transformations if t.field == "dateOfAdmission")
    assert (t.original, t.cleaned, t.row_number) == ("26-06-2025", "2025-06-26", 5)


@pytest.mark.parametrize(
    "values",
    [
        {},
        {"Age": "05 Month(s)"},
        {"Age": "007 Days"},
        {"Age": "7"},
        {"Age": 45.0},
        {"Date of Admission": "26/06/2025", "Date of Discharge": datetime(2025, 6, 27, 10, 15)},
        {"Cost of Treatment": "GHS 1,250.5"},
        {"Cost of Treatment": 150},
        {"Cost of Treatment": "NA"},
        {"Surgical Procedure": "Y", "NHIS Status": "T"},
        {"Occupation": "trading", "Educational Status": "Basic", "Gender": "f"},
        {"Outcome of Discharge": "Referred", "Speciality": "General"},
        {"Principal Diagnosis": "Diabetes with complications(E11.65, I10.00)"},
        {"Principal Diagnosis": "Pneumonia(J18.1)", "Additional Diagnosis": "Stroke(I64.00)"},
        {"Additional Diagnosis": "N/A"},
    ],
)
def test_cleaning_is_idempotent(cleaner: RecordCleaner, make_raw, values):
    first = cleaner.clean(make_raw(values=values))
    second = cleaner.clean(first)
    assert second.values == first.values
    assert second.transformations == []
    assert second.errors == []


def test_leading_zero_age_normalized(cleaner: RecordCleaner, make_raw):
    rec = cleaner.clean(make_raw(values={"Age": "05 Month(s)"}))
    assert (rec.get("ageNumber"), rec.get("ageUnit")) == ("5", "months")
    rec = cleaner.clean(make_raw(values={"Age": "007 Days"}))
    assert (rec.get("ageNumber"), rec.get("ageUnit")) == ("7", "days")


@pytest.mark.parametrize("raw", ["NA", "N/A", "n/a", "Not Applicable"])
def test_not_applicable_cost_becomes_none(cleaner: RecordCleaner, make_raw, raw):
    assert clean_currency(raw, FieldNotes()) is None
    rec = cleaner.clean(make_raw(values={"Cost of Treatment": raw}))
    assert rec.get("cost") is None
    assert _issues_for(rec, "cost") == []


def test_clean_all_keeps_order(cleaner: RecordCleaner, make_raw):
    out = cleaner.clean_all([make_raw(4), make_raw(2), make_raw(3)])
    assert [r.row_number for r in out] == [4, 2, 3]


def test_dropdown_without_normalizer_matches_option_case_insensitively(config, make_raw):
    mappings = [
        FieldMapping(name=m.name, source_column=m.source_column, remote_field_id=m.remote_field_id,
                     type=m.type, required=m.required, options=m.options)
        for m in config.field_mappings
        if m.name == "outcome"
    ]
    plain = RecordCleaner(FieldMapper(mappings, config.context))
    rec = plain.clean(make_raw(values={"Outcome of Discharge": "discharged"}))
    assert rec.get("outcome") == "Discharged"


def test_unknown_normalizer_rejected(config):
    bad = FieldMapping(name="x", source_column="X", remote_field_id="abc", normalizer="nope")
    with pytest.raises(ValueError):
        RecordCleaner(FieldMapper([bad], config.context))
