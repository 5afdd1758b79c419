#!/usr/bin/env python3
"""Synthetic inpatient workbook generator.

Generates an Excel workbook shaped like the ward discharge registers the
uploader reads:
- Row 1: Header row with the register column names
- Row 2+: One patient record per row

A configurable share of rows carries the usual register noise (abbreviated
outcomes, "General" speciality, decimal diagnosis codes, blank NHIS status)
so the cleaning and validation paths get exercised with --dry-run.
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd

COLUMNS = [
    "Patient No.",
    "Locality/Address/Residence",
    "Age",
    "Gender",
    "Occupation",
    "Educational Status",
    "Date of Admission",
    "Date of Discharge",
    "Speciality",
    "Outcome of Discharge",
    "Principal Diagnosis",
    "Additional Diagnosis",
    "Surgical Procedure",
    "Cost of Treatment",
    "NHIS Status",
]

LOCALITIES = ["Adenta", "Madina", "Teshie", "Nungua", "Dodowa", "Ashaiman"]
OCCUPATIONS = ["Trader", "Teacher", "Student", "Farmer", "Pensioner", "Driver"]
EDUCATION = ["SHS", "JHS", "Tertiary", "Primary", "None"]
SPECIALITIES = ["Casualty", "General", "Obstetrics & Gynaecology", "Paediatrics", "Internal Medicine"]
OUTCOMES = ["Discharged", "Transferred", "Referred", "Died", "Absconded"]
DIAGNOSES = [
    "Stroke(I64)",
    "Stroke(I64.00)",
    "Typhoid fever(A01.00)",
    "Unspecified malaria(B54)",
    "Pneumonia(J18.9)",
    "Essential hypertension(I10.00)",
    "Diabetes with complications(E11.65, I10.00)",
    "Sickle cell crisis(D57.00)",
]


def generate_records(rows: int, noise: float = 0.1, seed: int = 42) -> pd.DataFrame:
    """Generate a DataFrame of synthetic patient records.

    Args:
        rows: Number of records to generate
        noise: Share of rows (0..1) that get register-style irregularities
        seed: Random seed for reproducible data

    Returns:
        DataFrame with one column per register header
    """
    rng = np.random.default_rng(seed)

    admissions = pd.Timestamp("2025-06-01") + pd.to_timedelta(rng.integers(0, 90, rows), unit="D")
    stays = pd.to_timedelta(rng.integers(0, 14, rows), unit="D")
    discharges = admissions + stays

    data: dict[str, list[Any]] = {
        "Patient No.": [f"VR-A01-AAG{1000 + i:04d}" for i in range(rows)],
        "Locality/Address/Residence": rng.choice(LOCALITIES, rows).tolist(),
        "Age": [f"{a} Year(s)" for a in rng.integers(1, 95, rows)],
        "Gender": rng.choice(["Male", "Female", "M", "F"], rows, p=[0.4, 0.4, 0.1, 0.1]).tolist(),
        "Occupation": rng.choice(OCCUPATIONS, rows).tolist(),
        "Educational Status": rng.choice(EDUCATION, rows).tolist(),
        "Date of Admission": [d.strftime("%d-%m-%Y") for d in admissions],
        "Date of Discharge": [d.strftime("%d-%m-%Y") for d in discharges],
        "Speciality": rng.choice(SPECIALITIES, rows).tolist(),
        "Outcome of Discharge": rng.choice(OUTCOMES, rows, p=[0.7, 0.1, 0.1, 0.05, 0.05]).tolist(),
        "Principal Diagnosis": rng.choice(DIAGNOSES, rows).tolist(),
        "Additional Diagnosis": rng.choice(DIAGNOSES + ["NA"] * 4, rows).tolist(),
        "Surgical Procedure": rng.choice(["Yes", "No"], rows, p=[0.2, 0.8]).tolist(),
        "Cost of Treatment": [f"GHS {c:,.2f}" for c in np.round(rng.uniform(50, 5000, rows), 2)],
        "NHIS Status": rng.choice(["Yes", "No"], rows).tolist(),
    }
    df = pd.DataFrame(data, columns=COLUMNS)

    if noise > 0:
        noisy = rng.random(rows) < noise
        # 退院日 < 入院日、未知の診断コード、NHIS 空欄を混ぜる
        df.loc[noisy, "Date of Discharge"] = [
            (a - pd.Timedelta(days=1)).strftime("%d-%m-%Y") for a in admissions[noisy]
        ]
        df.loc[noisy, "Principal Diagnosis"] = "Unknown condition(Z99.99)"
        df.loc[noisy, "NHIS Status"] = ""
    return df


def create_workbook(output_path: Path, rows: int, sheet: str = "Sheet1", noise: float = 0.1, seed: int = 42) -> None:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    df = generate_records(rows, noise=noise, seed=seed)
    with pd.ExcelWriter(output_path, engine="openpyxl") as writer:
        df.to_excel(writer, sheet_name=sheet, index=False)

    print(f"Created workbook: {output_path}")
    print(f"  Sheet: {sheet}")
    print(f"  Records: {rows}")
    print(f"  Noise: {noise:.0%}")


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Generate a synthetic inpatient register workbook",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # 200 records, 10% noisy rows
  %(prog)s data/sample.xlsx

  # 5000 clean records
  %(prog)s data/large.xlsx --rows 5000 --noise 0
        """,
    )
    parser.add_argument("output", type=Path, help="Output .xlsx path")
    parser.add_argument("--rows", type=int, default=200, help="Number of records (default: 200)")
    parser.add_argument("--sheet", default="Sheet1", help="Sheet name (default: Sheet1)")
    parser.add_argument("--noise", type=float, default=0.1, help="Share of irregular rows (default: 0.1)")
    parser.add_argument("--seed", type=int, default=42, help="Random seed (default: 42)")
    args = parser.parse_args()

    if args.rows <= 0:
        print("Error: --rows must be positive", file=sys.stderr)
        return 1
    if not 0 <= args.noise <= 1:
        print("Error: --noise must be between 0 and 1", file=sys.stderr)
        return 1

    try:
        create_workbook(args.output, args.rows, sheet=args.sheet, noise=args.noise, seed=args.seed)
    except OSError as e:
        print(f"Error creating workbook: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
