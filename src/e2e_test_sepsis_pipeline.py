"""
End-to-end test of the cohort extraction on a small synthetic MIMIC-IV database.

Six subjects exercise every cohort stage:
    1: SIRS by first-day score; a later SIRS-coded stay is dropped as a repeat stay
    2: SIRS-coded stay of 23h59m, excluded as too short
    3: SIRS-coded stay of exactly 24h, kept
    4: SIRS-coded, excluded for a delivery code on another admission
    5: Sepsis-3 from suspicion of infection and SOFA, kept
    6: no qualifying criterion
"""
from typing import Any

import pandas as pd

from mimic_test_db import create_in_memory_mimic, create_mimic, insert_rows, ts
from sepsis_cohort.cohort_assembler import FEATURE_COLUMNS
from sepsis_cohort.data_extraction import extract_data
from sepsis_cohort.data_setup import main

T0 = ts("2150-01-01 08:00:00")


def at(hours: float) -> pd.Timestamp:
    return T0 + pd.Timedelta(hours=hours)


def _admission(subject_id, hadm_id, admit, disch, admission_type="EMERGENCY"):
    return {"subject_id": subject_id, "hadm_id": hadm_id, "admittime": admit, "dischtime": disch,
            "admission_type": admission_type, "language": "ENGLISH", "insurance": "Medicare", "race": "WHITE"}


def seed_synthetic_data(con: Any) -> None:

    insert_rows(con, "icustays", [
        {"subject_id": 1, "hadm_id": 10, "stay_id": 100, "intime": T0, "outtime": at(72)},
        {"subject_id": 1, "hadm_id": 11, "stay_id": 101, "intime": at(480), "outtime": at(528)},
        {"subject_id": 2, "hadm_id": 20, "stay_id": 200, "intime": T0, "outtime": T0 + pd.Timedelta(hours=23, minutes=59)},
        {"subject_id": 3, "hadm_id": 30, "stay_id": 300, "intime": T0, "outtime": at(24)},
        {"subject_id": 4, "hadm_id": 40, "stay_id": 400, "intime": T0, "outtime": at(48)},
        {"subject_id": 5, "hadm_id": 50, "stay_id": 500, "intime": T0, "outtime": at(48)},
        {"subject_id": 6, "hadm_id": 60, "stay_id": 600, "intime": T0, "outtime": at(48)},
    ])

    insert_rows(con, "admissions", [
        _admission(1, 10, at(-5), at(120)),
        _admission(1, 11, at(470), at(600)),
        _admission(2, 20, at(-1), at(48)),
        _admission(3, 30, at(-2), at(72)),
        _admission(4, 40, at(-3), at(72)),
        _admission(4, 41, at(-2000), at(-1900)),
        _admission(5, 50, at(-24), at(120)),
        _admission(6, 60, at(-1), at(72)),
    ])

    insert_rows(con, "patients", [
        {"subject_id": 1, "gender": "M", "anchor_age": 60, "anchor_year": 2150, "dod": at(24)},
        {"subject_id": 2, "gender": "F", "anchor_age": 70, "anchor_year": 2150, "dod": None},
        {"subject_id": 3, "gender": "F", "anchor_age": 53, "anchor_year": 2150, "dod": None},
        {"subject_id": 4, "gender": "F", "anchor_age": 30, "anchor_year": 2150, "dod": None},
        {"subject_id": 5, "gender": "M", "anchor_age": 50, "anchor_year": 2146, "dod": None},
        {"subject_id": 6, "gender": "M", "anchor_age": 40, "anchor_year": 2150, "dod": None},
    ])

    insert_rows(con, "diagnoses_icd", [
        {"subject_id": 1, "hadm_id": 10, "seq_num": 1, "icd_code": "A419", "icd_version": 10},
        {"subject_id": 1, "hadm_id": 10, "seq_num": 2, "icd_code": "I10", "icd_version": 10},
        {"subject_id": 1, "hadm_id": 11, "seq_num": 1, "icd_code": "R6510", "icd_version": 10},
        {"subject_id": 2, "hadm_id": 20, "seq_num": 1, "icd_code": "R6510", "icd_version": 10},
        {"subject_id": 3, "hadm_id": 30, "seq_num": 1, "icd_code": "R651", "icd_version": 10},
        {"subject_id": 4, "hadm_id": 40, "seq_num": 1, "icd_code": "R6510", "icd_version": 10},
        {"subject_id": 4, "hadm_id": 41, "seq_num": 1, "icd_code": "O80", "icd_version": 10},
    ])

    insert_rows(con, "services", [
        {"subject_id": 1, "hadm_id": 10, "transfertime": at(-4), "curr_service": "MED"},
    ])

    # Subject 1 first-day vitals and anthropometrics
    insert_rows(con, "chartevents", [
        {"stay_id": 100, "itemid": 220045, "valuenum": 140.0, "charttime": at(2)},
        {"stay_id": 100, "itemid": 220045, "valuenum": 60.0, "charttime": at(30)},     # after the window
        {"stay_id": 100, "itemid": 223761, "valuenum": 101.0, "charttime": at(3)},     # Fahrenheit
        {"stay_id": 100, "itemid": 220210, "valuenum": 24.0, "charttime": at(2)},
        {"stay_id": 100, "itemid": 220179, "valuenum": 120.0, "charttime": at(2)},
        {"stay_id": 100, "itemid": 220180, "valuenum": 60.0, "charttime": at(2)},
        {"stay_id": 100, "itemid": 224639, "valuenum": 80.0, "charttime": at(1)},
        {"stay_id": 100, "itemid": 226730, "valuenum": 180.0, "charttime": at(1)},
        {"stay_id": 100, "itemid": 223835, "valuenum": 0.0, "charttime": at(2)},
        {"stay_id": 600, "itemid": 220045, "valuenum": 80.0, "charttime": at(2)},
    ])
    insert_rows(con, "chartevents", [
        {"stay_id": 100, "itemid": 223848, "value": "Drager", "charttime": at(1)},
    ])

    insert_rows(con, "labevents", [
        {"hadm_id": 10, "itemid": 51300, "valuenum": 15.0, "charttime": at(4)},
        {"hadm_id": 10, "itemid": 50912, "valuenum": 0.9, "charttime": at(4)},
        {"hadm_id": 10, "itemid": 50821, "valuenum": 80.0, "charttime": at(4)},
    ])

    insert_rows(con, "inputevents", [
        {"stay_id": 100, "itemid": 221906, "starttime": at(1), "endtime": at(5),
         "rate": 0.1, "rateuom": "mcg/kg/min", "amount": 2.0},
    ])

    insert_rows(con, "outputevents", [
        {"stay_id": 100, "itemid": 226559, "value": 1000.0, "charttime": at(6)},
    ])

    # Subject 5: suspected infection with SOFA 3 five hours into the stay
    insert_rows(con, "suspicion_of_infection", [
        {"subject_id": 5, "stay_id": 500, "hadm_id": 50, "antibiotic_time": at(1),
         "culture_time": at(0.5), "suspected_infection_time": at(0.5), "suspected_infection": 1},
    ])
    insert_rows(con, "sofa", [
        {"stay_id": 500, "starttime": at(4), "endtime": at(5), "sofa_24hours": 3},
        {"stay_id": 600, "starttime": at(4), "endtime": at(5), "sofa_24hours": 1},
    ])


def test_extract_data() -> None:

    con = create_in_memory_mimic()
    seed_synthetic_data(con)

    rows, counts = extract_data(con)

    assert list(rows.columns) == FEATURE_COLUMNS
    assert rows["stay_id"].tolist() == [100, 300, 500]
    assert rows["diagnosis"].tolist() == ["SIRS", "SIRS", "Sepsis"]
    by_stay = rows.set_index("stay_id")

    # Subject 1: scores, averages and flags from the first day only
    s1 = by_stay.loc[100]
    assert s1["sirs_score"] == 4
    assert s1["sofa_score"] == 1
    assert [s1[c] for c in ["sirs_temp", "sirs_heart_rate", "sirs_resp", "sirs_wbc"]] == [1, 1, 1, 1]
    assert s1["sofa_respiratory"] == 1 and s1["sofa_renal"] == 0
    assert pd.isna(s1["sofa_liver"])
    assert s1["heart_rate"] == 140.0
    assert s1["body_temp"] == 38.33
    assert s1["bmi"] == 24.69
    assert pd.isna(s1["gcs_score"])
    assert s1["oasis"] == 35
    assert pd.isna(s1["pao2_fio2_ratio"])
    assert s1["mechvent"] == 1 and s1["vasopressor"] == 1 and s1["renal_replacement"] == 0
    assert s1["max_rate_std"] == 0.1
    assert s1["hypertension"] == 1
    assert s1["icdcode_reason"] == "A419"
    assert s1["icu_hours"] == 72.0
    assert (s1["d48h"], s1["d90d"], s1["dinhosp"]) == (1, 1, 1)

    # Subject 3: exactly 24 hours and no charted data
    s3 = by_stay.loc[300]
    assert s3["icu_hours"] == 24.0
    assert s3["age_score"] == 3
    assert s3["preiculos_score"] == 3
    assert s3["oasis"] == 12
    assert pd.isna(s3["sirs_score"])
    assert pd.isna(s3["sirs_heart_rate"])
    assert s3["dinhosp"] == 0

    # Subject 5: Sepsis-3 details carried through
    s5 = by_stay.loc[500]
    assert s5["sepsis3_sofa"] == 3
    assert s5["suspected_infection_time"] == at(0.5)
    assert s5["age"] == 54
    assert s5["age_score"] == 6

    expected_counts = [
        ("Initial dataset", 5, 6),
        ("Number of multiple admissions", 0, 1),
        ("After excluding multiple admissions", 5, 5),
        ("Number of pregnancies", 1, 1),
        ("After excluding pregnancies", 4, 4),
        ("Number of stays <24 h", 1, 1),
        ("After excluding stays <24 h", 3, 3),
        ("Number of stays >100 days", 0, 0),
        ("After excluding stays >100 days", 3, 3),
        ("Final number of patients", 3, 3),
    ]
    assert list(counts[["step", "subject_count", "stay_count"]].itertuples(index=False, name=None)) == expected_counts


def test_extract_data_for_subject_subset() -> None:

    con = create_in_memory_mimic()
    seed_synthetic_data(con)

    rows, counts = extract_data(con, subject_ids=[3, 6])

    assert rows["stay_id"].tolist() == [300]
    assert counts.loc[0, "subject_count"] == 1


def test_command_line_writes_csvs(tmp_path) -> None:

    db_path = str(tmp_path / "mimic.duckdb")
    con = create_mimic(db_path)
    seed_synthetic_data(con)
    con.close()

    output_csv = tmp_path / "cohort.csv"
    counts_csv = tmp_path / "counts.csv"
    main(["--duckdb_path", db_path, "--output_csv", str(output_csv), "--counts_csv", str(counts_csv)])

    rows = pd.read_csv(output_csv)
    assert list(rows.columns) == FEATURE_COLUMNS
    assert rows["stay_id"].tolist() == [100, 300, 500]
    assert len(pd.read_csv(counts_csv)) == 10


if __name__ == "__main__":

    test_extract_data()
    test_extract_data_for_subject_subset()
    print("All tests passed for data_extraction.extract_data")
