"""
Test suite for cohort_filter.py

Covers the diagnosis labelling rules, each exclusion stage on its own and the
step-count report of the full stage sequence.
"""
import pandas as pd

from mimic_test_db import ts
from sepsis_cohort.cohort_filter import (
    MAX_ICU_HOURS,
    MIN_ICU_HOURS,
    SEPSIS3_COLUMNS,
    STEP_COUNT_COLUMNS,
    apply_cohort_filter,
    exclude_long_stays,
    exclude_pregnancies,
    exclude_short_stays,
    keep_first_stays,
    label_diagnoses,
)

T0 = ts("2150-01-01 08:00:00")


def _stay(stay_id, subject_id, hadm_id, intime=T0, hours=48.0):
    return {
        "stay_id": stay_id,
        "subject_id": subject_id,
        "hadm_id": hadm_id,
        "intime": intime,
        "outtime": intime + pd.Timedelta(hours=hours),
    }


def _scores(name, values):
    return pd.DataFrame({"stay_id": list(values), name: pd.array(list(values.values()), dtype="Int64")})


def _sepsis3(stay_ids):
    return pd.DataFrame({
        "subject_id": pd.Series([s // 100 for s in stay_ids], dtype="int64"),
        "stay_id": pd.Series(stay_ids, dtype="int64"),
        "antibiotic_time": [T0] * len(stay_ids),
        "culture_time": [T0] * len(stay_ids),
        "suspected_infection_time": [T0] * len(stay_ids),
        "sofa_time": [T0 + pd.Timedelta(hours=4)] * len(stay_ids),
        "sepsis3_sofa": [3] * len(stay_ids),
    })


def _diagnoses(rows):
    return pd.DataFrame(rows, columns=["subject_id", "hadm_id", "seq_num", "icd_code", "icd_version"])


class TestDiagnosisStage:
    """Sepsis-3 and SIRS labelling of candidate stays."""

    def test_labels_and_precedence(self):
        stays = pd.DataFrame([_stay(100, 1, 10), _stay(200, 2, 20), _stay(300, 3, 30),
                              _stay(400, 4, 40), _stay(500, 5, 50)])
        diagnoses = _diagnoses([
            (1, 10, 2, "R6510", 10),       # SIRS code, but Sepsis-3 wins
            (2, 20, 3, "99591", 9),        # not a SIRS code
            (3, 30, 1, "99590", 9),        # SIRS code
        ])
        sirs = _scores("sirs_score", {100: 0, 200: 1, 300: 0, 400: 2, 500: 3})
        sofa = _scores("sofa_score", {100: 0, 200: 0, 300: 0, 400: 1, 500: 2})

        labelled = label_diagnoses(stays, _sepsis3([100]), diagnoses, sirs, sofa).set_index("stay_id")

        assert labelled.loc[100, "diagnosis"] == "Sepsis"
        assert labelled.loc[100, "sepsis3_sofa"] == 3
        assert labelled.loc[300, "diagnosis"] == "SIRS"
        assert pd.isna(labelled.loc[300, "suspected_infection_time"])
        assert labelled.loc[400, "diagnosis"] == "SIRS"
        # SIRS >= 2 but SOFA >= 2, and no SIRS code
        assert 500 not in labelled.index
        assert 200 not in labelled.index
        for column in SEPSIS3_COLUMNS:
            assert column in labelled.columns

    def test_missing_sofa_counts_as_below_threshold(self):
        stays = pd.DataFrame([_stay(100, 1, 10), _stay(200, 2, 20)])
        sirs = _scores("sirs_score", {100: 2, 200: None})
        sofa = _scores("sofa_score", {100: None, 200: None})
        labelled = label_diagnoses(stays, _sepsis3([]), _diagnoses([]), sirs, sofa)
        assert labelled["stay_id"].tolist() == [100]


class TestExclusionStages:
    """First stay, pregnancy and ICU duration stages."""

    def test_first_stay_by_intime_then_stay_id(self):
        stays = pd.DataFrame([
            _stay(102, 1, 11, intime=T0 + pd.Timedelta(days=20)),
            _stay(101, 1, 10),
            _stay(202, 2, 20),
            _stay(201, 2, 20),             # same intime, lower stay_id wins
        ])
        first = keep_first_stays(stays)
        assert sorted(first["stay_id"].tolist()) == [101, 201]

    def test_pregnancy_on_any_admission_excludes_subject(self):
        stays = pd.DataFrame([_stay(100, 1, 10), _stay(200, 2, 20), _stay(300, 3, 30)])
        diagnoses = _diagnoses([
            (1, 99, 1, "O80", 10),         # delivery on an earlier admission
            (2, 20, 4, "V270", 9),
            (3, 30, 1, "A419", 10),
            (3, 30, 2, "Z3A", 10),         # Z3A is not in the pregnancy prefix set
        ])
        kept = exclude_pregnancies(stays, diagnoses)
        assert kept["subject_id"].tolist() == [3]

    def test_duration_bounds(self):
        stays = pd.DataFrame([
            _stay(100, 1, 10, hours=23 + 59 / 60),
            _stay(200, 2, 20, hours=MIN_ICU_HOURS),
            _stay(300, 3, 30, hours=MAX_ICU_HOURS),
            _stay(400, 4, 40, hours=MAX_ICU_HOURS + 1 / 60),
            _stay(500, 5, 50, hours=30),
        ])
        stays["icu_hours"] = (stays["outtime"] - stays["intime"]) / pd.Timedelta(hours=1)
        stays.loc[stays["stay_id"] == 500, "icu_hours"] = float("nan")  # no outtime

        kept = exclude_long_stays(exclude_short_stays(stays))
        assert kept["stay_id"].tolist() == [200, 300]


class TestApplyCohortFilter:
    """The full stage sequence and its step-count report."""

    def test_step_counts(self):
        stays = pd.DataFrame([
            _stay(100, 1, 10),
            _stay(101, 1, 11, intime=T0 + pd.Timedelta(days=20)),
            _stay(200, 2, 20, hours=23.5),
            _stay(300, 3, 30),
            _stay(400, 4, 40),
            _stay(500, 5, 50, hours=2500),
            _stay(600, 6, 60),
        ])
        diagnoses = _diagnoses([
            (1, 11, 1, "R6510", 10),
            (2, 20, 1, "R6510", 10),
            (3, 30, 1, "R6510", 10),
            (4, 40, 1, "R6510", 10),
            (4, 41, 1, "Z3400", 10),
        ])
        sirs = _scores("sirs_score", {100: 2, 101: 0, 200: 0, 300: 0, 400: 0, 500: 0, 600: 0})
        sofa = _scores("sofa_score", {100: 0, 101: 0, 200: 0, 300: 0, 400: 0, 500: 0, 600: 0})

        cohort, counts = apply_cohort_filter(stays, _sepsis3([500]), diagnoses, sirs, sofa)

        assert sorted(cohort["stay_id"].tolist()) == [100, 300]
        assert list(counts.columns) == STEP_COUNT_COLUMNS
        assert counts["step_num"].tolist() == list(range(1, 11))
        expected = [
            ("Initial dataset", 5, 6),
            ("Number of multiple admissions", 0, 1),
            ("After excluding multiple admissions", 5, 5),
            ("Number of pregnancies", 1, 1),
            ("After excluding pregnancies", 4, 4),
            ("Number of stays <24 h", 1, 1),
            ("After excluding stays <24 h", 3, 3),
            ("Number of stays >100 days", 1, 1),
            ("After excluding stays >100 days", 2, 2),
            ("Final number of patients", 2, 2),
        ]
        assert list(counts[["step", "subject_count", "stay_count"]].itertuples(index=False, name=None)) == expected

    def test_icu_hours_are_fractional(self):
        stays = pd.DataFrame([_stay(100, 1, 10, hours=36.5)])
        diagnoses = _diagnoses([(1, 10, 1, "R651", 10)])
        sirs = _scores("sirs_score", {100: 0})
        sofa = _scores("sofa_score", {100: 0})
        cohort, _ = apply_cohort_filter(stays, _sepsis3([]), diagnoses, sirs, sofa)
        assert cohort.loc[0, "icu_hours"] == 36.5
        assert cohort.loc[0, "diagnosis"] == "SIRS"
