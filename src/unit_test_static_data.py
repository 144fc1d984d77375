"""
Test suite for static_data.py

Covers admission linkage, demographics, primary diagnosis, comorbidity rules,
the surgical-service flag and the elective-surgery flag.
"""
import numpy as np
import pandas as pd

from mimic_test_db import ts
from sepsis_cohort.static_data import (
    COMORBIDITY_COLUMNS,
    get_comorbidities,
    get_demographics,
    get_elective_surgery,
    get_primary_diagnoses,
    get_surgical_flags,
    link_admissions,
)

T0 = ts("2150-01-01 08:00:00")


def _admission(subject_id, hadm_id, admit, disch, admission_type="EMERGENCY"):
    return {
        "subject_id": subject_id,
        "hadm_id": hadm_id,
        "admittime": admit,
        "dischtime": disch,
        "admission_type": admission_type,
        "language": "ENGLISH",
        "insurance": "Medicare",
        "race": "WHITE",
    }


def _diagnoses(rows):
    return pd.DataFrame(rows, columns=["subject_id", "hadm_id", "seq_num", "icd_code", "icd_version"])


class TestLinkAdmissions:

    def setup_method(self):
        self.stays = pd.DataFrame({
            "stay_id": [100, 200, 300, 400],
            "subject_id": [1, 2, 3, 4],
            "hadm_id": [10, 20, 30, 40],
            "intime": [T0] * 4,
        })
        self.admissions = pd.DataFrame([
            _admission(1, 10, T0 - pd.Timedelta(hours=5), T0 + pd.Timedelta(days=5)),
            _admission(1, 11, T0 + pd.Timedelta(days=20), T0 + pd.Timedelta(days=25)),
            _admission(2, 21, T0 + pd.Timedelta(days=1), T0 + pd.Timedelta(days=3)),
            _admission(3, 31, T0 - pd.Timedelta(minutes=90, seconds=30), T0 + pd.Timedelta(days=2), "ELECTIVE"),
            _admission(4, 40, T0 - pd.Timedelta(hours=2), T0 + pd.Timedelta(days=2)),
            _admission(4, 41, T0 - pd.Timedelta(hours=3), T0 + pd.Timedelta(days=1)),
        ])

    def test_links_admission_containing_intime(self):
        df = link_admissions(self.stays, self.admissions).set_index("stay_id")

        assert df.loc[100, "hadm_id"] == 10
        assert df.loc[100, "pre_icu_los_minutes"] == 300
        assert df.loc[300, "hadm_id"] == 31
        assert df.loc[300, "admission_type"] == "ELECTIVE"
        # partial minutes are truncated
        assert df.loc[300, "pre_icu_los_minutes"] == 90

    def test_earliest_containing_admission_wins(self):
        df = link_admissions(self.stays, self.admissions).set_index("stay_id")
        assert df.loc[400, "hadm_id"] == 41
        assert df.loc[400, "pre_icu_los_minutes"] == 180

    def test_unlinked_stay_keeps_recorded_admission(self):
        df = link_admissions(self.stays, self.admissions).set_index("stay_id")
        assert df.loc[200, "hadm_id"] == 20
        assert pd.isna(df.loc[200, "admittime"])
        assert np.isnan(df.loc[200, "pre_icu_los_minutes"])
        assert len(df) == 4


class TestDemographicsAndDiagnoses:

    def test_age_from_anchor_year(self):
        stays = pd.DataFrame({"stay_id": [100, 200], "subject_id": [1, 2], "intime": [T0, T0]})
        patients = pd.DataFrame({
            "subject_id": [1],
            "gender": ["F"],
            "anchor_age": [60],
            "anchor_year": [2148],
            "dod": [T0 + pd.Timedelta(days=1)],
        })
        df = get_demographics(stays, patients).set_index("stay_id")

        assert df.loc[100, "age"] == 62
        assert df.loc[100, "gender"] == "F"
        assert pd.isna(df.loc[200, "age"])
        assert str(df["age"].dtype) == "Int64"

    def test_primary_diagnosis(self):
        stays = pd.DataFrame({"stay_id": [100, 200], "hadm_id": [10, 20]})
        diagnoses = _diagnoses([(1, 10, 2, "I10", 10), (1, 10, 1, "A419", 10), (2, 21, 1, "J189", 10)])
        df = get_primary_diagnoses(stays, diagnoses).set_index("stay_id")
        assert df.loc[100, "icdcode_reason"] == "A419"
        assert pd.isna(df.loc[200, "icdcode_reason"])

    def test_comorbidity_rules(self):
        stays = pd.DataFrame({"stay_id": [100, 200, 300], "hadm_id": [10, 20, 30]})
        diagnoses = _diagnoses([
            (1, 10, 1, "5725", 9),
            (1, 10, 2, "I10", 10),
            (1, 10, 3, "E119", 10),
            (1, 10, 4, "J44", 10),
            (2, 20, 1, "I109", 10),        # only the whole code I10 counts
            (2, 20, 2, "5712", 9),
            (2, 20, 3, "K704", 10),
            (2, 20, 4, "4019", 10),        # ICD-9 code under the wrong version
        ])
        df = get_comorbidities(stays, diagnoses).set_index("stay_id")

        assert df.loc[100, COMORBIDITY_COLUMNS].tolist() == [0, 1, 1, 0, 1, 1]
        assert df.loc[200, COMORBIDITY_COLUMNS].tolist() == [1, 1, 0, 0, 0, 0]
        assert df.loc[300, COMORBIDITY_COLUMNS].isna().all()


class TestSurgicalFlags:

    def test_surgical_service(self):
        stays = pd.DataFrame({"stay_id": [100, 200, 300, 400]})
        services = pd.DataFrame({
            "stay_id": [100, 100, 200, 300],
            "curr_service": ["MED", "CSURG", "ORTHO", "MED"],
        })
        df = get_surgical_flags(stays, services)
        assert df["surgical"].tolist() == [1, 1, 0, 0]

    def test_elective_surgery(self):
        admission_type = pd.Series(["ELECTIVE", "ELECTIVE", "EMERGENCY", None, "ELECTIVE", None])
        surgical = pd.Series([1, 0, 1, 1, None, 0])
        flags = get_elective_surgery(admission_type, surgical)

        assert flags.iloc[:3].tolist() == [1, 0, 0]
        assert flags.iloc[3:].isna().all()
