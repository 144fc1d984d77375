"""
Test suite for severity_scores.py

Covers the OASIS breakpoint tables (including boundaries and missing inputs),
the OASIS total, and the SIRS and simplified SOFA calculators against an
in-memory MIMIC-IV database.
"""
import pandas as pd
import pytest

from mimic_test_db import create_in_memory_mimic, insert_rows, ts
from sepsis_cohort.severity_scores import (
    OASIS_COMPONENTS,
    get_oasis_scores,
    get_sirs_scores,
    get_sofa_scores,
    score_age,
    score_elective_surgery,
    score_gcs,
    score_heart_rate,
    score_mechvent,
    score_meanbp,
    score_pre_icu_los,
    score_resp_rate,
    score_temperature,
    score_urine_output,
)


def _scores(scorer, values):
    return scorer(pd.Series(values, dtype=float)).tolist()


class TestOasisBreakpoints:
    """Breakpoint tables of the ten OASIS sub-scores."""

    def test_age(self):
        assert _scores(score_age, [23, 24, 53, 54, 77, 78, 89, 90]) == [0, 3, 3, 6, 6, 9, 9, 7]

    def test_pre_icu_los(self):
        assert _scores(score_pre_icu_los, [0, 10.2, 296, 297, 1439, 1440, 18707, 18708]) == [5, 3, 3, 0, 0, 2, 2, 1]

    def test_gcs(self):
        assert _scores(score_gcs, [3, 7, 8, 13, 14, 15]) == [10, 10, 4, 4, 3, 0]

    def test_heart_rate(self):
        assert _scores(score_heart_rate, [32, 33, 88, 89, 106, 107, 125, 126]) == [4, 0, 0, 1, 1, 3, 3, 6]

    def test_meanbp(self):
        assert _scores(score_meanbp, [20, 20.65, 50.9, 51, 61.32, 61.33, 143.44, 143.45]) == [4, 3, 3, 2, 2, 0, 0, 3]

    def test_resp_rate(self):
        assert _scores(score_resp_rate, [5, 6, 12, 13, 22, 23, 30, 31, 44, 45]) == [10, 1, 1, 0, 0, 1, 1, 6, 6, 9]

    def test_temperature(self):
        assert _scores(score_temperature, [33.0, 33.22, 35.93, 36.0, 36.39, 36.5, 36.89, 39.88, 40.0]) == \
            [3, 4, 4, 2, 2, 0, 2, 2, 6]

    def test_urine_output(self):
        assert _scores(score_urine_output, [0, 671.08, 671.09, 1426.99, 1427.0, 2544.14, 2600, 6896.8, 6897]) == \
            [10, 10, 5, 5, 1, 1, 0, 0, 8]

    def test_mechvent_and_elective_surgery(self):
        assert _scores(score_mechvent, [0, 1]) == [0, 9]
        assert _scores(score_elective_surgery, [0, 1]) == [6, 0]

    def test_missing_input_gives_missing_score(self):
        for scorer in [score_age, score_gcs, score_heart_rate, score_urine_output, score_elective_surgery]:
            result = scorer(pd.Series([None, 50.0]))
            assert pd.isna(result.iloc[0])
            assert str(result.dtype) == "Int64"

    def test_nullable_integer_input(self):
        result = score_age(pd.Series([53, None], dtype="Int64"))
        assert result.iloc[0] == 3 and pd.isna(result.iloc[1])


class TestOasisTotal:
    """OASIS total over the ten sub-scores."""

    def _inputs(self, **overrides):
        row = {
            "stay_id": 1,
            "pre_icu_los_minutes": 300,      # 0
            "age": 60,                       # 6
            "gcs": 15,                       # 0
            "heart_rate": 140,               # 6
            "meanbp": 80,                    # 0
            "resp_rate": 24,                 # 1
            "temp_c": 38.33,                 # 2
            "urineoutput": 1000,             # 5
            "mechvent": 1,                   # 9
            "electivesurgery": 0,            # 6
        }
        row.update(overrides)
        return pd.DataFrame([row])

    def test_total_is_sum_of_sub_scores(self):
        scores = get_oasis_scores(self._inputs())
        assert scores.loc[0, "oasis"] == 35
        assert list(scores.columns) == ["stay_id"] + OASIS_COMPONENTS + ["oasis"]

    def test_missing_sub_score_is_reported_missing_and_adds_zero(self):
        scores = get_oasis_scores(self._inputs(gcs=None, urineoutput=None))
        assert pd.isna(scores.loc[0, "gcs_score"])
        assert pd.isna(scores.loc[0, "urineoutput_score"])
        assert scores.loc[0, "oasis"] == 30

    def test_all_inputs_missing_gives_missing_total(self):
        row = {c: None for c in ["pre_icu_los_minutes", "age", "gcs", "heart_rate", "meanbp", "resp_rate",
                                 "temp_c", "urineoutput", "mechvent", "electivesurgery"]}
        scores = get_oasis_scores(pd.DataFrame([dict(stay_id=1, **row)]))
        assert pd.isna(scores.loc[0, "oasis"])

    def test_missing_column_raises(self):
        with pytest.raises(ValueError):
            get_oasis_scores(self._inputs().drop(columns=["gcs"]))


class TestSirsAndSofa:
    """SIRS and simplified SOFA over the first-day window."""

    def setup_method(self):
        self.con = create_in_memory_mimic()
        self.t0 = ts("2150-01-01 08:00:00")
        self.stays = pd.DataFrame({
            "stay_id": [100, 200, 300],
            "subject_id": [1, 2, 3],
            "hadm_id": [10, 20, 30],
            "intime": [self.t0, self.t0, self.t0],
        })

    def _chart(self, stay_id, itemid, valuenum, hours):
        return {"stay_id": stay_id, "itemid": itemid, "valuenum": valuenum,
                "charttime": self.t0 + pd.Timedelta(hours=hours)}

    def _lab(self, hadm_id, itemid, valuenum, hours):
        return {"hadm_id": hadm_id, "itemid": itemid, "valuenum": valuenum,
                "charttime": self.t0 + pd.Timedelta(hours=hours)}

    def test_sirs_components(self):
        insert_rows(self.con, "chartevents", [
            self._chart(100, 220045, 140, 2),     # heart rate > 90
            self._chart(100, 223761, 101.0, 3),   # temperature > 100.4 F
            self._chart(200, 220210, 18, 2),      # respiratory rate normal
        ])
        insert_rows(self.con, "labevents", [
            self._lab(10, 51300, 15, 4),          # WBC > 12
            self._lab(20, 50818, 30, 4),          # PaCO2 < 32
            self._lab(20, 51491, 12, 4),          # bands > 10
        ])
        sirs = get_sirs_scores(self.con, self.stays).set_index("stay_id")

        assert sirs.loc[100, "sirs_heart_rate"] == 1
        assert sirs.loc[100, "sirs_temp"] == 1
        assert pd.isna(sirs.loc[100, "sirs_resp"])
        assert sirs.loc[100, "sirs_score"] == 3

        assert sirs.loc[200, "sirs_resp"] == 1
        assert sirs.loc[200, "sirs_wbc"] == 1
        assert sirs.loc[200, "sirs_score"] == 2

    def test_no_events_gives_missing_score(self):
        insert_rows(self.con, "chartevents", [self._chart(100, 220045, 80, 2)])
        sirs = get_sirs_scores(self.con, self.stays).set_index("stay_id")
        assert sirs.loc[100, "sirs_score"] == 0
        assert pd.isna(sirs.loc[300, "sirs_score"])
        assert str(sirs["sirs_score"].dtype) == "Int64"

    def test_events_outside_window_are_ignored(self):
        insert_rows(self.con, "chartevents", [
            self._chart(100, 220045, 140, -1),
            self._chart(100, 220045, 140, 24.5),
            self._chart(100, 220045, 80, 24),     # window end is inclusive
        ])
        sirs = get_sirs_scores(self.con, self.stays).set_index("stay_id")
        assert sirs.loc[100, "sirs_heart_rate"] == 0

    def test_sofa_components(self):
        insert_rows(self.con, "chartevents", [self._chart(100, 220052, 65, 1)])     # MAP < 70
        insert_rows(self.con, "labevents", [
            self._lab(10, 50912, 1.2, 2),          # creatinine >= 1.2
            self._lab(10, 51265, 200, 2),          # platelets normal
            self._lab(20, 50821, 80, 2),           # PaO2 < 400
            self._lab(20, 50885, 0.8, 2),          # bilirubin normal
        ])
        sofa = get_sofa_scores(self.con, self.stays).set_index("stay_id")

        assert sofa.loc[100, "sofa_cardiovascular"] == 1
        assert sofa.loc[100, "sofa_renal"] == 1
        assert sofa.loc[100, "sofa_coagulation"] == 0
        assert sofa.loc[100, "sofa_score"] == 2
        assert sofa.loc[200, "sofa_respiratory"] == 1
        assert sofa.loc[200, "sofa_liver"] == 0
        assert sofa.loc[200, "sofa_score"] == 1
        assert pd.isna(sofa.loc[300, "sofa_score"])

    def test_labs_match_on_admission(self):
        # Lab charted under another admission of the same subject is not used
        insert_rows(self.con, "labevents", [self._lab(99, 50912, 3.0, 2)])
        sofa = get_sofa_scores(self.con, self.stays).set_index("stay_id")
        assert pd.isna(sofa.loc[100, "sofa_score"])
