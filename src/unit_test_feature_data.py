"""
Test suite for feature_data.py

Exercises the first-day aggregation against an in-memory MIMIC-IV database:
bounds and unit conversion, window edges, derived values, anthropometrics,
treatment flags and urine output.
"""
import numpy as np
import pandas as pd
import pytest

from mimic_test_db import create_in_memory_mimic, insert_rows, ts
from sepsis_cohort.feature_data import (
    get_anthropometrics,
    get_averaged_features,
    get_treatment_flags,
    get_urine_output,
    standardize_vasopressor_rates,
)


class FeatureDataBase:
    """Shared in-memory database with three stays admitted at the same time."""

    def setup_method(self):
        self.con = create_in_memory_mimic()
        self.t0 = ts("2150-01-01 08:00:00")
        self.stays = pd.DataFrame({
            "stay_id": [100, 200, 300],
            "subject_id": [1, 2, 3],
            "hadm_id": [10, 20, 30],
            "intime": [self.t0] * 3,
        })

    def at(self, hours):
        return self.t0 + pd.Timedelta(hours=hours)

    def chart(self, rows):
        insert_rows(self.con, "chartevents", [
            {"stay_id": s, "itemid": i, "valuenum": v, "charttime": self.at(h)} for s, i, v, h in rows
        ])

    def labs(self, rows):
        insert_rows(self.con, "labevents", [
            {"hadm_id": a, "itemid": i, "valuenum": v, "charttime": self.at(h)} for a, i, v, h in rows
        ])


class TestAveragedFeatures(FeatureDataBase):

    def test_bounds_conversion_and_window(self):
        self.chart([
            (100, 220045, 80, 1),
            (100, 220045, 100, 2),
            (100, 220045, 350, 3),        # above heart-rate bound
            (100, 220045, 40, 30),        # outside window
            (100, 223761, 98.6, 1),       # Fahrenheit, 37 C
            (100, 223761, 212, 2),        # 100 C, out of bounds after conversion
        ])
        self.labs([
            (10, 50912, 1.0, 2),
            (10, 50912, 2.0, 3),
            (10, 50960, 0.0, 2),          # magnesium lower bound is exclusive
            (10, 50960, 2.0, 3),
        ])
        df = get_averaged_features(self.con, self.stays).set_index("stay_id")

        assert df.loc[100, "heart_rate"] == 90.0
        assert df.loc[100, "body_temp"] == 37.0
        assert df.loc[100, "creatinine_chem"] == 1.5
        assert df.loc[100, "magnesium_chem"] == 2.0
        assert np.isnan(df.loc[200, "heart_rate"])
        assert np.isnan(df.loc[300, "creatinine_chem"])

    def test_averages_are_rounded_half_away_from_zero(self):
        self.chart([(100, 220045, 80.0, 1), (100, 220045, 80.01, 2)])
        df = get_averaged_features(self.con, self.stays).set_index("stay_id")
        assert df.loc[100, "heart_rate"] == 80.01

    def test_gcs_total(self):
        self.chart([
            (100, 220739, 4, 1),
            (100, 223900, 5, 1),
            (100, 223901, 5, 1),
            (100, 223901, 6, 2),
            (200, 220739, 3, 1),
        ])
        df = get_averaged_features(self.con, self.stays).set_index("stay_id")
        assert df.loc[100, "gcs"] == 14.5
        assert df.loc[200, "gcs"] == 3.0
        assert np.isnan(df.loc[300, "gcs"])

    def test_ratios(self):
        self.labs([
            (10, 51256, 8, 1), (10, 51244, 2, 1), (10, 50821, 100, 1),
            (20, 51256, 5, 1), (20, 51244, 0, 1), (20, 50821, 90, 1),
        ])
        self.chart([(100, 223835, 50, 1), (200, 223835, 0, 1)])
        df = get_averaged_features(self.con, self.stays).set_index("stay_id")

        assert df.loc[100, "nl_ratio"] == 4.0
        assert df.loc[100, "pao2_fio2_ratio"] == 2.0
        assert np.isnan(df.loc[200, "nl_ratio"])
        assert np.isnan(df.loc[200, "pao2_fio2_ratio"])
        assert np.isnan(df.loc[300, "pao2_fio2_ratio"])

    def test_one_row_per_stay(self):
        df = get_averaged_features(self.con, self.stays)
        assert df["stay_id"].tolist() == [100, 200, 300]
        for column in ["heart_rate", "gcs", "nl_ratio", "pao2_fio2_ratio", "pt", "alt"]:
            assert column in df.columns


class TestAnthropometrics(FeatureDataBase):

    def test_weight_height_and_bmi(self):
        self.chart([
            (100, 224639, 80, 30),        # whole stay, not just the window
            (100, 226512, 82, 2),
            (100, 226730, 180, 1),
            (100, 226707, 70, 1),         # same time as the cm value, cm wins
            (100, 226707, 70, 5),         # 177.8 cm
            (200, 224639, 20, 1),         # too light for BMI
            (200, 226730, 170, 1),
            (300, 224639, 70, 1),
            (300, 226730, 300, 1),        # implausible height
        ])
        df = get_anthropometrics(self.con, self.stays).set_index("stay_id")

        assert df.loc[100, "weight_kg"] == 81.0
        assert df.loc[100, "height"] == pytest.approx(178.9)
        assert df.loc[100, "bmi"] == 25.31
        assert df.loc[200, "weight_kg"] == 20.0
        assert np.isnan(df.loc[200, "bmi"])
        assert np.isnan(df.loc[300, "height"])
        assert np.isnan(df.loc[300, "bmi"])


class TestVasopressorRates:

    def test_standardized_rates(self):
        infusions = pd.DataFrame([
            ("norepinephrine", 0.1, "mcg/kg/min"),
            ("norepinephrine", 8.0, "mcg/min"),
            ("phenylephrine", 1.0, "mcg/kg/min"),
            ("dopamine", 5.0, "mcg/kg/min"),
            ("vasopressin", 2.4, "U/hr"),
            ("vasopressin", 0.04, "U/min"),
            ("vasopressin", 0.2, "U/min"),
            ("epinephrine", 1.0, "mg/hr"),
        ], columns=["concept", "rate", "rateuom"])
        rates = standardize_vasopressor_rates(infusions).tolist()

        assert rates[:6] == [0.1, 0.1, 0.45, 0.05, 0.2, 0.2]
        assert np.isnan(rates[6])
        assert np.isnan(rates[7])


class TestTreatmentFlags(FeatureDataBase):

    def _infusion(self, stay_id, itemid, start, end, rate=None, amount=None, rateuom="mcg/kg/min"):
        return {"stay_id": stay_id, "itemid": itemid, "starttime": self.at(start), "endtime": self.at(end),
                "rate": rate, "amount": amount, "rateuom": rateuom}

    def test_flags(self):
        insert_rows(self.con, "chartevents", [
            {"stay_id": 100, "itemid": 223848, "value": "Drager", "charttime": self.at(1)},
            {"stay_id": 200, "itemid": 223848, "value": "Drager", "charttime": self.at(30)},
        ])
        insert_rows(self.con, "inputevents", [
            self._infusion(100, 221906, 1, 3, rate=0.1),
            self._infusion(100, 221906, 2, 4, rate=0.3),
            self._infusion(200, 221906, -2, 2, rate=0.2),      # started before ICU admission
            self._infusion(300, 221906, 1, 2, rate=None),
            self._infusion(100, 227536, 1, 2, amount=0.0, rateuom=None),
            self._infusion(300, 227536, 1, 2, amount=10.0, rateuom=None),
        ])
        insert_rows(self.con, "procedureevents", [
            {"stay_id": 200, "itemid": 225441, "starttime": self.at(5), "endtime": self.at(10), "value": 1.0},
        ])
        df = get_treatment_flags(self.con, self.stays).set_index("stay_id")

        assert df["mechvent"].tolist() == [1, 0, 0]
        assert df["vasopressor"].tolist() == [1, 0, 0]
        assert df.loc[100, "max_rate_std"] == 0.3
        assert np.isnan(df.loc[200, "max_rate_std"])
        assert df["renal_replacement"].tolist() == [0, 1, 1]

    def test_dialysis_charting_flags_renal_replacement(self):
        insert_rows(self.con, "chartevents", [
            {"stay_id": 100, "itemid": 226118, "value": "CVVHDF", "charttime": self.at(3)},
        ])
        df = get_treatment_flags(self.con, self.stays).set_index("stay_id")
        assert df.loc[100, "renal_replacement"] == 1


class TestUrineOutput(FeatureDataBase):

    def test_window_total(self):
        insert_rows(self.con, "outputevents", [
            {"stay_id": 100, "itemid": 226559, "value": 100.0, "charttime": self.at(1)},
            {"stay_id": 100, "itemid": 226559, "value": 200.0, "charttime": self.at(5)},
            {"stay_id": 100, "itemid": 226559, "value": 500.0, "charttime": self.at(30)},
        ])
        df = get_urine_output(self.con, self.stays).set_index("stay_id")
        assert df.loc[100, "urineoutput"] == 300.0
        assert np.isnan(df.loc[200, "urineoutput"])
