"""
Test suite for cohort_assembler.py
"""
import pandas as pd
import pytest

from mimic_test_db import ts
from sepsis_cohort.cohort_assembler import FEATURE_COLUMNS, add_outcome_flags, assemble_feature_rows

T0 = ts("2150-01-01 08:00:00")


class TestOutcomeFlags:

    def test_death_windows(self):
        df = pd.DataFrame({
            "intime": [T0] * 5,
            "dod": [
                T0 + pd.Timedelta(days=1),
                T0 + pd.Timedelta(days=2),        # boundary is inclusive
                T0 + pd.Timedelta(days=2, minutes=1),
                T0 + pd.Timedelta(days=91),
                pd.NaT,
            ],
        })
        flags = add_outcome_flags(df)

        assert flags["d48h"].tolist() == [1, 1, 0, 0, 0]
        assert flags["d90d"].tolist() == [1, 1, 1, 0, 0]
        assert flags["dinhosp"].tolist() == [1, 1, 1, 1, 0]
        assert "d48h" not in df.columns


class TestAssembleFeatureRows:

    def setup_method(self):
        self.cohort = pd.DataFrame({
            "subject_id": [2, 1, 1],
            "stay_id": [200, 150, 100],
            "diagnosis": ["SIRS", "Sepsis", "SIRS"],
            "icu_hours": [30.0, 48.0, 25.5],
            "intime": [T0] * 3,
        })
        self.demographics = pd.DataFrame({
            "stay_id": [100, 150, 200],
            "age": pd.array([60, 70, None], dtype="Int64"),
            "dod": [pd.NaT, T0 + pd.Timedelta(days=10), pd.NaT],
        })

    def test_left_join_keeps_every_cohort_row(self):
        averages = pd.DataFrame({"stay_id": [100], "heart_rate": [88.5]})
        df = assemble_feature_rows(self.cohort, [self.demographics, averages])

        assert len(df) == 3
        assert df.loc[df["stay_id"] == 100, "heart_rate"].item() == 88.5
        assert df.loc[df["stay_id"] == 200, "heart_rate"].isna().all()
        assert df.loc[df["stay_id"] == 150, "d90d"].item() == 1

    def test_column_order_and_row_order(self):
        df = assemble_feature_rows(self.cohort, [self.demographics])

        assert list(df.columns) == FEATURE_COLUMNS
        assert df[["subject_id", "stay_id"]].values.tolist() == [[1, 100], [1, 150], [2, 200]]
        # columns no component provided are present but empty
        assert df["pt"].isna().all()

    def test_earlier_component_wins_shared_columns(self):
        later = pd.DataFrame({"stay_id": [100, 150, 200], "age": [1, 1, 1], "gcs": [15.0, 14.0, 3.0]})
        df = assemble_feature_rows(self.cohort, [self.demographics, later])

        assert df["age"].tolist()[:2] == [60, 70]
        assert df["gcs"].tolist() == [15.0, 14.0, 3.0]

    def test_duplicate_stay_ids_raise(self):
        duplicated = pd.DataFrame({"stay_id": [100, 100], "gcs": [15.0, 14.0]})
        with pytest.raises(ValueError):
            assemble_feature_rows(self.cohort, [duplicated])
        with pytest.raises(ValueError):
            assemble_feature_rows(pd.concat([self.cohort, self.cohort]), [])
