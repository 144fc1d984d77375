"""
Test suite for event_store.py

Covers the Sepsis-3 candidate query: the SOFA window around the suspicion
time, the suspected_infection flag, scoping to the registered stays and the
ordering that picks one row per stay.
"""
import pandas as pd

from mimic_test_db import create_in_memory_mimic, insert_rows, ts
from sepsis_cohort.event_store import query_sepsis3_candidates, register_stays


class TestSepsis3Candidates:

    def setup_method(self):
        self.con = create_in_memory_mimic()
        self.t0 = ts("2150-01-01 08:00:00")
        stay_ids = [500, 600, 700, 800, 900, 1000]
        self.stays = pd.DataFrame({
            "stay_id": stay_ids,
            "subject_id": [s // 100 for s in stay_ids],
            "hadm_id": [s // 10 for s in stay_ids],
            "intime": [self.t0] * len(stay_ids),
        })

    def at(self, hours, minutes=0):
        return self.t0 + pd.Timedelta(hours=hours, minutes=minutes)

    def suspicion(self, stay_id, infection_hours, antibiotic_hours, culture_hours=None, suspected=1):
        return {"subject_id": stay_id // 100, "stay_id": stay_id, "hadm_id": stay_id // 10,
                "suspected_infection_time": self.at(infection_hours),
                "antibiotic_time": self.at(antibiotic_hours),
                "culture_time": self.at(infection_hours if culture_hours is None else culture_hours),
                "suspected_infection": suspected}

    def sofa(self, stay_id, end, score):
        return {"stay_id": stay_id, "starttime": end - pd.Timedelta(hours=1), "endtime": end, "sofa_24hours": score}

    def candidates(self):
        register_stays(self.con, self.stays)
        return query_sepsis3_candidates(self.con).set_index("stay_id")

    def test_earliest_suspicion_then_antibiotic_time_wins(self):
        insert_rows(self.con, "suspicion_of_infection", [
            self.suspicion(500, 0.5, 1),
            self.suspicion(500, 0.1, 3),
            self.suspicion(500, 0.1, 2),
        ])
        insert_rows(self.con, "sofa", [self.sofa(500, self.at(5), 3)])
        df = self.candidates()

        assert df.index.tolist() == [500]
        assert df.loc[500, "suspected_infection_time"] == self.at(0.1)
        assert df.loc[500, "antibiotic_time"] == self.at(2)
        assert df.loc[500, "sepsis3_sofa"] == 3

    def test_earliest_sofa_window_end_breaks_remaining_ties(self):
        insert_rows(self.con, "suspicion_of_infection", [self.suspicion(600, 0, 1)])
        insert_rows(self.con, "sofa", [
            self.sofa(600, self.at(10), 4),
            self.sofa(600, self.at(3), 2),
        ])
        df = self.candidates()

        assert df.loc[600, "sofa_time"] == self.at(3)
        assert df.loc[600, "sepsis3_sofa"] == 2

    def test_sofa_window_bounds(self):
        insert_rows(self.con, "suspicion_of_infection", [
            self.suspicion(700, 0, 1),
            self.suspicion(800, 0, 1),
            self.suspicion(900, 0, 1),
        ])
        insert_rows(self.con, "sofa", [
            self.sofa(700, self.at(24), 2),               # suspicion + 24h, kept
            self.sofa(800, self.at(24, minutes=1), 5),    # one minute too late
            self.sofa(800, self.at(2), 1),                # in the window but below 2
            self.sofa(900, self.at(-48), 2),              # suspicion - 48h, kept
        ])
        df = self.candidates()

        assert df.index.tolist() == [700, 900]
        assert df.loc[700, "sofa_time"] == self.at(24)
        assert df.loc[900, "sofa_time"] == self.at(-48)

    def test_unsuspected_and_unregistered_stays_are_absent(self):
        insert_rows(self.con, "suspicion_of_infection", [
            self.suspicion(1000, 0, 1, suspected=0),
            self.suspicion(1100, 0, 1),
        ])
        insert_rows(self.con, "sofa", [
            self.sofa(1000, self.at(2), 4),
            self.sofa(1100, self.at(2), 4),
        ])
        assert self.candidates().empty
