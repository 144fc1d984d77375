"""
Test suite for item_codes.py

Covers revision resolution of the item-code table, concept and panel
lookups, provenance-conflict reporting and event labelling.
"""
import pandas as pd
import pytest

from sepsis_cohort.item_codes import (
    AVERAGED_PANELS,
    LATEST_REVISION,
    find_provenance_conflicts,
    get_concept_codes,
    get_item_codes,
    get_itemids,
    get_panel_codes,
    label_events,
)


class TestItemCodes:
    """Tests for the versioned item-code lookup table."""

    def test_latest_revision_wins_for_redefined_concepts(self):
        codes = get_item_codes()
        fio2 = codes[codes["concept"] == "fio2"]
        assert fio2["itemid"].tolist() == [223835]
        assert fio2["source"].tolist() == ["chartevents"]
        assert get_itemids("inr") == [51237, 51675]
        assert get_itemids("wbcc") == [51300]

    def test_older_revision_resolves_its_own_codes(self):
        assert get_itemids("fio2", revision=1) == [50816]
        assert get_itemids("wbcc", revision=1) == [51301]
        assert get_itemids("lymc", revision=1) == [51116]

    def test_concepts_only_in_older_revision_are_kept(self):
        codes = get_item_codes(LATEST_REVISION)
        for concept in ["pt", "ptt", "ionized_calcium", "globulin", "alt", "ld_ldh"]:
            assert concept in set(codes["concept"]), concept
        assert get_itemids("pt") == [51274]

    def test_each_concept_comes_from_a_single_revision(self):
        codes = get_item_codes()
        assert (codes.groupby("concept")["revision"].nunique() == 1).all()

    def test_older_revision_lacks_newer_concepts(self):
        with pytest.raises(ValueError):
            get_itemids("heart_rate", revision=1)

    def test_unknown_revision_raises(self):
        with pytest.raises(ValueError):
            get_item_codes(99)

    def test_unknown_concept_raises(self):
        with pytest.raises(ValueError):
            get_itemids("not_a_concept")
        with pytest.raises(ValueError):
            get_concept_codes(["heart_rate", "not_a_concept"])

    def test_multiple_device_codes_are_unioned(self):
        assert get_itemids("sbp") == [220050, 220179, 225309]
        assert get_itemids("map") == [220052, 220181, 224322]
        assert get_itemids("resp_rate") == [220210, 224690]

    def test_panel_codes_by_source(self):
        chart = get_panel_codes(AVERAGED_PANELS, "chartevents")
        labs = get_panel_codes(AVERAGED_PANELS, "labevents")
        assert (chart["source"] == "chartevents").all()
        assert (labs["source"] == "labevents").all()
        assert "heart_rate" in set(chart["concept"])
        assert "gcs_eyes" in set(chart["concept"])
        assert "creatinine_chem" in set(labs["concept"])
        # Score-only inputs are not averaged
        assert "map" not in set(chart["concept"])
        assert "bands" not in set(labs["concept"])

    def test_unknown_source_raises(self):
        with pytest.raises(ValueError):
            get_panel_codes(AVERAGED_PANELS, "microbiologyevents")

    def test_bounds_and_conversion_fields(self):
        codes = get_item_codes().set_index(["concept", "itemid"])
        temp = codes.loc[("body_temp", 223761)]
        assert temp["convert"] == "fahrenheit_to_celsius"
        assert temp["min"] == 32 and temp["max"] == 42
        magnesium = codes.loc[("magnesium_chem", 50960)]
        assert bool(magnesium["min_exclusive"]) and pd.isna(magnesium["max"])
        assert pd.isna(codes.loc[("apacheiii", 226991)]["min"])

    def test_provenance_conflicts(self):
        conflicts = find_provenance_conflicts()
        concepts = set(conflicts["concept"])
        assert {"inr", "wbcc", "lymc", "eoc", "fio2", "albumin_bl_chem"} <= concepts
        # Same codes in both revisions is not a conflict
        assert "bilirubin_total" not in concepts
        assert "pt" not in concepts
        fio2 = conflicts[conflicts["concept"] == "fio2"].set_index("revision")
        assert fio2.loc[1, "source"] == "labevents"
        assert fio2.loc[2, "source"] == "chartevents"
        assert fio2.loc[1, "itemids"] == "50816"

    def test_label_events_drops_unknown_items(self):
        events = pd.DataFrame({
            "stay_id": [1, 1, 2],
            "itemid": [220045, 999999, 220179],
            "valuenum": [80.0, 1.0, 120.0],
        })
        labelled = label_events(events, get_concept_codes(["heart_rate", "sbp"]))
        assert sorted(labelled["concept"].tolist()) == ["heart_rate", "sbp"]
        assert "min" in labelled.columns and "source" not in labelled.columns
