"""
First-Day Feature Aggregation from ICU Event Streams

This module turns windowed chart, lab, output, infusion and procedure events
into one row of features per stay.

Feature groups:
1. Averaged panels: vitals, other chart values, GCS components, chemistry,
   hematology, blood gas, coagulation and liver labs. Each concept is the mean
   of its in-bounds values over the window, rounded to 2 decimals.
2. Derived values: GCS total, neutrophil/lymphocyte ratio and PaO2/FiO2 ratio.
3. Anthropometrics: weight, reconciled height and BMI over the whole stay.
4. Treatments: mechanical ventilation, vasopressors with a standardized
   norepinephrine-equivalent rate, and renal replacement therapy.
5. Urine output: first-day total used by OASIS.

Bounds come from the item-code table. A value outside its concept's bounds is
dropped before averaging; a concept with no remaining value is missing.
"""
from typing import List

import duckdb
import numpy as np
import pandas as pd

from .event_store import (
    query_input_events,
    query_output_events,
    query_procedure_events,
    query_windowed_chart_values,
    query_windowed_events,
    register_stays,
)
from .item_codes import (
    AVERAGED_PANELS,
    FAHRENHEIT_TO_CELSIUS,
    LATEST_REVISION,
    get_concept_codes,
    get_itemids,
    get_panel_codes,
    label_events,
)
from .logging_utils import logger
from .utils import WINDOW_HOURS, round_half_away

GCS_COMPONENTS = ["gcs_eyes", "gcs_verbal", "gcs_motor"]

# Averaged concepts the derived values are computed from
DERIVED_INPUTS = GCS_COMPONENTS + ["neuc", "lymc", "po2_821", "fio2"]

# Height reconciliation
INCHES_TO_CM = 2.54
MIN_HEIGHT_CM = 80
MAX_HEIGHT_CM = 250

# BMI is only computed above this weight and kept inside [MIN_BMI, MAX_BMI]
MIN_BMI_WEIGHT_KG = 25
MIN_BMI = 0
MAX_BMI = 100

# Norepinephrine-equivalent factors by (vasopressor, rate unit)
# mcg/min rates are normalized to mcg/kg/min with a reference weight of 80 kg
VASOPRESSOR_RATE_FACTORS = {
    ("norepinephrine", "mcg/kg/min"): 1.0,
    ("norepinephrine", "mcg/min"): 1.0 / 80,
    ("epinephrine", "mcg/kg/min"): 1.0,
    ("epinephrine", "mcg/min"): 1.0 / 80,
    ("phenylephrine", "mcg/kg/min"): 0.45,
    ("phenylephrine", "mcg/min"): 0.45 / 80,
    ("dopamine", "mcg/kg/min"): 0.01,
    ("dopamine", "mcg/min"): 0.01 / 80,
}
VASOPRESSORS = ["norepinephrine", "epinephrine", "vasopressin", "phenylephrine", "dopamine"]

# Vasopressin rates above this are treated as U/hr regardless of the charted unit
VASOPRESSIN_HOURLY_THRESHOLD = 0.2
VASOPRESSIN_UNITS_TO_NE = 5.0


def _convert_values(events: pd.DataFrame) -> pd.Series:
    values = events["valuenum"].astype(float)
    fahrenheit = (events["convert"] == FAHRENHEIT_TO_CELSIUS).to_numpy()
    return pd.Series(np.where(fahrenheit, (values - 32) * 5.0 / 9.0, values), index=events.index)


def _in_bounds(events: pd.DataFrame) -> pd.Series:
    """
    Check labelled event values against their concept's bounds.

    Missing bounds are open. The lower bound is strict for concepts flagged
    min_exclusive, inclusive otherwise; the upper bound is always inclusive.
    """
    value = events["value"]
    lower = events["min"].fillna(-np.inf)
    upper = events["max"].fillna(np.inf)
    above = np.where(events["min_exclusive"].astype(bool), value > lower, value >= lower)
    return pd.Series(above & (value <= upper).to_numpy(), index=events.index)


def _average_concepts(events: pd.DataFrame, codes: pd.DataFrame) -> pd.DataFrame:
    """
    Mean of in-bounds, converted values per (stay, concept) in wide format.

    Returns:
        pd.DataFrame: Indexed by stay_id, one unrounded column per concept present
    """
    labelled = label_events(events, codes)
    if labelled.empty:
        return pd.DataFrame(index=pd.Index([], name="stay_id", dtype="int64"))
    labelled["value"] = _convert_values(labelled)
    labelled = labelled[_in_bounds(labelled)]
    return labelled.groupby(["stay_id", "concept"])["value"].mean().unstack("concept")


def get_averaged_features(con: duckdb.DuckDBPyConnection, stays: pd.DataFrame,
                          window_hours: int = WINDOW_HOURS, revision: int = LATEST_REVISION) -> pd.DataFrame:
    """
    Average every concept of the averaged panels over each stay's window.

    Chart concepts are read on stay_id and lab concepts on the stay's hadm_id.
    Also derives:
    - gcs: sum of the averaged GCS components (missing components count 0),
      missing when no component was charted
    - nl_ratio: neutrophils / lymphocytes, missing when lymphocytes are 0
    - pao2_fio2_ratio: rounded PaO2 (50821) / rounded FiO2, missing when FiO2
      is 0 or missing; left unrounded

    Args:
        con (duckdb.DuckDBPyConnection): Connection to the MIMIC-IV database
        stays (pd.DataFrame): Stays to aggregate
        window_hours (int): Window length after ICU intime
        revision (int): Item-code revision to resolve concepts against

    Returns:
        pd.DataFrame: stay_id plus one float column per concept and the derived values
    """
    logger.log_start("get_averaged_features")
    register_stays(con, stays)

    concepts: List[str] = []
    averages = []
    for source in ["chartevents", "labevents"]:
        codes = get_panel_codes(AVERAGED_PANELS, source, revision)
        concepts += sorted(codes["concept"].unique().tolist())
        events = query_windowed_events(con, source, codes["itemid"].unique().tolist(), window_hours)
        logger.log_info(f"Read {len(events)} {source} rows for {codes['concept'].nunique()} concepts")
        averages.append(_average_concepts(events, codes))

    concepts += [c for c in DERIVED_INPUTS if c not in concepts]
    index = pd.Index(stays["stay_id"], name="stay_id")
    raw = pd.concat(averages, axis=1).reindex(index=index, columns=concepts).astype(float)

    df = raw.apply(round_half_away)
    gcs_present = raw[GCS_COMPONENTS].notna().any(axis=1)
    df["gcs"] = round_half_away(raw[GCS_COMPONENTS].fillna(0).sum(axis=1)).where(gcs_present)
    df["nl_ratio"] = round_half_away(raw["neuc"] / raw["lymc"].replace(0, np.nan))
    df["pao2_fio2_ratio"] = df["po2_821"] / df["fio2"].replace(0, np.nan)

    logger.log_end("get_averaged_features")
    return df.reset_index()


def _reconcile_heights(heights_in: pd.DataFrame, heights_cm: pd.DataFrame) -> pd.DataFrame:
    """
    Combine inch and centimetre height charting taken at the same time.

    The centimetre value wins whenever both were charted, whether or not the
    two agree; otherwise whichever one exists is used.
    """
    merged = heights_cm.merge(heights_in, on=["stay_id", "charttime"], how="outer", suffixes=("_cm", "_in"))
    merged["height"] = merged["height_cm"].fillna(merged["height_in"])
    return merged[["stay_id", "charttime", "height"]]


def get_anthropometrics(con: duckdb.DuckDBPyConnection, stays: pd.DataFrame,
                        revision: int = LATEST_REVISION) -> pd.DataFrame:
    """
    Weight, height and BMI per stay from every chart row of the stay.

    - weight_kg: mean of in-bounds daily/admission weights, rounded to 2 decimals
    - height: median of reconciled heights in [80, 250] cm
    - bmi: weight / (height in m)^2 rounded to 2 decimals, only when weight > 25
      and height > 0, kept only inside [0, 100]

    Returns:
        pd.DataFrame: stay_id, weight_kg, height, bmi
    """
    logger.log_start("get_anthropometrics")
    register_stays(con, stays)
    codes = get_concept_codes(["weight_kg", "height_in", "height_cm"], revision)
    events = query_windowed_events(con, "chartevents", codes["itemid"].unique().tolist(), window_hours=None)
    labelled = label_events(events, codes)
    labelled["value"] = labelled["valuenum"].astype(float)
    labelled = labelled[_in_bounds(labelled)]

    weights = labelled[labelled["concept"] == "weight_kg"].groupby("stay_id")["value"].mean()

    height_rows = labelled[["stay_id", "charttime", "concept", "value"]]
    heights_in = height_rows[height_rows["concept"] == "height_in"].assign(
        height=lambda d: round_half_away(d["value"] * INCHES_TO_CM))[["stay_id", "charttime", "height"]]
    heights_cm = height_rows[height_rows["concept"] == "height_cm"].assign(
        height=lambda d: round_half_away(d["value"]))[["stay_id", "charttime", "height"]]
    heights = _reconcile_heights(heights_in, heights_cm)
    heights = heights[heights["height"].between(MIN_HEIGHT_CM, MAX_HEIGHT_CM)]

    df = stays[["stay_id"]].copy()
    df["weight_kg"] = round_half_away(df["stay_id"].map(weights))
    df["height"] = df["stay_id"].map(heights.groupby("stay_id")["height"].median()).astype(float)

    usable = (df["weight_kg"] > MIN_BMI_WEIGHT_KG) & (df["height"] > 0)
    bmi = round_half_away(df["weight_kg"] / (df["height"] / 100) ** 2)
    df["bmi"] = bmi.where(usable & bmi.between(MIN_BMI, MAX_BMI))

    logger.log_end("get_anthropometrics")
    return df.reset_index(drop=True)


def standardize_vasopressor_rates(infusions: pd.DataFrame) -> pd.Series:
    """
    Convert vasopressor rates to norepinephrine-equivalent mcg/kg/min.

    Vasopressin: rates above 0.2 are taken as U/hr (* 5 / 60); U/min rates
    below 0.2 are multiplied by 5; other U/hr rates * 5 / 60. Unit/drug
    combinations without a conversion give a missing rate.

    Args:
        infusions (pd.DataFrame): Rows with concept, rate and rateuom

    Returns:
        pd.Series: Standardized rate rounded to 3 decimals
    """
    rate = infusions["rate"].astype(float)
    uom = infusions["rateuom"]
    factors = pd.Series(
        [VASOPRESSOR_RATE_FACTORS.get((c, u), np.nan) for c, u in zip(infusions["concept"], uom)],
        index=infusions.index,
        dtype=float,
    )
    vasopressin = (infusions["concept"] == "vasopressin").to_numpy()
    vasopressin_rate = np.select(
        [
            rate > VASOPRESSIN_HOURLY_THRESHOLD,
            (uom == "U/min") & (rate < VASOPRESSIN_HOURLY_THRESHOLD),
            uom == "U/hr",
        ],
        [
            rate * VASOPRESSIN_UNITS_TO_NE / 60.0,
            rate * VASOPRESSIN_UNITS_TO_NE,
            rate * VASOPRESSIN_UNITS_TO_NE / 60.0,
        ],
        default=np.nan,
    )
    standardized = pd.Series(np.where(vasopressin, vasopressin_rate, rate * factors), index=infusions.index)
    return round_half_away(standardized, 3)


def _flag_stays(stays: pd.DataFrame, stay_ids: pd.Series) -> pd.Series:
    return stays["stay_id"].isin(stay_ids).astype(int).to_numpy()


def get_treatment_flags(con: duckdb.DuckDBPyConnection, stays: pd.DataFrame,
                        window_hours: int = WINDOW_HOURS, revision: int = LATEST_REVISION) -> pd.DataFrame:
    """
    Mechanical ventilation, vasopressor and renal replacement flags per stay.

    - mechvent: any ventilator-type value charted in the window
    - vasopressor: any vasopressor infusion with a rate starting in the window
    - max_rate_std: highest standardized vasopressor rate among those infusions
    - renal_replacement: any dialysis charting, CRRT-only infusion with a positive
      amount, or dialysis procedure overlapping the window

    Returns:
        pd.DataFrame: stay_id, mechvent, vasopressor, max_rate_std, renal_replacement
    """
    logger.log_start("get_treatment_flags")
    register_stays(con, stays)
    df = stays[["stay_id"]].copy()

    vent = query_windowed_chart_values(con, get_itemids("mechvent", revision), window_hours)
    df["mechvent"] = _flag_stays(stays, vent["stay_id"])

    vaso_codes = get_concept_codes(VASOPRESSORS, revision)
    infusions = label_events(query_input_events(con, vaso_codes["itemid"].unique().tolist(), window_hours), vaso_codes)
    infusions = infusions.merge(stays[["stay_id", "intime"]], on="stay_id", how="inner")
    window_end = infusions["intime"] + pd.Timedelta(hours=window_hours)
    infusions = infusions[
        infusions["rate"].notna()
        & (infusions["starttime"] >= infusions["intime"])
        & (infusions["starttime"] <= window_end)
    ].copy()
    infusions["rate_std"] = standardize_vasopressor_rates(infusions)
    df["vasopressor"] = _flag_stays(stays, infusions["stay_id"])
    df["max_rate_std"] = df["stay_id"].map(infusions.groupby("stay_id")["rate_std"].max()).astype(float)

    rrt_chart = query_windowed_chart_values(con, get_itemids("rrt_chart", revision), window_hours)
    rrt_input = query_input_events(con, get_itemids("rrt_input", revision), window_hours)
    rrt_input = rrt_input[rrt_input["amount"] > 0]
    rrt_procedure = query_procedure_events(con, get_itemids("rrt_procedure", revision), window_hours)
    rrt_stays = pd.concat([rrt_chart["stay_id"], rrt_input["stay_id"], rrt_procedure["stay_id"]])
    df["renal_replacement"] = _flag_stays(stays, rrt_stays)

    logger.log_info(
        f"Flagged {df['mechvent'].sum()} ventilated, {df['vasopressor'].sum()} on vasopressors, "
        f"{df['renal_replacement'].sum()} on renal replacement"
    )
    logger.log_end("get_treatment_flags")
    return df.reset_index(drop=True)


def get_urine_output(con: duckdb.DuckDBPyConnection, stays: pd.DataFrame,
                     window_hours: int = WINDOW_HOURS) -> pd.DataFrame:
    """Total output-event volume per stay over the window; missing when nothing was charted."""
    register_stays(con, stays)
    outputs = query_output_events(con, window_hours)
    df = stays[["stay_id"]].copy()
    df["urineoutput"] = df["stay_id"].map(outputs.groupby("stay_id")["value"].sum()).astype(float)
    return df.reset_index(drop=True)
