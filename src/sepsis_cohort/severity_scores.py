"""
Severity Scores for the First ICU Day

This module computes the three scores the cohort pipeline uses:

1. SIRS (0-4): one point each for abnormal temperature, heart rate,
   respiration (rate or PaCO2) and white cell count (count or bands).
2. Simplified SOFA (0-5): one point each for renal (creatinine), liver
   (bilirubin), cardiovascular (MAP), respiratory (PaO2) and coagulation
   (platelets) dysfunction.
3. OASIS: ten sub-scores from piecewise breakpoint tables over first-day
   values, summed.

SIRS and SOFA read raw event values (no plausibility bounds) from the event
store over [intime, intime + window]. A component whose inputs are all absent
is missing; the score sums the components that are present and is missing only
when every component is missing. OASIS works on already-aggregated first-day
values and follows the same rule across its ten sub-scores.
"""
from typing import Dict, List

import duckdb
import numpy as np
import pandas as pd

from .event_store import query_windowed_events, register_stays
from .item_codes import LATEST_REVISION, get_concept_codes, label_events
from .logging_utils import logger
from .utils import WINDOW_HOURS

# SIRS criteria (temperature is charted in Fahrenheit)
SIRS_TEMP_LOW_F = 96.8
SIRS_TEMP_HIGH_F = 100.4
SIRS_HEART_RATE = 90
SIRS_RESP_RATE = 20
SIRS_PACO2 = 32
SIRS_WBC_LOW = 4
SIRS_WBC_HIGH = 12
SIRS_BANDS = 10

# Simplified SOFA criteria
SOFA_CREATININE = 1.2
SOFA_BILIRUBIN = 1.2
SOFA_MAP = 70
SOFA_PAO2 = 400
SOFA_PLATELETS = 150

# Event-table inputs of each score, by source
SIRS_INPUTS = {
    "chartevents": ["body_temp", "heart_rate", "resp_rate"],
    "labevents": ["pco2_818", "wbcc", "bands"],
}
SOFA_INPUTS = {
    "chartevents": ["map"],
    "labevents": ["creatinine_chem", "bilirubin_total", "po2_821", "platelet"],
}

SIRS_COMPONENTS = ["sirs_temp", "sirs_heart_rate", "sirs_resp", "sirs_wbc"]
SOFA_COMPONENTS = ["sofa_renal", "sofa_liver", "sofa_cardiovascular", "sofa_respiratory", "sofa_coagulation"]

# First-day inputs of OASIS and the sub-score column each one feeds
OASIS_INPUTS = {
    "pre_icu_los_minutes": "preiculos_score",
    "age": "age_score",
    "gcs": "gcs_score",
    "heart_rate": "heart_rate_score",
    "meanbp": "meanbp_score",
    "resp_rate": "resp_rate_score",
    "temp_c": "temp_score",
    "urineoutput": "urineoutput_score",
    "mechvent": "mechvent_score",
    "electivesurgery": "electivesurgery_score",
}
OASIS_COMPONENTS = list(OASIS_INPUTS.values())


def _as_float(values: pd.Series) -> pd.Series:
    # NaN compares False, so conditions stay plain booleans
    return pd.to_numeric(values, errors="coerce").astype("float64")


def _breakpoints(values: pd.Series, conditions: List[pd.Series], choices: List[int], default: int = 0) -> pd.Series:
    """
    Map values onto points using the first matching condition.

    Missing values get a missing score rather than the default.
    """
    points = np.select([c.to_numpy(dtype=bool) for c in conditions], choices, default=default)
    return pd.Series(points, index=values.index).astype("Int64").where(values.notna())


def _component(conditions: List[pd.Series], inputs: List[pd.Series]) -> pd.Series:
    """One point if any condition holds, 0 if none does, missing if every input is missing."""
    hit = pd.concat(conditions, axis=1).any(axis=1)
    present = pd.concat(inputs, axis=1).notna().any(axis=1)
    return hit.astype("Int64").where(present)


def _sum_components(components: pd.DataFrame) -> pd.Series:
    """Sum present components; missing only when all are missing."""
    return components.sum(axis=1, min_count=1).astype("Int64")


def _get_extremes(con: duckdb.DuckDBPyConnection, stays: pd.DataFrame, inputs: Dict[str, List[str]],
                  window_hours: int, revision: int) -> pd.DataFrame:
    """
    Read raw windowed values of the given concepts and take min/max per stay.

    Returns:
        pd.DataFrame: Indexed by every stay_id in `stays`, columns
        '<concept>_min' and '<concept>_max' for each concept in `inputs`
    """
    frames = []
    for source, concepts in inputs.items():
        codes = get_concept_codes(concepts, revision)
        events = query_windowed_events(con, source, codes["itemid"].unique().tolist(), window_hours)
        frames.append(label_events(events, codes)[["stay_id", "concept", "valuenum"]])
    events = pd.concat(frames, ignore_index=True)
    columns = [f"{c}_{stat}" for concepts in inputs.values() for c in concepts for stat in ("min", "max")]
    index = pd.Index(stays["stay_id"], name="stay_id")
    if events.empty:
        return pd.DataFrame(np.nan, index=index, columns=columns)

    extremes = events.groupby(["stay_id", "concept"])["valuenum"].agg(["min", "max"]).unstack("concept")
    extremes.columns = [f"{concept}_{stat}" for stat, concept in extremes.columns]
    return extremes.reindex(index=index, columns=columns).astype(float)


def get_sirs_scores(con: duckdb.DuckDBPyConnection, stays: pd.DataFrame,
                    window_hours: int = WINDOW_HOURS, revision: int = LATEST_REVISION) -> pd.DataFrame:
    """
    Compute the SIRS score of every stay over its first-day window.

    Args:
        con (duckdb.DuckDBPyConnection): Connection to the MIMIC-IV database
        stays (pd.DataFrame): Stays to score (stay_id, subject_id, hadm_id, intime)
        window_hours (int): Window length after ICU intime
        revision (int): Item-code revision to resolve concepts against

    Returns:
        pd.DataFrame: stay_id, the four SIRS components and sirs_score, all
        nullable integers
    """
    logger.log_start("get_sirs_scores")
    register_stays(con, stays)
    x = _get_extremes(con, stays, SIRS_INPUTS, window_hours, revision)

    scores = pd.DataFrame(index=x.index)
    scores["sirs_temp"] = _component(
        [x["body_temp_min"] < SIRS_TEMP_LOW_F, x["body_temp_max"] > SIRS_TEMP_HIGH_F],
        [x["body_temp_min"]],
    )
    scores["sirs_heart_rate"] = _component([x["heart_rate_max"] > SIRS_HEART_RATE], [x["heart_rate_max"]])
    scores["sirs_resp"] = _component(
        [x["resp_rate_max"] > SIRS_RESP_RATE, x["pco2_818_min"] < SIRS_PACO2],
        [x["resp_rate_max"], x["pco2_818_min"]],
    )
    scores["sirs_wbc"] = _component(
        [x["wbcc_min"] < SIRS_WBC_LOW, x["wbcc_max"] > SIRS_WBC_HIGH, x["bands_max"] > SIRS_BANDS],
        [x["wbcc_min"], x["bands_max"]],
    )
    scores["sirs_score"] = _sum_components(scores[SIRS_COMPONENTS])

    logger.log_info(f"SIRS scored for {scores['sirs_score'].notna().sum()} of {len(scores)} stays")
    logger.log_end("get_sirs_scores")
    return scores.reset_index()


def get_sofa_scores(con: duckdb.DuckDBPyConnection, stays: pd.DataFrame,
                    window_hours: int = WINDOW_HOURS, revision: int = LATEST_REVISION) -> pd.DataFrame:
    """
    Compute the simplified SOFA score of every stay over its first-day window.

    Platelets are scored on their window maximum.

    Returns:
        pd.DataFrame: stay_id, the five SOFA components and sofa_score, all
        nullable integers
    """
    logger.log_start("get_sofa_scores")
    register_stays(con, stays)
    x = _get_extremes(con, stays, SOFA_INPUTS, window_hours, revision)

    scores = pd.DataFrame(index=x.index)
    scores["sofa_renal"] = _component([x["creatinine_chem_max"] >= SOFA_CREATININE], [x["creatinine_chem_max"]])
    scores["sofa_liver"] = _component([x["bilirubin_total_max"] >= SOFA_BILIRUBIN], [x["bilirubin_total_max"]])
    scores["sofa_cardiovascular"] = _component([x["map_min"] < SOFA_MAP], [x["map_min"]])
    scores["sofa_respiratory"] = _component([x["po2_821_max"] < SOFA_PAO2], [x["po2_821_max"]])
    scores["sofa_coagulation"] = _component([x["platelet_max"] < SOFA_PLATELETS], [x["platelet_max"]])
    scores["sofa_score"] = _sum_components(scores[SOFA_COMPONENTS])

    logger.log_info(f"SOFA scored for {scores['sofa_score'].notna().sum()} of {len(scores)} stays")
    logger.log_end("get_sofa_scores")
    return scores.reset_index()


def score_pre_icu_los(minutes: pd.Series) -> pd.Series:
    """Minutes from hospital admission to ICU admission."""
    m = _as_float(minutes)
    return _breakpoints(m, [m < 10.2, m < 297, m < 1440, m < 18708], [5, 3, 0, 2], default=1)


def score_age(age: pd.Series) -> pd.Series:
    a = _as_float(age)
    return _breakpoints(a, [a < 24, a <= 53, a <= 77, a <= 89, a >= 90], [0, 3, 6, 9, 7])


def score_gcs(gcs: pd.Series) -> pd.Series:
    g = _as_float(gcs)
    return _breakpoints(g, [g <= 7, g < 14, g == 14], [10, 4, 3])


def score_heart_rate(heart_rate: pd.Series) -> pd.Series:
    hr = _as_float(heart_rate)
    return _breakpoints(
        hr,
        [hr > 125, hr < 33, (hr >= 107) & (hr <= 125), (hr >= 89) & (hr <= 106)],
        [6, 4, 3, 1],
    )


def score_meanbp(meanbp: pd.Series) -> pd.Series:
    """Mean blood pressure, (2 * dbp + sbp) / 3."""
    bp = _as_float(meanbp)
    return _breakpoints(
        bp,
        [bp < 20.65, bp < 51, bp > 143.44, (bp >= 51) & (bp < 61.33)],
        [4, 3, 3, 2],
    )


def score_resp_rate(resp_rate: pd.Series) -> pd.Series:
    rr = _as_float(resp_rate)
    return _breakpoints(rr, [rr < 6, rr > 44, rr > 30, rr > 22, rr < 13], [10, 9, 6, 1, 1])


def score_temperature(temp_c: pd.Series) -> pd.Series:
    """Body temperature in Celsius."""
    t = _as_float(temp_c)
    return _breakpoints(
        t,
        [
            t > 39.88,
            (t >= 33.22) & (t <= 35.93),
            t < 33.22,
            (t > 35.93) & (t <= 36.39),
            (t >= 36.89) & (t <= 39.88),
        ],
        [6, 4, 3, 2, 2],
    )


def score_urine_output(urineoutput: pd.Series) -> pd.Series:
    """First-day urine output in mL."""
    uo = _as_float(urineoutput)
    return _breakpoints(
        uo,
        [
            uo < 671.09,
            uo > 6896.80,
            (uo >= 671.09) & (uo <= 1426.99),
            (uo >= 1427.00) & (uo <= 2544.14),
        ],
        [10, 8, 5, 1],
    )


def score_mechvent(mechvent: pd.Series) -> pd.Series:
    mv = _as_float(mechvent)
    return _breakpoints(mv, [mv == 1], [9])


def score_elective_surgery(electivesurgery: pd.Series) -> pd.Series:
    es = _as_float(electivesurgery)
    return _breakpoints(es, [es == 1], [0], default=6)


OASIS_SCORERS = {
    "preiculos_score": score_pre_icu_los,
    "age_score": score_age,
    "gcs_score": score_gcs,
    "heart_rate_score": score_heart_rate,
    "meanbp_score": score_meanbp,
    "resp_rate_score": score_resp_rate,
    "temp_score": score_temperature,
    "urineoutput_score": score_urine_output,
    "mechvent_score": score_mechvent,
    "electivesurgery_score": score_elective_surgery,
}


def get_oasis_scores(inputs: pd.DataFrame) -> pd.DataFrame:
    """
    Compute OASIS from first-day inputs.

    Args:
        inputs (pd.DataFrame): stay_id plus one column per key of OASIS_INPUTS
            (pre_icu_los_minutes, age, gcs, heart_rate, meanbp, resp_rate,
            temp_c, urineoutput, mechvent, electivesurgery); missing values
            are allowed

    Returns:
        pd.DataFrame: stay_id, the ten sub-scores and oasis, all nullable integers

    Raises:
        ValueError: If any input column is absent
    """
    logger.log_start("get_oasis_scores")
    missing = [c for c in ["stay_id"] + list(OASIS_INPUTS) if c not in inputs.columns]
    if missing:
        raise ValueError(f"OASIS inputs missing columns: {missing}")

    scores = pd.DataFrame({"stay_id": inputs["stay_id"]})
    for column, component in OASIS_INPUTS.items():
        scores[component] = OASIS_SCORERS[component](inputs[column])
    scores["oasis"] = _sum_components(scores[OASIS_COMPONENTS])

    logger.log_end("get_oasis_scores")
    return scores.reset_index(drop=True)
