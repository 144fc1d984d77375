"""
Cohort Assembly into the Final Feature Table

This module joins the filtered cohort, its scores, features, demographics and
outcome flags into one wide table with one row per stay.

Every component is left-joined on stay_id, so a stay with no data for a
component keeps its row with missing values. Columns follow FEATURE_COLUMNS:
the column order of the full cohort query, followed by supplementary
columns (timestamps, Sepsis-3 details, GCS components, SIRS and SOFA components, OASIS sub-scores and
the extended lab panels). Rows are sorted by subject_id, then stay_id.

Outcome flags (0/1, never missing):
- d48h: death on or before intime + 2 days
- d90d: death on or before intime + 90 days
- dinhosp: any recorded date of death
"""
from typing import List

import pandas as pd

from .logging_utils import logger

# Outcome windows after ICU admission (in days)
DEATH_48H_DAYS = 2
DEATH_90D_DAYS = 90

FEATURE_COLUMNS = [
    # Cohort, outcomes and demographics
    "subject_id", "stay_id", "diagnosis", "icu_hours", "dod", "d48h", "d90d", "dinhosp",
    "age", "weight_kg", "height", "bmi", "gender", "icdcode_reason", "admission_type",
    # Scores
    "sirs_score", "sofa_score", "oasis",
    "apacheii_md", "apacheii_cr_h", "apacheii_cr_hp", "apacheiii", "gcs",
    # Treatments and comorbidities
    "mechvent", "vasopressor", "max_rate_std", "renal_replacement",
    "mild_liver_disease", "severe_liver_disease", "diabetes_with_cc", "diabetes_without_cc",
    "hypertension", "copd",
    # First-day chart averages
    "crp_fdv", "zcrp_fdv", "wbc_fdv", "heart_rate", "sbp", "dbp", "body_temp", "spo2", "resp_rate",
    "fio2", "fio2_apii", "fio2_apiv", "fio2_ecmoch", "fio2_ecmo",
    # Chemistry
    "albumin_bl_chem", "albumin_bg", "albumin_urine_chem", "albumin_bl_chem_85", "albumin_bl_chem_38",
    "albumin_asc_chem", "albumin_jointf_chem", "aniongap", "bun", "calcium_chem", "chloride_chem",
    "creatinine_chem", "glucose_chem", "sodium_chem", "potassium_chem", "magnesium_chem",
    # Blood gas
    "lactate_813", "lactate_442", "lactate_chem", "bicarbonate", "ph", "ph_fluid",
    "po2_042", "po2_821", "po2_bfluid", "pco2_040", "pco2_818", "pco2_830",
    # Hematology
    "crp_highsens", "crp_bl_chem", "hematocrit", "hemoglobin", "platelet", "mpv",
    "wbcc", "neuc", "lymc", "eoc", "nl_ratio", "inr",
    "language", "insurance", "race",
    # Supplementary columns
    "intime", "outtime", "antibiotic_time", "culture_time", "suspected_infection_time",
    "sofa_time", "sepsis3_sofa",
    "gcs_eyes", "gcs_verbal", "gcs_motor",
    "sirs_temp", "sirs_heart_rate", "sirs_resp", "sirs_wbc",
    "sofa_renal", "sofa_liver", "sofa_cardiovascular", "sofa_respiratory", "sofa_coagulation",
    "preiculos_score", "age_score", "gcs_score", "heart_rate_score", "meanbp_score",
    "resp_rate_score", "temp_score", "urineoutput_score", "mechvent_score", "electivesurgery_score",
    "pao2_fio2_ratio", "urineoutput", "surgical", "electivesurgery", "pre_icu_los_minutes",
    "pt", "ptt", "ionized_calcium", "globulin", "total_protein",
    "alt", "alp", "ast", "amylase", "bilirubin_total", "bilirubin_direct", "bilirubin_indirect",
    "ck_cpk", "ck_mb", "ggt", "ld_ldh",
]


def add_outcome_flags(df: pd.DataFrame) -> pd.DataFrame:
    """
    Add d48h, d90d and dinhosp from dod and intime.

    Args:
        df (pd.DataFrame): Rows with intime and dod (dod may be missing)

    Returns:
        pd.DataFrame: Copy of `df` with the three integer outcome flags
    """
    df = df.copy()
    dod = pd.to_datetime(df["dod"])
    df["d48h"] = (dod <= df["intime"] + pd.Timedelta(days=DEATH_48H_DAYS)).astype(int)
    df["d90d"] = (dod <= df["intime"] + pd.Timedelta(days=DEATH_90D_DAYS)).astype(int)
    df["dinhosp"] = dod.notna().astype(int)
    return df


def assemble_feature_rows(cohort: pd.DataFrame, components: List[pd.DataFrame]) -> pd.DataFrame:
    """
    Left-join per-stay components onto the cohort and order the result.

    Args:
        cohort (pd.DataFrame): Filtered stays, one row per stay_id
        components (List[pd.DataFrame]): Frames keyed by stay_id; columns they
            share with frames joined earlier are ignored

    Returns:
        pd.DataFrame: One row per cohort stay with FEATURE_COLUMNS in order
        (columns no component provided are all-missing)

    Raises:
        ValueError: If the cohort or any component has duplicate stay_ids
    """
    logger.log_start("assemble_feature_rows")
    if cohort["stay_id"].duplicated().any():
        raise ValueError("Cohort has duplicate stay_id rows")

    df = cohort
    for component in components:
        if component["stay_id"].duplicated().any():
            raise ValueError(f"Component with columns {list(component.columns)} has duplicate stay_id rows")
        new_columns = [c for c in component.columns if c not in df.columns]
        df = df.merge(component[["stay_id"] + new_columns], on="stay_id", how="left")

    df = add_outcome_flags(df)
    df = df.reindex(columns=FEATURE_COLUMNS)
    df = df.sort_values(["subject_id", "stay_id"]).reset_index(drop=True)

    logger.log_info(f"Assembled {len(df)} rows x {len(df.columns)} columns")
    logger.log_end("assemble_feature_rows")
    return df
