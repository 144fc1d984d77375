"""
Cohort Definition for the Sepsis/SIRS ICU Cohort

This module applies the five cohort stages, in order, to the candidate ICU
stays and records how many subjects and stays survive each one.

Stages:
1. Diagnosis: keep stays labelled 'Sepsis' (Sepsis-3: SOFA >= 2 around a
   suspected infection) or 'SIRS' (a SIRS ICD code on the admission, or a
   first-day SIRS score >= 2 without a simplified SOFA >= 2)
2. First stay: keep each subject's earliest qualifying stay (ties broken by
   the lowest stay_id)
3. Pregnancy: drop subjects with any pregnancy-related diagnosis on any admission
4. Minimum duration: drop stays shorter than 24 hours
5. Maximum duration: drop stays longer than 2400 hours (100 days)

The step-count report alternates survivor counts with the number of
subjects and stays each exclusion stage removed, ending with the final count.
"""
from typing import Callable, List, Tuple

import numpy as np
import pandas as pd

from .logging_utils import logger
from .utils import get_hour_difference

# ICU duration bounds in hours
MIN_ICU_HOURS = 24
MAX_ICU_HOURS = 2400

SEPSIS_LABEL = "Sepsis"
SIRS_LABEL = "SIRS"

# SIRS and severe sepsis / septic shock codes (ICD-9 995.9x, ICD-10 R65.x)
SIRS_ICD_CODES = ["99590", "99593", "99594", "R65", "R651", "R6510", "R6511"]

# ICD-10 chapter O and ICD-9/10 supervision-of-pregnancy and outcome-of-delivery codes
PREGNANCY_ICD_REGEX = r"^(O|V22|V23|V24|V27|Z33|Z34|Z36)"

# Score thresholds for the computed SIRS criterion
SIRS_MIN_SCORE = 2
SOFA_MIN_SCORE = 2

SEPSIS3_COLUMNS = ["antibiotic_time", "culture_time", "suspected_infection_time", "sofa_time", "sepsis3_sofa"]

STEP_COUNT_COLUMNS = ["step_num", "step", "subject_count", "stay_count"]


def label_diagnoses(stays: pd.DataFrame, sepsis3: pd.DataFrame, diagnoses: pd.DataFrame,
                    sirs: pd.DataFrame, sofa: pd.DataFrame) -> pd.DataFrame:
    """
    Label each candidate stay 'Sepsis' or 'SIRS' and drop unlabelled stays.

    Sepsis-3 takes precedence over SIRS. For the computed SIRS criterion a
    missing SOFA score counts as below threshold, and a missing SIRS score
    never qualifies.

    Args:
        stays (pd.DataFrame): Candidate stays (stay_id, subject_id, hadm_id, ...)
        sepsis3 (pd.DataFrame): Output of query_sepsis3_candidates()
        diagnoses (pd.DataFrame): Output of query_diagnoses()
        sirs (pd.DataFrame): stay_id, sirs_score
        sofa (pd.DataFrame): stay_id, sofa_score

    Returns:
        pd.DataFrame: Labelled stays with diagnosis, sirs_score, sofa_score and
        the Sepsis-3 suspicion columns (missing for SIRS stays)
    """
    df = stays.merge(sirs[["stay_id", "sirs_score"]], on="stay_id", how="left")
    df = df.merge(sofa[["stay_id", "sofa_score"]], on="stay_id", how="left")
    df = df.merge(sepsis3[["stay_id"] + SEPSIS3_COLUMNS], on="stay_id", how="left")

    is_sepsis3 = df["stay_id"].isin(sepsis3["stay_id"]).to_numpy()
    coded = df["hadm_id"].isin(diagnoses.loc[diagnoses["icd_code"].isin(SIRS_ICD_CODES), "hadm_id"]).to_numpy()
    sirs_met = (df["sirs_score"] >= SIRS_MIN_SCORE).fillna(False).to_numpy(dtype=bool)
    sofa_met = (df["sofa_score"] >= SOFA_MIN_SCORE).fillna(False).to_numpy(dtype=bool)

    df["diagnosis"] = np.select([is_sepsis3, coded | (sirs_met & ~sofa_met)], [SEPSIS_LABEL, SIRS_LABEL], default="")
    return df[df["diagnosis"] != ""].reset_index(drop=True)


def keep_first_stays(stays: pd.DataFrame) -> pd.DataFrame:
    """Keep each subject's stay with the earliest intime, then the lowest stay_id."""
    ordered = stays.sort_values(["subject_id", "intime", "stay_id"])
    return ordered.drop_duplicates("subject_id", keep="first").reset_index(drop=True)


def exclude_pregnancies(stays: pd.DataFrame, diagnoses: pd.DataFrame) -> pd.DataFrame:
    """Drop every stay of a subject with any pregnancy-related diagnosis code."""
    pregnant = diagnoses.loc[diagnoses["icd_code"].fillna("").str.match(PREGNANCY_ICD_REGEX), "subject_id"]
    return stays[~stays["subject_id"].isin(pregnant)].reset_index(drop=True)


def exclude_short_stays(stays: pd.DataFrame) -> pd.DataFrame:
    """Drop stays shorter than MIN_ICU_HOURS (and stays without an outtime)."""
    return stays[stays["icu_hours"] >= MIN_ICU_HOURS].reset_index(drop=True)


def exclude_long_stays(stays: pd.DataFrame) -> pd.DataFrame:
    return stays[stays["icu_hours"] <= MAX_ICU_HOURS].reset_index(drop=True)


def _count(stays: pd.DataFrame) -> Tuple[int, int]:
    return stays["subject_id"].nunique(), stays["stay_id"].nunique()


def apply_cohort_filter(stays: pd.DataFrame, sepsis3: pd.DataFrame, diagnoses: pd.DataFrame,
                        sirs: pd.DataFrame, sofa: pd.DataFrame) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Run the five cohort stages in order and report survivors after each.

    Args:
        stays (pd.DataFrame): Candidate ICU stays (stay_id, subject_id, hadm_id, intime, outtime)
        sepsis3 (pd.DataFrame): Sepsis-3 suspicion rows, one per qualifying stay
        diagnoses (pd.DataFrame): All diagnoses of the candidate subjects
        sirs (pd.DataFrame): stay_id, sirs_score for every candidate stay
        sofa (pd.DataFrame): stay_id, sofa_score for every candidate stay

    Returns:
        Tuple[pd.DataFrame, pd.DataFrame]:
            - Surviving stays with icu_hours, diagnosis, scores and Sepsis-3 columns
            - Step-count report (step_num, step, subject_count, stay_count)
    """
    logger.log_start("apply_cohort_filter")
    stays = stays.copy()
    stays["icu_hours"] = get_hour_difference(stays["outtime"], stays["intime"])

    cohort = label_diagnoses(stays, sepsis3, diagnoses, sirs, sofa)
    n_subjects, n_stays = _count(cohort)
    logger.log_counts("Initial dataset", n_subjects, n_stays)
    rows = [("Initial dataset", n_subjects, n_stays)]

    # Exclusion stages: (stage, label for what it removes, label for survivors)
    stages: List[Tuple[Callable[[pd.DataFrame], pd.DataFrame], str, str]] = [
        (keep_first_stays, "Number of multiple admissions", "After excluding multiple admissions"),
        (lambda df: exclude_pregnancies(df, diagnoses), "Number of pregnancies", "After excluding pregnancies"),
        (exclude_short_stays, "Number of stays <24 h", "After excluding stays <24 h"),
        (exclude_long_stays, "Number of stays >100 days", "After excluding stays >100 days"),
    ]
    for stage, removed_label, survivors_label in stages:
        cohort = stage(cohort)
        subjects_left, stays_left = _count(cohort)
        rows.append((removed_label, n_subjects - subjects_left, n_stays - stays_left))
        rows.append((survivors_label, subjects_left, stays_left))
        logger.log_counts(survivors_label, subjects_left, stays_left)
        n_subjects, n_stays = subjects_left, stays_left

    rows.append(("Final number of patients", n_subjects, n_stays))
    step_counts = pd.DataFrame(
        [(i + 1,) + row for i, row in enumerate(rows)],
        columns=STEP_COUNT_COLUMNS,
    )

    logger.log_end("apply_cohort_filter")
    return cohort, step_counts
