"""
End-to-End Cohort Extraction Pipeline

This module runs the whole extraction against an open DuckDB connection:

1. Read candidate ICU stays (optionally restricted to a subject list)
2. Score every candidate with SIRS and simplified SOFA over its first day
3. Apply the cohort stages (diagnosis, first stay, pregnancy, ICU duration)
4. Link surviving stays to their admission and aggregate first-day features
5. Compute OASIS and assemble the final feature table

Data flows one way: the event store feeds the scores and features, the
cohort filter narrows the stay set, and the assembler left-joins everything
onto the survivors.
"""
from typing import List, Optional, Tuple

import duckdb
import pandas as pd

from .cohort_assembler import assemble_feature_rows
from .cohort_filter import apply_cohort_filter
from .event_store import (
    query_admissions,
    query_diagnoses,
    query_icu_stays,
    query_patients,
    query_sepsis3_candidates,
    query_services,
    register_stays,
)
from .feature_data import get_anthropometrics, get_averaged_features, get_treatment_flags, get_urine_output
from .item_codes import LATEST_REVISION, find_provenance_conflicts
from .logging_utils import logger
from .severity_scores import get_oasis_scores, get_sirs_scores, get_sofa_scores
from .static_data import (
    get_comorbidities,
    get_demographics,
    get_elective_surgery,
    get_primary_diagnoses,
    get_surgical_flags,
    link_admissions,
)
from .utils import WINDOW_HOURS


def get_oasis_inputs(stays: pd.DataFrame, demographics: pd.DataFrame, averages: pd.DataFrame,
                     treatments: pd.DataFrame, urine: pd.DataFrame, surgical: pd.DataFrame) -> pd.DataFrame:
    """
    Collect the ten OASIS inputs per stay from already-computed features.

    Mean blood pressure is derived as (2 * dbp + sbp) / 3 from the averaged
    systolic and diastolic pressures; temperature is the averaged Celsius value.

    Returns:
        pd.DataFrame: stay_id plus the OASIS input columns, and the surgical
        and electivesurgery flags
    """
    df = stays[["stay_id", "pre_icu_los_minutes", "admission_type"]]
    df = df.merge(demographics[["stay_id", "age"]], on="stay_id", how="left")
    df = df.merge(averages[["stay_id", "gcs", "heart_rate", "sbp", "dbp", "resp_rate", "body_temp"]],
                  on="stay_id", how="left")
    df = df.merge(treatments[["stay_id", "mechvent"]], on="stay_id", how="left")
    df = df.merge(urine, on="stay_id", how="left")
    df = df.merge(surgical, on="stay_id", how="left")

    df["meanbp"] = (2 * df["dbp"] + df["sbp"]) / 3
    df["temp_c"] = df["body_temp"]
    df["electivesurgery"] = get_elective_surgery(df["admission_type"], df["surgical"])
    return df.drop(columns=["admission_type", "sbp", "dbp", "body_temp"])


def extract_data(con: duckdb.DuckDBPyConnection, subject_ids: Optional[List[int]] = None,
                 window_hours: int = WINDOW_HOURS,
                 revision: int = LATEST_REVISION) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Build the sepsis/SIRS cohort feature table from a MIMIC-IV database.

    Args:
        con (duckdb.DuckDBPyConnection): Connection to a MIMIC-IV database that
            also holds the derived sofa and suspicion_of_infection tables
        subject_ids (Optional[List[int]]): Restrict candidates to these subjects
        window_hours (int): First-day observation window after ICU intime
        revision (int): Item-code revision to resolve concepts against

    Returns:
        Tuple[pd.DataFrame, pd.DataFrame]:
            - Feature table, one row per cohort stay (FEATURE_COLUMNS)
            - Step-count report of the cohort stages

    Raises:
        ValueError: If `revision` does not define a concept the pipeline reads
    """
    logger.log_start("extract_data")
    conflicts = find_provenance_conflicts()
    logger.log_info(f"{conflicts['concept'].nunique()} concepts have item codes that differ between revisions; "
                    f"using revision {revision} where defined")

    # Candidate stays and the inputs of the diagnosis stage
    stays = query_icu_stays(con, subject_ids)
    sirs = get_sirs_scores(con, stays, window_hours, revision)
    sofa = get_sofa_scores(con, stays, window_hours, revision)
    register_stays(con, stays)
    sepsis3 = query_sepsis3_candidates(con)
    diagnoses = query_diagnoses(con)

    cohort, step_counts = apply_cohort_filter(stays, sepsis3, diagnoses, sirs, sofa)

    # Features of the surviving stays
    register_stays(con, cohort)
    cohort = link_admissions(cohort, query_admissions(con))
    register_stays(con, cohort)
    demographics = get_demographics(cohort, query_patients(con))
    primary_diagnoses = get_primary_diagnoses(cohort, diagnoses)
    comorbidities = get_comorbidities(cohort, diagnoses)
    surgical = get_surgical_flags(cohort, query_services(con))
    averages = get_averaged_features(con, cohort, window_hours, revision)
    anthropometrics = get_anthropometrics(con, cohort, revision)
    treatments = get_treatment_flags(con, cohort, window_hours, revision)
    urine = get_urine_output(con, cohort, window_hours)

    oasis_inputs = get_oasis_inputs(cohort, demographics, averages, treatments, urine, surgical)
    oasis = get_oasis_scores(oasis_inputs)

    feature_rows = assemble_feature_rows(
        cohort,
        [demographics, primary_diagnoses, anthropometrics, sirs, sofa, oasis, averages, treatments,
         comorbidities, oasis_inputs],
    )
    logger.log_end("extract_data")
    return feature_rows, step_counts


def extract_data_from_path(duckdb_path: str, subject_ids: Optional[List[int]] = None,
                           window_hours: int = WINDOW_HOURS,
                           revision: int = LATEST_REVISION) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Open a MIMIC-IV DuckDB file read-only and run extract_data() on it."""
    con = duckdb.connect(duckdb_path, read_only=True)
    try:
        return extract_data(con, subject_ids, window_hours, revision)
    finally:
        con.close()
