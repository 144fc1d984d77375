"""
Static Per-Stay Features from Admissions, Patients and Diagnoses

This module derives the features of a stay that do not come from bedside
event streams:

- Admission linkage: the admission whose [admittime, dischtime] contains the
  ICU intime, with its type, language, insurance, race and the pre-ICU
  length of stay in minutes
- Demographics: gender, age at ICU admission and date of death
- Primary diagnosis: the ICD code with sequence number 1 on the admission
- Comorbidity flags from ICD-9/ICD-10 prefix rules
- Surgical service flag and the elective-surgery flag used by OASIS

All functions are pure pandas transformations over frames read through the
event store, so they can be exercised without a database.
"""
from typing import List, Tuple

import numpy as np
import pandas as pd

from .logging_utils import logger
from .utils import get_minute_difference, get_year_difference

ADMISSION_COLUMNS = ["hadm_id", "admittime", "admission_type", "language", "insurance", "race"]

ELECTIVE_ADMISSION_TYPE = "ELECTIVE"

# Service codes counted as surgical besides anything containing 'surg'
SURGICAL_SERVICES = ["ORTHO"]

# Comorbidity rules: (icd_version, prefix length, codes). A diagnosis matches a
# rule when the first `prefix length` characters of its code are in `codes`.
COMORBIDITY_RULES = {
    "mild_liver_disease": [
        (9, 3, ["570", "571"]),
        (9, 4, ["0706", "0709", "5733", "5734", "5738", "5739", "V427"]),
        (9, 5, ["07022", "07023", "07032", "07033", "07044", "07054"]),
        (10, 3, ["B18", "K73", "K74"]),
        (10, 4, ["K700", "K701", "K702", "K703", "K709", "K713", "K714", "K715", "K717",
                 "K760", "K762", "K763", "K764", "K768", "K769", "Z944"]),
    ],
    "severe_liver_disease": [
        (9, 4, ["4560", "4561", "4562"]),
        (9, 4, [str(code) for code in range(5722, 5729)]),                   # 5722 through 5728
        (10, 4, ["I850", "I859", "I864", "I982", "K704", "K711", "K721", "K729", "K765", "K766", "K767"]),
    ],
    "diabetes_without_cc": [
        (9, 4, ["2500", "2501", "2502", "2503", "2508", "2509"]),
        (10, 4, ["E100", "E101", "E106", "E108", "E109", "E110", "E111", "E116", "E118", "E119",
                 "E120", "E121", "E126", "E128", "E129", "E130", "E131", "E136", "E138", "E139",
                 "E140", "E141", "E146", "E148", "E149"]),
    ],
    "diabetes_with_cc": [
        (9, 4, ["2504", "2505", "2506", "2507"]),
        (10, 4, ["E102", "E103", "E104", "E105", "E107", "E112", "E113", "E114", "E115", "E117",
                 "E122", "E123", "E124", "E125", "E127", "E132", "E133", "E134", "E135", "E137",
                 "E142", "E143", "E144", "E145", "E147"]),
    ],
    "hypertension": [
        (9, 4, ["4010", "4011", "4019"]),
        (10, 4, ["I5", "I10"]),                                              # Matches whole codes I5 and I10
    ],
    "copd": [
        (10, 4, ["J44", "J440", "J441", "J449"]),
    ],
}
COMORBIDITY_COLUMNS = list(COMORBIDITY_RULES)


def link_admissions(stays: pd.DataFrame, admissions: pd.DataFrame) -> pd.DataFrame:
    """
    Attach to each stay the admission that contains its ICU admission time.

    When several admissions contain the intime the earliest one is used. Stays
    that no admission contains keep the hadm_id recorded on the ICU stay.

    Args:
        stays (pd.DataFrame): stay_id, subject_id, hadm_id, intime (+ any other columns)
        admissions (pd.DataFrame): Output of query_admissions()

    Returns:
        pd.DataFrame: `stays` with hadm_id replaced by the linked admission and
        admittime, admission_type, language, insurance, race and
        pre_icu_los_minutes added
    """
    logger.log_start("link_admissions")
    candidates = stays[["stay_id", "subject_id", "intime"]].merge(admissions, on="subject_id", how="inner")
    contains = (candidates["intime"] >= candidates["admittime"]) & (candidates["intime"] <= candidates["dischtime"])
    linked = (
        candidates[contains]
        .sort_values(["stay_id", "admittime"])
        .drop_duplicates("stay_id", keep="first")[["stay_id"] + ADMISSION_COLUMNS]
    )

    unlinked = stays.loc[~stays["stay_id"].isin(linked["stay_id"]), ["stay_id", "hadm_id"]]
    fallback = unlinked.merge(admissions[ADMISSION_COLUMNS], on="hadm_id", how="left")
    links = pd.concat([linked, fallback[["stay_id"] + ADMISSION_COLUMNS]], ignore_index=True)
    if len(unlinked):
        logger.log_info(f"{len(unlinked)} stays not contained in any admission; using their recorded hadm_id")

    df = stays.drop(columns=["hadm_id"]).merge(links, on="stay_id", how="left")
    df["pre_icu_los_minutes"] = get_minute_difference(df["intime"], df["admittime"])
    logger.log_end("link_admissions")
    return df


def get_demographics(stays: pd.DataFrame, patients: pd.DataFrame) -> pd.DataFrame:
    """
    Gender, age at ICU admission and date of death for each stay.

    Age is the patient's anchor age shifted by the calendar years between the
    anchor year and the ICU intime.

    Returns:
        pd.DataFrame: stay_id, gender, age, dod
    """
    df = stays[["stay_id", "subject_id", "intime"]].merge(patients, on="subject_id", how="left")
    df["age"] = (df["anchor_age"] + get_year_difference(df["intime"], df["anchor_year"])).astype("Int64")
    return df[["stay_id", "gender", "age", "dod"]]


def get_primary_diagnoses(stays: pd.DataFrame, diagnoses: pd.DataFrame) -> pd.DataFrame:
    """ICD code with seq_num 1 on each stay's admission, as icdcode_reason."""
    primary = (
        diagnoses[diagnoses["seq_num"] == 1]
        .drop_duplicates("hadm_id")[["hadm_id", "icd_code"]]
        .rename(columns={"icd_code": "icdcode_reason"})
    )
    return stays[["stay_id", "hadm_id"]].merge(primary, on="hadm_id", how="left")[["stay_id", "icdcode_reason"]]


def _matches_rules(diagnoses: pd.DataFrame, rules: List[Tuple[int, int, List[str]]]) -> pd.Series:
    codes = diagnoses["icd_code"].fillna("")
    hit = pd.Series(False, index=diagnoses.index)
    for version, length, prefixes in rules:
        hit |= (diagnoses["icd_version"] == version) & codes.str[:length].isin(prefixes)
    return hit


def get_comorbidities(stays: pd.DataFrame, diagnoses: pd.DataFrame) -> pd.DataFrame:
    """
    Comorbidity flags per stay from the diagnoses of its admission.

    A flag is 1 when any diagnosis on the admission matches the rule and 0
    otherwise. Admissions without any coded diagnosis get missing flags.

    Returns:
        pd.DataFrame: stay_id plus one nullable integer column per comorbidity
    """
    logger.log_start("get_comorbidities")
    dx = diagnoses[diagnoses["hadm_id"].isin(stays["hadm_id"])]
    flags = pd.DataFrame({"hadm_id": dx["hadm_id"]})
    for name, rules in COMORBIDITY_RULES.items():
        flags[name] = _matches_rules(dx, rules).astype(int)
    flags = flags.groupby("hadm_id", as_index=False).max()

    df = stays[["stay_id", "hadm_id"]].merge(flags, on="hadm_id", how="left")
    df[COMORBIDITY_COLUMNS] = df[COMORBIDITY_COLUMNS].astype("Int64")
    logger.log_end("get_comorbidities")
    return df[["stay_id"] + COMORBIDITY_COLUMNS]


def get_surgical_flags(stays: pd.DataFrame, services: pd.DataFrame) -> pd.DataFrame:
    """
    Flag stays on a surgical service before the end of the first ICU day.

    Args:
        stays (pd.DataFrame): Stays with stay_id
        services (pd.DataFrame): Output of query_services()

    Returns:
        pd.DataFrame: stay_id, surgical (0/1; 0 when no service was recorded)
    """
    service = services["curr_service"].fillna("")
    is_surgical = service.str.lower().str.contains("surg") | service.isin(SURGICAL_SERVICES)
    surgical = services.assign(surgical=is_surgical.astype(int)).groupby("stay_id")["surgical"].max()

    df = stays[["stay_id"]].merge(surgical.reset_index(), on="stay_id", how="left")
    df["surgical"] = df["surgical"].fillna(0).astype(int)
    return df


def get_elective_surgery(admission_type: pd.Series, surgical: pd.Series) -> pd.Series:
    """
    1 for an elective admission on a surgical service, else 0.

    Missing when either input is missing, unless the stay already qualifies.
    """
    surgical = pd.to_numeric(surgical, errors="coerce").astype("float64")
    is_elective = (admission_type == ELECTIVE_ADMISSION_TYPE).fillna(False).to_numpy(dtype=bool) & (surgical == 1).to_numpy()
    known = admission_type.notna().to_numpy() & surgical.notna().to_numpy()
    flag = pd.Series(np.where(is_elective, 1, 0), index=admission_type.index).astype("Int64")
    return flag.where(is_elective | known)
