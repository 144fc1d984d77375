"""
In-memory MIMIC-IV schema for the test suites.

Creates only the tables and columns the pipeline reads, plus the derived
sofa and suspicion_of_infection concept tables. Rows are inserted from lists
of dicts; columns left out of every row are stored as NULL.
"""
from typing import Any, Dict, List

import duckdb  # type: ignore
import pandas as pd

MIMIC_SCHEMA = {
    "icustays": """
        CREATE TABLE icustays (
            subject_id INTEGER,
            hadm_id INTEGER,
            stay_id INTEGER,
            intime TIMESTAMP,
            outtime TIMESTAMP
        );
    """,
    "admissions": """
        CREATE TABLE admissions (
            subject_id INTEGER,
            hadm_id INTEGER,
            admittime TIMESTAMP,
            dischtime TIMESTAMP,
            admission_type VARCHAR,
            language VARCHAR,
            insurance VARCHAR,
            race VARCHAR
        );
    """,
    "patients": """
        CREATE TABLE patients (
            subject_id INTEGER,
            gender VARCHAR,
            anchor_age INTEGER,
            anchor_year INTEGER,
            dod TIMESTAMP
        );
    """,
    "services": """
        CREATE TABLE services (
            subject_id INTEGER,
            hadm_id INTEGER,
            transfertime TIMESTAMP,
            curr_service VARCHAR
        );
    """,
    "diagnoses_icd": """
        CREATE TABLE diagnoses_icd (
            subject_id INTEGER,
            hadm_id INTEGER,
            seq_num INTEGER,
            icd_code VARCHAR,
            icd_version INTEGER
        );
    """,
    "chartevents": """
        CREATE TABLE chartevents (
            subject_id INTEGER,
            hadm_id INTEGER,
            stay_id INTEGER,
            charttime TIMESTAMP,
            itemid INTEGER,
            value VARCHAR,
            valuenum DOUBLE
        );
    """,
    "labevents": """
        CREATE TABLE labevents (
            subject_id INTEGER,
            hadm_id INTEGER,
            charttime TIMESTAMP,
            itemid INTEGER,
            valuenum DOUBLE
        );
    """,
    "outputevents": """
        CREATE TABLE outputevents (
            subject_id INTEGER,
            hadm_id INTEGER,
            stay_id INTEGER,
            charttime TIMESTAMP,
            itemid INTEGER,
            value DOUBLE
        );
    """,
    "inputevents": """
        CREATE TABLE inputevents (
            subject_id INTEGER,
            hadm_id INTEGER,
            stay_id INTEGER,
            starttime TIMESTAMP,
            endtime TIMESTAMP,
            itemid INTEGER,
            amount DOUBLE,
            rate DOUBLE,
            rateuom VARCHAR
        );
    """,
    "procedureevents": """
        CREATE TABLE procedureevents (
            subject_id INTEGER,
            hadm_id INTEGER,
            stay_id INTEGER,
            starttime TIMESTAMP,
            endtime TIMESTAMP,
            itemid INTEGER,
            value DOUBLE
        );
    """,
    "sofa": """
        CREATE TABLE sofa (
            stay_id INTEGER,
            starttime TIMESTAMP,
            endtime TIMESTAMP,
            sofa_24hours INTEGER
        );
    """,
    "suspicion_of_infection": """
        CREATE TABLE suspicion_of_infection (
            subject_id INTEGER,
            stay_id INTEGER,
            hadm_id INTEGER,
            antibiotic_time TIMESTAMP,
            culture_time TIMESTAMP,
            suspected_infection_time TIMESTAMP,
            suspected_infection INTEGER
        );
    """,
}


def ts(s: str) -> pd.Timestamp:
    return pd.Timestamp(s)


def create_mimic(database: str) -> Any:
    con = duckdb.connect(database=database)
    for ddl in MIMIC_SCHEMA.values():
        con.execute(ddl)
    return con


def create_in_memory_mimic() -> Any:
    return create_mimic(":memory:")


def insert_rows(con: Any, table: str, rows: List[Dict[str, Any]]) -> None:
    """Insert dict rows into `table`; only the keys used by the rows are written."""
    if not rows:
        return
    df = pd.DataFrame(rows)
    columns = ", ".join(df.columns)
    con.register("tmp_rows_df", df)
    con.execute(f"INSERT INTO {table} ({columns}) SELECT {columns} FROM tmp_rows_df")
    con.unregister("tmp_rows_df")
