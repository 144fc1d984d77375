"""
Event Store Access for MIMIC-IV in DuckDB

This module is the only place that reads MIMIC-IV tables. Every read is scoped
to the working set of ICU stays registered with register_stays(), and every
time-stamped read is windowed relative to the stay's ICU admission time.

Tables read (MIMIC-IV v2 names, no schema prefix):
- icustays, admissions, patients, services, diagnoses_icd
- chartevents, labevents, outputevents, inputevents, procedureevents
- sofa, suspicion_of_infection (derived concept tables, Sepsis-3 only)

Chart and output events are matched to a stay on stay_id. Lab events carry no
stay_id, so they are matched on the stay's hadm_id and then windowed by the
stay's intime. Windows are closed on both ends: [intime, intime + window].
"""
from typing import List, Optional

import duckdb
import pandas as pd

from .logging_utils import logger
from .utils import WINDOW_HOURS, assert_required_columns

STAY_COLUMNS = ["stay_id", "subject_id", "hadm_id", "intime"]

# Join key between an event table and the registered stays
WINDOWED_SOURCES = {
    "chartevents": "stay_id",
    "labevents": "hadm_id",
}

ICU_STAYS_SQL = """
    SELECT i.stay_id::BIGINT AS stay_id,
           i.subject_id::BIGINT AS subject_id,
           i.hadm_id::BIGINT AS hadm_id,
           i.intime::TIMESTAMP AS intime,
           i.outtime::TIMESTAMP AS outtime
    FROM icustays i
    """

ICU_STAYS_FOR_SUBJECTS_SQL = ICU_STAYS_SQL + """
    WHERE i.subject_id::BIGINT IN (SELECT subject_id FROM tmp_subject_ids)
    """

# Numeric events of selected items inside each stay's window
WINDOWED_EVENTS_SQL = """
    SELECT s.stay_id::BIGINT AS stay_id,
           e.itemid::BIGINT AS itemid,
           e.charttime::TIMESTAMP AS charttime,
           e.valuenum::DOUBLE AS valuenum
    FROM {table} e
    JOIN tmp_stays s ON e.{join_key} = s.{join_key}
    WHERE e.itemid::BIGINT IN (SELECT itemid FROM tmp_itemids)
      {window_filter}
      AND e.valuenum IS NOT NULL
    """

WINDOW_FILTER_SQL = "AND e.charttime::TIMESTAMP BETWEEN s.intime::TIMESTAMP AND s.intime::TIMESTAMP + INTERVAL {window_hours} HOURS"

# Charted items that are recorded as text (ventilator type, dialysis settings)
WINDOWED_CHART_VALUES_SQL = """
    SELECT s.stay_id::BIGINT AS stay_id,
           e.itemid::BIGINT AS itemid,
           e.charttime::TIMESTAMP AS charttime,
           e.value::VARCHAR AS value
    FROM chartevents e
    JOIN tmp_stays s ON e.stay_id = s.stay_id
    WHERE e.itemid::BIGINT IN (SELECT itemid FROM tmp_itemids)
      AND e.charttime::TIMESTAMP BETWEEN s.intime::TIMESTAMP AND s.intime::TIMESTAMP + INTERVAL {window_hours} HOURS
      AND e.value IS NOT NULL
    """

OUTPUT_EVENTS_SQL = """
    SELECT s.stay_id::BIGINT AS stay_id,
           o.charttime::TIMESTAMP AS charttime,
           o.value::DOUBLE AS value
    FROM outputevents o
    JOIN tmp_stays s ON o.stay_id = s.stay_id
    WHERE o.charttime::TIMESTAMP BETWEEN s.intime::TIMESTAMP AND s.intime::TIMESTAMP + INTERVAL {window_hours} HOURS
      AND o.value IS NOT NULL
    """

# Infusions whose [starttime, endtime] overlaps the window
INPUT_EVENTS_SQL = """
    SELECT s.stay_id::BIGINT AS stay_id,
           e.itemid::BIGINT AS itemid,
           e.starttime::TIMESTAMP AS starttime,
           e.endtime::TIMESTAMP AS endtime,
           e.rate::DOUBLE AS rate,
           e.rateuom::VARCHAR AS rateuom,
           e.amount::DOUBLE AS amount
    FROM inputevents e
    JOIN tmp_stays s ON e.stay_id = s.stay_id
    WHERE e.itemid::BIGINT IN (SELECT itemid FROM tmp_itemids)
      AND e.endtime::TIMESTAMP >= s.intime::TIMESTAMP
      AND e.starttime::TIMESTAMP <= s.intime::TIMESTAMP + INTERVAL {window_hours} HOURS
    """

# Procedures whose [starttime, endtime] overlaps the window
PROCEDURE_EVENTS_SQL = """
    SELECT s.stay_id::BIGINT AS stay_id,
           e.itemid::BIGINT AS itemid,
           e.starttime::TIMESTAMP AS starttime,
           e.endtime::TIMESTAMP AS endtime,
           e.value::DOUBLE AS value
    FROM procedureevents e
    JOIN tmp_stays s ON e.stay_id = s.stay_id
    WHERE e.itemid::BIGINT IN (SELECT itemid FROM tmp_itemids)
      AND e.value IS NOT NULL
      AND e.endtime::TIMESTAMP >= s.intime::TIMESTAMP
      AND e.starttime::TIMESTAMP <= s.intime::TIMESTAMP + INTERVAL {window_hours} HOURS
    """

# All admissions of the registered subjects (stay-to-admission linkage is done by time)
ADMISSIONS_SQL = """
    SELECT a.subject_id::BIGINT AS subject_id,
           a.hadm_id::BIGINT AS hadm_id,
           a.admittime::TIMESTAMP AS admittime,
           a.dischtime::TIMESTAMP AS dischtime,
           a.admission_type AS admission_type,
           a.language AS language,
           a.insurance AS insurance,
           a.race AS race
    FROM admissions a
    WHERE a.subject_id::BIGINT IN (SELECT subject_id FROM tmp_stays)
    """

PATIENTS_SQL = """
    SELECT p.subject_id::BIGINT AS subject_id,
           p.gender AS gender,
           p.anchor_age::INTEGER AS anchor_age,
           p.anchor_year::INTEGER AS anchor_year,
           p.dod::TIMESTAMP AS dod
    FROM patients p
    WHERE p.subject_id::BIGINT IN (SELECT subject_id FROM tmp_stays)
    """

DIAGNOSES_SQL = """
    SELECT d.subject_id::BIGINT AS subject_id,
           d.hadm_id::BIGINT AS hadm_id,
           d.seq_num::INTEGER AS seq_num,
           d.icd_code::VARCHAR AS icd_code,
           d.icd_version::INTEGER AS icd_version
    FROM diagnoses_icd d
    WHERE d.subject_id::BIGINT IN (SELECT subject_id FROM tmp_stays)
    """

# Service transfers before the end of the first ICU day
SERVICES_SQL = """
    SELECT s.stay_id::BIGINT AS stay_id,
           se.curr_service::VARCHAR AS curr_service
    FROM services se
    JOIN tmp_stays s ON se.hadm_id = s.hadm_id
    WHERE se.transfertime::TIMESTAMP < s.intime::TIMESTAMP + INTERVAL 1 DAY
    """

# Sepsis-3: SOFA >= 2 within [-48h, +24h] of the suspicion time, earliest suspicion per stay
SEPSIS3_SQL = """
    WITH sofa_ge2 AS (
        SELECT stay_id, starttime, endtime, sofa_24hours AS sofa_score
        FROM sofa
        WHERE sofa_24hours >= 2
    ),
    ranked AS (
        SELECT soi.subject_id::BIGINT AS subject_id,
               soi.stay_id::BIGINT AS stay_id,
               soi.antibiotic_time::TIMESTAMP AS antibiotic_time,
               soi.culture_time::TIMESTAMP AS culture_time,
               soi.suspected_infection_time::TIMESTAMP AS suspected_infection_time,
               sf.endtime::TIMESTAMP AS sofa_time,
               sf.sofa_score::INTEGER AS sepsis3_sofa,
               ROW_NUMBER() OVER (
                   PARTITION BY soi.stay_id
                   ORDER BY soi.suspected_infection_time NULLS LAST,
                            soi.antibiotic_time NULLS LAST,
                            soi.culture_time NULLS LAST,
                            sf.endtime NULLS LAST
               ) AS rn_sus
        FROM suspicion_of_infection soi
        JOIN sofa_ge2 sf ON soi.stay_id = sf.stay_id
            AND sf.endtime::TIMESTAMP BETWEEN soi.suspected_infection_time::TIMESTAMP - INTERVAL 48 HOURS
                                          AND soi.suspected_infection_time::TIMESTAMP + INTERVAL 24 HOURS
        WHERE soi.stay_id IS NOT NULL
          AND soi.suspected_infection = 1
          AND soi.stay_id::BIGINT IN (SELECT stay_id FROM tmp_stays)
    )
    SELECT subject_id, stay_id, antibiotic_time, culture_time,
           suspected_infection_time, sofa_time, sepsis3_sofa
    FROM ranked
    WHERE rn_sus = 1
    ORDER BY stay_id
    """


def _register_itemids(con: duckdb.DuckDBPyConnection, itemids: List[int]) -> None:
    con.register("tmp_itemids", pd.DataFrame({"itemid": pd.Series(list(itemids), dtype="int64")}))


def query_icu_stays(con: duckdb.DuckDBPyConnection, subject_ids: Optional[List[int]] = None) -> pd.DataFrame:
    """
    Read ICU stays, optionally restricted to a list of subjects.

    Args:
        con (duckdb.DuckDBPyConnection): Connection to the MIMIC-IV database
        subject_ids (Optional[List[int]]): Subjects to keep; None keeps all

    Returns:
        pd.DataFrame: stay_id, subject_id, hadm_id, intime, outtime
    """
    logger.log_start("query_icu_stays")
    if subject_ids is None:
        df = con.execute(ICU_STAYS_SQL).fetchdf()
    else:
        con.register("tmp_subject_ids", pd.DataFrame({"subject_id": pd.Series(list(subject_ids), dtype="int64")}))
        df = con.execute(ICU_STAYS_FOR_SUBJECTS_SQL).fetchdf()
    logger.log_info(f"Read {len(df)} ICU stays")
    logger.log_end("query_icu_stays")
    return df


def register_stays(con: duckdb.DuckDBPyConnection, stays: pd.DataFrame) -> None:
    """
    Register the working stay set as tmp_stays for all subsequent reads.

    Raises:
        ValueError: If `stays` lacks any of stay_id, subject_id, hadm_id, intime
    """
    assert_required_columns(stays, STAY_COLUMNS, "stays")
    con.register("tmp_stays", stays[STAY_COLUMNS].reset_index(drop=True))


def query_windowed_events(con: duckdb.DuckDBPyConnection, source: str, itemids: List[int],
                          window_hours: Optional[int] = WINDOW_HOURS) -> pd.DataFrame:
    """
    Read numeric events of the given items inside each registered stay's window.

    Several item IDs for the same concept (device generations, specimen
    types) are read together; rows without a numeric value are dropped.

    Args:
        con (duckdb.DuckDBPyConnection): Connection with tmp_stays registered
        source (str): 'chartevents' or 'labevents'
        itemids (List[int]): Item IDs to read
        window_hours (Optional[int]): Window length after ICU intime; None reads
            every event of the stay regardless of time

    Returns:
        pd.DataFrame: stay_id, itemid, charttime, valuenum

    Raises:
        ValueError: If `source` is not a windowed event table
    """
    if source not in WINDOWED_SOURCES:
        raise ValueError(f"Unknown windowed event source: {source}")
    _register_itemids(con, itemids)
    window_filter = "" if window_hours is None else WINDOW_FILTER_SQL.format(window_hours=int(window_hours))
    sql = WINDOWED_EVENTS_SQL.format(table=source, join_key=WINDOWED_SOURCES[source], window_filter=window_filter)
    return con.execute(sql).fetchdf()


def query_windowed_chart_values(con: duckdb.DuckDBPyConnection, itemids: List[int],
                                window_hours: int = WINDOW_HOURS) -> pd.DataFrame:
    """Charted text values (value IS NOT NULL) of the given items inside each stay's window."""
    _register_itemids(con, itemids)
    return con.execute(WINDOWED_CHART_VALUES_SQL.format(window_hours=int(window_hours))).fetchdf()


def query_output_events(con: duckdb.DuckDBPyConnection, window_hours: int = WINDOW_HOURS) -> pd.DataFrame:
    """All output events (urine and drains) inside each stay's window."""
    return con.execute(OUTPUT_EVENTS_SQL.format(window_hours=int(window_hours))).fetchdf()


def query_input_events(con: duckdb.DuckDBPyConnection, itemids: List[int],
                       window_hours: int = WINDOW_HOURS) -> pd.DataFrame:
    """Infusion events of the given items that overlap each stay's window."""
    _register_itemids(con, itemids)
    return con.execute(INPUT_EVENTS_SQL.format(window_hours=int(window_hours))).fetchdf()


def query_procedure_events(con: duckdb.DuckDBPyConnection, itemids: List[int],
                           window_hours: int = WINDOW_HOURS) -> pd.DataFrame:
    """Procedure events of the given items that overlap each stay's window."""
    _register_itemids(con, itemids)
    return con.execute(PROCEDURE_EVENTS_SQL.format(window_hours=int(window_hours))).fetchdf()


def query_admissions(con: duckdb.DuckDBPyConnection) -> pd.DataFrame:
    return con.execute(ADMISSIONS_SQL).fetchdf()


def query_patients(con: duckdb.DuckDBPyConnection) -> pd.DataFrame:
    return con.execute(PATIENTS_SQL).fetchdf()


def query_diagnoses(con: duckdb.DuckDBPyConnection) -> pd.DataFrame:
    """Every coded diagnosis of every registered subject, across all admissions."""
    return con.execute(DIAGNOSES_SQL).fetchdf()


def query_services(con: duckdb.DuckDBPyConnection) -> pd.DataFrame:
    return con.execute(SERVICES_SQL).fetchdf()


def query_sepsis3_candidates(con: duckdb.DuckDBPyConnection) -> pd.DataFrame:
    """
    Select the earliest Sepsis-3 suspicion row per registered stay.

    A stay qualifies when a suspected infection has a SOFA window (SOFA >= 2)
    ending between 48 hours before and 24 hours after the suspicion time.
    Ties are broken by suspicion time, antibiotic time, culture time and
    SOFA window end, all ascending.

    Returns:
        pd.DataFrame: subject_id, stay_id, antibiotic_time, culture_time,
        suspected_infection_time, sofa_time, sepsis3_sofa
    """
    return con.execute(SEPSIS3_SQL).fetchdf()
