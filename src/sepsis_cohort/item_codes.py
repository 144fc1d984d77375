"""
Item Code Lookup Table for MIMIC-IV Clinical Concepts

This module holds the single mapping from MIMIC-IV item IDs to the clinical
concepts the pipeline scores and aggregates. Every entry records which
revision of the extraction queries introduced it, so code sets that drifted
between revisions live side by side instead of in duplicated pipelines.

Revisions:
    1: extended lab-panel extraction (coagulation, liver enzymes, proteins)
    2: full cohort pipeline with scores, vitals and treatment flags

Resolution rule: for each concept, the newest revision that defines it wins.
Concepts defined only by an older revision are kept as they are. Concepts
whose code sets differ between revisions are reported by
find_provenance_conflicts() so the run can flag them.

Entry fields:
    concept:        feature or score-input name
    panel:          feature group the concept belongs to
    source:         event table the item ID lives in
    itemid:         MIMIC-IV item ID
    min, max:       inclusive plausibility bounds (None = unbounded)
    min_exclusive:  lower bound is strict when True
    convert:        unit conversion applied before the bound check
    revision:       query revision that uses this code
"""
from typing import Dict, List, Optional

import pandas as pd

LATEST_REVISION = 2

FAHRENHEIT_TO_CELSIUS = "fahrenheit_to_celsius"

EVENT_SOURCES = ["chartevents", "labevents", "inputevents", "procedureevents"]

# Feature panels averaged over the observation window
AVERAGED_PANELS = ["vitals", "chart_extra", "gcs", "chemistry", "hematology", "blood_gas", "coagulation", "liver"]


def _code(concept: str, panel: str, source: str, itemid: int, revision: int,
          min_value: Optional[float] = None, max_value: Optional[float] = None,
          min_exclusive: bool = False, convert: Optional[str] = None) -> Dict:
    return {
        'concept': concept,
        'panel': panel,
        'source': source,
        'itemid': itemid,
        'min': min_value,
        'max': max_value,
        'min_exclusive': min_exclusive,
        'convert': convert,
        'revision': revision,
    }


ITEM_CODES = [
    # ---- Revision 2: vitals (chartevents) ----
    _code('heart_rate', 'vitals', 'chartevents', 220045, 2, min_value=0, max_value=300),
    _code('sbp', 'vitals', 'chartevents', 220179, 2, min_value=0, max_value=400),          # Non-invasive
    _code('sbp', 'vitals', 'chartevents', 220050, 2, min_value=0, max_value=400),          # Arterial
    _code('sbp', 'vitals', 'chartevents', 225309, 2, min_value=0, max_value=400),          # ART BP
    _code('dbp', 'vitals', 'chartevents', 220180, 2, min_value=0, max_value=300),          # Non-invasive
    _code('dbp', 'vitals', 'chartevents', 220051, 2, min_value=0, max_value=300),          # Arterial
    _code('dbp', 'vitals', 'chartevents', 225310, 2, min_value=0, max_value=300),          # ART BP
    _code('body_temp', 'vitals', 'chartevents', 223761, 2, min_value=32, max_value=42, convert=FAHRENHEIT_TO_CELSIUS),
    _code('spo2', 'vitals', 'chartevents', 220277, 2, min_value=0, max_value=100),
    _code('resp_rate', 'vitals', 'chartevents', 220210, 2, min_value=0, max_value=70),
    _code('resp_rate', 'vitals', 'chartevents', 224690, 2, min_value=0, max_value=70),    # Total
    _code('fio2', 'vitals', 'chartevents', 223835, 2),                        # Inspired O2 fraction

    # ---- Revision 2: other first-day chart averages ----
    _code('fio2_apii', 'chart_extra', 'chartevents', 226754, 2),
    _code('fio2_apiv', 'chart_extra', 'chartevents', 227010, 2),
    _code('fio2_ecmoch', 'chart_extra', 'chartevents', 229841, 2),
    _code('fio2_ecmo', 'chart_extra', 'chartevents', 229280, 2),
    _code('apacheii_md', 'chart_extra', 'chartevents', 226740, 2),
    _code('apacheii_cr_h', 'chart_extra', 'chartevents', 226746, 2),
    _code('apacheii_cr_hp', 'chart_extra', 'chartevents', 226747, 2),
    _code('apacheiii', 'chart_extra', 'chartevents', 226991, 2),
    _code('crp_fdv', 'chart_extra', 'chartevents', 227444, 2),
    _code('zcrp_fdv', 'chart_extra', 'chartevents', 220612, 2),
    _code('wbc_fdv', 'chart_extra', 'chartevents', 220546, 2),

    # ---- Revision 2: Glasgow Coma Scale components ----
    _code('gcs_eyes', 'gcs', 'chartevents', 220739, 2),
    _code('gcs_verbal', 'gcs', 'chartevents', 223900, 2),
    _code('gcs_motor', 'gcs', 'chartevents', 223901, 2),

    # ---- Revision 2: score-only chart inputs ----
    _code('map', 'score_input', 'chartevents', 220052, 2),                    # Arterial mean
    _code('map', 'score_input', 'chartevents', 220181, 2),                    # Non-invasive mean
    _code('map', 'score_input', 'chartevents', 224322, 2),                    # IABP mean

    # ---- Revision 2: anthropometrics (raw-value bounds) ----
    _code('weight_kg', 'anthropometric', 'chartevents', 224639, 2, min_value=3, max_value=300),   # Daily weight
    _code('weight_kg', 'anthropometric', 'chartevents', 226512, 2, min_value=3, max_value=300),   # Admission weight
    _code('height_in', 'anthropometric', 'chartevents', 226707, 2, min_value=31.5, max_value=98.4),
    _code('height_cm', 'anthropometric', 'chartevents', 226730, 2, min_value=80, max_value=250),

    # ---- Revision 2: treatments ----
    _code('mechvent', 'treatment', 'chartevents', 223848, 2),                 # Ventilator type
    _code('norepinephrine', 'vasopressor', 'inputevents', 221906, 2),
    _code('epinephrine', 'vasopressor', 'inputevents', 221289, 2),
    _code('vasopressin', 'vasopressor', 'inputevents', 222315, 2),
    _code('phenylephrine', 'vasopressor', 'inputevents', 221749, 2),
    _code('dopamine', 'vasopressor', 'inputevents', 221662, 2),
] + [
    _code('rrt_chart', 'rrt', 'chartevents', itemid, 2) for itemid in [
        226118, 227357, 225725, 226499, 224154, 225810, 227639,
        225183, 227438, 224191, 225806, 225807, 228004, 228005,
        228006, 224144, 224145, 224149, 224150, 224151, 224152,
        224153, 224404, 224406, 226457, 225959, 224135, 224139,
        224146, 225323, 225740, 225776, 225951, 225952, 225953,
        225954, 225956, 225958, 225961, 225963, 225965, 225976,
        225977, 227124, 227290, 227638, 227640, 227753,
    ]
] + [
    _code('rrt_input', 'rrt', 'inputevents', 227536, 2),                     # KCl (CRRT)
    _code('rrt_input', 'rrt', 'inputevents', 227525, 2),                     # Calcium gluconate (CRRT)
] + [
    _code('rrt_procedure', 'rrt', 'procedureevents', itemid, 2) for itemid in [
        225441, 225802, 225803, 225805, 224270, 225809, 225955, 225436,
    ]
] + [
    # ---- Revision 2: chemistry (labevents) ----
    _code('albumin_bl_chem', 'chemistry', 'labevents', 50862, 2, max_value=10),
    _code('albumin_bl_chem', 'chemistry', 'labevents', 51025, 2, max_value=10),
    _code('albumin_bg', 'chemistry', 'labevents', 52022, 2, max_value=10),
    _code('albumin_urine_chem', 'chemistry', 'labevents', 52703, 2, max_value=10),
    _code('albumin_bl_chem_85', 'chemistry', 'labevents', 53085, 2, max_value=10),
    _code('albumin_bl_chem_38', 'chemistry', 'labevents', 53138, 2, max_value=10),
    _code('albumin_asc_chem', 'chemistry', 'labevents', 53116, 2, max_value=10),
    _code('albumin_jointf_chem', 'chemistry', 'labevents', 51019, 2, max_value=10),
    _code('aniongap', 'chemistry', 'labevents', 50868, 2, max_value=10000),
    _code('bun', 'chemistry', 'labevents', 51006, 2, max_value=300),
    _code('calcium_chem', 'chemistry', 'labevents', 50893, 2, max_value=10000),
    _code('chloride_chem', 'chemistry', 'labevents', 50902, 2, max_value=10000),
    _code('creatinine_chem', 'chemistry', 'labevents', 50912, 2, max_value=150),
    _code('glucose_chem', 'chemistry', 'labevents', 50931, 2, max_value=10000),
    _code('sodium_chem', 'chemistry', 'labevents', 50983, 2, max_value=200),
    _code('potassium_chem', 'chemistry', 'labevents', 50971, 2, max_value=30),
    _code('magnesium_chem', 'chemistry', 'labevents', 50960, 2, min_value=0, min_exclusive=True),

    # ---- Revision 2: hematology ----
    _code('crp_highsens', 'hematology', 'labevents', 51652, 2),
    _code('crp_bl_chem', 'hematology', 'labevents', 50889, 2),
    _code('hematocrit', 'hematology', 'labevents', 51221, 2),
    _code('hemoglobin', 'hematology', 'labevents', 51222, 2),
    _code('platelet', 'hematology', 'labevents', 51265, 2),
    _code('mpv', 'hematology', 'labevents', 52142, 2),
    _code('wbcc', 'hematology', 'labevents', 51300, 2),
    _code('neuc', 'hematology', 'labevents', 51256, 2),                      # Neutrophils
    _code('lymc', 'hematology', 'labevents', 51244, 2),                      # Lymphocytes
    _code('eoc', 'hematology', 'labevents', 51114, 2),                       # Eosinophils
    _code('eoc', 'hematology', 'labevents', 51200, 2),
    _code('inr', 'coagulation', 'labevents', 51237, 2),
    _code('inr', 'coagulation', 'labevents', 51675, 2),

    # ---- Revision 2: blood gas ----
    _code('lactate_813', 'blood_gas', 'labevents', 50813, 2),
    _code('lactate_442', 'blood_gas', 'labevents', 52442, 2),
    _code('lactate_chem', 'blood_gas', 'labevents', 53154, 2),
    _code('ph', 'blood_gas', 'labevents', 50820, 2),
    _code('ph', 'blood_gas', 'labevents', 50831, 2),
    _code('ph_fluid', 'blood_gas', 'labevents', 52041, 2),
    _code('pco2_818', 'blood_gas', 'labevents', 50818, 2),
    _code('pco2_040', 'blood_gas', 'labevents', 52040, 2),
    _code('pco2_830', 'blood_gas', 'labevents', 50830, 2),
    _code('po2_821', 'blood_gas', 'labevents', 50821, 2),
    _code('po2_042', 'blood_gas', 'labevents', 52042, 2),
    _code('po2_bfluid', 'blood_gas', 'labevents', 50832, 2),
    _code('bicarbonate', 'blood_gas', 'labevents', 50882, 2),

    # ---- Revision 2: score-only lab inputs ----
    _code('bands', 'score_input', 'labevents', 51491, 2),
    _code('bilirubin_total', 'liver', 'labevents', 50885, 2, min_value=0, min_exclusive=True),

    # ---- Revision 1: extended chemistry and coagulation ----
    _code('albumin_bl_chem', 'chemistry', 'labevents', 50862, 1, max_value=10),
    _code('globulin', 'chemistry', 'labevents', 50930, 1, max_value=10),
    _code('total_protein', 'chemistry', 'labevents', 50976, 1, max_value=20),
    _code('ionized_calcium', 'chemistry', 'labevents', 52029, 1, min_value=0, min_exclusive=True),
    _code('pt', 'coagulation', 'labevents', 51274, 1, min_value=0, min_exclusive=True),
    _code('ptt', 'coagulation', 'labevents', 51275, 1, min_value=0, min_exclusive=True),
    _code('inr', 'coagulation', 'labevents', 51237, 1, min_value=0, min_exclusive=True),
    _code('wbcc', 'hematology', 'labevents', 51301, 1, min_value=0, min_exclusive=True),
    _code('lymc', 'hematology', 'labevents', 51116, 1, min_value=0, min_exclusive=True),
    _code('eoc', 'hematology', 'labevents', 51114, 1, min_value=0, min_exclusive=True),
    _code('fio2', 'vitals', 'labevents', 50816, 1),                          # Blood gas FiO2

    # ---- Revision 1: liver and enzyme panel ----
    _code('alt', 'liver', 'labevents', 50861, 1, min_value=0, min_exclusive=True),
    _code('alp', 'liver', 'labevents', 50863, 1, min_value=0, min_exclusive=True),
    _code('ast', 'liver', 'labevents', 50878, 1, min_value=0, min_exclusive=True),
    _code('amylase', 'liver', 'labevents', 50867, 1, min_value=0, min_exclusive=True),
    _code('bilirubin_total', 'liver', 'labevents', 50885, 1, min_value=0, min_exclusive=True),
    _code('bilirubin_direct', 'liver', 'labevents', 50883, 1, min_value=0, min_exclusive=True),
    _code('bilirubin_indirect', 'liver', 'labevents', 50884, 1, min_value=0, min_exclusive=True),
    _code('ck_cpk', 'liver', 'labevents', 50910, 1, min_value=0, min_exclusive=True),
    _code('ck_mb', 'liver', 'labevents', 50911, 1, min_value=0, min_exclusive=True),
    _code('ggt', 'liver', 'labevents', 50927, 1, min_value=0, min_exclusive=True),
    _code('ld_ldh', 'liver', 'labevents', 50954, 1, min_value=0, min_exclusive=True),
]


def _item_code_frame() -> pd.DataFrame:
    df = pd.DataFrame(ITEM_CODES)
    df["itemid"] = df["itemid"].astype("int64")
    df["min"] = df["min"].astype(float)
    df["max"] = df["max"].astype(float)
    return df


def get_item_codes(revision: int = LATEST_REVISION) -> pd.DataFrame:
    """
    Resolve the item-code table as of a given revision.

    For every concept, only the entries of the newest revision <= `revision`
    that defines the concept are returned.

    Args:
        revision (int): Query revision to resolve against

    Returns:
        pd.DataFrame: One row per (concept, itemid) with the entry fields

    Raises:
        ValueError: If `revision` is not a known revision
    """
    df = _item_code_frame()
    if revision not in set(df["revision"]):
        raise ValueError(f"Unknown item code revision: {revision}")

    df = df[df["revision"] <= revision]
    newest = df.groupby("concept")["revision"].transform("max")
    return df[df["revision"] == newest].reset_index(drop=True)


def get_itemids(concept: str, revision: int = LATEST_REVISION) -> List[int]:
    """Item IDs for one concept; raises ValueError for unknown concepts."""
    codes = get_item_codes(revision)
    itemids = codes.loc[codes["concept"] == concept, "itemid"]
    if itemids.empty:
        raise ValueError(f"Unknown clinical concept: {concept}")
    return sorted(itemids.unique().tolist())


def get_panel_codes(panels: List[str], source: str, revision: int = LATEST_REVISION) -> pd.DataFrame:
    """Resolved entries of the given panels that live in one event source."""
    if source not in EVENT_SOURCES:
        raise ValueError(f"Unknown event source: {source}")
    codes = get_item_codes(revision)
    return codes[codes["panel"].isin(panels) & (codes["source"] == source)].reset_index(drop=True)


def find_provenance_conflicts() -> pd.DataFrame:
    """
    List concepts whose code sets differ between revisions.

    Returns:
        pd.DataFrame: Columns concept, revision, itemids (comma-joined, sorted) and
        source, one row per (concept, revision) for every conflicting concept
    """
    df = _item_code_frame()
    per_revision = (
        df.groupby(["concept", "revision"])
        .agg(itemids=("itemid", lambda s: ",".join(str(i) for i in sorted(set(s)))),
             source=("source", lambda s: ",".join(sorted(set(s)))))
        .reset_index()
    )
    variants = per_revision.groupby("concept").agg(
        n_itemids=("itemids", "nunique"),
        n_sources=("source", "nunique"),
    )
    conflicting = variants.index[(variants["n_itemids"] > 1) | (variants["n_sources"] > 1)]
    result = per_revision[per_revision["concept"].isin(conflicting)]
    return result.sort_values(["concept", "revision"]).reset_index(drop=True)


def label_events(events: pd.DataFrame, codes: pd.DataFrame) -> pd.DataFrame:
    """
    Attach the concept (and bound fields) of each event's item ID.

    An item ID shared by several concepts yields one row per concept.
    Events whose item ID is not in `codes` are dropped.
    """
    return events.merge(codes.drop(columns=["source", "revision", "panel"]), on="itemid", how="inner")


def get_concept_codes(concepts: List[str], revision: int = LATEST_REVISION) -> pd.DataFrame:
    """Resolved entries for a list of concepts; raises ValueError for unknown ones."""
    codes = get_item_codes(revision)
    unknown = sorted(set(concepts) - set(codes["concept"]))
    if unknown:
        raise ValueError(f"Unknown clinical concepts: {unknown}")
    return codes[codes["concept"].isin(concepts)].reset_index(drop=True)
