"""
Command-Line Entry Point for the Cohort Extraction

This module loads the run configuration, runs the extraction pipeline against
a MIMIC-IV DuckDB file and writes the results to CSV.

Configuration is resolved in three layers, later layers winning:
1. DEFAULT_CONFIG below
2. A JSON file passed with --config_file
3. Explicit command-line flags

Outputs:
- output_csv: the feature table, one row per cohort stay, with a header row
- counts_csv (optional): the cohort step-count report

Usage:
    python -m sepsis_cohort.data_setup --duckdb_path mimiciv.duckdb --output_csv cohort.csv
"""
import argparse
import json
import logging
import os
from typing import Any, Dict, List, Optional

import pandas as pd

from .data_extraction import extract_data_from_path
from .item_codes import LATEST_REVISION, find_provenance_conflicts, get_item_codes
from .logging_utils import logger as nested_logger
from .utils import WINDOW_HOURS

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = {
    'duckdb_path': None,                       # MIMIC-IV database file (required)
    'output_csv': "sepsis_cohort.csv",         # Feature table
    'counts_csv': None,                        # Step-count report; skipped when None
    'subject_ids_csv': None,                   # Optional CSV with a subject_id column
    'item_code_revision': LATEST_REVISION,
    'window_hours': WINDOW_HOURS,
}


def load_subject_ids(csv_path: str) -> List[int]:
    """
    Load patient subject IDs from a CSV file.

    Args:
        csv_path (str): Path to a CSV file with a 'subject_id' column

    Returns:
        List[int]: Subject IDs in file order

    Raises:
        ValueError: If the file has no 'subject_id' column
    """
    nested_logger.log_start("load_subject_ids")
    df = pd.read_csv(csv_path)
    if 'subject_id' not in df.columns:
        raise ValueError(f"{csv_path} has no subject_id column")
    subject_ids = df['subject_id'].astype(int).tolist()
    nested_logger.log_end("load_subject_ids")
    return subject_ids


def build_config(args: argparse.Namespace) -> Dict[str, Any]:
    """
    Merge defaults, the optional JSON config file and command-line flags.

    Raises:
        ValueError: For unknown config keys, a missing duckdb_path, an unknown
            item-code revision or a non-positive window
    """
    config = dict(DEFAULT_CONFIG)

    if args.config_file:
        if not os.path.exists(args.config_file):
            raise ValueError(f"Config file not found: {args.config_file}")
        with open(args.config_file, 'r') as f:
            file_config = json.load(f)
        unknown = sorted(set(file_config) - set(DEFAULT_CONFIG))
        if unknown:
            raise ValueError(f"Unknown config keys: {unknown}")
        config.update(file_config)

    for key in DEFAULT_CONFIG:
        value = getattr(args, key, None)
        if value is not None:
            config[key] = value

    if not config['duckdb_path']:
        raise ValueError("duckdb_path is required")
    # Raises ValueError for revisions the item-code table does not know
    get_item_codes(config['item_code_revision'])
    if int(config['window_hours']) <= 0:
        raise ValueError(f"window_hours must be positive, got {config['window_hours']}")
    return config


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Extract the sepsis/SIRS ICU cohort from MIMIC-IV')
    parser.add_argument('--duckdb_path', type=str, default=None,
                        help='MIMIC-IV DuckDB database file (opened read-only)')
    parser.add_argument('--output_csv', type=str, default=None,
                        help='Where to write the feature table')
    parser.add_argument('--counts_csv', type=str, default=None,
                        help='Where to write the cohort step-count report')
    parser.add_argument('--subject_ids_csv', type=str, default=None,
                        help='CSV with a subject_id column restricting the candidates')
    parser.add_argument('--item_code_revision', type=int, default=None,
                        help='Item-code revision to resolve concepts against')
    parser.add_argument('--window_hours', type=int, default=None,
                        help='Observation window after ICU admission in hours')
    parser.add_argument('--config_file', type=str, default=None,
                        help='JSON config file overriding the defaults')
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None):
    """Run the extraction and write the output CSV(s)."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    config = build_config(parse_args(argv))
    logger.info(f"Using configuration: {config}")

    conflicts = find_provenance_conflicts()
    for concept, rows in conflicts.groupby('concept'):
        variants = "; ".join(f"revision {r.revision}: {r.source} {r.itemids}" for r in rows.itertuples())
        logger.warning(f"Item codes for '{concept}' differ between revisions ({variants})")

    subject_ids = None
    if config['subject_ids_csv']:
        subject_ids = load_subject_ids(config['subject_ids_csv'])
        logger.info(f"Restricting candidates to {len(subject_ids)} subjects")

    feature_rows, step_counts = extract_data_from_path(
        config['duckdb_path'],
        subject_ids=subject_ids,
        window_hours=int(config['window_hours']),
        revision=int(config['item_code_revision']),
    )

    feature_rows.to_csv(config['output_csv'], index=False)
    logger.info(f"Wrote {len(feature_rows)} stays to {config['output_csv']}")
    if config['counts_csv']:
        step_counts.to_csv(config['counts_csv'], index=False)
        logger.info(f"Wrote step counts to {config['counts_csv']}")


if __name__ == "__main__":
    main()
