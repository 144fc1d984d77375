"""
Test suite for data_setup.py

Covers configuration layering (defaults, JSON file, flags), its validation
and loading of the subject ID list.
"""
import json

import pytest

from sepsis_cohort.data_setup import DEFAULT_CONFIG, build_config, load_subject_ids, parse_args


def _write_json(path, content):
    with open(path, 'w') as f:
        json.dump(content, f)
    return str(path)


class TestBuildConfig:

    def test_defaults_with_required_path(self):
        config = build_config(parse_args(['--duckdb_path', 'mimic.duckdb']))
        assert config['duckdb_path'] == 'mimic.duckdb'
        assert config['output_csv'] == DEFAULT_CONFIG['output_csv']
        assert config['window_hours'] == 24
        assert config['counts_csv'] is None

    def test_flags_override_config_file(self, tmp_path):
        config_file = _write_json(tmp_path / 'config.json', {
            'duckdb_path': 'from_file.duckdb',
            'output_csv': 'file.csv',
            'window_hours': 12,
        })
        config = build_config(parse_args(['--config_file', config_file, '--output_csv', 'flag.csv']))

        assert config['duckdb_path'] == 'from_file.duckdb'
        assert config['output_csv'] == 'flag.csv'
        assert config['window_hours'] == 12

    def test_unknown_config_key_raises(self, tmp_path):
        config_file = _write_json(tmp_path / 'config.json', {'duckdb_path': 'x.duckdb', 'window': 12})
        with pytest.raises(ValueError, match='Unknown config keys'):
            build_config(parse_args(['--config_file', config_file]))

    def test_missing_config_file_raises(self, tmp_path):
        with pytest.raises(ValueError):
            build_config(parse_args(['--config_file', str(tmp_path / 'missing.json')]))

    def test_missing_duckdb_path_raises(self):
        with pytest.raises(ValueError, match='duckdb_path'):
            build_config(parse_args([]))

    def test_invalid_revision_and_window_raise(self):
        with pytest.raises(ValueError):
            build_config(parse_args(['--duckdb_path', 'x.duckdb', '--item_code_revision', '7']))
        with pytest.raises(ValueError):
            build_config(parse_args(['--duckdb_path', 'x.duckdb', '--window_hours', '0']))


class TestLoadSubjectIds:

    def test_reads_subject_id_column(self, tmp_path):
        path = tmp_path / 'subjects.csv'
        path.write_text("subject_id,other\n3,a\n1,b\n")
        assert load_subject_ids(str(path)) == [3, 1]

    def test_missing_column_raises(self, tmp_path):
        path = tmp_path / 'subjects.csv'
        path.write_text("patient\n3\n")
        with pytest.raises(ValueError):
            load_subject_ids(str(path))
