"""
Test Suite for Data Loader Module
==================================

Tests for configuration loading, CSV ingestion and validation.
"""

import pytest
import numpy as np
import pandas as pd

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from f1_report.data_loader import (
    load_config, load_table, load_tables, validate_tables, get_data_summary,
    print_data_summary, TABLE_FILES, REQUIRED_COLUMNS
)


class TestLoadConfig:
    """Tests for load_config."""

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "missing.yaml"))

    def test_reads_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("hypothesis:\n  alpha: 0.01\n  grid_bins: [0, 1, .inf]\n")

        config = load_config(str(path))

        assert config['hypothesis']['alpha'] == 0.01
        assert config['hypothesis']['grid_bins'][-1] == float('inf')

    def test_empty_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")
        assert load_config(str(path)) == {}

    def test_project_config_loads(self):
        config = load_config(str(Path(__file__).parent.parent / "config" / "config.yaml"))
        for section in ['data', 'preprocessing', 'lap_time_model', 'clustering',
                        'hypothesis', 'output', 'logging']:
            assert section in config, f"Missing section: {section}"


class TestLoadTable:
    """Tests for single table loading."""

    def test_backslash_n_is_missing(self, data_dir):
        results = load_table(str(data_dir), 'results.csv')
        assert results['position'].isnull().sum() == 12
        assert results['position'].dtype == np.float64

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="not found"):
            load_table(str(tmp_path), 'races.csv')

    def test_missing_columns(self, tmp_path):
        pd.DataFrame({'raceId': [1], 'year': [2020]}).to_csv(tmp_path / 'races.csv', index=False)
        with pytest.raises(ValueError, match="missing required columns"):
            load_table(str(tmp_path), 'races.csv', REQUIRED_COLUMNS['races'])

    def test_empty_table(self, tmp_path):
        (tmp_path / 'races.csv').write_text(','.join(REQUIRED_COLUMNS['races']) + '\n')
        with pytest.raises(ValueError, match="empty"):
            load_table(str(tmp_path), 'races.csv')


class TestLoadTables:
    """Tests for loading the full dataset."""

    def test_all_tables_loaded(self, tables):
        assert set(tables) == set(TABLE_FILES)

    def test_dates_parsed(self, tables):
        assert pd.api.types.is_datetime64_any_dtype(tables['races']['date'])
        assert pd.api.types.is_datetime64_any_dtype(tables['drivers']['dob'])

    def test_optional_table_skipped(self, data_dir, tmp_path):
        for name, file_name in TABLE_FILES.items():
            if name != 'status':
                (tmp_path / file_name).write_bytes((data_dir / file_name).read_bytes())

        tables = load_tables(str(tmp_path))
        assert 'status' not in tables
        assert 'results' in tables

    def test_required_table_missing(self, data_dir, tmp_path):
        for name, file_name in TABLE_FILES.items():
            if name != 'lap_times':
                (tmp_path / file_name).write_bytes((data_dir / file_name).read_bytes())

        with pytest.raises(FileNotFoundError, match="lap_times.csv"):
            load_tables(str(tmp_path))

    def test_custom_file_names(self, data_dir, tmp_path):
        for file_name in TABLE_FILES.values():
            (tmp_path / file_name).write_bytes((data_dir / file_name).read_bytes())
        (tmp_path / 'races.csv').rename(tmp_path / 'grand_prix.csv')

        tables = load_tables(str(tmp_path), {'races': 'grand_prix.csv'})
        assert len(tables['races']) == 12


class TestValidateTables:
    """Tests for validate_tables."""

    def test_clean_dataset(self, tables):
        is_valid, report = validate_tables(tables)
        assert is_valid
        assert report['issues'] == []

    def test_duplicate_primary_key(self, tables):
        tables['races'] = pd.concat([tables['races'], tables['races'].head(1)])

        is_valid, report = validate_tables(tables, strict=False)

        assert not is_valid
        assert any('duplicate' in issue for issue in report['issues'])

    def test_orphan_foreign_key(self, tables):
        tables['results'].loc[0, 'driverId'] = 999

        is_valid, report = validate_tables(tables, strict=False)

        assert not is_valid
        assert any('results.driverId' in issue for issue in report['issues'])

    def test_non_positive_lap_time(self, tables):
        tables['lap_times'].loc[0, 'milliseconds'] = 0

        _, report = validate_tables(tables, strict=False)
        assert any('non-positive' in issue for issue in report['issues'])

    def test_strict_raises(self, tables):
        tables['lap_times'].loc[0, 'milliseconds'] = -5
        with pytest.raises(ValueError, match="validation failed"):
            validate_tables(tables, strict=True)


class TestDataSummary:
    """Tests for the dataset summary."""

    def test_summary_values(self, tables):
        summary = get_data_summary(tables)

        assert summary['seasons'] == [2018, 2020]
        assert summary['n_races'] == 12
        assert summary['n_drivers'] == 8
        assert summary['n_circuits'] == 3
        assert summary['lap_time_ms']['count'] == len(tables['lap_times'])

    def test_print_summary(self, tables, capsys):
        print_data_summary(tables)
        out = capsys.readouterr().out
        assert "DATASET SUMMARY" in out
        assert "lap_times" in out


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
