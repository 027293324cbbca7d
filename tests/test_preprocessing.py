"""
Test Suite for Preprocessing Module
=====================================

Tests for the lap dataset, pit features, the lap encoder and the driver /
grid tables.
"""

import pytest
import numpy as np
import pandas as pd
import tempfile
import os

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from f1_report.preprocessing import (
    filter_years, add_pit_features, build_lap_dataset, split_by_race,
    LapFeatureEncoder, prepare_lap_model_data, build_driver_features,
    build_grid_win_table, DRIVER_FEATURES, NUMERIC_FEATURES, TARGET
)


class TestFilterYears:
    """Tests for season filtering."""

    def test_inclusive_range(self, tables):
        races = filter_years(tables['races'], 2019, 2020)
        assert set(races['year']) == {2019, 2020}

    def test_open_range_keeps_everything(self, tables):
        assert len(filter_years(tables['races'])) == len(tables['races'])

    def test_empty_range_raises(self, tables):
        with pytest.raises(ValueError, match="No races"):
            filter_years(tables['races'], 1950, 1951)


class TestAddPitFeatures:
    """Tests for cumulative pit features on a hand-built stint."""

    @pytest.fixture
    def laps(self):
        return pd.DataFrame({
            'raceId': [1] * 6,
            'driverId': [1] * 6,
            'lap': [1, 2, 3, 4, 5, 6],
            'milliseconds': [90000] * 6,
        })

    @pytest.fixture
    def pit_stops(self):
        return pd.DataFrame({
            'raceId': [1, 1],
            'driverId': [1, 1],
            'stop': [1, 2],
            'lap': [2, 5],
            'milliseconds': [22000, 24000],
        })

    def test_cumulative_counts(self, laps, pit_stops):
        df = add_pit_features(laps, pit_stops)
        assert df['pit_stops_so_far'].tolist() == [0, 1, 1, 1, 2, 2]

    def test_cumulative_time_includes_current_lap(self, laps, pit_stops):
        df = add_pit_features(laps, pit_stops)
        assert df['cumulative_pit_time_s'].tolist() == [0.0, 22.0, 22.0, 22.0, 46.0, 46.0]

    def test_in_and_out_laps_flagged(self, laps, pit_stops):
        df = add_pit_features(laps, pit_stops)
        assert df['is_pit_lap'].tolist() == [False, True, True, False, True, True]

    def test_row_count_preserved(self, laps, pit_stops):
        assert len(add_pit_features(laps, pit_stops)) == len(laps)

    def test_no_stops(self, laps, pit_stops):
        df = add_pit_features(laps, pit_stops.iloc[0:0])
        assert (df['pit_stops_so_far'] == 0).all()
        assert not df['is_pit_lap'].any()

    def test_stop_on_missing_lap_counts_afterwards(self, laps, pit_stops):
        gappy = laps[laps['lap'] != 3]
        stop = pit_stops.iloc[[0]].assign(lap=3)
        df = add_pit_features(gappy, stop)

        assert df['lap'].tolist() == [1, 2, 4, 5, 6]
        assert df['pit_stops_so_far'].tolist() == [0, 0, 1, 1, 1]
        assert df['cumulative_pit_time_s'].tolist() == [0.0, 0.0, 22.0, 22.0, 22.0]
        assert df['is_pit_lap'].tolist() == [False, False, True, False, False]

    def test_drivers_counted_separately(self, laps, pit_stops):
        other = laps.assign(driverId=2)
        df = add_pit_features(pd.concat([laps, other]), pit_stops)

        assert df[df['driverId'] == 1]['pit_stops_so_far'].max() == 2
        assert (df[df['driverId'] == 2]['pit_stops_so_far'] == 0).all()


class TestBuildLapDataset:
    """Tests for the per-lap modeling table."""

    @pytest.fixture
    def laps(self, tables):
        return build_lap_dataset(tables)

    def test_derived_columns(self, laps):
        for col in NUMERIC_FEATURES + ['circuit', TARGET, 'lap_time_s', 'date']:
            assert col in laps.columns, f"Missing column: {col}"

    def test_log_target(self, laps):
        np.testing.assert_allclose(laps[TARGET], np.log(laps['milliseconds']))

    def test_lap_fraction_bounds(self, laps):
        assert (laps['lap_fraction'] > 0).all()
        assert (laps['lap_fraction'] <= 1).all()

    def test_pit_and_first_laps_removed(self, laps):
        assert not laps['is_pit_lap'].any()
        assert (laps['lap'] > 1).all()

    def test_keep_pit_and_first_laps(self, tables):
        laps = build_lap_dataset(tables, exclude_pit_laps=False, exclude_first_lap=False,
                                 lap_quantiles=(0.0, 1.0))
        assert laps['is_pit_lap'].any()
        assert (laps['lap'] == 1).any()
        assert len(laps) == len(tables['lap_times'])

    def test_pit_lane_start_moved_to_back(self, tables):
        laps = build_lap_dataset(tables, exclude_pit_laps=False, exclude_first_lap=False,
                                 lap_quantiles=(0.0, 1.0))
        results = tables['results']
        starter = results[(results['raceId'] == 5) & (results['grid'] == 0)]['driverId'].iloc[0]
        grid = laps[(laps['raceId'] == 5) & (laps['driverId'] == starter)]['grid'].unique()
        assert grid.tolist() == [results[results['raceId'] == 5]['grid'].max() + 1]

    def test_driver_age_plausible(self, laps):
        assert laps['driver_age'].between(25, 45).all()

    def test_year_filter(self, tables):
        laps = build_lap_dataset(tables, min_year=2020)
        assert set(laps['year']) == {2020}

    def test_extreme_lap_trimmed_per_race(self, tables):
        lap_times = tables['lap_times']
        race_rows = lap_times.index[lap_times['raceId'] == 1]
        lap_times.loc[race_rows[5], 'milliseconds'] = 400000
        n = len(race_rows)

        # Upper quantile between the two slowest laps of the race
        upper = (n - 1.5) / (n - 1)
        laps = build_lap_dataset(tables, exclude_pit_laps=False, exclude_first_lap=False,
                                 lap_quantiles=(0.0, upper))
        race = laps[laps['raceId'] == 1]

        assert 400000 not in race['milliseconds'].values
        assert len(race) == n - 1

    def test_stop_on_dropped_lap_still_counted(self, tables):
        stop = tables['pit_stops'].iloc[0]
        lap_times = tables['lap_times']
        in_lap = ((lap_times['raceId'] == stop['raceId'])
                  & (lap_times['driverId'] == stop['driverId'])
                  & (lap_times['lap'] == stop['lap']))
        lap_times.loc[in_lap, 'milliseconds'] = 0

        laps = build_lap_dataset(tables, exclude_pit_laps=False, exclude_first_lap=False,
                                 lap_quantiles=(0.0, 1.0))
        stint = laps[(laps['raceId'] == stop['raceId']) & (laps['driverId'] == stop['driverId'])]
        later = stint[stint['lap'] > stop['lap']]

        assert stop['lap'] not in stint['lap'].values
        assert not later.empty
        assert (later['pit_stops_so_far'] == 1).all()
        assert later['cumulative_pit_time_s'].iloc[0] == pytest.approx(stop['milliseconds'] / 1000.0)


class TestSplitByRace:
    """Tests for the chronological race split."""

    @pytest.fixture
    def laps(self, tables):
        return build_lap_dataset(tables)

    def test_no_race_in_both_sets(self, laps):
        train, test = split_by_race(laps, 0.75)
        assert not set(train['raceId']) & set(test['raceId'])

    def test_chronological(self, laps):
        train, test = split_by_race(laps, 0.75)
        assert train['date'].max() < test['date'].min()

    def test_race_counts(self, laps):
        train, test = split_by_race(laps, 0.75)
        assert train['raceId'].nunique() == 9
        assert test['raceId'].nunique() == 3

    def test_degenerate_split_raises(self, laps):
        with pytest.raises(ValueError, match="empty split"):
            split_by_race(laps, 1.0)


class TestLapFeatureEncoder:
    """Tests for LapFeatureEncoder."""

    @pytest.fixture
    def laps(self, tables):
        return build_lap_dataset(tables)

    def test_transform_before_fit(self, laps):
        with pytest.raises(ValueError, match="must be fitted"):
            LapFeatureEncoder().transform(laps)

    def test_feature_names(self, laps):
        encoder = LapFeatureEncoder().fit(laps)
        names = encoder.get_feature_names()

        assert names[:len(NUMERIC_FEATURES)] == NUMERIC_FEATURES
        assert 'circuit_monza' in names
        assert len(names) == len(NUMERIC_FEATURES) + 3

    def test_scaled_numeric_columns(self, laps):
        X = LapFeatureEncoder().fit_transform(laps)
        numeric = X[:, :len(NUMERIC_FEATURES)]
        np.testing.assert_allclose(numeric.mean(axis=0), 0, atol=1e-8)

    def test_unknown_circuit_ignored(self, laps):
        encoder = LapFeatureEncoder().fit(laps[laps['circuit'] != 'spa'])
        X = encoder.transform(laps[laps['circuit'] == 'spa'])
        assert np.all(X[:, len(NUMERIC_FEATURES):] == 0)

    def test_missing_column_raises(self, laps):
        with pytest.raises(ValueError, match="missing feature columns"):
            LapFeatureEncoder().fit(laps.drop(columns=['grid']))

    def test_save_load(self, laps):
        encoder = LapFeatureEncoder().fit(laps)

        with tempfile.NamedTemporaryFile(suffix='.joblib', delete=False) as f:
            temp_path = f.name

        try:
            encoder.save(temp_path)
            loaded = LapFeatureEncoder.load(temp_path)

            assert loaded.get_feature_names() == encoder.get_feature_names()
            np.testing.assert_allclose(loaded.transform(laps), encoder.transform(laps))
        finally:
            os.unlink(temp_path)


class TestPrepareLapModelData:
    """Tests for prepare_lap_model_data."""

    def test_returns_expected_keys(self, tables):
        result = prepare_lap_model_data(build_lap_dataset(tables), train_split=0.75)

        expected_keys = [
            'X_train', 'X_test', 'y_train', 'y_test',
            'encoder', 'feature_names', 'train_laps', 'test_laps'
        ]
        for key in expected_keys:
            assert key in result, f"Missing key: {key}"

    def test_shapes(self, tables):
        result = prepare_lap_model_data(build_lap_dataset(tables), train_split=0.75)

        assert result['X_train'].shape[0] == len(result['y_train']) == len(result['train_laps'])
        assert result['X_test'].shape[0] == len(result['y_test']) == len(result['test_laps'])
        assert result['X_train'].shape[1] == len(result['feature_names'])

    def test_save_encoder(self, tables, tmp_path):
        path = tmp_path / "models" / "encoder.joblib"
        prepare_lap_model_data(build_lap_dataset(tables), train_split=0.75, save_encoder=str(path))
        assert path.exists()


class TestBuildDriverFeatures:
    """Tests for per-driver racing-style features."""

    @pytest.fixture
    def features(self, tables):
        return build_driver_features(tables, min_races=10)

    def test_one_row_per_driver(self, features):
        assert len(features) == 8
        assert features.index.is_unique

    def test_columns(self, features):
        for col in ['driver', 'driverRef', 'races'] + DRIVER_FEATURES:
            assert col in features.columns, f"Missing column: {col}"

    def test_no_missing_values(self, features):
        assert not features[DRIVER_FEATURES].isnull().any().any()

    def test_rates_are_proportions(self, features):
        for col in ['win_rate', 'podium_rate', 'dnf_rate']:
            assert features[col].between(0, 1).all()

    def test_wins_add_up(self, features, tables):
        total_wins = (features['win_rate'] * features['races']).sum()
        assert total_wins == pytest.approx(len(tables['races']))

    def test_one_stop_per_race(self, features):
        assert features['pit_stops_per_race'].between(0.8, 1.0).all()

    def test_faster_driver_has_lower_pace_delta(self, features):
        assert features.loc[1, 'pace_delta'] < features.loc[8, 'pace_delta']

    def test_dnf_from_status(self, features, tables):
        # One retirement per race across 12 races and 8 drivers
        total_dnfs = (features['dnf_rate'] * features['races']).sum()
        assert total_dnfs == pytest.approx(12)

    def test_dnf_without_status_table(self, tables):
        del tables['status']
        features = build_driver_features(tables, min_races=10)
        total_dnfs = (features['dnf_rate'] * features['races']).sum()
        assert total_dnfs == pytest.approx(12)

    def test_min_races_filter(self, tables):
        with pytest.raises(ValueError, match="at least 50 starts"):
            build_driver_features(tables, min_races=50)

    def test_driver_names(self, features):
        assert features.loc[1, 'driver'] == 'Lewis Hamilton'
        assert features.loc[1, 'driverRef'] == 'hamilton'


class TestBuildGridWinTable:
    """Tests for the per-start grid table."""

    def test_pit_lane_starts_excluded(self, tables):
        df = build_grid_win_table(tables)
        assert (df['grid'] > 0).all()
        assert len(df) == len(tables['results']) - 1

    def test_one_winner_per_race(self, tables):
        df = build_grid_win_table(tables)
        assert (df.groupby('raceId')['win'].sum() == 1).all()

    def test_default_buckets(self, tables):
        df = build_grid_win_table(tables)
        assert (df.loc[df['grid'] == 1, 'grid_bucket'] == 'P1').all()
        assert (df.loc[df['grid'] == 5, 'grid_bucket'] == 'P4-5').all()
        assert (df.loc[df['grid'] == 8, 'grid_bucket'] == 'P6-10').all()

    def test_custom_buckets(self, tables):
        df = build_grid_win_table(tables, bins=[0, 1, 4, 20], labels=['pole', 'top4', 'rest'])
        assert set(df['grid_bucket'].astype(str)) == {'pole', 'top4', 'rest'}

    def test_label_mismatch_raises(self, tables):
        with pytest.raises(ValueError, match="labels"):
            build_grid_win_table(tables, bins=[0, 1, 20], labels=['a', 'b', 'c'])


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
