"""
Data Preprocessing Module - Phase 2
====================================

Joins the raw tables, cleans them, and engineers the features used by the
three analyses.

Functions:
    - filter_years: Restrict races to a season range
    - add_pit_features: Pit-stop counts, cumulative pit time, in/out laps
    - build_lap_dataset: Per-lap modeling table with derived columns
    - split_by_race: Chronological train/test split by race
    - build_driver_features: Per-driver racing-style features
    - build_grid_win_table: Per-start grid position and win flag
"""

import logging
from pathlib import Path
from typing import Dict, Any, Tuple, Optional, List, Sequence

import pandas as pd
import numpy as np
from sklearn.compose import ColumnTransformer
from sklearn.impute import SimpleImputer
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import OneHotEncoder, StandardScaler
import joblib

logger = logging.getLogger(__name__)

NUMERIC_FEATURES = [
    'lap',
    'lap_fraction',
    'position',
    'grid',
    'pit_stops_so_far',
    'cumulative_pit_time_s',
    'driver_age',
    'year',
]
CATEGORICAL_FEATURES = ['circuit']
TARGET = 'log_lap_time'

DRIVER_FEATURES = [
    'avg_grid',
    'avg_finish',
    'avg_positions_gained',
    'win_rate',
    'podium_rate',
    'points_per_race',
    'dnf_rate',
    'pit_stops_per_race',
    'pit_duration_s',
    'overtakes_per_lap',
    'pace_delta',
    'pace_variability',
]

DEFAULT_GRID_BINS = [0, 1, 2, 3, 5, 10, np.inf]
DEFAULT_GRID_LABELS = ['P1', 'P2', 'P3', 'P4-5', 'P6-10', 'P11+']

# Status texts that count as a classified finish
FINISHED_PATTERN = r'^(Finished|\+\d+ Laps?)$'


def filter_years(
    races: pd.DataFrame,
    min_year: Optional[int] = None,
    max_year: Optional[int] = None
) -> pd.DataFrame:
    """
    Restrict races to the seasons in [min_year, max_year].

    Raises:
        ValueError: If no race falls inside the range
    """
    mask = pd.Series(True, index=races.index)
    if min_year is not None:
        mask &= races['year'] >= min_year
    if max_year is not None:
        mask &= races['year'] <= max_year

    filtered = races[mask]
    if filtered.empty:
        raise ValueError(f"No races between {min_year} and {max_year}")
    return filtered


def _starting_grid(results: pd.DataFrame) -> pd.Series:
    """Grid slot per result, with pit-lane starts (grid 0) moved to the back of the field."""
    grid = results['grid'].astype(float)
    back = results.groupby('raceId')['grid'].transform('max') + 1
    return grid.where(grid > 0, back)


def add_pit_features(laps: pd.DataFrame, pit_stops: pd.DataFrame) -> pd.DataFrame:
    """
    Add pit-stop features to a per-lap table.

    Features created:
    - pit_stops_so_far: stops made up to and including this lap
    - cumulative_pit_time_s: total pit-lane time up to and including this lap
    - is_pit_lap: lap is an in-lap (stop made on it) or an out-lap (lap after a stop)

    Args:
        laps: Lap table with raceId, driverId, lap
        pit_stops: Pit stop table with raceId, driverId, lap, milliseconds

    Returns:
        Copy of laps with the pit features
    """
    keys = ['raceId', 'driverId', 'lap']

    per_lap = pit_stops.groupby(keys, as_index=False).agg(
        pit_count=('milliseconds', 'size'),
        pit_ms=('milliseconds', 'sum')
    )
    per_lap[keys] = per_lap[keys].astype('int64')
    per_lap = per_lap.sort_values(keys)

    # Running totals live on the stop rows so a lap missing from the lap
    # table still counts towards every later lap.
    grouped = per_lap.groupby(['raceId', 'driverId'])
    per_lap['pit_stops_so_far'] = grouped['pit_count'].cumsum()
    per_lap['cumulative_pit_time_s'] = grouped['pit_ms'].cumsum() / 1000.0

    df = laps.copy()
    df[keys] = df[keys].astype('int64')
    df = pd.merge_asof(
        df.sort_values('lap'),
        per_lap[keys + ['pit_stops_so_far', 'cumulative_pit_time_s']].sort_values('lap'),
        on='lap',
        by=['raceId', 'driverId'],
        direction='backward'
    )
    df['pit_stops_so_far'] = df['pit_stops_so_far'].fillna(0).astype(int)
    df['cumulative_pit_time_s'] = df['cumulative_pit_time_s'].fillna(0.0)

    in_laps = per_lap[keys].assign(is_in_lap=True)
    out_laps = per_lap[keys].assign(lap=per_lap['lap'] + 1, is_out_lap=True)
    df = df.merge(in_laps, on=keys, how='left').merge(out_laps, on=keys, how='left')
    df['is_pit_lap'] = (df['is_in_lap'].fillna(False).astype(bool)
                        | df['is_out_lap'].fillna(False).astype(bool))

    df = df.sort_values(keys).reset_index(drop=True)
    return df.drop(columns=['is_in_lap', 'is_out_lap'])


def build_lap_dataset(
    tables: Dict[str, pd.DataFrame],
    min_year: Optional[int] = None,
    max_year: Optional[int] = None,
    lap_quantiles: Sequence[float] = (0.01, 0.99),
    exclude_pit_laps: bool = True,
    exclude_first_lap: bool = True
) -> pd.DataFrame:
    """
    Build the per-lap modeling table.

    Joins lap_times with races, circuits, results (grid, constructor) and
    drivers (date of birth), then derives:
    - log_lap_time: natural log of lap milliseconds
    - lap_fraction: lap / laps run in that race
    - pit_stops_so_far, cumulative_pit_time_s, is_pit_lap
    - driver_age: age in years on race day

    Removes, in order: non-positive lap times, pit in/out laps and lap 1
    (when requested), and lap times outside the per-race quantiles.

    Args:
        tables: Dictionary of loaded tables
        min_year: First season to include
        max_year: Last season to include
        lap_quantiles: (lower, upper) per-race quantiles kept
        exclude_pit_laps: Drop in-laps and out-laps
        exclude_first_lap: Drop the standing-start lap

    Returns:
        Lap DataFrame ready for modeling
    """
    logger.info("=" * 60)
    logger.info("BUILDING LAP DATASET")
    logger.info("=" * 60)

    races = filter_years(tables['races'], min_year, max_year)
    races = races[['raceId', 'year', 'round', 'date', 'circuitId']]

    laps = tables['lap_times'][['raceId', 'driverId', 'lap', 'position', 'milliseconds']]
    df = laps.merge(races, on='raceId', how='inner')
    logger.info(f"Laps in season range: {len(df)}")

    circuits = tables['circuits'][['circuitId', 'circuitRef']].rename(
        columns={'circuitRef': 'circuit'}
    )
    df = df.merge(circuits, on='circuitId', how='left')

    results = tables['results'][['raceId', 'driverId', 'constructorId', 'grid']].copy()
    results['grid'] = _starting_grid(results)
    results = results.drop_duplicates(subset=['raceId', 'driverId'])
    df = df.merge(results, on=['raceId', 'driverId'], how='left')

    df = df.merge(tables['drivers'][['driverId', 'dob']], on='driverId', how='left')
    df['driver_age'] = (df['date'] - df['dob']).dt.days / 365.25
    df = df.drop(columns=['dob'])

    before = len(df)
    df = df[df['milliseconds'] > 0].copy()
    if before > len(df):
        logger.info(f"Removed {before - len(df)} non-positive lap times")

    df['race_laps'] = df.groupby('raceId')['lap'].transform('max')
    df['lap_fraction'] = df['lap'] / df['race_laps']

    df = add_pit_features(df, tables['pit_stops'])

    if exclude_pit_laps:
        before = len(df)
        df = df[~df['is_pit_lap']]
        logger.info(f"After pit lap removal: {len(df)} laps ({before - len(df)} removed)")

    if exclude_first_lap:
        before = len(df)
        df = df[df['lap'] > 1]
        logger.info(f"After first lap removal: {len(df)} laps ({before - len(df)} removed)")

    low, high = lap_quantiles
    lower = df.groupby('raceId')['milliseconds'].transform(lambda s: s.quantile(low))
    upper = df.groupby('raceId')['milliseconds'].transform(lambda s: s.quantile(high))
    before = len(df)
    df = df[(df['milliseconds'] >= lower) & (df['milliseconds'] <= upper)]
    logger.info(f"After outlier removal: {len(df)} laps ({before - len(df)} removed)")

    if df.empty:
        raise ValueError("No laps left after filtering")

    df = df.copy()
    df['lap_time_s'] = df['milliseconds'] / 1000.0
    df[TARGET] = np.log(df['milliseconds'])

    logger.info(f"Final lap dataset: {len(df)} laps from {df['raceId'].nunique()} races")
    return df.reset_index(drop=True)


def split_by_race(
    df: pd.DataFrame,
    train_split: float = 0.8
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Split laps chronologically by race date.

    The earliest races go to training, the rest to testing; a race never
    contributes laps to both sets.

    Raises:
        ValueError: If the split leaves either side without races
    """
    race_order = (
        df[['raceId', 'date']]
        .drop_duplicates(subset='raceId')
        .sort_values(['date', 'raceId'])
    )
    n_train = int(len(race_order) * train_split)

    if n_train == 0 or n_train == len(race_order):
        raise ValueError(
            f"train_split={train_split} over {len(race_order)} races leaves an empty split"
        )

    train_ids = race_order['raceId'].iloc[:n_train]
    is_train = df['raceId'].isin(train_ids)

    train, test = df[is_train], df[~is_train]
    logger.info(
        f"Train/Test split: {n_train} races ({len(train)} laps) train, "
        f"{len(race_order) - n_train} races ({len(test)} laps) test"
    )
    return train, test


class LapFeatureEncoder:
    """
    Encodes lap rows into a model matrix.

    Numeric features are median-imputed and optionally standardized; the
    circuit is one-hot encoded, ignoring circuits unseen during fit.
    """

    def __init__(
        self,
        numeric_features: Optional[List[str]] = None,
        categorical_features: Optional[List[str]] = None,
        scale: bool = True
    ):
        self.numeric_features = list(numeric_features or NUMERIC_FEATURES)
        self.categorical_features = list(categorical_features or CATEGORICAL_FEATURES)
        self.scale = scale

        self.transformer: Optional[ColumnTransformer] = None
        self._is_fitted = False

    def _build_transformer(self) -> ColumnTransformer:
        numeric_steps = [('impute', SimpleImputer(strategy='median'))]
        if self.scale:
            numeric_steps.append(('scale', StandardScaler()))

        return ColumnTransformer(
            [
                ('num', Pipeline(numeric_steps), self.numeric_features),
                ('cat', OneHotEncoder(handle_unknown='ignore', sparse_output=False),
                 self.categorical_features),
            ],
            verbose_feature_names_out=False
        )

    def fit(self, df: pd.DataFrame) -> 'LapFeatureEncoder':
        missing = [c for c in self.numeric_features + self.categorical_features
                   if c not in df.columns]
        if missing:
            raise ValueError(f"Lap data is missing feature columns: {missing}")

        self.transformer = self._build_transformer()
        self.transformer.fit(df)
        self._is_fitted = True
        logger.info(
            f"Fitted lap encoder: {len(self.numeric_features)} numeric, "
            f"{len(self.get_feature_names()) - len(self.numeric_features)} one-hot columns"
        )
        return self

    def transform(self, df: pd.DataFrame) -> np.ndarray:
        if not self._is_fitted:
            raise ValueError("Encoder must be fitted before transform. Call fit() first.")
        return self.transformer.transform(df)

    def fit_transform(self, df: pd.DataFrame) -> np.ndarray:
        self.fit(df)
        return self.transform(df)

    def get_feature_names(self) -> List[str]:
        if not self._is_fitted:
            raise ValueError("Encoder must be fitted first.")
        return list(self.transformer.get_feature_names_out())

    def save(self, filepath: str) -> None:
        state = {
            'numeric_features': self.numeric_features,
            'categorical_features': self.categorical_features,
            'scale': self.scale,
            'transformer': self.transformer,
            '_is_fitted': self._is_fitted
        }
        Path(filepath).parent.mkdir(parents=True, exist_ok=True)
        joblib.dump(state, filepath)
        logger.info(f"Encoder saved to {filepath}")

    @classmethod
    def load(cls, filepath: str) -> 'LapFeatureEncoder':
        state = joblib.load(filepath)

        encoder = cls(
            numeric_features=state['numeric_features'],
            categorical_features=state['categorical_features'],
            scale=state['scale']
        )
        encoder.transformer = state['transformer']
        encoder._is_fitted = state['_is_fitted']

        logger.info(f"Encoder loaded from {filepath}")
        return encoder


def prepare_lap_model_data(
    laps: pd.DataFrame,
    train_split: float = 0.8,
    scale: bool = True,
    save_encoder: Optional[str] = None
) -> Dict[str, Any]:
    """
    Split the lap table by race and encode both sides.

    Args:
        laps: Output of build_lap_dataset
        train_split: Fraction of races (by date) used for training
        scale: Standardize numeric features
        save_encoder: Path to save the fitted encoder

    Returns:
        Dictionary containing:
            - X_train, X_test: Encoded feature matrices
            - y_train, y_test: log lap times
            - encoder: Fitted LapFeatureEncoder
            - feature_names: Encoded column names
            - train_laps, test_laps: The raw split rows
    """
    train_laps, test_laps = split_by_race(laps, train_split)

    encoder = LapFeatureEncoder(scale=scale)
    X_train = encoder.fit_transform(train_laps)
    X_test = encoder.transform(test_laps)

    if save_encoder:
        encoder.save(save_encoder)

    return {
        'X_train': X_train,
        'X_test': X_test,
        'y_train': train_laps[TARGET].to_numpy(),
        'y_test': test_laps[TARGET].to_numpy(),
        'encoder': encoder,
        'feature_names': encoder.get_feature_names(),
        'train_laps': train_laps,
        'test_laps': test_laps,
    }


def _dnf_flags(results: pd.DataFrame, status: Optional[pd.DataFrame]) -> pd.Series:
    """True where a result is not a classified finish."""
    if status is not None:
        text = results['statusId'].map(status.set_index('statusId')['status'])
        return ~text.fillna('').str.match(FINISHED_PATTERN)
    if 'position' in results.columns:
        return results['position'].isna()

    logger.warning("No status table or position column; DNF rate set to 0")
    return pd.Series(False, index=results.index)


def build_driver_features(
    tables: Dict[str, pd.DataFrame],
    min_year: Optional[int] = None,
    max_year: Optional[int] = None,
    min_races: int = 10,
    lap_quantiles: Sequence[float] = (0.01, 0.99)
) -> pd.DataFrame:
    """
    Build one row of racing-style features per driver.

    Result features: avg_grid, avg_finish, avg_positions_gained, win_rate,
    podium_rate, points_per_race, dnf_rate.
    Pit features: pit_stops_per_race, pit_duration_s (median stop time).
    Lap features: overtakes_per_lap (net positions gained per lap),
    pace_delta (median lap time relative to the race median) and
    pace_variability (its spread within a race).

    Drivers with fewer than min_races starts are dropped. Lap and pit
    features missing for a driver are filled with the column median.

    Args:
        tables: Dictionary of loaded tables
        min_year: First season to include
        max_year: Last season to include
        min_races: Minimum race starts for a driver to be kept
        lap_quantiles: Per-race quantiles used to trim lap outliers

    Returns:
        DataFrame indexed by driverId with 'driver', 'races' and DRIVER_FEATURES
    """
    races = filter_years(tables['races'], min_year, max_year)
    race_ids = races['raceId']

    res = tables['results'][tables['results']['raceId'].isin(race_ids)].copy()
    res['start_grid'] = res['grid'].where(res['grid'] > 0)
    res['positions_gained'] = res['start_grid'] - res['positionOrder']
    res['win'] = (res['positionOrder'] == 1).astype(int)
    res['podium'] = (res['positionOrder'] <= 3).astype(int)
    res['dnf'] = _dnf_flags(res, tables.get('status')).astype(int)

    features = res.groupby('driverId').agg(
        races=('raceId', 'nunique'),
        avg_grid=('start_grid', 'mean'),
        avg_finish=('positionOrder', 'mean'),
        avg_positions_gained=('positions_gained', 'mean'),
        win_rate=('win', 'mean'),
        podium_rate=('podium', 'mean'),
        points_per_race=('points', 'mean'),
        dnf_rate=('dnf', 'mean'),
    )

    # Pit stops: only races with pit data count toward the per-race rate
    pits = tables['pit_stops'][tables['pit_stops']['raceId'].isin(race_ids)]
    stop_counts = pits.groupby(['raceId', 'driverId']).size().rename('stops').reset_index()
    pit_races = res[res['raceId'].isin(pits['raceId'].unique())][['raceId', 'driverId']]
    pit_races = pit_races.merge(stop_counts, on=['raceId', 'driverId'], how='left').fillna({'stops': 0})
    features['pit_stops_per_race'] = pit_races.groupby('driverId')['stops'].mean()
    features['pit_duration_s'] = pits.groupby('driverId')['milliseconds'].median() / 1000.0

    # Lap pace relative to the field, trimmed per race
    laps = tables['lap_times'][tables['lap_times']['raceId'].isin(race_ids)]
    laps = laps[laps['milliseconds'] > 0].sort_values(['raceId', 'driverId', 'lap'])

    gains = (laps.groupby(['raceId', 'driverId'])['position'].shift(1) - laps['position']).clip(lower=0)
    laps = laps.assign(gain=gains.fillna(0))
    lap_stats = laps.groupby('driverId').agg(gained=('gain', 'sum'), n_laps=('lap', 'size'))
    features['overtakes_per_lap'] = lap_stats['gained'] / lap_stats['n_laps']

    low, high = lap_quantiles
    grouped = laps.groupby('raceId')['milliseconds']
    keep = (laps['milliseconds'] >= grouped.transform(lambda s: s.quantile(low))) & \
           (laps['milliseconds'] <= grouped.transform(lambda s: s.quantile(high)))
    clean = laps[keep]
    relative = clean['milliseconds'] / clean.groupby('raceId')['milliseconds'].transform('median') - 1
    per_race = clean.assign(relative=relative).groupby(['driverId', 'raceId'])['relative'].agg(['median', 'std'])
    features['pace_delta'] = per_race['median'].groupby(level='driverId').mean()
    features['pace_variability'] = per_race['std'].groupby(level='driverId').mean()

    before = len(features)
    features = features[features['races'] >= min_races]
    logger.info(f"Drivers with >= {min_races} starts: {len(features)} of {before}")

    if features.empty:
        raise ValueError(f"No driver has at least {min_races} starts in the selected seasons")

    missing = features[DRIVER_FEATURES].isnull().sum()
    for col in missing[missing > 0].index:
        logger.info(f"Filling {missing[col]} missing '{col}' values with the median")
    features[DRIVER_FEATURES] = features[DRIVER_FEATURES].fillna(features[DRIVER_FEATURES].median())
    # A column with no data at all cannot be imputed
    features[DRIVER_FEATURES] = features[DRIVER_FEATURES].fillna(0.0)

    drivers = tables['drivers'].set_index('driverId')
    names = (drivers['forename'].astype(str) + ' ' + drivers['surname'].astype(str))
    features.insert(0, 'driver', names.reindex(features.index))
    features.insert(1, 'driverRef', drivers['driverRef'].reindex(features.index))

    return features


def build_grid_win_table(
    tables: Dict[str, pd.DataFrame],
    min_year: Optional[int] = None,
    max_year: Optional[int] = None,
    bins: Optional[Sequence[float]] = None,
    labels: Optional[Sequence[str]] = None
) -> pd.DataFrame:
    """
    Build one row per race start with grid position and win flag.

    Pit-lane starts (grid 0) have no grid slot and are excluded.

    Args:
        tables: Dictionary of loaded tables
        min_year: First season to include
        max_year: Last season to include
        bins: Grid bucket edges for pd.cut (right-inclusive)
        labels: Names for the grid buckets

    Returns:
        DataFrame with raceId, year, driverId, constructorId, grid,
        positionOrder, win, grid_bucket
    """
    bins = list(bins) if bins is not None else DEFAULT_GRID_BINS
    labels = list(labels) if labels is not None else DEFAULT_GRID_LABELS
    if len(labels) != len(bins) - 1:
        raise ValueError(f"{len(bins)} grid bins need {len(bins) - 1} labels, got {len(labels)}")

    races = filter_years(tables['races'], min_year, max_year)[['raceId', 'year']]
    cols = ['raceId', 'driverId', 'constructorId', 'grid', 'positionOrder']
    df = tables['results'][cols].merge(races, on='raceId', how='inner')

    before = len(df)
    df = df[df['grid'] > 0].copy()
    logger.info(f"Excluded {before - len(df)} pit-lane starts; {len(df)} starts remain")

    df['grid'] = df['grid'].astype(int)
    df['win'] = (df['positionOrder'] == 1).astype(int)
    df['grid_bucket'] = pd.cut(
        df['grid'],
        bins=[float(b) for b in bins],
        labels=labels,
        include_lowest=True
    )

    return df.reset_index(drop=True)


def print_preprocessing_summary(result: Dict[str, Any]) -> None:
    """
    Print a summary of the lap-model data preparation.

    Args:
        result: Dictionary from prepare_lap_model_data
    """
    print("\n" + "=" * 50)
    print("LAP DATA SUMMARY")
    print("=" * 50)
    print(f"Training laps: {result['X_train'].shape[0]} "
          f"({result['train_laps']['raceId'].nunique()} races)")
    print(f"Test laps: {result['X_test'].shape[0]} "
          f"({result['test_laps']['raceId'].nunique()} races)")
    print(f"Encoded features: {result['X_train'].shape[1]}")
    print(f"Numeric features: {', '.join(result['encoder'].numeric_features)}")
    print(f"Mean lap time (train): {result['train_laps']['lap_time_s'].mean():.3f} s")
    print("=" * 50 + "\n")
