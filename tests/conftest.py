"""
Shared fixtures: a small synthetic dataset in the Ergast CSV layout.

Three seasons of four races each, eight drivers, one pit stop per driver
per race, one retirement per race and one pit-lane start.
"""

import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest
import matplotlib

matplotlib.use('Agg')

sys.path.insert(0, str(Path(__file__).parent.parent))

from f1_report.data_loader import load_tables

SEASONS = [2018, 2019, 2020]
ROUNDS = 4
N_DRIVERS = 8
RACE_LAPS = 20
PIT_LANE_RACE = 5
POINTS = [25, 18, 15, 12, 10, 8, 6, 4]
BASE_LAP_MS = {1: 82000, 2: 106000, 3: 89000}

CIRCUITS = pd.DataFrame({
    'circuitId': [1, 2, 3],
    'circuitRef': ['monza', 'spa', 'silverstone'],
    'name': ['Autodromo Nazionale di Monza', 'Circuit de Spa-Francorchamps', 'Silverstone Circuit'],
    'location': ['Monza', 'Spa', 'Silverstone'],
    'country': ['Italy', 'Belgium', 'UK'],
})

STATUS = pd.DataFrame({
    'statusId': [1, 3, 5, 11],
    'status': ['Finished', 'Accident', 'Engine', '+1 Lap'],
})

CONSTRUCTORS = pd.DataFrame({
    'constructorId': [1, 2, 3, 4],
    'constructorRef': ['ferrari', 'mclaren', 'williams', 'renault'],
    'name': ['Ferrari', 'McLaren', 'Williams', 'Renault'],
    'nationality': ['Italian', 'British', 'British', 'French'],
})

DRIVERS = pd.DataFrame({
    'driverId': list(range(1, N_DRIVERS + 1)),
    'driverRef': ['hamilton', 'vettel', 'alonso', 'raikkonen',
                  'button', 'massa', 'webber', 'rosberg'],
    'number': [44, 5, 14, None, 22, 19, None, 6],
    'forename': ['Lewis', 'Sebastian', 'Fernando', 'Kimi', 'Jenson', 'Felipe', 'Mark', 'Nico'],
    'surname': ['Hamilton', 'Vettel', 'Alonso', 'Räikkönen', 'Button', 'Massa', 'Webber', 'Rosberg'],
    'dob': ['1985-01-07', '1987-07-03', '1981-07-29', '1979-10-17',
            '1980-01-19', '1981-04-25', '1976-08-27', '1985-06-27'],
    'nationality': ['British', 'German', 'Spanish', 'Finnish',
                    'British', 'Brazilian', 'Australian', 'German'],
})


def make_dataset(seed: int = 7) -> dict:
    """Build the raw tables as they appear in the CSV files."""
    rng = np.random.default_rng(seed)
    skill = np.linspace(-800, 800, N_DRIVERS)

    races, results, lap_times, pit_stops = [], [], [], []
    race_id, result_id = 0, 0

    for year in SEASONS:
        for rnd in range(1, ROUNDS + 1):
            race_id += 1
            circuit_id = (rnd - 1) % 3 + 1
            races.append({
                'raceId': race_id,
                'year': year,
                'round': rnd,
                'circuitId': circuit_id,
                'name': f"{CIRCUITS.loc[circuit_id - 1, 'country']} Grand Prix",
                'date': f"{year}-{3 + 2 * rnd:02d}-15",
                'time': None,
            })

            grid = np.empty(N_DRIVERS, dtype=int)
            grid[np.argsort(skill + rng.normal(0, 400, N_DRIVERS))] = np.arange(1, N_DRIVERS + 1)

            dnf = race_id % N_DRIVERS
            finish_score = grid + rng.normal(0, 1.5, N_DRIVERS)
            finish_score[dnf] = np.inf
            position_order = np.empty(N_DRIVERS, dtype=int)
            position_order[np.argsort(finish_score)] = np.arange(1, N_DRIVERS + 1)

            if race_id == PIT_LANE_RACE:
                grid[grid == N_DRIVERS] = 0

            race_times = np.zeros(N_DRIVERS)
            for d in range(N_DRIVERS):
                driver_id = d + 1
                laps_run = RACE_LAPS
                status_id = 1
                if d == dnf:
                    laps_run = 10
                    status_id = 3 if race_id % 2 == 0 else 5
                elif position_order[d] == N_DRIVERS - 1:
                    laps_run = RACE_LAPS - 1
                    status_id = 11

                pit_lap = 8 + (driver_id + race_id) % 5
                if pit_lap <= laps_run:
                    pit_stops.append({
                        'raceId': race_id,
                        'driverId': driver_id,
                        'stop': 1,
                        'lap': pit_lap,
                        'time': '14:05:00',
                        'duration': None,
                        'milliseconds': int(21000 + rng.integers(0, 3000)),
                    })

                for lap in range(1, laps_run + 1):
                    ms = BASE_LAP_MS[circuit_id] + skill[d] - 40 * lap + rng.normal(0, 300)
                    if lap == 1:
                        ms += 6000
                    if lap == pit_lap:
                        ms += 20000
                    if lap == pit_lap + 1:
                        ms += 2500
                    race_times[d] += ms
                    lap_times.append({
                        'raceId': race_id,
                        'driverId': driver_id,
                        'lap': lap,
                        'cumulative': race_times[d],
                        'milliseconds': int(ms),
                    })

                result_id += 1
                finished = status_id != 3 and status_id != 5
                results.append({
                    'resultId': result_id,
                    'raceId': race_id,
                    'driverId': driver_id,
                    'constructorId': (driver_id - 1) // 2 + 1,
                    'number': driver_id,
                    'grid': int(grid[d]),
                    'position': int(position_order[d]) if finished else None,
                    'positionText': str(position_order[d]) if finished else 'R',
                    'positionOrder': int(position_order[d]),
                    'points': POINTS[position_order[d] - 1] if finished else 0,
                    'laps': laps_run,
                    'statusId': status_id,
                })

    laps = pd.DataFrame(lap_times)
    laps['position'] = (
        laps.groupby(['raceId', 'lap'])['cumulative'].rank(method='first').astype(int)
    )
    laps['time'] = (laps['milliseconds'] / 1000).round(3).astype(str)
    laps = laps[['raceId', 'driverId', 'lap', 'position', 'time', 'milliseconds']]

    return {
        'races': pd.DataFrame(races),
        'results': pd.DataFrame(results),
        'drivers': DRIVERS.copy(),
        'constructors': CONSTRUCTORS.copy(),
        'circuits': CIRCUITS.copy(),
        'lap_times': laps,
        'pit_stops': pd.DataFrame(pit_stops),
        'status': STATUS.copy(),
    }


def write_dataset(tables: dict, data_dir: Path) -> Path:
    """Write tables as CSV with missing values encoded as \\N."""
    data_dir.mkdir(parents=True, exist_ok=True)
    for name, df in tables.items():
        df.to_csv(data_dir / f"{name}.csv", index=False, na_rep='\\N')
    return data_dir


@pytest.fixture(scope="session")
def data_dir(tmp_path_factory):
    """Directory holding the synthetic CSV files."""
    return write_dataset(make_dataset(), tmp_path_factory.mktemp("f1_raw"))


@pytest.fixture
def tables(data_dir):
    """Freshly loaded tables (tests may mutate them)."""
    return load_tables(str(data_dir))


@pytest.fixture
def config():
    """Configuration matching the synthetic dataset."""
    return {
        'preprocessing': {
            'min_year': None,
            'max_year': None,
            'lap_quantiles': [0.01, 0.99],
            'exclude_pit_laps': True,
            'exclude_first_lap': True,
        },
        'lap_time_model': {
            'train_split': 0.75,
            'random_state': 42,
            'linear': {},
            'xgboost': {'n_estimators': 50, 'max_depth': 3},
        },
        'clustering': {
            'min_races': 10,
            'k_min': 2,
            'k_max': 4,
            'n_clusters': None,
            'random_state': 42,
        },
        'hypothesis': {
            'alpha': 0.05,
            'confidence_level': 0.95,
            'max_grid': 8,
        },
    }
