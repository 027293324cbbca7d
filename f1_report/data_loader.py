"""
Data Loader Module
==================

Handles configuration, CSV ingestion, validation, and basic data quality checks
for the Formula 1 dataset.

Functions:
    - load_config: Load YAML configuration file
    - load_table: Load one CSV table and check its required columns
    - load_tables: Load every table of the dataset
    - validate_tables: Check keys, joins and lap times
    - get_data_summary: Generate basic statistics per table
"""

import os
import logging
from pathlib import Path
from typing import Dict, Any, Optional, Tuple, List, Iterable

import pandas as pd
import yaml

logger = logging.getLogger(__name__)

# The CSV dump encodes missing values as a literal backslash-N
NA_VALUES = ['\\N']

TABLE_FILES = {
    'races': 'races.csv',
    'results': 'results.csv',
    'drivers': 'drivers.csv',
    'constructors': 'constructors.csv',
    'circuits': 'circuits.csv',
    'lap_times': 'lap_times.csv',
    'pit_stops': 'pit_stops.csv',
    'status': 'status.csv',
}

REQUIRED_COLUMNS = {
    'races': ['raceId', 'year', 'round', 'circuitId', 'name', 'date'],
    'results': ['resultId', 'raceId', 'driverId', 'constructorId', 'grid',
                'positionOrder', 'points', 'laps', 'statusId'],
    'drivers': ['driverId', 'driverRef', 'forename', 'surname', 'dob'],
    'constructors': ['constructorId', 'name'],
    'circuits': ['circuitId', 'circuitRef', 'name', 'country'],
    'lap_times': ['raceId', 'driverId', 'lap', 'position', 'milliseconds'],
    'pit_stops': ['raceId', 'driverId', 'stop', 'lap', 'milliseconds'],
    'status': ['statusId', 'status'],
}

PRIMARY_KEYS = {
    'races': ['raceId'],
    'results': ['resultId'],
    'drivers': ['driverId'],
    'constructors': ['constructorId'],
    'circuits': ['circuitId'],
    'lap_times': ['raceId', 'driverId', 'lap'],
    'pit_stops': ['raceId', 'driverId', 'stop'],
    'status': ['statusId'],
}

# (child table, child column, parent table, parent column)
FOREIGN_KEYS = [
    ('races', 'circuitId', 'circuits', 'circuitId'),
    ('results', 'raceId', 'races', 'raceId'),
    ('results', 'driverId', 'drivers', 'driverId'),
    ('results', 'constructorId', 'constructors', 'constructorId'),
    ('results', 'statusId', 'status', 'statusId'),
    ('lap_times', 'raceId', 'races', 'raceId'),
    ('lap_times', 'driverId', 'drivers', 'driverId'),
    ('pit_stops', 'raceId', 'races', 'raceId'),
    ('pit_stops', 'driverId', 'drivers', 'driverId'),
]

OPTIONAL_TABLES = ('status',)


def load_config(config_path: str = "config/config.yaml") -> Dict[str, Any]:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to the configuration file

    Returns:
        Dictionary containing configuration parameters

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If config file is malformed
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, 'r') as f:
        config = yaml.safe_load(f) or {}

    logger.info(f"Loaded configuration from {config_path}")
    return config


def load_table(
    data_dir: str,
    file_name: str,
    required_columns: Optional[List[str]] = None
) -> pd.DataFrame:
    """
    Load a single CSV table, reading '\\N' as missing.

    Args:
        data_dir: Directory containing the CSV files
        file_name: Name of the CSV file
        required_columns: Columns that must be present (optional validation)

    Returns:
        DataFrame containing the table

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If required columns are missing or the table is empty
    """
    file_path = Path(data_dir) / file_name

    if not file_path.exists():
        raise FileNotFoundError(f"Data file not found: {file_path}")

    df = pd.read_csv(file_path, na_values=NA_VALUES, keep_default_na=True)
    logger.info(f"Loaded {file_name}: {df.shape[0]} rows × {df.shape[1]} columns")

    if df.empty:
        raise ValueError(f"Table {file_name} is empty")

    if required_columns is not None:
        missing = [c for c in required_columns if c not in df.columns]
        if missing:
            raise ValueError(
                f"Table {file_name} is missing required columns {missing}. "
                f"Columns: {list(df.columns)}"
            )

    return df


def load_tables(
    data_dir: str,
    file_names: Optional[Dict[str, str]] = None,
    optional: Iterable[str] = OPTIONAL_TABLES
) -> Dict[str, pd.DataFrame]:
    """
    Load every table of the dataset.

    Args:
        data_dir: Directory containing the CSV files
        file_names: Mapping of table name to file name (defaults to TABLE_FILES)
        optional: Tables that may be absent

    Returns:
        Dictionary of table name to DataFrame
    """
    files = dict(TABLE_FILES)
    if file_names:
        files.update(file_names)

    tables = {}
    for name, file_name in files.items():
        try:
            tables[name] = load_table(data_dir, file_name, REQUIRED_COLUMNS.get(name))
        except FileNotFoundError:
            if name in optional:
                logger.warning(f"Optional table '{name}' not found ({file_name}), skipping")
                continue
            raise

    # Dates are needed for chronological splits and driver ages
    tables['races']['date'] = pd.to_datetime(tables['races']['date'], errors='coerce')
    tables['drivers']['dob'] = pd.to_datetime(tables['drivers']['dob'], errors='coerce')

    return tables


def validate_tables(
    tables: Dict[str, pd.DataFrame],
    strict: bool = True
) -> Tuple[bool, Dict[str, Any]]:
    """
    Validate data quality constraints across the dataset.

    Checks:
        - Key columns have no missing values
        - Primary keys are unique
        - Foreign keys resolve to a parent row
        - Lap and pit-stop durations are positive

    Args:
        tables: Dictionary of loaded tables
        strict: If True, raise errors on validation failure

    Returns:
        Tuple of (is_valid, validation_report)
    """
    report = {
        "tables": {name: len(df) for name, df in tables.items()},
        "issues": []
    }

    # Check 1: Missing key values and duplicate primary keys
    for name, keys in PRIMARY_KEYS.items():
        if name not in tables:
            continue
        df = tables[name]
        missing = int(df[keys].isnull().any(axis=1).sum())
        if missing > 0:
            issue = f"{name}: {missing} rows with missing key values in {keys}"
            report["issues"].append(issue)
            logger.warning(issue)

        duplicates = int(df.duplicated(subset=keys).sum())
        if duplicates > 0:
            issue = f"{name}: {duplicates} duplicate primary keys {keys}"
            report["issues"].append(issue)
            logger.warning(issue)

    # Check 2: Orphaned foreign keys
    for child, child_col, parent, parent_col in FOREIGN_KEYS:
        if child not in tables or parent not in tables:
            continue
        child_values = tables[child][child_col].dropna()
        orphans = int((~child_values.isin(tables[parent][parent_col])).sum())
        if orphans > 0:
            issue = f"{child}.{child_col}: {orphans} values not found in {parent}.{parent_col}"
            report["issues"].append(issue)
            logger.warning(issue)

    # Check 3: Durations
    for name in ('lap_times', 'pit_stops'):
        if name not in tables:
            continue
        non_positive = int((tables[name]['milliseconds'] <= 0).sum())
        if non_positive > 0:
            issue = f"{name}: {non_positive} non-positive milliseconds values"
            report["issues"].append(issue)
            logger.warning(issue)

    is_valid = len(report["issues"]) == 0
    report["is_valid"] = is_valid

    if strict and not is_valid:
        raise ValueError(f"Data validation failed: {report['issues']}")

    return is_valid, report


def get_data_summary(tables: Dict[str, pd.DataFrame]) -> Dict[str, Any]:
    """
    Generate summary statistics for the dataset.

    Args:
        tables: Dictionary of loaded tables

    Returns:
        Dictionary containing summary statistics
    """
    races = tables['races']
    summary = {
        "shapes": {name: list(df.shape) for name, df in tables.items()},
        "seasons": [int(races['year'].min()), int(races['year'].max())],
        "n_races": int(races['raceId'].nunique()),
        "n_drivers": int(tables['drivers']['driverId'].nunique()),
        "n_constructors": int(tables['constructors']['constructorId'].nunique()),
        "n_circuits": int(tables['circuits']['circuitId'].nunique()),
        "memory_usage_mb": float(
            sum(df.memory_usage(deep=True).sum() for df in tables.values()) / 1024 / 1024
        ),
    }

    laps = tables['lap_times']['milliseconds']
    summary["lap_time_ms"] = {
        "count": int(laps.count()),
        "mean": float(laps.mean()),
        "std": float(laps.std()),
        "min": float(laps.min()),
        "50%": float(laps.quantile(0.50)),
        "max": float(laps.max()),
        "skew": float(laps.skew()),
    }

    return summary


def print_data_summary(tables: Dict[str, pd.DataFrame]) -> None:
    """
    Print a formatted summary of the dataset to console.

    Args:
        tables: Dictionary of loaded tables
    """
    summary = get_data_summary(tables)

    print("\n" + "=" * 60)
    print("DATASET SUMMARY")
    print("=" * 60)
    print(f"Seasons: {summary['seasons'][0]}-{summary['seasons'][1]}")
    print(f"Races: {summary['n_races']} | Drivers: {summary['n_drivers']} | "
          f"Constructors: {summary['n_constructors']} | Circuits: {summary['n_circuits']}")
    print(f"Memory Usage: {summary['memory_usage_mb']:.2f} MB")
    print("\nTables:")
    print("-" * 40)

    for name, df in tables.items():
        null_pct = df.isnull().mean().mean() * 100
        print(f"  {name}: {df.shape[0]} rows × {df.shape[1]} columns ({null_pct:.1f}% missing)")

    print("\nLap Times (ms):")
    print("-" * 40)
    print(tables['lap_times']['milliseconds'].describe().round(1).to_string())
    print("=" * 60 + "\n")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)

    try:
        config = load_config()
        data_path = config.get('data', {}).get('raw_path', 'data/raw')
    except FileNotFoundError as e:
        print(f"Config not found: {e}")
        data_path = 'data/raw'

    if os.path.exists(os.path.join(data_path, TABLE_FILES['races'])):
        tables = load_tables(data_path)
        print_data_summary(tables)
        is_valid, report = validate_tables(tables, strict=False)
        print(f"Validation passed: {is_valid}")
    else:
        print(f"No dataset found at {data_path}")
        print("Run `python main.py --phase download` to fetch it.")
