#!/usr/bin/env python3
"""
F1 Statistical Analysis Report - Main Pipeline
===============================================

Orchestrates the analysis of historical Formula 1 data.

Phases:
    0. Download - Fetch the public CSV dump (optional)
    1. EDA - Exploratory Data Analysis
    2-4. Lap time - Feature engineering, linear/XGBoost models, evaluation
    5. Clusters - Driver racing styles with k-means
    6. Grid vs win - Chi-square test, Cramér's V and Wilson intervals
    7. Report - CSV tables and JSON summary

Usage:
    # Run complete pipeline
    python main.py --data data/raw

    # Run specific phase
    python main.py --data data/raw --phase gridwin

    # Download the dataset first
    python main.py --data data/raw --phase download
"""

import argparse
import logging
import sys
from pathlib import Path
from datetime import datetime
from typing import Dict, Any, Optional

import matplotlib
matplotlib.use('Agg')

import pandas as pd

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

from f1_report.data_fetch import download_dataset, DEFAULT_URL
from f1_report.data_loader import load_config, load_tables, validate_tables, get_data_summary, print_data_summary
from f1_report.eda import generate_eda_report, print_correlation_insights
from f1_report.preprocessing import (
    build_lap_dataset, prepare_lap_model_data, build_driver_features,
    build_grid_win_table, print_preprocessing_summary
)
from f1_report.model import train_lap_time_models, print_model_summary
from f1_report.evaluation import evaluate_models, print_evaluation_report
from f1_report.clustering import cluster_drivers, print_cluster_summary
from f1_report.hypothesis import analyze_grid_win_association, plot_win_rate_by_grid, print_hypothesis_report
from f1_report.report import export_table, build_summary, save_summary, print_pipeline_summary

PHASES = ['download', 'eda', 'laptime', 'clusters', 'gridwin', 'all']


def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the pipeline."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(f'pipeline_{datetime.now().strftime("%Y%m%d_%H%M%S")}.log')
        ]
    )


def _year_range(config: Dict[str, Any]):
    prep_config = config.get('preprocessing', {})
    return prep_config.get('min_year'), prep_config.get('max_year')


def _output(config: Dict[str, Any], key: str, default: str) -> str:
    return config.get('output', {}).get(key, default)


def run_download(data_dir: str, config: Dict[str, Any], overwrite: bool = False) -> Path:
    """
    Execute Phase 0: download and unpack the CSV dump.

    Args:
        data_dir: Destination directory for the CSV files
        config: Configuration dictionary
        overwrite: Re-download even if all tables are present

    Returns:
        Path to the data directory
    """
    print("\n" + "=" * 70)
    print("PHASE 0: DATA DOWNLOAD")
    print("=" * 70)

    data_config = config.get('data', {})
    path = download_dataset(
        url=data_config.get('download_url', DEFAULT_URL),
        dest_dir=data_dir,
        timeout=data_config.get('timeout', 60.0),
        overwrite=overwrite,
        file_names=data_config.get('files')
    )

    print(f"\n✓ Dataset available in {path}")
    return path


def load_validated_tables(data_dir: str, config: Dict[str, Any]) -> Dict[str, pd.DataFrame]:
    """Load every table, print a summary and report validation warnings."""
    print("\n📊 Loading data...")
    tables = load_tables(data_dir, config.get('data', {}).get('files'))
    print_data_summary(tables)

    is_valid, _ = validate_tables(tables, strict=False)
    if not is_valid:
        print("⚠️  Data validation warnings detected. Proceeding anyway...")

    return tables


def run_eda(tables: Dict[str, pd.DataFrame], config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Execute Phase 1: Exploratory Data Analysis.

    Args:
        tables: Loaded tables
        config: Configuration dictionary

    Returns:
        EDA report dictionary
    """
    print("\n" + "=" * 70)
    print("PHASE 1: EXPLORATORY DATA ANALYSIS")
    print("=" * 70)

    prep_config = config.get('preprocessing', {})
    hyp_config = config.get('hypothesis', {})
    min_year, max_year = _year_range(config)

    laps = build_lap_dataset(
        tables, min_year, max_year,
        lap_quantiles=prep_config.get('lap_quantiles', (0.01, 0.99)),
        exclude_pit_laps=False,
        exclude_first_lap=False
    )
    driver_features = build_driver_features(
        tables, min_year, max_year,
        min_races=config.get('clustering', {}).get('min_races', 10)
    )
    grid_df = build_grid_win_table(
        tables, min_year, max_year,
        bins=hyp_config.get('grid_bins'),
        labels=hyp_config.get('grid_labels')
    )

    output_dir = _output(config, 'figures_path', 'reports/figures/')
    report = generate_eda_report(
        tables, laps=laps, driver_features=driver_features, grid_df=grid_df,
        output_dir=output_dir, min_year=min_year, max_year=max_year,
        max_grid=hyp_config.get('max_grid', 20), show_plots=False
    )

    if report["correlation_matrix"] is not None:
        print_correlation_insights(pd.DataFrame(report["correlation_matrix"]))

    print(f"\n✓ EDA complete. {len(report['figures'])} figures saved to {output_dir}")

    return report


def run_lap_time(tables: Dict[str, pd.DataFrame], config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Execute Phases 2-4: lap dataset, model training and evaluation.

    Args:
        tables: Loaded tables
        config: Configuration dictionary

    Returns:
        Evaluation result dictionary with train/test sizes
    """
    print("\n" + "=" * 70)
    print("PHASE 2: LAP TIME FEATURE ENGINEERING")
    print("=" * 70)

    prep_config = config.get('preprocessing', {})
    model_config = config.get('lap_time_model', {})
    models_dir = _output(config, 'models_path', 'models/')
    min_year, max_year = _year_range(config)

    laps = build_lap_dataset(
        tables, min_year, max_year,
        lap_quantiles=prep_config.get('lap_quantiles', (0.01, 0.99)),
        exclude_pit_laps=prep_config.get('exclude_pit_laps', True),
        exclude_first_lap=prep_config.get('exclude_first_lap', True)
    )
    prep_result = prepare_lap_model_data(
        laps,
        train_split=model_config.get('train_split', 0.8),
        save_encoder=str(Path(models_dir) / "lap_encoder.joblib")
    )
    print_preprocessing_summary(prep_result)

    print("\n" + "=" * 70)
    print("PHASE 3: MODEL TRAINING")
    print("=" * 70)

    models = train_lap_time_models(
        prep_result['X_train'], prep_result['y_train'], config, save_dir=models_dir
    )
    for model in models.values():
        print_model_summary(model)

    print("\n" + "=" * 70)
    print("PHASE 4: MODEL EVALUATION")
    print("=" * 70)

    reports_dir = str(Path(_output(config, 'figures_path', 'reports/figures/')).parent)
    result = evaluate_models(
        models,
        prep_result['X_test'],
        prep_result['y_test'],
        feature_names=prep_result['feature_names'],
        output_dir=reports_dir,
        show_plots=False
    )
    print_evaluation_report(result['metrics'])

    result['n_train'] = int(prep_result['X_train'].shape[0])
    result['n_test'] = int(prep_result['X_test'].shape[0])
    return result


def run_clustering(tables: Dict[str, pd.DataFrame], config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Execute Phase 5: driver racing-style clustering.

    Args:
        tables: Loaded tables
        config: Configuration dictionary

    Returns:
        Clustering result dictionary
    """
    print("\n" + "=" * 70)
    print("PHASE 5: DRIVER RACING STYLES")
    print("=" * 70)

    cluster_config = config.get('clustering', {})
    min_year, max_year = _year_range(config)

    driver_features = build_driver_features(
        tables, min_year, max_year,
        min_races=cluster_config.get('min_races', 10),
        lap_quantiles=config.get('preprocessing', {}).get('lap_quantiles', (0.01, 0.99))
    )

    result = cluster_drivers(
        driver_features,
        config,
        output_dir=_output(config, 'figures_path', 'reports/figures/'),
        save_path=str(Path(_output(config, 'models_path', 'models/')) / "driver_styles.joblib")
    )
    print_cluster_summary(result)

    tables_dir = _output(config, 'tables_path', 'reports/tables/')
    export_table(result['assignments'], tables_dir, 'driver_styles')
    export_table(result['profiles'], tables_dir, 'cluster_profiles')

    return result


def run_grid_win(tables: Dict[str, pd.DataFrame], config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Execute Phase 6: grid position vs win probability.

    Args:
        tables: Loaded tables
        config: Configuration dictionary

    Returns:
        Hypothesis test result dictionary
    """
    print("\n" + "=" * 70)
    print("PHASE 6: GRID POSITION VS WIN PROBABILITY")
    print("=" * 70)

    hyp_config = config.get('hypothesis', {})
    min_year, max_year = _year_range(config)

    grid_df = build_grid_win_table(
        tables, min_year, max_year,
        bins=hyp_config.get('grid_bins'),
        labels=hyp_config.get('grid_labels')
    )

    result = analyze_grid_win_association(grid_df, config)
    print_hypothesis_report(result)

    figures_dir = Path(_output(config, 'figures_path', 'reports/figures/'))
    figures_dir.mkdir(parents=True, exist_ok=True)
    plot_win_rate_by_grid(
        result['win_rates'], result['confidence_level'],
        save_path=str(figures_dir / "grid_win_rate.png")
    )

    tables_dir = _output(config, 'tables_path', 'reports/tables/')
    export_table(result['win_rates'], tables_dir, 'win_rate_by_grid')
    export_table(result['contingency_table'], tables_dir, 'grid_contingency')

    return result


def finish_report(results: Dict[str, Any], config: Dict[str, Any]) -> Dict[str, Any]:
    """Build, save and print the JSON summary of the phases that ran."""
    summary = build_summary(results)
    save_summary(summary, _output(config, 'summary_path', 'reports/summary.json'))
    print_pipeline_summary(summary)
    return summary


def run_full_pipeline(
    data_dir: str,
    config_path: str = "config/config.yaml",
    log_level: Optional[str] = None
) -> Dict[str, Any]:
    """
    Execute the complete pipeline.

    Args:
        data_dir: Directory of the CSV tables
        config_path: Path to configuration file
        log_level: Override of the configured logging level

    Returns:
        Dictionary containing all phase results
    """
    print("\n" + "=" * 70)
    print("F1 STATISTICAL ANALYSIS REPORT")
    print(f"Started at: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print("=" * 70)

    config = load_config(config_path)
    setup_logging(log_level or config.get('logging', {}).get('level', 'INFO'))

    tables = load_validated_tables(data_dir, config)

    results = {'data': get_data_summary(tables)}
    results['eda'] = run_eda(tables, config)
    results['lap_time'] = run_lap_time(tables, config)
    results['clustering'] = run_clustering(tables, config)
    results['grid_win'] = run_grid_win(tables, config)
    results['summary'] = finish_report(results, config)

    print(f"Completed at: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")

    return results


def run_single_phase(
    phase: str,
    data_dir: str,
    config_path: str = "config/config.yaml",
    log_level: Optional[str] = None
) -> Dict[str, Any]:
    """
    Execute a single phase of the pipeline.

    Args:
        phase: Phase to run ('download', 'eda', 'laptime', 'clusters', 'gridwin')
        data_dir: Directory of the CSV tables
        config_path: Path to configuration file
        log_level: Override of the configured logging level

    Returns:
        Phase result dictionary
    """
    config = load_config(config_path)
    setup_logging(log_level or config.get('logging', {}).get('level', 'INFO'))

    if phase == 'download':
        return {'data_dir': str(run_download(data_dir, config))}

    runners = {
        'eda': ('eda', run_eda),
        'laptime': ('lap_time', run_lap_time),
        'clusters': ('clustering', run_clustering),
        'gridwin': ('grid_win', run_grid_win),
    }
    if phase not in runners:
        raise ValueError(f"Unknown phase: {phase}. Choose from: {', '.join(PHASES)}")

    tables = load_validated_tables(data_dir, config)
    key, runner = runners[phase]

    results = {'data': get_data_summary(tables), key: runner(tables, config)}
    results['summary'] = finish_report(results, config)
    return results


def main():
    """Main entry point with argument parsing."""
    parser = argparse.ArgumentParser(
        description="Statistical analysis report over historical Formula 1 data",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --data data/raw
  python main.py --data data/raw --phase download
  python main.py --data data/raw --phase clusters --config config/custom.yaml
        """
    )

    parser.add_argument(
        '--data', '-d',
        type=str,
        default=None,
        help='Directory of the CSV tables (default: data.raw_path from config)'
    )

    parser.add_argument(
        '--config', '-c',
        type=str,
        default='config/config.yaml',
        help='Path to configuration file (default: config/config.yaml)'
    )

    parser.add_argument(
        '--phase', '-p',
        type=str,
        choices=PHASES,
        default='all',
        help='Phase to run (default: all)'
    )

    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable debug logging'
    )

    args = parser.parse_args()

    # Check if config exists
    if not Path(args.config).exists():
        print(f"Error: Config file not found: {args.config}")
        return 1

    data_dir = args.data or load_config(args.config).get('data', {}).get('raw_path', 'data/raw')

    # Check if data directory exists
    if args.phase != 'download' and not Path(data_dir).is_dir():
        print(f"Error: Data directory not found: {data_dir}")
        print("\nRun with --phase download to fetch the CSV dump,")
        print("or point --data at a directory of Ergast-format CSV files.")
        return 1

    log_level = 'DEBUG' if args.verbose else None

    try:
        if args.phase == 'all':
            run_full_pipeline(data_dir, args.config, log_level)
        else:
            run_single_phase(args.phase, data_dir, args.config, log_level)

        return 0

    except Exception as e:
        logging.error(f"Pipeline failed: {e}", exc_info=True)
        print(f"\n❌ Pipeline failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
