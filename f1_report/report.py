"""
Report Module - Phase 7
========================

Collects the outputs of every phase into exported tables and one JSON
summary.

Features:
    - Export result tables to CSV
    - JSON-serializable summary of data, models, clusters and tests
    - Console summary of the whole pipeline
"""

import logging
import json
from pathlib import Path
from typing import Dict, Any
from datetime import datetime

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


def _to_serializable(value: Any) -> Any:
    """Recursively convert numpy/pandas values into JSON-friendly types."""
    if isinstance(value, dict):
        return {str(k): _to_serializable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_serializable(v) for v in value]
    if isinstance(value, pd.DataFrame):
        return _to_serializable(value.reset_index().to_dict(orient='records'))
    if isinstance(value, pd.Series):
        return _to_serializable(value.to_dict())
    if isinstance(value, np.bool_):
        return bool(value)
    if isinstance(value, np.integer):
        return int(value)
    if isinstance(value, np.floating):
        return None if np.isnan(value) else float(value)
    if isinstance(value, float) and np.isnan(value):
        return None
    if isinstance(value, np.ndarray):
        return _to_serializable(value.tolist())
    if isinstance(value, (pd.Timestamp, datetime)):
        return value.isoformat()
    if isinstance(value, pd.Interval):
        return str(value)
    return value


def export_table(df: pd.DataFrame, output_dir: str, name: str, index: bool = True) -> str:
    """
    Export a result table to CSV.

    Args:
        df: Table to export
        output_dir: Directory to save the file
        name: File stem (".csv" is appended)
        index: Whether to write the index

    Returns:
        Path to the saved file
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    filepath = output_dir / f"{name}.csv"
    df.to_csv(filepath, index=index)

    logger.info(f"Table '{name}' exported to {filepath} ({len(df)} rows)")
    return str(filepath)


def build_summary(results: Dict[str, Any]) -> Dict[str, Any]:
    """
    Build a JSON-serializable summary from the phase results.

    Recognised keys in ``results`` are 'data', 'eda', 'lap_time',
    'clustering' and 'grid_win'; any of them may be absent.

    Args:
        results: Phase outputs keyed by phase

    Returns:
        Summary dictionary
    """
    summary: Dict[str, Any] = {'generated_at': datetime.now().isoformat()}

    if 'data' in results:
        summary['data'] = results['data']

    if 'eda' in results:
        eda = results['eda']
        summary['eda'] = {
            'figures': eda.get('figures', []),
            'statistics': eda.get('statistics', {}),
        }

    if 'lap_time' in results:
        lap = results['lap_time']
        summary['lap_time'] = {
            'n_train': lap.get('n_train'),
            'n_test': lap.get('n_test'),
            'metrics': lap['metrics'],
            'best_model': lap['best_model'],
            'feature_importances': lap.get('feature_importances', {}),
        }

    if 'clustering' in results:
        clusters = results['clustering']
        summary['clustering'] = {
            'n_drivers': int(len(clusters['assignments'])),
            'n_clusters': clusters['n_clusters'],
            'silhouette': clusters['silhouette'],
            'silhouette_scores': clusters['silhouette_scores'],
            'style_labels': clusters['style_labels'],
            'cluster_sizes': clusters['assignments']['style'].value_counts().to_dict(),
        }

    if 'grid_win' in results:
        grid = results['grid_win']
        summary['grid_win'] = {
            'n_starts': grid['n_starts'],
            'n_wins': grid['n_wins'],
            'confidence_level': grid['confidence_level'],
            'win_rates': grid['win_rates'],
            'bucket_test': grid['bucket_test'],
            'pole_test': grid['pole_test'],
        }

    return _to_serializable(summary)


def save_summary(summary: Dict[str, Any], output_path: str) -> str:
    """
    Write the summary as indented JSON.

    Args:
        summary: Output of build_summary
        output_path: Destination file

    Returns:
        Path to the saved file
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with open(output_path, 'w') as f:
        json.dump(summary, f, indent=2)
    logger.info(f"Summary saved to {output_path}")

    return str(output_path)


def print_pipeline_summary(summary: Dict[str, Any]) -> None:
    """
    Print the headline findings of every phase that ran.

    Args:
        summary: Output of build_summary
    """
    print("\n" + "=" * 70)
    print("F1 STATISTICAL REPORT SUMMARY")
    print("=" * 70)
    print(f"Generated at: {summary.get('generated_at', 'n/a')}")

    if 'data' in summary:
        data = summary['data']
        first, last = data['seasons']
        print(f"\n📊 Data: {data['n_races']} races ({first}-{last}), "
              f"{data['n_drivers']} drivers, {data['n_circuits']} circuits")

    if 'lap_time' in summary:
        lap = summary['lap_time']
        best = lap['best_model']
        metrics = lap['metrics'][best]
        print(f"\n⏱  Lap time: best model '{best}' "
              f"RMSE={metrics['rmse_ms']:.1f} ms, R²={metrics['r2']:.3f}, "
              f"MAPE={metrics['mape']:.2f}%")

    if 'clustering' in summary:
        clusters = summary['clustering']
        line = f"\n🏎  Racing styles: k={clusters['n_clusters']} over {clusters['n_drivers']} drivers"
        if clusters['silhouette'] is not None:
            line += f" (silhouette={clusters['silhouette']:.3f})"
        print(line)
        for style, size in clusters['cluster_sizes'].items():
            print(f"  • {style}: {size} drivers")

    if 'grid_win' in summary:
        test = summary['grid_win']['bucket_test']
        verdict = "associated" if test['reject_null'] else "no evidence of association"
        print(f"\n🏁 Grid vs win: chi2={test['chi2']:.2f}, p={test['p_value']:.3g}, "
              f"Cramér's V={test['cramers_v']:.3f} ({verdict})")

    print("=" * 70 + "\n")
