"""
Model Evaluation Module - Phase 4
==================================

Evaluation metrics and visualizations for the lap-time models.

Features:
    - RMSE, MAE, R², MAPE in milliseconds, plus R² on the log scale
    - Actual vs Predicted plots
    - Residual analysis
    - Model comparison and feature importance plots
    - Evaluation report generation
"""

import logging
import json
from pathlib import Path
from typing import Dict, Any, List, Optional, Tuple

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
from sklearn.metrics import mean_squared_error, mean_absolute_error, r2_score

from .model import LapTimeModel

logger = logging.getLogger(__name__)


def calculate_metrics(
    y_true_ms: np.ndarray,
    y_pred_ms: np.ndarray
) -> Dict[str, float]:
    """
    Calculate evaluation metrics for lap-time predictions.

    Args:
        y_true_ms: Actual lap times in milliseconds
        y_pred_ms: Predicted lap times in milliseconds

    Returns:
        Dictionary of metric name to value
    """
    y_true_ms = np.asarray(y_true_ms, dtype=float)
    y_pred_ms = np.asarray(y_pred_ms, dtype=float)
    errors = y_true_ms - y_pred_ms

    return {
        'rmse_ms': float(np.sqrt(mean_squared_error(y_true_ms, y_pred_ms))),
        'mae_ms': float(mean_absolute_error(y_true_ms, y_pred_ms)),
        'r2': float(r2_score(y_true_ms, y_pred_ms)),
        'r2_log': float(r2_score(np.log(y_true_ms), np.log(y_pred_ms))),
        'mape': float(np.mean(np.abs(errors / y_true_ms)) * 100),
        'mean_error_ms': float(np.mean(errors)),
        'std_error_ms': float(np.std(errors)),
        'max_error_ms': float(np.max(np.abs(errors))),
        'n_samples': int(len(y_true_ms))
    }


def plot_actual_vs_predicted(
    y_true_ms: np.ndarray,
    predictions: Dict[str, np.ndarray],
    max_points: int = 5000,
    figsize: Tuple[int, int] = (14, 6),
    save_path: Optional[str] = None
) -> plt.Figure:
    """
    Actual vs predicted lap time scatter, one panel per model.

    Args:
        y_true_ms: Actual lap times in milliseconds
        predictions: Model name to predicted lap times in milliseconds
        max_points: Subsample size for plotting
        figsize: Figure size
        save_path: Path to save the figure

    Returns:
        Matplotlib Figure object
    """
    n_models = len(predictions)
    fig, axes = plt.subplots(1, n_models, figsize=figsize, squeeze=False)
    axes = axes.flatten()

    rng = np.random.default_rng(42)
    idx = np.arange(len(y_true_ms))
    if len(idx) > max_points:
        idx = rng.choice(idx, size=max_points, replace=False)

    for ax, (name, y_pred_ms) in zip(axes, predictions.items()):
        true_s = y_true_ms[idx] / 1000.0
        pred_s = y_pred_ms[idx] / 1000.0

        ax.scatter(true_s, pred_s, alpha=0.3, s=8)

        min_val = min(true_s.min(), pred_s.min())
        max_val = max(true_s.max(), pred_s.max())
        ax.plot([min_val, max_val], [min_val, max_val], 'r--', linewidth=2, label='Perfect')

        r2 = r2_score(y_true_ms, y_pred_ms)
        rmse = np.sqrt(mean_squared_error(y_true_ms, y_pred_ms)) / 1000.0

        ax.set_xlabel('Actual lap time (s)')
        ax.set_ylabel('Predicted lap time (s)')
        ax.set_title(f'{name}\nR²={r2:.4f}, RMSE={rmse:.3f}s', fontsize=10, fontweight='bold')
        ax.legend(loc='upper left', fontsize=8)

    plt.suptitle('Actual vs Predicted Lap Times', fontsize=14, fontweight='bold')
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info(f"Actual vs Predicted plot saved to {save_path}")

    return fig


def plot_residuals(
    y_true_ms: np.ndarray,
    predictions: Dict[str, np.ndarray],
    figsize: Tuple[int, int] = (14, 6),
    save_path: Optional[str] = None
) -> plt.Figure:
    """
    Residual distribution per model, in seconds.

    Args:
        y_true_ms: Actual lap times in milliseconds
        predictions: Model name to predicted lap times in milliseconds
        figsize: Figure size
        save_path: Path to save the figure

    Returns:
        Matplotlib Figure object
    """
    n_models = len(predictions)
    fig, axes = plt.subplots(1, n_models, figsize=figsize, squeeze=False)
    axes = axes.flatten()

    for ax, (name, y_pred_ms) in zip(axes, predictions.items()):
        residuals = (y_true_ms - y_pred_ms) / 1000.0

        sns.histplot(residuals, kde=True, ax=ax, bins=50, alpha=0.7)

        ax.axvline(0, color='red', linestyle='--', linewidth=2, label='Zero')
        ax.axvline(np.mean(residuals), color='green', linestyle='--',
                   linewidth=2, label=f'Mean: {np.mean(residuals):.3f}s')

        ax.set_xlabel('Residual (Actual - Predicted, s)')
        ax.set_ylabel('Frequency')
        ax.set_title(f'{name} (Std: {np.std(residuals):.3f}s)', fontsize=10, fontweight='bold')
        ax.legend(fontsize=8)

    plt.suptitle('Residual Analysis - Error Distribution', fontsize=14, fontweight='bold')
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info(f"Residuals plot saved to {save_path}")

    return fig


def plot_model_comparison(
    metrics: Dict[str, Dict[str, float]],
    figsize: Tuple[int, int] = (12, 5),
    save_path: Optional[str] = None
) -> plt.Figure:
    """
    Bar chart of RMSE, MAE and R² for each model.

    Args:
        metrics: Model name to metric dictionary from calculate_metrics
        figsize: Figure size
        save_path: Path to save the figure

    Returns:
        Matplotlib Figure object
    """
    names = list(metrics.keys())
    x = np.arange(len(names))
    width = 0.6

    panels = [
        ('rmse_ms', 'RMSE (ms)', 'steelblue'),
        ('mae_ms', 'MAE (ms)', 'coral'),
        ('r2', 'R² Score', 'seagreen'),
    ]

    fig, axes = plt.subplots(1, len(panels), figsize=figsize)

    for ax, (key, label, color) in zip(axes, panels):
        values = [metrics[name][key] for name in names]
        ax.bar(x, values, width, color=color, alpha=0.8)
        ax.set_ylabel(label)
        ax.set_title(label, fontweight='bold')
        ax.set_xticks(x)
        ax.set_xticklabels(names, rotation=20, ha='right')

    axes[2].axhline(1.0, color='gray', linestyle=':', alpha=0.5)

    plt.suptitle('Lap Time Model Comparison', fontsize=14, fontweight='bold')
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info(f"Model comparison plot saved to {save_path}")

    return fig


def plot_feature_importance(
    importances: pd.Series,
    title: str,
    top_n: int = 15,
    figsize: Tuple[int, int] = (10, 6),
    save_path: Optional[str] = None
) -> plt.Figure:
    """Horizontal bar chart of the top_n most important features."""
    top = importances.head(top_n)[::-1]

    fig, ax = plt.subplots(figsize=figsize)
    ax.barh(top.index, top.values, color='steelblue', alpha=0.8)
    ax.set_xlabel('Importance')
    ax.set_title(title, fontsize=12, fontweight='bold')
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info(f"Feature importance plot saved to {save_path}")

    return fig


def evaluate_models(
    models: Dict[str, LapTimeModel],
    X_test: np.ndarray,
    y_test_log: np.ndarray,
    feature_names: Optional[List[str]] = None,
    output_dir: str = "reports/",
    show_plots: bool = False
) -> Dict[str, Any]:
    """
    Run complete lap-time model evaluation and generate all reports.

    Args:
        models: Model kind to trained LapTimeModel
        X_test: Test features
        y_test_log: Test log lap times
        feature_names: Encoded feature names
        output_dir: Directory for output files
        show_plots: Whether to display plots interactively

    Returns:
        Dictionary containing metrics, best model, importances and file paths
    """
    if not models:
        raise ValueError("No models to evaluate")

    output_dir = Path(output_dir)
    figures_dir = output_dir / "figures"
    metrics_dir = output_dir / "metrics"

    figures_dir.mkdir(parents=True, exist_ok=True)
    metrics_dir.mkdir(parents=True, exist_ok=True)

    logger.info("=" * 60)
    logger.info("STARTING MODEL EVALUATION (Phase 4)")
    logger.info("=" * 60)

    y_true_ms = np.exp(np.asarray(y_test_log, dtype=float))

    predictions = {}
    metrics = {}
    importances = {}
    for kind, model in models.items():
        y_pred_ms = model.predict_ms(X_test)
        predictions[model.name] = y_pred_ms
        metrics[kind] = calculate_metrics(y_true_ms, y_pred_ms)
        importances[kind] = model.get_feature_importances(feature_names)
        logger.info(
            f"{model.name}: RMSE={metrics[kind]['rmse_ms']:.1f}ms "
            f"MAE={metrics[kind]['mae_ms']:.1f}ms R²={metrics[kind]['r2']:.4f}"
        )

    best_model = min(metrics, key=lambda k: metrics[k]['rmse_ms'])

    metrics_file = metrics_dir / "lap_time_metrics.json"
    with open(metrics_file, 'w') as f:
        json.dump({'models': metrics, 'best_model': best_model}, f, indent=2)
    logger.info(f"Metrics saved to {metrics_file}")

    figures = []

    logger.info("Generating Actual vs Predicted plots...")
    plot_actual_vs_predicted(
        y_true_ms, predictions,
        save_path=str(figures_dir / "eval_actual_vs_predicted.png")
    )
    figures.append("eval_actual_vs_predicted.png")

    logger.info("Generating residual analysis...")
    plot_residuals(
        y_true_ms, predictions,
        save_path=str(figures_dir / "eval_residuals.png")
    )
    figures.append("eval_residuals.png")

    plot_model_comparison(
        {models[k].name: m for k, m in metrics.items()},
        save_path=str(figures_dir / "eval_model_comparison.png")
    )
    figures.append("eval_model_comparison.png")

    for kind, series in importances.items():
        filename = f"eval_feature_importance_{kind}.png"
        plot_feature_importance(
            series,
            title=f'Feature Importance - {models[kind].name}',
            save_path=str(figures_dir / filename)
        )
        figures.append(filename)

    if show_plots:
        plt.show()
    else:
        plt.close('all')

    result = {
        'metrics': metrics,
        'best_model': best_model,
        'feature_importances': {k: v.head(15).to_dict() for k, v in importances.items()},
        'figures': figures,
        'metrics_file': str(metrics_file)
    }

    logger.info("=" * 60)
    logger.info(f"EVALUATION COMPLETE - best model: {best_model}")
    logger.info("=" * 60)

    return result


def print_evaluation_report(metrics: Dict[str, Dict[str, float]]) -> None:
    """
    Print a formatted evaluation report to console.

    Args:
        metrics: Model kind to metric dictionary
    """
    print("\n" + "=" * 70)
    print("LAP TIME MODEL EVALUATION")
    print("=" * 70)
    print(f"{'Model':<12} {'RMSE (ms)':<12} {'MAE (ms)':<12} {'R²':<10} {'R² (log)':<10} {'MAPE (%)':<10}")
    print("-" * 70)

    for name, m in metrics.items():
        print(f"{name:<12} {m['rmse_ms']:<12.1f} {m['mae_ms']:<12.1f} "
              f"{m['r2']:<10.4f} {m['r2_log']:<10.4f} {m['mape']:<10.2f}")

    print("-" * 70)

    best = min(metrics, key=lambda k: metrics[k]['rmse_ms'])
    best_r2 = metrics[best]['r2']
    print(f"\nBest model (lowest RMSE): {best}")
    print("\nInterpretation:")
    if best_r2 > 0.9:
        print(f"  ✓ {best} explains lap time very well (R² > 0.9)")
    elif best_r2 > 0.7:
        print(f"  ✓ {best} explains most lap-time variation (R² > 0.7)")
    elif best_r2 > 0.5:
        print(f"  ⚠ {best} explains lap time moderately (R² > 0.5)")
    else:
        print(f"  ✗ Lap time is poorly explained (best R² = {best_r2:.3f})")

    print("=" * 70 + "\n")
