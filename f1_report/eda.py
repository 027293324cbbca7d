"""
Exploratory Data Analysis (EDA) Module - Phase 1
=================================================

Provides analysis and visualization of the Formula 1 dataset.

Functions:
    - plot_races_per_season: Calendar size over time
    - plot_lap_time_distribution: Raw vs log lap time histograms
    - plot_lap_time_by_fraction: Relative pace over race distance
    - plot_pit_stop_durations: Pit-stop duration distribution and trend
    - plot_win_rate_by_position: Raw win share per grid slot
    - plot_correlation_matrix: Driver feature correlation heatmap
    - generate_eda_report: Full EDA report with all visualizations
"""

import logging
from pathlib import Path
from typing import Dict, Any, Optional, Tuple

import pandas as pd
import numpy as np
import matplotlib.pyplot as plt
import seaborn as sns
from scipy import stats

from f1_report.preprocessing import filter_years, DRIVER_FEATURES

logger = logging.getLogger(__name__)

# Set style for all plots
plt.style.use('seaborn-v0_8-whitegrid')
sns.set_palette("husl")

# Stops longer than this are red-flag suspensions, not pit work
MAX_PIT_STOP_S = 60.0


def _normality(values: pd.Series, max_samples: int = 5000) -> Tuple[str, float]:
    """D'Agostino-Pearson normality verdict on a (sub)sample."""
    values = values.dropna()
    if len(values) > max_samples:
        values = values.sample(max_samples, random_state=42)
    if len(values) < 8:
        return "n/a", float('nan')
    _, p_value = stats.normaltest(values)
    return ("Normal" if p_value > 0.05 else "Non-Normal"), float(p_value)


def plot_races_per_season(
    races: pd.DataFrame,
    figsize: Tuple[int, int] = (14, 5),
    save_path: Optional[str] = None
) -> plt.Figure:
    """
    Bar chart of the number of races per season.

    Args:
        races: Races table
        figsize: Figure size (width, height)
        save_path: Path to save the figure (optional)

    Returns:
        Matplotlib Figure object
    """
    counts = races.groupby('year')['raceId'].nunique()

    fig, ax = plt.subplots(figsize=figsize)
    ax.bar(counts.index, counts.values, color='steelblue', alpha=0.8)

    z = np.polyfit(counts.index, counts.values, 1)
    p = np.poly1d(z)
    ax.plot(counts.index, p(counts.index), "r--", alpha=0.6,
            label=f'Trend (slope: {z[0]:.3f} races/season)')

    ax.set_xlabel('Season')
    ax.set_ylabel('Races')
    ax.set_title('Races per Season', fontsize=14, fontweight='bold')
    ax.legend(loc='upper left')
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info(f"Races per season plot saved to {save_path}")

    return fig


def plot_lap_time_distribution(
    laps: pd.DataFrame,
    figsize: Tuple[int, int] = (14, 5),
    save_path: Optional[str] = None
) -> plt.Figure:
    """
    Histogram + KDE of lap time in seconds and of log lap time.

    Args:
        laps: Lap dataset with 'milliseconds'
        figsize: Figure size
        save_path: Path to save the figure

    Returns:
        Matplotlib Figure object
    """
    seconds = laps['milliseconds'] / 1000.0
    panels = [
        (seconds, 'Lap time (s)'),
        (np.log(laps['milliseconds']), 'log(lap time in ms)'),
    ]

    fig, axes = plt.subplots(1, 2, figsize=figsize)

    for ax, (values, label) in zip(axes, panels):
        sns.histplot(values, kde=True, ax=ax, bins=60, alpha=0.7)

        mean_val = values.mean()
        median_val = values.median()
        ax.axvline(mean_val, color='red', linestyle='--', label=f'Mean: {mean_val:.2f}')
        ax.axvline(median_val, color='green', linestyle='--', label=f'Median: {median_val:.2f}')

        normality, p_value = _normality(values)
        ax.set_xlabel(label)
        ax.set_title(f'{label} ({normality}, p={p_value:.3f})', fontsize=10, fontweight='bold')
        ax.legend(fontsize=8)

    plt.suptitle('Lap Time Distribution', fontsize=14, fontweight='bold')
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info(f"Lap time distribution plot saved to {save_path}")

    return fig


def plot_lap_time_by_fraction(
    laps: pd.DataFrame,
    n_bins: int = 20,
    figsize: Tuple[int, int] = (12, 5),
    save_path: Optional[str] = None
) -> plt.Figure:
    """
    Lap time relative to the race median across race distance.

    Shows fuel burn-off and tyre effects as a trend over lap_fraction,
    with a ±1 std band.

    Args:
        laps: Lap dataset with 'raceId', 'milliseconds', 'lap_fraction'
        n_bins: Number of race-distance bins
        figsize: Figure size
        save_path: Path to save the figure

    Returns:
        Matplotlib Figure object
    """
    relative = laps['milliseconds'] / laps.groupby('raceId')['milliseconds'].transform('median')
    bins = pd.cut(laps['lap_fraction'], bins=np.linspace(0, 1, n_bins + 1), include_lowest=True)
    grouped = relative.groupby(bins, observed=True).agg(['mean', 'std'])
    centers = np.array([interval.mid for interval in grouped.index])

    fig, ax = plt.subplots(figsize=figsize)
    ax.plot(centers, grouped['mean'], color='red', marker='o', label='Mean relative lap time')
    ax.fill_between(
        centers,
        grouped['mean'] - grouped['std'],
        grouped['mean'] + grouped['std'],
        alpha=0.2,
        color='red',
        label='±1 Std'
    )
    ax.axhline(1.0, color='k', linestyle='-', linewidth=0.5)

    ax.set_xlabel('Race distance (lap fraction)')
    ax.set_ylabel('Lap time / race median')
    ax.set_title('Pace over Race Distance', fontsize=14, fontweight='bold')
    ax.legend(loc='upper right')
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info(f"Lap time by fraction plot saved to {save_path}")

    return fig


def plot_pit_stop_durations(
    pit_stops: pd.DataFrame,
    races: pd.DataFrame,
    figsize: Tuple[int, int] = (14, 5),
    save_path: Optional[str] = None
) -> plt.Figure:
    """
    Pit-stop duration histogram and median duration per season.

    Stops above MAX_PIT_STOP_S are excluded.

    Args:
        pit_stops: Pit stops table
        races: Races table (for the season)
        figsize: Figure size
        save_path: Path to save the figure

    Returns:
        Matplotlib Figure object
    """
    stops = pit_stops.merge(races[['raceId', 'year']], on='raceId', how='inner')
    stops = stops.assign(duration_s=stops['milliseconds'] / 1000.0)
    stops = stops[stops['duration_s'] <= MAX_PIT_STOP_S]

    fig, axes = plt.subplots(1, 2, figsize=figsize)

    sns.histplot(stops['duration_s'], bins=60, ax=axes[0], alpha=0.7)
    axes[0].set_xlabel('Pit lane time (s)')
    axes[0].set_title('Pit Stop Duration', fontsize=10, fontweight='bold')

    per_year = stops.groupby('year')['duration_s'].median()
    axes[1].plot(per_year.index, per_year.values, 'o-')
    axes[1].set_xlabel('Season')
    axes[1].set_ylabel('Median pit lane time (s)')
    axes[1].set_title('Median Pit Stop by Season', fontsize=10, fontweight='bold')

    plt.suptitle('Pit Stop Analysis', fontsize=14, fontweight='bold')
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info(f"Pit stop plot saved to {save_path}")

    return fig


def plot_win_rate_by_position(
    grid_df: pd.DataFrame,
    max_grid: int = 20,
    figsize: Tuple[int, int] = (12, 5),
    save_path: Optional[str] = None
) -> plt.Figure:
    """
    Raw win share per grid position.

    Args:
        grid_df: Output of build_grid_win_table
        max_grid: Last grid position shown
        figsize: Figure size
        save_path: Path to save the figure

    Returns:
        Matplotlib Figure object
    """
    rates = grid_df[grid_df['grid'] <= max_grid].groupby('grid')['win'].mean()

    fig, ax = plt.subplots(figsize=figsize)
    ax.bar(rates.index, rates.values * 100, color='coral', alpha=0.8)
    ax.set_xlabel('Grid position')
    ax.set_ylabel('Win rate (%)')
    ax.set_xticks(rates.index)
    ax.set_title('Wins by Starting Position', fontsize=14, fontweight='bold')
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info(f"Win rate by position plot saved to {save_path}")

    return fig


def plot_correlation_matrix(
    df: pd.DataFrame,
    method: str = 'pearson',
    annotate_threshold: float = 0.3,
    figsize: Tuple[int, int] = (10, 8),
    save_path: Optional[str] = None
) -> Tuple[plt.Figure, pd.DataFrame]:
    """
    Heatmap of the correlations between driver style features.

    Columns follow the driver feature order (result features, then pit
    and pace features); any other numeric column goes last. Only cells
    with |r| >= annotate_threshold carry a value label.

    Args:
        df: Driver feature table
        method: Correlation method ('pearson', 'spearman', 'kendall')
        annotate_threshold: Smallest |r| that is written in its cell
        figsize: Figure size (width, height)
        save_path: Path to save the figure (optional)

    Returns:
        Tuple of (Figure, correlation matrix DataFrame)
    """
    numeric = df.select_dtypes(include=[np.number])
    order = ([c for c in DRIVER_FEATURES if c in numeric.columns]
             + [c for c in numeric.columns if c not in DRIVER_FEATURES])
    corr_matrix = numeric[order].corr(method=method)

    values = corr_matrix.to_numpy()
    labels = np.where(np.abs(values) >= annotate_threshold, np.char.mod('%.2f', values), '')

    fig, ax = plt.subplots(figsize=figsize)
    sns.heatmap(
        corr_matrix,
        mask=np.triu(np.ones_like(corr_matrix, dtype=bool), k=1),
        annot=labels,
        fmt='',
        cmap='coolwarm',
        vmin=-1,
        vmax=1,
        square=True,
        linewidths=0.5,
        cbar_kws={"shrink": 0.8, "label": f"{method.capitalize()} r"},
        ax=ax
    )
    ax.set_title('Driver Style Feature Correlations', fontsize=14, fontweight='bold')
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info(f"Driver feature correlations saved to {save_path}")

    return fig, corr_matrix


def generate_eda_report(
    tables: Dict[str, pd.DataFrame],
    laps: Optional[pd.DataFrame] = None,
    driver_features: Optional[pd.DataFrame] = None,
    grid_df: Optional[pd.DataFrame] = None,
    output_dir: str = "reports/figures/",
    min_year: Optional[int] = None,
    max_year: Optional[int] = None,
    max_grid: int = 20,
    show_plots: bool = False
) -> Dict[str, Any]:
    """
    Generate the EDA report with all visualizations.

    Plots that need a derived table (laps, driver features, grid table)
    are skipped when it is not given. The season plots use the same
    year range as the derived tables.

    Args:
        tables: Dictionary of loaded tables
        laps: Output of build_lap_dataset (optional)
        driver_features: Output of build_driver_features (optional)
        grid_df: Output of build_grid_win_table (optional)
        output_dir: Directory to save figures
        min_year: First season plotted
        max_year: Last season plotted
        max_grid: Last grid position in the win share plot
        show_plots: Whether to display plots interactively

    Returns:
        Dictionary containing EDA results and file paths
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    report = {
        "tables": {name: list(df.shape) for name, df in tables.items()},
        "figures": [],
        "correlation_matrix": None,
        "statistics": {}
    }

    logger.info("=" * 60)
    logger.info("STARTING EXPLORATORY DATA ANALYSIS (Phase 1)")
    logger.info("=" * 60)

    races = filter_years(tables['races'], min_year, max_year)
    logger.info(f"Seasons {races['year'].min()}-{races['year'].max()}: {len(races)} races")

    logger.info("Plotting races per season...")
    plot_races_per_season(races, save_path=str(output_dir / "01_races_per_season.png"))
    report["figures"].append("01_races_per_season.png")

    logger.info("Plotting pit stop durations...")
    plot_pit_stop_durations(
        tables['pit_stops'], races,
        save_path=str(output_dir / "02_pit_stop_durations.png")
    )
    report["figures"].append("02_pit_stop_durations.png")

    if laps is not None:
        logger.info("Plotting lap time distributions...")
        plot_lap_time_distribution(laps, save_path=str(output_dir / "03_lap_time_distribution.png"))
        report["figures"].append("03_lap_time_distribution.png")

        logger.info("Plotting pace over race distance...")
        plot_lap_time_by_fraction(laps, save_path=str(output_dir / "04_lap_time_by_fraction.png"))
        report["figures"].append("04_lap_time_by_fraction.png")

        for col, values in (('lap_time_s', laps['milliseconds'] / 1000.0),
                            ('log_lap_time', np.log(laps['milliseconds']))):
            normality, p_value = _normality(values)
            report["statistics"][col] = {
                "mean": float(values.mean()),
                "std": float(values.std()),
                "min": float(values.min()),
                "max": float(values.max()),
                "skew": float(values.skew()),
                "kurtosis": float(values.kurtosis()),
                "normality": normality,
                "normality_p": p_value
            }

    if grid_df is not None:
        logger.info("Plotting win rate by grid position...")
        plot_win_rate_by_position(
            grid_df, max_grid=max_grid, save_path=str(output_dir / "05_win_rate_by_grid.png")
        )
        report["figures"].append("05_win_rate_by_grid.png")

    if driver_features is not None:
        logger.info("Computing driver feature correlations...")
        _, corr_matrix = plot_correlation_matrix(
            driver_features.drop(columns=['races'], errors='ignore'),
            save_path=str(output_dir / "06_driver_feature_correlation.png")
        )
        report["figures"].append("06_driver_feature_correlation.png")
        report["correlation_matrix"] = corr_matrix.to_dict()

    if show_plots:
        plt.show()
    else:
        plt.close('all')

    logger.info("=" * 60)
    logger.info(f"EDA COMPLETE - All figures saved to: {output_dir}")
    logger.info("=" * 60)

    return report


def print_correlation_insights(corr_matrix: pd.DataFrame, threshold: float = 0.5) -> None:
    """
    Print insights about strongly correlated driver features.

    Args:
        corr_matrix: Correlation matrix DataFrame
        threshold: Correlation threshold for "strong" correlation
    """
    print("\n" + "=" * 50)
    print("CORRELATION INSIGHTS")
    print("=" * 50)

    strong_corr = []
    for i in range(len(corr_matrix.columns)):
        for j in range(i + 1, len(corr_matrix.columns)):
            corr_val = corr_matrix.iloc[i, j]
            if abs(corr_val) >= threshold:
                strong_corr.append({
                    "col1": corr_matrix.columns[i],
                    "col2": corr_matrix.columns[j],
                    "correlation": corr_val
                })

    if strong_corr:
        print(f"\nStrong correlations (|r| >= {threshold}):")
        for item in sorted(strong_corr, key=lambda x: abs(x["correlation"]), reverse=True):
            direction = "positive" if item["correlation"] > 0 else "negative"
            print(f"  • {item['col1']} ↔ {item['col2']}: {item['correlation']:.3f} ({direction})")

        print("\nInterpretation:")
        print("  - Strongly correlated features carry overlapping information")
        print("  - Standardization gives each one equal weight in k-means,")
        print("    so correlated groups pull the clustering toward them")
    else:
        print(f"\nNo strong correlations found (|r| >= {threshold})")
        print("  - Driver features appear relatively independent")

    print("=" * 50 + "\n")
