"""
Grid Position vs Win Probability - Phase 6
===========================================

Tests whether starting position and winning are associated.

Functions:
    - wilson_interval: Wilson score interval for a binomial proportion
    - win_rate_by_grid: Win rate with Wilson bounds per grid slot
    - contingency_table: Grid bucket x win/no-win counts
    - chi_square_test: Chi-square test of independence with Cramér's V
    - analyze_grid_win_association: Run the full analysis from config
"""

import logging
from typing import Dict, Any, Optional, Tuple

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
from scipy import stats
from scipy.stats.contingency import association

logger = logging.getLogger(__name__)


def wilson_interval(
    successes: int,
    trials: int,
    confidence_level: float = 0.95
) -> Tuple[float, float]:
    """
    Wilson score confidence interval for a binomial proportion.

    Args:
        successes: Number of successes
        trials: Number of trials
        confidence_level: Coverage of the interval

    Returns:
        Tuple of (lower, upper) bounds

    Raises:
        ValueError: If trials is not positive or successes is out of range
    """
    if trials <= 0:
        raise ValueError(f"trials must be positive, got {trials}")
    if not 0 <= successes <= trials:
        raise ValueError(f"successes must be in [0, {trials}], got {successes}")

    ci = stats.binomtest(int(successes), int(trials)).proportion_ci(
        confidence_level=confidence_level, method='wilson'
    )
    return float(ci.low), float(ci.high)


def win_rate_by_grid(
    grid_df: pd.DataFrame,
    max_grid: int = 20,
    confidence_level: float = 0.95
) -> pd.DataFrame:
    """
    Win rate and Wilson interval for each grid position up to max_grid.

    Args:
        grid_df: Output of build_grid_win_table
        max_grid: Last grid position reported
        confidence_level: Coverage of the Wilson intervals

    Returns:
        DataFrame indexed by grid with starts, wins, win_rate, ci_low, ci_high
    """
    df = grid_df[grid_df['grid'] <= max_grid]
    if df.empty:
        raise ValueError(f"No starts from grid positions 1-{max_grid}")

    rates = df.groupby('grid').agg(starts=('win', 'size'), wins=('win', 'sum'))
    rates['win_rate'] = rates['wins'] / rates['starts']

    bounds = [
        wilson_interval(wins, starts, confidence_level)
        for wins, starts in zip(rates['wins'], rates['starts'])
    ]
    rates['ci_low'] = [low for low, _ in bounds]
    rates['ci_high'] = [high for _, high in bounds]

    return rates


def contingency_table(grid_df: pd.DataFrame, by: str = 'grid_bucket') -> pd.DataFrame:
    """
    Cross-tabulate starts by grid group and outcome.

    Groups without any start are dropped.

    Returns:
        DataFrame with columns 'no_win' and 'win', one row per group
    """
    table = pd.crosstab(grid_df[by], grid_df['win']).reindex(columns=[0, 1], fill_value=0)
    table.columns = ['no_win', 'win']
    table = table[table.sum(axis=1) > 0]
    return table


def chi_square_test(table: pd.DataFrame, alpha: float = 0.05) -> Dict[str, Any]:
    """
    Chi-square test of independence between the table's rows and columns.

    Args:
        table: Observed counts (rows: grid groups, columns: no_win/win)
        alpha: Significance level

    Returns:
        Dictionary with chi2, p_value, dof, expected counts, cramers_v,
        reject_null and the number of cells with expected count below 5

    Raises:
        ValueError: If the table has fewer than 2 rows or an empty column
    """
    observed = table.to_numpy()
    if observed.shape[0] < 2 or observed.shape[1] < 2:
        raise ValueError(f"Contingency table must be at least 2x2, got {observed.shape}")
    if (observed.sum(axis=0) == 0).any():
        raise ValueError("Contingency table has an empty outcome column")

    chi2, p_value, dof, expected = stats.chi2_contingency(observed)
    cramers_v = association(observed, method='cramer')

    low_expected = int((expected < 5).sum())
    if low_expected:
        logger.warning(
            f"{low_expected} of {expected.size} cells have expected count < 5; "
            "the chi-square approximation may be unreliable"
        )

    return {
        'chi2': float(chi2),
        'p_value': float(p_value),
        'dof': int(dof),
        'cramers_v': float(cramers_v),
        'alpha': alpha,
        'reject_null': bool(p_value < alpha),
        'observed': table.astype(int).to_dict(orient='index'),
        'expected': pd.DataFrame(expected, index=table.index,
                                 columns=table.columns).round(2).to_dict(orient='index'),
        'low_expected_cells': low_expected
    }


def _effect_size_label(cramers_v: float) -> str:
    if cramers_v < 0.1:
        return "negligible"
    if cramers_v < 0.3:
        return "small"
    if cramers_v < 0.5:
        return "medium"
    return "large"


def analyze_grid_win_association(
    grid_df: pd.DataFrame,
    config: Dict[str, Any]
) -> Dict[str, Any]:
    """
    Run the grid position vs win analysis.

    Computes the per-position win rates with Wilson intervals, the
    chi-square test across grid buckets, and a pole-vs-field 2x2 test.

    Args:
        grid_df: Output of build_grid_win_table
        config: Configuration dictionary (reads the 'hypothesis' section)

    Returns:
        Dictionary of results
    """
    hyp_config = config.get('hypothesis', {})
    alpha = hyp_config.get('alpha', 0.05)
    confidence_level = hyp_config.get('confidence_level', 0.95)
    max_grid = hyp_config.get('max_grid', 20)

    logger.info("=" * 60)
    logger.info("STARTING GRID POSITION VS WIN TEST (Phase 6)")
    logger.info("=" * 60)
    logger.info(f"Starts: {len(grid_df)} | Wins: {int(grid_df['win'].sum())}")

    rates = win_rate_by_grid(grid_df, max_grid, confidence_level)

    table = contingency_table(grid_df, 'grid_bucket')
    bucket_test = chi_square_test(table, alpha)
    bucket_test['effect_size'] = _effect_size_label(bucket_test['cramers_v'])

    pole = grid_df.assign(start=np.where(grid_df['grid'] == 1, 'pole', 'field'))
    pole_table = contingency_table(pole, 'start').reindex(['pole', 'field']).dropna()
    pole_test = chi_square_test(pole_table, alpha)
    pole_test['effect_size'] = _effect_size_label(pole_test['cramers_v'])

    logger.info(
        f"Chi-square (grid buckets): chi2={bucket_test['chi2']:.2f}, "
        f"dof={bucket_test['dof']}, p={bucket_test['p_value']:.3g}, "
        f"V={bucket_test['cramers_v']:.3f}"
    )

    return {
        'n_starts': int(len(grid_df)),
        'n_wins': int(grid_df['win'].sum()),
        'confidence_level': confidence_level,
        'win_rates': rates,
        'contingency_table': table,
        'bucket_test': bucket_test,
        'pole_test': pole_test,
    }


def plot_win_rate_by_grid(
    rates: pd.DataFrame,
    confidence_level: float = 0.95,
    figsize: Tuple[int, int] = (12, 6),
    save_path: Optional[str] = None
) -> plt.Figure:
    """
    Win rate per grid position with Wilson interval error bars.

    Args:
        rates: Output of win_rate_by_grid
        confidence_level: Coverage used for the intervals (for the legend)
        figsize: Figure size
        save_path: Path to save the figure

    Returns:
        Matplotlib Figure object
    """
    fig, ax = plt.subplots(figsize=figsize)

    yerr = np.vstack([
        rates['win_rate'] - rates['ci_low'],
        rates['ci_high'] - rates['win_rate'],
    ])
    ax.bar(rates.index, rates['win_rate'] * 100, color='steelblue', alpha=0.8)
    ax.errorbar(rates.index, rates['win_rate'] * 100, yerr=yerr * 100, fmt='none',
                ecolor='black', capsize=3, label=f'{confidence_level:.0%} Wilson CI')

    ax.set_xlabel('Grid position')
    ax.set_ylabel('Win rate (%)')
    ax.set_xticks(rates.index)
    ax.set_title('Win Probability by Starting Position', fontsize=14, fontweight='bold')
    ax.legend()
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info(f"Win rate plot saved to {save_path}")

    return fig


def print_hypothesis_report(result: Dict[str, Any], top_n: int = 10) -> None:
    """
    Print a formatted report of the grid position vs win analysis.

    Args:
        result: Dictionary from analyze_grid_win_association
        top_n: Grid positions listed in the rate table
    """
    print("\n" + "=" * 70)
    print("GRID POSITION VS WIN PROBABILITY")
    print("=" * 70)
    print(f"Starts analysed: {result['n_starts']} | Wins: {result['n_wins']}")

    level = result['confidence_level']
    print(f"\n{'Grid':<6} {'Starts':<8} {'Wins':<6} {'Win rate':<10} {f'{level:.0%} Wilson CI':<20}")
    print("-" * 70)
    for grid, row in result['win_rates'].head(top_n).iterrows():
        print(f"{grid:<6} {int(row['starts']):<8} {int(row['wins']):<6} "
              f"{row['win_rate']:<10.3f} [{row['ci_low']:.3f}, {row['ci_high']:.3f}]")

    for title, test in (("Grid buckets", result['bucket_test']),
                        ("Pole vs field", result['pole_test'])):
        print(f"\n{title}:")
        print(f"  • Chi-square: {test['chi2']:.2f} (dof={test['dof']})")
        print(f"  • p-value: {test['p_value']:.3g}")
        print(f"  • Cramér's V: {test['cramers_v']:.3f} ({test['effect_size']} effect)")
        if test['reject_null']:
            print(f"  ✓ Reject independence at alpha={test['alpha']}: "
                  "grid position is associated with winning")
        else:
            print(f"  ✗ Cannot reject independence at alpha={test['alpha']}")
        if test['low_expected_cells']:
            print(f"  ⚠ {test['low_expected_cells']} cells with expected count < 5")

    print("=" * 70 + "\n")
