"""
Driver Racing-Style Clustering - Phase 5
=========================================

Groups drivers into racing styles with k-means on standardized per-driver
features.

Features:
    - StandardScaler -> KMeans pipeline
    - Automatic choice of k by silhouette score
    - Style labels derived from the most distinctive centroid dimensions
    - 2D PCA projection for plotting
    - Model persistence (save/load)
"""

import logging
from pathlib import Path
from typing import Dict, Any, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
import joblib
from sklearn.cluster import KMeans
from sklearn.decomposition import PCA
from sklearn.metrics import silhouette_score
from sklearn.preprocessing import StandardScaler

from .preprocessing import DRIVER_FEATURES

logger = logging.getLogger(__name__)


class DriverStyleClusterer:
    """Encapsulates scaler -> KMeans (-> PCA for plotting) and helper methods."""

    def __init__(
        self,
        feature_columns: Optional[List[str]] = None,
        n_clusters: Optional[int] = None,
        k_range: Sequence[int] = (2, 8),
        random_state: int = 42,
        n_init: int = 10
    ):
        """
        Args:
            feature_columns: Columns to cluster on (default: DRIVER_FEATURES)
            n_clusters: Fixed number of clusters; None selects k by silhouette
            k_range: Inclusive (min, max) k searched when n_clusters is None
            random_state: Random seed for reproducibility
            n_init: KMeans restarts
        """
        self.feature_columns = list(feature_columns or DRIVER_FEATURES)
        self.n_clusters = n_clusters
        self.k_range = tuple(k_range)
        self.random_state = random_state
        self.n_init = n_init

        self.scaler: Optional[StandardScaler] = None
        self.kmeans: Optional[KMeans] = None
        self.pca: Optional[PCA] = None
        self.labels_: Optional[np.ndarray] = None
        self.silhouette_scores_: Dict[int, float] = {}
        self.silhouette_: Optional[float] = None
        self._profiles: Optional[pd.DataFrame] = None
        self._is_fitted = False

    def _kmeans(self, k: int) -> KMeans:
        return KMeans(n_clusters=k, random_state=self.random_state, n_init=self.n_init)

    def _select_k(self, Xs: np.ndarray) -> int:
        n_samples = len(Xs)
        k_min = max(2, self.k_range[0])
        k_max = min(self.k_range[1], n_samples - 1)
        if k_min > k_max:
            raise ValueError(f"Cannot search k in {self.k_range} with {n_samples} drivers")

        for k in range(k_min, k_max + 1):
            labels = self._kmeans(k).fit_predict(Xs)
            if len(np.unique(labels)) < 2:
                logger.warning(f"k={k} collapsed to a single cluster, skipping")
                continue
            self.silhouette_scores_[k] = float(silhouette_score(Xs, labels))
            logger.info(f"  k={k}: silhouette={self.silhouette_scores_[k]:.4f}")

        if not self.silhouette_scores_:
            raise ValueError("No k produced more than one cluster")

        best_k = max(self.silhouette_scores_, key=self.silhouette_scores_.get)
        logger.info(f"Best k={best_k} (silhouette={self.silhouette_scores_[best_k]:.4f})")
        return best_k

    def fit(self, features: pd.DataFrame) -> 'DriverStyleClusterer':
        """
        Fit the scaler and KMeans to per-driver features.

        Args:
            features: DataFrame with one row per driver

        Returns:
            Self for method chaining
        """
        missing = [c for c in self.feature_columns if c not in features.columns]
        if missing:
            raise ValueError(f"Driver features are missing columns: {missing}")

        X = features[self.feature_columns].to_numpy(dtype=float)
        if len(X) < 3:
            raise ValueError(f"Need at least 3 drivers to cluster, got {len(X)}")
        if np.isnan(X).any():
            raise ValueError("Driver features contain missing values")

        self.scaler = StandardScaler()
        Xs = self.scaler.fit_transform(X)

        self.silhouette_scores_ = {}
        if self.n_clusters is None:
            k = self._select_k(Xs)
        else:
            k = self.n_clusters
            if not 2 <= k <= len(X):
                raise ValueError(f"n_clusters={k} must be between 2 and {len(X)}")

        self.kmeans = self._kmeans(k).fit(Xs)
        self.labels_ = self.kmeans.labels_

        n_labels = len(np.unique(self.labels_))
        self.silhouette_ = (
            float(silhouette_score(Xs, self.labels_)) if 2 <= n_labels <= len(X) - 1 else None
        )

        self.pca = PCA(n_components=min(2, Xs.shape[1]), random_state=self.random_state).fit(Xs)

        profiles = features[self.feature_columns].assign(cluster=self.labels_)
        self._profiles = profiles.groupby('cluster').mean()
        self._profiles.insert(0, 'n_drivers', profiles.groupby('cluster').size())

        self._is_fitted = True
        logger.info(f"Fitted KMeans with k={k} on {len(X)} drivers")
        return self

    def _check_fitted(self) -> None:
        if not self._is_fitted:
            raise ValueError("Clusterer must be fitted first. Call fit() first.")

    def predict(self, features: pd.DataFrame) -> np.ndarray:
        self._check_fitted()
        Xs = self.scaler.transform(features[self.feature_columns].to_numpy(dtype=float))
        return self.kmeans.predict(Xs)

    def cluster_profiles(self) -> pd.DataFrame:
        """Mean raw feature values and driver count per cluster."""
        self._check_fitted()
        return self._profiles.copy()

    def style_labels(self, top_n: int = 2) -> Dict[int, str]:
        """
        Name each cluster after its most distinctive standardized centroid
        dimensions, e.g. "high win_rate / low dnf_rate".
        """
        self._check_fitted()

        labels = {}
        for cluster, centroid in enumerate(self.kmeans.cluster_centers_):
            order = np.argsort(-np.abs(centroid))[:top_n]
            parts = [
                f"{'high' if centroid[i] > 0 else 'low'} {self.feature_columns[i]}"
                for i in order
            ]
            label = ' / '.join(parts)
            if label in labels.values():
                label = f"{label} ({cluster})"
            labels[cluster] = label

        return labels

    def project_2d(self, features: pd.DataFrame) -> pd.DataFrame:
        """PCA projection of drivers onto the first two components."""
        self._check_fitted()
        Xs = self.scaler.transform(features[self.feature_columns].to_numpy(dtype=float))
        Xp = self.pca.transform(Xs)
        if Xp.shape[1] == 1:
            Xp = np.column_stack([Xp, np.zeros(len(Xp))])
        return pd.DataFrame(Xp[:, :2], columns=['PC1', 'PC2'], index=features.index)

    def save(self, filepath: str) -> None:
        self._check_fitted()
        Path(filepath).parent.mkdir(parents=True, exist_ok=True)
        joblib.dump({
            'feature_columns': self.feature_columns,
            'n_clusters': self.n_clusters,
            'k_range': self.k_range,
            'random_state': self.random_state,
            'n_init': self.n_init,
            'scaler': self.scaler,
            'kmeans': self.kmeans,
            'pca': self.pca,
            'labels_': self.labels_,
            'silhouette_scores_': self.silhouette_scores_,
            'silhouette_': self.silhouette_,
            'profiles': self._profiles,
        }, filepath)
        logger.info(f"Clusterer saved to {filepath}")

    @classmethod
    def load(cls, filepath: str) -> 'DriverStyleClusterer':
        state = joblib.load(filepath)
        inst = cls(
            feature_columns=state['feature_columns'],
            n_clusters=state['n_clusters'],
            k_range=state['k_range'],
            random_state=state['random_state'],
            n_init=state['n_init']
        )
        inst.scaler = state['scaler']
        inst.kmeans = state['kmeans']
        inst.pca = state['pca']
        inst.labels_ = state['labels_']
        inst.silhouette_scores_ = state['silhouette_scores_']
        inst.silhouette_ = state['silhouette_']
        inst._profiles = state['profiles']
        inst._is_fitted = True
        logger.info(f"Clusterer loaded from {filepath}")
        return inst


def plot_clusters(
    clusterer: DriverStyleClusterer,
    features: pd.DataFrame,
    assignments: pd.DataFrame,
    n_annotate: int = 15,
    figsize: Tuple[int, int] = (12, 9),
    save_path: Optional[str] = None
) -> plt.Figure:
    """
    PCA scatter of drivers colored by racing style.

    The n_annotate drivers with the most starts are labelled by name.
    """
    plot_df = clusterer.project_2d(features).join(assignments[['driver', 'races', 'style']])

    fig, ax = plt.subplots(figsize=figsize)
    sns.scatterplot(data=plot_df, x='PC1', y='PC2', hue='style', palette='tab10',
                    s=90, alpha=0.85, ax=ax)

    for _, row in plot_df.nlargest(n_annotate, 'races').iterrows():
        ax.annotate(row['driver'], (row['PC1'], row['PC2']), fontsize=8,
                    xytext=(4, 4), textcoords='offset points')

    ratio = clusterer.pca.explained_variance_ratio_
    ax.set_xlabel(f'PC1 ({ratio[0] * 100:.1f}% variance)')
    if len(ratio) > 1:
        ax.set_ylabel(f'PC2 ({ratio[1] * 100:.1f}% variance)')
    ax.set_title('Driver Racing Styles (K-Means, PCA projection)', fontsize=14, fontweight='bold')
    ax.legend(fontsize=8, loc='best')
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info(f"Cluster plot saved to {save_path}")

    return fig


def plot_silhouette_scores(
    scores: Dict[int, float],
    figsize: Tuple[int, int] = (8, 4),
    save_path: Optional[str] = None
) -> plt.Figure:
    fig, ax = plt.subplots(figsize=figsize)
    ks = sorted(scores)
    ax.plot(ks, [scores[k] for k in ks], 'o-', linewidth=2)
    best = max(scores, key=scores.get)
    ax.axvline(best, color='red', linestyle='--', alpha=0.6, label=f'Best k={best}')
    ax.set_xlabel('Number of clusters (k)')
    ax.set_ylabel('Silhouette score')
    ax.set_title('K Selection by Silhouette', fontsize=12, fontweight='bold')
    ax.legend()
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        logger.info(f"Silhouette plot saved to {save_path}")

    return fig


def cluster_drivers(
    driver_features: pd.DataFrame,
    config: Dict[str, Any],
    output_dir: Optional[str] = None,
    save_path: Optional[str] = None
) -> Dict[str, Any]:
    """
    Cluster drivers into racing styles using configuration parameters.

    Args:
        driver_features: Output of build_driver_features
        config: Configuration dictionary (reads the 'clustering' section)
        output_dir: Directory for figures (optional)
        save_path: Path to save the fitted clusterer (optional)

    Returns:
        Dictionary containing the clusterer, assignments, profiles,
        style labels and silhouette scores
    """
    cluster_config = config.get('clustering', {})

    logger.info("=" * 60)
    logger.info("STARTING DRIVER STYLE CLUSTERING (Phase 5)")
    logger.info("=" * 60)

    clusterer = DriverStyleClusterer(
        feature_columns=cluster_config.get('features'),
        n_clusters=cluster_config.get('n_clusters'),
        k_range=(cluster_config.get('k_min', 2), cluster_config.get('k_max', 8)),
        random_state=cluster_config.get('random_state', 42)
    )
    clusterer.fit(driver_features)

    styles = clusterer.style_labels()
    assignments = driver_features[['driver', 'driverRef', 'races']].copy()
    assignments['cluster'] = clusterer.labels_
    assignments['style'] = assignments['cluster'].map(styles)

    profiles = clusterer.cluster_profiles()
    profiles.insert(0, 'style', profiles.index.map(styles))

    figures = []
    if output_dir:
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

        plot_clusters(clusterer, driver_features, assignments,
                      save_path=str(output_dir / "clusters_pca.png"))
        figures.append("clusters_pca.png")

        if clusterer.silhouette_scores_:
            plot_silhouette_scores(clusterer.silhouette_scores_,
                                   save_path=str(output_dir / "clusters_silhouette.png"))
            figures.append("clusters_silhouette.png")

        plt.close('all')

    if save_path:
        clusterer.save(save_path)

    logger.info(f"CLUSTERING COMPLETE - {len(styles)} styles")

    return {
        'clusterer': clusterer,
        'assignments': assignments,
        'profiles': profiles,
        'style_labels': styles,
        'n_clusters': len(styles),
        'silhouette': clusterer.silhouette_,
        'silhouette_scores': clusterer.silhouette_scores_,
        'figures': figures,
    }


def print_cluster_summary(result: Dict[str, Any], top_n: int = 5) -> None:
    """
    Print each style with its size and best-known drivers.

    Args:
        result: Dictionary from cluster_drivers
        top_n: Drivers listed per style (by number of starts)
    """
    print("\n" + "=" * 70)
    print("DRIVER RACING STYLES")
    print("=" * 70)
    line = f"Clusters: {result['n_clusters']}"
    if result['silhouette'] is not None:
        line += f" | Silhouette: {result['silhouette']:.4f}"
    print(line)

    assignments = result['assignments']
    for cluster, style in result['style_labels'].items():
        members = assignments[assignments['cluster'] == cluster]
        top = members.nlargest(top_n, 'races')['driver'].tolist()
        print(f"\n  [{cluster}] {style} ({len(members)} drivers)")
        print(f"      e.g. {', '.join(top)}")

    print("=" * 70 + "\n")
