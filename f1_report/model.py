"""
Model Training Module - Phase 3
================================

Lap-time regression on the log-transformed lap time.

Features:
    - Linear regression baseline
    - XGBoost gradient-boosted trees
    - Back-transformation of predictions to milliseconds
    - Model persistence (save/load)
    - Training progress logging
"""

import logging
from pathlib import Path
from typing import Dict, Any, Optional, List
from datetime import datetime

import numpy as np
import pandas as pd
import joblib
from sklearn.linear_model import LinearRegression
from xgboost import XGBRegressor

logger = logging.getLogger(__name__)

MODEL_KINDS = ('linear', 'xgboost')

XGBOOST_DEFAULTS = {
    'n_estimators': 300,
    'max_depth': 6,
    'learning_rate': 0.1,
    'subsample': 0.8,
    'colsample_bytree': 0.8,
    'random_state': 42,
}


class LapTimeModel:
    """
    Regression model for log lap time.

    Wraps either sklearn's LinearRegression or xgboost's XGBRegressor
    behind one interface.
    """

    def __init__(self, kind: str = 'xgboost', **params):
        """
        Initialize the model.

        Args:
            kind: 'linear' or 'xgboost'
            **params: Hyperparameters passed to the underlying estimator
        """
        if kind not in MODEL_KINDS:
            raise ValueError(f"Unknown model kind: {kind}. Choose from: {', '.join(MODEL_KINDS)}")

        self.kind = kind
        self.params = dict(XGBOOST_DEFAULTS, **params) if kind == 'xgboost' else dict(params)

        self.model = None
        self.n_features_in_: Optional[int] = None
        self.training_info: Dict[str, Any] = {}
        self._is_fitted = False

    @property
    def name(self) -> str:
        return 'Linear Regression' if self.kind == 'linear' else 'XGBoost'

    def _create_estimator(self):
        if self.kind == 'linear':
            return LinearRegression(**self.params)
        return XGBRegressor(objective='reg:squarederror', verbosity=0, **self.params)

    def fit(self, X: np.ndarray, y: np.ndarray) -> 'LapTimeModel':
        """
        Train the model.

        Args:
            X: Feature array of shape (n_samples, n_features)
            y: Log lap times of shape (n_samples,)

        Returns:
            Self for method chaining
        """
        start_time = datetime.now()

        logger.info("=" * 60)
        logger.info(f"TRAINING {self.name.upper()} (Phase 3)")
        logger.info("=" * 60)
        logger.info(f"Training data shape: X={X.shape}, y={y.shape}")
        for key, value in self.params.items():
            logger.info(f"  - {key}: {value}")

        self.n_features_in_ = X.shape[1]
        self.model = self._create_estimator()
        self.model.fit(X, y)

        end_time = datetime.now()
        training_duration = (end_time - start_time).total_seconds()

        self.training_info = {
            'training_duration_seconds': training_duration,
            'n_samples': int(X.shape[0]),
            'n_features': int(X.shape[1]),
            'trained_at': end_time.isoformat(),
            'hyperparameters': dict(self.params)
        }

        self._is_fitted = True

        logger.info(f"{self.name} trained in {training_duration:.2f} seconds")
        return self

    def predict(self, X: np.ndarray) -> np.ndarray:
        """
        Predict log lap times.

        Args:
            X: Feature array of shape (n_samples, n_features)

        Returns:
            Predictions array of shape (n_samples,)
        """
        if not self._is_fitted:
            raise ValueError("Model must be trained before prediction. Call fit() first.")

        if X.shape[1] != self.n_features_in_:
            raise ValueError(
                f"Expected {self.n_features_in_} features, but got {X.shape[1]}"
            )

        return np.asarray(self.model.predict(X), dtype=float)

    def predict_ms(self, X: np.ndarray) -> np.ndarray:
        """Predict lap times in milliseconds."""
        return np.exp(self.predict(X))

    def get_feature_importances(self, feature_names: Optional[List[str]] = None) -> pd.Series:
        """
        Feature importances sorted in descending order.

        Absolute coefficients for the linear model, gain-based importances
        for XGBoost.
        """
        if not self._is_fitted:
            raise ValueError("Model must be trained first.")

        if self.kind == 'linear':
            values = np.abs(self.model.coef_)
        else:
            values = self.model.feature_importances_

        if feature_names is None:
            feature_names = [f"feature_{i}" for i in range(len(values))]

        return pd.Series(values, index=feature_names).sort_values(ascending=False)

    def save(self, filepath: str) -> None:
        if not self._is_fitted:
            raise ValueError("Cannot save untrained model.")

        state = {
            'kind': self.kind,
            'params': self.params,
            'model': self.model,
            'n_features_in_': self.n_features_in_,
            'training_info': self.training_info,
            '_is_fitted': self._is_fitted
        }

        Path(filepath).parent.mkdir(parents=True, exist_ok=True)
        joblib.dump(state, filepath)
        logger.info(f"Model saved to {filepath}")

    @classmethod
    def load(cls, filepath: str) -> 'LapTimeModel':
        state = joblib.load(filepath)

        model = cls(state['kind'], **state['params'])
        model.model = state['model']
        model.n_features_in_ = state['n_features_in_']
        model.training_info = state['training_info']
        model._is_fitted = state['_is_fitted']

        logger.info(f"Model loaded from {filepath}")
        return model


def train_lap_time_models(
    X_train: np.ndarray,
    y_train: np.ndarray,
    config: Dict[str, Any],
    save_dir: Optional[str] = None
) -> Dict[str, LapTimeModel]:
    """
    Train the linear and XGBoost lap-time models using configuration parameters.

    Args:
        X_train: Training features
        y_train: Training log lap times
        config: Configuration dictionary (reads the 'lap_time_model' section)
        save_dir: Directory to save the trained models (optional)

    Returns:
        Dictionary of model kind to trained LapTimeModel
    """
    model_config = config.get('lap_time_model', {})

    models = {}
    for kind in MODEL_KINDS:
        params = model_config.get(kind) or {}
        if kind == 'xgboost' and 'random_state' in model_config:
            params = dict(params, random_state=model_config['random_state'])

        model = LapTimeModel(kind, **params)
        model.fit(X_train, y_train)

        if save_dir:
            model.save(str(Path(save_dir) / f"lap_time_{kind}.joblib"))

        models[kind] = model

    return models


def print_model_summary(model: LapTimeModel) -> None:
    """
    Print a summary of a trained lap-time model.

    Args:
        model: Trained model instance
    """
    print("\n" + "=" * 50)
    print(f"MODEL SUMMARY: {model.name}")
    print("=" * 50)
    print("Target: log(lap time in ms)")
    print(f"Number of input features: {model.n_features_in_}")

    if model.params:
        print("\nHyperparameters:")
        for key, value in model.params.items():
            print(f"  - {key}: {value}")

    if model.training_info:
        print("\nTraining Info:")
        print(f"  - Duration: {model.training_info.get('training_duration_seconds', 0.0):.2f}s")
        print(f"  - Samples: {model.training_info.get('n_samples', 'N/A')}")

    print("=" * 50 + "\n")
