"""
F1 Statistical Analysis Report
==============================

An analysis pipeline over the historical Formula 1 CSV dataset
(races, results, drivers, constructors, circuits, lap times, pit stops).

Modules:
    - data_fetch: Download and unpack the public CSV archive
    - data_loader: CSV ingestion, configuration and validation
    - eda: Exploratory Data Analysis (Phase 1)
    - preprocessing: Joins, cleaning and feature engineering (Phase 2)
    - model: Lap-time regression with LinearRegression and XGBoost (Phase 3)
    - evaluation: Lap-time model metrics and diagnostics (Phase 4)
    - clustering: Driver racing-style k-means (Phase 5)
    - hypothesis: Grid position vs win probability tests (Phase 6)
    - report: Table export and run summary (Phase 7)
"""

__version__ = "1.0.0"
__author__ = "F1 Analytics Team"
