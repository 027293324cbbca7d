"""
Test Suite for the Pipeline Entry Point
========================================

Runs main() against the synthetic dataset inside a temporary directory.
"""

import json

import pytest
import yaml

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

import main as pipeline


@pytest.fixture
def workdir(tmp_path, monkeypatch, config):
    """Temporary working directory holding a config file."""
    config = dict(config, output={
        'figures_path': 'reports/figures/',
        'tables_path': 'reports/tables/',
        'models_path': 'models/',
        'summary_path': 'reports/summary.json',
    })
    (tmp_path / "config.yaml").write_text(yaml.safe_dump(config))
    monkeypatch.chdir(tmp_path)
    return tmp_path


def run_main(monkeypatch, *args):
    monkeypatch.setattr(sys, 'argv', ['main.py', *args])
    return pipeline.main()


class TestMain:
    """Tests for the command line entry point."""

    def test_missing_config(self, workdir, data_dir, monkeypatch, capsys):
        code = run_main(monkeypatch, '--data', str(data_dir), '--config', 'nope.yaml')
        assert code == 1
        assert "Config file not found" in capsys.readouterr().out

    def test_missing_data_dir(self, workdir, monkeypatch, capsys):
        code = run_main(monkeypatch, '--data', 'nowhere', '--config', 'config.yaml')
        assert code == 1
        assert "Data directory not found" in capsys.readouterr().out

    def test_failure_returns_one(self, workdir, monkeypatch, tmp_path):
        empty = tmp_path / "empty"
        empty.mkdir()
        code = run_main(monkeypatch, '--data', str(empty), '--config', 'config.yaml',
                        '--phase', 'gridwin')
        assert code == 1

    def test_gridwin_phase(self, workdir, data_dir, monkeypatch):
        code = run_main(monkeypatch, '--data', str(data_dir), '--config', 'config.yaml',
                        '--phase', 'gridwin')

        assert code == 0
        assert (workdir / "reports" / "tables" / "win_rate_by_grid.csv").exists()
        assert (workdir / "reports" / "figures" / "grid_win_rate.png").exists()

        with open(workdir / "reports" / "summary.json") as f:
            summary = json.load(f)
        assert set(summary) == {'generated_at', 'data', 'grid_win'}

    def test_full_pipeline(self, workdir, data_dir, monkeypatch):
        code = run_main(monkeypatch, '--data', str(data_dir), '--config', 'config.yaml')

        assert code == 0
        assert (workdir / "models" / "lap_time_xgboost.joblib").exists()
        assert (workdir / "models" / "driver_styles.joblib").exists()
        assert (workdir / "reports" / "metrics" / "lap_time_metrics.json").exists()
        assert (workdir / "reports" / "tables" / "driver_styles.csv").exists()

        with open(workdir / "reports" / "summary.json") as f:
            summary = json.load(f)
        for section in ['data', 'eda', 'lap_time', 'clustering', 'grid_win']:
            assert section in summary, f"Missing section: {section}"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
