"""
Unit tests for utility functions and plotting.
"""

import unittest
import tempfile
import pandas as pd
import numpy as np
import sys
from pathlib import Path

import matplotlib
matplotlib.use('Agg')

# Add src to path
sys.path.append(str(Path(__file__).parent.parent / "src"))

from causal_vitd.models.bootstrap import BootstrapResult
from causal_vitd.models.causal_models import CausalEstimate, SubgroupEstimate
from causal_vitd.utils.helpers import (
    save_results, load_results, check_balance, validate_data_quality,
    format_results_table, format_subgroup_table, ensure_directory
)
from causal_vitd.visualization.plots import VitaminDVisualization


def make_subgroups():
    return [
        SubgroupEstimate({'age_bracket': '18-39'}, 120, 60, 60, -1.2, 0.5, -2.18, -0.22),
        SubgroupEstimate({'age_bracket': '65+'}, 12, 5, 7, -3.0, 2.0, -6.92, 0.92),
    ]


class TestHelpers(unittest.TestCase):
    """Test cases for the helper functions."""

    def setUp(self):
        self.tmp_dir = tempfile.TemporaryDirectory()
        self.tmp_path = Path(self.tmp_dir.name)

    def tearDown(self):
        self.tmp_dir.cleanup()

    def test_save_and_load_json(self):
        """Test that dataclasses, frames and NaN survive a JSON save."""
        estimate = CausalEstimate(-2.0, 0.5, -2.98, -1.02, np.float64(0.0001), 'causal_forest', n=500)
        results = {
            'ate': estimate,
            'table': pd.DataFrame({'group': ['All'], 'p_value': [np.nan]}),
            'count': np.int64(7)
        }
        path = self.tmp_path / "results.json"

        save_results(results, path)
        loaded = load_results(path)

        self.assertEqual(loaded['ate']['coefficient'], -2.0)
        self.assertEqual(loaded['ate']['n'], 500)
        self.assertIsNone(loaded['table'][0]['p_value'])
        self.assertEqual(loaded['count'], 7)

    def test_save_and_load_pickle(self):
        """Test pickled results."""
        path = self.tmp_path / "results.pkl"
        save_results({'values': [1, 2, 3]}, path)
        self.assertEqual(load_results(path), {'values': [1, 2, 3]})

    def test_unsupported_format(self):
        """Test that unknown suffixes are rejected."""
        with self.assertRaises(ValueError):
            save_results({}, self.tmp_path / "results.txt")

    def test_check_balance(self):
        """Test standardized mean differences."""
        df = pd.DataFrame({
            'treatment': [1, 1, 0, 0],
            'x': [1.0, 3.0, 1.0, 3.0],
            'const': [1.0, 1.0, 1.0, 1.0]
        })
        balance = check_balance(df, 'treatment', ['x', 'const', 'missing'])

        self.assertEqual(list(balance['covariate']), ['x', 'const'])
        self.assertTrue((balance['standardized_mean_diff'] == 0).all())

    def test_validate_data_quality(self):
        """Test raw quality metrics."""
        df = pd.DataFrame({
            'value': [10.0, 20.0, np.nan, -1.0],
            'test_date': ['2020-01-01', '2020-02-01', 'bad', '2020-03-01']
        })
        metrics = validate_data_quality(df)

        self.assertEqual(metrics['n_observations'], 4)
        self.assertEqual(metrics['negative_values'], 1)
        self.assertEqual(metrics['unparseable_dates'], 1)

    def test_format_tables(self):
        """Test that report tables carry estimates and subgroup sizes."""
        estimates = {'causal_forest': CausalEstimate(-2.0, 0.5, -2.98, -1.02, 0.0001, 'causal_forest')}
        table = format_results_table(estimates)
        self.assertIn('causal_forest', table)
        self.assertIn('Yes', table)

        subgroup_table = format_subgroup_table(make_subgroups())
        self.assertIn('age_bracket=65+', subgroup_table)
        self.assertIn('12', subgroup_table)

    def test_long_method_names_are_not_truncated(self):
        """Test that estimators with a common prefix stay distinguishable."""
        est = CausalEstimate(-2.0, 0.5, -2.98, -1.02, 0.0001, 'x')
        table = format_results_table({'causal_forest': est, 'random_forest': est, 'placebo_test': est})
        lines = table.splitlines()

        self.assertTrue(any(line.strip().startswith('causal_forest |') for line in lines))
        self.assertTrue(any(line.strip().startswith('random_forest |') for line in lines))
        # Header, separator and rows share one width
        self.assertEqual(len({len(line) for line in lines[3:]}), 1)

    def test_long_subgroup_labels_are_not_truncated(self):
        """Test that crossed subgroup labels are printed in full."""
        subgroup = SubgroupEstimate({'age_bracket': '65+', 'gender': 'F'}, 40, 18, 22,
                                    -1.0, 0.5, -1.98, -0.02)
        table = format_subgroup_table([subgroup])
        self.assertIn('age_bracket=65+, gender=F', table)

    def test_ensure_directory(self):
        """Test nested directory creation."""
        path = ensure_directory(self.tmp_path / "a" / "b")
        self.assertTrue(path.is_dir())


class TestVitaminDVisualization(unittest.TestCase):
    """Smoke tests for the plots, written to a temporary directory."""

    def setUp(self):
        self.tmp_dir = tempfile.TemporaryDirectory()
        self.tmp_path = Path(self.tmp_dir.name)
        self.visualizer = VitaminDVisualization()

    def tearDown(self):
        self.tmp_dir.cleanup()

    def test_plot_forest(self):
        """Test the subgroup forest plot."""
        overall = CausalEstimate(-1.5, 0.4, -2.28, -0.72, 0.0002, 'causal_forest')
        path = self.tmp_path / "forest.png"
        self.visualizer.plot_forest(make_subgroups(), overall=overall, save_path=path)
        self.assertTrue(path.exists())

    def test_plot_bootstrap_distribution(self):
        """Test the bootstrap histogram."""
        result = BootstrapResult('mean_difference', 50, np.random.default_rng(0).normal(-2, 0.5, 50))
        path = self.tmp_path / "bootstrap.png"
        self.visualizer.plot_bootstrap_distribution(result, save_path=path)
        self.assertTrue(path.exists())

    def test_plot_stringency_timeseries(self):
        """Test the interactive HTML chart."""
        dates = pd.date_range('2020-03-11', periods=60, freq='D')
        df = pd.DataFrame({
            'test_date': dates,
            'value_resolved': np.linspace(30, 25, 60)
        })
        stringency = pd.DataFrame({'date': dates, 'stringency_index': np.linspace(20, 90, 60)})
        path = self.tmp_path / "stringency.html"

        fig = self.visualizer.plot_stringency_timeseries(df, stringency, save_path=path)

        self.assertTrue(path.exists())
        self.assertEqual(len(fig.data), 2)

    def test_plot_causal_dag(self):
        """Test the assumed causal diagram."""
        path = self.tmp_path / "dag.png"
        self.visualizer.plot_causal_dag(save_path=path)
        self.assertTrue(path.exists())


if __name__ == '__main__':
    unittest.main()
