"""
Unit tests for propensity-score matching.
"""

import unittest
import pandas as pd
import numpy as np
import sys
from pathlib import Path

# Add src to path
sys.path.append(str(Path(__file__).parent.parent / "src"))

from causal_vitd.config import AnalysisConfig
from causal_vitd.models.matching import (
    PropensityMatcher, MatchResult, MatchingError, _greedy_nearest_pairs
)


def make_cohorts(n=400, seed=42):
    """Synthetic preprocessed records with a mild period imbalance in age."""
    rng = np.random.default_rng(seed)
    age = rng.choice(['18-39', '40-64', '65+'], n)
    treatment = rng.binomial(1, np.where(age == '65+', 0.35, 0.55))
    return pd.DataFrame({
        'age_bracket': age,
        'gender': rng.choice(['F', 'M'], n),
        'month': rng.integers(1, 13, n),
        'treatment': treatment,
        'period': np.where(treatment == 1, 'during', 'before'),
        'value_resolved': rng.normal(30.0, 8.0, n) - 2.0 * treatment
    }, index=pd.RangeIndex(1000, 1000 + n))


class TestGreedyNearestPairs(unittest.TestCase):
    """Test cases for the greedy 1:1 matching core."""

    def test_caliper_excludes_distant_controls(self):
        """Test that a treated record with no close control stays unmatched."""
        pairs = _greedy_nearest_pairs(np.array([0.9, 0.5]), np.array([0.52, 0.1]), caliper=0.05)

        self.assertEqual(len(pairs), 1)
        t_pos, c_pos, distance = pairs[0]
        self.assertEqual((t_pos, c_pos), (1, 0))
        self.assertAlmostEqual(distance, 0.02)

    def test_without_replacement(self):
        """Test that a control is used at most once."""
        pairs = _greedy_nearest_pairs(np.array([0.5, 0.5]), np.array([0.5]), caliper=None)
        self.assertEqual(len(pairs), 1)

    def test_descending_score_order(self):
        """Test that the highest treated score chooses first."""
        pairs = _greedy_nearest_pairs(np.array([0.3, 0.62]), np.array([0.45]), caliper=None)
        self.assertEqual([(t, c) for t, c, _ in pairs], [(1, 0)])

    def test_tied_controls_used_in_input_order(self):
        """Test that equal-score controls are taken first come, first served."""
        pairs = _greedy_nearest_pairs(np.array([0.4, 0.4]), np.array([0.2, 0.4, 0.4, 0.4]), caliper=None)
        self.assertEqual([c for _, c, _ in pairs], [1, 2])

    def test_falls_back_when_nearest_candidates_used_up(self):
        """Test matching beyond the initially ranked candidates."""
        control = np.linspace(0.0, 1.0, 21)
        treated = np.full(21, 0.5)
        pairs = _greedy_nearest_pairs(treated, control, caliper=None)

        self.assertEqual(len(pairs), 21)
        self.assertEqual(len({c for _, c, _ in pairs}), 21)
        distances = [d for _, _, d in pairs]
        self.assertEqual(distances, sorted(distances))
        self.assertAlmostEqual(distances[-1], 0.5)

    def test_empty_inputs(self):
        """Test that an empty side gives no pairs."""
        self.assertEqual(_greedy_nearest_pairs(np.array([]), np.array([0.3]), caliper=None), [])
        self.assertEqual(_greedy_nearest_pairs(np.array([0.3]), np.array([]), caliper=None), [])

    def test_no_caliper_matches_min_group(self):
        """Test that without a caliper every record of the smaller group is matched."""
        rng = np.random.default_rng(3)
        pairs = _greedy_nearest_pairs(rng.uniform(size=7), rng.uniform(size=12), caliper=None)
        self.assertEqual(len(pairs), 7)
        self.assertEqual(len({c for _, c, _ in pairs}), 7)


class TestPropensityMatcher(unittest.TestCase):
    """Test cases for PropensityMatcher."""

    def setUp(self):
        """Set up test fixtures."""
        self.df = make_cohorts()
        self.matcher = PropensityMatcher()

    def test_initialization_from_config(self):
        """Test defaults taken from the configuration."""
        config = AnalysisConfig(caliper=0.1)
        matcher = PropensityMatcher(config)
        self.assertEqual(matcher.caliper, 0.1)
        self.assertEqual(matcher.covariates, ['age_bracket', 'gender', 'month'])
        self.assertEqual(matcher.exact_columns, ['age_bracket', 'gender'])

        self.assertIsNone(PropensityMatcher(config, caliper=None).caliper)

    def test_fit_propensity(self):
        """Test that scores are probabilities aligned with the input."""
        scores = self.matcher.fit_propensity(self.df)
        self.assertTrue(scores.index.equals(self.df.index))
        self.assertTrue(((scores > 0) & (scores < 1)).all())

    def test_matched_set_is_subset(self):
        """Test that matched records come from the input with their original index."""
        result = self.matcher.match(self.df)
        matched = result.matched

        self.assertIsInstance(result, MatchResult)
        self.assertTrue(matched.index.is_unique)
        self.assertTrue(set(matched.index) <= set(self.df.index))
        pd.testing.assert_series_equal(
            matched['value_resolved'], self.df.loc[matched.index, 'value_resolved']
        )

    def test_pairs_are_balanced(self):
        """Test that every pair holds one treated and one control record."""
        result = self.matcher.match(self.df)
        matched = result.matched

        self.assertEqual(len(matched), 2 * result.n_pairs)
        self.assertEqual(int(matched['treatment'].sum()), result.n_pairs)
        for _, pair in matched.groupby('pair_id'):
            self.assertEqual(sorted(pair['treatment'].tolist()), [0, 1])

    def test_exact_columns_equal_within_pairs(self):
        """Test exact matching on age bracket and gender."""
        result = self.matcher.match(self.df)
        for _, pair in result.matched.groupby('pair_id'):
            self.assertEqual(pair['age_bracket'].nunique(), 1)
            self.assertEqual(pair['gender'].nunique(), 1)

    def test_distances_within_caliper(self):
        """Test that no pair is further apart than the caliper."""
        result = self.matcher.match(self.df)
        self.assertTrue((result.matched['match_distance'] <= 0.05).all())
        self.assertTrue((result.matched['weight'] == 1.0).all())

    def test_rates_add_up(self):
        """Test that loss rate and match rate are complementary shares of the input."""
        result = self.matcher.match(self.df)
        self.assertEqual(result.n_input, len(self.df))
        self.assertAlmostEqual(result.loss_rate + result.match_rate, 1.0)
        self.assertEqual(result.n_lost, result.n_input - result.n_matched)

    def test_caliper_loss_rate(self):
        """Test the loss rate when the caliper leaves most records unpaired."""
        df = pd.DataFrame({
            'month': [1] * 22 + [2] * 22,
            'treatment': [1] * 20 + [0] * 2 + [1] * 2 + [0] * 20
        })
        matcher = PropensityMatcher(covariates=['month'], exact_columns=[], caliper=0.05)
        result = matcher.match(df)

        self.assertEqual(result.n_pairs, 4)
        self.assertEqual(result.n_lost, 36)
        self.assertAlmostEqual(result.loss_rate, 36 / 44)
        self.assertEqual(result.n_treated_unmatched, 18)
        self.assertEqual(result.n_control_unmatched, 18)

        unrestricted = PropensityMatcher(covariates=['month'], exact_columns=[], caliper=None).match(df)
        self.assertEqual(unrestricted.n_pairs, 22)
        self.assertEqual(unrestricted.loss_rate, 0.0)

    def test_single_treatment_group_raises(self):
        """Test that matching needs both periods."""
        df = self.df.assign(treatment=0)
        with self.assertRaises(MatchingError):
            self.matcher.match(df)

    def test_empty_result_when_strata_disjoint(self):
        """Test that disjoint strata give an empty, well-formed result."""
        df = self.df.copy()
        df['gender'] = np.where(df['treatment'] == 1, 'M', 'F')

        with self.assertLogs('causal_vitd.models.matching', level='WARNING'):
            result = self.matcher.match(df)

        self.assertTrue(result.is_empty)
        self.assertEqual(len(result.matched), 0)
        self.assertIn('pair_id', result.matched.columns)
        self.assertEqual(result.loss_rate, 1.0)

    def test_balance_report(self):
        """Test balance statistics before and after matching."""
        result = self.matcher.match(self.df)
        report = self.matcher.balance_report(self.df, result)

        self.assertEqual(list(report.columns), ['covariate', 'smd_before', 'smd_after'])
        age_rows = report[report['covariate'].str.startswith('age_bracket')]
        # Exact matching on age removes any imbalance in it
        self.assertTrue((age_rows['smd_after'].abs() < 1e-9).all())

    def test_summary(self):
        """Test the bookkeeping summary."""
        summary = self.matcher.match(self.df).summary()
        for key in ['n_input', 'n_pairs', 'n_lost', 'loss_rate']:
            self.assertIn(key, summary)


if __name__ == '__main__':
    unittest.main()
