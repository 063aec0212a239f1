"""
Unit tests for descriptive statistics and period comparisons.
"""

import unittest
import pandas as pd
import numpy as np
import sys
from pathlib import Path

# Add src to path
sys.path.append(str(Path(__file__).parent.parent / "src"))

from causal_vitd.stats.descriptive import (
    PeriodComparison, safe_chi2, safe_ttest, compare_periods, group_means,
    deficiency_table, monthly_trend, stringency_association
)


def make_flags(group, period, n, n_deficient):
    return pd.DataFrame({
        'age_bracket': [group] * n,
        'period': [period] * n,
        'deficient': [1.0] * n_deficient + [0.0] * (n - n_deficient)
    })


class TestSafeTests(unittest.TestCase):
    """Test cases for the non-raising test wrappers."""

    def test_chi2_regular_table(self):
        """Test a well-formed contingency table."""
        chi2, p_value = safe_chi2([[30, 70], [50, 50]])
        self.assertGreater(chi2, 0)
        self.assertLess(p_value, 0.05)

    def test_chi2_degenerate_table(self):
        """Test that a table with an empty margin yields NaN instead of raising."""
        chi2, p_value = safe_chi2([[0, 0], [5, 5]])
        self.assertTrue(np.isnan(chi2))
        self.assertTrue(np.isnan(p_value))

    def test_ttest_too_few_values(self):
        """Test that tiny samples yield NaN."""
        t_stat, p_value = safe_ttest([1.0], [2.0, 3.0, 4.0])
        self.assertTrue(np.isnan(t_stat))
        self.assertTrue(np.isnan(p_value))

    def test_ttest_ignores_nan(self):
        """Test that missing values are dropped before testing."""
        t_stat, p_value = safe_ttest([1.0, 2.0, np.nan, 3.0], [4.0, 5.0, 6.0])
        self.assertFalse(np.isnan(p_value))
        self.assertGreater(t_stat, 0)


class TestComparePeriods(unittest.TestCase):
    """Test cases for the two-period comparison."""

    def setUp(self):
        """Set up a dataset with a known five-unit shift."""
        rng = np.random.default_rng(0)
        self.df = pd.DataFrame({
            'period': ['before'] * 50 + ['during'] * 50,
            'value_resolved': np.concatenate([
                rng.normal(30.0, 2.0, 50),
                rng.normal(35.0, 2.0, 50)
            ])
        })

    def test_detects_shift(self):
        """Test that the estimate recovers the shift and is significant."""
        result = compare_periods(self.df)

        self.assertIsInstance(result, PeriodComparison)
        self.assertAlmostEqual(result.estimate, 5.0, delta=1.5)
        self.assertAlmostEqual(result.estimate, result.mean_during - result.mean_before)
        self.assertLess(result.p_value, 0.05)
        self.assertTrue(result.is_significant)
        self.assertEqual(result.n_before, 50)
        self.assertEqual(result.n_during, 50)

    def test_missing_values_excluded(self):
        """Test that NaN outcomes do not count."""
        df = self.df.copy()
        df.loc[0, 'value_resolved'] = np.nan
        result = compare_periods(df)
        self.assertEqual(result.n_before, 49)

    def test_single_period(self):
        """Test that one empty period gives an undefined comparison."""
        result = compare_periods(self.df[self.df['period'] == 'before'])
        self.assertEqual(result.n_during, 0)
        self.assertTrue(np.isnan(result.estimate))
        self.assertFalse(result.is_significant)


class TestDeficiencyTable(unittest.TestCase):
    """Test cases for the deficiency table."""

    def setUp(self):
        """Set up groups with and without pandemic records."""
        self.df = pd.concat([
            make_flags('18-39', 'before', 10, 4),
            make_flags('18-39', 'during', 10, 7),
            make_flags('40-64', 'before', 20, 5),
            make_flags('40-64', 'during', 20, 10),
            make_flags('65+', 'before', 8, 2),
        ], ignore_index=True)

    def test_rates_and_counts(self):
        """Test per-group counts and percentages."""
        table = deficiency_table(self.df, by='age_bracket').set_index('age_bracket')

        self.assertEqual(table.loc['18-39', 'n_before'], 10)
        self.assertEqual(table.loc['18-39', 'n_deficient_during'], 7)
        self.assertAlmostEqual(table.loc['18-39', 'pct_deficient_before'], 40.0)
        self.assertAlmostEqual(table.loc['40-64', 'pct_deficient_during'], 50.0)
        self.assertIn('All', table.index)
        self.assertEqual(table.loc['All', 'n_before'], 38)

    def test_failed_chi2_only_affects_its_row(self):
        """Test that a group without pandemic records keeps the rest of the table."""
        table = deficiency_table(self.df, by='age_bracket').set_index('age_bracket')

        self.assertEqual(table.loc['65+', 'n_during'], 0)
        self.assertTrue(np.isnan(table.loc['65+', 'pct_deficient_during']))
        self.assertTrue(np.isnan(table.loc['65+', 'p_value']))
        self.assertFalse(np.isnan(table.loc['18-39', 'p_value']))
        self.assertFalse(np.isnan(table.loc['All', 'p_value']))

    def test_missing_flags_excluded(self):
        """Test that NaN flags count in neither numerator nor denominator."""
        df = self.df.copy()
        df.loc[0, 'deficient'] = np.nan
        table = deficiency_table(df, by='age_bracket').set_index('age_bracket')

        self.assertEqual(table.loc['18-39', 'n_before'], 9)
        self.assertEqual(table.loc['18-39', 'n_deficient_before'], 3)

    def test_overall_only(self):
        """Test the single-row table without grouping."""
        table = deficiency_table(self.df)
        self.assertEqual(len(table), 1)
        self.assertEqual(table['group'].iloc[0], 'All')

    def test_without_total(self):
        """Test that the total row can be left out."""
        table = deficiency_table(self.df, by='age_bracket', include_total=False)
        self.assertEqual(sorted(table['age_bracket']), ['18-39', '40-64', '65+'])


class TestAggregates(unittest.TestCase):
    """Test cases for group means, trends and the stringency association."""

    def setUp(self):
        rng = np.random.default_rng(1)
        n = 200
        stringency = rng.uniform(20, 90, n)
        self.during = pd.DataFrame({
            'period': ['during'] * n,
            'month': rng.integers(1, 13, n),
            'season': rng.choice(['Winter', 'Summer'], n),
            'stringency_index': stringency,
            'value_resolved': 40.0 - 0.2 * stringency + rng.normal(0, 1.0, n)
        })
        self.before = pd.DataFrame({
            'period': ['before'] * 50,
            'month': rng.integers(1, 13, 50),
            'season': rng.choice(['Winter', 'Summer'], 50),
            'stringency_index': np.nan,
            'value_resolved': rng.normal(30.0, 2.0, 50)
        })
        self.df = pd.concat([self.before, self.during], ignore_index=True)

    def test_group_means(self):
        """Test the grouped summary columns."""
        means = group_means(self.df, 'period')
        self.assertEqual(list(means.columns), ['period', 'count', 'mean', 'std', 'sem'])
        self.assertEqual(means.set_index('period').loc['during', 'count'], 200)

    def test_monthly_trend(self):
        """Test that the trend is sorted by period and month."""
        trend = monthly_trend(self.df)
        self.assertIn('month', trend.columns)
        self.assertTrue(trend['period'].is_monotonic_increasing)

    def test_stringency_association(self):
        """Test recovery of a negative slope."""
        result = stringency_association(self.df)

        self.assertEqual(result['n'], 200)
        self.assertLess(result['pearson_r'], 0)
        self.assertAlmostEqual(result['slope'], -0.2, delta=0.05)
        self.assertLess(result['slope_p'], 0.05)

    def test_stringency_association_requires_column(self):
        """Test that a missing stringency column raises."""
        with self.assertRaises(ValueError):
            stringency_association(self.df.drop(columns='stringency_index'))

    def test_stringency_association_too_few_records(self):
        """Test that tiny samples give NaN rather than raising."""
        result = stringency_association(self.df.iloc[:52])
        self.assertEqual(result['n'], 2)
        self.assertTrue(np.isnan(result['slope']))


if __name__ == '__main__':
    unittest.main()
