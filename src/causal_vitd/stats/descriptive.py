"""
Descriptive statistics and period comparisons.
"""

import numpy as np
import pandas as pd
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple, Union
import logging

from scipy import stats
import statsmodels.formula.api as smf

from ..config import (
    PERIOD_COL, MONTH_COL, OUTCOME_COL, DEFICIENT_COL, PERIOD_BEFORE, PERIOD_DURING
)


logger = logging.getLogger(__name__)


@dataclass
class PeriodComparison:
    """Two-sample comparison of the outcome between periods."""
    mean_before: float
    mean_during: float
    estimate: float
    statistic: float
    p_value: float
    n_before: int
    n_during: int

    @property
    def is_significant(self, alpha: float = 0.05) -> bool:
        return bool(self.p_value < alpha)


def safe_chi2(table) -> Tuple[float, float]:
    """
    Chi-square test of independence that never raises.

    Returns:
        (chi2, p_value), both NaN when the table is degenerate
    """
    try:
        chi2, p_value, _, _ = stats.chi2_contingency(np.asarray(table))
        return float(chi2), float(p_value)
    except ValueError as e:
        logger.warning(f"Chi-square test failed: {e}")
        return np.nan, np.nan


def safe_ttest(a: Sequence[float], b: Sequence[float]) -> Tuple[float, float]:
    """
    Welch two-sample t-test that never raises.

    Returns:
        (t statistic, p_value), both NaN when either sample has fewer than two values
    """
    a = np.asarray(a, dtype=float)
    b = np.asarray(b, dtype=float)
    a = a[~np.isnan(a)]
    b = b[~np.isnan(b)]
    if len(a) < 2 or len(b) < 2:
        logger.warning(f"t-test skipped: sample sizes {len(a)} and {len(b)}")
        return np.nan, np.nan
    try:
        t_stat, p_value = stats.ttest_ind(b, a, equal_var=False)
        return float(t_stat), float(p_value)
    except ValueError as e:
        logger.warning(f"t-test failed: {e}")
        return np.nan, np.nan


def compare_periods(df: pd.DataFrame, outcome: str = OUTCOME_COL) -> PeriodComparison:
    """
    Compare the outcome between the pandemic and pre-pandemic periods.

    The estimate is mean(during) - mean(before).
    """
    before = df.loc[df[PERIOD_COL] == PERIOD_BEFORE, outcome].dropna()
    during = df.loc[df[PERIOD_COL] == PERIOD_DURING, outcome].dropna()

    t_stat, p_value = safe_ttest(before, during)
    mean_before = float(before.mean()) if len(before) else np.nan
    mean_during = float(during.mean()) if len(during) else np.nan

    return PeriodComparison(
        mean_before=mean_before,
        mean_during=mean_during,
        estimate=mean_during - mean_before,
        statistic=t_stat,
        p_value=p_value,
        n_before=int(len(before)),
        n_during=int(len(during))
    )


def group_means(df: pd.DataFrame, by: Union[str, List[str]], outcome: str = OUTCOME_COL) -> pd.DataFrame:
    """Count, mean, standard deviation and standard error of the outcome per group."""
    return (
        df.groupby(by, observed=True)[outcome]
        .agg(['count', 'mean', 'std', 'sem'])
        .reset_index()
    )


def deficiency_table(
    df: pd.DataFrame,
    by: Optional[Union[str, List[str]]] = None,
    include_total: bool = True
) -> pd.DataFrame:
    """
    Deficiency counts and rates per group and period, with a chi-square p-value per group.

    Records with a missing deficiency flag are excluded from both numerator and denominator.
    A failed chi-square test only leaves that row's p-value undefined.

    Args:
        df: Preprocessed dataset
        by: Grouping column(s); None gives a single overall row
        include_total: Whether to append an 'All' row over the whole dataset

    Returns:
        One row per group
    """
    if isinstance(by, str):
        by = [by]
    by = list(by) if by else []

    known = df[df[DEFICIENT_COL].notna()]

    groups = []
    if by:
        for key, group in known.groupby(by, observed=True):
            keys = key if isinstance(key, tuple) else (key,)
            groups.append((dict(zip(by, keys)), group))
    if include_total or not by:
        labels = {col: 'All' for col in by} if by else {'group': 'All'}
        groups.append((labels, known))

    rows = []
    for labels, group in groups:
        row = dict(labels)

        table = []
        for period in (PERIOD_BEFORE, PERIOD_DURING):
            flags = group.loc[group[PERIOD_COL] == period, DEFICIENT_COL]
            n = int(len(flags))
            n_deficient = int(flags.sum())
            row[f'n_{period}'] = n
            row[f'n_deficient_{period}'] = n_deficient
            row[f'pct_deficient_{period}'] = 100.0 * n_deficient / n if n else np.nan
            table.append([n_deficient, n - n_deficient])

        row['chi2'], row['p_value'] = safe_chi2(table)
        rows.append(row)

    return pd.DataFrame(rows)


def monthly_trend(df: pd.DataFrame, outcome: str = OUTCOME_COL) -> pd.DataFrame:
    """Mean outcome and standard error by period and calendar month."""
    trend = group_means(df, [PERIOD_COL, MONTH_COL], outcome)
    return trend.sort_values([PERIOD_COL, MONTH_COL]).reset_index(drop=True)


def stringency_association(df: pd.DataFrame, outcome: str = OUTCOME_COL) -> Dict[str, float]:
    """
    Association between the daily stringency index and the outcome during the pandemic.

    Returns:
        Pearson correlation and p-value, plus the OLS slope of the outcome on the
        stringency index adjusted for season, its standard error and p-value
    """
    during = df[(df[PERIOD_COL] == PERIOD_DURING)]
    if 'stringency_index' not in during.columns:
        raise ValueError("No 'stringency_index' column; join the stringency table first")
    during = during.dropna(subset=['stringency_index', outcome])

    result = {
        'n': int(len(during)),
        'pearson_r': np.nan, 'pearson_p': np.nan,
        'slope': np.nan, 'slope_se': np.nan, 'slope_p': np.nan
    }
    if len(during) < 3 or during['stringency_index'].nunique() < 2:
        logger.warning(f"Not enough pandemic records with stringency scores (n={len(during)})")
        return result

    r, p = stats.pearsonr(during['stringency_index'], during[outcome])
    result['pearson_r'], result['pearson_p'] = float(r), float(p)

    formula = f"{outcome} ~ stringency_index"
    if 'season' in during.columns and during['season'].nunique() > 1:
        formula += " + C(season)"
    fit = smf.ols(formula, data=during).fit()
    result['slope'] = float(fit.params['stringency_index'])
    result['slope_se'] = float(fit.bse['stringency_index'])
    result['slope_p'] = float(fit.pvalues['stringency_index'])

    logger.info(f"Stringency association: r={result['pearson_r']:.3f}, slope={result['slope']:.4f}")
    return result
