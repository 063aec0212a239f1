"""
Propensity-score matching between the pre-pandemic and pandemic periods.
"""

from collections import deque
import numpy as np
import pandas as pd
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple
import logging

from sklearn.linear_model import LogisticRegression
from sklearn.neighbors import NearestNeighbors

from ..config import AnalysisConfig, DEFAULT_CONFIG, TREATMENT_COL
from ..utils.helpers import check_balance


logger = logging.getLogger(__name__)


_CONFIG_CALIPER = object()


class MatchingError(ValueError):
    """Raised when a matching problem is degenerate."""


@dataclass
class MatchResult:
    """Matched subset of the input together with its bookkeeping."""
    matched: pd.DataFrame
    n_input: int
    n_treated: int
    n_control: int
    n_pairs: int
    caliper: Optional[float] = None

    @property
    def n_matched(self) -> int:
        return 2 * self.n_pairs

    @property
    def n_lost(self) -> int:
        return self.n_input - self.n_matched

    @property
    def loss_rate(self) -> float:
        """Share of input records dropped for lack of a partner."""
        return self.n_lost / self.n_input if self.n_input else np.nan

    @property
    def match_rate(self) -> float:
        """Share of input records kept in a pair."""
        return self.n_matched / self.n_input if self.n_input else np.nan

    @property
    def n_treated_unmatched(self) -> int:
        return self.n_treated - self.n_pairs

    @property
    def n_control_unmatched(self) -> int:
        return self.n_control - self.n_pairs

    @property
    def is_empty(self) -> bool:
        return self.n_pairs == 0

    def summary(self) -> Dict[str, float]:
        return {
            'n_input': self.n_input,
            'n_treated': self.n_treated,
            'n_control': self.n_control,
            'n_pairs': self.n_pairs,
            'n_lost': self.n_lost,
            'loss_rate': self.loss_rate,
            'match_rate': self.match_rate,
            'n_treated_unmatched': self.n_treated_unmatched,
            'n_control_unmatched': self.n_control_unmatched,
        }


# Candidates ranked per treated record before falling back to a full ranking
_INITIAL_NEIGHBORS = 8


def _greedy_nearest_pairs(
    treated_scores: np.ndarray,
    control_scores: np.ndarray,
    caliper: Optional[float]
) -> List[Tuple[int, int, float]]:
    """
    Greedy 1:1 nearest-neighbour matching on a scalar score without replacement.

    Treated units are taken in descending score order; each takes the closest control
    still available, provided it lies within the caliper. Controls with equal scores are
    used in their input order.

    Returns:
        List of (treated position, control position, distance)
    """
    treated_scores = np.asarray(treated_scores, dtype=float)
    control_scores = np.asarray(control_scores, dtype=float)
    if len(treated_scores) == 0 or len(control_scores) == 0:
        return []

    # Controls sharing a score are interchangeable, so only distinct scores are indexed
    levels, inverse = np.unique(control_scores, return_inverse=True)
    inverse = inverse.ravel()
    grouped = np.argsort(inverse, kind='mergesort')
    bounds = np.cumsum(np.bincount(inverse, minlength=len(levels)))[:-1]
    pools = [deque(ids.tolist()) for ids in np.split(grouped, bounds)]
    n_open = len(levels)

    nn = NearestNeighbors().fit(levels.reshape(-1, 1))
    k = min(_INITIAL_NEIGHBORS, len(levels))
    distances, indices = nn.kneighbors(treated_scores.reshape(-1, 1), n_neighbors=k)

    pairs = []
    for t_pos in np.argsort(-treated_scores, kind='mergesort'):
        if n_open == 0:
            break

        best = next(((d, lvl) for d, lvl in zip(distances[t_pos], indices[t_pos]) if pools[lvl]), None)
        if best is None and k < len(levels):
            all_d, all_i = nn.kneighbors(treated_scores[[t_pos]].reshape(-1, 1), n_neighbors=len(levels))
            best = next(((d, lvl) for d, lvl in zip(all_d[0], all_i[0]) if pools[lvl]), None)
        if best is None:
            continue

        distance, level = best
        if caliper is not None and distance > caliper:
            continue

        c_pos = pools[level].popleft()
        if not pools[level]:
            n_open -= 1
        pairs.append((int(t_pos), int(c_pos), float(distance)))

    return pairs


class PropensityMatcher:
    """
    Matches pandemic-period records to pre-pandemic records on their propensity score.

    The propensity model is a logistic regression of the treatment indicator on the
    one-hot encoded matching covariates. Pairs are formed within strata of the exact-match
    columns, one control per treated record, and never further apart than the caliper.
    """

    def __init__(
        self,
        config: AnalysisConfig = DEFAULT_CONFIG,
        covariates: Optional[Sequence[str]] = None,
        exact_columns: Optional[Sequence[str]] = None,
        caliper=_CONFIG_CALIPER,
        treatment_col: str = TREATMENT_COL
    ):
        """
        Initialize the matcher.

        Args:
            config: Analysis configuration supplying defaults
            covariates: Propensity model covariates (default: config.matching_covariates)
            exact_columns: Columns that must be equal within a pair (default:
                config.exact_match_columns); pass an empty sequence to disable
            caliper: Maximum propensity distance; None disables it. Defaults to
                config.caliper
            treatment_col: Binary treatment indicator column
        """
        self.config = config
        self.covariates = list(covariates if covariates is not None else config.matching_covariates)
        self.exact_columns = list(exact_columns if exact_columns is not None else config.exact_match_columns)
        self.caliper = config.caliper if caliper is _CONFIG_CALIPER else caliper
        self.treatment_col = treatment_col
        self.propensity_model = None

    def _design_matrix(self, df: pd.DataFrame) -> pd.DataFrame:
        return pd.get_dummies(df[self.covariates].astype(str), drop_first=True, dtype=float)

    def fit_propensity(self, df: pd.DataFrame) -> pd.Series:
        """
        Fit the propensity model and score every record.

        Returns:
            Predicted probability of treatment, indexed like df
        """
        treatment = df[self.treatment_col].astype(int)
        if treatment.nunique() < 2:
            raise MatchingError(
                f"Both treatment groups are required for matching, got {sorted(treatment.unique())}"
            )

        X = self._design_matrix(df)
        if X.shape[1] == 0:
            # Covariates are constant: every record shares the marginal probability
            return pd.Series(treatment.mean(), index=df.index, name='propensity_score')

        model = LogisticRegression(max_iter=1000)
        model.fit(X.values, treatment.values)
        self.propensity_model = model

        scores = model.predict_proba(X.values)[:, 1]
        return pd.Series(scores, index=df.index, name='propensity_score')

    def match(self, df: pd.DataFrame) -> MatchResult:
        """
        Match treated to control records.

        Args:
            df: Dataset with the covariates, exact-match columns and treatment indicator

        Returns:
            MatchResult whose frame is a subset of df (original index preserved) with
            'pair_id', 'propensity_score', 'match_distance' and 'weight' columns
        """
        work = df.copy()
        work['propensity_score'] = self.fit_propensity(work)
        treated_mask = work[self.treatment_col].astype(int) == 1

        if self.exact_columns:
            strata = work.groupby(self.exact_columns, dropna=False, observed=True)
        else:
            strata = [(None, work)]

        matched_parts = []
        pair_id = 0
        for _, stratum in strata:
            is_treated = treated_mask.loc[stratum.index]
            treated = stratum[is_treated]
            control = stratum[~is_treated]
            if len(treated) == 0 or len(control) == 0:
                continue

            pairs = _greedy_nearest_pairs(
                treated['propensity_score'].values,
                control['propensity_score'].values,
                self.caliper
            )
            if not pairs:
                continue

            t_pos, c_pos, distances = zip(*pairs)
            pair_ids = np.arange(pair_id, pair_id + len(pairs))
            pair_id += len(pairs)

            matched_t = treated.iloc[list(t_pos)].assign(pair_id=pair_ids, match_distance=distances)
            matched_c = control.iloc[list(c_pos)].assign(pair_id=pair_ids, match_distance=distances)
            matched_parts.extend([matched_t, matched_c])

        if matched_parts:
            matched = pd.concat(matched_parts).sort_values(['pair_id', self.treatment_col])
        else:
            matched = work.iloc[0:0].assign(pair_id=pd.Series(dtype=int),
                                             match_distance=pd.Series(dtype=float))
        matched['weight'] = 1.0

        result = MatchResult(
            matched=matched,
            n_input=len(work),
            n_treated=int(treated_mask.sum()),
            n_control=int((~treated_mask).sum()),
            n_pairs=pair_id,
            caliper=self.caliper
        )

        if result.is_empty:
            logger.warning("Matching produced no pairs")
        logger.debug(f"Matched {result.n_pairs} pairs; {result.n_lost} of {result.n_input} "
                     f"records lost ({result.loss_rate:.1%})")
        return result

    def balance_report(self, df: pd.DataFrame, result: MatchResult) -> pd.DataFrame:
        """
        Standardized mean differences of the one-hot covariates before and after matching.
        """
        covariates = list(dict.fromkeys(self.covariates + self.exact_columns))

        def _balance(frame):
            dummies = pd.get_dummies(frame[covariates].astype(str), dtype=float)
            dummies[self.treatment_col] = frame[self.treatment_col].astype(int).values
            return check_balance(dummies, self.treatment_col, [c for c in dummies.columns if c != self.treatment_col])

        before = _balance(df).set_index('covariate')['standardized_mean_diff']
        if result.is_empty:
            after = pd.Series(np.nan, index=before.index)
        else:
            after = _balance(result.matched).set_index('covariate')['standardized_mean_diff']

        report = pd.DataFrame({'smd_before': before, 'smd_after': after})
        report.index.name = 'covariate'
        return report.reset_index()
