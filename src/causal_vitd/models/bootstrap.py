"""
Bootstrap inference over repeated (sample, match, estimate) trials.

Trials run on a multiprocessing pool. The full dataset, the configuration and the
statistic name are handed to each worker once through the pool initializer; every task
then only carries its seed.
"""

import multiprocessing
import numpy as np
import pandas as pd
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional
import logging

import statsmodels.formula.api as smf

from ..config import AnalysisConfig, DEFAULT_CONFIG, TREATMENT_COL, OUTCOME_COL
from ..stats.descriptive import compare_periods
from .matching import PropensityMatcher, MatchingError


logger = logging.getLogger(__name__)


@dataclass
class TrialOutcome:
    """Result of one bootstrap trial."""
    seed: int
    estimate: Optional[float]
    n_matched: int = 0
    loss_rate: float = np.nan
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.estimate is not None


@dataclass
class BootstrapResult:
    """Aggregated bootstrap estimates and their percentile interval."""
    statistic: str
    n_trials: int
    estimates: np.ndarray
    outcomes: List[TrialOutcome] = field(default_factory=list)
    alpha: float = 0.05

    @property
    def n_succeeded(self) -> int:
        return int(len(self.estimates))

    @property
    def n_failed(self) -> int:
        return self.n_trials - self.n_succeeded

    @property
    def errors(self) -> List[str]:
        return [o.error for o in self.outcomes if o.error is not None]

    @property
    def point_estimate(self) -> float:
        return float(np.mean(self.estimates)) if self.n_succeeded else np.nan

    @property
    def ci_lower(self) -> float:
        if not self.n_succeeded:
            return np.nan
        return float(np.percentile(self.estimates, 100 * self.alpha / 2))

    @property
    def ci_upper(self) -> float:
        if not self.n_succeeded:
            return np.nan
        return float(np.percentile(self.estimates, 100 * (1 - self.alpha / 2)))

    @property
    def mean_loss_rate(self) -> float:
        rates = [o.loss_rate for o in self.outcomes if o.succeeded]
        return float(np.mean(rates)) if rates else np.nan

    def summary(self) -> Dict[str, float]:
        return {
            'statistic': self.statistic,
            'n_trials': self.n_trials,
            'n_succeeded': self.n_succeeded,
            'n_failed': self.n_failed,
            'point_estimate': self.point_estimate,
            'ci_lower': self.ci_lower,
            'ci_upper': self.ci_upper,
            'mean_loss_rate': self.mean_loss_rate,
        }


def mean_difference(matched: pd.DataFrame, config: AnalysisConfig) -> float:
    """Difference in mean outcome (during - before) on the matched subset."""
    comparison = compare_periods(matched, OUTCOME_COL)
    return comparison.estimate


def ols_coefficient(matched: pd.DataFrame, config: AnalysisConfig) -> float:
    """Treatment coefficient of an OLS fit adjusted for the matching covariates."""
    terms = [TREATMENT_COL]
    for covariate in config.matching_covariates:
        if matched[covariate].nunique() > 1:
            terms.append(f"C({covariate})")
    fit = smf.ols(f"{OUTCOME_COL} ~ " + " + ".join(terms), data=matched).fit()
    return float(fit.params[TREATMENT_COL])


STATISTICS: Dict[str, Callable[[pd.DataFrame, AnalysisConfig], float]] = {
    'mean_difference': mean_difference,
    'ols': ols_coefficient,
}


# Per-process state, set once by _init_worker
_WORKER_STATE: Dict[str, object] = {}


def _init_worker(data: pd.DataFrame, config: AnalysisConfig, statistic: str) -> None:
    _WORKER_STATE['data'] = data
    _WORKER_STATE['config'] = config
    _WORKER_STATE['statistic'] = statistic


def _run_trial(seed: int) -> TrialOutcome:
    data = _WORKER_STATE['data']
    config = _WORKER_STATE['config']
    statistic = STATISTICS[_WORKER_STATE['statistic']]

    try:
        sample = data.sample(frac=config.bootstrap_fraction, random_state=seed)
        result = PropensityMatcher(config).match(sample)
        if result.is_empty:
            raise MatchingError("matched set is empty")

        estimate = statistic(result.matched, config)
        if estimate is None or not np.isfinite(estimate):
            raise ValueError(f"non-finite estimate {estimate!r}")

        return TrialOutcome(seed=seed, estimate=float(estimate),
                            n_matched=result.n_matched, loss_rate=result.loss_rate)
    except Exception as e:
        # A failing trial is recorded and excluded, never fatal to the batch
        return TrialOutcome(seed=seed, estimate=None, error=f"{type(e).__name__}: {e}")


class BootstrapRunner:
    """Runs repeated matched-sample trials in parallel and aggregates them."""

    def __init__(
        self,
        config: AnalysisConfig = DEFAULT_CONFIG,
        statistic: str = 'mean_difference',
        n_workers: Optional[int] = None
    ):
        """
        Initialize the bootstrap runner.

        Args:
            config: Analysis configuration (trial count, sample fraction, base seed, matching)
            statistic: 'mean_difference' or 'ols'
            n_workers: Worker processes; defaults to the CPU count minus one. With one
                worker the trials run in the calling process.
        """
        if statistic not in STATISTICS:
            raise ValueError(f"Unknown statistic '{statistic}'. Choose from {list(STATISTICS)}")
        self.config = config
        self.statistic = statistic
        self.n_workers = n_workers if n_workers is not None else max(1, multiprocessing.cpu_count() - 1)

    def seeds(self) -> List[int]:
        """Per-trial seeds, fixed by the configured random state."""
        return [self.config.random_state + i for i in range(self.config.n_bootstrap)]

    def run(self, df: pd.DataFrame) -> BootstrapResult:
        """
        Run all trials and aggregate the successful estimates.

        Args:
            df: Preprocessed dataset (read-only for the trials)

        Returns:
            BootstrapResult with estimates in seed order
        """
        seeds = self.seeds()
        logger.info(f"Running {len(seeds)} bootstrap trials ({self.statistic}) "
                    f"on {self.n_workers} worker(s)")

        if self.n_workers == 1:
            _init_worker(df, self.config, self.statistic)
            try:
                outcomes = [_run_trial(seed) for seed in seeds]
            finally:
                _WORKER_STATE.clear()
        else:
            with multiprocessing.Pool(
                processes=self.n_workers,
                initializer=_init_worker,
                initargs=(df, self.config, self.statistic)
            ) as pool:
                outcomes = pool.map(_run_trial, seeds)

        estimates = np.array([o.estimate for o in outcomes if o.succeeded], dtype=float)
        result = BootstrapResult(
            statistic=self.statistic,
            n_trials=len(seeds),
            estimates=estimates,
            outcomes=outcomes
        )

        logger.info(f"Bootstrap complete: {result.n_succeeded} succeeded, {result.n_failed} failed")
        if result.n_failed:
            logger.warning(f"{result.n_failed} trials dropped; first error: {result.errors[0]}")
        if result.n_succeeded:
            logger.info(f"Bootstrap estimate {result.point_estimate:.4f}, "
                        f"95% CI [{result.ci_lower:.4f}, {result.ci_upper:.4f}]")
        else:
            logger.error("No bootstrap trial succeeded; interval is undefined")

        return result
