"""
Causal effect estimation: causal forest (CATE / ATE) and a Double Machine Learning cross-check.
"""

import itertools
import numpy as np
import pandas as pd
from typing import Dict, List, Tuple, Optional, Any, Sequence
import logging
from dataclasses import dataclass

from scipy import stats
import doubleml as dml
from doubleml import DoubleMLData
from econml.dml import CausalForestDML
from sklearn.ensemble import RandomForestClassifier, RandomForestRegressor
from sklearn.linear_model import LinearRegression, LogisticRegression
from xgboost import XGBClassifier, XGBRegressor

from ..config import TREATMENT_COL, OUTCOME_COL
from ..data.preprocessor import encode_covariates


logger = logging.getLogger(__name__)

Z_95 = 1.96


@dataclass
class CausalEstimate:
    """Container for causal effect estimates."""
    coefficient: float
    std_error: float
    ci_lower: float
    ci_upper: float
    p_value: float
    method: str
    n: Optional[int] = None

    @property
    def is_significant(self, alpha: float = 0.05) -> bool:
        """Check if effect is statistically significant."""
        return bool(self.p_value < alpha)


@dataclass
class SubgroupEstimate:
    """Effect estimate restricted to a cross of covariate categories."""
    conditions: Dict[str, Any]
    n: int
    n_treated: int
    n_control: int
    estimate: float
    std_error: float
    ci_lower: float
    ci_upper: float

    @property
    def label(self) -> str:
        return ", ".join(f"{k}={v}" for k, v in self.conditions.items())


def _normal_estimate(coefficient: float, std_error: float, method: str, n: Optional[int] = None) -> CausalEstimate:
    if std_error > 0:
        p_value = float(2 * stats.norm.sf(abs(coefficient / std_error)))
    else:
        p_value = np.nan
    return CausalEstimate(
        coefficient=float(coefficient),
        std_error=float(std_error),
        ci_lower=float(coefficient - Z_95 * std_error),
        ci_upper=float(coefficient + Z_95 * std_error),
        p_value=p_value,
        method=method,
        n=n
    )


class CausalForestEngine:
    """
    Estimates pandemic effects on Vitamin D with a causal forest (econml CausalForestDML).

    Covariates are integer-encoded before fitting; the category lists are kept so that
    subgroups can be addressed by their original labels.
    """

    def __init__(self, n_estimators: int = 500, min_samples_leaf: int = 5,
                 n_folds: int = 3, random_state: int = 42):
        """
        Initialize the causal forest engine.

        Args:
            n_estimators: Trees in the causal forest (multiple of 4)
            min_samples_leaf: Minimum samples per forest leaf
            n_folds: Folds for cross-fitting the nuisance models
            random_state: Random seed for reproducibility
        """
        self.n_estimators = n_estimators
        self.min_samples_leaf = min_samples_leaf
        self.n_folds = n_folds
        self.random_state = random_state
        self.model = None
        self.covariates: List[str] = []
        self.categories: Dict[str, List] = {}
        self._frame = None
        self._X = None
        self._Y = None
        self._T = None

    def prepare_data(
        self,
        df: pd.DataFrame,
        covariates: Sequence[str],
        outcome_col: str = OUTCOME_COL,
        treatment_col: str = TREATMENT_COL
    ) -> Tuple[pd.DataFrame, np.ndarray, np.ndarray]:
        """
        Build the numeric covariate matrix, outcome and binary treatment.

        Records with a missing outcome or covariate are dropped.

        Returns:
            (X, Y, T)
        """
        self.covariates = list(covariates)
        frame = df.dropna(subset=self.covariates + [outcome_col, treatment_col])
        n_dropped = len(df) - len(frame)
        if n_dropped:
            logger.info(f"Dropped {n_dropped} records with missing outcome or covariates")

        treatment = frame[treatment_col].astype(int)
        if not set(treatment.unique()) <= {0, 1}:
            raise ValueError(f"Treatment column '{treatment_col}' must be binary 0/1")

        X, self.categories = encode_covariates(frame, self.covariates)
        self._frame = frame[self.covariates].copy()
        self._frame[treatment_col] = treatment.values
        self._X = X.astype(float)
        self._Y = frame[outcome_col].astype(float).values
        self._T = treatment.values

        logger.info(f"Prepared causal forest data: {len(frame)} records, {len(self.covariates)} covariates")
        return self._X, self._Y, self._T

    def fit(self) -> 'CausalForestEngine':
        """Fit the causal forest on the prepared data."""
        if self._X is None:
            raise RuntimeError("No data prepared. Call prepare_data() first.")

        self.model = CausalForestDML(
            model_y=RandomForestRegressor(n_estimators=100, min_samples_leaf=10,
                                          random_state=self.random_state),
            model_t=RandomForestClassifier(n_estimators=100, min_samples_leaf=10,
                                           random_state=self.random_state),
            discrete_treatment=True,
            n_estimators=self.n_estimators,
            min_samples_leaf=self.min_samples_leaf,
            cv=self.n_folds,
            inference=True,
            random_state=self.random_state
        )
        logger.info("Fitting causal forest")
        self.model.fit(self._Y, self._T, X=self._X.values)
        return self

    def _require_fit(self):
        if self.model is None:
            raise RuntimeError("Model not fitted. Call fit() first.")

    def average_treatment_effect(self) -> CausalEstimate:
        """
        Doubly robust average treatment effect over the training population.

        Returns:
            CausalEstimate with a +/-1.96 SE interval
        """
        self._require_fit()
        ate = float(np.ravel(self.model.ate_)[0])
        se = float(np.ravel(self.model.ate_stderr_)[0])
        estimate = _normal_estimate(ate, se, 'causal_forest', n=len(self._Y))
        logger.info(f"Causal forest ATE: {estimate.coefficient:.4f} "
                    f"[{estimate.ci_lower:.4f}, {estimate.ci_upper:.4f}]")
        return estimate

    def feature_importances(self) -> pd.Series:
        """Split-based importance of each covariate for effect heterogeneity."""
        self._require_fit()
        importances = np.ravel(self.model.feature_importances_)[:len(self.covariates)]
        return pd.Series(importances, index=self.covariates, name='importance').sort_values(ascending=False)

    def subgroup_effect(self, conditions: Dict[str, Any]) -> SubgroupEstimate:
        """
        Average conditional effect over the records matching every condition.

        Args:
            conditions: Mapping of covariate name to its original (unencoded) value

        Returns:
            SubgroupEstimate; values are NaN when no record matches
        """
        self._require_fit()
        unknown = [col for col in conditions if col not in self.covariates]
        if unknown:
            raise ValueError(f"Unknown subgroup covariates: {unknown}")

        mask = np.ones(len(self._frame), dtype=bool)
        for col, value in conditions.items():
            mask &= (self._frame[col] == value).values

        n = int(mask.sum())
        n_treated = int(self._T[mask].sum())
        if n == 0:
            logger.warning(f"Empty subgroup {conditions}")
            return SubgroupEstimate(dict(conditions), 0, 0, 0, np.nan, np.nan, np.nan, np.nan)

        summary = self.model.effect_inference(self._X.values[mask]).population_summary()
        estimate = float(np.ravel(summary.mean_point)[0])
        se = float(np.ravel(summary.stderr_mean)[0])

        if n < 30:
            logger.warning(f"Subgroup {conditions} has only {n} records; estimate may be unstable")

        return SubgroupEstimate(
            conditions=dict(conditions),
            n=n,
            n_treated=n_treated,
            n_control=n - n_treated,
            estimate=estimate,
            std_error=se,
            ci_lower=estimate - Z_95 * se,
            ci_upper=estimate + Z_95 * se
        )

    def sensitivity_analysis(self, by: Sequence[str]) -> List[SubgroupEstimate]:
        """
        Subgroup estimates for every cross of the categories of the given covariates.

        Every estimate carries its subgroup size so small cells can be judged.
        """
        self._require_fit()
        levels = [sorted(self._frame[col].dropna().unique().tolist()) for col in by]

        results = []
        for combination in itertools.product(*levels):
            results.append(self.subgroup_effect(dict(zip(by, combination))))

        logger.info(f"Computed {len(results)} subgroup estimates over {list(by)}")
        return results


class DoubleMLEngine:
    """
    Double Machine Learning (Interactive Regression Model) estimate of the pandemic effect,
    used as a cross-check of the causal forest.
    """

    def __init__(self, n_folds: int = 5, random_state: int = 42):
        """
        Initialize the DoubleML engine.

        Args:
            n_folds: Number of folds for cross-fitting
            random_state: Random seed for reproducibility
        """
        self.n_folds = n_folds
        self.random_state = random_state
        self.models = {}
        self.results = {}

    def prepare_data(
        self,
        df: pd.DataFrame,
        covariates: Sequence[str],
        treatment_col: str = TREATMENT_COL,
        outcome_col: str = OUTCOME_COL
    ) -> DoubleMLData:
        """
        Prepare data for Double ML analysis.

        Categorical covariates are one-hot encoded.

        Args:
            df: Preprocessed dataset
            covariates: Covariate columns
            treatment_col: Name of treatment variable
            outcome_col: Name of outcome variable

        Returns:
            DoubleMLData object ready for analysis
        """
        frame = df.dropna(subset=list(covariates) + [outcome_col, treatment_col])
        X = pd.get_dummies(frame[list(covariates)].astype(str), drop_first=True, dtype=float)
        X.columns = [str(c).replace(' ', '_') for c in X.columns]

        data = X.copy()
        data[treatment_col] = frame[treatment_col].astype(int).values
        data[outcome_col] = frame[outcome_col].astype(float).values
        data = data.reset_index(drop=True)

        logger.info(f"Prepared data with {X.shape[1]} covariates, treatment: {treatment_col}, outcome: {outcome_col}")

        return DoubleMLData(
            data,
            y_col=outcome_col,
            d_cols=treatment_col,
            x_cols=list(X.columns)
        )

    def _get_base_learners(self) -> Dict[str, Dict[str, Any]]:
        """Get base machine learning learners for nuisance estimation."""
        return {
            'linear': {
                'ml_g': LinearRegression(),
                'ml_m': LogisticRegression(max_iter=1000)
            },
            'random_forest': {
                'ml_g': RandomForestRegressor(random_state=self.random_state),
                'ml_m': RandomForestClassifier(random_state=self.random_state)
            },
            'xgboost': {
                'ml_g': XGBRegressor(random_state=self.random_state, n_jobs=1),
                'ml_m': XGBClassifier(random_state=self.random_state, objective="binary:logistic",
                                      eval_metric="logloss", n_jobs=1)
            }
        }

    def _get_hyperparameter_grids(self) -> Dict[str, Dict[str, Any]]:
        """Get hyperparameter grids for model tuning."""
        return {
            'random_forest': {
                'ml_g': {
                    'n_estimators': [100, 300],
                    'max_depth': [6, 10],
                    'min_samples_leaf': [5, 10]
                },
                'ml_m': {
                    'n_estimators': [100, 300],
                    'max_depth': [6, 10],
                    'min_samples_leaf': [5, 10]
                }
            },
            'xgboost': {
                'ml_g': {
                    'n_estimators': [100, 300],
                    'max_depth': [3, 6],
                    'learning_rate': [0.01, 0.1]
                },
                'ml_m': {
                    'n_estimators': [100, 300],
                    'max_depth': [3, 6],
                    'learning_rate': [0.01, 0.1]
                }
            }
        }

    def _fit_irm(self, dml_data: DoubleMLData, ml_g, ml_m, method: str,
                 param_grid: Optional[Dict[str, Any]] = None) -> CausalEstimate:
        dml_model = dml.DoubleMLIRM(
            dml_data,
            ml_g=ml_g,
            ml_m=ml_m,
            n_folds=self.n_folds
        )

        if param_grid is not None:
            logger.info(f"Tuning hyperparameters for {method}")
            dml_model.tune(param_grid, search_mode='grid_search')

        dml_model.fit(store_predictions=True)
        self.models[method] = dml_model

        summary = dml_model.summary
        return CausalEstimate(
            coefficient=float(summary.iloc[0]['coef']),
            std_error=float(summary.iloc[0]['std err']),
            ci_lower=float(summary.iloc[0]['2.5 %']),
            ci_upper=float(summary.iloc[0]['97.5 %']),
            p_value=float(summary.iloc[0]['P>|t|']),
            method=method,
            n=int(dml_data.n_obs)
        )

    def estimate_treatment_effects(
        self,
        dml_data: DoubleMLData,
        methods: Optional[List[str]] = None,
        tune_hyperparameters: bool = False
    ) -> Dict[str, CausalEstimate]:
        """
        Estimate treatment effects using multiple nuisance learners.

        Args:
            dml_data: Prepared DoubleML data
            methods: Learner names. If None, uses all available learners
            tune_hyperparameters: Whether to grid-search the tunable learners

        Returns:
            Dictionary mapping method names to causal estimates
        """
        learners = self._get_base_learners()
        if methods is None:
            methods = list(learners)
        param_grids = self._get_hyperparameter_grids()

        estimates = {}
        for method in methods:
            if method not in learners:
                raise ValueError(f"Unknown method '{method}'. Choose from {list(learners)}")
            logger.info(f"Estimating treatment effects using {method}")

            grid = param_grids.get(method) if tune_hyperparameters else None
            estimates[method] = self._fit_irm(
                dml_data, learners[method]['ml_g'], learners[method]['ml_m'], method, grid
            )

            logger.info(f"{method} - Coefficient: {estimates[method].coefficient:.4f}, "
                        f"P-value: {estimates[method].p_value:.4f}")

        self.results.update(estimates)
        return estimates

    def evaluate_learner_performance(self) -> Dict[str, Dict[str, float]]:
        """
        Evaluate the nuisance learners by out-of-fold RMSE.

        Returns:
            Dictionary with performance metrics for each method
        """
        performance = {}

        for method, model in self.models.items():
            try:
                metrics = model.evaluate_learners()
                performance[method] = {
                    'ml_g0_rmse': float(np.ravel(metrics['ml_g0'])[0]),
                    'ml_g1_rmse': float(np.ravel(metrics['ml_g1'])[0]),
                    'ml_m_rmse': float(np.ravel(metrics['ml_m'])[0])
                }
            except (KeyError, ValueError, AttributeError) as e:
                logger.warning(f"Could not evaluate learners for {method}: {e}")
                performance[method] = {'error': str(e)}

        return performance

    def run_placebo_test(
        self,
        df: pd.DataFrame,
        covariates: Sequence[str],
        treatment_col: str = TREATMENT_COL,
        outcome_col: str = OUTCOME_COL
    ) -> CausalEstimate:
        """
        Placebo test: re-estimate with randomly permuted period labels.

        The permuted treatment carries no information about the outcome, so its
        estimate should not be significant.

        Args:
            df: Preprocessed dataset
            covariates: Covariate columns

        Returns:
            Causal estimate for the placebo treatment
        """
        logger.info("Running placebo test with permuted treatment labels")

        rng = np.random.default_rng(self.random_state)
        placebo_df = df.copy()
        placebo_df['placebo_treatment'] = rng.permutation(placebo_df[treatment_col].values)

        placebo_data = self.prepare_data(
            placebo_df, covariates,
            treatment_col='placebo_treatment',
            outcome_col=outcome_col
        )

        return self._fit_irm(
            placebo_data,
            LinearRegression(),
            LogisticRegression(max_iter=1000),
            'placebo_test'
        )
