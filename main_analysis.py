"""
Main analysis script for the impact of the COVID-19 pandemic on Vitamin D levels.

This script runs the full pipeline: ingestion and filtering, cohort labeling, stringency
enrichment, descriptive statistics, propensity-score matching, bootstrap inference over
repeated matched samples and causal forest estimation of the average treatment effect.
"""

import sys
from pathlib import Path
import logging

# Add src to path for imports
sys.path.append(str(Path(__file__).parent / "src"))

from causal_vitd.config import AnalysisConfig, TREATMENT_COL, OUTCOME_COL
from causal_vitd.data.loader import VitaminDDataLoader
from causal_vitd.data.preprocessor import VitaminDPreprocessor
from causal_vitd.stats.descriptive import (
    compare_periods, deficiency_table, group_means, monthly_trend, stringency_association
)
from causal_vitd.models.matching import PropensityMatcher
from causal_vitd.models.bootstrap import BootstrapRunner
from causal_vitd.models.causal_models import CausalForestEngine, DoubleMLEngine
from causal_vitd.visualization.plots import VitaminDVisualization
from causal_vitd.utils.helpers import (
    setup_logging, save_results, validate_data_quality, format_results_table,
    format_subgroup_table, ensure_directory
)


MEASUREMENTS_PATH = Path("data/raw/vitamin_d_measurements.csv")
STRINGENCY_PATH = Path("data/raw/stringency_index.csv")

CAUSAL_COVARIATES = ['age_bracket', 'gender', 'month']


def main():
    """Run the complete Vitamin D analysis pipeline."""

    # Setup
    setup_logging(level="INFO")
    logger = logging.getLogger(__name__)

    figures_dir = ensure_directory("figures")
    results_dir = ensure_directory("results")
    data_dir = ensure_directory("data/processed")

    config = AnalysisConfig()
    logger.info("Starting analysis of the pandemic's impact on Vitamin D levels")

    # Step 1: Load, filter and label
    logger.info("Step 1: Loading and preprocessing data")

    loader = VitaminDDataLoader()
    raw_data = loader.load_measurements(MEASUREMENTS_PATH)
    stringency = loader.load_stringency(STRINGENCY_PATH)
    loader.describe_dataset()

    quality_metrics = validate_data_quality(raw_data)
    logger.info(f"Data quality: {quality_metrics['n_observations']} observations, "
                f"{quality_metrics['unparseable_dates']} unparseable dates")

    preprocessor = VitaminDPreprocessor(config)
    processed_data, filter_report = preprocessor.preprocess(raw_data, stringency)
    processed_data.to_csv(data_dir / "processed_vitamin_d.csv", index=False)
    logger.info("Processed data saved")

    # Step 2: Descriptive statistics
    logger.info("Step 2: Descriptive statistics")

    period_comparison = compare_periods(processed_data)
    deficiency_by_age = deficiency_table(processed_data, by='age_bracket')
    deficiency_by_gender = deficiency_table(processed_data, by='gender', include_total=False)
    deficiency_by_season = deficiency_table(processed_data, by='season', include_total=False)
    seasonal_means = group_means(processed_data, ['season', 'period'])
    trend = monthly_trend(processed_data)
    stringency_stats = stringency_association(processed_data)

    visualizer = VitaminDVisualization()
    visualizer.plot_data_overview(processed_data, save_path=figures_dir / "data_overview.png")
    visualizer.plot_monthly_trend(trend, save_path=figures_dir / "monthly_trend.png")
    visualizer.plot_deficiency_rates(deficiency_by_age, 'age_bracket',
                                     save_path=figures_dir / "deficiency_by_age.png")
    visualizer.plot_seasonal_means(seasonal_means, save_path=figures_dir / "seasonal_means.png")
    visualizer.plot_stringency_timeseries(processed_data, stringency,
                                          save_path=figures_dir / "stringency_timeseries.html")
    visualizer.plot_causal_dag(save_path=figures_dir / "causal_dag.png")

    # Step 3: Propensity-score matching on the full dataset
    logger.info("Step 3: Propensity-score matching")

    matcher = PropensityMatcher(config)
    match_result = matcher.match(processed_data)
    balance = matcher.balance_report(processed_data, match_result)
    matched_comparison = compare_periods(match_result.matched)
    logger.info(f"Matching kept {match_result.n_pairs} pairs, lost {match_result.n_lost} records "
                f"({match_result.loss_rate:.1%})")

    # Step 4: Bootstrap inference
    logger.info("Step 4: Bootstrap inference over matched samples")

    bootstrap_results = {}
    for statistic in ['mean_difference', 'ols']:
        runner = BootstrapRunner(config, statistic=statistic)
        bootstrap_results[statistic] = runner.run(processed_data)

    visualizer.plot_bootstrap_distribution(
        bootstrap_results['mean_difference'],
        save_path=figures_dir / "bootstrap_mean_difference.png"
    )

    # Step 5: Causal forest
    logger.info("Step 5: Causal forest estimation")

    forest = CausalForestEngine(random_state=config.random_state)
    forest.prepare_data(processed_data, CAUSAL_COVARIATES)
    forest.fit()
    forest_ate = forest.average_treatment_effect()
    importances = forest.feature_importances()
    subgroups = forest.sensitivity_analysis(['age_bracket', 'gender'])

    visualizer.plot_feature_importance(importances, save_path=figures_dir / "feature_importance.png")
    visualizer.plot_forest(subgroups, overall=forest_ate, save_path=figures_dir / "forest_plot.png")

    # Step 6: DoubleML cross-check and placebo test
    logger.info("Step 6: DoubleML cross-check and placebo test")

    dml_engine = DoubleMLEngine(n_folds=5, random_state=config.random_state)
    dml_data = dml_engine.prepare_data(processed_data, CAUSAL_COVARIATES)
    treatment_effects = dml_engine.estimate_treatment_effects(
        dml_data,
        methods=['linear', 'random_forest', 'xgboost'],
        tune_hyperparameters=True
    )
    model_performance = dml_engine.evaluate_learner_performance()
    placebo_result = dml_engine.run_placebo_test(processed_data, CAUSAL_COVARIATES)

    all_effects = dict(treatment_effects)
    all_effects['causal_forest'] = forest_ate
    visualizer.plot_treatment_effects(all_effects, save_path=figures_dir / "treatment_effects.png")

    # Step 7: Results summary
    logger.info("Step 7: Generating results summary")

    results = {
        'filter_report': filter_report.to_dict(),
        'data_summary': {
            'n_observations': len(processed_data),
            'n_before': int((processed_data[TREATMENT_COL] == 0).sum()),
            'n_during': int((processed_data[TREATMENT_COL] == 1).sum()),
            'mean_vitamin_d': processed_data[OUTCOME_COL].mean(),
            'deficiency_rate': processed_data['deficient'].mean()
        },
        'period_comparison': period_comparison,
        'deficiency_by_age': deficiency_by_age,
        'deficiency_by_gender': deficiency_by_gender,
        'deficiency_by_season': deficiency_by_season,
        'stringency_association': stringency_stats,
        'matching': match_result.summary(),
        'matched_comparison': matched_comparison,
        'balance': balance,
        'bootstrap': {name: res.summary() for name, res in bootstrap_results.items()},
        'causal_forest': {
            'ate': forest_ate,
            'feature_importances': importances,
            'subgroups': [
                {**est.conditions, 'n': est.n, 'n_treated': est.n_treated, 'n_control': est.n_control,
                 'estimate': est.estimate, 'ci_lower': est.ci_lower, 'ci_upper': est.ci_upper}
                for est in subgroups
            ]
        },
        'treatment_effects': treatment_effects,
        'model_performance': model_performance,
        'placebo_test': placebo_result
    }

    save_results(results, results_dir / "vitamin_d_analysis_results.json")

    # Print summary
    print("\n" + "=" * 80)
    print("VITAMIN D PANDEMIC ANALYSIS RESULTS")
    print("=" * 80)

    print(f"\nRecords kept: {filter_report.n_output:,} of {filter_report.n_input:,}")
    print(f"Mean Vitamin D before: {period_comparison.mean_before:.2f}, "
          f"during: {period_comparison.mean_during:.2f} "
          f"(difference {period_comparison.estimate:.2f}, p={period_comparison.p_value:.4f})")

    print("\nDeficiency by age bracket:")
    print(deficiency_by_age.to_string(index=False))

    print(f"\nMatching: {match_result.n_pairs:,} pairs, "
          f"{match_result.n_lost:,} records lost ({match_result.loss_rate:.1%})")
    print(f"Matched difference: {matched_comparison.estimate:.2f} (p={matched_comparison.p_value:.4f})")

    for name, res in bootstrap_results.items():
        print(f"Bootstrap {name}: {res.point_estimate:.3f} "
              f"[{res.ci_lower:.3f}, {res.ci_upper:.3f}] "
              f"({res.n_succeeded} succeeded, {res.n_failed} failed)")

    print(format_results_table(all_effects, "Pandemic Effect Estimates"))
    print(format_subgroup_table(subgroups))

    print(f"\nPlacebo Test (permuted periods):")
    print(f"Coefficient: {placebo_result.coefficient:.4f}, P-value: {placebo_result.p_value:.4f}")

    logger.info("Analysis complete! Check the figures/ and results/ directories for outputs.")
    print(f"\nAnalysis complete! Outputs saved to:")
    print(f"- Figures: {figures_dir}")
    print(f"- Results: {results_dir}")


if __name__ == "__main__":
    main()
