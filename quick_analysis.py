"""
Quick analysis script: descriptive statistics, one matching pass and the causal forest,
without bootstrap trials or DoubleML tuning.
"""

import sys
from pathlib import Path
import pandas as pd
import logging

# Add src to path for imports
sys.path.append(str(Path(__file__).parent / "src"))

from causal_vitd.config import AnalysisConfig
from causal_vitd.data.loader import VitaminDDataLoader
from causal_vitd.data.preprocessor import VitaminDPreprocessor
from causal_vitd.stats.descriptive import compare_periods, deficiency_table
from causal_vitd.models.matching import PropensityMatcher
from causal_vitd.models.causal_models import CausalForestEngine
from causal_vitd.visualization.plots import VitaminDVisualization
from causal_vitd.utils.helpers import (
    setup_logging, save_results, format_subgroup_table, ensure_directory
)


def main():
    """Run a quick analysis, reusing processed data when available."""

    setup_logging(level="INFO")
    logger = logging.getLogger(__name__)

    figures_dir = ensure_directory("figures")
    results_dir = ensure_directory("results")
    data_dir = ensure_directory("data/processed")

    config = AnalysisConfig()
    logger.info("Starting quick Vitamin D analysis")

    processed_data_path = data_dir / "processed_vitamin_d.csv"
    if processed_data_path.exists():
        logger.info("Loading existing processed data")
        processed_data = pd.read_csv(processed_data_path, parse_dates=['test_date'])
    else:
        logger.info("Processing data from scratch")
        loader = VitaminDDataLoader()
        raw_data = loader.load_measurements("data/raw/vitamin_d_measurements.csv")
        stringency = loader.load_stringency("data/raw/stringency_index.csv")

        preprocessor = VitaminDPreprocessor(config)
        processed_data, _ = preprocessor.preprocess(raw_data, stringency)
        processed_data.to_csv(processed_data_path, index=False)

    logger.info(f"Dataset shape: {processed_data.shape}")

    comparison = compare_periods(processed_data)
    logger.info(f"Unmatched difference (during - before): {comparison.estimate:.3f} "
                f"(p={comparison.p_value:.4g})")

    deficiency = deficiency_table(processed_data, by='age_bracket')
    logger.info("\n" + deficiency.to_string(index=False))

    match_result = PropensityMatcher(config).match(processed_data)
    matched_comparison = compare_periods(match_result.matched)
    logger.info(f"Matched difference: {matched_comparison.estimate:.3f} "
                f"(p={matched_comparison.p_value:.4g}); {match_result.loss_rate:.1%} of records lost")

    forest = CausalForestEngine(n_estimators=200, random_state=config.random_state)
    forest.prepare_data(processed_data, ['age_bracket', 'gender', 'month'])
    forest.fit()
    ate = forest.average_treatment_effect()
    logger.info(f"Causal forest ATE: {ate.coefficient:.3f} [{ate.ci_lower:.3f}, {ate.ci_upper:.3f}]")

    subgroups = forest.sensitivity_analysis(['age_bracket'])
    logger.info(format_subgroup_table(subgroups, "Effect by Age Bracket"))

    visualizer = VitaminDVisualization()
    try:
        visualizer.plot_forest(subgroups, overall=ate, save_path=figures_dir / "forest_plot.png")
    except (ValueError, RuntimeError) as e:
        logger.error(f"Error creating forest plot: {e}")

    results = {
        'period_comparison': comparison,
        'matched_comparison': matched_comparison,
        'matching': match_result.summary(),
        'causal_forest_ate': ate,
        'dataset_info': {
            'n_observations': len(processed_data),
            'treatment_rate': processed_data['treatment'].mean()
        }
    }
    save_results(results, results_dir / "quick_analysis_results.json")

    logger.info("Quick analysis completed!")


if __name__ == "__main__":
    main()
