"""
Utility functions for the Vitamin D analysis.
"""

import pandas as pd
import numpy as np
import logging
from dataclasses import is_dataclass, asdict
from pathlib import Path
from typing import Dict, List, Any, Optional
import json
import pickle


logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """
    Set up logging configuration.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file to write logs to
    """
    log_level = getattr(logging, level.upper())

    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


def _to_serializable(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return _to_serializable(asdict(value))
    if isinstance(value, dict):
        return {str(k): _to_serializable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_serializable(v) for v in value]
    if isinstance(value, pd.DataFrame):
        return _to_serializable(value.to_dict(orient='records'))
    if isinstance(value, pd.Series):
        return _to_serializable(value.to_dict())
    if isinstance(value, np.ndarray):
        return [_to_serializable(v) for v in value.tolist()]
    if isinstance(value, (np.integer,)):
        return int(value)
    if isinstance(value, (np.floating, float)):
        return None if np.isnan(value) else float(value)
    if isinstance(value, np.bool_):
        return bool(value)
    return value


def save_results(results: Dict[str, Any], filepath: str) -> None:
    """
    Save analysis results to file.

    Args:
        results: Dictionary containing analysis results
        filepath: Path to save results (.json or .pkl)
    """
    filepath = Path(filepath)

    if filepath.suffix == '.json':
        serializable_results = {}
        for key, value in results.items():
            value = _to_serializable(value)
            try:
                json.dumps(value)
                serializable_results[key] = value
            except (TypeError, ValueError):
                serializable_results[key] = str(value)

        with open(filepath, 'w') as f:
            json.dump(serializable_results, f, indent=2)

    elif filepath.suffix == '.pkl':
        with open(filepath, 'wb') as f:
            pickle.dump(results, f)

    else:
        raise ValueError(f"Unsupported file format: {filepath.suffix}")

    logger.info(f"Results saved to {filepath}")


def load_results(filepath: str) -> Dict[str, Any]:
    """
    Load analysis results from file.

    Args:
        filepath: Path to results file

    Returns:
        Dictionary containing analysis results
    """
    filepath = Path(filepath)

    if filepath.suffix == '.json':
        with open(filepath, 'r') as f:
            results = json.load(f)

    elif filepath.suffix == '.pkl':
        with open(filepath, 'rb') as f:
            results = pickle.load(f)

    else:
        raise ValueError(f"Unsupported file format: {filepath.suffix}")

    logger.info(f"Results loaded from {filepath}")
    return results


def check_balance(df: pd.DataFrame, treatment_col: str, covariates: List[str]) -> pd.DataFrame:
    """
    Check covariate balance between treatment and control groups.

    Args:
        df: Dataset
        treatment_col: Name of treatment variable
        covariates: List of numeric covariate columns

    Returns:
        DataFrame with balance statistics
    """
    balance_stats = []

    for covariate in covariates:
        if covariate not in df.columns:
            continue

        treated = df[df[treatment_col] == 1][covariate]
        control = df[df[treatment_col] == 0][covariate]

        # Standardized mean difference
        if treated.std() + control.std() > 0:
            smd = (treated.mean() - control.mean()) / np.sqrt((treated.var() + control.var()) / 2)
        else:
            smd = 0

        balance_stats.append({
            'covariate': covariate,
            'treated_mean': treated.mean(),
            'control_mean': control.mean(),
            'treated_std': treated.std(),
            'control_std': control.std(),
            'standardized_mean_diff': smd
        })

    return pd.DataFrame(balance_stats, columns=[
        'covariate', 'treated_mean', 'control_mean', 'treated_std', 'control_std',
        'standardized_mean_diff'
    ])


def validate_data_quality(df: pd.DataFrame, value_col: str = 'value',
                          date_col: str = 'test_date') -> Dict[str, Any]:
    """
    Validate raw data quality and return quality metrics.

    Args:
        df: Raw measurement dataset
        value_col: Numeric result column
        date_col: Test date column

    Returns:
        Dictionary with data quality metrics
    """
    quality_metrics = {}

    quality_metrics['n_observations'] = len(df)
    quality_metrics['n_features'] = len(df.columns)

    missing_counts = df.isnull().sum()
    quality_metrics['missing_data'] = {
        'total_missing': int(missing_counts.sum()),
        'features_with_missing': int((missing_counts > 0).sum()),
        'max_missing_feature': missing_counts.idxmax() if missing_counts.sum() > 0 else None,
        'max_missing_count': int(missing_counts.max()) if len(missing_counts) else 0
    }

    quality_metrics['duplicates'] = int(df.duplicated().sum())

    if value_col in df.columns:
        values = pd.to_numeric(df[value_col], errors='coerce')
        Q1 = values.quantile(0.25)
        Q3 = values.quantile(0.75)
        IQR = Q3 - Q1
        outliers = ((values < Q1 - 1.5 * IQR) | (values > Q3 + 1.5 * IQR)).sum()
        quality_metrics['value_outliers'] = int(outliers)
        quality_metrics['negative_values'] = int((values < 0).sum())

    if date_col in df.columns:
        dates = pd.to_datetime(df[date_col], format='mixed', errors='coerce')
        quality_metrics['date_range'] = (str(dates.min()), str(dates.max()))
        quality_metrics['unparseable_dates'] = int(dates.isna().sum())

    return quality_metrics


def _join_row(cells: List[str], widths: List[int]) -> str:
    return " | ".join(f"{cell:>{width}}" for cell, width in zip(cells, widths))


def format_results_table(estimates: Dict[str, Any], title: str = "Treatment Effect Estimates") -> str:
    """
    Format results as a table for reporting.

    The method column is as wide as the longest method name.

    Args:
        estimates: Dictionary of causal estimates
        title: Title for the table

    Returns:
        Formatted table string
    """
    table_lines = [f"\n{title}", "=" * len(title)]

    headers = ["Method", "Coefficient", "Std Error", "95% CI", "P-value", "Significant"]
    rows = []
    for method, est in estimates.items():
        if hasattr(est, 'coefficient'):
            significance = "Yes" if est.is_significant else "No"
            rows.append([
                str(method),
                f"{est.coefficient:.4f}",
                f"{est.std_error:.4f}",
                f"[{est.ci_lower:.3f}, {est.ci_upper:.3f}]",
                f"{est.p_value:.4f}",
                significance
            ])

    widths = [max([12, len(headers[0])] + [len(row[0]) for row in rows])] + [12, 12, 18, 12, 12]
    table_lines.append(_join_row(headers, widths))
    table_lines.append("-" * (sum(widths) + 3 * (len(widths) - 1)))
    table_lines.extend(_join_row(row, widths) for row in rows)

    return "\n".join(table_lines)


def format_subgroup_table(subgroups: List[Any], title: str = "Subgroup Sensitivity Estimates") -> str:
    """
    Format subgroup estimates with their sample sizes.

    Args:
        subgroups: List of SubgroupEstimate objects
        title: Title for the table

    Returns:
        Formatted table string
    """
    table_lines = [f"\n{title}", "=" * len(title)]

    headers = ["Subgroup", "N", "N treated", "N control", "Estimate", "95% CI"]
    rows = [
        [
            est.label,
            str(est.n),
            str(est.n_treated),
            str(est.n_control),
            f"{est.estimate:.4f}",
            f"[{est.ci_lower:.3f}, {est.ci_upper:.3f}]"
        ]
        for est in subgroups
    ]

    widths = [max([16] + [len(row[0]) for row in rows]), 8, 10, 10, 10, 18]
    table_lines.append(_join_row(headers, widths))
    table_lines.append("-" * (sum(widths) + 3 * (len(widths) - 1)))
    table_lines.extend(_join_row(row, widths) for row in rows)

    return "\n".join(table_lines)


def ensure_directory(path: str) -> Path:
    """
    Ensure directory exists, create if it doesn't.

    Args:
        path: Directory path

    Returns:
        Path object
    """
    path_obj = Path(path)
    path_obj.mkdir(parents=True, exist_ok=True)
    return path_obj
