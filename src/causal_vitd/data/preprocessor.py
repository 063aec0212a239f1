"""
Data preprocessing module: filtering, cohort labeling and stringency enrichment.
"""

import re
import pandas as pd
import numpy as np
from dataclasses import dataclass, asdict
from datetime import date, datetime
from typing import Dict, List, Tuple, Optional
import logging

from ..config import (
    AnalysisConfig, DEFAULT_CONFIG, GENDER_COL, TEST_CODE_COL, AGE_CODE_COL, MONTH_COL,
    DATE_COL, VALUE_COL, VALUE_TEXT_COL, DIAGNOSIS_COL, PERIOD_COL, TREATMENT_COL,
    OUTCOME_COL, DEFICIENT_COL, PERIOD_BEFORE, PERIOD_DURING
)


logger = logging.getLogger(__name__)


# Source age categories collapsed to three brackets
AGE_BRACKET_MAPPING = {
    '18-29': '18-39', '30-39': '18-39',
    '40-49': '40-64', '50-59': '40-64', '60-64': '40-64',
    '65-74': '65+', '75-84': '65+', '85+': '65+'
}
AGE_BRACKETS = ['18-39', '40-64', '65+']
UNKNOWN_AGE = 'Unknown'

SEASON_MAPPING = {
    12: 'Winter', 1: 'Winter', 2: 'Winter',
    3: 'Spring', 4: 'Spring', 5: 'Spring',
    6: 'Summer', 7: 'Summer', 8: 'Summer',
    9: 'Autumn', 10: 'Autumn', 11: 'Autumn'
}
SEASONS = ['Winter', 'Spring', 'Summer', 'Autumn']

_NON_NUMERIC = re.compile(r'[^0-9.]')


def _to_date(value) -> Optional[date]:
    if value is None or value is pd.NaT:
        return None
    if isinstance(value, float) and np.isnan(value):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return pd.Timestamp(value).date()


def assign_period(test_date, config: AnalysisConfig = DEFAULT_CONFIG) -> Optional[str]:
    """
    Map a test date to its calendar window.

    Args:
        test_date: Date of the measurement (date, datetime, Timestamp or ISO string)
        config: Analysis configuration holding the two inclusive windows

    Returns:
        'before', 'during', or None when the date falls outside both windows
    """
    day = _to_date(test_date)
    if day is None:
        return None
    if config.before_window[0] <= day <= config.before_window[1]:
        return PERIOD_BEFORE
    if config.during_window[0] <= day <= config.during_window[1]:
        return PERIOD_DURING
    return None


def assign_periods(dates: pd.Series, config: AnalysisConfig = DEFAULT_CONFIG) -> pd.Series:
    """Vectorized assign_period over a datetime Series; unassigned rows are None."""
    days = pd.to_datetime(dates, format='mixed', errors='coerce').dt.normalize()
    before = days.between(pd.Timestamp(config.before_window[0]), pd.Timestamp(config.before_window[1]))
    during = days.between(pd.Timestamp(config.during_window[0]), pd.Timestamp(config.during_window[1]))
    periods = pd.Series(None, index=dates.index, dtype=object)
    periods[before] = PERIOD_BEFORE
    periods[during] = PERIOD_DURING
    return periods


def assign_season(month: int) -> str:
    """Map a calendar month (1-12) to its meteorological season."""
    try:
        return SEASON_MAPPING[int(month)]
    except (KeyError, ValueError, TypeError):
        raise ValueError(f"Invalid month: {month!r}")


def map_age_bracket(code) -> str:
    """Collapse a source age category into a coarse bracket, 'Unknown' if unmapped."""
    if code is None or (not isinstance(code, str) and pd.isna(code)):
        return UNKNOWN_AGE
    return AGE_BRACKET_MAPPING.get(str(code).strip(), UNKNOWN_AGE)


def parse_censored_value(text) -> float:
    """
    Resolve a possibly censored result string to a number.

    Everything but digits and the decimal point is stripped, so '<20' becomes 20.0.
    Strings that do not leave a valid number behind resolve to NaN.
    """
    if text is None or (not isinstance(text, str) and pd.isna(text)):
        return np.nan
    cleaned = _NON_NUMERIC.sub('', str(text).replace(',', '.'))
    try:
        return float(cleaned)
    except ValueError:
        return np.nan


def resolve_value(numeric, text) -> float:
    """Prefer the numeric result, fall back to the parsed result string."""
    if numeric is not None and not pd.isna(numeric):
        try:
            return float(numeric)
        except (TypeError, ValueError):
            pass
    return parse_censored_value(text)


def classify_deficiency(value, threshold: float) -> float:
    """
    Classify a resolved value against the deficiency threshold.

    Returns:
        1.0 if value < threshold, 0.0 otherwise, NaN if the value is missing
    """
    if value is None or pd.isna(value):
        return np.nan
    return 1.0 if float(value) < threshold else 0.0


@dataclass
class FilterReport:
    """Counts of records dropped at each preprocessing step."""
    n_input: int = 0
    n_other_biomarker: int = 0
    n_excluded_diagnosis: int = 0
    n_disallowed_gender: int = 0
    n_unknown_age: int = 0
    n_outside_windows: int = 0
    n_missing_value: int = 0
    n_output: int = 0

    @property
    def n_dropped(self) -> int:
        return self.n_input - self.n_output

    def to_dict(self) -> Dict[str, int]:
        report = asdict(self)
        report['n_dropped'] = self.n_dropped
        return report


class VitaminDPreprocessor:
    """Preprocesses Vitamin D measurements for period comparison and causal analysis."""

    def __init__(self, config: AnalysisConfig = DEFAULT_CONFIG):
        """
        Initialize the preprocessor.

        Args:
            config: Analysis configuration (biomarker code, thresholds, windows, policies)
        """
        self.config = config

    def filter_records(self, df: pd.DataFrame, report: Optional[FilterReport] = None
                       ) -> Tuple[pd.DataFrame, FilterReport]:
        """
        Restrict to the configured biomarker and drop disallowed categories.

        Args:
            df: Raw measurements
            report: Report to update, a new one is created if None

        Returns:
            Filtered copy of the data and the filter report
        """
        if report is None:
            report = FilterReport(n_input=len(df))

        filtered = df[df[TEST_CODE_COL].astype(str).str.strip() == self.config.biomarker_code].copy()
        report.n_other_biomarker = len(df) - len(filtered)

        diagnosis = filtered[DIAGNOSIS_COL].fillna('').astype(str).str.strip()
        excluded = diagnosis.apply(
            lambda code: any(code.startswith(prefix) for prefix in self.config.excluded_diagnoses)
        )
        report.n_excluded_diagnosis = int(excluded.sum())
        filtered = filtered[~excluded]

        gender = filtered[GENDER_COL].astype(str).str.strip().str.upper()
        allowed = gender.isin(self.config.allowed_genders)
        report.n_disallowed_gender = int((~allowed).sum())
        filtered = filtered[allowed].copy()
        filtered[GENDER_COL] = gender[allowed]

        filtered['age_bracket'] = filtered[AGE_CODE_COL].apply(map_age_bracket)
        if self.config.drop_unknown_age:
            unknown = filtered['age_bracket'] == UNKNOWN_AGE
            report.n_unknown_age = int(unknown.sum())
            filtered = filtered[~unknown]

        logger.info(
            f"Filtering: {report.n_other_biomarker} other biomarkers, "
            f"{report.n_excluded_diagnosis} excluded diagnoses, "
            f"{report.n_disallowed_gender} disallowed genders, "
            f"{report.n_unknown_age} unknown age brackets dropped"
        )
        return filtered, report

    def label_cohorts(self, df: pd.DataFrame, report: Optional[FilterReport] = None
                      ) -> Tuple[pd.DataFrame, FilterReport]:
        """
        Derive season, period, treatment indicator, resolved value and deficiency flag.

        Records outside both calendar windows are dropped.
        """
        if report is None:
            report = FilterReport(n_input=len(df))

        labeled = df.copy()
        if 'age_bracket' not in labeled.columns:
            labeled['age_bracket'] = labeled[AGE_CODE_COL].apply(map_age_bracket)

        labeled[PERIOD_COL] = assign_periods(labeled[DATE_COL], self.config)
        outside = labeled[PERIOD_COL].isna()
        report.n_outside_windows = int(outside.sum())
        labeled = labeled[~outside].copy()

        test_dates = pd.to_datetime(labeled[DATE_COL], format='mixed')
        labeled[MONTH_COL] = pd.to_numeric(labeled[MONTH_COL], errors='coerce').fillna(test_dates.dt.month).astype(int)
        labeled['season'] = labeled[MONTH_COL].apply(assign_season)
        labeled[TREATMENT_COL] = (labeled[PERIOD_COL] == PERIOD_DURING).astype(int)

        labeled[OUTCOME_COL] = [
            resolve_value(numeric, text)
            for numeric, text in zip(labeled[VALUE_COL], labeled[VALUE_TEXT_COL])
        ]
        labeled[DEFICIENT_COL] = labeled[OUTCOME_COL].apply(
            classify_deficiency, threshold=self.config.deficiency_threshold
        )
        report.n_missing_value = int(labeled[OUTCOME_COL].isna().sum())
        if report.n_missing_value:
            logger.warning(f"{report.n_missing_value} records have no parseable Vitamin D value")

        logger.info(f"Labeling: {report.n_outside_windows} records outside both windows dropped, "
                    f"{(labeled[PERIOD_COL] == PERIOD_BEFORE).sum()} before, "
                    f"{(labeled[PERIOD_COL] == PERIOD_DURING).sum()} during")
        return labeled, report

    def add_stringency(self, df: pd.DataFrame, stringency: pd.DataFrame) -> pd.DataFrame:
        """
        Join the daily stringency index onto pandemic-period records by exact date.

        Args:
            df: Labeled measurements
            stringency: Table with one row per 'date' and a 'stringency_index' column

        Returns:
            Copy of df with a 'stringency_index' column (NaN outside the pandemic period)
        """
        enriched = df.copy()
        lookup = stringency.drop_duplicates(subset='date').set_index('date')['stringency_index']

        test_day = pd.to_datetime(enriched[DATE_COL], format='mixed').dt.normalize()
        enriched['stringency_index'] = test_day.map(lookup)
        enriched.loc[enriched[PERIOD_COL] != PERIOD_DURING, 'stringency_index'] = np.nan

        during = enriched[PERIOD_COL] == PERIOD_DURING
        n_unmatched = int(enriched.loc[during, 'stringency_index'].isna().sum())
        if n_unmatched:
            logger.warning(f"{n_unmatched} pandemic-period records have no stringency score for their date")
        return enriched

    def preprocess(self, df: pd.DataFrame, stringency: Optional[pd.DataFrame] = None
                   ) -> Tuple[pd.DataFrame, FilterReport]:
        """
        Apply the full preprocessing chain.

        Args:
            df: Raw measurements (not modified)
            stringency: Optional daily stringency table to join onto pandemic records

        Returns:
            Preprocessed dataset and the report of dropped records
        """
        logger.info("Starting data preprocessing")
        report = FilterReport(n_input=len(df))

        processed, report = self.filter_records(df, report)
        processed, report = self.label_cohorts(processed, report)

        if stringency is not None:
            processed = self.add_stringency(processed, stringency)

        processed = processed.reset_index(drop=True)
        report.n_output = len(processed)

        logger.info(f"Preprocessing complete. {report.n_output} of {report.n_input} records kept")
        return processed, report

    def get_feature_groups(self, df: pd.DataFrame) -> Dict[str, List[str]]:
        """
        Categorize columns into groups for analysis.

        Args:
            df: Preprocessed dataset

        Returns:
            Dictionary mapping feature group names to column lists
        """
        demographics = [col for col in ['gender', 'age_bracket'] if col in df.columns]
        timing = [col for col in [MONTH_COL, 'season'] if col in df.columns]
        policy = [col for col in ['stringency_index'] if col in df.columns]

        return {
            'demographics': demographics,
            'timing': timing,
            'policy': policy,
            'treatment': [TREATMENT_COL],
            'outcome': [OUTCOME_COL, DEFICIENT_COL]
        }


def encode_covariates(df: pd.DataFrame, columns: List[str]
                      ) -> Tuple[pd.DataFrame, Dict[str, List]]:
    """
    Integer-encode categorical covariates.

    Numeric columns are kept as they are; every other column is replaced by the code of
    its value in the sorted category list.

    Returns:
        Encoded copy of the covariate columns and the category list per encoded column
    """
    encoded = pd.DataFrame(index=df.index)
    categories = {}

    for col in columns:
        if pd.api.types.is_numeric_dtype(df[col]):
            encoded[col] = df[col]
        else:
            cats = sorted(df[col].dropna().unique().tolist())
            encoded[col] = pd.Categorical(df[col], categories=cats).codes
            categories[col] = cats

    return encoded, categories
