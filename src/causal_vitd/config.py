"""
Analysis configuration for the Vitamin D pandemic study.
"""

from dataclasses import dataclass, replace
from datetime import date
from typing import Optional, Tuple


# Raw measurement table columns
GENDER_COL = 'gender'
TEST_CODE_COL = 'test_code'
AGE_CODE_COL = 'age_code'
YEAR_COL = 'year'
MONTH_COL = 'month'
DATE_COL = 'test_date'
VALUE_COL = 'value'
VALUE_TEXT_COL = 'value_text'
DIAGNOSIS_COL = 'diagnosis_code'

REQUIRED_COLUMNS = [
    GENDER_COL, TEST_CODE_COL, AGE_CODE_COL, YEAR_COL, MONTH_COL,
    DATE_COL, VALUE_COL, VALUE_TEXT_COL, DIAGNOSIS_COL
]

# Daily stringency table columns (OxCGRT export)
STRINGENCY_DATE_COL = 'Date'
STRINGENCY_INDEX_COL = 'StringencyIndex'

# Derived columns
PERIOD_COL = 'period'
TREATMENT_COL = 'treatment'
OUTCOME_COL = 'value_resolved'
DEFICIENT_COL = 'deficient'

PERIOD_BEFORE = 'before'
PERIOD_DURING = 'during'


@dataclass(frozen=True)
class AnalysisConfig:
    """Every constant the pipeline depends on, passed explicitly to each stage."""
    biomarker_code: str = 'VITD'
    excluded_diagnoses: Tuple[str, ...] = ('E55',)
    allowed_genders: Tuple[str, ...] = ('M', 'F')
    drop_unknown_age: bool = True
    deficiency_threshold: float = 20.0

    # Inclusive calendar windows
    before_window: Tuple[date, date] = (date(2019, 3, 11), date(2020, 3, 10))
    during_window: Tuple[date, date] = (date(2020, 3, 11), date(2021, 3, 10))

    matching_covariates: Tuple[str, ...] = ('age_bracket', 'gender', 'month')
    exact_match_columns: Tuple[str, ...] = ('age_bracket', 'gender')
    caliper: Optional[float] = 0.05

    n_bootstrap: int = 1000
    bootstrap_fraction: float = 0.5
    random_state: int = 42

    def __post_init__(self):
        if self.before_window[0] > self.before_window[1]:
            raise ValueError("before_window start must not be after its end")
        if self.during_window[0] > self.during_window[1]:
            raise ValueError("during_window start must not be after its end")
        if self.before_window[1] >= self.during_window[0] and self.during_window[1] >= self.before_window[0]:
            raise ValueError("before_window and during_window must not overlap")
        if not 0 < self.bootstrap_fraction <= 1:
            raise ValueError("bootstrap_fraction must be in (0, 1]")
        if self.caliper is not None and self.caliper <= 0:
            raise ValueError("caliper must be positive or None")

    def with_overrides(self, **kwargs) -> 'AnalysisConfig':
        """Return a copy of the configuration with some fields replaced."""
        return replace(self, **kwargs)


DEFAULT_CONFIG = AnalysisConfig()
