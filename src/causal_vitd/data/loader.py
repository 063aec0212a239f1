"""
Data loading module for laboratory Vitamin D measurements and the daily stringency index.
"""

import pandas as pd
from pathlib import Path
from typing import Optional, Union
import logging

from ..config import (
    REQUIRED_COLUMNS, DATE_COL, GENDER_COL, AGE_CODE_COL, VALUE_COL, VALUE_TEXT_COL,
    TEST_CODE_COL, DIAGNOSIS_COL, STRINGENCY_DATE_COL, STRINGENCY_INDEX_COL
)


logger = logging.getLogger(__name__)


def _check_columns(df: pd.DataFrame, required, source: str) -> None:
    missing = [col for col in required if col not in df.columns]
    if missing:
        raise ValueError(f"{source} is missing required columns: {missing}")


class VitaminDDataLoader:
    """Loads the laboratory measurement export and the daily policy-stringency table."""

    def __init__(self, date_format: Optional[str] = None):
        """
        Initialize the data loader.

        Args:
            date_format: Explicit strptime format for the test date column. If None,
                every entry is parsed on its own, so date-only and date-time strings can mix.
        """
        self.date_format = date_format
        self._raw_data = None
        self._stringency = None

    def load_measurements(self, path: Union[str, Path]) -> pd.DataFrame:
        """
        Load the measurement dataset.

        Args:
            path: CSV file with one row per laboratory measurement

        Returns:
            Raw measurements with a parsed test date
        """
        logger.info(f"Loading measurements from {path}")

        # Exports come with either ';' or ',' delimiters
        df = pd.read_csv(
            path, sep=None, engine='python',
            dtype={GENDER_COL: str, TEST_CODE_COL: str, AGE_CODE_COL: str,
                   VALUE_TEXT_COL: str, DIAGNOSIS_COL: str}
        )
        _check_columns(df, REQUIRED_COLUMNS, str(path))

        # Exports mix date-only and date-time strings; parse each entry on its own
        df[DATE_COL] = pd.to_datetime(df[DATE_COL], format=self.date_format or 'mixed', errors='coerce')
        n_bad_dates = int(df[DATE_COL].isna().sum())
        if n_bad_dates:
            logger.warning(f"{n_bad_dates} records have an unparseable test date")

        df[VALUE_COL] = pd.to_numeric(df[VALUE_COL], errors='coerce')

        self._raw_data = df
        logger.info(f"Loaded dataset with {len(df)} observations and {len(df.columns)} columns")

        return df

    def load_stringency(self, path: Union[str, Path]) -> pd.DataFrame:
        """
        Load the daily stringency index.

        The source table may carry several rows per date (one per sub-national region);
        these are averaged so that every date maps to exactly one score.

        Args:
            path: CSV file with a YYYYMMDD integer date and a stringency score

        Returns:
            DataFrame with 'date' and 'stringency_index' columns, one row per date
        """
        logger.info(f"Loading stringency index from {path}")

        raw = pd.read_csv(path, usecols=lambda c: c in (STRINGENCY_DATE_COL, STRINGENCY_INDEX_COL))
        _check_columns(raw, [STRINGENCY_DATE_COL, STRINGENCY_INDEX_COL], str(path))

        stringency = self.aggregate_stringency(raw)
        self._stringency = stringency
        logger.info(f"Loaded stringency index for {len(stringency)} dates "
                    f"(from {len(raw)} raw rows)")
        return stringency

    @staticmethod
    def aggregate_stringency(raw: pd.DataFrame) -> pd.DataFrame:
        """Average duplicated dates and convert YYYYMMDD integers to timestamps."""
        stringency = raw[[STRINGENCY_DATE_COL, STRINGENCY_INDEX_COL]].copy()
        stringency['date'] = pd.to_datetime(
            stringency[STRINGENCY_DATE_COL].astype('Int64').astype(str),
            format='%Y%m%d', errors='coerce'
        )
        stringency = stringency.dropna(subset=['date'])

        return (
            stringency.groupby('date', as_index=False)[STRINGENCY_INDEX_COL]
            .mean()
            .rename(columns={STRINGENCY_INDEX_COL: 'stringency_index'})
            .sort_values('date')
            .reset_index(drop=True)
        )

    def get_measurements(self) -> Optional[pd.DataFrame]:
        """Get the last loaded measurement table."""
        return self._raw_data

    def get_stringency(self) -> Optional[pd.DataFrame]:
        """Get the last loaded stringency table."""
        return self._stringency

    def describe_dataset(self) -> None:
        """Print dataset description and basic statistics."""
        if self._raw_data is None:
            logger.error("No data loaded. Call load_measurements() first.")
            return

        print("Dataset Overview:")
        print("=" * 50)
        print(f"Shape: {self._raw_data.shape}")
        print(f"Test codes: {', '.join(sorted(self._raw_data[TEST_CODE_COL].dropna().unique()))}")
        print(f"Date range: {self._raw_data[DATE_COL].min()} - {self._raw_data[DATE_COL].max()}")

        print("\nGender distribution:")
        gender_dist = self._raw_data[GENDER_COL].value_counts(normalize=True, dropna=False)
        for category, proportion in gender_dist.items():
            print(f"  {category}: {proportion:.3f}")

        print("\nAge code distribution:")
        age_dist = self._raw_data[AGE_CODE_COL].value_counts(dropna=False).sort_index()
        for category, count in age_dist.items():
            print(f"  {category}: {count}")

        n_numeric = self._raw_data[VALUE_COL].notna().sum()
        n_censored = (self._raw_data[VALUE_COL].isna() & self._raw_data[VALUE_TEXT_COL].notna()).sum()
        print(f"\nNumeric values: {n_numeric}, censored/text-only values: {n_censored}")

        print("\nMissing data summary:")
        missing_pct = self._raw_data.isnull().mean() * 100
        for col in self._raw_data.columns:
            if missing_pct[col] > 0:
                print(f"  {col}: {missing_pct[col]:.1f}%")
