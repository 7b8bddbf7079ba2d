"""
Price/volume data loader for RL training.

Loads a historical series from CSV or Parquet, validates it and exposes
aligned price and volume arrays plus a chronological train/test split.
"""

import logging
from pathlib import Path
from typing import Dict, Optional, Tuple

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


class PriceDataLoader:
    """
    Loader for a single-asset price/volume series.

    The file needs a timestamp column and close/volume columns. Column names
    are matched case-insensitively.

    Attributes:
        data: Validated DataFrame sorted by timestamp
        price_col: Name of the price column used
        volume_col: Name of the volume column used
    """

    TIMESTAMP_CANDIDATES = ('timestamp', 'date', 'datetime', 'time')
    PRICE_CANDIDATES = ('close', 'price')
    VOLUME_CANDIDATES = ('volume',)

    def __init__(self, data_path: str, validate: bool = True):
        """
        Initialize the data loader.

        Args:
            data_path: Path to a .csv or .parquet file
            validate: Whether to run validation checks
        """
        self.data_path = Path(data_path)

        logger.info(f"Initializing PriceDataLoader from {self.data_path}")

        raw = self._load_data()
        self.timestamp_col = self._find_column(raw, self.TIMESTAMP_CANDIDATES, 'timestamp')
        self.price_col = self._find_column(raw, self.PRICE_CANDIDATES, 'close')
        self.volume_col = self._find_column(raw, self.VOLUME_CANDIDATES, 'volume')

        raw[self.timestamp_col] = pd.to_datetime(raw[self.timestamp_col])
        self.data = raw.sort_values(self.timestamp_col).reset_index(drop=True)

        if validate:
            self._validate_data()
            self._log_statistics()

    def _load_data(self) -> pd.DataFrame:
        """Read the file according to its extension."""
        if not self.data_path.exists():
            raise FileNotFoundError(f"Data file not found: {self.data_path}")

        suffix = self.data_path.suffix.lower()
        if suffix == '.csv':
            df = pd.read_csv(self.data_path)
        elif suffix in ('.parquet', '.pq'):
            df = pd.read_parquet(self.data_path)
        else:
            raise ValueError(f"Unsupported data format '{suffix}' (expected .csv or .parquet)")

        logger.info(f"Loaded {len(df):,} rows")
        return df

    @staticmethod
    def _find_column(df: pd.DataFrame, candidates: Tuple[str, ...], label: str) -> str:
        lookup = {str(col).lower(): col for col in df.columns}
        for candidate in candidates:
            if candidate in lookup:
                return lookup[candidate]
        raise ValueError(f"{label} column not found in data (columns: {list(df.columns)})")

    def _validate_data(self) -> None:
        """
        Run data quality checks.

        Checks:
        - Non-empty
        - No NaN or infinite values in price/volume
        - Strictly positive prices, non-negative volumes
        - Chronological order without duplicate timestamps
        """
        logger.info("Running data validation...")

        if self.data.empty:
            raise ValueError("Data file contains no rows")

        values = self.data[[self.price_col, self.volume_col]]

        nan_counts = values.isna().sum()
        if nan_counts.sum() > 0:
            raise ValueError(f"Found NaN values:\n{nan_counts[nan_counts > 0]}")

        if np.isinf(values.to_numpy(dtype=np.float64)).any():
            raise ValueError("Found infinite values in price/volume columns")

        if (self.data[self.price_col] <= 0).any():
            raise ValueError("Prices must be strictly positive")

        if (self.data[self.volume_col] < 0).any():
            raise ValueError("Volumes must be non-negative")

        if self.data[self.timestamp_col].duplicated().any():
            raise ValueError("Duplicate timestamps found")

        logger.info("All validation checks passed")

    def _log_statistics(self) -> None:
        prices = self.data[self.price_col]
        logger.info(
            f"Date range: {self.data[self.timestamp_col].min()} to {self.data[self.timestamp_col].max()}"
        )
        logger.info(f"Price range: {prices.min():.4f} to {prices.max():.4f} (last {prices.iloc[-1]:.4f})")

    def __len__(self) -> int:
        return len(self.data)

    def get_series(self, start: Optional[int] = None, end: Optional[int] = None) -> Tuple[np.ndarray, np.ndarray]:
        """
        Get aligned price and volume arrays.

        Args:
            start: First row (inclusive)
            end: Last row (exclusive)

        Returns:
            Tuple of (prices, volumes) as float64 arrays
        """
        subset = self.data.iloc[start:end]
        prices = subset[self.price_col].to_numpy(dtype=np.float64)
        volumes = subset[self.volume_col].to_numpy(dtype=np.float64)
        return prices, volumes

    def train_test_split(
        self,
        train_ratio: float = 0.8
    ) -> Tuple[Tuple[np.ndarray, np.ndarray], Tuple[np.ndarray, np.ndarray]]:
        """
        Chronological split into training and held-out series.

        Args:
            train_ratio: Fraction of rows used for training

        Returns:
            ((train_prices, train_volumes), (test_prices, test_volumes))
        """
        if not 0.0 < train_ratio < 1.0:
            raise ValueError(f"train_ratio must lie in (0, 1), got {train_ratio}")

        split = int(len(self.data) * train_ratio)
        train = self.get_series(0, split)
        test = self.get_series(split, None)

        logger.info(f"Train rows: {len(train[0]):,} | Test rows: {len(test[0]):,}")
        return train, test

    def get_split_info(self, train_ratio: float = 0.8) -> Dict[str, str]:
        """Timestamp boundaries of the chronological split."""
        split = int(len(self.data) * train_ratio)
        timestamps = self.data[self.timestamp_col]
        return {
            'train_start': str(timestamps.iloc[0]),
            'train_end': str(timestamps.iloc[split - 1]),
            'test_start': str(timestamps.iloc[split]) if split < len(timestamps) else '',
            'test_end': str(timestamps.iloc[-1]),
        }
