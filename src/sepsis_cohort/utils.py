"""
Time and rounding helpers shared across the pipeline.

This module provides the time-difference helpers used for ICU duration,
pre-ICU waiting time and age, plus a rounding helper that matches SQL
ROUND semantics for the averaged features.
"""
from typing import List

import numpy as np
import pandas as pd

# Observation window anchored at ICU admission (in hours)
WINDOW_HOURS = 24


def get_hour_difference(end: pd.Series, start: pd.Series) -> pd.Series:
    """
    Calculate the difference between two datetime series in fractional hours.

    Args:
        end (pd.Series): Later datetime series (minuend)
        start (pd.Series): Earlier datetime series (subtrahend)

    Returns:
        pd.Series: Time difference in hours as float values

    Example:
        >>> import pandas as pd
        >>> time1 = pd.Series([pd.Timestamp('2150-01-01 23:59:00')])
        >>> time2 = pd.Series([pd.Timestamp('2150-01-01 00:00:00')])
        >>> round(get_hour_difference(time1, time2).iloc[0], 4)
        23.9833
    """
    return (end - start) / pd.Timedelta(hours=1)


def get_minute_difference(end: pd.Series, start: pd.Series) -> pd.Series:
    """
    Calculate the difference between two datetime series in whole minutes.

    Partial minutes are truncated toward zero, as a minute-level
    timestamp difference does.

    Example:
        >>> import pandas as pd
        >>> time1 = pd.Series([pd.Timestamp('2150-01-01 05:00:59')])
        >>> time2 = pd.Series([pd.Timestamp('2150-01-01 00:00:00')])
        >>> get_minute_difference(time1, time2)
        0    300.0
        dtype: float64
    """
    return np.trunc((end - start) / pd.Timedelta(minutes=1))


def get_year_difference(end: pd.Series, start_year: pd.Series) -> pd.Series:
    """
    Calculate calendar-year difference between datetimes and reference years.

    Only the year component of `end` is used, so the result is the number
    of January 1st boundaries crossed since the start of `start_year`.

    Args:
        end (pd.Series): Datetime series
        start_year (pd.Series): Integer year series

    Returns:
        pd.Series: Year difference as integer values

    Example:
        >>> import pandas as pd
        >>> time1 = pd.Series([pd.Timestamp('2153-06-15')])
        >>> get_year_difference(time1, pd.Series([2150]))
        0    3
        dtype: int64
    """
    return end.dt.year - start_year


def round_half_away(values: pd.Series, decimals: int = 2) -> pd.Series:
    """
    Round to `decimals` places with halves rounded away from zero.

    pandas rounds halves to even; SQL ROUND does not. Missing values stay
    missing.

    Example:
        >>> import pandas as pd
        >>> round_half_away(pd.Series([2.345, -2.345, None]), 2).tolist()
        [2.35, -2.35, nan]
    """
    factor = 10 ** decimals
    values = values.astype(float)
    # Small epsilon absorbs binary representation error (2.345 is 2.34499...)
    return np.sign(values) * np.floor(np.abs(values) * factor + 0.5 + 1e-9) / factor


def assert_required_columns(df: pd.DataFrame, cols: List[str], name: str) -> None:
    """Raise ValueError if `df` lacks any of `cols`."""
    missing = [c for c in cols if c not in df.columns]
    if missing:
        raise ValueError(f"{name} missing columns: {missing}")
