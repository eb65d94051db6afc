from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from variscout.engine.spc_utils import DataLike, as_frame

logger = logging.getLogger(__name__)

MONTH_ABBR = ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]
# pandas dayofweek: Monday=0
DAY_ABBR = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]

EXCEL_EPOCH = pd.Timestamp("1899-12-31")
EXCEL_FAKE_LEAP_DAY = 60
EXCEL_SERIAL_MAX = 100_000
UNIX_SECONDS_MIN = 1_000_000_000
UNIX_MILLIS_MIN = 10_000_000_000
TIME_SAMPLE_ROWS = 10


@dataclass
class TimeExtractionConfig:
    year: bool = True
    month: bool = True
    week: bool = True
    day_of_week: bool = True
    hour: bool = True


# =========================
# Parsing
# =========================

def _naive(ts: pd.Timestamp) -> pd.Timestamp:
    """Timezone-aware stamps are expressed in UTC and made naive."""
    if ts.tzinfo is not None:
        return ts.tz_convert("UTC").tz_localize(None)
    return ts


def parse_time_value(value: Any) -> Optional[pd.Timestamp]:
    """
    Parse one cell into a Timestamp, or None when it is not a date.

    Accepts datetime-likes, date strings, Excel serial day numbers (0 < v < 100000,
    with Excel's phantom 29 Feb 1900) and Unix timestamps in seconds or milliseconds.
    """
    if value is None or isinstance(value, (bool, np.bool_)):
        return None

    if isinstance(value, (pd.Timestamp, dt.datetime, dt.date, np.datetime64)):
        ts = pd.Timestamp(value)
        return None if pd.isna(ts) else _naive(ts)

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        ts = pd.to_datetime(text, errors="coerce")
        return None if pd.isna(ts) else _naive(ts)

    if isinstance(value, (int, float, np.integer, np.floating)):
        v = float(value)
        if not np.isfinite(v):
            return None
        if 0 < v < EXCEL_SERIAL_MAX:
            days = v - 1 if v >= EXCEL_FAKE_LEAP_DAY else v
            return EXCEL_EPOCH + pd.to_timedelta(days, unit="D")
        if v > UNIX_MILLIS_MIN:
            return pd.Timestamp(int(v), unit="ms")
        if v > UNIX_SECONDS_MIN:
            return pd.Timestamp(v, unit="s")
    return None


def _has_time(ts: pd.Timestamp) -> bool:
    return ts.hour != 0 or ts.minute != 0 or ts.second != 0


def _parse_column(df: pd.DataFrame, time_col: str) -> pd.Series:
    return pd.to_datetime(df[time_col].map(parse_time_value))


def has_time_component(data: DataLike, time_col: str, sample_size: int = TIME_SAMPLE_ROWS) -> bool:
    """True when any of the first `sample_size` rows carries a time other than midnight."""
    df = as_frame(data)
    if time_col not in df.columns:
        return False
    for value in df[time_col].head(sample_size):
        ts = parse_time_value(value)
        if ts is not None and _has_time(ts):
            return True
    return False


# =========================
# Components
# =========================

def extract_time_components(value: Any, config: Optional[TimeExtractionConfig] = None) -> Dict[str, str]:
    config = config or TimeExtractionConfig()
    ts = parse_time_value(value)
    if ts is None:
        return {}

    components: Dict[str, str] = {}
    if config.year:
        components["year"] = str(ts.year)
    if config.month:
        components["month"] = MONTH_ABBR[ts.month - 1]
    if config.week:
        components["week"] = f"W{ts.isocalendar()[1]:02d}"
    if config.day_of_week:
        components["day_of_week"] = DAY_ABBR[ts.dayofweek]
    if config.hour and _has_time(ts):
        components["hour"] = f"{ts.hour:02d}:00"
    return components


def format_time_value(value: Any) -> Optional[str]:
    """'Jan 15, 2025', with ' 14:30' appended when the value is not at midnight."""
    ts = parse_time_value(value)
    if ts is None:
        return None
    text = f"{MONTH_ABBR[ts.month - 1]} {ts.day}, {ts.year}"
    if _has_time(ts):
        text += f" {ts.hour:02d}:{ts.minute:02d}"
    return text


def _labels(numbers: pd.Series, fmt: Callable[[int], str]) -> pd.Series:
    return numbers.astype(object).map(lambda v: None if pd.isna(v) else fmt(int(v)))


def augment_with_time_columns(
    data: DataLike,
    time_col: str,
    config: Optional[TimeExtractionConfig] = None,
) -> Tuple[pd.DataFrame, List[str]]:
    """
    Derive categorical time factors from a date column.

    Returns a new frame with `<time_col>_Year`, `_Month`, `_Week` (ISO, 'W05'),
    `_DayOfWeek` and `_Hour` columns, and the list of columns created. Rows that
    do not parse get None. Nothing is created when no row parses, and the hour
    column only when the sampled rows carry times.
    """
    config = config or TimeExtractionConfig()
    df = as_frame(data).copy()
    if time_col not in df.columns or df.empty:
        return df, []

    ts = _parse_column(df, time_col)
    if ts.notna().sum() == 0:
        logger.debug("No parseable dates in '%s'; no time factors derived.", time_col)
        return df, []

    derived: List[Tuple[str, bool, Callable[[], pd.Series]]] = [
        ("Year", config.year, lambda: _labels(ts.dt.year, str)),
        ("Month", config.month, lambda: _labels(ts.dt.month, lambda m: MONTH_ABBR[m - 1])),
        ("Week", config.week, lambda: _labels(ts.dt.isocalendar().week, lambda w: f"W{w:02d}")),
        ("DayOfWeek", config.day_of_week, lambda: _labels(ts.dt.dayofweek, lambda d: DAY_ABBR[d])),
        ("Hour", config.hour and has_time_component(df, time_col), lambda: _labels(ts.dt.hour, lambda h: f"{h:02d}:00")),
    ]

    created = []
    for suffix, enabled, build in derived:
        if not enabled:
            continue
        name = f"{time_col}_{suffix}"
        df[name] = build()
        created.append(name)

    logger.debug("Derived time factors from '%s': %s", time_col, created)
    return df, created
