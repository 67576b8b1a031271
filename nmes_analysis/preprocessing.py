"""
Loading and preprocessing of the observation table.
===================================================

The observation table holds one row per subject per time point. This module
loads it from the study spreadsheet, coerces the design columns to
categorical types and produces the descriptive tables reported before any
model is fitted.

Key functions:
- load_dataset: Read the spreadsheet and validate required columns
- coerce_types: Convert time, group, subject, sex and handedness to categoricals
- compute_missingness: Per-column missing counts and percentages
- group_counts: Row counts per (group, sex, handedness) combination
- describe_outcomes: Cell statistics per group x time for each outcome
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

import pandas as pd

from .utils import standard_error, validate_observation_table

logger = logging.getLogger(__name__)

__all__ = [
    "load_dataset",
    "coerce_types",
    "relabel_time",
    "compute_missingness",
    "group_counts",
    "check_subject_structure",
    "describe_outcomes",
    "describe_baseline",
]


def load_dataset(path: Path, required_cols: Optional[Iterable[str]] = None) -> pd.DataFrame:
    """
    Read the observation table from a spreadsheet (or an exported CSV).

    Args:
        path: Path to the .xlsx/.xls or .csv file
        required_cols: Columns that must be present

    Returns:
        DataFrame with the raw, untyped columns.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If required columns are missing or the table is empty
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Data file not found: {path}")

    if path.suffix.lower() == ".csv":
        df = pd.read_csv(path)
    else:
        df = pd.read_excel(path, engine="openpyxl")

    errors = validate_observation_table(df, required_cols or [])
    if errors:
        raise ValueError(f"Invalid data file {path.name}: {'; '.join(errors)}")

    logger.info(f"Loaded {len(df)} rows x {df.shape[1]} columns from {path.name}")
    return df


def _as_levels(series: pd.Series, levels: Sequence[str], ordered: bool) -> pd.Categorical:
    """
    Map raw values onto the configured levels, ignoring case and whitespace.

    Raises:
        ValueError: If a non-missing value matches none of the levels
    """
    lookup = {str(level).strip().lower(): level for level in levels}
    mapped = series.map(
        lambda v: lookup.get(str(v).strip().lower()) if pd.notna(v) else None
    )
    unmatched = series.notna() & mapped.isna()
    if unmatched.any():
        bad = sorted(series[unmatched].astype(str).unique())
        raise ValueError(
            f"Column '{series.name}': values {bad} do not match levels {list(levels)}"
        )
    return pd.Categorical(mapped, categories=list(levels), ordered=ordered)


def coerce_types(
    df: pd.DataFrame,
    columns: Dict[str, str],
    time_levels: Sequence[str],
    group_levels: Sequence[str],
) -> pd.DataFrame:
    """
    Coerce the design columns of the observation table to categoricals.

    Time becomes an ordered two-level categorical (e.g. Pre < Post), group a
    categorical in the configured level order, and the subject identifier,
    sex and handedness plain categoricals.

    Args:
        df: Raw observation table
        columns: Role -> column name mapping (see nmes_config.get_columns)
        time_levels: Ordered time levels
        group_levels: Group levels, reference level first

    Returns:
        A typed copy of the table.

    Raises:
        ValueError: If a time or group value is not one of the configured levels
    """
    df = df.copy()

    time_col = columns["time"]
    group_col = columns["group"]
    df[time_col] = _as_levels(df[time_col], time_levels, ordered=True)
    df[group_col] = _as_levels(df[group_col], group_levels, ordered=False)
    df[columns["subject"]] = df[columns["subject"]].astype("category")

    for role in ("sex", "handedness"):
        col = columns.get(role)
        if col in df.columns:
            df[col] = df[col].astype("category")

    logger.debug(f"Coerced {time_col}, {group_col}, {columns['subject']} to categoricals")
    return df


def relabel_time(df: pd.DataFrame, time_col: str, labels: Dict[str, str]) -> pd.DataFrame:
    """
    Return a copy with the time categories renamed for display.

    Levels not present in ``labels`` keep their name. Category order is
    preserved.
    """
    df = df.copy()
    mapping = {cat: labels.get(cat, cat) for cat in df[time_col].cat.categories}
    df[time_col] = df[time_col].cat.rename_categories(mapping)
    return df


def compute_missingness(df: pd.DataFrame) -> pd.DataFrame:
    """
    Compute per-column missingness.

    Returns:
        DataFrame indexed by column name with n_missing, n_present and
        missing_pct (= n_missing / n_rows * 100).
    """
    n_rows = len(df)
    n_missing = df.isna().sum()
    missing_pct = n_missing / n_rows * 100 if n_rows else n_missing * 0.0

    table = pd.DataFrame({
        "n_missing": n_missing.astype(int),
        "n_present": (n_rows - n_missing).astype(int),
        "missing_pct": missing_pct.astype(float).round(2),
    })
    table.index.name = "column"
    return table


def group_counts(df: pd.DataFrame, by: List[str]) -> pd.DataFrame:
    """
    Count rows per observed combination of the ``by`` columns.

    Rows with a missing value in any of the ``by`` columns are dropped first,
    so the counts sum to the number of complete rows.
    """
    complete = df.dropna(subset=by)
    dropped = len(df) - len(complete)
    if dropped:
        logger.info(f"group_counts: dropped {dropped} incomplete rows")

    counts = complete.groupby(by, observed=True).size().reset_index(name="n")
    return counts


def check_subject_structure(
    df: pd.DataFrame,
    subject_col: str,
    group_col: str,
    time_col: str,
) -> List[str]:
    """
    Check the repeated-measures layout of the observation table.

    Each subject must appear at most twice, never twice at the same time
    level, and always in the same group.

    Returns:
        List of violation messages. Empty list if the layout is valid.
    """
    problems = []

    for subject, rows in df.groupby(subject_col, observed=True):
        if len(rows) > 2:
            problems.append(f"Subject {subject}: {len(rows)} rows (expected at most 2)")
        if rows[time_col].dropna().duplicated().any():
            problems.append(f"Subject {subject}: repeated time level")
        if rows[group_col].dropna().nunique() > 1:
            problems.append(f"Subject {subject}: group changes between time points")

    return problems


def describe_outcomes(
    df: pd.DataFrame,
    outcomes: Iterable[str],
    group_col: str,
    time_col: str,
) -> pd.DataFrame:
    """
    Descriptive statistics per group x time cell for each outcome.

    Returns:
        Long DataFrame with columns outcome, group, time, n, mean, sd, sem,
        median.
    """
    frames = []
    for outcome in outcomes:
        if outcome not in df.columns:
            logger.warning(f"describe_outcomes: column '{outcome}' not found, skipped")
            continue

        cell = df.groupby([group_col, time_col], observed=True)[outcome].agg(
            n="count",
            mean="mean",
            sd="std",
            sem=standard_error,
            median="median",
        ).reset_index()
        cell = cell.rename(columns={group_col: "group", time_col: "time"})
        cell.insert(0, "outcome", outcome)
        frames.append(cell)

    if not frames:
        return pd.DataFrame(columns=["outcome", "group", "time", "n", "mean", "sd", "sem", "median"])

    return pd.concat(frames, ignore_index=True).round(3)


def describe_baseline(
    df: pd.DataFrame,
    subject_col: str,
    group_col: str,
    time_col: str,
    baseline_level: str,
    numeric_cols: Iterable[str],
    sex_col: Optional[str] = None,
) -> pd.DataFrame:
    """
    Baseline demographics per group.

    Uses one row per subject at ``baseline_level`` and reports the number of
    subjects, mean and SD of each numeric column and, when given, the count
    of each sex level.
    """
    base = df[df[time_col] == baseline_level].drop_duplicates(subset=subject_col)

    records = []
    for group, rows in base.groupby(group_col, observed=True):
        record = {"group": group, "n_subjects": int(rows[subject_col].nunique())}
        for col in numeric_cols:
            if col not in rows.columns:
                continue
            record[f"{col}_mean"] = rows[col].mean()
            record[f"{col}_sd"] = rows[col].std()
        if sex_col and sex_col in rows.columns:
            for level, count in rows[sex_col].value_counts().items():
                record[f"{sex_col}_{level}"] = int(count)
        records.append(record)

    return pd.DataFrame(records).round(2)
