"""
NMES Shared Utilities
=====================
Common utilities shared across the NMES analysis pipeline.

This module consolidates validation, formula helpers and number formatting
to ensure consistency across all components.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable, List

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


# =============================================================================
# DATA VALIDATION
# =============================================================================

def validate_observation_table(df: pd.DataFrame, required_cols: Iterable[str]) -> List[str]:
    """
    Validate that the observation table has the required columns and rows.

    Args:
        df: DataFrame loaded from the study spreadsheet
        required_cols: Column names the pipeline needs

    Returns:
        List of error messages. Empty list if validation passes.

    Example:
        >>> errors = validate_observation_table(df, ["ID", "Group", "Time"])
        >>> if errors:
        ...     print("Validation failed:", errors)
    """
    errors = []

    for col in required_cols:
        if col not in df.columns:
            errors.append(f"Missing required column: {col}")

    if len(df) == 0:
        errors.append("Data table is empty")

    return errors


# =============================================================================
# FORMULA HELPERS
# =============================================================================

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def quote_term(column: str) -> str:
    """
    Return a formula-safe reference to a column.

    Column names such as '6MWT' are not valid Python identifiers and must be
    wrapped in patsy's Q() to be used in a formula.

    Example:
        >>> quote_term('Age')
        'Age'
        >>> quote_term('6MWT')
        'Q("6MWT")'
    """
    if _IDENTIFIER.match(column):
        return column
    return f'Q("{column}")'


def safe_filename(name: str) -> str:
    """Strip characters that are awkward in file names."""
    return re.sub(r"[^A-Za-z0-9_.-]+", "_", name).strip("_")


# =============================================================================
# NUMERICAL UTILITIES
# =============================================================================

def standard_error(values: pd.Series) -> float:
    """
    Standard error of the mean (sample SD / sqrt(n)), ignoring NaN.

    Returns NaN when fewer than two values are present.
    """
    values = pd.Series(values).dropna()
    if len(values) < 2:
        return float("nan")
    return float(values.std(ddof=1) / np.sqrt(len(values)))


def format_p_value(p: float) -> str:
    """
    Format a p-value for figure annotations.

    Example:
        >>> format_p_value(0.0123)
        'p = 0.012'
        >>> format_p_value(0.0002)
        'p < 0.001'
    """
    if p is None or np.isnan(p):
        return "p = n/a"
    if p < 0.001:
        return "p < 0.001"
    return f"p = {p:.3f}"
