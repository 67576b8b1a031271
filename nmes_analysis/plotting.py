"""
Summary figures for the NMES pilot.
===================================

Key functions:
- plot_acceptability_radar: Group means of the acceptability sub-scores on a 1-5 radar
- plot_group_time_bars: Mean ± SEM per group x time with a significance bracket
- plot_time_bars: Mean ± SEM per time level for any outcome column

All functions take the observation table and an output path, save one PNG
and close the figure. Time levels are drawn with the table's category
names, so relabel the table (preprocessing.relabel_time) for display.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt  # noqa: E402
import numpy as np  # noqa: E402
import pandas as pd  # noqa: E402

from .utils import standard_error  # noqa: E402

logger = logging.getLogger(__name__)

__all__ = [
    "plot_acceptability_radar",
    "plot_group_time_bars",
    "plot_time_bars",
]

GROUP_COLORS = ["#3498db", "#e74c3c"]
TIME_COLORS = ["#c6dbef", "#2171b5"]


def _use_style() -> None:
    """Apply the whitegrid style when the installed matplotlib ships it."""
    try:
        plt.style.use("seaborn-v0_8-whitegrid")
    except OSError:
        try:
            plt.style.use("seaborn-whitegrid")
        except OSError:
            logger.debug("Seaborn style not available, using default")


def _levels(series: pd.Series) -> List:
    if isinstance(series.dtype, pd.CategoricalDtype):
        return list(series.cat.categories)
    return sorted(series.dropna().unique())


def _save(fig, output_path: Path, dpi: int) -> Path:
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(output_path, dpi=dpi, bbox_inches="tight")
    plt.close(fig)
    logger.info(f"Saved: {output_path}")
    return output_path


def _draw_bracket(ax, x1: float, x2: float, y: float, height: float, label: str) -> None:
    """Draw a bracket between two bars with a label above it."""
    ax.plot([x1, x1, x2, x2], [y, y + height, y + height, y], lw=1.5, color="black", clip_on=False)
    ax.text((x1 + x2) / 2, y + 1.3 * height, label, ha="center", va="bottom", fontsize=11)


def _cell_stats(values: pd.Series) -> Tuple[float, float]:
    values = values.dropna()
    mean = float(values.mean()) if len(values) else np.nan
    sem = standard_error(values)
    return mean, sem


def _bars_with_bracket(
    ax,
    x: np.ndarray,
    means: Sequence[float],
    sems: Sequence[float],
    colors: Sequence[str],
    bracket: Optional[Tuple[int, int]],
    p_label: Optional[str],
) -> None:
    errs = [0 if np.isnan(s) else s for s in sems]
    ax.bar(x, means, yerr=errs, capsize=5, color=colors, alpha=0.9, edgecolor="black", width=0.7)

    uppers = [m + e for m, e in zip(means, errs) if not np.isnan(m)]
    if not uppers:
        return
    top = max(uppers)
    span = top if top > 0 else 1.0

    if bracket is not None and p_label:
        i, j = bracket
        y = top + 0.05 * span
        _draw_bracket(ax, x[i], x[j], y, 0.03 * span, p_label)
        ax.set_ylim(0, top + 0.25 * span)
    else:
        ax.set_ylim(0, top + 0.1 * span)


def plot_acceptability_radar(
    df: pd.DataFrame,
    subscores: Sequence[str],
    group_col: str,
    output_path: Path,
    labels: Optional[Dict[str, str]] = None,
    dpi: int = 300,
) -> Path:
    """
    Radar chart of the acceptability sub-scores by group.

    Each group is drawn as a filled polygon of its column means; dashed
    rings mark the scale minimum (1) and maximum (5).

    Args:
        df: Observation table
        subscores: The acceptability sub-score columns (rated 1-5)
        group_col: Group column
        output_path: Where to save the PNG
        labels: Optional column -> axis label mapping
        dpi: Resolution of the saved figure

    Returns:
        Path to the saved figure.
    """
    subscores = list(subscores)
    complete = df.dropna(subset=subscores + [group_col])
    means = complete.groupby(group_col, observed=True)[subscores].mean()

    angles = np.linspace(0, 2 * np.pi, len(subscores), endpoint=False).tolist()
    closed = angles + angles[:1]
    ring = np.linspace(0, 2 * np.pi, 200)

    fig, ax = plt.subplots(figsize=(8, 8), subplot_kw={"polar": True})

    ax.plot(ring, np.full_like(ring, 1.0), color="grey", linestyle="--", linewidth=1)
    ax.plot(ring, np.full_like(ring, 5.0), color="grey", linestyle="--", linewidth=1)

    for k, (group, row) in enumerate(means.iterrows()):
        values = row.tolist()
        values += values[:1]
        color = GROUP_COLORS[k % len(GROUP_COLORS)]
        ax.plot(closed, values, color=color, linewidth=2, label=str(group))
        ax.fill(closed, values, color=color, alpha=0.25)

    ax.set_ylim(0, 5)
    ax.set_yticks([1, 2, 3, 4, 5])
    ax.set_xticks(angles)
    ax.set_xticklabels([(labels or {}).get(c, c) for c in subscores], fontsize=10)
    ax.set_title("Acceptability by group", fontsize=14, fontweight="bold", pad=20)
    ax.legend(loc="upper right", bbox_to_anchor=(1.25, 1.1))

    return _save(fig, output_path, dpi)


def plot_group_time_bars(
    df: pd.DataFrame,
    column: str,
    group_col: str,
    time_col: str,
    output_path: Path,
    p_label: Optional[str] = None,
    bracket: Optional[Tuple[int, int]] = None,
    ylabel: Optional[str] = None,
    dpi: int = 300,
) -> Path:
    """
    Bar chart of mean ± SEM for every group x time cell.

    Bars are ordered group by group, time levels within group, so with two
    groups and two time points the indices are
    0 = (group 1, time 1), 1 = (group 1, time 2), 2 = (group 2, time 1),
    3 = (group 2, time 2). ``bracket`` picks two of these indices and
    ``p_label`` is written above the bracket.

    Returns:
        Path to the saved figure.
    """
    _use_style()

    groups = _levels(df[group_col])
    times = _levels(df[time_col])

    means, sems, colors, ticks = [], [], [], []
    for group in groups:
        for t_idx, time in enumerate(times):
            cell = df.loc[(df[group_col] == group) & (df[time_col] == time), column]
            mean, sem = _cell_stats(cell)
            means.append(mean)
            sems.append(sem)
            colors.append(TIME_COLORS[t_idx % len(TIME_COLORS)])
            ticks.append(f"{group}\n{time}")

    x = np.arange(len(means), dtype=float)
    fig, ax = plt.subplots(figsize=(7, 6))
    _bars_with_bracket(ax, x, means, sems, colors, bracket, p_label)

    ax.set_xticks(x)
    ax.set_xticklabels(ticks)
    ax.set_ylabel(ylabel or column)
    ax.set_title(ylabel or column, fontsize=14, fontweight="bold")
    ax.spines[["top", "right"]].set_visible(False)

    return _save(fig, output_path, dpi)


def plot_time_bars(
    df: pd.DataFrame,
    column: str,
    time_col: str,
    output_path: Path,
    p_label: Optional[str] = None,
    ylabel: Optional[str] = None,
    dpi: int = 300,
) -> Path:
    """
    Bar chart of mean ± SEM across the time levels for one column.

    When ``p_label`` is given a bracket joins the first two bars and the
    label is written above it.

    Returns:
        Path to the saved figure.
    """
    _use_style()

    times = _levels(df[time_col])
    means, sems = [], []
    for time in times:
        mean, sem = _cell_stats(df.loc[df[time_col] == time, column])
        means.append(mean)
        sems.append(sem)

    x = np.arange(len(times), dtype=float)
    colors = [TIME_COLORS[k % len(TIME_COLORS)] for k in range(len(times))]
    bracket = (0, 1) if len(times) >= 2 else None

    fig, ax = plt.subplots(figsize=(5, 6))
    _bars_with_bracket(ax, x, means, sems, colors, bracket, p_label)

    ax.set_xticks(x)
    ax.set_xticklabels([str(t) for t in times])
    ax.set_ylabel(ylabel or column)
    ax.set_title(ylabel or column, fontsize=13, fontweight="bold")
    ax.spines[["top", "right"]].set_visible(False)

    return _save(fig, output_path, dpi)
