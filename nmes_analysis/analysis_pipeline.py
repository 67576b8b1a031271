"""
Core analysis pipeline for the NMES rehabilitation pilot.
=========================================================

This module runs the study analysis end to end on the observation table
loaded from NMES.xlsx.

Key functions:
- preprocess: Type coercion, missingness, group counts and descriptives
- run_models: Fit the configured mixed models and run their diagnostics
- create_plots: Radar, switching-errors bars and the bar-by-time charts
- save_results: Write every result table to CSV
- run_pipeline: Execute the complete analysis pipeline
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

from .compositor import combine_figures
from .diagnostics import diagnostics_table, plot_diagnostics, run_diagnostics
from .hypothesis_tests import compare_acceptability
from .models import fit_all_models, get_contrast_p, model_comparison
from .nmes_config import (
    get_analysis_params,
    get_columns,
    get_composite_settings,
    get_config_paths,
    get_levels,
    get_model_specs,
    get_outcomes,
    get_plot_settings,
)
from .plotting import plot_acceptability_radar, plot_group_time_bars, plot_time_bars
from .preprocessing import (
    check_subject_structure,
    coerce_types,
    compute_missingness,
    describe_baseline,
    describe_outcomes,
    group_counts,
    load_dataset,
    relabel_time,
)
from .utils import format_p_value, safe_filename

# Configure module logger
logger = logging.getLogger(__name__)

__all__ = [
    "required_columns",
    "preprocess",
    "run_models",
    "create_plots",
    "save_results",
    "run_pipeline",
]


def required_columns(config: Dict) -> List[str]:
    """Columns the pipeline cannot run without (design columns and model terms)."""
    columns = get_columns(config)
    required = [columns["subject"], columns["group"], columns["time"]]
    for spec in get_model_specs(config):
        required.append(spec["outcome"])
        required.extend(spec["covariates"])
    return list(dict.fromkeys(required))


def preprocess(raw: pd.DataFrame, config: Dict) -> Dict[str, Any]:
    """
    Coerce types and build the descriptive tables.

    Args:
        raw: Observation table as loaded from the spreadsheet
        config: Configuration dictionary

    Returns:
        Dictionary with the typed table (data) and the missingness,
        group_counts, descriptives and baseline tables.
    """
    logger.info("=" * 60)
    logger.info("PREPROCESSING")
    logger.info("=" * 60)

    columns = get_columns(config)
    time_levels, group_levels, _ = get_levels(config)
    outcomes = get_outcomes(config)

    df = coerce_types(raw, columns, time_levels, group_levels)

    for problem in check_subject_structure(df, columns["subject"], columns["group"], columns["time"]):
        logger.warning(problem)

    missingness = compute_missingness(df)
    logger.info("\n" + missingness[missingness["n_missing"] > 0].to_string())

    count_cols = [c for c in (columns["group"], columns["sex"], columns["handedness"]) if c in df.columns]
    counts = group_counts(df, count_cols)
    logger.info("\n" + counts.to_string(index=False))

    outcome_cols = (
        outcomes["mobility"]
        + outcomes["cognitive"]
        + outcomes["acceptability_subscores"]
        + [outcomes["acceptability_score"]]
    )
    descriptives = describe_outcomes(
        df, [c for c in outcome_cols if c in df.columns], columns["group"], columns["time"]
    )
    baseline = describe_baseline(
        df,
        subject_col=columns["subject"],
        group_col=columns["group"],
        time_col=columns["time"],
        baseline_level=time_levels[0],
        numeric_cols=[columns["age"], columns["bmi"], columns["education"]],
        sex_col=columns["sex"],
    )

    return {
        "data": df,
        "missingness": missingness,
        "group_counts": counts,
        "descriptives": descriptives,
        "baseline": baseline,
    }


def run_models(df: pd.DataFrame, config: Dict, figures_dir: Optional[Path] = None) -> Dict[str, Any]:
    """
    Fit every configured mixed model and run the diagnostics battery.

    Args:
        df: Typed observation table
        config: Configuration dictionary
        figures_dir: If given, diagnostic panels are saved under
                     figures_dir / "diagnostics"

    Returns:
        Dictionary with fits (name -> fit record) and diagnostics
        (name -> diagnostics dict).
    """
    columns = get_columns(config)
    time_levels, _, _ = get_levels(config)
    params = get_analysis_params(config)
    dpi = get_plot_settings(config)["dpi"]

    fits = fit_all_models(
        df,
        get_model_specs(config),
        group_col=columns["group"],
        time_col=columns["time"],
        subject_col=columns["subject"],
        time_levels=time_levels,
        alpha=params["alpha"],
    )

    logger.info("=" * 60)
    logger.info("MODEL DIAGNOSTICS")
    logger.info("=" * 60)

    diagnostics = {}
    for name, fit in fits.items():
        diagnostics[name] = run_diagnostics(fit, columns["subject"], params["outlier_threshold"])
        if figures_dir is not None:
            plot_diagnostics(fit, Path(figures_dir) / "diagnostics" / f"{safe_filename(name)}.png", dpi=min(dpi, 150))

    return {"fits": fits, "diagnostics": diagnostics}


def _switching_p_label(settings: Dict[str, Any], fits: Dict[str, Any], group_levels: List[str]) -> Optional[str]:
    """
    Manual p label from config, else the post-hoc contrast of the bracketed group.

    Bars are ordered group-major, so indices 2g and 2g + 1 belong to group g.
    Only a within-group bracket matches the Post - Pre contrast; any other
    bracket needs a manual ``p_label``.
    """
    if settings.get("p_label"):
        return settings["p_label"]

    column = settings.get("column")
    bracket = settings.get("bracket")
    if not bracket:
        return None

    first, second = bracket
    if first // 2 != second // 2:
        logger.warning(f"{column}: bracket {list(bracket)} spans groups; set plots.group_time_bars.p_label")
        return None

    group = group_levels[first // 2]
    for fit in fits.values():
        if fit["outcome"] == column:
            p = get_contrast_p(fit, group)
            return format_p_value(p) if p is not None else None
    return None


def create_plots(df: pd.DataFrame, config: Dict, figures_dir: Path, fits: Optional[Dict[str, Any]] = None) -> List[Path]:
    """
    Create the summary figures.

    Args:
        df: Typed observation table
        config: Configuration dictionary
        figures_dir: Directory to save the figures
        fits: Fitted models, used for the switching-errors p label when
              none is configured

    Returns:
        Paths of the saved figures.
    """
    logger.info("=" * 60)
    logger.info("GENERATING PLOTS")
    logger.info("=" * 60)

    columns = get_columns(config)
    _, group_levels, display = get_levels(config)
    outcomes = get_outcomes(config)
    settings = get_plot_settings(config)
    dpi = settings["dpi"]

    shown = relabel_time(df, columns["time"], display)
    figures_dir = Path(figures_dir)
    saved = []

    subscores = [c for c in outcomes["acceptability_subscores"] if c in df.columns]
    if subscores:
        saved.append(plot_acceptability_radar(
            shown, subscores, columns["group"], figures_dir / settings["radar_filename"], dpi=dpi
        ))

    group_bars = settings["group_time_bars"]
    if group_bars and group_bars.get("column") in df.columns:
        bracket = group_bars.get("bracket")
        saved.append(plot_group_time_bars(
            shown,
            group_bars["column"],
            columns["group"],
            columns["time"],
            figures_dir / group_bars.get("filename", f"{safe_filename(group_bars['column'])}.png"),
            p_label=_switching_p_label(group_bars, fits or {}, group_levels),
            bracket=tuple(bracket) if bracket else None,
            ylabel=group_bars.get("ylabel"),
            dpi=dpi,
        ))

    for entry in settings["time_bars"]:
        column = entry["column"]
        if column not in df.columns:
            logger.warning(f"Skipping bar chart for missing column: {column}")
            continue
        saved.append(plot_time_bars(
            shown,
            column,
            columns["time"],
            figures_dir / entry.get("filename", f"{safe_filename(column)}.png"),
            p_label=entry.get("p_label"),
            ylabel=entry.get("ylabel"),
            dpi=dpi,
        ))

    return saved


def save_results(tables: Dict[str, pd.DataFrame], results_dir: Path) -> List[Path]:
    """
    Save result tables to CSV files.

    Args:
        tables: Mapping of file stem -> DataFrame
        results_dir: Directory to save output files

    Returns:
        Paths of the saved files.
    """
    logger.info("=" * 60)
    logger.info("SAVING RESULTS")
    logger.info("=" * 60)

    results_dir = Path(results_dir)
    results_dir.mkdir(parents=True, exist_ok=True)

    saved = []
    for stem, table in tables.items():
        path = results_dir / f"{stem}.csv"
        keep_index = table.index.name is not None
        table.to_csv(path, index=keep_index)
        logger.info(f"Saved: {path}")
        saved.append(path)

    return saved


def _stack(frames: Dict[str, pd.DataFrame], key: str = "model") -> pd.DataFrame:
    """Concatenate per-model tables with a leading model column."""
    parts = []
    for name, frame in frames.items():
        if frame is None or len(frame) == 0:
            continue
        part = frame.reset_index() if frame.index.name else frame.copy()
        part.insert(0, key, name)
        parts.append(part)
    if not parts:
        return pd.DataFrame(columns=[key])
    return pd.concat(parts, ignore_index=True)


def run_pipeline(config: Dict, data_root: Path) -> Dict[str, Any]:
    """
    Run the full analysis pipeline.

    This is the main entry point that orchestrates the entire analysis:
    1. Load and preprocess the observation table
    2. Fit the mixed models and run their diagnostics
    3. Compare acceptability between groups
    4. Save result tables, create plots and the combined figure

    Args:
        config: Configuration dictionary (from config.json)
        data_root: Root directory that data paths are resolved against

    Returns:
        Dictionary with the preprocessing outputs, fits, diagnostics,
        acceptability results and saved file paths.
    """
    # Configure logging for pipeline run
    logging.basicConfig(
        level=logging.INFO,
        format='%(message)s'
    )

    paths = get_config_paths(config, data_root)
    columns = get_columns(config)
    outcomes = get_outcomes(config)
    params = get_analysis_params(config)
    composite = get_composite_settings(config)

    logger.info("=" * 60)
    logger.info("NMES PILOT ANALYSIS PIPELINE")
    logger.info("=" * 60)

    raw = load_dataset(paths["data_file"], required_columns(config))
    prep = preprocess(raw, config)
    df = prep["data"]

    modelling = run_models(df, config, figures_dir=paths["figures_dir"])
    fits = modelling["fits"]

    acceptability = compare_acceptability(
        df,
        score_col=outcomes["acceptability_score"],
        group_col=columns["group"],
        time_col=columns["time"],
        time_level=params["acceptability_time_level"],
    )

    tables = {
        "missingness": prep["missingness"],
        "group_counts": prep["group_counts"],
        "descriptives": prep["descriptives"],
        "baseline": prep["baseline"],
        "model_coefficients": _stack({n: f["coefficients"] for n, f in fits.items()}),
        "model_comparison": model_comparison(fits),
        "marginal_means": _stack({n: f.get("marginal_means") for n, f in fits.items()}),
        "posthoc_contrasts": _stack({n: f.get("contrasts") for n, f in fits.items()}),
        "diagnostics": diagnostics_table(modelling["diagnostics"]),
        "collinearity": _stack({n: d["collinearity"] for n, d in modelling["diagnostics"].items()}),
        "outliers": _stack({n: d["outliers"] for n, d in modelling["diagnostics"].items()}),
        "acceptability_tests": pd.DataFrame([acceptability]),
    }
    saved_tables = save_results(tables, paths["results_dir"])

    figures = create_plots(df, config, paths["figures_dir"], fits=fits)
    combined = combine_figures(
        [paths["figures_dir"] / name for name in composite["inputs"]],
        paths["figures_dir"] / composite["output"],
    )

    logger.info("=" * 60)
    logger.info("[OK] ANALYSIS COMPLETE!")
    logger.info("=" * 60)
    logger.info(f"Observations analysed: {len(df)}")
    logger.info(f"Models fitted: {len(fits)}")
    logger.info(f"Results saved to: {paths['results_dir']}")
    logger.info(f"Figures saved to: {paths['figures_dir']}")

    return {
        **prep,
        "fits": fits,
        "diagnostics": modelling["diagnostics"],
        "acceptability": acceptability,
        "tables": saved_tables,
        "figures": figures + [combined],
    }
