"""
Configuration loader for the NMES analysis pipeline.
====================================================

Provides functions to load and parse the central configuration file
(config.json) that controls paths, column names, factor levels, the list of
mixed models and plot settings.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from . import PACKAGE_DIR

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILENAME = "config.json"

DEFAULT_COLUMNS = {
    "subject": "ID",
    "group": "Group",
    "time": "Time",
    "age": "Age",
    "sex": "Sex",
    "education": "Education",
    "bmi": "BMI",
    "handedness": "Handedness",
}


def get_data_root() -> Path:
    """
    Return the directory that relative data paths are resolved against.

    Returns:
        The current working directory (the study folder holding NMES.xlsx).
    """
    return Path.cwd()


def load_config(config_path: Optional[Union[str, Path]] = None) -> Tuple[Dict[str, Any], Path, Path]:
    """
    Load configuration file and return parsed config with paths.

    Args:
        config_path: Optional path to config file. Defaults to the
                    config.json shipped inside the package.

    Returns:
        Tuple of (config_dict, data_root_path, config_file_path)

    Raises:
        FileNotFoundError: If config file doesn't exist
        json.JSONDecodeError: If config file is invalid JSON
    """
    data_root = get_data_root()
    resolved_path = Path(config_path) if config_path else PACKAGE_DIR / DEFAULT_CONFIG_FILENAME

    if not resolved_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {resolved_path}")

    with open(resolved_path, "r", encoding="utf-8") as f:
        config = json.load(f)

    logger.debug(f"Loaded configuration from {resolved_path}")
    return config, data_root, resolved_path


def resolve_path(path_str: str, base_dir: Path) -> Path:
    """Resolve a config path relative to base_dir."""
    return (base_dir / path_str).resolve()


def get_config_paths(config: Dict[str, Any], base_dir: Path) -> Dict[str, Path]:
    """
    Return resolved paths from config.

    Args:
        config: Configuration dictionary
        base_dir: Base directory to resolve relative paths against

    Returns:
        Dictionary mapping path names (data_file, figures_dir, results_dir)
        to resolved Path objects
    """
    paths = {
        "data_file": "NMES.xlsx",
        "figures_dir": "outputs/figures",
        "results_dir": "outputs/results",
    }
    paths.update(config.get("data_paths", {}))
    return {key: resolve_path(value, base_dir) for key, value in paths.items()}


def get_columns(config: Dict[str, Any]) -> Dict[str, str]:
    """Return the role -> column name mapping, filled with defaults."""
    columns = dict(DEFAULT_COLUMNS)
    columns.update(config.get("columns", {}))
    return columns


def get_levels(config: Dict[str, Any]) -> Tuple[List[str], List[str], Dict[str, str]]:
    """
    Return factor levels from config.

    Returns:
        Tuple of (time_levels, group_levels, time_display_labels)
    """
    levels = config.get("levels", {})
    time_levels = levels.get("time", ["Pre", "Post"])
    group_levels = levels.get("group", ["Control", "NMES"])
    display = levels.get("time_display", {lvl: lvl.lower() for lvl in time_levels})

    if len(time_levels) != 2 or len(group_levels) != 2:
        raise ValueError("Exactly two time levels and two group levels are required")

    return list(time_levels), list(group_levels), dict(display)


def get_outcomes(config: Dict[str, Any]) -> Dict[str, Any]:
    """Return outcome column lists (mobility, cognitive, acceptability)."""
    outcomes = config.get("outcomes", {})
    return {
        "mobility": list(outcomes.get("mobility", [])),
        "cognitive": list(outcomes.get("cognitive", [])),
        "acceptability_subscores": list(outcomes.get("acceptability_subscores", [])),
        "acceptability_score": outcomes.get("acceptability_score", "TFA_Total"),
    }


def get_model_specs(config: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    Return the mixed-model specifications from config.

    Each entry has the keys name, outcome, covariates, family and posthoc.

    Raises:
        ValueError: If a model entry has no outcome or a duplicated name
    """
    specs = []
    seen = set()
    for entry in config.get("models", []):
        outcome = entry.get("outcome")
        if not outcome:
            raise ValueError(f"Model entry without outcome: {entry}")
        name = entry.get("name", outcome)
        if name in seen:
            raise ValueError(f"Duplicate model name in config: {name}")
        seen.add(name)
        specs.append({
            "name": name,
            "outcome": outcome,
            "covariates": list(entry.get("covariates", [])),
            "family": entry.get("family", "mobility"),
            "posthoc": bool(entry.get("posthoc", False)),
        })
    return specs


def get_plot_settings(config: Dict[str, Any]) -> Dict[str, Any]:
    """Return plot settings with defaults for missing keys."""
    plots = config.get("plots", {})
    return {
        "time_bars": list(plots.get("time_bars", [])),
        "group_time_bars": plots.get("group_time_bars"),
        "radar_filename": plots.get("radar_filename", "acceptability_radar.png"),
        "dpi": int(plots.get("dpi", 300)),
    }


def get_composite_settings(config: Dict[str, Any]) -> Dict[str, Any]:
    """Return composite figure input names and output name."""
    composite = config.get("composite", {})
    return {
        "inputs": list(composite.get("inputs", ["5XSTS.png", "6mwt.png", "Tinetti.png", "TUG_DT.png"])),
        "output": composite.get("output", "combined_figure.png"),
    }


def get_analysis_params(config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Return analysis parameters from config.

    Returns:
        Dictionary with analysis parameters:
        - alpha: float
        - outlier_threshold: float
        - acceptability_time_level: str
    """
    analysis = config.get("analysis", {})
    return {
        "alpha": float(analysis.get("alpha", 0.05)),
        "outlier_threshold": float(analysis.get("outlier_threshold", 3.0)),
        "acceptability_time_level": analysis.get("acceptability_time_level", "Pre"),
    }
