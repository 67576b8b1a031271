"""
Diagnostics battery for fitted mixed models.
============================================

Read-only checks run on every fitted model:
- overall: sample size, convergence, variance components, ICC and R²
- normality: Shapiro-Wilk test on the residuals
- heteroscedasticity: Breusch-Pagan test of the residuals against fitted values
- collinearity: variance inflation factor per fixed-effect column
- outliers: rows with large standardised residuals
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy import stats
from statsmodels.stats.diagnostic import het_breuschpagan
from statsmodels.stats.outliers_influence import variance_inflation_factor

logger = logging.getLogger(__name__)


def overall_summary(result) -> Dict[str, Any]:
    """
    Variance components and fit summary of a random-intercept model.

    Marginal and conditional R² follow Nakagawa & Schielzeth (2013):
    fixed-effect variance is the variance of X @ beta.
    """
    exog = np.asarray(result.model.exog)
    var_fixed = float(np.var(exog @ np.asarray(result.fe_params)))
    var_random = float(np.asarray(result.cov_re)[0, 0])
    var_residual = float(result.scale)
    total = var_fixed + var_random + var_residual

    return {
        "n_obs": int(result.nobs),
        "n_subjects": len(result.model.group_labels),
        "converged": bool(result.converged),
        "random_intercept_var": var_random,
        "residual_var": var_residual,
        "icc": var_random / (var_random + var_residual) if (var_random + var_residual) > 0 else np.nan,
        "r2_marginal": var_fixed / total if total > 0 else np.nan,
        "r2_conditional": (var_fixed + var_random) / total if total > 0 else np.nan,
    }


def check_normality(result) -> Dict[str, float]:
    """Shapiro-Wilk test on the model residuals."""
    resid = np.asarray(result.resid)
    stat, p = stats.shapiro(resid)
    return {"shapiro_stat": float(stat), "shapiro_p": float(p)}


def check_heteroscedasticity(result) -> Dict[str, float]:
    """Breusch-Pagan test of the squared residuals against the fitted values."""
    resid = np.asarray(result.resid)
    fitted = sm.add_constant(np.asarray(result.fittedvalues))
    lm, lm_p, f_stat, f_p = het_breuschpagan(resid, fitted)
    return {"bp_stat": float(lm), "bp_p": float(lm_p), "bp_f": float(f_stat), "bp_f_p": float(f_p)}


def check_collinearity(result) -> pd.DataFrame:
    """
    Variance inflation factor per fixed-effect column.

    The intercept column is used in the auxiliary regressions but not
    reported.
    """
    exog = np.asarray(result.model.exog)
    names = list(result.model.exog_names)

    records = []
    for i, name in enumerate(names):
        if name == "Intercept":
            continue
        records.append({"term": name, "vif": float(variance_inflation_factor(exog, i))})

    return pd.DataFrame(records, columns=["term", "vif"])


def check_outliers(fit: Dict[str, Any], subject_col: str, threshold: float = 3.0) -> pd.DataFrame:
    """
    Flag observations whose standardised residual exceeds ``threshold``.

    Residuals are conditional on the subject random intercepts and scaled by
    the residual standard deviation.
    """
    result = fit["result"]
    data = fit["data"]
    resid = np.asarray(result.resid)
    std_resid = resid / np.sqrt(result.scale)

    flagged = np.abs(std_resid) > threshold
    outliers = pd.DataFrame({
        "row": data.index[flagged],
        "subject": data[subject_col].to_numpy()[flagged],
        "residual": resid[flagged],
        "std_residual": std_resid[flagged],
    })
    return outliers


def run_diagnostics(fit: Dict[str, Any], subject_col: str, outlier_threshold: float = 3.0) -> Dict[str, Any]:
    """
    Run the full diagnostics battery on one fitted model.

    Args:
        fit: Fit record from models.fit_mixed_model()
        subject_col: Subject identifier column (used to label outliers)
        outlier_threshold: Absolute standardised residual above which a row is flagged

    Returns:
        Dictionary with keys overall, normality, heteroscedasticity,
        collinearity and outliers.
    """
    result = fit["result"]
    diagnostics = {
        "overall": overall_summary(result),
        "normality": check_normality(result),
        "heteroscedasticity": check_heteroscedasticity(result),
        "collinearity": check_collinearity(result),
        "outliers": check_outliers(fit, subject_col, outlier_threshold),
    }

    name = fit.get("name", fit["outcome"])
    norm_p = diagnostics["normality"]["shapiro_p"]
    bp_p = diagnostics["heteroscedasticity"]["bp_p"]
    max_vif = diagnostics["collinearity"]["vif"].max() if len(diagnostics["collinearity"]) else np.nan
    logger.info(
        f"[{name}] Shapiro p={norm_p:.4f}, Breusch-Pagan p={bp_p:.4f}, "
        f"max VIF={max_vif:.2f}, outliers={len(diagnostics['outliers'])}"
    )
    if not diagnostics["overall"]["converged"]:
        logger.warning(f"[{name}] model did not converge")

    return diagnostics


def diagnostics_table(all_diagnostics: Dict[str, Dict[str, Any]]) -> pd.DataFrame:
    """Flatten the scalar diagnostics of every model into one row per model."""
    records = []
    for name, diag in all_diagnostics.items():
        record = {"model": name}
        record.update(diag["overall"])
        record.update(diag["normality"])
        record.update(diag["heteroscedasticity"])
        vif = diag["collinearity"]["vif"]
        record["max_vif"] = float(vif.max()) if len(vif) else np.nan
        record["n_outliers"] = len(diag["outliers"])
        records.append(record)
    return pd.DataFrame(records).set_index("model")


def plot_diagnostics(fit: Dict[str, Any], output_path: Path, dpi: int = 150) -> Path:
    """
    Save a residuals-vs-fitted and normal Q-Q panel for one model.

    Returns:
        Path to the saved figure.
    """
    import matplotlib.pyplot as plt

    result = fit["result"]
    resid = np.asarray(result.resid)
    fitted = np.asarray(result.fittedvalues)

    fig, axes = plt.subplots(1, 2, figsize=(12, 5))

    axes[0].scatter(fitted, resid, alpha=0.7, edgecolor="black")
    axes[0].axhline(0, color="r", linestyle="--")
    axes[0].set_xlabel("Fitted values")
    axes[0].set_ylabel("Residuals")
    axes[0].set_title("Residuals vs Fitted")
    axes[0].grid(True, alpha=0.3)

    stats.probplot(resid, dist="norm", plot=axes[1])
    axes[1].set_title("Q-Q Plot (Residuals)")
    axes[1].grid(True, alpha=0.3)

    fig.suptitle(fit.get("name", fit["outcome"]), fontweight="bold")
    plt.tight_layout()

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(output_path, dpi=dpi, bbox_inches="tight")
    plt.close(fig)

    logger.info(f"Saved: {output_path}")
    return output_path
