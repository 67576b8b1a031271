"""
Linear mixed models for the mobility and cognitive outcomes.
============================================================

Every outcome is modelled as

    outcome ~ Time * Group + covariates + (1 | subject)

with a random intercept per subject, estimated by maximum likelihood so
that models with different fixed effects stay comparable by AIC/BIC.

Key functions:
- build_formula: Assemble the fixed-effects formula for one outcome
- fit_mixed_model: Fit one model and return a fit record
- coefficient_table: Fixed effects with Wald confidence intervals
- estimated_marginal_means: Covariate-adjusted time x group cell means
- pairwise_time_within_group: Post - Pre contrast of the marginal means per group
- fit_all_models: Fit every configured model in order
"""

from __future__ import annotations

import itertools
import logging
import warnings
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
import patsy
import statsmodels.api as sm

from .utils import quote_term

logger = logging.getLogger(__name__)

__all__ = [
    "build_formula",
    "fit_mixed_model",
    "coefficient_table",
    "estimated_marginal_means",
    "pairwise_time_within_group",
    "model_comparison",
    "fit_all_models",
    "get_contrast_p",
]


def build_formula(outcome: str, covariates: Sequence[str], time_col: str, group_col: str) -> str:
    """
    Build the fixed-effects formula for one outcome.

    Example:
        >>> build_formula('6MWT', ['Age', 'Sex', 'BMI'], 'Time', 'Group')
        'Q("6MWT") ~ Time * Group + Age + Sex + BMI'
    """
    rhs = [f"{quote_term(time_col)} * {quote_term(group_col)}"]
    rhs.extend(quote_term(c) for c in covariates)
    return f"{quote_term(outcome)} ~ " + " + ".join(rhs)


def fit_mixed_model(
    df: pd.DataFrame,
    outcome: str,
    covariates: Sequence[str],
    group_col: str,
    time_col: str,
    subject_col: str,
) -> Dict[str, Any]:
    """
    Fit a random-intercept linear mixed model by maximum likelihood.

    Rows with a missing value in any model column are dropped before
    fitting. Warnings raised by statsmodels during optimisation (e.g.
    convergence or boundary warnings) are logged.

    Args:
        df: Typed observation table
        outcome: Outcome column
        covariates: Covariate columns added to the Time * Group terms
        group_col: Treatment group column
        time_col: Time column
        subject_col: Subject identifier (random intercept grouping factor)

    Returns:
        Fit record with keys formula, result, design_info, data, outcome,
        covariates.

    Raises:
        ValueError: If no complete rows remain for the model
    """
    model_cols = [outcome, time_col, group_col, subject_col] + list(covariates)
    data = df.dropna(subset=model_cols).copy()
    if data.empty:
        raise ValueError(f"No complete rows for outcome {outcome}")

    for col in model_cols:
        if isinstance(data[col].dtype, pd.CategoricalDtype):
            data[col] = data[col].cat.remove_unused_categories()

    formula = build_formula(outcome, covariates, time_col, group_col)
    endog, exog = patsy.dmatrices(formula, data, return_type="dataframe")
    groups = data.loc[exog.index, subject_col].astype(str).to_numpy()

    model = sm.MixedLM(endog.iloc[:, 0], exog, groups=groups)

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        result = model.fit(reml=False)

    for w in caught:
        logger.warning(f"{outcome}: {w.category.__name__}: {w.message}")

    logger.info(
        f"Fitted {formula}  (n={int(result.nobs)}, subjects={len(set(groups))}, "
        f"converged={result.converged})"
    )

    return {
        "outcome": outcome,
        "covariates": list(covariates),
        "formula": formula,
        "result": result,
        "design_info": exog.design_info,
        "data": data.loc[exog.index],
    }


def coefficient_table(result, alpha: float = 0.05) -> pd.DataFrame:
    """
    Fixed-effect coefficient table of a fitted mixed model.

    One row per fixed-effect term (intercept, time, group, time:group and
    each covariate). The random-intercept variance is not included.
    Confidence intervals are Wald intervals of the given result.

    Returns:
        DataFrame indexed by term with estimate, std_error, z_value,
        p_value, ci_lower, ci_upper.
    """
    names = result.fe_params.index
    ci = result.conf_int(alpha=alpha).loc[names]

    table = pd.DataFrame({
        "estimate": result.fe_params,
        "std_error": result.bse.loc[names],
        "z_value": result.tvalues.loc[names],
        "p_value": result.pvalues.loc[names],
        "ci_lower": ci.iloc[:, 0],
        "ci_upper": ci.iloc[:, 1],
    }, index=names)
    table.index.name = "term"
    return table


def _padded_contrast(result, L: pd.DataFrame) -> np.ndarray:
    """Extend fixed-effect contrast rows with zeros for the variance parameters."""
    return L.reindex(columns=result.params.index, fill_value=0.0).to_numpy()


def _reference_grid(
    data: pd.DataFrame,
    covariates: Sequence[str],
    time_col: str,
    group_col: str,
) -> pd.DataFrame:
    """
    Reference grid for marginal means.

    One row per (time, group, categorical covariate levels) combination;
    numeric covariates are held at their sample mean.
    """
    def levels_of(col):
        if isinstance(data[col].dtype, pd.CategoricalDtype):
            return list(data[col].cat.categories)
        return sorted(data[col].dropna().unique())

    factor_cols = [time_col, group_col]
    numeric_covs = []
    for col in covariates:
        if pd.api.types.is_numeric_dtype(data[col]) and not isinstance(data[col].dtype, pd.CategoricalDtype):
            numeric_covs.append(col)
        else:
            factor_cols.append(col)

    combos = list(itertools.product(*(levels_of(c) for c in factor_cols)))
    grid = pd.DataFrame(combos, columns=factor_cols)

    for col in factor_cols:
        if isinstance(data[col].dtype, pd.CategoricalDtype):
            grid[col] = pd.Categorical(
                grid[col],
                categories=data[col].cat.categories,
                ordered=data[col].cat.ordered,
            )
    for col in numeric_covs:
        grid[col] = data[col].mean()

    return grid


def _cell_contrast_matrix(fit: Dict[str, Any], time_col: str, group_col: str) -> pd.DataFrame:
    """
    Linear-combination rows mapping the fixed effects to time x group cell means.

    Categorical covariates are averaged with equal weights over their levels.
    """
    data = fit["data"]
    grid = _reference_grid(data, fit["covariates"], time_col, group_col)
    design = patsy.build_design_matrices([fit["design_info"]], grid, return_type="dataframe")[0]
    design.index = grid.index

    keys = [grid[time_col].astype(str), grid[group_col].astype(str)]
    rows = design.groupby(keys, sort=False).mean()
    rows.index.names = ["time", "group"]
    return rows


def estimated_marginal_means(
    fit: Dict[str, Any],
    time_col: str,
    group_col: str,
    alpha: float = 0.05,
) -> pd.DataFrame:
    """
    Estimated marginal means per time x group cell.

    Args:
        fit: Fit record from fit_mixed_model()
        time_col: Time column
        group_col: Group column
        alpha: Significance level for the confidence intervals

    Returns:
        DataFrame with time, group, emmean, std_error, ci_lower, ci_upper.
    """
    result = fit["result"]
    L = _cell_contrast_matrix(fit, time_col, group_col)
    test = result.t_test(_padded_contrast(result, L))
    ci = np.asarray(test.conf_int(alpha=alpha))

    emm = pd.DataFrame({
        "emmean": np.asarray(test.effect).ravel(),
        "std_error": np.asarray(test.sd).ravel(),
        "ci_lower": ci[:, 0],
        "ci_upper": ci[:, 1],
    }, index=L.index).reset_index()
    return emm


def pairwise_time_within_group(
    fit: Dict[str, Any],
    time_col: str,
    group_col: str,
    time_levels: Sequence[str],
) -> pd.DataFrame:
    """
    Post-hoc comparison of the time levels within each group.

    For every group the contrast ``time_levels[1] - time_levels[0]`` of the
    estimated marginal means is tested with a Wald z-test. There is a single
    contrast per group, so no multiplicity adjustment is applied.

    Returns:
        DataFrame with group, contrast, estimate, std_error, z_value, p_value.
    """
    result = fit["result"]
    L = _cell_contrast_matrix(fit, time_col, group_col)

    first, second = str(time_levels[0]), str(time_levels[1])
    groups = list(L.index.get_level_values("group").unique())
    C = pd.DataFrame(
        [L.loc[(second, g)] - L.loc[(first, g)] for g in groups],
        columns=L.columns,
    )
    test = result.t_test(_padded_contrast(result, C))

    return pd.DataFrame({
        "group": groups,
        "contrast": f"{second} - {first}",
        "estimate": np.asarray(test.effect).ravel(),
        "std_error": np.asarray(test.sd).ravel(),
        "z_value": np.asarray(test.statistic).ravel(),
        "p_value": np.asarray(test.pvalue).ravel(),
    })


def model_comparison(fits: Dict[str, Dict[str, Any]]) -> pd.DataFrame:
    """Tabulate sample size and information criteria of the fitted models."""
    records = []
    for name, fit in fits.items():
        result = fit["result"]
        records.append({
            "model": name,
            "outcome": fit["outcome"],
            "n_obs": int(result.nobs),
            "n_subjects": len(result.model.group_labels),
            "log_likelihood": result.llf,
            "aic": result.aic,
            "bic": result.bic,
            "converged": bool(result.converged),
        })
    return pd.DataFrame(records).set_index("model")


def fit_all_models(
    df: pd.DataFrame,
    model_specs: List[Dict[str, Any]],
    group_col: str,
    time_col: str,
    subject_col: str,
    time_levels: Sequence[str],
    alpha: float = 0.05,
) -> Dict[str, Dict[str, Any]]:
    """
    Fit every configured model in order.

    Each fit record is extended with its coefficient table and, for
    specs with ``posthoc`` set, the marginal means and the within-group
    time contrasts.

    Args:
        df: Typed observation table
        model_specs: Specs from nmes_config.get_model_specs()
        group_col: Treatment group column
        time_col: Time column
        subject_col: Subject identifier column
        time_levels: Ordered time levels
        alpha: Significance level for confidence intervals

    Returns:
        Dict mapping model name to fit record, in config order.
    """
    logger.info("=" * 60)
    logger.info("MIXED MODELS")
    logger.info("=" * 60)

    fits: Dict[str, Dict[str, Any]] = {}
    for spec in model_specs:
        name = spec["name"]
        try:
            fit = fit_mixed_model(
                df,
                outcome=spec["outcome"],
                covariates=spec["covariates"],
                group_col=group_col,
                time_col=time_col,
                subject_col=subject_col,
            )
        except Exception as e:
            logger.error(f"Model '{name}' failed: {e}")
            raise

        fit["name"] = name
        fit["family"] = spec.get("family")
        fit["coefficients"] = coefficient_table(fit["result"], alpha=alpha)
        logger.info(f"\n[{name}]\n" + fit["coefficients"].round(4).to_string())

        if spec.get("posthoc"):
            fit["marginal_means"] = estimated_marginal_means(fit, time_col, group_col, alpha=alpha)
            fit["contrasts"] = pairwise_time_within_group(fit, time_col, group_col, time_levels)
            logger.info(f"\n[{name}] post-hoc\n" + fit["contrasts"].round(4).to_string(index=False))

        fits[name] = fit

    return fits


def get_contrast_p(fit: Dict[str, Any], group: str) -> Optional[float]:
    """Return the within-group time contrast p-value of a fit, if computed."""
    contrasts = fit.get("contrasts")
    if contrasts is None:
        return None
    match = contrasts[contrasts["group"].astype(str) == str(group)]
    if match.empty:
        return None
    return float(match["p_value"].iloc[0])
