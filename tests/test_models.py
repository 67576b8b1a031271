import numpy as np
import pytest

from conftest import make_study_table
from nmes_analysis.models import (
    build_formula,
    coefficient_table,
    estimated_marginal_means,
    fit_all_models,
    fit_mixed_model,
    model_comparison,
    pairwise_time_within_group,
)
from nmes_analysis.nmes_config import get_model_specs
from nmes_analysis.preprocessing import coerce_types


def _fit(table, outcome="SW_ERR", covariates=("Age", "Sex", "Education")):
    return fit_mixed_model(
        table,
        outcome=outcome,
        covariates=list(covariates),
        group_col="Group",
        time_col="Time",
        subject_col="ID",
    )


def test_build_formula_quotes_numeric_names():
    formula = build_formula("6MWT", ["Age", "Sex", "BMI"], "Time", "Group")
    assert formula == 'Q("6MWT") ~ Time * Group + Age + Sex + BMI'


def test_coefficient_table_one_row_per_term(study_table):
    fit = _fit(study_table, "6MWT", ("Age", "Sex", "BMI"))
    table = coefficient_table(fit["result"])

    assert list(table.index) == [
        "Intercept",
        "Time[T.Post]",
        "Group[T.NMES]",
        "Time[T.Post]:Group[T.NMES]",
        "Age",
        "Sex[T.M]",
        "BMI",
    ]
    assert list(table.columns) == ["estimate", "std_error", "z_value", "p_value", "ci_lower", "ci_upper"]
    assert ((table["p_value"] >= 0) & (table["p_value"] <= 1)).all()


def test_wald_intervals_bracket_estimates(study_table):
    table = coefficient_table(_fit(study_table)["result"], alpha=0.05)
    assert (table["ci_lower"] < table["estimate"]).all()
    assert (table["estimate"] < table["ci_upper"]).all()
    half_width = table["ci_upper"] - table["estimate"]
    assert np.allclose(half_width, 1.959964 * table["std_error"], rtol=1e-4)


def test_fit_uses_maximum_likelihood(study_table):
    result = _fit(study_table)["result"]
    # statsmodels reports no AIC for REML fits
    assert np.isfinite(result.aic)
    assert np.isfinite(result.bic)


def test_fit_drops_incomplete_rows(study_table):
    table = study_table.copy()
    table.loc[:1, "SW_ERR"] = np.nan
    fit = _fit(table)
    assert int(fit["result"].nobs) == len(table) - 2
    assert len(fit["data"]) == len(table) - 2


def test_pairwise_contrasts_match_coefficients(study_table):
    fit = _fit(study_table)
    coefs = fit["result"].fe_params
    contrasts = pairwise_time_within_group(fit, "Time", "Group", ["Pre", "Post"]).set_index("group")

    assert list(contrasts.index) == ["Control", "NMES"]
    assert contrasts.loc["Control", "estimate"] == pytest.approx(coefs["Time[T.Post]"], rel=1e-6)
    assert contrasts.loc["NMES", "estimate"] == pytest.approx(
        coefs["Time[T.Post]"] + coefs["Time[T.Post]:Group[T.NMES]"], rel=1e-6
    )
    assert (contrasts["contrast"] == "Post - Pre").all()


def test_reference_group_contrast_matches_time_coefficient_test(study_table):
    # Post - Pre in the reference group is exactly the Time[T.Post] coefficient
    fit = _fit(study_table)
    coefs = coefficient_table(fit["result"])
    control = pairwise_time_within_group(fit, "Time", "Group", ["Pre", "Post"]).set_index("group").loc["Control"]

    assert control["std_error"] == pytest.approx(coefs.loc["Time[T.Post]", "std_error"], rel=1e-6)
    assert control["z_value"] == pytest.approx(coefs.loc["Time[T.Post]", "z_value"], rel=1e-6)
    assert control["p_value"] == pytest.approx(coefs.loc["Time[T.Post]", "p_value"], rel=1e-6)


def test_marginal_mean_intervals_are_normal_wald(study_table):
    emm = estimated_marginal_means(_fit(study_table), "Time", "Group", alpha=0.05)
    half_width = (emm["ci_upper"] - emm["ci_lower"]) / 2
    assert np.allclose(half_width, 1.959964 * emm["std_error"], rtol=1e-5)
    assert np.allclose((emm["ci_upper"] + emm["ci_lower"]) / 2, emm["emmean"])


def test_marginal_means_cover_all_cells(study_table):
    emm = estimated_marginal_means(_fit(study_table), "Time", "Group")
    assert len(emm) == 4
    assert set(zip(emm["time"], emm["group"])) == {
        ("Pre", "Control"), ("Post", "Control"), ("Pre", "NMES"), ("Post", "NMES"),
    }
    assert ((emm["ci_lower"] < emm["emmean"]) & (emm["emmean"] < emm["ci_upper"])).all()


def test_marginal_mean_differences_follow_contrasts(study_table):
    fit = _fit(study_table)
    emm = estimated_marginal_means(fit, "Time", "Group").set_index(["time", "group"])
    contrasts = pairwise_time_within_group(fit, "Time", "Group", ["Pre", "Post"]).set_index("group")
    diff = emm.loc[("Post", "NMES"), "emmean"] - emm.loc[("Pre", "NMES"), "emmean"]
    assert diff == pytest.approx(contrasts.loc["NMES", "estimate"], rel=1e-6)


def test_injected_interaction_detected(columns):
    raw = make_study_table(effects={"SW_ERR": 5.0})
    table = coerce_types(raw, columns, ["Pre", "Post"], ["Control", "NMES"])
    p = coefficient_table(_fit(table)["result"]).loc["Time[T.Post]:Group[T.NMES]", "p_value"]
    assert p < 0.05


def test_no_interaction_rejection_rate_near_alpha(columns):
    # true interaction is zero, so rejections stay near the nominal 5%
    p_values = []
    for seed in range(40):
        raw = make_study_table(seed=seed)
        table = coerce_types(raw, columns, ["Pre", "Post"], ["Control", "NMES"])
        coefs = coefficient_table(_fit(table)["result"])
        p_values.append(coefs.loc["Time[T.Post]:Group[T.NMES]", "p_value"])

    p_values = np.array(p_values)
    assert (p_values < 0.05).sum() <= 10
    assert p_values.mean() > 0.3


def test_fit_all_models_in_config_order(study_table, config):
    specs = get_model_specs(config)
    fits = fit_all_models(study_table, specs, "Group", "Time", "ID", ["Pre", "Post"])

    assert list(fits) == [s["name"] for s in specs]
    for spec in specs:
        fit = fits[spec["name"]]
        assert len(fit["coefficients"]) == 4 + len(spec["covariates"])
        assert ("contrasts" in fit) == spec["posthoc"]

    comparison = model_comparison(fits)
    assert list(comparison.index) == list(fits)
    assert (comparison["n_obs"] == len(study_table)).all()
