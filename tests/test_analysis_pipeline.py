import copy

import pandas as pd
import pytest

from conftest import make_study_table
from nmes_analysis.analysis_pipeline import (
    _switching_p_label,
    create_plots,
    preprocess,
    required_columns,
    run_pipeline,
)

INTERACTION = "Time[T.Post]:Group[T.NMES]"


@pytest.fixture
def study_dir(tmp_path):
    raw = make_study_table(effects={"6MWT": 60.0}, acceptability_shift=1)
    raw.to_excel(tmp_path / "NMES.xlsx", index=False)
    return tmp_path


def _low_dpi(config):
    cfg = copy.deepcopy(config)
    cfg["plots"]["dpi"] = 50
    return cfg


def _switching_fits():
    contrasts = pd.DataFrame({
        "group": ["Control", "NMES"],
        "contrast": ["Post - Pre", "Post - Pre"],
        "p_value": [0.4, 0.012],
    })
    return {"switching_errors": {"outcome": "SW_ERR", "contrasts": contrasts}}


def test_switching_label_from_within_group_contrast():
    settings = {"column": "SW_ERR", "p_label": None, "bracket": [2, 3]}
    assert _switching_p_label(settings, _switching_fits(), ["Control", "NMES"]) == "p = 0.012"

    settings["bracket"] = [0, 1]
    assert _switching_p_label(settings, _switching_fits(), ["Control", "NMES"]) == "p = 0.400"


def test_switching_label_between_groups_needs_manual_label():
    settings = {"column": "SW_ERR", "p_label": None, "bracket": [1, 3]}
    assert _switching_p_label(settings, _switching_fits(), ["Control", "NMES"]) is None

    settings["p_label"] = "p = 0.03"
    assert _switching_p_label(settings, _switching_fits(), ["Control", "NMES"]) == "p = 0.03"


def test_required_columns_cover_model_terms(config):
    required = required_columns(config)
    for col in ["ID", "Group", "Time", "6MWT", "SW_ERR", "Age", "Sex", "BMI", "Education"]:
        assert col in required
    assert len(required) == len(set(required))


def test_preprocess_outputs(raw_table, config):
    prep = preprocess(raw_table, config)
    assert prep["group_counts"]["n"].sum() == len(raw_table)
    assert (prep["missingness"]["missing_pct"] == 0).all()
    assert set(prep["baseline"]["group"]) == {"Control", "NMES"}


def test_create_plots_writes_composite_inputs(study_table, config, tmp_path):
    cfg = _low_dpi(config)
    saved = create_plots(study_table, cfg, tmp_path)
    names = {p.name for p in saved}
    assert {"5XSTS.png", "6mwt.png", "Tinetti.png", "TUG_DT.png"} <= names
    assert "acceptability_radar.png" in names
    assert "switching_errors.png" in names


def test_end_to_end(study_dir, config):
    cfg = _low_dpi(config)
    results = run_pipeline(cfg, study_dir)

    fits = results["fits"]
    assert len(fits) == 7

    # injected Post x NMES effect on walk distance only
    walk_p = fits["walk_distance"]["coefficients"].loc[INTERACTION, "p_value"]
    balance_p = fits["balance"]["coefficients"].loc[INTERACTION, "p_value"]
    assert walk_p < 0.05
    assert walk_p < balance_p

    combined = study_dir / "outputs" / "figures" / "combined_figure.png"
    assert combined.exists()
    assert combined.resolve() in [p.resolve() for p in results["figures"]]

    results_dir = study_dir / "outputs" / "results"
    for stem in ["missingness", "group_counts", "model_coefficients", "diagnostics", "acceptability_tests"]:
        assert (results_dir / f"{stem}.csv").exists()

    coefs = pd.read_csv(results_dir / "model_coefficients.csv")
    assert len(coefs) == sum(len(f["coefficients"]) for f in fits.values())

    posthoc = pd.read_csv(results_dir / "posthoc_contrasts.csv")
    assert set(posthoc["model"]) == {"switching_errors"}
    assert len(posthoc) == 2


def test_missing_data_file(tmp_path, config):
    with pytest.raises(FileNotFoundError):
        run_pipeline(config, tmp_path)
