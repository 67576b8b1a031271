import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT_DIR))

from nmes_analysis.nmes_config import get_columns, load_config  # noqa: E402
from nmes_analysis.preprocessing import coerce_types  # noqa: E402

OUTCOME_MEANS = {
    "6MWT": 250.0,
    "5XSTS": 18.0,
    "Tinetti": 20.0,
    "TUG_DT": 25.0,
    "RT": 700.0,
    "ACC": 85.0,
    "GNG_RT": 550.0,
    "SW_ERR": 6.0,
}

SUBSCORES = ["TFA_AA", "TFA_B", "TFA_E", "TFA_IC", "TFA_OC", "TFA_PE", "TFA_SE", "TFA_GA"]


def make_study_table(n_subjects=20, effects=None, acceptability_shift=0, seed=0):
    """
    Synthetic observation table: n_subjects x (Pre, Post).

    ``effects`` maps outcome -> extra Post change for the NMES group. Every
    subject draws its own change noise, so an outcome without an injected
    effect has a true interaction of zero but a non-zero estimate.
    """
    effects = effects or {}
    rng = np.random.default_rng(seed)
    half = n_subjects // 2

    subjects = pd.DataFrame({
        "ID": [f"S{i + 1:02d}" for i in range(n_subjects)],
        "Group": ["Control"] * half + ["NMES"] * (n_subjects - half),
        "Age": rng.normal(80, 5, n_subjects).round(0),
        "Sex": ["M" if i % 2 == 0 else "F" for i in range(n_subjects)],
        "Education": rng.normal(8, 3, n_subjects).round(0),
        "BMI": rng.normal(25, 3, n_subjects).round(1),
        "Handedness": ["L" if i % 5 == 0 else "R" for i in range(n_subjects)],
    })

    pre = subjects.assign(Time="Pre")
    post = subjects.assign(Time="Post")
    is_nmes = (subjects["Group"] == "NMES").to_numpy()

    for outcome, mu in OUTCOME_MEANS.items():
        scale = mu * 0.05
        subject_effect = rng.normal(0, 3 * scale, n_subjects)
        pre_noise = rng.normal(0, scale, n_subjects)
        change_noise = rng.normal(0, scale, n_subjects)

        baseline = mu + subject_effect + 0.1 * scale * (subjects["Age"].to_numpy() - 80) + pre_noise
        change = 0.5 * scale + change_noise + effects.get(outcome, 0.0) * is_nmes

        pre[outcome] = baseline
        post[outcome] = baseline + change

    for col in SUBSCORES:
        scores = rng.integers(2, 5, n_subjects) + acceptability_shift * is_nmes
        scores = np.clip(scores, 1, 5)
        pre[col] = scores
        post[col] = scores
    pre["TFA_Total"] = pre[SUBSCORES].sum(axis=1)
    post["TFA_Total"] = pre["TFA_Total"]

    table = pd.concat([pre, post], ignore_index=True)
    return table.sort_values(["ID", "Time"], ascending=[True, False]).reset_index(drop=True)


@pytest.fixture
def config():
    cfg, _, _ = load_config()
    return cfg


@pytest.fixture
def columns(config):
    return get_columns(config)


@pytest.fixture
def raw_table():
    return make_study_table()


@pytest.fixture
def study_table(raw_table, columns):
    return coerce_types(raw_table, columns, ["Pre", "Post"], ["Control", "NMES"])
