import numpy as np
import pandas as pd
import pytest

from nmes_analysis.utils import (
    format_p_value,
    quote_term,
    safe_filename,
    standard_error,
    validate_observation_table,
)


def test_quote_term():
    assert quote_term("Age") == "Age"
    assert quote_term("6MWT") == 'Q("6MWT")'
    assert quote_term("GNG_RT") == "GNG_RT"


def test_validate_observation_table_reports_every_missing_column():
    df = pd.DataFrame({"ID": [1]})
    errors = validate_observation_table(df, ["ID", "Group", "Time"])
    assert errors == ["Missing required column: Group", "Missing required column: Time"]


def test_validate_empty_table():
    errors = validate_observation_table(pd.DataFrame({"ID": []}), ["ID"])
    assert errors == ["Data table is empty"]


def test_standard_error():
    values = pd.Series([1.0, 2.0, 3.0, 4.0, np.nan])
    assert standard_error(values) == pytest.approx(np.std([1, 2, 3, 4], ddof=1) / 2)
    assert np.isnan(standard_error(pd.Series([1.0])))


def test_format_p_value():
    assert format_p_value(0.0123) == "p = 0.012"
    assert format_p_value(0.0002) == "p < 0.001"
    assert format_p_value(float("nan")) == "p = n/a"


def test_safe_filename():
    assert safe_filename("switching errors/v2") == "switching_errors_v2"
