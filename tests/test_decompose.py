"""
test_decompose.py - Tests for slope/intercept decomposition of coefficients
"""

import numpy as np
import pytest

from libsize.data.config import MissingBaselineError
from libsize.modelling.decompose import decompose, effect_sizes_frame
from libsize.modelling.glm import FittedModel


def _model(coefs: dict, degenerate=()) -> FittedModel:
    """A FittedModel carrying only the given coefficients."""
    names = list(coefs)
    values = np.array([coefs[n] for n in names], dtype=float)
    one = np.ones(1)
    return FittedModel(
        coefficient_names=names,
        coefficients=values,
        standard_errors=np.full(len(names), np.nan),
        fitted=one,
        residuals=0 * one,
        pearson_residuals=0 * one,
        deviance_residuals=0 * one,
        deviance=0.0,
        pearson_chi2=0.0,
        loglik=0.0,
        df_resid=0,
        rank=len(names),
        n_iter=1,
        response=one,
        design=np.ones((1, len(names))),
        degenerate=list(degenerate),
        sample_id="S1",
    )


class TestDecompose:
    def test_slope_and_intercept(self):
        """slope = exp(b_cell + b_interaction), intercept = exp(b_region)."""
        model = _model({
            "ncells": 0.1,
            "region=A": np.log(200),
            "region=B": np.log(50),
            "ncells:region=B": -0.05,
        })
        effects = {e.region: e for e in decompose(model)}

        assert effects["A"].slope == pytest.approx(np.exp(0.1))
        assert effects["A"].intercept == pytest.approx(200)
        assert effects["B"].slope == pytest.approx(np.exp(0.05))
        assert effects["B"].intercept == pytest.approx(50)

    def test_regions_in_coefficient_order(self):
        model = _model({"ncells": 0.0, "region=Z": 0.0, "region=A": 0.0})
        assert [e.region for e in decompose(model)] == ["Z", "A"]

    def test_other_covariates_ignored(self):
        """FOV terms and three-way names do not create regions or change values."""
        base = {"ncells": 0.2, "region=A": 1.0, "region=B": 2.0, "ncells:region=B": 0.3}
        extended = dict(base)
        extended.update({
            "fov=2": 5.0,
            "ncells:fov=2": 5.0,
            "region=B:fov=2": 5.0,
            "ncells:region=B:fov=2": 5.0,
        })
        plain = decompose(_model(base))
        with_fov = decompose(_model(extended))

        assert [e.region for e in with_fov] == ["A", "B"]
        for a, b in zip(plain, with_fov):
            assert a.slope == pytest.approx(b.slope)
            assert a.intercept == pytest.approx(b.intercept)

    def test_interaction_without_main_effect_defaults_to_zero(self):
        """A region present only through its interaction gets intercept exp(0) = 1."""
        model = _model({"ncells": 0.5, "ncells:region=Q": 0.25})
        effects = decompose(model)
        assert effects[0].region == "Q"
        assert effects[0].intercept == pytest.approx(1.0)
        assert effects[0].slope == pytest.approx(np.exp(0.75))

    def test_missing_baseline(self):
        model = _model({"region=A": 1.0, "ncells:region=A": 0.1})
        with pytest.raises(MissingBaselineError):
            decompose(model)

    def test_not_estimable(self):
        model = _model({"ncells": 0.1, "region=A": 1.0, "region=B": np.nan})
        effects = {e.region: e for e in decompose(model)}
        assert effects["A"].estimable
        assert not effects["B"].estimable
        assert np.isnan(effects["B"].intercept)

    def test_degenerate_not_estimable(self):
        model = _model({"ncells": 0.1, "region=A": 1.0, "region=B": -40.0}, degenerate=["region=B"])
        effects = {e.region: e for e in decompose(model)}
        assert not effects["B"].estimable

    def test_custom_covariate_names(self):
        model = _model({"cells": 0.1, "zone=A": 1.0})
        effects = decompose(model, cell_covariate="cells", region_covariate="zone")
        assert effects[0].region == "A"

    def test_frame(self):
        model = _model({"ncells": 0.1, "region=A": 1.0, "region=B": 2.0})
        frame = effect_sizes_frame(decompose(model))
        assert list(frame.columns) == ["sample_id", "region", "slope", "intercept", "estimable"]
        assert frame["sample_id"].tolist() == ["S1", "S1"]
