import numpy as np
import pytest
from scipy.integrate import trapezoid
from scipy.stats import norm

from bayes_misclass.types import (
    SUMMARY_COLUMNS,
    GaussianMixtureMarginal,
    ModelSpec,
    PrecisionMarginal,
    summarize_marginals,
)


def test_single_component_matches_normal():
    m = GaussianMixtureMarginal.gaussian(1.5, 0.4)
    assert m.mean() == pytest.approx(1.5)
    assert m.sd() == pytest.approx(0.4)
    assert m.quantile(0.975) == pytest.approx(norm.ppf(0.975, 1.5, 0.4))
    assert m.cdf(1.5) == pytest.approx(0.5)


def test_mixture_moments_and_quantiles():
    m = GaussianMixtureMarginal([1.0, 3.0], [0.0, 2.0], [1.0, 0.5])
    assert m.weights.sum() == pytest.approx(1.0)
    assert m.mean() == pytest.approx(1.5)
    second = 0.25 * (1.0 + 0.0) + 0.75 * (0.25 + 4.0)
    assert m.sd() == pytest.approx(np.sqrt(second - 1.5 ** 2))
    for p in (0.025, 0.5, 0.975):
        assert float(m.cdf(m.quantile(p))) == pytest.approx(p, abs=1e-8)


def test_combine_and_compact():
    a = GaussianMixtureMarginal.gaussian(0.0, 1.0)
    b = GaussianMixtureMarginal.gaussian(4.0, 1.0)
    combined = GaussianMixtureMarginal.combine([a, b], [0.5, 0.5])
    assert combined.n_components == 2
    assert combined.mean() == pytest.approx(2.0)

    lopsided = GaussianMixtureMarginal.combine([a, b], [1.0, 1e-14]).compact(1e-10)
    assert lopsided.n_components == 1
    assert lopsided.mean() == pytest.approx(0.0)


def test_mixture_validation():
    with pytest.raises(ValueError):
        GaussianMixtureMarginal([1.0], [0.0], [0.0])
    with pytest.raises(ValueError):
        GaussianMixtureMarginal([1.0, 1.0], [0.0], [1.0])
    with pytest.raises(ValueError):
        GaussianMixtureMarginal.gaussian(0.0, 1.0).quantile(1.0)


def test_density_grid_integrates_to_one():
    m = GaussianMixtureMarginal([0.3, 0.7], [-1.0, 1.0], [0.5, 0.8])
    xs, dens = m.density_grid(2000, lower=1e-6, upper=1 - 1e-6)
    assert trapezoid(dens, xs) == pytest.approx(1.0, abs=1e-3)


def test_precision_marginal_sorted_summary():
    pm = PrecisionMarginal([3.0, 1.0, 2.0], [1.0, 1.0, 2.0])
    np.testing.assert_allclose(pm.values, [1.0, 2.0, 3.0])
    np.testing.assert_allclose(pm.weights, [0.25, 0.5, 0.25])
    assert pm.mean() == pytest.approx(2.0)
    assert pm.quantile(0.5) == 2.0
    assert list(pm.summary()) == SUMMARY_COLUMNS

    both = PrecisionMarginal.combine([pm, PrecisionMarginal([10.0], [1.0])], [0.5, 0.5])
    assert both.mean() == pytest.approx(6.0)


def test_summarize_marginals_layout():
    df = summarize_marginals({"a": GaussianMixtureMarginal.gaussian(0.0, 1.0)})
    assert list(df.columns) == SUMMARY_COLUMNS
    assert df.loc["a", "0.5quant"] == pytest.approx(0.0)


def test_model_spec_validation():
    with pytest.raises(ValueError):
        ModelSpec(response="y", covariates=["y"])
    with pytest.raises(ValueError):
        ModelSpec(response="y", covariates=["x"], family="gaussian", link="sslogit")
    with pytest.raises(ValueError):
        ModelSpec(response="y", covariates=["x"], family="binomial", link="sslogit",
                  sensitivity=0.4, specificity=0.5)
    with pytest.raises(ValueError):
        ModelSpec(response="y", covariates=["x"], prior_precision=0.0)


def test_model_spec_helpers():
    spec = ModelSpec(response="y", covariates=["x", "z"], family="binomial")
    swapped = spec.with_response("y_true", link="sslogit")
    assert (swapped.response, swapped.link) == ("y_true", "sslogit")
    assert (spec.response, spec.link) == ("y", "default")
    assert spec.with_response("y_true").link == spec.link
