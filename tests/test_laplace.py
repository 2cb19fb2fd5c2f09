import warnings

import numpy as np
import pandas as pd
import pytest
from scipy import stats
from scipy.integrate import trapezoid
from scipy.linalg import cho_solve
from scipy.special import expit

from bayes_misclass.families import get_family
from bayes_misclass.laplace import (
    LaplaceConfig,
    LaplaceGLM,
    curvature_cholesky,
    design_matrix,
    fit_model,
    theta_scale,
)
from bayes_misclass.types import ModelSpec


@pytest.fixture(scope="module")
def gaussian_data():
    rng = np.random.default_rng(123)
    n = 2000
    x = rng.integers(0, 2, size=n).astype(float)
    z = rng.normal(size=n)
    y = 1.0 + 0.8 * x - 0.5 * z + rng.normal(0.0, 0.5, size=n)
    return pd.DataFrame({"y": y, "x": x, "z": z})


@pytest.fixture(scope="module")
def gaussian_fit(gaussian_data):
    spec = ModelSpec(response="y", covariates=["x", "z"], family="gaussian")
    return fit_model(gaussian_data, spec)


def test_gaussian_log_evidence_matches_multivariate_normal():
    rng = np.random.default_rng(0)
    n, p = 15, 2
    X = np.column_stack([np.ones(n), rng.normal(size=n)])
    y = rng.normal(size=n)
    q = np.array([0.5, 2.0])
    theta = 0.3
    tau = np.exp(theta)

    log_ev, _, _ = LaplaceGLM.gaussian_log_evidence(theta, X.T @ X, X.T @ y, float(y @ y), n, q)
    cov = X @ np.diag(1.0 / q) @ X.T + np.eye(n) / tau
    expected = stats.multivariate_normal(mean=np.zeros(n), cov=cov).logpdf(y)
    assert log_ev == pytest.approx(expected, abs=1e-8)


def test_gaussian_posterior_close_to_least_squares(gaussian_data, gaussian_fit):
    X = np.column_stack([np.ones(len(gaussian_data)), gaussian_data[["x", "z"]].to_numpy()])
    y = gaussian_data["y"].to_numpy()
    coef, *_ = np.linalg.lstsq(X, y, rcond=None)

    summary = gaussian_fit.summary_fixed()
    np.testing.assert_allclose(summary["mean"].to_numpy(), coef, atol=1e-3)
    assert gaussian_fit.names == ["(Intercept)", "x", "z"]
    assert gaussian_fit.n_used == len(gaussian_data)
    assert gaussian_fit.precision.mean() == pytest.approx(4.0, rel=0.1)
    hyper = gaussian_fit.summary_hyperpar()
    assert hyper.index[0] == "precision for the Gaussian observations"


def test_gaussian_marginal_likelihood_matches_direct_integration():
    rng = np.random.default_rng(5)
    n = 40
    data = pd.DataFrame({"z": rng.normal(size=n)})
    data["y"] = 0.5 + 1.0 * data["z"] + rng.normal(0.0, 0.7, size=n)
    spec = ModelSpec(response="y", covariates=["z"], family="gaussian")
    fit = fit_model(data, spec)

    X, y, _, _, _ = design_matrix(data, spec)
    q = np.full(2, 0.001)
    centre = np.log(fit.precision.mean())
    thetas = np.linspace(centre - 3.0, centre + 3.0, 4001)
    log_f = np.array([
        LaplaceGLM.gaussian_log_evidence(t, X.T @ X, X.T @ y, float(y @ y), n, q)[0]
        + stats.gamma.logpdf(np.exp(t), a=1.0, scale=1.0 / 5e-5) + t
        for t in thetas
    ])
    peak = log_f.max()
    direct = peak + np.log(trapezoid(np.exp(log_f - peak), thetas))
    assert fit.mlik == pytest.approx(direct, abs=5e-3)


def test_binomial_laplace_marginal_likelihood_intercept_only():
    rng = np.random.default_rng(9)
    n = 200
    y = (rng.random(n) < 0.3).astype(float)
    data = pd.DataFrame({"y": y})
    fit = fit_model(data, ModelSpec(response="y", covariates=[], family="binomial"))

    k = y.sum()
    bs = np.linspace(-6.0, 4.0, 40001)
    log_f = k * bs - n * np.logaddexp(0.0, bs) + stats.norm.logpdf(bs, 0.0, 1.0 / np.sqrt(0.001))
    peak = log_f.max()
    direct = peak + np.log(trapezoid(np.exp(log_f - peak), bs))
    assert fit.mlik == pytest.approx(direct, abs=0.02)
    assert fit.mode[0] == pytest.approx(np.log(k / (n - k)), abs=0.01)


def test_logistic_mode_solves_score_equation():
    rng = np.random.default_rng(3)
    n = 800
    z = rng.normal(size=n)
    x = rng.integers(0, 2, size=n).astype(float)
    y = (rng.random(n) < expit(-0.5 + x + 0.7 * z)).astype(float)
    data = pd.DataFrame({"y": y, "x": x, "z": z})
    fit = fit_model(data, ModelSpec(response="y", covariates=["x", "z"], family="binomial"))

    X = np.column_stack([np.ones(n), x, z])
    score = X.T @ (y - expit(X @ fit.mode)) - 0.001 * fit.mode
    np.testing.assert_allclose(score, 0.0, atol=1e-5)
    assert fit.converged
    assert np.all(np.linalg.eigvalsh(fit.cov) > 0)


def test_sslogit_without_error_equals_logit():
    rng = np.random.default_rng(4)
    n = 500
    z = rng.normal(size=n)
    y = (rng.random(n) < expit(0.2 + 0.9 * z)).astype(float)
    data = pd.DataFrame({"y": y, "z": z})
    logit = fit_model(data, ModelSpec(response="y", covariates=["z"], family="binomial"))
    ss = fit_model(
        data,
        ModelSpec(response="y", covariates=["z"], family="binomial", link="sslogit",
                  sensitivity=1.0, specificity=1.0),
    )
    np.testing.assert_allclose(ss.mode, logit.mode, atol=1e-6)
    assert ss.mlik == pytest.approx(logit.mlik, abs=1e-6)
    assert ss.link == "sslogit"


def test_poisson_with_offset_recovers_coefficients():
    rng = np.random.default_rng(6)
    n = 3000
    z = rng.normal(size=n)
    t = rng.uniform(0.5, 2.0, size=n)
    y = rng.poisson(t * np.exp(0.3 + 0.5 * z)).astype(float)
    data = pd.DataFrame({"y": y, "z": z, "log_t": np.log(t)})
    fit = fit_model(data, ModelSpec(response="y", covariates=["z"], family="poisson", offset="log_t"))
    np.testing.assert_allclose(fit.mode, [0.3, 0.5], atol=0.06)


def test_design_matrix_categorical_and_complete_case():
    data = pd.DataFrame({
        "y": [1.0, 2.0, np.nan, 4.0, 5.0],
        "g": [0.0, 1.0, 2.0, 2.0, np.nan],
        "z": [0.1, 0.2, 0.3, 0.4, 0.5],
    })
    spec = ModelSpec(response="y", covariates=["g", "z"], categorical={"g": 3})
    X, y, names, used, aux = design_matrix(data, spec)
    assert names == ["(Intercept)", "g[1]", "g[2]", "z"]
    np.testing.assert_array_equal(used, [True, True, False, True, False])
    np.testing.assert_allclose(X[:, 1:3], [[0, 0], [1, 0], [0, 1]])
    np.testing.assert_allclose(y, [1.0, 2.0, 4.0])
    np.testing.assert_allclose(aux["ntrials"], 1.0)
    np.testing.assert_allclose(aux["offset"], 0.0)


def test_fit_errors():
    data = pd.DataFrame({"y": [np.nan, np.nan], "z": [1.0, 2.0]})
    with pytest.raises(ValueError, match="no complete cases"):
        fit_model(data, ModelSpec(response="y", covariates=["z"]))

    data = pd.DataFrame({"y": [0.0, 2.0], "z": [1.0, 2.0]})
    with pytest.raises(ValueError):
        fit_model(data, ModelSpec(response="y", covariates=["z"], family="binomial"))

    with pytest.raises(ValueError):
        fit_model(data, ModelSpec(response="y", covariates=["missing_column"]))

    with pytest.raises(ValueError):
        LaplaceConfig(n_grid=2)


SSLOGIT_NOISY = ModelSpec(
    response="y", covariates=["z"], family="binomial", link="sslogit", sensitivity=0.7, specificity=0.6
)


@pytest.mark.parametrize("seed", range(40))
def test_sslogit_converges_under_heavy_misclassification(seed):
    rng = np.random.default_rng(seed)
    n = 30
    z = rng.normal(size=n)
    y_true = rng.random(n) < expit(1.5 * z)
    y = np.where(y_true, rng.random(n) < 0.7, rng.random(n) < 0.4).astype(float)
    data = pd.DataFrame({"y": y, "z": z})

    with warnings.catch_warnings():
        warnings.filterwarnings("error", message=".*did not converge")
        fit = fit_model(data, SSLOGIT_NOISY)

    assert fit.converged
    X = np.column_stack([np.ones(n), z])
    aux = {"sensitivity": 0.7, "specificity": 0.6}
    _, g, _ = get_family("binomial", "sslogit").derivs(y, X @ fit.mode, aux)
    np.testing.assert_allclose(X.T @ g - 0.001 * fit.mode, 0.0, atol=1e-5)
    assert np.all(np.linalg.eigvalsh(fit.cov) > 0)


def test_max_iter_exhaustion_warns():
    rng = np.random.default_rng(3)
    n = 300
    z = rng.normal(size=n)
    y = (rng.random(n) < expit(-0.5 + 0.7 * z)).astype(float)
    data = pd.DataFrame({"y": y, "z": z})
    spec = ModelSpec(response="y", covariates=["z"], family="binomial")

    with pytest.warns(RuntimeWarning, match="did not converge in 1 Newton"):
        fit = fit_model(data, spec, LaplaceConfig(max_iter=1))
    assert not fit.converged
    assert fit.n_iter == 1


def test_failed_step_halving_raises():
    # the first full Newton step from zero overshoots exp(eta) by many orders of magnitude
    data = pd.DataFrame({"y": np.full(5, 50.0)})
    spec = ModelSpec(response="y", covariates=[], family="poisson")
    with pytest.raises(RuntimeError, match="step halving"):
        fit_model(data, spec, LaplaceConfig(max_halvings=1))

    fit = fit_model(data, spec)
    assert fit.converged
    assert fit.mode[0] == pytest.approx(np.log(50.0), abs=1e-3)


def test_curvature_falls_back_to_fisher_weights():
    X = np.column_stack([np.ones(4), [-1.0, 0.0, 0.5, 2.0]])
    q = np.array([0.001, 0.001])
    fisher = np.array([0.2, 0.25, 0.24, 0.1])

    chol, used_fisher = curvature_cholesky(X, np.array([-0.3, -0.1, 0.05, -0.2]), fisher, q)
    assert used_fisher
    H = X.T @ np.diag(fisher) @ X + np.diag(q)
    np.testing.assert_allclose(cho_solve(chol, np.eye(2)), np.linalg.inv(H), rtol=1e-8)

    _, used_fisher = curvature_cholesky(X, fisher * 2.0, fisher, q)
    assert not used_fisher


def test_theta_scale_widens_step_on_flat_top():
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        assert theta_scale(lambda t: -0.5 * (t - 1.0) ** 2 / 0.04, 1.0) == pytest.approx(0.2, rel=1e-4)
        # flat within +-0.005, so only the wider steps see the curvature
        assert theta_scale(lambda t: -max(abs(t) - 0.005, 0.0) ** 2, 0.0) == pytest.approx(np.sqrt(2.0))


def test_theta_scale_warns_when_not_concave():
    with pytest.warns(RuntimeWarning, match="not concave"):
        assert theta_scale(lambda t: 0.0, 0.3) == 1.0
