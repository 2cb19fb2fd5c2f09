import numpy as np
import pytest
from scipy import stats

from bayes_misclass.families import get_family
from bayes_misclass.kernels import (
    bernoulli_sslogit_derivs,
    binomial_logit_derivs,
    expit_scalar,
    log1pexp_scalar,
    poisson_log_derivs,
)


ETA = np.array([-2.0, -0.3, 0.0, 0.7, 1.9])


def _numeric_derivs(fn, eta, h=1e-5):
    """Central differences of sum-loglik and of the kernel gradient, per coordinate."""
    grad = np.empty(eta.size)
    neg_hess = np.empty(eta.size)
    for i in range(eta.size):
        up, down = eta.copy(), eta.copy()
        up[i] += h
        down[i] -= h
        ll_up, g_up, _ = fn(up)
        ll_down, g_down, _ = fn(down)
        grad[i] = (ll_up - ll_down) / (2.0 * h)
        neg_hess[i] = -(g_up[i] - g_down[i]) / (2.0 * h)
    return grad, neg_hess


KERNELS = {
    "binomial": lambda eta: binomial_logit_derivs(
        np.array([0.0, 2.0, 1.0, 3.0, 5.0]), eta, np.array([3.0, 4.0, 2.0, 3.0, 5.0])
    ),
    "sslogit": lambda eta: bernoulli_sslogit_derivs(np.array([0.0, 1.0, 1.0, 0.0, 1.0]), eta, 0.85, 0.9),
    "poisson": lambda eta: poisson_log_derivs(np.array([0.0, 1.0, 3.0, 2.0, 7.0]), eta),
}


@pytest.mark.parametrize("name", sorted(KERNELS))
def test_kernel_derivatives_match_finite_differences(name):
    fn = KERNELS[name]
    _, grad, neg_hess = fn(ETA.copy())
    num_grad, num_neg_hess = _numeric_derivs(fn, ETA.copy())
    np.testing.assert_allclose(grad, num_grad, rtol=1e-5, atol=1e-6)
    np.testing.assert_allclose(neg_hess, num_neg_hess, rtol=1e-4, atol=1e-5)


def test_kernels_include_normalizing_constants():
    counts = np.array([0.0, 2.0, 1.0, 3.0, 5.0])
    trials = np.array([3.0, 4.0, 2.0, 3.0, 5.0])
    ll, _, _ = binomial_logit_derivs(counts, ETA, trials)
    p = 1.0 / (1.0 + np.exp(-ETA))
    assert ll == pytest.approx(stats.binom.logpmf(counts, trials, p).sum())

    counts = np.array([0.0, 1.0, 3.0, 2.0, 7.0])
    ll, _, _ = poisson_log_derivs(counts, ETA)
    assert ll == pytest.approx(stats.poisson.logpmf(counts, np.exp(ETA)).sum())


def test_sslogit_without_error_equals_logit():
    y = np.array([0.0, 1.0, 1.0, 0.0, 1.0])
    ll_ss, g_ss, h_ss = bernoulli_sslogit_derivs(y, ETA, 1.0, 1.0)
    ll_lo, g_lo, h_lo = binomial_logit_derivs(y, ETA, np.ones(5))
    assert ll_ss == pytest.approx(ll_lo, rel=1e-12)
    np.testing.assert_allclose(g_ss, g_lo, rtol=1e-10)
    np.testing.assert_allclose(h_ss, h_lo, rtol=1e-10)


def test_scalar_helpers_are_stable():
    assert expit_scalar(800.0) == 1.0
    assert expit_scalar(-800.0) == 0.0
    assert log1pexp_scalar(1000.0) == 1000.0
    assert log1pexp_scalar(0.0) == pytest.approx(np.log(2.0))


@pytest.mark.parametrize(
    "family, link, y, aux",
    [
        ("binomial", "logit", np.array([0.0, 2.0, 1.0, 3.0, 5.0]), {"ntrials": np.array([3.0, 4.0, 2.0, 3.0, 5.0])}),
        ("binomial", "sslogit", np.array([0.0, 1.0, 1.0, 0.0, 1.0]), {"sensitivity": 0.85, "specificity": 0.9}),
        ("poisson", "log", np.array([0.0, 1.0, 3.0, 2.0, 7.0]), {}),
    ],
)
def test_per_observation_loglik_sums_to_kernel(family, link, y, aux):
    fam = get_family(family, link)
    ll, _, _ = fam.derivs(y, ETA, aux)
    assert np.sum(fam.loglik_obs(y, ETA, aux)) == pytest.approx(ll, rel=1e-10)


def test_gaussian_loglik_obs_matches_normal_density():
    y = np.array([-1.5, 0.2, 0.4, 1.0, 2.5])
    fam = get_family("gaussian")
    np.testing.assert_allclose(fam.loglik_obs(y, ETA, {"tau": 4.0}), stats.norm.logpdf(y, ETA, 0.5))


@pytest.mark.parametrize(
    "family, link, y, aux",
    [
        ("binomial", "logit", np.array([0.0, 2.0, 1.0, 3.0, 5.0]), {"ntrials": np.array([3.0, 4.0, 2.0, 3.0, 5.0])}),
        ("poisson", "log", np.array([0.0, 1.0, 3.0, 2.0, 7.0]), {}),
    ],
)
def test_fisher_weights_equal_observed_curvature_for_canonical_links(family, link, y, aux):
    fam = get_family(family, link)
    _, _, neg_hess = fam.derivs(y, ETA, aux)
    np.testing.assert_allclose(fam.fisher_weights(ETA, aux), neg_hess, rtol=1e-10)


def test_sslogit_fisher_weights_are_expected_curvature():
    fam = get_family("binomial", "sslogit")
    aux = {"sensitivity": 0.7, "specificity": 0.6}
    q = fam.inverse_link(ETA, aux)
    _, _, h1 = fam.derivs(np.ones(ETA.size), ETA, aux)
    _, _, h0 = fam.derivs(np.zeros(ETA.size), ETA, aux)
    fisher = fam.fisher_weights(ETA, aux)
    np.testing.assert_allclose(fisher, q * h1 + (1.0 - q) * h0, rtol=1e-8)
    assert np.all(fisher > 0)
    # observed curvature can be negative where the fisher weight is not
    assert np.any(h0 < 0) or np.any(h1 < 0)
