"""Numba kernels for per-observation likelihood derivatives.

Every ``*_derivs`` kernel returns ``(loglik_sum, grad, neg_hess)`` where ``grad`` and
``neg_hess`` are derivatives of each observation's log-likelihood with respect
to its linear predictor eta. Normalizing constants are included so the Laplace
marginal likelihood is comparable across refits.
"""

from __future__ import annotations

import math

import numpy as np

try:
    from numba import njit
except Exception as exc:  # pragma: no cover
    raise RuntimeError(
        "Numba is required for the likelihood kernels. Install numba to use bayes_misclass."
    ) from exc


@njit(cache=True)
def expit_scalar(x: float) -> float:
    if x >= 0.0:
        return 1.0 / (1.0 + math.exp(-x))
    e = math.exp(x)
    return e / (1.0 + e)


@njit(cache=True)
def log1pexp_scalar(x: float) -> float:
    # log(1 + exp(x)) without overflow
    if x > 35.0:
        return x
    if x < -35.0:
        return math.exp(x)
    return math.log1p(math.exp(x))


@njit(cache=True)
def binomial_logit_derivs(y: np.ndarray, eta: np.ndarray, ntrials: np.ndarray):
    n = y.shape[0]
    grad = np.empty(n)
    neg_hess = np.empty(n)
    ll = 0.0
    for i in range(n):
        m = ntrials[i]
        p = expit_scalar(eta[i])
        ll += y[i] * eta[i] - m * log1pexp_scalar(eta[i])
        ll += math.lgamma(m + 1.0) - math.lgamma(y[i] + 1.0) - math.lgamma(m - y[i] + 1.0)
        grad[i] = y[i] - m * p
        neg_hess[i] = m * p * (1.0 - p)
    return ll, grad, neg_hess


@njit(cache=True)
def bernoulli_sslogit_derivs(y: np.ndarray, eta: np.ndarray, sens: float, spec: float):
    """Bernoulli likelihood with q = (1 - spec) + (sens + spec - 1) * expit(eta).

    neg_hess is the observed curvature and may be negative away from the mode.
    """
    n = y.shape[0]
    grad = np.empty(n)
    neg_hess = np.empty(n)
    c = sens + spec - 1.0
    ll = 0.0
    for i in range(n):
        p = expit_scalar(eta[i])
        q = (1.0 - spec) + c * p
        if q < 1e-300:
            q = 1e-300
        if q > 1.0 - 1e-16:
            q = 1.0 - 1e-16
        dq = c * p * (1.0 - p)
        d2q = dq * (1.0 - 2.0 * p)
        if y[i] > 0.5:
            ll += math.log(q)
            r = 1.0 / q
            dr = -1.0 / (q * q)
        else:
            ll += math.log1p(-q)
            r = -1.0 / (1.0 - q)
            dr = -1.0 / ((1.0 - q) * (1.0 - q))
        grad[i] = r * dq
        neg_hess[i] = -(dr * dq * dq + r * d2q)
    return ll, grad, neg_hess


@njit(cache=True)
def bernoulli_sslogit_fisher(eta: np.ndarray, sens: float, spec: float):
    """Expected curvature dq^2 / (q (1 - q)); positive wherever the link is not flat."""
    n = eta.shape[0]
    out = np.empty(n)
    c = sens + spec - 1.0
    for i in range(n):
        p = expit_scalar(eta[i])
        q = (1.0 - spec) + c * p
        if q < 1e-300:
            q = 1e-300
        if q > 1.0 - 1e-16:
            q = 1.0 - 1e-16
        dq = c * p * (1.0 - p)
        out[i] = dq * dq / (q * (1.0 - q))
    return out


@njit(cache=True)
def poisson_log_derivs(y: np.ndarray, eta: np.ndarray):
    n = y.shape[0]
    grad = np.empty(n)
    neg_hess = np.empty(n)
    ll = 0.0
    for i in range(n):
        mu = math.exp(eta[i])
        ll += y[i] * eta[i] - mu - math.lgamma(y[i] + 1.0)
        grad[i] = y[i] - mu
        neg_hess[i] = mu
    return ll, grad, neg_hess
