"""
Laplace-approximate Bayesian GLM (the inference engine).

Fixed effects get independent Gaussian priors. For the binomial and Poisson
families the posterior is approximated by a Gaussian at the mode and the
marginal likelihood by the Laplace formula. For the Gaussian family the model
is exactly Gaussian given the noise precision tau, so theta = log(tau) is
integrated on a grid around its posterior mode:

    p(y) ~= sum_k p(y | theta_k) p(theta_k) * d_theta

and each fixed-effect marginal is a Gaussian mixture over the grid.
"""

from __future__ import annotations

import math
import warnings
from dataclasses import dataclass
from typing import Dict, List, Tuple

import numpy as np
import pandas as pd
from scipy.linalg import LinAlgError, cho_factor, cho_solve
from scipy.optimize import minimize_scalar
from scipy.special import gammaln, logsumexp

from .families import get_family
from .types import FitResult, GaussianMixtureMarginal, ModelSpec, PrecisionMarginal


_LOG_2PI = math.log(2.0 * math.pi)


@dataclass
class LaplaceConfig:
    """Settings for the Laplace fitter."""
    max_iter: int = 100
    tol: float = 1e-8
    max_halvings: int = 30
    n_grid: int = 25
    grid_width: float = 4.0
    min_weight: float = 1e-10

    def __post_init__(self):
        if self.max_iter <= 0:
            raise ValueError("max_iter must be positive")
        if self.tol <= 0:
            raise ValueError("tol must be positive")
        if self.n_grid < 3:
            raise ValueError("n_grid must be >= 3")
        if self.grid_width <= 0:
            raise ValueError("grid_width must be positive")


def design_columns(spec: ModelSpec) -> List[str]:
    """Names of the fixed effects in design-matrix order."""
    names = ["(Intercept)"] if spec.intercept else []
    for c in spec.covariates:
        K = int(spec.categorical.get(c, 0))
        if K > 2:
            names.extend(f"{c}[{k}]" for k in range(1, K))
        else:
            names.append(c)
    return names


def design_matrix(data: pd.DataFrame, spec: ModelSpec) -> Tuple[np.ndarray, np.ndarray, List[str], np.ndarray, Dict]:
    """Build (X, y, names, used_mask, aux) for complete cases of the model columns.

    Rows with a missing response or covariate are dropped, so missing
    responses simply do not enter the likelihood.
    """
    needed = [spec.response] + list(spec.covariates)
    for extra in (spec.ntrials, spec.offset):
        if extra is not None:
            needed.append(extra)
    missing_cols = [c for c in needed if c not in data.columns]
    if missing_cols:
        raise ValueError(f"data is missing columns: {missing_cols}")

    used = data[needed].notna().all(axis=1).to_numpy()
    df = data.loc[used]
    n = int(used.sum())

    cols = [np.ones(n)] if spec.intercept else []
    for c in spec.covariates:
        values = df[c].to_numpy(dtype=float)
        K = int(spec.categorical.get(c, 0))
        if K > 2:
            if np.any((values != np.round(values)) | (values < 0) | (values >= K)):
                raise ValueError(f"categorical column '{c}' must hold codes 0..{K - 1}")
            for k in range(1, K):
                cols.append((values == k).astype(float))
        else:
            cols.append(values)
    X = np.column_stack(cols) if cols else np.empty((n, 0))
    y = df[spec.response].to_numpy(dtype=float)

    aux = {
        "ntrials": df[spec.ntrials].to_numpy(dtype=float) if spec.ntrials else np.ones(n),
        "offset": df[spec.offset].to_numpy(dtype=float) if spec.offset else np.zeros(n),
        "sensitivity": float(spec.sensitivity),
        "specificity": float(spec.specificity),
    }
    return X, y, design_columns(spec), used, aux


def prior_precision_vector(spec: ModelSpec, p: int) -> np.ndarray:
    q = np.full(p, float(spec.prior_precision))
    if spec.intercept and p > 0:
        q[0] = float(spec.prior_precision_intercept)
    return q


def _chol_logdet(c_and_lower) -> float:
    c, _ = c_and_lower
    return 2.0 * float(np.sum(np.log(np.diag(c))))


def curvature_cholesky(X: np.ndarray, neg_hess: np.ndarray, fisher: np.ndarray, q: np.ndarray):
    """Cholesky factor of X' diag(neg_hess) X + diag(q).

    Falls back to the expected (Fisher) weights when the observed curvature is
    not positive definite. Returns ``(cho_factor, used_fisher)``.
    """
    try:
        return cho_factor((X * neg_hess[:, None]).T @ X + np.diag(q)), False
    except LinAlgError:
        return cho_factor((X * fisher[:, None]).T @ X + np.diag(q)), True


def theta_scale(log_joint, theta_hat: float, steps=(1e-3, 1e-2, 1e-1)) -> float:
    """Curvature-based posterior sd of theta, widening the difference step if needed.

    A flat or convex log density at every step falls back to 1.0 with a warning.
    """
    f0 = log_joint(theta_hat)
    for h in steps:
        d2 = (log_joint(theta_hat + h) - 2.0 * f0 + log_joint(theta_hat - h)) / (h * h)
        if np.isfinite(d2) and d2 < 0:
            return 1.0 / math.sqrt(-d2)
    warnings.warn(
        f"log p(theta | y) is not concave at theta={theta_hat:.4g}; using unit grid scale",
        RuntimeWarning,
        stacklevel=2,
    )
    return 1.0


class LaplaceGLM:
    """Fit a fixed-effects Bayesian GLM and report marginals and the marginal likelihood."""

    def __init__(self, spec: ModelSpec, config: LaplaceConfig = None):
        self.spec = spec
        self.config = config if config is not None else LaplaceConfig()
        self.family = get_family(spec.family, spec.link)

    def fit(self, data: pd.DataFrame) -> FitResult:
        X, y, names, used, aux = design_matrix(data, self.spec)
        if y.size == 0:
            raise ValueError("no complete cases to fit")
        self.family.validate_response(y, aux)
        q = prior_precision_vector(self.spec, X.shape[1])
        if self.family.has_precision:
            return self._fit_gaussian(X, y, names, aux, q)
        return self._fit_newton(X, y, names, aux, q)

    # ------------------------------------------------------------------
    # Non-Gaussian families: Newton mode + Laplace
    # ------------------------------------------------------------------
    def _log_post(self, beta, X, y, aux, q):
        eta = X @ beta + aux["offset"]
        ll, g, w = self.family.derivs(y, eta, aux)
        return float(ll) - 0.5 * float(np.sum(q * beta * beta)), float(ll), g, w

    def _fit_newton(self, X, y, names, aux, q) -> FitResult:
        cfg = self.config
        p = X.shape[1]
        beta = np.zeros(p)
        lp, ll, g, w = self._log_post(beta, X, y, aux, q)
        converged = False
        it = 0

        for it in range(1, cfg.max_iter + 1):
            grad = X.T @ g - q * beta
            fisher = self.family.fisher_weights(X @ beta + aux["offset"], aux)
            chol, _ = curvature_cholesky(X, w, fisher, q)
            step = cho_solve(chol, grad)

            scale = 1.0 + float(np.max(np.abs(beta)))
            t = 1.0
            for _ in range(cfg.max_halvings):
                cand = beta + t * step
                lp_new, ll_new, g_new, w_new = self._log_post(cand, X, y, aux, q)
                if np.isfinite(lp_new) and lp_new >= lp - 1e-10 * (1.0 + abs(lp)):
                    break
                t *= 0.5
            else:
                if float(np.max(np.abs(step))) < math.sqrt(cfg.tol) * scale:
                    converged = True
                    break
                raise RuntimeError("Newton step halving failed to improve the log posterior")

            delta = cand - beta
            beta, lp, ll, g, w = cand, lp_new, ll_new, g_new, w_new
            if float(np.max(np.abs(delta))) < cfg.tol * scale:
                converged = True
                break

        if not converged:
            warnings.warn(
                f"{self.family.name}/{self.family.link} fit did not converge in {cfg.max_iter} Newton iterations",
                RuntimeWarning,
                stacklevel=3,
            )

        fisher = self.family.fisher_weights(X @ beta + aux["offset"], aux)
        chol, _ = curvature_cholesky(X, w, fisher, q)

        cov = cho_solve(chol, np.eye(p))
        mlik = lp + 0.5 * float(np.sum(np.log(q))) - 0.5 * _chol_logdet(chol)
        sds = np.sqrt(np.diag(cov))
        marginals = {
            name: GaussianMixtureMarginal.gaussian(float(beta[j]), float(sds[j]))
            for j, name in enumerate(names)
        }
        return FitResult(
            family=self.family.name,
            link=self.family.link,
            names=list(names),
            marginals=marginals,
            mlik=float(mlik),
            mode=beta,
            cov=cov,
            n_used=int(y.size),
            converged=converged,
            n_iter=int(it),
        )

    # ------------------------------------------------------------------
    # Gaussian family: exact conditional on tau, grid over log(tau)
    # ------------------------------------------------------------------
    @staticmethod
    def gaussian_log_evidence(theta: float, XtX, Xty, yty: float, n: int, q) -> Tuple[float, np.ndarray, Tuple]:
        """log p(y | theta) with beta integrated out, plus the conditional mean and Cholesky factor."""
        tau = math.exp(theta)
        H = tau * XtX + np.diag(q)
        chol = cho_factor(H)
        b = tau * Xty
        m = cho_solve(chol, b)
        log_ev = (
            0.5 * n * (theta - _LOG_2PI)
            - 0.5 * tau * yty
            + 0.5 * float(np.sum(np.log(q)))
            - 0.5 * _chol_logdet(chol)
            + 0.5 * float(m @ b)
        )
        return float(log_ev), m, chol

    def _log_prior_theta(self, theta: float) -> float:
        shape, rate = self.spec.precision_prior
        return float(shape * math.log(rate) - gammaln(shape) + shape * theta - rate * math.exp(theta))

    def _fit_gaussian(self, X, y, names, aux, q) -> FitResult:
        cfg = self.config
        n, p = X.shape
        r = y - aux["offset"]
        XtX = X.T @ X
        Xty = X.T @ r
        yty = float(r @ r)

        def log_joint(theta: float) -> float:
            return self.gaussian_log_evidence(theta, XtX, Xty, yty, n, q)[0] + self._log_prior_theta(theta)

        if p > 0:
            coef = np.linalg.lstsq(X, r, rcond=None)[0]
            resid = r - X @ coef
        else:
            resid = r
        s2 = max(float(np.mean(resid * resid)), 1e-12)
        theta0 = -math.log(s2)

        opt = minimize_scalar(
            lambda t: -log_joint(t),
            bounds=(theta0 - 12.0, theta0 + 12.0),
            method="bounded",
            options={"xatol": 1e-8},
        )
        theta_hat = float(opt.x)

        sd_theta = theta_scale(log_joint, theta_hat)

        thetas = theta_hat + sd_theta * np.linspace(-cfg.grid_width, cfg.grid_width, cfg.n_grid)
        d_theta = float(thetas[1] - thetas[0])

        log_f = np.empty(cfg.n_grid)
        means = np.empty((cfg.n_grid, p))
        sds = np.empty((cfg.n_grid, p))
        for k, theta in enumerate(thetas):
            log_ev, m, chol = self.gaussian_log_evidence(float(theta), XtX, Xty, yty, n, q)
            log_f[k] = log_ev + self._log_prior_theta(float(theta))
            means[k] = m
            sds[k] = np.sqrt(np.diag(cho_solve(chol, np.eye(p))))

        mlik = float(logsumexp(log_f) + math.log(d_theta))
        grid_w = np.exp(log_f - logsumexp(log_f))

        marginals = {
            name: GaussianMixtureMarginal(grid_w, means[:, j], sds[:, j]).compact(cfg.min_weight)
            for j, name in enumerate(names)
        }

        _, m_hat, chol_hat = self.gaussian_log_evidence(theta_hat, XtX, Xty, yty, n, q)
        return FitResult(
            family=self.family.name,
            link=self.family.link,
            names=list(names),
            marginals=marginals,
            mlik=mlik,
            mode=m_hat,
            cov=cho_solve(chol_hat, np.eye(p)),
            n_used=int(n),
            converged=bool(opt.success),
            precision=PrecisionMarginal(np.exp(thetas), grid_w),
            n_iter=int(getattr(opt, "nfev", 0)),
        )


def fit_model(data: pd.DataFrame, spec: ModelSpec, config: LaplaceConfig = None) -> FitResult:
    """Convenience wrapper: LaplaceGLM(spec, config).fit(data)."""
    return LaplaceGLM(spec, config).fit(data)
