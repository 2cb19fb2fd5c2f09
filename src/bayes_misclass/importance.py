"""
Importance-sampling correction for a misclassified or missing categorical covariate.

Model:
    y   | x, z, theta  ~  model of interest (any family in families.py)
    x   | z, alpha     ~  baseline-category logit exposure model
    w   | x            ~  misclassification matrix M[x, w]   (w may be missing)

Each iteration draws alpha_k from its (Gaussian) prior and a complete latent
covariate x_k ~ P(x | w, z, alpha_k), refits the model of interest with x_k,
and weights the fit by

    log w_k = log p(y | x_k) + sum_i log P(w_i | z_i, alpha_k)

where log p(y | x_k) is the fit's marginal likelihood. Self-normalized weights
then combine the conditional posterior marginals into mixtures.

With ``proposal="response"`` the latent draws also condition on y through a
pilot estimate of the model of interest,

    q(x_i = j) ~ P(x_i = j | w_i, z_i, alpha_k) * p(y_i | x_i = j, theta_pilot),

and the weight gains the correction sum_i log P(x_i | w_i, z_i, alpha_k) - log q(x_i).
The pilot starts at the naive fit and is refined by short adaptation rounds.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from scipy.special import logsumexp

from .families import get_family
from .laplace import LaplaceConfig, LaplaceGLM, design_matrix
from .misclassification import (
    conditional_true_probabilities,
    exposure_probabilities,
    sample_categories,
    validate_misclassification_matrix,
)
from .types import (
    SUMMARY_COLUMNS,
    FitResult,
    GaussianMixtureMarginal,
    ModelSpec,
    PrecisionMarginal,
    summarize_marginals,
)


@dataclass
class ExposureModel:
    """Misclassification and exposure model for the error-prone covariate.

    Attributes:
        true_variable: Name of the latent true covariate in the model of interest
        observed_variable: Column holding the observed, error-prone version (NaN if missing)
        covariates: Error-free covariates of the exposure model (intercept added)
        misclassification_matrix: M[j, k] = P(observed = k | true = j)
        alpha_mean: Exposure coefficients, shape (K-1, 1 + len(covariates))
        alpha_sd: Prior sd of the coefficients (same shape); zero keeps them fixed
    """
    true_variable: str
    observed_variable: str
    covariates: List[str]
    misclassification_matrix: np.ndarray
    alpha_mean: np.ndarray
    alpha_sd: Optional[np.ndarray] = None

    def __post_init__(self):
        self.covariates = list(self.covariates)
        self.misclassification_matrix = validate_misclassification_matrix(self.misclassification_matrix)
        K = self.n_categories
        shape = (K - 1, 1 + len(self.covariates))

        self.alpha_mean = np.asarray(self.alpha_mean, dtype=float).reshape(-1)
        if self.alpha_mean.size != shape[0] * shape[1]:
            raise ValueError(f"alpha_mean must have {shape[0] * shape[1]} entries (shape {shape})")
        self.alpha_mean = self.alpha_mean.reshape(shape)

        if self.alpha_sd is None:
            self.alpha_sd = np.zeros(shape)
        else:
            sd = np.asarray(self.alpha_sd, dtype=float)
            if sd.size == shape[0] * shape[1]:
                sd = sd.reshape(shape)
            elif sd.size == 1:
                sd = np.full(shape, float(sd.reshape(-1)[0]))
            else:
                raise ValueError(f"alpha_sd must be a scalar or have {shape[0] * shape[1]} entries")
            self.alpha_sd = sd
        if np.any(self.alpha_sd < 0):
            raise ValueError("alpha_sd must be nonnegative")
        if self.true_variable == self.observed_variable:
            raise ValueError("true_variable and observed_variable must differ")
        if self.true_variable in self.covariates or self.observed_variable in self.covariates:
            raise ValueError("exposure covariates cannot include the error-prone variable")

    @property
    def n_categories(self) -> int:
        return int(self.misclassification_matrix.shape[0])

    @property
    def alpha_is_random(self) -> bool:
        return bool(np.any(self.alpha_sd > 0))

    def design(self, data: pd.DataFrame) -> np.ndarray:
        missing_cols = [c for c in self.covariates + [self.observed_variable] if c not in data.columns]
        if missing_cols:
            raise ValueError(f"data is missing columns: {missing_cols}")
        if self.covariates:
            Zc = data[self.covariates].to_numpy(dtype=float)
            if np.any(~np.isfinite(Zc)):
                raise ValueError("exposure covariates must be fully observed")
            return np.column_stack([np.ones(len(data)), Zc])
        return np.ones((len(data), 1))

    def draw_alpha(self, rng: np.random.Generator) -> np.ndarray:
        if not self.alpha_is_random:
            return self.alpha_mean.copy()
        return self.alpha_mean + self.alpha_sd * rng.standard_normal(self.alpha_mean.shape)


@dataclass
class ISConfig:
    """Importance-sampling run configuration.

    proposal: "exposure" draws x from P(x | w, z) only; "response" also
        conditions on y through a pilot fit (adapt_rounds rounds of
        pilot_iterations draws each refine the pilot before the main run)
    """
    n_iterations: int = 500
    seed: int = 0
    n_jobs: int = 1
    keep_fits: bool = False
    verbose: bool = True
    log_every: int = 100
    proposal: str = "exposure"
    adapt_rounds: int = 1
    pilot_iterations: int = 50

    def __post_init__(self):
        if self.n_iterations <= 0:
            raise ValueError("n_iterations must be positive")
        if self.n_jobs == 0:
            raise ValueError("n_jobs must be nonzero (use -1 for all cores)")
        if self.proposal not in ("exposure", "response"):
            raise ValueError(f"Unknown proposal '{self.proposal}' (expected 'exposure' or 'response')")
        if self.adapt_rounds < 0 or self.pilot_iterations <= 0:
            raise ValueError("adapt_rounds must be >= 0 and pilot_iterations positive")


@dataclass
class ISDraw:
    alpha: np.ndarray
    x: np.ndarray
    log_pw: float
    fit: FitResult


@dataclass
class ISResult:
    """Combined posterior from an importance-sampling run."""
    names: List[str]
    marginals: Dict[str, GaussianMixtureMarginal]
    weights: np.ndarray
    log_weights: np.ndarray
    mliks: np.ndarray
    log_pw: np.ndarray
    alpha_draws: np.ndarray
    x_draws: np.ndarray
    n_categories: int
    true_variable: str
    precision: Optional[PrecisionMarginal] = None
    fits: List[FitResult] = field(default_factory=list)
    proposal: str = "exposure"

    @property
    def n_iterations(self) -> int:
        return int(self.weights.size)

    @property
    def ess(self) -> float:
        return float(1.0 / np.sum(self.weights ** 2))

    @property
    def log_marginal_likelihood(self) -> float:
        """IS estimate of log p(y, w): log of the mean unnormalized weight."""
        return float(logsumexp(self.log_weights) - np.log(self.n_iterations))

    def summary_fixed(self) -> pd.DataFrame:
        return summarize_marginals(self.marginals)

    def summary_hyperpar(self) -> pd.DataFrame:
        if self.precision is None:
            return pd.DataFrame(columns=SUMMARY_COLUMNS)
        return pd.DataFrame.from_dict(
            {"precision for the Gaussian observations": self.precision.summary()},
            orient="index",
            columns=SUMMARY_COLUMNS,
        )

    def alpha_summary(self) -> pd.DataFrame:
        """Weighted posterior mean/sd of the exposure coefficients."""
        flat = self.alpha_draws.reshape(self.n_iterations, -1)
        mean = self.weights @ flat
        sd = np.sqrt(np.maximum(self.weights @ (flat - mean) ** 2, 0.0))
        k1, q = self.alpha_draws.shape[1:]
        index = [f"alpha[{k + 1},{j}]" for k in range(k1) for j in range(q)]
        return pd.DataFrame({"mean": mean, "sd": sd}, index=index)

    def x_posterior(self) -> np.ndarray:
        """Posterior P(x_i = k | data) for every row, shape (n, K)."""
        n = self.x_draws.shape[1]
        probs = np.zeros((n, self.n_categories))
        for k in range(self.n_categories):
            probs[:, k] = self.weights @ (self.x_draws == k).astype(float)
        return probs

    def weight_diagnostics(self) -> Dict[str, float]:
        return {
            "n_iterations": self.n_iterations,
            "ess": self.ess,
            "ess_fraction": self.ess / float(self.n_iterations),
            "max_weight": float(np.max(self.weights)),
            "n_distinct_draws": int(np.unique(self.x_draws, axis=0).shape[0]),
            "log_marginal_likelihood": self.log_marginal_likelihood,
        }


class MisclassImportanceSampler:
    """Importance sampler over the latent true covariate.

    The model of interest must name ``exposure.true_variable`` among its
    covariates; that column is overwritten by each draw.
    """

    def __init__(
        self,
        model_spec: ModelSpec,
        exposure: ExposureModel,
        laplace_config: Optional[LaplaceConfig] = None,
        config: Optional[ISConfig] = None,
    ):
        if exposure.true_variable not in model_spec.covariates:
            raise ValueError(f"'{exposure.true_variable}' must be a covariate of the model of interest")
        if model_spec.response in (exposure.true_variable, exposure.observed_variable):
            raise ValueError("the error-prone variable cannot be the response")
        K = exposure.n_categories
        if K > 2:
            categorical = dict(model_spec.categorical)
            categorical[exposure.true_variable] = K
            model_spec = replace(model_spec, categorical=categorical)

        self.model_spec = model_spec
        self.exposure = exposure
        self.laplace_config = laplace_config if laplace_config is not None else LaplaceConfig()
        self.config = config if config is not None else ISConfig()

    def _run_iteration(
        self,
        data: pd.DataFrame,
        Z: np.ndarray,
        w: np.ndarray,
        seed_seq: np.random.SeedSequence,
        response_loglik: Optional[np.ndarray] = None,
    ) -> ISDraw:
        rng = np.random.default_rng(seed_seq)
        alpha = self.exposure.draw_alpha(rng)
        prior = exposure_probabilities(Z, alpha)
        post, log_norm = conditional_true_probabilities(w, prior, self.exposure.misclassification_matrix)
        log_pw = float(np.sum(log_norm))

        if response_loglik is None:
            x = sample_categories(post, rng)
        else:
            with np.errstate(divide="ignore"):
                log_post = np.log(post)
            log_prop = log_post + response_loglik
            log_prop = log_prop - logsumexp(log_prop, axis=1, keepdims=True)
            x = sample_categories(np.exp(log_prop), rng)
            rows = np.arange(x.size)
            log_pw += float(np.sum(log_post[rows, x] - log_prop[rows, x]))

        work = data.copy()
        work[self.exposure.true_variable] = x.astype(float)
        fit = LaplaceGLM(self.model_spec, self.laplace_config).fit(work)
        return ISDraw(alpha=alpha, x=x.astype(np.int8), log_pw=log_pw, fit=fit)

    def _draw(
        self,
        data: pd.DataFrame,
        Z: np.ndarray,
        w: np.ndarray,
        seeds: List[np.random.SeedSequence],
        response_loglik: Optional[np.ndarray] = None,
        log_progress: bool = True,
    ) -> List[ISDraw]:
        cfg = self.config
        if cfg.n_jobs == 1:
            draws = []
            for k, s in enumerate(seeds):
                draws.append(self._run_iteration(data, Z, w, s, response_loglik))
                if log_progress and cfg.verbose and cfg.log_every and (k + 1) % cfg.log_every == 0:
                    print(f"  iteration {k + 1}/{len(seeds)}", flush=True)
            return draws
        return Parallel(n_jobs=cfg.n_jobs, verbose=5 if (cfg.verbose and log_progress) else 0)(
            delayed(self._run_iteration)(data, Z, w, s, response_loglik) for s in seeds
        )

    def naive_fit(self, data: pd.DataFrame) -> FitResult:
        """Fit the model of interest with the observed covariate in place of the true one."""
        work = data.copy()
        work[self.exposure.true_variable] = work[self.exposure.observed_variable]
        return LaplaceGLM(self.model_spec, self.laplace_config).fit(work)

    def response_loglik(
        self,
        data: pd.DataFrame,
        coefficients: np.ndarray,
        tau: Optional[float] = None,
    ) -> np.ndarray:
        """Per-row log p(y_i | x_i = j, theta) for every category j, shape (n, K).

        Rows outside the model's complete cases get zeros, so their proposal
        reduces to P(x | w, z).
        """
        family = get_family(self.model_spec.family, self.model_spec.link)
        K = self.exposure.n_categories
        out = np.zeros((len(data), K))
        for j in range(K):
            work = data.copy()
            work[self.exposure.true_variable] = float(j)
            X, y, _, used, aux = design_matrix(work, self.model_spec)
            if tau is not None:
                aux["tau"] = float(tau)
            eta = X @ np.asarray(coefficients, dtype=float) + aux["offset"]
            out[used, j] = family.loglik_obs(y, eta, aux)
        return out

    @staticmethod
    def _pilot_parameters(names, marginals, precision):
        coefficients = np.array([marginals[name].mean() for name in names])
        tau = precision.mean() if precision is not None else None
        return coefficients, tau

    def run(self, data: pd.DataFrame) -> ISResult:
        cfg = self.config
        Z = self.exposure.design(data)
        w = data[self.exposure.observed_variable].to_numpy(dtype=float)
        n_pilot = cfg.adapt_rounds * cfg.pilot_iterations if cfg.proposal == "response" else 0
        seeds = np.random.SeedSequence(int(cfg.seed)).spawn(int(cfg.n_iterations) + n_pilot)
        main_seeds, pilot_seeds = seeds[:cfg.n_iterations], seeds[cfg.n_iterations:]

        if cfg.verbose:
            n_missing = int(np.sum(~np.isfinite(w)))
            print(
                f"Importance sampling: {cfg.n_iterations} iterations over {len(data)} rows "
                f"(K={self.exposure.n_categories}, missing {self.exposure.observed_variable}: {n_missing}, "
                f"alpha {'random' if self.exposure.alpha_is_random else 'fixed'}, proposal {cfg.proposal})",
                flush=True,
            )

        response_loglik = None
        if cfg.proposal == "response":
            pilot = self.naive_fit(data)
            coefficients, tau = self._pilot_parameters(pilot.names, pilot.marginals, pilot.precision)
            response_loglik = self.response_loglik(data, coefficients, tau)
            for r in range(cfg.adapt_rounds):
                chunk = pilot_seeds[r * cfg.pilot_iterations:(r + 1) * cfg.pilot_iterations]
                interim = self._combine(
                    self._draw(data, Z, w, chunk, response_loglik, log_progress=False), announce=False
                )
                coefficients, tau = self._pilot_parameters(interim.names, interim.marginals, interim.precision)
                response_loglik = self.response_loglik(data, coefficients, tau)
                if cfg.verbose:
                    print(f"  adaptation round {r + 1}/{cfg.adapt_rounds}: ESS={interim.ess:.1f}", flush=True)

        draws = self._draw(data, Z, w, main_seeds, response_loglik)
        return self._combine(draws)

    def _combine(self, draws: List[ISDraw], announce: bool = True) -> ISResult:
        mliks = np.array([d.fit.mlik for d in draws], dtype=float)
        log_pw = np.array([d.log_pw for d in draws], dtype=float)
        log_weights = mliks + log_pw
        if not np.any(np.isfinite(log_weights)):
            raise RuntimeError("all importance weights are degenerate (non-finite)")
        log_weights = np.where(np.isfinite(log_weights), log_weights, -np.inf)
        weights = np.exp(log_weights - logsumexp(log_weights))

        names = list(draws[0].fit.names)
        min_weight = self.laplace_config.min_weight
        marginals = {
            name: GaussianMixtureMarginal.combine([d.fit.marginals[name] for d in draws], weights).compact(min_weight)
            for name in names
        }

        precision = None
        if draws[0].fit.precision is not None:
            precision = PrecisionMarginal.combine([d.fit.precision for d in draws], weights)

        result = ISResult(
            names=names,
            marginals=marginals,
            weights=weights,
            log_weights=log_weights,
            mliks=mliks,
            log_pw=log_pw,
            alpha_draws=np.stack([d.alpha for d in draws]),
            x_draws=np.stack([d.x for d in draws]),
            n_categories=self.exposure.n_categories,
            true_variable=self.exposure.true_variable,
            precision=precision,
            fits=[d.fit for d in draws] if self.config.keep_fits else [],
            proposal=self.config.proposal,
        )
        if announce and self.config.verbose:
            diag = result.weight_diagnostics()
            print(
                f"Importance sampling complete: ESS={diag['ess']:.1f} "
                f"({100 * diag['ess_fraction']:.1f}%), max weight={diag['max_weight']:.3f}",
                flush=True,
            )
        return result
