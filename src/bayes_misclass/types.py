from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.optimize import brentq
from scipy.special import ndtr
from scipy.stats import norm

from .config import DEFAULT_PRECISION_PRIOR, DEFAULT_PRIOR_PRECISION


SUMMARY_COLUMNS = ["mean", "sd", "0.025quant", "0.5quant", "0.975quant"]


@dataclass
class ModelSpec:
    """Regression model of interest.

    Attributes:
        response: Response column
        covariates: Covariate columns (an intercept is added unless intercept=False)
        family: 'gaussian', 'binomial' or 'poisson'
        link: Link name, or 'default' for the canonical link. 'sslogit' adjusts a
            binomial logit model for response misclassification
        sensitivity: P(observed y = 1 | true y = 1), used by sslogit
        specificity: P(observed y = 0 | true y = 0), used by sslogit
        ntrials: Optional column with binomial trial counts (default 1)
        offset: Optional column added to the linear predictor
        categorical: Columns coded 0..K-1 that are expanded into K-1 dummies
        prior_precision: Precision of the N(0, 1/prec) prior on slopes
        prior_precision_intercept: Precision of the intercept prior
        precision_prior: (shape, rate) of the Gamma prior on the Gaussian noise precision
    """
    response: str
    covariates: List[str]
    family: str = "gaussian"
    link: str = "default"
    sensitivity: float = 1.0
    specificity: float = 1.0
    ntrials: Optional[str] = None
    offset: Optional[str] = None
    intercept: bool = True
    categorical: Dict[str, int] = field(default_factory=dict)
    prior_precision: float = DEFAULT_PRIOR_PRECISION
    prior_precision_intercept: float = DEFAULT_PRIOR_PRECISION
    precision_prior: Tuple[float, float] = DEFAULT_PRECISION_PRIOR

    def __post_init__(self):
        self.covariates = list(self.covariates)
        if self.response in self.covariates:
            raise ValueError("response cannot also be a covariate")
        if len(set(self.covariates)) != len(self.covariates):
            raise ValueError("covariates must be unique")
        if not self.intercept and not self.covariates:
            raise ValueError("model has no fixed effects")
        if self.link == "sslogit":
            if self.family != "binomial":
                raise ValueError("sslogit link requires family='binomial'")
            if not (0.0 < self.sensitivity <= 1.0 and 0.0 < self.specificity <= 1.0):
                raise ValueError("sensitivity and specificity must lie in (0, 1]")
            if self.sensitivity + self.specificity <= 1.0:
                raise ValueError("sslogit requires sensitivity + specificity > 1")
        if self.prior_precision <= 0 or self.prior_precision_intercept <= 0:
            raise ValueError("prior precisions must be positive (the marginal likelihood needs proper priors)")
        shape, rate = self.precision_prior
        if shape <= 0 or rate <= 0:
            raise ValueError("precision_prior must have positive shape and rate")
        for name, K in self.categorical.items():
            if int(K) < 2:
                raise ValueError(f"categorical column '{name}' needs at least 2 levels")

    def with_response(self, response: str, *, link: Optional[str] = None) -> "ModelSpec":
        return replace(self, response=response, link=self.link if link is None else link)


@dataclass
class GaussianMixtureMarginal:
    """Posterior marginal represented as a finite Gaussian mixture."""
    weights: np.ndarray
    means: np.ndarray
    sds: np.ndarray

    def __post_init__(self):
        self.weights = np.atleast_1d(np.asarray(self.weights, dtype=float))
        self.means = np.atleast_1d(np.asarray(self.means, dtype=float))
        self.sds = np.atleast_1d(np.asarray(self.sds, dtype=float))
        if not (self.weights.shape == self.means.shape == self.sds.shape):
            raise ValueError("weights, means and sds must have the same shape")
        if np.any(self.sds <= 0) or np.any(self.weights < 0):
            raise ValueError("mixture sds must be positive and weights nonnegative")
        total = float(self.weights.sum())
        if total <= 0:
            raise ValueError("mixture weights must not all be zero")
        self.weights = self.weights / total

    @classmethod
    def gaussian(cls, mean: float, sd: float) -> "GaussianMixtureMarginal":
        return cls(np.array([1.0]), np.array([mean]), np.array([sd]))

    @classmethod
    def combine(
        cls,
        marginals: Sequence["GaussianMixtureMarginal"],
        weights: Sequence[float],
    ) -> "GaussianMixtureMarginal":
        """Weighted union of mixtures (Bayesian model averaging of marginals)."""
        weights = np.asarray(weights, dtype=float)
        if len(marginals) != weights.size:
            raise ValueError("need one weight per marginal")
        w = np.concatenate([wk * m.weights for wk, m in zip(weights, marginals)])
        mu = np.concatenate([m.means for m in marginals])
        sd = np.concatenate([m.sds for m in marginals])
        return cls(w, mu, sd)

    def compact(self, min_weight: float = 1e-10) -> "GaussianMixtureMarginal":
        keep = self.weights >= float(min_weight) * float(self.weights.max())
        return GaussianMixtureMarginal(self.weights[keep], self.means[keep], self.sds[keep])

    @property
    def n_components(self) -> int:
        return int(self.weights.size)

    def mean(self) -> float:
        return float(np.sum(self.weights * self.means))

    def sd(self) -> float:
        m = self.mean()
        second = float(np.sum(self.weights * (self.sds ** 2 + self.means ** 2)))
        return float(np.sqrt(max(second - m * m, 0.0)))

    def cdf(self, x):
        x = np.asarray(x, dtype=float)
        z = (x[..., None] - self.means) / self.sds
        return np.sum(self.weights * ndtr(z), axis=-1)

    def pdf(self, x):
        x = np.asarray(x, dtype=float)
        z = (x[..., None] - self.means) / self.sds
        dens = np.exp(-0.5 * z * z) / (np.sqrt(2.0 * np.pi) * self.sds)
        return np.sum(self.weights * dens, axis=-1)

    def quantile(self, p: float) -> float:
        p = float(p)
        if not (0.0 < p < 1.0):
            raise ValueError("p must lie in (0, 1)")
        if self.n_components == 1:
            return float(norm.ppf(p, loc=self.means[0], scale=self.sds[0]))
        lo = float(np.min(self.means - 10.0 * self.sds))
        hi = float(np.max(self.means + 10.0 * self.sds))
        return float(brentq(lambda x: float(self.cdf(x)) - p, lo, hi, xtol=1e-10))

    def density_grid(self, n_points: int = 200, *, lower: float = 0.001, upper: float = 0.999) -> Tuple[np.ndarray, np.ndarray]:
        xs = np.linspace(self.quantile(lower), self.quantile(upper), int(n_points))
        return xs, self.pdf(xs)

    def summary(self) -> Dict[str, float]:
        return {
            "mean": self.mean(),
            "sd": self.sd(),
            "0.025quant": self.quantile(0.025),
            "0.5quant": self.quantile(0.5),
            "0.975quant": self.quantile(0.975),
        }


@dataclass
class PrecisionMarginal:
    """Discrete posterior of the Gaussian noise precision on an integration grid."""
    values: np.ndarray
    weights: np.ndarray

    def __post_init__(self):
        self.values = np.atleast_1d(np.asarray(self.values, dtype=float))
        self.weights = np.atleast_1d(np.asarray(self.weights, dtype=float))
        if self.values.shape != self.weights.shape:
            raise ValueError("values and weights must have the same shape")
        order = np.argsort(self.values)
        self.values = self.values[order]
        self.weights = self.weights[order] / float(np.sum(self.weights))

    @classmethod
    def combine(cls, marginals: Sequence["PrecisionMarginal"], weights: Sequence[float]) -> "PrecisionMarginal":
        weights = np.asarray(weights, dtype=float)
        vals = np.concatenate([m.values for m in marginals])
        w = np.concatenate([wk * m.weights for wk, m in zip(weights, marginals)])
        return cls(vals, w)

    def mean(self) -> float:
        return float(np.sum(self.weights * self.values))

    def sd(self) -> float:
        m = self.mean()
        return float(np.sqrt(max(float(np.sum(self.weights * self.values ** 2)) - m * m, 0.0)))

    def quantile(self, p: float) -> float:
        cum = np.cumsum(self.weights)
        idx = int(np.searchsorted(cum, float(p), side="left"))
        return float(self.values[min(idx, self.values.size - 1)])

    def summary(self) -> Dict[str, float]:
        return {
            "mean": self.mean(),
            "sd": self.sd(),
            "0.025quant": self.quantile(0.025),
            "0.5quant": self.quantile(0.5),
            "0.975quant": self.quantile(0.975),
        }


def summarize_marginals(marginals: Dict[str, GaussianMixtureMarginal]) -> pd.DataFrame:
    rows = {name: m.summary() for name, m in marginals.items()}
    return pd.DataFrame.from_dict(rows, orient="index", columns=SUMMARY_COLUMNS)


@dataclass
class FitResult:
    """Output of one Laplace-approximate fit."""
    family: str
    link: str
    names: List[str]
    marginals: Dict[str, GaussianMixtureMarginal]
    mlik: float
    mode: np.ndarray
    cov: np.ndarray
    n_used: int
    converged: bool = True
    precision: Optional[PrecisionMarginal] = None
    n_iter: int = 0

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
