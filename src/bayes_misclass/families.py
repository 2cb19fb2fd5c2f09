from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Protocol, Tuple

import numpy as np
from scipy.special import expit, gammaln, log_expit

from .kernels import (
    bernoulli_sslogit_derivs,
    bernoulli_sslogit_fisher,
    binomial_logit_derivs,
    poisson_log_derivs,
)


class Family(Protocol):
    """A response family. Families without a precision are fitted by Newton
    iterations and so also provide ``derivs`` and ``fisher_weights``; the
    Gaussian family is integrated in closed form and needs neither.
    """

    name: str
    link: str
    has_precision: bool

    def derivs(self, y: np.ndarray, eta: np.ndarray, aux: Dict) -> Tuple[float, np.ndarray, np.ndarray]:
        ...

    def fisher_weights(self, eta: np.ndarray, aux: Dict) -> np.ndarray:
        ...

    def inverse_link(self, eta: np.ndarray, aux: Dict) -> np.ndarray:
        ...

    def loglik_obs(self, y: np.ndarray, eta: np.ndarray, aux: Dict) -> np.ndarray:
        ...

    def validate_response(self, y: np.ndarray, aux: Dict) -> None:
        ...


@dataclass(frozen=True)
class GaussianIdentity:
    name: str = "gaussian"
    link: str = "identity"
    has_precision: bool = True

    def inverse_link(self, eta, aux):
        return np.asarray(eta, dtype=float)

    def loglik_obs(self, y, eta, aux):
        tau = float(aux["tau"])
        r = np.asarray(y, dtype=float) - np.asarray(eta, dtype=float)
        return 0.5 * (np.log(tau) - np.log(2.0 * np.pi)) - 0.5 * tau * r * r

    def validate_response(self, y, aux):
        return None


@dataclass(frozen=True)
class BinomialLogit:
    name: str = "binomial"
    link: str = "logit"
    has_precision: bool = False

    def derivs(self, y, eta, aux):
        return binomial_logit_derivs(y, eta, aux["ntrials"])

    def fisher_weights(self, eta, aux):
        p = expit(np.asarray(eta, dtype=float))
        return aux["ntrials"] * p * (1.0 - p)

    def inverse_link(self, eta, aux):
        return expit(np.asarray(eta, dtype=float))

    def loglik_obs(self, y, eta, aux):
        m = aux["ntrials"]
        eta = np.asarray(eta, dtype=float)
        return (
            y * log_expit(eta) + (m - y) * log_expit(-eta)
            + gammaln(m + 1.0) - gammaln(y + 1.0) - gammaln(m - y + 1.0)
        )

    def validate_response(self, y, aux):
        ntrials = aux["ntrials"]
        if np.any(y < 0) or np.any(y > ntrials) or np.any(y != np.round(y)):
            raise ValueError("binomial response must be integer counts in [0, ntrials]")


@dataclass(frozen=True)
class BernoulliSSLogit:
    """Logit model for a binary response observed with known sensitivity/specificity."""

    name: str = "binomial"
    link: str = "sslogit"
    has_precision: bool = False

    def derivs(self, y, eta, aux):
        return bernoulli_sslogit_derivs(y, eta, float(aux["sensitivity"]), float(aux["specificity"]))

    def fisher_weights(self, eta, aux):
        eta = np.ascontiguousarray(eta, dtype=float)
        return bernoulli_sslogit_fisher(eta, float(aux["sensitivity"]), float(aux["specificity"]))

    def inverse_link(self, eta, aux):
        sens = float(aux["sensitivity"])
        spec = float(aux["specificity"])
        return (1.0 - spec) + (sens + spec - 1.0) * expit(np.asarray(eta, dtype=float))

    def loglik_obs(self, y, eta, aux):
        q = np.clip(self.inverse_link(eta, aux), 1e-300, 1.0 - 1e-16)
        return np.where(y > 0.5, np.log(q), np.log1p(-q))

    def validate_response(self, y, aux):
        if np.any((y != 0.0) & (y != 1.0)):
            raise ValueError("sslogit link requires a binary (0/1) response")
        if np.any(aux["ntrials"] != 1.0):
            raise ValueError("sslogit link only supports Bernoulli trials")


@dataclass(frozen=True)
class PoissonLog:
    name: str = "poisson"
    link: str = "log"
    has_precision: bool = False

    def derivs(self, y, eta, aux):
        return poisson_log_derivs(y, eta)

    def fisher_weights(self, eta, aux):
        return np.exp(np.asarray(eta, dtype=float))

    def inverse_link(self, eta, aux):
        return np.exp(np.asarray(eta, dtype=float))

    def loglik_obs(self, y, eta, aux):
        eta = np.asarray(eta, dtype=float)
        return y * eta - np.exp(eta) - gammaln(y + 1.0)

    def validate_response(self, y, aux):
        if np.any(y < 0) or np.any(y != np.round(y)):
            raise ValueError("poisson response must be nonnegative integer counts")


FAMILIES: Dict[Tuple[str, str], Family] = {
    ("gaussian", "identity"): GaussianIdentity(),
    ("binomial", "logit"): BinomialLogit(),
    ("binomial", "sslogit"): BernoulliSSLogit(),
    ("poisson", "log"): PoissonLog(),
}

DEFAULT_LINKS = {
    "gaussian": "identity",
    "binomial": "logit",
    "poisson": "log",
}


def get_family(name: str, link: str = "default") -> Family:
    if name not in DEFAULT_LINKS:
        raise ValueError(f"Unknown family '{name}' (expected one of {sorted(DEFAULT_LINKS)})")
    if link == "default":
        link = DEFAULT_LINKS[name]
    key = (name, link)
    if key not in FAMILIES:
        raise ValueError(f"Link '{link}' is not available for family '{name}'")
    return FAMILIES[key]
