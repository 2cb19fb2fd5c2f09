"""
Data generating processes for misclassification simulations.

The generator produces a single DataFrame holding both the ground truth
(x, y_true) and what an analyst would observe (w, y). Observed columns may be
misclassified and/or missing completely at random.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import numpy as np
import pandas as pd
from scipy.special import expit

from .misclassification import (
    exposure_probabilities,
    misclassify,
    sample_categories,
    sens_spec_matrix,
    validate_misclassification_matrix,
)


@dataclass
class MisclassDGP:
    """Data Generating Process for a misclassified binary covariate.

    Attributes:
        n: Number of observations
        family: Response family, 'gaussian' or 'binomial'
        beta: Response coefficients (intercept, x, z)
        sigma: Residual sd for the Gaussian response
        alpha: Exposure-model coefficients (intercept, z) for P(x = 1 | z)
        misclassification_matrix: M[j, k] = P(w = k | x = j); None means no error
        missing_rate_w: MCAR probability that w is missing
        missing_rate_y: MCAR probability that the observed response is missing
        response_sensitivity: P(y = 1 | y_true = 1) for a binomial response
        response_specificity: P(y = 0 | y_true = 0) for a binomial response
        seed: Seed for the generator's random stream
    """
    n: int = 1000
    family: str = "gaussian"
    beta: Tuple[float, float, float] = (1.0, 1.0, 1.0)
    sigma: float = 1.0
    alpha: Tuple[float, float] = (-0.5, 0.25)
    misclassification_matrix: Optional[np.ndarray] = None
    missing_rate_w: float = 0.0
    missing_rate_y: float = 0.0
    response_sensitivity: float = 1.0
    response_specificity: float = 1.0
    seed: Optional[int] = None

    def __post_init__(self):
        if self.n <= 0:
            raise ValueError("n must be positive")
        if self.family not in ("gaussian", "binomial"):
            raise ValueError("family must be 'gaussian' or 'binomial'")
        self.beta = tuple(float(b) for b in self.beta)
        self.alpha = tuple(float(a) for a in self.alpha)
        if len(self.beta) != 3:
            raise ValueError("beta must be (intercept, x, z)")
        if len(self.alpha) != 2:
            raise ValueError("alpha must be (intercept, z)")
        if self.sigma <= 0:
            raise ValueError("sigma must be positive")
        if self.misclassification_matrix is None:
            self.misclassification_matrix = np.eye(2)
        self.misclassification_matrix = validate_misclassification_matrix(self.misclassification_matrix)
        if self.misclassification_matrix.shape != (2, 2):
            raise ValueError("the simulation covariate is binary; use a 2x2 matrix")
        for name in ("missing_rate_w", "missing_rate_y"):
            rate = float(getattr(self, name))
            if not (0.0 <= rate < 1.0):
                raise ValueError(f"{name} must lie in [0, 1)")
        if not (0.0 <= self.response_sensitivity <= 1.0 and 0.0 <= self.response_specificity <= 1.0):
            raise ValueError("response sensitivity/specificity must lie in [0, 1]")
        if self.family == "gaussian" and (self.response_sensitivity != 1.0 or self.response_specificity != 1.0):
            raise ValueError("response misclassification only applies to a binomial response")

    @property
    def alpha_matrix(self) -> np.ndarray:
        """Exposure coefficients in the (K-1, q) layout used by ExposureModel."""
        return np.array([self.alpha], dtype=float)

    @property
    def true_coefficients(self) -> Dict[str, float]:
        return {"(Intercept)": self.beta[0], "x": self.beta[1], "z": self.beta[2]}

    @property
    def response_matrix(self) -> np.ndarray:
        return sens_spec_matrix(self.response_sensitivity, self.response_specificity)

    def __repr__(self):
        return (
            "DGP("
            f"n={self.n}, family={self.family}, beta={self.beta}, sigma={self.sigma}, "
            f"alpha={self.alpha}, M={self.misclassification_matrix.tolist()}, "
            f"missing_w={self.missing_rate_w}, missing_y={self.missing_rate_y}, "
            f"sens_y={self.response_sensitivity}, spec_y={self.response_specificity}"
            ")"
        )


class MisclassDataGenerator:
    def __init__(self, dgp: MisclassDGP):
        self.dgp = dgp

    def generate(self) -> Tuple[pd.DataFrame, Dict]:
        dgp = self.dgp
        rng = np.random.default_rng(dgp.seed)
        n = int(dgp.n)

        z = rng.normal(0.0, 1.0, size=n)
        Z = np.column_stack([np.ones(n), z])
        x = sample_categories(exposure_probabilities(Z, dgp.alpha_matrix), rng).astype(float)

        w = misclassify(x, dgp.misclassification_matrix, rng)
        miss_w = rng.random(n) < float(dgp.missing_rate_w)
        w[miss_w] = np.nan

        eta = dgp.beta[0] + dgp.beta[1] * x + dgp.beta[2] * z
        if dgp.family == "gaussian":
            y_true = eta + rng.normal(0.0, float(dgp.sigma), size=n)
            y = y_true.copy()
        else:
            y_true = (rng.random(n) < expit(eta)).astype(float)
            y = misclassify(y_true, dgp.response_matrix, rng)

        miss_y = rng.random(n) < float(dgp.missing_rate_y)
        y[miss_y] = np.nan

        data = pd.DataFrame({"y": y, "y_true": y_true, "x": x, "w": w, "z": z})

        both = ~miss_w
        n_misclassified = int(np.sum(x[both] != w[both]))
        n_y_flipped = 0
        if dgp.family == "binomial":
            obs_y = ~miss_y
            n_y_flipped = int(np.sum(y_true[obs_y] != y[obs_y]))

        summary = {
            "n": n,
            "prevalence_pct": 100.0 * float(np.mean(x)),
            "n_misclassified": n_misclassified,
            "misclassification_rate_pct": 100.0 * n_misclassified / float(max(int(np.sum(both)), 1)),
            "n_missing_w": int(np.sum(miss_w)),
            "n_missing_y": int(np.sum(miss_y)),
            "n_response_misclassified": n_y_flipped,
        }
        return data, summary
