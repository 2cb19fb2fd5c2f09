from __future__ import annotations

from typing import Optional, Tuple

import numpy as np
import pandas as pd
from scipy.special import logsumexp

from .config import ROW_SUM_TOL


def validate_misclassification_matrix(M) -> np.ndarray:
    """Return M as a float array after checking it is a valid row-stochastic matrix.

    M[j, k] = P(observed = k | true = j).
    """
    M = np.asarray(M, dtype=float)
    if M.ndim != 2 or M.shape[0] != M.shape[1]:
        raise ValueError(f"misclassification matrix must be square, got shape {M.shape}")
    if M.shape[0] < 2:
        raise ValueError("misclassification matrix needs at least 2 categories")
    if np.any(~np.isfinite(M)) or np.any(M < 0.0) or np.any(M > 1.0):
        raise ValueError("misclassification matrix entries must lie in [0, 1]")
    row_sums = M.sum(axis=1)
    if np.any(np.abs(row_sums - 1.0) > ROW_SUM_TOL):
        raise ValueError(f"misclassification matrix rows must sum to 1, got {row_sums}")
    return M


def sens_spec_matrix(sensitivity: float, specificity: float) -> np.ndarray:
    """Binary misclassification matrix from sensitivity and specificity."""
    sens = float(sensitivity)
    spec = float(specificity)
    if not (0.0 <= sens <= 1.0 and 0.0 <= spec <= 1.0):
        raise ValueError("sensitivity and specificity must lie in [0, 1]")
    return np.array([[spec, 1.0 - spec], [1.0 - sens, sens]], dtype=float)


def matrix_sens_spec(M) -> Tuple[float, float]:
    """Return (sensitivity, specificity) of a binary misclassification matrix."""
    M = validate_misclassification_matrix(M)
    if M.shape != (2, 2):
        raise ValueError("sensitivity/specificity are only defined for a 2x2 matrix")
    return float(M[1, 1]), float(M[0, 0])


def _as_codes(values, K: int, *, name: str) -> Tuple[np.ndarray, np.ndarray]:
    """Return (integer codes with -1 for missing, observed mask)."""
    values = np.asarray(values, dtype=float)
    observed = np.isfinite(values)
    codes = np.full(values.shape, -1, dtype=np.int64)
    codes[observed] = values[observed].astype(np.int64)
    if np.any(codes[observed] != values[observed]):
        raise ValueError(f"{name} must contain integer category codes")
    if np.any((codes[observed] < 0) | (codes[observed] >= K)):
        raise ValueError(f"{name} codes must lie in 0..{K - 1}")
    return codes, observed


def misclassify(x, M, rng: Optional[np.random.Generator] = None) -> np.ndarray:
    """Draw observed categories w given true categories x.

    Missing values in x (NaN) stay missing in the output.
    """
    M = validate_misclassification_matrix(M)
    K = M.shape[0]
    if rng is None:
        rng = np.random.default_rng()
    codes, observed = _as_codes(x, K, name="x")

    w = np.full(codes.shape, np.nan, dtype=float)
    if np.any(observed):
        w[observed] = sample_categories(M[codes[observed]], rng)
    return w


def exposure_probabilities(Z: np.ndarray, alpha: np.ndarray) -> np.ndarray:
    """Class probabilities P(x = k | z) under a baseline-category logit model.

    Args:
        Z: Exposure design matrix (n, q), normally with a leading intercept column
        alpha: Coefficients (K-1, q); class 0 is the reference category

    Returns:
        Array (n, K) of probabilities
    """
    Z = np.atleast_2d(np.asarray(Z, dtype=float))
    alpha = np.atleast_2d(np.asarray(alpha, dtype=float))
    if alpha.shape[1] != Z.shape[1]:
        raise ValueError(f"alpha has {alpha.shape[1]} columns but Z has {Z.shape[1]}")
    eta = np.column_stack([np.zeros(Z.shape[0]), Z @ alpha.T])
    log_norm = logsumexp(eta, axis=1, keepdims=True)
    return np.exp(eta - log_norm)


def conditional_true_probabilities(
    w,
    prior_probs: np.ndarray,
    M,
) -> Tuple[np.ndarray, np.ndarray]:
    """Posterior P(x = j | w, z) and the log normalizer log P(w | z) per row.

    Rows with a missing observed value keep their prior probabilities and
    contribute zero to the log normalizer.
    """
    M = validate_misclassification_matrix(M)
    K = M.shape[0]
    prior_probs = np.asarray(prior_probs, dtype=float)
    if prior_probs.ndim != 2 or prior_probs.shape[1] != K:
        raise ValueError(f"prior_probs must have shape (n, {K})")
    codes, observed = _as_codes(w, K, name="w")
    if codes.shape[0] != prior_probs.shape[0]:
        raise ValueError("w and prior_probs must have the same number of rows")

    post = prior_probs.copy()
    log_norm = np.zeros(codes.shape[0], dtype=float)
    if np.any(observed):
        unnorm = prior_probs[observed] * M[:, codes[observed]].T
        denom = unnorm.sum(axis=1)
        if np.any(denom <= 0.0):
            bad = np.flatnonzero(observed)[denom <= 0.0]
            raise ValueError(f"observed categories have zero probability under the model (rows {bad[:5].tolist()})")
        post[observed] = unnorm / denom[:, None]
        log_norm[observed] = np.log(denom)
    return post, log_norm


def sample_categories(probs: np.ndarray, rng: np.random.Generator) -> np.ndarray:
    """Draw one category per row of a probability matrix (inverse-CDF)."""
    probs = np.asarray(probs, dtype=float)
    cum = np.cumsum(probs, axis=1)
    cum[:, -1] = 1.0
    u = rng.random(probs.shape[0])
    return (u[:, None] > cum).sum(axis=1).astype(np.int64)


def misclassification_table(x, w) -> pd.DataFrame:
    """Crosstab of true vs observed categories (missing values ignored)."""
    x = pd.Series(np.asarray(x, dtype=float), name="true")
    w = pd.Series(np.asarray(w, dtype=float), name="observed")
    keep = x.notna() & w.notna()
    return pd.crosstab(x[keep].astype(int), w[keep].astype(int))
