from __future__ import annotations

from dataclasses import replace
from typing import Dict, Optional, Union

import pandas as pd

from .importance import ExposureModel, ISConfig, ISResult, MisclassImportanceSampler
from .laplace import LaplaceConfig, LaplaceGLM
from .types import SUMMARY_COLUMNS, FitResult, ModelSpec


Fit = Union[FitResult, ISResult]


def fit_naive(
    data: pd.DataFrame,
    model_spec: ModelSpec,
    exposure: ExposureModel,
    laplace_config: Optional[LaplaceConfig] = None,
) -> FitResult:
    """Fit the model of interest with the observed variable standing in for the true one.

    Rows where the observed variable is missing are dropped (complete case).
    The coefficient keeps the true variable's name so tables line up.
    """
    return MisclassImportanceSampler(model_spec, exposure, laplace_config).naive_fit(data)


def fit_correct(
    data: pd.DataFrame,
    model_spec: ModelSpec,
    exposure: Optional[ExposureModel] = None,
    laplace_config: Optional[LaplaceConfig] = None,
) -> FitResult:
    """Fit the model of interest on the (simulated) true covariate."""
    if exposure is not None:
        if exposure.true_variable not in data.columns:
            raise ValueError(f"ground truth column '{exposure.true_variable}' is not in the data")
        if data[exposure.true_variable].isna().any():
            raise ValueError("ground truth column must be fully observed")
        if exposure.n_categories > 2:
            categorical = dict(model_spec.categorical)
            categorical[exposure.true_variable] = exposure.n_categories
            model_spec = replace(model_spec, categorical=categorical)
    return LaplaceGLM(model_spec, laplace_config).fit(data)


def fit_adjusted(
    data: pd.DataFrame,
    model_spec: ModelSpec,
    exposure: ExposureModel,
    laplace_config: Optional[LaplaceConfig] = None,
    is_config: Optional[ISConfig] = None,
) -> ISResult:
    """Importance-sampling adjusted fit."""
    sampler = MisclassImportanceSampler(model_spec, exposure, laplace_config, is_config)
    return sampler.run(data)


def fit_covariate_models(
    data: pd.DataFrame,
    model_spec: ModelSpec,
    exposure: ExposureModel,
    *,
    include_correct: bool = True,
    laplace_config: Optional[LaplaceConfig] = None,
    is_config: Optional[ISConfig] = None,
) -> Dict[str, Fit]:
    """Naive, adjusted and (when ground truth exists) correct fits."""
    fits: Dict[str, Fit] = {
        "naive": fit_naive(data, model_spec, exposure, laplace_config),
        "adjusted": fit_adjusted(data, model_spec, exposure, laplace_config, is_config),
    }
    if include_correct:
        fits["correct"] = fit_correct(data, model_spec, exposure, laplace_config)
    return fits


def fit_response_models(
    data: pd.DataFrame,
    model_spec: ModelSpec,
    *,
    sensitivity: float,
    specificity: float,
    true_response: Optional[str] = None,
    laplace_config: Optional[LaplaceConfig] = None,
) -> Dict[str, FitResult]:
    """Naive logit, sslogit-adjusted and (optionally) correct fits for a misclassified binary response."""
    if model_spec.family != "binomial":
        raise ValueError("response misclassification models need family='binomial'")
    naive_spec = replace(model_spec, link="logit")
    adjusted_spec = replace(
        model_spec,
        link="sslogit",
        sensitivity=float(sensitivity),
        specificity=float(specificity),
    )
    fits = {
        "naive": LaplaceGLM(naive_spec, laplace_config).fit(data),
        "adjusted": LaplaceGLM(adjusted_spec, laplace_config).fit(data),
    }
    if true_response is not None:
        fits["correct"] = LaplaceGLM(naive_spec.with_response(true_response), laplace_config).fit(data)
    return fits


def compare_models(fits: Dict[str, Fit]) -> pd.DataFrame:
    """Long table of posterior summaries: one row per (model, variable)."""
    frames = []
    for model, fit in fits.items():
        summ = fit.summary_fixed()
        summ.index.name = "variable"
        summ = summ.reset_index()
        summ.insert(0, "model", model)
        frames.append(summ)
    if not frames:
        return pd.DataFrame(columns=["model", "variable"] + SUMMARY_COLUMNS)
    return pd.concat(frames, ignore_index=True)
