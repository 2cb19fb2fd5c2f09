import numpy as np
import pytest

from bayes_misclass.analysis import ResultsAnalyzer, compute_marginal_metrics
from bayes_misclass.compare import (
    compare_models,
    fit_correct,
    fit_covariate_models,
    fit_naive,
    fit_response_models,
)
from bayes_misclass.importance import ExposureModel, ISConfig
from bayes_misclass.misclassification import sens_spec_matrix
from bayes_misclass.sim import MisclassDataGenerator, MisclassDGP
from bayes_misclass.types import SUMMARY_COLUMNS, GaussianMixtureMarginal, ModelSpec


@pytest.fixture(scope="module")
def response_fits():
    dgp = MisclassDGP(
        n=4000,
        family="binomial",
        beta=(-1.0, 1.0, 0.5),
        response_sensitivity=0.85,
        response_specificity=0.85,
        seed=21,
    )
    data, _ = MisclassDataGenerator(dgp).generate()
    spec = ModelSpec(response="y", covariates=["x", "z"], family="binomial")
    fits = fit_response_models(data, spec, sensitivity=0.85, specificity=0.85, true_response="y_true")
    return dgp, fits


@pytest.fixture(scope="module")
def covariate_fits():
    dgp = MisclassDGP(
        n=300,
        sigma=0.5,
        misclassification_matrix=sens_spec_matrix(0.85, 0.9),
        missing_rate_w=0.1,
        seed=4,
    )
    data, _ = MisclassDataGenerator(dgp).generate()
    spec = ModelSpec(response="y", covariates=["x", "z"], family="gaussian")
    exposure = ExposureModel("x", "w", ["z"], dgp.misclassification_matrix, dgp.alpha_matrix)
    fits = fit_covariate_models(
        data, spec, exposure,
        is_config=ISConfig(n_iterations=20, seed=1, verbose=False, proposal="response", pilot_iterations=10),
    )
    return dgp, data, spec, exposure, fits


def test_sslogit_reduces_attenuation(response_fits):
    dgp, fits = response_fits
    assert set(fits) == {"naive", "adjusted", "correct"}
    assert fits["adjusted"].link == "sslogit"
    truth = dgp.true_coefficients["x"]
    naive_err = abs(fits["naive"].marginals["x"].mean() - truth)
    adjusted_err = abs(fits["adjusted"].marginals["x"].mean() - truth)
    assert adjusted_err < naive_err
    assert fits["naive"].marginals["x"].mean() < truth


def test_response_models_require_binomial():
    spec = ModelSpec(response="y", covariates=["z"], family="gaussian")
    with pytest.raises(ValueError):
        fit_response_models(None, spec, sensitivity=0.9, specificity=0.9)


def test_naive_fit_is_complete_case(covariate_fits):
    _, data, spec, exposure, fits = covariate_fits
    assert fits["naive"].n_used == int(data["w"].notna().sum())
    assert fits["correct"].n_used == len(data)
    again = fit_naive(data, spec, exposure)
    assert again.marginals["x"].mean() == pytest.approx(fits["naive"].marginals["x"].mean())


def test_correct_fit_requires_ground_truth(covariate_fits):
    _, data, spec, exposure, _ = covariate_fits
    with pytest.raises(ValueError):
        fit_correct(data.drop(columns=["x"]), spec, exposure)


def test_compare_models_layout(covariate_fits):
    _, _, _, _, fits = covariate_fits
    table = compare_models(fits)
    assert list(table.columns) == ["model", "variable"] + SUMMARY_COLUMNS
    assert len(table) == 3 * 3
    assert list(table["model"].unique()) == ["naive", "adjusted", "correct"]
    assert set(table["variable"]) == {"(Intercept)", "x", "z"}
    assert (table["0.025quant"] < table["0.975quant"]).all()


def test_results_analyzer(covariate_fits, capsys):
    dgp, _, _, _, fits = covariate_fits
    analyzer = ResultsAnalyzer(fits, dgp.true_coefficients)
    metrics = analyzer.compute_metrics()
    assert len(metrics) == 9
    assert metrics["bias"].notna().all()
    analyzer.print_summary(metrics)
    out = capsys.readouterr().out
    assert "POSTERIOR SUMMARY BY MODEL" in out
    assert "Importance weights (adjusted)" in out


def test_compute_marginal_metrics():
    m = compute_marginal_metrics(GaussianMixtureMarginal.gaussian(1.0, 0.5), 1.2)
    assert m["bias"] == pytest.approx(-0.2)
    assert m["coverage"] is True
    assert m["ci_width"] == pytest.approx(2 * 1.959964 * 0.5, rel=1e-5)

    unknown = compute_marginal_metrics(GaussianMixtureMarginal.gaussian(1.0, 0.5), None)
    assert np.isnan(unknown["bias"])
    assert np.isnan(unknown["true_value"])
