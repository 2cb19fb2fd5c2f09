"""
Bayes Misclass: Bayesian regression with misclassified and missing data

Tools for simulating and fitting regression models whose covariates or
responses are misclassified or missing, using a Laplace-approximate Bayesian
GLM and an importance-sampling correction over the latent true covariate.

Modules live under src/bayes_misclass/:
- misclassification.py: Misclassification matrices and exposure models
- kernels.py: Numba likelihood kernels
- families.py: Response families and links (including sslogit)
- types.py: Model specification and posterior marginal types
- laplace.py: Laplace-approximate Bayesian GLM (inference engine)
- importance.py: Importance-sampling misclassification correction
- sim.py: Data generating processes for simulations
- compare.py: Naive / adjusted / correct model fitting and tables
- analysis.py: Posterior metrics against known truth
- visualization.py: Publication-quality plotting
- sensitivity.py: Sensitivity analysis framework
- data_io.py: CSV dataset loading
- cli.py: Command-line entry points
- config.py: Configuration and path constants
"""

from .misclassification import (
    validate_misclassification_matrix,
    sens_spec_matrix,
    matrix_sens_spec,
    misclassify,
    exposure_probabilities,
    conditional_true_probabilities,
    misclassification_table,
)

from .families import get_family

from .types import ModelSpec, GaussianMixtureMarginal, PrecisionMarginal, FitResult

from .laplace import LaplaceConfig, LaplaceGLM, fit_model

from .importance import ExposureModel, ISConfig, ISResult, MisclassImportanceSampler

from .sim import MisclassDGP, MisclassDataGenerator

from .compare import (
    fit_naive,
    fit_correct,
    fit_adjusted,
    fit_covariate_models,
    fit_response_models,
    compare_models,
)

from .analysis import ResultsAnalyzer, compute_marginal_metrics

from .visualization import MisclassVisualizer

from .sensitivity import MisclassSensitivityAnalysis

from .data_io import DatasetLoader

from .config import configure_plotting

__version__ = "0.1.0"

__all__ = [
    # Misclassification
    "validate_misclassification_matrix",
    "sens_spec_matrix",
    "matrix_sens_spec",
    "misclassify",
    "exposure_probabilities",
    "conditional_true_probabilities",
    "misclassification_table",
    # Model types
    "get_family",
    "ModelSpec",
    "GaussianMixtureMarginal",
    "PrecisionMarginal",
    "FitResult",
    # Inference
    "LaplaceConfig",
    "LaplaceGLM",
    "fit_model",
    "ExposureModel",
    "ISConfig",
    "ISResult",
    "MisclassImportanceSampler",
    # Simulation
    "MisclassDGP",
    "MisclassDataGenerator",
    # Comparison
    "fit_naive",
    "fit_correct",
    "fit_adjusted",
    "fit_covariate_models",
    "fit_response_models",
    "compare_models",
    # Analysis
    "ResultsAnalyzer",
    "compute_marginal_metrics",
    # Visualization
    "MisclassVisualizer",
    # Sensitivity
    "MisclassSensitivityAnalysis",
    # I/O
    "DatasetLoader",
    # Config
    "configure_plotting",
]
