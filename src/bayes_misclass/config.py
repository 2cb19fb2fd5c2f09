"""
Global configuration for plotting, paths, and numerical constants.

This module centralizes configuration shared by the study runners in cli.py,
the sensitivity framework, and the inference engine defaults.
"""

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import seaborn as sns
from pathlib import Path


def configure_plotting():
    """Set up publication-quality plotting defaults.

    Call this function at the start of any script that generates plots.
    """
    sns.set_style("whitegrid")
    sns.set_context("paper", font_scale=1.2)
    plt.rcParams.update({
        'figure.dpi': 100,
        'savefig.dpi': 300,
        'axes.labelsize': 11,
        'axes.titlesize': 12,
        'xtick.labelsize': 10,
        'ytick.labelsize': 10,
        'legend.fontsize': 10,
        'figure.titlesize': 13,
        'mathtext.fontset': 'cm',
        'mathtext.fallback': 'cm',
    })


# Numerical constants
ROW_SUM_TOL = 1e-8

# Inference engine defaults (fixed effects ~ N(0, 1/0.001), tau ~ Gamma(1, 5e-5))
DEFAULT_PRIOR_PRECISION = 0.001
DEFAULT_PRECISION_PRIOR = (1.0, 5e-5)

# Path constants
REPO_ROOT = Path(__file__).resolve().parents[2]
OUTPUTS_DIR = REPO_ROOT / "outputs"
BASELINE_DIR = OUTPUTS_DIR / "baseline"
SENSITIVITY_DIR = OUTPUTS_DIR / "sensitivity"

# Study-specific output directories
COVARIATE_BASELINE_DIR = BASELINE_DIR / "covariate_misclass"
RESPONSE_BASELINE_DIR = BASELINE_DIR / "response_misclass"
MISSING_BASELINE_DIR = BASELINE_DIR / "missing_covariate"
CSV_FIT_DIR = OUTPUTS_DIR / "csv_fit"
