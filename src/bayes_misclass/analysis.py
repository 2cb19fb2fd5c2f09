"""
Results analysis and metrics computation.

Compares posterior marginals from the naive, adjusted and correct fits against
known (simulated) coefficient values.
"""

import numpy as np
import pandas as pd
from typing import Dict, Mapping, Optional

from .types import GaussianMixtureMarginal


def compute_marginal_metrics(marginal: GaussianMixtureMarginal, true_value: Optional[float]) -> Dict:
    """Compute standard metrics for a single parameter.

    Args:
        marginal: Posterior marginal
        true_value: True parameter value (None if unknown)

    Returns:
        Dictionary with estimate, bias, CI, coverage
    """
    estimate = marginal.mean()
    ci_lower = marginal.quantile(0.025)
    ci_upper = marginal.quantile(0.975)
    known = true_value is not None and np.isfinite(true_value)
    return {
        'estimate': estimate,
        'median': marginal.quantile(0.5),
        'posterior_sd': marginal.sd(),
        'true_value': float(true_value) if known else np.nan,
        'bias': estimate - float(true_value) if known else np.nan,
        'ci_lower': ci_lower,
        'ci_upper': ci_upper,
        'ci_width': ci_upper - ci_lower,
        'coverage': bool(ci_lower <= true_value <= ci_upper) if known else np.nan,
    }


class ResultsAnalyzer:
    """Analyze fits from several models against true coefficient values."""

    def __init__(self, fits: Mapping, true_values: Optional[Dict[str, float]] = None):
        """Initialize analyzer.

        Args:
            fits: Mapping model name -> FitResult or ISResult
            true_values: Mapping coefficient name -> true value
        """
        self.fits = dict(fits)
        self.true_values = dict(true_values or {})

    def compute_metrics(self) -> pd.DataFrame:
        rows = []
        for model, fit in self.fits.items():
            for name, marginal in fit.marginals.items():
                row = {'model': model, 'variable': name}
                row.update(compute_marginal_metrics(marginal, self.true_values.get(name)))
                rows.append(row)
        return pd.DataFrame(rows)

    def print_summary(self, metrics: pd.DataFrame):
        """Print formatted summary."""
        print("\n" + "="*72)
        print("POSTERIOR SUMMARY BY MODEL")
        print("="*72)
        for variable, group in metrics.groupby('variable', sort=False):
            true_value = group['true_value'].iloc[0]
            header = f"{variable}" if not np.isfinite(true_value) else f"{variable} (true = {true_value:.4f})"
            print(header)
            for _, row in group.iterrows():
                line = (
                    f"  {row['model']:>9s}: mean={row['estimate']:.4f}, sd={row['posterior_sd']:.4f}, "
                    f"95% CI=[{row['ci_lower']:.4f}, {row['ci_upper']:.4f}]"
                )
                if np.isfinite(row['bias']):
                    line += f", bias={row['bias']:+.4f}, covered={bool(row['coverage'])}"
                print(line)
        for model, fit in self.fits.items():
            if hasattr(fit, 'weight_diagnostics'):
                diag = fit.weight_diagnostics()
                print(
                    f"\nImportance weights ({model}): ESS={diag['ess']:.1f} of {diag['n_iterations']} "
                    f"({100 * diag['ess_fraction']:.1f}%), max weight={diag['max_weight']:.3f}"
                )
        print("="*72 + "\n")
