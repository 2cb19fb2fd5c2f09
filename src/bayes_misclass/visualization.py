"""
Publication-quality plotting for misclassification analyses.

- Model comparison: posterior means and 95% intervals per model and coefficient
- Posterior marginal densities overlaid per model
- Importance-weight diagnostics
- Sensitivity sweeps over the misclassification level
"""

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
from typing import Dict, List, Mapping, Optional

from .importance import ISResult


MODEL_ORDER = ["naive", "adjusted", "correct"]


def _ordered_models(models) -> List[str]:
    models = list(dict.fromkeys(models))
    known = [m for m in MODEL_ORDER if m in models]
    return known + [m for m in models if m not in known]


def running_ess(log_weights: np.ndarray) -> np.ndarray:
    """ESS of the first k self-normalized weights, for k = 1..n.

    A prefix that carries no weight yet (all log-weights -inf or NaN) has ESS 0.
    """
    lw = np.where(np.isfinite(log_weights), log_weights, -np.inf)
    running = np.zeros(lw.size)
    for k in range(1, lw.size + 1):
        top = lw[:k].max()
        if not np.isfinite(top):
            continue
        part = np.exp(lw[:k] - top)
        part = part / part.sum()
        running[k - 1] = 1.0 / np.sum(part ** 2)
    return running


class MisclassVisualizer:
    """Create plots comparing naive, adjusted and correct fits."""

    @staticmethod
    def plot_model_comparison(
        comparison: pd.DataFrame,
        save_path: str,
        *,
        true_values: Optional[Dict[str, float]] = None,
        variables: Optional[List[str]] = None,
    ):
        """Posterior mean with 95% interval per model, one panel per coefficient.

        Args:
            comparison: Output of compare.compare_models()
            save_path: Path to save the figure
            true_values: Optional true coefficient values drawn as reference lines
            variables: Subset of coefficients to show (default: all)
        """
        if variables is None:
            variables = list(dict.fromkeys(comparison['variable']))
        models = _ordered_models(comparison['model'])
        colors = dict(zip(models, sns.color_palette("colorblind", len(models))))

        fig, axes = plt.subplots(1, len(variables), figsize=(4.2 * len(variables), 3.6), squeeze=False)
        for idx, (ax, var) in enumerate(zip(axes[0], variables)):
            sub = comparison[comparison['variable'] == var]
            for i, model in enumerate(models):
                row = sub[sub['model'] == model]
                if row.empty:
                    continue
                row = row.iloc[0]
                ax.errorbar(
                    row['mean'], i,
                    xerr=[[row['mean'] - row['0.025quant']], [row['0.975quant'] - row['mean']]],
                    fmt='o', markersize=7, capsize=4, linewidth=2, color=colors[model],
                )
            if true_values and var in true_values:
                ax.axvline(true_values[var], color='red', linestyle='--', linewidth=1.5, label='True value')
                ax.legend(frameon=True, framealpha=0.9, loc='best')
            ax.set_yticks(range(len(models)))
            ax.set_yticklabels(models)
            ax.set_ylim(-0.6, len(models) - 0.4)
            ax.set_xlabel('Posterior mean and 95% CI')
            ax.set_title(f"({chr(ord('A') + idx)}) {var}")
            ax.grid(True, alpha=0.3, axis='x')

        plt.tight_layout()
        plt.savefig(save_path, dpi=300, bbox_inches='tight')
        print(f"Model comparison saved to {save_path}")
        plt.close()

    @staticmethod
    def plot_posterior_marginals(
        fits: Mapping,
        save_path: str,
        *,
        true_values: Optional[Dict[str, float]] = None,
        variables: Optional[List[str]] = None,
    ):
        """Overlay the posterior marginal densities of each model."""
        models = _ordered_models(fits.keys())
        if variables is None:
            variables = list(fits[models[0]].marginals.keys())
        colors = dict(zip(models, sns.color_palette("colorblind", len(models))))

        n_cols = min(3, len(variables))
        n_rows = int(np.ceil(len(variables) / float(n_cols)))
        fig, axes = plt.subplots(n_rows, n_cols, figsize=(5.0 * n_cols, 3.4 * n_rows), squeeze=False)
        for ax in axes.flat:
            ax.set_visible(False)

        for idx, var in enumerate(variables):
            ax = axes[idx // n_cols, idx % n_cols]
            ax.set_visible(True)
            for model in models:
                marginal = fits[model].marginals.get(var)
                if marginal is None:
                    continue
                xs, dens = marginal.density_grid()
                ax.plot(xs, dens, linewidth=1.8, color=colors[model], label=model)
            if true_values and var in true_values:
                ax.axvline(true_values[var], color='red', linestyle='--', linewidth=1.3, label='True')
            ax.set_title(f"({chr(ord('A') + idx)}) Posterior: {var}")
            ax.set_ylabel('Density')
            ax.grid(True, alpha=0.3)
            ax.legend(frameon=True, framealpha=0.9)

        plt.tight_layout()
        plt.savefig(save_path, dpi=300, bbox_inches='tight')
        print(f"Posterior marginals saved to {save_path}")
        plt.close()

    @staticmethod
    def plot_weight_diagnostics(result: ISResult, save_path: str):
        """Importance-weight diagnostics: sorted weights, cumulative mass, log-weights, running ESS."""
        fig, axes = plt.subplots(2, 2, figsize=(11, 7.5))
        w = result.weights
        n = w.size

        # 1. Sorted weights
        ax = axes[0, 0]
        ax.plot(np.sort(w)[::-1], marker='.', linewidth=1.0, color='steelblue')
        ax.axhline(1.0 / n, color='red', linestyle='--', linewidth=1.2, label='Uniform 1/n')
        ax.set_yscale('log')
        ax.set_xlabel('Rank')
        ax.set_ylabel('Normalized weight')
        ax.set_title('(A) Sorted importance weights')
        ax.legend(frameon=True, framealpha=0.9)
        ax.grid(True, alpha=0.3)

        # 2. Cumulative weight mass
        ax = axes[0, 1]
        ax.plot(np.arange(1, n + 1), np.cumsum(np.sort(w)[::-1]), linewidth=1.5, color='darkorange')
        ax.set_xlabel('Number of largest weights')
        ax.set_ylabel('Cumulative weight')
        ax.set_title('(B) Weight concentration')
        ax.grid(True, alpha=0.3)

        # 3. Log-weight histogram (relative to max)
        ax = axes[1, 0]
        finite = result.log_weights[np.isfinite(result.log_weights)]
        ax.hist(finite - finite.max(), bins=40, alpha=0.7, color='seagreen', edgecolor='black', linewidth=0.5)
        ax.set_xlabel('log weight - max')
        ax.set_ylabel('Count')
        ax.set_title('(C) Log-weight distribution')
        ax.grid(True, alpha=0.3, axis='y')

        # 4. Running ESS in iteration order
        ax = axes[1, 1]
        ax.plot(np.arange(1, n + 1), running_ess(result.log_weights), linewidth=1.5, color='slategray')
        ax.set_xlabel('Iteration')
        ax.set_ylabel('Effective sample size')
        ax.set_title(f'(D) Running ESS (final {result.ess:.1f})')
        ax.grid(True, alpha=0.3)

        plt.tight_layout()
        plt.savefig(save_path, dpi=300, bbox_inches='tight')
        print(f"Weight diagnostics saved to {save_path}")
        plt.close()

    @staticmethod
    def plot_sensitivity(df: pd.DataFrame, save_path: str, *, level_col: str = 'error_rate'):
        """Bias, coverage and CI width vs misclassification level, one line per model."""
        models = _ordered_models(df['model'])
        colors = dict(zip(models, sns.color_palette("colorblind", len(models))))
        summary = df.groupby([level_col, 'model']).agg(
            bias_mean=('bias', 'mean'),
            bias_std=('bias', 'std'),
            coverage=('coverage', 'mean'),
            ci_width=('ci_width', 'mean'),
        ).reset_index()

        fig, axes = plt.subplots(1, 3, figsize=(16, 4.5))
        fig.suptitle('Sensitivity to the misclassification level', fontsize=14, fontweight='bold', y=1.02)

        for model in models:
            s = summary[summary['model'] == model]
            axes[0].errorbar(s[level_col], s['bias_mean'], yerr=s['bias_std'].fillna(0.0), marker='o',
                             capsize=4, linewidth=2, color=colors[model], label=model)
            axes[1].plot(s[level_col], s['coverage'], marker='s', linewidth=2, color=colors[model], label=model)
            axes[2].plot(s[level_col], s['ci_width'], marker='^', linewidth=2, color=colors[model], label=model)

        axes[0].axhline(0, color='red', linestyle='--', linewidth=1)
        axes[0].set_ylabel('Bias')
        axes[0].set_title('(A) Bias')
        axes[1].axhline(0.95, color='red', linestyle='--', linewidth=1)
        axes[1].set_ylim(-0.05, 1.05)
        axes[1].set_ylabel('Coverage of 95% CI')
        axes[1].set_title('(B) Coverage')
        axes[2].set_ylabel('Mean CI width')
        axes[2].set_title('(C) Interval width')
        for ax in axes:
            ax.set_xlabel('Misclassification probability')
            ax.grid(True, alpha=0.3)
            ax.legend(frameon=True, framealpha=0.9)

        plt.tight_layout()
        plt.savefig(save_path, dpi=300, bbox_inches='tight')
        print(f"Sensitivity plot saved to {save_path}")
        plt.close()
