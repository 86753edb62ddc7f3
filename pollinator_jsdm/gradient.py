"""
Covariate gradients: sweep one covariate over its observed range, hold the
others at a reference value and predict the response along the sweep.
"""

from dataclasses import dataclass
from typing import List, Optional, Union

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from pollinator_jsdm.model import ModelSpec
from pollinator_jsdm.posterior import NEW_UNIT, predict
from pollinator_jsdm.sampling import FittedModel


@dataclass(frozen=True, eq=False)
class Gradient:
    X: Union[pd.DataFrame, List[pd.DataFrame]]
    design: Optional[pd.DataFrame]
    focal: str
    grid: np.ndarray


@dataclass(frozen=True, eq=False)
class GradientPrediction:
    focal: str
    grid: np.ndarray
    species: List[str]
    draws: np.ndarray  # (draws, grid, species)


def _reference_value(column: pd.Series, treatment):
    if treatment == 'mean':
        if pd.api.types.is_numeric_dtype(column):
            return float(column.mean())
        return column.mode().iloc[0]
    if isinstance(treatment, tuple) and len(treatment) == 2 and treatment[0] == 'value':
        return treatment[1]
    raise ValueError(f"Unknown non-focal treatment {treatment!r}; use 'mean' or ('value', v)")


def _sweep_frame(frame, focal, grid, non_focal):
    out = pd.DataFrame({focal: grid})
    for col in frame.columns:
        if col == focal:
            continue
        out[col] = _reference_value(frame[col], non_focal.get(col, 'mean'))
    return out[list(frame.columns)]


def construct_gradient(spec: ModelSpec, focal: str, non_focal=None, ngrid: int = 20) -> Gradient:
    """Build a covariate sweep of ``focal`` for prediction.

    ``non_focal`` maps other covariate names to ``'mean'`` (the default; the
    most frequent level for categorical columns) or ``('value', v)`` to hold
    them at a fixed value such as zero.
    """
    non_focal = non_focal or {}
    frames = spec.X if spec.species_specific else [spec.X]
    for frame in frames:
        if focal not in frame.columns:
            raise ValueError(f"Focal covariate '{focal}' not found in covariates")
        if not pd.api.types.is_numeric_dtype(frame[focal]):
            raise ValueError(f"Focal covariate '{focal}' must be numeric")
    if ngrid < 2:
        raise ValueError(f"ngrid must be at least 2, got {ngrid}")

    lo = min(float(f[focal].min()) for f in frames)
    hi = max(float(f[focal].max()) for f in frames)
    grid = np.linspace(lo, hi, ngrid)

    swept = [_sweep_frame(f, focal, grid, non_focal) for f in frames]
    design = None
    if spec.ranlevels:
        design = pd.DataFrame({lv.name: [NEW_UNIT] * ngrid for lv in spec.ranlevels})
    X = swept if spec.species_specific else swept[0]
    return Gradient(X=X, design=design, focal=focal, grid=grid)


def predict_gradient(fit: FittedModel, gradient: Gradient, expected=True, rng=None) -> GradientPrediction:
    draws = predict(fit, X=gradient.X, design=gradient.design, expected=expected, rng=rng)
    return GradientPrediction(focal=gradient.focal, grid=gradient.grid,
                              species=fit.spec.species, draws=draws)


def plot_gradient(prediction: GradientPrediction, measure: str = 'S', index: int = None,
                  ax=None, interval=0.95, ylabel=None):
    """Response curve along the gradient with a posterior interval band.

    measure='S' sums predictions over species; measure='Y' plots species ``index``.
    """
    if measure == 'S':
        values = prediction.draws.sum(axis=2)
        label = 'Summed response'
    elif measure == 'Y':
        if index is None or not 0 <= index < len(prediction.species):
            raise ValueError(f"measure='Y' needs a species index in [0, {len(prediction.species)})")
        values = prediction.draws[:, :, index]
        label = prediction.species[index]
    else:
        raise ValueError(f"Unknown measure '{measure}'; use 'S' or 'Y'")

    lo, hi = np.quantile(values, [(1 - interval) / 2, 1 - (1 - interval) / 2], axis=0)
    median = np.median(values, axis=0)

    if ax is None:
        _, ax = plt.subplots(figsize=(7, 5))
    ax.fill_between(prediction.grid, lo, hi, color='#1f77b4', alpha=0.25,
                    label=f'{int(interval * 100)}% interval')
    ax.plot(prediction.grid, median, color='#1f77b4', lw=2, label='Posterior median')
    ax.set_xlabel(prediction.focal)
    ax.set_ylabel(ylabel or label)
    ax.set_title(label)
    ax.grid(True, alpha=0.3)
    return ax


def plot_all_gradients(prediction: GradientPrediction, path: str, ncols: int = 3):
    """Summed curve followed by one panel per species, saved to ``path``."""
    n_panels = 1 + len(prediction.species)
    nrows = int(np.ceil(n_panels / ncols))
    fig, axes = plt.subplots(nrows, ncols, figsize=(5 * ncols, 4 * nrows), squeeze=False)
    axes = axes.ravel()
    plot_gradient(prediction, 'S', ax=axes[0])
    for j in range(len(prediction.species)):
        plot_gradient(prediction, 'Y', index=j, ax=axes[j + 1])
    for ax in axes[n_panels:]:
        ax.axis('off')
    axes[0].legend(loc='best', fontsize='small')
    fig.tight_layout()
    fig.savefig(path, dpi=300, bbox_inches='tight')
    plt.close(fig)
    return path
