"""
K-fold cross-validation: refit on k-1 folds, predict the held-out fold.

Each fold reruns the full MCMC, so the cost grows linearly with k.
"""

import time

import numpy as np
import pandas as pd

from pollinator_jsdm.model import ModelSpec
from pollinator_jsdm.posterior import compute_predicted_values, evaluate_model_fit
from pollinator_jsdm.sampling import SamplerConfig, sample_mcmc


def create_partition(spec: ModelSpec, nfolds: int = 10, column: str = None, seed=None) -> np.ndarray:
    """Assign each sampling unit a fold number in 1..nfolds.

    With ``column`` every row sharing a label of that design column lands in
    the same fold (e.g. whole plots are held out together).
    """
    rng = np.random.default_rng(seed)
    if column is None:
        labels = np.arange(spec.n_units)
    else:
        if spec.design is None or column not in spec.design.columns:
            raise ValueError(f"Design table has no column '{column}'")
        labels = spec.design[column].astype(str).to_numpy()

    uniq, inv = np.unique(labels, return_inverse=True)
    if nfolds < 2 or nfolds > len(uniq):
        raise ValueError(f"nfolds must be between 2 and {len(uniq)} units, got {nfolds}")

    # balanced fold sizes, shuffled over units
    folds_of_units = rng.permutation(np.arange(len(uniq)) % nfolds) + 1
    return folds_of_units[inv]


def cross_validated_predictions(spec: ModelSpec, partition, config: SamplerConfig = SamplerConfig(),
                                seed=None) -> pd.DataFrame:
    """Held-out posterior-mean predictions for every unit."""
    partition = np.asarray(partition)
    if len(partition) != spec.n_units:
        raise ValueError(f"Partition has {len(partition)} entries for {spec.n_units} units")

    predicted = pd.DataFrame(np.nan, index=range(spec.n_units), columns=spec.species)
    folds = np.unique(partition)
    for k, fold in enumerate(folds, start=1):
        held_out = partition == fold
        print(f"\n🔄 Cross-validation fold {k}/{len(folds)}: "
              f"{int((~held_out).sum())} training units, {int(held_out.sum())} held out")
        start = time.time()
        train_fit = sample_mcmc(spec.for_rows(~held_out), config, verbose=False)

        rows = np.flatnonzero(held_out)
        if spec.species_specific:
            X_test = [frame.iloc[rows].reset_index(drop=True) for frame in spec.X]
        else:
            X_test = spec.X.iloc[rows].reset_index(drop=True)
        design_test = None if spec.design is None else spec.design.iloc[rows].reset_index(drop=True)
        pred = compute_predicted_values(train_fit, X=X_test, design=design_test, rng=seed)
        predicted.loc[rows, :] = pred.to_numpy()
        print(f"✅ Fold {k} done in {(time.time() - start) / 60:.1f} minutes")
    return predicted


def cross_validated_fit(spec: ModelSpec, partition, config: SamplerConfig = SamplerConfig(),
                        seed=None) -> pd.DataFrame:
    """Per-species fit statistics of held-out predictions."""
    predicted = cross_validated_predictions(spec, partition, config, seed=seed)
    return evaluate_model_fit(spec.Y, predicted, spec.family)
