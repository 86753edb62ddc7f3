"""
Design assembly: per-species covariate frames and random-level declarations.
"""

from dataclasses import dataclass
from typing import List, Sequence, Tuple

import numpy as np
import pandas as pd


def species_covariates(Y: pd.DataFrame, X: pd.DataFrame, common: Sequence[str],
                       flower_offset: int, shared_name: str = 'conspecific',
                       zero_focal: bool = False) -> List[pd.DataFrame]:
    """Build one covariate frame per response column.

    Species i's own flower count is the covariate column at position
    ``flower_offset + i``. It is exposed in every frame under ``shared_name``
    so that "own abundance" has a single coefficient per species.

    With ``zero_focal`` the whole block of flower-count columns is kept as
    heterospecific predictors, and the focal species' column is set to zero
    in its own frame so its abundance is not counted twice.
    """
    n_species = Y.shape[1]
    if flower_offset < 0 or flower_offset + n_species > X.shape[1]:
        raise ValueError(
            f"flower_offset={flower_offset} with {n_species} species runs past the "
            f"{X.shape[1]} covariate columns"
        )
    if len(Y) != len(X):
        raise ValueError(f"Response has {len(Y)} rows but covariates have {len(X)}")
    missing = [c for c in common if c not in X.columns]
    if missing:
        raise ValueError(f"Common covariates not in covariate table: {missing}")
    if shared_name in X.columns:
        raise ValueError(f"Shared covariate name '{shared_name}' already used in covariate table")

    flower_cols = list(X.columns[flower_offset:flower_offset + n_species])
    frames = []
    for i in range(n_species):
        focal_col = flower_cols[i]
        frame = X[list(common)].copy()
        if zero_focal:
            for col in flower_cols:
                frame[col] = X[col].astype(float)
            frame[focal_col] = 0.0
        frame[shared_name] = X[focal_col].astype(float).values
        frame = frame.reset_index(drop=True)
        frames.append(frame)
    return frames


@dataclass(frozen=True)
class RandomLevel:
    """A latent-factor random effect declared on one design column."""
    name: str
    units: Tuple[str, ...]
    n_factors: int = 2

    @classmethod
    def from_design(cls, design: pd.DataFrame, column: str, n_factors: int = 2):
        if column not in design.columns:
            raise ValueError(f"Design table has no column '{column}'")
        if n_factors < 1:
            raise ValueError(f"n_factors must be at least 1, got {n_factors}")
        units = tuple(pd.unique(design[column].astype(str)))
        return cls(name=column, units=units, n_factors=n_factors)

    @property
    def n_units(self) -> int:
        return len(self.units)

    def index_of(self, labels) -> np.ndarray:
        """Integer unit index for each label; -1 for labels not seen at construction."""
        lookup = {u: k for k, u in enumerate(self.units)}
        return np.array([lookup.get(str(l), -1) for l in labels], dtype=int)


def study_design(design: pd.DataFrame, columns: Sequence[str]) -> pd.DataFrame:
    missing = [c for c in columns if c not in design.columns]
    if missing:
        raise ValueError(f"Design columns not found: {missing}")
    return design[list(columns)].astype(str).reset_index(drop=True)


def occasion_labels(design: pd.DataFrame, plot_col: str = 'plot',
                    occasion_col: str = 'census') -> pd.Series:
    # occasions are numbered within plots, so label them plot:occasion
    return design[plot_col].astype(str) + ':' + design[occasion_col].astype(str)
