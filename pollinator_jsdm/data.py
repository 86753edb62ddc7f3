"""
Loading and transforming the response / covariate / design CSV triplets.

Every pipeline reads three tables with one row per sampling unit:
  - response table   (species columns; visitation counts or fitness)
  - covariate table  (temperature, per-species flower counts, traits)
  - design table     (plot, sampling occasion, ...)

Missing response cells mean "species not observed in this unit" and are kept
as NaN, never filled with zero.
"""

import os

import numpy as np
import pandas as pd
from sklearn.preprocessing import StandardScaler


def load_tables(data_dir, response_file='Y.csv', covariate_file='X.csv',
                design_file='design.csv'):
    """Load the response, covariate and design tables of one pipeline."""
    paths = [os.path.join(data_dir, f) for f in (response_file, covariate_file, design_file)]
    for path in paths:
        if not os.path.exists(path):
            raise FileNotFoundError(f"Data file not found: {path}")

    Y = pd.read_csv(paths[0])
    X = pd.read_csv(paths[1])
    design = pd.read_csv(paths[2])

    n_rows = {len(Y), len(X), len(design)}
    if len(n_rows) != 1:
        raise ValueError(
            f"Row counts differ: response={len(Y)}, covariates={len(X)}, design={len(design)}"
        )

    print(f"✅ Response table: {Y.shape} ({int(Y.isna().sum().sum())} missing cells)")
    print(f"✅ Covariate table: {X.shape}")
    print(f"✅ Design table: {design.shape}")
    return Y, X, design


def log_transform(Y: pd.DataFrame) -> pd.DataFrame:
    """log(x + 1) of every cell; NaN stays NaN."""
    return np.log(Y + 1)


def inverse_log_transform(Y: pd.DataFrame) -> pd.DataFrame:
    return np.exp(Y) - 1


def relative_fitness(Y: pd.DataFrame):
    """Divide each fitness column by its mean over observed individuals.

    Returns the relative-fitness table and the column means needed to undo it.
    """
    means = Y.mean(axis=0, skipna=True)
    if (means == 0).any():
        zero = list(means.index[means == 0])
        raise ValueError(f"Mean fitness is zero for {zero}; relative fitness undefined")
    return Y / means, means


def absolute_fitness(Y_rel: pd.DataFrame, means: pd.Series) -> pd.DataFrame:
    return Y_rel * means


def standardize_traits(X: pd.DataFrame, columns, by=None) -> pd.DataFrame:
    """Z-score trait columns, optionally within each level of a grouping column."""
    out = X.copy()
    columns = list(columns)
    if by is None:
        out[columns] = StandardScaler().fit_transform(X[columns])
        return out

    for _, idx in X.groupby(by).groups.items():
        out.loc[idx, columns] = StandardScaler().fit_transform(X.loc[idx, columns])
    return out


def fitness_to_wide(individuals: pd.DataFrame, species_col='species', fitness_col='fitness'):
    """Spread a long individual table into one fitness column per species.

    Each individual fills only its own species' column; the other cells are NaN
    because that species was not observed in that unit.
    """
    species = sorted(individuals[species_col].unique())
    wide = pd.DataFrame(np.nan, index=individuals.index, columns=species)
    for sp in species:
        rows = individuals[species_col] == sp
        wide.loc[rows, sp] = individuals.loc[rows, fitness_col].astype(float)
    return wide
