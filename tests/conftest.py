import arviz as az
import numpy as np
import pandas as pd
import pytest

from pollinator_jsdm.model import make_spec
from pollinator_jsdm.sampling import FittedModel


@pytest.fixture
def toy_tables():
    """3 units x 2 species with one unobserved cell, all units in one plot."""
    Y = pd.DataFrame({'sp1': [1.0, np.nan, 3.0], 'sp2': [0.0, 2.0, 5.0]})
    X = pd.DataFrame({'flowers_sp1': [4.0, 0.0, 7.0], 'flowers_sp2': [2.0, 9.0, 1.0]})
    design = pd.DataFrame({'plot': ['A', 'A', 'A']})
    return Y, X, design


@pytest.fixture
def small_tables():
    """20 units x 3 species across 4 plots with temperature and a factor."""
    rng = np.random.default_rng(0)
    n = 20
    Y = pd.DataFrame(rng.normal(size=(n, 3)), columns=['a', 'b', 'c'])
    Y.iloc[3, 1] = np.nan
    X = pd.DataFrame({
        'temperature': rng.normal(20, 3, n),
        'habitat': np.tile(['meadow', 'forest'], n // 2),
    })
    design = pd.DataFrame({'plot': np.repeat(['P1', 'P2', 'P3', 'P4'], 5)})
    return Y, X, design


def make_fake_fit(spec, n_chains=2, n_draws=40, seed=0, beta=None, lambdas=None):
    """FittedModel with synthetic posterior draws shaped like the PyMC model's."""
    rng = np.random.default_rng(seed)
    K, S = len(spec.covariate_names), len(spec.species)
    if beta is None:
        beta_draws = rng.normal(size=(n_chains, n_draws, K, S))
    else:
        beta_draws = np.broadcast_to(np.asarray(beta, dtype=float), (n_chains, n_draws, K, S)).copy()
    posterior = {'Beta': beta_draws}
    coords = {'covariate': spec.covariate_names, 'species': spec.species}
    dims = {'Beta': ['covariate', 'species']}
    for level in spec.ranlevels:
        F = level.n_factors
        if lambdas is not None and level.name in lambdas:
            lam = np.broadcast_to(np.asarray(lambdas[level.name], dtype=float),
                                  (n_chains, n_draws, F, S)).copy()
        else:
            lam = rng.normal(size=(n_chains, n_draws, F, S))
        posterior[f'Lambda_{level.name}'] = lam
        posterior[f'Eta_{level.name}'] = rng.normal(size=(n_chains, n_draws, level.n_units, F))
        coords[f'{level.name}_unit'] = list(level.units)
        coords[f'{level.name}_factor'] = np.arange(F)
        dims[f'Lambda_{level.name}'] = [f'{level.name}_factor', 'species']
        dims[f'Eta_{level.name}'] = [f'{level.name}_unit', f'{level.name}_factor']
    if spec.family in ('normal', 'lognormal poisson'):
        posterior['sigma'] = rng.uniform(0.5, 1.5, size=(n_chains, n_draws, S))
        dims['sigma'] = ['species']
    idata = az.from_dict(posterior=posterior, coords=coords, dims=dims)
    return FittedModel(spec=spec, idata=idata)


@pytest.fixture
def fake_fit():
    return make_fake_fit


@pytest.fixture
def small_spec(small_tables):
    Y, X, design = small_tables
    return make_spec(Y, X, '~ temperature + I(temperature ** 2) + C(habitat)',
                     design=design, levels=['plot'], n_factors=2)
