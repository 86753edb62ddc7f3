"""
Model specification and the PyMC joint species-distribution model.

The model follows the hierarchical structure of HMSC:

    L[i, j] = X[i] . Beta[:, j]  +  sum over levels  Eta_r[unit_r(i)] . Lambda_r[:, j]

with species-specific fixed effects ``Beta``, site/occasion latent factors
``Eta_r`` and species loadings ``Lambda_r`` per random level, so that the
residual association between species at level r is ``Lambda_r' Lambda_r``.
"""

from dataclasses import dataclass, field
from functools import cached_property
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import patsy
import pymc as pm
import pytensor.tensor as pt

from pollinator_jsdm.design import RandomLevel, study_design

FAMILIES = ('normal', 'poisson', 'lognormal poisson', 'probit')

# Prior scales
BETA_PRIOR_SD = 1.0
SIGMA_PRIOR_SD = 1.0
LAMBDA_SCALE_SD = 1.0
# Gamma shapes of the loading precision increments: first factor, later factors
DELTA_SHAPE_FIRST = 2.0
DELTA_SHAPE_LATER = 3.0

_CACHED = ('_design_matrices', 'covariate_names')


@dataclass(frozen=True, eq=False)
class ModelSpec:
    """Response table, covariates, formula, family and random structure of one model.

    ``X`` is either one covariate frame shared by all species or a list with one
    frame per response column (species-specific covariates). ``formula`` is a
    patsy right-hand side such as ``"~ temperature + I(temperature ** 2)"``.
    """
    Y: pd.DataFrame
    X: Union[pd.DataFrame, List[pd.DataFrame]]
    formula: str
    family: str = 'normal'
    design: Optional[pd.DataFrame] = None
    ranlevels: Tuple[RandomLevel, ...] = field(default_factory=tuple)

    def __post_init__(self):
        if self.family not in FAMILIES:
            raise ValueError(f"Unknown family '{self.family}'; expected one of {FAMILIES}")

        n = len(self.Y)
        frames = self.X if isinstance(self.X, list) else [self.X]
        if isinstance(self.X, list) and len(self.X) != self.Y.shape[1]:
            raise ValueError(
                f"{len(self.X)} covariate frames given for {self.Y.shape[1]} species"
            )
        for frame in frames:
            if len(frame) != n:
                raise ValueError(f"Covariate frame has {len(frame)} rows, response has {n}")

        if self.ranlevels and self.design is None:
            raise ValueError("Random levels declared without a design table")
        if self.design is not None and len(self.design) != n:
            raise ValueError(f"Design table has {len(self.design)} rows, response has {n}")
        for level in self.ranlevels:
            if level.name not in self.design.columns:
                raise ValueError(f"Random level '{level.name}' is not a design column")

        object.__setattr__(self, 'ranlevels', tuple(self.ranlevels))
        # resolve design columns now so formula errors surface at construction
        self._design_matrices

    def __getstate__(self):
        # patsy design info does not pickle; it is rebuilt from the formula on load
        return {k: v for k, v in self.__dict__.items() if k not in _CACHED}

    def __setstate__(self, state):
        self.__dict__.update(state)

    @property
    def species(self) -> List[str]:
        return [str(c) for c in self.Y.columns]

    @property
    def n_units(self) -> int:
        return len(self.Y)

    @property
    def species_specific(self) -> bool:
        return isinstance(self.X, list)

    @cached_property
    def _design_matrices(self):
        frames = self.X if self.species_specific else [self.X]
        matrices = [patsy.dmatrix(self.formula, frame, NA_action='raise',
                                  return_type='dataframe') for frame in frames]
        names = list(matrices[0].columns)
        for j, m in enumerate(matrices[1:], start=1):
            if list(m.columns) != names:
                raise ValueError(
                    f"Covariate frame {j} produces design columns {list(m.columns)}, "
                    f"expected {names}"
                )
        return matrices

    @cached_property
    def covariate_names(self) -> List[str]:
        """Design-column names produced by the formula, expansions included."""
        return list(self._design_matrices[0].columns)

    def design_matrix(self) -> np.ndarray:
        """(N, K) array, or (S, N, K) for species-specific covariates."""
        arrays = [m.to_numpy(dtype=float) for m in self._design_matrices]
        return np.stack(arrays) if self.species_specific else arrays[0]

    def design_for(self, X_new) -> np.ndarray:
        """Design matrix for new covariate data using the fitted formula encoding."""
        infos = [m.design_info for m in self._design_matrices]
        if self.species_specific:
            if not isinstance(X_new, list) or len(X_new) != len(infos):
                raise ValueError("Species-specific model needs one covariate frame per species")
            return np.stack([
                np.asarray(patsy.build_design_matrices([info], frame, NA_action='raise')[0],
                           dtype=float)
                for info, frame in zip(infos, X_new)
            ])
        return np.asarray(patsy.build_design_matrices([infos[0]], X_new, NA_action='raise')[0],
                          dtype=float)

    def level_index(self, level: RandomLevel, design: Optional[pd.DataFrame] = None) -> np.ndarray:
        design = self.design if design is None else design
        return level.index_of(design[level.name])

    def for_rows(self, rows) -> 'ModelSpec':
        """Spec restricted to a subset of sampling units (boolean mask or positions)."""
        rows = np.asarray(rows)
        if rows.dtype == bool:
            rows = np.flatnonzero(rows)
        Y = self.Y.iloc[rows].reset_index(drop=True)
        if self.species_specific:
            X = [frame.iloc[rows].reset_index(drop=True) for frame in self.X]
        else:
            X = self.X.iloc[rows].reset_index(drop=True)
        design = None
        levels = ()
        if self.design is not None:
            design = self.design.iloc[rows].reset_index(drop=True)
            levels = tuple(RandomLevel.from_design(design, lv.name, lv.n_factors)
                           for lv in self.ranlevels)
        return ModelSpec(Y=Y, X=X, formula=self.formula, family=self.family,
                         design=design, ranlevels=levels)

    def summary(self) -> str:
        levels = ', '.join(f"{lv.name} ({lv.n_units} units, {lv.n_factors} factors)"
                           for lv in self.ranlevels) or 'none'
        return (f"{self.n_units} units x {len(self.species)} species | family={self.family} | "
                f"formula: {self.formula} -> {len(self.covariate_names)} columns | "
                f"random levels: {levels}")


def make_spec(Y, X, formula, family='normal', design=None, levels: Sequence = (),
              n_factors=2) -> ModelSpec:
    """Convenience constructor declaring random levels from design column names."""
    ranlevels = ()
    if design is not None:
        design = study_design(design, list(levels)) if levels else design.astype(str)
        ranlevels = tuple(RandomLevel.from_design(design, name, n_factors) for name in levels)
    return ModelSpec(Y=Y.reset_index(drop=True), X=X, formula=formula, family=family,
                     design=design, ranlevels=ranlevels)


def build_pymc_model(spec: ModelSpec) -> pm.Model:
    """Build the PyMC model of a spec. Missing responses are left out of the likelihood."""
    Xd = spec.design_matrix()
    Y = spec.Y.to_numpy(dtype=float)
    obs_rows, obs_cols = np.nonzero(~np.isnan(Y))
    y_obs = Y[obs_rows, obs_cols]
    if spec.family != 'normal':
        y_obs = y_obs.astype(int)

    coords = {
        'species': spec.species,
        'unit': np.arange(spec.n_units),
        'covariate': spec.covariate_names,
        'obs': np.arange(len(y_obs)),
    }
    for level in spec.ranlevels:
        coords[f'{level.name}_unit'] = list(level.units)
        coords[f'{level.name}_factor'] = np.arange(level.n_factors)

    with pm.Model(coords=coords) as model:
        beta = pm.Normal('Beta', mu=0, sigma=BETA_PRIOR_SD, dims=('covariate', 'species'))
        if spec.species_specific:
            # (S, N, K) * (S, 1, K) summed over K, then back to (N, S)
            L = (pt.as_tensor_variable(Xd) * beta.T[:, None, :]).sum(axis=2).T
        else:
            L = pm.math.dot(Xd, beta)

        for level in spec.ranlevels:
            unit_dim, factor_dim = f'{level.name}_unit', f'{level.name}_factor'
            eta = pm.Normal(f'Eta_{level.name}', 0, 1, dims=(unit_dim, factor_dim))
            # precision of factor h is delta_1 * ... * delta_h, so later factors shrink
            shapes = np.array([DELTA_SHAPE_FIRST] + [DELTA_SHAPE_LATER] * (level.n_factors - 1))
            delta = pm.Gamma(f'delta_{level.name}', alpha=shapes, beta=1.0, dims=factor_dim)
            tau = pm.Deterministic(f'tau_{level.name}',
                                   LAMBDA_SCALE_SD * pt.cumprod(delta) ** -0.5, dims=factor_dim)
            lam_raw = pm.Normal(f'Lambda_raw_{level.name}', 0, 1, dims=(factor_dim, 'species'))
            lam = pm.Deterministic(f'Lambda_{level.name}', lam_raw * tau[:, None],
                                   dims=(factor_dim, 'species'))
            L = L + pm.math.dot(eta[spec.level_index(level)], lam)

        mu = L[obs_rows, obs_cols]
        if spec.family == 'normal':
            sigma = pm.HalfNormal('sigma', sigma=SIGMA_PRIOR_SD, dims='species')
            pm.Normal('Y_obs', mu=mu, sigma=sigma[obs_cols], observed=y_obs, dims='obs')
        elif spec.family == 'poisson':
            pm.Poisson('Y_obs', mu=pm.math.exp(mu), observed=y_obs, dims='obs')
        elif spec.family == 'lognormal poisson':
            sigma = pm.HalfNormal('sigma', sigma=SIGMA_PRIOR_SD, dims='species')
            eps = pm.Normal('eps', 0, 1, dims='obs')
            pm.Poisson('Y_obs', mu=pm.math.exp(mu + eps * sigma[obs_cols]),
                       observed=y_obs, dims='obs')
        else:
            pm.Bernoulli('Y_obs', p=pm.math.invprobit(mu), observed=y_obs, dims='obs')

    return model
