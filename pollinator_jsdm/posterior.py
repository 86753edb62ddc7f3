"""
Posterior analysis of a fitted joint model: predictions, explanatory power,
regression coefficients, residual species associations and selection gradients.
"""

from dataclasses import dataclass
from typing import Dict

import arviz as az
import numpy as np
import pandas as pd
from scipy import stats
from sklearn.metrics import roc_auc_score

from pollinator_jsdm.sampling import FittedModel

NEW_UNIT = 'new_unit'


@dataclass(frozen=True)
class PostEstimate:
    mean: pd.DataFrame
    support: pd.DataFrame
    support_neg: pd.DataFrame


@dataclass(frozen=True)
class Association:
    """Species x species residual correlation at one random level."""
    level: str
    mean: pd.DataFrame
    support: pd.DataFrame


# =============================================================================
# Prediction
# =============================================================================

def _level_latent_rows(fit, level, design, n_rows, rng):
    """Latent factor values (draws, rows, factors) for the rows of ``design``.

    Units seen during fitting reuse their posterior draws; units new to the
    model get one draw from the standard-normal prior per posterior draw.
    """
    eta_fit = fit.draws(f'Eta_{level.name}')
    n_draws, _, n_factors = eta_fit.shape
    if design is None:
        labels = np.array([NEW_UNIT] * n_rows)
    else:
        labels = design[level.name].astype(str).to_numpy()
    idx = level.index_of(labels)
    known = idx >= 0

    eta_rows = np.empty((n_draws, n_rows, n_factors))
    eta_rows[:, known] = eta_fit[:, idx[known]]
    if (~known).any():
        uniq, inv = np.unique(labels[~known], return_inverse=True)
        new_eta = rng.standard_normal((n_draws, len(uniq), n_factors))
        eta_rows[:, ~known] = new_eta[:, inv]
    return eta_rows


def linear_predictor(fit: FittedModel, X=None, design=None, rng=None) -> np.ndarray:
    """Linear predictor draws with shape (draws, units, species).

    Without ``X`` the training covariates and design are used. With new ``X``
    and no ``design`` all rows belong to a single new unit of each random level,
    so they share one prior draw of its latent factors per posterior draw.
    """
    spec = fit.spec
    rng = np.random.default_rng(rng)
    if X is None:
        Xd = spec.design_matrix()
        design = spec.design if design is None else design
    else:
        Xd = spec.design_for(X)

    beta = fit.draws('Beta')
    if Xd.ndim == 2:
        L = np.einsum('nk,dks->dns', Xd, beta)
    else:
        L = np.einsum('snk,dks->dns', Xd, beta)

    n_rows = L.shape[1]
    if design is not None and len(design) != n_rows:
        raise ValueError(f"Design has {len(design)} rows, covariates have {n_rows}")
    for level in spec.ranlevels:
        eta_rows = _level_latent_rows(fit, level, design, n_rows, rng)
        lam = fit.draws(f'Lambda_{level.name}')
        L = L + np.einsum('dnf,dfs->dns', eta_rows, lam)
    return L


def predict(fit: FittedModel, X=None, design=None, expected=True, rng=None) -> np.ndarray:
    """Posterior predictive draws on the response scale, shape (draws, units, species).

    ``expected=True`` returns the expected response of each draw; otherwise a
    response is simulated from the observation model.
    """
    rng = np.random.default_rng(rng)
    L = linear_predictor(fit, X=X, design=design, rng=rng)
    family = fit.spec.family

    if family == 'normal':
        if expected:
            return L
        sigma = fit.draws('sigma')[:, None, :]
        return L + sigma * rng.standard_normal(L.shape)
    if family == 'poisson':
        mu = np.exp(L)
        return mu if expected else rng.poisson(mu).astype(float)
    if family == 'lognormal poisson':
        sigma = fit.draws('sigma')[:, None, :]
        if expected:
            return np.exp(L + sigma ** 2 / 2)
        return rng.poisson(np.exp(L + sigma * rng.standard_normal(L.shape))).astype(float)
    p = stats.norm.cdf(L)
    return p if expected else (rng.random(L.shape) < p).astype(float)


def compute_predicted_values(fit: FittedModel, X=None, design=None, rng=None) -> pd.DataFrame:
    """Posterior mean of the expected response per unit and species."""
    pred = predict(fit, X=X, design=design, expected=True, rng=rng).mean(axis=0)
    return pd.DataFrame(pred, columns=fit.spec.species)


# =============================================================================
# Explanatory / predictive power
# =============================================================================

def _pairwise(y, p):
    ok = ~(np.isnan(y) | np.isnan(p))
    return y[ok], p[ok]


def _squared_corr(a, b):
    if len(a) < 2 or np.std(a) == 0 or np.std(b) == 0:
        return np.nan
    return float(np.corrcoef(a, b)[0, 1] ** 2)


def evaluate_model_fit(Y: pd.DataFrame, predicted: pd.DataFrame, family: str) -> pd.DataFrame:
    """Per-species fit statistics; missing responses are ignored.

    normal: RMSE and R2 (squared correlation of prediction and observation)
    count families: RMSE and SR2 (squared correlation on the square-root scale)
    probit: TjurR2 and AUC
    """
    rows = []
    for j, species in enumerate(Y.columns):
        y, p = _pairwise(Y.iloc[:, j].to_numpy(dtype=float),
                         predicted.iloc[:, j].to_numpy(dtype=float))
        row = {'species': species, 'n_obs': len(y)}
        if family == 'probit':
            pos, neg = p[y == 1], p[y == 0]
            both = len(pos) > 0 and len(neg) > 0
            row['TjurR2'] = float(pos.mean() - neg.mean()) if both else np.nan
            row['AUC'] = float(roc_auc_score(y, p)) if both else np.nan
        else:
            row['RMSE'] = float(np.sqrt(np.mean((y - p) ** 2))) if len(y) else np.nan
            if family == 'normal':
                row['R2'] = _squared_corr(y, p)
            else:
                row['SR2'] = _squared_corr(np.sqrt(y), np.sqrt(np.clip(p, 0, None)))
        rows.append(row)
    return pd.DataFrame(rows).set_index('species')


# =============================================================================
# Parameter estimates
# =============================================================================

def get_post_estimate(fit: FittedModel, var_name: str = 'Beta') -> PostEstimate:
    """Posterior mean and support (fraction of draws > 0 / < 0) of a 2-D parameter."""
    da = fit.idata.posterior[var_name]
    row_dim, col_dim = [d for d in da.dims if d not in ('chain', 'draw')]
    draws = fit.draws(var_name)
    index = [str(v) for v in da[row_dim].values]
    columns = [str(v) for v in da[col_dim].values]

    def frame(values):
        return pd.DataFrame(values, index=index, columns=columns)

    return PostEstimate(
        mean=frame(draws.mean(axis=0)),
        support=frame((draws > 0).mean(axis=0)),
        support_neg=frame((draws < 0).mean(axis=0)),
    )


def coefficient_table(fit: FittedModel, hdi_prob: float = 0.94) -> pd.DataFrame:
    """Long table of Beta: covariate, species, mean, sd, HDI bounds, support."""
    names = fit.spec.covariate_names
    species = fit.spec.species
    summary = az.summary(fit.idata, var_names=['Beta'], hdi_prob=hdi_prob, kind='stats',
                         round_to='none')
    hdi_cols = [c for c in summary.columns if c.startswith('hdi_')]
    summary = summary.rename(columns={hdi_cols[0]: 'hdi_lower', hdi_cols[1]: 'hdi_upper'})
    # az.summary flattens Beta in (covariate, species) order
    summary['covariate'] = [n for n in names for _ in species]
    summary['species'] = species * len(names)

    support = get_post_estimate(fit, 'Beta').support
    summary['support'] = [support.loc[c, s] for c, s in zip(summary['covariate'], summary['species'])]
    return summary[['covariate', 'species', 'mean', 'sd', 'hdi_lower', 'hdi_upper', 'support']]


# =============================================================================
# Residual associations
# =============================================================================

def omega_draws(fit: FittedModel, level_name: str) -> np.ndarray:
    """Residual covariance Lambda' Lambda per draw, shape (draws, species, species)."""
    lam = fit.draws(f'Lambda_{level_name}')
    return np.einsum('dfs,dft->dst', lam, lam)


def _cov_to_corr(omega):
    sd = np.sqrt(np.einsum('dss->ds', omega))
    sd = np.where(sd > 0, sd, np.nan)
    corr = omega / (sd[:, :, None] * sd[:, None, :])
    return np.nan_to_num(corr)


def compute_associations(fit: FittedModel) -> Dict[str, Association]:
    """Residual species-to-species correlations for every random level."""
    species = fit.spec.species
    out = {}
    for level in fit.spec.ranlevels:
        corr = _cov_to_corr(omega_draws(fit, level.name))
        out[level.name] = Association(
            level=level.name,
            mean=pd.DataFrame(corr.mean(axis=0), index=species, columns=species),
            support=pd.DataFrame((corr > 0).mean(axis=0), index=species, columns=species),
        )
    return out


def threshold_associations(assoc: Association, tau: float) -> pd.DataFrame:
    """Signed mean association where the posterior support is decisive, else zero.

    A cell is kept when support > tau (positive) or support < 1 - tau
    (negative). Cells exactly at tau or 1 - tau are zeroed.
    """
    if not 0.5 < tau < 1:
        raise ValueError(f"Support threshold must lie in (0.5, 1), got {tau}")
    keep = (assoc.support > tau) | (assoc.support < 1 - tau)
    return assoc.mean.where(keep, 0.0)


def threshold_estimates(est: PostEstimate, support_level: float) -> pd.DataFrame:
    """Sign (+1 / -1 / 0) of each coefficient with support above ``support_level``."""
    sign = pd.DataFrame(0, index=est.mean.index, columns=est.mean.columns)
    sign[est.support > support_level] = 1
    sign[est.support_neg > support_level] = -1
    return sign


# =============================================================================
# Selection gradients
# =============================================================================

def selection_gradients(fit: FittedModel, traits, interval=0.95) -> pd.DataFrame:
    """Linear (beta) and quadratic (gamma) selection gradients per trait and species.

    Gradients are the regression coefficients of relative fitness on
    standardized traits; the quadratic gradient is twice the coefficient of
    ``I(trait ** 2)`` when the formula contains it.
    """
    names = fit.spec.covariate_names
    beta = fit.draws('Beta')
    lo, hi = (1 - interval) / 2, 1 - (1 - interval) / 2
    rows = []
    for trait in traits:
        terms = [('linear', trait, 1.0), ('quadratic', f'I({trait} ** 2)', 2.0)]
        if trait not in names:
            raise ValueError(f"Trait '{trait}' is not a covariate of the model")
        for kind, column, factor in terms:
            if column not in names:
                continue
            k = names.index(column)
            for j, species in enumerate(fit.spec.species):
                d = factor * beta[:, k, j]
                rows.append({
                    'trait': trait, 'species': species, 'gradient': kind,
                    'mean': float(d.mean()),
                    'lower': float(np.quantile(d, lo)),
                    'upper': float(np.quantile(d, hi)),
                    'support': float((d > 0).mean()),
                })
    return pd.DataFrame(rows)
