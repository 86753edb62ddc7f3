"""
MCMC sampling of a ModelSpec and persistence of the posterior.

Sampling is the expensive step (hours for the full pipelines); every later
analysis reloads the saved posterior instead of resampling.
"""

import os
import pickle
import sys
import time
from dataclasses import dataclass

import arviz as az
import numpy as np
import pymc as pm

from pollinator_jsdm.model import ModelSpec, build_pymc_model


@dataclass(frozen=True)
class SamplerConfig:
    """Chain count, thinning, burn-in and step-size adaptation settings.

    ``samples`` draws are retained per chain after discarding ``transient``
    tuning iterations and keeping every ``thin``-th of ``samples * thin`` draws.
    """
    samples: int = 250
    thin: int = 10
    transient: int = 1250
    n_chains: int = 2
    cores: int = 1
    target_accept: float = 0.9
    init: str = 'adapt_diag'
    random_seed: int = 42

    def __post_init__(self):
        for name in ('samples', 'thin', 'n_chains', 'cores'):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1, got {getattr(self, name)}")
        if self.transient < 0:
            raise ValueError(f"transient must be non-negative, got {self.transient}")

    @property
    def total_draws(self) -> int:
        return self.samples * self.thin


@dataclass(frozen=True, eq=False)
class FittedModel:
    """A model spec together with its posterior draws."""
    spec: ModelSpec
    idata: az.InferenceData

    def draws(self, var_name: str) -> np.ndarray:
        """Posterior draws of one variable with chains and draws flattened to axis 0."""
        da = self.idata.posterior[var_name]
        stacked = da.stack(sample=('chain', 'draw'))
        return np.moveaxis(stacked.values, -1, 0)

    @property
    def n_draws(self) -> int:
        post = self.idata.posterior
        return post.sizes['chain'] * post.sizes['draw']


def thin_posterior(idata: az.InferenceData, thin: int) -> az.InferenceData:
    if thin == 1:
        return idata
    return idata.sel(draw=slice(None, None, thin))


def sample_mcmc(spec: ModelSpec, config: SamplerConfig = SamplerConfig(),
                model=None, verbose=True) -> FittedModel:
    """Sample the posterior of ``spec`` with PyMC's NUTS sampler."""
    model = build_pymc_model(spec) if model is None else model
    kwargs = dict(
        draws=config.total_draws,
        tune=config.transient,
        chains=config.n_chains,
        cores=config.cores,
        target_accept=config.target_accept,
        init=config.init,
        random_seed=config.random_seed,
        progressbar=False,
        compute_convergence_checks=False,
    )
    if verbose:
        print(f"Using {config.n_chains} chains with {config.cores} core(s)")
        print(f"Total iterations: {(config.transient + config.total_draws) * config.n_chains} "
              f"({config.transient} transient + {config.total_draws} draws per chain, thin={config.thin})")
        print(f"Start time: {time.strftime('%Y-%m-%d %H:%M:%S')}")
        sys.stdout.flush()

    start_time = time.time()
    with model:
        try:
            idata = pm.sample(**kwargs)
        except (EOFError, BrokenPipeError, OSError, pickle.PickleError) as e:
            if config.cores == 1:
                raise
            print(f"\n⚠️  Multiprocessing error: {e}")
            print("Falling back to single-core sampling...")
            sys.stdout.flush()
            kwargs['cores'] = 1
            idata = pm.sample(**kwargs)

    idata = thin_posterior(idata, config.thin)
    if verbose:
        elapsed = time.time() - start_time
        print(f"✅ Model sampling completed in {elapsed / 60:.1f} minutes "
              f"({idata.posterior.sizes['draw']} retained draws per chain)")
        report_divergences(idata)
    return FittedModel(spec=spec, idata=idata)


def report_divergences(idata: az.InferenceData) -> int:
    if 'sample_stats' not in idata.groups() or 'diverging' not in idata.sample_stats:
        return 0
    divergences = idata.sample_stats['diverging']
    n_divergences = int(divergences.sum())
    if n_divergences > 0:
        print(f"⚠️  WARNING: {n_divergences} divergences detected among retained draws")
        per_chain = divergences.sum(dim='draw').values
        for chain_idx, n in enumerate(per_chain):
            if n == divergences.sizes['draw']:
                print(f"  ⚠️  Chain {chain_idx} has diverged completely - results may be unreliable!")
    return n_divergences


def fit_paths(directory: str, name: str):
    return (os.path.join(directory, f'{name}_idata.nc'),
            os.path.join(directory, f'{name}_spec.pkl'))


def save_fit(fit: FittedModel, directory: str, name: str):
    """Write the posterior (netCDF) and the ModelSpec (pickle) under ``directory``."""
    os.makedirs(directory, exist_ok=True)
    idata_file, spec_file = fit_paths(directory, name)
    fit.idata.to_netcdf(idata_file)
    with open(spec_file, 'wb') as f:
        pickle.dump(fit.spec, f)
    print(f"✅ Posterior saved to {idata_file}")
    print(f"✅ Model spec saved to {spec_file}")
    return idata_file, spec_file


def load_fit(directory: str, name: str) -> FittedModel:
    idata_file, spec_file = fit_paths(directory, name)
    for path in (idata_file, spec_file):
        if not os.path.exists(path):
            raise FileNotFoundError(f"Saved fit not found: {path}")
    idata = az.from_netcdf(idata_file)
    with open(spec_file, 'rb') as f:
        spec = pickle.load(f)
    print(f"✅ Loaded posterior from {idata_file}")
    return FittedModel(spec=spec, idata=idata)


def has_fit(directory: str, name: str) -> bool:
    return all(os.path.exists(p) for p in fit_paths(directory, name))
