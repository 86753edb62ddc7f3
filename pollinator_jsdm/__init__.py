"""
Joint species-distribution analysis of coflowering pollinator visitation
and individual fitness data, built on PyMC and ArviZ.
"""

from pollinator_jsdm.design import RandomLevel, species_covariates
from pollinator_jsdm.model import ModelSpec, build_pymc_model
from pollinator_jsdm.sampling import FittedModel, SamplerConfig, load_fit, sample_mcmc, save_fit

__version__ = "0.1.0"

__all__ = [
    "FittedModel",
    "ModelSpec",
    "RandomLevel",
    "SamplerConfig",
    "build_pymc_model",
    "load_fit",
    "sample_mcmc",
    "save_fit",
    "species_covariates",
]
