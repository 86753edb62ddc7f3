"""
Variance partitioning of the linear predictor among covariate groups and
random levels.
"""

from dataclasses import dataclass
from typing import Sequence

import numpy as np
import pandas as pd

from pollinator_jsdm.model import ModelSpec
from pollinator_jsdm.sampling import FittedModel


@dataclass(frozen=True)
class VariancePartition:
    vals: pd.DataFrame
    group: tuple
    group_names: tuple


def check_group_vector(spec: ModelSpec, group: Sequence[int], group_names: Sequence[str] = None):
    """Validate a grouping vector against the design columns of ``spec``.

    ``group`` assigns each design column, polynomial and dummy expansions
    included, to a 1-based group number.
    """
    names = spec.covariate_names
    if len(group) != len(names):
        raise ValueError(
            f"Grouping vector has {len(group)} entries but the formula produces "
            f"{len(names)} design columns: {names}"
        )
    if group_names is not None:
        bad = sorted(set(g for g in group if not 1 <= g <= len(group_names)))
        if bad:
            raise ValueError(
                f"Group numbers {bad} have no name among {len(group_names)} group names"
            )


def _quadratic_form(beta, cov, species_specific):
    # beta: (draws, K, S); cov: (K, K) or (S, K, K)
    if species_specific:
        return np.einsum('dks,skl,dls->ds', beta, cov, beta)
    return np.einsum('dks,kl,dls->ds', beta, cov, beta)


def compute_variance_partitioning(fit: FittedModel, group: Sequence[int],
                                  group_names: Sequence[str]) -> VariancePartition:
    """Share of explained variance per covariate group and random level, per species.

    For each posterior draw and species, the fixed-effect variance is split
    among groups in proportion to each group's own variance, and every random
    level contributes the sum of its squared loadings. Columns sum to one.
    """
    spec = fit.spec
    check_group_vector(spec, group, group_names)
    group = np.asarray(group)

    Xd = spec.design_matrix()
    if spec.species_specific:
        cov = np.stack([np.atleast_2d(np.cov(x, rowvar=False)) for x in Xd])
    else:
        cov = np.atleast_2d(np.cov(Xd, rowvar=False))
    beta = fit.draws('Beta')

    fixed = _quadratic_form(beta, cov, spec.species_specific)
    split = []
    for g in range(1, len(group_names) + 1):
        sel = np.flatnonzero(group == g)
        sub_cov = cov[..., sel[:, None], sel[None, :]] if spec.species_specific else cov[np.ix_(sel, sel)]
        split.append(_quadratic_form(beta[:, sel, :], sub_cov, spec.species_specific))
    split = np.stack(split)  # (groups, draws, S)
    split_total = split.sum(axis=0)
    split = np.divide(split, split_total, out=np.zeros_like(split), where=split_total > 0)

    random = np.stack([(fit.draws(f'Lambda_{lv.name}') ** 2).sum(axis=1)
                       for lv in spec.ranlevels]) if spec.ranlevels else np.zeros((0,) + fixed.shape)
    total = fixed + random.sum(axis=0)

    fixed_share = fixed / total
    parts = [split[g] * fixed_share for g in range(len(group_names))]
    parts += [r / total for r in random]
    vals = np.stack(parts).mean(axis=1)  # (groups + levels, S)

    index = list(group_names) + [f'Random: {lv.name}' for lv in spec.ranlevels]
    return VariancePartition(
        vals=pd.DataFrame(vals, index=index, columns=spec.species),
        group=tuple(int(g) for g in group),
        group_names=tuple(group_names),
    )
