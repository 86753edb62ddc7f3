"""
Simulated datasets in the CSV layout the pipelines read.

  visitation: pollinator visits to coflowering plant species per plot census
  fitness:    individual fitness and floral traits of several plant species
"""

import os

import numpy as np
import pandas as pd

from pollinator_jsdm.data import fitness_to_wide

DEFAULT_SPECIES = ('Lupinus', 'Delphinium', 'Ipomopsis', 'Mertensia')
DEFAULT_TRAITS = ('flower_size', 'flowering_onset')


def simulate_visitation(n_plots=12, n_censuses=8, species=DEFAULT_SPECIES, seed=1):
    """Visit counts with temperature, conspecific and heterospecific flower effects.

    Covariate columns are ``temperature`` followed by one ``flowers_<species>``
    column per species in response order (flower offset 1). Species with no
    open flowers in a census are unobserved and left missing.
    """
    rng = np.random.default_rng(seed)
    n_species = len(species)
    plots = np.repeat([f'P{p + 1:02d}' for p in range(n_plots)], n_censuses)
    censuses = np.tile(np.arange(1, n_censuses + 1), n_plots)
    n = len(plots)

    plot_effect = np.repeat(rng.normal(0, 0.4, size=(n_plots, 1)), n_censuses, axis=0)
    temperature = 18 + 6 * np.sin(censuses / n_censuses * np.pi) + rng.normal(0, 1.5, n)

    peak = rng.uniform(1, n_censuses, n_species)
    flowers = np.empty((n, n_species))
    for j in range(n_species):
        lam = 40 * np.exp(-0.5 * ((censuses - peak[j]) / 2.0) ** 2)
        flowers[:, j] = rng.poisson(lam)

    b_temp = rng.normal(0.08, 0.03, n_species)
    b_con = rng.normal(0.04, 0.01, n_species)
    b_het = rng.normal(-0.005, 0.005, n_species)
    total = flowers.sum(axis=1)

    visits = np.full((n, n_species), np.nan)
    for j in range(n_species):
        eta = (-1.5 + b_temp[j] * (temperature - 18) + b_con[j] * flowers[:, j]
               + b_het[j] * (total - flowers[:, j]) + plot_effect[:, 0])
        counts = rng.poisson(np.exp(eta)).astype(float)
        observed = flowers[:, j] > 0
        visits[observed, j] = counts[observed]

    Y = pd.DataFrame(visits, columns=list(species))
    X = pd.DataFrame({'temperature': np.round(temperature, 2)})
    for j, sp in enumerate(species):
        X[f'flowers_{sp}'] = flowers[:, j]
    design = pd.DataFrame({'plot': plots, 'census': censuses})
    return Y, X, design


def simulate_fitness(n_sites=6, per_site=20, species=DEFAULT_SPECIES[:3],
                     traits=DEFAULT_TRAITS, seed=2):
    """Individual fitness with directional and stabilising selection on traits.

    Each row is one individual; only its own species' fitness column is filled.
    The covariate table holds the raw traits plus the species label.
    """
    rng = np.random.default_rng(seed)
    rows = []
    for sp_idx, sp in enumerate(species):
        beta = rng.normal(0.3, 0.15, len(traits))
        gamma = -np.abs(rng.normal(0.1, 0.05, len(traits)))
        for s in range(n_sites):
            site_effect = rng.normal(0, 0.2)
            z = rng.normal(0, 1, (per_site, len(traits)))
            eta = 1.5 + z @ beta + (z ** 2) @ gamma + site_effect
            fitness = rng.poisson(np.exp(eta))
            for i in range(per_site):
                row = {'species': sp, 'site': f'S{s + 1:02d}', 'fitness': fitness[i]}
                for t, trait in enumerate(traits):
                    # raw trait scale differs between species
                    row[trait] = 10 * (sp_idx + 1) + 2 * z[i, t]
                rows.append(row)

    individuals = pd.DataFrame(rows)
    Y = fitness_to_wide(individuals)[list(species)]
    X = individuals[['species'] + list(traits)].copy()
    design = individuals[['site']].copy()
    design['individual'] = [f'I{i + 1:04d}' for i in range(len(individuals))]
    return Y, X, design


def write_tables(Y, X, design, out_dir):
    os.makedirs(out_dir, exist_ok=True)
    paths = {}
    for name, table in (('Y', Y), ('X', X), ('design', design)):
        paths[name] = os.path.join(out_dir, f'{name}.csv')
        table.to_csv(paths[name], index=False)
    print(f"✅ Simulated tables written to {out_dir}: Y {Y.shape}, X {X.shape}, design {design.shape}")
    return paths
