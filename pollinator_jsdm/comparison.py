"""
Single-species mixed models fitted per response column with statsmodels,
compared against the joint model's coefficients.
"""

import warnings

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import patsy
import seaborn as sns
import statsmodels.api as sm

from pollinator_jsdm.model import ModelSpec
from pollinator_jsdm.posterior import coefficient_table
from pollinator_jsdm.sampling import FittedModel


def informative_columns(exog: pd.DataFrame) -> pd.DataFrame:
    """Drop design columns that are constant over the rows, keeping the intercept.

    A focal flower column zeroed for its own species is constant and would make
    the fixed-effect design singular.
    """
    keep = [c for c in exog.columns if c == 'Intercept' or exog[c].nunique() > 1]
    return exog[keep]


def single_species_fits(spec: ModelSpec, group_column: str) -> pd.DataFrame:
    """Random-intercept model per species on the units where it was observed.

    Design columns constant over a species' observed units are left out of its
    model. Species whose fit fails (too few observations or groups) are
    reported and left out of the table.
    """
    if spec.design is None or group_column not in spec.design.columns:
        raise ValueError(f"Design table has no column '{group_column}'")
    if spec.family != 'normal':
        raise ValueError("Single-species comparison is only defined for the normal family")

    groups_all = spec.design[group_column].to_numpy()
    rows = []
    for j, species in enumerate(spec.species):
        frame = spec.X[j] if spec.species_specific else spec.X
        endog = spec.Y.iloc[:, j].to_numpy(dtype=float)
        observed = ~np.isnan(endog)
        exog = patsy.dmatrix(spec.formula, frame.reset_index(drop=True), NA_action='raise',
                             return_type='dataframe')
        exog = informative_columns(exog[observed].reset_index(drop=True))
        try:
            with warnings.catch_warnings():
                warnings.simplefilter('ignore')
                result = sm.MixedLM(endog[observed], exog, groups=groups_all[observed]).fit()
        except (ValueError, np.linalg.LinAlgError) as e:
            print(f"⚠️  Single-species model for {species} failed: {e}")
            continue
        bse = np.asarray(result.bse_fe)
        for k, covariate in enumerate(exog.columns):
            rows.append({
                'covariate': covariate,
                'species': species,
                'estimate': float(np.asarray(result.fe_params)[k]),
                'std_error': float(bse[k]),
            })
    return pd.DataFrame(rows, columns=['covariate', 'species', 'estimate', 'std_error'])


def compare_coefficients(fit: FittedModel, single: pd.DataFrame, hdi_prob=0.94) -> pd.DataFrame:
    """Joint posterior mean/HDI next to the single-species estimate of each coefficient."""
    joint = coefficient_table(fit, hdi_prob=hdi_prob)
    table = joint.merge(single, on=['covariate', 'species'], how='inner')
    table['difference'] = table['mean'] - table['estimate']
    table['single_in_hdi'] = (table['estimate'] >= table['hdi_lower']) & (table['estimate'] <= table['hdi_upper'])
    return table.reset_index(drop=True)


def plot_coefficient_comparison(table: pd.DataFrame, path: str):
    """Joint vs single-species estimates; points on the diagonal agree."""
    sns.set(style='whitegrid', context='talk')
    fig, ax = plt.subplots(figsize=(9, 8))
    sns.scatterplot(data=table, x='estimate', y='mean', hue='covariate', style='species',
                    s=90, ax=ax)
    ax.errorbar(table['estimate'], table['mean'],
                yerr=[table['mean'] - table['hdi_lower'], table['hdi_upper'] - table['mean']],
                xerr=table['std_error'], fmt='none', ecolor='#8c8c8c', alpha=0.5)
    lims = [min(ax.get_xlim()[0], ax.get_ylim()[0]), max(ax.get_xlim()[1], ax.get_ylim()[1])]
    ax.plot(lims, lims, color='black', linestyle='--', alpha=0.6)
    ax.set_xlabel('Single-species mixed model estimate')
    ax.set_ylabel('Joint model posterior mean')
    ax.set_title('Coefficient Comparison: Joint vs Single-Species')
    ax.legend(loc='center left', bbox_to_anchor=(1.02, 0.5), fontsize='small')
    fig.tight_layout()
    fig.savefig(path, dpi=300, bbox_inches='tight')
    plt.close(fig)
    return path
