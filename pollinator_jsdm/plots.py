"""
Static figures of the posterior analysis: coefficient effects, Beta support
heatmap, variance partitioning, residual associations and model fit.
"""

import matplotlib
matplotlib.use('Agg')  # Non-interactive backend
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

from pollinator_jsdm.posterior import PostEstimate, threshold_estimates

PALETTE = {
    'Increase': '#1f77b4',
    'Uncertain': '#8c8c8c',
    'Decrease': '#d62728',
}


def _save(fig, path):
    fig.tight_layout()
    fig.savefig(path, dpi=300, bbox_inches='tight')
    plt.close(fig)
    print(f"✅ Saved {path}")
    return path


def effect_direction(table: pd.DataFrame) -> pd.Series:
    """Increase / Decrease when the HDI excludes zero, Uncertain otherwise."""
    return pd.Series(
        np.where((table['hdi_lower'] < 0) & (table['hdi_upper'] > 0), 'Uncertain',
                 np.where(table['mean'] > 0, 'Increase', 'Decrease')),
        index=table.index,
    )


def plot_effects_by_species(coefs: pd.DataFrame, path: str, drop_intercept=True, ncols=3):
    """One panel per species with the posterior mean of every coefficient."""
    df = coefs.copy()
    if drop_intercept:
        df = df[df['covariate'] != 'Intercept']
    df['Direction'] = effect_direction(df)
    species = list(dict.fromkeys(df['species']))

    sns.set(style='whitegrid', context='talk')
    nrows = int(np.ceil(len(species) / ncols))
    fig, axes = plt.subplots(nrows, ncols, figsize=(7 * ncols, 6 * nrows), squeeze=False)
    axes = axes.ravel()
    for idx, sp in enumerate(species):
        sub = df[df['species'] == sp].copy()
        sub['abs_effect'] = sub['mean'].abs()
        sub = sub.sort_values('abs_effect', ascending=True)
        sns.barplot(data=sub, x='mean', y='covariate', hue='Direction', dodge=False,
                    palette=PALETTE, hue_order=list(PALETTE), ax=axes[idx])
        axes[idx].axvline(0, color='black', linestyle='--', alpha=0.6)
        axes[idx].set_xlabel('Posterior mean coefficient')
        axes[idx].set_ylabel('')
        axes[idx].set_title(sp)
        if axes[idx].get_legend() is not None:
            axes[idx].get_legend().remove()
    for ax in axes[len(species):]:
        ax.axis('off')

    handles = [plt.Rectangle((0, 0), 1, 1, color=c) for c in PALETTE.values()]
    fig.legend(handles, list(PALETTE), title='Effect direction',
               loc='center right', bbox_to_anchor=(1.06, 0.5))
    return _save(fig, path)


def plot_beta(est: PostEstimate, path: str, support_level=0.95, plot_type='sign'):
    """Heatmap of coefficients whose posterior support exceeds ``support_level``.

    plot_type='sign' shows +1/-1, plot_type='mean' the posterior mean.
    """
    sign = threshold_estimates(est, support_level)
    shown = sign if plot_type == 'sign' else est.mean.where(sign != 0, 0.0)

    sns.set(style='white', context='talk')
    fig, ax = plt.subplots(figsize=(2 + 1.2 * shown.shape[1], 2 + 0.7 * shown.shape[0]))
    sns.heatmap(shown, annot=(plot_type == 'mean'), fmt='.2f', cmap='RdBu_r', center=0,
                linewidths=0.5, cbar_kws={'label': 'Sign' if plot_type == 'sign' else 'Posterior mean'},
                ax=ax)
    ax.set_title(f'Regression coefficients (support > {support_level})')
    ax.set_xlabel('')
    ax.set_ylabel('')
    return _save(fig, path)


def plot_variance_partitioning(vals: pd.DataFrame, path: str):
    """Stacked bars of variance shares per species, with mean shares in the legend."""
    sns.set(style='whitegrid', context='talk')
    fig, ax = plt.subplots(figsize=(max(8, 1.2 * vals.shape[1]), 7))
    colors = sns.color_palette('Set2', n_colors=len(vals.index))
    bottom = np.zeros(vals.shape[1])
    for color, (name, row) in zip(colors, vals.iterrows()):
        ax.bar(vals.columns, row.values, bottom=bottom, color=color,
               label=f'{name} (mean = {row.mean():.2f})')
        bottom += row.values
    ax.set_ylabel('Variance proportion')
    ax.set_ylim(0, 1)
    ax.set_title('Variance Partitioning')
    ax.set_xticks(range(vals.shape[1]))
    ax.set_xticklabels(vals.columns, rotation=45, ha='right')
    ax.legend(loc='center left', bbox_to_anchor=(1.02, 0.5), fontsize='small')
    return _save(fig, path)


def plot_associations(display: pd.DataFrame, path: str, title='Residual associations'):
    """Lower-triangle heatmap of a thresholded association matrix."""
    sns.set(style='white', context='talk')
    fig, ax = plt.subplots(figsize=(2 + 0.9 * len(display), 1.5 + 0.8 * len(display)))
    mask = np.triu(np.ones_like(display, dtype=bool))
    sns.heatmap(display, mask=mask, annot=True, cmap='RdBu_r', vmin=-1, vmax=1, center=0,
                square=True, linewidths=0.5, cbar_kws={'shrink': 0.8}, fmt='.2f', ax=ax)
    ax.set_title(title)
    return _save(fig, path)


def plot_model_fit(fit_table: pd.DataFrame, path: str, metric: str = None):
    """Bar chart of a per-species fit statistic (R2, SR2, TjurR2 or AUC)."""
    metric = metric or next(m for m in ('R2', 'SR2', 'TjurR2', 'AUC') if m in fit_table.columns)
    sns.set(style='whitegrid', context='talk')
    fig, ax = plt.subplots(figsize=(max(8, 1.2 * len(fit_table)), 6))
    values = fit_table[metric]
    ax.bar(fit_table.index.astype(str), values, color='#1f77b4', alpha=0.8)
    ax.axhline(values.mean(), color='black', linestyle='--', alpha=0.6,
               label=f'mean = {values.mean():.2f}')
    ax.set_ylabel(metric)
    ax.set_title(f'Explanatory power ({metric})')
    ax.set_xticks(range(len(fit_table)))
    ax.set_xticklabels(fit_table.index.astype(str), rotation=45, ha='right')
    ax.legend()
    return _save(fig, path)


def plot_selection_gradients(gradients: pd.DataFrame, path: str):
    """Point-range plot of linear and quadratic selection gradients per species."""
    sns.set(style='whitegrid', context='talk')
    kinds = list(dict.fromkeys(gradients['gradient']))
    fig, axes = plt.subplots(1, len(kinds), figsize=(8 * len(kinds), 6), squeeze=False)
    for ax, kind in zip(axes.ravel(), kinds):
        sub = gradients[gradients['gradient'] == kind].reset_index(drop=True)
        labels = sub['species'].astype(str) + ': ' + sub['trait'].astype(str)
        y = np.arange(len(sub))
        ax.errorbar(sub['mean'], y, xerr=[sub['mean'] - sub['lower'], sub['upper'] - sub['mean']],
                    fmt='o', color='#1f77b4', capsize=4)
        ax.axvline(0, color='black', linestyle='--', alpha=0.6)
        ax.set_yticks(y)
        ax.set_yticklabels(labels)
        ax.set_title(f'{kind.capitalize()} selection gradients')
        ax.set_xlabel('Gradient (relative fitness per SD)')
    return _save(fig, path)
