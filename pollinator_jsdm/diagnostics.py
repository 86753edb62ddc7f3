"""
Convergence diagnostics: effective sample size and potential scale reduction
factor per parameter block, histograms and trace plots.
"""

import json

import arviz as az
import matplotlib
matplotlib.use('Agg')  # Non-interactive backend
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import xarray as xr
from matplotlib.backends.backend_pdf import PdfPages

from pollinator_jsdm.sampling import FittedModel

RHAT_LIMIT = 1.01
ESS_LIMIT = 400


def omega_dataset(fit: FittedModel) -> xr.Dataset:
    """Residual covariance Omega = Lambda' Lambda per chain and draw for every level."""
    post = fit.idata.posterior
    species = fit.spec.species
    data = {}
    for level in fit.spec.ranlevels:
        lam = post[f'Lambda_{level.name}'].values  # (chain, draw, factor, species)
        omega = np.einsum('cdfs,cdft->cdst', lam, lam)
        data[f'Omega_{level.name}'] = xr.DataArray(
            omega,
            dims=('chain', 'draw', 'species', 'species_'),
            coords={'chain': post['chain'].values, 'draw': post['draw'].values,
                    'species': species, 'species_': species},
        )
    return xr.Dataset(data)


def parameter_blocks(fit: FittedModel) -> xr.Dataset:
    post = fit.idata.posterior
    names = ['Beta'] + [n for n in ('sigma',) if n in post]
    return xr.merge([post[names], omega_dataset(fit)])


def convergence_summary(fit: FittedModel) -> pd.DataFrame:
    """One row per scalar parameter with its block name, ESS (bulk) and PSRF."""
    blocks = parameter_blocks(fit)
    ess = az.ess(blocks, method='bulk')
    rhat = az.rhat(blocks)
    frames = []
    for name in blocks.data_vars:
        e = ess[name].values.ravel()
        r = rhat[name].values.ravel()
        frames.append(pd.DataFrame({'block': name, 'index': np.arange(len(e)), 'ess': e, 'psrf': r}))
    return pd.concat(frames, ignore_index=True)


def summarize_convergence(table: pd.DataFrame) -> dict:
    """Mean/min/max of ESS and PSRF per block and the count of poorly mixed parameters."""
    out = {}
    for block, sub in table.groupby('block', sort=False):
        ess = sub['ess'].dropna()
        psrf = sub['psrf'].dropna()
        out[block] = {
            'psrf': {
                'mean': float(psrf.mean()) if len(psrf) else None,
                'min': float(psrf.min()) if len(psrf) else None,
                'max': float(psrf.max()) if len(psrf) else None,
                'n_high': int((psrf > RHAT_LIMIT).sum()),
                'n_total': int(len(sub)),
            },
            'ess_bulk': {
                'mean': float(ess.mean()) if len(ess) else None,
                'min': float(ess.min()) if len(ess) else None,
                'max': float(ess.max()) if len(ess) else None,
                'n_low': int((ess < ESS_LIMIT).sum()),
                'n_total': int(len(sub)),
            },
        }
    return out


def report_convergence(table: pd.DataFrame, json_path: str = None) -> dict:
    summary = summarize_convergence(table)
    for block, stats in summary.items():
        psrf, ess = stats['psrf'], stats['ess_bulk']
        print(f"\n📊 {block}:")
        if psrf['max'] is not None:
            print(f"  PSRF mean {psrf['mean']:.4f} | max {psrf['max']:.4f} | "
                  f"> {RHAT_LIMIT}: {psrf['n_high']} / {psrf['n_total']}")
        if ess['min'] is not None:
            print(f"  ESS  mean {ess['mean']:.0f} | min {ess['min']:.0f} | "
                  f"< {ESS_LIMIT}: {ess['n_low']} / {ess['n_total']}")

    if json_path is not None:
        with open(json_path, 'w') as f:
            json.dump(summary, f, indent=2)
        print(f"✅ Diagnostics saved to {json_path}")

    converged = all(s['psrf']['n_high'] == 0 and s['ess_bulk']['n_low'] == 0
                    for s in summary.values())
    if converged:
        print(f"\n✅ Convergence achieved! PSRF <= {RHAT_LIMIT} and ESS >= {ESS_LIMIT}")
    else:
        print("\n⚠️ Convergence not fully achieved. Consider increasing samples/thin/transient.")
    return summary


def plot_convergence_histograms(table: pd.DataFrame, path: str):
    """ESS and PSRF histograms, one row per parameter block."""
    blocks = list(dict.fromkeys(table['block']))
    fig, axes = plt.subplots(len(blocks), 2, figsize=(12, 3.5 * len(blocks)), squeeze=False)
    for row, block in enumerate(blocks):
        sub = table[table['block'] == block]
        axes[row, 0].hist(sub['ess'].dropna(), bins=20, color='#1f77b4', alpha=0.8)
        axes[row, 0].axvline(ESS_LIMIT, color='black', linestyle='--', alpha=0.6)
        axes[row, 0].set_title(f'{block}: effective sample size')
        axes[row, 1].hist(sub['psrf'].dropna(), bins=20, color='#d62728', alpha=0.8)
        axes[row, 1].axvline(RHAT_LIMIT, color='black', linestyle='--', alpha=0.6)
        axes[row, 1].set_title(f'{block}: potential scale reduction factor')
    fig.tight_layout()
    fig.savefig(path, dpi=300, bbox_inches='tight')
    plt.close(fig)
    return path


def write_trace_pdf(fit: FittedModel, path: str, var_names=('Beta',)):
    """Trace plots written to a multi-page PDF, one page per parameter block."""
    blocks = parameter_blocks(fit)
    with PdfPages(path) as pdf:
        for name in var_names:
            if name not in blocks:
                print(f"⚠️  No parameter block '{name}' to plot")
                continue
            axes = az.plot_trace(blocks, var_names=[name], compact=True,
                                 backend_kwargs={'figsize': (12, 4)})
            fig = np.asarray(axes).ravel()[0].figure
            pdf.savefig(fig)
            plt.close(fig)
    print(f"✅ Trace plots saved to {path}")
    return path
