#!/usr/bin/env python3
"""
Analysis pipelines for pollinator visitation and individual fitness data.

Four plot-level pipelines share one template and differ only in covariates,
formula, variance-partition groups and association threshold:

  environment        visits ~ temperature
  conspecific        visits ~ temperature + own flower count
  heterospecific     visits ~ temperature + own + other species' flower counts
  heterospecific_cv  as heterospecific, plus 10-fold cross-validation by plot

and one individual-level pipeline:

  fitness            relative fitness ~ standardized traits (+ quadratic terms)

Each pipeline:
1. Loads the response / covariate / design CSV triplet
2. Assembles covariates and random levels
3. Configures the joint model
4. Samples the posterior (or reuses a saved one) and saves it immediately
5. Checks convergence
6. Computes fit, coefficients, variance partitioning, associations, gradients
7. Optionally cross-validates
8. Compares against single-species mixed models
"""

import argparse
import os
import sys
import time
import traceback
from dataclasses import dataclass, field, replace
from typing import Dict, Optional, Tuple

from pollinator_jsdm import comparison, crossval, data, diagnostics, plots, posterior, simulate
from pollinator_jsdm.design import occasion_labels, species_covariates
from pollinator_jsdm.gradient import construct_gradient, plot_all_gradients, predict_gradient
from pollinator_jsdm.model import make_spec
from pollinator_jsdm.sampling import SamplerConfig, has_fit, load_fit, sample_mcmc, save_fit
from pollinator_jsdm.varpart import compute_variance_partitioning

TEMPERATURE_TERMS = 'temperature + I(temperature ** 2)'


@dataclass(frozen=True)
class PipelineConfig:
    """Literals of one analysis pipeline."""
    name: str
    kind: str = 'visitation'
    covariates: str = 'common'  # 'common', 'conspecific' or 'heterospecific'
    formula: str = f'~ {TEMPERATURE_TERMS}'
    family: str = 'normal'
    common: Tuple[str, ...] = ('temperature',)
    flower_offset: int = 1
    shared_name: str = 'conspecific'
    levels: Tuple[str, ...] = ('plot', 'occasion')
    n_factors: int = 2
    # (substring of a design column, group name); the intercept joins the first group
    group_rules: Tuple[Tuple[str, str], ...] = (('temperature', 'Temperature'),)
    tau: float = 0.75
    beta_support: float = 0.95
    gradient_focal: Tuple[str, ...] = ('temperature',)
    non_focal: Dict[str, object] = field(default_factory=dict)
    traits: Tuple[str, ...] = ()
    cv_folds: int = 0
    cv_column: str = 'plot'
    comparison_group: Optional[str] = 'plot'
    sampler: SamplerConfig = SamplerConfig(samples=250, thin=4, transient=1000, n_chains=2)


PIPELINES = {
    'environment': PipelineConfig(
        name='environment',
        tau=0.75,
    ),
    'conspecific': PipelineConfig(
        name='conspecific',
        covariates='conspecific',
        formula=f'~ {TEMPERATURE_TERMS} + conspecific',
        group_rules=(('temperature', 'Temperature'), ('conspecific', 'Conspecific flowers')),
        gradient_focal=('temperature', 'conspecific'),
        tau=0.75,
    ),
    'heterospecific': PipelineConfig(
        name='heterospecific',
        covariates='heterospecific',
        formula=f'~ {TEMPERATURE_TERMS} + conspecific',
        group_rules=(('temperature', 'Temperature'), ('conspecific', 'Conspecific flowers'),
                     ('flowers_', 'Heterospecific flowers')),
        gradient_focal=('conspecific',),
        non_focal={'temperature': 'mean'},
        tau=0.85,
        sampler=SamplerConfig(samples=250, thin=5, transient=1500, n_chains=2),
    ),
    'heterospecific_cv': PipelineConfig(
        name='heterospecific_cv',
        covariates='heterospecific',
        formula=f'~ {TEMPERATURE_TERMS} + conspecific',
        group_rules=(('temperature', 'Temperature'), ('conspecific', 'Conspecific flowers'),
                     ('flowers_', 'Heterospecific flowers')),
        gradient_focal=('conspecific',),
        tau=0.85,
        cv_folds=10,
        cv_column='plot',
        sampler=SamplerConfig(samples=250, thin=5, transient=1500, n_chains=2),
    ),
    'fitness': PipelineConfig(
        name='fitness',
        kind='fitness',
        formula='~ flower_size + I(flower_size ** 2) + flowering_onset + I(flowering_onset ** 2)',
        common=('flower_size', 'flowering_onset'),
        levels=('site',),
        group_rules=(('flower_size', 'Flower size'), ('flowering_onset', 'Flowering onset')),
        traits=('flower_size', 'flowering_onset'),
        gradient_focal=('flower_size', 'flowering_onset'),
        non_focal={'flower_size': ('value', 0.0), 'flowering_onset': ('value', 0.0)},
        tau=0.75,
        comparison_group='site',
    ),
}


def group_vector(covariate_names, rules):
    """1-based group number of every design column from (substring, group name) rules.

    Returns (group, group_names). The intercept is placed in the first group.
    """
    group_names = list(dict.fromkeys(name for _, name in rules))
    group = []
    for column in covariate_names:
        if column == 'Intercept':
            group.append(1)
            continue
        matches = [name for pattern, name in rules if pattern in column]
        if not matches:
            raise ValueError(f"No variance-partition group for design column '{column}'")
        group.append(group_names.index(matches[0]) + 1)
    return group, group_names


def output_dirs(output_dir, name):
    base = os.path.join(output_dir, name)
    dirs = {k: os.path.join(base, k) for k in ('models', 'diagnostics', 'plots')}
    for directory in dirs.values():
        os.makedirs(directory, exist_ok=True)
    return dirs


def banner(title):
    print("\n" + "=" * 80)
    print(title)
    print("=" * 80)


# =============================================================================
# Stages
# =============================================================================

def assemble(config: PipelineConfig, Y, X, design):
    """Transform responses and build covariates and the model spec."""
    banner("STEP 2: Assembling Design")
    try:
        design = design.copy()
        if config.kind == 'fitness':
            Y, means = data.relative_fitness(Y)
            print(f"✅ Relative fitness computed (mean fitness: {means.round(2).to_dict()})")
            X = data.standardize_traits(X, config.common, by='species' if 'species' in X else None)
            print(f"✅ Traits standardized within species: {list(config.common)}")
            X_model = X
            formula = config.formula
        else:
            Y = data.log_transform(Y)
            print("✅ Visitation counts log(x + 1) transformed")
            if 'occasion' in config.levels:
                design['occasion'] = occasion_labels(design, 'plot', 'census')

            if config.covariates == 'common':
                X_model = X[list(config.common)].copy()
                formula = config.formula
            else:
                zero_focal = config.covariates == 'heterospecific'
                X_model = species_covariates(Y, X, config.common, config.flower_offset,
                                             shared_name=config.shared_name,
                                             zero_focal=zero_focal)
                formula = config.formula
                if zero_focal:
                    flower_cols = list(X.columns[config.flower_offset:config.flower_offset + Y.shape[1]])
                    formula = formula + ' + ' + ' + '.join(flower_cols)
                print(f"✅ {len(X_model)} species-specific covariate frames "
                      f"({'focal flower column zeroed' if zero_focal else 'conspecific only'})")

        spec = make_spec(Y, X_model, formula, family=config.family, design=design,
                         levels=config.levels, n_factors=config.n_factors)
        print(f"✅ Model configured: {spec.summary()}")
        return spec
    except Exception as e:
        print(f"❌ Error in design assembly: {e}")
        traceback.print_exc()
        raise


def fit_or_load(config: PipelineConfig, spec, dirs, reuse=False):
    banner("STEP 3: Sampling Posterior")
    try:
        if reuse and has_fit(dirs['models'], config.name):
            print("♻️  Reusing saved posterior")
            return load_fit(dirs['models'], config.name)
        fit = sample_mcmc(spec, config.sampler)
        save_fit(fit, dirs['models'], config.name)
        return fit
    except Exception as e:
        print(f"❌ Error fitting model: {e}")
        traceback.print_exc()
        raise


def check_convergence(config, fit, dirs):
    banner("STEP 4: Convergence Diagnostics")
    table = diagnostics.convergence_summary(fit)
    table.to_csv(os.path.join(dirs['diagnostics'], 'convergence_summary.csv'), index=False)
    summary = diagnostics.report_convergence(
        table, os.path.join(dirs['diagnostics'], 'convergence_diagnostics.json'))
    diagnostics.plot_convergence_histograms(table, os.path.join(dirs['plots'], 'convergence_histograms.png'))
    blocks = ['Beta'] + [f'Omega_{lv.name}' for lv in fit.spec.ranlevels]
    diagnostics.write_trace_pdf(fit, os.path.join(dirs['plots'], 'trace_plots.pdf'), var_names=blocks)
    return summary


def analyse_posterior(config, fit, dirs):
    banner("STEP 5: Posterior Analysis")
    results = {}
    spec = fit.spec

    predicted = posterior.compute_predicted_values(fit, rng=1)
    fit_table = posterior.evaluate_model_fit(spec.Y, predicted, spec.family)
    fit_table.to_csv(os.path.join(dirs['diagnostics'], 'model_fit.csv'))
    plots.plot_model_fit(fit_table, os.path.join(dirs['plots'], 'model_fit.png'))
    print(f"✅ Explanatory power:\n{fit_table.round(3)}")
    results['model_fit'] = fit_table

    coefs = posterior.coefficient_table(fit)
    coefs.to_csv(os.path.join(dirs['diagnostics'], 'beta_coefficients.csv'), index=False)
    plots.plot_effects_by_species(coefs, os.path.join(dirs['plots'], 'effects_by_species.png'))
    est = posterior.get_post_estimate(fit, 'Beta')
    plots.plot_beta(est, os.path.join(dirs['plots'], 'beta_support.png'), support_level=config.beta_support)
    results['coefficients'] = coefs

    group, group_names = group_vector(spec.covariate_names, config.group_rules)
    vp = compute_variance_partitioning(fit, group, group_names)
    vp.vals.to_csv(os.path.join(dirs['diagnostics'], 'variance_partitioning.csv'))
    plots.plot_variance_partitioning(vp.vals, os.path.join(dirs['plots'], 'variance_partitioning.png'))
    print(f"✅ Mean variance shares:\n{vp.vals.mean(axis=1).round(3)}")
    results['variance_partitioning'] = vp

    associations = posterior.compute_associations(fit)
    for level, assoc in associations.items():
        display = posterior.threshold_associations(assoc, config.tau)
        assoc.mean.to_csv(os.path.join(dirs['diagnostics'], f'associations_{level}_mean.csv'))
        assoc.support.to_csv(os.path.join(dirs['diagnostics'], f'associations_{level}_support.csv'))
        plots.plot_associations(display, os.path.join(dirs['plots'], f'associations_{level}.png'),
                                title=f'Residual associations: {level} (support > {config.tau})')
    results['associations'] = associations

    for focal in config.gradient_focal:
        gradient = construct_gradient(spec, focal, non_focal=config.non_focal)
        prediction = predict_gradient(fit, gradient, rng=1)
        plot_all_gradients(prediction, os.path.join(dirs['plots'], f'gradient_{focal}.png'))
    print(f"✅ Gradients plotted for {list(config.gradient_focal)}")

    if config.traits:
        sel = posterior.selection_gradients(fit, config.traits)
        sel.to_csv(os.path.join(dirs['diagnostics'], 'selection_gradients.csv'), index=False)
        plots.plot_selection_gradients(sel, os.path.join(dirs['plots'], 'selection_gradients.png'))
        results['selection_gradients'] = sel
    return results


def cross_validate(config, spec, dirs):
    banner(f"STEP 6: {config.cv_folds}-fold Cross-validation by {config.cv_column}")
    partition = crossval.create_partition(spec, config.cv_folds, column=config.cv_column,
                                          seed=config.sampler.random_seed)
    cv_table = crossval.cross_validated_fit(spec, partition, config.sampler,
                                            seed=config.sampler.random_seed)
    cv_table.to_csv(os.path.join(dirs['diagnostics'], 'model_fit_cv.csv'))
    print(f"✅ Predictive power:\n{cv_table.round(3)}")
    return cv_table


def compare_single_species(config, fit, dirs):
    banner("STEP 7: Single-species Comparison")
    single = comparison.single_species_fits(fit.spec, config.comparison_group)
    table = comparison.compare_coefficients(fit, single)
    table.to_csv(os.path.join(dirs['diagnostics'], 'coefficient_comparison.csv'), index=False)
    if len(table):
        comparison.plot_coefficient_comparison(table, os.path.join(dirs['plots'], 'coefficient_comparison.png'))
    print(f"✅ {len(table)} coefficients compared, "
          f"{int(table['single_in_hdi'].sum()) if len(table) else 0} single-species estimates inside the joint HDI")
    return table


def run_pipeline(config: PipelineConfig, data_dir, output_dir, reuse=False):
    """Run every stage of one pipeline; returns a dict of result tables."""
    banner(f"PIPELINE: {config.name.upper()}")
    print(f"Start time: {time.strftime('%Y-%m-%d %H:%M:%S')}")
    dirs = output_dirs(output_dir, config.name)

    banner("STEP 1: Loading Data")
    try:
        Y, X, design = data.load_tables(data_dir)
    except Exception as e:
        print(f"❌ Error loading data: {e}")
        traceback.print_exc()
        raise

    spec = assemble(config, Y, X, design)
    fit = fit_or_load(config, spec, dirs, reuse=reuse)
    results = {'fit': fit}

    try:
        results['convergence'] = check_convergence(config, fit, dirs)
    except Exception as e:
        print(f"\n⚠️  Warning: Error in convergence diagnostics: {e}")
        print("  Attempting to continue with remaining analysis...")
        traceback.print_exc()

    try:
        results.update(analyse_posterior(config, fit, dirs))
    except Exception as e:
        print(f"\n⚠️  Warning: Error in posterior analysis: {e}")
        traceback.print_exc()

    if config.cv_folds:
        try:
            results['cross_validation'] = cross_validate(config, spec, dirs)
        except Exception as e:
            print(f"\n⚠️  Warning: Error in cross-validation: {e}")
            traceback.print_exc()

    if config.comparison_group:
        try:
            results['comparison'] = compare_single_species(config, fit, dirs)
        except Exception as e:
            print(f"\n⚠️  Warning: Error in single-species comparison: {e}")
            traceback.print_exc()

    banner("✅ ANALYSIS COMPLETE!")
    print(f"End time: {time.strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"\nAll outputs saved to: {os.path.dirname(dirs['models'])}")
    return results


# =============================================================================
# Command line
# =============================================================================

def build_parser():
    parser = argparse.ArgumentParser(
        prog='pollinator-jsdm',
        description='Joint species-distribution analyses of visitation and fitness data')
    sub = parser.add_subparsers(dest='command', required=True)

    run = sub.add_parser('run', help='Run one analysis pipeline')
    run.add_argument('pipeline', choices=sorted(PIPELINES))
    run.add_argument('--data-dir', required=True, help='Directory with Y.csv, X.csv, design.csv')
    run.add_argument('--output-dir', default='outputs')
    run.add_argument('--reuse', action='store_true', help='Reuse a saved posterior if present')
    run.add_argument('--samples', type=int)
    run.add_argument('--thin', type=int)
    run.add_argument('--transient', type=int)
    run.add_argument('--chains', type=int)
    run.add_argument('--tau', type=float, help='Association support threshold')

    sim = sub.add_parser('simulate', help='Write a simulated CSV triplet')
    sim.add_argument('dataset', choices=['visitation', 'fitness'])
    sim.add_argument('--out-dir', required=True)
    sim.add_argument('--seed', type=int, default=1)
    return parser


def config_from_args(args) -> PipelineConfig:
    config = PIPELINES[args.pipeline]
    overrides = {k: v for k, v in (('samples', args.samples), ('thin', args.thin),
                                   ('transient', args.transient), ('n_chains', args.chains))
                 if v is not None}
    if overrides:
        config = replace(config, sampler=replace(config.sampler, **overrides))
    if args.tau is not None:
        config = replace(config, tau=args.tau)
    return config


def main(argv=None):
    args = build_parser().parse_args(argv)
    try:
        if args.command == 'simulate':
            if args.dataset == 'visitation':
                tables = simulate.simulate_visitation(seed=args.seed)
            else:
                tables = simulate.simulate_fitness(seed=args.seed)
            simulate.write_tables(*tables, args.out_dir)
            return 0
        run_pipeline(config_from_args(args), args.data_dir, args.output_dir, reuse=args.reuse)
        return 0
    except Exception as e:
        print(f"\n❌ FATAL ERROR: {e}")
        traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
