import os

import numpy as np
import pandas as pd
import pytest

from pollinator_jsdm import crossval, pipelines, simulate
from pollinator_jsdm.pipelines import PIPELINES, assemble, group_vector


@pytest.fixture
def visitation():
    return simulate.simulate_visitation(n_plots=6, n_censuses=5, seed=3)


@pytest.fixture
def fitness():
    return simulate.simulate_fitness(n_sites=4, per_site=12, seed=4)


def test_group_vector_assigns_intercept_to_first_group():
    names = ['Intercept', 'temperature', 'I(temperature ** 2)', 'conspecific', 'flowers_A']
    group, group_names = group_vector(names, PIPELINES['heterospecific'].group_rules)
    assert group == [1, 1, 1, 2, 3]
    assert group_names == ['Temperature', 'Conspecific flowers', 'Heterospecific flowers']
    with pytest.raises(ValueError):
        group_vector(['Intercept', 'rain'], PIPELINES['environment'].group_rules)


def test_pipeline_thresholds():
    assert PIPELINES['environment'].tau == 0.75
    assert PIPELINES['conspecific'].tau == 0.75
    assert PIPELINES['heterospecific'].tau == 0.85
    assert PIPELINES['heterospecific_cv'].cv_folds == 10


def test_config_from_args_overrides_sampler():
    args = pipelines.build_parser().parse_args(
        ['run', 'heterospecific', '--data-dir', 'data', '--samples', '20', '--chains', '3',
         '--tau', '0.9'])
    config = pipelines.config_from_args(args)
    assert config.sampler.samples == 20
    assert config.sampler.n_chains == 3
    assert config.sampler.thin == PIPELINES['heterospecific'].sampler.thin
    assert config.tau == 0.9
    assert PIPELINES['heterospecific'].tau == 0.85


def test_assemble_environment(visitation):
    Y, X, design = visitation
    spec = assemble(PIPELINES['environment'], Y, X, design)
    assert not spec.species_specific
    assert spec.covariate_names == ['Intercept', 'temperature', 'I(temperature ** 2)']
    assert [lv.name for lv in spec.ranlevels] == ['plot', 'occasion']
    assert spec.ranlevels[1].n_units == 30
    # log(x + 1) keeps missing cells missing
    np.testing.assert_array_equal(spec.Y.isna().to_numpy(), Y.isna().to_numpy())
    assert 'occasion' not in design.columns


def test_assemble_conspecific_and_heterospecific(visitation):
    Y, X, design = visitation
    con = assemble(PIPELINES['conspecific'], Y, X, design)
    assert con.species_specific
    assert con.covariate_names[-1] == 'conspecific'
    np.testing.assert_allclose(con.X[2]['conspecific'], X.iloc[:, 3])

    het = assemble(PIPELINES['heterospecific'], Y, X, design)
    flower_cols = list(X.columns[1:])
    assert het.covariate_names[-len(flower_cols):] == flower_cols
    assert (het.X[0][flower_cols[0]] == 0).all()
    np.testing.assert_allclose(het.X[0][flower_cols[1]], X[flower_cols[1]])
    group, names = group_vector(het.covariate_names, PIPELINES['heterospecific'].group_rules)
    assert group.count(3) == len(flower_cols)


def test_assemble_fitness(fitness):
    Y, X, design = fitness
    spec = assemble(PIPELINES['fitness'], Y, X, design)
    np.testing.assert_allclose(spec.Y.mean(axis=0), 1.0)
    for _, sub in spec.X.groupby('species'):
        assert sub['flower_size'].mean() == pytest.approx(0.0, abs=1e-9)
    assert 'I(flowering_onset ** 2)' in spec.covariate_names


def test_main_simulate_writes_tables(tmp_path):
    out = tmp_path / 'sim'
    assert pipelines.main(['simulate', 'visitation', '--out-dir', str(out)]) == 0
    for name in ('Y.csv', 'X.csv', 'design.csv'):
        assert (out / name).exists()
    Y = pd.read_csv(out / 'Y.csv')
    assert list(Y.columns) == list(simulate.DEFAULT_SPECIES)


def test_main_reports_failure(tmp_path):
    assert pipelines.main(['run', 'environment', '--data-dir', str(tmp_path / 'none'),
                           '--output-dir', str(tmp_path)]) == 1


def _patch_sampler(monkeypatch, fake_fit):
    calls = []

    def fake_sample(spec, config, verbose=True):
        calls.append(spec)
        return fake_fit(spec, n_draws=30)

    monkeypatch.setattr(pipelines, 'sample_mcmc', fake_sample)
    monkeypatch.setattr(crossval, 'sample_mcmc', fake_sample)
    return calls


def test_run_environment_pipeline_outputs(visitation, fake_fit, monkeypatch, tmp_path):
    calls = _patch_sampler(monkeypatch, fake_fit)
    data_dir = str(tmp_path / 'data')
    simulate.write_tables(*visitation, data_dir)
    results = pipelines.run_pipeline(PIPELINES['environment'], data_dir, str(tmp_path / 'out'))

    base = tmp_path / 'out' / 'environment'
    assert len(calls) == 1
    assert (base / 'models' / 'environment_idata.nc').exists()
    for name in ('convergence_diagnostics.json', 'model_fit.csv', 'beta_coefficients.csv',
                 'variance_partitioning.csv', 'associations_plot_mean.csv'):
        assert (base / 'diagnostics' / name).exists(), name
    assert (base / 'plots' / 'gradient_temperature.png').exists()
    np.testing.assert_allclose(results['variance_partitioning'].vals.sum(axis=0), 1.0)
    assert set(results['associations']) == {'plot', 'occasion'}

    # a second run reuses the saved posterior
    pipelines.run_pipeline(PIPELINES['environment'], data_dir, str(tmp_path / 'out'), reuse=True)
    assert len(calls) == 1


def test_run_fitness_pipeline_outputs(fitness, fake_fit, monkeypatch, tmp_path):
    _patch_sampler(monkeypatch, fake_fit)
    data_dir = str(tmp_path / 'data')
    simulate.write_tables(*fitness, data_dir)
    results = pipelines.run_pipeline(PIPELINES['fitness'], data_dir, str(tmp_path / 'out'))

    sel = results['selection_gradients']
    assert set(sel['gradient']) == {'linear', 'quadratic'}
    assert set(sel['trait']) == {'flower_size', 'flowering_onset'}
    assert os.path.exists(tmp_path / 'out' / 'fitness' / 'plots' / 'gradient_flower_size.png')
    assert len(results['comparison']) > 0
    assert set(results['comparison']['species']) <= set(simulate.DEFAULT_SPECIES[:3])


@pytest.fixture
def visitation_by_plot():
    return simulate.simulate_visitation(n_plots=10, n_censuses=6, seed=7)


def test_run_heterospecific_pipeline_compares_species(visitation_by_plot, fake_fit, monkeypatch,
                                                       tmp_path):
    _patch_sampler(monkeypatch, fake_fit)
    data_dir = str(tmp_path / 'data')
    simulate.write_tables(*visitation_by_plot, data_dir)
    results = pipelines.run_pipeline(PIPELINES['heterospecific'], data_dir, str(tmp_path / 'out'))

    table = results['comparison']
    assert len(table) > 0
    # a species' own flower column is zeroed in its frame and never estimated
    for species in set(table['species']):
        assert f'flowers_{species}' not in set(table.loc[table['species'] == species, 'covariate'])
    assert (tmp_path / 'out' / 'heterospecific' / 'diagnostics' / 'coefficient_comparison.csv').exists()


def test_run_heterospecific_cv_pipeline(visitation_by_plot, fake_fit, monkeypatch, tmp_path):
    calls = _patch_sampler(monkeypatch, fake_fit)
    data_dir = str(tmp_path / 'data')
    simulate.write_tables(*visitation_by_plot, data_dir)
    results = pipelines.run_pipeline(PIPELINES['heterospecific_cv'], data_dir, str(tmp_path / 'out'))

    # one full fit plus one refit per fold
    assert len(calls) == 1 + PIPELINES['heterospecific_cv'].cv_folds
    cv = results['cross_validation']
    assert list(cv.index) == list(simulate.DEFAULT_SPECIES)
    assert 'R2' in cv.columns
    assert len(results['comparison']) > 0
    assert (tmp_path / 'out' / 'heterospecific_cv' / 'diagnostics' / 'model_fit_cv.csv').exists()
