import pickle

import numpy as np
import pandas as pd
import pytest

from pollinator_jsdm.design import RandomLevel, species_covariates
from pollinator_jsdm.model import ModelSpec, build_pymc_model, make_spec


def test_covariate_names_include_expansions(small_spec):
    names = small_spec.covariate_names
    assert len(names) == 4
    assert 'Intercept' in names
    assert 'temperature' in names
    assert 'I(temperature ** 2)' in names
    assert 'C(habitat)[T.meadow]' in names
    assert small_spec.design_matrix().shape == (20, 4)


def test_species_specific_design_matrix(toy_tables):
    Y, X, design = toy_tables
    frames = species_covariates(Y, X, common=[], flower_offset=0, zero_focal=True)
    spec = make_spec(Y, frames, '~ conspecific + flowers_sp1 + flowers_sp2',
                     design=design, levels=['plot'])
    Xd = spec.design_matrix()
    assert Xd.shape == (2, 3, 4)
    assert spec.species_specific
    # species 0's own flower column is zero in its design matrix
    k = spec.covariate_names.index('flowers_sp1')
    assert (Xd[0, :, k] == 0).all()
    assert (Xd[1, :, k] == X['flowers_sp1'].to_numpy()).all()


def test_spec_validation(toy_tables):
    Y, X, design = toy_tables
    with pytest.raises(ValueError, match="Unknown family"):
        ModelSpec(Y=Y, X=X, formula='~ flowers_sp1', family='gamma')
    with pytest.raises(ValueError, match="rows"):
        ModelSpec(Y=Y, X=X.iloc[:2], formula='~ flowers_sp1')
    with pytest.raises(ValueError, match="covariate frames"):
        ModelSpec(Y=Y, X=[X], formula='~ flowers_sp1')
    with pytest.raises(ValueError, match="without a design"):
        ModelSpec(Y=Y, X=X, formula='~ flowers_sp1',
                  ranlevels=(RandomLevel('plot', ('A',)),))
    with pytest.raises(ValueError, match="not a design column"):
        ModelSpec(Y=Y, X=X, formula='~ flowers_sp1', design=design,
                  ranlevels=(RandomLevel('site', ('A',)),))


def test_species_frames_must_agree(toy_tables):
    Y, _, _ = toy_tables
    frames = [pd.DataFrame({'h': ['x', 'x', 'y']}), pd.DataFrame({'h': ['x', 'y', 'z']})]
    with pytest.raises(ValueError, match="design columns"):
        ModelSpec(Y=Y, X=frames, formula='~ C(h)')


def test_for_rows_rebuilds_levels(small_spec):
    sub = small_spec.for_rows(small_spec.design['plot'] != 'P2')
    assert sub.n_units == 15
    assert sub.ranlevels[0].units == ('P1', 'P3', 'P4')
    assert sub.covariate_names == small_spec.covariate_names


def test_design_for_new_data_uses_fitted_encoding(small_spec):
    new = pd.DataFrame({'temperature': [10.0, 30.0], 'habitat': ['meadow', 'meadow']})
    Xd = small_spec.design_for(new)
    names = small_spec.covariate_names
    assert Xd.shape == (2, 4)
    assert Xd[1, names.index('I(temperature ** 2)')] == pytest.approx(900.0)
    assert (Xd[:, names.index('C(habitat)[T.meadow]')] == 1).all()


def test_spec_pickles(small_spec):
    clone = pickle.loads(pickle.dumps(small_spec))
    assert clone.covariate_names == small_spec.covariate_names
    np.testing.assert_allclose(clone.design_matrix(), small_spec.design_matrix())
    assert clone.ranlevels == small_spec.ranlevels


def test_build_pymc_model_excludes_missing(small_spec):
    model = build_pymc_model(small_spec)
    names = {rv.name for rv in model.free_RVs}
    assert {'Beta', 'Eta_plot', 'delta_plot', 'Lambda_raw_plot', 'sigma'} <= names
    assert {'Lambda_plot', 'tau_plot'} <= set(model.named_vars)
    assert 'Lambda_plot' in model.named_vars
    # 20 units x 3 species with one missing cell
    assert len(model.coords['obs']) == 59
    assert list(model.coords['species']) == ['a', 'b', 'c']


def test_build_pymc_model_probit(toy_tables):
    Y, X, design = toy_tables
    Yb = (Y > 1).astype(float).where(Y.notna())
    spec = make_spec(Yb, X, '~ flowers_sp1', family='probit', design=design, levels=['plot'])
    model = build_pymc_model(spec)
    assert 'sigma' not in model.named_vars
    assert len(model.coords['obs']) == 5


def test_loading_scales_shrink_with_factor_order(small_tables):
    import pymc as pm
    Y, X, design = small_tables
    spec = make_spec(Y, X, '~ temperature', design=design, levels=['plot'], n_factors=3)
    model = build_pymc_model(spec)
    tau = pm.draw(model['tau_plot'], draws=4000, random_seed=0)
    assert tau.shape == (4000, 3)
    medians = np.median(tau, axis=0)
    assert medians[0] > medians[1] > medians[2]
    # a scale falls below the previous one whenever its delta exceeds 1
    assert (np.diff(tau, axis=1) <= 0).mean() > 0.8
