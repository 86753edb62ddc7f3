import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import numpy as np
import pytest

from pollinator_jsdm.design import species_covariates
from pollinator_jsdm.gradient import (construct_gradient, plot_all_gradients, plot_gradient,
                                      predict_gradient)
from pollinator_jsdm.model import make_spec


def test_gradient_sweeps_focal_and_holds_others(small_spec):
    grad = construct_gradient(small_spec, 'temperature', ngrid=15)
    X = small_spec.X
    assert len(grad.grid) == 15
    assert grad.grid[0] == pytest.approx(X['temperature'].min())
    assert grad.grid[-1] == pytest.approx(X['temperature'].max())
    np.testing.assert_allclose(grad.X['temperature'], grad.grid)
    # categorical non-focal held at its most frequent level
    assert grad.X['habitat'].nunique() == 1
    assert (grad.design['plot'] == 'new_unit').all()


def test_gradient_fixed_value_non_focal():
    import pandas as pd
    Y = pd.DataFrame({'a': [1.0, 2.0, 3.0]})
    X = pd.DataFrame({'t': [1.0, 2.0, 3.0], 'f': [5.0, 6.0, 10.0]})
    spec = make_spec(Y, X, '~ t + f')
    zero = construct_gradient(spec, 't', non_focal={'f': ('value', 0.0)}, ngrid=3)
    mean = construct_gradient(spec, 't', ngrid=3)
    assert (zero.X['f'] == 0.0).all()
    assert mean.X['f'].iloc[0] == pytest.approx(7.0)
    assert zero.design is None
    with pytest.raises(ValueError):
        construct_gradient(spec, 't', non_focal={'f': 'median'})
    with pytest.raises(ValueError):
        construct_gradient(spec, 'rain')


def test_species_specific_gradient(toy_tables):
    Y, X, design = toy_tables
    frames = species_covariates(Y, X, common=[], flower_offset=0, zero_focal=True)
    spec = make_spec(Y, frames, '~ conspecific', design=design, levels=['plot'])
    grad = construct_gradient(spec, 'conspecific', ngrid=5)
    assert isinstance(grad.X, list) and len(grad.X) == 2
    assert grad.grid[0] == pytest.approx(0.0)
    assert grad.grid[-1] == pytest.approx(9.0)


def test_predict_and_plot_gradient(small_spec, fake_fit, tmp_path):
    fit = fake_fit(small_spec)
    grad = construct_gradient(small_spec, 'temperature', ngrid=10)
    pred = predict_gradient(fit, grad, rng=0)
    assert pred.draws.shape == (fit.n_draws, 10, 3)

    ax = plot_gradient(pred, 'S')
    assert ax.get_xlabel() == 'temperature'
    plt.close(ax.figure)
    ax = plot_gradient(pred, 'Y', index=2)
    assert ax.get_title() == 'c'
    plt.close(ax.figure)
    with pytest.raises(ValueError):
        plot_gradient(pred, 'Y')
    with pytest.raises(ValueError):
        plot_gradient(pred, 'Q')

    path = plot_all_gradients(pred, str(tmp_path / 'gradient.png'))
    assert (tmp_path / 'gradient.png').exists()
