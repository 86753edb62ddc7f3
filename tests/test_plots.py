import os

import pandas as pd

from pollinator_jsdm import plots, posterior


def test_effect_direction():
    table = pd.DataFrame({'mean': [0.5, -0.4, 0.1],
                          'hdi_lower': [0.1, -0.8, -0.2],
                          'hdi_upper': [0.9, -0.1, 0.3]})
    assert list(plots.effect_direction(table)) == ['Increase', 'Decrease', 'Uncertain']


def test_posterior_figures_written(small_spec, fake_fit, tmp_path):
    fit = fake_fit(small_spec)
    coefs = posterior.coefficient_table(fit)
    est = posterior.get_post_estimate(fit, 'Beta')
    assoc = posterior.compute_associations(fit)['plot']
    fit_table = posterior.evaluate_model_fit(small_spec.Y, posterior.compute_predicted_values(fit, rng=0),
                                             small_spec.family)
    vals = pd.DataFrame([[0.6, 0.3, 0.5], [0.4, 0.7, 0.5]], index=['Temperature', 'Random: plot'],
                        columns=small_spec.species)

    outputs = [
        plots.plot_effects_by_species(coefs, str(tmp_path / 'effects.png')),
        plots.plot_beta(est, str(tmp_path / 'beta.png'), plot_type='mean'),
        plots.plot_variance_partitioning(vals, str(tmp_path / 'vp.png')),
        plots.plot_associations(posterior.threshold_associations(assoc, 0.75), str(tmp_path / 'assoc.png')),
        plots.plot_model_fit(fit_table, str(tmp_path / 'fit.png')),
    ]
    for path in outputs:
        assert os.path.exists(path)


def test_beta_heatmap_uses_support_threshold(small_tables, fake_fit, monkeypatch, tmp_path):
    import numpy as np
    from pollinator_jsdm.model import make_spec
    Y, X, _ = small_tables
    spec = make_spec(Y, X, '~ temperature')
    est = posterior.get_post_estimate(fake_fit(spec, beta=np.array([[1.0, -1.0, 0.0], [0.0, 0.0, 0.0]])))
    seen = []

    def spy(estimate, support_level):
        signs = posterior.threshold_estimates(estimate, support_level)
        seen.append(signs)
        return signs

    monkeypatch.setattr(plots, 'threshold_estimates', spy)
    plots.plot_beta(est, str(tmp_path / 'beta_sign.png'), support_level=0.9)
    assert os.path.exists(tmp_path / 'beta_sign.png')
    assert len(seen) == 1
    assert seen[0].loc['Intercept'].tolist() == [1, -1, 0]
