"""
Tests for the linear mixed-model engine.

statsmodels MixedLM serves as an independent reference for random-intercept
models.
"""

import dataclasses

import numpy as np
import pandas as pd
import pytest
import statsmodels.formula.api as smf

from multilab.errors import ConvergenceError, RankDeficiencyError, ValidationError
from multilab.mixed_model import fit
from multilab.model_spec import ModelSpec, RandomEffect


def _simulate(n_groups, per_group, effect=0.3, seed=0, group_sd=0.6):
    rng = np.random.default_rng(seed)
    group = np.repeat(np.arange(n_groups), per_group)
    condition = np.tile(['A', 'B'], n_groups * per_group // 2)
    y = (0.5 + effect * (condition == 'A')
         + np.repeat(rng.normal(scale=group_sd, size=n_groups), per_group)
         + rng.normal(scale=0.5, size=n_groups * per_group))
    return pd.DataFrame({'group': group.astype(str), 'condition': condition, 'y': y})


def _spec(method='ML', terms=('condition', 'x'), random=None):
    return ModelSpec('y', terms=terms, random=random or (RandomEffect('group'),), method=method)


class TestAgainstStatsmodels:
    """Random-intercept fits agree with statsmodels MixedLM."""

    @pytest.mark.parametrize('method', ['ML', 'REML'])
    def test_log_likelihood_and_estimates(self, grouped_data, method):
        """Test log-likelihood, fixed effects and variances match the reference."""
        model = fit(grouped_data, _spec(method))
        reference = smf.mixedlm('y ~ condition + x', grouped_data,
                                groups=grouped_data['group']).fit(reml=(method == 'REML'))

        assert model.log_likelihood == pytest.approx(reference.llf, abs=1e-3)
        for name in ('Intercept', 'condition[T.A]', 'x'):
            assert model.params[name] == pytest.approx(reference.fe_params[name], abs=1e-3)
            assert model.bse[name] == pytest.approx(reference.bse_fe[name], rel=5e-2)
        assert model.residual_variance == pytest.approx(reference.scale, rel=1e-2)
        group_variance = model.variance_components['group'].iloc[0, 0]
        assert group_variance == pytest.approx(reference.cov_re.iloc[0, 0], rel=1e-2)


class TestFit:
    """Behaviour of fit()."""

    def test_recovers_condition_effect_with_tightening_error(self):
        """Test the 0.3 effect is recovered, more precisely with more data."""
        small = fit(_simulate(20, 4, seed=1), _spec(terms=('condition',)))
        large = fit(_simulate(400, 8, seed=1), _spec(terms=('condition',)))
        for model in (small, large):
            estimate = model.params['condition[T.A]']
            assert abs(estimate - 0.3) < 4 * model.bse['condition[T.A]']
        assert large.bse['condition[T.A]'] < small.bse['condition[T.A]'] / 3
        assert abs(large.params['condition[T.A]'] - 0.3) < 0.06

    def test_recovery_without_group_variance(self):
        """Test recovery of 0.3 when the true group variance is zero."""
        models = [fit(_simulate(n, 8, seed=3, group_sd=0.0), _spec(terms=('condition',)))
                  for n in (25, 400)]
        errors = [abs(model.params['condition[T.A]'] - 0.3) for model in models]
        for model, error in zip(models, errors):
            assert error < 4 * model.bse['condition[T.A]']
        assert models[1].bse['condition[T.A]'] < models[0].bse['condition[T.A]'] / 3
        assert errors[1] < 0.06

        large = models[1]
        assert large.residual_variance == pytest.approx(0.25, rel=0.1)
        group_variance = large.variance_components['group'].iloc[0, 0]
        assert 0.0 <= group_variance < 0.1 * large.residual_variance
        blups = large.random_effects['group']['Intercept']
        assert np.abs(blups).max() <= 4.0 * np.sqrt(group_variance) + 1e-8

    def test_model_outputs_are_consistent(self, grouped_data):
        """Test parameter count, information criteria and BLUP structure."""
        model = fit(grouped_data, _spec())
        assert model.n_iter >= 1
        # Unconverged fits raise, so results carry no convergence flag
        assert 'converged' not in {f.name for f in dataclasses.fields(model)}
        assert model.n_obs == len(grouped_data)
        assert model.n_groups == {'group': 40}
        assert model.n_params == 3 + 1 + 1
        assert model.aic == pytest.approx(-2 * model.log_likelihood + 2 * 5)
        assert model.bic == pytest.approx(-2 * model.log_likelihood + np.log(240) * 5)

        blups = model.random_effects['group']
        assert blups.shape == (40, 1)
        assert abs(blups['Intercept'].sum()) < 1e-8
        assert np.all(np.diag(model.prediction_covariance.values) > 0)
        assert list(model.prediction_covariance.index[:3]) == ['Intercept', 'condition[T.A]', 'x']

        frame = model.summary_frame()
        assert list(frame.columns) == ['effect', 'beta', 'se', 'z_value', 'p_value',
                                       'ci_lower', 'ci_upper']
        assert (frame['ci_lower'] < frame['beta']).all()

    def test_correlated_random_slope(self, grouped_data):
        """Test a correlated intercept + slope block gives a PSD covariance."""
        spec = _spec(random=(RandomEffect('group', ('1', 'x')),))
        model = fit(grouped_data, spec)
        cov = model.variance_components['group']
        assert list(cov.columns) == ['Intercept', 'x']
        assert np.all(np.linalg.eigvalsh(cov.values) >= -1e-10)
        assert model.n_params == 3 + 3 + 1
        summary = model.variance_summary()
        assert list(summary['group']) == ['group', 'group', 'Residual']

    def test_crossed_random_effects(self, aggregated):
        """Test lab and subject intercepts on subject-level rows."""
        spec = ModelSpec('mean_log_value', terms=('condition',),
                         random=(RandomEffect('lab'), RandomEffect('subject')), method='ML')
        model = fit(aggregated.rows, spec)
        assert np.isfinite(model.bse['condition[T.A]'])
        assert model.n_groups == {'lab': 5, 'subject': aggregated.rows['subject'].nunique()}

    def test_iteration_budget_raises_convergence_error(self, grouped_data):
        """Test exhausting max_iter raises with the last log-likelihood."""
        with pytest.raises(ConvergenceError) as info:
            fit(grouped_data, _spec(), max_iter=1)
        assert np.isfinite(info.value.log_likelihood)
        assert info.value.n_iter >= 1

    def test_time_budget_raises_convergence_error(self, grouped_data):
        """Test an exhausted wall-clock budget raises ConvergenceError."""
        with pytest.raises(ConvergenceError, match='Time budget'):
            fit(grouped_data, _spec(), time_budget=0.0)

    def test_empty_data_raises(self, grouped_data):
        """Test fitting an empty table raises ValidationError."""
        with pytest.raises(ValidationError):
            fit(grouped_data.iloc[0:0], _spec())

    def test_collinear_design_raises(self, grouped_data):
        """Test a collinear predictor raises RankDeficiencyError naming it."""
        data = grouped_data.assign(x2=grouped_data['x'] * -3.0)
        with pytest.raises(RankDeficiencyError) as info:
            fit(data, _spec(terms=('x', 'x2')))
        assert info.value.terms == ['x2']
