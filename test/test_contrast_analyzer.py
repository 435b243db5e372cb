"""
Tests for likelihood-ratio tests and per-group trends.
"""

import numpy as np
import pandas as pd
import pytest
from scipy import stats

from multilab.contrast_analyzer import (
    TrendContrastAnalyzer,
    compare_nested,
    group_trends,
)
from multilab.design import build_design
from multilab.errors import InvalidComparisonError, ValidationError
from multilab.mixed_model import fit
from multilab.model_spec import ModelSpec, RandomEffect


@pytest.fixture(scope='module')
def moderated_data():
    """Condition effect of 0.2 in level 'p' and 0.6 in level 'q' of a moderator."""
    rng = np.random.default_rng(7)
    n_groups, per_group = 60, 4
    group = np.repeat([f"g{i:02d}" for i in range(n_groups)], per_group)
    moderator = np.repeat(np.where(np.arange(n_groups) % 2 == 0, 'p', 'q'), per_group)
    condition = np.tile(['A', 'B'], n_groups * per_group // 2)
    slope = np.where(moderator == 'p', 0.2, 0.6)
    y = (1.0 + slope * (condition == 'A')
         + np.repeat(rng.normal(scale=0.5, size=n_groups), per_group)
         + rng.normal(scale=0.4, size=n_groups * per_group))
    return pd.DataFrame({
        'group': group,
        'moderator': moderator,
        'condition': pd.Categorical(condition, categories=['B', 'A']),
        'y': y,
    })


def _spec(terms, method='ML', random=None):
    return ModelSpec('y', terms=terms, random=random or (RandomEffect('group'),), method=method)


@pytest.fixture(scope='module')
def fitted(moderated_data):
    return {
        'null': fit(moderated_data, _spec(())),
        'primary': fit(moderated_data, _spec(('condition',))),
        'moderated': fit(moderated_data, _spec(('condition', 'moderator', 'condition:moderator'))),
    }


class TestCompareNested:
    """Tests for compare_nested()."""

    def test_statistic_is_non_negative(self, fitted):
        """Test the LRT of nested ML models."""
        lrt = compare_nested(fitted['null'], fitted['primary'])
        assert lrt.statistic >= 0
        assert lrt.df == 1
        assert 0 <= lrt.p_value <= 1
        assert lrt.statistic == pytest.approx(
            2 * (fitted['primary'].log_likelihood - fitted['null'].log_likelihood))

    def test_moderator_test_has_two_df(self, fitted):
        """Test df equals the difference in parameter counts."""
        lrt = compare_nested(fitted['primary'], fitted['moderated'])
        assert lrt.df == 2
        assert lrt.p_value < 0.05

    def test_swapped_order_is_rejected(self, fitted):
        """Test passing the larger model first raises."""
        with pytest.raises(InvalidComparisonError):
            compare_nested(fitted['primary'], fitted['null'])

    def test_identical_models_are_rejected(self, fitted):
        """Test comparing a model with itself raises."""
        with pytest.raises(InvalidComparisonError):
            compare_nested(fitted['primary'], fitted['primary'])

    def test_reml_with_different_fixed_effects_is_rejected(self, moderated_data):
        """Test REML fits with different fixed terms are not comparable."""
        small = fit(moderated_data, _spec((), method='REML'))
        large = fit(moderated_data, _spec(('condition',), method='REML'))
        with pytest.raises(InvalidComparisonError, match='REML'):
            compare_nested(small, large)

    def test_reml_with_same_fixed_effects_is_allowed(self, moderated_data):
        """Test REML fits differing only in random effects can be compared."""
        small = fit(moderated_data, _spec(('condition',), method='REML'))
        large = fit(moderated_data, _spec(
            ('condition',), method='REML',
            random=(RandomEffect('group', ('1', 'condition')),)))
        lrt = compare_nested(small, large)
        assert lrt.df == 2
        assert lrt.statistic >= 0

    def test_mixed_methods_are_rejected(self, moderated_data, fitted):
        """Test ML and REML fits are not comparable."""
        reml = fit(moderated_data, _spec(('condition',), method='REML'))
        with pytest.raises(InvalidComparisonError):
            compare_nested(fitted['null'], reml)

    def test_different_data_is_rejected(self, moderated_data, fitted):
        """Test models fitted to different observations are not comparable."""
        subset = fit(moderated_data.iloc[:200], _spec(('condition',)))
        with pytest.raises(InvalidComparisonError):
            compare_nested(fitted['null'], subset)


class TestGroupTrends:
    """Tests for group_trends()."""

    def test_fixed_moderator_trend_equals_linear_contrast(self, fitted):
        """Test level slopes are beta + interaction with the matching variance."""
        model = fitted['moderated']
        trends = group_trends(model, 'moderator', 'condition')
        assert list(trends) == ['p', 'q']

        beta = model.params['condition[T.A]']
        interaction = 'condition[T.A]:moderator[T.q]'
        vcov = model.cov_params
        assert trends['p'].slope == pytest.approx(beta)
        assert trends['p'].standard_error == pytest.approx(model.bse['condition[T.A]'])
        assert trends['q'].slope == pytest.approx(beta + model.params[interaction])
        expected_var = (vcov.loc['condition[T.A]', 'condition[T.A]']
                        + vcov.loc[interaction, interaction]
                        + 2 * vcov.loc['condition[T.A]', interaction])
        assert trends['q'].standard_error == pytest.approx(np.sqrt(expected_var))
        assert trends['q'].statistic == pytest.approx(trends['q'].slope / trends['q'].standard_error)
        assert trends['q'].slope > trends['p'].slope

    def test_random_slope_trends_use_blups(self, moderated_data):
        """Test per-group slopes are the fixed slope plus each group's BLUP."""
        spec = _spec(('condition',), random=(RandomEffect('group', ('1', 'condition')),))
        model = fit(moderated_data, spec)
        trends = group_trends(model, 'group', 'condition')
        assert len(trends) == 60

        blups = model.random_effects['group']['condition[T.A]']
        for level in ('g00', 'g31'):
            assert trends[level].slope == pytest.approx(
                model.params['condition[T.A]'] + blups[level])
            assert trends[level].standard_error > 0
            assert trends[level].statistic == pytest.approx(
                trends[level].slope / trends[level].standard_error)
            assert trends[level].p_value == pytest.approx(
                2 * stats.norm.sf(abs(trends[level].statistic)))

    def test_random_slope_standard_error_matches_henderson_inverse(self, moderated_data):
        """Test the level SE against the inverse of the Henderson system built from G."""
        spec = _spec(('condition',), random=(RandomEffect('group', ('1', 'condition')),))
        model = fit(moderated_data, spec)
        design = build_design(moderated_data, spec)
        X, Z = design.X, design.Z
        sigma2 = model.residual_variance
        block = model.variance_components['group'].values
        G = np.kron(np.eye(60), block)

        # C11 = (X'V^-1 X)^-1, C12 = -C11 X'V^-1 Z G, C22 = G - G Z'P Z G
        V = Z @ G @ Z.T + sigma2 * np.eye(len(X))
        V_inv = np.linalg.inv(V)
        C11 = np.linalg.inv(X.T @ V_inv @ X)
        P = V_inv - V_inv @ X @ C11 @ X.T @ V_inv
        C12 = -C11 @ X.T @ V_inv @ Z @ G
        C22 = G - G @ Z.T @ P @ Z @ G

        assert np.allclose(model.cov_params.values, C11, rtol=1e-5, atol=1e-10)

        j = design.fixed_names.index('condition[T.A]')
        trends = group_trends(model, 'group', 'condition')
        for index, level in ((0, 'g00'), (31, 'g31')):
            k = index * 2 + 1
            expected = C11[j, j] + C22[k, k] + 2.0 * C12[j, k]
            assert trends[level].standard_error == pytest.approx(np.sqrt(expected), rel=1e-5)

    def test_random_group_without_slope_gets_fixed_slope(self, fitted):
        """Test groups without a random slope all share the fixed slope."""
        model = fitted['primary']
        trends = group_trends(model, 'group', 'condition')
        slopes = {round(t.slope, 12) for t in trends.values()}
        assert slopes == {round(model.params['condition[T.A]'], 12)}

    def test_unknown_factor_or_predictor_raises(self, fitted):
        """Test bad requests raise ValidationError."""
        with pytest.raises(ValidationError):
            group_trends(fitted['moderated'], 'country', 'condition')
        with pytest.raises(ValidationError):
            group_trends(fitted['moderated'], 'moderator', 'age')
        with pytest.raises(ValidationError):
            group_trends(fitted['primary'], 'condition', 'condition')


class TestTrendContrastAnalyzer:
    """Tests for TrendContrastAnalyzer."""

    def test_compute_all_trends(self, fitted, tmp_path):
        """Test the trend table, FDR columns, export and summary."""
        analyzer = TrendContrastAnalyzer(fitted)
        trends = analyzer.compute_all_trends([
            ('moderated', 'moderator', 'condition'),
            ('primary', 'moderator', 'condition'),
        ])

        ok = trends[trends['error'].isna()]
        failed = trends[trends['error'].notna()]
        assert len(ok) == 2
        assert len(failed) == 1
        assert (ok['p_fdr'] >= ok['p_value']).all()
        assert (ok['ci_lower'] < ok['estimate']).all()
        assert failed['p_fdr'].isna().all()

        path = analyzer.export_trends(str(tmp_path))
        assert pd.read_csv(path).shape[0] == 3

        summary = analyzer.get_summary()
        assert set(summary.columns) == {'model', 'grouping_factor', 'predictor',
                                        'n_levels', 'n_significant'}
