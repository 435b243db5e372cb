"""
Tests for model specifications and design matrices.
"""

import numpy as np
import pandas as pd
import pytest

from multilab.design import build_design, dependent_columns
from multilab.errors import RankDeficiencyError, ValidationError
from multilab.model_spec import ModelSpec, RandomEffect, parse_term


RANDOM = (RandomEffect('lab'), RandomEffect('subject'))


class TestModelSpec:
    """Tests for ModelSpec and RandomEffect."""

    def test_describe(self):
        """Test the formula-like description."""
        spec = ModelSpec('y', terms=('condition', 'condition:age_c'), random=RANDOM, method='ml')
        assert spec.method == 'ML'
        assert spec.describe() == 'y ~ 1 + condition + condition:age_c + (1 | lab) + (1 | subject)'

    def test_contains_is_order_free_for_interactions(self):
        """Test containment treats a:b and b:a as the same term."""
        small = ModelSpec('y', terms=('condition', 'age_c:condition'), random=RANDOM)
        large = ModelSpec('y', terms=('condition', 'condition:age_c', 'age_c'), random=RANDOM)
        assert large.contains(small)
        assert not small.contains(large)

    def test_contains_checks_random_structure(self):
        """Test a random slope model contains the random-intercept model."""
        small = ModelSpec('y', terms=('condition',), random=RANDOM)
        large = small.with_random((RandomEffect('lab', ('1', 'condition')), RandomEffect('subject')))
        assert large.contains(small)
        assert not small.contains(large)
        lab_only = small.with_random((RandomEffect('lab'),))
        assert small.contains(lab_only)
        assert not lab_only.contains(small)

    def test_with_terms_and_method_return_new_specs(self):
        """Test derived specs leave the original untouched."""
        base = ModelSpec('y', terms=('condition',), random=RANDOM, method='ML')
        extended = base.with_terms('age_c')
        assert base.terms == ('condition',)
        assert extended.terms == ('condition', 'age_c')
        assert base.with_method('REML').method == 'REML'
        assert extended.without_terms('age_c') == base

    def test_variables(self):
        """Test every referenced column is reported."""
        spec = ModelSpec('y', terms=('condition:age_c^2',),
                         random=(RandomEffect('lab', ('1', 'x')),))
        assert spec.variables() == {'y', 'condition', 'age_c', 'lab', 'x'}

    @pytest.mark.parametrize('kwargs', [
        {'response': ''},
        {'response': 'y', 'random': ()},
        {'response': 'y', 'method': 'OLS'},
        {'response': 'y', 'terms': ('a', 'a')},
        {'response': 'y', 'terms': ('a:b', 'b:a')},
        {'response': 'y', 'terms': ('y',)},
        {'response': 'y', 'terms': (), 'intercept': False},
        {'response': 'y', 'random': (RandomEffect('lab'), RandomEffect('lab'))},
    ])
    def test_invalid_specs_raise(self, kwargs):
        """Test invalid specifications are rejected on construction."""
        kwargs.setdefault('random', RANDOM)
        with pytest.raises(ValidationError):
            ModelSpec(**kwargs)

    @pytest.mark.parametrize('term', ['', 'a:', 'a^x', 'a^0', 'a:a'])
    def test_invalid_terms_raise(self, term):
        """Test malformed terms are rejected."""
        with pytest.raises(ValidationError):
            parse_term(term)


@pytest.fixture
def design_data():
    return pd.DataFrame({
        'y': [1.0, 2.0, 3.0, 4.0, 5.0, 6.0, 7.0, 8.0],
        'condition': pd.Categorical(['A', 'B'] * 4, categories=['B', 'A', 'C']),
        'method': ['hpp', 'hpp', 'eyetracking', 'eyetracking', 'singlescreen', 'singlescreen',
                   'hpp', 'eyetracking'],
        'bilingual': [True, False, True, False, False, True, True, False],
        'age_c': [-1.5, -1.0, -0.5, 0.0, 0.5, 1.0, 1.5, 2.0],
        'lab': ['l1', 'l1', 'l2', 'l2', 'l3', 'l3', 'l4', 'l4'],
    })


class TestBuildDesign:
    """Tests for build_design()."""

    def test_treatment_coding_and_names(self, design_data):
        """Test reference levels, dropped unused categories and patsy-style names."""
        spec = ModelSpec('y', terms=('condition', 'method', 'bilingual', 'condition:age_c', 'age_c^2'),
                         random=(RandomEffect('lab'),))
        design = build_design(design_data, spec)
        assert design.fixed_names == [
            'Intercept',
            'condition[T.A]',
            'method[T.hpp]',
            'method[T.singlescreen]',
            'bilingual[T.True]',
            'condition[T.A]:age_c',
            'age_c^2',
        ]
        assert design.factor_levels['condition'] == ['B', 'A']
        assert design.factor_levels['method'] == ['eyetracking', 'hpp', 'singlescreen']
        X = pd.DataFrame(design.X, columns=design.fixed_names)
        assert np.allclose(X['condition[T.A]:age_c'],
                           (design_data['condition'] == 'A') * design_data['age_c'])
        assert np.allclose(X['age_c^2'], design_data['age_c'] ** 2)

    def test_random_block_layout(self, design_data):
        """Test Z has one column per level and term."""
        spec = ModelSpec('y', terms=('condition',),
                         random=(RandomEffect('lab', ('1', 'condition')),))
        block = build_design(design_data, spec).blocks[0]
        assert block.levels == ['l1', 'l2', 'l3', 'l4']
        assert block.term_names == ['Intercept', 'condition[T.A]']
        assert block.Z.shape == (8, 8)
        assert block.n_theta == 3
        assert np.allclose(block.Z.sum(axis=0)[0::2], 2.0)
        assert block.labels()[:2] == ['lab[l1]:Intercept', 'lab[l1]:condition[T.A]']

    def test_rank_deficiency_names_column(self, design_data):
        """Test a duplicated predictor is reported by name."""
        data = design_data.assign(age_copy=design_data['age_c'] * 2.0)
        spec = ModelSpec('y', terms=('age_c', 'age_copy'), random=(RandomEffect('lab'),))
        with pytest.raises(RankDeficiencyError) as info:
            build_design(data, spec)
        assert info.value.terms == ['age_copy']

    def test_missing_values_raise(self, design_data):
        """Test missing values in model columns are rejected."""
        data = design_data.copy()
        data.loc[0, 'age_c'] = np.nan
        spec = ModelSpec('y', terms=('age_c',), random=(RandomEffect('lab'),))
        with pytest.raises(ValidationError, match='Missing values'):
            build_design(data, spec)

    def test_empty_and_too_small_data_raise(self, design_data):
        """Test empty data and n <= p are rejected."""
        spec = ModelSpec('y', terms=('age_c',), random=(RandomEffect('lab'),))
        with pytest.raises(ValidationError, match='no data'):
            build_design(design_data.iloc[0:0], spec)
        with pytest.raises(ValidationError):
            build_design(design_data.iloc[0:2], spec)

    def test_dependent_columns(self):
        """Test redundant columns are identified after their basis."""
        X = np.column_stack([np.ones(5), np.arange(5.0), 3.0 + 2.0 * np.arange(5.0)])
        assert dependent_columns(X, ['a', 'b', 'c']) == ['c']
