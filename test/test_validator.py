"""
Tests for the structural validator of trial-level observations.
"""

from multilab.validator import StudyDataValidator


class TestStudyDataValidator:
    """Tests for StudyDataValidator."""

    def test_simulated_data_is_valid(self, observations):
        """Test that generator output passes every check."""
        results = StudyDataValidator(observations).validate_all()
        assert results['is_valid']
        assert results['summary'] == {'n_labs': 5, 'n_subjects': 50, 'n_observations': 400}
        assert results['range_violations'].empty
        assert 'timestamp' in results

    def test_value_out_of_range_is_reported(self, observations):
        """Test values above the maximum or non-positive are listed."""
        data = observations.copy()
        data.loc[0, 'value'] = 25.0
        data.loc[1, 'value'] = 0.0
        violations = StudyDataValidator(data).validate_value_range()
        assert len(violations) == 2
        assert list(violations.columns) == ['subject', 'trial_index', 'value']

    def test_unbalanced_block_is_reported(self, observations):
        """Test a block with a flipped condition label is flagged."""
        data = observations.copy()
        first = data.index[(data['subject'] == data.loc[0, 'subject']) & (data['block_index'] == 0)]
        data.loc[first, 'condition'] = 'A'
        issues = StudyDataValidator(data).validate_block_balance()
        key = f"{data.loc[0, 'subject']}_b0"
        assert key in issues
        assert 'Unbalanced counts' in issues[key][0]

    def test_unknown_condition_is_reported(self, observations):
        """Test labels outside the condition set are flagged."""
        data = observations.copy()
        data.loc[0, 'condition'] = 'C'
        issues = StudyDataValidator(data).validate_block_balance()
        key = f"{data.loc[0, 'subject']}_b0"
        assert any('Unknown conditions' in issue for issue in issues[key])

    def test_inconsistent_covariate_is_reported(self, observations):
        """Test a subject whose age changes between trials is flagged."""
        data = observations.copy()
        data.loc[0, 'age'] = data.loc[0, 'age'] + 1.0
        issues = StudyDataValidator(data).validate_subject_covariates()
        assert list(issues) == [data.loc[0, 'subject']]

    def test_missing_columns_make_data_invalid(self, observations):
        """Test missing required columns short-circuit validation."""
        results = StudyDataValidator(observations.drop(columns=['block_index'])).validate_all()
        assert not results['is_valid']
        assert results['missing_columns'] == ['block_index']
