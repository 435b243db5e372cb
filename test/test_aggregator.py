"""
Tests for subject-level aggregation and per-lab effect summaries.
"""

import numpy as np
import pandas as pd
import pytest

from multilab.aggregator import aggregate, summarize_lab_effects
from multilab.errors import ValidationError


def _cleaned_frame(trials):
    """Build a cleaned-like frame from {(subject, condition): [values]}."""
    rows = []
    for (subject, condition), values in trials.items():
        for value in values:
            rows.append({
                'lab': 'lab01' if subject in ('s1', 's2') else 'lab02',
                'subject': subject,
                'condition': condition,
                'method': 'hpp',
                'session': 'first',
                'language': 'NAE',
                'bilingual': False,
                'age': 6.0 if subject == 's1' else 9.0,
                'value': value,
                'log_value': np.log(value),
            })
    return pd.DataFrame(rows)


HAND_TRIALS = {
    ('s1', 'A'): [2.0, 4.0, 8.0],
    ('s1', 'B'): [1.0, 2.0, 4.0],
    ('s2', 'A'): [3.0, 3.0, 3.0],
    ('s2', 'B'): [9.0, 9.0, 9.0],
}


class TestAggregate:
    """Tests for aggregate()."""

    def test_hand_computed_means_difference_and_ratio(self):
        """Test 2 subjects x 2 conditions x 3 trials against hand computation."""
        result = aggregate(_cleaned_frame(HAND_TRIALS))
        ln2, ln3 = np.log(2.0), np.log(3.0)

        rows = result.rows.set_index(['subject', 'condition'])['mean_log_value']
        assert rows[('s1', 'A')] == pytest.approx(2 * ln2, abs=1e-9)
        assert rows[('s1', 'B')] == pytest.approx(ln2, abs=1e-9)
        assert rows[('s2', 'A')] == pytest.approx(ln3, abs=1e-9)
        assert rows[('s2', 'B')] == pytest.approx(2 * ln3, abs=1e-9)
        assert (result.rows['n_trials'] == 3).all()

        paired = result.paired.set_index('subject')
        assert paired.loc['s1', 'difference'] == pytest.approx(ln2, abs=1e-9)
        assert paired.loc['s2', 'difference'] == pytest.approx(-ln3, abs=1e-9)
        assert paired.loc['s1', 'ratio'] == pytest.approx(2.0 / 3.0, abs=1e-9)
        assert paired.loc['s2', 'ratio'] == pytest.approx(1.0 / 3.0, abs=1e-9)

    def test_covariates_are_carried(self):
        """Test subject covariates appear on long and paired rows."""
        result = aggregate(_cleaned_frame(HAND_TRIALS))
        for frame in (result.rows, result.paired):
            for column in ('lab', 'age', 'method', 'session', 'language', 'bilingual'):
                assert column in frame.columns
        assert list(result.paired.columns[-4:]) == ['A', 'B', 'difference', 'ratio']

    def test_paired_rows_need_both_conditions(self):
        """Test a subject seen in one condition is kept long but not paired."""
        trials = dict(HAND_TRIALS)
        trials[('s3', 'A')] = [5.0, 6.0]
        result = aggregate(_cleaned_frame(trials))
        assert 's3' in set(result.rows['subject'])
        assert 's3' not in set(result.paired['subject'])
        assert len(result.paired) == 2

    def test_ratio_undefined_when_both_means_are_zero(self):
        """Test ratio is NaN when A + B == 0 on the log scale."""
        result = aggregate(_cleaned_frame({('s1', 'A'): [1.0, 1.0], ('s1', 'B'): [1.0, 1.0]}))
        assert result.paired.loc[0, 'difference'] == 0.0
        assert np.isnan(result.paired.loc[0, 'ratio'])

    def test_empty_input_raises(self):
        """Test aggregating an empty table raises a no-data error."""
        empty = _cleaned_frame(HAND_TRIALS).iloc[0:0]
        with pytest.raises(ValidationError, match='no data'):
            aggregate(empty)

    def test_pipeline_output(self, cleaned, aggregated):
        """Test aggregation of the default design matches trial counts."""
        assert aggregated.rows['n_trials'].sum() == len(cleaned.data)
        assert len(aggregated.paired) == cleaned.n_subjects
        assert tuple(aggregated.conditions) == ('A', 'B')


class TestSummarizeLabEffects:
    """Tests for summarize_lab_effects()."""

    def test_per_lab_standardized_effects(self):
        """Test mean, SD and effect size of paired differences per lab."""
        paired = pd.DataFrame({
            'lab': ['lab01', 'lab01', 'lab01', 'lab02', 'lab02'],
            'difference': [0.1, 0.2, 0.3, 0.5, 0.5],
        })
        summary = summarize_lab_effects(paired).set_index('lab')
        assert summary.loc['lab01', 'n_subjects'] == 3
        assert summary.loc['lab01', 'mean_difference'] == pytest.approx(0.2)
        assert summary.loc['lab01', 'sd_difference'] == pytest.approx(0.1)
        assert summary.loc['lab01', 'effect_size'] == pytest.approx(2.0)
        assert np.isnan(summary.loc['lab02', 'effect_size'])

    def test_empty_table_raises(self):
        """Test an empty paired table is rejected."""
        with pytest.raises(ValidationError):
            summarize_lab_effects(pd.DataFrame(columns=['lab', 'difference']))
