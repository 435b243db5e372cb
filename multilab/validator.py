"""Study Data Validator

This module provides structural validation for trial-level looking-time data.
It checks the invariants every downstream stage relies on: value bounds,
counterbalancing within blocks, and subject-level covariates that do not
change across a subject's trials.
"""

from typing import Any, Dict, List, Optional, Sequence
from datetime import datetime
import logging

import pandas as pd

from multilab import config

logger = logging.getLogger(__name__)


class StudyDataValidator:
    """Validates looking-time observations.

    This class performs the structural checks on trial-level data:
    - Required columns are present
    - Values lie in (0, max_value]
    - Each (subject, block) holds equal counts of every condition
    - Each subject has exactly one lab, age, method, session, language
      and bilingual value

    Attributes:
        data: DataFrame of observations (config.OBSERVATION_COLUMNS)
        max_value: Upper bound of the looking-time scale
        conditions: Condition labels that must be balanced

    Example:
        >>> validator = StudyDataValidator(observations)
        >>> results = validator.validate_all()
        >>> if not results['is_valid']:
        ...     print(results['block_balance_issues'])
    """

    def __init__(self, data: pd.DataFrame, max_value: float = config.MAX_VALUE,
                 conditions: Optional[Sequence[str]] = None):
        """Initialize validator with observations.

        Args:
            data: Trial-level observations
            max_value: Upper bound of valid values (default: config.MAX_VALUE)
            conditions: Condition labels (default: config.CONDITIONS)
        """
        self.data = data.copy()
        self.max_value = max_value
        self.conditions = list(conditions or config.CONDITIONS)

    def validate_required_columns(self) -> List[str]:
        """Return the observation columns missing from the data."""
        return [col for col in config.OBSERVATION_COLUMNS if col not in self.data.columns]

    def validate_value_range(self) -> pd.DataFrame:
        """Check that every value lies in (0, max_value].

        Returns:
            DataFrame with columns: subject, trial_index, value
            Contains only out-of-range or missing values. Empty DataFrame if
            all values are valid.
        """
        values = self.data['value']
        mask = values.isna() | (values <= 0) | (values > self.max_value)
        violations = self.data.loc[mask, ['subject', 'trial_index', 'value']]
        return violations.reset_index(drop=True)

    def validate_block_balance(self) -> Dict[str, List[str]]:
        """Validate that every block is a balanced permutation of conditions.

        Groups trials by subject and block_index and counts each condition.

        Returns:
            Dictionary mapping block identifiers (subject_block) to a list of
            issue descriptions. Empty dict if every block is balanced.

        Example:
            >>> issues = validator.validate_block_balance()
            >>> # {'lab01_s03_b1': ['Unbalanced counts: A=3, B=1']}
        """
        issues = {}
        if self.data.empty:
            return issues

        counts = (
            self.data.groupby(['subject', 'block_index'])['condition']
            .value_counts()
            .unstack(fill_value=0)
            .reindex(columns=self.conditions, fill_value=0)
        )

        unknown = self.data[~self.data['condition'].isin(self.conditions)]
        unknown_by_block = unknown.groupby(['subject', 'block_index'])['condition'].unique()

        for (subject, block), row in counts.iterrows():
            block_issues = []
            if row.nunique() != 1:
                detail = ', '.join(f"{cond}={row[cond]}" for cond in self.conditions)
                block_issues.append(f"Unbalanced counts: {detail}")
            if (subject, block) in unknown_by_block.index:
                extra = sorted(map(str, unknown_by_block.loc[(subject, block)]))
                block_issues.append(f"Unknown conditions: {extra}")
            if block_issues:
                issues[f"{subject}_b{block}"] = block_issues

        return issues

    def validate_subject_covariates(self) -> Dict[str, List[str]]:
        """Validate each subject carries one value of every subject covariate.

        Returns:
            Dictionary mapping subject IDs to a list of issue descriptions.
            Empty dict if all subjects are consistent.
        """
        issues = {}
        if self.data.empty:
            return issues

        n_unique = self.data.groupby('subject')[config.SUBJECT_COVARIATES].nunique(dropna=False)
        for subject, row in n_unique.iterrows():
            subject_issues = [
                f"{cov} has {row[cov]} distinct values"
                for cov in config.SUBJECT_COVARIATES if row[cov] != 1
            ]
            if subject_issues:
                issues[subject] = subject_issues

        return issues

    def validate_all(self) -> Dict[str, Any]:
        """Run all validation checks and aggregate results.

        Returns:
            Dictionary containing:
            - summary: Dict with n_labs, n_subjects, n_observations
            - missing_columns: List from validate_required_columns()
            - range_violations: DataFrame from validate_value_range()
            - block_balance_issues: Dict from validate_block_balance()
            - covariate_issues: Dict from validate_subject_covariates()
            - is_valid: True when no check found a problem
            - timestamp: ISO format timestamp of validation run
        """
        missing_columns = self.validate_required_columns()
        if missing_columns:
            logger.error(f"Observations are missing columns: {missing_columns}")
            return {
                'summary': {'n_labs': 0, 'n_subjects': 0, 'n_observations': len(self.data)},
                'missing_columns': missing_columns,
                'range_violations': pd.DataFrame(),
                'block_balance_issues': {},
                'covariate_issues': {},
                'is_valid': False,
                'timestamp': datetime.now().isoformat()
            }

        range_violations = self.validate_value_range()
        block_balance_issues = self.validate_block_balance()
        covariate_issues = self.validate_subject_covariates()

        is_valid = range_violations.empty and not block_balance_issues and not covariate_issues
        logger.info(f"Validation: {len(range_violations)} range violations, "
                    f"{len(block_balance_issues)} unbalanced blocks, "
                    f"{len(covariate_issues)} inconsistent subjects")

        results = {
            'summary': {
                'n_labs': self.data['lab'].nunique(),
                'n_subjects': self.data['subject'].nunique(),
                'n_observations': len(self.data)
            },
            'missing_columns': missing_columns,
            'range_violations': range_violations,
            'block_balance_issues': block_balance_issues,
            'covariate_issues': covariate_issues,
            'is_valid': is_valid,
            'timestamp': datetime.now().isoformat()
        }

        return results
