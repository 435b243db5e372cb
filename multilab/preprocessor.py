# -*- coding: utf-8 -*-
"""
Looking-Time Preprocessor Module

This module provides the preregistered exclusion engine: short-trial removal,
log transformation, within-subject outlier removal and the minimum-trials
rule. Every step is a hard filter and is recorded in an audit table.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

import numpy as np
import pandas as pd

from multilab import config
from multilab.errors import ValidationError
from multilab.parameters import CleaningParameters

# Configure logging
logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ['subject', 'condition', 'value']


@dataclass(frozen=True)
class CleanedDataset:
    """
    Result of the exclusion pipeline.

    Attributes:
        data (pd.DataFrame): Retained observations with log_value and
            z_log_value added; condition is categorical with the reference
            level first
        stage_counts (pd.DataFrame): One row per stage with columns stage,
            rule, n_observations, n_subjects, n_removed
        parameters (CleaningParameters): Rules that were applied
    """

    data: pd.DataFrame
    stage_counts: pd.DataFrame
    parameters: CleaningParameters

    @property
    def is_empty(self) -> bool:
        return self.data.empty

    @property
    def n_subjects(self) -> int:
        return int(self.data['subject'].nunique()) if not self.data.empty else 0


def condition_categories(conditions) -> List[str]:
    """Order condition labels with the reference condition first."""
    conditions = list(conditions)
    reference = [c for c in config.CATEGORICAL_LEVELS['condition'] if c in conditions]
    return reference + [c for c in conditions if c not in reference]


class LookingTimePreprocessor:
    """
    Applies the preregistered exclusion rules to trial-level observations.

    Steps, in order:
    1. Drop trials with value below min_value
    2. Compute log_value = ln(value)
    3. Standardize log_value within subject and drop |z| >= z_threshold
    4. Drop subjects with fewer than min_trials_per_condition trials in any
       condition

    A subject whose log values do not vary (or who has a single trial) gets
    z = 0 for every trial and is never removed as an outlier. Empty results
    are valid at every stage.

    Example:
        >>> from multilab.parameters import CleaningParameters
        >>> from multilab.preprocessor import LookingTimePreprocessor
        >>>
        >>> preprocessor = LookingTimePreprocessor(CleaningParameters(min_value=2))
        >>> cleaned = preprocessor.clean(observations)
        >>> cleaned.stage_counts
    """

    def __init__(self, parameters: Optional[CleaningParameters] = None):
        """
        Initialize preprocessor.

        Args:
            parameters (Optional[CleaningParameters]): Exclusion rules
                (default: config values). Validated here.
        """
        self.parameters = (parameters or CleaningParameters()).validate()
        self._stages = []

    def _record(self, stage: str, rule: str, data: pd.DataFrame) -> None:
        n_obs = len(data)
        n_subjects = int(data['subject'].nunique()) if n_obs else 0
        n_removed = self._stages[-1]['n_observations'] - n_obs if self._stages else 0
        self._stages.append({
            'stage': stage,
            'rule': rule,
            'n_observations': n_obs,
            'n_subjects': n_subjects,
            'n_removed': n_removed,
        })
        logger.info(f"  {stage}: {n_obs} observations, {n_subjects} subjects "
                    f"({n_removed} removed)")

    def drop_short_trials(self, data: pd.DataFrame) -> pd.DataFrame:
        """
        Drop trials whose value is below min_value.

        Args:
            data (pd.DataFrame): Observations

        Returns:
            pd.DataFrame: Observations with value >= min_value
        """
        return data[data['value'] >= self.parameters.min_value].copy()

    def add_log_values(self, data: pd.DataFrame) -> pd.DataFrame:
        """Add log_value = ln(value). Values must be positive."""
        data = data.copy()
        if (data['value'] <= 0).any():
            raise ValidationError("log transform needs positive values; "
                                  "use min_value > 0 or remove non-positive trials")
        data['log_value'] = np.log(data['value'].astype(float))
        return data

    def standardize_within_subject(self, data: pd.DataFrame) -> pd.DataFrame:
        """
        Compute within-subject z-scores of log_value.

        Uses the subject mean and sample standard deviation (ddof=1). When the
        standard deviation is zero or undefined the z-score is 0.

        Args:
            data (pd.DataFrame): Observations with log_value

        Returns:
            pd.DataFrame: Data with z_log_value added
        """
        data = data.copy()
        if data.empty:
            data['z_log_value'] = pd.Series(dtype=float)
            return data

        grouped = data.groupby('subject', observed=True, sort=False)['log_value']
        subject_mean = grouped.transform('mean')
        subject_std = grouped.transform('std')

        degenerate = ~(subject_std > 0)
        if degenerate.any():
            n_degenerate = data.loc[degenerate, 'subject'].nunique()
            logger.warning(f"  {n_degenerate} subject(s) with zero or undefined log_value "
                           f"SD; setting their z-scores to 0")

        z = (data['log_value'] - subject_mean) / subject_std.where(~degenerate, 1.0)
        data['z_log_value'] = z.where(~degenerate, 0.0)
        return data

    def drop_outliers(self, data: pd.DataFrame) -> pd.DataFrame:
        """Drop trials with |z_log_value| >= z_threshold."""
        return data[data['z_log_value'].abs() < self.parameters.z_threshold].copy()

    def drop_incomplete_subjects(self, data: pd.DataFrame) -> pd.DataFrame:
        """
        Drop subjects lacking min_trials_per_condition trials in any condition.

        A condition a subject never saw counts as zero trials.

        Args:
            data (pd.DataFrame): Observations

        Returns:
            pd.DataFrame: Observations of complete subjects only
        """
        if data.empty:
            return data.copy()

        counts = (
            data.groupby(['subject', 'condition'], observed=True).size()
            .unstack(fill_value=0)
            .reindex(columns=list(self.parameters.conditions), fill_value=0)
        )
        complete = counts.index[(counts >= self.parameters.min_trials_per_condition).all(axis=1)]
        n_dropped = len(counts) - len(complete)
        if n_dropped:
            logger.debug(f"  Subjects below minimum trials: "
                         f"{sorted(set(counts.index) - set(complete))}")
        return data[data['subject'].isin(complete)].copy()

    def clean(self, observations: pd.DataFrame) -> CleanedDataset:
        """
        Run the complete exclusion pipeline.

        Args:
            observations (pd.DataFrame): Trial-level observations

        Returns:
            CleanedDataset: Retained observations and the audit table
        """
        missing = [col for col in REQUIRED_COLUMNS if col not in observations.columns]
        if missing:
            raise ValidationError(f"Observations are missing columns: {missing}",
                                  details={'missing': missing})

        p = self.parameters
        logger.info("Starting exclusion pipeline...")
        self._stages = []

        data = observations.copy()
        self._record('input', 'none', data)

        # Step 1: Short trials
        data = self.drop_short_trials(data)
        self._record('min_value', f"value >= {p.min_value}", data)

        # Step 2: Log transform
        data = self.add_log_values(data)

        # Step 3: Within-subject outliers
        data = self.standardize_within_subject(data)
        data = self.drop_outliers(data)
        self._record('outliers', f"|z(log value)| < {p.z_threshold}", data)

        # Step 4: Minimum trials per condition
        data = self.drop_incomplete_subjects(data)
        self._record('min_trials', f">= {p.min_trials_per_condition} trials per condition", data)

        data['condition'] = pd.Categorical(
            data['condition'].astype(str),
            categories=condition_categories(p.conditions),
        )
        data = data.reset_index(drop=True)

        if data.empty:
            logger.warning("Exclusion pipeline removed every observation")
        else:
            logger.info(f"Exclusion complete: {len(data)} observations, "
                        f"{data['subject'].nunique()} subjects retained")

        return CleanedDataset(
            data=data,
            stage_counts=pd.DataFrame(self._stages),
            parameters=p,
        )


def clean(observations: pd.DataFrame, min_value: float, z_threshold: float,
          min_trials_per_condition: int) -> CleanedDataset:
    """
    Apply the exclusion rules to observations.

    Args:
        observations (pd.DataFrame): Trial-level observations
        min_value (float): Minimum usable value
        z_threshold (float): Outlier threshold on within-subject z of log value
        min_trials_per_condition (int): Minimum usable trials per condition

    Returns:
        CleanedDataset
    """
    parameters = CleaningParameters(
        min_value=min_value,
        z_threshold=z_threshold,
        min_trials_per_condition=min_trials_per_condition,
    )
    return LookingTimePreprocessor(parameters).clean(observations)
