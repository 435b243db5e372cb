# -*- coding: utf-8 -*-
"""
Subject-Level Aggregation Module

This module collapses cleaned trials to one row per subject and condition,
pivots those rows to a paired (wide) table with difference and ratio scores,
and summarizes per-lab standardized effects. Everything stays on the log
scale carried by the cleaned data.
"""

import logging
from dataclasses import dataclass
from typing import Sequence, Union

import numpy as np
import pandas as pd

from multilab import config
from multilab.errors import ValidationError
from multilab.preprocessor import CleanedDataset

# Configure logging
logger = logging.getLogger(__name__)

COVARIATE_ORDER = ['lab', 'age', 'method', 'session', 'language', 'bilingual']


@dataclass(frozen=True)
class AggregatedData:
    """
    Subject-level tables.

    Attributes:
        rows (pd.DataFrame): One row per (subject, condition) with covariates,
            mean_log_value and n_trials
        paired (pd.DataFrame): One row per subject seen in both conditions,
            one column per condition mean plus difference and ratio
        conditions (Sequence[str]): (first, second) condition labels;
            difference = first - second
    """

    rows: pd.DataFrame
    paired: pd.DataFrame
    conditions: Sequence[str]


def _subject_covariates(data: pd.DataFrame) -> pd.DataFrame:
    covariates = [col for col in COVARIATE_ORDER if col in data.columns]
    return data.groupby('subject', observed=True, sort=True)[covariates].first().reset_index()


def aggregate(cleaned: Union[CleanedDataset, pd.DataFrame]) -> AggregatedData:
    """
    Aggregate cleaned trials to the subject level.

    Args:
        cleaned (Union[CleanedDataset, pd.DataFrame]): Output of the
            exclusion pipeline (or its data frame)

    Returns:
        AggregatedData: Long rows and paired rows

    Raises:
        ValidationError: If there is no data to aggregate
    """
    if isinstance(cleaned, CleanedDataset):
        data = cleaned.data
        conditions = list(cleaned.parameters.conditions)
    else:
        data = cleaned
        conditions = list(config.CONDITIONS)

    if data is None or data.empty:
        raise ValidationError("no data: nothing to aggregate")
    if 'log_value' not in data.columns:
        raise ValidationError("aggregation needs log_value; run the exclusion pipeline first")

    first, second = conditions[0], conditions[1]
    logger.info(f"Aggregating {len(data)} trials from {data['subject'].nunique()} subjects...")

    means = (
        data.groupby(['subject', 'condition'], observed=True, sort=True)['log_value']
        .agg(mean_log_value='mean', n_trials='size')
        .reset_index()
    )
    covariates = _subject_covariates(data)
    rows = covariates.merge(means, on='subject', how='inner')
    covariate_cols = [col for col in COVARIATE_ORDER if col in rows.columns]
    ordered = ['lab'] if 'lab' in covariate_cols else []
    ordered += ['subject', 'condition'] + [c for c in covariate_cols if c != 'lab']
    rows = rows[ordered + ['mean_log_value', 'n_trials']]
    rows = rows.sort_values(['subject', 'condition']).reset_index(drop=True)

    # Wide form, inner join on subjects seen in both conditions
    wide = rows.pivot(index='subject', columns='condition', values='mean_log_value')
    wide.columns = [str(col) for col in wide.columns]
    wide = wide.reindex(columns=[first, second])
    n_before = len(wide)
    wide = wide.dropna(subset=[first, second])
    if len(wide) < n_before:
        logger.info(f"  {n_before - len(wide)} subject(s) lack one condition; "
                    f"excluded from paired rows")

    total = wide[first] + wide[second]
    wide['difference'] = wide[first] - wide[second]
    wide['ratio'] = wide[first] / total.where(total != 0, np.nan)

    paired = covariates.merge(wide.reset_index(), on='subject', how='inner')
    paired_cols = ordered[:1] + ['subject'] + [c for c in covariate_cols if c != 'lab']
    paired = paired[paired_cols + [first, second, 'difference', 'ratio']]
    paired = paired.sort_values('subject').reset_index(drop=True)

    logger.info(f"  {len(rows)} subject x condition rows, {len(paired)} paired subjects")

    return AggregatedData(rows=rows, paired=paired, conditions=(first, second))


def summarize_lab_effects(paired: pd.DataFrame) -> pd.DataFrame:
    """
    Per-lab standardized condition effects from paired rows.

    Args:
        paired (pd.DataFrame): Paired rows with lab and difference columns

    Returns:
        pd.DataFrame: Columns lab, n_subjects, mean_difference,
            sd_difference, se_difference, effect_size (mean / sd, NaN when
            the SD is zero or undefined)
    """
    if paired.empty:
        raise ValidationError("no data: paired table is empty")

    summary = (
        paired.groupby('lab', observed=True, sort=True)['difference']
        .agg(n_subjects='size', mean_difference='mean', sd_difference='std')
        .reset_index()
    )
    sd = summary['sd_difference']
    summary['se_difference'] = sd / np.sqrt(summary['n_subjects'])
    summary['effect_size'] = summary['mean_difference'] / sd.where(sd > 0, np.nan)
    return summary
