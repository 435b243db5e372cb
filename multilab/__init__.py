# -*- coding: utf-8 -*-
"""Multi-Lab Looking-Time Design Validation

This package simulates a many-labs infant looking-time study, applies the
preregistered exclusion rules, aggregates to subjects and tests the
preregistered hypotheses with linear mixed models.

The package includes:
    - LookingTimeSimulator: Hierarchical lab / subject / trial generator
    - StudyDataValidator: Structural checks on trial-level data
    - LookingTimePreprocessor: Exclusion engine with audit table
    - aggregate: Subject x condition rows and paired differences
    - fit / ModelSpec: ML and REML linear mixed models
    - compare_nested / group_trends: Likelihood-ratio tests and per-group slopes
    - HypothesisLMEAnalyzer: The preregistered nested-model suite
    - MultiLabAnalysisPipeline: Orchestrator and command-line entry point

Example:
    >>> from multilab import generate, clean, aggregate, fit, ModelSpec, RandomEffect
    >>>
    >>> observations = generate(n_labs=5, subjects_per_lab=10,
    ...                         trials_per_subject=8, block_size=4, seed=42)
    >>> cleaned = clean(observations, min_value=2.0, z_threshold=3.0,
    ...                 min_trials_per_condition=2)
    >>> rows = aggregate(cleaned).rows
    >>> spec = ModelSpec('mean_log_value', terms=('condition',),
    ...                  random=(RandomEffect('lab'), RandomEffect('subject')),
    ...                  method='ML')
    >>> model = fit(rows, spec)
"""

from multilab.__version__ import __version__
from multilab.aggregator import AggregatedData, aggregate, summarize_lab_effects
from multilab.contrast_analyzer import (
    GroupTrend,
    LikelihoodRatioTest,
    TrendContrastAnalyzer,
    compare_nested,
    group_trends,
)
from multilab.errors import (
    ConvergenceError,
    InvalidComparisonError,
    MultiLabError,
    RankDeficiencyError,
    ValidationError,
)
from multilab.lme_analyzer import HypothesisLMEAnalyzer
from multilab.mixed_model import FittedModel, fit
from multilab.model_spec import ModelSpec, RandomEffect
from multilab.parameters import CleaningParameters, SimulationParameters
from multilab.preprocessor import CleanedDataset, LookingTimePreprocessor, clean
from multilab.simulator import LookingTimeSimulator, SimulatedStudy, generate
from multilab.validator import StudyDataValidator

__all__ = [
    '__version__',
    'AggregatedData',
    'CleanedDataset',
    'CleaningParameters',
    'ConvergenceError',
    'FittedModel',
    'GroupTrend',
    'HypothesisLMEAnalyzer',
    'InvalidComparisonError',
    'LikelihoodRatioTest',
    'LookingTimePreprocessor',
    'LookingTimeSimulator',
    'ModelSpec',
    'MultiLabError',
    'RandomEffect',
    'RankDeficiencyError',
    'SimulatedStudy',
    'SimulationParameters',
    'StudyDataValidator',
    'TrendContrastAnalyzer',
    'ValidationError',
    'aggregate',
    'clean',
    'compare_nested',
    'fit',
    'generate',
    'group_trends',
    'summarize_lab_effects',
]
