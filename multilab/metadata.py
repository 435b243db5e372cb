# -*- coding: utf-8 -*-
"""
Analysis Metadata Module

This module provides functionality for documenting a pipeline run: package
versions, simulation and exclusion parameters, the exclusion audit table,
data summaries and model-fitting settings.
"""

from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, Optional

from multilab import config
from multilab.__version__ import (
    MODELING_VERSION,
    PREPROCESSING_VERSION,
    SIMULATION_VERSION,
    __version__,
)
from multilab.aggregator import AggregatedData
from multilab.parameters import CleaningParameters, SimulationParameters
from multilab.preprocessor import CleanedDataset


class AnalysisMetadata:
    """
    Generates metadata documentation for a design-validation run.

    Example:
        >>> from multilab.metadata import AnalysisMetadata
        >>> metadata = AnalysisMetadata().generate_metadata(
        ...     simulation=params, cleaning=cleaning,
        ...     cleaned=cleaned, aggregated=aggregated)
        >>>
        >>> import json
        >>> with open('analysis_metadata.json', 'w') as f:
        ...     json.dump(metadata, f, indent=2)
    """

    def generate_metadata(self, simulation: Optional[SimulationParameters] = None,
                          cleaning: Optional[CleaningParameters] = None,
                          cleaned: Optional[CleanedDataset] = None,
                          aggregated: Optional[AggregatedData] = None,
                          fit_options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Generate JSON-serializable metadata.

        Args:
            simulation (Optional[SimulationParameters]): Generator parameters
            cleaning (Optional[CleaningParameters]): Exclusion rules
            cleaned (Optional[CleanedDataset]): Output of the exclusion engine
            aggregated (Optional[AggregatedData]): Output of aggregation
            fit_options (Optional[Dict[str, Any]]): Options passed to fit()

        Returns:
            Dictionary containing all run metadata
        """
        metadata = {
            'version': __version__,
            'component_versions': {
                'simulation': SIMULATION_VERSION,
                'preprocessing': PREPROCESSING_VERSION,
                'modeling': MODELING_VERSION,
            },
            'timestamp': datetime.now().isoformat(),
        }

        if simulation is not None:
            metadata['simulation'] = asdict(simulation)

        if cleaning is not None:
            metadata['exclusion'] = {
                'rules': asdict(cleaning),
                'order': ['min_value', 'log_transform', 'within_subject_outliers', 'min_trials'],
                'standardization': {
                    'method': 'within_subject',
                    'formula': '(log_value - subject_mean) / subject_sd',
                    'degenerate_sd': 'z = 0',
                },
            }

        if cleaned is not None:
            metadata['exclusion_audit'] = cleaned.stage_counts.to_dict(orient='records')
            data = cleaned.data
            metadata['data_summary'] = {
                'n_labs': int(data['lab'].nunique()) if 'lab' in data else 0,
                'n_subjects': cleaned.n_subjects,
                'n_trials': int(len(data)),
                'n_trials_by_condition': {
                    str(k): int(v) for k, v in data['condition'].value_counts().items()
                },
            }

        if aggregated is not None:
            metadata.setdefault('data_summary', {}).update({
                'n_subject_condition_rows': int(len(aggregated.rows)),
                'n_paired_subjects': int(len(aggregated.paired)),
                'difference': f"{aggregated.conditions[0]} - {aggregated.conditions[1]} (log scale)",
                'ratio': f"{aggregated.conditions[0]} / ({aggregated.conditions[0]} + "
                         f"{aggregated.conditions[1]}) (log scale)",
            })

        options = dict(fit_options or {})
        metadata['modeling'] = {
            'method': config.LME_METHOD,
            'optimizer': 'Nelder-Mead on the profiled deviance',
            'max_iter': options.get('max_iter', config.LME_MAX_ITERATIONS),
            'tol': options.get('tol', config.LME_TOLERANCE),
            'time_budget': options.get('time_budget', config.LME_TIME_BUDGET_SEC),
            'reference_levels': config.CATEGORICAL_LEVELS,
            'moderators': config.MODERATORS,
            'alpha': config.ALPHA,
            'multiple_comparisons': 'fdr_bh',
        }

        return metadata
