"""
Shared fixtures for the multi-lab pipeline tests.
"""

import numpy as np
import pandas as pd
import pytest

from multilab.aggregator import aggregate
from multilab.parameters import CleaningParameters, SimulationParameters
from multilab.preprocessor import LookingTimePreprocessor
from multilab.simulator import LookingTimeSimulator


@pytest.fixture(scope='session')
def design_parameters():
    """The preregistered default design: 5 labs x 10 subjects x 8 trials."""
    return SimulationParameters(n_labs=5, subjects_per_lab=10, trials_per_subject=8,
                                block_size=4, seed=42)


@pytest.fixture(scope='session')
def study(design_parameters):
    return LookingTimeSimulator(design_parameters).simulate()


@pytest.fixture(scope='session')
def observations(study):
    return study.observations


@pytest.fixture(scope='session')
def cleaned(observations):
    parameters = CleaningParameters(min_value=2.0, z_threshold=3.0, min_trials_per_condition=2)
    return LookingTimePreprocessor(parameters).clean(observations)


@pytest.fixture(scope='session')
def aggregated(cleaned):
    return aggregate(cleaned)


@pytest.fixture(scope='session')
def grouped_data():
    """
    Random-intercept data with a known condition effect.

    40 groups x 6 observations; y = 1 + 0.3 * [condition == A] + 0.5 * x
    + group effect (sd 0.8) + noise (sd 0.5).
    """
    rng = np.random.default_rng(2024)
    n_groups, per_group = 40, 6
    group = np.repeat([f"g{i:02d}" for i in range(n_groups)], per_group)
    condition = np.tile(['A', 'B'], n_groups * per_group // 2)
    x = rng.normal(size=n_groups * per_group)
    group_effect = np.repeat(rng.normal(scale=0.8, size=n_groups), per_group)
    y = (1.0 + 0.3 * (condition == 'A') + 0.5 * x + group_effect
         + rng.normal(scale=0.5, size=n_groups * per_group))
    return pd.DataFrame({
        'group': group,
        'condition': pd.Categorical(condition, categories=['B', 'A']),
        'x': x,
        'y': y,
    })
