# -*- coding: utf-8 -*-
"""
Looking-Time Simulator Module

This module provides the hierarchical generator used to validate the study
design before real data collection: laboratories own subjects, subjects own
trials, and the looking times carry lab-level and subject-level random
effects plus truncation at the trial maximum.
"""

import logging
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from multilab import config
from multilab.parameters import SimulationParameters, make_rng

# Configure logging
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SimulatedStudy:
    """
    Output of one simulation run.

    Attributes:
        observations (pd.DataFrame): Trial-level rows (config.OBSERVATION_COLUMNS)
        labs (pd.DataFrame): Latent lab parameters (generator-only)
        subjects (pd.DataFrame): Latent subject parameters and covariates
        parameters (SimulationParameters): Parameters that produced the run
    """

    observations: pd.DataFrame
    labs: pd.DataFrame
    subjects: pd.DataFrame
    parameters: SimulationParameters


class LookingTimeSimulator:
    """
    Generates synthetic looking-time data for a multi-lab design.

    For each lab a condition-effect offset and a mean age are drawn, and one
    testing method is assigned. For each subject an attention offset, an age
    around the lab mean, a session, a language and a bilingual flag are drawn.
    Trials are split into counterbalancing blocks in which the two condition
    labels appear equally often in random order. Looking times follow a
    log-normal distribution whose location is raised by the lab offset in the
    enhanced condition; the subject's attention offset is added and values
    are truncated at ``max_value``.

    All randomness comes from one generator seeded by ``parameters.seed`` and
    consumed in a fixed order, so identical parameters reproduce identical
    output.

    Example:
        >>> from multilab.parameters import SimulationParameters
        >>> from multilab.simulator import LookingTimeSimulator
        >>>
        >>> params = SimulationParameters(n_labs=5, subjects_per_lab=10,
        ...                               trials_per_subject=8, block_size=4, seed=42)
        >>> study = LookingTimeSimulator(params).simulate()
        >>> study.observations.head()
    """

    def __init__(self, parameters: SimulationParameters):
        """
        Initialize the simulator.

        Args:
            parameters (SimulationParameters): Design and distribution settings.
                Validated here; invalid settings raise ValidationError.
        """
        self.parameters = parameters.validate()

    def _draw_labs(self, rng: np.random.Generator) -> List[Dict]:
        p = self.parameters
        width = max(2, len(str(p.n_labs)))
        labs = []
        for i in range(p.n_labs):
            offset = rng.uniform(*p.condition_effect_range)
            center = float(np.round(rng.uniform(*p.age_center_range)))
            method = p.methods[rng.integers(len(p.methods))]
            labs.append({
                'lab': f"lab{i + 1:0{width}d}",
                'condition_effect_offset': float(offset),
                'mean_age_center': center,
                'method': method,
            })
        return labs

    def _assign_conditions(self, rng: np.random.Generator) -> np.ndarray:
        """Balanced random permutation of condition labels within each block."""
        p = self.parameters
        half = p.block_size // 2
        block_labels = np.array([p.conditions[0]] * half + [p.conditions[1]] * half, dtype=object)
        n_blocks = p.trials_per_subject // p.block_size
        return np.concatenate([rng.permutation(block_labels) for _ in range(n_blocks)])

    def _draw_subject(self, rng: np.random.Generator, lab: Dict, index: int,
                      width: int) -> Tuple[Dict, pd.DataFrame]:
        p = self.parameters
        subject = {
            'subject': f"{lab['lab']}_s{index + 1:0{width}d}",
            'lab': lab['lab'],
            'attention_offset': float(rng.uniform(*p.attention_offset_range)),
            'age': float(rng.uniform(lab['mean_age_center'] - p.age_spread,
                                     lab['mean_age_center'] + p.age_spread)),
            'session': p.sessions[rng.integers(len(p.sessions))],
            'language': p.languages[rng.integers(len(p.languages))],
            'bilingual': bool(rng.integers(2)),
        }

        conditions = self._assign_conditions(rng)
        location = np.where(
            conditions == p.enhanced_condition,
            p.base_location + lab['condition_effect_offset'],
            p.base_location,
        )
        values = rng.lognormal(mean=location, sigma=p.scale) + subject['attention_offset']
        values = np.minimum(values, p.max_value)

        trial_index = np.arange(p.trials_per_subject)
        trials = pd.DataFrame({
            'lab': lab['lab'],
            'subject': subject['subject'],
            'trial_index': trial_index,
            'block_index': trial_index // p.block_size,
            'condition': conditions.astype(str),
            'method': lab['method'],
            'session': subject['session'],
            'language': subject['language'],
            'bilingual': subject['bilingual'],
            'age': subject['age'],
            'value': values,
        })
        return subject, trials

    def simulate(self) -> SimulatedStudy:
        """
        Run the generator.

        Returns:
            SimulatedStudy: Observations plus the latent lab and subject tables
        """
        p = self.parameters
        rng = make_rng(p.seed)
        logger.info(f"Simulating {p.n_labs} labs x {p.subjects_per_lab} subjects x "
                    f"{p.trials_per_subject} trials (block size {p.block_size}, seed {p.seed})")

        labs = self._draw_labs(rng)
        width = max(2, len(str(p.subjects_per_lab)))

        subjects = []
        trial_frames = []
        for lab in labs:
            for j in range(p.subjects_per_lab):
                subject, trials = self._draw_subject(rng, lab, j, width)
                subjects.append(subject)
                trial_frames.append(trials)

        observations = pd.concat(trial_frames, ignore_index=True)[config.OBSERVATION_COLUMNS]
        n_clamped = int((observations['value'] >= p.max_value).sum())
        logger.info(f"  Generated {len(observations)} observations, "
                    f"{n_clamped} truncated at {p.max_value}")

        return SimulatedStudy(
            observations=observations,
            labs=pd.DataFrame(labs),
            subjects=pd.DataFrame(subjects),
            parameters=p,
        )


def generate(n_labs: int, subjects_per_lab: int, trials_per_subject: int,
             block_size: int, seed: int,
             parameters: Optional[SimulationParameters] = None) -> pd.DataFrame:
    """
    Generate trial-level observations.

    Args:
        n_labs (int): Number of laboratories
        subjects_per_lab (int): Subjects per laboratory
        trials_per_subject (int): Trials per subject
        block_size (int): Counterbalancing block size
        seed (int): Random seed
        parameters (Optional[SimulationParameters]): Template for the
            distribution settings; the design counts and seed above override it

    Returns:
        pd.DataFrame: Observations with config.OBSERVATION_COLUMNS
    """
    params = replace(
        parameters or SimulationParameters(),
        n_labs=n_labs,
        subjects_per_lab=subjects_per_lab,
        trials_per_subject=trials_per_subject,
        block_size=block_size,
        seed=seed,
    )
    return LookingTimeSimulator(params).simulate().observations
