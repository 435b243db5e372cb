# -*- coding: utf-8 -*-
"""
Pipeline Parameters Module

This module provides the validated parameter objects for the generator and
the exclusion engine. Both are immutable and are checked before any data is
generated or filtered, so a bad configuration fails fast.
"""

import numbers
from dataclasses import dataclass
from typing import Tuple

import numpy as np

from multilab import config
from multilab.errors import ValidationError


def _is_integer(value) -> bool:
    return isinstance(value, numbers.Integral) and not isinstance(value, bool)


def _check_range(name: str, bounds: Tuple[float, float]) -> None:
    if len(bounds) != 2:
        raise ValidationError(f"{name} must be a (low, high) pair, got {bounds!r}")
    low, high = bounds
    if not (np.isfinite(low) and np.isfinite(high)) or low > high:
        raise ValidationError(f"{name} must satisfy low <= high, got {bounds!r}")


@dataclass(frozen=True)
class SimulationParameters:
    """
    Parameters of the hierarchical looking-time generator.

    The four design counts and the seed are the required inputs; the
    distribution settings default to the preregistered values in
    ``multilab.config`` and exist so that tests can simulate degenerate
    designs (for example, a constant condition effect with no attention
    offsets).

    Attributes:
        n_labs (int): Number of laboratories (>= 1)
        subjects_per_lab (int): Subjects per laboratory (>= 1)
        trials_per_subject (int): Trials per subject, a multiple of block_size
        block_size (int): Trials per counterbalancing block (even, >= 2)
        seed (int): Seed of the random generator (any integer)
    """

    n_labs: int = config.DEFAULT_N_LABS
    subjects_per_lab: int = config.DEFAULT_SUBJECTS_PER_LAB
    trials_per_subject: int = config.DEFAULT_TRIALS_PER_SUBJECT
    block_size: int = config.DEFAULT_BLOCK_SIZE
    seed: int = config.DEFAULT_SEED
    condition_effect_range: Tuple[float, float] = config.CONDITION_EFFECT_RANGE
    age_center_range: Tuple[float, float] = config.AGE_CENTER_RANGE
    age_spread: float = config.AGE_SPREAD
    attention_offset_range: Tuple[float, float] = config.ATTENTION_OFFSET_RANGE
    base_location: float = config.BASE_LOCATION
    scale: float = config.LOGNORMAL_SCALE
    max_value: float = config.MAX_VALUE
    conditions: Tuple[str, str] = tuple(config.CONDITIONS)
    enhanced_condition: str = config.ENHANCED_CONDITION
    methods: Tuple[str, ...] = tuple(config.METHODS)
    sessions: Tuple[str, ...] = tuple(config.SESSIONS)
    languages: Tuple[str, ...] = tuple(config.LANGUAGES)

    def validate(self) -> 'SimulationParameters':
        """
        Check every parameter, raising ValidationError on the first problem.

        Returns:
            SimulationParameters: self, so calls can be chained
        """
        for name in ('n_labs', 'subjects_per_lab', 'trials_per_subject', 'block_size'):
            value = getattr(self, name)
            if not _is_integer(value):
                raise ValidationError(f"{name} must be an integer, got {value!r}")
        if self.n_labs < 1:
            raise ValidationError(f"n_labs must be >= 1, got {self.n_labs}")
        if self.subjects_per_lab < 1:
            raise ValidationError(f"subjects_per_lab must be >= 1, got {self.subjects_per_lab}")
        if self.trials_per_subject < 1:
            raise ValidationError(
                f"trials_per_subject must be >= 1, got {self.trials_per_subject}"
            )
        if self.block_size < 2 or self.block_size % 2 != 0:
            raise ValidationError(f"block_size must be even and >= 2, got {self.block_size}")
        if self.trials_per_subject % self.block_size != 0:
            raise ValidationError(
                f"trials_per_subject ({self.trials_per_subject}) must be divisible "
                f"by block_size ({self.block_size})"
            )
        if not _is_integer(self.seed):
            raise ValidationError(f"seed must be an integer, got {self.seed!r}")

        _check_range('condition_effect_range', self.condition_effect_range)
        _check_range('age_center_range', self.age_center_range)
        _check_range('attention_offset_range', self.attention_offset_range)
        if self.age_center_range[0] - self.age_spread < 0:
            raise ValidationError("age_center_range and age_spread allow negative ages")
        if self.attention_offset_range[0] < 0:
            raise ValidationError("attention_offset_range must be non-negative")
        if not self.scale > 0:
            raise ValidationError(f"scale must be > 0, got {self.scale}")
        if not self.max_value > 0:
            raise ValidationError(f"max_value must be > 0, got {self.max_value}")

        if len(self.conditions) != 2 or len(set(self.conditions)) != 2:
            raise ValidationError(f"exactly two distinct conditions required, got {self.conditions}")
        if self.enhanced_condition not in self.conditions:
            raise ValidationError(
                f"enhanced_condition {self.enhanced_condition!r} not in {self.conditions}"
            )
        for name in ('methods', 'sessions', 'languages'):
            if len(getattr(self, name)) == 0:
                raise ValidationError(f"{name} must not be empty")
        return self


@dataclass(frozen=True)
class CleaningParameters:
    """
    Preregistered exclusion rules.

    Attributes:
        min_value (float): Trials with value below this are dropped (>= 0)
        z_threshold (float): Within-subject |z| at or above this is an outlier (> 0)
        min_trials_per_condition (int): Usable trials each condition needs (>= 1)
    """

    min_value: float = config.MIN_VALUE
    z_threshold: float = config.Z_THRESHOLD
    min_trials_per_condition: int = config.MIN_TRIALS_PER_CONDITION
    conditions: Tuple[str, ...] = tuple(config.CONDITIONS)

    def validate(self) -> 'CleaningParameters':
        """Check the exclusion rules, raising ValidationError on the first problem."""
        if not isinstance(self.min_value, numbers.Real) or not np.isfinite(self.min_value) \
                or self.min_value < 0:
            raise ValidationError(f"min_value must be >= 0, got {self.min_value!r}")
        if not isinstance(self.z_threshold, numbers.Real) or not self.z_threshold > 0:
            raise ValidationError(f"z_threshold must be > 0, got {self.z_threshold!r}")
        if not _is_integer(self.min_trials_per_condition) or self.min_trials_per_condition < 1:
            raise ValidationError(
                f"min_trials_per_condition must be an integer >= 1, "
                f"got {self.min_trials_per_condition!r}"
            )
        if len(self.conditions) == 0:
            raise ValidationError("conditions must not be empty")
        return self


def make_rng(seed: int) -> np.random.Generator:
    """
    Build an isolated random generator from any integer seed.

    Negative seeds are mapped through a separate spawn key so that they never
    collide with the stream of their absolute value.
    """
    if seed >= 0:
        return np.random.default_rng(int(seed))
    return np.random.default_rng(np.random.SeedSequence(abs(int(seed)), spawn_key=(1,)))
