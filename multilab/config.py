# -*- coding: utf-8 -*-
"""
Multi-lab study configuration

This file holds every parameter of the design-validation pipeline:
generator distributions, category sets for lab and subject covariates,
preregistered exclusion rules, model-fitting budgets and output paths.
"""

import os

# =============================================================================
# PATHS
# =============================================================================

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
RESULTS_DIR = os.path.join(PROJECT_ROOT, 'results', 'multilab')

# =============================================================================
# STUDY DESIGN
# =============================================================================

# Condition labels. 'A' is the enhanced condition (e.g. infant-directed
# speech), 'B' the baseline. 'B' is the reference level in every model, so
# condition coefficients read as A - B.
CONDITIONS = ['A', 'B']
ENHANCED_CONDITION = 'A'
REFERENCE_CONDITION = 'B'

# Lab-level method (one per lab)
METHODS = ['singlescreen', 'eyetracking', 'hpp']

# Subject-level covariates (one value per subject)
SESSIONS = ['first', 'second']
LANGUAGES = ['NAE', 'non-NAE']

# Default simulated design (5 labs x 10 subjects x 8 trials in blocks of 4)
DEFAULT_N_LABS = 5
DEFAULT_SUBJECTS_PER_LAB = 10
DEFAULT_TRIALS_PER_SUBJECT = 8
DEFAULT_BLOCK_SIZE = 4
DEFAULT_SEED = 42

# =============================================================================
# GENERATOR DISTRIBUTIONS
# =============================================================================

# Lab latent parameters
CONDITION_EFFECT_RANGE = (0.0, 0.5)   # lab offset on the log-location of condition A
AGE_CENTER_RANGE = (3.0, 12.0)        # lab mean age in months (rounded to integer)
AGE_SPREAD = 0.5                      # subject age ~ U(center - spread, center + spread)

# Subject latent parameter
ATTENTION_OFFSET_RANGE = (0.0, 0.5)   # added to every looking time of the subject

# Looking-time distribution: LogNormal(location, scale)
BASE_LOCATION = 1.5
LOGNORMAL_SCALE = 0.7

# Looking times are truncated (not resampled) at the trial maximum (seconds)
MAX_VALUE = 20.0

# =============================================================================
# EXCLUSION RULES (preregistered)
# =============================================================================

MIN_VALUE = 2.0                # trials shorter than this are dropped (seconds)
Z_THRESHOLD = 3.0              # |within-subject z of log looking time| >= this is an outlier
MIN_TRIALS_PER_CONDITION = 2   # subjects need this many usable trials per condition

# =============================================================================
# COLUMN NAMES
# =============================================================================

# Trial-level observation columns, in output order
OBSERVATION_COLUMNS = [
    'lab',
    'subject',
    'trial_index',
    'block_index',
    'condition',
    'method',
    'session',
    'language',
    'bilingual',
    'age',
    'value',
]

# Covariates that are constant within a subject
SUBJECT_COVARIATES = ['lab', 'method', 'session', 'language', 'bilingual', 'age']

# Categorical columns and their reference levels for modelling
CATEGORICAL_LEVELS = {
    'condition': [REFERENCE_CONDITION, ENHANCED_CONDITION],
    'method': METHODS,
    'session': SESSIONS,
    'language': LANGUAGES,
}

# =============================================================================
# MIXED-MODEL FITTING
# =============================================================================

LME_METHOD = 'ML'              # nested comparisons need ML fits
LME_MAX_ITERATIONS = 2000      # Nelder-Mead iterations before ConvergenceError
LME_TOLERANCE = 1e-8           # relative change in deviance
LME_THETA_TOLERANCE = 1e-5     # simplex size in relative-covariance units
LME_TIME_BUDGET_SEC = None     # optional wall-clock limit per fit

# Significance level and Wald interval multiplier
ALPHA = 0.05
Z_CRITICAL = 1.959963984540054

# Moderators tested against the primary condition model
MODERATORS = ['method', 'session', 'language', 'bilingual']
