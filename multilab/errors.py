# -*- coding: utf-8 -*-
"""Exceptions raised by the multi-lab pipeline."""

from typing import Any, Dict, List, Optional


class MultiLabError(Exception):
    """Base exception for pipeline errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(MultiLabError, ValueError):
    """Bad configuration or unusable data, raised before any work starts."""


class ConvergenceError(MultiLabError, RuntimeError):
    """The variance-component optimizer did not stabilize within its budget."""

    def __init__(self, message: str, log_likelihood: float = float('nan'),
                 n_iter: int = 0, **kwargs):
        super().__init__(message, **kwargs)
        self.log_likelihood = log_likelihood
        self.n_iter = n_iter


class RankDeficiencyError(MultiLabError, ValueError):
    """The fixed-effects design matrix is not of full column rank."""

    def __init__(self, message: str, terms: Optional[List[str]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.terms = list(terms or [])


class InvalidComparisonError(MultiLabError, ValueError):
    """Two fitted models cannot be compared with a likelihood-ratio test."""
