# -*- coding: utf-8 -*-
"""
Model Comparison and Contrast Module

This module provides likelihood-ratio tests between nested mixed models and
per-group effect trends: the slope of a predictor within each level of a
grouping factor, either a random-effect group (fixed slope plus the level's
BLUP deviation) or a fixed categorical moderator (fixed slope plus the
moderator interaction).
"""

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import stats

# Statistical packages
try:
    from statsmodels.stats.multitest import multipletests
except ImportError:
    raise ImportError("statsmodels is required. Install with: pip install statsmodels")

from multilab import config
from multilab.errors import InvalidComparisonError, MultiLabError, ValidationError
from multilab.mixed_model import FittedModel

# Configure logging
logger = logging.getLogger(__name__)

# Relative size of a negative LRT statistic still attributed to optimizer noise
LRT_NEGATIVE_TOLERANCE = 1e-6


@dataclass(frozen=True)
class LikelihoodRatioTest:
    """Result of a nested-model likelihood-ratio test."""

    statistic: float
    df: int
    p_value: float
    log_likelihood_small: float
    log_likelihood_large: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            'statistic': self.statistic,
            'df': self.df,
            'p_value': self.p_value,
            'llf_small': self.log_likelihood_small,
            'llf_large': self.log_likelihood_large,
        }


@dataclass(frozen=True)
class GroupTrend:
    """Slope of a predictor within one level of a grouping factor."""

    slope: float
    standard_error: float
    statistic: float
    p_value: float

    @property
    def ci_lower(self) -> float:
        return self.slope - config.Z_CRITICAL * self.standard_error

    @property
    def ci_upper(self) -> float:
        return self.slope + config.Z_CRITICAL * self.standard_error


def compare_nested(small: FittedModel, large: FittedModel) -> LikelihoodRatioTest:
    """
    Likelihood-ratio test of ``small`` against the ``large`` model containing it.

    Args:
        small (FittedModel): Restricted model
        large (FittedModel): Model that structurally contains ``small``

    Returns:
        LikelihoodRatioTest: statistic 2 * (llf_large - llf_small), df as the
            difference in parameter counts, chi-square p-value

    Raises:
        InvalidComparisonError: If the models are not comparable
    """
    s, l = small.spec, large.spec

    if s.response != l.response:
        raise InvalidComparisonError(
            f"Models have different responses: {s.response!r} vs {l.response!r}")
    if small.n_obs != large.n_obs:
        raise InvalidComparisonError(
            f"Models were fitted to different data: {small.n_obs} vs {large.n_obs} observations")
    if s.method != l.method:
        raise InvalidComparisonError(
            f"Models use different estimation methods: {s.method} vs {l.method}")
    if not l.contains(s):
        raise InvalidComparisonError(
            f"{l.describe()} does not contain {s.describe()}; check the argument order")
    if s.same_structure(l):
        raise InvalidComparisonError(f"Models are structurally identical: {s.describe()}")
    if s.fixed_terms != l.fixed_terms or s.intercept != l.intercept:
        if s.method == 'REML':
            raise InvalidComparisonError(
                "REML likelihoods are not comparable across different fixed effects; refit with ML")

    df = large.n_params - small.n_params
    if df <= 0:
        raise InvalidComparisonError(
            f"Larger model has no extra parameters (df = {df})")

    statistic = 2.0 * (large.log_likelihood - small.log_likelihood)
    if statistic < 0:
        if statistic < -LRT_NEGATIVE_TOLERANCE * max(1.0, abs(large.log_likelihood)):
            logger.warning(f"LRT statistic {statistic:.3g} is negative; the larger model "
                           f"may not have reached its optimum. Clipping to 0")
        else:
            logger.warning(f"LRT statistic {statistic:.3g} clipped to 0")
        statistic = 0.0

    p_value = float(stats.chi2.sf(statistic, df))
    logger.info(f"LRT {s.describe()} vs {l.describe()}: "
                f"chi2({df}) = {statistic:.3f}, p = {p_value:.4g}")

    return LikelihoodRatioTest(
        statistic=float(statistic),
        df=int(df),
        p_value=p_value,
        log_likelihood_small=small.log_likelihood,
        log_likelihood_large=large.log_likelihood,
    )


def resolve_coefficient(model: FittedModel, predictor: str) -> str:
    """
    Map a predictor to its fixed-effect coefficient name.

    Accepts the coefficient name itself ('condition[T.A]') or the variable
    name when it maps to exactly one main-effect coefficient ('condition').
    """
    names = list(model.params.index)
    if predictor in names:
        return predictor
    candidates = [name for name in names
                  if ':' not in name and name.split('[')[0] == predictor]
    if len(candidates) == 1:
        return candidates[0]
    if not candidates:
        raise ValidationError(f"Predictor {predictor!r} is not a fixed effect of "
                              f"{model.spec.describe()}")
    raise ValidationError(f"Predictor {predictor!r} is ambiguous: {candidates}")


def _trend(slope: float, variance: float) -> GroupTrend:
    se = float(np.sqrt(max(variance, 0.0)))
    statistic = slope / se if se > 0 else np.nan
    p_value = float(2.0 * stats.norm.sf(abs(statistic))) if np.isfinite(statistic) else np.nan
    return GroupTrend(slope=float(slope), standard_error=se,
                      statistic=float(statistic), p_value=p_value)


def _random_group_trends(model: FittedModel, group: str, coef: str) -> Dict[Any, GroupTrend]:
    blups = model.random_effects[group]
    cov = model.prediction_covariance
    beta = model.params[coef]
    var_beta = cov.loc[coef, coef]

    has_slope = coef in blups.columns
    if not has_slope:
        logger.warning(f"{coef!r} has no random slope for {group!r}; "
                       f"every level gets the fixed slope")

    trends = {}
    for level in blups.index:
        if not has_slope:
            trends[level] = _trend(beta, var_beta)
            continue
        label = f"{group}[{level}]:{coef}"
        slope = beta + blups.loc[level, coef]
        variance = var_beta + cov.loc[label, label] + 2.0 * cov.loc[coef, label]
        trends[level] = _trend(slope, variance)
    return trends


def _moderator_trends(model: FittedModel, factor: str, coef: str) -> Dict[Any, GroupTrend]:
    levels = model.factor_levels[factor]
    vcov = model.cov_params
    beta = model.params[coef]

    trends = {levels[0]: _trend(beta, vcov.loc[coef, coef])}
    for level in levels[1:]:
        dummy = f"{factor}[T.{level}]"
        interaction = next((name for name in (f"{coef}:{dummy}", f"{dummy}:{coef}")
                            if name in model.params.index), None)
        if interaction is None:
            raise ValidationError(f"{model.spec.describe()} has no {coef} x {factor} "
                                  f"interaction; the slope cannot vary by {factor}")
        slope = beta + model.params[interaction]
        variance = (vcov.loc[coef, coef] + vcov.loc[interaction, interaction]
                    + 2.0 * vcov.loc[coef, interaction])
        trends[level] = _trend(slope, variance)
    return trends


def group_trends(model: FittedModel, grouping_factor: str, predictor: str) -> Dict[Any, GroupTrend]:
    """
    Slope of ``predictor`` within each level of ``grouping_factor``.

    Args:
        model (FittedModel): Fitted model
        grouping_factor (str): A random-effect grouping factor (slopes use
            BLUPs) or a categorical fixed moderator (slopes use interactions)
        predictor (str): Variable or coefficient name

    Returns:
        Dict[Any, GroupTrend]: One trend per level, in level order

    Raises:
        ValidationError: If the predictor or grouping factor is not in the model
    """
    coef = resolve_coefficient(model, predictor)

    if grouping_factor in model.random_effects:
        return _random_group_trends(model, grouping_factor, coef)
    if grouping_factor in model.factor_levels:
        if coef.split('[')[0] == grouping_factor:
            raise ValidationError(f"Predictor {predictor!r} is the grouping factor itself")
        return _moderator_trends(model, grouping_factor, coef)
    raise ValidationError(f"{grouping_factor!r} is neither a grouping factor nor a "
                          f"categorical predictor of {model.spec.describe()}")


class TrendContrastAnalyzer:
    """
    Computes per-group trends for several fitted models.

    Each request names a model, a grouping factor and a predictor. Trends
    of one request form one family for Benjamini-Hochberg FDR correction.

    Attributes:
        models (Dict[str, FittedModel]): Fitted models by name
        trends (pd.DataFrame): Computed trends

    Example:
        >>> from multilab.contrast_analyzer import TrendContrastAnalyzer
        >>>
        >>> # Assuming you have fitted models from HypothesisLMEAnalyzer
        >>> analyzer = TrendContrastAnalyzer(lme_analyzer.models)
        >>> trends = analyzer.compute_all_trends([
        ...     ('condition_x_method', 'method', 'condition'),
        ...     ('condition_random_slope', 'lab', 'condition'),
        ... ])
        >>> analyzer.export_trends('results/multilab')
    """

    def __init__(self, models: Dict[str, FittedModel]):
        """
        Initialize trend analyzer.

        Args:
            models (Dict[str, FittedModel]): Fitted models {name: model}
        """
        self.models = models
        self.trends = None

        logger.info(f"Initialized TrendContrastAnalyzer with {len(models)} models")

    def compute_trend(self, model_name: str, grouping_factor: str,
                      predictor: str) -> List[Dict[str, Any]]:
        """
        Compute trends for one request.

        Returns:
            List[Dict]: One record per level; a single record with NaN
                estimates and the error message if the request fails
        """
        base = {'model': model_name, 'grouping_factor': grouping_factor, 'predictor': predictor}
        try:
            if model_name not in self.models:
                raise ValidationError(f"Unknown model {model_name!r}")
            trends = group_trends(self.models[model_name], grouping_factor, predictor)
        except MultiLabError as e:
            logger.error(f"Error computing {predictor} trends by {grouping_factor} "
                         f"for {model_name}: {e}")
            return [dict(base, level=None, estimate=np.nan, se=np.nan, z_value=np.nan,
                         ci_lower=np.nan, ci_upper=np.nan, p_value=np.nan, error=str(e))]

        return [
            dict(base, level=level, estimate=t.slope, se=t.standard_error,
                 z_value=t.statistic, ci_lower=t.ci_lower, ci_upper=t.ci_upper,
                 p_value=t.p_value, error=None)
            for level, t in trends.items()
        ]

    def compute_all_trends(self, requests: Sequence[Tuple[str, str, str]]) -> pd.DataFrame:
        """
        Compute trends for every request.

        Args:
            requests (Sequence[Tuple[str, str, str]]): (model_name,
                grouping_factor, predictor) triples

        Returns:
            pd.DataFrame: Columns model, grouping_factor, predictor, level,
                estimate, se, z_value, ci_lower, ci_upper, p_value, error,
                p_fdr, significant
        """
        logger.info(f"Computing trends for {len(requests)} requests...")

        records = []
        for model_name, grouping_factor, predictor in requests:
            records.extend(self.compute_trend(model_name, grouping_factor, predictor))

        self.trends = pd.DataFrame(records, columns=[
            'model', 'grouping_factor', 'predictor', 'level', 'estimate', 'se',
            'z_value', 'ci_lower', 'ci_upper', 'p_value', 'error',
        ])
        self._apply_fdr_correction()

        logger.info(f"Computed {len(self.trends)} trends")
        return self.trends

    def _apply_fdr_correction(self):
        """
        Apply Benjamini-Hochberg FDR correction.

        Correction is applied separately for each request; failed requests
        keep NaN.
        """
        self.trends['p_fdr'] = np.nan
        self.trends['significant'] = False
        if self.trends.empty:
            return

        families = self.trends.groupby(['model', 'grouping_factor', 'predictor'], sort=False)
        for (model_name, grouping_factor, predictor), family in families:
            valid = family['p_value'].notna()
            if not valid.any():
                continue
            index = family.index[valid]
            _, p_fdr, _, _ = multipletests(
                family.loc[index, 'p_value'].values,
                alpha=config.ALPHA,
                method='fdr_bh'
            )
            self.trends.loc[index, 'p_fdr'] = p_fdr
            self.trends.loc[index, 'significant'] = p_fdr < config.ALPHA

            n_sig = int((p_fdr < config.ALPHA).sum())
            logger.info(f"  {model_name} {predictor} by {grouping_factor}: "
                        f"{n_sig}/{len(p_fdr)} significant after FDR correction")

    def export_trends(self, output_dir: str, filename: str = 'group_trends.csv') -> str:
        """
        Export trends to CSV.

        Args:
            output_dir (str): Output directory path
            filename (str): Output filename (default: 'group_trends.csv')

        Returns:
            str: Path to exported file
        """
        if self.trends is None:
            raise ValueError("No trends to export. Run compute_all_trends() first.")

        os.makedirs(output_dir, exist_ok=True)
        output_path = os.path.join(output_dir, filename)
        self.trends.to_csv(output_path, index=False)

        logger.info(f"Exported trends to: {output_path}")
        return output_path

    def get_summary(self) -> pd.DataFrame:
        """
        Get summary of significant trends.

        Returns:
            pd.DataFrame: Columns model, grouping_factor, predictor,
                n_levels, n_significant
        """
        if self.trends is None:
            raise ValueError("No trends available. Run compute_all_trends() first.")

        return (
            self.trends.groupby(['model', 'grouping_factor', 'predictor'], sort=False)
            .agg(n_levels=('level', 'count'), n_significant=('significant', 'sum'))
            .reset_index()
        )
