# -*- coding: utf-8 -*-
"""
Design Matrix Module

This module turns a ModelSpec and a data frame into numeric matrices:
the fixed-effects matrix X with named columns, the response vector and one
random-effects block per grouping factor.

Coding rules:
    - Numeric columns enter as-is; 'x^k' enters as x ** k
    - Categorical, object and boolean columns use treatment coding against
      their first level (first category of a pd.Categorical, otherwise the
      first sorted level); columns are named 'factor[T.level]'
    - Interactions are products of their factors' columns, named 'a:b'
    - Without an intercept, the first categorical main effect is coded with
      one column per level
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

import numpy as np
import pandas as pd

from multilab.errors import RankDeficiencyError, ValidationError
from multilab.model_spec import INTERCEPT, ModelSpec, factor_variable, parse_term

# Configure logging
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RandomBlock:
    """
    Random-effects design for one grouping factor.

    Attributes:
        group (str): Grouping column
        levels (List): Level labels, in column order
        term_names (List[str]): Per-level column names (e.g. 'Intercept')
        correlated (bool): Full or diagonal relative covariance factor
        Z (np.ndarray): n x (n_levels * q) matrix; column j * q + t holds
            term t for level j
    """

    group: str
    levels: List
    term_names: List[str]
    correlated: bool
    Z: np.ndarray

    @property
    def q(self) -> int:
        return len(self.term_names)

    @property
    def n_levels(self) -> int:
        return len(self.levels)

    @property
    def theta_index(self) -> Tuple[np.ndarray, np.ndarray]:
        """Positions of the free elements of the lower-triangular factor."""
        if self.correlated:
            return np.tril_indices(self.q)
        diag = np.arange(self.q)
        return diag, diag

    @property
    def n_theta(self) -> int:
        return len(self.theta_index[0])

    def labels(self) -> List[str]:
        """Names of the random-effect coefficients, e.g. 'lab[lab01]:Intercept'."""
        return [f"{self.group}[{level}]:{term}"
                for level in self.levels for term in self.term_names]


@dataclass(frozen=True)
class ModelDesign:
    """Numeric form of a model on one data set."""

    y: np.ndarray
    X: np.ndarray
    fixed_names: List[str]
    blocks: Tuple[RandomBlock, ...]
    factor_levels: Dict[str, List]

    @property
    def n_obs(self) -> int:
        return len(self.y)

    @property
    def n_fixed(self) -> int:
        return self.X.shape[1]

    @property
    def Z(self) -> np.ndarray:
        return np.hstack([block.Z for block in self.blocks])


def is_categorical(series: pd.Series) -> bool:
    return not pd.api.types.is_numeric_dtype(series) or pd.api.types.is_bool_dtype(series)


def factor_levels(series: pd.Series) -> List:
    """Levels in coding order; the first is the reference."""
    if isinstance(series.dtype, pd.CategoricalDtype):
        present = set(series.dropna().unique())
        return [level for level in series.cat.categories if level in present]
    return sorted(series.dropna().unique().tolist())


def _factor_columns(data: pd.DataFrame, factor: str, levels: Dict[str, List],
                    full_rank: bool) -> List[Tuple[str, np.ndarray]]:
    variable = factor_variable(factor)
    series = data[variable]

    if is_categorical(series):
        if '^' in factor:
            raise ValidationError(f"Power term {factor!r} needs a numeric column")
        lvls = levels.setdefault(variable, factor_levels(series))
        coded = lvls if full_rank else lvls[1:]
        values = series.to_numpy()
        return [(f"{variable}[{'' if full_rank else 'T.'}{level}]",
                 (values == level).astype(float))
                for level in coded]

    values = series.to_numpy(dtype=float)
    if '^' in factor:
        power = int(factor.partition('^')[2])
        return [(factor, values ** power)]
    return [(factor, values)]


def expand_terms(data: pd.DataFrame, terms: Sequence[str], intercept: bool,
                 levels: Dict[str, List]) -> Tuple[List[str], np.ndarray]:
    """
    Build named columns for a list of terms.

    Args:
        data (pd.DataFrame): Model data
        terms (Sequence[str]): Terms; 'Intercept' adds a column of ones
        intercept (bool): Whether an intercept is present (controls the
            coding of the first categorical main effect)
        levels (Dict[str, List]): Level cache, filled in place

    Returns:
        Tuple[List[str], np.ndarray]: Column names and the n x k matrix
    """
    n = len(data)
    names = []
    columns = []
    full_rank_used = intercept

    for term in terms:
        if term == INTERCEPT:
            names.append(INTERCEPT)
            columns.append(np.ones(n))
            continue

        factors = parse_term(term)
        full_rank = False
        if not full_rank_used and len(factors) == 1 and is_categorical(data[factor_variable(factors[0])]):
            full_rank = True
            full_rank_used = True

        combined = [('', np.ones(n))]
        for factor in factors:
            expanded = _factor_columns(data, factor, levels, full_rank)
            combined = [
                (f"{name}:{sub}" if name else sub, values * sub_values)
                for name, values in combined
                for sub, sub_values in expanded
            ]
        for name, values in combined:
            names.append(name)
            columns.append(values)

    matrix = np.column_stack(columns) if columns else np.empty((n, 0))
    return names, matrix


def dependent_columns(X: np.ndarray, names: Sequence[str]) -> List[str]:
    """
    Columns that are linear combinations of earlier columns.

    Args:
        X (np.ndarray): Design matrix
        names (Sequence[str]): Column names

    Returns:
        List[str]: Names of redundant columns, in column order
    """
    redundant = []
    basis = np.empty((X.shape[0], 0))
    rank = 0
    scale = np.abs(X).max(axis=0) if X.size else np.ones(X.shape[1])
    for j, name in enumerate(names):
        column = X[:, j] / (scale[j] if scale[j] > 0 else 1.0)
        candidate = np.column_stack([basis, column])
        new_rank = np.linalg.matrix_rank(candidate)
        if new_rank > rank:
            basis, rank = candidate, new_rank
        else:
            redundant.append(name)
    return redundant


def build_design(data: pd.DataFrame, spec: ModelSpec) -> ModelDesign:
    """
    Build the numeric design of ``spec`` on ``data``.

    Args:
        data (pd.DataFrame): Model data
        spec (ModelSpec): Model specification

    Returns:
        ModelDesign

    Raises:
        ValidationError: On empty data, missing columns, missing values in
            used columns, a non-numeric response, or fewer observations than
            fixed effects
        RankDeficiencyError: If fixed-effect columns are linearly dependent
    """
    if data is None or data.empty:
        raise ValidationError("no data: cannot fit a model to an empty table")

    used = sorted(spec.variables())
    missing = [col for col in used if col not in data.columns]
    if missing:
        raise ValidationError(f"Data is missing model columns: {missing}",
                              details={'missing': missing})

    with_na = [col for col in used if data[col].isna().any()]
    if with_na:
        raise ValidationError(f"Missing values in model columns: {with_na}",
                              details={'columns': with_na})

    if is_categorical(data[spec.response]):
        raise ValidationError(f"Response {spec.response!r} must be numeric")

    levels = {}
    fixed = ([INTERCEPT] if spec.intercept else []) + list(spec.terms)
    fixed_names, X = expand_terms(data, fixed, spec.intercept, levels)
    y = data[spec.response].to_numpy(dtype=float)

    n, p = X.shape
    if n <= p:
        raise ValidationError(f"{n} observations cannot support {p} fixed effects")

    redundant = dependent_columns(X, fixed_names)
    if redundant:
        raise RankDeficiencyError(
            f"Fixed effects are rank deficient; not estimable: {redundant}",
            terms=redundant,
        )

    blocks = []
    for effect in spec.random:
        term_names, T = expand_terms(data, effect.terms, effect.has_intercept, levels)
        group_levels = factor_levels(data[effect.group])
        codes = pd.Categorical(data[effect.group], categories=group_levels).codes
        q = len(term_names)
        Z = np.zeros((n, len(group_levels) * q))
        rows = np.arange(n)
        for t in range(q):
            Z[rows, codes * q + t] = T[:, t]
        if len(group_levels) < 2:
            logger.warning(f"Grouping factor {effect.group!r} has a single level; "
                           f"its variance is not identifiable")
        blocks.append(RandomBlock(
            group=effect.group,
            levels=group_levels,
            term_names=term_names,
            correlated=effect.correlated,
            Z=Z,
        ))

    logger.debug(f"Design for {spec.describe()}: n={n}, p={p}, "
                 f"random blocks={[(b.group, b.n_levels, b.q) for b in blocks]}")

    return ModelDesign(y=y, X=X, fixed_names=fixed_names, blocks=tuple(blocks),
                       factor_levels=levels)
