# -*- coding: utf-8 -*-
"""
Linear Mixed Model Module

This module provides maximum-likelihood and restricted maximum-likelihood
fitting of linear mixed models with crossed or nested random effects.

The random effects are written b = Lambda(theta) u with u ~ N(0, sigma^2 I),
where Lambda is block diagonal with one lower-triangular relative covariance
factor per grouping factor. For fixed theta the fixed effects, the spherical
random effects and the residual variance have closed forms obtained from the
Cholesky factor of Lambda' Z' Z Lambda + I, so the deviance is optimized over
theta alone (Nelder-Mead). Standard errors of fixed effects come from the
Schur complement of that system and the prediction-error covariance of the
random effects from the inverse of the full Henderson system.

Example:
    >>> from multilab.mixed_model import fit
    >>> from multilab.model_spec import ModelSpec, RandomEffect
    >>>
    >>> spec = ModelSpec('mean_log_value', terms=('condition',),
    ...                  random=(RandomEffect('lab'), RandomEffect('subject')),
    ...                  method='ML')
    >>> model = fit(rows, spec)
    >>> model.summary_frame()
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np
import pandas as pd
from scipy import linalg, optimize, stats

from multilab import config
from multilab.design import ModelDesign, build_design
from multilab.errors import ConvergenceError, ValidationError
from multilab.model_spec import ModelSpec

# Configure logging
logger = logging.getLogger(__name__)


class _BudgetExhausted(Exception):
    """Raised inside the objective when the wall-clock budget runs out."""


class ProfiledDeviance:
    """
    Profiled deviance of a mixed model as a function of theta.

    Args:
        design (ModelDesign): Numeric model design
        reml (bool): Use the REML criterion instead of ML
    """

    def __init__(self, design: ModelDesign, reml: bool):
        self.design = design
        self.reml = reml
        self.n, self.p = design.X.shape

        X, y = design.X, design.y
        Z = design.Z
        self.Z = Z
        self.ZtZ = Z.T @ Z
        self.ZtX = Z.T @ X
        self.Zty = Z.T @ y
        self.XtX = X.T @ X
        self.Xty = X.T @ y
        self.yty = float(y @ y)
        self.q_total = Z.shape[1]

        self.theta0 = np.concatenate([
            (rows == cols).astype(float)
            for rows, cols in (block.theta_index for block in design.blocks)
        ])

    def relative_factors(self, theta: np.ndarray) -> List[np.ndarray]:
        """Per-block lower-triangular factors T_k."""
        factors = []
        start = 0
        for block in self.design.blocks:
            rows, cols = block.theta_index
            T = np.zeros((block.q, block.q))
            T[rows, cols] = theta[start:start + block.n_theta]
            factors.append(T)
            start += block.n_theta
        return factors

    def lambda_matrix(self, theta: np.ndarray) -> np.ndarray:
        return linalg.block_diag(*[
            np.kron(np.eye(block.n_levels), T)
            for block, T in zip(self.design.blocks, self.relative_factors(theta))
        ])

    def solve(self, theta: np.ndarray) -> Dict:
        """
        Conditional estimates for fixed theta.

        Returns:
            Dict with Lambda, L, Lx, cu, RZX, beta, r2 and the deviance
        """
        Lam = self.lambda_matrix(theta)
        A = Lam.T @ self.ZtZ @ Lam + np.eye(self.q_total)
        L = linalg.cholesky(A, lower=True)
        cu = linalg.solve_triangular(L, Lam.T @ self.Zty, lower=True)
        RZX = linalg.solve_triangular(L, Lam.T @ self.ZtX, lower=True)
        Lx = linalg.cholesky(self.XtX - RZX.T @ RZX, lower=True)
        cb = linalg.solve_triangular(Lx, self.Xty - RZX.T @ cu, lower=True)
        beta = linalg.solve_triangular(Lx.T, cb, lower=False)
        r2 = self.yty - cu @ cu - cb @ cb

        logdet_L = 2.0 * np.sum(np.log(np.diag(L)))
        if r2 <= 0:
            deviance = np.inf
        elif self.reml:
            dof = self.n - self.p
            logdet_X = 2.0 * np.sum(np.log(np.diag(Lx)))
            deviance = logdet_L + logdet_X + dof * (1.0 + np.log(2.0 * np.pi * r2 / dof))
        else:
            deviance = logdet_L + self.n * (1.0 + np.log(2.0 * np.pi * r2 / self.n))

        return {'Lambda': Lam, 'L': L, 'Lx': Lx, 'cu': cu, 'RZX': RZX,
                'beta': beta, 'r2': float(r2), 'deviance': float(deviance)}

    def __call__(self, theta: np.ndarray) -> float:
        try:
            return self.solve(theta)['deviance']
        except (linalg.LinAlgError, ValueError):
            return np.inf


@dataclass(frozen=True)
class FittedModel:
    """
    A fitted linear mixed model.

    Attributes:
        spec (ModelSpec): Specification that was fitted
        params (pd.Series): Fixed-effect estimates by coefficient name
        bse (pd.Series): Standard errors of the fixed effects
        cov_params (pd.DataFrame): Covariance matrix of the fixed effects
        tvalues (pd.Series): Wald z statistics
        pvalues (pd.Series): Two-sided normal p-values
        variance_components (Dict[str, pd.DataFrame]): Covariance matrix of
            the random terms for each grouping factor
        residual_variance (float): Residual variance sigma^2
        random_effects (Dict[str, pd.DataFrame]): Conditional modes (BLUPs),
            one row per level and one column per random term
        prediction_covariance (pd.DataFrame): Joint prediction-error
            covariance of the fixed effects and the BLUPs
        log_likelihood (float): Maximized (restricted) log-likelihood
        n_params (int): Fixed effects + covariance parameters + 1
        n_obs (int): Observations used
        n_groups (Dict[str, int]): Levels per grouping factor
        factor_levels (Dict[str, List]): Coding levels of categorical
            predictors (reference first)
        theta (np.ndarray): Relative covariance parameters at the optimum
        n_iter (int): Optimizer iterations
        fitted_values (np.ndarray): X beta + Z b
    """

    spec: ModelSpec
    params: pd.Series
    bse: pd.Series
    cov_params: pd.DataFrame
    tvalues: pd.Series
    pvalues: pd.Series
    variance_components: Dict[str, pd.DataFrame]
    residual_variance: float
    random_effects: Dict[str, pd.DataFrame]
    prediction_covariance: pd.DataFrame
    log_likelihood: float
    n_params: int
    n_obs: int
    n_groups: Dict[str, int]
    factor_levels: Dict[str, List]
    theta: np.ndarray
    n_iter: int
    fitted_values: np.ndarray = field(repr=False)

    @property
    def method(self) -> str:
        return self.spec.method

    @property
    def aic(self) -> float:
        return -2.0 * self.log_likelihood + 2.0 * self.n_params

    @property
    def bic(self) -> float:
        return -2.0 * self.log_likelihood + np.log(self.n_obs) * self.n_params

    def conf_int(self, alpha: float = config.ALPHA) -> pd.DataFrame:
        """Wald confidence intervals of the fixed effects."""
        z = stats.norm.ppf(1.0 - alpha / 2.0)
        return pd.DataFrame({
            0: self.params - z * self.bse,
            1: self.params + z * self.bse,
        })

    def summary_frame(self, alpha: float = config.ALPHA) -> pd.DataFrame:
        """
        Fixed-effects table.

        Returns:
            pd.DataFrame: Columns effect, beta, se, z_value, p_value,
                ci_lower, ci_upper
        """
        ci = self.conf_int(alpha)
        return pd.DataFrame({
            'effect': self.params.index,
            'beta': self.params.values,
            'se': self.bse.values,
            'z_value': self.tvalues.values,
            'p_value': self.pvalues.values,
            'ci_lower': ci[0].values,
            'ci_upper': ci[1].values,
        })

    def variance_summary(self) -> pd.DataFrame:
        """Variances, standard deviations and correlations of random terms."""
        rows = []
        for group, cov in self.variance_components.items():
            sd = np.sqrt(np.diag(cov.values))
            for i, term in enumerate(cov.index):
                row = {'group': group, 'term': term,
                       'variance': float(cov.values[i, i]), 'std_dev': float(sd[i])}
                for j in range(i):
                    denom = sd[i] * sd[j]
                    row[f"corr_{cov.index[j]}"] = float(cov.values[i, j] / denom) if denom > 0 else np.nan
                rows.append(row)
        rows.append({'group': 'Residual', 'term': '',
                     'variance': self.residual_variance,
                     'std_dev': float(np.sqrt(self.residual_variance))})
        return pd.DataFrame(rows)

    def to_dict(self) -> Dict:
        return {
            'formula': self.spec.describe(),
            'method': self.method,
            'n_obs': self.n_obs,
            'n_groups': dict(self.n_groups),
            'log_likelihood': self.log_likelihood,
            'aic': self.aic,
            'bic': self.bic,
            'n_params': self.n_params,
            'n_iter': self.n_iter,
            'params': self.params.to_dict(),
            'bse': self.bse.to_dict(),
            'residual_variance': self.residual_variance,
            'variance_components': {
                group: cov.values.tolist() for group, cov in self.variance_components.items()
            },
        }


def _canonical_theta(theta: np.ndarray, objective: ProfiledDeviance) -> np.ndarray:
    """Flip factor columns so every diagonal element is non-negative."""
    out = []
    for block, T in zip(objective.design.blocks, objective.relative_factors(theta)):
        signs = np.where(np.diag(T) < 0, -1.0, 1.0)
        T = T * signs[np.newaxis, :]
        rows, cols = block.theta_index
        out.append(T[rows, cols])
    return np.concatenate(out)


def _assemble(spec: ModelSpec, design: ModelDesign, objective: ProfiledDeviance,
              theta: np.ndarray, n_iter: int) -> FittedModel:
    sol = objective.solve(theta)
    n, p = objective.n, objective.p
    reml = spec.method == 'REML'
    sigma2 = sol['r2'] / (n - p if reml else n)

    names = design.fixed_names
    beta = sol['beta']
    Lx = sol['Lx']
    cov_beta = sigma2 * linalg.cho_solve((Lx, True), np.eye(p))
    se = np.sqrt(np.diag(cov_beta))
    z = beta / se
    pvalues = 2.0 * stats.norm.sf(np.abs(z))

    # Spherical modes and BLUPs
    Lam = sol['Lambda']
    u = linalg.solve_triangular(sol['L'].T, sol['cu'] - sol['RZX'] @ beta, lower=False)
    b = Lam @ u

    # Prediction-error covariance from the Henderson system in (beta, u)
    ZL = objective.Z @ Lam
    C = np.block([
        [objective.XtX, design.X.T @ ZL],
        [ZL.T @ design.X, ZL.T @ ZL + np.eye(objective.q_total)],
    ])
    C_inv = linalg.cho_solve(linalg.cho_factor(C, lower=True), np.eye(p + objective.q_total))
    transform = linalg.block_diag(np.eye(p), Lam)
    joint = sigma2 * transform @ C_inv @ transform.T

    random_labels = []
    random_effects = {}
    variance_components = {}
    start = 0
    for block, T in zip(design.blocks, objective.relative_factors(theta)):
        width = block.n_levels * block.q
        random_effects[block.group] = pd.DataFrame(
            b[start:start + width].reshape(block.n_levels, block.q),
            index=pd.Index(block.levels, name=block.group),
            columns=block.term_names,
        )
        variance_components[block.group] = pd.DataFrame(
            sigma2 * T @ T.T, index=block.term_names, columns=block.term_names,
        )
        random_labels.extend(block.labels())
        start += width

    labels = list(names) + random_labels
    log_likelihood = -0.5 * sol['deviance']

    return FittedModel(
        spec=spec,
        params=pd.Series(beta, index=names),
        bse=pd.Series(se, index=names),
        cov_params=pd.DataFrame(cov_beta, index=names, columns=names),
        tvalues=pd.Series(z, index=names),
        pvalues=pd.Series(pvalues, index=names),
        variance_components=variance_components,
        residual_variance=float(sigma2),
        random_effects=random_effects,
        prediction_covariance=pd.DataFrame(joint, index=labels, columns=labels),
        log_likelihood=float(log_likelihood),
        n_params=p + len(theta) + 1,
        n_obs=n,
        n_groups={block.group: block.n_levels for block in design.blocks},
        factor_levels=dict(design.factor_levels),
        theta=theta,
        n_iter=n_iter,
        fitted_values=design.X @ beta + objective.Z @ b,
    )


def fit(data: pd.DataFrame, spec: ModelSpec,
        max_iter: int = config.LME_MAX_ITERATIONS,
        tol: float = config.LME_TOLERANCE,
        time_budget: Optional[float] = config.LME_TIME_BUDGET_SEC,
        theta_tol: float = config.LME_THETA_TOLERANCE) -> FittedModel:
    """
    Fit a linear mixed model.

    Args:
        data (pd.DataFrame): Model data
        spec (ModelSpec): Model specification (method selects ML or REML)
        max_iter (int): Maximum optimizer iterations
        tol (float): Relative tolerance on the deviance between iterations
        time_budget (Optional[float]): Wall-clock budget in seconds
        theta_tol (float): Absolute tolerance on the covariance parameters

    Returns:
        FittedModel

    Raises:
        ValidationError: If the data cannot support the model
        RankDeficiencyError: If the fixed effects are not estimable
        ConvergenceError: If the optimizer does not converge within the
            iteration or time budget
    """
    if max_iter < 1:
        raise ValidationError(f"max_iter must be >= 1, got {max_iter}")

    design = build_design(data, spec)
    objective = ProfiledDeviance(design, reml=spec.method == 'REML')
    logger.info(f"Fitting {spec.describe()} [{spec.method}] on {design.n_obs} observations")

    theta0 = objective.theta0
    f0 = objective(theta0)
    if not np.isfinite(f0):
        raise ConvergenceError("Deviance is not finite at the starting values",
                               n_iter=0)

    started = time.monotonic()
    state = {'best': f0, 'n_eval': 0}

    def deviance(theta):
        if time_budget is not None and time.monotonic() - started >= time_budget:
            raise _BudgetExhausted()
        value = objective(theta)
        state['n_eval'] += 1
        if value < state['best']:
            state['best'] = value
        return value

    options = {
        'maxiter': max_iter,
        'maxfev': max_iter * (len(theta0) + 2),
        'xatol': theta_tol,
        'fatol': tol * max(1.0, abs(f0)),
    }

    try:
        result = optimize.minimize(deviance, theta0, method='Nelder-Mead', options=options)
    except _BudgetExhausted:
        raise ConvergenceError(
            f"Time budget of {time_budget}s exhausted after {state['n_eval']} evaluations",
            log_likelihood=-0.5 * state['best'],
            n_iter=state['n_eval'],
        )

    if not result.success:
        raise ConvergenceError(
            f"Optimizer did not converge after {result.nit} iterations: {result.message}",
            log_likelihood=-0.5 * state['best'],
            n_iter=int(result.nit),
        )

    theta = _canonical_theta(result.x, objective)
    model = _assemble(spec, design, objective, theta, int(result.nit))
    logger.info(f"  Converged in {model.n_iter} iterations: "
                f"logLik={model.log_likelihood:.4f}, AIC={model.aic:.2f}")
    return model
