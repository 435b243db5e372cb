# -*- coding: utf-8 -*-
"""
Hypothesis LME Analysis Module

This module fits the preregistered sequence of nested linear mixed models to
subject-level looking times and tests each hypothesis with a likelihood-ratio
test: the primary condition preference, its change with age (linear and
quadratic), and its moderation by method, session, language and
bilingualism.
"""

import logging
import os
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

# Statistical packages
try:
    from statsmodels.stats.multitest import multipletests
except ImportError:
    raise ImportError("statsmodels is required. Install with: pip install statsmodels")

from multilab import config
from multilab.contrast_analyzer import compare_nested
from multilab.errors import MultiLabError, ValidationError
from multilab.mixed_model import FittedModel, fit
from multilab.model_spec import ModelSpec, RandomEffect

# Configure logging
logger = logging.getLogger(__name__)

PRIMARY_HYPOTHESIS = 'condition'


def _fit_spec(data: pd.DataFrame, spec: ModelSpec, options: Dict[str, Any]):
    """Fit one specification; errors come back as values so workers never raise."""
    try:
        return fit(data, spec, **options), None
    except MultiLabError as e:
        return None, f"{type(e).__name__}: {e}"


class HypothesisLMEAnalyzer:
    """
    Fits and compares the nested models of the preregistered hypotheses.

    Every hypothesis is a pair (small, large) of specifications on the same
    data; the large model adds the terms under test. Models shared between
    hypotheses are fitted once.

    Hypotheses:
        condition:          1                  vs  1 + condition
        age:                1 + condition      vs  + age_c + condition:age_c
        age_quadratic:      linear age model   vs  + age_c^2 + condition:age_c^2
        condition_x_<mod>:  1 + condition      vs  + <mod> + condition:<mod>

    All models share the random structure (1 | lab) + (1 | subject) unless
    ``random`` is given, and are fitted with ML so that models with
    different fixed effects are comparable.

    Attributes:
        data (pd.DataFrame): Prepared subject x condition rows
        hypotheses (Dict[str, Tuple[ModelSpec, ModelSpec]]): Nested pairs
        models (Dict[str, FittedModel]): Fitted models by name
        comparisons (pd.DataFrame): One LRT row per hypothesis
        results (pd.DataFrame): Fixed-effect tables of all fitted models

    Example:
        >>> from multilab.lme_analyzer import HypothesisLMEAnalyzer
        >>>
        >>> analyzer = HypothesisLMEAnalyzer(aggregated.rows, n_jobs=4)
        >>> comparisons = analyzer.fit_all_hypotheses()
        >>> analyzer.export_results('results/multilab')
    """

    def __init__(self, data: pd.DataFrame, response: str = 'mean_log_value',
                 random: Optional[Sequence[RandomEffect]] = None,
                 method: str = config.LME_METHOD,
                 moderators: Optional[List[str]] = None,
                 n_jobs: int = 1,
                 fit_options: Optional[Dict[str, Any]] = None):
        """
        Initialize hypothesis analyzer.

        Args:
            data (pd.DataFrame): Subject x condition rows (AggregatedData.rows)
                or cleaned trials
            response (str): Response column
            random (Optional[Sequence[RandomEffect]]): Random structure
                (default: random intercepts for lab and subject)
            method (str): 'ML' (default) or 'REML'
            moderators (Optional[List[str]]): Moderators to test
                (default: config.MODERATORS)
            n_jobs (int): Parallel fits (joblib)
            fit_options (Optional[Dict[str, Any]]): Passed to fit()
                (max_iter, tol, time_budget)
        """
        self.data_raw = data
        self.response = response
        self.random = tuple(random) if random is not None else (
            RandomEffect('lab'), RandomEffect('subject'))
        self.method = method
        self.moderators = list(moderators if moderators is not None else config.MODERATORS)
        self.n_jobs = n_jobs
        self.fit_options = dict(fit_options or {})

        self.data = self._prepare_data()
        self.skipped = {}
        self.hypotheses = self.define_hypotheses()

        self.models = {}
        self.failures = {}
        self.comparisons = None
        self.results = None

        logger.info(f"Initialized HypothesisLMEAnalyzer with {len(self.hypotheses)} hypotheses "
                    f"on {len(self.data)} rows")

    def _prepare_data(self) -> pd.DataFrame:
        """
        Prepare data for LME analysis.

        Returns:
            pd.DataFrame: Copy of the data with:
                - Centered age (age_c)
                - Categorical variables with reference levels set
        """
        if self.data_raw is None or self.data_raw.empty:
            raise ValidationError("no data: nothing to model")

        logger.info("Preparing data for LME analysis...")
        data = self.data_raw.copy()

        if 'age' in data.columns:
            data['age_c'] = data['age'] - data['age'].mean()
            logger.info(f"  Centered age: mean age = {data['age'].mean():.3f}")

        for column, categories in config.CATEGORICAL_LEVELS.items():
            if column not in data.columns:
                continue
            values = data[column].astype(str)
            known = [c for c in categories if c in set(values)]
            extra = sorted(set(values) - set(known))
            data[column] = pd.Categorical(values, categories=known + extra)

        if 'bilingual' in data.columns:
            data['bilingual'] = data['bilingual'].astype(bool)

        logger.info(f"  Reference levels: condition='{config.REFERENCE_CONDITION}', "
                    f"method='{config.METHODS[0]}', session='{config.SESSIONS[0]}', "
                    f"language='{config.LANGUAGES[0]}'")
        return data

    def _spec(self, terms: Sequence[str] = ()) -> ModelSpec:
        return ModelSpec(response=self.response, terms=tuple(terms),
                         random=self.random, method=self.method)

    def define_hypotheses(self) -> Dict[str, Tuple[ModelSpec, ModelSpec]]:
        """
        Build the nested specification pairs.

        Moderators with fewer than two observed levels are skipped (recorded
        in ``skipped``) because their terms cannot be estimated.

        Returns:
            Dict[str, Tuple[ModelSpec, ModelSpec]]: {name: (small, large)}
        """
        null = self._spec()
        primary = self._spec(['condition'])
        hypotheses = {PRIMARY_HYPOTHESIS: (null, primary)}

        if 'age_c' in self.data.columns:
            linear = primary.with_terms('age_c', 'condition:age_c')
            quadratic = linear.with_terms('age_c^2', 'condition:age_c^2')
            hypotheses['age'] = (primary, linear)
            hypotheses['age_quadratic'] = (linear, quadratic)

        for moderator in self.moderators:
            name = f"condition_x_{moderator}"
            if moderator not in self.data.columns:
                self.skipped[name] = f"column {moderator!r} not in data"
            elif self.data[moderator].nunique() < 2:
                self.skipped[name] = f"{moderator!r} has a single level"
            else:
                hypotheses[name] = (primary, primary.with_terms(moderator, f"condition:{moderator}"))
                continue
            logger.warning(f"  Skipping {name}: {self.skipped[name]}")

        return hypotheses

    @staticmethod
    def model_name(spec: ModelSpec) -> str:
        return spec.describe()

    def fit_models(self) -> Dict[str, FittedModel]:
        """
        Fit every distinct specification used by the hypotheses.

        Returns:
            Dict[str, FittedModel]: Successfully fitted models by name;
                failures are stored in ``failures``
        """
        specs = {}
        for small, large in self.hypotheses.values():
            specs.setdefault(self.model_name(small), small)
            specs.setdefault(self.model_name(large), large)

        logger.info(f"Fitting {len(specs)} distinct models (n_jobs={self.n_jobs})...")
        outcomes = Parallel(n_jobs=self.n_jobs)(
            delayed(_fit_spec)(self.data, spec, self.fit_options) for spec in specs.values()
        )

        for name, (model, error) in zip(specs, outcomes):
            if model is not None:
                self.models[name] = model
                logger.info(f"    ✓ {name}: logLik={model.log_likelihood:.3f}")
            else:
                self.failures[name] = error
                logger.error(f"    ✗ {name}: {error}")

        return self.models

    def fit_random_slope_model(self, group: str = 'lab',
                               predictor: str = 'condition') -> Optional[str]:
        """
        Fit the primary model with a random slope of ``predictor`` by ``group``.

        Its BLUPs give per-level trends (e.g. the condition effect in each lab).

        Returns:
            Optional[str]: Model name, or None if the fit failed
        """
        random = tuple(
            RandomEffect(r.group, r.terms + (predictor,), r.correlated)
            if r.group == group and predictor not in r.terms else r
            for r in self.random
        )
        spec = ModelSpec(response=self.response, terms=(predictor,),
                         random=random, method=self.method)
        name = self.model_name(spec)

        logger.info(f"Fitting random-slope model {name}...")
        model, error = _fit_spec(self.data, spec, self.fit_options)
        if model is None:
            self.failures[name] = error
            logger.error(f"    ✗ {name}: {error}")
            return None

        self.models[name] = model
        return name

    def test_hypothesis(self, name: str) -> Dict[str, Any]:
        """
        Run the likelihood-ratio test of one hypothesis.

        Args:
            name (str): Hypothesis name

        Returns:
            Dict with hypothesis, models, status and the LRT fields
        """
        small, large = self.hypotheses[name]
        small_name, large_name = self.model_name(small), self.model_name(large)
        record = {
            'hypothesis': name,
            'small_model': small_name,
            'large_model': large_name,
            'status': 'ok',
            'message': None,
            'statistic': np.nan,
            'df': np.nan,
            'p_value': np.nan,
            'aic_small': np.nan,
            'aic_large': np.nan,
        }

        missing = [m for m in (small_name, large_name) if m not in self.models]
        if missing:
            record['status'] = 'failed'
            record['message'] = '; '.join(self.failures.get(m, 'not fitted') for m in missing)
            return record

        try:
            lrt = compare_nested(self.models[small_name], self.models[large_name])
        except MultiLabError as e:
            logger.error(f"  Comparison for {name} failed: {e}")
            record['status'] = 'failed'
            record['message'] = str(e)
            return record

        record.update(
            statistic=lrt.statistic,
            df=lrt.df,
            p_value=lrt.p_value,
            aic_small=self.models[small_name].aic,
            aic_large=self.models[large_name].aic,
        )
        return record

    def extract_results(self, name: str, model: FittedModel) -> pd.DataFrame:
        """
        Extract the fixed-effect table of a fitted model.

        Args:
            name (str): Model name
            model (FittedModel): Fitted model

        Returns:
            pd.DataFrame: Columns model, effect, beta, se, z_value, p_value,
                ci_lower, ci_upper, aic, bic, llf
        """
        results = model.summary_frame()
        results.insert(0, 'model', name)
        results['aic'] = model.aic
        results['bic'] = model.bic
        results['llf'] = model.log_likelihood
        return results

    def fit_all_hypotheses(self) -> pd.DataFrame:
        """
        Fit all models and test all hypotheses.

        Returns:
            pd.DataFrame: One row per hypothesis with the LRT, status and
                FDR-corrected p-values for the secondary hypotheses
        """
        logger.info(f"Testing {len(self.hypotheses)} hypotheses...")
        self.fit_models()

        records = []
        for i, name in enumerate(self.hypotheses, 1):
            logger.info(f"  [{i}/{len(self.hypotheses)}] {name}")
            records.append(self.test_hypothesis(name))
        for name, reason in self.skipped.items():
            records.append({'hypothesis': name, 'status': 'skipped', 'message': reason})

        self.comparisons = pd.DataFrame(records)
        self._apply_fdr_correction()

        if self.models:
            self.results = pd.concat(
                [self.extract_results(name, model) for name, model in self.models.items()],
                ignore_index=True,
            )
        else:
            logger.error("No models were successfully fitted")
            self.results = pd.DataFrame()

        return self.comparisons

    def _apply_fdr_correction(self):
        """
        Apply Benjamini-Hochberg FDR correction across secondary hypotheses.

        The primary hypothesis keeps its uncorrected p-value.
        """
        logger.info("Applying FDR correction...")
        self.comparisons['p_fdr'] = np.nan
        self.comparisons['significant'] = False

        tested = self.comparisons['p_value'].notna()
        primary = self.comparisons['hypothesis'] == PRIMARY_HYPOTHESIS
        self.comparisons.loc[tested & primary, 'p_fdr'] = self.comparisons.loc[tested & primary, 'p_value']

        secondary = tested & ~primary
        if secondary.any():
            _, p_fdr, _, _ = multipletests(
                self.comparisons.loc[secondary, 'p_value'].values,
                alpha=config.ALPHA,
                method='fdr_bh'
            )
            self.comparisons.loc[secondary, 'p_fdr'] = p_fdr
            n_sig = int((p_fdr < config.ALPHA).sum())
            logger.info(f"  Secondary hypotheses: {n_sig}/{len(p_fdr)} significant after FDR correction")

        self.comparisons['significant'] = self.comparisons['p_fdr'] < config.ALPHA

    def export_results(self, output_dir: str) -> Dict[str, str]:
        """
        Export the LRT table, coefficient tables and variance components.

        Args:
            output_dir (str): Output directory path

        Returns:
            Dict[str, str]: Paths of the exported files
        """
        if self.comparisons is None:
            raise ValueError("No results to export. Run fit_all_hypotheses() first.")

        os.makedirs(output_dir, exist_ok=True)
        paths = {
            'comparisons': os.path.join(output_dir, 'lme_comparisons.csv'),
            'coefficients': os.path.join(output_dir, 'lme_coefficients.csv'),
            'variance_components': os.path.join(output_dir, 'lme_variance_components.csv'),
        }

        self.comparisons.to_csv(paths['comparisons'], index=False)
        self.results.to_csv(paths['coefficients'], index=False)

        frames = []
        for name, model in self.models.items():
            frame = model.variance_summary()
            frame.insert(0, 'model', name)
            frames.append(frame)
        pd.DataFrame(pd.concat(frames, ignore_index=True) if frames else []).to_csv(
            paths['variance_components'], index=False)

        for path in paths.values():
            logger.info(f"Exported LME results to: {path}")
        return paths

    def get_summary(self) -> pd.DataFrame:
        """
        Get summary of hypothesis tests.

        Returns:
            pd.DataFrame: Counts of hypotheses per status and how many are
                significant
        """
        if self.comparisons is None:
            raise ValueError("No results available. Run fit_all_hypotheses() first.")

        return (
            self.comparisons.groupby('status')
            .agg(n_hypotheses=('hypothesis', 'size'), n_significant=('significant', 'sum'))
            .reset_index()
        )
