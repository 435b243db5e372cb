# -*- coding: utf-8 -*-
"""
Multi-Lab Analysis Pipeline Orchestrator

This module provides a single entry point for the complete design-validation
run: simulate the multi-lab data set, validate its structure, apply the
preregistered exclusions, aggregate to subjects, fit and compare the
hypothesis models, extract per-group trends and document the run. It is the
only layer that writes files (CSV and JSON under the output directory).

Usage:
    # Run complete pipeline
    python pipelines/run_multilab_analysis.py

    # Different design
    python pipelines/run_multilab_analysis.py --n-labs 20 --subjects-per-lab 16

    # Run specific stages (earlier outputs are read from the output directory)
    python pipelines/run_multilab_analysis.py --stages aggregate models

    # Dry run (validate without executing)
    python pipelines/run_multilab_analysis.py --dry-run
"""

import argparse
import json
import logging
import sys
import time
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import pandas as pd

from multilab import config
from multilab.__version__ import get_version_info
from multilab.aggregator import aggregate, summarize_lab_effects
from multilab.contrast_analyzer import TrendContrastAnalyzer
from multilab.errors import ValidationError
from multilab.lme_analyzer import HypothesisLMEAnalyzer
from multilab.metadata import AnalysisMetadata
from multilab.parameters import CleaningParameters, SimulationParameters
from multilab.preprocessor import LookingTimePreprocessor
from multilab.simulator import LookingTimeSimulator
from multilab.validator import StudyDataValidator

# Configure logging
logger = logging.getLogger(__name__)

STAGE_NAMES = ['simulate', 'validate', 'clean', 'aggregate', 'models', 'trends', 'report']
CRITICAL_STAGES = ['simulate', 'validate', 'clean', 'aggregate', 'models']

# Artifacts each stage needs and the file that can stand in for them
STAGE_INPUTS = {
    'simulate': [],
    'validate': ['observations'],
    'clean': ['observations'],
    'aggregate': ['cleaned'],
    'models': ['rows'],
    'trends': ['analyzer'],
    'report': [],
}
STAGE_OUTPUTS = {
    'simulate': ['observations'],
    'validate': [],
    'clean': ['cleaned'],
    'aggregate': ['rows'],
    'models': ['analyzer'],
    'trends': [],
    'report': [],
}
ARTIFACT_FILES = {
    'observations': 'observations.csv',
    'cleaned': 'cleaned_observations.csv',
    'rows': 'subject_condition_rows.csv',
}


def _to_json(value):
    """Fallback serializer for numpy scalars and frames."""
    if hasattr(value, 'item'):
        return value.item()
    if isinstance(value, pd.DataFrame):
        return value.to_dict(orient='records')
    return str(value)


class PipelineValidator:
    """Validates that each stage's inputs are available."""

    def __init__(self, output_dir: Path):
        """Initialize validator with the output directory."""
        self.output_dir = Path(output_dir)

    def validate_stage_inputs(self, stage_name: str, available: Set[str]) -> Tuple[bool, str]:
        """
        Validate inputs required for a specific stage.

        Args:
            stage_name: Name of the stage to validate
            available: Artifacts held in memory (or produced by earlier
                stages of this run)

        Returns:
            Tuple of (is_valid, error_message)
        """
        missing = []
        for artifact in STAGE_INPUTS.get(stage_name, []):
            if artifact in available:
                continue
            filename = ARTIFACT_FILES.get(artifact)
            if filename and (self.output_dir / filename).exists():
                logger.debug(f"Using {self.output_dir / filename} for '{artifact}'")
                continue
            missing.append(artifact)

        if missing:
            producers = [s for s in STAGE_NAMES if set(STAGE_OUTPUTS[s]) & set(missing)]
            return False, (
                f"Missing inputs for '{stage_name}': {', '.join(missing)}\n"
                f"Run these stages first (in the same invocation for in-memory results): "
                f"{', '.join(producers)}"
            )
        return True, ""


class MultiLabAnalysisPipeline:
    """
    Orchestrates the complete multi-lab design-validation pipeline.

    Attributes:
        simulation: SimulationParameters of the generator
        cleaning: CleaningParameters of the exclusion engine
        output_dir: Directory receiving all CSV/JSON outputs
        artifacts: In-memory results passed between stages
        results: Dictionary tracking stage execution status

    Example:
        >>> pipeline = MultiLabAnalysisPipeline(output_dir='results/multilab')
        >>> pipeline.run()
    """

    def __init__(self, simulation: Optional[SimulationParameters] = None,
                 cleaning: Optional[CleaningParameters] = None,
                 output_dir: str = config.RESULTS_DIR,
                 n_jobs: int = 1,
                 fit_options: Optional[Dict[str, Any]] = None,
                 verbose: bool = False,
                 log_path: Optional[str] = None):
        """
        Initialize pipeline orchestrator.

        Args:
            simulation: Generator parameters (default: config values)
            cleaning: Exclusion rules (default: config values)
            output_dir: Output directory
            n_jobs: Parallel model fits
            fit_options: Options for fit() (max_iter, tol, time_budget)
            verbose: Enable debug logging on the console
            log_path: Log file (default: <output_dir>/pipeline_execution.log)
        """
        self.simulation = (simulation or SimulationParameters()).validate()
        self.cleaning = (cleaning or CleaningParameters()).validate()
        self.output_dir = Path(output_dir)
        self.n_jobs = n_jobs
        self.fit_options = dict(fit_options or {})
        self.log_path = Path(log_path) if log_path else self.output_dir / 'pipeline_execution.log'
        self.logger = self._setup_logging(verbose)
        self.validator = PipelineValidator(self.output_dir)
        self.stages = self._define_stages()
        self.artifacts = {}
        self.results = {}

    def _setup_logging(self, verbose: bool = False) -> logging.Logger:
        """
        Set up logging configuration.

        Handlers are attached to the package logger so every module's
        messages reach the log file.

        Args:
            verbose: Enable debug logging on the console

        Returns:
            Configured logger instance
        """
        self.log_path.parent.mkdir(parents=True, exist_ok=True)

        level = logging.DEBUG if verbose else logging.INFO

        # File handler
        file_handler = logging.FileHandler(self.log_path, mode='w', encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)

        # Console handler
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)

        # Formatter
        formatter = logging.Formatter(
            '%(asctime)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        file_handler.setFormatter(formatter)
        console_handler.setFormatter(formatter)

        package_logger = logging.getLogger('multilab')
        for handler in list(package_logger.handlers):
            package_logger.removeHandler(handler)
            handler.close()
        package_logger.setLevel(logging.DEBUG)
        package_logger.addHandler(file_handler)
        package_logger.addHandler(console_handler)

        return logger

    def _define_stages(self) -> List[Tuple[str, Callable[[], None]]]:
        """
        Define pipeline stages in execution order.

        Returns:
            List of (stage_name, stage_function) tuples
        """
        return [
            ('simulate', self._run_simulation),
            ('validate', self._run_validation),
            ('clean', self._run_exclusion),
            ('aggregate', self._run_aggregation),
            ('models', self._run_models),
            ('trends', self._run_trends),
            ('report', self._run_report),
        ]

    def run(self, stages: Optional[List[str]] = None,
            skip_stages: Optional[List[str]] = None,
            from_stage: Optional[str] = None,
            dry_run: bool = False) -> Dict[str, str]:
        """
        Execute pipeline stages.

        Args:
            stages: List of specific stages to run (None = all)
            skip_stages: List of stages to skip
            from_stage: Start from this stage onward
            dry_run: Validate without executing

        Returns:
            Dictionary mapping stage names to status ('success', 'failed',
            'skipped', 'validated')
        """
        self.logger.info("=" * 80)
        self.logger.info("MULTI-LAB DESIGN VALIDATION PIPELINE")
        self.logger.info("=" * 80)
        for line in get_version_info().splitlines():
            self.logger.info(line)
        self.logger.info(f"Start time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
        self.logger.info(f"Output directory: {self.output_dir}")
        self.logger.info(f"Log file: {self.log_path}")

        if dry_run:
            self.logger.info("DRY RUN MODE - Validation only, no execution")

        self.logger.info("=" * 80)

        stages_to_run = self._determine_stages(stages, skip_stages, from_stage)
        self.logger.info(f"Stages to execute: {', '.join(stages_to_run)}")
        self.logger.info("=" * 80)

        planned = set(self.artifacts)
        for i, (stage_name, stage_func) in enumerate(self.stages, 1):
            if stage_name not in stages_to_run:
                self.results[stage_name] = 'skipped'
                continue

            self.logger.info(f"Stage {i}/{len(self.stages)}: {stage_name.upper()}")
            self.logger.info("-" * 80)

            available = planned if dry_run else set(self.artifacts)
            is_valid, error_msg = self.validator.validate_stage_inputs(stage_name, available)
            if not is_valid:
                self.logger.error(f"Validation failed for stage '{stage_name}':")
                self.logger.error(error_msg)
                self.results[stage_name] = 'failed'
                if stage_name in CRITICAL_STAGES:
                    self.logger.error("Critical stage failed. Stopping pipeline.")
                    break
                self.logger.warning("Non-critical stage failed. Continuing...")
                continue

            if dry_run:
                self.logger.info(f"✓ Validation passed for '{stage_name}'")
                self.results[stage_name] = 'validated'
                planned.update(STAGE_OUTPUTS[stage_name])
                continue

            start_time = time.time()
            try:
                stage_func()
                elapsed = time.time() - start_time
                self.logger.info(f"✓ Stage '{stage_name}' completed ({elapsed:.1f}s)")
                self.results[stage_name] = 'success'
            except Exception as e:
                elapsed = time.time() - start_time
                self.logger.error(f"✗ Stage '{stage_name}' failed ({elapsed:.1f}s): {e}", exc_info=True)
                self.results[stage_name] = 'failed'
                if stage_name in CRITICAL_STAGES:
                    self.logger.error("Critical stage failed. Stopping pipeline.")
                    break
                self.logger.warning("Non-critical stage failed. Continuing...")

        self._print_summary()
        return self.results

    def _determine_stages(self, stages: Optional[List[str]],
                          skip_stages: Optional[List[str]],
                          from_stage: Optional[str]) -> List[str]:
        """Determine which stages to run based on arguments."""
        if stages:
            return [s for s in stages if s in STAGE_NAMES]

        if from_stage:
            if from_stage not in STAGE_NAMES:
                self.logger.error(f"Invalid stage name: {from_stage}")
                return []
            stages_to_run = STAGE_NAMES[STAGE_NAMES.index(from_stage):]
        else:
            stages_to_run = list(STAGE_NAMES)

        if skip_stages:
            stages_to_run = [s for s in stages_to_run if s not in skip_stages]
        return stages_to_run

    # -------------------------------------------------------------------------
    # Artifacts
    # -------------------------------------------------------------------------

    def _path(self, filename: str) -> str:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        return str(self.output_dir / filename)

    def _artifact(self, name: str) -> Any:
        """In-memory artifact, or its CSV from a previous run."""
        if name not in self.artifacts:
            path = self.output_dir / ARTIFACT_FILES[name]
            self.logger.info(f"Loading {name} from {path}")
            self.artifacts[name] = pd.read_csv(path)
        return self.artifacts[name]

    def _write_csv(self, frame: pd.DataFrame, filename: str) -> str:
        path = self._path(filename)
        frame.to_csv(path, index=False)
        self.logger.info(f"  Saved: {path}")
        return path

    def _write_json(self, payload: Dict[str, Any], filename: str) -> str:
        path = self._path(filename)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(payload, f, indent=2, default=_to_json)
        self.logger.info(f"  Saved: {path}")
        return path

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    def _run_simulation(self):
        """Execute simulation stage."""
        self.logger.info("Simulating multi-lab looking-time data...")
        study = LookingTimeSimulator(self.simulation).simulate()
        self.artifacts['observations'] = study.observations
        self.artifacts['study'] = study

        self._write_csv(study.observations, ARTIFACT_FILES['observations'])
        self._write_csv(study.labs, 'labs_latent.csv')
        self._write_csv(study.subjects, 'subjects_latent.csv')

    def _run_validation(self):
        """Execute structural validation stage."""
        self.logger.info("Validating observations...")
        observations = self._artifact('observations')
        report = StudyDataValidator(observations, max_value=self.simulation.max_value,
                                    conditions=self.simulation.conditions).validate_all()
        self._write_json(report, 'validation_report.json')

        if not report['is_valid']:
            raise ValidationError(
                f"Observations failed structural validation: "
                f"{len(report['missing_columns'])} missing columns, "
                f"{len(report['range_violations'])} range violations, "
                f"{len(report['block_balance_issues'])} unbalanced blocks, "
                f"{len(report['covariate_issues'])} inconsistent subjects"
            )
        self.logger.info(f"  Valid: {report['summary']}")

    def _run_exclusion(self):
        """Execute exclusion stage."""
        self.logger.info("Applying preregistered exclusion rules...")
        observations = self._artifact('observations')
        cleaned = LookingTimePreprocessor(self.cleaning).clean(observations)
        self.artifacts['cleaned'] = cleaned

        self._write_csv(cleaned.data, ARTIFACT_FILES['cleaned'])
        self._write_csv(cleaned.stage_counts, 'exclusion_audit.csv')

    def _run_aggregation(self):
        """Execute aggregation stage."""
        self.logger.info("Aggregating to subject level...")
        aggregated = aggregate(self._artifact('cleaned'))
        self.artifacts['aggregated'] = aggregated
        self.artifacts['rows'] = aggregated.rows

        self._write_csv(aggregated.rows, ARTIFACT_FILES['rows'])
        self._write_csv(aggregated.paired, 'paired_subjects.csv')
        if not aggregated.paired.empty and 'lab' in aggregated.paired.columns:
            self._write_csv(summarize_lab_effects(aggregated.paired), 'lab_effects.csv')

    def _run_models(self):
        """Execute model fitting and comparison stage."""
        self.logger.info("Fitting hypothesis models...")
        analyzer = HypothesisLMEAnalyzer(self._artifact('rows'), n_jobs=self.n_jobs,
                                         fit_options=self.fit_options)
        comparisons = analyzer.fit_all_hypotheses()
        analyzer.fit_random_slope_model('lab', 'condition')
        self.artifacts['analyzer'] = analyzer

        analyzer.export_results(str(self.output_dir))

        primary = comparisons[comparisons['hypothesis'] == 'condition']
        if primary.empty or primary['status'].iloc[0] != 'ok':
            raise RuntimeError("Primary condition model could not be fitted and compared")
        row = primary.iloc[0]
        self.logger.info(f"  Primary hypothesis: chi2({row['df']}) = {row['statistic']:.3f}, "
                         f"p = {row['p_value']:.4g}")

    def _run_trends(self):
        """Execute per-group trend stage."""
        self.logger.info("Computing per-group condition trends...")
        analyzer = self.artifacts['analyzer']

        requests = []
        for name, (_, large) in analyzer.hypotheses.items():
            model_name = analyzer.model_name(large)
            moderator = name.replace('condition_x_', '', 1)
            if name.startswith('condition_x_') and model_name in analyzer.models:
                requests.append((model_name, moderator, 'condition'))
        for model_name, model in analyzer.models.items():
            if 'condition[T.A]' in model.random_effects.get('lab', pd.DataFrame()).columns:
                requests.append((model_name, 'lab', 'condition'))

        trend_analyzer = TrendContrastAnalyzer(analyzer.models)
        trend_analyzer.compute_all_trends(requests)
        trend_analyzer.export_trends(str(self.output_dir))
        self.artifacts['trends'] = trend_analyzer

    def _run_report(self):
        """Execute metadata and summary stage."""
        self.logger.info("Documenting run...")
        cleaned = self.artifacts.get('cleaned')
        metadata = AnalysisMetadata().generate_metadata(
            simulation=self.simulation,
            cleaning=self.cleaning,
            cleaned=cleaned if hasattr(cleaned, 'stage_counts') else None,
            aggregated=self.artifacts.get('aggregated'),
            fit_options=self.fit_options,
        )
        metadata['stage_results'] = dict(self.results)

        analyzer = self.artifacts.get('analyzer')
        if analyzer is not None:
            metadata['hypotheses'] = analyzer.comparisons.to_dict(orient='records')
            metadata['failed_models'] = dict(analyzer.failures)

        self._write_json(metadata, 'analysis_metadata.json')

    def _print_summary(self):
        """Print pipeline execution summary."""
        self.logger.info("=" * 80)
        self.logger.info("PIPELINE EXECUTION SUMMARY")
        self.logger.info("=" * 80)

        counts = {status: sum(1 for s in self.results.values() if s == status)
                  for status in ('success', 'failed', 'skipped', 'validated')}
        self.logger.info(f"Total stages: {len(self.results)}")
        for status, count in counts.items():
            self.logger.info(f"  {status.capitalize()}: {count}")

        if self.results:
            self.logger.info("Stage Results:")
            for stage_name, status in self.results.items():
                symbol = "✓" if status in ('success', 'validated') else "✗" if status == 'failed' else "⊘"
                self.logger.info(f"  {symbol} {stage_name}: {status}")

        self.logger.info("=" * 80)
        self.logger.info(f"End time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
        self.logger.info("=" * 80)


def build_parser() -> argparse.ArgumentParser:
    """Command-line interface of the pipeline."""
    parser = argparse.ArgumentParser(
        description='Run the multi-lab design validation pipeline',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run complete pipeline with the preregistered defaults
  python pipelines/run_multilab_analysis.py

  # Larger design, parallel model fits
  python pipelines/run_multilab_analysis.py --n-labs 20 --subjects-per-lab 16 --n-jobs 4

  # Re-run models from saved subject rows
  python pipelines/run_multilab_analysis.py --from-stage models

  # Dry run (validate without executing)
  python pipelines/run_multilab_analysis.py --dry-run
        """
    )

    design = parser.add_argument_group('design')
    design.add_argument('--n-labs', type=int, default=config.DEFAULT_N_LABS)
    design.add_argument('--subjects-per-lab', type=int, default=config.DEFAULT_SUBJECTS_PER_LAB)
    design.add_argument('--trials-per-subject', type=int, default=config.DEFAULT_TRIALS_PER_SUBJECT)
    design.add_argument('--block-size', type=int, default=config.DEFAULT_BLOCK_SIZE)
    design.add_argument('--seed', type=int, default=config.DEFAULT_SEED)

    exclusion = parser.add_argument_group('exclusion')
    exclusion.add_argument('--min-value', type=float, default=config.MIN_VALUE,
                           help='Minimum usable looking time (seconds)')
    exclusion.add_argument('--z-threshold', type=float, default=config.Z_THRESHOLD,
                           help='Within-subject |z| of log looking time marking outliers')
    exclusion.add_argument('--min-trials', type=int, default=config.MIN_TRIALS_PER_CONDITION,
                           help='Minimum usable trials per condition')

    fitting = parser.add_argument_group('model fitting')
    fitting.add_argument('--max-iter', type=int, default=config.LME_MAX_ITERATIONS)
    fitting.add_argument('--tol', type=float, default=config.LME_TOLERANCE)
    fitting.add_argument('--time-budget', type=float, default=config.LME_TIME_BUDGET_SEC,
                         help='Wall-clock limit per model fit (seconds)')
    fitting.add_argument('--n-jobs', type=int, default=1, help='Parallel model fits')

    parser.add_argument('--output-dir', default=config.RESULTS_DIR)
    parser.add_argument('--stages', nargs='+', choices=STAGE_NAMES,
                        help='Specific stages to run')
    parser.add_argument('--skip-stages', nargs='+', choices=STAGE_NAMES,
                        help='Stages to skip')
    parser.add_argument('--from-stage', choices=STAGE_NAMES,
                        help='Start from this stage onward')
    parser.add_argument('--dry-run', action='store_true',
                        help='Validate without executing')
    parser.add_argument('--verbose', action='store_true',
                        help='Enable verbose output')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main execution function."""
    args = build_parser().parse_args(argv)

    try:
        simulation = replace(
            SimulationParameters(),
            n_labs=args.n_labs,
            subjects_per_lab=args.subjects_per_lab,
            trials_per_subject=args.trials_per_subject,
            block_size=args.block_size,
            seed=args.seed,
        )
        cleaning = CleaningParameters(
            min_value=args.min_value,
            z_threshold=args.z_threshold,
            min_trials_per_condition=args.min_trials,
        )
        pipeline = MultiLabAnalysisPipeline(
            simulation=simulation,
            cleaning=cleaning,
            output_dir=args.output_dir,
            n_jobs=args.n_jobs,
            fit_options={'max_iter': args.max_iter, 'tol': args.tol,
                         'time_budget': args.time_budget},
            verbose=args.verbose,
        )
    except ValidationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    try:
        results = pipeline.run(
            stages=args.stages,
            skip_stages=args.skip_stages,
            from_stage=args.from_stage,
            dry_run=args.dry_run
        )
        failed_count = sum(1 for status in results.values() if status == 'failed')
        return 1 if failed_count > 0 else 0

    except KeyboardInterrupt:
        pipeline.logger.info("Pipeline interrupted by user")
        return 1
    except Exception as e:
        pipeline.logger.error(f"Unexpected error: {e}", exc_info=True)
        return 1


if __name__ == '__main__':
    sys.exit(main())
