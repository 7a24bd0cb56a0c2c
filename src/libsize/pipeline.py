"""
pipeline.py - Per-sample library size analysis

Runs binning → design → fit → effect sizes → ANOVA independently for
every sample. A sample that fails with a libsize error is logged,
recorded in `PipelineResult.failures` and left out of the summary
tables; the other samples are unaffected.

Samples may be processed in parallel threads (``config.n_jobs``);
results are collected in sorted sample order either way.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import logging

import pandas as pd
from joblib import Parallel, delayed

from .data.config import LibsizeConfig, LibsizeError
from .data.detections import split_by_sample, validate_detections
from .modelling.anova import AnovaRow, anova, anova_frame
from .modelling.decompose import EffectSize, decompose, effect_sizes_frame
from .modelling.design import DesignMatrix, build_design
from .modelling.glm import FittedModel, fit_glm
from .spatial.binning import bin_sample

logger = logging.getLogger(__name__)


@dataclass
class SampleResult:
    """Everything computed for one sample."""

    sample_id: str
    bins: pd.DataFrame
    design: DesignMatrix
    model: FittedModel
    effect_sizes: list[EffectSize]
    anova: list[AnovaRow]


@dataclass
class PipelineResult:
    """
    Collected outputs of a batch run.

    Attributes
    ----------
    bins : pd.DataFrame
        Bin table of every sample that could be binned (including
        unlabelled bins and samples whose fit later failed).
    models : dict
        Sample id -> FittedModel for successful samples.
    effect_sizes : pd.DataFrame
        One row per (sample, region).
    anova : pd.DataFrame
        One row per (sample, term).
    diagnostics : pd.DataFrame
        Per-bin observed, fitted and residual values.
    failures : dict
        Sample id -> the error that stopped it.
    """

    bins: pd.DataFrame
    models: dict[str, FittedModel] = field(default_factory=dict)
    effect_sizes: pd.DataFrame = field(default_factory=pd.DataFrame)
    anova: pd.DataFrame = field(default_factory=pd.DataFrame)
    diagnostics: pd.DataFrame = field(default_factory=pd.DataFrame)
    failures: dict[str, LibsizeError] = field(default_factory=dict)

    @property
    def samples(self) -> list[str]:
        """Samples with a fitted model."""
        return list(self.models)

    def failure_table(self) -> pd.DataFrame:
        return pd.DataFrame(
            [{"sample_id": sid, "error": type(err).__name__, "message": str(err)}
             for sid, err in self.failures.items()],
            columns=["sample_id", "error", "message"],
        )

    def summary(self) -> dict:
        return {
            "n_samples": len(self.models) + len(self.failures),
            "n_fitted": len(self.models),
            "n_failed": len(self.failures),
            "n_bins": len(self.bins),
        }


def fit_sample(sample_id: str, bins: pd.DataFrame, config: LibsizeConfig | None = None) -> SampleResult:
    """
    Model one sample's bins.

    Parameters
    ----------
    sample_id : str
        Sample identifier.
    bins : pd.DataFrame
        Bin table of that sample.
    config : LibsizeConfig, optional
        Model settings.

    Returns
    -------
    SampleResult
    """
    config = config or LibsizeConfig()

    design = build_design(
        bins,
        covariates=config.formula_covariates,
        include_interactions=config.include_interactions,
        include_three_way=config.include_three_way_interaction,
        config=config,
    )
    model = fit_glm(
        design.response,
        design.matrix,
        design.coefficient_names,
        max_iter=config.max_irls_iterations,
        tol=config.convergence_tolerance,
        sample_id=sample_id,
        strict_rank=config.strict_rank,
        bin_ids=design.bin_ids,
    )
    effects = decompose(model, region_covariate=config.region_col)
    rows = anova(model, test=config.anova_test)

    return SampleResult(
        sample_id=sample_id,
        bins=bins,
        design=design,
        model=model,
        effect_sizes=effects,
        anova=rows,
    )


def analyse_sample(sample_id: str, detections: pd.DataFrame,
                   config: LibsizeConfig | None = None) -> SampleResult:
    """Bin one sample's detections and model the bins."""
    config = config or LibsizeConfig()
    bins = bin_sample(
        detections,
        resolution=config.resolution,
        config=config,
        label_rule=config.label_rule,
        geometry=config.bin_geometry,
    )
    bins.insert(0, config.sample_col, sample_id)
    return fit_sample(sample_id, bins, config)


@dataclass
class _Outcome:
    sample_id: str
    bins: pd.DataFrame | None = None
    result: SampleResult | None = None
    error: LibsizeError | None = None


def _run_unit(sample_id: str, frame: pd.DataFrame, config: LibsizeConfig, binned: bool) -> _Outcome:
    outcome = _Outcome(sample_id)
    try:
        if binned:
            outcome.bins = frame
        else:
            bins = bin_sample(frame, resolution=config.resolution, config=config,
                              label_rule=config.label_rule, geometry=config.bin_geometry)
            bins.insert(0, config.sample_col, sample_id)
            outcome.bins = bins
        outcome.result = fit_sample(sample_id, outcome.bins, config)
    except LibsizeError as err:
        outcome.error = err
    return outcome


def _run_units(frames: dict[str, pd.DataFrame], config: LibsizeConfig, binned: bool) -> PipelineResult:
    if config.verbose:
        print(f"\n[Pipeline] {len(frames)} samples "
              f"(covariates={config.formula_covariates}, n_jobs={config.n_jobs})...")

    if config.n_jobs == 1:
        outcomes = [_run_unit(sid, frame, config, binned) for sid, frame in frames.items()]
    else:
        outcomes = Parallel(n_jobs=config.n_jobs, prefer="threads")(
            delayed(_run_unit)(sid, frame, config, binned) for sid, frame in frames.items()
        )

    bins, effects, tables, diagnostics = [], [], [], []
    models, failures = {}, {}

    for outcome in outcomes:
        sid = outcome.sample_id
        if outcome.bins is not None:
            bins.append(outcome.bins)

        if outcome.error is not None:
            failures[sid] = outcome.error
            logger.warning(f"Sample '{sid}' failed ({type(outcome.error).__name__}): {outcome.error}")
            if config.verbose:
                print(f"  ✗ {sid}: {type(outcome.error).__name__}")
            continue

        result = outcome.result
        models[sid] = result.model
        effects.append(effect_sizes_frame(result.effect_sizes))
        tables.append(anova_frame(result.anova, sample_id=sid))

        diag = result.model.diagnostics().reset_index()
        diag.insert(0, config.sample_col, sid)
        diagnostics.append(diag)

        if config.verbose:
            print(f"  ✓ {sid}: {result.model.n_obs:,} bins, rank {result.model.rank}, "
                  f"deviance={result.model.deviance:.1f} ({result.model.n_iter} iterations)")

    if config.verbose:
        print(f"  ✓ {len(models)}/{len(frames)} samples fitted")

    effect_table = pd.concat(effects, ignore_index=True) if effects else effect_sizes_frame([])
    anova_table = pd.concat(tables, ignore_index=True) if tables else anova_frame([], sample_id="")
    effect_table = effect_table.rename(columns={"sample_id": config.sample_col})
    anova_table = anova_table.rename(columns={"sample_id": config.sample_col})

    return PipelineResult(
        bins=pd.concat(bins, ignore_index=True) if bins else pd.DataFrame(),
        models=models,
        effect_sizes=effect_table,
        anova=anova_table,
        diagnostics=pd.concat(diagnostics, ignore_index=True) if diagnostics else pd.DataFrame(),
        failures=failures,
    )


def run_pipeline(detections: pd.DataFrame, config: LibsizeConfig | None = None) -> PipelineResult:
    """
    Bin and model every sample of a detection table.

    Parameters
    ----------
    detections : pd.DataFrame
        Detection table (see LibsizeConfig for column names).
    config : LibsizeConfig, optional
        Binning, model and execution settings.

    Returns
    -------
    PipelineResult

    Examples
    --------
    >>> config = LibsizeConfig(resolution=200, formula_covariates=['region', 'fov'])
    >>> result = run_pipeline(detections, config)
    >>> result.effect_sizes
    >>> result.anova[result.anova['term'] == 'region']
    """
    config = config or LibsizeConfig()
    detections = validate_detections(detections, config)
    return _run_units(split_by_sample(detections, config), config, binned=False)


def run_from_bins(bins: pd.DataFrame, config: LibsizeConfig | None = None) -> PipelineResult:
    """Model every sample of an existing bin table."""
    config = config or LibsizeConfig()
    return _run_units(split_by_sample(bins, config), config, binned=True)
