# src/libsize/__init__.py

"""
libsize - Region-confounded library size in spatial transcriptomics
"""

# Configuration and errors
from .data.config import (
    LibsizeConfig,
    LibsizeError,
    InvalidGeometryError,
    EmptyInputError,
    NonConvergenceError,
    MissingBaselineError,
    RankDeficiencyError,
)

# Core stages
from .spatial.binning import bin_detections
from .modelling.design import build_design
from .modelling.glm import FittedModel, fit_glm
from .modelling.decompose import EffectSize, decompose
from .modelling.anova import AnovaRow, anova
from .pipeline import PipelineResult, SampleResult, analyse_sample, fit_sample, run_pipeline, run_from_bins

# Import submodules
from . import data
from . import spatial
from . import modelling

__version__ = '0.1.0'

__all__ = [
    # Configuration
    'LibsizeConfig',

    # Stages
    'bin_detections',
    'build_design',
    'fit_glm',
    'decompose',
    'anova',

    # Results
    'FittedModel',
    'EffectSize',
    'AnovaRow',
    'SampleResult',
    'PipelineResult',

    # Pipeline
    'analyse_sample',
    'fit_sample',
    'run_pipeline',
    'run_from_bins',

    # Exceptions
    'LibsizeError',
    'InvalidGeometryError',
    'EmptyInputError',
    'NonConvergenceError',
    'MissingBaselineError',
    'RankDeficiencyError',

    # Submodules
    'data',
    'spatial',
    'modelling',
]
