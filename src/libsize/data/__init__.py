"""
data - Configuration, errors and detection table handling

This module contains the configuration class, the shared exception
taxonomy, and validation of the detection tables fed to the binner.
"""

from .config import (
    LibsizeConfig,
    LibsizeError,
    ValidationError,
    ColumnNotFoundError,
    InvalidGeometryError,
    EmptyInputError,
    NonConvergenceError,
    MissingBaselineError,
    RankDeficiencyError,
    DegenerateFitWarning,
)

from .detections import DetectionValidator, validate_detections, split_by_sample

__all__ = [
    # Configuration
    'LibsizeConfig',

    # Validation
    'DetectionValidator',
    'validate_detections',
    'split_by_sample',

    # Exceptions
    'LibsizeError',
    'ValidationError',
    'ColumnNotFoundError',
    'InvalidGeometryError',
    'EmptyInputError',
    'NonConvergenceError',
    'MissingBaselineError',
    'RankDeficiencyError',
    'DegenerateFitWarning',
]
