"""
config.py - Configuration and exceptions for libsize

Contains:
- LibsizeConfig: Column names and analysis settings
- LibsizeError and subclasses: Error taxonomy shared by all stages
"""

from dataclasses import asdict, dataclass, field

import numpy as np


VALID_GEOMETRIES = ("hex",)
VALID_LABEL_RULES = ("majority", "nearest")
VALID_ANOVA_TESTS = ("LR", "F")


@dataclass
class LibsizeConfig:
    """Configuration for libsize column names and analysis settings."""

    # Detection table columns
    sample_col: str = "sample_id"
    x_col: str = "x"
    y_col: str = "y"
    gene_col: str = "gene"
    genetype_col: str = "genetype"
    counts_col: str = "counts"
    cell_col: str = "cell"
    region_col: str = "region"
    level_col: str = "level"

    # Only detections of this gene type count towards ntranscripts
    gene_type_value: str = "Gene"

    # Binning settings
    bin_geometry: str = "hex"
    resolution: int = 100
    label_rule: str = "majority"

    # Model settings
    formula_covariates: list[str] = field(default_factory=lambda: ["region"])
    include_interactions: bool = True
    include_three_way_interaction: bool = False
    max_irls_iterations: int = 25
    convergence_tolerance: float = 1e-8
    anova_test: str = "LR"
    strict_rank: bool = False

    # Execution settings
    n_jobs: int = 1
    verbose: bool = True

    def __post_init__(self):
        """Validate option values."""
        if self.label_rule not in VALID_LABEL_RULES:
            raise ValueError(f"Unknown label rule: {self.label_rule}. " f"Use one of {VALID_LABEL_RULES}")
        if self.anova_test not in VALID_ANOVA_TESTS:
            raise ValueError(f"Unknown ANOVA test: {self.anova_test}. " f"Use one of {VALID_ANOVA_TESTS}")
        if not self.formula_covariates:
            raise ValueError("formula_covariates must name at least one categorical covariate")
        if self.max_irls_iterations < 1:
            raise ValueError(f"max_irls_iterations must be >= 1, got {self.max_irls_iterations}")
        if self.convergence_tolerance <= 0:
            raise ValueError(f"convergence_tolerance must be > 0, got {self.convergence_tolerance}")
        # Geometry and resolution are checked by the binner, which owns InvalidGeometryError
        self.formula_covariates = list(self.formula_covariates)

    @property
    def label_columns(self) -> list[str]:
        """Categorical columns that get a per-bin label (region first)."""
        cols = [self.region_col]
        cols += [c for c in self.formula_covariates if c != self.region_col]
        return cols

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return asdict(self)


class LibsizeError(Exception):
    """Base exception for libsize errors."""

    pass


class ValidationError(LibsizeError):
    """Raised when detection or bin table validation fails."""

    pass


class ColumnNotFoundError(LibsizeError):
    """Raised when a required column is missing."""

    def __init__(self, column: str, dataframe_name: str):
        self.column = column
        self.dataframe_name = dataframe_name
        super().__init__(f"Column '{column}' not found in {dataframe_name}")


class InvalidGeometryError(LibsizeError):
    """Raised when the binning geometry or resolution is invalid."""

    pass


class EmptyInputError(LibsizeError):
    """Raised when a sample has no detections or no modelable bins."""

    pass


class NonConvergenceError(LibsizeError):
    """
    Raised when IRLS reaches its iteration cap without converging.

    The partial state is attached for diagnostics.
    """

    def __init__(self, n_iter: int, deviance: float, coefficients: np.ndarray,
                 coefficient_names: list[str], sample_id: str | None = None):
        self.n_iter = n_iter
        self.deviance = deviance
        self.coefficients = coefficients
        self.coefficient_names = coefficient_names
        self.sample_id = sample_id
        where = f" for sample '{sample_id}'" if sample_id is not None else ""
        super().__init__(
            f"IRLS did not converge{where} after {n_iter} iterations " f"(deviance={deviance:.6g})"
        )

    @property
    def partial_coefficients(self) -> dict[str, float]:
        return dict(zip(self.coefficient_names, self.coefficients))


class MissingBaselineError(LibsizeError):
    """Raised when a model has no cell-count coefficient to decompose against."""

    pass


class RankDeficiencyError(LibsizeError, UserWarning):
    """
    Design matrix has coefficients that cannot be estimated.

    Issued as a warning by default, with the affected coefficients set
    to NaN. Raised instead when ``strict_rank=True``.
    """

    def __init__(self, aliased: list[str], sample_id: str | None = None):
        self.aliased = list(aliased)
        self.sample_id = sample_id
        where = f" in sample '{sample_id}'" if sample_id is not None else ""
        super().__init__(f"{len(self.aliased)} coefficient(s) not estimable{where}: " f"{', '.join(self.aliased)}")


class DegenerateFitWarning(UserWarning):
    """Some coefficients have no finite maximum likelihood estimate."""

    pass
