"""
design.py - Design matrices for per-sample library size models

Builds the covariate matrix of

    ntranscripts ~ 0 + ncells * region [* fov]

from a bin table, without a formula parser. Coefficient names follow a
fixed convention that the decomposition and ANOVA steps parse back:

- numeric factor            : 'ncells'
- categorical level         : 'region=Cortex'
- interaction of factors    : 'ncells:region=Cortex', 'ncells:region=Cortex:fov=3'

Coding follows the usual zero-intercept rules: the first categorical
main effect gets one indicator per level, and a categorical factor in
any other term drops its first level whenever the term without that
factor is already in the model.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from itertools import combinations, product

import numpy as np
import pandas as pd

from ..data.config import ColumnNotFoundError, EmptyInputError, LibsizeConfig, ValidationError

CELL_COVARIATE = "ncells"
RESPONSE = "ntranscripts"
LEVEL_SEP = "="
TERM_SEP = ":"


def parse_coefficient_name(name: str) -> tuple[tuple[str, str | None], ...]:
    """
    Split a coefficient name into (factor, level) pairs.

    Examples
    --------
    >>> parse_coefficient_name('ncells:region=Cortex')
    (('ncells', None), ('region', 'Cortex'))
    """
    parts = []
    for piece in name.split(TERM_SEP):
        factor, sep, level = piece.partition(LEVEL_SEP)
        parts.append((factor, level if sep else None))
    return tuple(parts)


def term_of(name: str) -> tuple[str, ...]:
    """Factors of the term a coefficient belongs to, e.g. ('ncells', 'region')."""
    return tuple(factor for factor, _ in parse_coefficient_name(name))


def term_label(term: tuple[str, ...]) -> str:
    return TERM_SEP.join(term)


@dataclass
class DesignMatrix:
    """
    Response and covariate matrix for one sample.

    Unpacks as ``response, matrix, coefficient_names``.

    Attributes
    ----------
    response : np.ndarray
        Transcript count per modelled bin.
    matrix : np.ndarray
        Covariates (n_bins x n_coefficients).
    coefficient_names : list of str
        Column names following the naming convention.
    terms : dict
        Term (tuple of factor names) -> column indices.
    bin_ids : np.ndarray
        Bin ids of the modelled rows.
    sample_id : str or None
        Sample the bins came from.
    """

    response: np.ndarray
    matrix: np.ndarray
    coefficient_names: list[str]
    terms: dict[tuple[str, ...], list[int]] = field(default_factory=dict)
    bin_ids: np.ndarray | None = None
    sample_id: str | None = None

    def __iter__(self):
        return iter((self.response, self.matrix, self.coefficient_names))

    @property
    def n_obs(self) -> int:
        return self.matrix.shape[0]

    @property
    def n_coefficients(self) -> int:
        return self.matrix.shape[1]

    def to_frame(self) -> pd.DataFrame:
        """Design matrix as a DataFrame indexed by bin id."""
        return pd.DataFrame(self.matrix, columns=self.coefficient_names, index=self.bin_ids)


def model_terms(covariates: list[str], include_interactions: bool = True,
                include_three_way: bool = False) -> list[tuple[str, ...]]:
    """
    Ordered terms of the model, lowest order first.

    Pairwise products are included with `include_interactions`; products
    of three or more factors additionally need `include_three_way`.
    """
    factors = [CELL_COVARIATE] + list(covariates)
    if not include_interactions:
        max_order = 1
    elif include_three_way:
        max_order = len(factors)
    else:
        max_order = 2

    terms = []
    for order in range(1, max_order + 1):
        terms.extend(combinations(factors, order))
    return terms


def _levels(values: pd.Series) -> list:
    if isinstance(values.dtype, pd.CategoricalDtype):
        return list(values.cat.categories)
    return sorted(values.dropna().unique(), key=str)


def _factor_columns(name: str, values: pd.Series, levels: list | None,
                    full: bool) -> list[tuple[str, np.ndarray]]:
    """Columns contributed by one factor within a term."""
    if levels is None:
        return [(name, values.to_numpy(dtype=float))]

    kept = levels if full else levels[1:]
    raw = values.to_numpy(dtype=object)
    return [
        (f"{name}{LEVEL_SEP}{level}", (raw == level).astype(float))
        for level in kept
    ]


def build_design(
    bins: pd.DataFrame,
    covariates: list[str] | tuple[str, ...] = ("region",),
    include_interactions: bool = True,
    include_three_way: bool = False,
    config: LibsizeConfig | None = None,
) -> DesignMatrix:
    """
    Build the zero-intercept, interacted design for one sample's bins.

    Parameters
    ----------
    bins : pd.DataFrame
        Bin table of a single sample (columns 'ntranscripts', 'ncells'
        and every covariate).
    covariates : list of str
        Categorical covariates. The region column is moved to the front
        so it always gets one indicator per level.
    include_interactions : bool
        Add ncells x covariate (and covariate x covariate) products.
    include_three_way : bool
        Add three-way products when a second covariate is given.
    config : LibsizeConfig, optional
        Supplies the sample column name.

    Returns
    -------
    DesignMatrix

    Raises
    ------
    ColumnNotFoundError
        If a required column is missing.
    EmptyInputError
        If no bins remain after filtering.
    ValidationError
        If a categorical level contains the ':' separator.
    """
    config = config or LibsizeConfig()
    covariates = list(covariates)
    # Region takes the full indicator coding whatever order it was given in
    if config.region_col in covariates:
        covariates = [config.region_col] + [c for c in covariates if c != config.region_col]

    for col in [RESPONSE, CELL_COVARIATE] + covariates:
        if col not in bins.columns:
            raise ColumnNotFoundError(col, "bins")

    sample_id = None
    if config.sample_col in bins.columns:
        samples = bins[config.sample_col].unique()
        if len(samples) > 1:
            raise ValueError(f"build_design expects one sample, got {len(samples)}")
        if len(samples) == 1:
            sample_id = str(samples[0])

    # Unlabelled bins are kept for density maps but not modelled
    keep = bins[covariates].notna().all(axis=1)
    # Empty bins carry no information about either rate
    keep &= ~((bins[CELL_COVARIATE] == 0) & (bins[RESPONSE] == 0))
    data = bins.loc[keep]

    if len(data) == 0:
        where = f" for sample '{sample_id}'" if sample_id is not None else ""
        raise EmptyInputError(f"No modelable bins{where}")

    levels = {CELL_COVARIATE: None}
    for col in covariates:
        levels[col] = _levels(data[col])
        bad = [lvl for lvl in levels[col] if TERM_SEP in str(lvl)]
        if bad:
            raise ValidationError(f"Levels of '{col}' may not contain '{TERM_SEP}': {bad}")

    terms = model_terms(covariates, include_interactions, include_three_way)

    columns: list[np.ndarray] = []
    names: list[str] = []
    term_columns: dict[tuple[str, ...], list[int]] = {}
    present: set[tuple[str, ...]] = set()
    baseline_coded = False

    for term in terms:
        blocks = []
        for factor in term:
            if levels[factor] is None:
                blocks.append(_factor_columns(factor, data[factor], None, full=True))
                continue
            marginal = tuple(f for f in term if f != factor)
            marginal_present = baseline_coded if not marginal else marginal in present
            blocks.append(_factor_columns(factor, data[factor], levels[factor], full=not marginal_present))

        start = len(names)
        for combo in product(*blocks):
            names.append(TERM_SEP.join(label for label, _ in combo))
            col = np.ones(len(data))
            for _, values in combo:
                col = col * values
            columns.append(col)
        term_columns[term] = list(range(start, len(names)))

        present.add(term)
        if len(term) == 1 and levels[term[0]] is not None:
            baseline_coded = True

    matrix = np.column_stack(columns) if columns else np.empty((len(data), 0))

    return DesignMatrix(
        response=data[RESPONSE].to_numpy(dtype=float),
        matrix=matrix,
        coefficient_names=names,
        terms=term_columns,
        bin_ids=data["bin_id"].to_numpy() if "bin_id" in data.columns else data.index.to_numpy(),
        sample_id=sample_id,
    )
