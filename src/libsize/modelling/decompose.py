"""
decompose.py - Region-specific slopes and intercepts from model coefficients

For a model ntranscripts ~ 0 + ncells * region, each region l has

    slope[l]     = exp(b[ncells] + b[ncells:region=l])
    intercept[l] = exp(b[region=l])

on the response scale: the baseline transcript count of a bin and the
multiplicative change per additional cell. Coefficients belonging to
other covariates (e.g. FOV terms) are ignored.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass

import numpy as np
import pandas as pd

from ..data.config import MissingBaselineError
from .design import CELL_COVARIATE, parse_coefficient_name
from .glm import FittedModel


@dataclass(frozen=True)
class EffectSize:
    """Slope and intercept of one region in one sample."""

    region: str
    slope: float
    intercept: float
    sample_id: str | None = None
    estimable: bool = True

    def to_dict(self) -> dict:
        return asdict(self)


def _region_coefficients(model: FittedModel, cell_covariate: str,
                         region_covariate: str) -> tuple[dict, dict]:
    """Main-effect and interaction coefficients keyed by region level."""
    main, interaction = {}, {}
    for name, value in zip(model.coefficient_names, model.coefficients):
        parts = parse_coefficient_name(name)
        if len(parts) == 1 and parts[0][0] == region_covariate and parts[0][1] is not None:
            main[parts[0][1]] = value
        elif (len(parts) == 2 and parts[0] == (cell_covariate, None)
              and parts[1][0] == region_covariate and parts[1][1] is not None):
            interaction[parts[1][1]] = value
    return main, interaction


def decompose(
    model: FittedModel,
    cell_covariate: str = CELL_COVARIATE,
    region_covariate: str = "region",
) -> list[EffectSize]:
    """
    Per-region slope and intercept on the natural scale.

    Parameters
    ----------
    model : FittedModel
        Model whose names follow the design naming convention.
    cell_covariate : str
        Name of the cell-count coefficient.
    region_covariate : str
        Name of the region factor.

    Returns
    -------
    list of EffectSize
        One record per region level, in coefficient order. Regions with
        a NaN (aliased) or degenerate coefficient are marked
        ``estimable=False``.

    Raises
    ------
    MissingBaselineError
        If the model has no `cell_covariate` coefficient.
    """
    if cell_covariate not in model.coefficient_names:
        raise MissingBaselineError(
            f"Model for sample '{model.sample_id}' has no '{cell_covariate}' coefficient"
        )

    b_cell = model.coefficient(cell_covariate)
    main, interaction = _region_coefficients(model, cell_covariate, region_covariate)

    regions = list(main)
    regions += [level for level in interaction if level not in main]

    degenerate = set(model.degenerate)
    effects = []
    for level in regions:
        b_main = main.get(level, 0.0)
        b_int = interaction.get(level, 0.0)

        used = [f"{region_covariate}={level}", f"{cell_covariate}:{region_covariate}={level}", cell_covariate]
        estimable = bool(np.isfinite(b_cell + b_main + b_int)) and not degenerate.intersection(used)

        effects.append(EffectSize(
            region=str(level),
            slope=float(np.exp(b_cell + b_int)),
            intercept=float(np.exp(b_main)),
            sample_id=model.sample_id,
            estimable=estimable,
        ))
    return effects


def effect_sizes_frame(effects: list[EffectSize]) -> pd.DataFrame:
    """Row-per-record table of effect sizes."""
    columns = ["sample_id", "region", "slope", "intercept", "estimable"]
    return pd.DataFrame([e.to_dict() for e in effects], columns=columns)
