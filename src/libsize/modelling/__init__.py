"""
modelling - Per-sample Poisson models of binned library size

Modules
-------
- design: Zero-intercept interacted design matrices and the coefficient
  naming convention ('ncells', 'region=Cortex', 'ncells:region=Cortex')
- glm: Poisson GLM fitting by IRLS, with rank and separation checks
- decompose: Region-specific slopes and intercepts on the response scale
- anova: Type-II analysis of deviance per model term

Quick Start
-----------
>>> from libsize.modelling import build_design, fit_glm, decompose, anova
>>>
>>> design = build_design(sample_bins, covariates=['region'])
>>> model = fit_glm(*design, sample_id='S1', bin_ids=design.bin_ids)
>>> decompose(model)
>>> anova(model)
"""

from .design import (
    CELL_COVARIATE,
    DesignMatrix,
    build_design,
    model_terms,
    parse_coefficient_name,
    term_of,
)
from .glm import FittedModel, fit_glm
from .decompose import EffectSize, decompose, effect_sizes_frame
from .anova import AnovaRow, anova, anova_frame

__all__ = [
    # Design
    'CELL_COVARIATE',
    'DesignMatrix',
    'build_design',
    'model_terms',
    'parse_coefficient_name',
    'term_of',

    # Fitting
    'FittedModel',
    'fit_glm',

    # Effect sizes
    'EffectSize',
    'decompose',
    'effect_sizes_frame',

    # ANOVA
    'AnovaRow',
    'anova',
    'anova_frame',
]
