"""
anova.py - Type-II analysis of deviance for fitted Poisson models

Each term T is tested by comparing two nested refits on the model's own
design columns:

    reduced   : every term that does not contain T
    augmented : reduced + T

Terms that contain T (its interactions) are absent from both, so the
test respects marginality and does not depend on column order.
Terms are recovered from the coefficient names, so any model built with
the design naming convention can be analysed.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass

import numpy as np
import pandas as pd
from scipy import stats

from .design import term_label, term_of
from .glm import FittedModel, fit_glm, poisson_deviance


@dataclass(frozen=True)
class AnovaRow:
    """
    Test of one model term.

    Attributes
    ----------
    term : str
        Term label, e.g. 'ncells', 'region', 'ncells:region'.
    statistic : float
        Deviance difference (LR) or F statistic.
    df : int
        Numerator degrees of freedom (coefficients the term adds).
    df_resid : int
        Residual degrees of freedom of the full model.
    p_value : float
    test : str
        'LR' or 'F'.
    """

    term: str
    statistic: float
    df: int
    df_resid: int
    p_value: float
    test: str = "LR"

    def to_dict(self) -> dict:
        return asdict(self)


def term_columns(coefficient_names: list[str]) -> dict[tuple[str, ...], list[int]]:
    """Group design columns by the term their names belong to."""
    groups: dict[tuple[str, ...], list[int]] = {}
    for idx, name in enumerate(coefficient_names):
        groups.setdefault(term_of(name), []).append(idx)
    return groups


def _contains(term: tuple[str, ...], other: tuple[str, ...]) -> bool:
    return set(term).issubset(other)


class _NestedFits:
    """Deviance and rank of column-subset refits, cached by term set."""

    def __init__(self, model: FittedModel, groups: dict):
        self.model = model
        self.groups = groups
        self._cache: dict[frozenset, tuple[float, int]] = {}

    def __call__(self, terms) -> tuple[float, int]:
        key = frozenset(terms)
        if key not in self._cache:
            self._cache[key] = self._fit(key)
        return self._cache[key]

    def _fit(self, terms: frozenset) -> tuple[float, int]:
        names = self.model.coefficient_names
        cols = [j for t in terms for j in self.groups[t]]
        # Fixed column order keeps refits identical under design permutations
        cols = sorted(cols, key=lambda j: names[j])
        y = self.model.response

        if not cols:
            return poisson_deviance(y, np.ones_like(y)), 0

        sub = fit_glm(
            y,
            self.model.design[:, cols],
            [names[j] for j in cols],
            max_iter=self.model.max_iter,
            tol=self.model.tol,
            sample_id=self.model.sample_id,
            warn=False,
        )
        return sub.deviance, sub.rank


def anova(model: FittedModel, test: str = "LR") -> list[AnovaRow]:
    """
    Type-II analysis of deviance, one row per model term.

    The model has no intercept, so the first categorical main effect
    (region) is tested against ``0 + ncells``. That row also tests
    whether the overall level differs from zero and is significant for
    almost any data. Differences between regions show up in the
    ``ncells:region`` row and in the effect sizes.

    Parameters
    ----------
    model : FittedModel
        Fitted Poisson model.
    test : str
        'LR' for a likelihood-ratio chi-square test (dispersion fixed at
        1), or 'F' to scale by the Pearson dispersion estimate.

    Returns
    -------
    list of AnovaRow
        Ordered by term order, then label. No residual row.

    Raises
    ------
    NonConvergenceError
        If a nested refit does not converge.
    """
    if test not in ("LR", "F"):
        raise ValueError(f"Unknown test: '{test}'. Use 'LR' or 'F'.")

    groups = term_columns(model.coefficient_names)
    ordered = sorted(groups, key=lambda t: (len(t), term_label(t)))
    nested = _NestedFits(model, groups)

    dispersion = model.pearson_chi2 / model.df_resid if model.df_resid > 0 else np.nan

    rows = []
    for term in ordered:
        reduced = [t for t in groups if not _contains(term, t)]
        dev_reduced, rank_reduced = nested(reduced)
        dev_full, rank_full = nested(reduced + [term])

        df = rank_full - rank_reduced
        lr = max(dev_reduced - dev_full, 0.0)

        if df <= 0:
            statistic, p_value = np.nan, np.nan
        elif test == "LR":
            statistic = lr
            p_value = float(stats.chi2.sf(lr, df))
        else:
            statistic = (lr / df) / dispersion
            p_value = float(stats.f.sf(statistic, df, model.df_resid))

        rows.append(AnovaRow(
            term=term_label(term),
            statistic=float(statistic),
            df=int(df),
            df_resid=int(model.df_resid),
            p_value=p_value,
            test=test,
        ))
    return rows


def anova_frame(rows: list[AnovaRow], sample_id: str | None = None) -> pd.DataFrame:
    """Row-per-term table; adds a sample column when `sample_id` is given."""
    columns = ["term", "statistic", "df", "df_resid", "p_value", "test"]
    frame = pd.DataFrame([r.to_dict() for r in rows], columns=columns)
    if sample_id is not None:
        frame.insert(0, "sample_id", sample_id)
    return frame
