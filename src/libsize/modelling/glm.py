"""
glm.py - Poisson GLM fitting by iteratively reweighted least squares

Fits E[y] = exp(X @ beta) with Poisson variance (no dispersion) and
returns an immutable FittedModel holding coefficients, fitted values,
residuals and the data needed to refit reduced models.

Aliased columns are detected up front with a column-pivoted QR and
reported as not estimable (NaN) instead of failing on a singular
system. Columns whose rows all have a zero response have no finite
maximum likelihood estimate; they are reported as degenerate.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import logging
import warnings

import numpy as np
import pandas as pd
from scipy import linalg, stats
from scipy.special import gammaln, xlogy

from ..data.config import (
    DegenerateFitWarning,
    EmptyInputError,
    NonConvergenceError,
    RankDeficiencyError,
)

logger = logging.getLogger(__name__)

# Relative pivot size below which a QR column counts as aliased
RANK_TOL = 1e-7
MAX_HALVINGS = 30


@dataclass(frozen=True)
class FittedModel:
    """
    Poisson GLM fitted to one sample's bins.

    Attributes
    ----------
    coefficient_names : list of str
        Names in design column order.
    coefficients : np.ndarray
        Estimates on the log scale (NaN where not estimable).
    standard_errors : np.ndarray
        Wald standard errors (NaN where not estimable).
    fitted : np.ndarray
        Fitted means per bin.
    residuals : np.ndarray
        Raw residuals y - mu.
    pearson_residuals : np.ndarray
        (y - mu) / sqrt(mu).
    deviance_residuals : np.ndarray
        Signed square roots of the unit deviances.
    deviance : float
        Residual deviance.
    pearson_chi2 : float
        Sum of squared Pearson residuals.
    loglik : float
        Poisson log-likelihood at the estimate.
    df_resid : int
        n_obs - rank.
    rank : int
        Number of estimable coefficients.
    n_iter : int
        IRLS iterations used.
    aliased : list of str
        Coefficients dropped as linearly dependent.
    degenerate : list of str
        Coefficients without a finite estimate (all-zero response).
    response, design : np.ndarray
        Data the model was fitted on.
    """

    coefficient_names: list[str]
    coefficients: np.ndarray
    standard_errors: np.ndarray
    fitted: np.ndarray
    residuals: np.ndarray
    pearson_residuals: np.ndarray
    deviance_residuals: np.ndarray
    deviance: float
    pearson_chi2: float
    loglik: float
    df_resid: int
    rank: int
    n_iter: int
    response: np.ndarray
    design: np.ndarray
    aliased: list[str] = field(default_factory=list)
    degenerate: list[str] = field(default_factory=list)
    converged: bool = True
    bin_ids: np.ndarray | None = None
    sample_id: str | None = None
    max_iter: int = 25
    tol: float = 1e-8

    @property
    def n_obs(self) -> int:
        return len(self.response)

    @property
    def aic(self) -> float:
        return -2.0 * self.loglik + 2.0 * self.rank

    @property
    def params(self) -> pd.Series:
        """Coefficients keyed by name."""
        return pd.Series(self.coefficients, index=self.coefficient_names, name="estimate")

    def coefficient(self, name: str, default: float = 0.0) -> float:
        """Coefficient value, or `default` when the model has no such name."""
        try:
            idx = self.coefficient_names.index(name)
        except ValueError:
            return default
        return float(self.coefficients[idx])

    def summary(self) -> pd.DataFrame:
        """Coefficient table with Wald z-tests."""
        with np.errstate(divide="ignore", invalid="ignore"):
            z = self.coefficients / self.standard_errors
        p = 2.0 * stats.norm.sf(np.abs(z))
        return pd.DataFrame({
            "estimate": self.coefficients,
            "std_error": self.standard_errors,
            "z_value": z,
            "p_value": p,
            "aliased": [name in self.aliased for name in self.coefficient_names],
            "degenerate": [name in self.degenerate for name in self.coefficient_names],
        }, index=pd.Index(self.coefficient_names, name="coefficient"))

    def diagnostics(self) -> pd.DataFrame:
        """Per-bin observed, fitted and residual values."""
        index = self.bin_ids if self.bin_ids is not None else np.arange(self.n_obs)
        return pd.DataFrame({
            "observed": self.response,
            "fitted": self.fitted,
            "residual": self.residuals,
            "pearson_residual": self.pearson_residuals,
            "deviance_residual": self.deviance_residuals,
        }, index=pd.Index(index, name="bin_id"))

    def __repr__(self) -> str:
        return (f"FittedModel(sample={self.sample_id}, n_obs={self.n_obs}, "
                f"rank={self.rank}/{len(self.coefficient_names)}, "
                f"deviance={self.deviance:.2f}, n_iter={self.n_iter})")


def poisson_deviance(y: np.ndarray, mu: np.ndarray) -> float:
    """Residual deviance of a Poisson fit."""
    return float(2.0 * np.sum(xlogy(y, y / mu) - (y - mu)))


def poisson_loglik(y: np.ndarray, mu: np.ndarray) -> float:
    return float(np.sum(xlogy(y, mu) - mu - gammaln(y + 1.0)))


def estimable_columns(design: np.ndarray, rank_tol: float = RANK_TOL) -> np.ndarray:
    """
    Indices of a maximal linearly independent set of columns.

    Uses a column-pivoted QR; returned indices are in original order.
    """
    n_obs, n_cols = design.shape
    if n_cols == 0:
        return np.array([], dtype=int)

    _, r, piv = linalg.qr(design, mode="economic", pivoting=True)
    diag = np.abs(np.diag(r))
    if diag.size == 0 or diag[0] == 0:
        return np.array([], dtype=int)

    rank = int(np.sum(diag > rank_tol * diag[0]))
    return np.sort(piv[:rank])


def degenerate_columns(design: np.ndarray, response: np.ndarray) -> np.ndarray:
    """Indices of columns whose supporting rows all have a zero response."""
    support = design != 0
    has_support = support.any(axis=0)
    positive = (response > 0)[:, None]
    all_zero = ~(support & positive).any(axis=0)
    return np.flatnonzero(has_support & all_zero)


def _validate_inputs(response, design, coefficient_names):
    y = np.asarray(response, dtype=float)
    X = np.asarray(design, dtype=float)

    if y.ndim != 1:
        raise ValueError(f"response must be 1-D, got shape {y.shape}")
    if X.ndim != 2:
        raise ValueError(f"design must be 2-D, got shape {X.shape}")
    if X.shape[0] != len(y):
        raise ValueError(f"design has {X.shape[0]} rows but response has {len(y)}")
    if len(coefficient_names) != X.shape[1]:
        raise ValueError(f"{len(coefficient_names)} names for {X.shape[1]} design columns")
    if len(y) == 0:
        raise EmptyInputError("Cannot fit a model to zero observations")
    if not np.all(np.isfinite(y)) or np.any(y < 0):
        raise ValueError("response must be finite and non-negative")
    if not np.all(np.isfinite(X)):
        raise ValueError("design contains non-finite values")
    return y, X


def _irls(y: np.ndarray, X: np.ndarray, max_iter: int, tol: float):
    """
    Core IRLS loop on a full-rank design.

    Returns (beta, mu, deviance, n_iter, converged).
    """
    n_cols = X.shape[1]
    mu = y + 0.1
    eta = np.log(mu)
    beta = np.zeros(n_cols)
    dev_old = poisson_deviance(y, mu)

    if n_cols == 0:
        mu = np.ones_like(y)
        return beta, mu, poisson_deviance(y, mu), 0, True

    for n_iter in range(1, max_iter + 1):
        z = eta + (y - mu) / mu
        sw = np.sqrt(mu)
        beta_new = linalg.lstsq(X * sw[:, None], z * sw)[0]

        with np.errstate(over="ignore", invalid="ignore"):
            eta_new = X @ beta_new
            mu_new = np.exp(eta_new)
            dev = poisson_deviance(y, mu_new)

        # Step halving on divergence or a deviance increase
        halvings = 0
        while n_iter > 1 and (not np.isfinite(dev) or dev > dev_old + tol * (abs(dev_old) + 0.1)):
            if halvings >= MAX_HALVINGS:
                break
            beta_new = 0.5 * (beta_new + beta)
            with np.errstate(over="ignore", invalid="ignore"):
                eta_new = X @ beta_new
                mu_new = np.exp(eta_new)
                dev = poisson_deviance(y, mu_new)
            halvings += 1

        if not np.isfinite(dev):
            return beta_new, mu_new, dev, n_iter, False

        beta, eta, mu = beta_new, eta_new, mu_new
        if abs(dev - dev_old) / (abs(dev) + 0.1) < tol:
            return beta, mu, dev, n_iter, True
        dev_old = dev

    return beta, mu, dev, max_iter, False


def fit_glm(
    response,
    design,
    coefficient_names,
    max_iter: int = 25,
    tol: float = 1e-8,
    sample_id: str | None = None,
    strict_rank: bool = False,
    bin_ids=None,
    warn: bool = True,
) -> FittedModel:
    """
    Fit a log-link Poisson GLM by IRLS.

    Parameters
    ----------
    response : array-like
        Non-negative counts (n_obs,).
    design : array-like
        Covariate matrix (n_obs x n_coefficients). No intercept is added.
    coefficient_names : sequence of str
        One name per design column.
    max_iter : int
        IRLS iteration cap.
    tol : float
        Convergence tolerance on the relative deviance change.
    sample_id : str, optional
        Carried into the result and error messages.
    strict_rank : bool
        Raise RankDeficiencyError instead of warning on aliased columns.
    bin_ids : array-like, optional
        Row labels for diagnostics.
    warn : bool
        Issue rank and degeneracy warnings. Refits of nested models
        inside the ANOVA engine pass False.

    Returns
    -------
    FittedModel

    Raises
    ------
    NonConvergenceError
        If the deviance has not settled after `max_iter` iterations.
    RankDeficiencyError
        Only with strict_rank=True.

    Examples
    --------
    >>> design = build_design(bins)
    >>> model = fit_glm(*design, sample_id='S1')
    >>> model.summary()
    """
    names = list(coefficient_names)
    y, X = _validate_inputs(response, design, names)
    n_cols = X.shape[1]

    keep = estimable_columns(X)
    kept = set(keep.tolist())
    aliased = [names[j] for j in range(n_cols) if j not in kept]
    if aliased:
        error = RankDeficiencyError(aliased, sample_id=sample_id)
        if strict_rank:
            raise error
        if warn:
            warnings.warn(error, stacklevel=2)

    Xe = X[:, keep]
    degenerate = [names[keep[j]] for j in degenerate_columns(Xe, y)]
    if degenerate and warn:
        warnings.warn(
            f"No finite estimate for {', '.join(degenerate)} "
            f"(all supporting bins have zero transcripts)",
            DegenerateFitWarning,
            stacklevel=2,
        )

    beta, mu, dev, n_iter, converged = _irls(y, Xe, max_iter, tol)

    coefficients = np.full(n_cols, np.nan)
    coefficients[keep] = beta

    if not converged:
        raise NonConvergenceError(n_iter, dev, coefficients, names, sample_id=sample_id)
    logger.debug(f"IRLS converged in {n_iter} iterations (sample={sample_id}, deviance={dev:.6g})")

    standard_errors = np.full(n_cols, np.nan)
    if len(keep):
        info = Xe.T @ (Xe * mu[:, None])
        cov = linalg.pinvh(info)
        standard_errors[keep] = np.sqrt(np.clip(np.diag(cov), 0.0, None))

    raw = y - mu
    unit_dev = 2.0 * (xlogy(y, y / mu) - raw)
    rank = len(keep)

    return FittedModel(
        coefficient_names=names,
        coefficients=coefficients,
        standard_errors=standard_errors,
        fitted=mu,
        residuals=raw,
        pearson_residuals=raw / np.sqrt(mu),
        deviance_residuals=np.sign(raw) * np.sqrt(np.clip(unit_dev, 0.0, None)),
        deviance=dev,
        pearson_chi2=float(np.sum(raw ** 2 / mu)),
        loglik=poisson_loglik(y, mu),
        df_resid=len(y) - rank,
        rank=rank,
        n_iter=n_iter,
        response=y,
        design=X,
        aliased=aliased,
        degenerate=degenerate,
        converged=True,
        bin_ids=None if bin_ids is None else np.asarray(bin_ids),
        sample_id=sample_id,
        max_iter=max_iter,
        tol=tol,
    )
