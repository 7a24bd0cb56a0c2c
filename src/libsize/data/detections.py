"""
detections.py - Validation of transcript detection tables

Detection tables arrive fully materialized from an external loader.
This module checks that the columns the core needs are present and
well-formed, and splits the table into independent per-sample frames.
"""

import logging

import numpy as np
import pandas as pd

from .config import ColumnNotFoundError, EmptyInputError, LibsizeConfig, ValidationError

logger = logging.getLogger(__name__)


class DetectionValidator:
    """Handles validation of detection tables."""

    def __init__(self, config: LibsizeConfig):
        self.config = config

    def required_columns(self) -> list[str]:
        cfg = self.config
        cols = [
            cfg.sample_col,
            cfg.x_col,
            cfg.y_col,
            cfg.genetype_col,
            cfg.counts_col,
            cfg.cell_col,
        ]
        cols += cfg.label_columns
        return cols

    def validate_columns(self, df: pd.DataFrame, df_name: str = "detections") -> None:
        """Validate that required columns exist."""
        missing = [col for col in self.required_columns() if col not in df.columns]
        if missing:
            raise ColumnNotFoundError(missing[0], df_name)

        # Gene and level are carried for downstream reporting only
        for optional in (self.config.gene_col, self.config.level_col):
            if optional not in df.columns:
                logger.debug(f"Optional column '{optional}' not in {df_name}")

    def validate_values(self, df: pd.DataFrame) -> None:
        """Validate coordinates and counts."""
        cfg = self.config

        counts = pd.to_numeric(df[cfg.counts_col], errors="coerce")
        if counts.isna().any():
            raise ValidationError(f"Column '{cfg.counts_col}' has {counts.isna().sum()} missing or non-numeric values")
        if (counts < 0).any():
            raise ValidationError(f"Column '{cfg.counts_col}' has {(counts < 0).sum()} negative values")

        for col in (cfg.x_col, cfg.y_col):
            coords = pd.to_numeric(df[col], errors="coerce").to_numpy(dtype=float)
            if not np.all(np.isfinite(coords)):
                raise ValidationError(f"Column '{col}' has {(~np.isfinite(coords)).sum()} non-finite coordinates")

        if df[cfg.sample_col].isna().any():
            raise ValidationError(f"Column '{cfg.sample_col}' has missing sample identifiers")

    def validate(self, df: pd.DataFrame, df_name: str = "detections") -> None:
        if len(df) == 0:
            raise EmptyInputError(f"No rows in {df_name}")
        self.validate_columns(df, df_name)
        self.validate_values(df)


def validate_detections(detections: pd.DataFrame, config: LibsizeConfig | None = None) -> pd.DataFrame:
    """
    Validate a detection table and return a normalized copy.

    Parameters
    ----------
    detections : pd.DataFrame
        One row per transcript detection.
    config : LibsizeConfig, optional
        Column names. Defaults to LibsizeConfig().

    Returns
    -------
    pd.DataFrame
        Copy with numeric coordinates/counts and string sample ids.

    Raises
    ------
    EmptyInputError
        If the table has no rows.
    ColumnNotFoundError
        If a required column is missing.
    ValidationError
        If counts are negative/missing or coordinates are non-finite.
    """
    config = config or LibsizeConfig()
    DetectionValidator(config).validate(detections)

    df = detections.copy()
    df[config.sample_col] = df[config.sample_col].astype(str)
    df[config.x_col] = df[config.x_col].astype(float)
    df[config.y_col] = df[config.y_col].astype(float)
    df[config.counts_col] = pd.to_numeric(df[config.counts_col])
    return df


def split_by_sample(detections: pd.DataFrame, config: LibsizeConfig | None = None) -> dict[str, pd.DataFrame]:
    """
    Split a table into per-sample frames, in sorted sample order.

    Coordinates are sample-local, so nothing downstream mixes samples.
    """
    config = config or LibsizeConfig()
    col = config.sample_col
    if col not in detections.columns:
        raise ColumnNotFoundError(col, "detections")

    return {
        str(sample_id): group.reset_index(drop=True)
        for sample_id, group in detections.groupby(col, sort=True, observed=True)
    }
