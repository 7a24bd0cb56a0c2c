"""
binning.py - Hexagonal binning of transcript detections

Aggregates point-level detections into a regular hexagonal lattice,
one record per (sample, bin). Each bin carries the Gene-type transcript
total, the number of distinct cells and a categorical label for the
region and any extra covariates (e.g. FOV).

Coordinates are sample-local, so every sample gets its own lattice.
"""
from __future__ import annotations

from dataclasses import dataclass
import numbers

import numpy as np
import pandas as pd

from ..data.config import (
    EmptyInputError,
    InvalidGeometryError,
    LibsizeConfig,
    VALID_GEOMETRIES,
    VALID_LABEL_RULES,
)

SQRT3 = np.sqrt(3.0)

BIN_COLUMNS = ["bin_id", "x", "y", "ntranscripts", "ncells", "n_detections"]


@dataclass
class HexLattice:
    """
    Regular hexagonal lattice over a bounding box.

    The lattice is the union of two rectangular lattices: points at
    (i*sx, j*sy) and points offset by half a step, (i+0.5)*sx and
    (j+0.5)*sy, with sy = sqrt(3)*sx. Every lattice point then has six
    neighbours at distance sx and the Voronoi cells are regular hexagons.

    Attributes
    ----------
    x0, y0 : float
        Lower-left corner of the bounding box.
    sx : float
        Horizontal spacing (centre-to-centre distance between bins).
    nx, ny : int
        Lattice extent in steps along x and y.
    """

    x0: float
    y0: float
    sx: float
    nx: int
    ny: int

    @property
    def sy(self) -> float:
        return self.sx * SQRT3

    @property
    def n_slots(self) -> int:
        """Upper bound on bin ids (both sub-lattices)."""
        return 2 * (self.nx + 1) * (self.ny + 1)

    @classmethod
    def from_extent(cls, x: np.ndarray, y: np.ndarray, resolution: int) -> "HexLattice":
        """
        Size a lattice so the x-extent spans about `resolution` bins.

        Falls back to the y-extent when all points share one x, and to a
        unit spacing when all points coincide.
        """
        x0, x1 = float(np.min(x)), float(np.max(x))
        y0, y1 = float(np.min(y)), float(np.max(y))

        if x1 > x0:
            sx = (x1 - x0) / resolution
        elif y1 > y0:
            sx = (y1 - y0) / (resolution * SQRT3)
        else:
            sx = 1.0

        nx = int(np.ceil((x1 - x0) / sx))
        ny = int(np.ceil((y1 - y0) / (sx * SQRT3)))
        return cls(x0=x0, y0=y0, sx=sx, nx=nx, ny=ny)

    def assign(self, x: np.ndarray, y: np.ndarray) -> np.ndarray:
        """
        Assign each point to its nearest lattice centroid.

        Returns integer bin ids. Points equidistant from both candidate
        centroids go to the first sub-lattice.
        """
        u = (np.asarray(x, dtype=float) - self.x0) / self.sx
        v = (np.asarray(y, dtype=float) - self.y0) / self.sy

        # Nearest candidate on each sub-lattice
        i1 = np.floor(u + 0.5)
        j1 = np.floor(v + 0.5)
        i2 = np.floor(u)
        j2 = np.floor(v)

        # Squared distances in units of sx (dy in sx units is sqrt(3) * dv)
        d1 = (u - i1) ** 2 + 3.0 * (v - j1) ** 2
        d2 = (u - i2 - 0.5) ** 2 + 3.0 * (v - j2 - 0.5) ** 2

        width = self.nx + 1
        offset = width * (self.ny + 1)
        id1 = j1 * width + i1
        id2 = offset + j2 * width + i2

        return np.where(d1 <= d2, id1, id2).astype(np.int64)

    def centroids(self, bin_ids: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Centroid coordinates for the given bin ids."""
        bin_ids = np.asarray(bin_ids, dtype=np.int64)
        width = self.nx + 1
        offset = width * (self.ny + 1)

        second = bin_ids >= offset
        local = np.where(second, bin_ids - offset, bin_ids)
        i = local % width
        j = local // width
        shift = np.where(second, 0.5, 0.0)

        cx = self.x0 + (i + shift) * self.sx
        cy = self.y0 + (j + shift) * self.sy
        return cx, cy


def _check_geometry(geometry: str, resolution) -> None:
    if geometry not in VALID_GEOMETRIES:
        raise InvalidGeometryError(f"Unknown bin geometry: '{geometry}'. Use one of {VALID_GEOMETRIES}")
    if isinstance(resolution, bool) or not isinstance(resolution, numbers.Integral):
        raise InvalidGeometryError(f"resolution must be a positive integer, got {resolution!r}")
    if resolution <= 0:
        raise InvalidGeometryError(f"resolution must be a positive integer, got {resolution}")


def hex_lattice(x: np.ndarray, y: np.ndarray, resolution: int) -> tuple[np.ndarray, HexLattice]:
    """
    Assign points to a hexagonal lattice sized from their extent.

    Parameters
    ----------
    x, y : np.ndarray
        Point coordinates (one sample's local frame).
    resolution : int
        Target number of bins along the x-axis.

    Returns
    -------
    bin_ids : np.ndarray
        Integer bin id per point.
    lattice : HexLattice
        Lattice used, for centroid lookups.
    """
    _check_geometry("hex", resolution)
    if len(x) == 0:
        raise EmptyInputError("Cannot build a lattice from zero points")

    lattice = HexLattice.from_extent(x, y, resolution)
    return lattice.assign(x, y), lattice


def _majority_label(bins: np.ndarray, labels: pd.Series) -> pd.Series:
    """Most frequent non-null label per bin; ties go to the smallest label."""
    frame = pd.DataFrame({"_bin": bins, "label": labels.to_numpy(dtype=object)})
    frame = frame[labels.notna().to_numpy()]
    if frame.empty:
        return pd.Series(dtype=object)

    frame["_key"] = frame["label"].astype(str)
    counts = frame.groupby(["_bin", "_key"], sort=False).agg(
        n=("label", "size"),
        label=("label", "first"),
    ).reset_index()
    counts = counts.sort_values(["_bin", "n", "_key"], ascending=[True, False, True], kind="mergesort")
    winners = counts.drop_duplicates("_bin", keep="first")
    return winners.set_index("_bin")["label"]


def _nearest_label(bins: np.ndarray, labels: pd.Series, dist: np.ndarray) -> pd.Series:
    """Label of the annotated detection closest to its bin centroid."""
    frame = pd.DataFrame({"_bin": bins, "label": labels.to_numpy(dtype=object), "dist": dist})
    frame = frame[labels.notna().to_numpy()].reset_index(drop=True)
    if frame.empty:
        return pd.Series(dtype=object)

    # idxmin keeps the first row among equal distances
    nearest = frame.groupby("_bin", sort=False)["dist"].idxmin()
    return pd.Series(frame.loc[nearest.to_numpy(), "label"].to_numpy(), index=nearest.index)


def _restore_dtype(values: pd.Series, source: pd.Series) -> pd.Series:
    """Keep declared categories so unobserved levels survive binning."""
    if isinstance(source.dtype, pd.CategoricalDtype):
        return pd.Categorical(values, categories=source.cat.categories)
    return values


def bin_sample(
    detections: pd.DataFrame,
    resolution: int = 100,
    config: LibsizeConfig | None = None,
    label_rule: str | None = None,
    geometry: str = "hex",
) -> pd.DataFrame:
    """
    Bin one sample's detections into a hexagonal lattice.

    Parameters
    ----------
    detections : pd.DataFrame
        Detections of a single sample.
    resolution : int
        Target number of bins along the x-axis.
    config : LibsizeConfig, optional
        Column names and gene-type settings.
    label_rule : str, optional
        'majority' or 'nearest'. Defaults to config.label_rule.
    geometry : str
        Lattice geometry. Only 'hex' is supported.

    Returns
    -------
    pd.DataFrame
        One row per occupied bin, sorted by bin_id, with columns
        bin_id, x, y, ntranscripts, ncells, n_detections and one column
        per label column (region first).

    Raises
    ------
    InvalidGeometryError
        If geometry is unknown or resolution is not a positive integer.
    EmptyInputError
        If there are no detections.
    """
    config = config or LibsizeConfig()
    label_rule = label_rule or config.label_rule
    _check_geometry(geometry, resolution)
    if label_rule not in VALID_LABEL_RULES:
        raise ValueError(f"Unknown label rule: {label_rule}")
    if len(detections) == 0:
        raise EmptyInputError("No detections to bin")

    x = detections[config.x_col].to_numpy(dtype=float)
    y = detections[config.y_col].to_numpy(dtype=float)
    bin_ids, lattice = hex_lattice(x, y, resolution)

    is_gene = (detections[config.genetype_col] == config.gene_type_value).to_numpy()
    counts = detections[config.counts_col].to_numpy()

    work = pd.DataFrame({
        "_bin": bin_ids,
        "gene_counts": np.where(is_gene, counts, 0),
        "cell": detections[config.cell_col].to_numpy(),
    })

    binned = work.groupby("_bin", sort=True).agg(
        ntranscripts=("gene_counts", "sum"),
        ncells=("cell", "nunique"),
        n_detections=("gene_counts", "size"),
    )

    cx, cy = lattice.centroids(binned.index.to_numpy())
    binned.insert(0, "x", cx)
    binned.insert(1, "y", cy)

    if label_rule == "nearest":
        px, py = lattice.centroids(bin_ids)
        dist = np.hypot(x - px, y - py)

    for col in config.label_columns:
        if col not in detections.columns:
            continue
        source = detections[col]
        if label_rule == "nearest":
            labels = _nearest_label(bin_ids, source, dist)
        else:
            labels = _majority_label(bin_ids, source)
        binned[col] = _restore_dtype(labels.reindex(binned.index), source)

    binned.index.name = "bin_id"
    return binned.reset_index()


def bin_detections(
    detections: pd.DataFrame,
    geometry: str = "hex",
    resolution: int = 100,
    config: LibsizeConfig | None = None,
    label_rule: str | None = None,
    verbose: bool = True,
) -> pd.DataFrame:
    """
    Bin detections of every sample into per-sample hexagonal lattices.

    Parameters
    ----------
    detections : pd.DataFrame
        Detection table with a sample column.
    geometry : str
        Lattice geometry ('hex').
    resolution : int
        Target number of bins along each sample's x-axis.
    config : LibsizeConfig, optional
        Column names and gene-type settings.
    label_rule : str, optional
        'majority' (default) or 'nearest'.
    verbose : bool
        Print a per-sample summary.

    Returns
    -------
    pd.DataFrame
        Bin table with the sample column first.

    Examples
    --------
    >>> bins = bin_detections(detections, resolution=100)
    >>> bins.groupby('sample_id')['ntranscripts'].sum()
    """
    config = config or LibsizeConfig()
    _check_geometry(geometry, resolution)
    if len(detections) == 0:
        raise EmptyInputError("No detections to bin")

    if verbose:
        print(f"\n[Binning] Hexagonal lattice (resolution={resolution})...")

    frames = []
    for sample_id, group in detections.groupby(config.sample_col, sort=True, observed=True):
        binned = bin_sample(group, resolution=resolution, config=config,
                            label_rule=label_rule, geometry=geometry)
        binned.insert(0, config.sample_col, sample_id)
        frames.append(binned)

        if verbose:
            n_unlabelled = binned[config.region_col].isna().sum() if config.region_col in binned else 0
            print(f"  ✓ {sample_id}: {len(group):,} detections → {len(binned):,} bins "
                  f"({n_unlabelled} without region)")

    return pd.concat(frames, ignore_index=True)
