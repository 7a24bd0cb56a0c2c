"""
conftest.py - Shared test fixtures for libsize

pytest reads this file before running any test, and every fixture
defined here is injected into tests that ask for it by name.

Two kinds of fake data are built here:
  - detection tables : point-level transcripts, as a loader would deliver them
  - bin tables       : already-binned counts drawn from a known Poisson model,
                       so fitted effect sizes can be checked against the truth
"""

import numpy as np
import pandas as pd
import pytest

# ===========================================================================
# Constants — generating parameters of the fake data
# ===========================================================================

SAMPLES = ["S1", "S2", "S3"]
N_BINS = 500  # bins per sample in the bin-level fixtures

# log-scale parameters: ntranscripts ~ Poisson(exp(a + b * ncells))
CORTEX = {"log_intercept": np.log(200), "log_slope": 0.05}
FIBRE = {"log_intercept": np.log(50), "log_slope": 0.01}


# ===========================================================================
# Bin-level fixtures
# ===========================================================================


def _simulate_sample_bins(rng, sample_id, n_bins, params):
    """
    Draw one sample's bins.

    params maps region -> {'log_intercept', 'log_slope'}; bins are split
    evenly between regions, ncells ~ Poisson(10).
    """
    regions = list(params)
    region = np.array([regions[i % len(regions)] for i in range(n_bins)])
    ncells = rng.poisson(10, n_bins)

    a = np.array([params[r]["log_intercept"] for r in region])
    b = np.array([params[r]["log_slope"] for r in region])
    ntranscripts = rng.poisson(np.exp(a + b * ncells))

    return pd.DataFrame(
        {
            "sample_id": sample_id,
            "bin_id": np.arange(n_bins),
            "x": rng.uniform(0, 1000, n_bins),
            "y": rng.uniform(0, 1000, n_bins),
            "ntranscripts": ntranscripts,
            "ncells": ncells,
            "n_detections": ntranscripts,
            "region": region,
        }
    )


@pytest.fixture
def simulate_bins():
    """
    Factory fixture: call it to get a bin table.

    >>> bins = simulate_bins(params={...}, n_bins=1000, samples=['S1'], seed=1)
    """

    def _factory(params=None, n_bins=N_BINS, samples=("S1",), seed=42):
        params = params or {"Cortex": CORTEX, "Fibre": FIBRE}
        rng = np.random.default_rng(seed)
        frames = [_simulate_sample_bins(rng, sid, n_bins, params) for sid in samples]
        return pd.concat(frames, ignore_index=True)

    return _factory


@pytest.fixture
def three_sample_bins(simulate_bins):
    """3 samples × 500 bins, Cortex and Fibre, with the constants above."""
    return simulate_bins(samples=SAMPLES, seed=7)


@pytest.fixture
def sample_bins(simulate_bins):
    """A single sample's bins (S1)."""
    return simulate_bins(samples=("S1",), seed=11)


# ===========================================================================
# Detection-level fixtures
# ===========================================================================


def _simulate_sample_detections(rng, sample_id, n_cells=300):
    """
    Cells scattered over a 1000 × 500 field.

    - left half is 'Cortex' (dense, ~30 transcripts/cell)
    - right half is 'Fibre' (sparse, ~10 transcripts/cell)
    - a strip at the top is unannotated (region = None)
    - ~5% background detections have no cell
    - ~3% of detections are negative control probes
    """
    cx = rng.uniform(0, 1000, n_cells)
    cy = rng.uniform(0, 500, n_cells)
    rates = np.where(cx < 500, 30, 10)

    n_per_cell = rng.poisson(rates)
    cell = np.repeat([f"{sample_id}_c{i}" for i in range(n_cells)], n_per_cell).astype(object)
    x = np.repeat(cx, n_per_cell) + rng.normal(0, 5, n_per_cell.sum())
    y = np.repeat(cy, n_per_cell) + rng.normal(0, 5, n_per_cell.sum())

    n_bg = max(1, int(0.05 * len(x)))
    x = np.concatenate([x, rng.uniform(0, 1000, n_bg)])
    y = np.concatenate([y, rng.uniform(0, 500, n_bg)])
    cell = np.concatenate([cell, np.array([None] * n_bg, dtype=object)])

    n = len(x)
    genetype = np.where(rng.random(n) < 0.03, "NegProbe", "Gene")
    region = np.where(x < 500, "Cortex", "Fibre").astype(object)
    region[y > 480] = None

    return pd.DataFrame(
        {
            "sample_id": sample_id,
            "x": x,
            "y": y,
            "gene": rng.choice(["GeneA", "GeneB", "GeneC"], n),
            "genetype": genetype,
            "counts": 1,
            "cell": cell,
            "region": region,
            "level": 1,
            "fov": np.where(y < 250, 1, 2),
        }
    )


@pytest.fixture
def detections():
    """Two samples of point-level detections with known region layout."""
    rng = np.random.default_rng(3)
    frames = [_simulate_sample_detections(rng, sid) for sid in ("S1", "S2")]
    return pd.concat(frames, ignore_index=True)


@pytest.fixture
def make_detections():
    """
    Factory for small hand-written detection tables.

    Each argument is a list with one entry per detection; missing
    columns get sensible defaults.
    """

    def _factory(x, y, region=None, cell=None, genetype=None, counts=None, sample_id="S1"):
        n = len(x)
        return pd.DataFrame(
            {
                "sample_id": sample_id,
                "x": np.asarray(x, dtype=float),
                "y": np.asarray(y, dtype=float),
                "gene": "GeneA",
                "genetype": genetype if genetype is not None else ["Gene"] * n,
                "counts": counts if counts is not None else [1] * n,
                "cell": cell if cell is not None else [f"c{i}" for i in range(n)],
                "region": region if region is not None else ["A"] * n,
                "level": 1,
            }
        )

    return _factory
