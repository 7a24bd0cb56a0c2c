"""
spatial - Spatial aggregation of transcript detections

binning : Hexagonal lattice binning
    Converts a per-sample point cloud of detections into one record per
    occupied lattice cell, with transcript totals, distinct cell counts
    and majority region labels.

Usage
-----
>>> import libsize as ls
>>>
>>> bins = ls.spatial.bin_detections(detections, resolution=100)
>>> bins[['sample_id', 'x', 'y', 'ntranscripts', 'ncells', 'region']].head()
"""

from .binning import HexLattice, hex_lattice, bin_sample, bin_detections

__all__ = [
    'HexLattice',
    'hex_lattice',
    'bin_sample',
    'bin_detections',
]
