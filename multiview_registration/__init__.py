"""Multiview Registration Package.

This package registers multiview microscopy datasets: every view (one
timepoint of one view setup) gets a 3D transform so that all views align in a
common world space.

Main functionality:
- Pairwise matching: Robust model estimation from interest point correspondences
- Global optimization: Consistent transforms for all views from point matches
  or whole-image correlation links
- Iterative link removal: Detection and removal of inconsistent links
- Two-round optimization: Alignment of components left disconnected by the
  strong links over metadata-derived weak links

The package exposes key registration functions at the top level for convenience.
"""

from .parameters import (
    ConvergenceStrategy,
    DescriptorParameters,
    GlobalOptimizationParameters,
    GlobalOptType,
    IcpParameters,
    ModelType,
    RansacParameters,
)
from .registration import (
    compute_iterative,
    compute_pairs,
    compute_tiles,
    compute_two_round,
    create_model,
    ransac,
    run_global_optimization,
)

__all__ = [
    'ConvergenceStrategy',
    'DescriptorParameters',
    'GlobalOptimizationParameters',
    'GlobalOptType',
    'IcpParameters',
    'ModelType',
    'RansacParameters',
    'compute_iterative',
    'compute_pairs',
    'compute_tiles',
    'compute_two_round',
    'create_model',
    'ransac',
    'run_global_optimization',
]
