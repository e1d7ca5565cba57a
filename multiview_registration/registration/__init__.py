"""Registration core for multiview datasets.

This module provides pairwise matching of interest points between views and
the global optimization of one transform per view (or group of views) from
the resulting point matches or from whole-image correlation links.
"""

from ._convergence import ErrorStatistic, IterativeConvergenceStrategy, SimpleIterativeConvergenceStrategy
from ._descriptors import CandidateExtractor, DescriptorCandidateExtractor, IdCandidateExtractor
from ._errors import (
    DisconnectedError,
    ErrorKind,
    IllDefinedDataError,
    NoModelFoundError,
    NotConvergedError,
    NotEnoughDataError,
    RegistrationError,
)
from ._global_optimization import GlobalOptResult, compute_iterative, compute_models, compute_tiles
from ._link_removal import LinkRemovalStrategy, MaxErrorLinkRemoval
from ._models import AffineModel, RigidModel, TransformModel, TranslationModel, create_model, matrix_to_model
from ._pairwise import (
    CenterOfMassPairwise,
    CorrespondenceStore,
    IterativeClosestPointPairwise,
    PairwiseMatcher,
    PairwiseResult,
    RansacPairwise,
    build_matching_tasks,
    combine_group_points,
    compute_pairs,
    split_group_results,
)
from ._point_match import (
    Group,
    GroupedInterestPoint,
    InterestPoint,
    Link,
    Point,
    PointMatch,
    ViewId,
    merge_overlapping_groups,
)
from ._point_match_creators import (
    ImageCorrelationPointMatchCreator,
    InterestPointMatchCreator,
    PointMatchCreator,
    links_from_offsets,
)
from ._ransac import RansacResult, ransac
from ._tile_graph import Tile, TileConfiguration, link_error_report, set_link_weight
from ._two_round import RegistrationResult, compute_two_round, run_global_optimization
from ._weak_links import MetadataWeakLinkFactory, WeakLinkFactory, WeakLinkPointMatchCreator

__all__ = [
    'AffineModel',
    'CandidateExtractor',
    'CenterOfMassPairwise',
    'CorrespondenceStore',
    'DescriptorCandidateExtractor',
    'DisconnectedError',
    'ErrorKind',
    'ErrorStatistic',
    'GlobalOptResult',
    'Group',
    'GroupedInterestPoint',
    'IdCandidateExtractor',
    'IllDefinedDataError',
    'ImageCorrelationPointMatchCreator',
    'InterestPoint',
    'InterestPointMatchCreator',
    'IterativeClosestPointPairwise',
    'IterativeConvergenceStrategy',
    'Link',
    'LinkRemovalStrategy',
    'MaxErrorLinkRemoval',
    'MetadataWeakLinkFactory',
    'NoModelFoundError',
    'NotConvergedError',
    'NotEnoughDataError',
    'PairwiseMatcher',
    'PairwiseResult',
    'Point',
    'PointMatch',
    'PointMatchCreator',
    'RansacPairwise',
    'RansacResult',
    'RegistrationError',
    'RegistrationResult',
    'RigidModel',
    'SimpleIterativeConvergenceStrategy',
    'Tile',
    'TileConfiguration',
    'TransformModel',
    'TranslationModel',
    'ViewId',
    'WeakLinkFactory',
    'WeakLinkPointMatchCreator',
    'build_matching_tasks',
    'combine_group_points',
    'compute_iterative',
    'compute_models',
    'compute_pairs',
    'compute_tiles',
    'compute_two_round',
    'create_model',
    'link_error_report',
    'links_from_offsets',
    'matrix_to_model',
    'merge_overlapping_groups',
    'ransac',
    'run_global_optimization',
    'set_link_weight',
    'split_group_results',
]
