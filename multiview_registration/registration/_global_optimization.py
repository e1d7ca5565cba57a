"""Global optimization of per-view transforms over the tile graph.

The single round builds the tile graph from a point-match creator, fixes the
tiles of the fixed views, pre-aligns and minimizes. The iterative variant
repeats this while its convergence strategy rejects the result, removing one
link per repetition.

Failures to optimize are reported in the result, not raised: when no tile
is left to optimize the functions log and return None, and the caller
decides how to proceed.
"""
import logging
from dataclasses import dataclass
from typing import Collection, Dict, List, Optional, Sequence, Set, Tuple

import numpy as np
import pandas as pd

from ..benchmarking_util import debug_timing
from ..parameters import ConvergenceStrategy
from ._convergence import IterativeConvergenceStrategy
from ._errors import ErrorKind, error_for
from ._link_removal import LinkRemovalStrategy
from ._models import TransformModel
from ._point_match import Group, ViewId, merge_overlapping_groups
from ._point_match_creators import PointMatchCreator
from ._tile_graph import Tile, TileConfiguration, assign_views_to_tiles, link_error_report

logger = logging.getLogger(__name__)


@dataclass
class GlobalOptResult:
    """Tiles per view after an optimization, with the configuration they were optimized in."""
    tiles: Dict[ViewId, Tile]
    configuration: TileConfiguration
    groups: List[Group]
    status: ErrorKind = ErrorKind.OK
    unaligned: int = 0

    @property
    def error(self) -> float:
        return self.configuration.error

    @property
    def min_error(self) -> float:
        return self.configuration.min_error

    @property
    def max_error(self) -> float:
        return self.configuration.max_error

    @property
    def models(self) -> Dict[ViewId, TransformModel]:
        """Model per view. Views of one group share the same model instance."""
        return {view: tile.model for view, tile in self.tiles.items()}

    def matrices(self) -> Dict[ViewId, np.ndarray]:
        return {view: tile.model.to_matrix() for view, tile in self.tiles.items()}

    def link_errors(self) -> pd.DataFrame:
        return link_error_report(self.tiles)

    def raise_for_status(self) -> None:
        """Raise NotConvergedError if the optimization did not meet its error targets."""
        if self.status != ErrorKind.OK:
            raise error_for(
                self.status,
                f"Global optimization ended with avg error {self.error:.4f} "
                f"(min {self.min_error:.4f}, max {self.max_error:.4f})",
            )


def init_global_opt(
    prototype: TransformModel,
    creator: PointMatchCreator,
    fixed_views: Collection[ViewId],
    groups: Collection[Group],
) -> Tuple[Dict[ViewId, Tile], List[Group]]:
    """Merge groups, create the tiles and insert the weighted point matches."""
    merged = merge_overlapping_groups(groups)

    views: Set[ViewId] = set(creator.all_views())
    for group in merged:
        views.update(group.views)

    tiles = assign_views_to_tiles(prototype, sorted(views), merged)
    fixed = set(fixed_views)
    creator.assign_weights(tiles, merged, fixed)
    creator.assign_point_matches(tiles, merged, fixed)
    return tiles, merged


def add_and_fix_tiles(
    views: Sequence[ViewId],
    tiles: Dict[ViewId, Tile],
    fixed_views: Collection[ViewId],
    groups: Sequence[Group],
) -> TileConfiguration:
    """Configuration of all connected or fixed tiles. Tiles without connections cannot be optimized and are left out."""
    configuration = TileConfiguration()
    fixed_views = set(fixed_views)

    candidates: List[Tile] = []
    for view in views:
        tile = tiles[view]
        if view in fixed_views and not configuration.is_fixed(tile):
            group = Group.containing(view, groups)
            if group is not None:
                logger.info(f"Fixing group-tile [{group}]")
            else:
                logger.info(f"Fixing view-tile [{view}]")
            configuration.fix_tile(tile)
        candidates.append(tile)

    for tile in dict.fromkeys(candidates):
        if tile.connected_tiles or configuration.is_fixed(tile):
            configuration.add_tile(tile)
    return configuration


def _log_models(views: Sequence[ViewId], tiles: Dict[ViewId, Tile]) -> None:
    logger.info("Transformation models:")
    for view in views:
        logger.info(f"{view}: {tiles[view].model!r}")


def _log_errors(configuration: TileConfiguration, prototype: TransformModel) -> None:
    logger.info(
        f"Global optimization of {len(configuration.tiles)} view-tiles (model={prototype.name}): "
        f"avg error {configuration.error:.4f}, min error {configuration.min_error:.4f}, "
        f"max error {configuration.max_error:.4f}"
    )


def _pre_align(configuration: TileConfiguration) -> int:
    unaligned = len(configuration.pre_align())
    if unaligned > 0:
        logger.warning(f"Pre-aligned all tiles but {unaligned}")
    else:
        logger.info("Pre-aligned all tiles")
    return unaligned


def compute_tiles(
    prototype: TransformModel,
    creator: PointMatchCreator,
    convergence: ConvergenceStrategy,
    fixed_views: Collection[ViewId],
    groups: Collection[Group],
    num_threads: int = 1,
) -> Optional[GlobalOptResult]:
    """Single round of global optimization.

    Args:
        prototype: Model that every tile starts from a copy of
        creator: Inserts the point matches between tiles
        convergence: Stopping criteria of the minimization
        fixed_views: Views whose tiles keep their model
        groups: Views constrained to one transform, overlapping groups are merged
        num_threads: Threads updating tiles within one iteration

    Returns:
        The optimized tiles, or None if no tile is connected or fixed
    """
    tiles, merged = init_global_opt(prototype, creator, fixed_views, groups)
    views = sorted(tiles)
    configuration = add_and_fix_tiles(views, tiles, fixed_views, merged)

    if not configuration.tiles:
        logger.warning("There are no connected tiles, cannot do an optimization")
        return None

    with debug_timing("Global optimization", logger):
        unaligned = _pre_align(configuration)
        status = configuration.optimize(convergence, num_threads=num_threads)

    _log_errors(configuration, prototype)
    _log_models(views, tiles)
    return GlobalOptResult(tiles, configuration, merged, status, unaligned)


def compute_models(
    prototype: TransformModel,
    creator: PointMatchCreator,
    convergence: ConvergenceStrategy,
    fixed_views: Collection[ViewId],
    groups: Collection[Group],
    num_threads: int = 1,
) -> Optional[Dict[ViewId, TransformModel]]:
    result = compute_tiles(prototype, creator, convergence, fixed_views, groups, num_threads)
    return None if result is None else result.models


def compute_iterative(
    prototype: TransformModel,
    creator: PointMatchCreator,
    iterative_convergence: IterativeConvergenceStrategy,
    link_removal: LinkRemovalStrategy,
    fixed_views: Collection[ViewId],
    groups: Collection[Group],
    removed_pairs: Optional[List[Tuple[Group, Group]]] = None,
    num_threads: int = 1,
) -> Optional[GlobalOptResult]:
    """Global optimization that drops the worst link until the result is accepted.

    Ends when `iterative_convergence` accepts the configuration, or when no
    link can be removed any more. In the latter case the last result is
    returned with status NOT_CONVERGED. An accepted configuration keeps the
    status of its last minimization, NOT_CONVERGED if the mean error is above
    the `max_error` of the strategy.

    Args:
        removed_pairs: If given, the group pairs of removed links are appended to it
    """
    tiles, merged = init_global_opt(prototype, creator, fixed_views, groups)
    views = sorted(tiles)
    configuration = add_and_fix_tiles(views, tiles, fixed_views, merged)

    if not configuration.tiles:
        logger.warning("There are no connected tiles, cannot do an optimization")
        return None

    convergence = iterative_convergence.convergence
    # every round but the last removes an edge
    max_rounds = sum(len(t.connected_tiles) for t in configuration.tiles) // 2 + 1
    status = ErrorKind.OK
    unaligned = 0

    for round_index in range(max_rounds):
        with debug_timing(f"Global optimization round {round_index + 1}", logger):
            unaligned = _pre_align(configuration)
            status = configuration.optimize(convergence, num_threads=num_threads)
        _log_errors(configuration, prototype)

        if iterative_convergence.is_converged(configuration):
            # accepted, the status of the last optimization stands
            break

        removed = link_removal.remove_link(configuration, tiles)
        if removed is None:
            status = ErrorKind.NOT_CONVERGED
            break
        if removed_pairs is not None:
            removed_pairs.append(removed)
    else:
        status = ErrorKind.NOT_CONVERGED

    _log_models(views, tiles)
    return GlobalOptResult(tiles, configuration, merged, status, unaligned)
