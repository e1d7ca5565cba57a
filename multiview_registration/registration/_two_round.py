"""Two-round global optimization and the entry point selecting a strategy.

The first round optimizes over the strong links, removing inconsistent ones.
If that leaves several connected components, each component becomes one
group and a second round aligns the groups over weak links. The final
transform of a view applies its first-round model, then its second-round
model: ``final = round2 @ round1`` as 4x4 matrices.

Both entry points report the outcome in a `RegistrationResult`. A result
that missed its error targets is still returned, with its status set.
"""
import logging
import math
from dataclasses import dataclass, field
from typing import Collection, Dict, List, Optional, Tuple

import numpy as np

from ..parameters import ConvergenceStrategy, GlobalOptimizationParameters, GlobalOptType
from ._convergence import IterativeConvergenceStrategy, SimpleIterativeConvergenceStrategy
from ._errors import ErrorKind, error_for
from ._global_optimization import GlobalOptResult, compute_iterative, compute_tiles
from ._link_removal import LinkRemovalStrategy, MaxErrorLinkRemoval
from ._models import TransformModel, create_model
from ._point_match import Group, ViewId
from ._point_match_creators import PointMatchCreator
from ._tile_graph import group_of, identify_connected_graphs
from ._weak_links import WeakLinkFactory

logger = logging.getLogger(__name__)


@dataclass
class RegistrationResult:
    """Final 4x4 matrix per view with the status and errors of the strong-link optimization."""
    matrices: Dict[ViewId, np.ndarray]
    status: ErrorKind
    error: float
    min_error: float
    max_error: float
    removed_pairs: List[Tuple[Group, Group]] = field(default_factory=list)
    num_components: int = 1
    weak_error: Optional[float] = None
    """Mean error of the second round, None if there was none."""

    @classmethod
    def from_global_opt(
        cls,
        result: GlobalOptResult,
        removed_pairs: List[Tuple[Group, Group]],
        num_components: int = 1,
    ) -> "RegistrationResult":
        return cls(
            result.matrices(),
            result.status,
            result.error,
            result.min_error,
            result.max_error,
            removed_pairs,
            num_components,
        )

    @property
    def ok(self) -> bool:
        return self.status == ErrorKind.OK

    def raise_for_status(self) -> None:
        """Raise NotConvergedError if the optimization did not meet its error targets."""
        if not self.ok:
            raise error_for(
                self.status,
                f"Global optimization ended with avg error {self.error:.4f} "
                f"(min {self.min_error:.4f}, max {self.max_error:.4f}) "
                f"after removing {len(self.removed_pairs)} links",
            )


def compute_two_round(
    prototype: TransformModel,
    creator: PointMatchCreator,
    strong_convergence: IterativeConvergenceStrategy,
    link_removal: LinkRemovalStrategy,
    weak_link_factory: WeakLinkFactory,
    fixed_views: Collection[ViewId],
    groups: Collection[Group],
    weak_convergence: Optional[ConvergenceStrategy] = None,
    num_threads: int = 1,
) -> Optional[RegistrationResult]:
    """Iterative optimization over strong links, then alignment of the remaining components.

    Args:
        prototype: Model that every tile starts from a copy of
        creator: Point-match creator of the strong links
        strong_convergence: Accepts or rejects the first round
        link_removal: Picks the link to drop when the first round is rejected
        weak_link_factory: Links the components left by the first round
        fixed_views: Views whose tiles keep their model
        groups: Views constrained to one transform
        weak_convergence: Stopping criteria of the second round, unconstrained by default
        num_threads: Threads updating tiles within one iteration

    Returns:
        Matrices and status, or None if the first round had nothing to optimize
    """
    removed_pairs: List[Tuple[Group, Group]] = []
    round1 = compute_iterative(
        prototype, creator, strong_convergence, link_removal, fixed_views, groups,
        removed_pairs=removed_pairs, num_threads=num_threads,
    )
    if round1 is None:
        return None

    views = sorted(round1.tiles)
    components = identify_connected_graphs(round1.tiles[v] for v in views)
    if len(components) == 1:
        logger.info("All views are connected after the first round of global optimization, done")
        return RegistrationResult.from_global_opt(round1, removed_pairs)

    logger.info(f"Identified {len(components)} (dis)connected groups:")
    new_groups = []
    for component in components:
        group = Group(frozenset().union(*(group_of(t, round1.tiles).views for t in component)))
        logger.info(f"[{group}]")
        new_groups.append(group)

    weak_creator = weak_link_factory.create(round1.tiles)
    round2 = compute_tiles(
        prototype,
        weak_creator,
        weak_convergence if weak_convergence is not None else ConvergenceStrategy.unconstrained(),
        fixed_views,
        new_groups,
        num_threads=num_threads,
    )
    result = RegistrationResult.from_global_opt(round1, removed_pairs, len(components))
    if round2 is None:
        logger.warning("Second round of global optimization had nothing to optimize, returning first round")
        return result

    result.matrices = {
        view: round2.tiles[view].model.to_matrix() @ round1.tiles[view].model.to_matrix()
        for view in sorted(round2.tiles)
    }
    result.weak_error = round2.error
    return result


def run_global_optimization(
    params: GlobalOptimizationParameters,
    creator: PointMatchCreator,
    fixed_views: Collection[ViewId],
    groups: Collection[Group] = (),
    weak_link_factory: Optional[WeakLinkFactory] = None,
) -> Optional[RegistrationResult]:
    """Run the optimization strategy selected in `params`.

    Simple strategies never remove links. Iterative ones use the relative and
    absolute thresholds of `params`.

    Returns:
        Matrices and status, or None if no view is connected or fixed

    Raises:
        ValueError: If a two-round strategy is selected without a weak link factory
    """
    prototype = create_model(params.model.value)

    if params.method.is_iterative:
        strong = SimpleIterativeConvergenceStrategy.from_parameters(params)
    else:
        strong = SimpleIterativeConvergenceStrategy(
            params.max_error,
            math.inf,
            math.inf,
            max_iterations=params.max_iterations,
            max_plateau_width=params.max_plateau_width,
        )

    if params.method == GlobalOptType.one_round_simple:
        result = compute_tiles(
            prototype, creator, params.convergence_strategy, fixed_views, groups, num_threads=params.num_threads,
        )
        return None if result is None else RegistrationResult.from_global_opt(result, [])

    if not params.method.is_two_round:
        removed_pairs: List[Tuple[Group, Group]] = []
        result = compute_iterative(
            prototype, creator, strong, MaxErrorLinkRemoval(), fixed_views, groups,
            removed_pairs=removed_pairs, num_threads=params.num_threads,
        )
        return None if result is None else RegistrationResult.from_global_opt(result, removed_pairs)

    if weak_link_factory is None:
        raise ValueError(f"Global optimization method {params.method.value} requires a weak link factory")
    return compute_two_round(
        prototype, creator, strong, MaxErrorLinkRemoval(), weak_link_factory, fixed_views, groups,
        num_threads=params.num_threads,
    )
