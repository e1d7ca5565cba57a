"""Robust model estimation from correspondence candidates.

The estimator follows the classic random sample consensus scheme, extended by
- an iterative refit of every promising model on its inliers until the inlier
  set is stable,
- a consistency filter that drops inliers whose residual is far above the
  median residual,
- a retry on candidates without one-to-many collisions when the filter leaves
  too few inliers,
- a multi-consensus mode that extracts several disjoint inlier sets.

All geometry runs on numpy arrays copied from the candidates, so the
candidate points themselves are never modified.
"""
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Hashable, List, Optional, Sequence, Tuple

import numpy as np

from ..parameters import RansacParameters
from ._errors import ErrorKind, error_for
from ._models import TransformModel
from ._point_match import Point, PointMatch, match_arrays
from ._typing_utils import BoolArray, FloatArray

logger = logging.getLogger(__name__)

# Upper bound on refit/retest rounds of a single hypothesis
MAX_REFIT_ROUNDS = 100
# Lower bound of the consistency filter threshold, relative to max_epsilon,
# so that exact data is not split by floating point noise
FILTER_FLOOR_FACTOR = 1e-6


@dataclass
class RansacResult:
    """Outcome of one robust estimation."""
    status: ErrorKind
    model: Optional[TransformModel] = None
    inliers: List[PointMatch] = field(default_factory=list)
    consensus_sets: List[List[PointMatch]] = field(default_factory=list)
    cost: float = float("nan")
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status == ErrorKind.OK


def _inlier_mask(
    model: TransformModel,
    p: FloatArray,
    q: FloatArray,
    max_epsilon: float,
) -> BoolArray:
    return model.residuals(p, q) < max_epsilon


def _accepted(num_inliers: int, num_candidates: int, min_inlier_ratio: float, min_num_inliers: int) -> bool:
    return num_inliers >= min_num_inliers and num_inliers / num_candidates >= min_inlier_ratio


def _weighted_cost(model: TransformModel, p: FloatArray, q: FloatArray, w: FloatArray) -> float:
    return float(np.sum(model.residuals(p, q) * w) / np.sum(w))


def _refine_hypothesis(
    model: TransformModel,
    p: FloatArray,
    q: FloatArray,
    w: FloatArray,
    mask: BoolArray,
    max_epsilon: float,
) -> Tuple[bool, BoolArray]:
    """Refit on the inliers and retest until the inlier set no longer changes."""
    for _ in range(MAX_REFIT_ROUNDS):
        status = model.fit_arrays(p[mask], q[mask], w[mask])
        if status != ErrorKind.OK:
            return False, mask
        new_mask = _inlier_mask(model, p, q, max_epsilon)
        if np.array_equal(new_mask, mask):
            return True, mask
        mask = new_mask
        if not mask.any():
            return False, mask
    return True, mask


def sample_consensus(
    model: TransformModel,
    p: FloatArray,
    q: FloatArray,
    w: FloatArray,
    params: RansacParameters,
    min_num_inliers: int,
    rng: np.random.Generator,
) -> Tuple[ErrorKind, Optional[BoolArray]]:
    """Plain RANSAC over arrays. On success `model` holds the best model.

    Returns:
        Tuple of (status, inlier mask or None)
    """
    n = p.shape[0]
    if n < model.min_num_matches or n < min_num_inliers:
        return ErrorKind.NOT_ENOUGH_DATA, None

    candidate = model.copy()
    best: Optional[TransformModel] = None
    best_mask: Optional[BoolArray] = None
    best_count = -1
    best_cost = float("inf")
    ill_defined = 0

    for _ in range(params.num_iterations):
        sample = rng.choice(n, size=model.min_num_matches, replace=False)
        status = candidate.fit_arrays(p[sample], q[sample], w[sample])
        if status != ErrorKind.OK:
            ill_defined += 1
            continue

        mask = _inlier_mask(candidate, p, q, params.max_epsilon)
        if not _accepted(int(mask.sum()), n, params.min_inlier_ratio, min_num_inliers):
            continue

        stable, mask = _refine_hypothesis(candidate, p, q, w, mask, params.max_epsilon)
        count = int(mask.sum())
        if not stable or not _accepted(count, n, params.min_inlier_ratio, min_num_inliers):
            continue

        cost = _weighted_cost(candidate, p[mask], q[mask], w[mask])
        if count > best_count or (count == best_count and cost < best_cost):
            best = candidate.copy()
            best.cost = cost
            best_mask = mask.copy()
            best_count = count
            best_cost = cost

    if ill_defined:
        logger.debug(f"{ill_defined} of {params.num_iterations} RANSAC samples were degenerate")

    if best is None:
        return ErrorKind.NO_MODEL_FOUND, None

    model.set(best)
    return ErrorKind.OK, best_mask


def consistency_filter(
    model: TransformModel,
    p: FloatArray,
    q: FloatArray,
    w: FloatArray,
    max_trust: float,
    min_num_inliers: int,
    floor: float = 0.0,
) -> Tuple[ErrorKind, BoolArray]:
    """Drop matches with a residual above median * max_trust, refitting until stable.

    Returns:
        Tuple of (status, mask of the kept matches)
    """
    mask = np.ones(p.shape[0], dtype=bool)
    while True:
        num_inliers = int(mask.sum())
        status = model.fit_arrays(p[mask], q[mask], w[mask])
        if status != ErrorKind.OK:
            return status, mask

        residuals = model.residuals(p, q)
        threshold = max(float(np.median(residuals[mask])) * max_trust, floor)
        model.cost = _weighted_cost(model, p[mask], q[mask], w[mask])

        new_mask = mask & (residuals <= threshold)
        if int(new_mask.sum()) >= num_inliers:
            break
        mask = new_mask

    if int(mask.sum()) < min_num_inliers:
        return ErrorKind.NOT_ENOUGH_DATA, mask
    return ErrorKind.OK, mask


def _point_key(point: Point) -> Hashable:
    payload = point.payload
    if payload is not None and hasattr(payload, "id"):
        return ("id", getattr(payload, "view", None), payload.id)
    if payload is not None:
        return ("obj", id(payload))
    return ("pos", tuple(point.local.tolist()))


def remove_inconsistent_correspondences(candidates: Sequence[PointMatch]) -> List[PointMatch]:
    """Drop every candidate whose source or target point takes part in more than one candidate."""
    source_counts = Counter(_point_key(m.p1) for m in candidates)
    target_counts = Counter(_point_key(m.p2) for m in candidates)
    return [
        m for m in candidates
        if source_counts[_point_key(m.p1)] == 1 and target_counts[_point_key(m.p2)] == 1
    ]


def _single_consensus(
    candidates: Sequence[PointMatch],
    model: TransformModel,
    params: RansacParameters,
    min_num_inliers: int,
    rng: np.random.Generator,
) -> Tuple[ErrorKind, List[PointMatch], str]:
    """RANSAC, consistency filter and the collision-free retry on one candidate pool."""
    pool = list(candidates)
    p, q, w = match_arrays(pool)
    floor = params.max_epsilon * FILTER_FLOOR_FACTOR

    status, mask = sample_consensus(model, p, q, w, params, min_num_inliers, rng)
    if status != ErrorKind.OK:
        return status, [], f"{status.value} after RANSAC of {len(pool)} candidates"

    sub = np.flatnonzero(mask)
    status, keep = consistency_filter(model, p[sub], q[sub], w[sub], params.max_trust, min_num_inliers, floor)
    if status == ErrorKind.OK:
        return status, [pool[i] for i in sub[keep]], ""

    # the filter left too few inliers, retry once without ambiguous candidates
    consistent = remove_inconsistent_correspondences(pool)
    logger.debug(
        f"Consistency filter kept {int(keep.sum())}/{min_num_inliers} inliers, "
        f"retrying on {len(consistent)} of {len(pool)} collision-free candidates"
    )
    p, q, w = match_arrays(consistent)
    status, mask = sample_consensus(model, p, q, w, params, min_num_inliers, rng)
    if status != ErrorKind.OK:
        return status, [], f"{status.value} after RANSAC of {len(consistent)} collision-free candidates"

    sub = np.flatnonzero(mask)
    status, keep = consistency_filter(model, p[sub], q[sub], w[sub], params.max_trust, min_num_inliers, floor)
    if status != ErrorKind.OK:
        return (
            ErrorKind.NO_MODEL_FOUND,
            [],
            f"model found but not enough remaining inliers ({int(keep.sum())}/{min_num_inliers}) "
            f"after filtering {len(consistent)} candidates",
        )
    return status, [consistent[i] for i in sub[keep]], ""


def ransac(
    candidates: Sequence[PointMatch],
    model: TransformModel,
    params: RansacParameters,
    rng: Optional[np.random.Generator] = None,
    raise_on_failure: bool = False,
) -> RansacResult:
    """Estimate `model` robustly from correspondence candidates.

    Matches are fit from `p1.local` to `p2.world`. On success `model` holds
    the best model and its cost (weighted mean inlier residual).

    Args:
        candidates: Correspondence candidates
        model: Model instance to fit, modified in place
        params: RANSAC parameters
        rng: Random generator, a generator seeded with params.seed by default
        raise_on_failure: Raise the matching RegistrationError instead of
            returning a failed result

    Returns:
        RansacResult with status, inliers and, in multi-consensus mode, all
        disjoint inlier sets
    """
    if rng is None:
        rng = np.random.default_rng(params.seed)

    min_num_inliers = params.min_matches_for(model.min_num_matches)
    num_candidates = len(candidates)

    if num_candidates < min_num_inliers:
        result = RansacResult(
            ErrorKind.NOT_ENOUGH_DATA,
            message=f"Not enough correspondences found {num_candidates}, should be at least {min_num_inliers}",
        )
    else:
        status, inliers, message = _single_consensus(candidates, model, params, min_num_inliers, rng)
        if status != ErrorKind.OK:
            result = RansacResult(status, message=message)
        else:
            best_model = model.copy()
            sets = [inliers]
            if params.multi_consensus:
                sets = _collect_consensus_sets(candidates, inliers, model, params, min_num_inliers, rng)
                model.set(best_model)

            all_inliers = [m for s in sets for m in s]
            ratio = len(all_inliers) / num_candidates
            result = RansacResult(
                ErrorKind.OK,
                model=best_model,
                inliers=all_inliers,
                consensus_sets=sets,
                cost=best_model.cost,
                message=(
                    f"Remaining inliers after RANSAC: {len(all_inliers)} of {num_candidates} "
                    f"({ratio:.0%}) in {len(sets)} set(s) with average error {best_model.cost:.4f}"
                ),
            )

    if raise_on_failure and not result.ok:
        raise error_for(result.status, result.message)
    return result


def _collect_consensus_sets(
    candidates: Sequence[PointMatch],
    first: List[PointMatch],
    model: TransformModel,
    params: RansacParameters,
    min_num_inliers: int,
    rng: np.random.Generator,
) -> List[List[PointMatch]]:
    """Keep extracting inlier sets from what the previous sets left over."""
    sets = [first]
    used = {id(m) for m in first}
    remaining = [m for m in candidates if id(m) not in used]

    while len(remaining) >= min_num_inliers:
        status, inliers, _ = _single_consensus(remaining, model.copy(), params, min_num_inliers, rng)
        if status != ErrorKind.OK or not inliers:
            break
        sets.append(inliers)
        used = {id(m) for m in inliers}
        remaining = [m for m in remaining if id(m) not in used]
        logger.debug(f"Found consensus set {len(sets)} with {len(inliers)} inliers, {len(remaining)} candidates left")

    return sets
