from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from .registration._models import TranslationModel
from .registration._point_match import Group, InterestPoint, Link, Point, PointMatch, ViewId

# Ground truth positions of three views arranged in an equilateral triangle
TRIANGLE_POSITIONS = {
    ViewId(0, 0): (0.0, 0.0, 0.0),
    ViewId(0, 1): (100.0, 0.0, 0.0),
    ViewId(0, 2): (50.0, 86.6, 0.0),
}

DEFAULT_BOUNDING_BOX = (np.zeros(3), np.array([511.0, 511.0, 511.0]))


def translation_link(
    view_a: ViewId,
    view_b: ViewId,
    offset: Sequence[float],
    quality: float = 1.0,
    bounding_box: Tuple[np.ndarray, np.ndarray] = DEFAULT_BOUNDING_BOX,
) -> Link:
    """A link placing view_b at `offset` relative to view_a."""
    transform = TranslationModel()
    transform.translation = np.asarray(offset, dtype=np.float64).copy()
    return Link(Group.of(view_a), Group.of(view_b), bounding_box, transform, quality)


def links_between(
    positions: Mapping[ViewId, Sequence[float]],
    pairs: Optional[Sequence[Tuple[ViewId, ViewId]]] = None,
    corrupted: Optional[Tuple[ViewId, ViewId]] = None,
    corruption: Sequence[float] = (10_000.0, 0.0, 0.0),
) -> List[Link]:
    """Exact translation links between views at known positions.

    Args:
        positions: Ground truth position per view
        pairs: Which views to link, all pairs by default
        corrupted: A pair whose offset is shifted by `corruption`
        corruption: Offset added to the corrupted link
    """
    views = sorted(positions)
    if pairs is None:
        pairs = [(a, b) for i, a in enumerate(views) for b in views[i + 1:]]
    links = []
    for a, b in pairs:
        offset = np.asarray(positions[b], dtype=np.float64) - np.asarray(positions[a], dtype=np.float64)
        if corrupted is not None and (a, b) == corrupted:
            offset = offset + np.asarray(corruption, dtype=np.float64)
        links.append(translation_link(a, b, offset))
    return links


def random_affine(rng: np.random.Generator, scale: float = 0.1, max_translation: float = 50.0) -> np.ndarray:
    """A well conditioned 4x4 affine transform close to the identity."""
    matrix = np.eye(4)
    matrix[:3, :3] += rng.uniform(-scale, scale, size=(3, 3))
    matrix[:3, 3] = rng.uniform(-max_translation, max_translation, size=3)
    return matrix


def synthetic_candidates(
    matrix: np.ndarray,
    num_inliers: int,
    num_outliers: int,
    rng: np.random.Generator,
    extent: float = 100.0,
    outlier_offset: float = 50.0,
) -> Tuple[List[PointMatch], List[PointMatch]]:
    """Candidates from points mapped exactly by `matrix`, plus outliers with a large residual.

    Returns:
        Tuple of (all candidates shuffled, the inlier candidates)
    """
    source = rng.uniform(0, extent, size=(num_inliers + num_outliers, 3))
    target = source @ matrix[:3, :3].T + matrix[:3, 3]
    # push the outliers far off in a random direction
    directions = rng.normal(size=(num_outliers, 3))
    directions /= np.linalg.norm(directions, axis=1, keepdims=True)
    target[num_inliers:] += directions * rng.uniform(outlier_offset, 2 * outlier_offset, size=(num_outliers, 1))

    candidates = []
    for i, (s, t) in enumerate(zip(source, target)):
        a = InterestPoint(i, s)
        b = InterestPoint(i, t)
        candidates.append(PointMatch(Point.from_interest_point(a), Point.from_interest_point(b)))

    inliers = candidates[:num_inliers]
    order = rng.permutation(len(candidates))
    return [candidates[i] for i in order], inliers


def synthetic_views(
    offsets: Mapping[ViewId, Sequence[float]],
    num_points: int,
    rng: np.random.Generator,
    label: str = "beads",
    extent: float = 200.0,
    num_extra: int = 0,
) -> Dict[ViewId, Dict[str, List[InterestPoint]]]:
    """Interest points of views that all observe the same bead cloud.

    A view at offset o sees the world point x at local coordinate x - o. Each
    view additionally gets `num_extra` random detections of its own.
    """
    world = rng.uniform(0, extent, size=(num_points, 3))
    views = {}
    for view, offset in offsets.items():
        local = world - np.asarray(offset, dtype=np.float64)
        if num_extra:
            local = np.vstack([local, rng.uniform(0, extent, size=(num_extra, 3))])
        views[view] = {label: [InterestPoint(i, p) for i, p in enumerate(local)]}
    return views
