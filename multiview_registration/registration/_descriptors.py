"""Correspondence candidate extraction.

Candidates feed the robust estimation in `_ransac`. Two extractors exist:
- `DescriptorCandidateExtractor` describes every detection by the relative
  positions of its nearest neighbors. Searching a few more neighbors than a
  descriptor uses and comparing all neighbor subsets makes the descriptor
  tolerant to single missing or extra detections.
- `IdCandidateExtractor` pairs detections that carry the same id, which is how
  precomputed correspondences are loaded.
"""
import itertools
import logging
from abc import ABC, abstractmethod
from typing import List, Sequence

import numpy as np
from scipy.spatial import cKDTree

from ..parameters import DescriptorParameters
from ._point_match import InterestPoint, Point, PointMatch
from ._typing_utils import FloatArray

logger = logging.getLogger(__name__)


class CandidateExtractor(ABC):
    """Turns two detection lists into correspondence candidates."""

    @abstractmethod
    def extract(
        self,
        points_a: Sequence[InterestPoint],
        points_b: Sequence[InterestPoint],
    ) -> List[PointMatch]:
        """Candidates from A to B; p1 of every match links to a detection of A."""
        pass

    @abstractmethod
    def get_name(self) -> str:
        pass


def _candidate(a: InterestPoint, b: InterestPoint) -> PointMatch:
    return PointMatch(Point.from_interest_point(a), Point.from_interest_point(b))


class IdCandidateExtractor(CandidateExtractor):
    """Pairs detections with equal ids."""

    def extract(self, points_a, points_b):
        by_id = {}
        for b in points_b:
            by_id.setdefault(b.id, b)
        return [_candidate(a, by_id[a.id]) for a in points_a if a.id in by_id]

    def get_name(self) -> str:
        return "matching_ids"


class DescriptorCandidateExtractor(CandidateExtractor):
    """Redundant, translation invariant local geometric descriptors."""

    def __init__(self, params: DescriptorParameters = DescriptorParameters()):
        self.params = params
        num_searched = params.num_neighbors + params.redundancy
        self._subsets = np.array(
            list(itertools.combinations(range(num_searched), params.num_neighbors))
        )

    def get_name(self) -> str:
        return "geometric_descriptor"

    def describe(self, positions: FloatArray) -> FloatArray:
        """Descriptors of all positions.

        Returns:
            Array of shape (num_points, num_subsets, num_neighbors * 3)
        """
        num_searched = self.params.num_neighbors + self.params.redundancy
        tree = cKDTree(positions)
        # the first hit is always the point itself
        _, idx = tree.query(positions, k=num_searched + 1)
        neighbors = positions[idx[:, 1:]] - positions[:, None, :]
        subsets = neighbors[:, self._subsets, :]
        return subsets.reshape(positions.shape[0], self._subsets.shape[0], -1)

    def extract(self, points_a, points_b):
        min_points = self.params.min_num_points
        if len(points_a) < min_points or len(points_b) < min_points:
            logger.debug(
                f"Not enough detections for descriptors (|A|={len(points_a)}, "
                f"|B|={len(points_b)}, required {min_points})"
            )
            return []

        desc_a = self.describe(np.array([p.position for p in points_a]))
        desc_b = self.describe(np.array([p.position for p in points_b]))

        candidates = []
        for i, da in enumerate(desc_a):
            # squared differences between every subset of a and every subset of every b
            diff = da[:, None, None, :] - desc_b[None, :, :, :]
            differences = np.min(np.sum(diff * diff, axis=-1), axis=(0, 2))

            if differences.shape[0] > 1:
                order = np.argpartition(differences, 1)[:2]
                order = order[np.argsort(differences[order])]
                best, second = differences[order[0]], differences[order[1]]
            else:
                order = np.array([0])
                best, second = differences[0], np.inf

            if best < self.params.difference_threshold and best * self.params.ratio_of_distance < second:
                candidates.append(_candidate(points_a[i], points_b[int(order[0])]))

        logger.debug(f"Extracted {len(candidates)} candidates from {len(points_a)} x {len(points_b)} detections")
        return candidates
