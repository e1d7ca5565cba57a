"""Point-match creators turn pairwise results into matches between tiles.

A creator reports the views it touches, assigns weights to its matches and
inserts every match into both endpoint tiles. The global optimization always
calls `assign_weights` before `assign_point_matches`.
"""
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Mapping, Sequence, Set, Tuple

import numpy as np

from ._models import TranslationModel
from ._pairwise import PairwiseResult
from ._point_match import Group, Link, Point, PointMatch, ViewId
from ._tile_graph import Tile, connect_tiles

logger = logging.getLogger(__name__)


class PointMatchCreator(ABC):

    @abstractmethod
    def all_views(self) -> Set[ViewId]:
        pass

    @abstractmethod
    def assign_weights(
        self,
        tiles: Mapping[ViewId, Tile],
        groups: Sequence[Group],
        fixed_views: Set[ViewId],
    ) -> None:
        pass

    @abstractmethod
    def assign_point_matches(
        self,
        tiles: Mapping[ViewId, Tile],
        groups: Sequence[Group],
        fixed_views: Set[ViewId],
    ) -> None:
        pass


class InterestPointMatchCreator(PointMatchCreator):
    """Matches from the inliers of pairwise interest point matching.

    Every call of `assign_point_matches` inserts fresh copies of the inliers,
    so the same results can feed several optimizations.
    """

    def __init__(self, results: Sequence[PairwiseResult]):
        self.results = list(results)
        self.weights: Dict[int, float] = {}

    def all_views(self):
        views = set()
        for r in self.results:
            views.add(r.view_a)
            views.add(r.view_b)
        return views

    def assign_weights(self, tiles, groups, fixed_views):
        """Down-weight views that contribute few inliers to a group.

        Per view, the ratio of its inliers to the inliers of its group is
        compared with the largest ratio in that group. A view with half of the
        maximal ratio gets weight 2. Views outside groups get weight 1. The
        matches of a pair get the larger weight of its two views.
        """
        group_count: Dict[Group, int] = {g: 0 for g in groups}
        view_count: Dict[ViewId, int] = {v: 0 for v in tiles}
        view_group: Dict[ViewId, Group] = {}

        for r in self.results:
            n = len(r.inliers)
            view_count[r.view_a] = view_count.get(r.view_a, 0) + n
            view_count[r.view_b] = view_count.get(r.view_b, 0) + n
            for group in groups:
                for view in (r.view_a, r.view_b):
                    if view in group:
                        group_count[group] += n
                        view_group[view] = group

        ratio: Dict[ViewId, float] = {}
        max_group_ratio: Dict[Group, float] = {}
        for view in tiles:
            group = view_group.get(view)
            if group is None or group_count[group] == 0:
                ratio[view] = 1.0
                continue
            ratio[view] = view_count[view] / group_count[group]
            max_group_ratio[group] = max(max_group_ratio.get(group, -1.0), ratio[view])

        for view in sorted(tiles):
            group = view_group.get(view)
            max_ratio = max_group_ratio.get(group, 1.0) if group is not None else 1.0
            if ratio[view] > 0:
                relative = max_ratio / ratio[view]
            else:
                # a view without inliers contributes no matches
                relative = 1.0
            logger.debug(f"{view}: {ratio[view]:.4f} of {max_ratio:.4f} >>> {relative:.4f}")
            ratio[view] = relative

        self.weights = {
            i: max(ratio.get(r.view_a, 1.0), ratio.get(r.view_b, 1.0))
            for i, r in enumerate(self.results)
        }

    def assign_point_matches(self, tiles, groups, fixed_views):
        for i, r in enumerate(self.results):
            if not r.inliers:
                continue
            tile_a, tile_b = tiles[r.view_a], tiles[r.view_b]
            if tile_a is tile_b:
                continue
            weight = self.weights.get(i, 1.0)
            matches = [
                PointMatch(
                    Point(m.p1.local, payload=m.p1.payload),
                    Point(m.p2.local, payload=m.p2.payload),
                    m.weight * weight,
                )
                for m in r.inliers
            ]
            connect_tiles(tile_a, tile_b, matches)


def link_point_matches(link: Link) -> List[PointMatch]:
    """The corners of the link's bounding box matched with their counterparts in the second group."""
    corners = link.corners()
    return [
        PointMatch(Point(corner), Point(link.transform.apply_inverse(corner)), link.quality)
        for corner in corners
    ]


class ImageCorrelationPointMatchCreator(PointMatchCreator):
    """Matches from whole-image correlation links with at least `min_quality`."""

    def __init__(self, links: Sequence[Link], min_quality: float = -float("inf")):
        self.links = list(links)
        self.min_quality = min_quality

    def all_views(self):
        views = set()
        for link in self.links:
            views.update(link.first.views)
            views.update(link.second.views)
        return views

    def assign_weights(self, tiles, groups, fixed_views):
        # the link quality is the weight
        pass

    def assign_point_matches(self, tiles, groups, fixed_views):
        for link in self.links:
            if link.quality < self.min_quality:
                logger.debug(f"Skipping link [{link.first}] <-> [{link.second}] with quality {link.quality:.3f}")
                continue
            # all views of a group map to the same tile
            tile_a = tiles[link.first.first()]
            tile_b = tiles[link.second.first()]
            if tile_a is tile_b:
                logger.warning(f"Link [{link.first}] <-> [{link.second}] connects a tile to itself, skipping")
                continue
            connect_tiles(tile_a, tile_b, link_point_matches(link))


def links_from_offsets(
    offsets: Mapping[Tuple[ViewId, ViewId], Sequence[float]],
    bounding_box: Tuple[Sequence[float], Sequence[float]],
    quality: float = 1.0,
) -> List[Link]:
    """Translation links from precomputed stitching offsets (position of B minus position of A)."""
    links = []
    lo = np.asarray(bounding_box[0], dtype=np.float64)
    hi = np.asarray(bounding_box[1], dtype=np.float64)
    for (view_a, view_b), offset in offsets.items():
        transform = TranslationModel()
        transform.translation = np.asarray(offset, dtype=np.float64).copy()
        links.append(Link(Group.of(view_a), Group.of(view_b), (lo, hi), transform, quality))
    return links
