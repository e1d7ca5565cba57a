"""Weak links between components that the strong links left disconnected.

After the first round of a two-round optimization every connected component
is aligned internally, but components are not aligned to each other. A
`WeakLinkFactory` turns the first-round tiles into a point-match creator that
links the components with approximate, metadata-derived correspondences.
"""
import logging
from abc import ABC, abstractmethod
from typing import Dict, Mapping, Optional, Tuple

import numpy as np

from ._point_match import Point, PointMatch, ViewId, box_corners
from ._point_match_creators import PointMatchCreator
from ._tile_graph import Tile, connect_tiles
from ._typing_utils import FloatArray

logger = logging.getLogger(__name__)

BoundingBox = Tuple[FloatArray, FloatArray]


class WeakLinkPointMatchCreator(PointMatchCreator):
    """Creates matches in the space produced by the first round.

    Points are mapped through the first-round models, so the second round
    estimates a correction on top of them.
    """

    def __init__(self, round1_tiles: Mapping[ViewId, Tile]):
        self.round1_tiles = round1_tiles

    def all_views(self):
        return set(self.round1_tiles)

    def assign_weights(self, tiles, groups, fixed_views):
        pass


class WeakLinkFactory(ABC):

    @abstractmethod
    def create(self, round1_tiles: Mapping[ViewId, Tile]) -> WeakLinkPointMatchCreator:
        pass


def _world_box(matrix: FloatArray, box: BoundingBox) -> BoundingBox:
    corners = box_corners(*box)
    world = corners @ matrix[:3, :3].T + matrix[:3, 3]
    return world.min(axis=0), world.max(axis=0)


class MetadataWeakLinkPointMatchCreator(WeakLinkPointMatchCreator):
    """Links every two views of different components that overlap under their metadata transforms.

    The corners of the overlap are mapped back into each view and then
    through that view's first-round model, giving eight matches per pair.
    """

    def __init__(
        self,
        round1_tiles: Mapping[ViewId, Tile],
        metadata_transforms: Mapping[ViewId, FloatArray],
        bounding_boxes: Mapping[ViewId, BoundingBox],
    ):
        super().__init__(round1_tiles)
        self.metadata_transforms = {v: np.asarray(m, dtype=np.float64) for v, m in metadata_transforms.items()}
        self.bounding_boxes = bounding_boxes

    def _overlap(self, view_a: ViewId, view_b: ViewId) -> Optional[BoundingBox]:
        lo_a, hi_a = _world_box(self.metadata_transforms[view_a], self.bounding_boxes[view_a])
        lo_b, hi_b = _world_box(self.metadata_transforms[view_b], self.bounding_boxes[view_b])
        lo = np.maximum(lo_a, lo_b)
        hi = np.minimum(hi_a, hi_b)
        if np.any(hi <= lo):
            return None
        return lo, hi

    def _to_round1(self, view: ViewId, world: FloatArray) -> FloatArray:
        matrix = self.metadata_transforms[view]
        local = np.linalg.solve(matrix[:3, :3], (world - matrix[:3, 3]).T).T
        return self.round1_tiles[view].model.apply_many(local)

    def assign_point_matches(self, tiles, groups, fixed_views):
        views = sorted(v for v in self.round1_tiles if v in self.metadata_transforms and v in self.bounding_boxes)
        missing = len(self.round1_tiles) - len(views)
        if missing:
            logger.warning(f"{missing} views have no metadata transform or bounding box and get no weak links")

        num_links = 0
        for i, view_a in enumerate(views):
            for view_b in views[i + 1:]:
                tile_a, tile_b = tiles[view_a], tiles[view_b]
                if tile_a is tile_b:
                    continue
                overlap = self._overlap(view_a, view_b)
                if overlap is None:
                    continue
                corners = box_corners(*overlap)
                points_a = self._to_round1(view_a, corners)
                points_b = self._to_round1(view_b, corners)
                connect_tiles(tile_a, tile_b, [PointMatch(Point(a), Point(b)) for a, b in zip(points_a, points_b)])
                num_links += 1

        logger.info(f"Created {num_links} weak links from metadata overlaps")


class MetadataWeakLinkFactory(WeakLinkFactory):
    """Weak links from the metadata (e.g. stage) transforms and the bounding boxes of the views."""

    def __init__(
        self,
        metadata_transforms: Mapping[ViewId, FloatArray],
        bounding_boxes: Mapping[ViewId, BoundingBox],
    ):
        self.metadata_transforms: Dict[ViewId, FloatArray] = dict(metadata_transforms)
        self.bounding_boxes: Dict[ViewId, BoundingBox] = dict(bounding_boxes)

    def create(self, round1_tiles):
        return MetadataWeakLinkPointMatchCreator(round1_tiles, self.metadata_transforms, self.bounding_boxes)
