"""Views, groups, points and point matches.

The matcher reads immutable `InterestPoint`s produced by detectors. Everything
the optimizer moves around is a `Point`, a small mutable pair of local and
world coordinates that optionally links back to the object it was created
from. The optimizer never touches that payload.
"""
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from ._typing_utils import FloatArray, as_point

logger = logging.getLogger(__name__)


@dataclass(frozen=True, order=True)
class ViewId:
    """One (timepoint, view setup) acquisition."""
    timepoint: int
    setup: int

    def __str__(self) -> str:
        return f"tpId={self.timepoint} setupId={self.setup}"


@dataclass(frozen=True)
class Group:
    """Views that are constrained to share exactly one transform."""
    views: frozenset = field(default_factory=frozenset)

    def __post_init__(self):
        if not isinstance(self.views, frozenset):
            object.__setattr__(self, "views", frozenset(self.views))

    @classmethod
    def of(cls, *views: ViewId) -> "Group":
        return cls(frozenset(views))

    def __iter__(self):
        return iter(sorted(self.views))

    def __len__(self) -> int:
        return len(self.views)

    def __contains__(self, view: object) -> bool:
        return view in self.views

    def __str__(self) -> str:
        return ", ".join(str(v) for v in self)

    def overlaps(self, other: "Group") -> bool:
        return not self.views.isdisjoint(other.views)

    def union(self, other: "Group") -> "Group":
        return Group(self.views | other.views)

    def first(self) -> ViewId:
        """Smallest view of the group, any view maps to the same tile."""
        return min(self.views)

    @staticmethod
    def containing(view: ViewId, groups: Iterable["Group"]) -> Optional["Group"]:
        for group in groups:
            if view in group:
                return group
        return None


def remove_empty_groups(groups: Iterable[Group]) -> List[Group]:
    return [g for g in groups if len(g) > 0]


def merge_overlapping_groups(groups: Iterable[Group]) -> List[Group]:
    """Merge groups transitively until no two of them share a view.

    {v1,v2} and {v2,v3} become {v1,v2,v3}. Empty groups are dropped.

    Returns:
        Disjoint groups, sorted by their smallest view
    """
    non_empty = remove_empty_groups(groups)
    merged: List[Group] = []
    for group in non_empty:
        current = group
        remaining = []
        for existing in merged:
            if existing.overlaps(current):
                current = current.union(existing)
            else:
                remaining.append(existing)
        remaining.append(current)
        merged = remaining

    if len(merged) < len(non_empty):
        logger.info(f"Merged overlapping groups into {len(merged)} groups")

    return sorted(merged, key=lambda g: g.first())


@dataclass(frozen=True, eq=False)
class InterestPoint:
    """A detection: id, local (pixel) coordinate and, once registered, a world coordinate."""
    id: int
    local: FloatArray
    world: Optional[FloatArray] = None

    def __post_init__(self):
        local = as_point(self.local)
        local.flags.writeable = False
        object.__setattr__(self, "local", local)
        if self.world is not None:
            world = as_point(self.world)
            world.flags.writeable = False
            object.__setattr__(self, "world", world)

    @property
    def position(self) -> FloatArray:
        """The coordinate used for matching: world if registered, local otherwise."""
        return self.local if self.world is None else self.world

    def clone(self) -> "InterestPoint":
        # __post_init__ copies the coordinate arrays
        return replace(self)


@dataclass(frozen=True, eq=False)
class GroupedInterestPoint(InterestPoint):
    """A detection of one view, matched as part of a group of views."""
    view: Optional[ViewId] = None


class Point:
    """Mutable working coordinate pair used by models and tiles.

    `local` is the coordinate in the owning tile's frame, `world` is `local`
    transformed by the owning tile's current model.
    """
    __slots__ = ("local", "world", "payload")

    def __init__(self, local: Any, world: Any = None, payload: Any = None):
        self.local = as_point(local)
        self.world = self.local.copy() if world is None else as_point(world)
        self.payload = payload

    @classmethod
    def from_interest_point(cls, ip: InterestPoint) -> "Point":
        # as_point copies, so the detection's arrays are never shared
        return cls(ip.position, payload=ip)

    def apply(self, model) -> None:
        self.world = model.apply(self.local)

    def __repr__(self) -> str:
        return f"Point(local={self.local.tolist()}, world={self.world.tolist()})"


class PointMatch:
    """Weighted correspondence from `p1` (this side) to `p2` (the other side)."""
    __slots__ = ("p1", "p2", "weight")

    def __init__(self, p1: Point, p2: Point, weight: float = 1.0):
        if weight < 0:
            raise ValueError(f"PointMatch weight must be >= 0, got {weight}")
        self.p1 = p1
        self.p2 = p2
        self.weight = float(weight)

    @property
    def distance(self) -> float:
        return float(np.linalg.norm(self.p1.world - self.p2.world))

    def flip(self) -> "PointMatch":
        """The reverse match, sharing both Point objects and the weight."""
        return PointMatch(self.p2, self.p1, self.weight)

    def __repr__(self) -> str:
        return f"PointMatch({self.p1!r} -> {self.p2!r}, weight={self.weight})"


def flip_all(matches: Iterable[PointMatch]) -> List[PointMatch]:
    return [m.flip() for m in matches]


def match_arrays(matches: Sequence[PointMatch]) -> Tuple[FloatArray, FloatArray, FloatArray]:
    """Stack matches into (p1 local, p2 world, weights) arrays for fitting."""
    if len(matches) == 0:
        empty = np.zeros((0, 3), dtype=np.float64)
        return empty, empty.copy(), np.zeros(0, dtype=np.float64)
    p = np.array([m.p1.local for m in matches], dtype=np.float64)
    q = np.array([m.p2.world for m in matches], dtype=np.float64)
    w = np.array([m.weight for m in matches], dtype=np.float64)
    return p, q, w


@dataclass(frozen=True)
class CorrespondingInterestPoint:
    """Entry of the persistent correspondence store, seen from one detection."""
    detection_id: int
    corresponding_view: ViewId
    corresponding_label: str
    corresponding_detection_id: int


def box_corners(lo, hi) -> FloatArray:
    """The eight vertices of an axis aligned box, shape (8, 3)."""
    lo, hi = as_point(lo), as_point(hi)
    return np.array([
        [lo[0], lo[1], lo[2]],
        [hi[0], lo[1], lo[2]],
        [lo[0], hi[1], lo[2]],
        [hi[0], hi[1], lo[2]],
        [lo[0], lo[1], hi[2]],
        [hi[0], lo[1], hi[2]],
        [lo[0], hi[1], hi[2]],
        [hi[0], hi[1], hi[2]],
    ])


@dataclass
class Link:
    """Whole-image correspondence between two groups.

    A corner `pA` of `bounding_box` (in the first group's frame) corresponds
    to `transform.apply_inverse(pA)` in the second group's frame.
    """
    first: Group
    second: Group
    bounding_box: Tuple[FloatArray, FloatArray]
    transform: Any
    quality: float = 1.0

    def corners(self) -> FloatArray:
        return box_corners(*self.bounding_box)
