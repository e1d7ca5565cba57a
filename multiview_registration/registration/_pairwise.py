"""Pairwise matching of interest points between views.

Every (view pair, label pair) combination is an independent `MatchingTask`.
Tasks run in a thread pool and the driver waits for all of them before it
returns, so callers always see the complete, ordered list of results. A task
that finds no model produces an empty `PairwiseResult` instead of failing the
batch.
"""
import logging
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from multiprocessing import cpu_count
from multiprocessing.pool import ThreadPool
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
from scipy.spatial import cKDTree
from tqdm import tqdm

from ..benchmarking_util import debug_timing
from ..parameters import IcpParameters, RansacParameters
from ._descriptors import CandidateExtractor, DescriptorCandidateExtractor
from ._errors import ErrorKind, RegistrationError
from ._models import TransformModel
from ._point_match import (
    CorrespondingInterestPoint,
    Group,
    GroupedInterestPoint,
    InterestPoint,
    Point,
    PointMatch,
    ViewId,
)
from ._ransac import ransac
from ._typing_utils import IntArray

logger = logging.getLogger(__name__)

InterestPointsByView = Mapping[ViewId, Mapping[str, Sequence[InterestPoint]]]


@dataclass
class PairwiseResult:
    """Outcome of matching one label of one view against one label of another."""
    view_a: ViewId
    view_b: ViewId
    label_a: str
    label_b: str
    store_correspondences: bool = True
    candidates: List[PointMatch] = field(default_factory=list)
    inliers: List[PointMatch] = field(default_factory=list)
    consensus_sets: List[List[PointMatch]] = field(default_factory=list)
    model: Optional[TransformModel] = None
    error: float = math.nan
    status: ErrorKind = ErrorKind.NO_MODEL_FOUND
    result: str = ""
    time: float = field(default_factory=time.time)
    duration: float = 0.0
    num_inliers: int = 0
    _inliers_taken: bool = field(default=False, repr=False)

    @property
    def description(self) -> str:
        return f"{self.view_a} [{self.label_a}] <-> {self.view_b} [{self.label_b}]"

    @property
    def full_description(self) -> str:
        return f"{self.description}: {self.result}"

    @property
    def ok(self) -> bool:
        return self.status == ErrorKind.OK

    def set_result(
        self,
        status: ErrorKind,
        result: str,
        inliers: Optional[List[PointMatch]] = None,
        error: float = math.nan,
        model: Optional[TransformModel] = None,
    ) -> None:
        self.status = status
        self.result = result
        self.inliers = [] if inliers is None else inliers
        self.num_inliers = len(self.inliers)
        self.error = error
        self.model = model
        self.time = time.time()
        logger.info(self.full_description)

    def take_inliers(self) -> List[PointMatch]:
        """Hand over the inliers. The result keeps only their count afterwards.

        Raises:
            RuntimeError: If the inliers were already taken
        """
        if self._inliers_taken:
            raise RuntimeError(f"Inliers of {self.description} were already taken")
        self._inliers_taken = True
        inliers, self.inliers = self.inliers, []
        return inliers


class PairwiseMatcher(ABC):
    """Matches two lists of interest points."""

    # Whether `match` may modify the interest points it is given. The task
    # runner hands such matchers private copies.
    requires_point_duplication: bool = False

    @abstractmethod
    def match(
        self,
        list_a: Sequence[InterestPoint],
        list_b: Sequence[InterestPoint],
        view_a: ViewId,
        view_b: ViewId,
        label_a: str,
        label_b: str,
        rng: Optional[np.random.Generator] = None,
    ) -> PairwiseResult:
        pass

    @abstractmethod
    def get_name(self) -> str:
        pass


class RansacPairwise(PairwiseMatcher):
    """Candidate extraction followed by robust model estimation."""

    requires_point_duplication = True

    def __init__(
        self,
        model: TransformModel,
        ransac_params: RansacParameters = RansacParameters(),
        extractor: Optional[CandidateExtractor] = None,
    ):
        self.model = model
        self.ransac_params = ransac_params
        self.extractor = extractor if extractor is not None else DescriptorCandidateExtractor()

    def get_name(self) -> str:
        return f"{self.extractor.get_name()}+ransac({self.model.name})"

    def match(self, list_a, list_b, view_a, view_b, label_a, label_b, rng=None):
        result = PairwiseResult(view_a, view_b, label_a, label_b)
        result.candidates = self.extractor.extract(list_a, list_b)

        model = self.model.copy()
        outcome = ransac(result.candidates, model, self.ransac_params, rng=rng)
        result.consensus_sets = outcome.consensus_sets
        if outcome.ok:
            result.set_result(ErrorKind.OK, outcome.message, outcome.inliers, outcome.cost, outcome.model)
        else:
            result.set_result(outcome.status, outcome.message)
        return result


class CenterOfMassPairwise(PairwiseMatcher):
    """Aligns the centers of both point clouds with a single bogus correspondence.

    The correspondence links no real detections, so it is never stored.
    """

    requires_point_duplication = False

    def __init__(self, use_median: bool = False):
        self.use_median = use_median

    def get_name(self) -> str:
        return "center_of_mass_median" if self.use_median else "center_of_mass_mean"

    def _center(self, points: Sequence[InterestPoint]) -> np.ndarray:
        positions = np.array([p.position for p in points])
        return np.median(positions, axis=0) if self.use_median else np.mean(positions, axis=0)

    def match(self, list_a, list_b, view_a, view_b, label_a, label_b, rng=None):
        result = PairwiseResult(view_a, view_b, label_a, label_b, store_correspondences=False)
        if len(list_a) == 0 or len(list_b) == 0:
            result.set_result(
                ErrorKind.NOT_ENOUGH_DATA,
                f"Cannot compute center of mass of empty point lists (|A|={len(list_a)}, |B|={len(list_b)})",
            )
            return result

        center_a = self._center(list_a)
        center_b = self._center(list_b)
        match = PointMatch(Point(center_a), Point(center_b))
        result.candidates = [match]
        offset = center_b - center_a
        result.set_result(
            ErrorKind.OK,
            f"Center of mass offset ({offset[0]:.3f}, {offset[1]:.3f}, {offset[2]:.3f})",
            [match],
            0.0,
        )
        return result


class IterativeClosestPointPairwise(PairwiseMatcher):
    """Iterative closest point matching of views that are already roughly aligned.

    Starting from the identity, every point of A is assigned its nearest
    neighbor in B under the current model, if it is closer than
    `max_distance`, and the model is refit to these pairs. Iterations stop
    once the assignment no longer changes or after `max_iterations`.
    """

    requires_point_duplication = False

    def __init__(self, model: TransformModel, icp_params: IcpParameters = IcpParameters()):
        self.model = model
        self.icp_params = icp_params

    def get_name(self) -> str:
        return f"icp({self.model.name})"

    def _filter(
        self,
        list_a: Sequence[InterestPoint],
        list_b: Sequence[InterestPoint],
        pairs: IntArray,
        rng: Optional[np.random.Generator],
    ) -> Tuple[Optional[IntArray], str]:
        """The rows of `pairs` that are RANSAC inliers, or None and the reason."""
        candidates = [
            PointMatch(Point.from_interest_point(list_a[i]), Point.from_interest_point(list_b[j]))
            for i, j in pairs
        ]
        row = {id(m): k for k, m in enumerate(candidates)}
        outcome = ransac(candidates, self.model.copy(), self.icp_params.ransac, rng=rng)
        if not outcome.ok:
            return None, outcome.message
        return pairs[sorted(row[id(m)] for m in outcome.inliers)], ""

    def match(self, list_a, list_b, view_a, view_b, label_a, label_b, rng=None):
        result = PairwiseResult(view_a, view_b, label_a, label_b)
        params = self.icp_params
        model = self.model.copy()
        min_num_points = max(model.min_num_matches, params.min_num_points or 0)

        if len(list_a) < model.min_num_matches or len(list_b) < model.min_num_matches:
            result.set_result(
                ErrorKind.NOT_ENOUGH_DATA,
                f"Not enough detections to match (|A|={len(list_a)}, |B|={len(list_b)})",
            )
            return result

        a = np.array([p.position for p in list_a])
        b = np.array([p.position for p in list_b])
        tree = cKDTree(b)

        assigned: Optional[IntArray] = None
        pairs = np.zeros((0, 2), dtype=np.intp)
        iterations = 0
        while iterations < params.max_iterations:
            distances, nearest = tree.query(model.apply_many(a), distance_upper_bound=params.max_distance)
            # points without a neighbor in range get an infinite distance
            found = np.flatnonzero(np.isfinite(distances))
            current = np.stack([found, nearest[found]], axis=1)
            if assigned is not None and np.array_equal(current, assigned):
                break
            assigned = current
            iterations += 1

            pairs = current
            if params.use_ransac and len(pairs) > 0:
                pairs, message = self._filter(list_a, list_b, pairs, rng)
                if pairs is None:
                    result.set_result(ErrorKind.NO_MODEL_FOUND, f"ICP iteration {iterations}: {message}")
                    return result

            if len(pairs) < model.min_num_matches:
                result.set_result(
                    ErrorKind.NOT_ENOUGH_DATA,
                    f"No corresponding points within {params.max_distance} in ICP iteration {iterations}",
                )
                return result
            status = model.fit_arrays(a[pairs[:, 0]], b[pairs[:, 1]], np.ones(len(pairs)))
            if status != ErrorKind.OK:
                result.set_result(status, f"ICP iteration {iterations} could not fit the {model.name} model")
                return result

        if len(pairs) < min_num_points:
            result.set_result(
                ErrorKind.NOT_ENOUGH_DATA,
                f"Not enough corresponding points found (only {len(pairs)}/{min_num_points})",
            )
            return result

        matches = [
            PointMatch(Point.from_interest_point(list_a[i]), Point.from_interest_point(list_b[j]))
            for i, j in pairs
        ]
        error = model.mean_error(matches)
        result.candidates = list(matches)
        result.set_result(
            ErrorKind.OK,
            f"Found {len(matches)} matches, avg error {error:.4f} after {iterations} iterations "
            f"(min_num_points={min_num_points})",
            matches,
            error,
            model,
        )
        return result


@dataclass(frozen=True)
class MatchingTask:
    index: int
    view_a: ViewId
    view_b: ViewId
    label_a: str
    label_b: str

    @property
    def description(self) -> str:
        return f"{self.view_a} [{self.label_a}] <-> {self.view_b} [{self.label_b}]"


def build_matching_tasks(
    pairs: Iterable[Tuple[ViewId, ViewId]],
    interest_points: InterestPointsByView,
    match_across_labels: bool = False,
) -> List[MatchingTask]:
    """One task per view pair and label combination.

    Labels are matched with equal labels only unless `match_across_labels` is
    set. A pair that is listed twice (in either order) yields tasks once.
    """
    tasks: List[MatchingTask] = []
    seen = set()
    for view_a, view_b in pairs:
        key = frozenset((view_a, view_b))
        if key in seen:
            logger.debug(f"Skipping duplicate pair {view_a} <-> {view_b}")
            continue
        seen.add(key)

        if view_a not in interest_points or view_b not in interest_points:
            logger.warning(f"No interest points for pair {view_a} <-> {view_b}, skipping")
            continue

        for label_a in sorted(interest_points[view_a]):
            for label_b in sorted(interest_points[view_b]):
                if not match_across_labels and label_a != label_b:
                    continue
                tasks.append(MatchingTask(len(tasks), view_a, view_b, label_a, label_b))
    return tasks


def _run_task(
    task: MatchingTask,
    interest_points: InterestPointsByView,
    matcher: PairwiseMatcher,
    seed: int,
) -> PairwiseResult:
    list_a = interest_points[task.view_a][task.label_a]
    list_b = interest_points[task.view_b][task.label_b]
    if matcher.requires_point_duplication:
        list_a = [p.clone() for p in list_a]
        list_b = [p.clone() for p in list_b]

    rng = np.random.default_rng([seed, task.index])
    start = time.time()
    try:
        result = matcher.match(list_a, list_b, task.view_a, task.view_b, task.label_a, task.label_b, rng=rng)
    except RegistrationError as e:
        result = PairwiseResult(task.view_a, task.view_b, task.label_a, task.label_b)
        result.set_result(e.kind, str(e))
    result.duration = time.time() - start

    if not result.ok:
        logger.warning(f"Matching failed for {result.full_description}")
    return result


def compute_pairs(
    pairs: Iterable[Tuple[ViewId, ViewId]],
    interest_points: InterestPointsByView,
    matcher: PairwiseMatcher,
    match_across_labels: bool = False,
    num_threads: Optional[int] = None,
    seed: int = 0,
) -> List[PairwiseResult]:
    """Match all pairs concurrently.

    Returns only after every task finished. Results are in task order, which
    is the order of `pairs` with labels sorted within each pair.

    Args:
        pairs: View pairs to match
        interest_points: Detections per view and label
        matcher: The pairwise matcher
        match_across_labels: Also match different labels against each other
        num_threads: Size of the thread pool, all CPUs by default
        seed: Base seed; task i samples from default_rng([seed, i])
    """
    tasks = build_matching_tasks(pairs, interest_points, match_across_labels)
    if not tasks:
        logger.warning("No matching tasks, nothing to do")
        return []

    def run(task: MatchingTask) -> PairwiseResult:
        return _run_task(task, interest_points, matcher, seed)

    num_threads = min(num_threads or cpu_count(), len(tasks))
    with debug_timing(f"Matching {len(tasks)} tasks with {matcher.get_name()}", logger):
        if num_threads <= 1:
            results = [run(t) for t in tqdm(tasks, desc="Matching pairs")]
        else:
            with ThreadPool(processes=num_threads) as pool:
                results = list(tqdm(
                    pool.imap(run, tasks),
                    total=len(tasks),
                    desc="Matching pairs",
                ))

    num_ok = sum(1 for r in results if r.ok)
    logger.info(f"Matched {num_ok} of {len(results)} pairs successfully")
    return results


def combine_group_points(
    group: Group,
    interest_points: InterestPointsByView,
    label: str,
    transforms: Optional[Mapping[ViewId, np.ndarray]] = None,
) -> List[GroupedInterestPoint]:
    """All detections of a group's views in one list, in world coordinates.

    Args:
        group: The views to combine
        interest_points: Detections per view and label
        label: Which label to combine
        transforms: 4x4 local-to-world transform per view, identity if missing
    """
    combined: List[GroupedInterestPoint] = []
    for view in group:
        points = interest_points.get(view, {}).get(label, [])
        if not points:
            continue
        local = np.array([p.local for p in points])
        if transforms is not None and view in transforms:
            matrix = np.asarray(transforms[view], dtype=np.float64)
            world = local @ matrix[:3, :3].T + matrix[:3, 3]
        else:
            world = local
        combined.extend(
            GroupedInterestPoint(p.id, p.local, w, view=view) for p, w in zip(points, world)
        )
    return combined


def split_group_results(results: Iterable[PairwiseResult]) -> List[PairwiseResult]:
    """Turn group-vs-group results into per view pair results.

    Every inlier and candidate goes to the result of the two views its points
    belong to. Inliers within a single view are dropped.
    """
    split: Dict[Tuple[ViewId, ViewId, str, str], PairwiseResult] = {}

    def result_for(source: PairwiseResult, m: PointMatch) -> Optional[PairwiseResult]:
        view_a = m.p1.payload.view
        view_b = m.p2.payload.view
        if view_a == view_b:
            return None
        key = (view_a, view_b, source.label_a, source.label_b)
        if key not in split:
            r = PairwiseResult(
                view_a, view_b, source.label_a, source.label_b,
                store_correspondences=source.store_correspondences,
                error=source.error,
                status=source.status,
                model=source.model,
                result=f"split from {source.description}",
            )
            split[key] = r
        return split[key]

    for source in results:
        for m in source.inliers:
            target = result_for(source, m)
            if target is not None:
                target.inliers.append(m)
                target.num_inliers += 1
        for m in source.candidates:
            target = result_for(source, m)
            if target is not None:
                target.candidates.append(m)

    return [split[k] for k in sorted(split, key=lambda k: (k[0], k[1], k[2], k[3]))]


class CorrespondenceStore:
    """Persistent correspondences per (view, label), filled from pairwise results."""

    def __init__(self):
        self.correspondences: Dict[Tuple[ViewId, str], List[CorrespondingInterestPoint]] = {}

    def get(self, view: ViewId, label: str) -> List[CorrespondingInterestPoint]:
        return self.correspondences.get((view, label), [])

    def add_result(self, result: PairwiseResult) -> int:
        """Drain a result's inliers into the store.

        Inliers of results that do not store correspondences are drained and
        discarded. Every stored inlier is recorded from both sides.

        Returns:
            The number of stored correspondences
        """
        inliers = result.take_inliers()
        if not result.store_correspondences:
            return 0

        list_a = self.correspondences.setdefault((result.view_a, result.label_a), [])
        list_b = self.correspondences.setdefault((result.view_b, result.label_b), [])
        for m in inliers:
            id_a = m.p1.payload.id
            id_b = m.p2.payload.id
            list_a.append(CorrespondingInterestPoint(id_a, result.view_b, result.label_b, id_b))
            list_b.append(CorrespondingInterestPoint(id_b, result.view_a, result.label_a, id_a))
        return len(inliers)

    def add_results(self, results: Iterable[PairwiseResult]) -> int:
        num_stored = sum(self.add_result(r) for r in results)
        logger.info(f"Stored {num_stored} correspondences")
        return num_stored

    def to_pairwise_results(self, interest_points: InterestPointsByView) -> List[PairwiseResult]:
        """Rebuild one result per stored (view, label) pair, with inliers in local coordinates."""
        by_id: Dict[Tuple[ViewId, str], Dict[int, InterestPoint]] = {}

        def lookup(view: ViewId, label: str) -> Dict[int, InterestPoint]:
            if (view, label) not in by_id:
                by_id[(view, label)] = {p.id: p for p in interest_points[view][label]}
            return by_id[(view, label)]

        results: Dict[Tuple[ViewId, str, ViewId, str], PairwiseResult] = {}
        for (view_a, label_a), entries in sorted(self.correspondences.items(), key=lambda kv: kv[0]):
            for c in entries:
                # every correspondence is stored from both sides, keep the ordered one
                if (c.corresponding_view, c.corresponding_label) < (view_a, label_a):
                    continue
                key = (view_a, label_a, c.corresponding_view, c.corresponding_label)
                if key not in results:
                    results[key] = PairwiseResult(
                        view_a, c.corresponding_view, label_a, c.corresponding_label,
                        status=ErrorKind.OK, result="loaded from correspondence store",
                    )
                a = lookup(view_a, label_a)[c.detection_id]
                b = lookup(c.corresponding_view, c.corresponding_label)[c.corresponding_detection_id]
                results[key].inliers.append(PointMatch(Point(a.local, payload=a), Point(b.local, payload=b)))

        for r in results.values():
            r.num_inliers = len(r.inliers)
        return list(results.values())
