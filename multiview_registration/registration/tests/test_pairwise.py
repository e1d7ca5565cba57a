"""Tests for concurrent pairwise matching and the correspondence store."""
import numpy as np
import pytest

from ...parameters import IcpParameters, RansacParameters
from ...testutil import synthetic_views
from .._descriptors import IdCandidateExtractor
from .._errors import ErrorKind
from .._models import TranslationModel
from .._pairwise import (
    CenterOfMassPairwise,
    CorrespondenceStore,
    IterativeClosestPointPairwise,
    PairwiseResult,
    RansacPairwise,
    build_matching_tasks,
    combine_group_points,
    compute_pairs,
    split_group_results,
)
from .._point_match import Group, GroupedInterestPoint, InterestPoint, Point, PointMatch, ViewId

V0, V1, V2, V3 = (ViewId(0, i) for i in range(4))


@pytest.fixture
def rng():
    return np.random.default_rng(3)


@pytest.fixture
def matched_and_unrelated(rng):
    """V0 and V1 observe the same beads, V2 sees something else entirely."""
    points = synthetic_views({V0: (0.0, 0.0, 0.0), V1: (30.0, -10.0, 5.0)}, num_points=30, rng=rng)
    points[V2] = {"beads": [InterestPoint(i, p) for i, p in enumerate(rng.uniform(0, 200, size=(30, 3)))]}
    return points


@pytest.fixture
def id_matcher():
    return RansacPairwise(
        TranslationModel(),
        RansacParameters(max_epsilon=0.5, num_iterations=500),
        IdCandidateExtractor(),
    )


def test_build_matching_tasks():
    points = {
        V0: {"beads": [], "nuclei": []},
        V1: {"beads": [], "nuclei": []},
        V2: {"beads": []},
    }
    pairs = [(V0, V1), (V1, V2), (V1, V0)]

    tasks = build_matching_tasks(pairs, points)
    assert [(t.view_a, t.view_b, t.label_a, t.label_b) for t in tasks] == [
        (V0, V1, "beads", "beads"),
        (V0, V1, "nuclei", "nuclei"),
        (V1, V2, "beads", "beads"),
    ]
    assert [t.index for t in tasks] == [0, 1, 2]

    across = build_matching_tasks(pairs, points, match_across_labels=True)
    assert len(across) == 6


def test_build_matching_tasks_skips_missing_views():
    points = {V0: {"beads": []}}
    assert build_matching_tasks([(V0, V1)], points) == []


def test_compute_pairs_failure_is_not_fatal(matched_and_unrelated, id_matcher):
    """Test that unmatched pairs give empty results while the batch completes in task order."""
    results = compute_pairs(
        [(V0, V1), (V0, V2), (V1, V2)], matched_and_unrelated, id_matcher, num_threads=2,
    )

    assert [(r.view_a, r.view_b) for r in results] == [(V0, V1), (V0, V2), (V1, V2)]

    assert results[0].ok
    assert len(results[0].inliers) == 30
    np.testing.assert_allclose(results[0].model.translation, [-30.0, 10.0, -5.0], atol=1e-9)

    for failed in results[1:]:
        assert failed.status == ErrorKind.NO_MODEL_FOUND
        assert failed.inliers == []
        assert str(V2) in failed.description
        assert "[beads]" in failed.description


def test_compute_pairs_does_not_modify_inputs(matched_and_unrelated, id_matcher):
    before = {v: [p.local.copy() for p in labels["beads"]] for v, labels in matched_and_unrelated.items()}
    results = compute_pairs([(V0, V1)], matched_and_unrelated, id_matcher, num_threads=1)

    for v, locals_ in before.items():
        for p, local in zip(matched_and_unrelated[v]["beads"], locals_):
            np.testing.assert_array_equal(p.local, local)
    # the matcher got private copies of the detections
    assert results[0].inliers[0].p1.payload is not matched_and_unrelated[V0]["beads"][0]


def test_compute_pairs_is_deterministic(rng):
    points = synthetic_views({V0: (0.0, 0.0, 0.0), V1: (12.0, 3.0, -4.0)}, num_points=40, rng=rng, num_extra=10)
    matcher = RansacPairwise(TranslationModel(), RansacParameters(max_epsilon=0.5, num_iterations=300))

    first = compute_pairs([(V0, V1)], points, matcher, num_threads=1, seed=5)
    second = compute_pairs([(V0, V1)], points, matcher, num_threads=1, seed=5)

    assert first[0].ok

    assert [m.p1.payload.id for m in first[0].inliers] == [m.p1.payload.id for m in second[0].inliers]
    assert first[0].error == second[0].error


def test_descriptor_matching_recovers_offset(rng):
    """Test candidate extraction from local constellations followed by RANSAC."""
    points = synthetic_views({V0: (0.0, 0.0, 0.0), V1: (30.0, -10.0, 5.0)}, num_points=40, rng=rng)
    matcher = RansacPairwise(TranslationModel(), RansacParameters(max_epsilon=0.5, num_iterations=300))

    result = compute_pairs([(V0, V1)], points, matcher, num_threads=1)[0]

    assert result.ok
    assert len(result.inliers) >= 30
    assert all(m.p1.payload.id == m.p2.payload.id for m in result.inliers)
    np.testing.assert_allclose(result.model.translation, [-30.0, 10.0, -5.0], atol=1e-9)


def test_center_of_mass(rng):
    points = synthetic_views({V0: (0.0, 0.0, 0.0), V1: (30.0, -10.0, 5.0)}, num_points=20, rng=rng)
    matcher = CenterOfMassPairwise()
    assert not matcher.requires_point_duplication

    result = compute_pairs([(V0, V1)], points, matcher, num_threads=1)[0]

    assert result.ok
    assert not result.store_correspondences
    assert len(result.inliers) == 1
    m = result.inliers[0]
    np.testing.assert_allclose(m.p2.local - m.p1.local, [-30.0, 10.0, -5.0], atol=1e-9)


def test_center_of_mass_empty():
    result = CenterOfMassPairwise(use_median=True).match([], [InterestPoint(0, [0, 0, 0])], V0, V1, "a", "a")
    assert result.status == ErrorKind.NOT_ENOUGH_DATA


def icp_chain():
    """One pair closer than 4 and five pairs that only come closer than 4 after the first one is matched."""
    list_a = [InterestPoint(0, [10.0, 10.0, 0.0])]
    list_b = [InterestPoint(0, [11.0, 13.0, 0.0])]
    for i in range(1, 6):
        a = np.array([1000.0 * i + 150.0, 500.0 * i + 150.0, 0.0])
        list_a.append(InterestPoint(i, a))
        list_b.append(InterestPoint(i, a + [2.0, 4.0, 0.0]))
    return list_a, list_b


def test_icp_grows_assignment():
    list_a, list_b = icp_chain()
    matcher = IterativeClosestPointPairwise(TranslationModel(), IcpParameters(max_distance=4.0))

    result = matcher.match(list_a, list_b, V0, V1, "beads", "beads")

    assert result.ok
    assert result.num_inliers == 6
    assert [(m.p1.payload.id, m.p2.payload.id) for m in result.inliers] == [(i, i) for i in range(6)]
    # least squares compromise of one (1, 3) and five (2, 4) offsets
    np.testing.assert_allclose(result.model.translation, [11 / 6, 23 / 6, 0.0], atol=1e-9)
    assert result.error == pytest.approx(np.sqrt(2) * 10 / 36)
    assert "after 2 iterations" in result.result


def test_icp_minimal_number_of_points():
    list_a, list_b = icp_chain()
    matcher = IterativeClosestPointPairwise(TranslationModel(), IcpParameters(max_distance=4.0, min_num_points=10))

    result = matcher.match(list_a, list_b, V0, V1, "beads", "beads")

    assert result.status == ErrorKind.NOT_ENOUGH_DATA
    assert "6/10" in result.result
    assert result.inliers == []


def test_icp_without_neighbors_in_range():
    list_a, list_b = icp_chain()
    far = [InterestPoint(p.id, p.position + 100.0) for p in list_b]
    matcher = IterativeClosestPointPairwise(TranslationModel())

    assert matcher.match(list_a, far, V0, V1, "beads", "beads").status == ErrorKind.NOT_ENOUGH_DATA
    assert matcher.match([], list_b, V0, V1, "beads", "beads").status == ErrorKind.NOT_ENOUGH_DATA


@pytest.mark.parametrize("use_ransac", [False, True])
def test_icp_recovers_offset(rng, use_ransac):
    """Test ICP on two views whose metadata is off by a few units."""
    points = synthetic_views({V0: (0.0, 0.0, 0.0), V1: (2.0, -1.0, 0.5)}, num_points=40, rng=rng, extent=1000.0)
    params = IcpParameters(use_ransac=use_ransac, ransac=RansacParameters(max_epsilon=0.5, num_iterations=100))
    matcher = IterativeClosestPointPairwise(TranslationModel(), params)

    result = compute_pairs([(V0, V1)], points, matcher, num_threads=1)[0]

    assert result.ok
    assert result.num_inliers == 40
    assert all(m.p1.payload.id == m.p2.payload.id for m in result.inliers)
    np.testing.assert_allclose(result.model.translation, [-2.0, 1.0, -0.5], atol=1e-9)
    assert result.error == pytest.approx(0.0, abs=1e-9)


def test_take_inliers_drains_once(matched_and_unrelated, id_matcher):
    result = compute_pairs([(V0, V1)], matched_and_unrelated, id_matcher, num_threads=1)[0]

    inliers = result.take_inliers()

    assert len(inliers) == 30
    assert result.inliers == []
    assert result.num_inliers == 30
    with pytest.raises(RuntimeError):
        result.take_inliers()


def test_correspondence_store(matched_and_unrelated, id_matcher):
    results = compute_pairs([(V0, V1), (V0, V2)], matched_and_unrelated, id_matcher, num_threads=1)
    store = CorrespondenceStore()

    assert store.add_results(results) == 30

    from_a = store.get(V0, "beads")
    from_b = store.get(V1, "beads")
    assert len(from_a) == len(from_b) == 30
    assert {c.corresponding_view for c in from_a} == {V1}
    assert {c.corresponding_view for c in from_b} == {V0}
    assert all(c.detection_id == c.corresponding_detection_id for c in from_a)
    assert store.get(V2, "beads") == []

    loaded = store.to_pairwise_results(matched_and_unrelated)
    assert len(loaded) == 1
    assert (loaded[0].view_a, loaded[0].view_b) == (V0, V1)
    assert loaded[0].num_inliers == 30
    assert loaded[0].ok


def test_correspondence_store_skips_center_of_mass(rng):
    points = synthetic_views({V0: (0.0, 0.0, 0.0), V1: (1.0, 0.0, 0.0)}, num_points=5, rng=rng)
    result = compute_pairs([(V0, V1)], points, CenterOfMassPairwise(), num_threads=1)[0]
    store = CorrespondenceStore()
    assert store.add_result(result) == 0
    assert store.get(V0, "beads") == []


def test_combine_group_points():
    points = {
        V0: {"beads": [InterestPoint(0, [1, 2, 3])]},
        V1: {"beads": [InterestPoint(0, [1, 2, 3]), InterestPoint(1, [4, 5, 6])]},
    }
    shift = np.eye(4)
    shift[:3, 3] = [100.0, 0.0, 0.0]

    combined = combine_group_points(Group.of(V0, V1), points, "beads", {V1: shift})

    assert [(p.view, p.id) for p in combined] == [(V0, 0), (V1, 0), (V1, 1)]
    np.testing.assert_array_equal(combined[0].world, [1, 2, 3])
    np.testing.assert_array_equal(combined[1].world, [101, 2, 3])
    np.testing.assert_array_equal(combined[1].local, [1, 2, 3])


def test_split_group_results():
    """Test that inliers of a group match end up in the result of the views they came from."""
    def grouped(view, i):
        return Point.from_interest_point(GroupedInterestPoint(i, [i, 0, 0], view=view))

    inliers = [
        PointMatch(grouped(V0, 0), grouped(V2, 0)),
        PointMatch(grouped(V0, 1), grouped(V3, 1)),
        PointMatch(grouped(V1, 2), grouped(V2, 2)),
        PointMatch(grouped(V1, 3), grouped(V2, 3)),
    ]
    source = PairwiseResult(V0, V2, "beads", "beads", status=ErrorKind.OK)
    source.inliers = inliers
    source.num_inliers = len(inliers)

    split = split_group_results([source])

    assert [(r.view_a, r.view_b, r.num_inliers) for r in split] == [
        (V0, V2, 1),
        (V0, V3, 1),
        (V1, V2, 2),
    ]
    assert all(r.ok for r in split)
