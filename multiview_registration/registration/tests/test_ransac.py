"""Tests for the robust model estimation."""
import numpy as np
import pytest

from ...parameters import RansacParameters
from ...testutil import random_affine, synthetic_candidates
from .._errors import ErrorKind, NotEnoughDataError
from .._models import AffineModel, TranslationModel
from .._point_match import InterestPoint, Point, PointMatch
from .._ransac import consistency_filter, ransac, remove_inconsistent_correspondences


def translation_candidates(translation, ids, rng, extent=100.0):
    candidates = []
    for i in ids:
        source = rng.uniform(0, extent, size=3)
        candidates.append(PointMatch(
            Point.from_interest_point(InterestPoint(i, source)),
            Point.from_interest_point(InterestPoint(i, source + translation)),
        ))
    return candidates


@pytest.fixture
def rng():
    return np.random.default_rng(42)


def test_recovers_affine_with_outliers(rng):
    """Test that all inliers are found among three times as many outliers."""
    matrix = random_affine(rng)
    candidates, inliers = synthetic_candidates(matrix, num_inliers=20, num_outliers=60, rng=rng)
    params = RansacParameters(max_epsilon=1.0, min_inlier_ratio=0.1, num_iterations=5000)

    model = AffineModel()
    result = ransac(candidates, model, params, rng=np.random.default_rng(0))

    assert result.ok
    assert {m.p1.payload.id for m in result.inliers} == {m.p1.payload.id for m in inliers}
    assert result.cost < 1e-6
    np.testing.assert_allclose(result.model.to_matrix(), matrix, atol=1e-6)
    np.testing.assert_allclose(model.to_matrix(), matrix, atol=1e-6)


def test_does_not_modify_candidates(rng):
    matrix = random_affine(rng)
    candidates, _ = synthetic_candidates(matrix, num_inliers=15, num_outliers=5, rng=rng)
    before = [(m.p1.local.copy(), m.p1.world.copy(), m.p2.world.copy()) for m in candidates]

    ransac(candidates, AffineModel(), RansacParameters(max_epsilon=1.0, num_iterations=500))

    for m, (local, world_a, world_b) in zip(candidates, before):
        np.testing.assert_array_equal(m.p1.local, local)
        np.testing.assert_array_equal(m.p1.world, world_a)
        np.testing.assert_array_equal(m.p2.world, world_b)


def test_not_enough_candidates(rng):
    """Test that fewer candidates than the minimal number of inliers is a result, not an exception."""
    candidates = translation_candidates(np.array([1.0, 2.0, 3.0]), range(3), rng)
    model = AffineModel()

    result = ransac(candidates, model, RansacParameters())

    assert result.status == ErrorKind.NOT_ENOUGH_DATA
    assert result.model is None
    assert result.inliers == []
    assert "at least 12" in result.message
    assert model.is_identity()


def test_raise_on_failure(rng):
    candidates = translation_candidates(np.array([1.0, 2.0, 3.0]), range(3), rng)
    with pytest.raises(NotEnoughDataError):
        ransac(candidates, AffineModel(), RansacParameters(), raise_on_failure=True)


def test_no_model_found(rng):
    candidates = [
        PointMatch(Point(rng.uniform(0, 100, size=3)), Point(rng.uniform(0, 100, size=3)))
        for _ in range(30)
    ]
    params = RansacParameters(max_epsilon=0.1, num_iterations=200)

    result = ransac(candidates, TranslationModel(), params, rng=rng)

    assert result.status == ErrorKind.NO_MODEL_FOUND
    assert result.inliers == []


def test_explicit_min_num_matches(rng):
    candidates = translation_candidates(np.array([1.0, 2.0, 3.0]), range(5), rng)
    params = RansacParameters(min_num_matches=5, num_iterations=100)

    result = ransac(candidates, TranslationModel(), params, rng=rng)

    assert result.ok
    assert len(result.inliers) == 5
    np.testing.assert_allclose(result.model.translation, [1.0, 2.0, 3.0], atol=1e-9)


def test_multi_consensus_finds_disjoint_sets(rng):
    """Test that two independently moving bead sets are returned as two consensus sets."""
    first = translation_candidates(np.array([10.0, 0.0, 0.0]), range(15), rng)
    second = translation_candidates(np.array([0.0, -30.0, 0.0]), range(15, 30), rng)
    candidates = [first[i // 2] if i % 2 == 0 else second[i // 2] for i in range(30)]
    params = RansacParameters(max_epsilon=0.5, multi_consensus=True, num_iterations=200)

    result = ransac(candidates, TranslationModel(), params, rng=rng)

    assert result.ok
    assert len(result.consensus_sets) == 2
    sets = [{m.p1.payload.id for m in s} for s in result.consensus_sets]
    assert sorted(sets, key=min) == [set(range(15)), set(range(15, 30))]
    assert len(result.inliers) == 30


def test_single_consensus_by_default(rng):
    first = translation_candidates(np.array([10.0, 0.0, 0.0]), range(15), rng)
    second = translation_candidates(np.array([0.0, -30.0, 0.0]), range(15, 30), rng)
    params = RansacParameters(max_epsilon=0.5, num_iterations=200)

    result = ransac(first + second, TranslationModel(), params, rng=rng)

    assert result.ok
    assert len(result.consensus_sets) == 1
    assert len(result.inliers) == 15


def test_consistency_filter_drops_outlier_within_epsilon(rng):
    """Test that a match inside max_epsilon but far above the median residual is removed."""
    source = rng.uniform(0, 100, size=(21, 3))
    target = source + np.array([5.0, 5.0, 5.0]) + rng.uniform(-0.05, 0.05, size=(21, 3))
    target[20] += np.array([3.0, 0.0, 0.0])
    weights = np.ones(21)

    status, mask = consistency_filter(TranslationModel(), source, target, weights, max_trust=4.0, min_num_inliers=3)

    assert status == ErrorKind.OK
    assert mask[:20].all()
    assert not mask[20]


def test_consistency_filter_keeps_exact_data_with_floor():
    source = np.arange(30, dtype=np.float64).reshape(10, 3)
    target = source + 1.0
    status, mask = consistency_filter(
        TranslationModel(), source, target, np.ones(10), max_trust=4.0, min_num_inliers=3, floor=1e-6,
    )
    assert status == ErrorKind.OK
    assert mask.all()


def test_remove_inconsistent_correspondences():
    """Test that both candidates of a one-to-many detection are dropped."""
    a = [InterestPoint(i, [i, 0, 0]) for i in range(3)]
    b = [InterestPoint(i, [i, 1, 0]) for i in range(3)]
    candidates = [
        PointMatch(Point.from_interest_point(a[0]), Point.from_interest_point(b[0])),
        PointMatch(Point.from_interest_point(a[0]), Point.from_interest_point(b[1])),
        PointMatch(Point.from_interest_point(a[1]), Point.from_interest_point(b[2])),
        PointMatch(Point.from_interest_point(a[2]), Point.from_interest_point(b[2])),
    ]
    candidates.append(PointMatch(
        Point.from_interest_point(InterestPoint(5, [5, 0, 0])),
        Point.from_interest_point(InterestPoint(5, [5, 1, 0])),
    ))

    kept = remove_inconsistent_correspondences(candidates)

    assert kept == [candidates[4]]
