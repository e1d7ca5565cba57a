"""Tests for the transform models."""
import numpy as np
import pytest
from scipy.spatial.transform import Rotation

from ...testutil import random_affine
from .._errors import ErrorKind, IllDefinedDataError, NotEnoughDataError
from .._models import AffineModel, RigidModel, TranslationModel, create_model, matrix_to_model
from .._point_match import Point, PointMatch


def matches_for(source, target, weights=None):
    if weights is None:
        weights = np.ones(len(source))
    return [PointMatch(Point(p), Point(q), w) for p, q, w in zip(source, target, weights)]


@pytest.fixture
def rng():
    return np.random.default_rng(7)


def test_affine_fit_recovers_matrix(rng):
    """Test that an exact affine transform is recovered from 20 matches."""
    matrix = random_affine(rng)
    source = rng.uniform(0, 100, size=(20, 3))
    target = source @ matrix[:3, :3].T + matrix[:3, 3]

    model = AffineModel()
    model.fit(matches_for(source, target))

    np.testing.assert_allclose(model.to_matrix(), matrix, atol=1e-8)


def test_rigid_fit_recovers_rotation(rng):
    rotation = Rotation.from_euler("xyz", [20, -35, 60], degrees=True).as_matrix()
    translation = np.array([5.0, -12.0, 30.0])
    source = rng.uniform(-50, 50, size=(10, 3))
    target = source @ rotation.T + translation

    model = RigidModel()
    model.fit(matches_for(source, target))

    np.testing.assert_allclose(model.linear, rotation, atol=1e-8)
    np.testing.assert_allclose(model.translation, translation, atol=1e-8)
    assert np.isclose(np.linalg.det(model.linear), 1.0)


def test_translation_fit_is_weighted_mean():
    source = np.zeros((2, 3))
    target = np.array([[1.0, 0.0, 0.0], [5.0, 0.0, 0.0]])

    model = TranslationModel()
    model.fit(matches_for(source, target, weights=[1.0, 3.0]))

    np.testing.assert_allclose(model.translation, [4.0, 0.0, 0.0])
    np.testing.assert_array_equal(model.linear, np.eye(3))


def test_too_few_matches(rng):
    """Test that fitting below the model minimum fails without touching the model."""
    source = rng.uniform(0, 100, size=(3, 3))
    model = AffineModel()

    assert model.try_fit(matches_for(source, source + 1)) == ErrorKind.NOT_ENOUGH_DATA
    with pytest.raises(NotEnoughDataError):
        model.fit(matches_for(source, source + 1))
    assert model.is_identity()


def test_coplanar_points_are_ill_defined_for_affine(rng):
    source = rng.uniform(0, 100, size=(10, 3))
    source[:, 2] = 0.0

    model = AffineModel()
    assert model.try_fit(matches_for(source, source)) == ErrorKind.ILL_DEFINED_DATA
    with pytest.raises(IllDefinedDataError):
        model.fit(matches_for(source, source))


def test_collinear_points_are_ill_defined_for_rigid():
    source = np.zeros((5, 3))
    source[:, 0] = np.arange(5) * 10.0

    model = RigidModel()
    assert model.try_fit(matches_for(source, source + 3)) == ErrorKind.ILL_DEFINED_DATA


def test_zero_weights_are_ill_defined():
    source = np.zeros((3, 3))
    model = TranslationModel()
    assert model.try_fit(matches_for(source, source, weights=[0.0, 0.0, 0.0])) == ErrorKind.ILL_DEFINED_DATA


def test_apply_inverse(rng):
    affine = matrix_to_model(random_affine(rng))
    rigid = RigidModel.from_matrix(np.block([
        [Rotation.from_euler("z", 30, degrees=True).as_matrix(), np.array([[1.0], [2.0], [3.0]])],
        [np.zeros((1, 3)), np.ones((1, 1))],
    ]))
    point = np.array([10.0, -4.0, 7.5])

    for model in (affine, rigid):
        np.testing.assert_allclose(model.apply_inverse(model.apply(point)), point, atol=1e-9)


def test_concatenate_order():
    shift = TranslationModel()
    shift.translation = np.array([1.0, 0.0, 0.0])
    scale = AffineModel.from_matrix(np.diag([2.0, 2.0, 2.0, 1.0]))

    combined = AffineModel.from_matrix(shift.to_matrix())
    combined.concatenate(scale)
    # scale first, then shift
    np.testing.assert_allclose(combined.apply([1.0, 1.0, 1.0]), [3.0, 2.0, 2.0])

    combined = AffineModel.from_matrix(shift.to_matrix())
    combined.pre_concatenate(scale)
    # shift first, then scale
    np.testing.assert_allclose(combined.apply([1.0, 1.0, 1.0]), [4.0, 2.0, 2.0])


def test_copy_is_independent():
    model = TranslationModel()
    model.translation = np.array([1.0, 2.0, 3.0])
    other = model.copy()
    other.translation[0] = 100.0
    assert model.translation[0] == 1.0


def test_mean_error_sets_cost():
    model = TranslationModel()
    source = np.zeros((2, 3))
    target = np.array([[1.0, 0.0, 0.0], [0.0, 3.0, 0.0]])
    assert model.mean_error(matches_for(source, target)) == pytest.approx(2.0)
    assert model.cost == pytest.approx(2.0)
    assert model.mean_error([]) == float("inf")


def test_translation_rejects_linear_part():
    with pytest.raises(ValueError):
        TranslationModel.from_matrix(np.diag([2.0, 1.0, 1.0, 1.0]))


def test_create_model():
    assert isinstance(create_model("affine"), AffineModel)
    assert isinstance(create_model("Rigid"), RigidModel)
    assert create_model("translation").is_identity()
    with pytest.raises(ValueError, match="Unknown transform model"):
        create_model("spline")
