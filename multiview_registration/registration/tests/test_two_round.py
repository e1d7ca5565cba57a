"""Tests for the two-round optimization and strategy selection."""
import numpy as np
import pytest

from ...parameters import ConvergenceStrategy, GlobalOptimizationParameters, GlobalOptType, ModelType
from ...testutil import TRIANGLE_POSITIONS, links_between, translation_link
from .._convergence import SimpleIterativeConvergenceStrategy
from .._errors import ErrorKind, NotConvergedError
from .._global_optimization import compute_tiles
from .._link_removal import MaxErrorLinkRemoval
from .._models import TranslationModel
from .._point_match import Group, ViewId
from .._point_match_creators import ImageCorrelationPointMatchCreator
from .._two_round import compute_two_round, run_global_optimization
from .._weak_links import MetadataWeakLinkFactory

V0, V1, V2, V3 = (ViewId(0, i) for i in range(4))

SQUARE_POSITIONS = {
    V0: (0.0, 0.0, 0.0),
    V1: (100.0, 0.0, 0.0),
    V2: (0.0, 100.0, 0.0),
    V3: (100.0, 100.0, 0.0),
}

VIEW_BOX = (np.zeros(3), np.array([150.0, 150.0, 50.0]))


def translation_matrix(offset):
    matrix = np.eye(4)
    matrix[:3, 3] = offset
    return matrix


@pytest.fixture
def strict_convergence():
    return SimpleIterativeConvergenceStrategy(max_allowed_error=0.01, relative_threshold=2.5, absolute_threshold=3.5)


@pytest.fixture
def metadata_factory():
    return MetadataWeakLinkFactory(
        {v: translation_matrix(p) for v, p in SQUARE_POSITIONS.items()},
        {v: VIEW_BOX for v in SQUARE_POSITIONS},
    )


def test_single_component_equals_single_round(strict_convergence, metadata_factory):
    """Test that a fully connected first round is returned as is."""
    creator = ImageCorrelationPointMatchCreator(links_between(TRIANGLE_POSITIONS))

    single = compute_tiles(TranslationModel(), creator, ConvergenceStrategy(max_error=0.01), [V0], [])
    two_round = compute_two_round(
        TranslationModel(), creator, strict_convergence, MaxErrorLinkRemoval(), metadata_factory, [V0], [],
    )

    assert two_round.num_components == 1
    assert two_round.weak_error is None
    assert two_round.status == single.status
    assert two_round.error == single.error
    assert set(two_round.matrices) == set(single.tiles)
    for view, matrix in single.matrices().items():
        np.testing.assert_array_equal(two_round.matrices[view], matrix)


def test_disconnected_components_are_aligned_by_weak_links(strict_convergence, metadata_factory):
    """Test that two separately linked pairs are put together from their metadata."""
    links = links_between(SQUARE_POSITIONS, pairs=[(V0, V1), (V2, V3)])
    creator = ImageCorrelationPointMatchCreator(links)

    result = compute_two_round(
        TranslationModel(), creator, strict_convergence, MaxErrorLinkRemoval(), metadata_factory, [V0], [],
    )
    matrices = result.matrices

    assert result.ok
    assert result.num_components == 2
    assert result.weak_error == pytest.approx(0.0, abs=1e-6)
    assert set(matrices) == set(SQUARE_POSITIONS)
    for view, position in SQUARE_POSITIONS.items():
        np.testing.assert_allclose(matrices[view], translation_matrix(position), atol=1e-6)


def test_weak_links_correct_inaccurate_components(strict_convergence):
    """Test that the second round moves a component as a whole, keeping its internal alignment."""
    links = links_between(SQUARE_POSITIONS, pairs=[(V0, V1), (V2, V3)])
    creator = ImageCorrelationPointMatchCreator(links)
    # the stage reports the second row 2 units too far to the right
    metadata = {v: translation_matrix(p) for v, p in SQUARE_POSITIONS.items()}
    metadata[V2] = translation_matrix((2.0, 100.0, 0.0))
    metadata[V3] = translation_matrix((102.0, 100.0, 0.0))
    factory = MetadataWeakLinkFactory(metadata, {v: VIEW_BOX for v in SQUARE_POSITIONS})

    matrices = compute_two_round(
        TranslationModel(), creator, strict_convergence, MaxErrorLinkRemoval(), factory, [V0], [],
    ).matrices

    np.testing.assert_allclose(matrices[V2][:3, 3], [2.0, 100.0, 0.0], atol=1e-6)
    np.testing.assert_allclose(matrices[V3][:3, 3] - matrices[V2][:3, 3], [100.0, 0.0, 0.0], atol=1e-6)


def test_nothing_to_optimize(strict_convergence, metadata_factory):
    creator = ImageCorrelationPointMatchCreator([])
    assert compute_two_round(
        TranslationModel(), creator, strict_convergence, MaxErrorLinkRemoval(), metadata_factory, [], [],
    ) is None


@pytest.mark.parametrize("method", list(GlobalOptType))
def test_run_global_optimization(method, metadata_factory):
    params = GlobalOptimizationParameters(method=method, model=ModelType.translation, max_error=0.01)
    creator = ImageCorrelationPointMatchCreator(links_between(TRIANGLE_POSITIONS))

    result = run_global_optimization(params, creator, [V0], weak_link_factory=metadata_factory)
    matrices = result.matrices

    assert result.status == ErrorKind.OK
    for view, position in TRIANGLE_POSITIONS.items():
        np.testing.assert_allclose(matrices[view][:3, 3], position, atol=1e-3)


def test_simple_methods_never_remove_links():
    params = GlobalOptimizationParameters(
        method=GlobalOptType.two_round_simple, model=ModelType.translation, max_error=0.01, max_iterations=200,
    )
    links = links_between(TRIANGLE_POSITIONS, corrupted=(V0, V1), corruption=(50.0, 0.0, 0.0))
    result = run_global_optimization(
        params, ImageCorrelationPointMatchCreator(links), [V0],
        weak_link_factory=MetadataWeakLinkFactory({}, {}),
    )

    assert result.removed_pairs == []


def test_two_round_requires_weak_links():
    params = GlobalOptimizationParameters(method=GlobalOptType.two_round_iterative, model=ModelType.translation)
    with pytest.raises(ValueError, match="weak link factory"):
        run_global_optimization(params, ImageCorrelationPointMatchCreator([]), [V0])


def test_not_converged_status_is_reported():
    """Test that a group pulled apart by two links comes back with its status and errors."""
    links = [translation_link(V0, V1, (0.0, 0.0, 0.0)), translation_link(V0, V2, (100.0, 0.0, 0.0))]
    params = GlobalOptimizationParameters(
        method=GlobalOptType.one_round_iterative, model=ModelType.translation,
        max_iterations=500, max_plateau_width=50,
    )

    result = run_global_optimization(params, ImageCorrelationPointMatchCreator(links), [V0], [Group.of(V1, V2)])

    assert result.status == ErrorKind.NOT_CONVERGED
    assert not result.ok
    assert result.error == pytest.approx(50.0)
    assert result.min_error == pytest.approx(50.0)
    assert result.max_error == pytest.approx(50.0)
    assert result.removed_pairs == []
    # the least squares compromise is still returned
    np.testing.assert_allclose(result.matrices[V1][:3, 3], [50.0, 0.0, 0.0], atol=1e-6)
    np.testing.assert_array_equal(result.matrices[V1], result.matrices[V2])
    with pytest.raises(NotConvergedError, match="avg error 50"):
        result.raise_for_status()


def test_simple_method_reports_error_above_target():
    links = links_between(TRIANGLE_POSITIONS, corrupted=(V0, V1), corruption=(50.0, 0.0, 0.0))
    params = GlobalOptimizationParameters(
        method=GlobalOptType.one_round_simple, model=ModelType.translation, max_error=0.01,
        max_iterations=200, max_plateau_width=20,
    )

    result = run_global_optimization(params, ImageCorrelationPointMatchCreator(links), [V0])

    assert result.status == ErrorKind.NOT_CONVERGED
    assert result.error > 0.01
