import enum
import math
import os
from typing import Annotated, List, Optional, Tuple

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, computed_field


class ModelType(enum.Enum):
    translation = "translation"
    rigid = "rigid"
    affine = "affine"


class GlobalOptType(enum.Enum):
    """Which global optimization strategy to run."""

    one_round_simple = "one_round_simple"
    one_round_iterative = "one_round_iterative"
    two_round_simple = "two_round_simple"
    two_round_iterative = "two_round_iterative"

    @property
    def is_iterative(self) -> bool:
        return self in (GlobalOptType.one_round_iterative, GlobalOptType.two_round_iterative)

    @property
    def is_two_round(self) -> bool:
        return self in (GlobalOptType.two_round_simple, GlobalOptType.two_round_iterative)

    @property
    def one_round(self) -> "GlobalOptType":
        """The single round method with the same link removal."""
        return GlobalOptType.one_round_iterative if self.is_iterative else GlobalOptType.one_round_simple


# Number of RANSAC iterations for the named thoroughness levels
RANSAC_ITERATION_PRESETS = {
    "fast": 1_000,
    "normal": 10_000,
    "thorough": 100_000,
    "very_thorough": 1_000_000,
    "ridiculous": 10_000_000,
}


def fraction(value: float) -> float:
    """Pydantic validator for values in [0, 1]."""
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"Expected a fraction between 0 and 1, got {value}")
    return value


class RansacParameters(BaseModel, use_attribute_docstrings=True):
    """Parameters of the robust pairwise model estimation."""
    model_config = ConfigDict(frozen=True)

    max_epsilon: float = Field(default=5.0, gt=0)
    """Maximal distance (in input coordinate units) of a match to count as an inlier."""

    min_inlier_ratio: Annotated[float, AfterValidator(fraction)] = 0.1
    """Minimal fraction of candidates that must be inliers of an accepted model."""

    min_inlier_factor: float = Field(default=3.0, ge=1.0)
    """The minimal number of inliers is this factor times the model's minimal number of matches."""

    min_num_matches: Optional[int] = Field(default=None, ge=1)
    """Explicit minimal number of inliers, overrides `min_inlier_factor` when set."""

    num_iterations: int = Field(default=10_000, ge=1)
    """How many random minimal samples are drawn."""

    multi_consensus: bool = False
    """Extract several disjoint inlier sets from one candidate pool."""

    max_trust: float = Field(default=4.0, gt=0)
    """Inliers with a residual above median * max_trust are removed by the consistency filter."""

    seed: int = 0
    """Seed of the random sampling, each matching task derives its own stream from it."""

    def min_matches_for(self, model_min_num_matches: int) -> int:
        """The minimal number of inliers for a model with the given minimal number of matches."""
        if self.min_num_matches is not None:
            return max(model_min_num_matches, self.min_num_matches)
        return max(
            model_min_num_matches,
            int(round(model_min_num_matches * self.min_inlier_factor)),
        )

    @classmethod
    def preset(cls, name: str, **kwargs) -> "RansacParameters":
        """Parameters with the number of iterations of a named thoroughness level."""
        if name not in RANSAC_ITERATION_PRESETS:
            raise ValueError(
                f"Unknown RANSAC preset: {name}. "
                f"Available presets: {list(RANSAC_ITERATION_PRESETS.keys())}"
            )
        return cls(num_iterations=RANSAC_ITERATION_PRESETS[name], **kwargs)


class DescriptorParameters(BaseModel, use_attribute_docstrings=True):
    """Parameters for extracting correspondence candidates from local point constellations."""
    model_config = ConfigDict(frozen=True)

    num_neighbors: int = Field(default=3, ge=1)
    """Number of nearest neighbors that form one descriptor."""

    redundancy: int = Field(default=1, ge=0)
    """Additional neighbors that are searched so that single missing detections are tolerated."""

    ratio_of_distance: float = Field(default=3.0, ge=1.0)
    """The best descriptor match has to be this many times better than the second best."""

    difference_threshold: float = Field(default=1e6, gt=0)
    """Maximal descriptor difference of an accepted candidate."""

    @computed_field
    @property
    def min_num_points(self) -> int:
        """The minimal number of detections per view for descriptors to exist."""
        return self.num_neighbors + self.redundancy + 1


class IcpParameters(BaseModel, use_attribute_docstrings=True):
    """Parameters of iterative closest point matching between roughly aligned views."""
    model_config = ConfigDict(frozen=True)

    max_distance: float = Field(default=5.0, gt=0)
    """Nearest neighbors further apart than this under the current model are not matched."""

    max_iterations: int = Field(default=100, ge=1)
    """Upper bound on the number of assign and refit iterations."""

    min_num_points: Optional[int] = Field(default=None, ge=1)
    """Minimal number of correspondences of an accepted result, the model's minimum if not set."""

    use_ransac: bool = False
    """Filter the correspondences of every iteration with RANSAC before refitting."""

    ransac: RansacParameters = RansacParameters()
    """RANSAC parameters if `use_ransac` is set."""


class ConvergenceStrategy(BaseModel, use_attribute_docstrings=True):
    """Stopping and acceptance criteria of the iterative tile optimization."""
    model_config = ConfigDict(frozen=True)

    max_error: float = Field(gt=0)
    """Maximal acceptable mean error of the optimized tiles."""

    max_iterations: int = Field(default=10_000, ge=1)
    """Upper bound on the number of optimizer iterations."""

    max_plateau_width: int = Field(default=200, ge=1)
    """Number of iterations without improvement after which the optimizer stops."""

    def is_converged(self, error: float) -> bool:
        return error <= self.max_error

    @classmethod
    def unconstrained(cls) -> "ConvergenceStrategy":
        """Accept whatever the solver converges to."""
        return cls(max_error=math.inf)


class GlobalOptimizationParameters(BaseModel, use_attribute_docstrings=True):
    """Parameters selecting and configuring the global optimization."""

    method: GlobalOptType = GlobalOptType.two_round_iterative
    """The optimization strategy."""

    model: ModelType = ModelType.affine
    """The transform model every tile is optimized with."""

    relative_threshold: float = Field(default=2.5, gt=0)
    """Links are removed while the maximal error exceeds the mean error times this factor."""

    absolute_threshold: float = Field(default=3.5, gt=0)
    """Links are removed while the mean error exceeds this value."""

    max_error: float = Field(default=5.0, gt=0)
    """Maximal acceptable mean error of the strong-link optimization."""

    max_iterations: int = Field(default=10_000, ge=1)
    """Upper bound on the number of optimizer iterations."""

    max_plateau_width: int = Field(default=200, ge=1)
    """Number of iterations without improvement after which the optimizer stops."""

    num_threads: int = Field(default=1, ge=1)
    """Number of threads updating tiles concurrently inside one iteration."""

    verbose: bool = False
    """Show debug-level logging."""

    @property
    def convergence_strategy(self) -> ConvergenceStrategy:
        return ConvergenceStrategy(
            max_error=self.max_error,
            max_iterations=self.max_iterations,
            max_plateau_width=self.max_plateau_width,
        )

    @classmethod
    def strict(cls, method: GlobalOptType = GlobalOptType.two_round_iterative, **kwargs) -> "GlobalOptimizationParameters":
        return cls(method=method, relative_threshold=2.5, absolute_threshold=3.5, **kwargs)

    @classmethod
    def relaxed(cls, method: GlobalOptType = GlobalOptType.two_round_iterative, **kwargs) -> "GlobalOptimizationParameters":
        return cls(method=method, relative_threshold=5.0, absolute_threshold=7.0, **kwargs)

    @classmethod
    def from_json_file(cls, json_path: str) -> "GlobalOptimizationParameters":
        """Create parameters from a JSON file.

        Args:
            json_path: Path to JSON file containing parameters

        Returns:
            GlobalOptimizationParameters: New instance with values from JSON
        """
        with open(json_path) as f:
            return cls.model_validate_json(f.read())

    def to_json_file(self, json_path: str) -> None:
        """Save parameters to a JSON file.

        Args:
            json_path: Path where JSON file should be saved
        """
        with open(json_path, "w") as f:
            f.write(self.model_dump_json(indent=2))


def input_path_exists(path: str) -> str:
    """Pydantic validator to check the path exists."""
    if not os.path.exists(path):
        raise ValueError(f"Input file does not exist: {path}")
    return path


class LinkOptimizationParameters(GlobalOptimizationParameters):
    """Global optimization of views connected by whole-image correlation links."""

    links_file: Annotated[str, AfterValidator(input_path_exists)]
    """A JSON file with the pairwise links and, for two-round methods, the view metadata."""

    output_file: Optional[str] = None
    """Where to write the resulting transforms as JSON. Printed to stdout if not set."""

    fixed_views: List[Tuple[int, int]] = Field(default_factory=list)
    """(timepoint, setup) of every view that keeps its transform."""

    groups: List[List[Tuple[int, int]]] = Field(default_factory=list)
    """Views that share one transform, each as a list of (timepoint, setup)."""

    min_quality: Optional[float] = None
    """Links with a lower quality are ignored, all links are used if not set."""

    profile_output: Optional[str] = None
    """If set, profile the optimization with cProfile and write the stats here."""
