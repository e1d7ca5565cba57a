"""Stopping and acceptance criteria of the tile optimization."""
import logging
import math
from abc import ABC, abstractmethod
from collections import deque
from typing import TYPE_CHECKING

from ..parameters import ConvergenceStrategy, GlobalOptimizationParameters

if TYPE_CHECKING:
    from ._tile_graph import TileConfiguration

logger = logging.getLogger(__name__)

# A plateau is flat when the error changes less than this per iteration
PLATEAU_SLOPE_THRESHOLD = 1e-4
# Iterative strategies do not consider a configuration diverged while its maximal error is this small
MIN_SIGNIFICANT_MAX_ERROR = 0.95


class ErrorStatistic:
    """Running statistic over the error of the last `capacity` iterations."""

    def __init__(self, capacity: int):
        if capacity < 2:
            raise ValueError(f"ErrorStatistic needs a capacity of at least 2, got {capacity}")
        self.values: deque = deque(maxlen=capacity)
        self.num_values = 0
        self.min = math.inf
        self.max = -math.inf
        self._sum = 0.0

    def add(self, value: float) -> None:
        self.values.append(value)
        self.num_values += 1
        self.min = min(self.min, value)
        self.max = max(self.max, value)
        self._sum += value

    @property
    def mean(self) -> float:
        return self._sum / self.num_values if self.num_values else math.nan

    @property
    def last(self) -> float:
        return self.values[-1]

    def wide_slope(self, width: int) -> float:
        """Mean change per iteration over the last `width` iterations (or fewer, if not available)."""
        width = min(width, len(self.values) - 1)
        if width < 1:
            return math.inf
        return (self.values[-1] - self.values[-1 - width]) / width

    def is_plateau(self, max_plateau_width: int) -> bool:
        """True if the error is flat over the plateau window and all its halvings."""
        width = max_plateau_width
        while width >= 1:
            if abs(self.wide_slope(width)) > PLATEAU_SLOPE_THRESHOLD:
                return False
            width //= 2
        return True


class IterativeConvergenceStrategy(ABC):
    """Decides whether an optimized configuration is good enough or a link has to go."""

    def __init__(self, convergence: ConvergenceStrategy):
        self.convergence = convergence

    @abstractmethod
    def is_converged(self, configuration: "TileConfiguration") -> bool:
        pass


class SimpleIterativeConvergenceStrategy(IterativeConvergenceStrategy):
    """Converged unless max error > mean error * relative_threshold, or mean error > absolute_threshold."""

    def __init__(
        self,
        max_allowed_error: float,
        relative_threshold: float,
        absolute_threshold: float,
        max_iterations: int = 10_000,
        max_plateau_width: int = 200,
    ):
        super().__init__(ConvergenceStrategy(
            max_error=max_allowed_error,
            max_iterations=max_iterations,
            max_plateau_width=max_plateau_width,
        ))
        self.relative_threshold = relative_threshold
        self.absolute_threshold = absolute_threshold

    @classmethod
    def from_parameters(cls, params: GlobalOptimizationParameters) -> "SimpleIterativeConvergenceStrategy":
        return cls(
            params.max_error,
            params.relative_threshold,
            params.absolute_threshold,
            max_iterations=params.max_iterations,
            max_plateau_width=params.max_plateau_width,
        )

    def is_converged(self, configuration):
        avg = configuration.error
        worst = configuration.max_error
        if (avg * self.relative_threshold < worst and worst > MIN_SIGNIFICANT_MAX_ERROR) or avg > self.absolute_threshold:
            logger.info(
                f"Not converged: avg error {avg:.4f}, max error {worst:.4f} "
                f"(relative threshold {self.relative_threshold}, absolute threshold {self.absolute_threshold})"
            )
            return False
        return True
