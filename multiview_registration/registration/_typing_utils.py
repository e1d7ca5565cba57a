"""Type aliases and utilities for multiview registration.

This module provides commonly used type aliases for numpy arrays and numeric types
used throughout the registration package.
"""
from typing import Any, Union

import numpy as np
import numpy.typing as npt

# Array type aliases
NumArray = npt.NDArray[Any]
FloatArray = npt.NDArray[np.float64]
IntArray = npt.NDArray[np.int_]
BoolArray = npt.NDArray[np.bool_]

# Numeric type aliases
Int = Union[int, np.int_]
Float = Union[float, np.float64]

# Coordinates are always three dimensional
NUM_DIMENSIONS = 3


def as_point(coordinates: Any) -> FloatArray:
    """Convert anything array-like to a fresh float64 vector of length 3.

    Raises:
        ValueError: If the input does not hold exactly three coordinates
    """
    arr = np.array(coordinates, dtype=np.float64).reshape(-1)
    if arr.shape[0] != NUM_DIMENSIONS:
        raise ValueError(f"Expected {NUM_DIMENSIONS} coordinates, got {arr.shape[0]}")
    return arr
