"""Transform models for 3D registration.

A small closed set of models share one interface: translation (3 DOF),
rigid (6 DOF) and affine (12 DOF). Every model stores its transform as a
3x3 linear part and a translation vector and differs only in how it is fit
to weighted point matches.

Fitting comes in two flavours:
- `try_fit` / `fit_arrays` return an `ErrorKind` and never raise. RANSAC calls
  them thousands of times per pair where degenerate samples are routine.
- `fit` raises `NotEnoughDataError` or `IllDefinedDataError` and is meant for
  callers that treat a failed fit as exceptional.
"""
from abc import ABC, abstractmethod
from typing import Dict, Sequence, Type

import numpy as np

from ._errors import ErrorKind, error_for
from ._point_match import PointMatch, match_arrays
from ._typing_utils import FloatArray, as_point

# Normal matrices with a larger condition number are treated as singular
MAX_CONDITION_NUMBER = 1e12


class TransformModel(ABC):
    """Common interface of all transform models."""

    name: str = "model"
    min_num_matches: int = 1

    def __init__(self):
        self.linear = np.eye(3)
        self.translation = np.zeros(3)
        self.cost = float("inf")

    # --- fitting ---------------------------------------------------------

    @abstractmethod
    def _solve(self, p: FloatArray, q: FloatArray, w: FloatArray) -> ErrorKind:
        """Fit to weighted pairs with len(p) >= min_num_matches, update in place on success."""

    def fit_arrays(self, p: FloatArray, q: FloatArray, w: FloatArray) -> ErrorKind:
        """Fit so that apply(p[i]) ~ q[i] in the weighted least squares sense."""
        if p.shape[0] < self.min_num_matches:
            return ErrorKind.NOT_ENOUGH_DATA
        if not np.sum(w) > 0:
            return ErrorKind.ILL_DEFINED_DATA
        return self._solve(p, q, w)

    def try_fit(self, matches: Sequence[PointMatch]) -> ErrorKind:
        """Fit to point matches (p1.local -> p2.world) and report the outcome."""
        p, q, w = match_arrays(matches)
        return self.fit_arrays(p, q, w)

    def fit(self, matches: Sequence[PointMatch]) -> None:
        """Fit to point matches.

        Raises:
            NotEnoughDataError: If fewer than min_num_matches matches are given
            IllDefinedDataError: If the matches do not determine the model
        """
        status = self.try_fit(matches)
        if status != ErrorKind.OK:
            raise error_for(
                status,
                f"{self.name} model could not be fit to {len(matches)} matches "
                f"(minimum {self.min_num_matches})",
            )

    # --- application -----------------------------------------------------

    def apply(self, point) -> FloatArray:
        return self.linear @ as_point(point) + self.translation

    def apply_many(self, points: FloatArray) -> FloatArray:
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        return points @ self.linear.T + self.translation

    def apply_inverse(self, point) -> FloatArray:
        return np.linalg.solve(self.linear, as_point(point) - self.translation)

    def residuals(self, p: FloatArray, q: FloatArray) -> FloatArray:
        """Euclidean distances between transformed p and q, row by row."""
        return np.linalg.norm(self.apply_many(p) - q, axis=1)

    def mean_error(self, matches: Sequence[PointMatch]) -> float:
        """Weighted mean residual over matches, stored as the model's cost."""
        p, q, w = match_arrays(matches)
        if p.shape[0] == 0 or not np.sum(w) > 0:
            self.cost = float("inf")
        else:
            self.cost = float(np.sum(self.residuals(p, q) * w) / np.sum(w))
        return self.cost

    # --- bookkeeping -----------------------------------------------------

    def copy(self) -> "TransformModel":
        other = type(self)()
        other.set(self)
        return other

    def set(self, other: "TransformModel") -> None:
        """Take over the parameters and cost of another model of the same kind."""
        self.linear = other.linear.copy()
        self.translation = other.translation.copy()
        self.cost = other.cost

    def to_matrix(self) -> FloatArray:
        """Homogeneous 4x4 representation."""
        m = np.eye(4)
        m[:3, :3] = self.linear
        m[:3, 3] = self.translation
        return m

    def set_matrix(self, matrix: FloatArray) -> None:
        matrix = np.asarray(matrix, dtype=np.float64)
        self.linear = matrix[:3, :3].copy()
        self.translation = matrix[:3, 3].copy()

    @classmethod
    def from_matrix(cls, matrix: FloatArray) -> "TransformModel":
        model = cls()
        model.set_matrix(matrix)
        return model

    def concatenate(self, other: "TransformModel") -> None:
        """self = self . other, `other` is applied first."""
        self.set_matrix(self.to_matrix() @ other.to_matrix())

    def pre_concatenate(self, other: "TransformModel") -> None:
        """self = other . self, `other` is applied last."""
        self.set_matrix(other.to_matrix() @ self.to_matrix())

    def is_identity(self) -> bool:
        return bool(np.allclose(self.linear, np.eye(3)) and np.allclose(self.translation, 0))

    def __repr__(self) -> str:
        rows = ", ".join(
            f"{r[0]:.4f}, {r[1]:.4f}, {r[2]:.4f}, {t:.4f}"
            for r, t in zip(self.linear, self.translation)
        )
        return f"{type(self).__name__}({rows})"


class TranslationModel(TransformModel):
    """Pure 3D translation."""

    name = "translation"
    min_num_matches = 1

    def _solve(self, p, q, w):
        self.translation = np.sum((q - p) * w[:, None], axis=0) / np.sum(w)
        self.linear = np.eye(3)
        return ErrorKind.OK

    def set_matrix(self, matrix):
        matrix = np.asarray(matrix, dtype=np.float64)
        if not np.allclose(matrix[:3, :3], np.eye(3)):
            raise ValueError("A translation model cannot represent a linear part")
        super().set_matrix(matrix)


class RigidModel(TransformModel):
    """Rotation plus translation, fit with the weighted Kabsch method."""

    name = "rigid"
    min_num_matches = 3

    def _solve(self, p, q, w):
        sw = np.sum(w)
        pc = np.sum(p * w[:, None], axis=0) / sw
        qc = np.sum(q * w[:, None], axis=0) / sw
        pp = p - pc
        qq = q - qc

        h = (pp * w[:, None]).T @ qq
        u, s, vt = np.linalg.svd(h)

        # collinear points leave the rotation about their axis undetermined
        if s[0] <= 0 or s[1] <= s[0] * 1e-10:
            return ErrorKind.ILL_DEFINED_DATA

        d = np.sign(np.linalg.det(vt.T @ u.T))
        if d == 0:
            d = 1.0
        rotation = vt.T @ np.diag([1.0, 1.0, d]) @ u.T

        self.linear = rotation
        self.translation = qc - rotation @ pc
        return ErrorKind.OK

    def apply_inverse(self, point):
        return self.linear.T @ (as_point(point) - self.translation)


class AffineModel(TransformModel):
    """General 3D affine transform."""

    name = "affine"
    min_num_matches = 4

    def _solve(self, p, q, w):
        sw = np.sum(w)
        pc = np.sum(p * w[:, None], axis=0) / sw
        qc = np.sum(q * w[:, None], axis=0) / sw
        pp = p - pc
        qq = q - qc

        a = (pp * w[:, None]).T @ pp
        b = (pp * w[:, None]).T @ qq

        cond = np.linalg.cond(a)
        if not np.isfinite(cond) or cond > MAX_CONDITION_NUMBER:
            return ErrorKind.ILL_DEFINED_DATA

        linear = np.linalg.solve(a, b).T
        self.linear = linear
        self.translation = qc - linear @ pc
        return ErrorKind.OK


MODELS: Dict[str, Type[TransformModel]] = {
    TranslationModel.name: TranslationModel,
    RigidModel.name: RigidModel,
    AffineModel.name: AffineModel,
}


def create_model(name: str) -> TransformModel:
    """Create a fresh (identity) model by name.

    Raises:
        ValueError: If the model name is unknown
    """
    try:
        return MODELS[name.lower()]()
    except KeyError:
        raise ValueError(
            f"Unknown transform model: {name}. Available models: {list(MODELS.keys())}"
        ) from None


def matrix_to_model(matrix: FloatArray) -> AffineModel:
    """Wrap a 4x4 homogeneous matrix into an affine model."""
    model = AffineModel()
    model.set_matrix(matrix)
    return model
