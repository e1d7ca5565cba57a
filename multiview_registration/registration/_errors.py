"""Error taxonomy for pairwise matching and global optimization.

Expected conditions inside hot loops (a degenerate RANSAC sample, a pair of
views without enough candidates) are reported as `ErrorKind` values on result
objects. The exception classes exist for boundary APIs that prefer raising,
e.g. `TransformModel.fit`.
"""
from enum import Enum


class ErrorKind(Enum):
    """Machine readable status of a fit, a matching task or an optimization."""
    OK = "ok"
    NOT_ENOUGH_DATA = "not_enough_data"
    ILL_DEFINED_DATA = "ill_defined_data"
    NO_MODEL_FOUND = "no_model_found"
    DISCONNECTED = "disconnected"
    NOT_CONVERGED = "not_converged"


class RegistrationError(Exception):
    """Base class of all registration errors."""
    kind = ErrorKind.OK


class NotEnoughDataError(RegistrationError):
    """Fewer point matches than the model minimum were supplied."""
    kind = ErrorKind.NOT_ENOUGH_DATA


class IllDefinedDataError(RegistrationError):
    """The point matches are degenerate (e.g. collinear) and the fit is singular."""
    kind = ErrorKind.ILL_DEFINED_DATA


class NoModelFoundError(RegistrationError):
    """RANSAC exhausted its iterations without an acceptable model."""
    kind = ErrorKind.NO_MODEL_FOUND


class DisconnectedError(RegistrationError):
    """The optimization graph has no connected or fixed tiles."""
    kind = ErrorKind.DISCONNECTED


class NotConvergedError(RegistrationError):
    """The iterative optimization ran out of removable links above its error targets."""
    kind = ErrorKind.NOT_CONVERGED


_ERRORS_BY_KIND = {
    cls.kind: cls
    for cls in (
        NotEnoughDataError,
        IllDefinedDataError,
        NoModelFoundError,
        DisconnectedError,
        NotConvergedError,
    )
}


def error_for(kind: ErrorKind, message: str) -> RegistrationError:
    """Build the exception matching an error kind.

    Raises:
        ValueError: If kind is ErrorKind.OK
    """
    if kind == ErrorKind.OK:
        raise ValueError("ErrorKind.OK has no matching exception")
    return _ERRORS_BY_KIND[kind](message)
