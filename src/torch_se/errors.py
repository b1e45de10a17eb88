"""Exceptions raised by :class:`~torch_se.StateEstimator`."""


class EstimatorError(Exception):
    """Base class of all the estimator errors."""


class NotInitializedError(EstimatorError, RuntimeError):
    """The estimator (or one of its stored defaults) has not been set yet.

    Raised when predict/update or an accessor is called before ``init``, or when a call
    relies on a stored default (``A``, ``B``, ``C``, ``Q`` or ``R``) that was never provided.
    """


class DimensionError(EstimatorError, ValueError):
    """Tensors given to the estimator do not have conforming shapes."""


class SingularCovarianceError(EstimatorError, ArithmeticError):
    """The innovation covariance ``S = R + C P Cᵀ`` cannot be inverted.

    The estimator is left untouched when this is raised.
    """
