"""Torch-SE: a stateful linear & extended Kalman filter in PyTorch.

torch-se provides :class:`~torch_se.StateEstimator`, a recursive Bayesian estimator
that fuses noisy process dynamics with noisy measurements to maintain the best
estimate of an unobserved state and its uncertainty. It is meant to be driven
step by step by a tracking or localization pipeline, which supplies the system
matrices and the observations at each time step.

Key features
------------
- **Owned state**: the estimate N(x, P) lives in the estimator and is updated in place.
- **Stored model with per-call overrides**: ``A, B, C, Q, R`` are stored defaults that
  any predict/update call may override for that call only.
- **Linear and extended variants**: ``predict``/``update`` use the linear model, while
  ``predict_ekf``/``update_ekf`` take the propagated state (or predicted measure) and the
  Jacobians computed by the caller.
- **Loud failures**: uninitialized use, shape mismatches and singular innovation
  covariances raise dedicated exceptions (see :mod:`torch_se.errors`).

Getting started
---------------
>>> import torch
>>> from torch_se import StateEstimator
>>> estimator = StateEstimator(
...     torch.zeros(2, 1, dtype=torch.float64),
...     torch.eye(2, dtype=torch.float64),
...     process_matrix=torch.tensor([[1.0, 1.0], [0.0, 1.0]], dtype=torch.float64),
...     measurement_matrix=torch.tensor([[1.0, 0.0]], dtype=torch.float64),
...     process_noise=torch.eye(2, dtype=torch.float64) * 0.01,
...     measurement_noise=torch.eye(1, dtype=torch.float64),
... )
>>> estimator.predict()
>>> estimator.update(torch.tensor([[1.0]], dtype=torch.float64))
>>> estimator.get_x()  # doctest: +SKIP

Notes on shapes
---------------
torch-se uses column vectors. State and measurement vectors must have shape
``(..., dim, 1)``. Leading dimensions ``...`` are treated as batch dimensions
and may be broadcastable across operations.
"""

from .errors import DimensionError, EstimatorError, NotInitializedError, SingularCovarianceError
from .state_estimator import GaussianState, StateEstimator

__all__ = [
    "DimensionError",
    "EstimatorError",
    "GaussianState",
    "NotInitializedError",
    "SingularCovarianceError",
    "StateEstimator",
]
__version__ = "0.1.0"
