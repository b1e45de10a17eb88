from __future__ import annotations

import contextlib
import copy
import dataclasses
import logging
from typing import overload

import torch
import torch.linalg

from .errors import DimensionError, NotInitializedError, SingularCovarianceError

logger = logging.getLogger(__name__)

# Note on inversion:
# The innovation covariance S is inverted directly (no cholesky solve, no pseudo-inverse).
# dim_z is usually small, and a singular S is reported to the caller instead of being regularized.


if hasattr(torch._tensor_str, "printoptions"):  # noqa: SLF001
    printoptions = torch._tensor_str.printoptions  # noqa: SLF001
else:

    @contextlib.contextmanager
    def printoptions(**kwargs):
        """Change pytorch printoptions temporarily. From the future of pytorch."""
        # set_printoptions mutates PRINT_OPTS in place: restore a copy
        old_printoptions = copy.copy(torch._tensor_str.PRINT_OPTS)  # noqa: SLF001
        torch.set_printoptions(**kwargs)
        try:
            yield
        finally:
            torch._tensor_str.PRINT_OPTS = old_printoptions  # noqa: SLF001


def _clone(tensor: torch.Tensor | None) -> torch.Tensor | None:
    return tensor.clone() if tensor is not None else None


def _check_shape(name: str, tensor: torch.Tensor, rows: int | None, cols: int | None) -> None:
    """Check the trailing (matrix) dimensions of a tensor. ``None`` accepts any size."""
    if (
        tensor.ndim < 2  # noqa: PLR2004
        or (rows is not None and tensor.shape[-2] != rows)
        or (cols is not None and tensor.shape[-1] != cols)
    ):
        expected = f"(..., {'*' if rows is None else rows}, {'*' if cols is None else cols})"
        raise DimensionError(f"{name} should have shape {expected}. Found: {tuple(tensor.shape)}")


def _invert(innovation_covariance: torch.Tensor) -> torch.Tensor:
    """Inverse the innovation covariance, or raise if it is singular."""
    precision, info = torch.linalg.inv_ex(innovation_covariance)
    if (info != 0).any() or not torch.isfinite(precision).all():
        # cond runs an SVD, which fails on non-finite inputs
        if torch.isfinite(innovation_covariance).all():
            condition = torch.linalg.cond(innovation_covariance).max().item()
        else:
            condition = float("nan")
        logger.error("Singular innovation covariance (condition number: %s)", condition)
        raise SingularCovarianceError(
            f"The innovation covariance S = R + C P Cᵀ is not invertible (condition number: {condition})"
        )
    return precision


@dataclasses.dataclass
class GaussianState:
    """Gaussian state estimated by the filter.

    Stores the multivariate Gaussian x ~ N(mean, covariance).

    Conventions:
    - The mean is a **column vector** with shape ``(..., dim, 1)``.
    - Leading dimensions ``...`` are optional batch dimensions and may be broadcastable.

    Attributes:
        mean: Mean of the distribution (the state estimate ``x``).
            Shape: ``(..., dim, 1)``
        covariance: Covariance matrix of the distribution (``P``).
            Shape: ``(..., dim, dim)``
    """

    mean: torch.Tensor
    covariance: torch.Tensor

    def clone(self) -> GaussianState:
        """Return a deep copy of the state."""
        return GaussianState(self.mean.clone(), self.covariance.clone())

    @overload
    def to(self, dtype: torch.dtype) -> GaussianState: ...

    @overload
    def to(self, device: torch.device) -> GaussianState: ...

    def to(self, fmt):
        """Convert a GaussianState to a specific device or dtype.

        Args:
            fmt (torch.dtype | torch.device): Memory format to send the state to.

        Returns:
            GaussianState: The GaussianState with the right format
        """
        return GaussianState(self.mean.to(fmt), self.covariance.to(fmt))


class StateEstimator:
    """Linear and extended Kalman filter holding its own state.

    The estimator tracks the latent state of a (linearized) dynamical system under Gaussian noise:

        x_k = A x_{k-1} + B u_k + w_k,   w_k ~ N(0, Q)
        y_k = C x_k             + v_k,   v_k ~ N(0, R)

    where:
    - ``x_k`` is the hidden state (dimension ``n``), estimated by N(x, P),
    - ``u_k`` is the control input (dimension ``m``),
    - ``y_k`` is the measure (dimension ``k``),
    - ``A`` is the transition matrix (or the Jacobian of the transition function),
    - ``B`` is the control-input matrix,
    - ``C`` is the observation matrix (or the Jacobian of the observation function),
    - ``Q`` and ``R`` are the process and measurement noise covariances.

    In contrast with a functional filter, the estimate ``(x, P)`` is owned by the estimator and
    every predict/update call modifies it in place. ``A, B, C, Q, R`` are stored defaults: each call
    may override any of them for this call only, without persisting it. Stored defaults are only
    replaced by ``init`` or by the ``set_*`` methods. Calling the forms without overrides therefore
    depends on the previous ``init``/``set_*`` calls.

    Nonlinear systems are handled with the extended variants: the caller propagates the state
    (``predict_ekf``) or projects it in the measurement space (``update_ekf``) with its own
    nonlinear functions, and provides their Jacobians. The linear ``predict``/``update`` are
    special cases that compute these quantities with the linear model, and share the same
    covariance code path.

    Shape conventions:
    - Vectors are **column vectors** with shape ``(..., dim, 1)``.
    - Only the trailing (matrix) dimensions are validated. Leading ``...`` batch dimensions must
      broadcast (as in pytorch).

    Numerical notes:
    - ``S = R + C P Cᵀ`` is inverted directly. If it is singular, a
      :class:`~torch_se.errors.SingularCovarianceError` is raised and the estimate is not modified.
    - Running in float64 is advised when exact values matter.

    Attributes:
        check_shapes (bool): If True, validate the shapes of the tensors at each predict/update
            call and raise :class:`~torch_se.errors.DimensionError` on mismatch.
            Default: True
    """

    _REPR_SPLIT_LENGTH = 110

    def __init__(
        self,
        mean: torch.Tensor | None = None,
        covariance: torch.Tensor | None = None,
        *,
        process_matrix: torch.Tensor | None = None,
        control_matrix: torch.Tensor | None = None,
        measurement_matrix: torch.Tensor | None = None,
        process_noise: torch.Tensor | None = None,
        measurement_noise: torch.Tensor | None = None,
        check_shapes=True,
    ) -> None:
        self.check_shapes = check_shapes
        self._state: GaussianState | None = None
        self._process_matrix = _clone(process_matrix)
        self._control_matrix = _clone(control_matrix)
        self._measurement_matrix = _clone(measurement_matrix)
        self._process_noise = _clone(process_noise)
        self._measurement_noise = _clone(measurement_noise)

        if mean is not None or covariance is not None:
            if mean is None or covariance is None:
                raise DimensionError("Both mean and covariance are required to initialize the state")
            self.init(mean, covariance)

    @property
    def initialized(self) -> bool:
        """Whether the state has been initialized (predict/update can be called)."""
        return self._state is not None

    @property
    def state_dim(self) -> int | None:
        """Dimension of the state variable (None if unknown yet)."""
        if self._state is not None:
            return self._state.covariance.shape[-1]
        if self._process_matrix is not None:
            return self._process_matrix.shape[-1]
        return None

    @property
    def measure_dim(self) -> int | None:
        """Dimension of the measured variable (None if unknown yet)."""
        if self._measurement_matrix is not None:
            return self._measurement_matrix.shape[-2]
        if self._measurement_noise is not None:
            return self._measurement_noise.shape[-1]
        return None

    @property
    def control_dim(self) -> int | None:
        """Dimension of the control input (None if unknown yet)."""
        if self._control_matrix is not None:
            return self._control_matrix.shape[-1]
        return None

    @property
    def device(self) -> torch.device:
        """Device of the estimated state."""
        return self._require_state().covariance.device

    @property
    def dtype(self) -> torch.dtype:
        """Dtype of the estimated state."""
        return self._require_state().covariance.dtype

    @overload
    def to(self, dtype: torch.dtype) -> StateEstimator: ...

    @overload
    def to(self, device: torch.device) -> StateEstimator: ...

    def to(self, fmt):
        """Convert the estimator (state and stored defaults) to a specific device or dtype.

        Args:
            fmt (torch.dtype | torch.device): Memory format to send the estimator to.

        Returns:
            StateEstimator: A new estimator with the right format
        """

        def convert(tensor: torch.Tensor | None) -> torch.Tensor | None:
            return tensor.to(fmt) if tensor is not None else None

        estimator = StateEstimator(
            process_matrix=convert(self._process_matrix),
            control_matrix=convert(self._control_matrix),
            measurement_matrix=convert(self._measurement_matrix),
            process_noise=convert(self._process_noise),
            measurement_noise=convert(self._measurement_noise),
            check_shapes=self.check_shapes,
        )
        if self._state is not None:
            state = self._state.to(fmt)
            estimator.init(state.mean, state.covariance)
        return estimator

    def init(
        self,
        mean: torch.Tensor,
        covariance: torch.Tensor,
        *,
        process_matrix: torch.Tensor | None = None,
        control_matrix: torch.Tensor | None = None,
        measurement_matrix: torch.Tensor | None = None,
        process_noise: torch.Tensor | None = None,
        measurement_noise: torch.Tensor | None = None,
    ) -> None:
        """Set the state estimate, and optionally the stored model.

        With only ``mean`` and ``covariance``, it resets the estimate and keeps the stored
        ``A, B, C, Q, R`` as they were (possibly unset). Every given model tensor replaces the
        stored one. All tensors are copied.

        Model shapes are not validated here: they are checked when a call uses them.

        Args:
            mean (torch.Tensor): Initial state estimate ``x``.
                Shape: ``(..., n, 1)``
            covariance (torch.Tensor): Initial state covariance ``P``.
                Shape: ``(..., n, n)``
            process_matrix (torch.Tensor | None): Transition matrix ``A``.
                Shape: ``(..., n, n)``
            control_matrix (torch.Tensor | None): Control-input matrix ``B``.
                Shape: ``(..., n, m)``
            measurement_matrix (torch.Tensor | None): Observation matrix ``C``.
                Shape: ``(..., k, n)``
            process_noise (torch.Tensor | None): Process noise covariance ``Q``.
                Shape: ``(..., n, n)``
            measurement_noise (torch.Tensor | None): Measurement noise covariance ``R``.
                Shape: ``(..., k, k)``
        """
        if self.check_shapes:
            _check_shape("mean", mean, None, 1)
            _check_shape("covariance", covariance, mean.shape[-2], mean.shape[-2])

        self._state = GaussianState(mean.clone(), covariance.clone())

        if process_matrix is not None:
            self._process_matrix = process_matrix.clone()
        if control_matrix is not None:
            self._control_matrix = control_matrix.clone()
        if measurement_matrix is not None:
            self._measurement_matrix = measurement_matrix.clone()
        if process_noise is not None:
            self._process_noise = process_noise.clone()
        if measurement_noise is not None:
            self._measurement_noise = measurement_noise.clone()

        logger.debug(
            "Initialized estimator (State dimension: %s, Measure dimension: %s, Control dimension: %s)",
            self.state_dim,
            self.measure_dim,
            self.control_dim,
        )

    def set_process_matrix(self, process_matrix: torch.Tensor) -> None:
        """Replace the stored transition matrix ``A``."""
        self._process_matrix = process_matrix.clone()
        logger.debug("Replaced stored process matrix")

    def set_control_matrix(self, control_matrix: torch.Tensor) -> None:
        """Replace the stored control-input matrix ``B``."""
        self._control_matrix = control_matrix.clone()
        logger.debug("Replaced stored control matrix")

    def set_measurement_matrix(self, measurement_matrix: torch.Tensor) -> None:
        """Replace the stored observation matrix ``C``."""
        self._measurement_matrix = measurement_matrix.clone()
        logger.debug("Replaced stored measurement matrix")

    def set_process_noise(self, process_noise: torch.Tensor) -> None:
        """Replace the stored process noise covariance ``Q``."""
        self._process_noise = process_noise.clone()
        logger.debug("Replaced stored process noise")

    def set_measurement_noise(self, measurement_noise: torch.Tensor) -> None:
        """Replace the stored measurement noise covariance ``R``."""
        self._measurement_noise = measurement_noise.clone()
        logger.debug("Replaced stored measurement noise")

    def get_x(self) -> torch.Tensor:
        """Return a copy of the current state estimate ``x``. Shape: ``(..., n, 1)``"""
        return self._require_state().mean.clone()

    def get_p(self) -> torch.Tensor:
        """Return a copy of the current state covariance ``P``. Shape: ``(..., n, n)``"""
        return self._require_state().covariance.clone()

    def get_state(self) -> GaussianState:
        """Return a copy of the current estimate N(x, P)."""
        return self._require_state().clone()

    def predict(
        self,
        control: torch.Tensor | None = None,
        *,
        process_matrix: torch.Tensor | None = None,
        control_matrix: torch.Tensor | None = None,
        process_noise: torch.Tensor | None = None,
    ) -> None:
        """Predict the state on the next time step with the linear process model.

        It computes the propagated state

            x_next = A x + B u

        and delegates the covariance propagation to :meth:`predict_ekf`:

            x := x_next
            P := A P Aᵀ + Q

        Each omitted matrix falls back to the stored default. Overrides are used for this call
        only. Without control (``control=None``), the ``B u`` term is dropped and ``B`` is not needed.

        Args:
            control (torch.Tensor | None): Control input ``u``.
                Shape: ``(..., m, 1)``
            process_matrix (torch.Tensor | None): Optional override for the stored ``A``.
                Shape: ``(..., n, n)``
            control_matrix (torch.Tensor | None): Optional override for the stored ``B``.
                Shape: ``(..., n, m)``
            process_noise (torch.Tensor | None): Optional override for the stored ``Q``.
                Shape: ``(..., n, n)``

        Raises:
            NotInitializedError: If the state, or a needed stored default, is not set.
            DimensionError: If shapes do not conform (with ``check_shapes``).
        """
        state = self._require_state()
        process_matrix = self._default("process_matrix", process_matrix, self._process_matrix)

        if self.check_shapes:
            _check_shape("process_matrix", process_matrix, state.mean.shape[-2], state.mean.shape[-2])

        next_mean = process_matrix @ state.mean
        if control is not None:
            control_matrix = self._default("control_matrix", control_matrix, self._control_matrix)
            if self.check_shapes:
                _check_shape("control_matrix", control_matrix, state.mean.shape[-2], None)
                _check_shape("control", control, control_matrix.shape[-1], 1)
            next_mean = next_mean + control_matrix @ control

        self.predict_ekf(next_mean, process_matrix, process_noise=process_noise)

    def predict_ekf(
        self, next_mean: torch.Tensor, process_matrix: torch.Tensor, *, process_noise: torch.Tensor | None = None
    ) -> None:
        """Extended time update: set the propagated state and propagate the covariance.

        The caller computes ``x_next = f(x, u)`` with its (possibly nonlinear) transition
        function, and its Jacobian ``A`` at the current estimate. Then:

            x := x_next
            P := A P Aᵀ + Q

        The covariance only depends on the linearization ``A``, not on how ``x_next`` was computed.

        Args:
            next_mean (torch.Tensor): Propagated state ``x_next``.
                Shape: ``(..., n, 1)``
            process_matrix (torch.Tensor): Jacobian ``A`` of the transition function.
                Shape: ``(..., n, n)``
            process_noise (torch.Tensor | None): Optional override for the stored ``Q``.
                Shape: ``(..., n, n)``
        """
        state = self._require_state()
        process_noise = self._default("process_noise", process_noise, self._process_noise)

        if self.check_shapes:
            dim = state.mean.shape[-2]
            _check_shape("next_mean", next_mean, dim, 1)
            _check_shape("process_matrix", process_matrix, dim, dim)
            _check_shape("process_noise", process_noise, dim, dim)

        covariance = process_matrix @ state.covariance @ process_matrix.mT + process_noise

        self._state = GaussianState(next_mean.clone(), covariance)

    def update(
        self,
        measure: torch.Tensor,
        *,
        measurement_matrix: torch.Tensor | None = None,
        measurement_noise: torch.Tensor | None = None,
    ) -> None:
        """Update the state estimate with a new measure, using the linear measurement model.

        It computes the predicted measure ``y_pred = C x`` and delegates to :meth:`update_ekf`.

        Args:
            measure (torch.Tensor): Measure ``y`` (column vector).
                Shape: ``(..., k, 1)``
            measurement_matrix (torch.Tensor | None): Optional override for the stored ``C``.
                Shape: ``(..., k, n)``
            measurement_noise (torch.Tensor | None): Optional override for the stored ``R``.
                Shape: ``(..., k, k)``

        Raises:
            NotInitializedError: If the state, or a needed stored default, is not set.
            DimensionError: If shapes do not conform (with ``check_shapes``).
            SingularCovarianceError: If ``S`` cannot be inverted.
        """
        state = self._require_state()
        measurement_matrix = self._default("measurement_matrix", measurement_matrix, self._measurement_matrix)

        if self.check_shapes:
            _check_shape("measurement_matrix", measurement_matrix, None, state.mean.shape[-2])

        predicted_measure = measurement_matrix @ state.mean

        self.update_ekf(measure, predicted_measure, measurement_matrix, measurement_noise=measurement_noise)

    def update_ekf(
        self,
        measure: torch.Tensor,
        predicted_measure: torch.Tensor,
        measurement_matrix: torch.Tensor,
        *,
        measurement_noise: torch.Tensor | None = None,
    ) -> None:
        """Extended measurement update.

        The caller provides the actual measure ``y``, the predicted measure ``y_pred = h(x)`` from
        its (possibly nonlinear) observation function, and the Jacobian ``C`` of ``h`` at ``x``.

        `update_ekf` follows four steps:
        1. Innovation covariance: S = R + C P Cᵀ
        2. Kalman gain: K = P Cᵀ S^{-1}
        3. State: x := x + K (y - y_pred)
        4. Covariance: P := (I - K C) P

        Both ``x`` and ``P`` are computed from the gain of the prior ``P`` before being stored.

        Args:
            measure (torch.Tensor): Measure ``y`` (column vector).
                Shape: ``(..., k, 1)``
            predicted_measure (torch.Tensor): Predicted measure ``y_pred``.
                Shape: ``(..., k, 1)``
            measurement_matrix (torch.Tensor): Jacobian ``C`` of the observation function.
                Shape: ``(..., k, n)``
            measurement_noise (torch.Tensor | None): Optional override for the stored ``R``.
                Shape: ``(..., k, k)``

        Raises:
            NotInitializedError: If the state, or the stored ``R`` when needed, is not set.
            DimensionError: If shapes do not conform (with ``check_shapes``).
            SingularCovarianceError: If ``S`` cannot be inverted. The estimate is left untouched.
        """
        state = self._require_state()
        measurement_noise = self._default("measurement_noise", measurement_noise, self._measurement_noise)

        if self.check_shapes:
            _check_shape("measurement_matrix", measurement_matrix, None, state.mean.shape[-2])
            dim_z = measurement_matrix.shape[-2]
            _check_shape("measure", measure, dim_z, 1)
            _check_shape("predicted_measure", predicted_measure, dim_z, 1)
            _check_shape("measurement_noise", measurement_noise, dim_z, dim_z)

        innovation_covariance = measurement_noise + measurement_matrix @ state.covariance @ measurement_matrix.mT
        kalman_gain = state.covariance @ measurement_matrix.mT @ _invert(innovation_covariance)

        mean = state.mean + kalman_gain @ (measure - predicted_measure)

        identity = torch.eye(state.covariance.shape[-1], dtype=state.covariance.dtype, device=state.covariance.device)
        covariance = (identity - kalman_gain @ measurement_matrix) @ state.covariance

        self._state = GaussianState(mean, covariance)

    def _require_state(self) -> GaussianState:
        if self._state is None:
            raise NotInitializedError("The estimator state is not initialized. Call `init` first.")
        return self._state

    @staticmethod
    def _default(name: str, override: torch.Tensor | None, stored: torch.Tensor | None) -> torch.Tensor:
        if override is not None:
            return override
        if stored is None:
            raise NotInitializedError(f"No {name} given and no default {name} is stored.")
        return stored

    def _format_block(self, title: str, tensors: list[tuple[str, torch.Tensor | None]], linewidth: int) -> str:
        """Format named tensors side by side when short enough, else one after the other."""
        with printoptions(profile="short", sci_mode=False, linewidth=linewidth):
            reprs = [(name, str(tensor).split("\n")) for name, tensor in tensors]

        widths = [max(len(line) for line in lines) for _, lines in reprs]

        if sum(widths) <= self._REPR_SPLIT_LENGTH:  # Single line
            height = max(len(lines) for _, lines in reprs)
            columns = []
            for i, (name, lines) in enumerate(reprs):
                header = f"{title}{name} = " if i == 0 else f"  &  {name} = "
                columns.append([header] + [" " * len(header)] * (height - 1))
                columns.append([line.ljust(widths[i]) for line in lines] + [" " * widths[i]] * (height - len(lines)))
            return "\n".join("".join(row).rstrip() for row in zip(*columns))

        rows: list[str] = []
        for i, (name, lines) in enumerate(reprs):
            header = f"{title if i == 0 else ' ' * len(title)}{name} = "
            if i:
                rows.append("")
            rows.extend((header if j == 0 else " " * len(header)) + line for j, line in enumerate(lines))
        return "\n".join(rows)

    def __repr__(self) -> str:
        """Convert the estimator into a readable string."""
        header = (
            f"State estimator (State dimension: {self.state_dim}, Measure dimension: {self.measure_dim}, "
            f"Control dimension: {self.control_dim})"
        )
        blocks = [
            header,
            self._format_block("Process: ", [("A", self._process_matrix), ("Q", self._process_noise)], 80),
            self._format_block("Control: ", [("B", self._control_matrix)], 80),
            self._format_block("Measurement: ", [("C", self._measurement_matrix), ("R", self._measurement_noise)], 100),
        ]
        n_char = max(len(line) for line in "\n".join(blocks).split("\n"))
        return ("\n" + "-" * n_char + "\n").join(blocks)
