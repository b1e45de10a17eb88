"""Example tracking a 2d target from range & bearing measurements with the extended filter.

The target follows a constant velocity model driven by a known acceleration command (control input).
A radar at the origin measures its distance and angle, which is a nonlinear observation:

h(x) = (sqrt(px^2 + py^2), atan2(py, px))

The linear `predict` is used for the dynamics, and `update_ekf` for the radar measures.
"""

import argparse
import logging
import math
from typing import Tuple

import torch

import torch_se


def constant_velocity_model(dt: float, process_std: float) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """Build the transition, control and process noise matrices of a 2d constant velocity model.

    State: (px, py, vx, vy). Control: (ax, ay).

    Args:
        dt (float): Time step
        process_std (float): Std of the unknown acceleration

    Returns:
        torch.Tensor: Transition matrix A
            Shape: (4, 4)
        torch.Tensor: Control matrix B
            Shape: (4, 2)
        torch.Tensor: Process noise Q
            Shape: (4, 4)
    """
    process_matrix = torch.eye(4)
    process_matrix[0, 2] = dt
    process_matrix[1, 3] = dt

    control_matrix = torch.cat((torch.eye(2) * dt**2 / 2, torch.eye(2) * dt))

    # The unknown acceleration goes through the same path as the command
    process_noise = control_matrix @ control_matrix.mT * process_std**2

    return process_matrix, control_matrix, process_noise


def observe(state: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
    """Range & bearing of a state and the Jacobian of the observation.

    Args:
        state (torch.Tensor): State (px, py, vx, vy)
            Shape: (4, 1)

    Returns:
        torch.Tensor: Predicted measure (range, bearing)
            Shape: (2, 1)
        torch.Tensor: Jacobian of the observation at state
            Shape: (2, 4)
    """
    px, py = state[0, 0], state[1, 0]
    range_sq = px**2 + py**2
    range_ = range_sq.sqrt()

    measure = torch.stack((range_, torch.atan2(py, px)))[:, None]
    jacobian = torch.zeros(2, 4, dtype=state.dtype)
    jacobian[0, 0] = px / range_
    jacobian[0, 1] = py / range_
    jacobian[1, 0] = -py / range_sq
    jacobian[1, 1] = px / range_sq

    return measure, jacobian


def main(n: int, dt: float, range_std: float, bearing_std: float, process_std: float):
    print("Parameters")
    print(f"Measurement noise: range={range_std}, bearing={bearing_std}")
    print(f"Process noise: {process_std}")
    print(f"Simulating {n} steps with dt={dt}")

    process_matrix, control_matrix, process_noise = constant_velocity_model(dt, process_std)
    measurement_noise = torch.diag(torch.tensor([range_std**2, bearing_std**2]))

    # Simulate a target turning around the radar
    true_state = torch.tensor([[50.0], [0.0], [0.0], [5.0]])
    controls = []
    truths = []
    for t in range(n):
        control = torch.tensor([[-0.1 * math.cos(t * dt / 10)], [0.0]])
        true_state = process_matrix @ true_state + control_matrix @ control
        true_state = true_state + control_matrix @ (process_std * torch.randn(2, 1))
        controls.append(control)
        truths.append(true_state)

    estimator = torch_se.StateEstimator(
        torch.tensor([[45.0], [5.0], [0.0], [0.0]]),
        torch.diag(torch.tensor([10.0, 10.0, 5.0, 5.0]) ** 2),
        process_matrix=process_matrix,
        control_matrix=control_matrix,
        process_noise=process_noise,
        measurement_noise=measurement_noise,
    )
    print(estimator)

    errors = []
    for control, truth in zip(controls, truths):
        estimator.predict(control)

        measure, _ = observe(truth)
        measure = measure + torch.tensor([[range_std], [bearing_std]]) * torch.randn(2, 1)

        predicted_measure, jacobian = observe(estimator.get_x())
        innovation = measure - predicted_measure
        # Wrap the bearing innovation into [-pi, pi)
        innovation[1] = torch.remainder(innovation[1] + torch.pi, 2 * torch.pi) - torch.pi
        estimator.update_ekf(predicted_measure + innovation, predicted_measure, jacobian)

        errors.append((estimator.get_x()[:2] - truth[:2]).norm().item())

    print(f"Position error: first={errors[0]:.2f}, last={errors[-1]:.2f}")
    print(f"Mean position error on the last half: {sum(errors[n // 2 :]) / (n - n // 2):.2f}")
    print("Final covariance (positions):")
    print(estimator.get_p()[:2, :2])


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Track a target with range & bearing measurements")
    parser.add_argument("--n", type=int, default=200, help="Number of time steps")
    parser.add_argument("--dt", type=float, default=0.5, help="Time step")
    parser.add_argument("--range-std", type=float, default=1.0, help="Range measurement std")
    parser.add_argument("--bearing-std", type=float, default=0.01, help="Bearing measurement std")
    parser.add_argument("--process-std", type=float, default=0.05, help="Unknown acceleration std")
    parser.add_argument("--verbose", action="store_true", help="Log estimator events")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)
    main(args.n, args.dt, args.range_std, args.bearing_std, args.process_std)
