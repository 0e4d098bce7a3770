#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
IMU Preintegration Module
=========================

Implements IMU preintegration on manifold following Forster et al., TRO 2017:
"On-Manifold Preintegration for Real-Time Visual-Inertial Odometry"

Theory Overview:
----------------
Preintegration summarizes all IMU samples between two keyframes t_i, t_j into
relative quantities in the body frame at t_i:

1. Preintegrated relative measurements:
   - ΔR_ij: Relative rotation from i to j
   - Δv_ij: Velocity increment in frame i (gravity NOT included)
   - Δp_ij: Position increment in frame i (gravity NOT included)

2. Jacobians w.r.t. biases for first-order correction without re-integration:
     ΔR_corr = ΔR * Exp(J_R_bg * δbg)
     Δv_corr = Δv + J_v_bg * δbg + J_v_ba * δba
     Δp_corr = Δp + J_p_bg * δbg + J_p_ba * δba

State Update:
-------------
Gravity is compensated in the world frame when the summary is used:
    R_j = R_i * ΔR_ij
    v_j = v_i + g*Δt + R_i * Δv_ij
    p_j = p_i + v_i*Δt + 0.5*g*Δt² + R_i * Δp_ij

Covariance Propagation:
-----------------------
Error state [δθ, δv, δp, δbg, δba] (15), discrete propagation:
    Σ_{k+1} = A_k * Σ_k * A_k' + B_k * Q_d * B_k'
with white-noise densities converted to discrete variances (σ²/dt) and bias
random walks (σ²*dt). The integration uncertainty adds σ_int²*dt on position.

References:
-----------
[1] Forster et al., "On-Manifold Preintegration for Real-Time Visual-Inertial
    Odometry", IEEE TRO 2017

Author: VIO project
"""

import threading
from typing import Optional, Sequence, Tuple

import numpy as np

from . import config
from .config import ImuParams
from .math_utils import right_jacobian, skew_symmetric, so3_exp, so3_log
from .types import (
    ImuBias,
    ImuSample,
    InitStatus,
    PreintegratedMeasurement,
    PreintegrationResult,
    failure,
    NS_TO_S,
)

DT_MAX = 0.1          # 100ms maximum step (IMU should be > 10Hz)
MIN_SPAN_SEC = 1e-6   # shorter spans carry no usable motion


class IMUPreintegration:
    """
    IMU Preintegration on Manifold (Forster et al., TRO 2017).

    Accumulates:
      - ΔR: Preintegrated rotation (SO(3) rotation matrix)
      - Δv: Preintegrated velocity (3D vector)
      - Δp: Preintegrated position (3D vector)

    and the bias Jacobians J_R_bg, J_v_bg, J_v_ba, J_p_bg, J_p_ba (3×3 each).

    Usage Example:
        preint = IMUPreintegration(bias, ImuParams())
        for k in range(len(samples) - 1):
            dt = (timestamps[k + 1] - timestamps[k]) * 1e-9
            preint.integrate_measurement(samples[k].gyro, samples[k].accel, dt)
        pim = preint.to_measurement(timestamps[0], timestamps[-1])
    """

    def __init__(self, bias: ImuBias, params: ImuParams):
        """
        Initialize preintegration with linearization bias and noise parameters.

        Args:
            bias: Linearization point for the bias Jacobians
            params: Noise densities / random walks / integration sigma
        """
        self.params = params
        self.reset(bias)

    def reset(self, bias: ImuBias):
        """Reset preintegration to identity/zero with new linearization point."""
        self.bias_lin = bias

        self.delta_R = np.eye(3, dtype=float)
        self.delta_v = np.zeros(3, dtype=float)
        self.delta_p = np.zeros(3, dtype=float)

        self.J_R_bg = np.zeros((3, 3), dtype=float)  # ∂ΔR/∂bg
        self.J_v_bg = np.zeros((3, 3), dtype=float)  # ∂Δv/∂bg
        self.J_v_ba = np.zeros((3, 3), dtype=float)  # ∂Δv/∂ba
        self.J_p_bg = np.zeros((3, 3), dtype=float)  # ∂Δp/∂bg
        self.J_p_ba = np.zeros((3, 3), dtype=float)  # ∂Δp/∂ba

        self.cov = np.zeros((15, 15), dtype=float)
        self.dt_sum = 0.0

    def integrate_measurement(self, w_meas: np.ndarray, a_meas: np.ndarray, dt: float):
        """
        Integrate one IMU measurement (gyro + specific force) over dt seconds.

        Args:
            w_meas: Gyroscope measurement (3D, rad/s)
            a_meas: Accelerometer measurement (3D, m/s²), includes gravity reaction
            dt: Time step (seconds)
        """
        if dt <= 0.0:
            raise ValueError(f"[PREINT] Invalid dt={dt:.9f}s (<=0)")

        if dt > DT_MAX:
            # Likely a gap in the stream: split to keep the discretization stable
            num_splits = int(np.ceil(dt / DT_MAX))
            dt_split = dt / num_splits
            print(f"[PREINT] Large dt={dt:.6f}s split into {num_splits} × {dt_split:.6f}s")
            for _ in range(num_splits):
                self.integrate_measurement(w_meas, a_meas, dt_split)
            return

        # Bias-corrected measurements (using linearization point)
        w_hat = np.asarray(w_meas, dtype=float) - self.bias_lin.gyro
        a_hat = np.asarray(a_meas, dtype=float) - self.bias_lin.accel

        # --- Step 1: Incremental rotation and its right Jacobian ---
        theta_vec = w_hat * dt
        d_R = so3_exp(theta_vec)
        j_r = right_jacobian(theta_vec)

        delta_R_k1 = self.delta_R @ d_R
        a_skew = skew_symmetric(a_hat)
        R_a_skew = self.delta_R @ a_skew

        # --- Step 2/3: Velocity and position deltas ---
        # Δv_{k+1} = Δv_k + ΔR_k * a_hat * dt
        # Δp_{k+1} = Δp_k + Δv_k * dt + 0.5 * ΔR_k * a_hat * dt²
        delta_v_k1 = self.delta_v + self.delta_R @ a_hat * dt
        delta_p_k1 = self.delta_p + self.delta_v * dt + \
            0.5 * self.delta_R @ a_hat * (dt ** 2)

        # --- Step 4: Jacobians w.r.t. biases (Forster et al. TRO 2017, App. B) ---
        j_r_bg_k1 = d_R.T @ self.J_R_bg - j_r * dt
        j_v_bg_k1 = self.J_v_bg - R_a_skew @ self.J_R_bg * dt
        j_v_ba_k1 = self.J_v_ba - self.delta_R * dt
        j_p_bg_k1 = self.J_p_bg + self.J_v_bg * dt - \
            0.5 * R_a_skew @ self.J_R_bg * (dt ** 2)
        j_p_ba_k1 = self.J_p_ba + self.J_v_ba * dt - 0.5 * self.delta_R * (dt ** 2)

        # --- Step 5: Covariance (discrete-time propagation) ---
        self.cov = self._propagate_covariance(d_R, j_r, R_a_skew, dt)

        # --- Step 6: Commit updates ---
        self.delta_R = delta_R_k1
        self.delta_v = delta_v_k1
        self.delta_p = delta_p_k1

        self.J_R_bg = j_r_bg_k1
        self.J_v_bg = j_v_bg_k1
        self.J_v_ba = j_v_ba_k1
        self.J_p_bg = j_p_bg_k1
        self.J_p_ba = j_p_ba_k1

        self.dt_sum += dt

    def _propagate_covariance(self, d_R: np.ndarray, j_r: np.ndarray,
                              R_a_skew: np.ndarray, dt: float) -> np.ndarray:
        p = self.params

        # State transition A (15x15) for [δθ, δv, δp, δbg, δba]
        A = np.eye(15, dtype=float)
        A[0:3, 0:3] = d_R.T
        A[0:3, 9:12] = -j_r * dt
        A[3:6, 0:3] = -R_a_skew * dt
        A[3:6, 12:15] = -self.delta_R * dt
        A[6:9, 0:3] = -0.5 * R_a_skew * (dt ** 2)
        A[6:9, 3:6] = np.eye(3) * dt
        A[6:9, 12:15] = -0.5 * self.delta_R * (dt ** 2)

        # Noise input B (15x12) for [n_g, n_a, n_bg, n_ba]
        B = np.zeros((15, 12), dtype=float)
        B[0:3, 0:3] = j_r * dt
        B[3:6, 3:6] = self.delta_R * dt
        B[6:9, 3:6] = 0.5 * self.delta_R * (dt ** 2)
        B[9:12, 6:9] = np.eye(3)
        B[12:15, 9:12] = np.eye(3)

        Q = np.diag(np.concatenate([
            np.full(3, p.gyro_noise_density ** 2 / dt),
            np.full(3, p.accel_noise_density ** 2 / dt),
            np.full(3, p.gyro_random_walk ** 2 * dt),
            np.full(3, p.accel_random_walk ** 2 * dt),
        ]))

        # Covariance corrupted upstream - reset instead of cascading inf/nan
        if not np.all(np.isfinite(self.cov)):
            print(f"[PREINT] Covariance contains inf/nan at t={self.dt_sum:.6f}s, resetting")
            self.cov = np.eye(15, dtype=float) * 1e-6

        cov_max = np.max(np.abs(self.cov))
        if cov_max > 1e10:
            scale_factor = 1e8 / cov_max
            self.cov = self.cov * scale_factor
            print(f"[PREINT] Covariance overflow clamped: max={cov_max:.2e} → scaled by {scale_factor:.2e}")

        cov_new = A @ self.cov @ A.T + B @ Q @ B.T
        cov_new[6:9, 6:9] += np.eye(3) * (p.integration_sigma ** 2) * dt

        if not np.all(np.isfinite(cov_new)):
            print(f"[PREINT] Covariance propagation produced inf/nan, reverting")
            return self.cov

        # Ensure symmetry
        return (cov_new + cov_new.T) / 2.0

    def get_deltas(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Preintegrated (ΔR, Δv, Δp) at the linearization bias."""
        return self.delta_R, self.delta_v, self.delta_p

    def get_jacobians(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        """J_R_bg, J_v_bg, J_v_ba, J_p_bg, J_p_ba: (3x3) matrices."""
        return self.J_R_bg, self.J_v_bg, self.J_v_ba, self.J_p_bg, self.J_p_ba

    def to_measurement(self, t_start: int, t_end: int) -> PreintegratedMeasurement:
        """Freeze the accumulated state into an immutable measurement."""
        return PreintegratedMeasurement(
            delta_R=self.delta_R,
            delta_v=self.delta_v,
            delta_p=self.delta_p,
            cov=self.cov,
            J_R_bg=self.J_R_bg,
            J_v_bg=self.J_v_bg,
            J_v_ba=self.J_v_ba,
            J_p_bg=self.J_p_bg,
            J_p_ba=self.J_p_ba,
            bias_lin=self.bias_lin,
            t_start=t_start,
            t_end=t_end,
        )


def preintegrate(timestamps: Sequence[int], samples: Sequence[ImuSample],
                 bias: ImuBias, params: ImuParams) -> PreintegrationResult:
    """
    Preintegrate samples covering exactly [timestamps[0], timestamps[-1]].

    Sample k is held over [t_k, t_{k+1}]; the last sample only closes the span.

    Raises:
        ValueError: If lengths differ or timestamps are not strictly increasing
    """
    ts = np.asarray(timestamps, dtype=np.int64).reshape(-1)
    if len(ts) != len(samples):
        raise ValueError(f"{len(ts)} timestamps for {len(samples)} samples")
    if len(ts) < 2:
        return failure(PreintegrationResult, InitStatus.INSUFFICIENT_DATA,
                       f"need >= 2 IMU samples, got {len(ts)}", "PREINT")
    dts_ns = np.diff(ts)
    if np.any(dts_ns <= 0):
        raise ValueError("IMU timestamps must be strictly increasing")
    span = (ts[-1] - ts[0]) * NS_TO_S
    if span < MIN_SPAN_SEC:
        return failure(PreintegrationResult, InitStatus.INSUFFICIENT_DATA,
                       f"span {span:.3e}s too short", "PREINT")

    preint = IMUPreintegration(bias, params)
    for k in range(len(ts) - 1):
        preint.integrate_measurement(samples[k].gyro, samples[k].accel, dts_ns[k] * NS_TO_S)

    if config.VERBOSE_DEBUG:
        angle = np.degrees(np.linalg.norm(so3_log(preint.delta_R)))
        print(f"[PREINT] {len(ts)} samples over {span:.3f}s: |Δθ|={angle:.2f}° "
              f"|Δv|={np.linalg.norm(preint.delta_v):.3f} |Δp|={np.linalg.norm(preint.delta_p):.3f}")

    return PreintegrationResult(InitStatus.SUCCESS, preint.to_measurement(int(ts[0]), int(ts[-1])))


class ImuFrontEnd:
    """
    Holds the current IMU bias across initialization attempts and
    preintegrates sample runs with it.
    """

    def __init__(self, params: ImuParams, bias: Optional[ImuBias] = None):
        self.params = params
        self._lock = threading.Lock()
        self._bias = bias if bias is not None else ImuBias()

    def preintegrate_imu_measurements(self, timestamps: Sequence[int],
                                      samples: Sequence[ImuSample]) -> PreintegrationResult:
        return preintegrate(timestamps, samples, self.get_current_imu_bias(), self.params)

    def get_current_imu_bias(self) -> ImuBias:
        with self._lock:
            return self._bias

    def update_bias(self, bias: ImuBias) -> None:
        with self._lock:
            self._bias = bias
