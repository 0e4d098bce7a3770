#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Synthetic IMU + keyframe generator.

Forward model (inverse of the velocity update used by the preintegrator):
    f_b = R_wb^T @ (a_w - g_w)
    gyro  = ω_b + b_g + n_g
    accel = f_b + b_a + n_a

Ground truth is stepped with the same zero-order-hold scheme the
preintegrator applies to the samples, so a noise-free run reproduces the
keyframe poses up to floating point:
    R_{k+1} = R_k Exp(ω_k dt)
    v_{k+1} = v_k + a_k dt
    p_{k+1} = p_k + v_k dt + 0.5 a_k dt²

Keyframes fall on sample instants. `pose_scale` multiplies the keyframe
positions to emulate an up-to-scale visual front-end (metric scale is then
1 / pose_scale).

Author: VIO project
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

import numpy as np

from .math_utils import so3_exp
from .types import ImuBias, ImuSample, NS_TO_S, VisualPose

MotionFn = Callable[[float], np.ndarray]


@dataclass
class SyntheticTrajectory:
    samples: List[ImuSample]
    keyframes: List[VisualPose]
    keyframe_velocities: np.ndarray  # (N, 3) world frame, metric
    gravity: np.ndarray
    bias: ImuBias
    pose_scale: float = 1.0

    @property
    def timestamps(self) -> np.ndarray:
        return np.array([s.timestamp for s in self.samples], dtype=np.int64)

    @property
    def keyframe_timestamps(self) -> np.ndarray:
        return np.array([kf.timestamp for kf in self.keyframes], dtype=np.int64)


def _zero_motion(_t: float) -> np.ndarray:
    return np.zeros(3)


def sinusoidal_motion(amplitude: float = 1.0) -> Tuple[MotionFn, MotionFn]:
    """
    Smooth excitation on all axes.

    Returns:
        (angular_rate_body(t), accel_world(t)) in rad/s and m/s²
    """
    def angular_rate(t: float) -> np.ndarray:
        return amplitude * np.array([
            0.3 * np.sin(1.1 * t),
            0.4 * np.cos(0.7 * t),
            0.2 * np.sin(0.5 * t + 0.3),
        ])

    def accel_world(t: float) -> np.ndarray:
        return amplitude * np.array([
            0.8 * np.sin(1.3 * t),
            0.6 * np.cos(0.9 * t),
            0.3 * np.sin(2.1 * t),
        ])

    return angular_rate, accel_world


def simulate_trajectory(
    num_keyframes: int = 5,
    keyframe_spacing_s: float = 0.5,
    imu_rate_hz: float = 200.0,
    gravity: Optional[np.ndarray] = None,
    initial_rotation: Optional[np.ndarray] = None,
    initial_position: Optional[np.ndarray] = None,
    initial_velocity: Optional[np.ndarray] = None,
    angular_rate: Optional[MotionFn] = None,
    accel_world: Optional[MotionFn] = None,
    bias: Optional[ImuBias] = None,
    gyro_noise_density: float = 0.0,
    accel_noise_density: float = 0.0,
    pose_scale: float = 1.0,
    t0_ns: int = 0,
    seed: int = 0,
) -> SyntheticTrajectory:
    """
    Generate IMU samples and keyframe poses along a synthetic trajectory.

    Args:
        num_keyframes: Number of keyframes (>= 2)
        keyframe_spacing_s: Time between keyframes, rounded to whole IMU periods
        imu_rate_hz: IMU sample rate
        gravity: World-frame gravity (default [0, 0, -9.81])
        angular_rate: ω_b(t) in rad/s, t relative to the first sample
        accel_world: a_w(t) in m/s², t relative to the first sample
        bias: Constant IMU bias added to every sample
        gyro_noise_density: rad/s/√Hz white noise (0 = noise free)
        accel_noise_density: m/s²/√Hz white noise (0 = noise free)
        pose_scale: Factor applied to keyframe positions
        seed: RNG seed for the noise

    Raises:
        ValueError: On non-positive rate/spacing/scale or fewer than 2 keyframes
    """
    if num_keyframes < 2:
        raise ValueError(f"num_keyframes must be >= 2, got {num_keyframes}")
    if imu_rate_hz <= 0 or keyframe_spacing_s <= 0:
        raise ValueError("imu_rate_hz and keyframe_spacing_s must be positive")
    if pose_scale <= 0:
        raise ValueError(f"pose_scale must be positive, got {pose_scale}")

    dt_ns = int(round(1e9 / imu_rate_hz))
    dt = dt_ns * NS_TO_S
    stride = max(1, int(round(keyframe_spacing_s * imu_rate_hz)))
    n_samples = stride * (num_keyframes - 1) + 1

    g = np.array([0.0, 0.0, -9.81]) if gravity is None else np.asarray(gravity, dtype=float).reshape(3,)
    R = np.eye(3) if initial_rotation is None else np.asarray(initial_rotation, dtype=float).reshape(3, 3)
    p = np.zeros(3) if initial_position is None else np.asarray(initial_position, dtype=float).reshape(3,)
    v = np.zeros(3) if initial_velocity is None else np.asarray(initial_velocity, dtype=float).reshape(3,)
    omega_fn = angular_rate if angular_rate is not None else _zero_motion
    accel_fn = accel_world if accel_world is not None else _zero_motion
    bias = bias if bias is not None else ImuBias()

    rng = np.random.default_rng(seed)
    # Discrete-time std of a white noise with the given density
    sigma_g = gyro_noise_density / np.sqrt(dt)
    sigma_a = accel_noise_density / np.sqrt(dt)

    samples: List[ImuSample] = []
    keyframes: List[VisualPose] = []
    velocities = []

    for k in range(n_samples):
        t = k * dt
        t_ns = t0_ns + k * dt_ns
        omega = np.asarray(omega_fn(t), dtype=float).reshape(3,)
        a_w = np.asarray(accel_fn(t), dtype=float).reshape(3,)
        f_b = R.T @ (a_w - g)

        gyro = omega + bias.gyro
        accel = f_b + bias.accel
        if sigma_g > 0:
            gyro = gyro + sigma_g * rng.standard_normal(3)
        if sigma_a > 0:
            accel = accel + sigma_a * rng.standard_normal(3)
        samples.append(ImuSample(t_ns, gyro, accel))

        if k % stride == 0:
            keyframes.append(VisualPose(t_ns, R, pose_scale * p))
            velocities.append(v.copy())

        if k == n_samples - 1:
            break

        # Acceleration as reconstructed from the specific force
        a_eff = g + R @ f_b
        p = p + v * dt + 0.5 * a_eff * dt ** 2
        v = v + a_eff * dt
        R = R @ so3_exp(omega * dt)

    return SyntheticTrajectory(
        samples=samples,
        keyframes=keyframes,
        keyframe_velocities=np.array(velocities),
        gravity=g,
        bias=bias,
        pose_scale=float(pose_scale),
    )
