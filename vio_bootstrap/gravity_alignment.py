#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Online Gravity Alignment Module
===============================

Recovers gyroscope bias, gravity direction, per-keyframe velocities (and the
metric scale of up-to-scale poses) from one window of visual poses and IMU
preintegrated measurements. No stationary start is assumed.

Stages:
-------
1. Gyroscope bias: for each interval the rotation mismatch between the visual
   relative rotation and the preintegrated ΔR is linear in δbg through J_R_bg:
       Log(ΔR(b)^T * R_i^T R_j) ≈ J_R_bg * δbg
   Stacked over all intervals and solved by least squares.

2. Tangent basis: a 3x2 orthonormal basis B of the plane orthogonal to the
   current gravity estimate, so that g ← |g| * normalize(g + B*w) perturbs the
   direction with two degrees of freedom.

3. Visual-inertial alignment: per interval i -> j (Δt, rotation R_i, visual
   translation Δp̄ = p̄_j - p̄_i):
       v_i*Δt + 0.5*Δt²*g - s*Δp̄ = -R_i*Δp
       v_j - v_i - Δt*g          =  R_i*Δv
   First solved with unconstrained 3-DOF gravity, then refined with gravity
   magnitude pinned and the 2-DOF tangent perturbation, relinearizing around
   the updated direction until the perturbation vanishes.

The systems are solved in the body frame of the window's first keyframe. The
returned gravity, velocities and NavState are then rotated into the
gravity-aligned world frame: origin at the first keyframe, gravity along -z,
yaw of the first keyframe kept at zero.

References:
-----------
[1] Qin, Li, Shen, "VINS-Mono: A Robust and Versatile Monocular
    Visual-Inertial State Estimator", IEEE TRO 2018 (Sec. V)
[2] Forster et al., "On-Manifold Preintegration for Real-Time Visual-Inertial
    Odometry", IEEE TRO 2017

Author: VIO project
"""

from typing import List, Optional, Tuple

import numpy as np

from . import config
from .config import AlignmentParams
from .math_utils import rotation_between_vectors, so3_log
from .types import (
    AlignmentResult,
    AlignmentWindow,
    GyroBiasResult,
    ImuBias,
    InitStatus,
    NavState,
    VisualPose,
    failure,
)

WORLD_UP = np.array([0.0, 0.0, 1.0])
WORLD_DOWN = -WORLD_UP
# Above this |cos| between v and "up", fall back to the x axis
PARALLEL_COS_THRESHOLD = 0.9


def create_tangent_basis(v: np.ndarray) -> np.ndarray:
    """
    Orthonormal basis (3x2) of the plane orthogonal to v (any nonzero length).

    Raises:
        ValueError: If v is (numerically) zero
    """
    v = np.asarray(v, dtype=float).reshape(3,)
    norm = np.linalg.norm(v)
    if not norm > 0.0 or not np.isfinite(norm):
        raise ValueError(f"tangent basis undefined for vector {v}")
    a = v / norm

    ref = WORLD_UP
    if abs(float(a @ ref)) > PARALLEL_COS_THRESHOLD:
        ref = np.array([1.0, 0.0, 0.0])

    b1 = ref - (a @ ref) * a
    b1 /= np.linalg.norm(b1)
    b2 = np.cross(a, b1)
    b2 /= np.linalg.norm(b2)
    return np.column_stack([b1, b2])


def check_conditioning(A: np.ndarray, max_condition: float) -> Optional[Tuple[InitStatus, str]]:
    """
    SVD check of a stacked least-squares matrix.

    Returns:
        None if solvable, else (RANK_DEFICIENT | ILL_CONDITIONED, reason)
    """
    n_cols = A.shape[1]
    if A.shape[0] < n_cols:
        return InitStatus.RANK_DEFICIENT, f"{A.shape[0]} equations for {n_cols} unknowns"
    if not np.all(np.isfinite(A)):
        return InitStatus.ILL_CONDITIONED, "system contains inf/nan"
    s = np.linalg.svd(A, compute_uv=False)
    if s[0] <= 0.0:
        return InitStatus.RANK_DEFICIENT, "zero system matrix"
    tol = s[0] * max(A.shape) * np.finfo(float).eps
    rank = int(np.sum(s > tol))
    if rank < n_cols:
        return InitStatus.RANK_DEFICIENT, f"rank {rank} < {n_cols} unknowns"
    cond = s[0] / s[-1]
    if cond > max_condition:
        return InitStatus.ILL_CONDITIONED, f"condition number {cond:.3e} > {max_condition:.3e}"
    return None


class OnlineGravityAlignment:
    """
    Visual-inertial alignment over one AlignmentWindow.

    The engine never mutates its window; every call recomputes from it, so
    repeated calls on the same window return identical values.
    """

    def __init__(self, window: AlignmentWindow, params: Optional[AlignmentParams] = None):
        self.window = window
        self.params = params if params is not None else AlignmentParams()
        ref = window.poses[0]
        self._poses: List[VisualPose] = [pose.relative_to(ref) for pose in window.poses]

    create_tangent_basis = staticmethod(create_tangent_basis)

    # ------------------------------------------------------------------
    # Stage 1
    # ------------------------------------------------------------------

    def estimate_gyroscope_bias(self, bias: Optional[ImuBias] = None) -> GyroBiasResult:
        """Gyroscope-only bias estimate; accelerometer bias is passed through."""
        if bias is None:
            bias = self.window.pims[0].bias_lin
        pims = self.window.pims
        n = len(pims)
        if n < 2:
            return failure(GyroBiasResult, InitStatus.INSUFFICIENT_DATA,
                           f"need >= 2 intervals for gyro bias, got {n}", "GYRO-BIAS")

        A = np.zeros((3 * n, 3), dtype=float)
        b = np.zeros(3 * n, dtype=float)
        total_rotation = 0.0
        for k, pim in enumerate(pims):
            R_rel = self._poses[k].rotation.T @ self._poses[k + 1].rotation
            total_rotation += float(np.linalg.norm(so3_log(R_rel)))
            delta_R, _, _ = pim.deltas_corrected(bias)
            A[3 * k:3 * k + 3, :] = pim.J_R_bg
            b[3 * k:3 * k + 3] = so3_log(delta_R.T @ R_rel)

        if total_rotation < self.params.min_rotation_rad:
            return failure(GyroBiasResult, InitStatus.DEGENERATE_MOTION,
                           f"rotation {np.degrees(total_rotation):.3f}° below "
                           f"{np.degrees(self.params.min_rotation_rad):.3f}°", "GYRO-BIAS")

        bad = check_conditioning(A, self.params.max_condition_number)
        if bad is not None:
            return failure(GyroBiasResult, bad[0], bad[1], "GYRO-BIAS")

        delta_bg = np.linalg.lstsq(A, b, rcond=None)[0]
        if not np.all(np.isfinite(delta_bg)):
            return failure(GyroBiasResult, InitStatus.ILL_CONDITIONED,
                           "non-finite bias correction", "GYRO-BIAS")

        new_bias = bias.with_gyro(bias.gyro + delta_bg)
        if config.VERBOSE_DEBUG:
            print(f"[GYRO-BIAS] δbg={delta_bg} -> bg={new_bias.gyro} "
                  f"(rotation {np.degrees(total_rotation):.2f}° over {n} intervals)")
        return GyroBiasResult(InitStatus.SUCCESS, new_bias, delta_bg)

    # ------------------------------------------------------------------
    # Stage 3
    # ------------------------------------------------------------------

    def _solve_linear_system(self, deltas, g_ref: Optional[np.ndarray],
                             basis: Optional[np.ndarray]):
        """
        Stack and solve the per-interval position/velocity constraints.

        With basis None gravity is a free 3-vector; otherwise gravity is
        g_ref + basis @ w and the 2-vector w is solved for.

        Returns:
            (None, velocities (N,3), gravity part, scale) on success,
            ((status, reason), None, None, None) otherwise
        """
        estimate_scale = self.params.estimate_scale
        n_kf = len(self._poses)
        G = np.eye(3) if basis is None else basis
        g0 = np.zeros(3) if basis is None else g_ref
        n_g = G.shape[1]
        i_g = 3 * n_kf
        i_s = i_g + n_g
        n_cols = i_s + (1 if estimate_scale else 0)

        A = np.zeros((6 * (n_kf - 1), n_cols), dtype=float)
        b = np.zeros(6 * (n_kf - 1), dtype=float)
        I3 = np.eye(3)
        for k, (dt, (_, dv, dp)) in enumerate(zip(self.window.delta_t, deltas)):
            R_i = self._poses[k].rotation
            dp_vis = self._poses[k + 1].position - self._poses[k].position
            r = 6 * k

            # Position: v_i*Δt + 0.5*Δt²*g - s*Δp̄ = -R_i*Δp
            A[r:r + 3, 3 * k:3 * k + 3] = I3 * dt
            A[r:r + 3, i_g:i_g + n_g] = 0.5 * dt ** 2 * G
            b[r:r + 3] = -R_i @ dp - 0.5 * dt ** 2 * g0
            if estimate_scale:
                A[r:r + 3, i_s] = -dp_vis
            else:
                b[r:r + 3] += dp_vis

            # Velocity: v_j - v_i - Δt*g = R_i*Δv
            A[r + 3:r + 6, 3 * (k + 1):3 * (k + 1) + 3] = I3
            A[r + 3:r + 6, 3 * k:3 * k + 3] = -I3
            A[r + 3:r + 6, i_g:i_g + n_g] = -dt * G
            b[r + 3:r + 6] = R_i @ dv + dt * g0

        bad = check_conditioning(A, self.params.max_condition_number)
        if bad is not None:
            return bad, None, None, None

        x = np.linalg.lstsq(A, b, rcond=None)[0]
        if not np.all(np.isfinite(x)):
            return (InitStatus.ILL_CONDITIONED, "non-finite solution"), None, None, None

        velocities = x[:i_g].reshape(n_kf, 3)
        scale = float(x[i_s]) if estimate_scale else 1.0
        return None, velocities, x[i_g:i_s], scale

    def align_visual_inertial_estimates(self, bias: Optional[ImuBias] = None) -> AlignmentResult:
        """
        Full alignment: gyro bias, then linear alignment and gravity refinement.

        Args:
            bias: Current bias estimate (defaults to the PIMs' linearization bias)

        Returns:
            AlignmentResult with refined bias, gravity, velocities, scale and
            the initial NavState on success, all in the gravity-aligned frame
        """
        p = self.params
        g_mag = p.gravity_magnitude
        n = self.window.num_intervals
        if n < p.min_num_intervals:
            return failure(AlignmentResult, InitStatus.INSUFFICIENT_DATA,
                           f"{n} intervals < min {p.min_num_intervals}", "ALIGN")

        # --- Stage 1: gyroscope bias ---
        gyro = self.estimate_gyroscope_bias(bias)
        if not gyro.ok:
            return AlignmentResult(status=gyro.status, message=gyro.message)
        new_bias = gyro.bias
        deltas = [pim.deltas_corrected(new_bias) for pim in self.window.pims]

        if p.estimate_scale:
            translation = sum(
                float(np.linalg.norm(b.position - a.position))
                for a, b in zip(self._poses[:-1], self._poses[1:]))
            if translation < p.min_translation_m:
                return failure(AlignmentResult, InitStatus.DEGENERATE_MOTION,
                               f"visual translation {translation:.4f} below "
                               f"{p.min_translation_m:.4f}", "ALIGN")

        # --- Linear alignment with free gravity ---
        bad, velocities, g_lin, scale = self._solve_linear_system(deltas, None, None)
        if bad is not None:
            return failure(AlignmentResult, bad[0], f"linear alignment: {bad[1]}", "ALIGN")

        g_lin_norm = float(np.linalg.norm(g_lin))
        if abs(g_lin_norm - g_mag) > p.gravity_magnitude_tolerance:
            return failure(AlignmentResult, InitStatus.OUT_OF_TOLERANCE,
                           f"|g|={g_lin_norm:.4f} vs nominal {g_mag:.4f}", "ALIGN")
        if p.estimate_scale and scale <= 0.0:
            return failure(AlignmentResult, InitStatus.DEGENERATE_MOTION,
                           f"non-positive scale {scale:.4e}", "ALIGN")

        # --- Stage 2/3: refinement on the gravity sphere ---
        g = g_lin * (g_mag / g_lin_norm)
        converged = False
        iterations = 0
        w_norm = float("inf")
        for iterations in range(1, p.max_iterations + 1):
            basis = create_tangent_basis(g)
            bad, velocities, w, scale = self._solve_linear_system(deltas, g, basis)
            if bad is not None:
                return failure(AlignmentResult, bad[0],
                               f"gravity refinement iter {iterations}: {bad[1]}", "ALIGN")
            g_new = g + basis @ w
            g = g_new * (g_mag / np.linalg.norm(g_new))
            w_norm = float(np.linalg.norm(w))
            if config.VERBOSE_DEBUG:
                print(f"[ALIGN] iter {iterations}: |w|={w_norm:.3e} g={g} s={scale:.4f}")
            if w_norm < p.convergence_tolerance:
                converged = True
                break

        if not converged:
            print(f"[ALIGN] WARNING: gravity refinement not converged after "
                  f"{p.max_iterations} iterations (|w|={w_norm:.3e})")
        if p.estimate_scale and scale <= 0.0:
            return failure(AlignmentResult, InitStatus.DEGENERATE_MOTION,
                           f"non-positive scale {scale:.4e} after refinement", "ALIGN")

        # Gravity-aligned attitude of the first keyframe (yaw unobservable, kept minimal)
        R_wb0 = rotation_between_vectors(g, WORLD_DOWN)
        g = R_wb0 @ g
        velocities = velocities @ R_wb0.T
        nav_state = NavState(
            rotation=R_wb0,
            position=np.zeros(3),
            velocity=velocities[0],
            timestamp=self.window.poses[0].timestamp,
        )

        print(f"[ALIGN] Success after {iterations} iterations: g=[{g[0]:.4f}, {g[1]:.4f}, {g[2]:.4f}] "
              f"bg=[{new_bias.gyro[0]:.2e}, {new_bias.gyro[1]:.2e}, {new_bias.gyro[2]:.2e}] "
              f"|v0|={np.linalg.norm(velocities[0]):.3f} scale={scale:.4f}")

        return AlignmentResult(
            status=InitStatus.SUCCESS,
            bias=new_bias,
            gravity=g,
            nav_state=nav_state,
            velocities=velocities,
            scale=scale,
            iterations=iterations,
            converged=converged,
        )


def align_visual_inertial_estimates(window: AlignmentWindow,
                                    params: Optional[AlignmentParams] = None,
                                    bias: Optional[ImuBias] = None) -> AlignmentResult:
    """Stateless entry point: one window in, one result out."""
    return OnlineGravityAlignment(window, params).align_visual_inertial_estimates(bias)
