#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
VIO Bootstrap Math Utilities Module
===================================

Rotation helpers on SO(3) used by preintegration and gravity alignment.

Quaternion Convention:
----------------------
All quaternions use Hamilton convention with [w, x, y, z] ordering:
- w is the scalar (real) part
- [x, y, z] is the vector (imaginary) part

Key Operations:
---------------
- skew_symmetric: Create 3x3 skew-symmetric matrix for cross product
- so3_exp / so3_log: Exponential and logarithm maps of SO(3)
- right_jacobian: Right Jacobian of SO(3)
- quat_to_rot: Convert quaternion to rotation matrix
- rotation_between_vectors: Minimal rotation taking one direction onto another

Author: VIO project
"""

import numpy as np
from scipy.spatial.transform import Rotation as R_scipy


SMALL_ANGLE = 1e-8


def skew_symmetric(v: np.ndarray) -> np.ndarray:
    """
    Create skew-symmetric matrix from 3D vector.
    [v]× such that [v]× @ u = v × u (cross product)

    [v]× = [ 0   -vz   vy ]
           [ vz   0   -vx ]
           [-vy   vx   0  ]
    """
    return np.array([
        [0,      -v[2],  v[1]],
        [v[2],    0,    -v[0]],
        [-v[1],   v[0],   0   ]
    ], dtype=float)


def so3_exp(theta_vec: np.ndarray) -> np.ndarray:
    """
    Exponential map: rotation vector (3,) -> rotation matrix (3x3).

    Rodrigues formula: Exp(θ) = I + sin(θ)/θ [θ]× + (1-cos(θ))/θ² [θ]×²
    """
    theta_vec = np.asarray(theta_vec, dtype=float).reshape(3,)
    theta = np.linalg.norm(theta_vec)
    if theta < SMALL_ANGLE:
        # Small angle: Exp(θ) ≈ I + [θ]×
        return np.eye(3) + skew_symmetric(theta_vec)
    skew_axis = skew_symmetric(theta_vec / theta)
    return np.eye(3) + np.sin(theta) * skew_axis + \
        (1 - np.cos(theta)) * (skew_axis @ skew_axis)


def so3_log(R: np.ndarray) -> np.ndarray:
    """Logarithm map: rotation matrix (3x3) -> rotation vector (3,)."""
    return R_scipy.from_matrix(np.asarray(R, dtype=float)).as_rotvec()


def right_jacobian(theta_vec: np.ndarray) -> np.ndarray:
    """
    Right Jacobian of SO(3).

    J_r(θ) = I - (1-cos θ)/θ² [θ]× + (θ - sin θ)/θ³ [θ]×²
    """
    theta_vec = np.asarray(theta_vec, dtype=float).reshape(3,)
    theta = np.linalg.norm(theta_vec)
    if theta < SMALL_ANGLE:
        return np.eye(3) - 0.5 * skew_symmetric(theta_vec)
    skew_axis = skew_symmetric(theta_vec / theta)
    return np.eye(3) - (1 - np.cos(theta)) / theta * skew_axis + \
        (theta - np.sin(theta)) / theta * (skew_axis @ skew_axis)


def quat_normalize(q: np.ndarray) -> np.ndarray:
    """Normalize quaternion [w, x, y, z] to unit length."""
    norm = np.linalg.norm(q)
    if norm < 1e-10:
        return np.array([1.0, 0.0, 0.0, 0.0])
    return q / norm


def quat_to_rot(q: np.ndarray) -> np.ndarray:
    """Convert quaternion [w,x,y,z] to 3x3 rotation matrix."""
    w, x, y, z = quat_normalize(np.asarray(q, dtype=float))
    return np.array([
        [1-2*(y*y+z*z), 2*(x*y-w*z),   2*(x*z+w*y)],
        [2*(x*y+w*z),   1-2*(x*x+z*z), 2*(y*z-w*x)],
        [2*(x*z-w*y),   2*(y*z+w*x),   1-2*(x*x+y*y)]
    ])


def project_to_so3(R: np.ndarray) -> np.ndarray:
    """Closest rotation matrix (SVD projection)."""
    U, _, Vt = np.linalg.svd(R)
    R_out = U @ Vt
    if np.linalg.det(R_out) < 0:
        U[:, -1] *= -1
        R_out = U @ Vt
    return R_out


def rotation_between_vectors(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """
    Compute rotation matrix that rotates direction a onto direction b.
    Uses Rodrigues' formula; inputs need not be unit length.
    """
    a = np.asarray(a, dtype=float) / np.linalg.norm(a)
    b = np.asarray(b, dtype=float) / np.linalg.norm(b)

    v = np.cross(a, b)
    s = np.linalg.norm(v)
    c = np.dot(a, b)

    if s < SMALL_ANGLE:
        if c > 0:
            return np.eye(3)
        # 180-degree rotation about any axis perpendicular to a
        perp = np.array([1.0, 0.0, 0.0]) if abs(a[0]) < 0.9 else np.array([0.0, 1.0, 0.0])
        axis = np.cross(a, perp)
        axis = axis / np.linalg.norm(axis)
        return 2.0 * np.outer(axis, axis) - np.eye(3)

    vx = skew_symmetric(v)
    return np.eye(3) + vx + vx @ vx * (1.0 - c) / (s * s)
