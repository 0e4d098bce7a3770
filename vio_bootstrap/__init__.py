"""
VIO Bootstrap Package

Online visual-inertial initialization: recovers gravity direction, IMU
biases, keyframe velocities and (optionally) visual scale from a short window
of keyframe poses plus the raw IMU stream between them.

Version: 1.0.0

Submodules:
- config: Configuration loading, global defaults, parameter dataclasses
- math_utils: SO(3) exp/log, right Jacobian, rotation helpers
- types: Sensor values, preintegrated measurements, result/status types
- imu_buffer: Thread-safe IMU sample buffer with interpolated range queries
- imu_preintegration: On-manifold IMU preintegration (Forster et al.)
- gravity_alignment: Gyro bias estimation and visual-inertial gravity alignment
- initializer: Sliding-window online initializer
- sim: Synthetic IMU + keyframe generator

Author: VIO project

Usage:
    from vio_bootstrap import config
    from vio_bootstrap.imu_buffer import ThreadsafeImuBuffer
    from vio_bootstrap.gravity_alignment import OnlineGravityAlignment
    from vio_bootstrap.initializer import OnlineInitializer
"""

__version__ = "1.0.0"

# Lazy module imports - access as vio_bootstrap.config, etc.
import importlib

_SUBMODULES = {
    "config", "math_utils", "types", "imu_buffer", "imu_preintegration",
    "gravity_alignment", "initializer", "sim",
}


def __getattr__(name):
    """Lazy module loading."""
    if name in _SUBMODULES:
        module = importlib.import_module(f".{name}", __name__)
        globals()[name] = module
        return module
    raise AttributeError(f"module 'vio_bootstrap' has no attribute '{name}'")


def __dir__():
    return list(_SUBMODULES)


__all__ = list(_SUBMODULES)
