#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
VIO Bootstrap Configuration Module
==================================

Handles YAML configuration loading and defines global defaults for the
visual-inertial initialization pipeline.

Configuration Structure:
------------------------
The YAML config file contains (every section is optional):
- imu: IMU noise parameters, gravity magnitude, initial biases, buffer length
- alignment: Alignment engine thresholds (iterations, tolerances, conditioning)
- initialization: Keyframe window size and IMU wait timeout
- debug: Verbosity switch

Sensor Noise Parameters:
------------------------
- acc_n: Accelerometer noise density [m/s²/√Hz]
- gyr_n: Gyroscope noise density [rad/s/√Hz]
- acc_w: Accelerometer random walk [m/s³/√Hz]
- gyr_w: Gyroscope random walk [rad/s²/√Hz]
- sigma_int: Integration uncertainty on position [m/√s]

Author: VIO project
"""

import os
from dataclasses import dataclass
from typing import Dict, Any, Optional

import numpy as np
import yaml

# ========================================
# Debug verbosity control
# ========================================
# Set to True for per-sample / per-iteration debug output
VERBOSE_DEBUG = False


def load_config(config_path: str) -> Dict[str, Any]:
    """
    Load YAML configuration file and convert to flat configuration format.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Dictionary with configuration parameters including:
        - IMU_PARAMS: IMU noise parameters (acc_n, gyr_n, acc_w, gyr_w, g_norm, sigma_int)
        - INITIAL_GYRO_BIAS / INITIAL_ACCEL_BIAS: (3,) arrays
        - IMU_BUFFER_LENGTH_NS: Retention window of the IMU buffer
        - ALIGNMENT_*: Alignment engine parameters
        - INIT_WINDOW_SIZE / INIT_IMU_WAIT_TIMEOUT_S: Initializer parameters
        - VERBOSE_DEBUG: Debug output switch

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If config file is malformed
        ValueError: If a parameter is out of its valid range

    Example:
        >>> config = load_config("configs/config_default.yaml")
        >>> params = AlignmentParams.from_config(config)
        >>> print(f"Gravity: {params.gravity_magnitude:.2f} m/s²")
    """
    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, 'r') as f:
        config = yaml.safe_load(f) or {}

    if not isinstance(config, dict):
        raise ValueError(f"Config root must be a mapping, got {type(config).__name__}")

    return flatten_config(config)


def flatten_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a nested YAML dictionary into the flat upper-case layout."""
    result = {}

    # ========================================
    # IMU parameters
    # ========================================
    imu = config.get('imu', {}) or {}
    result['IMU_PARAMS'] = {
        'acc_n': float(imu.get('accel_noise_density', IMU_PARAMS['acc_n'])),
        'gyr_n': float(imu.get('gyro_noise_density', IMU_PARAMS['gyr_n'])),
        'acc_w': float(imu.get('accel_random_walk', IMU_PARAMS['acc_w'])),
        'gyr_w': float(imu.get('gyro_random_walk', IMU_PARAMS['gyr_w'])),
        'g_norm': float(imu.get('g_norm', IMU_PARAMS['g_norm'])),
        'sigma_int': float(imu.get('integration_sigma', IMU_PARAMS['sigma_int'])),
    }
    result['INITIAL_GYRO_BIAS'] = np.array(
        imu.get('initial_gyro_bias', [0.0, 0.0, 0.0]), dtype=float).reshape(3,)
    result['INITIAL_ACCEL_BIAS'] = np.array(
        imu.get('initial_accel_bias', [0.0, 0.0, 0.0]), dtype=float).reshape(3,)
    result['IMU_BUFFER_LENGTH_NS'] = int(
        float(imu.get('buffer_length_s', IMU_BUFFER_LENGTH_NS * 1e-9)) * 1e9)

    # ========================================
    # Alignment engine
    # ========================================
    align = config.get('alignment', {}) or {}
    result['ALIGNMENT_MIN_NUM_INTERVALS'] = int(
        align.get('min_num_intervals', ALIGNMENT_MIN_NUM_INTERVALS))
    result['ALIGNMENT_MAX_ITERATIONS'] = int(
        align.get('max_iterations', ALIGNMENT_MAX_ITERATIONS))
    result['ALIGNMENT_CONVERGENCE_TOL'] = float(
        align.get('convergence_tolerance', ALIGNMENT_CONVERGENCE_TOL))
    result['ALIGNMENT_GRAVITY_MAG_TOL'] = float(
        align.get('gravity_magnitude_tolerance', ALIGNMENT_GRAVITY_MAG_TOL))
    result['ALIGNMENT_MAX_CONDITION'] = float(
        align.get('max_condition_number', ALIGNMENT_MAX_CONDITION))
    result['ALIGNMENT_ESTIMATE_SCALE'] = bool(
        align.get('estimate_scale', ALIGNMENT_ESTIMATE_SCALE))
    result['ALIGNMENT_MIN_TRANSLATION_M'] = float(
        align.get('min_translation_m', ALIGNMENT_MIN_TRANSLATION_M))
    result['ALIGNMENT_MIN_ROTATION'] = np.radians(float(
        align.get('min_rotation_deg', np.degrees(ALIGNMENT_MIN_ROTATION))))

    # ========================================
    # Initializer
    # ========================================
    init = config.get('initialization', {}) or {}
    result['INIT_WINDOW_SIZE'] = int(init.get('window_size', INIT_WINDOW_SIZE))
    result['INIT_IMU_WAIT_TIMEOUT_S'] = float(
        init.get('imu_wait_timeout_s', INIT_IMU_WAIT_TIMEOUT_S))

    debug = config.get('debug', {}) or {}
    result['VERBOSE_DEBUG'] = bool(debug.get('verbose', False))

    validate_config(result)
    return result


def validate_config(cfg: Dict[str, Any]) -> None:
    """Raise ValueError for parameters outside their valid range."""
    imu = cfg['IMU_PARAMS']
    for key in ('acc_n', 'gyr_n', 'acc_w', 'gyr_w', 'sigma_int'):
        if imu[key] < 0.0:
            raise ValueError(f"imu.{key} must be non-negative, got {imu[key]}")
    if imu['g_norm'] <= 0.0:
        raise ValueError(f"imu.g_norm must be positive, got {imu['g_norm']}")
    if cfg['IMU_BUFFER_LENGTH_NS'] <= 0:
        raise ValueError("imu.buffer_length_s must be positive")
    if cfg['ALIGNMENT_MIN_NUM_INTERVALS'] < 2:
        raise ValueError("alignment.min_num_intervals must be >= 2")
    if cfg['ALIGNMENT_MAX_ITERATIONS'] < 1:
        raise ValueError("alignment.max_iterations must be >= 1")
    if cfg['ALIGNMENT_CONVERGENCE_TOL'] <= 0.0:
        raise ValueError("alignment.convergence_tolerance must be positive")
    if cfg['ALIGNMENT_GRAVITY_MAG_TOL'] <= 0.0:
        raise ValueError("alignment.gravity_magnitude_tolerance must be positive")
    if cfg['ALIGNMENT_MAX_CONDITION'] <= 1.0:
        raise ValueError("alignment.max_condition_number must be > 1")
    if cfg['INIT_WINDOW_SIZE'] < cfg['ALIGNMENT_MIN_NUM_INTERVALS'] + 1:
        raise ValueError(
            f"initialization.window_size ({cfg['INIT_WINDOW_SIZE']}) must exceed "
            f"alignment.min_num_intervals ({cfg['ALIGNMENT_MIN_NUM_INTERVALS']})")
    if cfg['INIT_IMU_WAIT_TIMEOUT_S'] < 0.0:
        raise ValueError("initialization.imu_wait_timeout_s must be non-negative")


def default_config() -> Dict[str, Any]:
    """Flat configuration built purely from module defaults."""
    return flatten_config({})


# =============================================================================
# Typed parameter views
# =============================================================================

@dataclass(frozen=True)
class ImuParams:
    """Noise parameters consumed by the preintegrator."""

    gyro_noise_density: float = 1.7e-4
    accel_noise_density: float = 2.0e-3
    gyro_random_walk: float = 1.9e-5
    accel_random_walk: float = 3.0e-3
    integration_sigma: float = 1.0e-8

    @classmethod
    def from_config(cls, cfg: Optional[Dict[str, Any]] = None) -> "ImuParams":
        imu = (cfg or default_config())['IMU_PARAMS']
        return cls(
            gyro_noise_density=imu['gyr_n'],
            accel_noise_density=imu['acc_n'],
            gyro_random_walk=imu['gyr_w'],
            accel_random_walk=imu['acc_w'],
            integration_sigma=imu['sigma_int'],
        )


@dataclass(frozen=True)
class AlignmentParams:
    """Thresholds of the visual-inertial alignment engine."""

    gravity_magnitude: float = 9.81
    min_num_intervals: int = 3
    max_iterations: int = 10
    convergence_tolerance: float = 1e-6
    gravity_magnitude_tolerance: float = 1.0
    max_condition_number: float = 1e8
    estimate_scale: bool = False
    min_translation_m: float = 0.05
    min_rotation_rad: float = 0.0

    @classmethod
    def from_config(cls, cfg: Optional[Dict[str, Any]] = None) -> "AlignmentParams":
        cfg = cfg or default_config()
        return cls(
            gravity_magnitude=cfg['IMU_PARAMS']['g_norm'],
            min_num_intervals=cfg['ALIGNMENT_MIN_NUM_INTERVALS'],
            max_iterations=cfg['ALIGNMENT_MAX_ITERATIONS'],
            convergence_tolerance=cfg['ALIGNMENT_CONVERGENCE_TOL'],
            gravity_magnitude_tolerance=cfg['ALIGNMENT_GRAVITY_MAG_TOL'],
            max_condition_number=cfg['ALIGNMENT_MAX_CONDITION'],
            estimate_scale=cfg['ALIGNMENT_ESTIMATE_SCALE'],
            min_translation_m=cfg['ALIGNMENT_MIN_TRANSLATION_M'],
            min_rotation_rad=cfg['ALIGNMENT_MIN_ROTATION'],
        )


@dataclass(frozen=True)
class InitializerParams:
    """Keyframe window handling of the online initializer."""

    window_size: int = 5
    imu_wait_timeout_s: float = 0.5

    @classmethod
    def from_config(cls, cfg: Optional[Dict[str, Any]] = None) -> "InitializerParams":
        cfg = cfg or default_config()
        return cls(
            window_size=cfg['INIT_WINDOW_SIZE'],
            imu_wait_timeout_s=cfg['INIT_IMU_WAIT_TIMEOUT_S'],
        )


def apply_verbosity(cfg: Dict[str, Any]) -> None:
    """Set the module-level debug switch from a loaded config."""
    global VERBOSE_DEBUG
    VERBOSE_DEBUG = bool(cfg.get('VERBOSE_DEBUG', False))


# =============================================================================
# Default Configuration Variables (will be overridden by load_config)
# =============================================================================

# IMU parameters
IMU_PARAMS = {
    'acc_n': 2.0e-3,
    'gyr_n': 1.7e-4,
    'acc_w': 3.0e-3,
    'gyr_w': 1.9e-5,
    'g_norm': 9.81,
    'sigma_int': 1.0e-8,
}
IMU_BUFFER_LENGTH_NS = int(20e9)  # 20 s retention

# Alignment parameters
ALIGNMENT_MIN_NUM_INTERVALS = 3
ALIGNMENT_MAX_ITERATIONS = 10
ALIGNMENT_CONVERGENCE_TOL = 1e-6  # norm of tangent gravity perturbation [m/s²]
ALIGNMENT_GRAVITY_MAG_TOL = 1.0   # [m/s²]
ALIGNMENT_MAX_CONDITION = 1e8
ALIGNMENT_ESTIMATE_SCALE = False
ALIGNMENT_MIN_TRANSLATION_M = 0.05
ALIGNMENT_MIN_ROTATION = 0.0      # radians, 0 disables the check

# Initializer parameters
INIT_WINDOW_SIZE = 5
INIT_IMU_WAIT_TIMEOUT_S = 0.5
