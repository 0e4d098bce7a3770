#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
VIO Bootstrap Demo Entry Point (run_init.py)

Simulates a short trajectory, streams its IMU samples from a producer thread
into the shared buffer, hands the keyframe poses to the online initializer
(running on its own thread) and prints the recovered gravity, biases,
velocity and scale against ground truth.

Configuration Model:
--------------------
    YAML config holds algorithm settings (noise, alignment thresholds,
    window size). CLI provides the simulated scenario only.

Usage:
    python run_init.py --config configs/config_default.yaml

    # Biased, noisy IMU with an up-to-scale visual front-end:
    python run_init.py --gyro-bias 0.002 -0.001 0.0015 --noise \\
        --up-to-scale 0.5 --keyframes 8

Author: VIO project
"""

import argparse
import sys
import threading
import time

import numpy as np


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="VIO Bootstrap - online visual-inertial initialization demo",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", type=str, default=None,
                        help="Path to YAML config file (default: built-in defaults)")
    parser.add_argument("--keyframes", type=int, default=None,
                        help="Number of simulated keyframes (default: window size)")
    parser.add_argument("--spacing", type=float, default=0.5,
                        help="Keyframe spacing [s]")
    parser.add_argument("--rate", type=float, default=200.0,
                        help="IMU rate [Hz]")
    parser.add_argument("--gyro-bias", type=float, nargs=3, default=[0.0, 0.0, 0.0],
                        metavar=("BX", "BY", "BZ"),
                        help="True gyroscope bias [rad/s]")
    parser.add_argument("--noise", action="store_true",
                        help="Add white noise using the configured noise densities")
    parser.add_argument("--up-to-scale", type=float, default=None, metavar="S",
                        help="Multiply keyframe positions by S and estimate scale")
    parser.add_argument("--seed", type=int, default=0,
                        help="Noise RNG seed")
    return parser.parse_args()


def _produce(buffer, samples, realtime_factor: float):
    """Push samples into the buffer, optionally paced against the wall clock."""
    t0 = time.monotonic()
    ts0 = samples[0].timestamp
    for sample in samples:
        if realtime_factor > 0:
            due = (sample.timestamp - ts0) * 1e-9 / realtime_factor
            lag = due - (time.monotonic() - t0)
            if lag > 0:
                time.sleep(lag)
        buffer.add_measurement(sample)


def main():
    args = parse_args()

    print("=" * 70)
    print("VIO Bootstrap - Online Initialization Demo")
    print("=" * 70)

    from dataclasses import replace

    from vio_bootstrap import __version__, config
    from vio_bootstrap.config import (
        AlignmentParams, ImuParams, InitializerParams, default_config, load_config,
    )
    from vio_bootstrap.imu_buffer import ThreadsafeImuBuffer
    from vio_bootstrap.initializer import OnlineInitializer
    from vio_bootstrap.sim import simulate_trajectory, sinusoidal_motion
    from vio_bootstrap.types import ImuBias

    print(f"Using vio_bootstrap version: {__version__}")

    # =================================================================
    # Step 1: Config
    # =================================================================
    if args.config:
        print(f"\nLoading config: {args.config}")
        cfg = load_config(args.config)
    else:
        cfg = default_config()
    config.apply_verbosity(cfg)

    imu_params = ImuParams.from_config(cfg)
    align_params = AlignmentParams.from_config(cfg)
    init_params = InitializerParams.from_config(cfg)
    if args.up_to_scale is not None:
        align_params = replace(align_params, estimate_scale=True)

    num_keyframes = args.keyframes or init_params.window_size
    if num_keyframes < init_params.window_size:
        print(f"[ERROR] --keyframes {num_keyframes} < window size {init_params.window_size}")
        return 1

    # =================================================================
    # Step 2: Scenario
    # =================================================================
    angular_rate, accel_world = sinusoidal_motion()
    true_bias = ImuBias(gyro=np.array(args.gyro_bias))
    traj = simulate_trajectory(
        num_keyframes=num_keyframes,
        keyframe_spacing_s=args.spacing,
        imu_rate_hz=args.rate,
        gravity=np.array([0.0, 0.0, -align_params.gravity_magnitude]),
        initial_velocity=np.array([0.1, 0.2, -0.05]),
        angular_rate=angular_rate,
        accel_world=accel_world,
        bias=true_bias,
        gyro_noise_density=imu_params.gyro_noise_density if args.noise else 0.0,
        accel_noise_density=imu_params.accel_noise_density if args.noise else 0.0,
        pose_scale=args.up_to_scale or 1.0,
        seed=args.seed,
    )
    print(f"\nSimulated {len(traj.samples)} IMU samples, {len(traj.keyframes)} keyframes "
          f"({args.spacing:.2f}s spacing @ {args.rate:.0f}Hz)")

    # =================================================================
    # Step 3: Run producer + initializer threads
    # =================================================================
    buffer = ThreadsafeImuBuffer(cfg['IMU_BUFFER_LENGTH_NS'])
    initial_bias = ImuBias(accel=cfg['INITIAL_ACCEL_BIAS'], gyro=cfg['INITIAL_GYRO_BIAS'])
    initializer = OnlineInitializer(buffer, imu_params, align_params, init_params, initial_bias)

    producer = threading.Thread(target=_produce, args=(buffer, traj.samples, 10.0), daemon=True)
    producer.start()
    initializer.start()
    for kf in traj.keyframes:
        initializer.add_keyframe(kf)

    producer.join()
    success = initializer.wait_until_initialized(timeout_s=5.0)
    initializer.stop()
    buffer.shutdown()

    # =================================================================
    # Step 4: Report
    # =================================================================
    print("\n" + "=" * 70)
    stats = initializer.get_stats()
    print(f"Attempts: {stats['attempts']}  "
          f"failures: {stats['failures']}")
    if not success:
        print("Initialization FAILED")
        print("=" * 70)
        return 1

    result = initializer.result
    alignment = result.alignment
    # Outputs are in the gravity-aligned frame anchored at the first window keyframe
    k0 = int(np.searchsorted(traj.keyframe_timestamps, result.window_start))
    to_aligned = alignment.nav_state.rotation @ traj.keyframes[k0].rotation.T
    g_true = to_aligned @ traj.gravity
    v_true = to_aligned @ traj.keyframe_velocities[k0]

    print("Initialization SUCCEEDED")
    print(f"  window:      [{result.window_start}, {result.window_end}] ns")
    print(f"  iterations:  {alignment.iterations} (converged={alignment.converged})")
    print(f"  gravity:     {np.round(alignment.gravity, 4)}  true {np.round(g_true, 4)}")
    print(f"  gyro bias:   {np.round(alignment.bias.gyro, 6)}  true {np.round(true_bias.gyro, 6)}")
    print(f"  velocity v0: {np.round(alignment.velocities[0], 4)}  true {np.round(v_true, 4)}")
    if align_params.estimate_scale:
        print(f"  scale:       {alignment.scale:.4f}  true {1.0 / traj.pose_scale:.4f}")
    print("=" * 70)
    return 0


if __name__ == "__main__":
    sys.exit(main())
