import sys
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from vio_bootstrap.config import AlignmentParams, ImuParams
from vio_bootstrap.gravity_alignment import (
    WORLD_DOWN,
    OnlineGravityAlignment,
    align_visual_inertial_estimates,
    create_tangent_basis,
)
from vio_bootstrap.imu_preintegration import preintegrate
from vio_bootstrap.math_utils import so3_exp
from vio_bootstrap.sim import simulate_trajectory, sinusoidal_motion
from vio_bootstrap.types import (
    AlignmentWindow,
    ImuBias,
    InitStatus,
    PreintegratedMeasurement,
    VisualPose,
)

G = 9.81
TOL_GYRO_BIAS = 2e-4
TOL_TANGENT_BASIS = 1e-7
TOL_ALIGNMENT = 1e-3


def _make_window(traj, bias=None) -> AlignmentWindow:
    keyframes = traj.keyframes
    ts = traj.timestamps
    pims = []
    for kf_i, kf_j in zip(keyframes[:-1], keyframes[1:]):
        idx = np.nonzero((ts >= kf_i.timestamp) & (ts <= kf_j.timestamp))[0]
        res = preintegrate(ts[idx], [traj.samples[k] for k in idx], bias or ImuBias(), ImuParams())
        assert res.ok
        pims.append(res.pim)
    return AlignmentWindow.from_keyframes(keyframes, pims)


def _make_moving(num_keyframes=6, **kwargs):
    angular_rate, accel_world = sinusoidal_motion()
    kwargs.setdefault("initial_velocity", np.array([0.1, 0.2, -0.05]))
    return simulate_trajectory(
        num_keyframes=num_keyframes,
        keyframe_spacing_s=0.5,
        angular_rate=angular_rate,
        accel_world=accel_world,
        **kwargs,
    )


def _make_static_pim(t_start: int, t_end: int) -> PreintegratedMeasurement:
    # No gyro-bias sensitivity at all: stage 1 has nothing to solve for
    zeros = np.zeros((3, 3))
    return PreintegratedMeasurement(
        delta_R=np.eye(3), delta_v=np.zeros(3), delta_p=np.zeros(3),
        cov=np.eye(15) * 1e-6,
        J_R_bg=zeros, J_v_bg=zeros, J_v_ba=zeros, J_p_bg=zeros, J_p_ba=zeros,
        bias_lin=ImuBias(), t_start=t_start, t_end=t_end,
    )


# ---------------------------------------------------------------------------
# Tangent basis
# ---------------------------------------------------------------------------

def _check_basis(v):
    B = create_tangent_basis(v)
    a = np.asarray(v, dtype=float) / np.linalg.norm(v)
    assert B.shape == (3, 2)
    np.testing.assert_allclose(B.T @ B, np.eye(2), atol=TOL_TANGENT_BASIS)
    np.testing.assert_allclose(a @ B, np.zeros(2), atol=TOL_TANGENT_BASIS)
    np.testing.assert_allclose(np.cross(B[:, 0], B[:, 1]), a, atol=TOL_TANGENT_BASIS)


def test_tangent_basis_random_vectors():
    rng = np.random.default_rng(42)
    for _ in range(50):
        _check_basis(rng.normal(size=3) * rng.uniform(0.1, 20.0))


def test_tangent_basis_axis_aligned_and_near_up():
    for v in np.vstack([np.eye(3), -np.eye(3)]):
        _check_basis(v)
    _check_basis([1e-3, 0.0, 1.0])
    _check_basis([0.0, 1e-9, -G])
    _check_basis([0.3, 0.0, 0.954])  # just past the parallel threshold


def test_tangent_basis_zero_vector_raises():
    with pytest.raises(ValueError):
        create_tangent_basis(np.zeros(3))
    with pytest.raises(ValueError):
        OnlineGravityAlignment.create_tangent_basis([np.nan, 0.0, 1.0])


# ---------------------------------------------------------------------------
# Stage 1: gyroscope bias
# ---------------------------------------------------------------------------

def test_gyro_bias_zero_on_unbiased_data():
    window = _make_window(simulate_trajectory(num_keyframes=5))
    res = OnlineGravityAlignment(window).estimate_gyroscope_bias()
    assert res.ok
    np.testing.assert_allclose(res.bias.gyro, np.zeros(3), atol=TOL_GYRO_BIAS)


def test_gyro_bias_recovered_on_rotating_trajectory():
    true_bg = np.array([1e-4, 2e-4, 3e-4])
    traj = _make_moving(bias=ImuBias(accel=[0.05, 0.0, 0.0], gyro=true_bg))
    window = _make_window(traj)
    start = ImuBias(accel=[0.05, 0.0, 0.0])

    res = OnlineGravityAlignment(window).estimate_gyroscope_bias(start)
    assert res.ok
    np.testing.assert_allclose(res.bias.gyro, true_bg, atol=1e-5)
    np.testing.assert_allclose(res.correction, true_bg, atol=1e-5)
    # Accelerometer bias passes through untouched
    np.testing.assert_array_equal(res.bias.accel, start.accel)


def test_gyro_bias_large_bias():
    true_bg = np.array([2e-3, -1e-3, 1.5e-3])
    window = _make_window(_make_moving(bias=ImuBias(gyro=true_bg)))
    res = OnlineGravityAlignment(window).estimate_gyroscope_bias()
    assert res.ok
    np.testing.assert_allclose(res.bias.gyro, true_bg, atol=2e-5)


def test_gyro_bias_rank_deficient():
    poses = [VisualPose(int(k * 5e8), np.eye(3), np.zeros(3)) for k in range(4)]
    pims = [_make_static_pim(a.timestamp, b.timestamp) for a, b in zip(poses[:-1], poses[1:])]
    window = AlignmentWindow.from_keyframes(poses, pims)
    engine = OnlineGravityAlignment(window)

    assert engine.estimate_gyroscope_bias().status is InitStatus.RANK_DEFICIENT
    res = engine.align_visual_inertial_estimates()
    assert res.status is InitStatus.RANK_DEFICIENT
    assert res.nav_state is None


def test_gyro_bias_insufficient_intervals():
    window = _make_window(simulate_trajectory(num_keyframes=2))
    res = OnlineGravityAlignment(window).estimate_gyroscope_bias()
    assert res.status is InitStatus.INSUFFICIENT_DATA
    assert res.bias is None


def test_gyro_bias_requires_rotation_when_configured():
    window = _make_window(simulate_trajectory(num_keyframes=5))
    params = AlignmentParams(min_rotation_rad=np.radians(5.0))
    res = OnlineGravityAlignment(window, params).estimate_gyroscope_bias()
    assert res.status is InitStatus.DEGENERATE_MOTION


# ---------------------------------------------------------------------------
# Stage 3: visual-inertial alignment
# ---------------------------------------------------------------------------

def test_alignment_stationary_window():
    traj = simulate_trajectory(num_keyframes=5, keyframe_spacing_s=0.5)
    res = align_visual_inertial_estimates(_make_window(traj))
    assert res.ok
    assert res.converged
    np.testing.assert_allclose(res.gravity, [0.0, 0.0, -G], atol=TOL_ALIGNMENT)
    np.testing.assert_allclose(res.bias.gyro, np.zeros(3), atol=TOL_GYRO_BIAS)
    np.testing.assert_allclose(res.nav_state.pose, np.eye(4), atol=TOL_ALIGNMENT)
    np.testing.assert_allclose(res.nav_state.velocity, np.zeros(3), atol=TOL_ALIGNMENT)
    np.testing.assert_allclose(res.velocities, np.zeros((5, 3)), atol=TOL_ALIGNMENT)
    assert res.nav_state.timestamp == traj.keyframes[0].timestamp
    assert res.scale == 1.0


def test_alignment_rotating_trajectory_with_bias():
    true_bg = np.array([1e-4, 2e-4, 3e-4])
    traj = _make_moving(bias=ImuBias(gyro=true_bg))
    res = align_visual_inertial_estimates(_make_window(traj))
    assert res.ok
    assert abs(np.linalg.norm(res.gravity) - G) < 1e-9
    np.testing.assert_allclose(res.gravity, traj.gravity, atol=TOL_ALIGNMENT)
    np.testing.assert_allclose(res.velocities, traj.keyframe_velocities, atol=TOL_ALIGNMENT)
    np.testing.assert_allclose(res.nav_state.velocity, [0.1, 0.2, -0.05], atol=TOL_ALIGNMENT)
    np.testing.assert_allclose(res.bias.gyro, true_bg, atol=1e-5)


def test_alignment_outputs_in_gravity_aligned_frame():
    R0 = so3_exp(np.array([0.2, -0.1, 0.3]))
    traj = _make_moving(initial_rotation=R0, initial_position=np.array([5.0, -2.0, 1.0]))
    res = align_visual_inertial_estimates(_make_window(traj))
    assert res.ok

    nav = res.nav_state
    np.testing.assert_allclose(res.gravity, G * WORLD_DOWN, atol=1e-9)
    np.testing.assert_allclose(nav.rotation.T @ nav.rotation, np.eye(3), atol=1e-9)
    np.testing.assert_allclose(nav.position, np.zeros(3))
    np.testing.assert_array_equal(nav.velocity, res.velocities[0])

    # True world -> aligned frame differs only by a yaw about z
    Y = nav.rotation @ R0.T
    np.testing.assert_allclose(Y[:, 2], [0.0, 0.0, 1.0], atol=TOL_ALIGNMENT)
    np.testing.assert_allclose(Y @ traj.gravity, res.gravity, atol=TOL_ALIGNMENT)
    np.testing.assert_allclose(res.velocities, traj.keyframe_velocities @ Y.T, atol=TOL_ALIGNMENT)


def test_nav_state_propagates_with_returned_gravity():
    R0 = so3_exp(np.array([0.2, -0.1, 0.3]))
    traj = _make_moving(initial_rotation=R0, initial_position=np.array([5.0, -2.0, 1.0]))
    window = _make_window(traj)
    res = align_visual_inertial_estimates(window)
    assert res.ok

    Y = res.nav_state.rotation @ R0.T
    p0 = traj.keyframes[0].position
    state = res.nav_state
    for k, pim in enumerate(window.pims):
        state = pim.predict(state, res.gravity, res.bias)
        kf = traj.keyframes[k + 1]
        np.testing.assert_allclose(state.velocity, res.velocities[k + 1], atol=TOL_ALIGNMENT)
        np.testing.assert_allclose(state.rotation, Y @ kf.rotation, atol=TOL_ALIGNMENT)
        np.testing.assert_allclose(state.position, Y @ (kf.position - p0), atol=TOL_ALIGNMENT)
        assert state.timestamp == kf.timestamp


def test_alignment_recovers_scale():
    traj = _make_moving(num_keyframes=8, pose_scale=0.5)
    params = AlignmentParams(estimate_scale=True)
    res = align_visual_inertial_estimates(_make_window(traj), params)
    assert res.ok
    assert res.scale == pytest.approx(2.0, rel=1e-3)
    np.testing.assert_allclose(res.gravity, traj.gravity, atol=TOL_ALIGNMENT)
    np.testing.assert_allclose(res.velocities, traj.keyframe_velocities, atol=TOL_ALIGNMENT)


def test_alignment_with_noise():
    params = ImuParams()
    traj = _make_moving(
        num_keyframes=6,
        gyro_noise_density=params.gyro_noise_density,
        accel_noise_density=params.accel_noise_density,
        seed=7,
    )
    res = align_visual_inertial_estimates(_make_window(traj))
    assert res.ok
    assert res.converged
    # Estimated gravity direction in the (level) first keyframe's body frame
    g_body = res.nav_state.rotation.T @ res.gravity
    cos_angle = g_body @ traj.gravity / G ** 2
    assert np.degrees(np.arccos(min(1.0, cos_angle))) < 1.0


def test_alignment_not_converged_still_reports():
    params = ImuParams()
    traj = _make_moving(
        gyro_noise_density=params.gyro_noise_density,
        accel_noise_density=params.accel_noise_density,
        seed=3,
    )
    align = AlignmentParams(max_iterations=1, convergence_tolerance=1e-30)
    res = align_visual_inertial_estimates(_make_window(traj), align)
    assert res.ok
    assert not res.converged
    assert res.iterations == 1
    assert abs(np.linalg.norm(res.gravity) - G) < 1e-9


def test_alignment_too_few_intervals():
    window = _make_window(simulate_trajectory(num_keyframes=3))
    res = align_visual_inertial_estimates(window)
    assert res.status is InitStatus.INSUFFICIENT_DATA
    assert not res.ok


def test_alignment_degenerate_translation_with_scale():
    window = _make_window(simulate_trajectory(num_keyframes=5))
    res = align_visual_inertial_estimates(window, AlignmentParams(estimate_scale=True))
    assert res.status is InitStatus.DEGENERATE_MOTION


def test_alignment_gravity_magnitude_out_of_tolerance():
    window = _make_window(_make_moving())
    res = align_visual_inertial_estimates(window, AlignmentParams(gravity_magnitude=5.0))
    assert res.status is InitStatus.OUT_OF_TOLERANCE
    assert res.gravity is None


def test_alignment_ill_conditioned():
    window = _make_window(_make_moving())
    res = align_visual_inertial_estimates(window, AlignmentParams(max_condition_number=1.5))
    assert res.status is InitStatus.ILL_CONDITIONED


def test_alignment_is_deterministic():
    window = _make_window(_make_moving(bias=ImuBias(gyro=[1e-4, 2e-4, 3e-4])))
    engine = OnlineGravityAlignment(window)
    first = engine.align_visual_inertial_estimates()
    second = engine.align_visual_inertial_estimates()
    third = align_visual_inertial_estimates(window)
    for other in (second, third):
        assert np.array_equal(first.gravity, other.gravity)
        assert np.array_equal(first.velocities, other.velocities)
        assert np.array_equal(first.bias.gyro, other.bias.gyro)
        assert first.iterations == other.iterations


def test_alignment_uses_supplied_bias_as_start():
    true_bg = np.array([1e-4, 2e-4, 3e-4])
    window = _make_window(_make_moving(bias=ImuBias(gyro=true_bg)))
    res = align_visual_inertial_estimates(window, bias=ImuBias(gyro=true_bg))
    assert res.ok
    np.testing.assert_allclose(res.bias.gyro, true_bg, atol=1e-6)

