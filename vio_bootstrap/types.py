"""Data model shared by the buffer, preintegrator and alignment engine.

All value types are frozen dataclasses whose numpy arrays are copied and
flagged read-only on construction, so instances can be handed across threads
without further locking.

Time base: integer nanoseconds on a monotonic clock. Durations handed to the
math (delta-times) are float seconds.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from typing import Optional, Sequence, Tuple

import numpy as np

from .math_utils import project_to_so3, quat_to_rot, so3_exp

NS_TO_S = 1e-9


def ns_to_sec(t_ns: int) -> float:
    return float(t_ns) * NS_TO_S


def _frozen(value, shape: Tuple[int, ...], name: str) -> np.ndarray:
    arr = np.array(value, dtype=float)
    if arr.size != int(np.prod(shape)):
        raise ValueError(f"{name} must have {int(np.prod(shape))} elements, got shape {arr.shape}")
    arr = arr.reshape(shape)
    arr.flags.writeable = False
    return arr


# =============================================================================
# Status taxonomy
# =============================================================================

class InitStatus(enum.Enum):
    """Outcome of a fallible initialization step."""

    SUCCESS = "success"
    INSUFFICIENT_DATA = "insufficient_data"
    RANK_DEFICIENT = "rank_deficient"
    ILL_CONDITIONED = "ill_conditioned"
    DEGENERATE_MOTION = "degenerate_motion"
    OUT_OF_TOLERANCE = "out_of_tolerance"
    BUFFER_GAP = "buffer_gap"
    BUFFER_NOT_YET_READY = "buffer_not_yet_ready"

    @property
    def is_transient(self) -> bool:
        """Only a not-yet-buffered range is worth retrying on the same window."""
        return self is InitStatus.BUFFER_NOT_YET_READY


class QueryStatus(enum.Enum):
    """Answer of an IMU buffer range query."""

    AVAILABLE = "available"
    NOT_YET_AVAILABLE = "not_yet_available"
    NEVER_AVAILABLE = "never_available"
    QUEUE_SHUTDOWN = "queue_shutdown"

    def to_init_status(self) -> InitStatus:
        if self is QueryStatus.AVAILABLE:
            return InitStatus.SUCCESS
        if self is QueryStatus.NOT_YET_AVAILABLE:
            return InitStatus.BUFFER_NOT_YET_READY
        # A shut-down buffer never delivers the range either
        return InitStatus.BUFFER_GAP


# =============================================================================
# Sensor values
# =============================================================================

@dataclass(frozen=True)
class ImuSample:
    """Single IMU measurement."""

    timestamp: int  # nanoseconds
    gyro: np.ndarray  # angular velocity [wx,wy,wz] rad/s
    accel: np.ndarray  # specific force [ax,ay,az] m/s²

    def __post_init__(self):
        object.__setattr__(self, "timestamp", int(self.timestamp))
        object.__setattr__(self, "gyro", _frozen(self.gyro, (3,), "gyro"))
        object.__setattr__(self, "accel", _frozen(self.accel, (3,), "accel"))

    def as_vector(self) -> np.ndarray:
        """[accel, gyro] stacked as (6,)."""
        return np.concatenate([self.accel, self.gyro])


@dataclass(frozen=True)
class ImuBias:
    """Accelerometer and gyroscope biases."""

    accel: np.ndarray = field(default_factory=lambda: np.zeros(3))
    gyro: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self):
        object.__setattr__(self, "accel", _frozen(self.accel, (3,), "accel bias"))
        object.__setattr__(self, "gyro", _frozen(self.gyro, (3,), "gyro bias"))

    def with_gyro(self, gyro: np.ndarray) -> "ImuBias":
        return replace(self, gyro=gyro)

    def with_accel(self, accel: np.ndarray) -> "ImuBias":
        return replace(self, accel=accel)

    def difference(self, other: "ImuBias") -> Tuple[np.ndarray, np.ndarray]:
        """(δba, δbg) = self - other."""
        return self.accel - other.accel, self.gyro - other.gyro


@dataclass(frozen=True)
class VisualPose:
    """Body pose estimated by the visual front-end (body -> world)."""

    timestamp: int
    rotation: np.ndarray
    position: np.ndarray

    def __post_init__(self):
        object.__setattr__(self, "timestamp", int(self.timestamp))
        R = np.array(self.rotation, dtype=float).reshape(3, 3)
        if not np.allclose(R.T @ R, np.eye(3), atol=1e-6):
            raise ValueError("rotation must be orthonormal")
        object.__setattr__(self, "rotation", _frozen(R, (3, 3), "rotation"))
        object.__setattr__(self, "position", _frozen(self.position, (3,), "position"))

    @classmethod
    def from_matrix(cls, timestamp: int, T: np.ndarray) -> "VisualPose":
        T = np.asarray(T, dtype=float).reshape(4, 4)
        return cls(timestamp, project_to_so3(T[:3, :3]), T[:3, 3])

    @classmethod
    def from_quaternion(cls, timestamp: int, q_wxyz: np.ndarray, position: np.ndarray) -> "VisualPose":
        return cls(timestamp, quat_to_rot(q_wxyz), position)

    @property
    def matrix(self) -> np.ndarray:
        T = np.eye(4)
        T[:3, :3] = self.rotation
        T[:3, 3] = self.position
        return T

    def relative_to(self, ref: "VisualPose") -> "VisualPose":
        """This pose expressed in the body frame of `ref`."""
        R = ref.rotation.T @ self.rotation
        p = ref.rotation.T @ (self.position - ref.position)
        return VisualPose(self.timestamp, R, p)


@dataclass(frozen=True)
class NavState:
    """Navigation state: pose (body -> world) and world-frame velocity."""

    rotation: np.ndarray
    position: np.ndarray
    velocity: np.ndarray
    timestamp: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "rotation", _frozen(self.rotation, (3, 3), "rotation"))
        object.__setattr__(self, "position", _frozen(self.position, (3,), "position"))
        object.__setattr__(self, "velocity", _frozen(self.velocity, (3,), "velocity"))

    @property
    def pose(self) -> np.ndarray:
        T = np.eye(4)
        T[:3, :3] = self.rotation
        T[:3, 3] = self.position
        return T


# =============================================================================
# Preintegrated measurement
# =============================================================================

@dataclass(frozen=True)
class PreintegratedMeasurement:
    """
    Bias-correctable summary of IMU motion over [t_start, t_end].

    Error-state order of `cov` (15x15): [δθ, δv, δp, δbg, δba].
    """

    delta_R: np.ndarray
    delta_v: np.ndarray
    delta_p: np.ndarray
    cov: np.ndarray
    J_R_bg: np.ndarray
    J_v_bg: np.ndarray
    J_v_ba: np.ndarray
    J_p_bg: np.ndarray
    J_p_ba: np.ndarray
    bias_lin: ImuBias
    t_start: int
    t_end: int

    def __post_init__(self):
        for name, shape in (("delta_R", (3, 3)), ("delta_v", (3,)), ("delta_p", (3,)),
                            ("cov", (15, 15)), ("J_R_bg", (3, 3)), ("J_v_bg", (3, 3)),
                            ("J_v_ba", (3, 3)), ("J_p_bg", (3, 3)), ("J_p_ba", (3, 3))):
            object.__setattr__(self, name, _frozen(getattr(self, name), shape, name))
        if self.t_end <= self.t_start:
            raise ValueError(f"empty preintegration span [{self.t_start}, {self.t_end}]")

    @property
    def delta_t(self) -> float:
        return (self.t_end - self.t_start) * NS_TO_S

    @property
    def covariance_9(self) -> np.ndarray:
        """[δθ, δv, δp] block of the covariance."""
        return self.cov[:9, :9].copy()

    def deltas_corrected(self, bias: ImuBias) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        First-order bias correction (no re-integration):
            ΔR_corr = ΔR * Exp(J_R_bg * δbg)
            Δv_corr = Δv + J_v_bg * δbg + J_v_ba * δba
            Δp_corr = Δp + J_p_bg * δbg + J_p_ba * δba
        """
        dba, dbg = bias.difference(self.bias_lin)
        delta_R_corr = self.delta_R @ so3_exp(self.J_R_bg @ dbg)
        delta_v_corr = self.delta_v + self.J_v_bg @ dbg + self.J_v_ba @ dba
        delta_p_corr = self.delta_p + self.J_p_bg @ dbg + self.J_p_ba @ dba
        return delta_R_corr, delta_v_corr, delta_p_corr

    def predict(self, state: NavState, gravity: np.ndarray,
                bias: Optional[ImuBias] = None) -> NavState:
        """Propagate `state` from t_start to t_end under world-frame `gravity`."""
        if bias is None:
            dR, dv, dp = self.delta_R, self.delta_v, self.delta_p
        else:
            dR, dv, dp = self.deltas_corrected(bias)
        g = np.asarray(gravity, dtype=float).reshape(3,)
        dt = self.delta_t
        R_i, v_i, p_i = state.rotation, state.velocity, state.position
        return NavState(
            rotation=project_to_so3(R_i @ dR),
            position=p_i + v_i * dt + 0.5 * g * dt ** 2 + R_i @ dp,
            velocity=v_i + g * dt + R_i @ dv,
            timestamp=self.t_end,
        )


# =============================================================================
# Alignment window
# =============================================================================

@dataclass(frozen=True)
class AlignmentWindow:
    """N keyframe poses with the N-1 delta-times and PIMs between them."""

    poses: Tuple[VisualPose, ...]
    delta_t: Tuple[float, ...]
    pims: Tuple[PreintegratedMeasurement, ...]

    def __post_init__(self):
        object.__setattr__(self, "poses", tuple(self.poses))
        object.__setattr__(self, "delta_t", tuple(float(dt) for dt in self.delta_t))
        object.__setattr__(self, "pims", tuple(self.pims))
        if not (len(self.poses) == len(self.pims) + 1 == len(self.delta_t) + 1):
            raise ValueError(
                f"misaligned window: {len(self.poses)} poses, "
                f"{len(self.delta_t)} delta_t, {len(self.pims)} pims")
        for k, (dt, pim) in enumerate(zip(self.delta_t, self.pims)):
            if not dt > 0.0:
                raise ValueError(f"delta_t[{k}]={dt} must be positive")
            if abs(dt - pim.delta_t) > 1e-3:
                raise ValueError(f"delta_t[{k}]={dt:.6f}s differs from "
                                 f"PIM span {pim.delta_t:.6f}s")

    @classmethod
    def from_keyframes(cls, poses: Sequence[VisualPose],
                       pims: Sequence[PreintegratedMeasurement]) -> "AlignmentWindow":
        delta_t = [ns_to_sec(b.timestamp - a.timestamp) for a, b in zip(poses[:-1], poses[1:])]
        return cls(tuple(poses), tuple(delta_t), tuple(pims))

    @property
    def num_intervals(self) -> int:
        return len(self.pims)


# =============================================================================
# Results
# =============================================================================

@dataclass(frozen=True)
class ImuQueryResult:
    """Samples returned by an IMU buffer range query."""

    status: QueryStatus
    timestamps: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.int64))
    samples: Tuple[ImuSample, ...] = ()

    @property
    def ok(self) -> bool:
        return self.status is QueryStatus.AVAILABLE

    @property
    def gyro(self) -> np.ndarray:
        return np.array([s.gyro for s in self.samples]).reshape(-1, 3)

    @property
    def accel(self) -> np.ndarray:
        return np.array([s.accel for s in self.samples]).reshape(-1, 3)

    def __len__(self) -> int:
        return len(self.samples)


@dataclass(frozen=True)
class PreintegrationResult:
    status: InitStatus
    pim: Optional[PreintegratedMeasurement] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status is InitStatus.SUCCESS


@dataclass(frozen=True)
class GyroBiasResult:
    status: InitStatus
    bias: Optional[ImuBias] = None
    correction: Optional[np.ndarray] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status is InitStatus.SUCCESS


@dataclass(frozen=True)
class AlignmentResult:
    """Output tuple handed to the back-end: bias, gravity and initial NavState."""

    status: InitStatus
    bias: Optional[ImuBias] = None
    gravity: Optional[np.ndarray] = None
    nav_state: Optional[NavState] = None
    velocities: Optional[np.ndarray] = None
    scale: float = 1.0
    iterations: int = 0
    converged: bool = False
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status is InitStatus.SUCCESS


@dataclass(frozen=True)
class InitializationResult:
    """Outcome of one OnlineInitializer attempt."""

    status: InitStatus
    alignment: Optional[AlignmentResult] = None
    window_start: Optional[int] = None
    window_end: Optional[int] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status is InitStatus.SUCCESS


def failure(result_cls, status: InitStatus, message: str, tag: str):
    """Build a failed result and print its one-line diagnostic."""
    print(f"[{tag}] {status.value}: {message}")
    return result_cls(status=status, message=message)


__all__ = [
    "InitStatus", "QueryStatus", "ImuSample", "ImuBias", "VisualPose", "NavState",
    "PreintegratedMeasurement", "AlignmentWindow", "ImuQueryResult",
    "PreintegrationResult", "GyroBiasResult", "AlignmentResult",
    "InitializationResult", "ns_to_sec", "failure",
]
