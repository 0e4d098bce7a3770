#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Online visual-inertial initializer.

Keeps a sliding window of keyframe poses from the visual front-end, pulls the
IMU samples between consecutive keyframes out of the shared buffer,
preintegrates them with the current bias and runs the alignment engine.

Attempt outcomes:
- BUFFER_NOT_YET_READY: keyframes untouched, retry once more IMU data arrived
- BUFFER_GAP: keyframes older than the buffer are dropped (a shut-down
  buffer also reports BUFFER_GAP and stops the background worker)
- any other failure: the window slides by one keyframe
- SUCCESS: bias, result and initialized flag are committed together
"""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import Deque, Dict, List, Optional

from .config import AlignmentParams, ImuParams, InitializerParams
from .gravity_alignment import align_visual_inertial_estimates
from .imu_buffer import ThreadsafeImuBuffer
from .imu_preintegration import ImuFrontEnd
from .types import (
    AlignmentWindow,
    ImuBias,
    InitializationResult,
    InitStatus,
    QueryStatus,
    VisualPose,
)


class OnlineInitializer:
    """Drives initialization attempts over a sliding keyframe window."""

    def __init__(
        self,
        imu_buffer: ThreadsafeImuBuffer,
        imu_params: Optional[ImuParams] = None,
        align_params: Optional[AlignmentParams] = None,
        params: Optional[InitializerParams] = None,
        bias: Optional[ImuBias] = None,
        retry_period_s: float = 0.05,
    ):
        self.imu_buffer = imu_buffer
        self.align_params = align_params if align_params is not None else AlignmentParams()
        self.params = params if params is not None else InitializerParams()
        if self.params.window_size < self.align_params.min_num_intervals + 1:
            raise ValueError(
                f"window_size {self.params.window_size} too small for "
                f"{self.align_params.min_num_intervals} intervals")
        self.imu_frontend = ImuFrontEnd(imu_params if imu_params is not None else ImuParams(), bias)
        self.retry_period_s = max(1e-3, float(retry_period_s))

        self._lock = threading.Lock()
        self._keyframes: Deque[VisualPose] = deque(maxlen=self.params.window_size)
        self._result: Optional[InitializationResult] = None
        self._initialized = threading.Event()

        self._running = False
        self._thread: Optional[threading.Thread] = None

        self.stats: Dict[str, object] = {
            "attempts": 0,
            "successes": 0,
            "failures": {},
            "last_attempt_ms": 0.0,
        }

    # ------------------------------------------------------------------
    # Keyframe input
    # ------------------------------------------------------------------

    def add_keyframe(self, pose: VisualPose) -> bool:
        """Push one keyframe pose; non-increasing timestamps are rejected."""
        with self._lock:
            if self._keyframes and pose.timestamp <= self._keyframes[-1].timestamp:
                print(f"[INIT] Rejected keyframe t={pose.timestamp} "
                      f"(last={self._keyframes[-1].timestamp})")
                return False
            self._keyframes.append(pose)
        return True

    def num_keyframes(self) -> int:
        with self._lock:
            return len(self._keyframes)

    def ready(self) -> bool:
        return self.num_keyframes() >= self.params.window_size

    @property
    def is_initialized(self) -> bool:
        return self._initialized.is_set()

    @property
    def result(self) -> Optional[InitializationResult]:
        with self._lock:
            return self._result

    def get_current_imu_bias(self) -> ImuBias:
        return self.imu_frontend.get_current_imu_bias()

    def wait_until_initialized(self, timeout_s: float) -> bool:
        return self._initialized.wait(timeout=timeout_s)

    def reset(self) -> None:
        """Forget keyframes and the last result; the bias estimate is kept."""
        with self._lock:
            self._keyframes.clear()
            self._result = None
            self._initialized.clear()

    # ------------------------------------------------------------------
    # Attempt
    # ------------------------------------------------------------------

    def try_initialize(self, timeout_s: Optional[float] = None) -> InitializationResult:
        """
        Run one attempt on the current window.

        Args:
            timeout_s: Total time to wait for IMU data (None = non-blocking)
        """
        t0 = time.time()
        with self._lock:
            keyframes = list(self._keyframes)
            self.stats["attempts"] = int(self.stats["attempts"]) + 1

        result = self._attempt(keyframes, timeout_s)

        with self._lock:
            self.stats["last_attempt_ms"] = (time.time() - t0) * 1000.0
            if result.ok:
                self.stats["successes"] = int(self.stats["successes"]) + 1
            else:
                failures = self.stats["failures"]
                failures[result.status.value] = failures.get(result.status.value, 0) + 1
        return result

    def get_stats(self) -> Dict[str, object]:
        """Consistent copy of the attempt counters."""
        with self._lock:
            stats = dict(self.stats)
            stats["failures"] = dict(self.stats["failures"])
        return stats

    def _attempt(self, keyframes: List[VisualPose], timeout_s: Optional[float]) -> InitializationResult:
        if len(keyframes) < self.params.window_size:
            return self._fail(InitStatus.INSUFFICIENT_DATA,
                              f"{len(keyframes)}/{self.params.window_size} keyframes", keyframes)

        deadline = None if timeout_s is None else time.monotonic() + max(0.0, timeout_s)
        pims = []
        for kf_i, kf_j in zip(keyframes[:-1], keyframes[1:]):
            if deadline is None:
                query = self.imu_buffer.get_interpolated_borders(kf_i.timestamp, kf_j.timestamp)
            else:
                remaining = max(0.0, deadline - time.monotonic())
                query = self.imu_buffer.get_interpolated_borders_blocking(
                    kf_i.timestamp, kf_j.timestamp, remaining)
            if not query.ok:
                status = query.status.to_init_status()
                if query.status is QueryStatus.NEVER_AVAILABLE:
                    self._drop_keyframes_before_buffer()
                return self._fail(status, f"IMU range [{kf_i.timestamp}, {kf_j.timestamp}]: "
                                          f"{query.status.value}", keyframes, slide=False)

            preint = self.imu_frontend.preintegrate_imu_measurements(query.timestamps, query.samples)
            if not preint.ok:
                return self._fail(preint.status, preint.message, keyframes, slide=True)
            pims.append(preint.pim)

        window = AlignmentWindow.from_keyframes(keyframes, pims)
        alignment = align_visual_inertial_estimates(
            window, self.align_params, self.imu_frontend.get_current_imu_bias())
        if not alignment.ok:
            return self._fail(alignment.status, alignment.message, keyframes, slide=True)

        result = InitializationResult(
            status=InitStatus.SUCCESS,
            alignment=alignment,
            window_start=keyframes[0].timestamp,
            window_end=keyframes[-1].timestamp,
        )
        # Commit only on full success
        self.imu_frontend.update_bias(alignment.bias)
        with self._lock:
            self._result = result
        self._initialized.set()
        print(f"[INIT] Initialized on window [{keyframes[0].timestamp}, {keyframes[-1].timestamp}] "
              f"with {len(keyframes)} keyframes")
        return result

    def _fail(self, status: InitStatus, message: str, keyframes: List[VisualPose],
              slide: bool = False) -> InitializationResult:
        if slide and keyframes:
            with self._lock:
                if self._keyframes and self._keyframes[0].timestamp == keyframes[0].timestamp:
                    self._keyframes.popleft()
        print(f"[INIT] Attempt failed ({status.value}): {message}"
              f"{' - sliding window' if slide else ''}")
        return InitializationResult(
            status=status,
            window_start=keyframes[0].timestamp if keyframes else None,
            window_end=keyframes[-1].timestamp if keyframes else None,
            message=message,
        )

    def _drop_keyframes_before_buffer(self) -> None:
        span = self.imu_buffer.oldest_and_newest_timestamp()
        if span is None:
            return
        oldest = span[0]
        with self._lock:
            dropped = 0
            while self._keyframes and self._keyframes[0].timestamp < oldest:
                self._keyframes.popleft()
                dropped += 1
        if dropped:
            print(f"[INIT] Dropped {dropped} keyframes older than IMU buffer (t<{oldest})")

    # ------------------------------------------------------------------
    # Background worker
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._thread = threading.Thread(target=self._worker_loop, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._running = False
        t = self._thread
        if t is not None:
            t.join(timeout=1.5)
        self._thread = None

    def _worker_loop(self) -> None:
        while self._running and not self._initialized.is_set():
            if self.imu_buffer.is_shutdown:
                print("[INIT] IMU buffer shut down, stopping initializer worker")
                break
            t0 = time.time()
            if self.ready():
                self.try_initialize(timeout_s=self.params.imu_wait_timeout_s)
            sleep_s = max(0.0, self.retry_period_s - (time.time() - t0))
            if sleep_s > 0:
                time.sleep(sleep_s)
        self._running = False
