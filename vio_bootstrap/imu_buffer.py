#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Thread-safe IMU sample buffer with range queries.

One producer (sensor driver) appends samples; one or more consumers query
time ranges. All state lives behind a single `threading.Condition`:
- writers only hold the lock for the append/eviction
- readers either answer immediately with a status or wait on the condition,
  always bounded by a caller-supplied timeout
"""

from __future__ import annotations

import threading
import time
from bisect import bisect_left, bisect_right
from typing import Iterable, List, Optional, Tuple

import numpy as np

from . import config
from .types import ImuQueryResult, ImuSample, QueryStatus


def interpolate(sample_a: ImuSample, sample_b: ImuSample, t: int) -> ImuSample:
    """Linear interpolation of gyro/accel between two samples at time t (ns)."""
    if t == sample_a.timestamp:
        return sample_a
    if t == sample_b.timestamp:
        return sample_b
    span = float(sample_b.timestamp - sample_a.timestamp)
    alpha = float(t - sample_a.timestamp) / span
    return ImuSample(
        timestamp=t,
        gyro=sample_a.gyro + alpha * (sample_b.gyro - sample_a.gyro),
        accel=sample_a.accel + alpha * (sample_b.accel - sample_a.accel),
    )


class ThreadsafeImuBuffer:
    """Monotonic, lock-protected IMU sample store."""

    def __init__(self, buffer_length_ns: int = config.IMU_BUFFER_LENGTH_NS):
        if buffer_length_ns <= 0:
            raise ValueError(f"buffer_length_ns must be positive, got {buffer_length_ns}")
        self.buffer_length_ns = int(buffer_length_ns)

        self._cond = threading.Condition(threading.Lock())
        self._timestamps: List[int] = []
        self._samples: List[ImuSample] = []
        self._shutdown = False

        self.dropped_count = 0
        self.evicted_count = 0

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def add_measurement(self, sample: ImuSample) -> bool:
        """Append one sample; non-increasing timestamps are dropped."""
        with self._cond:
            if self._timestamps and sample.timestamp <= self._timestamps[-1]:
                self.dropped_count += 1
                print(f"[IMU-BUF] Dropped non-monotonic sample t={sample.timestamp} "
                      f"(last={self._timestamps[-1]}, dropped={self.dropped_count})")
                return False
            self._timestamps.append(sample.timestamp)
            self._samples.append(sample)
            self._evict_locked()
            self._cond.notify_all()
        return True

    def add_measurements(self, samples: Iterable[ImuSample]) -> int:
        """Append several samples; returns how many were accepted."""
        return sum(1 for s in samples if self.add_measurement(s))

    def _evict_locked(self) -> None:
        cutoff = self._timestamps[-1] - self.buffer_length_ns
        n_old = bisect_left(self._timestamps, cutoff)
        if n_old > 0:
            del self._timestamps[:n_old]
            del self._samples[:n_old]
            self.evicted_count += n_old
            if config.VERBOSE_DEBUG:
                print(f"[IMU-BUF] Evicted {n_old} samples older than t={cutoff}")

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def size(self) -> int:
        with self._cond:
            return len(self._samples)

    def __len__(self) -> int:
        return self.size()

    def oldest_and_newest_timestamp(self) -> Optional[Tuple[int, int]]:
        with self._cond:
            if not self._timestamps:
                return None
            return self._timestamps[0], self._timestamps[-1]

    def delete_older_than(self, t: int) -> int:
        """Drop samples strictly older than t; returns the number removed."""
        with self._cond:
            n_old = bisect_left(self._timestamps, t)
            del self._timestamps[:n_old]
            del self._samples[:n_old]
            return n_old

    def clear(self) -> None:
        with self._cond:
            self._timestamps.clear()
            self._samples.clear()

    def shutdown(self) -> None:
        """Wake all waiting readers; later queries report QUEUE_SHUTDOWN."""
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()

    @property
    def is_shutdown(self) -> bool:
        with self._cond:
            return self._shutdown

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def get_interpolated_range(self, t_start: int, t_end: int) -> ImuQueryResult:
        """
        Samples in (t_start, t_end], the last one interpolated at t_end when no
        stored sample falls exactly on it.
        """
        _check_range(t_start, t_end)
        with self._cond:
            return self._query_locked(t_start, t_end, interpolate_lower=False)

    def get_interpolated_borders(self, t_start: int, t_end: int) -> ImuQueryResult:
        """Samples in [t_start, t_end] with both borders interpolated."""
        _check_range(t_start, t_end)
        with self._cond:
            return self._query_locked(t_start, t_end, interpolate_lower=True)

    def get_interpolated_range_blocking(self, t_start: int, t_end: int,
                                        timeout_s: float) -> ImuQueryResult:
        """Like get_interpolated_range, waiting up to timeout_s for t_end to arrive."""
        _check_range(t_start, t_end)
        with self._cond:
            self._wait_for_locked(t_end, timeout_s)
            return self._query_locked(t_start, t_end, interpolate_lower=False)

    def get_interpolated_borders_blocking(self, t_start: int, t_end: int,
                                          timeout_s: float) -> ImuQueryResult:
        """Like get_interpolated_borders, waiting up to timeout_s for t_end to arrive."""
        _check_range(t_start, t_end)
        with self._cond:
            self._wait_for_locked(t_end, timeout_s)
            return self._query_locked(t_start, t_end, interpolate_lower=True)

    def _wait_for_locked(self, t_end: int, timeout_s: float) -> bool:
        if timeout_s < 0:
            raise ValueError(f"timeout_s must be non-negative, got {timeout_s}")
        t0 = time.monotonic()
        ready = self._cond.wait_for(
            lambda: self._shutdown or (bool(self._timestamps) and self._timestamps[-1] >= t_end),
            timeout=timeout_s,
        )
        if config.VERBOSE_DEBUG:
            print(f"[IMU-BUF] Waited {1000.0 * (time.monotonic() - t0):.1f}ms for t={t_end} "
                  f"(ready={ready})")
        return ready

    def _query_locked(self, t_start: int, t_end: int, interpolate_lower: bool) -> ImuQueryResult:
        if self._shutdown:
            return ImuQueryResult(QueryStatus.QUEUE_SHUTDOWN)
        if not self._timestamps or t_end > self._timestamps[-1]:
            return ImuQueryResult(QueryStatus.NOT_YET_AVAILABLE)
        if t_start < self._timestamps[0]:
            return ImuQueryResult(QueryStatus.NEVER_AVAILABLE)

        # First index strictly after t_start, last index at or before t_end
        i_first = bisect_right(self._timestamps, t_start)
        i_end = bisect_right(self._timestamps, t_end)
        samples = list(self._samples[i_first:i_end])

        if not samples or samples[-1].timestamp != t_end:
            # t_start >= oldest and t_end <= newest, so both neighbours exist
            samples.append(interpolate(self._samples[i_end - 1], self._samples[i_end], t_end))

        if interpolate_lower:
            i_lower = i_first - 1  # last sample at or before t_start
            if self._timestamps[i_lower] == t_start:
                lower = self._samples[i_lower]
            else:
                lower = interpolate(self._samples[i_lower], self._samples[i_first], t_start)
            samples.insert(0, lower)

        timestamps = np.array([s.timestamp for s in samples], dtype=np.int64)
        return ImuQueryResult(QueryStatus.AVAILABLE, timestamps, tuple(samples))


def _check_range(t_start: int, t_end: int) -> None:
    if t_start >= t_end:
        raise ValueError(f"empty query range: t_start={t_start} >= t_end={t_end}")
