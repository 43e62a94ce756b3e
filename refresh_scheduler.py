#!/usr/bin/env python3
# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
"""Background refresh of tracked repositories.

One cycle:
  1. already running?                                -> skip
  2. remaining REST quota known and < floor (300)    -> skip (WARNING)
  3. for each tracked repo, sequentially:
       change check; if changed, forced conditional refresh of today/this-week
       (issues + commits); failures are logged and the next repo is still attempted
     with `inter_repo_delay_s` between repos
  4. back to idle (always)

start() runs a cycle every `interval_s` on a daemon thread and returns a SchedulerHandle;
handle.cancel() stops it. Clock and sleep are injectable so tests never wait on wall time.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Protocol, Sequence

from common import DEFAULT_INTER_REPO_DELAY_S, DEFAULT_MIN_REMAINING_QUOTA, DEFAULT_REFRESH_INTERVAL_S

_logger = logging.getLogger(__name__)


class RepoRefresher(Protocol):
    def refresh_repo(self, repo: str) -> bool: ...


class SchedulerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass
class CycleResult:
    refreshed: int = 0
    unchanged: int = 0
    failed: int = 0
    skipped: bool = False
    reason: str = ""
    elapsed_s: float = 0.0


class SchedulerHandle:
    """Cancellation handle for a started scheduler."""

    def __init__(self, stop: threading.Event, thread: threading.Thread):
        self._stop = stop
        self._thread = thread

    @property
    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def join(self, timeout_s: Optional[float] = None) -> None:
        self._thread.join(timeout=timeout_s)

    def cancel(self, timeout_s: Optional[float] = 10.0) -> None:
        self._stop.set()
        if self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout_s)


class BackgroundRefreshScheduler:
    def __init__(
        self,
        refresher: RepoRefresher,
        repos: Sequence[str],
        *,
        remaining_quota: Optional[Callable[[], Optional[int]]] = None,
        min_remaining_quota: int = DEFAULT_MIN_REMAINING_QUOTA,
        inter_repo_delay_s: float = DEFAULT_INTER_REPO_DELAY_S,
        interval_s: float = DEFAULT_REFRESH_INTERVAL_S,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], object]] = None,
    ):
        self.refresher = refresher
        self.repos: List[str] = list(repos)
        self.remaining_quota = remaining_quota or (lambda: None)
        self.min_remaining_quota = int(min_remaining_quota)
        self.inter_repo_delay_s = float(inter_repo_delay_s)
        self.interval_s = float(interval_s)
        self.clock = clock
        self._stop = threading.Event()
        # Default sleep returns early on cancel().
        self._sleep = sleep or self._stop.wait
        self._mu = threading.Lock()
        self._state = SchedulerState.IDLE
        self.last_result: Optional[CycleResult] = None

    @property
    def state(self) -> SchedulerState:
        return self._state

    def _quota_too_low(self) -> Optional[int]:
        try:
            remaining = self.remaining_quota()
        except Exception as e:
            _logger.debug("remaining quota unavailable: %s", e)
            return None
        if remaining is not None and int(remaining) < self.min_remaining_quota:
            return int(remaining)
        return None

    def run_cycle(self) -> CycleResult:
        with self._mu:
            if self._state is SchedulerState.RUNNING:
                _logger.info("Refresh cycle already running, skipping")
                return CycleResult(skipped=True, reason="already running")
            self._state = SchedulerState.RUNNING

        result = CycleResult()
        t0 = self.clock()
        try:
            low = self._quota_too_low()
            if low is not None:
                _logger.warning(
                    "Skipping refresh cycle: remaining GitHub quota %d < %d", low, self.min_remaining_quota
                )
                result.skipped = True
                result.reason = f"remaining quota {low} < {self.min_remaining_quota}"
                return result

            for i, repo in enumerate(self.repos):
                if self._stop.is_set():
                    break
                if i > 0 and self.inter_repo_delay_s > 0:
                    self._sleep(self.inter_repo_delay_s)
                try:
                    if self.refresher.refresh_repo(repo):
                        result.refreshed += 1
                    else:
                        result.unchanged += 1
                except Exception as e:
                    result.failed += 1
                    _logger.error("Refresh of %s failed: %s", repo, e)

            result.elapsed_s = max(0.0, self.clock() - t0)
            _logger.info(
                "Refresh cycle done in %.1fs: %d refreshed, %d unchanged, %d failed",
                result.elapsed_s, result.refreshed, result.unchanged, result.failed,
            )
            return result
        finally:
            self.last_result = result
            with self._mu:
                self._state = SchedulerState.IDLE

    def start(self, *, run_immediately: bool = True) -> SchedulerHandle:
        self._stop.clear()

        def _loop() -> None:
            if run_immediately:
                self.run_cycle()
            while not self._stop.wait(self.interval_s):
                self.run_cycle()

        thread = threading.Thread(target=_loop, name="refresh-scheduler", daemon=True)
        thread.start()
        _logger.info("Refresh scheduler started (%d repos, every %.0fs)", len(self.repos), self.interval_s)
        return SchedulerHandle(self._stop, thread)
