# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
"""Request coalescing (cache stampede prevention).

When an entry expires and many dashboard requests arrive at once, only the
first caller for a key runs the producer; everyone else waits on the same
Future and receives the same result or the same exception object.

    result = coalescer.coalesce("issues:owner/repo:today", lambda: fetch())
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Callable, Dict, Optional, TypeVar

_logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class CoalescerStats:
    started: int = 0  # producer invocations
    joined: int = 0  # callers that waited on an existing producer


class RequestCoalescer:
    """At most one in-flight producer per key."""

    def __init__(self) -> None:
        self._mu = threading.Lock()
        self._pending: Dict[str, Future] = {}
        self.stats = CoalescerStats()

    def inflight_count(self) -> int:
        with self._mu:
            return len(self._pending)

    def is_pending(self, key: str) -> bool:
        with self._mu:
            return key in self._pending

    def coalesce(self, key: str, producer: Callable[[], T], *, timeout_s: Optional[float] = None) -> T:
        with self._mu:
            fut = self._pending.get(key)
            owner = fut is None
            if owner:
                fut = Future()
                self._pending[key] = fut
                self.stats.started += 1
            else:
                self.stats.joined += 1

        if not owner:
            _logger.debug("coalesce: joining in-flight request %s", key)
            return fut.result(timeout=timeout_s)  # type: ignore[union-attr]

        try:
            result = producer()
        except BaseException as e:
            # Release before settling so the next caller starts a fresh producer.
            self._release(key)
            fut.set_exception(e)  # type: ignore[union-attr]
            raise
        self._release(key)
        fut.set_result(result)  # type: ignore[union-attr]
        return result

    def _release(self, key: str) -> None:
        with self._mu:
            self._pending.pop(key, None)
