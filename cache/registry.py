# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
"""Process-lifetime owner of cache + coalescing state.

Components receive a CacheRegistry instead of reaching for module globals, so
every test can build a fresh one.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from common import DEFAULT_STALE_RETENTION_S

from .cache_base import DiskCacheBackend
from .cache_store import CacheStore
from .coalesce import RequestCoalescer

_logger = logging.getLogger(__name__)


@dataclass
class CacheRegistry:
    store: CacheStore
    coalescer: RequestCoalescer = field(default_factory=RequestCoalescer)

    @classmethod
    def create(
        cls,
        cache_file: Optional[Path] = None,
        *,
        clock: Callable[[], float] = time.time,
        async_writes: bool = True,
    ) -> "CacheRegistry":
        """Disk-backed registry when `cache_file` is given, in-process otherwise."""
        backend = None
        if cache_file is not None:
            backend = DiskCacheBackend(cache_file=Path(cache_file), retention_s=DEFAULT_STALE_RETENTION_S)
            _logger.debug("cache registry backed by %s", cache_file)
        store = CacheStore(backend, clock=clock, async_writes=async_writes)
        return cls(store=store)

    def close(self) -> None:
        self.store.close()
