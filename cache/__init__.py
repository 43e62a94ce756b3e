# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
"""Cache storage, request coalescing and the registry that owns both."""

from .cache_base import CacheEntry, DiskCacheBackend, MemoryCacheBackend
from .cache_store import CacheStore
from .coalesce import RequestCoalescer
from .registry import CacheRegistry

__all__ = [
    "CacheEntry",
    "CacheRegistry",
    "CacheStore",
    "DiskCacheBackend",
    "MemoryCacheBackend",
    "RequestCoalescer",
]
