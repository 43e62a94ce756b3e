# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
"""GitHub API error types.

These are intentionally lightweight so cached API modules can catch specific
error classes (e.g. transport failures vs 404 Not Found) without creating
import cycles.
"""

from __future__ import annotations

from typing import Optional


class GitHubAPIError(Exception):
    def __init__(self, *, status_code: int, endpoint: str, message: str):
        super().__init__(message)
        self.status_code = int(status_code)
        self.endpoint = str(endpoint or "")


class UpstreamTransportError(GitHubAPIError):
    """Connection error, timeout or 5xx. Retried by the next caller/cycle only."""


class UpstreamQueryError(GitHubAPIError):
    """The request reached GitHub and was rejected (4xx, GraphQL errors). Never cached."""


class GitHubNotFoundError(UpstreamQueryError):
    pass


class GitHubAuthError(UpstreamQueryError):
    pass


class QuotaExhaustedError(GitHubAPIError):
    """Rate limit (or the local REST budget) is exhausted."""

    def __init__(self, *, endpoint: str, message: str, reset_epoch: Optional[int] = None, status_code: int = 403):
        super().__init__(status_code=status_code, endpoint=endpoint, message=message)
        self.reset_epoch = reset_epoch
