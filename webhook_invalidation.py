# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
"""GitHub webhook -> cache invalidation.

Verification:
  X-Hub-Signature-256: sha256=<hex HMAC-SHA256 of the raw request body, keyed by the secret>
  compared with hmac.compare_digest.

Events:
  issues, issue_comment, push, label -> clear issues/commits/timeline/languages entries of the repo
                                       and every cross-repo analytics aggregate
  ping                               -> acknowledged
  anything else                      -> ignored
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from cache.registry import CacheRegistry
from common_types import PERIOD_SCOPED_DOMAINS, CacheDomain

from common_github.cache_ttl_utils import repo_pattern

_logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Hub-Signature-256"
EVENT_HEADER = "X-GitHub-Event"
INVALIDATING_EVENTS = frozenset({"issues", "issue_comment", "push", "label"})


class WebhookError(Exception):
    pass


class WebhookConfigError(WebhookError):
    """No webhook secret configured."""


class WebhookSignatureError(WebhookError):
    """Missing or invalid X-Hub-Signature-256."""


@dataclass(frozen=True)
class WebhookOutcome:
    event: str
    repo: Optional[str]
    action: str  # "invalidated" | "pong" | "ignored"
    removed: int = 0


def compute_signature(secret: str, body: bytes) -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(secret: Optional[str], body: bytes, signature: Optional[str]) -> None:
    if not secret:
        raise WebhookConfigError("webhook secret is not configured (GITHUB_WEBHOOK_SECRET)")
    if not signature or not signature.startswith("sha256="):
        raise WebhookSignatureError(f"missing or malformed {SIGNATURE_HEADER}")
    if not hmac.compare_digest(compute_signature(secret, body), signature):
        raise WebhookSignatureError("webhook signature mismatch")


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    lname = name.lower()
    for k, v in headers.items():
        if str(k).lower() == lname:
            return v
    return None


def invalidate_repo(registry: CacheRegistry, repo: str) -> int:
    removed = 0
    for domain in PERIOD_SCOPED_DOMAINS:
        removed += registry.store.delete_matching(repo_pattern(domain, repo))
    # Aggregates are keyed by the tracked-repo set, not by repo.
    removed += registry.store.delete_by_prefix(f"{CacheDomain.ANALYTICS.value}:")
    return removed


class WebhookInvalidator:
    def __init__(self, registry: CacheRegistry, secret: Optional[str]):
        self.registry = registry
        self.secret = secret

    def handle(self, headers: Mapping[str, str], body: bytes) -> WebhookOutcome:
        """Verify and apply one delivery. Raises WebhookConfigError / WebhookSignatureError."""
        verify_signature(self.secret, body, _header(headers, SIGNATURE_HEADER))
        event = str(_header(headers, EVENT_HEADER) or "").strip()

        if event == "ping":
            return WebhookOutcome(event=event, repo=None, action="pong")
        if event not in INVALIDATING_EVENTS:
            _logger.debug("ignoring webhook event %r", event)
            return WebhookOutcome(event=event, repo=None, action="ignored")

        try:
            payload: Dict[str, Any] = json.loads(body.decode("utf-8") or "{}")
        except (UnicodeDecodeError, ValueError) as e:
            _logger.warning("webhook %s: unreadable payload: %s", event, e)
            return WebhookOutcome(event=event, repo=None, action="ignored")
        repository = payload.get("repository") if isinstance(payload, dict) else None
        repo = repository.get("full_name") if isinstance(repository, dict) else None
        if not repo or not isinstance(repo, str):
            _logger.warning("webhook %s without repository.full_name", event)
            return WebhookOutcome(event=event, repo=None, action="ignored")

        removed = invalidate_repo(self.registry, str(repo))
        _logger.info("webhook %s: cleared %d cache entries for %s", event, removed, repo)
        return WebhookOutcome(event=event, repo=str(repo), action="invalidated", removed=removed)
