"""Top languages per user for a period, from files touched by recent commits (REST).

Resources:
  GET /repos/{owner}/{repo}/commits?since&until&per_page=100   (conditional, page 1 ETag)
  GET /repos/{owner}/{repo}/commits/{sha}                        (files; at most LANGUAGES_MAX_COMMITS)

Example cached payload:
  {
    "period": {...},
    "users": [
      {"username": "alice", "total_files": 7,
       "top_languages": [{"language": "Python", "count": 5, "percentage": 71}, ...]}
    ]
  }

Commit-detail calls are billable, so only the newest LANGUAGES_MAX_COMMITS commits of the
window are inspected, in batches of 5 threads. A failed detail call drops that commit only.

TTL:
  today / this-week 30m, everything else 24h.
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, TYPE_CHECKING

from common import LANGUAGES_MAX_COMMITS
from common_types import CacheDomain

from ..exceptions import GitHubAPIError, QuotaExhaustedError
from ..github_types import CommitRecord, commit_from_rest
from ..periods import Period
from .base_cached import PeriodCachedResource, UpstreamResult, period_to_dict
from .commit_stats_cached import list_period_commits

if TYPE_CHECKING:  # pragma: no cover
    from .. import GitHubAPIClient

_logger = logging.getLogger(__name__)

DETAIL_BATCH_SIZE = 5
TOP_LANGUAGES = 5

LANGUAGE_MAP: Dict[str, str] = {
    "js": "JavaScript",
    "jsx": "JavaScript",
    "ts": "TypeScript",
    "tsx": "TypeScript",
    "py": "Python",
    "java": "Java",
    "cpp": "C++",
    "c": "C",
    "cs": "C#",
    "php": "PHP",
    "rb": "Ruby",
    "go": "Go",
    "rs": "Rust",
    "swift": "Swift",
    "kt": "Kotlin",
    "scala": "Scala",
    "sh": "Shell",
    "bash": "Shell",
    "sql": "SQL",
    "html": "HTML",
    "css": "CSS",
    "scss": "SCSS",
    "sass": "SASS",
    "vue": "Vue",
    "json": "JSON",
    "xml": "XML",
    "yaml": "YAML",
    "yml": "YAML",
    "md": "Markdown",
    "dockerfile": "Dockerfile",
    "tf": "Terraform",
    "hcl": "Terraform",
}


def language_for_file(filename: str) -> Optional[str]:
    """'src/app.py' -> 'Python', 'Dockerfile' -> 'Dockerfile', unknown -> None."""
    base = os.path.basename(str(filename or "")).lower()
    if base == "dockerfile":
        return "Dockerfile"
    _, ext = os.path.splitext(base)
    return LANGUAGE_MAP.get(ext.lstrip("."))


@dataclass(frozen=True)
class LanguageShare:
    language: str
    count: int
    percentage: int


@dataclass(frozen=True)
class UserLanguages:
    username: str
    total_files: int
    top_languages: Tuple[LanguageShare, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "username": self.username,
            "total_files": self.total_files,
            "top_languages": [
                {"language": s.language, "count": s.count, "percentage": s.percentage} for s in self.top_languages
            ],
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "UserLanguages":
        return cls(
            username=str(d["username"]),
            total_files=int(d.get("total_files") or 0),
            top_languages=tuple(
                LanguageShare(language=str(s["language"]), count=int(s["count"]), percentage=int(s["percentage"]))
                for s in d.get("top_languages") or []
            ),
        )


def summarize_languages(details: List[CommitRecord]) -> List[UserLanguages]:
    per_user: Dict[str, Dict[str, int]] = {}
    for c in details:
        if not c.author_login:
            continue
        langs = per_user.setdefault(c.author_login, {})
        for f in c.files:
            lang = language_for_file(f)
            if lang:
                langs[lang] = langs.get(lang, 0) + 1

    out: List[UserLanguages] = []
    for username, langs in per_user.items():
        total = sum(langs.values())
        top = sorted(langs.items(), key=lambda kv: (-kv[1], kv[0]))[:TOP_LANGUAGES]
        out.append(UserLanguages(
            username=username,
            total_files=total,
            top_languages=tuple(
                LanguageShare(language=lang, count=n, percentage=round(n * 100 / total) if total else 0)
                for lang, n in top
            ),
        ))
    return sorted(out, key=lambda u: (-u.total_files, u.username))


class LanguageStatsCached(PeriodCachedResource[List[UserLanguages]]):
    domain = CacheDomain.LANGUAGES

    @property
    def cache_name(self) -> str:
        return "language_stats"

    def value_from_payload(self, payload: Any) -> List[UserLanguages]:
        return [UserLanguages.from_dict(u) for u in (payload or {}).get("users") or []]

    def _commit_detail(self, repo: str, sha: str) -> Optional[CommitRecord]:
        try:
            return commit_from_rest(self.api.rest_get(f"/repos/{repo}/commits/{sha}").data)
        except QuotaExhaustedError:
            raise
        except (GitHubAPIError, ValueError) as e:
            _logger.warning("%s: commit %s details unavailable: %s", repo, sha[:12], e)
            return None

    def fetch_upstream(self, *, etag: Optional[str], repo: str, period: Period, **kwargs: Any) -> UpstreamResult:
        listed = list_period_commits(self.api, repo, period, etag=etag, max_pages=1)
        if listed is None:
            return UpstreamResult.unchanged(etag=etag)
        commits, first_etag = listed
        wanted = [c for c in commits if c.author_login][:LANGUAGES_MAX_COMMITS]

        details: List[CommitRecord] = []
        with ThreadPoolExecutor(max_workers=DETAIL_BATCH_SIZE) as executor:
            for src, d in zip(wanted, executor.map(lambda c: self._commit_detail(repo, c.sha), wanted)):
                if d is None:
                    continue
                # The detail's author can be missing; keep the listing's login.
                details.append(CommitRecord(sha=d.sha, author_login=d.author_login or src.author_login, files=d.files))

        users = summarize_languages(details)
        payload = {"period": period_to_dict(period), "users": [u.to_dict() for u in users]}
        return UpstreamResult.changed(payload, etag=first_etag)
