#!/usr/bin/env python3
# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
"""
Show cached GitHub activity for a repository (issues, commits, languages, timelines),
aggregates across tracked repositories, and the remaining rate limit.

Every read goes through the shared cache; conditional requests (ETag / 304) keep
repeat runs nearly free against the GitHub quota.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, List, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from cache.registry import CacheRegistry
from common import DAILY_TRENDS_DAYS, TOP_CONTRIBUTORS_LIMIT, Settings, load_settings
from common_github import GitHubAPIClient, format_seconds_delta
from common_github.activity import ActivityService
from common_github.exceptions import GitHubAPIError
from common_github.status_labels import StatusLabelTable
from refresh_scheduler import BackgroundRefreshScheduler
from webhook_invalidation import invalidate_repo

_logger = logging.getLogger("show_repo_activity")


def _setup_logging(verbose: bool, debug: bool, quiet: bool = False) -> None:
    if debug:
        level = logging.DEBUG
    elif verbose:
        level = logging.INFO
    elif quiet:
        level = logging.ERROR
    else:
        level = logging.WARNING
    root = logging.getLogger()
    root.setLevel(level)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
        root.addHandler(handler)


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True, default=str))


def _build_service(args: argparse.Namespace, settings: Settings) -> ActivityService:
    """Raises ValueError / ZoneInfoNotFoundError for bad status_labels or timezone settings."""
    table = StatusLabelTable.from_settings(settings.status_labels)
    tz = ZoneInfo(settings.timezone) if settings.timezone else None
    api = GitHubAPIClient(
        token=args.token,
        debug_rest=bool(args.debug),
        max_rest_calls=args.max_rest_calls if args.max_rest_calls is not None else settings.max_rest_calls,
    )
    registry = CacheRegistry.create(args.cache_file or settings.cache_path)
    return ActivityService(api, registry, table=table, tz=tz)


def _cmd_issues(svc: ActivityService, args: argparse.Namespace) -> int:
    rows = svc.issue_stats(args.repo, args.period, args.date, force=args.force)
    if args.json:
        _print_json([r.to_dict() for r in rows])
        return 0
    if not rows:
        print("No assignments in this period.")
    for r in rows:
        counts = ", ".join(f"{s.display_name}={n}" for s, n in r.counts.items() if n)
        print(f"{r.username:<24} total={r.total:<4} weight={r.weight:<6g} {counts}")
    return 0


def _cmd_commits(svc: ActivityService, args: argparse.Namespace) -> int:
    rows = svc.commit_stats(args.repo, args.period, args.date, force=args.force)
    if args.json:
        _print_json([r.to_dict() for r in rows])
        return 0
    for r in rows:
        print(f"{r.username:<24} {r.commits}")
    return 0


def _cmd_languages(svc: ActivityService, args: argparse.Namespace) -> int:
    rows = svc.language_stats(args.repo, args.period, args.date, force=args.force)
    if args.json:
        _print_json([r.to_dict() for r in rows])
        return 0
    for r in rows:
        langs = ", ".join(f"{s.language} {s.percentage}%" for s in r.top_languages)
        print(f"{r.username:<24} {langs}")
    return 0


def _cmd_timeline(svc: ActivityService, args: argparse.Namespace) -> int:
    _print_json(svc.issue_timeline(args.repo, args.period, args.date, force=args.force))
    return 0


def _cmd_changes(svc: ActivityService, args: argparse.Namespace) -> int:
    res = svc.check_repo_changes(args.repo)
    print(f"{args.repo}: {'changed' if res.changed else 'unchanged'} ({res.state or 'no state'})")
    return 0


def _cmd_info(svc: ActivityService, args: argparse.Namespace) -> int:
    info = svc.get_repo_info(args.repo)
    if info is None:
        print(f"Repository not found: {args.repo}", file=sys.stderr)
        return 1
    _print_json(info.to_dict())
    return 0


def _cmd_search(svc: ActivityService, args: argparse.Namespace) -> int:
    for r in svc.search_repositories(args.query):
        print(f"{r.full_name:<40} {r.description or ''}")
    return 0


def _cmd_refresh(svc: ActivityService, args: argparse.Namespace, settings: Settings) -> int:
    repos: List[str] = list(args.repos or settings.tracked_repos)
    if not repos:
        print("No repositories given and tracked_repos is empty.", file=sys.stderr)
        return 2
    # Seed the quota floor check; without it the first cycle runs blind.
    try:
        svc.api.refresh_rate_limit_info()
    except GitHubAPIError as e:
        _logger.warning("Could not read GitHub rate limit before refreshing: %s", e)
    scheduler = BackgroundRefreshScheduler(
        svc,
        repos,
        remaining_quota=svc.api.remaining_quota,
        min_remaining_quota=settings.min_remaining_quota,
        inter_repo_delay_s=settings.inter_repo_delay_s,
        interval_s=settings.refresh_interval_s,
    )
    if not args.loop:
        result = scheduler.run_cycle()
        print(
            f"refreshed={result.refreshed} unchanged={result.unchanged} failed={result.failed}"
            + (f" skipped ({result.reason})" if result.skipped else "")
        )
        return 1 if result.failed else 0

    handle = scheduler.start()
    try:
        while handle.is_alive:
            handle.join(timeout_s=1.0)
    except KeyboardInterrupt:
        _logger.info("Stopping refresh scheduler")
    finally:
        handle.cancel()
    return 0


def _cmd_invalidate(svc: ActivityService, args: argparse.Namespace) -> int:
    removed = invalidate_repo(svc.registry, args.repo)
    print(f"Cleared {removed} cache entries for {args.repo}")
    return 0


def _cmd_quota(svc: ActivityService, args: argparse.Namespace) -> int:
    svc.api.refresh_rate_limit_info()
    buckets = {
        "core": svc.api.get_core_rate_limit_info(),
        "graphql": svc.api.get_graphql_rate_limit_info(),
    }
    if args.json:
        _print_json(buckets)
        return 0
    for name, info in buckets.items():
        if not info:
            print(f"{name:<8} unknown")
            continue
        print(
            f"{name:<8} {info['remaining']}/{info['limit']} remaining, "
            f"resets {info['reset_local']} (in {format_seconds_delta(info['seconds_until_reset'])})"
        )
    return 0


def _cmd_analytics(svc: ActivityService, args: argparse.Namespace, settings: Settings) -> int:
    repos: List[str] = list(args.repos or settings.tracked_repos)
    if not repos:
        print("No repositories given and tracked_repos is empty.", file=sys.stderr)
        return 2

    if args.view == 'overview':
        overview = svc.analytics_overview(repos, args.period, force=args.force)
        if args.json:
            _print_json(overview.to_dict())
            return 0
        print(f"period:               {overview.period}")
        print(f"active contributors:  {overview.active_contributors}")
        print(f"issues completed:     {overview.total_issues_completed}")
        print(f"commits:              {overview.total_commits}")
        print(f"completion rate:      {overview.average_completion_rate}%")
        print(f"top performer:        {overview.top_performer or '-'}")
    elif args.view == 'contributors':
        rows = svc.top_contributors(repos, args.period, limit=args.limit, force=args.force)
        if args.json:
            _print_json([r.to_dict() for r in rows])
            return 0
        for r in rows:
            print(f"{r.username:<24} score={r.score:<5} completed={r.completed:<4} commits={r.commits:<5} issues={r.issues}")
    elif args.view == 'languages':
        langs = svc.language_distribution(repos, args.period, force=args.force)
        if args.json:
            _print_json([x.to_dict() for x in langs])
            return 0
        for x in langs:
            print(f"{x.language:<16} {x.count}")
    else:
        days = svc.daily_trends(repos, args.days, force=args.force)
        if args.json:
            _print_json([d.to_dict() for d in days])
            return 0
        for d in days:
            print(f"{d.date}  commits={d.commits:<4} issues={d.issues}")
    return 0


def _log_run_stats(svc: ActivityService) -> None:
    _logger.info("REST/GraphQL calls: %s", json.dumps(svc.api.get_rest_call_stats(), sort_keys=True))
    _logger.info("Cache: %s", json.dumps(svc.api.get_cache_stats(), sort_keys=True))


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Show cached GitHub issue/commit activity for a repository",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Per-user issue stats for today
  %(prog)s issues owner/repo

  # Commit counts for January 2026
  %(prog)s commits owner/repo --period month-01-2026

  # One refresh cycle over tracked_repos from the config file
  %(prog)s refresh

  # Top contributors across tracked_repos this month
  %(prog)s analytics contributors --limit 5
        """,
    )
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable verbose output (INFO level logging)')
    parser.add_argument('--debug', action='store_true', help='Enable debug output (DEBUG level logging, shows all API calls)')
    parser.add_argument('--quiet', '-q', action='store_true', help='Only log errors')
    parser.add_argument('--token', help='GitHub token (default: ~/.config/github-token or gh CLI config)')
    parser.add_argument('--config', type=Path, help='YAML settings file (default: ~/.config/gh-activity/config.yml)')
    parser.add_argument('--cache-file', type=Path, help='Cache file (default: ~/.cache/gh-activity/activity_cache.json)')
    parser.add_argument('--max-rest-calls', type=int, help='Hard cap on REST calls for this run')

    sub = parser.add_subparsers(dest='command', required=True)

    def _period_args(p: argparse.ArgumentParser) -> None:
        p.add_argument('repo', help='owner/repo')
        p.add_argument('--period', default='today', help='today, yesterday, this-week, last-week, this-month, month-MM-YYYY')
        p.add_argument('--date', help='Explicit day (YYYY-MM-DD); overrides --period')
        p.add_argument('--force', action='store_true', help='Revalidate with GitHub even if the cache is fresh')
        p.add_argument('--json', action='store_true', help='Print JSON')

    for name in ('issues', 'commits', 'languages', 'timeline'):
        _period_args(sub.add_parser(name, help=f'{name} stats per user'))

    sub.add_parser('changes', help='Check whether a repository changed').add_argument('repo')
    sub.add_parser('info', help='Repository metadata').add_argument('repo')
    sub.add_parser('search', help='Search your repositories').add_argument('query')
    sub.add_parser('invalidate', help='Clear period-scoped cache entries of a repository').add_argument('repo')
    p_refresh = sub.add_parser('refresh', help='Refresh tracked repositories')
    p_refresh.add_argument('repos', nargs='*', help='owner/repo (default: tracked_repos)')
    p_refresh.add_argument('--loop', action='store_true', help='Keep refreshing every refresh_interval_s')
    p_analytics = sub.add_parser('analytics', help='Aggregates across several repositories')
    p_analytics.add_argument('view', choices=('overview', 'contributors', 'languages', 'trends'))
    p_analytics.add_argument('repos', nargs='*', help='owner/repo (default: tracked_repos)')
    p_analytics.add_argument('--period', default=None, help='Period name (default: this-month); ignored by trends')
    p_analytics.add_argument('--limit', type=int, default=TOP_CONTRIBUTORS_LIMIT, help='Rows for contributors')
    p_analytics.add_argument('--days', type=int, default=DAILY_TRENDS_DAYS, help='Trailing days for trends')
    p_analytics.add_argument('--force', action='store_true', help='Rebuild even if the cached aggregate is fresh')
    p_analytics.add_argument('--json', action='store_true', help='Print JSON')
    sub.add_parser('quota', help='Show remaining GitHub rate limit').add_argument('--json', action='store_true', help='Print JSON')

    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.debug, args.quiet)

    try:
        settings = load_settings(args.config)
    except (OSError, ValueError) as e:
        print(f"Error: invalid settings: {e}", file=sys.stderr)
        return 2

    try:
        svc = _build_service(args, settings)
    except (ValueError, ZoneInfoNotFoundError) as e:
        print(f"Error: invalid settings: {e}", file=sys.stderr)
        return 2

    try:
        if args.command == 'issues':
            return _cmd_issues(svc, args)
        if args.command == 'commits':
            return _cmd_commits(svc, args)
        if args.command == 'languages':
            return _cmd_languages(svc, args)
        if args.command == 'timeline':
            return _cmd_timeline(svc, args)
        if args.command == 'changes':
            return _cmd_changes(svc, args)
        if args.command == 'info':
            return _cmd_info(svc, args)
        if args.command == 'search':
            return _cmd_search(svc, args)
        if args.command == 'invalidate':
            return _cmd_invalidate(svc, args)
        if args.command == 'refresh':
            return _cmd_refresh(svc, args, settings)
        if args.command == 'analytics':
            return _cmd_analytics(svc, args, settings)
        if args.command == 'quota':
            return _cmd_quota(svc, args)
        parser.error(f"unknown command {args.command!r}")
        return 2
    except GitHubAPIError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    finally:
        _log_run_stats(svc)
        if args.debug:
            _logger.debug(svc.api.get_actual_api_calls_text())
        svc.registry.close()


if __name__ == '__main__':
    raise SystemExit(main())
