"""
Pytest tests for the issue statistics sync (ETag check -> scan -> aggregate -> cache).

Clock: Thursday 2026-01-22 15:00 UTC, so "today" is 2026-01-22 and the
assignment cutoff for today is 2026-01-15 00:00 UTC.
"""

import json
from datetime import datetime, timedelta, timezone

import pytest

from conftest import NOW
from common_types import IssueStatus
from common_github.api.issue_stats_cached import (
    ISSUES_QUERY,
    IssueStatsCached,
    aggregate_period_stats,
    scan_work_items,
    split_repo,
    sync_metadata_key,
)
from common_github.exceptions import UpstreamQueryError, UpstreamTransportError
from common_github.github_types import work_item_from_graphql
from common_github.periods import resolve_period

UTC = timezone.utc
REPO = "acme/dashboard"
HEAD_CHECK = f"/repos/{REPO}/issues"


def _iso(dt):
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


def issue_node(number, updated, *, assignees=("alice",), assigned=None, labels=(), title="", state="OPEN",
               created=None):
    """GraphQL issue node; `assigned` maps login -> assignment time."""
    assigned = assigned if assigned is not None else {a: updated for a in assignees}
    return {
        "id": f"I_{number}",
        "number": number,
        "title": title or f"Issue {number}",
        "body": "",
        "url": f"https://github.com/{REPO}/issues/{number}",
        "state": state,
        "createdAt": _iso(created or updated - timedelta(days=30)),
        "updatedAt": _iso(updated),
        "closedAt": _iso(updated) if state == "CLOSED" else None,
        "labels": {"nodes": [{"name": lb} for lb in labels]},
        "assignees": {"nodes": [{"login": a} for a in assignees]},
        "timelineItems": {"nodes": [
            {"__typename": "AssignedEvent", "createdAt": _iso(ts), "assignee": {"login": login}}
            for login, ts in assigned.items()
        ]},
    }


def page(nodes, *, next_cursor=None):
    return {"repository": {"issues": {
        "pageInfo": {"hasNextPage": next_cursor is not None, "endCursor": next_cursor},
        "nodes": nodes,
    }}}


def _at(day, hour=0, minute=0):
    return datetime(2026, 1, day, hour, minute, tzinfo=UTC)


@pytest.fixture
def issues_api(fake_api):
    fake_api.route(HEAD_CHECK, [{"number": 1}], etag='W/"p1"')
    fake_api.graphql_pages[None] = page([
        issue_node(1, _at(22, 9), labels=["2:in progress"], title="Fix login P:3"),
        issue_node(2, _at(22, 8), assignees=("alice", "bob"), labels=["2.5 review", "2:in progress"],
                   assigned={"alice": _at(22, 8), "bob": _at(10)}),
        issue_node(3, _at(21, 12), assignees=("bob",)),
        # assigned today, but carol was unassigned since
        issue_node(4, _at(22, 7), assignees=("dave",), assigned={"carol": _at(22, 6), "dave": _at(18)}),
    ], next_cursor="c1")
    fake_api.graphql_pages["c1"] = page([
        issue_node(5, _at(16), assignees=("erin",), assigned={"erin": _at(22, 1)}),
        issue_node(6, _at(14, 23), assignees=("alice",), assigned={"alice": _at(22, 2)}),
        issue_node(7, _at(14, 22), assignees=("alice",)),
    ], next_cursor="c2")
    fake_api.graphql_pages["c2"] = page([issue_node(8, _at(5), assignees=("frank",))])
    return fake_api


@pytest.fixture
def resource(issues_api, registry, clock):
    return IssueStatsCached(issues_api, registry, clock=clock, tz=UTC)


# ============================================================================
# Scan + aggregation
# ============================================================================

def test_split_repo():
    assert split_repo("acme/dashboard") == ("acme", "dashboard")
    for bad in ("", "acme", "acme/", "a/b/c"):
        with pytest.raises(ValueError):
            split_repo(bad)


def test_scan_stops_at_cutoff(issues_api):
    cutoff = _at(15)
    scan = scan_work_items(issues_api, REPO, query=ISSUES_QUERY, cutoff=cutoff, page_size=100, max_pages=10)

    assert [i.number for i in scan.items] == [1, 2, 3, 4, 5]
    assert scan.pages == 2
    assert scan.stopped_at_cutoff
    # Page "c2" is never requested.
    assert [c["cursor"] for c in issues_api.graphql_calls] == [None, "c1"]
    assert issues_api.graphql_calls[0] == {"owner": "acme", "name": "dashboard", "first": 100, "cursor": None}


def test_scan_cutoff_boundary_is_inclusive(fake_api):
    cutoff = _at(15)
    fake_api.graphql_pages[None] = page([
        issue_node(1, cutoff),
        issue_node(2, cutoff - timedelta(seconds=1)),
    ])
    scan = scan_work_items(fake_api, REPO, query=ISSUES_QUERY, cutoff=cutoff, page_size=100, max_pages=10)
    assert [i.number for i in scan.items] == [1]


def test_scan_respects_page_limit(fake_api):
    fake_api.graphql_pages[None] = page([issue_node(1, _at(22))], next_cursor="a")
    fake_api.graphql_pages["a"] = page([issue_node(2, _at(22))], next_cursor="b")
    scan = scan_work_items(fake_api, REPO, query=ISSUES_QUERY, cutoff=_at(1), page_size=1, max_pages=2)
    assert scan.pages == 2
    assert not scan.stopped_at_cutoff
    assert len(fake_api.graphql_calls) == 2


def test_scan_skips_malformed_nodes(fake_api):
    bad = issue_node(2, _at(22))
    del bad["number"]
    fake_api.graphql_pages[None] = page([issue_node(1, _at(22)), bad, issue_node(3, _at(22))])
    scan = scan_work_items(fake_api, REPO, query=ISSUES_QUERY, cutoff=_at(1), page_size=100, max_pages=10)
    assert [i.number for i in scan.items] == [1, 3]
    assert scan.skipped == 1


def test_scan_missing_repository_is_query_error(fake_api):
    fake_api.graphql_pages[None] = {"repository": None}
    with pytest.raises(UpstreamQueryError):
        scan_work_items(fake_api, REPO, query=ISSUES_QUERY, cutoff=_at(1), page_size=100, max_pages=10)


def test_aggregate_uses_latest_assignment_and_current_assignees():
    period = resolve_period("today", now=NOW)
    node = issue_node(1, _at(22, 9), assignees=("alice",), assigned={"alice": _at(22, 9)})
    # Older assignment of the same user collapses into the latest one.
    node["timelineItems"]["nodes"].insert(
        0, {"__typename": "AssignedEvent", "createdAt": _iso(_at(10)), "assignee": {"login": "alice"}}
    )
    stale = issue_node(2, _at(22, 9), assignees=("bob",), assigned={"bob": _at(20)})
    gone = issue_node(3, _at(22, 9), assignees=(), assigned={"carol": _at(22, 9)})

    items = [work_item_from_graphql(n, REPO) for n in (node, stale, gone)]
    rows = aggregate_period_stats(items, period)

    assert [r.username for r in rows] == ["alice"]
    assert rows[0].count(IssueStatus.ASSIGNED) == 1


# ============================================================================
# Cached resource
# ============================================================================

def test_sync_today_end_to_end(resource, issues_api, registry):
    rows = resource.sync_period(REPO, "today")
    by_user = {r.username: r for r in rows}

    assert sorted(by_user) == ["alice", "erin"]
    alice = by_user["alice"]
    assert alice.total == 2
    assert alice.count(IssueStatus.IN_PROGRESS) == 1
    assert alice.count(IssueStatus.REVIEW) == 1
    assert alice.weight == 3.0
    assert by_user["erin"].count(IssueStatus.ASSIGNED) == 1
    assert [r.username for r in rows] == ["alice", "erin"]

    entry = registry.store.get(f"issues:{REPO}:today")
    assert entry.ttl_s == 1800
    assert entry.etag == 'W/"p1"'
    assert entry.payload["scanned"] == 5
    assert entry.payload["period"]["start"] == "2026-01-22T00:00:00+00:00"

    meta = resource.sync_metadata(REPO)
    assert meta.etag == 'W/"p1"'
    assert meta.last_full_refresh_at == meta.last_fetched_at


def test_this_week_counts_assignments_since_monday(resource):
    rows = resource.sync_period(REPO, "this-week")
    by_user = {r.username: r.total for r in rows}
    # dave was assigned on Sunday the 18th, before this week started
    assert by_user == {"alice": 3, "bob": 1, "erin": 1}


def test_fresh_entry_served_without_calls(resource, issues_api):
    first = resource.sync_period(REPO, "today")
    n_rest, n_gql = len(issues_api.rest_calls), len(issues_api.graphql_calls)

    second = resource.sync_period(REPO, "today")

    assert [r.to_dict() for r in second] == [r.to_dict() for r in first]
    assert len(issues_api.rest_calls) == n_rest
    assert len(issues_api.graphql_calls) == n_gql
    assert issues_api.cache_events["hit:issue_stats"] == 1


def test_not_modified_refreshes_ttl_without_scan(resource, issues_api, registry, clock):
    resource.sync_period(REPO, "today")
    n_gql = len(issues_api.graphql_calls)
    before = registry.store.get(f"issues:{REPO}:today")

    clock.advance(31 * 60)
    rows = resource.sync_period(REPO, "today")

    assert issues_api.calls_to(HEAD_CHECK)[-1][2] == 'W/"p1"'
    assert len(issues_api.graphql_calls) == n_gql
    after = registry.store.get(f"issues:{REPO}:today")
    assert after.payload == before.payload
    assert after.etag == before.etag
    assert after.is_fresh(clock())
    assert {r.username for r in rows} == {"alice", "erin"}
    assert issues_api.cache_events["revalidated:issue_stats"] == 1


def test_force_still_sends_etag(resource, issues_api):
    resource.sync_period(REPO, "today")
    resource.sync_period(REPO, "today", force=True)
    assert issues_api.calls_to(HEAD_CHECK)[-1][2] == 'W/"p1"'


def test_changed_head_rescans(resource, issues_api, clock):
    resource.sync_period(REPO, "today")
    issues_api.routes[HEAD_CHECK].update([{"number": 9}], 'W/"p2"')
    issues_api.graphql_pages[None] = page([issue_node(9, _at(22, 14), assignees=("zoe",))])

    clock.advance(31 * 60)
    rows = resource.sync_period(REPO, "today")

    assert [r.username for r in rows] == ["zoe"]
    assert resource.sync_metadata(REPO).etag == 'W/"p2"'


def test_full_refresh_ignores_etag_after_24h(resource, issues_api, clock):
    resource.sync_period(REPO, "month-01-2026")
    clock.advance(24 * 3600 + 1)
    resource.sync_period(REPO, "month-01-2026")
    assert issues_api.calls_to(HEAD_CHECK)[-1][2] is None


def test_day_rollover_does_not_reuse_etag(resource, issues_api, clock, registry):
    resource.sync_period(REPO, "today")
    clock.advance(10 * 3600)  # 2026-01-23 01:00 UTC
    resource.sync_period(REPO, "today")

    assert issues_api.calls_to(HEAD_CHECK)[-1][2] is None
    entry = registry.store.get(f"issues:{REPO}:today")
    assert entry.payload["period"]["start"] == "2026-01-23T00:00:00+00:00"


def test_transport_error_serves_stale(resource, issues_api, clock):
    first = resource.sync_period(REPO, "today")
    issues_api.routes[HEAD_CHECK].error = UpstreamTransportError(status_code=0, endpoint=HEAD_CHECK, message="timeout")

    clock.advance(31 * 60)
    stale = resource.sync_period(REPO, "today")

    assert [r.to_dict() for r in stale] == [r.to_dict() for r in first]
    assert issues_api.cache_events["stale:issue_stats"] == 1


def test_transport_error_without_entry_raises(resource, issues_api):
    issues_api.routes[HEAD_CHECK].error = UpstreamTransportError(status_code=0, endpoint=HEAD_CHECK, message="timeout")
    with pytest.raises(UpstreamTransportError):
        resource.sync_period(REPO, "today")


def test_query_error_propagates_and_caches_nothing(resource, issues_api, registry):
    issues_api.graphql_error = UpstreamQueryError(status_code=200, endpoint="graphql", message="bad field")
    with pytest.raises(UpstreamQueryError):
        resource.sync_period(REPO, "today")
    assert registry.store.get(f"issues:{REPO}:today") is None
    assert registry.store.get(sync_metadata_key(REPO)) is None


def test_explicit_date_key_and_ttl(resource, registry):
    resource.sync_period(REPO, None, "2026-01-21")
    entry = registry.store.get(f"issues:{REPO}:date-2026-01-21")
    assert entry is not None
    assert entry.ttl_s == 24 * 3600


def test_two_item_scenario_today_vs_this_week(fake_api, registry, clock):
    # Item 1: created 10 days ago, assigned 3 days ago (Monday), in progress, updated yesterday.
    # Item 2: created and assigned today, no status label.
    fake_api.route(HEAD_CHECK, [{"number": 2}])
    fake_api.graphql_pages[None] = page([
        issue_node(2, NOW - timedelta(hours=1), created=NOW - timedelta(hours=2)),
        issue_node(1, NOW - timedelta(days=1), labels=["2:in progress"], created=NOW - timedelta(days=10),
                   assigned={"alice": NOW - timedelta(days=3)}),
    ])
    res = IssueStatsCached(fake_api, registry, clock=clock, tz=UTC)

    (today,) = res.sync_period(REPO, "today")
    assert today.username == "alice"
    assert today.count(IssueStatus.ASSIGNED) == 1
    assert today.count(IssueStatus.IN_PROGRESS) == 0

    (week,) = res.sync_period(REPO, "this-week")
    assert week.count(IssueStatus.IN_PROGRESS) == 1
    assert week.count(IssueStatus.ASSIGNED) == 1


def test_item_updated_before_cutoff_never_counts(fake_api, registry, clock):
    period_start = _at(22)
    fake_api.route(HEAD_CHECK, [{"number": 1}])
    fake_api.graphql_pages[None] = page([
        issue_node(1, _at(22, 10)),
        # Assignment inside the period but last update 9 days before it started.
        issue_node(2, period_start - timedelta(days=9), assignees=("bob",), assigned={"bob": _at(22, 9)}),
    ])
    res = IssueStatsCached(fake_api, registry, clock=clock, tz=UTC)

    rows = res.sync_period(REPO, "today")
    assert [r.username for r in rows] == ["alice"]


def test_not_modified_leaves_payload_byte_identical(resource, issues_api, registry, clock):
    resource.sync_period(REPO, "this-week")
    key = f"issues:{REPO}:this-week"
    before = json.dumps(registry.store.get(key).payload, sort_keys=True)

    for _ in range(3):
        clock.advance(31 * 60)
        resource.sync_period(REPO, "this-week")
        assert json.dumps(registry.store.get(key).payload, sort_keys=True) == before
