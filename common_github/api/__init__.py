"""Resource-specific GitHub API wrappers with caching and TTL policy.

Each module in this package owns:
- the API calls for one resource (via GitHubAPIClient / shared transport)
- the cache key/value format + persistence
- the TTL policy for that resource
"""

