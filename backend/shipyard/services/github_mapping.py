"""Pure query-building and mapping utilities for GitHub GraphQL payloads."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping, Sequence

from shipyard.models.repository import LanguageShare, RateLimitInfo, RepositoryItem

_REPOSITORY_FIELDS = """
      id
      name
      url
      description
      stargazerCount
      updatedAt
      repositoryTopics(first: 5) {
        nodes {
          topic {
            name
          }
        }
      }
      languages(first: 3, orderBy: { field: SIZE, direction: DESC }) {
        edges {
          size
          node {
            name
            color
          }
        }
      }"""


def alias_for(index: int) -> str:
    return f"repo{index}"


def build_cluster_query(member_count: int) -> str:
    """Build one aliased GraphQL query fetching ``member_count`` repositories.

    Repository names travel as variables (``$n0``, ``$n1``...) so they never
    need escaping inside the query text.
    """
    if member_count < 1:
        raise ValueError("A cluster query needs at least one repository.")

    variables = ", ".join(f"$n{i}: String!" for i in range(member_count))
    selections = "\n".join(
        f"    {alias_for(i)}: repository(owner: $owner, name: $n{i}) {{"
        f"{_REPOSITORY_FIELDS}\n    }}"
        for i in range(member_count)
    )
    return (
        f"query ClusterRepositories($owner: String!, {variables}) {{\n"
        f"{selections}\n"
        "    rateLimit {\n      limit\n      remaining\n      resetAt\n    }\n"
        "}"
    )


def build_variables(owner: str, member_names: Sequence[str]) -> dict[str, str]:
    variables = {"owner": owner}
    for index, name in enumerate(member_names):
        variables[f"n{index}"] = name
    return variables


def _object(value: Any, label: str) -> Mapping[str, Any]:
    """Return ``value`` as a mapping, treating ``None`` as empty."""
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise TypeError(f"{label} is {type(value).__name__}, expected an object")
    return value


def parse_timestamp(value: Any) -> datetime | None:
    """Parse GitHub's ISO-8601 timestamps (``2025-01-01T00:00:00Z``)."""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def map_repository(node: Mapping[str, Any]) -> RepositoryItem:
    """Map a GraphQL repository node to a RepositoryItem.

    Raises KeyError/TypeError/ValueError when required fields are missing
    or have the wrong shape so the client can report the response as
    malformed.
    """
    node = _object(node, "repository node")
    updated_at = parse_timestamp(node.get("updatedAt"))
    if updated_at is None:
        raise ValueError(f"Repository {node.get('name')!r} has no updatedAt")

    topics = [
        _object(entry["topic"], "topic")["name"]
        for entry in _object(node.get("repositoryTopics"), "repositoryTopics").get(
            "nodes"
        )
        or []
        if entry and _object(entry, "topic entry").get("topic")
    ]
    languages = [
        LanguageShare(
            name=_object(edge["node"], "language")["name"],
            color=edge["node"].get("color"),
            size=edge.get("size") or 0,
        )
        for edge in _object(node.get("languages"), "languages").get("edges") or []
        if edge and _object(edge, "language edge").get("node")
    ][:3]
    top = languages[0] if languages else None

    return RepositoryItem(
        id=node["id"],
        name=node["name"],
        url=node["url"],
        description=node.get("description"),
        stars=node.get("stargazerCount") or 0,
        updated_at=updated_at,
        topics=topics[:5],
        languages=languages,
        language=top.name if top else None,
        color=top.color if top else None,
    )


def parse_rate_limit(data: Mapping[str, Any] | None) -> RateLimitInfo | None:
    """Extract the ``rateLimit`` block of a GraphQL response, if present."""
    if not data:
        return None
    block = _object(data.get("rateLimit"), "rateLimit")
    if block.get("remaining") is None:
        return None
    return RateLimitInfo(
        limit=block.get("limit"),
        remaining=int(block["remaining"]),
        reset_at=parse_timestamp(block.get("resetAt")),
    )


def parse_rate_limit_headers(headers: Mapping[str, str]) -> RateLimitInfo | None:
    """Build a rate-limit snapshot from ``x-ratelimit-*`` response headers."""
    remaining = headers.get("x-ratelimit-remaining")
    if remaining is None:
        return None
    try:
        limit_header = headers.get("x-ratelimit-limit")
        reset_header = headers.get("x-ratelimit-reset")
        return RateLimitInfo(
            limit=int(limit_header) if limit_header is not None else None,
            remaining=int(remaining),
            reset_at=(
                datetime.fromtimestamp(int(reset_header), tz=timezone.utc)
                if reset_header is not None
                else None
            ),
        )
    except ValueError:
        return None


__all__ = [
    "alias_for",
    "build_cluster_query",
    "build_variables",
    "map_repository",
    "parse_rate_limit",
    "parse_rate_limit_headers",
    "parse_timestamp",
]
