from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence

import httpx

from shipyard.core.config import Settings, get_settings
from shipyard.core.metrics import observe_upstream_request, record_rate_limit_remaining
from shipyard.models.repository import RateLimitInfo, RepositoryItem
from shipyard.services.errors import (
    UpstreamAuthError,
    UpstreamMalformedResponse,
    UpstreamRateLimited,
    UpstreamUnavailable,
)
from shipyard.services.github_mapping import (
    alias_for,
    build_cluster_query,
    build_variables,
    map_repository,
    parse_rate_limit,
    parse_rate_limit_headers,
)

logger = logging.getLogger(__name__)

_ENDPOINT = "cluster_query"
_BODY_EXCERPT_CHARS = 500


@dataclass(frozen=True)
class FetchResult:
    """Repositories that still exist upstream, in member order."""

    items: list[RepositoryItem] = field(default_factory=list)
    rate_limit: RateLimitInfo | None = None


class RepositoryFetcher(Protocol):
    """Anything that can resolve a cluster's member names to repositories."""

    async def fetch_repositories(self, member_names: Sequence[str]) -> FetchResult: ...


class GitHubClient:
    """Async GitHub GraphQL client fetching one cluster per request."""

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._settings.github_timeout_seconds,
                headers={"User-Agent": self._settings.github_user_agent},
            )
        return self._client

    async def fetch_repositories(self, member_names: Sequence[str]) -> FetchResult:
        """Fetch current metadata for every member of a cluster.

        An empty member list short-circuits without touching the network.
        Repositories GitHub cannot resolve are dropped rather than reported.
        """
        if not member_names:
            return FetchResult(items=[])

        token = self._settings.github_token
        if not token:
            raise UpstreamAuthError("GITHUB_TOKEN environment variable is not set")

        members = list(member_names)
        payload = {
            "query": build_cluster_query(len(members)),
            "variables": build_variables(self._settings.github_owner, members),
        }

        start = time.perf_counter()
        try:
            response = await self._get_client().post(
                self._settings.github_api_url,
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.TimeoutException as exc:
            observe_upstream_request(_ENDPOINT, "timeout", time.perf_counter() - start)
            raise UpstreamUnavailable("Timed out waiting for the GitHub API.") from exc
        except httpx.HTTPError as exc:
            observe_upstream_request(_ENDPOINT, "error", time.perf_counter() - start)
            raise UpstreamUnavailable(f"Failed to reach the GitHub API: {exc}") from exc

        duration = time.perf_counter() - start
        header_rate_limit = parse_rate_limit_headers(response.headers)
        try:
            self._raise_for_status(response, header_rate_limit)
            result = self._parse_body(response, members, header_rate_limit)
        except UpstreamRateLimited:
            observe_upstream_request(_ENDPOINT, "rate_limited", duration)
            raise
        except (UpstreamAuthError, UpstreamUnavailable, UpstreamMalformedResponse) as exc:
            observe_upstream_request(_ENDPOINT, exc.kind, duration)
            raise

        if result.rate_limit is not None:
            record_rate_limit_remaining(result.rate_limit.remaining)
        observe_upstream_request(_ENDPOINT, "success", duration)
        logger.info(
            "Fetched %d/%d repositories in %.0fms (rate limit: %s/%s)",
            len(result.items),
            len(members),
            duration * 1000,
            result.rate_limit.remaining if result.rate_limit else "?",
            result.rate_limit.limit if result.rate_limit else "?",
        )
        return result

    @staticmethod
    def _raise_for_status(
        response: httpx.Response, rate_limit: RateLimitInfo | None
    ) -> None:
        status = response.status_code
        if status < 400:
            return

        reset_at = rate_limit.reset_at if rate_limit else None
        if status == 429 or (
            status == 403
            and (
                (rate_limit is not None and rate_limit.remaining == 0)
                or "rate limit" in response.text.lower()
            )
        ):
            raise UpstreamRateLimited(
                f"GitHub API rate limit exceeded ({status}).", reset_at=reset_at
            )
        if status in (401, 403):
            raise UpstreamAuthError(f"GitHub API rejected the credentials ({status}).")
        if status >= 500:
            raise UpstreamUnavailable(f"GitHub API returned {status}.")

        logger.error(
            "Unexpected GitHub status %s: %s",
            status,
            response.text[:_BODY_EXCERPT_CHARS],
        )
        raise UpstreamMalformedResponse(f"GitHub API returned {status}.")

    @staticmethod
    def _parse_body(
        response: httpx.Response,
        members: list[str],
        header_rate_limit: RateLimitInfo | None,
    ) -> FetchResult:
        try:
            body: Any = response.json()
        except ValueError as exc:
            logger.error(
                "GitHub returned a non-JSON body: %s",
                response.text[:_BODY_EXCERPT_CHARS],
            )
            raise UpstreamMalformedResponse("GitHub API returned invalid JSON.") from exc

        if not isinstance(body, dict):
            raise UpstreamMalformedResponse("GitHub API returned an unexpected body.")

        errors = [e for e in body.get("errors") or [] if isinstance(e, dict)]
        blocking = [e for e in errors if e.get("type") != "NOT_FOUND"]
        if any(e.get("type") == "RATE_LIMITED" for e in blocking):
            raise UpstreamRateLimited(
                "GitHub GraphQL rate limit exceeded.",
                reset_at=header_rate_limit.reset_at if header_rate_limit else None,
            )

        data = body.get("data")
        if blocking or not isinstance(data, dict):
            message = (
                blocking[0].get("message") or "Unknown GraphQL error"
                if blocking
                else "response has no data"
            )
            logger.error(
                "Malformed GitHub response for %s: %s",
                members,
                response.text[:_BODY_EXCERPT_CHARS],
            )
            raise UpstreamMalformedResponse(f"GraphQL error: {message}")

        items: list[RepositoryItem] = []
        for index, name in enumerate(members):
            node = data.get(alias_for(index))
            if node is None:
                logger.debug("Repository %s no longer exists upstream, skipping", name)
                continue
            try:
                items.append(map_repository(node))
            except (AttributeError, KeyError, TypeError, ValueError) as exc:
                logger.error("Could not map repository %s: %r", name, node)
                raise UpstreamMalformedResponse(
                    f"Repository {name!r} has an unexpected shape."
                ) from exc

        try:
            rate_limit = parse_rate_limit(data)
        except (AttributeError, TypeError, ValueError) as exc:
            logger.error("Could not read rate limit block: %r", data.get("rateLimit"))
            raise UpstreamMalformedResponse(
                "GitHub API returned an unexpected rateLimit block."
            ) from exc

        return FetchResult(items=items, rate_limit=rate_limit or header_rate_limit)


__all__ = ["FetchResult", "GitHubClient", "RepositoryFetcher"]
