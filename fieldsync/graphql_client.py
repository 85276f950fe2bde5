"""Jobber GraphQL client — bearer auth, API-version header, error classification.

Every call returns a GraphQLResponse or raises one of the sync error types,
so the pager can decide between retrying, backing off and aborting without
looking at HTTP details.

Usage:
    from fieldsync.graphql_client import GraphQLClient
    client = GraphQLClient(token_manager.get_valid_access_token)
    resp = await client.execute(QUOTES_QUERY, {"first": 50, "after": None})
"""
import json
from dataclasses import dataclass, field

import httpx
from loguru import logger

from .config import settings
from .errors import AuthError, SchemaError, ThrottleError, TransientNetworkError
from .services.throttle import QueryCost

THROTTLED_CODE = "THROTTLED"
TEMPORARY_CODES = {"INTERNAL_SERVER_ERROR", "SERVICE_UNAVAILABLE", "TIMEOUT"}
TEMPORARY_MARKERS = ("timeout", "temporarily", "try again")


@dataclass
class GraphQLResponse:
    data: dict
    cost: QueryCost = field(default_factory=QueryCost)


class GraphQLClient:
    """Thin wrapper around the Jobber GraphQL endpoint."""

    def __init__(self, token_provider, http: httpx.AsyncClient | None = None,
                 api_url: str | None = None, api_version: str | None = None,
                 timeout: float = 30):
        self._token_provider = token_provider
        self._http = http
        self.api_url = api_url or settings.jobber_api_url
        self.api_version = api_version or settings.jobber_api_version
        self.timeout = timeout

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            from .http_client import http

            self._http = http
        return self._http

    def _headers(self, token: str) -> dict:
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "X-JOBBER-GRAPHQL-VERSION": self.api_version,
        }

    async def execute(self, query: str, variables: dict | None = None) -> GraphQLResponse:
        """POST one query. A 401 triggers a single forced token refresh."""
        token = await self._token_provider()
        resp = await self._post(query, variables, token)
        if resp.status_code == 401:
            logger.info("Jobber returned 401 mid-sync, forcing token refresh")
            token = await self._token_provider(force_refresh=True)
            resp = await self._post(query, variables, token)
            if resp.status_code == 401:
                raise AuthError("Jobber rejected a freshly refreshed access token (401)")
        return self._parse(resp)

    async def _post(self, query: str, variables: dict | None, token: str) -> httpx.Response:
        try:
            return await self._client().post(
                self.api_url,
                json={"query": query, "variables": variables or {}},
                headers=self._headers(token),
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"Jobber request timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"Jobber connection error: {e}") from e

    def _parse(self, resp: httpx.Response) -> GraphQLResponse:
        status = resp.status_code
        if status == 403:
            raise AuthError(f"Jobber denied access (403): {resp.text[:200]}")
        if status == 429:
            retry_after = _retry_after_seconds(resp.headers.get("Retry-After"))
            raise ThrottleError("Jobber rate limited the request (429)", retry_after=retry_after)
        if status >= 500:
            raise TransientNetworkError(f"Jobber server error {status}: {resp.text[:200]}")
        if status != 200:
            raise SchemaError(f"Unexpected Jobber HTTP status {status}: {resp.text[:200]}")

        try:
            body = resp.json()
        except (json.JSONDecodeError, ValueError) as e:
            raise SchemaError(f"Invalid JSON from Jobber: {resp.text[:100]}") from e
        if not isinstance(body, dict):
            raise SchemaError("Jobber response body is not an object")

        cost = QueryCost.from_extensions(body.get("extensions"))
        errors = body.get("errors") or []
        if errors:
            _raise_for_graphql_errors(errors, cost)

        data = body.get("data")
        if not isinstance(data, dict):
            raise SchemaError("Jobber response missing data field")
        return GraphQLResponse(data=data, cost=cost)


def _raise_for_graphql_errors(errors: list, cost: QueryCost) -> None:
    messages = []
    codes = set()
    for err in errors:
        if not isinstance(err, dict):
            messages.append(str(err))
            continue
        messages.append(str(err.get("message") or "Unknown"))
        ext = err.get("extensions") or {}
        if isinstance(ext, dict) and ext.get("code"):
            codes.add(str(ext["code"]))
    joined = ", ".join(messages)
    lowered = joined.lower()

    if THROTTLED_CODE in codes or "throttl" in lowered:
        raise ThrottleError(
            f"GraphQL throttled: {joined}",
            throttle=cost.throttle,
            points_needed=cost.requested_query_cost,
        )
    if codes & TEMPORARY_CODES or any(m in lowered for m in TEMPORARY_MARKERS):
        raise TransientNetworkError(f"Temporary GraphQL error: {joined}")
    raise SchemaError(f"GraphQL errors: {joined}")


def _retry_after_seconds(value) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
