"""Signed-URL fetcher for the ElevenLabs agent.

Exchanges the static agent id and API key for a short-lived, pre-signed
WebSocket URL. Signed URLs are single-use, so every session fetches its
own and nothing is cached.
"""

from __future__ import annotations

import json

import aiohttp
from loguru import logger

from agentrelay.config import DEFAULT_SIGNED_URL_ENDPOINT
from agentrelay.errors import MalformedResponse, UpstreamAuthFailure, UpstreamUnavailable


async def fetch_signed_url(
    agent_id: str,
    api_key: str,
    *,
    endpoint: str = DEFAULT_SIGNED_URL_ENDPOINT,
    http: aiohttp.ClientSession | None = None,
    timeout: float = 10.0,
) -> str:
    """Fetch a signed conversation URL for ``agent_id``.

    Performs exactly one GET; retrying is the caller's decision.

    Args:
        agent_id: The agent to converse with.
        api_key: Provider API key, sent in the ``xi-api-key`` header.
        endpoint: URL-issuance endpoint.
        http: Optional shared client session. A throwaway one is used otherwise.
        timeout: Total request timeout in seconds.

    Returns:
        The signed ``wss://`` URL.

    Raises:
        UpstreamAuthFailure: The provider answered 401 or 403.
        UpstreamUnavailable: Any other non-success status, or the request failed.
        MalformedResponse: The body was not JSON or had no ``signed_url``.
        asyncio.TimeoutError: No answer within ``timeout``; the connector
            reports this as a connect timeout.
    """
    if http is None:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
            return await _fetch(session, agent_id, api_key, endpoint)
    return await _fetch(http, agent_id, api_key, endpoint)


async def _fetch(session: aiohttp.ClientSession, agent_id: str, api_key: str, endpoint: str) -> str:
    headers = {"xi-api-key": api_key, "accept": "application/json"}
    try:
        async with session.get(endpoint, params={"agent_id": agent_id}, headers=headers) as resp:
            if resp.status in (401, 403):
                raise UpstreamAuthFailure(
                    f"Signed URL request rejected ({resp.status} {resp.reason})"
                )
            if resp.status >= 400:
                raise UpstreamUnavailable(
                    f"Failed to get signed URL: {resp.status} {resp.reason}",
                    status=resp.status,
                )
            body = await resp.text()
    except aiohttp.ClientError as e:
        raise UpstreamUnavailable(f"Signed URL request failed: {e}") from e

    try:
        data = json.loads(body)
    except json.JSONDecodeError as e:
        raise MalformedResponse(f"Signed URL response is not JSON: {e}") from e

    signed_url = data.get("signed_url") if isinstance(data, dict) else None
    if not signed_url:
        raise MalformedResponse("Signed URL response has no 'signed_url'")

    logger.debug(f"Got signed URL for agent {agent_id}")
    return signed_url
