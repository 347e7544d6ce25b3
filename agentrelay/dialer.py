"""Deployment smoke-test helpers.

Probe a running relay's status endpoint, and place outbound test calls
through Twilio that point at one of the relay's webhook endpoints.

Twilio credentials come from TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN and
TWILIO_PHONE_NUMBER.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Mapping

import aiohttp
from loguru import logger
from twilio.rest import Client as TwilioClient


async def check_status(base_url: str, timeout: float = 10.0) -> dict[str, Any]:
    """GET the relay's status endpoint and return its JSON body.

    Raises:
        aiohttp.ClientError: If the relay is unreachable or answers non-2xx.
    """
    url = f"{base_url.rstrip('/')}/"
    async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
        async with session.get(url) as resp:
            resp.raise_for_status()
            return await resp.json()


@dataclass
class CallStatus:
    sid: str
    status: str
    duration: str | None = None
    direction: str | None = None


class TestDialer:
    """Places outbound calls that exercise a deployed relay.

    Args:
        account_sid: Twilio account SID.
        auth_token: Twilio auth token.
        from_number: Twilio number to call from.
        client: Optional pre-built Twilio REST client.
    """

    # not a pytest test class
    __test__ = False

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        client: Any | None = None,
    ) -> None:
        self.from_number = from_number
        self._client = client or TwilioClient(account_sid, auth_token)

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> TestDialer:
        env = os.environ if env is None else env
        missing = [
            key for key in ("TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN", "TWILIO_PHONE_NUMBER")
            if not env.get(key)
        ]
        if missing:
            raise ValueError(f"Missing Twilio settings: {', '.join(missing)}")
        return cls(env["TWILIO_ACCOUNT_SID"], env["TWILIO_AUTH_TOKEN"], env["TWILIO_PHONE_NUMBER"])

    def place_call(self, to: str, webhook_url: str) -> str:
        """Call ``to``; Twilio fetches call instructions from ``webhook_url``.

        Returns:
            The Twilio Call SID.
        """
        call = self._client.calls.create(to=to, from_=self.from_number, url=webhook_url)
        logger.info(f"Test call initiated: {call.sid} ({call.status}) -> {to} via {webhook_url}")
        return call.sid

    def call_status(self, call_sid: str) -> CallStatus:
        call = self._client.calls(call_sid).fetch()
        return CallStatus(
            sid=call.sid,
            status=call.status,
            duration=call.duration,
            direction=call.direction,
        )
