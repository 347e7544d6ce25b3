"""TwiML documents served to Twilio by the webhook endpoints."""

from __future__ import annotations

from xml.sax.saxutils import escape, quoteattr


def stream_url(host: str, path: str, public_url: str = "") -> str:
    """The wss:// URL Twilio should open for the Media Stream.

    ``public_url`` (e.g. ``wss://relay.example.com``) wins over the
    request host when set.
    """
    if public_url:
        return f"{public_url.rstrip('/')}{path}"
    return f"wss://{host}{path}"


def connect_stream(url: str) -> str:
    """TwiML that connects the call to a bidirectional Media Stream."""
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Connect>
        <Stream url={quoteattr(url)} />
    </Connect>
</Response>"""


def say_and_hangup(message: str, language: str = "en-US") -> str:
    """Static diagnostic TwiML: speak ``message`` and hang up."""
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Say language={quoteattr(language)}>{escape(message)}</Say>
    <Hangup/>
</Response>"""
