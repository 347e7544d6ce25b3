"""Agent leg - opening the conversation WebSocket to the hosted agent.

Two ways in:
- signed URL: fetch a short-lived URL with the API key, then connect to it
- direct: connect to the public conversation endpoint with the key attached

Usage:
    from agentrelay.agent import AgentConnector

    leg = await AgentConnector(config.agent, timeout=10.0).connect()
"""

from agentrelay.agent.connector import AgentConnector, AgentLeg
from agentrelay.agent.signed_url import fetch_signed_url

__all__ = [
    "AgentConnector",
    "AgentLeg",
    "fetch_signed_url",
]
