"""Base transport interface for agentrelay.

Transports handle the raw I/O connection lifecycle of one leg. They are
responsible for connecting, sending, receiving, pinging and disconnecting,
and they translate library-specific close/error signals into
:class:`~agentrelay.errors.PeerClosed` and
:class:`~agentrelay.errors.TransportError`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


class BaseTransport(ABC):
    """Abstract base class for transport connections.

    ``disconnect`` must be safe to call any number of times; only the first
    call closes the underlying socket.
    """

    @abstractmethod
    async def connect(self, **kwargs) -> None:
        """Establish the transport connection.

        Args:
            **kwargs: Transport-specific connection parameters.
        """
        ...

    @abstractmethod
    async def send(self, data: bytes | str) -> None:
        """Send data over the transport.

        Raises:
            PeerClosed: If the peer already closed the connection.
            TransportError: On any other socket failure.
        """
        ...

    @abstractmethod
    async def recv(self) -> bytes | str:
        """Receive the next message from the transport.

        Raises:
            PeerClosed: If the connection was closed normally.
            TransportError: If the connection failed.
        """
        ...

    @abstractmethod
    async def ping(self) -> None:
        """Send a transport-level ping frame. Does not wait for the pong."""
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the transport connection gracefully."""
        ...

    @abstractmethod
    def is_connected(self) -> bool:
        """Check if the transport is currently connected."""
        ...
