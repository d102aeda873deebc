"""Abstract outbound channel interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class DeliveryError(RuntimeError):
    """The channel rejected the message or the transport failed."""


class OutboundChannel(ABC):
    """Base class for reply channels.

    To add a new channel, subclass this and implement all abstract methods.
    """

    @abstractmethod
    async def send_message(self, recipient: str, text: str) -> Any:
        """Deliver *text* to *recipient*. Raises DeliveryError on failure."""
        ...

    async def close(self) -> None:
        """Release transport resources."""

    @property
    @abstractmethod
    def channel_name(self) -> str:
        """Return channel identifier string."""
        ...
