"""Realtime broadcast side channel."""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from .concurrency import TaskDispatcher

logger = logging.getLogger(__name__)


def family_channel(family_id: str) -> str:
    return f"private-family-{family_id}"


class EventBroadcaster(ABC):
    """Fire-and-forget notifier; delivery failures never reach the caller."""

    def __init__(self, dispatcher: TaskDispatcher):
        self.dispatcher = dispatcher
        self.logger = logger.getChild(type(self).__name__)

    def broadcast(self, channel: str, event: str, data: Dict[str, Any]) -> None:
        self.dispatcher.dispatch(self._deliver_safely(channel, event, data), name=f"broadcast:{event}")

    def broadcast_to_family(self, family_id: str, event: str, data: Dict[str, Any]) -> None:
        self.broadcast(family_channel(family_id), event, data)

    async def _deliver_safely(self, channel: str, event: str, data: Dict[str, Any]) -> None:
        try:
            await self.deliver(channel, event, data)
        except Exception as e:
            self.logger.warning(f"Broadcast of '{event}' to {channel} failed: {e}")

    @abstractmethod
    async def deliver(self, channel: str, event: str, data: Dict[str, Any]) -> None:
        """Publish one event; may raise, failures are logged by the caller."""
        pass

    async def close(self) -> None:
        pass


class NullBroadcaster(EventBroadcaster):
    """Used when no realtime endpoint is configured."""

    async def deliver(self, channel: str, event: str, data: Dict[str, Any]) -> None:
        self.logger.debug(f"Broadcast disabled, dropping '{event}' for {channel}")


class HttpBroadcaster(EventBroadcaster):
    """Posts ``{channel, event, data}`` JSON to a realtime publish endpoint."""

    def __init__(
        self,
        dispatcher: TaskDispatcher,
        url: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(dispatcher)
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def deliver(self, channel: str, event: str, data: Dict[str, Any]) -> None:
        response = await self._client.post(self.url, json={'channel': channel, 'event': event, 'data': data})
        response.raise_for_status()

    async def close(self) -> None:
        await self._client.aclose()
