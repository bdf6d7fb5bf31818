"""
Live push connection registry.
Tracks connected clients and fans notification payloads out to every
subscription whose audience matches. One registry per server process.
"""

import asyncio
import itertools
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from fastapi import WebSocket

logger = logging.getLogger(__name__)


# ==================== AUDIENCE ====================

@dataclass(frozen=True)
class AllAudience:
    """Everyone"""


@dataclass(frozen=True)
class RoleAudience:
    role: str


@dataclass(frozen=True)
class UserAudience:
    user_id: int


Audience = Union[AllAudience, RoleAudience, UserAudience]


@dataclass(frozen=True)
class Identity:
    """Who a live connection belongs to"""
    user_id: int
    role: str
    name: str = ""


def audience_includes(audience: Audience, identity: Identity) -> bool:
    """Whether a notification addressed to `audience` is visible to `identity`"""
    if isinstance(audience, AllAudience):
        return True
    if isinstance(audience, RoleAudience):
        return audience.role == identity.role
    if isinstance(audience, UserAudience):
        return audience.user_id == identity.user_id
    raise TypeError(f"Unknown audience: {audience!r}")


# ==================== CONNECTIONS ====================

class PushConnection(ABC):
    """Transport side of a live subscription"""

    @abstractmethod
    async def send(self, event: str, data: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


class QueueConnection(PushConnection):
    """Buffers events for a Server-Sent Events stream to drain"""

    CLOSED = object()

    def __init__(self, maxsize: int = 100):
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    async def send(self, event: str, data: Dict[str, Any]) -> None:
        # Raises asyncio.QueueFull for a client that stopped reading
        self.queue.put_nowait((event, data))

    async def close(self) -> None:
        try:
            self.queue.put_nowait(self.CLOSED)
        except asyncio.QueueFull:
            pass


class WebSocketConnection(PushConnection):
    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    async def send(self, event: str, data: Dict[str, Any]) -> None:
        await self.websocket.send_text(json.dumps({"type": event, **data}, default=str))

    async def close(self) -> None:
        await self.websocket.close()


class SubscriptionState(str, Enum):
    SUBSCRIBED = "subscribed"
    CLOSED = "closed"
    REJECTED = "rejected"


@dataclass
class Subscription:
    handle: int
    identity: Identity
    connection: PushConnection
    expires_at: Optional[datetime] = None
    state: SubscriptionState = SubscriptionState.SUBSCRIBED
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def credential_valid(self, now: datetime) -> bool:
        return self.expires_at is None or now < self.expires_at


# ==================== REGISTRY ====================

class ConnectionRegistry(ABC):
    """
    Swappable fan-out interface. The in-memory implementation serves a single
    process; a multi-instance deployment would put a shared pub/sub behind
    the same three calls.
    """

    @abstractmethod
    async def register(
        self,
        identity: Identity,
        connection: PushConnection,
        expires_at: Optional[datetime] = None,
    ) -> int:
        ...

    @abstractmethod
    async def unregister(self, handle: int) -> None:
        ...

    @abstractmethod
    async def publish(self, audience: Audience, event: str, payload: Dict[str, Any]) -> int:
        """Push to every matching subscription; returns how many received it"""


class InMemoryConnectionRegistry(ConnectionRegistry):
    def __init__(self, send_timeout: float = 5.0):
        # A client that cannot take a push within this many seconds is dropped
        self.send_timeout = send_timeout
        # handle -> Subscription
        self.subscriptions: Dict[int, Subscription] = {}
        self._handles = itertools.count(1)
        self._lock = asyncio.Lock()

    async def register(
        self,
        identity: Identity,
        connection: PushConnection,
        expires_at: Optional[datetime] = None,
    ) -> int:
        async with self._lock:
            handle = next(self._handles)
            self.subscriptions[handle] = Subscription(
                handle=handle,
                identity=identity,
                connection=connection,
                expires_at=expires_at,
            )
        logger.info(f"User {identity.user_id} ({identity.role}) subscribed, handle {handle}")
        return handle

    async def unregister(self, handle: int) -> None:
        async with self._lock:
            subscription = self.subscriptions.pop(handle, None)
        if subscription and subscription.state == SubscriptionState.SUBSCRIBED:
            subscription.state = SubscriptionState.CLOSED
            logger.info(f"Handle {handle} closed")

    async def publish(self, audience: Audience, event: str, payload: Dict[str, Any]) -> int:
        now = datetime.now(timezone.utc)
        async with self._lock:
            targets = [
                s for s in self.subscriptions.values()
                if audience_includes(audience, s.identity)
            ]

        dropped: List[Subscription] = []
        live: List[Subscription] = []
        for subscription in targets:
            if subscription.credential_valid(now):
                live.append(subscription)
            else:
                subscription.state = SubscriptionState.REJECTED
                dropped.append(subscription)

        # Sends run concurrently, each bounded by send_timeout
        outcomes = await asyncio.gather(*(self._send(s, event, payload) for s in live))
        dropped.extend(s for s, ok in zip(live, outcomes) if not ok)

        for subscription in dropped:
            await self._drop(subscription)
        return sum(1 for ok in outcomes if ok)

    async def _send(self, subscription: Subscription, event: str, payload: Dict[str, Any]) -> bool:
        try:
            await asyncio.wait_for(subscription.connection.send(event, payload), timeout=self.send_timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning(f"Push to handle {subscription.handle} timed out after {self.send_timeout}s")
        except Exception as e:
            logger.warning(f"Push to handle {subscription.handle} failed: {e}")
        return False

    async def _drop(self, subscription: Subscription) -> None:
        async with self._lock:
            self.subscriptions.pop(subscription.handle, None)
        if subscription.state == SubscriptionState.SUBSCRIBED:
            subscription.state = SubscriptionState.CLOSED
        try:
            await subscription.connection.close()
        except Exception as e:
            logger.debug(f"Closing handle {subscription.handle} failed: {e}")
        logger.info(f"Handle {subscription.handle} dropped ({subscription.state.value})")

    def online_count(self, audience: Optional[Audience] = None) -> int:
        if audience is None:
            return len(self.subscriptions)
        return sum(1 for s in self.subscriptions.values() if audience_includes(audience, s.identity))
