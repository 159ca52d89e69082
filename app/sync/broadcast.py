# app/sync/broadcast.py
"""
Best-effort broadcast bus for instant state propagation between peers.

Peers that share a bus (tabs of one process, or clients of one deployment
via Redis) see each other's accepted writes without waiting for the next
poll. Delivery is not guaranteed and not ordered; receivers rely on the
version carried in each message.

Implementations are picked when the sync client is built:
- NullBroadcaster: nothing is sent or received (poll-only).
- LocalBroadcaster: in-process peers attached to the same BroadcastHub.
- RedisBroadcaster: peers subscribed to the same Redis pub/sub channel.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections import defaultdict
from typing import Any, Callable, Dict, Mapping, Optional, Set, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from app.config import settings
from app.constants import BROADCAST_STATE_UPDATE
from app.sync.state import SharedState, StateValidationError, validate_partial

logger = logging.getLogger(__name__)

MessageHandler = Callable[[SharedState, int], None]


def encode_message(state: Mapping[str, Any], version: int) -> Dict[str, Any]:
    return {"type": BROADCAST_STATE_UPDATE, "state": dict(state), "version": version}


def decode_message(payload: Any) -> Optional[Tuple[SharedState, int]]:
    """Return (state, version) for a well-formed state-update message, else None."""
    if not isinstance(payload, dict) or payload.get("type") != BROADCAST_STATE_UPDATE:
        return None
    version = payload.get("version")
    if isinstance(version, bool) or not isinstance(version, int):
        return None
    try:
        state = validate_partial(payload.get("state"))
    except StateValidationError:
        return None
    return state, version


def channel_name(session_id: str, prefix: Optional[str] = None) -> str:
    return f"{prefix if prefix is not None else settings.SYNC_BROADCAST_PREFIX}{session_id}"


class Broadcaster:
    """Capability interface for the broadcast bus."""

    async def open(self, session_id: str, on_message: MessageHandler) -> None:
        raise NotImplementedError

    async def publish(self, state: Mapping[str, Any], version: int) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError

    async def aclose(self) -> None:
        """Close the bus and release any underlying transport."""
        await self.close()


class NullBroadcaster(Broadcaster):
    """Bus used when no peer transport is available."""

    async def open(self, session_id: str, on_message: MessageHandler) -> None:
        return None

    async def publish(self, state: Mapping[str, Any], version: int) -> None:
        return None

    async def close(self) -> None:
        return None


class BroadcastHub:
    """Process-wide registry of local channels."""

    def __init__(self):
        self._channels: Dict[str, Set["LocalBroadcaster"]] = defaultdict(set)

    def subscribe(self, channel: str, endpoint: "LocalBroadcaster") -> None:
        self._channels[channel].add(endpoint)

    def unsubscribe(self, channel: str, endpoint: "LocalBroadcaster") -> None:
        peers = self._channels.get(channel)
        if peers is None:
            return
        peers.discard(endpoint)
        if not peers:
            del self._channels[channel]

    def peers(self, channel: str) -> int:
        return len(self._channels.get(channel, ()))

    def post(self, channel: str, sender: "LocalBroadcaster", message: str) -> None:
        # Never delivered back to the sender
        for peer in list(self._channels.get(channel, ())):
            if peer is not sender:
                peer._enqueue(message)


_default_hub = BroadcastHub()


def get_default_hub() -> BroadcastHub:
    return _default_hub


class LocalBroadcaster(Broadcaster):
    """In-process bus; messages are serialized so peers never share objects."""

    def __init__(self, hub: Optional[BroadcastHub] = None, prefix: Optional[str] = None):
        self._hub = hub or get_default_hub()
        self._prefix = prefix
        self._channel: Optional[str] = None
        self._on_message: Optional[MessageHandler] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    async def open(self, session_id: str, on_message: MessageHandler) -> None:
        await self.close()
        self._loop = asyncio.get_running_loop()
        self._channel = channel_name(session_id, self._prefix)
        self._on_message = on_message
        self._hub.subscribe(self._channel, self)

    async def publish(self, state: Mapping[str, Any], version: int) -> None:
        if self._channel is None:
            return
        try:
            message = json.dumps(encode_message(state, version))
        except (TypeError, ValueError) as e:
            logger.warning(f"Broadcast message not serializable: {e}")
            return
        self._hub.post(self._channel, self, message)

    async def close(self) -> None:
        if self._channel is not None:
            self._hub.unsubscribe(self._channel, self)
        self._channel = None
        self._on_message = None

    def _enqueue(self, message: str) -> None:
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon(self._deliver, self._channel, message)

    def _deliver(self, channel: Optional[str], message: str) -> None:
        # Drop messages that arrive after close() or a channel switch
        if self._on_message is None or channel != self._channel:
            return
        decoded = decode_message(json.loads(message))
        if decoded is not None:
            self._on_message(*decoded)


class RedisBroadcaster(Broadcaster):
    """Bus over Redis pub/sub; degrades to a no-op when Redis is unreachable."""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        prefix: Optional[str] = None,
        client: Optional[aioredis.Redis] = None,
        timeout: Optional[float] = None,
    ):
        self._redis_url = redis_url or settings.REDIS_URL
        self._timeout = timeout if timeout is not None else settings.SYNC_BROADCAST_TIMEOUT_SECONDS
        self._prefix = prefix
        self._client = client
        self._owns_client = client is None
        self._origin = uuid.uuid4().hex
        self._channel: Optional[str] = None
        self._pubsub = None
        self._listener: Optional[asyncio.Task] = None
        self._on_message: Optional[MessageHandler] = None

    @property
    def origin(self) -> str:
        return self._origin

    async def open(self, session_id: str, on_message: MessageHandler) -> None:
        await self.close()
        if self._client is None:
            self._client = aioredis.from_url(
                self._redis_url, decode_responses=True, socket_connect_timeout=self._timeout
            )
        channel = channel_name(session_id, self._prefix)
        pubsub = self._client.pubsub(ignore_subscribe_messages=True)
        try:
            # A server that accepts connections but never answers must not stall join()
            await asyncio.wait_for(pubsub.subscribe(channel), timeout=self._timeout)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            logger.warning(f"Broadcast bus unavailable for {channel}: {e}")
            await pubsub.aclose()
            return
        self._pubsub = pubsub
        self._channel = channel
        self._on_message = on_message
        self._listener = asyncio.create_task(self._listen(), name=f"broadcast:{channel}")

    async def publish(self, state: Mapping[str, Any], version: int) -> None:
        if self._channel is None or self._client is None:
            return
        message = encode_message(state, version)
        message["origin"] = self._origin
        try:
            await asyncio.wait_for(self._client.publish(self._channel, json.dumps(message)), timeout=self._timeout)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            logger.warning(f"Broadcast publish failed on {self._channel}: {e}")

    async def close(self) -> None:
        listener, self._listener = self._listener, None
        if listener is not None:
            listener.cancel()
            try:
                await listener
            except asyncio.CancelledError:
                pass
        pubsub, self._pubsub = self._pubsub, None
        if pubsub is not None:
            try:
                await pubsub.unsubscribe()
            except (RedisError, OSError) as e:
                logger.debug(f"Broadcast unsubscribe failed: {e}")
            await pubsub.aclose()
        self._channel = None
        self._on_message = None

    async def aclose(self) -> None:
        """Close the bus and the Redis connection if this instance created it."""
        await self.close()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _listen(self) -> None:
        try:
            async for message in self._pubsub.listen():
                self._handle(message.get("data"))
        except (RedisError, OSError) as e:
            logger.warning(f"Broadcast listener stopped on {self._channel}: {e}")

    def _handle(self, raw: Any) -> None:
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError):
            return
        if not isinstance(payload, dict) or payload.get("origin") == self._origin:
            return
        decoded = decode_message(payload)
        if decoded is not None and self._on_message is not None:
            self._on_message(*decoded)
