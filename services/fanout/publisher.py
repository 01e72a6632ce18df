"""
services/fanout/publisher.py
Live event fan-out to requester and provider channels over Redis pub/sub.

Delivery is at-least-once to whoever is subscribed at publish time and
nothing is stored: a client that reconnects re-fetches the request.
Publication failures are logged and never fail the calling operation.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Optional

import redis.asyncio as aioredis
from fastapi.encoders import jsonable_encoder
from redis.exceptions import RedisError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config.redis_client import get_optional_redis
from config.settings import settings

logger = logging.getLogger(__name__)


class FanoutEvent(str, Enum):
    NEW_REQUEST = "new_request"
    REQUEST_ACCEPTED = "request_accepted"
    REQUEST_STATUS_UPDATED = "request_status_updated"
    RECEIVE_MESSAGE = "receive_message"
    PROVIDER_LOCATION = "workshop_location_update"


# ── Channel keys ──────────────────────────────────────────────

def request_channel(request_id: Any) -> str:
    return f"request:{request_id}"


def requester_channel(requester_id: Any) -> str:
    return f"requester:{requester_id}"


def provider_channel(provider_id: Any) -> str:
    return f"provider:{provider_id}"


def encode_envelope(event: str, payload: dict) -> str:
    return json.dumps(jsonable_encoder({"event": event, "data": payload}))


# ── Publishers ────────────────────────────────────────────────

class Fanout(ABC):
    """Publishes one event to one channel. Returns the receiver count."""

    @abstractmethod
    async def publish(self, channel: str, event: str, payload: dict) -> int:
        ...


class RedisFanout(Fanout):
    """Redis PUBLISH, shared by every server process on the same Redis."""

    def __init__(
        self,
        client: aioredis.Redis,
        attempts: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.client = client
        self.attempts = attempts or settings.FANOUT_PUBLISH_ATTEMPTS
        self.timeout_seconds = timeout_seconds or settings.FANOUT_PUBLISH_TIMEOUT_SECONDS

    async def publish(self, channel: str, event: str, payload: dict) -> int:
        message = encode_envelope(event, payload)
        receivers = 0
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=0.1, max=1),
            retry=retry_if_exception_type((RedisError, asyncio.TimeoutError)),
            reraise=True,
        ):
            with attempt:
                receivers = await asyncio.wait_for(
                    self.client.publish(channel, message), self.timeout_seconds
                )
        if receivers == 0:
            logger.debug("No subscribers on %s for %s", channel, event)
        return receivers


class NullFanout(Fanout):
    """Used when Redis is not connected. Drops every event."""

    async def publish(self, channel: str, event: str, payload: dict) -> int:
        logger.debug("Fan-out disabled, dropping %s on %s", event, channel)
        return 0


async def fan_out(fanout: Fanout, channel: str, event: str, payload: dict) -> None:
    """Publish, logging instead of raising on failure."""
    try:
        await fanout.publish(channel, event, payload)
    except Exception as exc:
        logger.warning(
            "Fan-out of %s to %s failed: %s", event, channel, exc, exc_info=True
        )


# ── Dependency ────────────────────────────────────────────────

def get_fanout() -> Fanout:
    """FastAPI dependency. Tests override it with a recording fan-out."""
    client = get_optional_redis()
    if client is None:
        return NullFanout()
    return RedisFanout(client)
