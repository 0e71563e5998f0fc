"""Process-wide Redis handles."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from redis.asyncio import Redis

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RedisConnections:
    """Command and subscriber connections.

    A connection in subscribe mode cannot issue other commands, so pub/sub
    listening always gets its own client.
    """

    command: Redis
    subscriber: Redis

    @classmethod
    def from_url(cls, url: str) -> RedisConnections:
        logger.debug("Opening Redis connections to %s", _redact(url))
        return cls(
            command=Redis.from_url(url, decode_responses=True),
            subscriber=Redis.from_url(url, decode_responses=True),
        )

    async def close(self) -> None:
        await self.subscriber.aclose()
        await self.command.aclose()


def _redact(url: str) -> str:
    if "@" not in url:
        return url
    scheme, _, rest = url.partition("://")
    return f"{scheme}://***@{rest.split('@', 1)[1]}"
