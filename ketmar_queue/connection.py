"""Broker connection provider.

One redis-py client per process, built lazily on first use and pinged with a
bounded retry policy. RQ needs raw (binary) responses, so the client is built
without ``decode_responses``.
"""

import logging
import threading
import time
from typing import Any, Callable, Optional
from urllib.parse import urlsplit, urlunsplit

from redis import Redis
from redis.exceptions import RedisError

from .settings import QueueSettings, get_settings

logger = logging.getLogger(__name__)

UPSTASH_HOST_SUFFIX = "upstash.io"
MAX_RETRY_DELAY = 2.0  # seconds


def broker_transport_url(url: str) -> str:
    """Upgrade hosted (Upstash) ``redis://`` URLs to TLS ``rediss://``."""
    parts = urlsplit(url)
    host = parts.hostname or ""
    if parts.scheme == "redis" and host.endswith(UPSTASH_HOST_SUFFIX):
        return urlunsplit(("rediss",) + tuple(parts[1:]))
    return url


def redact_url(url: str) -> str:
    """Hide the password part of a broker URL for logging."""
    parts = urlsplit(url)
    if not parts.password:
        return url
    netloc = parts.netloc.replace(f":{parts.password}@", ":***@")
    return urlunsplit((parts.scheme, netloc) + tuple(parts[2:]))


def retry_delay(attempt: int) -> float:
    """Delay before the next ping attempt: 0.2s per attempt, capped at 2s."""
    return min(attempt * 0.2, MAX_RETRY_DELAY)


class ConnectionProvider:
    """Lazily builds and memoizes the process-wide broker connection."""

    def __init__(
        self,
        settings: Optional[QueueSettings] = None,
        client_factory: Optional[Callable[..., Any]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings or get_settings()
        self.max_retries = self.settings.queue_connect_retries
        self._client_factory = client_factory or Redis.from_url
        self._sleep = sleep
        self._connection: Optional[Redis] = None
        self._gave_up = False
        self._warned_disabled = False
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return bool(self.settings.broker_url)

    @property
    def connected(self) -> bool:
        return self._connection is not None

    def get_connection(self) -> Optional[Redis]:
        """Get the shared connection, or None when disabled or unreachable.

        Blocks for the duration of the retry policy on first use.
        """
        if self._connection is not None:
            return self._connection

        url = self.settings.broker_url
        if not url:
            if not self._warned_disabled:
                logger.info("REDIS_URL not configured - queues disabled, using fallback mode")
                self._warned_disabled = True
            return None

        with self._lock:
            if self._connection is None and not self._gave_up:
                self._connection = self._connect(broker_transport_url(url))
            return self._connection

    def _connect(self, url: str) -> Optional[Redis]:
        """Connect and ping with bounded retries."""
        for attempt in range(1, self.max_retries + 1):
            client = None
            try:
                client = self._client_factory(
                    url,
                    socket_keepalive=True,
                    socket_connect_timeout=5,
                    health_check_interval=30,
                )
                client.ping()
                logger.info(f"✅ Redis connected at {redact_url(url)}")
                return client
            except (RedisError, OSError, ValueError) as e:
                logger.warning(f"Redis connection attempt {attempt}/{self.max_retries} failed: {e}")
                if client is not None:
                    self._discard_client(client)
                if attempt < self.max_retries:
                    self._sleep(retry_delay(attempt))

        logger.error(f"❌ Redis connection failed after {self.max_retries} retries, queues disabled")
        self._gave_up = True
        return None

    @staticmethod
    def _discard_client(client: Redis) -> None:
        try:
            client.close()
        except RedisError as e:
            logger.debug(f"Error closing failed Redis client: {e}")

    def close_connection(self) -> None:
        """Close the shared connection. Safe to call repeatedly."""
        connection, self._connection = self._connection, None
        if connection is None:
            return
        try:
            connection.close()
            logger.info("Redis connection closed")
        except RedisError as e:
            logger.error(f"Error closing Redis connection: {e}")


# Global provider instance
connection_provider = ConnectionProvider()


def get_connection_provider() -> ConnectionProvider:
    """Get global connection provider."""
    return connection_provider
