"""Process-wide bounded HTTP connection pool shared by every API client."""
import asyncio
import logging
from typing import Optional
import aiohttp


logger = logging.getLogger(__name__)

MAX_CONNECTIONS = 22
MAX_CONNECTIONS_PER_HOST = 20
KEEPALIVE_SECONDS = 5

CONNECT_TIMEOUT_SECONDS = 10
READ_TIMEOUT_SECONDS = 60
POOL_WAIT_TIMEOUT_SECONDS = 60


class ConnectionPool:
    """Owns one ``aiohttp.ClientSession`` over a bounded connector.

    The session is created lazily on first use so that it binds to the
    running event loop.
    """

    def __init__(
        self,
        limit: int = MAX_CONNECTIONS,
        limit_per_host: int = MAX_CONNECTIONS_PER_HOST
    ):
        self._limit = limit
        self._limit_per_host = limit_per_host
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock: Optional[asyncio.Lock] = None

    @staticmethod
    def timeout() -> aiohttp.ClientTimeout:
        # ``connect`` covers waiting for a free pooled connection.
        return aiohttp.ClientTimeout(
            total=None,
            connect=POOL_WAIT_TIMEOUT_SECONDS,
            sock_connect=CONNECT_TIMEOUT_SECONDS,
            sock_read=READ_TIMEOUT_SECONDS,
        )

    async def session(self) -> aiohttp.ClientSession:
        """Returns the shared session, creating it on first call."""
        if self._session is not None and not self._session.closed:
            return self._session
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            if self._session is None or self._session.closed:
                connector = aiohttp.TCPConnector(
                    limit=self._limit,
                    limit_per_host=self._limit_per_host,
                    keepalive_timeout=KEEPALIVE_SECONDS,
                )
                self._session = aiohttp.ClientSession(
                    connector=connector,
                    timeout=self.timeout(),
                )
                logger.debug(
                    f"Opened HTTP pool (limit={self._limit}, "
                    f"per host={self._limit_per_host})"
                )
        return self._session

    async def close(self) -> None:
        """Close the session and every pooled connection."""
        if self._session is not None:
            await self._session.close()
            self._session = None
            logger.debug("Closed HTTP pool")
