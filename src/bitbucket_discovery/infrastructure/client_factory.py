"""Process-wide client services and API client construction."""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional
from bitbucket_discovery.domain.bitbucket_interface import IBitbucketClient
from bitbucket_discovery.domain.discovery_interfaces import IAuthenticator
from bitbucket_discovery.domain.exceptions import InvalidConfigurationError
from bitbucket_discovery.domain.models import CLOUD_SERVER_URL, WebhookKind
from bitbucket_discovery.infrastructure.cloud_client import BitbucketCloudApiClient
from bitbucket_discovery.infrastructure.connection_pool import ConnectionPool
from bitbucket_discovery.infrastructure.server_client import BitbucketServerApiClient
from bitbucket_discovery.infrastructure.ttl_cache import CacheStats, TTLCache


logger = logging.getLogger(__name__)

DEFAULT_TEAM_CACHE_MINUTES = 360
DEFAULT_REPOSITORIES_CACHE_MINUTES = 180


class ClientServices:
    """State shared by every client of a process: the HTTP pool and the caches.

    Created once at start-up and passed to the factory; tests build their own
    instance so cache state never leaks between them.
    """

    def __init__(
        self,
        pool: Optional[ConnectionPool] = None,
        enable_cache: bool = True,
        team_cache_minutes: int = DEFAULT_TEAM_CACHE_MINUTES,
        repositories_cache_minutes: int = DEFAULT_REPOSITORIES_CACHE_MINUTES,
        clock: Optional[Callable[[], float]] = None
    ):
        self.pool = pool or ConnectionPool()
        self.enable_cache = enable_cache
        clock_kwargs = {"clock": clock} if clock is not None else {}
        self.team_cache: TTLCache = TTLCache(team_cache_minutes * 60, "team", **clock_kwargs)
        self.avatar_cache: TTLCache = TTLCache(team_cache_minutes * 60, "avatar", **clock_kwargs)
        self.repositories_cache: TTLCache = TTLCache(
            repositories_cache_minutes * 60, "repositories", **clock_kwargs
        )

    def configure(
        self,
        enable_cache: bool,
        team_cache_minutes: int,
        repositories_cache_minutes: int
    ) -> None:
        """Apply new cache settings; every cached entry is discarded."""
        if team_cache_minutes < 0 or repositories_cache_minutes < 0:
            raise InvalidConfigurationError("Cache durations must not be negative")
        self.enable_cache = enable_cache
        self.team_cache.set_ttl(team_cache_minutes * 60)
        self.avatar_cache.set_ttl(team_cache_minutes * 60)
        self.repositories_cache.set_ttl(repositories_cache_minutes * 60)
        logger.info(
            f"Cache settings changed (enabled={enable_cache}, team={team_cache_minutes}m, "
            f"repositories={repositories_cache_minutes}m); cleared all caches"
        )

    def evict_all(self) -> None:
        self.team_cache.evict_all()
        self.avatar_cache.evict_all()
        self.repositories_cache.evict_all()

    def stats(self) -> Dict[str, CacheStats]:
        return {
            "team": self.team_cache.stats(),
            "avatar": self.avatar_cache.stats(),
            "repositories": self.repositories_cache.stats(),
        }

    async def close(self) -> None:
        await self.pool.close()


def is_cloud(server_url: Optional[str]) -> bool:
    return not server_url or server_url.rstrip("/") == CLOUD_SERVER_URL


class BitbucketApiFactory:
    """Builds the right client for a server URL."""

    def __init__(
        self,
        services: ClientServices,
        webhook_implementation: WebhookKind = WebhookKind.PLUGIN_SERVER,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self._services = services
        self._webhook_implementation = webhook_implementation
        self._sleep = sleep

    @property
    def services(self) -> ClientServices:
        return self._services

    def new_client(
        self,
        server_url: Optional[str],
        owner: str,
        repository_name: str,
        authenticator: Optional[IAuthenticator] = None
    ) -> IBitbucketClient:
        """Create a client scoped to ``owner/repository_name``.

        Args:
            server_url: ``https://bitbucket.org`` (or None) for Cloud, else a Server base URL
            owner: Workspace or project key
            repository_name: Repository slug
            authenticator: Request signer, None for anonymous access

        Returns:
            A Cloud or Server client sharing this factory's services
        """
        if not owner or not repository_name:
            raise InvalidConfigurationError("Both owner and repository are required")
        if is_cloud(server_url):
            return BitbucketCloudApiClient(
                owner, repository_name, authenticator, self._services, sleep=self._sleep
            )
        return BitbucketServerApiClient(
            server_url,
            owner,
            repository_name,
            authenticator,
            self._services,
            webhook_implementation=self._webhook_implementation,
            sleep=self._sleep,
        )
