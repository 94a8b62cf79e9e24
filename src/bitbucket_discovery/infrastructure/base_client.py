"""Request execution shared by the Bitbucket Cloud and Server API clients.

Handles signing, rate-limit retry, status to exception mapping, JSON parsing
and the process-wide team/avatar/repository caches.
"""
import asyncio
import json
import logging
from abc import abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Iterator,
    List,
    Optional,
    Union,
)
import aiohttp
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_never,
    wait_fixed,
)
from yarl import URL
from bitbucket_discovery.domain.bitbucket_interface import IBitbucketClient
from bitbucket_discovery.domain.discovery_interfaces import IAuthenticator
from bitbucket_discovery.domain.exceptions import (
    BitbucketError,
    BitbucketRequestError,
    MalformedResponseError,
    PermissionDeniedError,
    RateLimitException,
    ResourceNotFoundError,
    TransientNetworkError,
    UnauthorizedError,
)
from bitbucket_discovery.domain.lazy import Lazy
from bitbucket_discovery.domain.models import (
    EMPTY_AVATAR,
    ApiRequest,
    AvatarImage,
    Repository,
    Team,
)

if TYPE_CHECKING:
    from bitbucket_discovery.infrastructure.client_factory import ClientServices


logger = logging.getLogger(__name__)

RATE_LIMIT_STATUS = 429
RATE_LIMIT_DELAY_SECONDS = 5
MAX_AVATAR_LENGTH = 16384

_STATUS_ERRORS = {
    401: UnauthorizedError,
    403: PermissionDeniedError,
    404: ResourceNotFoundError,
}


@dataclass(frozen=True)
class HttpResponse:
    """A fully read HTTP response."""
    url: str
    status: int
    body: bytes

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        try:
            return json.loads(self.body)
        except ValueError as e:
            raise MalformedResponseError(
                f"I/O error when parsing response from URL: {self.url}", self.url
            ) from e


@contextmanager
def parsing(url: str) -> Iterator[None]:
    """Re-raise payload shape mismatches as MalformedResponseError for ``url``."""
    try:
        yield
    except (KeyError, TypeError, AttributeError, ValueError) as e:
        raise MalformedResponseError(
            f"Unexpected response payload from URL: {url} ({e!r})", url
        ) from e


class BitbucketApiClient(IBitbucketClient):
    """Base class for clients scoped to one ``owner/repository``.

    Subclasses provide the endpoint layout and payload mapping.
    """

    def __init__(
        self,
        owner: str,
        repository_name: str,
        authenticator: Optional[IAuthenticator],
        services: "ClientServices",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        """Initialize the client.

        Args:
            owner: Workspace (Cloud) or project key (Server)
            repository_name: Repository slug
            authenticator: Signs requests; None for anonymous access
            services: Shared connection pool and caches
            sleep: Coroutine used to wait between rate-limited attempts
        """
        self._owner = owner
        self._repository_name = repository_name
        self._authenticator = authenticator
        self._services = services
        self.sleep = sleep
        self._repository: Lazy[Repository] = Lazy(self._fetch_repository)
        self._default_branch: Lazy[Optional[str]] = Lazy(self._fetch_default_branch)

    @property
    def owner(self) -> str:
        return self._owner

    @property
    def repository_name(self) -> str:
        return self._repository_name

    @property
    def authenticator(self) -> Optional[IAuthenticator]:
        return self._authenticator

    @property
    @abstractmethod
    def api_host(self) -> Optional[str]:
        """Host whose requests get signed; other hosts are fetched anonymously."""
        pass

    # -- request execution -------------------------------------------------

    async def _send(
        self,
        method: str,
        url: Union[str, URL],
        payload: Optional[Any] = None
    ) -> HttpResponse:
        url = str(url)
        request = ApiRequest(method=method, url=url, headers={"Accept": "application/json"})
        if payload is not None:
            request.json = payload
        if self._authenticator is not None and URL(url).host == self.api_host:
            self._authenticator.configure_request(request)

        session = await self._services.pool.session()
        try:
            # The body is read in full so the connection always returns to the pool.
            async with session.request(
                request.method,
                request.url,
                headers=request.headers,
                json=request.json
            ) as response:
                body = await response.read()
                status = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientNetworkError(f"Communication error for url: {url}", url) from e

        if status == RATE_LIMIT_STATUS:
            logger.debug(
                f"Bitbucket API rate limit reached, sleeping for "
                f"{RATE_LIMIT_DELAY_SECONDS} sec then retry..."
            )
            raise RateLimitException(f"Rate limited: {url}", url)
        return HttpResponse(url=url, status=status, body=body)

    async def _request(
        self,
        method: str,
        url: Union[str, URL],
        payload: Optional[Any] = None
    ) -> HttpResponse:
        """Send a request, retrying indefinitely while rate limited.

        Only cancellation of the calling task ends the retry loop early.
        """
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(RateLimitException),
            wait=wait_fixed(RATE_LIMIT_DELAY_SECONDS),
            stop=stop_never,
            sleep=self.sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                response = await self._send(method, url, payload)
        return response

    @staticmethod
    def _status_error(status: int, message: str, url: str, body: str = "") -> BitbucketRequestError:
        """The request error matching ``status``, e.g. UnauthorizedError for 401."""
        error_type = _STATUS_ERRORS.get(status, BitbucketRequestError)
        return error_type(status, message, url, body)

    @classmethod
    def _raise_for_status(cls, response: HttpResponse) -> None:
        if response.ok:
            return
        raise cls._status_error(
            response.status,
            f"HTTP request error. Status: {response.status} for url: {response.url}",
            response.url,
            response.text(),
        )

    async def _get_json(self, url: Union[str, URL]) -> Any:
        response = await self._request("GET", url)
        self._raise_for_status(response)
        return response.json()

    async def _get_json_or_none(self, url: Union[str, URL]) -> Any:
        """Like ``_get_json`` but a 404 means absence."""
        try:
            return await self._get_json(url)
        except ResourceNotFoundError:
            return None

    async def _send_json(self, method: str, url: Union[str, URL], payload: Any) -> Any:
        response = await self._request(method, url, payload)
        self._raise_for_status(response)
        if response.status == 204 or not response.body:
            return None
        return response.json()

    async def _delete(self, url: Union[str, URL]) -> None:
        response = await self._request("DELETE", url)
        self._raise_for_status(response)

    async def _head_status(self, url: Union[str, URL]) -> int:
        response = await self._request("HEAD", url)
        return response.status

    async def _get_image(self, url: str) -> AvatarImage:
        response = await self._request("GET", url)
        if response.status == 404:
            logger.debug(f"No avatar found at {url}")
            return EMPTY_AVATAR
        self._raise_for_status(response)
        if len(response.body) > MAX_AVATAR_LENGTH:
            logger.debug(f"Avatar at {url} is larger than {MAX_AVATAR_LENGTH} bytes, ignoring")
            return EMPTY_AVATAR
        return AvatarImage(data=response.body, fetched_at=datetime.now(timezone.utc))

    @abstractmethod
    def _paginate(self, url: URL) -> AsyncIterator[Dict[str, Any]]:
        """Yield every value of a paginated collection, in page order."""
        pass

    async def _collect(self, url: URL) -> List[Dict[str, Any]]:
        return [value async for value in self._paginate(url)]

    # -- shared operations -------------------------------------------------

    @abstractmethod
    async def _fetch_repository(self) -> Repository:
        pass

    async def get_repository(self) -> Repository:
        """Fetch the repository, at most once per client instance."""
        return await self._repository.get()

    @abstractmethod
    async def _fetch_default_branch(self) -> Optional[str]:
        pass

    async def get_default_branch(self) -> Optional[str]:
        if not self._services.enable_cache:
            return await self._fetch_default_branch()
        return await self._default_branch.get()

    @abstractmethod
    async def _fetch_team(self) -> Optional[Team]:
        pass

    async def _cached(self, cache_name: str, key: str, loader: Callable[[], Awaitable[Any]]) -> Any:
        if not self._services.enable_cache:
            return await loader()
        return await getattr(self._services, cache_name).get(key, loader)

    def _cache_key(self, *parts: str) -> str:
        return "::".join(parts)

    async def get_team(self) -> Optional[Team]:
        """Best-effort team lookup; failures yield None instead of raising."""
        try:
            return await self._cached(
                "team_cache",
                self._cache_key(self.api_host or "", self._owner),
                self._fetch_team,
            )
        except BitbucketError as e:
            logger.debug(f"Could not load team {self._owner}: {e}")
            return None

    async def get_team_avatar(self) -> AvatarImage:
        """Best-effort team avatar; failures yield the empty placeholder."""
        team = await self.get_team()
        if team is None or not team.avatar_url:
            return EMPTY_AVATAR
        avatar_url = team.avatar_url
        try:
            return await self._cached(
                "avatar_cache",
                self._cache_key(self.api_host or "", self._owner),
                lambda: self._get_image(avatar_url),
            )
        except BitbucketError as e:
            logger.debug(f"Failed to get avatar for team {team.name} from URL: {avatar_url}: {e}")
            return EMPTY_AVATAR

    @abstractmethod
    async def _fetch_repositories(self, role: Optional[str]) -> List[Repository]:
        pass

    async def get_repositories(self, role: Optional[str] = None) -> List[Repository]:
        """All repositories of the owner sorted by name.

        The role filter only applies to authenticated requests.
        """
        parts = [self._owner]
        if self._authenticator is not None:
            parts.append(self._authenticator.id)
        else:
            parts.append("<anonymous>")
            role = None
        if role is not None:
            parts.append(role)

        async def load() -> List[Repository]:
            repositories = await self._fetch_repositories(role)
            return sorted(repositories, key=lambda repository: repository.name)

        return await self._cached("repositories_cache", self._cache_key(*parts), load)

    async def close(self) -> None:
        """Nothing to release; the connection pool belongs to ClientServices."""
        pass
