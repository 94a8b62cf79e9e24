"""Bitbucket Server / Data Center (REST 1.0) API client."""
import asyncio
import logging
from typing import TYPE_CHECKING, Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional
from yarl import URL
from bitbucket_discovery.domain.discovery_interfaces import IAuthenticator
from bitbucket_discovery.domain.exceptions import (
    InvalidConfigurationError,
    ResourceNotFoundError,
)
from bitbucket_discovery.domain.lazy import Lazy
from bitbucket_discovery.domain.models import (
    Branch,
    BuildStatus,
    Commit,
    PullRequest,
    PullRequestAuthor,
    PullRequestEndpoint,
    Repository,
    RepositoryType,
    Tag,
    Team,
    WebhookDefinition,
    WebhookKind,
)
from bitbucket_discovery.infrastructure.base_client import BitbucketApiClient, parsing

if TYPE_CHECKING:
    from bitbucket_discovery.infrastructure.client_factory import ClientServices


logger = logging.getLogger(__name__)

PAGE_LIMIT = 100


class BitbucketServerApiClient(BitbucketApiClient):
    """Client for one repository of a self-hosted Bitbucket Server.

    Webhooks are managed either through the native ``/webhooks`` REST
    resource or through the post-webhooks compatibility plugin.
    """

    def __init__(
        self,
        server_url: str,
        owner: str,
        repository_name: str,
        authenticator: Optional[IAuthenticator],
        services: "ClientServices",
        webhook_implementation: WebhookKind = WebhookKind.PLUGIN_SERVER,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        if webhook_implementation == WebhookKind.CLOUD:
            raise InvalidConfigurationError("Bitbucket Server cannot use Cloud webhooks")
        super().__init__(owner, repository_name, authenticator, services, sleep)
        self._server_url = URL(server_url.rstrip("/"))
        self._webhook_implementation = webhook_implementation

    @property
    def is_cloud(self) -> bool:
        return False

    @property
    def api_host(self) -> Optional[str]:
        return self._server_url.host

    @property
    def webhook_implementation(self) -> WebhookKind:
        return self._webhook_implementation

    @property
    def project_url(self) -> URL:
        return self._server_url / "rest" / "api" / "1.0" / "projects" / self._owner

    @property
    def repository_url(self) -> URL:
        return self.project_url / "repos" / self._repository_name

    async def _paginate(self, url: URL) -> AsyncIterator[Dict[str, Any]]:
        start = 0
        while True:
            page_url = url.update_query(start=start, limit=PAGE_LIMIT)
            page = await self._get_json(page_url)
            with parsing(str(page_url)):
                values = page.get("values") or []
                last_page = page.get("isLastPage", True)
                next_start = page.get("nextPageStart")
            for value in values:
                yield value
            if last_page or next_start is None:
                return
            start = next_start

    # -- payload mapping ---------------------------------------------------

    def _to_repository(self, url: str, data: Dict[str, Any]) -> Repository:
        with parsing(url):
            clone_links = tuple(
                (link["name"], link["href"])
                for link in (data.get("links") or {}).get("clone") or []
            )
            return Repository(
                owner=data["project"]["key"],
                name=data["slug"],
                scm=RepositoryType.from_string(data.get("scmId")),
                private=not data.get("public", False),
                clone_links=clone_links,
            )

    @staticmethod
    def _to_commit(data: Dict[str, Any]) -> Commit:
        author = data.get("author") or {}
        raw_author = author.get("name")
        if raw_author and author.get("emailAddress"):
            raw_author = f"{raw_author} <{author['emailAddress']}>"
        return Commit(
            hash=data.get("id"),
            author=raw_author,
            message=data.get("message"),
            timestamp_millis=int(data.get("authorTimestamp") or 0),
        )

    def _commit_thunk(self, hash: Optional[str]) -> Lazy[Optional[Commit]]:
        if not hash:
            return Lazy.of(Commit(hash=None))
        return Lazy(lambda: self.resolve_commit(hash))

    def _to_branch(self, data: Dict[str, Any], tag: bool = False) -> Branch:
        hash = data.get("latestCommit")
        # Refs carry no commit details; timestamps come from a lazy lookup.
        fields = dict(
            name=data["displayId"],
            raw_node=hash,
            commit_thunk=self._commit_thunk(hash),
        )
        if tag:
            return Tag(**fields)
        return Branch(**fields)

    def _to_endpoint(self, data: Dict[str, Any]) -> Optional[PullRequestEndpoint]:
        repository = data.get("repository")
        if not repository:
            return None
        branch = None
        if data.get("displayId"):
            branch = self._to_branch(data)
        return PullRequestEndpoint(
            owner=repository["project"]["key"],
            repository=repository["slug"],
            branch=branch,
        )

    def _to_pull_request(self, url: str, data: Dict[str, Any]) -> Optional[PullRequest]:
        with parsing(url):
            source = self._to_endpoint(data.get("fromRef") or {})
            destination = self._to_endpoint(data.get("toRef") or {})
            if source is None or destination is None:
                logger.warning(
                    f"Ignoring pull request #{data.get('id')} in {self._owner}/"
                    f"{self._repository_name}: source or destination repository is gone"
                )
                return None
            user = (data.get("author") or {}).get("user") or {}
            links = (data.get("links") or {}).get("self") or []
            return PullRequest(
                id=str(data["id"]),
                title=data.get("title") or "",
                author=PullRequestAuthor(
                    identifier=user.get("name"),
                    login=user.get("displayName"),
                    email=user.get("emailAddress"),
                ),
                source=source,
                destination=destination,
                link=links[0]["href"] if links else None,
            )

    # -- repository --------------------------------------------------------

    async def _fetch_repository(self) -> Repository:
        url = str(self.repository_url)
        return self._to_repository(url, await self._get_json(url))

    async def _fetch_default_branch(self) -> Optional[str]:
        url = self.repository_url / "branches" / "default"
        response = await self._request("GET", url)
        # An empty repository answers 204 or 404.
        if response.status in (204, 404):
            logger.debug(f"Could not find default branch for {self._owner}/{self._repository_name}")
            return None
        self._raise_for_status(response)
        with parsing(str(url)):
            return response.json()["displayId"]

    async def _fetch_repositories(self, role: Optional[str]) -> List[Repository]:
        if role is not None:
            logger.debug(f"Repository role filter {role!r} is ignored on Bitbucket Server")
        url = self.project_url / "repos"
        return [self._to_repository(str(url), value) for value in await self._collect(url)]

    async def _fetch_team(self) -> Optional[Team]:
        data = await self._get_json_or_none(self.project_url)
        if data is None:
            return None
        with parsing(str(self.project_url)):
            return Team(
                name=data["key"],
                display_name=data.get("name"),
                avatar_url=str(self.project_url / "avatar.png"),
            )

    # -- refs --------------------------------------------------------------

    async def get_branches(self) -> List[Branch]:
        url = self.repository_url / "branches"
        values = await self._collect(url)
        with parsing(str(url)):
            return [self._to_branch(value) for value in values]

    async def get_tags(self) -> List[Tag]:
        url = self.repository_url / "tags"
        values = await self._collect(url)
        with parsing(str(url)):
            return [self._to_branch(value, tag=True) for value in values]

    async def resolve_commit(self, hash: str) -> Optional[Commit]:
        url = self.repository_url / "commits" / hash
        data = await self._get_json_or_none(url)
        if data is None:
            return None
        with parsing(str(url)):
            return self._to_commit(data)

    async def check_path_exists(self, ref: str, path: str) -> bool:
        url = (self.repository_url / "raw" / path.lstrip("/")).with_query(at=ref)
        status = await self._head_status(url)
        if status == 200:
            return True
        if status == 404:
            return False
        if status == 403:
            logger.warning(
                f"You currently do not have permissions to pull from repo: "
                f"{self._repository_name} at branch {ref}"
            )
            return False
        raise self._status_error(
            status, f"Communication error for url: {url} status code: {status}", str(url)
        )

    # -- pull requests -----------------------------------------------------

    async def get_pull_requests(self) -> List[PullRequest]:
        url = (self.repository_url / "pull-requests").with_query(state="OPEN")
        pull_requests = []
        for value in await self._collect(url):
            pull_request = self._to_pull_request(str(url), value)
            if pull_request is None or pull_request.destination.branch is None:
                continue
            pull_requests.append(pull_request)
        return pull_requests

    async def get_pull_request_by_id(self, pull_request_id: str) -> PullRequest:
        url = self.repository_url / "pull-requests" / str(pull_request_id)
        pull_request = self._to_pull_request(str(url), await self._get_json(url))
        if pull_request is None:
            raise ResourceNotFoundError(
                404, f"Pull request {pull_request_id} has no source repository", str(url)
            )
        return pull_request

    # -- webhooks ----------------------------------------------------------

    @property
    def _plugin_hooks_url(self) -> URL:
        return (
            self._server_url / "rest" / "webhook" / "1.0" / "projects" / self._owner
            / "repos" / self._repository_name / "configurations"
        )

    @property
    def _native_hooks_url(self) -> URL:
        return self.repository_url / "webhooks"

    def _hooks_url(self, hook: Optional[WebhookDefinition] = None) -> URL:
        base = (
            self._native_hooks_url
            if self._webhook_implementation == WebhookKind.NATIVE_SERVER
            else self._plugin_hooks_url
        )
        if hook is None:
            return base
        if not hook.uuid:
            raise InvalidConfigurationError("Hook UUID required")
        return base / hook.uuid

    def _webhook_payload(self, hook: WebhookDefinition) -> Dict[str, Any]:
        if self._webhook_implementation == WebhookKind.NATIVE_SERVER:
            return {
                "name": hook.description,
                "url": hook.url,
                "events": list(hook.events),
                "active": hook.active,
                "configuration": {},
            }
        return {
            "title": hook.description,
            "url": hook.url,
            "enabled": hook.active,
            "committersToIgnore": hook.committers_to_ignore or "",
        }

    async def get_webhooks(self) -> List[WebhookDefinition]:
        url = self._hooks_url()
        if self._webhook_implementation == WebhookKind.NATIVE_SERVER:
            values = await self._collect(url)
            with parsing(str(url)):
                return [
                    WebhookDefinition(
                        url=value["url"],
                        events=tuple(value.get("events") or ()),
                        active=value.get("active", True),
                        description=value.get("name") or "",
                        kind=WebhookKind.NATIVE_SERVER,
                        uuid=str(value["id"]),
                    )
                    for value in values
                ]
        # The plugin answers with a bare, unpaginated list.
        values = await self._get_json(url)
        with parsing(str(url)):
            return [
                WebhookDefinition(
                    url=value["url"],
                    active=value.get("enabled", True),
                    description=value.get("title") or "",
                    kind=WebhookKind.PLUGIN_SERVER,
                    committers_to_ignore=value.get("committersToIgnore"),
                    uuid=str(value["id"]),
                )
                for value in values
            ]

    async def register_webhook(self, hook: WebhookDefinition) -> None:
        await self._send_json("POST", self._hooks_url(), self._webhook_payload(hook))

    async def update_webhook(self, hook: WebhookDefinition) -> None:
        await self._send_json("PUT", self._hooks_url(hook), self._webhook_payload(hook))

    async def remove_webhook(self, hook: WebhookDefinition) -> None:
        await self._delete(self._hooks_url(hook))

    # -- build status ------------------------------------------------------

    async def post_build_status(self, status: BuildStatus) -> None:
        url = self._server_url / "rest" / "build-status" / "1.0" / "commits" / status.hash
        await self._send_json("POST", url, {
            "state": status.state.value,
            "key": status.key,
            "name": status.name,
            "url": status.url,
            "description": status.description,
        })
