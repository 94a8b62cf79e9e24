"""Bitbucket Cloud (REST 2.0) API client."""
import logging
from typing import Any, AsyncIterator, Dict, List, Optional
from yarl import URL
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
    parse_timestamp_millis,
)
from bitbucket_discovery.infrastructure.base_client import BitbucketApiClient, parsing


logger = logging.getLogger(__name__)

API_ROOT = URL("https://api.bitbucket.org/2.0")
MAX_PAGE_LENGTH = 100
# The pull request endpoint answers HTTP 400 above 50 despite the documented max.
PULL_REQUEST_PAGE_LENGTH = 50


class BitbucketCloudApiClient(BitbucketApiClient):
    """Client for one repository on bitbucket.org."""

    @property
    def is_cloud(self) -> bool:
        return True

    @property
    def api_host(self) -> Optional[str]:
        return API_ROOT.host

    @property
    def repository_url(self) -> URL:
        return API_ROOT / "repositories" / self._owner / self._repository_name

    async def _paginate(self, url: URL) -> AsyncIterator[Dict[str, Any]]:
        next_url: Optional[str] = str(url)
        while next_url:
            page = await self._get_json(next_url)
            with parsing(next_url):
                values = page.get("values") or []
                following = page.get("next")
            for value in values:
                yield value
            next_url = following

    # -- payload mapping ---------------------------------------------------

    def _to_repository(self, url: str, data: Dict[str, Any]) -> Repository:
        with parsing(url):
            full_name = data["full_name"]
            owner, _, name = full_name.partition("/")
            clone_links = tuple(
                (link["name"], link["href"])
                for link in (data.get("links") or {}).get("clone") or []
            )
            main_branch = data.get("mainbranch") or {}
            return Repository(
                owner=owner,
                name=data.get("slug") or name,
                scm=RepositoryType.from_string(data.get("scm")),
                private=bool(data.get("is_private", True)),
                default_branch=main_branch.get("name"),
                clone_links=clone_links,
            )

    @staticmethod
    def _to_commit(data: Dict[str, Any]) -> Commit:
        return Commit(
            hash=data.get("hash"),
            author=(data.get("author") or {}).get("raw"),
            message=data.get("message"),
            timestamp_millis=parse_timestamp_millis(data.get("date")),
        )

    def _to_branch(self, data: Dict[str, Any], tag: bool = False) -> Branch:
        target = data.get("target") or {}
        commit = self._to_commit(target)
        fields = dict(
            name=data["name"],
            raw_node=commit.hash,
            author=commit.author,
            message=commit.message,
            timestamp_millis=commit.timestamp_millis,
            active=data.get("active", True),
        )
        if tag:
            return Tag(created_millis=parse_timestamp_millis(data.get("date")) or None, **fields)
        return Branch(**fields)

    def _commit_thunk(self, hash: Optional[str]) -> Lazy[Optional[Commit]]:
        if not hash:
            return Lazy.of(Commit(hash=None))
        return Lazy(lambda: self.resolve_commit(hash))

    def _to_endpoint(self, data: Dict[str, Any]) -> Optional[PullRequestEndpoint]:
        repository = data.get("repository")
        if not repository:
            return None
        owner, _, name = repository["full_name"].partition("/")
        branch = None
        if data.get("branch"):
            hash = (data.get("commit") or {}).get("hash")
            branch = Branch(
                name=data["branch"]["name"],
                raw_node=hash,
                commit_thunk=self._commit_thunk(hash),
            )
        return PullRequestEndpoint(owner=owner, repository=name, branch=branch)

    def _to_pull_request(self, url: str, data: Dict[str, Any]) -> Optional[PullRequest]:
        with parsing(url):
            source = self._to_endpoint(data.get("source") or {})
            destination = self._to_endpoint(data.get("destination") or {})
            if source is None or destination is None:
                # The source repository disappears when a fork is deleted.
                logger.warning(
                    f"Ignoring pull request #{data.get('id')} in {self._owner}/"
                    f"{self._repository_name}: source or destination repository is gone"
                )
                return None
            author = data.get("author") or {}
            return PullRequest(
                id=str(data["id"]),
                title=data.get("title") or "",
                author=PullRequestAuthor(
                    identifier=author.get("account_id") or author.get("uuid"),
                    login=author.get("nickname"),
                    email=None,
                ),
                source=source,
                destination=destination,
                link=((data.get("links") or {}).get("html") or {}).get("href"),
            )

    @staticmethod
    def _to_webhook(data: Dict[str, Any]) -> WebhookDefinition:
        return WebhookDefinition(
            url=data["url"],
            events=tuple(data.get("events") or ()),
            active=data.get("active", True),
            description=data.get("description") or "",
            kind=WebhookKind.CLOUD,
            uuid=data.get("uuid"),
        )

    @staticmethod
    def _webhook_payload(hook: WebhookDefinition) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "url": hook.url,
            "events": list(hook.events),
            "active": hook.active,
            "description": hook.description,
        }
        if hook.uuid:
            payload["uuid"] = hook.uuid
        return payload

    # -- repository --------------------------------------------------------

    async def _fetch_repository(self) -> Repository:
        url = str(self.repository_url)
        return self._to_repository(url, await self._get_json(url))

    async def _fetch_default_branch(self) -> Optional[str]:
        url = self.repository_url.with_query(fields="mainbranch.name")
        data = await self._get_json_or_none(url)
        if data is None:
            logger.debug(f"Could not find default branch for {self._owner}/{self._repository_name}")
            return None
        with parsing(str(url)):
            return (data.get("mainbranch") or {}).get("name")

    async def _fetch_repositories(self, role: Optional[str]) -> List[Repository]:
        url = (API_ROOT / "repositories" / self._owner).with_query(pagelen=MAX_PAGE_LENGTH)
        if role is not None:
            url = url.update_query(role=role)
        return [self._to_repository(str(url), value) for value in await self._collect(url)]

    async def _fetch_team(self) -> Optional[Team]:
        url = API_ROOT / "workspaces" / self._owner
        data = await self._get_json_or_none(url)
        if data is None:
            return None
        with parsing(str(url)):
            return Team(
                name=data.get("slug") or self._owner,
                display_name=data.get("name"),
                avatar_url=((data.get("links") or {}).get("avatar") or {}).get("href"),
            )

    # -- refs --------------------------------------------------------------

    async def _get_refs(self, kind: str) -> List[Dict[str, Any]]:
        url = (self.repository_url / "refs" / kind).with_query(pagelen=MAX_PAGE_LENGTH)
        values = await self._collect(url)
        with parsing(str(url)):
            return [value for value in values if value.get("active", True)]

    async def get_branches(self) -> List[Branch]:
        url = str(self.repository_url / "refs" / "branches")
        values = await self._get_refs("branches")
        with parsing(url):
            return [self._to_branch(value) for value in values]

    async def get_tags(self) -> List[Tag]:
        url = str(self.repository_url / "refs" / "tags")
        values = await self._get_refs("tags")
        with parsing(url):
            return [self._to_branch(value, tag=True) for value in values]

    async def resolve_commit(self, hash: str) -> Optional[Commit]:
        url = self.repository_url / "commit" / hash
        data = await self._get_json_or_none(url)
        if data is None:
            return None
        with parsing(str(url)):
            return self._to_commit(data)

    async def check_path_exists(self, ref: str, path: str) -> bool:
        url = self.repository_url / "src" / ref / path.lstrip("/")
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
        url = (self.repository_url / "pullrequests").with_query(pagelen=PULL_REQUEST_PAGE_LENGTH)
        pull_requests = []
        for value in await self._collect(url):
            pull_request = self._to_pull_request(str(url), value)
            if pull_request is None:
                continue
            # A pull request whose destination branch is gone is invalid.
            if pull_request.destination.branch is None:
                continue
            pull_requests.append(pull_request)
        return pull_requests

    async def get_pull_request_by_id(self, pull_request_id: str) -> PullRequest:
        url = self.repository_url / "pullrequests" / str(pull_request_id)
        pull_request = self._to_pull_request(str(url), await self._get_json(url))
        if pull_request is None:
            raise ResourceNotFoundError(
                404, f"Pull request {pull_request_id} has no source repository", str(url)
            )
        return pull_request

    # -- webhooks ----------------------------------------------------------

    async def get_webhooks(self) -> List[WebhookDefinition]:
        url = (self.repository_url / "hooks").with_query(pagelen=MAX_PAGE_LENGTH)
        values = await self._collect(url)
        with parsing(str(url)):
            return [self._to_webhook(value) for value in values]

    async def register_webhook(self, hook: WebhookDefinition) -> None:
        await self._send_json("POST", self.repository_url / "hooks", self._webhook_payload(hook))

    async def update_webhook(self, hook: WebhookDefinition) -> None:
        if not hook.uuid:
            raise InvalidConfigurationError("Hook UUID required")
        await self._send_json(
            "PUT", self.repository_url / "hooks" / hook.uuid, self._webhook_payload(hook)
        )

    async def remove_webhook(self, hook: WebhookDefinition) -> None:
        if not hook.uuid:
            raise InvalidConfigurationError("Hook UUID required")
        await self._delete(self.repository_url / "hooks" / hook.uuid)

    # -- build status ------------------------------------------------------

    async def post_build_status(self, status: BuildStatus) -> None:
        url = self.repository_url / "commit" / status.hash / "statuses" / "build"
        await self._send_json("POST", url, {
            "state": status.state.value,
            "key": status.key,
            "name": status.name,
            "url": status.url,
            "description": status.description,
        })
