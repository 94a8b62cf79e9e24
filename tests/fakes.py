"""In-memory IBitbucketClient for engine and reconciler tests."""
from collections import Counter
from typing import Dict, Iterable, List, Optional, Set, Tuple
from bitbucket_discovery.domain.bitbucket_interface import IBitbucketClient
from bitbucket_discovery.domain.exceptions import (
    PermissionDeniedError,
    ResourceNotFoundError,
)
from bitbucket_discovery.domain.lazy import Lazy
from bitbucket_discovery.domain.models import (
    EMPTY_AVATAR,
    AvatarImage,
    Branch,
    BuildStatus,
    Commit,
    PullRequest,
    PullRequestAuthor,
    PullRequestEndpoint,
    Repository,
    Tag,
    Team,
    WebhookDefinition,
)


class FakeBitbucketClient(IBitbucketClient):
    """Serves fixed data and counts every call."""

    def __init__(
        self,
        owner: str = "acme",
        repository_name: str = "widgets",
        branches: Iterable[Branch] = (),
        tags: Iterable[Tag] = (),
        pull_requests: Iterable[PullRequest] = (),
        commits: Optional[Dict[str, Commit]] = None,
        paths: Iterable[Tuple[str, str]] = (),
        forbidden: Iterable[str] = (),
        private: bool = True,
        cloud: bool = True,
        webhooks: Iterable[WebhookDefinition] = ()
    ):
        self._owner = owner
        self._repository_name = repository_name
        self.branches = list(branches)
        self.tags = list(tags)
        self.pull_requests = list(pull_requests)
        self.commits = dict(commits or {})
        self.paths: Set[Tuple[str, str]] = set(paths)
        self.forbidden = set(forbidden)
        self.private = private
        self.cloud = cloud
        self.webhooks = list(webhooks)
        self.posted: List[BuildStatus] = []
        self.calls: Counter = Counter()

    @property
    def owner(self) -> str:
        return self._owner

    @property
    def repository_name(self) -> str:
        return self._repository_name

    @property
    def is_cloud(self) -> bool:
        return self.cloud

    async def get_repository(self) -> Repository:
        self.calls["get_repository"] += 1
        return Repository(owner=self._owner, name=self._repository_name, private=self.private)

    async def get_default_branch(self) -> Optional[str]:
        return self.branches[0].name if self.branches else None

    async def get_branches(self) -> List[Branch]:
        self.calls["get_branches"] += 1
        return list(self.branches)

    async def get_tags(self) -> List[Tag]:
        self.calls["get_tags"] += 1
        return list(self.tags)

    async def get_pull_requests(self) -> List[PullRequest]:
        self.calls["get_pull_requests"] += 1
        return list(self.pull_requests)

    async def get_pull_request_by_id(self, pull_request_id: str) -> PullRequest:
        for pr in self.pull_requests:
            if pr.id == pull_request_id:
                return pr
        raise ResourceNotFoundError(404, f"No pull request {pull_request_id}")

    async def resolve_commit(self, hash: str) -> Optional[Commit]:
        self.calls["resolve_commit"] += 1
        if hash in self.forbidden:
            raise PermissionDeniedError(403, "Forbidden", f"commit/{hash}")
        return self.commits.get(hash)

    async def check_path_exists(self, ref: str, path: str) -> bool:
        self.calls["check_path_exists"] += 1
        return (ref, path) in self.paths

    async def get_team(self) -> Optional[Team]:
        return Team(name=self._owner)

    async def get_team_avatar(self) -> AvatarImage:
        return EMPTY_AVATAR

    async def get_repositories(self, role: Optional[str] = None) -> List[Repository]:
        return [await self.get_repository()]

    async def get_webhooks(self) -> List[WebhookDefinition]:
        self.calls["get_webhooks"] += 1
        return list(self.webhooks)

    async def register_webhook(self, hook: WebhookDefinition) -> None:
        self.calls["register_webhook"] += 1
        self.webhooks.append(hook)

    async def update_webhook(self, hook: WebhookDefinition) -> None:
        self.calls["update_webhook"] += 1
        self.webhooks = [hook if h.uuid == hook.uuid else h for h in self.webhooks]

    async def remove_webhook(self, hook: WebhookDefinition) -> None:
        self.calls["remove_webhook"] += 1
        self.webhooks = [h for h in self.webhooks if h.uuid != hook.uuid]

    async def post_build_status(self, status: BuildStatus) -> None:
        self.posted.append(status)

    async def close(self) -> None:
        pass


def branch(name: str, hash: Optional[str], timestamp_millis: int = 1_700_000_000_000) -> Branch:
    return Branch(name=name, raw_node=hash, timestamp_millis=timestamp_millis)


def pull_request(
    client: FakeBitbucketClient,
    id: str,
    source_branch: str,
    source_hash: str,
    target_branch: str = "main",
    target_hash: str = "abc123",
    source_owner: Optional[str] = None,
    source_repository: Optional[str] = None,
    title: str = "Add feature"
) -> PullRequest:
    """A pull request whose commits resolve lazily through ``client``."""
    return PullRequest(
        id=id,
        title=title,
        author=PullRequestAuthor(identifier="u-1", login="alice"),
        source=PullRequestEndpoint(
            owner=source_owner or client.owner,
            repository=source_repository or client.repository_name,
            branch=Branch(
                name=source_branch,
                raw_node=source_hash,
                commit_thunk=Lazy(lambda: client.resolve_commit(source_hash)),
            ),
        ),
        destination=PullRequestEndpoint(
            owner=client.owner,
            repository=client.repository_name,
            branch=Branch(
                name=target_branch,
                raw_node=target_hash,
                commit_thunk=Lazy(lambda: client.resolve_commit(target_hash)),
            ),
        ),
    )
