"""Domain models representing repositories, heads and revisions on Bitbucket."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from bitbucket_discovery.domain.lazy import Lazy


CLOUD_SERVER_URL = "https://bitbucket.org"


class RepositoryType(Enum):
    """SCM kind of a repository."""
    GIT = "git"
    MERCURIAL = "hg"

    @classmethod
    def from_string(cls, value: Optional[str]) -> "RepositoryType":
        """Map the API's scm identifier, defaulting to git."""
        if value and value.lower() in ("hg", "mercurial"):
            return cls.MERCURIAL
        return cls.GIT


class CheckoutStrategy(Enum):
    """How a pull request is checked out for a build."""
    MERGE = "MERGE"
    HEAD = "HEAD"


@dataclass(frozen=True)
class Repository:
    """Immutable repository metadata as returned by the hosting API."""
    owner: str
    name: str
    scm: RepositoryType = RepositoryType.GIT
    private: bool = True
    default_branch: Optional[str] = None
    clone_links: Tuple[Tuple[str, str], ...] = ()

    @property
    def full_name(self) -> str:
        """Returns the full repository name (owner/name)."""
        return f"{self.owner}/{self.name}"

    def clone_link(self, protocol: str) -> Optional[str]:
        for name, href in self.clone_links:
            if name == protocol:
                return href
        return None


@dataclass(frozen=True)
class Commit:
    """A commit as far as the hosting API could describe it.

    ``hash`` is ``None`` when the API cannot supply the tip of a branch.
    """
    hash: Optional[str]
    author: Optional[str] = None
    message: Optional[str] = None
    timestamp_millis: int = 0


@dataclass(frozen=True)
class Branch:
    """A branch (or tag) ref.

    When ``commit_thunk`` is set the commit details are resolved lazily on
    first use instead of being read from the inline fields.
    """
    name: str
    raw_node: Optional[str] = None
    author: Optional[str] = None
    message: Optional[str] = None
    timestamp_millis: int = 0
    active: bool = True
    commit_thunk: Optional[Lazy[Optional[Commit]]] = field(
        default=None, compare=False, repr=False
    )

    async def head_commit(self) -> Optional[Commit]:
        """Returns the commit at the tip of this ref."""
        if self.commit_thunk is not None:
            return await self.commit_thunk.get()
        return Commit(
            hash=self.raw_node,
            author=self.author,
            message=self.message,
            timestamp_millis=self.timestamp_millis,
        )


@dataclass(frozen=True)
class Tag(Branch):
    """A tag ref; annotated tags carry their own creation timestamp."""
    created_millis: Optional[int] = None

    @property
    def effective_timestamp_millis(self) -> int:
        if self.created_millis:
            return self.created_millis
        return self.timestamp_millis


@dataclass(frozen=True)
class PullRequestAuthor:
    identifier: Optional[str] = None
    login: Optional[str] = None
    email: Optional[str] = None


@dataclass(frozen=True)
class PullRequestEndpoint:
    """One side (source or destination) of a pull request."""
    owner: str
    repository: str
    branch: Optional[Branch]

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repository}"


@dataclass(frozen=True)
class PullRequest:
    """An open pull request between two branches."""
    id: str
    title: str
    author: PullRequestAuthor
    source: PullRequestEndpoint
    destination: PullRequestEndpoint
    link: Optional[str] = None

    def is_fork_of(self, owner: str, repository: str) -> bool:
        """True when the source repository differs from ``owner/repository``."""
        return self.source.full_name.lower() != f"{owner}/{repository}".lower()


@dataclass(frozen=True)
class HeadOrigin:
    """Where a pull request comes from: the default repository or a fork."""
    fork: Optional[str] = None

    @property
    def is_fork(self) -> bool:
        return self.fork is not None


DEFAULT_ORIGIN = HeadOrigin()


@dataclass(frozen=True)
class BranchHead:
    name: str
    repository_type: RepositoryType = RepositoryType.GIT


@dataclass(frozen=True)
class TagHead:
    name: str
    timestamp_millis: int = 0
    repository_type: RepositoryType = RepositoryType.GIT


@dataclass(frozen=True)
class PullRequestHead:
    """A pull request checked out with one strategy.

    ``repo_owner``/``repository`` identify where the source branch lives.
    """
    name: str
    id: str
    repo_owner: str
    repository: str
    branch_name: str
    target: BranchHead
    strategy: CheckoutStrategy = CheckoutStrategy.MERGE
    origin: HeadOrigin = DEFAULT_ORIGIN
    title: str = ""
    repository_type: RepositoryType = RepositoryType.GIT


Head = Union[BranchHead, TagHead, PullRequestHead]


@dataclass(frozen=True)
class Revision:
    """A head pinned to resolved commits.

    Pull request revisions carry the target (destination) commit as well.
    """
    head: Head
    commit: Commit
    target: Optional[Commit] = None

    @property
    def hash(self) -> Optional[str]:
        return self.commit.hash


class WebhookKind(Enum):
    CLOUD = "cloud"
    NATIVE_SERVER = "native"
    PLUGIN_SERVER = "plugin"


class ServerVersion(Enum):
    """Bitbucket Server version band; decides the native webhook events."""
    VERSION_5 = "VERSION_5"
    VERSION_5_10 = "VERSION_5_10"
    VERSION_6 = "VERSION_6"
    VERSION_7 = "VERSION_7"


@dataclass(frozen=True)
class WebhookDefinition:
    """A repository webhook; ``uuid`` is only known once registered."""
    url: str
    events: Tuple[str, ...] = ()
    active: bool = True
    description: str = ""
    kind: WebhookKind = WebhookKind.CLOUD
    committers_to_ignore: Optional[str] = None
    uuid: Optional[str] = None


@dataclass(frozen=True)
class Team:
    name: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None


@dataclass(frozen=True)
class AvatarImage:
    data: bytes = b""
    fetched_at: Optional[datetime] = None

    @property
    def is_empty(self) -> bool:
        return not self.data


EMPTY_AVATAR = AvatarImage()


class BuildState(Enum):
    SUCCESSFUL = "SUCCESSFUL"
    FAILED = "FAILED"
    INPROGRESS = "INPROGRESS"
    STOPPED = "STOPPED"


@dataclass(frozen=True)
class BuildStatus:
    hash: str
    description: str
    state: BuildState
    url: str
    key: str
    name: str


@dataclass
class ApiRequest:
    """An outgoing HTTP request, open to signing by an authenticator."""
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    json: Optional[Any] = None


@dataclass(frozen=True)
class DiscoveryMetrics:
    """Metrics for one discovery pass."""
    branches_processed: int
    tags_processed: int
    pull_requests_processed: int
    matched: int
    skipped: int
    duration_seconds: float
    completed_early: bool


def parse_timestamp_millis(value: Optional[str]) -> int:
    """Parse an ISO-8601 timestamp into epoch milliseconds, 0 if absent or invalid."""
    if not value:
        return 0
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return 0
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)
