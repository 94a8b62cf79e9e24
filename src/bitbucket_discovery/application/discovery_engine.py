"""Discovery engine turning branches, pull requests and tags into revisions."""
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Set, Tuple
from bitbucket_discovery.application.probes import CommitProbe
from bitbucket_discovery.domain.bitbucket_interface import IBitbucketClient
from bitbucket_discovery.domain.discovery_interfaces import ICriterion, IHeadObserver
from bitbucket_discovery.domain.exceptions import (
    BitbucketRequestError,
    MalformedResponseError,
    PermissionDeniedError,
    ResourceNotFoundError,
    UnauthorizedError,
)
from bitbucket_discovery.domain.lazy import Lazy, LazySequence
from bitbucket_discovery.domain.models import (
    DEFAULT_ORIGIN,
    Branch,
    BranchHead,
    CheckoutStrategy,
    Commit,
    DiscoveryMetrics,
    Head,
    HeadOrigin,
    PullRequest,
    PullRequestAuthor,
    PullRequestHead,
    Repository,
    RepositoryType,
    Revision,
    Tag,
    TagHead,
)


logger = logging.getLogger(__name__)

ForkClientFactory = Callable[[str, str], IBitbucketClient]


class DiscoveryState(Enum):
    """Where a discovery pass currently is."""
    IDLE = "idle"
    FETCHING_SOURCES = "fetching_sources"
    ENUMERATING_BRANCHES = "enumerating_branches"
    ENUMERATING_PULL_REQUESTS = "enumerating_pull_requests"
    ENUMERATING_TAGS = "enumerating_tags"
    COMPLETE = "complete"


@dataclass(frozen=True)
class DiscoveryOptions:
    """What a pass enumerates and how pull requests are checked out."""
    discover_branches: bool = True
    discover_tags: bool = False
    discover_pull_requests: bool = True
    origin_pr_strategies: Tuple[CheckoutStrategy, ...] = (CheckoutStrategy.MERGE,)
    fork_pr_strategies: Tuple[CheckoutStrategy, ...] = (CheckoutStrategy.MERGE,)
    skip_public_prs: bool = False
    exclude_origin_pr_branches: bool = False


@dataclass(frozen=True)
class PullRequestMetadata:
    """Title and contributor of an open pull request, kept between passes."""
    title: str
    author: PullRequestAuthor
    link: Optional[str] = None


@dataclass
class _PassCounters:
    branches: int = 0
    tags: int = 0
    pull_requests: int = 0
    matched: int = 0
    skipped: int = 0


class DiscoveryEngine:
    """Enumerates the heads of one repository and reports them to an observer.

    Resource lists are fetched lazily, so a pass the observer declares
    complete early never pays for the kinds it did not reach. Failures scoped
    to one head skip that head; authorization failures and malformed
    top-level responses abort the pass.
    """

    def __init__(
        self,
        client: IBitbucketClient,
        options: Optional[DiscoveryOptions] = None,
        fork_client_factory: Optional[ForkClientFactory] = None,
        key_prefix: Optional[str] = None
    ):
        """Initialize the engine.

        Args:
            client: Client scoped to the repository under discovery
            options: What to discover, defaults to branches and pull requests
            fork_client_factory: Builds a client for ``(owner, repository)`` of a
                fork; Cloud fork pull requests are probed through it
            key_prefix: Prefix of build status keys, defaults to ``owner/repository``
        """
        self._client = client
        self._options = options or DiscoveryOptions()
        self._fork_client_factory = fork_client_factory
        self._key_prefix = key_prefix or f"{client.owner}/{client.repository_name}"
        self._state = DiscoveryState.IDLE
        self._pull_request_metadata: Dict[str, PullRequestMetadata] = {}

    @property
    def state(self) -> DiscoveryState:
        return self._state

    @property
    def options(self) -> DiscoveryOptions:
        return self._options

    @property
    def full_name(self) -> str:
        return f"{self._client.owner}/{self._client.repository_name}"

    @property
    def pull_request_metadata(self) -> Dict[str, PullRequestMetadata]:
        return dict(self._pull_request_metadata)

    async def discover(
        self,
        criterion: Optional[ICriterion],
        observer: IHeadObserver
    ) -> DiscoveryMetrics:
        """Run one discovery pass.

        Args:
            criterion: Decides whether a head is buildable; None matches everything
            observer: Receives every outcome and may end the pass early

        Returns:
            DiscoveryMetrics for the pass
        """
        start_time = time.time()
        counters = _PassCounters()
        completed_early = False

        logger.info(f"Starting discovery for {self.full_name}")
        self._state = DiscoveryState.FETCHING_SOURCES
        try:
            repository = await self._client.get_repository()
            repository_type = repository.scm
            branches: LazySequence[Branch] = LazySequence(self._client.get_branches)
            tags: LazySequence[Tag] = LazySequence(self._client.get_tags)
            pull_requests: LazySequence[PullRequest] = LazySequence(
                lambda: self._fetch_pull_requests(repository)
            )

            steps = []
            if self._options.discover_branches:
                steps.append((
                    DiscoveryState.ENUMERATING_BRANCHES,
                    lambda: self._discover_branches(
                        branches, pull_requests, repository_type, criterion, observer, counters
                    ),
                ))
            if self._options.discover_pull_requests:
                steps.append((
                    DiscoveryState.ENUMERATING_PULL_REQUESTS,
                    lambda: self._discover_pull_requests(
                        pull_requests, repository_type, criterion, observer, counters
                    ),
                ))
            if self._options.discover_tags:
                steps.append((
                    DiscoveryState.ENUMERATING_TAGS,
                    lambda: self._discover_tags(tags, repository_type, criterion, observer, counters),
                ))

            for state, step in steps:
                self._state = state
                if not await step():
                    completed_early = True
                    logger.info(f"Observer is satisfied, stopping discovery of {self.full_name}")
                    break
        except Exception as e:
            self._state = DiscoveryState.IDLE
            logger.error(f"Discovery of {self.full_name} failed: {e}")
            raise
        self._state = DiscoveryState.COMPLETE

        duration = time.time() - start_time
        metrics = DiscoveryMetrics(
            branches_processed=counters.branches,
            tags_processed=counters.tags,
            pull_requests_processed=counters.pull_requests,
            matched=counters.matched,
            skipped=counters.skipped,
            duration_seconds=duration,
            completed_early=completed_early,
        )
        logger.info(
            f"Discovery of {self.full_name} completed: {counters.matched} matched, "
            f"{counters.skipped} skipped in {duration:.2f} seconds"
        )
        return metrics

    # -- resource kinds ----------------------------------------------------

    async def _fetch_pull_requests(self, repository: Repository) -> List[PullRequest]:
        if self._options.skip_public_prs and not repository.private:
            logger.info(f"Skipping pull requests for public repository {self.full_name}")
            return []
        return await self._client.get_pull_requests()

    async def _discover_branches(
        self,
        branches: LazySequence[Branch],
        pull_requests: LazySequence[PullRequest],
        repository_type: RepositoryType,
        criterion: Optional[ICriterion],
        observer: IHeadObserver,
        counters: _PassCounters
    ) -> bool:
        logger.info(f"Looking up {self.full_name} for branches")
        excluded: Set[str] = set()
        if self._options.exclude_origin_pr_branches and self._options.discover_pull_requests:
            excluded = {
                pr.source.branch.name
                async for pr in pull_requests
                if pr.source.branch is not None and not self._is_fork(pr)
            }

        async for branch in branches:
            if branch.name in excluded:
                logger.debug(f"Branch {branch.name} is filed as a pull request, excluding")
                continue
            head = BranchHead(name=branch.name, repository_type=repository_type)
            if not await self._process(
                head, Lazy(branch.head_commit), None, self._client, criterion, observer, counters
            ):
                return False
        logger.info(f"{counters.branches} branches were processed")
        return True

    async def _discover_tags(
        self,
        tags: LazySequence[Tag],
        repository_type: RepositoryType,
        criterion: Optional[ICriterion],
        observer: IHeadObserver,
        counters: _PassCounters
    ) -> bool:
        logger.info(f"Looking up {self.full_name} for tags")
        async for tag in tags:
            head = TagHead(
                name=tag.name,
                timestamp_millis=tag.effective_timestamp_millis,
                repository_type=repository_type,
            )
            if not await self._process(
                head, Lazy(tag.head_commit), None, self._client, criterion, observer, counters
            ):
                return False
        logger.info(f"{counters.tags} tags were processed")
        return True

    async def _discover_pull_requests(
        self,
        pull_requests: LazySequence[PullRequest],
        repository_type: RepositoryType,
        criterion: Optional[ICriterion],
        observer: IHeadObserver,
        counters: _PassCounters
    ) -> bool:
        logger.info(f"Looking up {self.full_name} for pull requests")
        live_ids: Set[str] = set()
        async for pr in pull_requests:
            live_ids.add(pr.id)
            self._pull_request_metadata[pr.id] = PullRequestMetadata(
                title=pr.title, author=pr.author, link=pr.link
            )
            fork = self._is_fork(pr)
            strategies = (
                self._options.fork_pr_strategies if fork else self._options.origin_pr_strategies
            )
            source_branch = pr.source.branch
            target_branch = pr.destination.branch
            if source_branch is None or target_branch is None:
                logger.warning(f"Pull request #{pr.id} has no source branch, skipping")
                continue
            origin = self._origin_of(pr)
            probe_client = self._probe_client(pr) if fork else self._client
            # Shared by every strategy so each commit is looked up once.
            source_commit: Lazy[Optional[Commit]] = Lazy(source_branch.head_commit)
            target_commit: Lazy[Optional[Commit]] = Lazy(target_branch.head_commit)

            for strategy in strategies:
                head = PullRequestHead(
                    name=self._pull_request_name(pr.id, strategy, len(strategies)),
                    id=pr.id,
                    repo_owner=pr.source.owner,
                    repository=pr.source.repository,
                    branch_name=source_branch.name,
                    target=BranchHead(name=target_branch.name, repository_type=repository_type),
                    strategy=strategy,
                    origin=origin,
                    title=pr.title,
                    repository_type=repository_type,
                )
                if not await self._process(
                    head, source_commit, target_commit, probe_client, criterion, observer, counters
                ):
                    return False

        # Only a full pass knows which pull requests are gone.
        for stale_id in set(self._pull_request_metadata) - live_ids:
            del self._pull_request_metadata[stale_id]
        logger.info(f"{counters.pull_requests} pull requests were processed")
        return True

    # -- per head ----------------------------------------------------------

    async def _process(
        self,
        head: Head,
        commit: Lazy[Optional[Commit]],
        target: Optional[Lazy[Optional[Commit]]],
        probe_client: IBitbucketClient,
        criterion: Optional[ICriterion],
        observer: IHeadObserver,
        counters: _PassCounters
    ) -> bool:
        """Evaluate one head and report it; returns False to stop the pass."""
        includes = observer.includes()
        if includes is not None and head.name not in includes:
            return True

        match head:
            case BranchHead():
                counters.branches += 1
                logger.info(f"Checking branch {head.name}")
            case TagHead():
                counters.tags += 1
                logger.info(f"Checking tag {head.name}")
            case PullRequestHead():
                counters.pull_requests += 1
                logger.info(
                    f"Checking PR-{head.id} from {head.repo_owner}/{head.repository} "
                    f"and branch {head.branch_name}"
                )

        probe = CommitProbe(head.name, probe_client, commit)
        try:
            matched = criterion is None or await criterion.matches(probe)
            revision = await self._resolve_revision(head, commit, target)
        except UnauthorizedError:
            raise
        except PermissionDeniedError as e:
            logger.warning(f"Skipping {head.name}: no permission to read {e.url}")
            matched, revision = False, None
        except (BitbucketRequestError, MalformedResponseError) as e:
            logger.warning(f"Skipping {head.name}: {e}")
            matched, revision = False, None

        if revision is None:
            logger.info("Skipped")
            counters.skipped += 1
            observer.witness(head, None, False)
            return not observer.is_complete()

        observer.witness(head, revision, matched)
        if matched:
            logger.info("Met criteria")
            counters.matched += 1
            if not observer.process(head, revision):
                return False
        else:
            logger.info("Does not meet criteria")
        return not observer.is_complete()

    @staticmethod
    async def _resolve_revision(
        head: Head,
        commit: Lazy[Optional[Commit]],
        target: Optional[Lazy[Optional[Commit]]]
    ) -> Optional[Revision]:
        source = await commit.get()
        if source is None or not source.hash:
            logger.warning(f"Cannot resolve the hash of the revision in {head.name}")
            return None
        if target is None:
            return Revision(head=head, commit=source)
        destination = await target.get()
        if destination is None or not destination.hash:
            logger.warning(f"Cannot resolve the target hash of {head.name}")
            return None
        return Revision(head=head, commit=source, target=destination)

    # -- pull request helpers ----------------------------------------------

    def _is_fork(self, pr: PullRequest) -> bool:
        return pr.is_fork_of(self._client.owner, self._client.repository_name)

    def _origin_of(self, pr: PullRequest) -> HeadOrigin:
        if not self._is_fork(pr):
            return DEFAULT_ORIGIN
        if pr.source.repository.lower() == self._client.repository_name.lower():
            return HeadOrigin(fork=pr.source.owner)
        return HeadOrigin(fork=pr.source.full_name)

    def _probe_client(self, pr: PullRequest) -> IBitbucketClient:
        # Server resolves fork commits through the target repository.
        if self._client.is_cloud and self._fork_client_factory is not None:
            return self._fork_client_factory(pr.source.owner, pr.source.repository)
        return self._client

    @staticmethod
    def _pull_request_name(pr_id: str, strategy: CheckoutStrategy, strategy_count: int) -> str:
        if strategy_count > 1:
            return f"PR-{pr_id}-{strategy.value.lower()}"
        return f"PR-{pr_id}"

    # -- single heads ------------------------------------------------------

    def build_key(self, head: Head) -> str:
        """Build status key of a head.

        With origin pull request branches excluded, a pull request shares the
        key of its source branch.
        """
        match head:
            case PullRequestHead(branch_name=branch_name) if self._options.exclude_origin_pr_branches:
                return f"{self._key_prefix}/{branch_name}"
            case _:
                return f"{self._key_prefix}/{head.name}"

    async def retrieve_head(self, head: Head) -> Optional[Revision]:
        """Current revision of one known head, None when it is gone."""
        match head:
            case PullRequestHead(id=pr_id):
                try:
                    pr = await self._client.get_pull_request_by_id(pr_id)
                except ResourceNotFoundError:
                    logger.warning(f"No pull request #{pr_id} in {self.full_name}")
                    return None
                if pr.source.branch is None or pr.destination.branch is None:
                    logger.warning(f"Pull request #{pr_id} in {self.full_name} lost a branch")
                    return None
                return await self._resolve_revision(
                    head, Lazy(pr.source.branch.head_commit), Lazy(pr.destination.branch.head_commit)
                )
            case TagHead(name=name):
                refs = await self._client.get_tags()
            case BranchHead(name=name):
                refs = await self._client.get_branches()

        for ref in refs:
            if ref.name == name:
                return await self._resolve_revision(head, Lazy(ref.head_commit), None)
        logger.warning(f"No {name} found in {self.full_name}")
        return None
