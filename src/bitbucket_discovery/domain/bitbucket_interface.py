"""Bitbucket API interface (port) for fetching repository data.

This is the anti-corruption layer that shields discovery from the differences
between Bitbucket Cloud and Bitbucket Server.
"""
from abc import ABC, abstractmethod
from typing import List, Optional
from bitbucket_discovery.domain.models import (
    AvatarImage,
    Branch,
    BuildStatus,
    Commit,
    PullRequest,
    Repository,
    Tag,
    Team,
    WebhookDefinition,
)


class IBitbucketClient(ABC):
    """Abstract interface for the operations discovery needs from Bitbucket.

    Every instance is scoped to one ``owner/repository``.
    """

    @property
    @abstractmethod
    def owner(self) -> str:
        pass

    @property
    @abstractmethod
    def repository_name(self) -> str:
        pass

    @property
    @abstractmethod
    def is_cloud(self) -> bool:
        pass

    @abstractmethod
    async def get_repository(self) -> Repository:
        """Fetch the repository this client is scoped to."""
        pass

    @abstractmethod
    async def get_default_branch(self) -> Optional[str]:
        """Name of the default branch, ``None`` when there is none."""
        pass

    @abstractmethod
    async def get_branches(self) -> List[Branch]:
        """All active branches, in API order."""
        pass

    @abstractmethod
    async def get_tags(self) -> List[Tag]:
        """All active tags, in API order."""
        pass

    @abstractmethod
    async def get_pull_requests(self) -> List[PullRequest]:
        """Open pull requests that still have a destination branch.

        Branch commits on both sides are resolved lazily.
        """
        pass

    @abstractmethod
    async def get_pull_request_by_id(self, pull_request_id: str) -> PullRequest:
        pass

    @abstractmethod
    async def resolve_commit(self, hash: str) -> Optional[Commit]:
        """Fetch a commit, ``None`` if no such commit exists."""
        pass

    @abstractmethod
    async def check_path_exists(self, ref: str, path: str) -> bool:
        """Whether ``path`` exists at ``ref``; inaccessible paths do not exist."""
        pass

    @abstractmethod
    async def get_team(self) -> Optional[Team]:
        """Best-effort team/project metadata for the owner."""
        pass

    @abstractmethod
    async def get_team_avatar(self) -> AvatarImage:
        """Best-effort avatar for the owner, empty placeholder on failure."""
        pass

    @abstractmethod
    async def get_repositories(self, role: Optional[str] = None) -> List[Repository]:
        pass

    @abstractmethod
    async def get_webhooks(self) -> List[WebhookDefinition]:
        pass

    @abstractmethod
    async def register_webhook(self, hook: WebhookDefinition) -> None:
        pass

    @abstractmethod
    async def update_webhook(self, hook: WebhookDefinition) -> None:
        pass

    @abstractmethod
    async def remove_webhook(self, hook: WebhookDefinition) -> None:
        pass

    @abstractmethod
    async def post_build_status(self, status: BuildStatus) -> None:
        pass

    async def is_private(self) -> bool:
        repository = await self.get_repository()
        return repository.private

    @abstractmethod
    async def close(self) -> None:
        """Release anything this client holds; the shared pool stays open."""
        pass
