"""Interfaces (ports) a discovery pass is driven through.

Callers supply an authenticator to sign requests, a criterion deciding which
heads are buildable, and an observer receiving the outcome for every head.
"""
from abc import ABC, abstractmethod
from typing import AbstractSet, Optional
from bitbucket_discovery.domain.models import ApiRequest, Head, Revision


class IAuthenticator(ABC):
    """Signs outgoing requests."""

    @property
    @abstractmethod
    def id(self) -> str:
        """Stable identifier of the credentials, safe to log and to key caches on."""
        pass

    @abstractmethod
    def configure_request(self, request: ApiRequest) -> None:
        pass


class IProbe(ABC):
    """Answers criterion questions about one head at one commit."""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    async def exists(self, path: str) -> bool:
        pass

    @abstractmethod
    async def last_modified(self) -> int:
        """Commit time in epoch milliseconds, 0 when unknown."""
        pass


class ICriterion(ABC):
    """Decides whether a head is buildable."""

    @abstractmethod
    async def matches(self, probe: IProbe) -> bool:
        pass


class IHeadObserver(ABC):
    """Receives the heads found by a discovery pass."""

    @abstractmethod
    def process(self, head: Head, revision: Revision) -> bool:
        """Record a head that met the criterion.

        Returns:
            True to continue enumerating, False to stop the pass
        """
        pass

    def witness(self, head: Head, revision: Optional[Revision], matched: bool) -> None:
        """Notified of every outcome; ``revision`` is None for skipped heads."""
        pass

    def is_complete(self) -> bool:
        """Whether the observer has everything it was looking for."""
        return False

    def includes(self) -> Optional[AbstractSet[str]]:
        """Names of the only heads of interest, or None for all heads."""
        return None
