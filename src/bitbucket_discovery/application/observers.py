"""Stock head observers."""
from typing import AbstractSet, Dict, Iterable, List, Optional, Tuple
from bitbucket_discovery.domain.discovery_interfaces import IHeadObserver
from bitbucket_discovery.domain.models import Head, Revision


class CollectingObserver(IHeadObserver):
    """Collects matching heads, optionally stopping after ``limit`` matches.

    Every outcome, including skipped heads, is kept in ``witnessed``.
    """

    def __init__(self, limit: Optional[int] = None):
        self._limit = limit
        self.revisions: Dict[str, Revision] = {}
        self.witnessed: List[Tuple[Head, Optional[Revision], bool]] = []

    def witness(self, head: Head, revision: Optional[Revision], matched: bool) -> None:
        self.witnessed.append((head, revision, matched))

    def process(self, head: Head, revision: Revision) -> bool:
        self.revisions[head.name] = revision
        return True

    def is_complete(self) -> bool:
        return self._limit is not None and len(self.revisions) >= self._limit


class NamedHeadsObserver(CollectingObserver):
    """Looks for specific heads only and completes once all of them are found."""

    def __init__(self, names: Iterable[str]):
        super().__init__()
        self._names = frozenset(names)

    def includes(self) -> Optional[AbstractSet[str]]:
        return self._names

    def is_complete(self) -> bool:
        return self._names.issubset(self.revisions)
