"""Stock criteria deciding which heads are buildable."""
from typing import Sequence
from bitbucket_discovery.domain.discovery_interfaces import ICriterion, IProbe


class AlwaysMatches(ICriterion):
    async def matches(self, probe: IProbe) -> bool:
        return True


class PathExistsCriterion(ICriterion):
    """Matches heads whose commit contains ``path`` (e.g. a ``Jenkinsfile``)."""

    def __init__(self, path: str):
        self._path = path

    @property
    def path(self) -> str:
        return self._path

    async def matches(self, probe: IProbe) -> bool:
        return await probe.exists(self._path)


class ModifiedSinceCriterion(ICriterion):
    """Matches heads whose last commit is not older than ``since_millis``."""

    def __init__(self, since_millis: int):
        self._since_millis = since_millis

    async def matches(self, probe: IProbe) -> bool:
        return await probe.last_modified() >= self._since_millis


class AllOf(ICriterion):
    """Matches when every criterion matches; stops at the first miss."""

    def __init__(self, criteria: Sequence[ICriterion]):
        self._criteria = list(criteria)

    async def matches(self, probe: IProbe) -> bool:
        for criterion in self._criteria:
            if not await criterion.matches(probe):
                return False
        return True
