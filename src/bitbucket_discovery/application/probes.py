"""Probes answering criterion questions against a head's commit."""
import logging
from typing import Optional
from bitbucket_discovery.domain.bitbucket_interface import IBitbucketClient
from bitbucket_discovery.domain.discovery_interfaces import IProbe
from bitbucket_discovery.domain.lazy import Lazy
from bitbucket_discovery.domain.models import Commit


logger = logging.getLogger(__name__)


class CommitProbe(IProbe):
    """Probe over a lazily resolved commit.

    Nothing is fetched until a criterion asks a question. An unresolvable
    commit answers "unknown": paths do not exist and the timestamp is 0.
    """

    def __init__(self, name: str, client: IBitbucketClient, commit: Lazy[Optional[Commit]]):
        self._name = name
        self._client = client
        self._commit = commit

    @property
    def name(self) -> str:
        return self._name

    async def _hash(self) -> Optional[str]:
        commit = await self._commit.get()
        if commit is None or not commit.hash:
            logger.warning(f"Cannot resolve the hash of the revision in {self._name}")
            return None
        return commit.hash

    async def exists(self, path: str) -> bool:
        hash = await self._hash()
        if hash is None:
            return False
        return await self._client.check_path_exists(hash, path)

    async def last_modified(self) -> int:
        commit = await self._commit.get()
        if commit is None or not commit.hash:
            logger.warning(f"Cannot resolve the hash of the revision in {self._name}")
            return 0
        if commit.timestamp_millis:
            return commit.timestamp_millis
        resolved = await self._client.resolve_commit(commit.hash)
        return resolved.timestamp_millis if resolved is not None else 0
