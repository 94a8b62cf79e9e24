"""Publishing build results as Bitbucket commit statuses."""
import logging
from enum import Enum
from typing import Optional
from yarl import URL
from bitbucket_discovery.application.discovery_engine import DiscoveryEngine
from bitbucket_discovery.domain.bitbucket_interface import IBitbucketClient
from bitbucket_discovery.domain.exceptions import InvalidConfigurationError
from bitbucket_discovery.domain.models import BuildState, BuildStatus, Revision


logger = logging.getLogger(__name__)


class BuildResult(Enum):
    """Outcome of a build as reported by the orchestrator."""
    SUCCESS = "SUCCESS"
    UNSTABLE = "UNSTABLE"
    FAILURE = "FAILURE"
    NOT_BUILT = "NOT_BUILT"
    ABORTED = "ABORTED"


def check_build_url(url: str, cloud: bool) -> str:
    """Returns ``url`` if Bitbucket will accept it as a build link.

    Raises:
        InvalidConfigurationError: For localhost, or a bare hostname on Cloud
    """
    host = URL(url).host
    if not host:
        raise InvalidConfigurationError(f"Bad build URL: {url}")
    if host == "localhost":
        raise InvalidConfigurationError("Build URL cannot start with http://localhost")
    if cloud and "." not in host:
        raise InvalidConfigurationError(
            "Please use a fully qualified name or an IP address for the build URL, "
            "this is required by Bitbucket cloud"
        )
    return url


def to_state(result: Optional[BuildResult], cloud: bool) -> BuildState:
    """Map a build result onto Bitbucket states; None means still running."""
    if result is None:
        return BuildState.INPROGRESS
    if result == BuildResult.SUCCESS:
        return BuildState.SUCCESSFUL
    if result == BuildResult.NOT_BUILT:
        # Server has no STOPPED state.
        return BuildState.STOPPED if cloud else BuildState.SUCCESSFUL
    return BuildState.FAILED


_DEFAULT_DESCRIPTIONS = {
    None: "The build is in progress...",
    BuildResult.SUCCESS: "This commit looks good.",
    BuildResult.UNSTABLE: "This commit has test failures.",
    BuildResult.FAILURE: "There was a failure building this commit.",
    BuildResult.NOT_BUILT: "This commit was not built (probably the build was skipped)",
    BuildResult.ABORTED: "Something is wrong with the build of this commit.",
}


class BuildStatusNotifier:
    """Posts the status of a build of a discovered revision."""

    def __init__(self, engine: DiscoveryEngine):
        self._engine = engine

    async def notify(
        self,
        client: IBitbucketClient,
        revision: Revision,
        result: Optional[BuildResult],
        build_url: str,
        name: str,
        description: Optional[str] = None
    ) -> Optional[BuildStatus]:
        """Publish a status for the source commit of ``revision``.

        Args:
            client: Client of the repository the commit lives in
            revision: Revision that was built
            result: Build outcome, None while the build is running
            build_url: Link back to the build
            name: Display name of the build
            description: Overrides the default description of the result

        Returns:
            The posted BuildStatus, or None when the build URL is unusable
        """
        if not revision.hash:
            logger.warning(f"No commit hash for {revision.head.name}, not notifying")
            return None
        try:
            check_build_url(build_url, client.is_cloud)
        except InvalidConfigurationError as e:
            logger.warning(f"Commit status notifications are disabled: {e}")
            return None

        status = BuildStatus(
            hash=revision.hash,
            description=description or _DEFAULT_DESCRIPTIONS[result],
            state=to_state(result, client.is_cloud),
            url=build_url,
            key=self._engine.build_key(revision.head),
            name=name,
        )
        await client.post_build_status(status)
        logger.info(f"Build result notified for {revision.head.name}: {status.state.value}")
        return status
