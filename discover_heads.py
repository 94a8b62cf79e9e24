"""Main entry point for Bitbucket head discovery.

Runs one discovery pass over the configured repository and, when a hook root
URL is configured, makes sure the repository webhook is registered.
"""
import asyncio
import sys
import logging
from typing import Optional
from bitbucket_discovery.application.criteria import PathExistsCriterion
from bitbucket_discovery.application.discovery_engine import DiscoveryEngine, DiscoveryOptions
from bitbucket_discovery.application.observers import CollectingObserver
from bitbucket_discovery.application.webhook_reconciler import WebhookReconciler, WebhookRegistrar
from bitbucket_discovery.config import DiscoverySettings, load_settings
from bitbucket_discovery.domain.discovery_interfaces import IAuthenticator
from bitbucket_discovery.domain.exceptions import InvalidConfigurationError
from bitbucket_discovery.infrastructure.authenticators import (
    BasicAuthenticator,
    BearerTokenAuthenticator,
)
from bitbucket_discovery.infrastructure.client_factory import BitbucketApiFactory, ClientServices


logger = logging.getLogger(__name__)


def build_authenticator(settings: DiscoverySettings) -> Optional[IAuthenticator]:
    """Bearer token wins over basic auth; no credentials means anonymous."""
    if settings.token:
        return BearerTokenAuthenticator(settings.token)
    if settings.username and settings.app_password:
        return BasicAuthenticator(settings.username, settings.app_password)
    logger.warning("No Bitbucket credentials configured, using anonymous access")
    return None


async def main():
    """Execute a discovery pass."""
    try:
        settings = load_settings()
    except InvalidConfigurationError as e:
        logging.basicConfig(level=logging.INFO)
        logger.error(str(e))
        sys.exit(1)

    logging.basicConfig(
        level=settings.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    services = ClientServices(
        enable_cache=settings.enable_cache,
        team_cache_minutes=settings.team_cache_minutes,
        repositories_cache_minutes=settings.repositories_cache_minutes,
    )
    factory = BitbucketApiFactory(services, webhook_implementation=settings.webhook_implementation)
    authenticator = build_authenticator(settings)
    client = factory.new_client(
        settings.server_url, settings.owner, settings.repository, authenticator
    )
    engine = DiscoveryEngine(
        client,
        DiscoveryOptions(
            discover_branches=settings.discover_branches,
            discover_tags=settings.discover_tags,
            discover_pull_requests=settings.discover_pull_requests,
            origin_pr_strategies=settings.origin_pr_strategies,
            fork_pr_strategies=settings.fork_pr_strategies,
            skip_public_prs=settings.skip_public_prs,
            exclude_origin_pr_branches=settings.exclude_origin_pr_branches,
        ),
        fork_client_factory=lambda owner, repository: factory.new_client(
            settings.server_url, owner, repository, authenticator
        ),
    )
    criterion = PathExistsCriterion(settings.criterion_path) if settings.criterion_path else None
    observer = CollectingObserver()

    logger.info(f"Starting head discovery for {settings.owner}/{settings.repository}")

    try:
        if settings.hook_root_url:
            desired = WebhookReconciler(settings.committers_to_ignore).desired(
                settings.server_url,
                settings.hook_root_url,
                settings.server_version,
                settings.webhook_implementation,
            )
            action = await WebhookRegistrar().ensure(client, desired)
            logger.info(f"Webhook {action.value}")

        metrics = await engine.discover(criterion, observer)

        logger.info("=" * 50)
        logger.info("Discovery Metrics:")
        logger.info(f"  Branches processed: {metrics.branches_processed}")
        logger.info(f"  Pull requests processed: {metrics.pull_requests_processed}")
        logger.info(f"  Tags processed: {metrics.tags_processed}")
        logger.info(f"  Matched: {metrics.matched}")
        logger.info(f"  Skipped: {metrics.skipped}")
        logger.info(f"  Duration: {metrics.duration_seconds:.2f} seconds")
        logger.info("=" * 50)

        for name, revision in observer.revisions.items():
            logger.info(f"{engine.build_key(revision.head)} -> {name} @ {revision.hash}")

    except Exception as e:
        logger.error(f"Discovery failed: {e}", exc_info=True)
        sys.exit(1)
    finally:
        await client.close()
        await services.close()


if __name__ == "__main__":
    asyncio.run(main())
