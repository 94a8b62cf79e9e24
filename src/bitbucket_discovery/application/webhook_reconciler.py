"""Desired webhook computation and reconciliation against registered hooks."""
import logging
from dataclasses import replace
from enum import Enum
from typing import List, Optional, Tuple
from urllib.parse import quote
from bitbucket_discovery.domain.bitbucket_interface import IBitbucketClient
from bitbucket_discovery.domain.models import (
    CLOUD_SERVER_URL,
    ServerVersion,
    WebhookDefinition,
    WebhookKind,
)


logger = logging.getLogger(__name__)

HOOK_PATH = "bitbucket-scmsource-hook/notify"
HOOK_DESCRIPTION = "Jenkins hook"

CLOUD_EVENTS: Tuple[str, ...] = (
    "repo:push",
    "pullrequest:created",
    "pullrequest:updated",
    "pullrequest:fulfilled",
    "pullrequest:rejected",
)

NATIVE_SERVER_EVENTS_V7: Tuple[str, ...] = (
    "repo:refs_changed",
    "pr:opened",
    "pr:merged",
    "pr:declined",
    "pr:deleted",
    # 5.10 and above
    "pr:modified",
    "pr:reviewer:updated",
    # 7.x and above
    "pr:from_ref_updated",
)
NATIVE_SERVER_EVENTS_V6 = NATIVE_SERVER_EVENTS_V7[:7]
NATIVE_SERVER_EVENTS_V5 = NATIVE_SERVER_EVENTS_V7[:5]


def native_server_events(server_version: Optional[ServerVersion]) -> Tuple[str, ...]:
    """Events a native Server webhook subscribes to for a version band.

    VERSION_6 shares the 5.10 list; unknown versions get the newest list.
    """
    if server_version == ServerVersion.VERSION_5:
        return NATIVE_SERVER_EVENTS_V5
    if server_version in (ServerVersion.VERSION_5_10, ServerVersion.VERSION_6):
        return NATIVE_SERVER_EVENTS_V6
    return NATIVE_SERVER_EVENTS_V7


def hook_url(root_url: str) -> str:
    if not root_url.endswith("/"):
        root_url += "/"
    return root_url + HOOK_PATH


def native_hook_url(server_url: str, root_url: str) -> str:
    return f"{hook_url(root_url)}?server_url={quote(server_url, safe='')}"


class WebhookReconciler:
    """Decides what the registered webhook should look like.

    Pure: returns definitions and decisions, the caller performs API calls.
    """

    def __init__(self, committers_to_ignore: Optional[str] = None):
        self._committers_to_ignore = committers_to_ignore

    def desired(
        self,
        server_url: str,
        root_url: str,
        server_version: Optional[ServerVersion] = None,
        implementation: WebhookKind = WebhookKind.PLUGIN_SERVER
    ) -> WebhookDefinition:
        """Webhook definition for a target endpoint.

        Args:
            server_url: Bitbucket endpoint the hook lives on
            root_url: Public root URL of the receiving service
            server_version: Server version band, ignored on Cloud
            implementation: Native or plugin hooks, ignored on Cloud

        Returns:
            The desired WebhookDefinition
        """
        if server_url.rstrip("/") == CLOUD_SERVER_URL:
            return WebhookDefinition(
                url=hook_url(root_url),
                events=CLOUD_EVENTS,
                active=True,
                description=HOOK_DESCRIPTION,
                kind=WebhookKind.CLOUD,
            )
        if implementation == WebhookKind.NATIVE_SERVER:
            return WebhookDefinition(
                url=native_hook_url(server_url, root_url),
                events=native_server_events(server_version),
                active=True,
                description=HOOK_DESCRIPTION,
                kind=WebhookKind.NATIVE_SERVER,
            )
        return WebhookDefinition(
            url=hook_url(root_url),
            active=True,
            description=HOOK_DESCRIPTION,
            kind=WebhookKind.PLUGIN_SERVER,
            committers_to_ignore=self._committers_to_ignore,
        )

    @staticmethod
    def needs_update(existing: WebhookDefinition, desired: WebhookDefinition) -> bool:
        if existing.url != desired.url:
            return True
        if not set(desired.events).issubset(existing.events):
            return True
        if desired.kind == WebhookKind.PLUGIN_SERVER:
            return (existing.committers_to_ignore or "").strip() != (
                desired.committers_to_ignore or ""
            ).strip()
        return False

    @staticmethod
    def merge(existing: WebhookDefinition, desired: WebhookDefinition) -> WebhookDefinition:
        """The update to send: desired settings, existing identity, union of events."""
        return replace(
            desired,
            events=tuple(sorted(set(existing.events) | set(desired.events))),
            uuid=existing.uuid,
        )


class WebhookAction(Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


class WebhookRegistrar:
    """Applies reconciliation decisions through an API client."""

    def __init__(self, reconciler: Optional[WebhookReconciler] = None):
        self._reconciler = reconciler or WebhookReconciler()

    @staticmethod
    def _find(hooks: List[WebhookDefinition], desired: WebhookDefinition) -> Optional[WebhookDefinition]:
        for hook in hooks:
            if hook.url == desired.url:
                return hook
        for hook in hooks:
            if hook.description == desired.description:
                return hook
        return None

    async def ensure(self, client: IBitbucketClient, desired: WebhookDefinition) -> WebhookAction:
        full_name = f"{client.owner}/{client.repository_name}"
        existing = self._find(await client.get_webhooks(), desired)
        if existing is None:
            logger.info(f"Registering hook for {full_name}")
            await client.register_webhook(desired)
            return WebhookAction.CREATED
        if self._reconciler.needs_update(existing, desired):
            logger.info(f"Updating hook for {full_name}")
            await client.update_webhook(self._reconciler.merge(existing, desired))
            return WebhookAction.UPDATED
        logger.debug(f"Hook for {full_name} is up to date")
        return WebhookAction.UNCHANGED

    async def remove(self, client: IBitbucketClient, url: str) -> int:
        """Delete every hook pointing at ``url``; returns how many were removed."""
        removed = 0
        for hook in await client.get_webhooks():
            if hook.url == url:
                logger.info(f"Removing hook {hook.uuid} from {client.owner}/{client.repository_name}")
                await client.remove_webhook(hook)
                removed += 1
        return removed
