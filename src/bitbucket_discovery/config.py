"""Settings read from the environment (and a ``.env`` or ``env`` file)."""
import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple
from dotenv import load_dotenv
from bitbucket_discovery.domain.exceptions import InvalidConfigurationError
from bitbucket_discovery.domain.models import (
    CLOUD_SERVER_URL,
    CheckoutStrategy,
    ServerVersion,
    WebhookKind,
)

_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off")

_WEBHOOK_IMPLEMENTATIONS = {
    "PLUGIN": WebhookKind.PLUGIN_SERVER,
    "NATIVE": WebhookKind.NATIVE_SERVER,
}


@dataclass(frozen=True)
class DiscoverySettings:
    """Everything the entry script needs to run a discovery pass."""
    server_url: str
    owner: str
    repository: str
    token: Optional[str] = None
    username: Optional[str] = None
    app_password: Optional[str] = None
    enable_cache: bool = True
    team_cache_minutes: int = 360
    repositories_cache_minutes: int = 180
    server_version: ServerVersion = ServerVersion.VERSION_7
    webhook_implementation: WebhookKind = WebhookKind.PLUGIN_SERVER
    hook_root_url: Optional[str] = None
    committers_to_ignore: Optional[str] = None
    discover_branches: bool = True
    discover_tags: bool = False
    discover_pull_requests: bool = True
    origin_pr_strategies: Tuple[CheckoutStrategy, ...] = (CheckoutStrategy.MERGE,)
    fork_pr_strategies: Tuple[CheckoutStrategy, ...] = (CheckoutStrategy.MERGE,)
    exclude_origin_pr_branches: bool = False
    skip_public_prs: bool = False
    criterion_path: Optional[str] = None
    log_level: str = "INFO"

    @property
    def is_cloud(self) -> bool:
        return self.server_url.rstrip("/") == CLOUD_SERVER_URL


def _bool(environ: Mapping[str, str], name: str, default: bool) -> bool:
    value = environ.get(name)
    if value is None or value.strip() == "":
        return default
    if value.strip().lower() in _TRUE:
        return True
    if value.strip().lower() in _FALSE:
        return False
    raise InvalidConfigurationError(f"{name} must be true or false, got {value!r}")


def _minutes(environ: Mapping[str, str], name: str, default: int) -> int:
    value = environ.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        minutes = int(value)
    except ValueError:
        raise InvalidConfigurationError(f"{name} must be a whole number of minutes, got {value!r}")
    if minutes < 0:
        raise InvalidConfigurationError(f"{name} must not be negative")
    return minutes


def _strategies(environ: Mapping[str, str], name: str) -> Tuple[CheckoutStrategy, ...]:
    value = environ.get(name) or "MERGE"
    strategies = []
    for item in value.split(","):
        item = item.strip().upper()
        if not item:
            continue
        try:
            strategy = CheckoutStrategy[item]
        except KeyError:
            raise InvalidConfigurationError(f"{name} has unknown strategy {item!r}")
        if strategy not in strategies:
            strategies.append(strategy)
    return tuple(strategies)


def _optional(environ: Mapping[str, str], name: str) -> Optional[str]:
    value = environ.get(name)
    if value is None or value.strip() == "":
        return None
    return value.strip()


def load_settings(environ: Optional[Mapping[str, str]] = None) -> DiscoverySettings:
    """Build settings from ``environ``, defaulting to the process environment.

    Raises:
        InvalidConfigurationError: Naming the first invalid variable
    """
    if environ is None:
        load_dotenv('.env') or load_dotenv('env')
        environ = os.environ

    owner = _optional(environ, "BITBUCKET_OWNER")
    repository = _optional(environ, "BITBUCKET_REPOSITORY")
    if not owner:
        raise InvalidConfigurationError("BITBUCKET_OWNER environment variable is required")
    if not repository:
        raise InvalidConfigurationError("BITBUCKET_REPOSITORY environment variable is required")

    version_name = (_optional(environ, "BITBUCKET_SERVER_VERSION") or "VERSION_7").upper()
    try:
        server_version = ServerVersion[version_name]
    except KeyError:
        raise InvalidConfigurationError(f"BITBUCKET_SERVER_VERSION has unknown value {version_name!r}")

    implementation_name = (_optional(environ, "BITBUCKET_WEBHOOK_IMPLEMENTATION") or "PLUGIN").upper()
    if implementation_name not in _WEBHOOK_IMPLEMENTATIONS:
        raise InvalidConfigurationError(
            f"BITBUCKET_WEBHOOK_IMPLEMENTATION must be PLUGIN or NATIVE, got {implementation_name!r}"
        )

    log_level = (_optional(environ, "LOG_LEVEL") or "INFO").upper()
    if not isinstance(logging.getLevelName(log_level), int):
        raise InvalidConfigurationError(f"LOG_LEVEL has unknown level {log_level!r}")

    return DiscoverySettings(
        server_url=(_optional(environ, "BITBUCKET_SERVER_URL") or CLOUD_SERVER_URL).rstrip("/"),
        owner=owner,
        repository=repository,
        token=_optional(environ, "BITBUCKET_TOKEN"),
        username=_optional(environ, "BITBUCKET_USERNAME"),
        app_password=_optional(environ, "BITBUCKET_APP_PASSWORD"),
        enable_cache=_bool(environ, "BITBUCKET_ENABLE_CACHE", True),
        team_cache_minutes=_minutes(environ, "BITBUCKET_TEAM_CACHE_MINUTES", 360),
        repositories_cache_minutes=_minutes(environ, "BITBUCKET_REPOSITORIES_CACHE_MINUTES", 180),
        server_version=server_version,
        webhook_implementation=_WEBHOOK_IMPLEMENTATIONS[implementation_name],
        hook_root_url=_optional(environ, "HOOK_ROOT_URL"),
        committers_to_ignore=_optional(environ, "HOOK_COMMITTERS_TO_IGNORE"),
        discover_branches=_bool(environ, "DISCOVER_BRANCHES", True),
        discover_tags=_bool(environ, "DISCOVER_TAGS", False),
        discover_pull_requests=_bool(environ, "DISCOVER_PULL_REQUESTS", True),
        origin_pr_strategies=_strategies(environ, "ORIGIN_PR_STRATEGIES"),
        fork_pr_strategies=_strategies(environ, "FORK_PR_STRATEGIES"),
        exclude_origin_pr_branches=_bool(environ, "EXCLUDE_ORIGIN_PR_BRANCHES", False),
        skip_public_prs=_bool(environ, "SKIP_PUBLIC_PRS", False),
        criterion_path=_optional(environ, "CRITERION_PATH"),
        log_level=log_level,
    )
