"""Verify that the setup is correct before running head discovery."""
import asyncio
import os
import sys
from dotenv import load_dotenv
from bitbucket_discovery.config import load_settings
from bitbucket_discovery.domain.exceptions import BitbucketError, InvalidConfigurationError
from bitbucket_discovery.infrastructure.authenticators import (
    BasicAuthenticator,
    BearerTokenAuthenticator,
)
from bitbucket_discovery.infrastructure.client_factory import BitbucketApiFactory, ClientServices

# Load environment variables from .env or env file
load_dotenv('.env') or load_dotenv('env')


def check_environment_variables():
    """Check required environment variables."""
    print("Checking environment variables...")

    required_vars = ["BITBUCKET_OWNER", "BITBUCKET_REPOSITORY"]
    optional_vars = [
        "BITBUCKET_SERVER_URL",
        "BITBUCKET_SERVER_VERSION",
        "BITBUCKET_WEBHOOK_IMPLEMENTATION",
        "HOOK_ROOT_URL",
        "CRITERION_PATH",
    ]

    missing = [var for var in required_vars if not os.getenv(var)]
    if missing:
        print(f"❌ Missing required environment variables: {', '.join(missing)}")
        return False

    print("✅ Required environment variables set")

    for var in optional_vars:
        if os.getenv(var):
            print(f"   {var}: {os.getenv(var)}")

    return True


def check_settings():
    """Check that every setting parses."""
    print("\nChecking settings...")

    try:
        settings = load_settings()
    except InvalidConfigurationError as e:
        print(f"❌ Invalid configuration: {e}")
        return False

    target = "Bitbucket Cloud" if settings.is_cloud else settings.server_url
    print(f"✅ Settings valid, discovering {settings.owner}/{settings.repository} on {target}")
    return True


def check_credentials():
    """Check which credentials will be used, without printing them."""
    print("\nChecking credentials...")

    if os.getenv("BITBUCKET_TOKEN"):
        print("✅ Using bearer token (BITBUCKET_TOKEN)")
        return True
    if os.getenv("BITBUCKET_USERNAME") and os.getenv("BITBUCKET_APP_PASSWORD"):
        print(f"✅ Using basic auth for user {os.getenv('BITBUCKET_USERNAME')}")
        return True

    print("⚠️  No credentials set, only public repositories are reachable")
    return True  # Don't fail, anonymous access is valid


async def _fetch_repository():
    settings = load_settings()
    if settings.token:
        authenticator = BearerTokenAuthenticator(settings.token)
    elif settings.username and settings.app_password:
        authenticator = BasicAuthenticator(settings.username, settings.app_password)
    else:
        authenticator = None

    services = ClientServices(enable_cache=False)
    client = BitbucketApiFactory(services, settings.webhook_implementation).new_client(
        settings.server_url, settings.owner, settings.repository, authenticator
    )
    try:
        return await client.get_repository()
    finally:
        await services.close()


def check_repository_access():
    """Check the repository can be read with the configured credentials."""
    print("\nChecking repository access...")

    try:
        repository = asyncio.run(_fetch_repository())
    except (BitbucketError, InvalidConfigurationError) as e:
        print(f"❌ Failed to read repository: {e}")
        return False

    visibility = "private" if repository.private else "public"
    print(f"✅ Repository {repository.full_name} is reachable ({repository.scm.value}, {visibility})")
    return True


def main():
    """Run all verification checks."""
    print("=" * 60)
    print("Bitbucket Head Discovery - Setup Verification")
    print("=" * 60)

    checks = [
        ("Environment Variables", check_environment_variables),
        ("Settings", check_settings),
        ("Credentials", check_credentials),
        ("Repository Access", check_repository_access),
    ]

    results = {}
    for name, check_func in checks:
        try:
            results[name] = check_func()
        except Exception as e:
            print(f"❌ {name} check failed with exception: {e}")
            results[name] = False

    print("\n" + "=" * 60)
    print("Verification Summary")
    print("=" * 60)

    for name, passed in results.items():
        status = "✅ PASS" if passed else "❌ FAIL"
        print(f"{status}: {name}")

    if all(results.values()):
        print("\n✅ All checks passed! Ready to run discovery.")
        print("\nNext steps:")
        print("  python discover_heads.py")
        sys.exit(0)
    else:
        print("\n❌ Some checks failed. Please fix the issues above.")
        print("\nCommon solutions:")
        print("  - Set the repository: export BITBUCKET_OWNER=acme BITBUCKET_REPOSITORY=widgets")
        print("  - Set credentials: export BITBUCKET_TOKEN=your_token")
        print("  - Point at a server: export BITBUCKET_SERVER_URL=https://bitbucket.example.com")
        sys.exit(1)


if __name__ == "__main__":
    main()
