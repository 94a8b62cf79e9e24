"""Tests for the Bitbucket Server API client."""
import pytest
from bitbucket_discovery.domain.exceptions import InvalidConfigurationError, UnauthorizedError
from bitbucket_discovery.domain.models import (
    BuildState,
    BuildStatus,
    WebhookDefinition,
    WebhookKind,
)
from bitbucket_discovery.infrastructure.authenticators import BasicAuthenticator
from bitbucket_discovery.infrastructure.client_factory import BitbucketApiFactory
from bitbucket_discovery.infrastructure.server_client import BitbucketServerApiClient


SERVER = "https://git.acme.test"
BASE = f"{SERVER}/rest/api/1.0/projects/PRJ/repos/repo"


def server_ref(name, hash):
    return {"id": f"refs/heads/{name}", "displayId": name, "latestCommit": hash}


def repository_payload(slug="repo"):
    return {"slug": slug, "project": {"key": "PRJ"}, "scmId": "git", "public": False}


@pytest.fixture
def client(factory):
    return factory.new_client(SERVER + "/", "PRJ", "repo", BasicAuthenticator("ann", "pw"))


@pytest.fixture
def native_client(services):
    async def no_sleep(seconds):
        pass

    factory = BitbucketApiFactory(services, WebhookKind.NATIVE_SERVER, sleep=no_sleep)
    return factory.new_client(SERVER, "PRJ", "repo", BasicAuthenticator("ann", "pw"))


def test_factory_builds_server_client(client):
    """Test a non-Cloud URL yields a Server client with the plugin hooks by default."""
    assert isinstance(client, BitbucketServerApiClient)
    assert not client.is_cloud
    assert client.webhook_implementation is WebhookKind.PLUGIN_SERVER
    assert str(client.repository_url) == BASE


def test_server_rejects_cloud_webhooks(services):
    """Test Cloud webhooks cannot be configured for a Server client."""
    with pytest.raises(InvalidConfigurationError):
        BitbucketServerApiClient(SERVER, "PRJ", "repo", None, services, WebhookKind.CLOUD)


@pytest.mark.asyncio
async def test_branches_follow_start_and_limit(client, session):
    """Test pages are requested by start offset until the last page."""
    session.add("GET", f"{BASE}/branches?start=0&limit=100", json={
        "values": [server_ref("main", "abc123")],
        "isLastPage": False,
        "nextPageStart": 1,
    })
    session.add("GET", f"{BASE}/branches?start=1&limit=100", json={
        "values": [server_ref("dev", "d1")],
        "isLastPage": True,
    })

    branches = await client.get_branches()

    assert [(b.name, b.raw_node) for b in branches] == [("main", "abc123"), ("dev", "d1")]
    assert session.requests[0].headers["Authorization"].startswith("Basic ")


@pytest.mark.asyncio
async def test_branch_commit_details_are_lazy(client, session):
    """Test branch timestamps come from a commit lookup made on demand."""
    session.add("GET", f"{BASE}/branches?start=0&limit=100", json={
        "values": [server_ref("main", "abc123")], "isLastPage": True,
    })
    session.add("GET", f"{BASE}/commits/abc123", json={
        "id": "abc123",
        "author": {"name": "Ann", "emailAddress": "ann@acme.test"},
        "message": "init",
        "authorTimestamp": 1700000000000,
    })

    branch = (await client.get_branches())[0]
    assert len(session.requests) == 1

    commit = await branch.head_commit()

    assert commit.author == "Ann <ann@acme.test>"
    assert commit.timestamp_millis == 1700000000000


@pytest.mark.asyncio
async def test_pull_requests_are_mapped(client, session):
    """Test open pull requests map refs, author and link."""
    session.add("GET", f"{BASE}/pull-requests?state=OPEN&start=0&limit=100", json={
        "values": [{
            "id": 7,
            "title": "Add widgets",
            "author": {"user": {"name": "alice", "displayName": "Alice", "emailAddress": "a@x"}},
            "fromRef": {
                "displayId": "feature",
                "latestCommit": "f1",
                "repository": {"slug": "repo", "project": {"key": "~ALICE"}},
            },
            "toRef": {
                "displayId": "main",
                "latestCommit": "abc123",
                "repository": {"slug": "repo", "project": {"key": "PRJ"}},
            },
            "links": {"self": [{"href": f"{SERVER}/projects/PRJ/repos/repo/pull-requests/7"}]},
        }],
        "isLastPage": True,
    })

    pull_request = (await client.get_pull_requests())[0]

    assert pull_request.id == "7"
    assert pull_request.author.identifier == "alice"
    assert pull_request.author.email == "a@x"
    assert pull_request.source.branch.name == "feature"
    assert pull_request.destination.branch.raw_node == "abc123"
    assert pull_request.is_fork_of("PRJ", "repo")
    assert pull_request.link.endswith("/pull-requests/7")


@pytest.mark.asyncio
async def test_empty_repository_has_no_default_branch(client, session):
    """Test a 204 from the default branch resource means no default branch."""
    session.add("GET", f"{BASE}/branches/default", status=204)

    assert await client.get_default_branch() is None


@pytest.mark.asyncio
async def test_default_branch(client, session):
    """Test the default branch display id is returned."""
    session.add("GET", f"{BASE}/branches/default", json={"displayId": "develop"})

    assert await client.get_default_branch() == "develop"


@pytest.mark.asyncio
async def test_check_path_exists_uses_raw_resource(client, session):
    """Test path probes address the raw resource at a given ref."""
    session.add("HEAD", f"{BASE}/raw/Jenkinsfile?at=abc123", status=200)

    assert await client.check_path_exists("abc123", "Jenkinsfile")


@pytest.mark.asyncio
async def test_check_path_exists_unauthorized(client, session):
    """Test a 401 path check raises UnauthorizedError."""
    session.add("HEAD", f"{BASE}/raw/Jenkinsfile?at=abc123", status=401)

    with pytest.raises(UnauthorizedError):
        await client.check_path_exists("abc123", "Jenkinsfile")


@pytest.mark.asyncio
async def test_repositories_ignore_role(client, session):
    """Test the project's repositories are listed sorted, regardless of role."""
    session.add("GET", f"{SERVER}/rest/api/1.0/projects/PRJ/repos?start=0&limit=100", json={
        "values": [repository_payload("zeta"), repository_payload("alpha")],
        "isLastPage": True,
    })

    repositories = await client.get_repositories("admin")

    assert [r.name for r in repositories] == ["alpha", "zeta"]
    assert all(r.private for r in repositories)


@pytest.mark.asyncio
async def test_plugin_webhooks(client, session):
    """Test the post-webhooks plugin resource and payload shape."""
    url = f"{SERVER}/rest/webhook/1.0/projects/PRJ/repos/repo/configurations"
    session.add("GET", url, json=[{
        "id": 3,
        "title": "Jenkins hook",
        "url": "https://ci.acme.test/bitbucket-scmsource-hook/notify",
        "enabled": True,
        "committersToIgnore": "bot",
    }])
    session.add("PUT", f"{url}/3", json={})

    hooks = await client.get_webhooks()
    await client.update_webhook(hooks[0])

    assert hooks[0].uuid == "3"
    assert hooks[0].kind is WebhookKind.PLUGIN_SERVER
    assert hooks[0].committers_to_ignore == "bot"
    assert session.requests[1].json == {
        "title": "Jenkins hook",
        "url": "https://ci.acme.test/bitbucket-scmsource-hook/notify",
        "enabled": True,
        "committersToIgnore": "bot",
    }


@pytest.mark.asyncio
async def test_native_webhooks(native_client, session):
    """Test the native webhook resource is paginated and receives event lists."""
    url = f"{BASE}/webhooks"
    session.add("GET", f"{url}?start=0&limit=100", json={
        "values": [{"id": 12, "name": "Jenkins hook", "url": "https://ci/x", "events": ["repo:refs_changed"]}],
        "isLastPage": True,
    })
    session.add("POST", url, status=201, json={"id": 13})
    session.add("DELETE", f"{url}/12", status=204)

    hooks = await native_client.get_webhooks()
    await native_client.register_webhook(WebhookDefinition(
        url="https://ci/y", events=("repo:refs_changed",), description="Jenkins hook",
        kind=WebhookKind.NATIVE_SERVER,
    ))
    await native_client.remove_webhook(hooks[0])

    assert hooks[0].uuid == "12"
    assert hooks[0].events == ("repo:refs_changed",)
    post = [r for r in session.requests if r.method == "POST"][0]
    assert post.json["name"] == "Jenkins hook"
    assert post.json["events"] == ["repo:refs_changed"]
    assert session.urls("DELETE") == [f"{url}/12"]


@pytest.mark.asyncio
async def test_post_build_status(client, session):
    """Test build statuses go to the build-status resource."""
    url = f"{SERVER}/rest/build-status/1.0/commits/abc123"
    session.add("POST", url, status=204)

    await client.post_build_status(BuildStatus(
        hash="abc123", description="Building", state=BuildState.INPROGRESS,
        url="https://ci.acme.test/job/1", key="PRJ/repo/main", name="#1",
    ))

    assert session.urls("POST") == [url]
    assert session.requests[0].json["state"] == "INPROGRESS"
