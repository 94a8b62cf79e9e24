"""Tests for domain models and lazy values."""
import dataclasses
import pytest
from bitbucket_discovery.domain.exceptions import BitbucketRequestError
from bitbucket_discovery.domain.lazy import Lazy, LazySequence
from bitbucket_discovery.domain.models import (
    Branch,
    Commit,
    PullRequest,
    PullRequestAuthor,
    PullRequestEndpoint,
    Repository,
    RepositoryType,
    Tag,
    parse_timestamp_millis,
)


def test_repository_creation():
    """Test creating an immutable Repository entity."""
    repo = Repository(
        owner="acme",
        name="widgets",
        scm=RepositoryType.GIT,
        private=False,
        default_branch="main",
        clone_links=(("https", "https://bitbucket.org/acme/widgets.git"),),
    )

    assert repo.full_name == "acme/widgets"
    assert repo.clone_link("https") == "https://bitbucket.org/acme/widgets.git"
    assert repo.clone_link("ssh") is None
    with pytest.raises(dataclasses.FrozenInstanceError):
        repo.name = "gadgets"


def test_repository_type_defaults_to_git():
    """Test unknown scm identifiers map to git."""
    assert RepositoryType.from_string("hg") is RepositoryType.MERCURIAL
    assert RepositoryType.from_string(None) is RepositoryType.GIT
    assert RepositoryType.from_string("svn") is RepositoryType.GIT


@pytest.mark.asyncio
async def test_branch_head_commit_from_inline_fields():
    """Test a branch without a thunk describes its commit from inline data."""
    branch = Branch(name="main", raw_node="abc123", author="Ann", message="init", timestamp_millis=5)

    assert await branch.head_commit() == Commit("abc123", "Ann", "init", 5)


@pytest.mark.asyncio
async def test_branch_head_commit_uses_thunk_once():
    """Test a branch's commit thunk is evaluated at most once."""
    calls = 0

    async def load():
        nonlocal calls
        calls += 1
        return Commit("def456", timestamp_millis=10)

    branch = Branch(name="feature", raw_node="def456", commit_thunk=Lazy(load))

    assert (await branch.head_commit()).hash == "def456"
    assert (await branch.head_commit()).hash == "def456"
    assert calls == 1


def test_tag_prefers_creation_timestamp():
    """Test annotated tags report their own creation time."""
    assert Tag(name="v1", timestamp_millis=5, created_millis=9).effective_timestamp_millis == 9
    assert Tag(name="v2", timestamp_millis=5).effective_timestamp_millis == 5


def test_pull_request_fork_detection_ignores_case():
    """Test forks are detected by source repository, case-insensitively."""
    def pr(owner, repository):
        return PullRequest(
            id="1",
            title="t",
            author=PullRequestAuthor(),
            source=PullRequestEndpoint(owner, repository, Branch(name="feature")),
            destination=PullRequestEndpoint("acme", "widgets", Branch(name="main")),
        )

    assert not pr("ACME", "Widgets").is_fork_of("acme", "widgets")
    assert pr("alice", "widgets").is_fork_of("acme", "widgets")


def test_parse_timestamp_millis():
    """Test ISO timestamps parse to epoch milliseconds."""
    assert parse_timestamp_millis("1970-01-01T00:00:01+00:00") == 1000
    assert parse_timestamp_millis("1970-01-01T00:00:02Z") == 2000
    assert parse_timestamp_millis("1970-01-01T00:00:03") == 3000
    assert parse_timestamp_millis("yesterday") == 0
    assert parse_timestamp_millis(None) == 0


@pytest.mark.asyncio
async def test_lazy_failure_is_retried():
    """Test a failed thunk is evaluated again on the next get."""
    attempts = 0

    async def load():
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise BitbucketRequestError(500, "boom")
        return "ok"

    lazy = Lazy(load)
    with pytest.raises(BitbucketRequestError):
        await lazy.get()
    assert not lazy.evaluated
    assert await lazy.get() == "ok"
    assert lazy.evaluated


@pytest.mark.asyncio
async def test_lazy_sequence_defers_creation():
    """Test the backing sequence is only created when iterated."""
    created = 0

    async def factory():
        nonlocal created
        created += 1
        return ["a", "b"]

    sequence = LazySequence(factory)
    assert created == 0
    assert not sequence.created

    assert [item async for item in sequence] == ["a", "b"]
    assert [item async for item in sequence] == ["a", "b"]
    assert created == 1


def test_request_error_truncates_body():
    """Test request errors keep only an excerpt of the body."""
    error = BitbucketRequestError(500, "boom", "https://x", "e" * 2000)

    assert error.status_code == 500
    assert error.url == "https://x"
    assert len(error.body) == 500
