import os
import subprocess
import tempfile

import pytest

from repogit.client import (
    ENV_ATTEMPTS_COUNT,
    ENV_RETRY_DURATION,
    ENV_RETRY_FACTOR,
    ENV_RETRY_MAX_DURATION,
    CommitOptions,
    EventHandlers,
    GitClient,
    GitError,
    InvalidRepoURLError,
    RetryPolicy,
    check_repo,
    new_client,
)
from repogit.urls import is_commit_sha, is_truncated_commit_sha


@pytest.fixture(autouse=True)
def git_environment(monkeypatch):
    settings = {
        "GIT_AUTHOR_NAME": "Test User",
        "GIT_AUTHOR_EMAIL": "test@example.com",
        "GIT_COMMITTER_NAME": "Test User",
        "GIT_COMMITTER_EMAIL": "test@example.com",
        "GIT_CONFIG_NOSYSTEM": "1",
        "GIT_CONFIG_GLOBAL": os.devnull,
        "GIT_CONFIG_COUNT": "1",
        "GIT_CONFIG_KEY_0": "init.defaultBranch",
        "GIT_CONFIG_VALUE_0": "main",
    }
    for key, value in settings.items():
        monkeypatch.setenv(key, value)
    monkeypatch.delenv(ENV_ATTEMPTS_COUNT, raising=False)


@pytest.fixture
def roots(tmp_path, monkeypatch):
    root_dir = tmp_path / "roots"
    root_dir.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(root_dir))
    return root_dir


def _git(cwd, *args):
    return subprocess.run(
        ["git", *args], cwd=cwd, check=True, capture_output=True, text=True
    ).stdout


def _make_repo(path):
    path.mkdir(parents=True, exist_ok=True)
    _git(path, "init")
    _git(path, "symbolic-ref", "HEAD", "refs/heads/main")
    _git(path, "commit", "-m", "Initial commit", "--allow-empty")
    return path


def _head(path):
    return _git(path, "rev-parse", "HEAD").strip()


def test_new_client_invalid_ssh_url():
    with pytest.raises(InvalidRepoURLError):
        new_client("ssh://bitbucket.org:org/repo")


def test_new_client_root_is_derived_from_normalized_url():
    client = new_client("https://github.com/Foo/Bar.git")
    assert client.root == os.path.join(
        tempfile.gettempdir(), "https___github.com_foo_bar"
    )
    assert client.repo_url == "https://github.com/Foo/Bar.git"


def test_fetch(tmp_path, roots):
    src = _make_repo(tmp_path / "src")
    client = new_client(f"file://{src}", insecure=True)
    client.init()
    client.fetch("")
    assert _git(client.root, "rev-parse", "origin/main").strip() == _head(src)


def test_fetch_prune(tmp_path, roots):
    src = _make_repo(tmp_path / "src")
    client = new_client(f"file://{src}", insecure=True)
    client.init()

    _git(src, "branch", "test/foo")
    client.fetch("")
    assert "origin/test/foo" in _git(client.root, "branch", "-r")

    _git(src, "branch", "-d", "test/foo")
    _git(src, "branch", "test/foo/bar")
    client.fetch("")
    remote_branches = [line.strip() for line in _git(client.root, "branch", "-r").splitlines()]
    assert "origin/test/foo/bar" in remote_branches
    assert "origin/test/foo" not in remote_branches


def test_fetch_runs_event_handlers(tmp_path, roots):
    src = _make_repo(tmp_path / "src")
    calls = []

    def on_fetch(repo):
        calls.append(("start", repo))
        return lambda: calls.append(("done", repo))

    url = f"file://{src}"
    client = new_client(url, event_handlers=EventHandlers(on_fetch=on_fetch))
    client.init()
    client.fetch("")
    assert calls == [("start", url), ("done", url)]


def test_init_is_idempotent(tmp_path):
    root = tmp_path / "work"
    client = GitClient("file:///nowhere", str(root))
    client.init()
    client.init()
    assert _git(root, "remote", "get-url", "origin").strip() == "file:///nowhere"


def test_is_annotated_tag(tmp_path, roots):
    client = new_client(f"file://{tmp_path / 'origin'}", insecure=True)
    client.init()
    readme = os.path.join(client.root, "README")
    with open(readme, "w") as handle:
        handle.write("Hello.")
    _git(client.root, "add", "README")
    _git(client.root, "commit", "-m", "Initial commit", "-a")

    assert client.is_annotated_tag("master") is False

    _git(client.root, "tag", "some-tag", "-a", "-m", "Create annotated tag")
    assert client.is_annotated_tag("some-tag") is True
    assert client.is_annotated_tag("HEAD") is True

    _git(client.root, "rm", "README")
    _git(client.root, "commit", "-m", "remove README", "-a")
    assert client.is_annotated_tag("HEAD") is False


def test_changed_files(tmp_path):
    repo = tmp_path / "repo"
    client = GitClient(f"file://{repo}", str(repo), insecure=True)
    client.init()
    _git(repo, "commit", "-m", "Initial commit", "--allow-empty")
    _git(repo, "tag", "some-tag")
    (repo / "README").write_text("Hello.")
    _git(repo, "add", "README")
    _git(repo, "commit", "-m", "Changes", "-a")

    previous_sha = client.ls_remote("some-tag")
    commit_sha = client.ls_remote("HEAD")
    assert commit_sha == _head(repo)

    with pytest.raises(GitError):
        client.changed_files(
            "0000000000000000000000000000000000000000",
            "1111111111111111111111111111111111111111",
        )
    with pytest.raises(GitError, match="must be SHA"):
        client.changed_files(previous_sha, "HEAD")

    assert client.changed_files(commit_sha, commit_sha) == []
    assert sorted(client.changed_files(previous_sha, commit_sha)) == ["README"]


def test_submodule(tmp_path, roots, monkeypatch):
    monkeypatch.setenv("GIT_ALLOW_PROTOCOL", "file")
    foo = tmp_path / "foo"
    foo.mkdir()
    _git(foo, "init")
    bar = _make_repo(tmp_path / "bar")
    _git(foo, "submodule", "add", str(bar))
    _git(foo, "commit", "-m", "Initial commit")

    client = new_client(f"file://{foo}", insecure=True)
    client.init()
    client.fetch("")
    commit_sha = client.ls_remote("HEAD")

    client.checkout(commit_sha, False)
    probe = subprocess.run(
        ["git", "config", "submodule.bar.url"],
        cwd=client.root,
        capture_output=True,
        text=True,
    )
    assert probe.returncode != 0

    client.checkout(commit_sha, True)
    assert _git(client.root, "config", "submodule.bar.url") == str(bar) + "\n"

    _git(client.root, "config", "--file=.gitmodules", "submodule.bar.url", str(bar) + "baz")
    client.submodule()
    assert _git(client.root, "config", "submodule.bar.url") == str(bar) + "baz\n"


def test_checkout_removes_untracked_files(tmp_path):
    src = _make_repo(tmp_path / "src")
    work = tmp_path / "work"
    client = GitClient(f"file://{src}", str(work))
    client.init()
    client.fetch()
    (work / "stray.txt").write_text("x")
    client.checkout(_head(src))
    assert not (work / "stray.txt").exists()
    assert client.commit_sha() == _head(src)


def test_ls_files(tmp_path):
    tmp1 = tmp_path / "one"
    tmp2 = tmp_path / "two"
    tmp1.mkdir()
    tmp2.mkdir()
    client = GitClient("", str(tmp1))
    _git(tmp1, "init")

    (tmp1 / "a.yaml").write_text("")
    (tmp1 / "subdir").mkdir()
    (tmp1 / "subdir" / "b.yaml").write_text("")
    (tmp2 / "subdir").mkdir()
    (tmp2 / "c.yaml").write_text("")
    os.symlink(tmp2 / "c.yaml", tmp1 / "link.yaml")
    _git(tmp1, "add", ".")
    _git(tmp1, "commit", "-m", "Initial commit")

    assert client.ls_files("*.yaml", False) == ["a.yaml", "link.yaml", "subdir/b.yaml"]
    assert client.ls_files("*.yaml", True) == ["a.yaml"]
    assert client.ls_files(os.path.join(str(tmp2), "*.yaml"), True) == []


def test_ls_refs(tmp_path):
    src = _make_repo(tmp_path / "src")
    _git(src, "branch", "feature")
    _git(src, "tag", "v1")
    client = GitClient(f"file://{src}", str(tmp_path / "work"))
    refs = client.ls_refs()
    assert refs.branches == ["feature", "main"]
    assert refs.tags == ["v1"]


def test_ls_remote_resolution(tmp_path):
    src = _make_repo(tmp_path / "src")
    _git(src, "tag", "v0.8.0")
    head = _head(src)
    client = GitClient(f"file://{src}", str(tmp_path / "work"))

    for revision in ("HEAD", "", "main", "v0.8.0", "refs/heads/main", head):
        assert client.ls_remote(revision) == head

    truncated = client.ls_remote("4e22a3c")
    assert truncated == "4e22a3c"
    assert not is_commit_sha(truncated)
    assert is_truncated_commit_sha(truncated)

    for revision in ("unresolvable", "4e22a3"):
        with pytest.raises(GitError, match="Unable to resolve"):
            client.ls_remote(revision)


def test_ls_remote_retries_every_attempt(tmp_path):
    src = _make_repo(tmp_path / "src")
    calls = []

    def on_ls_remote(repo):
        calls.append(repo)
        return lambda: None

    client = GitClient(
        f"file://{src}",
        str(tmp_path / "work"),
        event_handlers=EventHandlers(on_ls_remote=on_ls_remote),
        retry_policy=RetryPolicy(max_attempts=3),
    )
    with pytest.raises(GitError):
        client.ls_remote("unresolvable")
    assert len(calls) == 3


def test_ls_remote_unreachable_repository(tmp_path):
    client = GitClient(f"file://{tmp_path / 'missing'}", str(tmp_path / "work"))
    with pytest.raises(GitError):
        client.ls_remote("HEAD")


def test_check_repo(tmp_path):
    src = _make_repo(tmp_path / "src")
    assert check_repo(f"file://{src}") == _head(src)
    with pytest.raises(GitError):
        check_repo(f"file://{tmp_path / 'missing'}")


def test_revision_metadata(tmp_path):
    src = _make_repo(tmp_path / "src")
    _git(src, "tag", "v1")
    client = GitClient(f"file://{src}", str(src))
    head = _head(src)
    meta = client.revision_metadata(head)
    assert meta.author == "Test User <test@example.com>"
    assert meta.message == "Initial commit"
    assert meta.tags == ["v1"]
    assert int(meta.date.timestamp()) == int(_git(src, "show", "-s", "--format=%at", head))


def test_commit_uses_message_and_default(tmp_path):
    src = _make_repo(tmp_path / "src")
    (src / "file.txt").write_text("one")
    _git(src, "add", "file.txt")
    _git(src, "commit", "-m", "add file")
    client = GitClient(f"file://{src}", str(src))

    (src / "file.txt").write_text("two")
    client.commit("", CommitOptions(commit_message_text="custom message"))
    assert _git(src, "log", "-1", "--format=%s").strip() == "custom message"

    (src / "file.txt").write_text("three")
    client.commit("*")
    assert _git(src, "log", "-1", "--format=%s").strip() == "Update parameters"

    message_file = tmp_path / "message.txt"
    message_file.write_text("from file\n")
    (src / "file.txt").write_text("four")
    client.commit("", CommitOptions(commit_message_path=str(message_file), sign_off=True))
    body = _git(src, "log", "-1", "--format=%B")
    assert body.startswith("from file")
    assert "Signed-off-by: Test User <test@example.com>" in body


def test_commit_without_changes_fails(tmp_path):
    src = _make_repo(tmp_path / "src")
    client = GitClient(f"file://{src}", str(src))
    with pytest.raises(GitError):
        client.commit("", CommitOptions(commit_message_text="nothing"))


def test_add_stages_new_file(tmp_path):
    src = _make_repo(tmp_path / "src")
    client = GitClient(f"file://{src}", str(src))
    (src / "new.txt").write_text("x")
    client.add("new.txt")
    assert _git(src, "diff", "--cached", "--name-only").strip() == "new.txt"


def test_config(tmp_path):
    src = _make_repo(tmp_path / "src")
    client = GitClient(f"file://{src}", str(src))
    client.config("bot", "bot@example.com")
    assert _git(src, "config", "user.name").strip() == "bot"
    assert _git(src, "config", "user.email").strip() == "bot@example.com"


def test_branch(tmp_path):
    src = _make_repo(tmp_path / "src")
    client = GitClient(f"file://{src}", str(src))
    client.branch("", "feature")
    client.branch("main", "other")
    branches = _git(src, "branch", "--format=%(refname:short)").split()
    assert sorted(branches) == ["feature", "main", "other"]
    with pytest.raises(GitError, match="could not checkout source branch"):
        client.branch("does-not-exist", "x")
    with pytest.raises(GitError, match="could not create new branch"):
        client.branch("", "feature")


def test_push_and_default_branch(tmp_path):
    src = _make_repo(tmp_path / "src")
    work = tmp_path / "work"
    client = GitClient(f"file://{src}", str(work))
    client.init()
    client.fetch()
    client.checkout(_head(src))

    assert client.sym_ref_to_branch("HEAD") == "main"

    (work / "pushed.txt").write_text("data")
    client.add("pushed.txt")
    client.commit("", CommitOptions(commit_message_text="to push"))
    client.branch("", "pushed")
    client.push("origin", "pushed")
    assert _git(src, "rev-parse", "refs/heads/pushed").strip() == client.commit_sha()

    with pytest.raises(GitError, match="could not push x to nowhere"):
        client.push("nowhere", "x", force=True)


def test_retry_policy_defaults():
    policy = RetryPolicy.from_env({})
    assert policy.max_attempts == 1
    assert policy.retry_duration == 0.25
    assert policy.max_retry_duration == 5.0
    assert policy.factor == 2


def test_retry_policy_from_env_values():
    policy = RetryPolicy.from_env(
        {
            ENV_ATTEMPTS_COUNT: "4",
            ENV_RETRY_DURATION: "1s",
            ENV_RETRY_MAX_DURATION: "2s",
            ENV_RETRY_FACTOR: "3",
        }
    )
    assert policy.max_attempts == 4
    assert policy.delay(0) == 1.0
    assert policy.delay(1) == 2.0
    assert policy.delay(5) == 2.0


def test_retry_policy_attempts_at_least_one():
    assert RetryPolicy.from_env({ENV_ATTEMPTS_COUNT: "0"}).max_attempts == 1
    assert RetryPolicy.from_env({ENV_ATTEMPTS_COUNT: "-3"}).max_attempts == 1


def test_retry_policy_invalid_attempts():
    with pytest.raises(ValueError, match=ENV_ATTEMPTS_COUNT):
        RetryPolicy.from_env({ENV_ATTEMPTS_COUNT: "many"})


def test_retry_policy_invalid_values_fall_back_to_defaults():
    policy = RetryPolicy.from_env(
        {ENV_RETRY_DURATION: "soon", ENV_RETRY_MAX_DURATION: "-1s", ENV_RETRY_FACTOR: "x"}
    )
    assert policy.retry_duration == 0.25
    assert policy.max_retry_duration == 5.0
    assert policy.factor == 2


def test_retry_policy_without_cap():
    policy = RetryPolicy(retry_duration=0.25, max_retry_duration=0, factor=2)
    assert policy.delay(3) == 2.0


def test_retry_policy_parses_compound_durations():
    policy = RetryPolicy.from_env({ENV_RETRY_DURATION: "1m30s", ENV_RETRY_MAX_DURATION: "0"})
    assert policy.retry_duration == 90.0
    assert policy.max_retry_duration == 0.0


def test_retry_policy_rejects_zero_attempts():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)