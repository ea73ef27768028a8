"""A Git client that drives the git command line for one repository."""

from __future__ import annotations

import glob
import logging
import os
import re
import shutil
import subprocess
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterator, Mapping, Sequence

from .refs import Reference, Refs, list_remote, resolve_revision, sort_refs
from .urls import is_commit_sha, is_https_url, normalize_git_url

__all__ = [
    "GitError",
    "InvalidRepoURLError",
    "RevisionMetadata",
    "CommitOptions",
    "EventHandlers",
    "RetryPolicy",
    "GitClient",
    "new_client",
    "check_repo",
    "FORCE_BASIC_AUTH_HEADER_ENV",
    "ENV_ATTEMPTS_COUNT",
    "ENV_RETRY_DURATION",
    "ENV_RETRY_MAX_DURATION",
    "ENV_RETRY_FACTOR",
]

log = logging.getLogger(__name__)

FORCE_BASIC_AUTH_HEADER_ENV = "GIT_FORCE_BASIC_AUTH_HEADER"

ENV_ATTEMPTS_COUNT = "ARGOCD_GIT_ATTEMPTS_COUNT"
ENV_RETRY_DURATION = "ARGOCD_GIT_RETRY_DURATION"
ENV_RETRY_MAX_DURATION = "ARGOCD_GIT_RETRY_MAX_DURATION"
ENV_RETRY_FACTOR = "ARGOCD_GIT_RETRY_FACTOR"

_DEFAULT_RETRY_DURATION = 0.25
_DEFAULT_RETRY_MAX_DURATION = 5.0
_DEFAULT_RETRY_FACTOR = 2
_DEFAULT_COMMAND_TIMEOUT = 90.0
_DEFAULT_COMMIT_MESSAGE = "Update parameters"

_ROOT_SEPARATORS = re.compile(r"[/:]")
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_TRANSIENT_MARKERS = (
    "timed out",
    "timeout",
    "connection reset",
    "unexpected eof",
    "internal server error",
    "too many requests",
    "http 429",
    "http 500",
)

EventHandler = Callable[[str], Callable[[], None]]


class GitError(RuntimeError):
    """A git operation failed."""

    def __init__(self, message: str, output: str = "") -> None:
        super().__init__(message)
        self.output = output


class InvalidRepoURLError(GitError, ValueError):
    """The repository URL cannot be used."""


@dataclass(frozen=True)
class RevisionMetadata:
    """Author, date, tags and message of a commit."""

    author: str
    date: datetime
    tags: list[str]
    message: str


@dataclass
class CommitOptions:
    """Options for a git commit."""

    commit_message_text: str = ""
    commit_message_path: str = ""
    signing_key: str = ""
    signing_method: str = ""
    sign_off: bool = False


@dataclass
class EventHandlers:
    """Callbacks run around remote operations; each returns a completion callback."""

    on_ls_remote: EventHandler | None = None
    on_fetch: EventHandler | None = None


def _parse_duration(text: str) -> float:
    """Parse a duration such as ``1m30s`` or ``250ms`` into seconds."""
    text = text.strip()
    sign = 1.0
    if text and text[0] in "+-":
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]
    if text == "0":
        return 0.0
    if not text:
        raise ValueError("invalid duration: empty")
    total = 0.0
    pos = 0
    while pos < len(text):
        match = _DURATION_PART.match(text, pos)
        if match is None:
            raise ValueError(f"invalid duration {text!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    return sign * total


def _duration_from_env(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name, "")
    if not raw:
        return default
    try:
        value = _parse_duration(raw)
    except ValueError:
        log.warning("Could not parse '%s' as a duration from environment %s", raw, name)
        return default
    if value < 0:
        log.warning("Value in %s is %s, which is less than minimum 0", name, raw)
        return default
    return value


def _int_from_env(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name, "")
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        log.warning("Could not parse '%s' as an integer from environment %s", raw, name)
        return default
    if value < 0:
        log.warning("Value in %s is %s, which is less than minimum 0", name, raw)
        return default
    return value


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how long to retry resolving revisions on the remote."""

    max_attempts: int = 1
    retry_duration: float = _DEFAULT_RETRY_DURATION
    max_retry_duration: float = _DEFAULT_RETRY_MAX_DURATION
    factor: int = _DEFAULT_RETRY_FACTOR

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "RetryPolicy":
        """Build a policy from environment variables, falling back to defaults."""
        environ = os.environ if environ is None else environ
        attempts = 1
        raw_count = environ.get(ENV_ATTEMPTS_COUNT, "")
        if raw_count:
            try:
                attempts = max(int(raw_count), 1)
            except ValueError as exc:
                raise ValueError(
                    f"Invalid value in {ENV_ATTEMPTS_COUNT} env variable: {exc}"
                ) from exc
        return cls(
            max_attempts=attempts,
            retry_duration=_duration_from_env(
                environ, ENV_RETRY_DURATION, _DEFAULT_RETRY_DURATION
            ),
            max_retry_duration=_duration_from_env(
                environ, ENV_RETRY_MAX_DURATION, _DEFAULT_RETRY_MAX_DURATION
            ),
            factor=_int_from_env(environ, ENV_RETRY_FACTOR, _DEFAULT_RETRY_FACTOR),
        )

    def delay(self, attempt: int) -> float:
        """Seconds to wait after the given zero-based attempt."""
        wait = self.retry_duration * float(self.factor) ** attempt
        if self.max_retry_duration > 0:
            wait = min(self.max_retry_duration, wait)
        return wait


def _is_transient(error: Exception) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


@contextmanager
def _event(handler: EventHandler | None, repo_url: str) -> Iterator[None]:
    done = handler(repo_url) if handler is not None else None
    try:
        yield
    finally:
        if done is not None:
            done()


class GitClient:
    """Runs git commands against a local working copy of one repository."""

    verify_wrapper = "git-verify-wrapper.sh"

    def __init__(
        self,
        repo_url: str,
        root: str,
        env: Mapping[str, str] | None = None,
        insecure: bool = False,
        enable_lfs: bool = False,
        proxy: str = "",
        event_handlers: EventHandlers | None = None,
        retry_policy: RetryPolicy | None = None,
        gnupg_home: str | None = None,
        command_timeout: float = _DEFAULT_COMMAND_TIMEOUT,
    ) -> None:
        self.repo_url = repo_url
        self.root = root
        self.env: dict[str, str] = dict(env or {})
        self.insecure = insecure
        self.enable_lfs = enable_lfs
        self.proxy = proxy
        self.event_handlers = event_handlers or EventHandlers()
        self.retry_policy = retry_policy or RetryPolicy.from_env()
        self.gnupg_home = gnupg_home
        self.command_timeout = command_timeout

    def __repr__(self) -> str:
        return f"GitClient(repo_url={self.repo_url!r}, root={self.root!r})"

    # -- command execution -------------------------------------------------

    def _command_env(self, extra_env: Mapping[str, str] | None) -> dict[str, str]:
        environ = dict(os.environ)
        if extra_env:
            environ.update(extra_env)
        # Keep external keys and prompts out of the way.
        environ["HOME"] = "/dev/null"
        environ["GIT_LFS_SKIP_SMUDGE"] = "1"
        environ["GIT_TERMINAL_PROMPT"] = "false"
        if is_https_url(self.repo_url) and self.insecure:
            environ["GIT_SSL_NO_VERIFY"] = "true"
        if self.proxy:
            for key in ("http_proxy", "https_proxy", "HTTP_PROXY", "HTTPS_PROXY"):
                environ[key] = self.proxy
        return environ

    def _run(
        self,
        args: Sequence[str],
        *,
        program: str = "git",
        extra_env: Mapping[str, str] | None = None,
        log_errors: bool = True,
    ) -> str:
        command = [program, *args]
        try:
            completed = subprocess.run(
                command,
                cwd=self.root,
                env=self._command_env(extra_env),
                capture_output=True,
                text=True,
                timeout=self.command_timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise GitError(f"`{' '.join(command)}` timed out") from exc
        except OSError as exc:
            raise GitError(f"could not run {program}: {exc}") from exc
        output = completed.stdout
        if output.endswith("\n"):
            output = output[:-1]
        if completed.returncode != 0:
            detail = completed.stderr.strip() or output
            message = (
                f"`{' '.join(command)}` failed with exit status "
                f"{completed.returncode}: {detail}"
            )
            if log_errors:
                log.error("%s", message)
            raise GitError(message, output)
        return output

    def _run_credentialed(self, args: Sequence[str]) -> str:
        if FORCE_BASIC_AUTH_HEADER_ENV in self.env:
            # Make git send the header instead of negotiating the auth scheme.
            args = [
                "--config-env",
                f"http.extraHeader={FORCE_BASIC_AUTH_HEADER_ENV}",
                *args,
            ]
        return self._run(args, extra_env=self.env)

    # -- repository setup ---------------------------------------------------

    def init(self) -> None:
        """Create the local repository with origin set, unless it exists."""
        if os.path.isdir(os.path.join(self.root, ".git")):
            return
        log.info("Initializing %s to %s", self.repo_url, self.root)
        try:
            shutil.rmtree(self.root)
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise GitError(f"unable to clean repo at {self.root}: {exc}") from exc
        os.makedirs(self.root, mode=0o755, exist_ok=True)
        self._run(["init"])
        self._run(["remote", "add", "origin", self.repo_url])

    def _fetch_large_files(self) -> None:
        if not self.enable_lfs:
            return
        try:
            large_files = self.ls_large_files()
        except GitError:
            return
        if large_files:
            self._run_credentialed(["lfs", "fetch", "--all"])

    def fetch(self, revision: str = "") -> None:
        """Fetch the latest updates, tags included, from origin."""
        with _event(self.event_handlers.on_fetch, self.repo_url):
            args = ["fetch", "origin"]
            if revision:
                args.append(revision)
            self._run_credentialed([*args, "--tags", "--force", "--prune"])
            self._fetch_large_files()

    def shallow_fetch(self, revision: str, depth: int) -> None:
        """Fetch from origin with a limited history depth."""
        with _event(self.event_handlers.on_fetch, self.repo_url):
            args = ["fetch", "origin"]
            if revision:
                args.append(revision)
            self._run_credentialed([*args, "--force", "--prune", "--depth", str(depth)])
            self._fetch_large_files()

    def submodule(self) -> None:
        """Synchronise and update all submodules recursively."""
        self._run_credentialed(["submodule", "sync", "--recursive"])
        self._run_credentialed(["submodule", "update", "--init", "--recursive"])

    def checkout(self, revision: str = "", submodule_enabled: bool = False) -> None:
        """Force-check out a revision and remove everything untracked."""
        if revision in ("", "HEAD"):
            revision = "origin/HEAD"
        self._run(["checkout", "--force", revision])
        if self.enable_lfs and self.ls_large_files():
            self._run(["lfs", "checkout"])
        if submodule_enabled and os.path.exists(os.path.join(self.root, ".gitmodules")):
            self.submodule()
        # Two -f: also remove untracked nested repositories.
        self._run(["clean", "-ffdx"])

    # -- references -----------------------------------------------------------

    def _get_refs(self) -> list[Reference]:
        with _event(self.event_handlers.on_ls_remote, self.repo_url):
            try:
                return list_remote(self.repo_url, self.env, self.insecure, self.proxy)
            except RuntimeError as exc:
                raise GitError(str(exc)) from exc

    def ls_refs(self) -> Refs:
        """Return the sorted branch and tag names of the remote."""
        return sort_refs(self._get_refs())

    def _ls_remote(self, revision: str) -> str:
        if is_commit_sha(revision):
            return revision
        references = self._get_refs()
        try:
            return resolve_revision(references, revision)
        except ValueError as exc:
            raise GitError(str(exc)) from exc

    def ls_remote(self, revision: str = "") -> str:
        """Resolve a branch, tag, HEAD or SHA on the remote to a commit SHA."""
        policy = self.retry_policy
        error: GitError | None = None
        for attempt in range(policy.max_attempts):
            try:
                return self._ls_remote(revision)
            except GitError as exc:
                error = exc
                if _is_transient(exc):
                    time.sleep(policy.delay(attempt))
        assert error is not None
        raise error

    # -- working tree queries -------------------------------------------------

    def ls_files(self, path: str, enable_new_git_file_globbing: bool = False) -> list[str]:
        """List files matching ``path``.

        The new globbing matches on the file system and drops files that
        resolve outside the repository; the default asks git.
        """
        if enable_new_git_file_globbing:
            root = os.path.realpath(self.root)
            files = []
            for name in sorted(glob.glob(path, root_dir=self.root, recursive=True)):
                full = name if os.path.isabs(name) else os.path.join(self.root, name)
                try:
                    resolved = os.path.realpath(full, strict=True)
                except OSError as exc:
                    raise GitError(f"could not resolve {name}: {exc}") from exc
                if resolved.startswith(root):
                    files.append(name)
                else:
                    log.warning(
                        "Absolute path for %s is outside of repository, removing it", name
                    )
            return files
        out = self._run(["ls-files", "--full-name", "-z", "--", path])
        return out.split("\0")[:-1]

    def ls_large_files(self) -> list[str]:
        """List files that reference LFS storage."""
        return self._run(["lfs", "ls-files", "-n"]).split("\n")

    def commit_sha(self) -> str:
        """Return the SHA that HEAD points at."""
        return self._run(["rev-parse", "HEAD"]).strip()

    def revision_metadata(self, revision: str) -> RevisionMetadata:
        """Return author, date, tags and message of a commit."""
        out = self._run(["show", "-s", "--format=%an <%ae>|%at|%B", revision])
        segments = out.split("|", 2)
        if len(segments) != 3:
            raise GitError(f"expected 3 segments, got {segments}")
        author, raw_timestamp, raw_message = segments
        try:
            timestamp = int(raw_timestamp)
        except ValueError:
            timestamp = 0
        tags = self._run(["tag", "--points-at", revision]).split()
        return RevisionMetadata(
            author=author,
            date=datetime.fromtimestamp(timestamp, timezone.utc),
            tags=tags,
            message=raw_message.strip(),
        )

    def verify_commit_signature(self, revision: str) -> str:
        """Run the signature verification wrapper on a revision."""
        extra_env = {"LANG": "C"}
        if self.gnupg_home:
            extra_env["GNUPGHOME"] = self.gnupg_home
        return self._run([revision], program=self.verify_wrapper, extra_env=extra_env)

    def is_annotated_tag(self, revision: str) -> bool:
        """Return whether the revision is exactly described by an annotated tag."""
        try:
            out = self._run(["describe", "--exact-match", revision], log_errors=False)
        except GitError:
            return False
        return out != ""

    def changed_files(self, revision: str, target_revision: str) -> list[str]:
        """List files changed between two commit SHAs."""
        if revision == target_revision:
            return []
        if not is_commit_sha(revision) or not is_commit_sha(target_revision):
            raise GitError("invalid revision provided, must be SHA")
        try:
            out = self._run(["diff", "--name-only", f"{revision}..{target_revision}"])
        except GitError as exc:
            raise GitError(f"failed to diff {revision}..{target_revision}: {exc}") from exc
        if not out:
            return []
        return out.split("\n")

    # -- writing ------------------------------------------------------------

    def commit(self, path_spec: str = "", opts: CommitOptions | None = None) -> None:
        """Commit to the checked-out branch; "" or "*" commits all pending changes."""
        opts = opts or CommitOptions()
        args: list[str] = []
        if opts.signing_method:
            args += ["-c", f"gpg.format={opts.signing_method}"]
        args.append("commit")
        if path_spec in ("", "*"):
            args.append("-a")
        if opts.signing_key:
            # No space allowed between -S and the key.
            args.append(f"-S{opts.signing_key}")
        if opts.sign_off:
            args.append("-s")
        if opts.commit_message_text:
            args += ["-m", opts.commit_message_text]
        elif opts.commit_message_path:
            args += ["-F", opts.commit_message_path]
        else:
            args += ["-m", _DEFAULT_COMMIT_MESSAGE]
        try:
            self._run(args)
        except GitError as exc:
            log.error("%s %s", exc.output, exc)
            raise

    def branch(self, source_branch: str, target_branch: str) -> None:
        """Create ``target_branch``, after checking out ``source_branch`` if given."""
        if source_branch:
            try:
                self._run(["checkout", source_branch])
            except GitError as exc:
                raise GitError(f"could not checkout source branch: {exc}") from exc
        try:
            self._run(["branch", target_branch])
        except GitError as exc:
            raise GitError(f"could not create new branch: {exc}") from exc

    def push(self, remote: str, branch: str, force: bool = False) -> None:
        """Push a branch to a remote, optionally forced."""
        args = ["push"]
        if force:
            args.append("-f")
        args += [remote, branch]
        try:
            self._run_credentialed(args)
        except GitError as exc:
            raise GitError(f"could not push {branch} to {remote}: {exc}") from exc

    def add(self, path: str) -> None:
        """Stage a path spec."""
        self._run_credentialed(["add", path])

    def sym_ref_to_branch(self, sym_ref: str) -> str:
        """Return the name of origin's default branch."""
        try:
            output = self._run_credentialed(["remote", "show", "origin"])
        except GitError as exc:
            raise GitError(f"error running git: {exc}") from exc
        for line in output.split("\n"):
            line = line.strip()
            if line.startswith("HEAD branch:"):
                _, _, name = line.partition(":")
                return name.strip()
        raise GitError("no default branch found in remote")

    def config(self, username: str, email: str) -> None:
        """Set the commit user name and e-mail address of the repository."""
        try:
            self._run(["config", "user.name", username])
        except GitError as exc:
            raise GitError(f"could not set git username: {exc}") from exc
        try:
            self._run(["config", "user.email", email])
        except GitError as exc:
            raise GitError(f"could not set git email: {exc}") from exc


def new_client(
    raw_repo_url: str,
    env: Mapping[str, str] | None = None,
    insecure: bool = False,
    enable_lfs: bool = False,
    proxy: str = "",
    event_handlers: EventHandlers | None = None,
) -> GitClient:
    """Create a client whose working copy lives in the system temp directory."""
    normalized = normalize_git_url(raw_repo_url)
    if not normalized:
        raise InvalidRepoURLError(
            f"repository {raw_repo_url!r} cannot be initialized: repo URL is invalid"
        )
    temp_dir = tempfile.gettempdir()
    root = os.path.join(temp_dir, _ROOT_SEPARATORS.sub("_", normalized))
    if os.path.normpath(root) == os.path.normpath(temp_dir):
        raise GitError(
            f"repository {raw_repo_url!r} cannot be initialized, because its root "
            f"would be system temp at {root}"
        )
    return GitClient(
        raw_repo_url,
        root,
        env=env,
        insecure=insecure,
        enable_lfs=enable_lfs,
        proxy=proxy,
        event_handlers=event_handlers,
    )


def check_repo(
    repo: str,
    env: Mapping[str, str] | None = None,
    insecure: bool = False,
    enable_lfs: bool = False,
    proxy: str = "",
) -> str:
    """Check that a repository is reachable; return the SHA of its HEAD."""
    client = new_client(repo, env, insecure, enable_lfs, proxy)
    return client.ls_remote("HEAD")