"""Remote references: listing, classification and revision resolution."""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass, field
from typing import Iterable, Mapping

from .urls import is_commit_sha, is_https_url, is_truncated_commit_sha

__all__ = [
    "Reference",
    "Refs",
    "parse_ls_remote",
    "list_remote",
    "sort_refs",
    "resolve_revision",
]

log = logging.getLogger(__name__)

_REQUEST_TIMEOUT = 15.0
_BRANCH_PREFIX = "refs/heads/"
_TAG_PREFIX = "refs/tags/"
_SHORTENED_PREFIXES = ("refs/heads/", "refs/tags/", "refs/remotes/", "refs/")
_PEELED_SUFFIX = "^{}"
_SYMREF_MARKER = "ref: "


@dataclass(frozen=True)
class Reference:
    """A named reference that holds either a commit hash or a symbolic target."""

    name: str
    hash: str | None = None
    target: str | None = None

    def __post_init__(self) -> None:
        if (self.hash is None) == (self.target is None):
            raise ValueError(
                f"reference {self.name!r} needs exactly one of hash or target"
            )

    @property
    def is_symbolic(self) -> bool:
        """Whether the reference points at another reference."""
        return self.target is not None

    def short_name(self) -> str:
        """Name without its refs/heads/, refs/tags/, refs/remotes/ or refs/ prefix."""
        for prefix in _SHORTENED_PREFIXES:
            if self.name.startswith(prefix) and len(self.name) > len(prefix):
                return self.name[len(prefix):]
        return self.name

    def is_branch(self) -> bool:
        """Whether the reference is a local branch."""
        return self.name.startswith(_BRANCH_PREFIX)

    def is_tag(self) -> bool:
        """Whether the reference is a tag."""
        return self.name.startswith(_TAG_PREFIX)


@dataclass
class Refs:
    """Branch and tag names of a repository."""

    branches: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)


def parse_ls_remote(output: str) -> list[Reference]:
    """Parse the output of ``git ls-remote --symref`` into references.

    Peeled tag entries are dropped; a name announced as a symbolic reference
    is returned as such, not as the hash it currently resolves to.
    """
    symbolic: dict[str, str] = {}
    hashed: list[tuple[str, str]] = []
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        left, sep, name = line.partition("\t")
        if not sep or not name:
            raise ValueError(f"malformed ls-remote line: {line!r}")
        if left.startswith(_SYMREF_MARKER):
            symbolic[name] = left[len(_SYMREF_MARKER):].strip()
        elif name.endswith(_PEELED_SUFFIX):
            continue
        else:
            hashed.append((name, left.strip()))

    references: list[Reference] = []
    emitted: set[str] = set()
    for name, value in hashed:
        if name in symbolic:
            if name not in emitted:
                references.append(Reference(name, target=symbolic[name]))
                emitted.add(name)
        else:
            references.append(Reference(name, hash=value))
    for name, target in symbolic.items():
        if name not in emitted:
            references.append(Reference(name, target=target))
            emitted.add(name)
    return references


def _command_env(
    url: str, env: Mapping[str, str] | None, insecure: bool, proxy: str
) -> dict[str, str]:
    environ = dict(os.environ)
    if env:
        environ.update(env)
    environ["GIT_TERMINAL_PROMPT"] = "false"
    if is_https_url(url) and insecure:
        environ["GIT_SSL_NO_VERIFY"] = "true"
    if proxy:
        for key in ("http_proxy", "https_proxy", "HTTP_PROXY", "HTTPS_PROXY"):
            environ[key] = proxy
    return environ


def list_remote(
    url: str,
    env: Mapping[str, str] | None = None,
    insecure: bool = False,
    proxy: str = "",
) -> list[Reference]:
    """List the references advertised by the repository at ``url``.

    Raises RuntimeError when the remote cannot be listed.
    """
    command = ["git", "ls-remote", "--symref", "--", url]
    try:
        completed = subprocess.run(
            command,
            env=_command_env(url, env, insecure, proxy),
            capture_output=True,
            text=True,
            timeout=_REQUEST_TIMEOUT,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        raise RuntimeError(f"listing references of {url} timed out") from exc
    except OSError as exc:
        raise RuntimeError(f"could not run git: {exc}") from exc
    if completed.returncode != 0:
        message = completed.stderr.strip() or f"exit status {completed.returncode}"
        raise RuntimeError(f"could not list references of {url}: {message}")
    return parse_ls_remote(completed.stdout)


def sort_refs(references: Iterable[Reference]) -> Refs:
    """Collect branch and tag short names, each list sorted."""
    refs = Refs()
    for reference in references:
        if reference.is_branch():
            refs.branches.append(reference.short_name())
        elif reference.is_tag():
            refs.tags.append(reference.short_name())
    log.debug(
        "LsRefs resolved %d branches and %d tags on repository",
        len(refs.branches),
        len(refs.tags),
    )
    refs.branches.sort()
    refs.tags.sort()
    return refs


def resolve_revision(references: Iterable[Reference], revision: str) -> str:
    """Resolve a branch, tag or symbolic ref to a commit SHA.

    A full SHA is returned as is; a truncated SHA that matches no reference is
    returned unchanged. Raises ValueError if the revision cannot be resolved.
    """
    if is_commit_sha(revision):
        return revision
    if not revision:
        revision = "HEAD"

    ref_to_hash: dict[str, str] = {}
    ref_to_resolve = ""
    for reference in references:
        if reference.hash is not None:
            ref_to_hash[reference.name] = reference.hash
        if reference.short_name() == revision or reference.name == revision:
            if reference.hash is not None:
                log.debug("revision '%s' resolved to '%s'", revision, reference.hash)
                return reference.hash
            if reference.target:
                ref_to_resolve = reference.target

    if ref_to_resolve and ref_to_resolve in ref_to_hash:
        resolved = ref_to_hash[ref_to_resolve]
        log.debug(
            "symbolic reference '%s' (%s) resolved to '%s'",
            revision,
            ref_to_resolve,
            resolved,
        )
        return resolved

    if is_truncated_commit_sha(revision):
        log.debug("revision '%s' assumed to be commit sha", revision)
        return revision

    raise ValueError(f"Unable to resolve '{revision}' to a commit SHA")