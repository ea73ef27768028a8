"""Classification and normalisation of Git repository URLs."""

from __future__ import annotations

import re
import string
from urllib.parse import quote

__all__ = [
    "ensure_prefix",
    "is_commit_sha",
    "is_truncated_commit_sha",
    "same_url",
    "normalize_git_url",
    "is_ssh_url",
    "is_https_url",
    "is_http_url",
]

_COMMIT_SHA = re.compile(r"[0-9A-Fa-f]{40}")
_TRUNCATED_COMMIT_SHA = re.compile(r"[0-9A-Fa-f]{7,}")
_SSH_URL = re.compile(r"(ssh://)?([^/:]*?)@[^@]+")
_BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")

_ALNUM = string.ascii_letters + string.digits
_USERINFO_CHARS = frozenset(_ALNUM + "-._:~!$&'()*+,;=%@")
_HOST_CHARS = frozenset(_ALNUM + "-_.~!$&'()*+,;=:[]<>\"%")
_PATH_SAFE = "/!$&'()*+,;=:@[]~%"
_FRAGMENT_SAFE = _PATH_SAFE + "?"


def ensure_prefix(s: str, prefix: str) -> str:
    """Return ``s`` with ``prefix`` prepended unless it already starts with it."""
    return s if s.startswith(prefix) else prefix + s


def is_commit_sha(sha: str) -> bool:
    """Return whether ``sha`` is a full 40-character hexadecimal SHA-1."""
    return _COMMIT_SHA.fullmatch(sha) is not None


def is_truncated_commit_sha(sha: str) -> bool:
    """Return whether ``sha`` looks like a SHA-1 of at least 7 hex digits."""
    return _TRUNCATED_COMMIT_SHA.fullmatch(sha) is not None


def is_ssh_url(url: str) -> tuple[bool, str]:
    """Return ``(True, user)`` for an SSH-style URL, else ``(False, "")``."""
    match = _SSH_URL.fullmatch(url)
    if match is None:
        return False, ""
    return True, match.group(2)


def is_https_url(url: str) -> bool:
    """Return whether ``url`` uses the https scheme."""
    return url.startswith("https://")


def is_http_url(url: str) -> bool:
    """Return whether ``url`` uses the http scheme."""
    return url.startswith("http://")


def same_url(left_repo: str, right_repo: str) -> bool:
    """Return whether two repository URLs point at the same location."""
    left = normalize_git_url(left_repo)
    right = normalize_git_url(right_repo)
    return left != "" and right != "" and left == right


def normalize_git_url(repo: str) -> str:
    """Normalise a Git URL for comparison; return "" if it cannot be parsed."""
    repo = repo.strip().lower()
    is_ssh, _ = is_ssh_url(repo)
    if is_ssh and not repo.startswith("ssh://"):
        # The first colon of a scp-like address separates host and path,
        # it must not be read as a port.
        repo = ensure_prefix(repo.replace(":", "/", 1), "ssh://")
    if repo.endswith(".git"):
        repo = repo[: -len(".git")]
    try:
        normalized = _reformat_url(repo)
    except ValueError:
        return ""
    return normalized[len("ssh://"):] if normalized.startswith("ssh://") else normalized


def _check_escapes(text: str, what: str) -> None:
    if _BAD_ESCAPE.search(text):
        raise ValueError(f"invalid URL escape in {what}: {text!r}")


def _split_scheme(raw: str) -> tuple[str, str]:
    for index, char in enumerate(raw):
        if char in string.ascii_letters:
            continue
        if char in string.digits or char in "+-.":
            if index == 0:
                return "", raw
            continue
        if char == ":":
            if index == 0:
                raise ValueError("missing protocol scheme")
            return raw[:index], raw[index + 1:]
        return "", raw
    return "", raw


def _check_port(colon_port: str) -> None:
    if colon_port == "":
        return
    if not colon_port.startswith(":") or not colon_port[1:].isdigit() and colon_port != ":":
        raise ValueError(f"invalid port {colon_port!r} after host")
    if not all(c in string.digits for c in colon_port[1:]):
        raise ValueError(f"invalid port {colon_port!r} after host")


def _parse_authority(authority: str) -> tuple[str | None, str]:
    at = authority.rfind("@")
    if at < 0:
        user, host = None, authority
    else:
        user, host = authority[:at], authority[at + 1:]
        if any(c not in _USERINFO_CHARS for c in user):
            raise ValueError("net/url: invalid userinfo")
        _check_escapes(user, "userinfo")
    if host.startswith("["):
        close = host.rfind("]")
        if close < 0:
            raise ValueError("missing ']' in host")
        _check_port(host[close + 1:])
    elif ":" in host:
        _check_port(host[host.rfind(":"):])
    for char in host:
        if ord(char) < 0x80 and char not in _HOST_CHARS:
            raise ValueError(f"invalid character {char!r} in host name")
    _check_escapes(host, "host")
    return user, host


def _reformat_url(raw: str) -> str:
    """Parse ``raw`` as a URL and render it back in canonical form."""
    if any(ord(c) < 0x20 or ord(c) == 0x7F for c in raw):
        raise ValueError("invalid control character in URL")
    rest, has_fragment, fragment = raw.partition("#")
    if has_fragment:
        _check_escapes(fragment, "fragment")

    scheme, rest = _split_scheme(rest)
    scheme = scheme.lower()

    force_query = rest.endswith("?") and rest.count("?") == 1
    if force_query:
        rest, query = rest[:-1], ""
    else:
        rest, _, query = rest.partition("?")
    query_part = "?" + query if force_query or query else ""
    fragment_part = "#" + quote(fragment, safe=_FRAGMENT_SAFE) if fragment else ""

    if not rest.startswith("/"):
        if scheme:
            return f"{scheme}:{rest}{query_part}{fragment_part}"
        if ":" in rest.split("/", 1)[0]:
            raise ValueError("first path segment in URL cannot contain colon")

    user: str | None = None
    host = ""
    omit_host = False
    if (scheme or not rest.startswith("///")) and rest.startswith("//"):
        authority, slash, path = rest[2:].partition("/")
        path = slash + path
        user, host = _parse_authority(authority)
    else:
        path = rest
        omit_host = bool(scheme) and rest.startswith("/")
    _check_escapes(path, "path")

    out = f"{scheme}:" if scheme else ""
    if scheme or host or user is not None:
        if not (omit_host and host == "" and user is None):
            if host or path or user is not None:
                out += "//"
            if user is not None:
                out += user + "@"
            out += host
    escaped_path = quote(path, safe=_PATH_SAFE)
    if escaped_path and not escaped_path.startswith("/") and host:
        out += "/"
    out += escaped_path
    return out + query_part + fragment_part