"""SSH public key authentication settings for Git transports."""

from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from typing import Sequence

__all__ = [
    "PUBLIC_KEYS_NAME",
    "SUPPORTED_SSH_KEY_EXCHANGE_ALGORITHMS",
    "DEFAULT_SSH_KEY_EXCHANGE_ALGORITHMS",
    "SSHClientConfig",
    "PublicKeysWithOptions",
]

PUBLIC_KEYS_NAME = "ssh-public-keys"

SUPPORTED_SSH_KEY_EXCHANGE_ALGORITHMS: tuple[str, ...] = (
    "curve25519-sha256",
    "ecdh-sha2-nistp256",
    "ecdh-sha2-nistp384",
    "ecdh-sha2-nistp521",
    "diffie-hellman-group-exchange-sha256",
    "diffie-hellman-group14-sha256",
    "diffie-hellman-group14-sha1",
)

DEFAULT_SSH_KEY_EXCHANGE_ALGORITHMS = SUPPORTED_SSH_KEY_EXCHANGE_ALGORITHMS


@dataclass(frozen=True)
class SSHClientConfig:
    """Effective settings for an SSH connection."""

    user: str
    key_exchanges: tuple[str, ...]
    identity_file: str | None
    strict_host_key_checking: bool
    known_hosts_file: str | None


@dataclass
class PublicKeysWithOptions:
    """Public key authentication with overridable client options."""

    user: str = ""
    identity_file: str | None = None
    kex_algorithms: Sequence[str] = field(default_factory=tuple)
    insecure_ignore_host_key: bool = False
    known_hosts_file: str | None = None

    @property
    def name(self) -> str:
        """Name of the authentication method."""
        return PUBLIC_KEYS_NAME

    def __str__(self) -> str:
        return f"user: {self.user}, name: {self.name}"

    def client_config(self) -> SSHClientConfig:
        """Return the effective SSH client configuration."""
        kex = tuple(self.kex_algorithms) or DEFAULT_SSH_KEY_EXCHANGE_ALGORITHMS
        insecure = self.insecure_ignore_host_key
        return SSHClientConfig(
            user=self.user,
            key_exchanges=kex,
            identity_file=self.identity_file,
            strict_host_key_checking=not insecure,
            known_hosts_file=None if insecure else self.known_hosts_file,
        )

    def ssh_command(self) -> str:
        """Return a shell command line suitable for GIT_SSH_COMMAND."""
        config = self.client_config()
        args = ["ssh", "-o", "KexAlgorithms=" + ",".join(config.key_exchanges)]
        if config.user:
            args += ["-l", config.user]
        if config.identity_file:
            args += ["-i", config.identity_file, "-o", "IdentitiesOnly=yes"]
        if not config.strict_host_key_checking:
            args += [
                "-o",
                "StrictHostKeyChecking=no",
                "-o",
                "UserKnownHostsFile=/dev/null",
            ]
        elif config.known_hosts_file:
            args += [
                "-o",
                f"UserKnownHostsFile={config.known_hosts_file}",
                "-o",
                "StrictHostKeyChecking=yes",
            ]
        return shlex.join(args)