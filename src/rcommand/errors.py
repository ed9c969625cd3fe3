"""Exceptions raised by rcommand."""

from __future__ import annotations


class RCommandError(Exception):
    """Base class for all rcommand errors."""


class ConfigError(RCommandError):
    """Invalid settings or arguments, detected before any host is contacted."""


class HostError(RCommandError):
    """A failure confined to a single host."""

    def __init__(self, host: str, message: str) -> None:
        super().__init__(f"{host}: {message}")
        self.host = host
        self.reason = message


class ConnectFailure(HostError):
    """The SSH transport could not be established or authenticated."""


class SpawnFailure(HostError):
    """The remote process (or its staged script) could not be started."""


class PasswordRequired(HostError):
    """A sudo prompt appeared but no password was configured."""

    def __init__(self, host: str) -> None:
        super().__init__(host, "sudo asked for a password but none was given")


class Cancelled(HostError):
    """The run was interrupted while this host was active."""

    def __init__(self, host: str) -> None:
        super().__init__(host, "interrupted")


class SessionLost(HostError):
    """The SSH connection failed after the remote process had started."""
