"""SSH session channel for a single host.

A session is one SSH connection running one remote process. The process gets
a pseudo-terminal for stdin/stdout and a separate stream for stderr, both
read as raw bytes so the framer sees exactly what the remote side sent.
"""

from __future__ import annotations

import logging
import os
import secrets
import shlex
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator

import asyncssh

from .config import HostSpec, Settings
from .errors import ConnectFailure, PasswordRequired, SpawnFailure

logger = logging.getLogger(__name__)

PROG = "rcommand"


class Session:
    """A running remote process and the password state that goes with it."""

    def __init__(
        self,
        host: str,
        conn: asyncssh.SSHClientConnection,
        process: asyncssh.SSHClientProcess,
    ) -> None:
        self.host = host
        self.conn = conn
        self.process = process
        self.stdout = process.stdout
        self.stderr: asyncssh.SSHReader | None = process.stderr
        self.need_password = False
        self.password_sent = False

    async def answer_prompt(self, password: str | None) -> None:
        """Answer a pending sudo prompt.

        The password goes out at most once per session. A repeated prompt
        means it was rejected, so stdin is closed instead and sudo gives up.
        """
        if not self.need_password:
            return
        self.need_password = False

        if password is None:
            raise PasswordRequired(self.host)

        try:
            if self.password_sent:
                logger.warning("%s: sudo asked again, password was rejected", self.host)
                self.process.stdin.write_eof()
                return
            self.password_sent = True
            self.process.stdin.write(password.encode("utf-8") + b"\n")
            await self.process.stdin.drain()
        except (ConnectionError, asyncssh.DisconnectError) as e:
            # The remote side may already be gone
            logger.debug("%s: password write failed: %s", self.host, e)

    def close_stderr(self) -> None:
        self.stderr = None

    def terminate(self) -> None:
        """Ask the remote process to stop."""
        try:
            self.process.terminate()
        except (OSError, asyncssh.Error) as e:
            logger.debug("%s: terminate failed: %s", self.host, e)
        self.process.close()

    async def wait(self) -> tuple[int | None, str | None]:
        """Wait for the remote process and return ``(exit_status, signal)``."""
        await self.process.wait_closed()
        signal = None
        if self.process.exit_signal:
            signal = self.process.exit_signal[0]
        return self.process.exit_status, signal


def connect_options(spec: HostSpec, settings: Settings) -> dict[str, Any]:
    """Convert a host and the shared settings to asyncssh.connect() kwargs."""
    options: dict[str, Any] = {
        "host": spec.host,
        "port": spec.port or settings.port,
        "connect_timeout": settings.connect_timeout,
        "known_hosts": settings.known_hosts,
    }
    user = spec.user or settings.user
    if user:
        options["username"] = user
    if settings.ssh_key:
        options["client_keys"] = [str(settings.ssh_key)]
    return options


def remote_script_path(script: Path, tmpdir: str = "/tmp", prog: str = PROG) -> str:
    """Build a collision-free remote path for a staged script."""
    timestamp = datetime.now().strftime("%Y%m%d%H%M%S")
    name = f"{prog}-{script.stem}-{timestamp}-{os.getpid()}-{secrets.token_hex(4)}"
    return f"{tmpdir.rstrip('/')}/{name}"


def build_command(
    tokens: list[str],
    marker: str,
    *,
    sudo: bool = False,
) -> str:
    """Build the remote command line.

    Tokens are joined with spaces the way ssh(1) does it, so a single
    token may carry shell syntax. ``SUDO_PROMPT`` makes any sudo in the
    command print the marker we look for.
    """
    command = " ".join(tokens)
    if sudo:
        command = f"sudo {command}"
    return f"export SUDO_PROMPT={shlex.quote(marker)}; {command}"


@asynccontextmanager
async def staged_script(
    conn: asyncssh.SSHClientConnection,
    host: str,
    script: Path | None,
    tmpdir: str = "/tmp",
) -> AsyncIterator[str | None]:
    """Copy a local script to the host for the duration of the block.

    Yields the remote path, or None when there is no script. The remote file
    is removed on every way out of the block.
    """
    if script is None:
        yield None
        return

    remote_path = remote_script_path(script, tmpdir)
    try:
        try:
            async with conn.start_sftp_client() as sftp:
                await sftp.put(str(script), remote_path)
                await sftp.chmod(remote_path, 0o700)
        except (asyncssh.Error, OSError) as e:
            raise SpawnFailure(host, f"failed to stage {script}: {e}") from e
        logger.debug("%s: staged %s at %s", host, script, remote_path)
        yield remote_path
    finally:
        await _remove_remote(conn, host, remote_path)


async def _remove_remote(conn: asyncssh.SSHClientConnection, host: str, path: str) -> None:
    try:
        async with conn.start_sftp_client() as sftp:
            await sftp.remove(path)
    except asyncssh.SFTPNoSuchFile:
        pass
    except (asyncssh.Error, OSError) as e:
        logger.warning("%s: could not remove %s: %s", host, path, e)
    else:
        logger.debug("%s: removed %s", host, path)


@asynccontextmanager
async def open_session(
    spec: HostSpec,
    settings: Settings,
    command: list[str],
    marker: str,
    *,
    script: Path | None = None,
    sudo: bool = False,
) -> AsyncIterator[Session]:
    """Connect to a host, stage the script if any, and start the process."""
    try:
        conn = await asyncssh.connect(**connect_options(spec, settings))
    except (asyncssh.Error, OSError) as e:
        raise ConnectFailure(spec.name, str(e) or type(e).__name__) from e

    try:
        async with staged_script(conn, spec.name, script, settings.remote_tmpdir) as remote_path:
            tokens = [remote_path, *command] if remote_path else command
            try:
                process = await conn.create_process(
                    build_command(tokens, marker, sudo=sudo),
                    term_type=settings.term_type,
                    encoding=None,
                )
            except (asyncssh.Error, OSError) as e:
                raise SpawnFailure(spec.name, str(e) or type(e).__name__) from e

            session = Session(spec.name, conn, process)
            try:
                yield session
            finally:
                process.close()
                await process.wait_closed()
    finally:
        conn.close()
        await conn.wait_closed()
