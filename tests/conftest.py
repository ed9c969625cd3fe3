"""Shared fakes standing in for asyncssh connections and processes."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest


class FakeReader:
    """Returns queued chunks, then end of stream.

    With ``block=True`` the reader never reaches end of stream and waits
    until the read is cancelled. With ``error`` set, that exception is
    raised instead of end of stream.
    """

    def __init__(self, chunks=(), block=False, error=None):
        self.chunks = list(chunks)
        self.block = block
        self.error = error

    async def read(self, n=-1):
        if self.chunks:
            await asyncio.sleep(0)
            return self.chunks.pop(0)
        if self.error is not None:
            raise self.error
        if self.block:
            await asyncio.Event().wait()
        return b""


def make_process(stdout=(), stderr=(), exit_status=0, exit_signal=None, block=False):
    """Create a fake SSHClientProcess."""
    process = MagicMock()
    process.stdout = FakeReader(stdout, block=block)
    process.stderr = FakeReader(stderr, block=block)
    process.stdin = MagicMock()
    process.stdin.drain = AsyncMock()
    process.exit_status = exit_status
    process.exit_signal = exit_signal
    process.wait_closed = AsyncMock()
    return process


def make_connection(process=None, sftp=None):
    """Create a fake SSHClientConnection that runs ``process``."""
    conn = MagicMock()
    conn.create_process = AsyncMock(return_value=process or make_process())
    conn.wait_closed = AsyncMock()
    conn.sftp = sftp or AsyncMock()
    conn.start_sftp_client.return_value.__aenter__.return_value = conn.sftp
    return conn


class Routes(dict):
    def __init__(self):
        super().__init__()
        self.calls = []


@pytest.fixture
def connect_to(monkeypatch):
    """Route asyncssh.connect to per-host fake connections.

    Values may be a connection or an exception to raise.
    """
    routes = Routes()

    async def fake_connect(**options):
        routes.calls.append(options)
        target = routes[options["host"]]
        if isinstance(target, BaseException):
            raise target
        return target

    monkeypatch.setattr("rcommand.session.asyncssh.connect", fake_connect)
    return routes
