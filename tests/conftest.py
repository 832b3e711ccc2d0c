"""
Shared fixtures: server configs for real child processes, a fast
timeout policy, and a spawn counter.
"""

import asyncio
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest
import pytest_asyncio

from mcp_relay.config import ServerConfig, TimeoutPolicy
from mcp_relay.manager import ConnectionManager

REPO_ROOT = Path(__file__).resolve().parent.parent
MISBEHAVING = Path(__file__).resolve().parent / "servers" / "misbehaving.py"

# Children import mcp_relay even when the package is not installed
CHILD_ENV = {"PYTHONPATH": str(REPO_ROOT)}


def echo_config(name: str = "echo") -> ServerConfig:
    return ServerConfig(
        name=name,
        command=sys.executable,
        argv=("-m", "mcp_relay.servers.echo"),
        env=CHILD_ENV,
    )


def misbehaving_config(mode: str, name: str | None = None) -> ServerConfig:
    return ServerConfig(
        name=name or mode,
        command=sys.executable,
        argv=(str(MISBEHAVING), mode),
        env=CHILD_ENV,
    )


def dead_config(name: str = "dead") -> ServerConfig:
    return ServerConfig(name=name, command="/nonexistent/mcp-relay-no-such-command", argv=("--fake",))


@pytest.fixture
def timeouts():
    """Generous enough for interpreter startup, short enough for CI."""
    return TimeoutPolicy(handshake=10.0, discovery=10.0, call=10.0, remote_call=10.0)


@pytest.fixture
def spawn_log(monkeypatch):
    """Records the command line of every process the client tries to spawn."""
    calls = []
    original = asyncio.create_subprocess_exec

    async def counting(*args, **kwargs):
        calls.append(args)
        return await original(*args, **kwargs)

    monkeypatch.setattr(asyncio, "create_subprocess_exec", counting)
    return calls


@pytest_asyncio.fixture
async def manager(timeouts):
    """Manager with echo, a strict server and a dead server; shut down afterwards."""
    mgr = ConnectionManager(
        [echo_config(), misbehaving_config("strict"), dead_config()],
        timeouts=timeouts,
    )
    yield mgr
    await mgr.shutdown()


@pytest.fixture
def process_tracker(monkeypatch):
    """Records every spawned child and the most that were alive at once."""
    tracker = SimpleNamespace(processes=[], peak=0)
    original = asyncio.create_subprocess_exec

    async def tracking(*args, **kwargs):
        live = sum(1 for p in tracker.processes if p.returncode is None)
        tracker.peak = max(tracker.peak, live + 1)
        process = await original(*args, **kwargs)
        tracker.processes.append(process)
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", tracking)
    return tracker
