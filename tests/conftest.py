"""
Shared pytest fixtures for minerfleet tests.

This module provides common fixtures including:
- SubprocessMocker: canned systemctl/ssh-keyscan responses matched by substring
- Store fixtures backed by a temporary sqlite database
- Fake miner probe and fake remote executor for agent and coordinator tests
"""

import asyncio
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import patch

import pytest

from minerfleet.config import UpdateConfig
from minerfleet.exceptions import ConnectivityError, MinerFleetError
from minerfleet.modules.api.models import CommandOutcome, MinerSummary
from minerfleet.modules.executor.miner_api import MinerApiError
from minerfleet.modules.storage import MinerStore


# =============================================================================
# Subprocess Mocking
# =============================================================================

@dataclass
class ProcessResponse:
    """Canned result of one subprocess invocation."""
    stdout: str = ""
    stderr: str = ""
    returncode: int = 0
    raises: Optional[BaseException] = None


@dataclass
class ProcessCall:
    command: List[str]
    kwargs: Dict[str, Any]
    matched: Optional[str] = None

    @property
    def line(self) -> str:
        return " ".join(self.command)


UNMATCHED = ProcessResponse(stderr="no canned response for this command", returncode=1)


class SubprocessMocker:
    """
    Stand-in for subprocess.run.

    Responses are matched by substring against the space-joined argv. Higher
    priority wins; among equal priorities the first registration wins.

    Usage:
        def test_start(subprocess_mocker):
            subprocess_mocker.register("systemctl start", ProcessResponse())
            ServiceManager("xmrig").start()
            assert subprocess_mocker.was_called_with("systemctl start xmrig")
    """

    def __init__(self):
        self._rules: List[Tuple[int, int, str, ProcessResponse]] = []
        self.calls: List[ProcessCall] = []

    def register(self, pattern: str, response: ProcessResponse, priority: int = 0) -> "SubprocessMocker":
        self._rules.append((-priority, len(self._rules), pattern, response))
        self._rules.sort(key=lambda rule: rule[:2])
        return self

    def _lookup(self, line: str) -> Tuple[Optional[str], ProcessResponse]:
        for _, _, pattern, response in self._rules:
            if pattern in line:
                return pattern, response
        return None, UNMATCHED

    def run(self, cmd: List[str], **kwargs) -> subprocess.CompletedProcess:
        call = ProcessCall(command=list(cmd), kwargs=kwargs)
        call.matched, response = self._lookup(call.line)
        self.calls.append(call)

        if response.raises is not None:
            raise response.raises
        return subprocess.CompletedProcess(call.command, response.returncode, response.stdout, response.stderr)

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def get_calls_matching(self, pattern: str) -> List[ProcessCall]:
        return [call for call in self.calls if pattern in call.line]

    def was_called_with(self, pattern: str) -> bool:
        return bool(self.get_calls_matching(pattern))


@pytest.fixture
def subprocess_mocker():
    """SubprocessMocker with subprocess.run patched for the duration of the test."""
    mocker = SubprocessMocker()
    with patch("subprocess.run", side_effect=mocker.run):
        yield mocker


def register_unit(mocker: SubprocessMocker, state: str = "active", pid: int = 4242) -> SubprocessMocker:
    """Canned systemctl responses for a unit in the given state."""
    mocker.register("is-active", ProcessResponse(stdout=f"{state}\n", returncode=0 if state == "active" else 3))
    mocker.register("MainPID", ProcessResponse(stdout=f"{pid}\n"))
    for verb in ("start", "stop", "restart"):
        mocker.register(f"systemctl {verb} ", ProcessResponse())
    return mocker


# =============================================================================
# Store Fixtures
# =============================================================================

@pytest.fixture
def db_path(tmp_path) -> str:
    return str(tmp_path / "minerfleet.sqlite3")


@pytest.fixture
def store(db_path):
    store = MinerStore(db_path)
    yield store
    store.close()


# =============================================================================
# Fake Miner Probe
# =============================================================================

class FakeMinerApi:
    """Stands in for MinerApiClient with a canned summary or error."""

    def __init__(self, hashrate: Optional[float] = 1250.0, error: Optional[str] = None):
        self.hashrate = hashrate
        self.error = error
        self.calls = 0
        self.closed = False

    def summary(self) -> MinerSummary:
        self.calls += 1
        if self.error:
            raise MinerApiError(self.error)
        return MinerSummary(
            hashrate=self.hashrate,
            connected=True,
            pool="pool.example.com:3333",
            accepted_shares=10,
            rejected_shares=1,
            raw={"hashrate": {"total": [self.hashrate, None, None]}},
        )

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def miner_api():
    return FakeMinerApi()


# =============================================================================
# Fake Remote Executor
# =============================================================================

@dataclass
class ConcurrencyProbe:
    """Counts executors inside their pipeline at once."""
    current: int = 0
    peak: int = 0
    started: List[str] = field(default_factory=list)
    finished: List[str] = field(default_factory=list)


class FakeExecutor:
    """
    Async stand-in for SSHExecutor.

    Failures are configured per stage: {"connectivity": ConnectivityError(...)}.
    A stage listed in hangs sleeps for that many seconds first.
    """

    def __init__(
        self,
        hostname: str,
        probe: ConcurrencyProbe,
        failures: Optional[Dict[str, MinerFleetError]] = None,
        hangs: Optional[Dict[str, float]] = None,
        delay: float = 0.01,
    ):
        self.hostname = hostname
        self.probe = probe
        self.failures = failures or {}
        self.hangs = hangs or {}
        self.delay = delay
        self.stages: List[str] = []
        self.installed = False

    async def _stage(self, name: str) -> None:
        self.stages.append(name)
        if name in self.hangs:
            await asyncio.sleep(self.hangs[name])
        await asyncio.sleep(self.delay)
        if name in self.failures:
            raise self.failures[name]

    async def check_connectivity(self) -> None:
        self.probe.current += 1
        self.probe.peak = max(self.probe.peak, self.probe.current)
        self.probe.started.append(self.hostname)
        try:
            await self._stage("connectivity")
        except BaseException:
            self.probe.current -= 1
            raise

    async def copy_artifact(self, source: Path) -> None:
        await self._guarded("copy")

    async def verify_checksum(self, expected: str) -> str:
        await self._guarded("checksum")
        return expected

    async def install(self, install_path, service_name, miner_binary_path, settle_delay=2) -> CommandOutcome:
        await self._guarded("install")
        self.installed = True
        return CommandOutcome("  ✓ Agent installed\n", "", 0)

    async def verify_service(self, service_name: str) -> None:
        await self._guarded("verify")
        self.probe.current -= 1
        self.probe.finished.append(self.hostname)

    async def _guarded(self, name: str) -> None:
        try:
            await self._stage(name)
        except BaseException:
            self.probe.current -= 1
            raise


class FakeFleet:
    """Executor factory handing out FakeExecutors with per-host behaviour."""

    def __init__(self):
        self.probe = ConcurrencyProbe()
        self.failures: Dict[str, Dict[str, MinerFleetError]] = {}
        self.hangs: Dict[str, Dict[str, float]] = {}
        self.executors: Dict[str, FakeExecutor] = {}

    def fail(self, hostname: str, stage: str, error: MinerFleetError) -> "FakeFleet":
        self.failures.setdefault(hostname, {})[stage] = error
        return self

    def hang(self, hostname: str, stage: str, seconds: float) -> "FakeFleet":
        self.hangs.setdefault(hostname, {})[stage] = seconds
        return self

    def __call__(self, hostname: str) -> FakeExecutor:
        executor = FakeExecutor(
            hostname, self.probe, self.failures.get(hostname), self.hangs.get(hostname)
        )
        self.executors[hostname] = executor
        return executor


@pytest.fixture
def fake_fleet():
    return FakeFleet()


@pytest.fixture
def artifact(tmp_path) -> Path:
    path = tmp_path / "minerfleet-agent"
    path.write_bytes(b"#!/bin/sh\necho minerfleet agent\n")
    return path


@pytest.fixture
def known_hosts_path(tmp_path) -> Path:
    return tmp_path / "known_hosts"


@pytest.fixture
def update_config(tmp_path, artifact, known_hosts_path) -> UpdateConfig:
    deploy = tmp_path / "deploy.yml"
    deploy.write_text("servers:\n  web:\n    hosts:\n      - miner-1.example.com\n      - miner-2.example.com\n")
    return UpdateConfig(
        deploy_config_path=deploy,
        hosts_key_path=("servers", "web", "hosts"),
        source_path=artifact,
        install_path="/usr/local/bin/minerfleet-agent",
        miner_binary_path="/usr/local/bin/xmrig",
        service_name="minerfleet-agent",
        ssh_user="deploy",
        known_hosts_path=known_hosts_path,
        max_concurrency=10,
        host_timeout=5,
        command_timeout=5,
        connect_timeout=5,
        output_limit=100 * 1024,
        settle_delay=0,
        shutdown_grace=1,
    )


ED25519_KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIOMqqnkVzrm0SdG6UOoqKLsabgH5C9okWi0dh2l9GKJl"


def register_hosts(path: Path, *hostnames: str) -> None:
    with open(path, "a") as f:
        for hostname in hostnames:
            f.write(f"{hostname} {ED25519_KEY}\n")


def unreachable(hostname: str) -> ConnectivityError:
    return ConnectivityError(hostname, "exit 255: ssh: connect to host port 22: Connection refused", stage="connectivity")


# =============================================================================
# Test Markers Configuration
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: Tests that take a long time to run"
    )
