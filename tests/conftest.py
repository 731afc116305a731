"""Shared test fixtures: a scripted command runner and an in-memory driver."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Union

import pytest

from minikit.command import RunResult
from minikit.driver import Driver
from minikit.exceptions import CommandError, HostLoadError
from minikit.models import Host, State


@dataclass
class Response:
    stdout: str = ""
    stderr: str = ""
    returncode: int = 0


def ok(stdout: str = "") -> Response:
    return Response(stdout=stdout)


def fail(stderr: str = "", returncode: int = 1, stdout: str = "") -> Response:
    return Response(stdout=stdout, stderr=stderr, returncode=returncode)


Scripted = Union[Response, BaseException]


class FakeRunner:
    """Stand-in for LocalRunner/SSHRunner/ContainerRunner.

    ``on(needle, *responses)`` scripts every command whose joined command
    line contains ``needle``. Responses are consumed in order; the last one
    repeats. The first matching rule wins; unmatched commands succeed with
    empty output.
    """

    def __init__(self) -> None:
        self.calls: List[List[str]] = []
        self.inputs: List[Any] = []
        self._rules: List[List[Any]] = []

    def on(self, needle: str, *responses: Scripted) -> "FakeRunner":
        self._rules.append([needle, list(responses) or [ok()]])
        return self

    def run(self, args: Sequence[str], input=None, timeout: Optional[float] = None, check: bool = True) -> RunResult:
        argv = tuple(str(arg) for arg in args)
        self.calls.append(list(argv))
        self.inputs.append(input)
        line = " ".join(argv)
        response: Scripted = ok()
        for needle, responses in self._rules:
            if needle in line:
                response = responses.pop(0) if len(responses) > 1 else responses[0]
                break
        if isinstance(response, BaseException):
            raise response
        result = RunResult(argv, response.stdout, response.stderr, response.returncode)
        if check and result.returncode != 0:
            raise CommandError(result)
        return result

    def commands(self) -> List[str]:
        return [" ".join(call) for call in self.calls]

    def count(self, needle: str) -> int:
        return sum(1 for line in self.commands() if needle in line)


class FakeDriver(Driver):
    """Driver whose state lives in memory; guest commands go to a FakeRunner."""

    persisted_fields = Driver.persisted_fields + ("name",)

    def __init__(
        self,
        machine_name: str = "minikit",
        name: str = "fake",
        runner: Optional[FakeRunner] = None,
        state: State = State.STOPPED,
        container_based: bool = False,
        managed: bool = True,
        **kwargs: Any,
    ) -> None:
        kwargs.setdefault("ip_address", "192.168.59.100")
        super().__init__(machine_name, **kwargs)
        self.name = name
        self.runner = runner or FakeRunner()
        self.state = state
        self.container_based = container_based
        self.managed = managed
        self.verbs: List[str] = []

    def driver_name(self) -> str:
        return self.name

    def is_container_based(self) -> bool:
        return self.container_based

    def is_managed(self) -> bool:
        return self.managed

    def create(self) -> None:
        self.verbs.append("create")
        self.state = State.RUNNING

    def start(self) -> None:
        self.verbs.append("start")
        self.state = State.RUNNING

    def stop(self) -> None:
        self.verbs.append("stop")
        self.state = State.STOPPED

    def kill(self) -> None:
        self.verbs.append("kill")
        self.state = State.STOPPED

    def remove(self) -> None:
        self.verbs.append("remove")
        self.state = State.NONE

    def get_state(self) -> State:
        return self.state

    def get_runner(self):
        return self.runner


class FakeStore:
    """In-memory stand-in for HostStore."""

    def __init__(self, hosts: Optional[Dict[str, Host]] = None) -> None:
        self.hosts: Dict[str, Host] = dict(hosts or {})
        self.saves = 0

    def exists(self, name: str) -> bool:
        return name in self.hosts

    def load(self, name: str) -> Host:
        if name not in self.hosts:
            raise HostLoadError(f"Host {name} does not exist. Please try running [minikit delete], then run [minikit start] again.")
        return self.hosts[name]

    def save(self, host: Host) -> None:
        self.saves += 1
        self.hosts[host.name] = host

    def remove(self, name: str) -> None:
        self.hosts.pop(name, None)


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def fake_driver(runner) -> FakeDriver:
    return FakeDriver(runner=runner)


@pytest.fixture
def fake_host(fake_driver) -> Host:
    return Host(name="minikit", driver_name=fake_driver.name, driver=fake_driver)


@pytest.fixture
def fake_store(fake_host) -> FakeStore:
    return FakeStore({fake_host.name: fake_host})


@pytest.fixture
def mock_env(monkeypatch):
    """Helper to set environment variables for tests."""

    def _set(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

    return _set


_CONFIG_ENV_VARS = [
    "MINIKIT_DRIVER",
    "MINIKIT_CPUS",
    "MINIKIT_MEMORY",
    "MINIKIT_DISK_SIZE",
    "MINIKIT_DOCKER_ENV",
]


@pytest.fixture
def clean_env(monkeypatch):
    """Remove every variable the config layer reads."""
    for name in _CONFIG_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
