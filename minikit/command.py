"""External command execution for minikit.

Every interaction with hypervisor tools, container engines and guest shells
goes through :func:`run_cmd` or one of the runner classes below. Runners never
print; failures come back as exceptions carrying the captured
:class:`RunResult`.
"""

from __future__ import annotations

import posixpath
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

from minikit.exceptions import CommandError, CommandTimeoutError, ToolNotFoundError
from minikit.models import MemoryAsset
from minikit.utils import log


@dataclass(frozen=True)
class RunResult:
    args: Tuple[str, ...]
    stdout: str = ""
    stderr: str = ""
    returncode: int = 0

    def command(self) -> str:
        return shlex.join(self.args)

    def output(self) -> str:
        """Combined stdout and stderr, in that order."""
        if self.stdout and self.stderr:
            return f"{self.stdout}\n{self.stderr}"
        return self.stdout or self.stderr

    def lines(self) -> List[str]:
        return [line.strip() for line in self.stdout.strip().splitlines() if line.strip()]


InputData = Union[str, bytes, None]


def run_cmd(
    args: Sequence[str],
    input: InputData = None,
    timeout: Optional[float] = None,
    check: bool = True,
) -> RunResult:
    """Run a command to completion and capture its output.

    On timeout the child is killed before :class:`CommandTimeoutError` is
    raised.
    """
    argv = tuple(str(arg) for arg in args)
    log("DEBUG", f"Running: {shlex.join(argv)}")
    if isinstance(input, str):
        input = input.encode("utf-8")
    try:
        proc = subprocess.run(
            argv,
            input=input,
            capture_output=True,
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError as exc:
        raise ToolNotFoundError(argv[0]) from exc
    except subprocess.TimeoutExpired as exc:
        raise CommandTimeoutError(shlex.join(argv), timeout or 0) from exc

    result = RunResult(
        args=argv,
        stdout=proc.stdout.decode("utf-8", errors="replace"),
        stderr=proc.stderr.decode("utf-8", errors="replace"),
        returncode=proc.returncode,
    )
    if check and result.returncode != 0:
        raise CommandError(result)
    return result


class LocalRunner:
    """Run commands on the machine minikit itself runs on."""

    def run(
        self,
        args: Sequence[str],
        input: InputData = None,
        timeout: Optional[float] = None,
        check: bool = True,
    ) -> RunResult:
        return run_cmd(args, input=input, timeout=timeout, check=check)


class SSHRunner:
    """Run commands inside a guest through the OpenSSH client."""

    def __init__(self, hostname: str, port: int, username: str, key_path: Optional[Path] = None) -> None:
        self.hostname = hostname
        self.port = port
        self.username = username
        self.key_path = key_path

    def ssh_args(self) -> List[str]:
        args = [
            "ssh",
            "-o",
            "BatchMode=yes",
            "-o",
            "StrictHostKeyChecking=no",
            "-o",
            "UserKnownHostsFile=/dev/null",
            "-o",
            "LogLevel=quiet",
            "-o",
            "ConnectTimeout=10",
            "-p",
            str(self.port),
        ]
        if self.key_path is not None:
            args.extend(["-i", str(self.key_path)])
        args.append(f"{self.username}@{self.hostname}")
        return args

    def run(
        self,
        args: Sequence[str],
        input: InputData = None,
        timeout: Optional[float] = None,
        check: bool = True,
    ) -> RunResult:
        remote = shlex.join(str(arg) for arg in args)
        return run_cmd(self.ssh_args() + [remote], input=input, timeout=timeout, check=check)


class ContainerRunner:
    """Run commands inside a container node through ``<oci> exec``."""

    def __init__(self, oci_binary: str, container: str) -> None:
        self.oci_binary = oci_binary
        self.container = container

    def run(
        self,
        args: Sequence[str],
        input: InputData = None,
        timeout: Optional[float] = None,
        check: bool = True,
    ) -> RunResult:
        argv = [self.oci_binary, "exec"]
        if input is not None:
            argv.append("-i")
        argv.append(self.container)
        argv.extend(str(arg) for arg in args)
        return run_cmd(argv, input=input, timeout=timeout, check=check)


def shell(runner, script: str, timeout: Optional[float] = None, check: bool = True) -> RunResult:
    """Run a shell snippet through ``/bin/bash -c`` on the given runner."""
    return runner.run(["/bin/bash", "-c", script], timeout=timeout, check=check)


def copy_asset(runner, asset: MemoryAsset) -> None:
    """Write in-memory content to a path on the runner's target as root."""
    directory = posixpath.dirname(asset.target_path)
    if directory:
        runner.run(["sudo", "mkdir", "-p", directory])
    runner.run(["sudo", "tee", asset.target_path], input=asset.content)
    runner.run(["sudo", "chmod", asset.permissions, asset.target_path])
