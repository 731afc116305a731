"""9p mount of a host directory into the guest."""

from __future__ import annotations

import shlex
import signal
import subprocess
import sys
from pathlib import Path
from typing import Callable, Dict, List, Optional

from minikit.command import shell
from minikit.constants import EXIT_INTERRUPTED
from minikit.exceptions import ManagerError
from minikit.utils import log

NINE_P = "9p"
DEFAULT_9P_VERSION = "9p2000.L"
DEFAULT_MSIZE = 262144


def _mounted_test(guest_path: str) -> str:
    quoted = shlex.quote(guest_path)
    return f'[ "x$(findmnt -T {quoted} | grep {quoted})" != "x" ]'


def unmount_command(guest_path: str) -> str:
    return f"{_mounted_test(guest_path)} && sudo umount -f {shlex.quote(guest_path)} || echo "


def mount_command(
    host_ip: str,
    port: int,
    guest_path: str,
    uid: str = "docker",
    gid: str = "docker",
    version: str = DEFAULT_9P_VERSION,
    msize: int = DEFAULT_MSIZE,
    extra: Optional[Dict[str, str]] = None,
) -> str:
    options = {
        "dfltuid": f"$(id -u {shlex.quote(uid)})",
        "dfltgid": f"$(id -g {shlex.quote(gid)})",
        "msize": str(msize),
        "port": str(port),
        "trans": "tcp",
        "version": version,
    }
    options.update(extra or {})
    joined = ",".join(f"{key}={value}" for key, value in sorted(options.items()))
    target = shlex.quote(guest_path)
    return (
        f"{unmount_command(guest_path)}; "
        f"sudo mkdir -p {target} && sudo mount -t {NINE_P} -o {joined} {host_ip} {target}"
    )


def mount(runner, host_ip: str, port: int, guest_path: str, **options) -> None:
    """Mount the 9p share served at ``host_ip:port`` on ``guest_path``."""
    if not guest_path.startswith("/"):
        raise ManagerError(f"Target directory {guest_path} must be an absolute path")
    result = shell(runner, mount_command(host_ip, port, guest_path, **options), check=False)
    if result.returncode != 0:
        raise ManagerError(f"mount {guest_path} failed (exit {result.returncode}):\n{result.output().strip()}")


def unmount(runner, guest_path: str) -> None:
    shell(runner, unmount_command(guest_path))


def run_mount_bridge(
    runner,
    host_ip: str,
    port: int,
    host_path: Path,
    guest_path: str,
    server_cmd: Optional[List[str]] = None,
    wait: Optional[Callable[[], None]] = None,
    **options,
) -> None:
    """Mount ``host_path`` in the guest and keep it mounted until interrupted.

    ``server_cmd``, when given, is the host-side 9p server to run for the
    duration of the mount. On SIGINT or SIGTERM the guest path is unmounted
    before the process exits with the interrupted status.
    """
    if not host_path.is_dir():
        raise FileNotFoundError(f"Cannot find directory {host_path} for mount")
    wait = wait or signal.pause

    server: Optional[subprocess.Popen] = None
    if server_cmd:
        log("INFO", f"Starting 9p server: {shlex.join(server_cmd)}")
        server = subprocess.Popen(server_cmd)

    def _stop_server() -> None:
        if server is not None and server.poll() is None:
            server.terminate()
            server.wait(timeout=10)

    def _interrupted(signum, frame):
        log("INFO", f"Unmounting {guest_path} ...")
        try:
            unmount(runner, guest_path)
        except ManagerError as exc:
            log("ERROR", f"Failed to unmount {guest_path}: {exc}")
        _stop_server()
        log("INFO", f"Received {signal.Signals(signum).name} signal")
        sys.exit(EXIT_INTERRUPTED)

    prev_sigterm = signal.signal(signal.SIGTERM, _interrupted)
    prev_sigint = signal.signal(signal.SIGINT, _interrupted)
    try:
        log("INFO", f"Mounting host path {host_path} into VM as {guest_path} ...")
        mount(runner, host_ip, port, guest_path, **options)
        log("SUCCESS", f"Successfully mounted {host_path} to {guest_path}")
        log("INFO", "NOTE: This process must stay alive for the mount to be accessible ...")
        while True:
            wait()
    except BaseException:
        _stop_server()
        raise
    finally:
        signal.signal(signal.SIGTERM, prev_sigterm)
        signal.signal(signal.SIGINT, prev_sigint)
