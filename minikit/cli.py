"""CLI entry points for minikit."""

from __future__ import annotations

import argparse
import ipaddress
import platform
import shlex
import sys
from pathlib import Path
from typing import List, Optional

from minikit import machine
from minikit.constants import (
    DEFAULT_PROFILE,
    DOCKER,
    EXIT_DATA,
    EXIT_FAILURE,
    EXIT_INTERRUPTED,
    EXIT_NO_INPUT,
    EXIT_OK,
    EXIT_UNAVAILABLE,
    EXIT_USAGE,
    NONE,
    OCI_BINARIES,
)
from minikit.config import build_machine_config
from minikit.exceptions import (
    DaemonInfoError,
    DriverNotSupportedError,
    HostLoadError,
    MachineNotFoundError,
    ManagerError,
    ParseError,
    ToolNotFoundError,
    VersionError,
)
from minikit.models import State
from minikit.mount import DEFAULT_9P_VERSION, DEFAULT_MSIZE, run_mount_bridge
from minikit.registry import status as driver_status
from minikit.store import HostStore
from minikit.utils import log, set_verbose


class UsageError(ManagerError):
    """Bad command-line arguments."""


class _Parser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # type: ignore[override]
        self.print_usage(sys.stderr)
        log("ERROR", message)
        sys.exit(EXIT_USAGE)


def display_advice(exc: Exception, driver: str) -> None:
    """Print remediation hints for a driver that is missing or not healthy."""
    if isinstance(exc, ToolNotFoundError):
        status = driver_status(driver)
        if status.fix:
            print(f"Suggestion: {status.fix}", file=sys.stderr, flush=True)
        if status.doc:
            print(f"Documentation: {status.doc}", file=sys.stderr, flush=True)
        return
    if not isinstance(exc, DaemonInfoError) or driver not in OCI_BINARIES:
        return
    lines = [
        f"{driver} couldn't proceed because {driver} service is not healthy.",
        f"If you are still interested to make {driver} driver work, the following suggestions might help:",
        f"  - Prune unused {driver} images, volumes and abandoned containers.",
        f"  - Restart your {driver} service",
    ]
    if platform.system() != "Linux":
        lines.append(f"  - Ensure your {driver} daemon has access to enough CPU/memory resources.")
        if platform.system() == "Darwin" and driver == DOCKER:
            lines.append("  - Docs https://docs.docker.com/docker-for-mac/#resources")
        if platform.system() == "Windows" and driver == DOCKER:
            lines.append("  - Docs https://docs.docker.com/docker-for-windows/#resources")
    lines.append(f"  - Delete and recreate the cluster: minikit delete && minikit start --driver={driver}")
    for line in lines:
        print(line, file=sys.stderr, flush=True)


def exit_code_for(exc: BaseException) -> int:
    if isinstance(exc, KeyboardInterrupt):
        return EXIT_INTERRUPTED
    if isinstance(exc, UsageError):
        return EXIT_USAGE
    if isinstance(exc, (ToolNotFoundError, VersionError, DriverNotSupportedError, DaemonInfoError)):
        return EXIT_UNAVAILABLE
    if isinstance(exc, (HostLoadError, MachineNotFoundError, FileNotFoundError)):
        return EXIT_NO_INPUT
    if isinstance(exc, ParseError):
        return EXIT_DATA
    cause = getattr(exc, "__cause__", None)
    if cause is not None and cause is not exc:
        return exit_code_for(cause)
    return EXIT_FAILURE


def build_parser() -> argparse.ArgumentParser:
    parser = _Parser(prog="minikit", description="Run a local single-node cluster machine")
    parser.add_argument("-p", "--profile", default=DEFAULT_PROFILE, help="Profile (machine) name")
    parser.add_argument("-v", "--verbose", action="store_true", help="Show debug output")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND", parser_class=_Parser)
    sub.required = True

    start = sub.add_parser("start", help="Create or reconcile the machine")
    start.add_argument("--driver", help="Driver to use (docker, podman, virtualbox, none)")
    start.add_argument("--cpus", help="Number of CPUs")
    start.add_argument("--memory", dest="memory_mb", help="Memory in MB")
    start.add_argument("--disk-size", help="Disk size, e.g. 20000mb or 20g")
    start.add_argument("--docker-env", action="append", default=None, help="Environment for the engine (repeatable)")
    start.add_argument("--insecure-registry", action="append", default=None, help="Insecure registry (repeatable)")
    start.add_argument("--registry-mirror", action="append", default=None, help="Registry mirror (repeatable)")
    start.add_argument("--base-image", dest="kic_image", help="Node image for container drivers")
    start.add_argument("--iso-url", help="Boot ISO for VM drivers")
    start.add_argument("--subnet", help="Subnet for the cluster network (container drivers)")

    sub.add_parser("stop", help="Stop the machine")
    delete = sub.add_parser("delete", help="Delete the machine and its network")
    delete.add_argument("--all", dest="all_profiles", action="store_true", help="Delete every profile and every network minikit created")
    sub.add_parser("status", help="Show the machine state")
    sub.add_parser("ip", help="Print the machine IP address")

    mount = sub.add_parser("mount", help="Mount a host directory into the machine")
    mount.add_argument("mount_string", metavar="SOURCE:TARGET", help="<host directory>:<guest directory>")
    mount.add_argument("--ip", default="", help="Host IP the guest should connect to (default: auto-detect)")
    mount.add_argument("--port", type=int, default=5640, help="Port of the host 9p server")
    mount.add_argument("--uid", default="docker", help="Default user id used for the mount")
    mount.add_argument("--gid", default="docker", help="Default group id used for the mount")
    mount.add_argument("--9p-version", dest="version", default=DEFAULT_9P_VERSION, help="9p protocol version")
    mount.add_argument("--msize", type=int, default=DEFAULT_MSIZE, help="Bytes to use for the 9p packet payload")
    mount.add_argument("--server-cmd", default="", help="Host 9p server command to run while mounted")
    return parser


def cmd_start(args: argparse.Namespace, store: HostStore) -> int:
    overrides = {
        "driver": args.driver,
        "cpus": args.cpus,
        "memory_mb": args.memory_mb,
        "disk_size": args.disk_size,
        "docker_env": args.docker_env,
        "insecure_registry": args.insecure_registry,
        "registry_mirror": args.registry_mirror,
        "kic_image": args.kic_image,
        "iso_url": args.iso_url,
        "subnet": args.subnet,
    }
    try:
        cfg = build_machine_config(args.profile, overrides)
    except ManagerError as exc:
        raise UsageError(str(exc)) from exc
    try:
        host = machine.start_host(cfg, store)
    except ManagerError as exc:
        display_advice(exc, cfg.driver)
        raise
    log("SUCCESS", f'Done! "{host.name}" is running on {host.driver_name}')
    return EXIT_OK


def cmd_stop(args: argparse.Namespace, store: HostStore) -> int:
    state = machine.stop_host(args.profile, store)
    log("SUCCESS", f'"{args.profile}" {str(state).lower()}')
    return EXIT_OK


def cmd_delete(args: argparse.Namespace, store: HostStore) -> int:
    if args.all_profiles:
        count = machine.delete_all(store)
        log("SUCCESS", f"Deleted {count} profile(s)")
        return EXIT_OK
    machine.delete_host(args.profile, store)
    return EXIT_OK


def cmd_status(args: argparse.Namespace, store: HostStore) -> int:
    state = machine.host_status(args.profile, store)
    print(f"host: {state}", flush=True)
    if state == State.NONE:
        return EXIT_NO_INPUT
    return EXIT_OK


def cmd_ip(args: argparse.Namespace, store: HostStore) -> int:
    print(machine.host_ip(args.profile, store), flush=True)
    return EXIT_OK


def cmd_mount(args: argparse.Namespace, store: HostStore) -> int:
    source, sep, target = args.mount_string.rpartition(":")
    if not sep or not source or not target:
        raise UsageError(f'mount argument "{args.mount_string}" must be in form: <source directory>:<target directory>')
    if not target.startswith("/"):
        raise UsageError(f"Target directory {target} must be an absolute path")
    host_path = Path(source).expanduser()
    if not host_path.is_dir():
        raise FileNotFoundError(f"Cannot find directory {host_path} for mount")

    host = store.load(args.profile)
    if host.driver_name == NONE:
        raise UsageError("'none' driver does not support 'minikit mount' command")
    if args.ip:
        try:
            host_ip = str(ipaddress.ip_address(args.ip))
        except ValueError as exc:
            raise ParseError("error parsing the input ip address for mount", args.ip) from exc
    else:
        host_ip = host.driver.get_host_ip()

    run_mount_bridge(
        host.driver.get_runner(),
        host_ip,
        args.port,
        host_path,
        target,
        server_cmd=shlex.split(args.server_cmd) if args.server_cmd else None,
        uid=args.uid,
        gid=args.gid,
        version=args.version,
        msize=args.msize,
    )
    return EXIT_OK


COMMANDS = {
    "start": cmd_start,
    "stop": cmd_stop,
    "delete": cmd_delete,
    "status": cmd_status,
    "ip": cmd_ip,
    "mount": cmd_mount,
}


def main(argv: Optional[List[str]] = None, store: Optional[HostStore] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.verbose:
        set_verbose(True)
    store = store or HostStore()
    try:
        return COMMANDS[args.command](args, store)
    except KeyboardInterrupt:
        log("WARN", "Interrupted")
        return EXIT_INTERRUPTED
    except (ManagerError, FileNotFoundError) as exc:
        log("ERROR", str(exc))
        return exit_code_for(exc)
