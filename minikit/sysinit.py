"""Guest init-system abstraction (systemd / OpenRC) for minikit.

Service units are always rendered as systemd units; that unit file is the one
description of how a guest binary is launched. On OpenRC guests the shim below
reads ``ExecStart=`` back out of the unit text and keeps the command alive with
a polling wrapper, so the same unit generation serves both init systems.
"""

from __future__ import annotations

import abc
import posixpath
import textwrap
from typing import List, Optional, Sequence

from minikit.command import copy_asset
from minikit.constants import GUEST_PERSISTENT_DIR
from minikit.exceptions import ManagerError
from minikit.models import MemoryAsset
from minikit.utils import log

SERVICE_TIMEOUT = 5.0

OPENRC_RESTART_WRAPPER = textwrap.dedent(
    """\
    #!/bin/bash
    # Keep the unit ExecStart command running without systemd
    readonly UNIT_PATH=$1

    while true; do
      if [[ -f "${UNIT_PATH}" ]]; then
        eval $(egrep "^ExecStart=" "${UNIT_PATH}" | cut -d"=" -f2-)
      fi
      sleep 1
    done
    """
)

OPENRC_INIT_SCRIPT = textwrap.dedent(
    """\
    #!/bin/bash
    # OpenRC init script shim for systemd units
    readonly NAME="{name}"
    readonly RESTART_WRAPPER="{wrapper}"
    readonly UNIT_PATH="{unit}"
    readonly PID_PATH="/var/run/${{NAME}}.pid"

    function start() {{
        start-stop-daemon --oknodo --pidfile "${{PID_PATH}}" --background --start --make-pid --exec "${{RESTART_WRAPPER}}" "${{UNIT_PATH}}"
    }}

    function stop() {{
        if [[ -f "${{PID_PATH}}" ]]; then
            pkill -P "$(cat ${{PID_PATH}})"
        fi
        start-stop-daemon --oknodo --pidfile "${{PID_PATH}}" --stop
    }}

    case "$1" in
        start)
            start
            ;;
        stop)
            stop
            ;;
        restart)
            stop
            start
            ;;
        status)
            start-stop-daemon --pidfile "${{PID_PATH}}" --status
            ;;
        *)
            echo "Usage: {name} {{start|stop|restart|status}}"
            exit 1
            ;;
    esac
    """
)

SYSTEMD_UNIT = textwrap.dedent(
    """\
    [Unit]
    Description={description}
    Wants=network-online.target
    After=network-online.target

    [Service]
    {environment}ExecStart=
    ExecStart={exec_start}
    Restart=always
    RestartSec=1

    [Install]
    WantedBy=multi-user.target
    """
)


def render_unit(binary: str, args: Sequence[str] = (), description: str = "", env: Sequence[str] = ()) -> str:
    """Render the systemd unit that launches ``binary`` on the guest."""
    exec_start = " ".join([binary, *args])
    environment = "".join(f"Environment={item}\n" for item in env)
    return SYSTEMD_UNIT.format(
        description=description or posixpath.basename(binary),
        environment=environment,
        exec_start=exec_start,
    )


class InitSystem(abc.ABC):
    """Uniform service verbs over a guest init system."""

    def __init__(self, runner) -> None:
        self.runner = runner

    @abc.abstractmethod
    def name(self) -> str:
        ...

    @abc.abstractmethod
    def active(self, service: str) -> bool:
        ...

    @abc.abstractmethod
    def start(self, service: str) -> None:
        ...

    @abc.abstractmethod
    def stop(self, service: str) -> None:
        ...

    @abc.abstractmethod
    def restart(self, service: str) -> None:
        ...

    @abc.abstractmethod
    def enable(self, service: str) -> None:
        ...

    @abc.abstractmethod
    def disable(self, service: str) -> None:
        ...

    def generate_init_shim(self, service: str, binary: str, unit_path: str) -> List[MemoryAsset]:
        return []


class Systemd(InitSystem):
    def name(self) -> str:
        return "systemd"

    def _reload(self) -> None:
        self.runner.run(["sudo", "systemctl", "daemon-reload"])

    def active(self, service: str) -> bool:
        result = self.runner.run(["sudo", "systemctl", "is-active", "--quiet", "service", service], check=False)
        return result.returncode == 0

    def start(self, service: str) -> None:
        self._reload()
        self.runner.run(["sudo", "systemctl", "start", service])

    def stop(self, service: str) -> None:
        self.runner.run(["sudo", "systemctl", "stop", service])

    def restart(self, service: str) -> None:
        self._reload()
        self.runner.run(["sudo", "systemctl", "restart", service])

    def enable(self, service: str) -> None:
        self.runner.run(["sudo", "systemctl", "enable", service])

    def disable(self, service: str) -> None:
        self.runner.run(["sudo", "systemctl", "disable", service])


class OpenRC(InitSystem):
    """OpenRC has no unit files of its own; see :meth:`generate_init_shim`."""

    def name(self) -> str:
        return "OpenRC"

    def active(self, service: str) -> bool:
        result = self.runner.run(["sudo", "service", service, "status"], check=False)
        return result.returncode == 0

    def start(self, service: str) -> None:
        if self.active(service):
            return
        result = self.runner.run(["sudo", "service", service, "start"], timeout=SERVICE_TIMEOUT)
        log("DEBUG", f"start output: {result.output()}")

    def stop(self, service: str) -> None:
        result = self.runner.run(["sudo", "service", service, "stop"])
        log("DEBUG", f"stop output: {result.output()}")

    def restart(self, service: str) -> None:
        result = self.runner.run(["sudo", "service", service, "restart"])
        log("DEBUG", f"restart output: {result.output()}")

    def enable(self, service: str) -> None:
        pass

    def disable(self, service: str) -> None:
        pass

    def generate_init_shim(self, service: str, binary: str, unit_path: str) -> List[MemoryAsset]:
        """Return the restart wrapper and ``/etc/init.d`` script for a unit.

        ``binary`` is not used directly: the launch command is taken from the
        unit file at run time.
        """
        wrapper_path = posixpath.join(GUEST_PERSISTENT_DIR, "openrc-restart-wrapper.sh")
        script = OPENRC_INIT_SCRIPT.format(name=service, wrapper=wrapper_path, unit=unit_path)
        return [
            MemoryAsset(OPENRC_RESTART_WRAPPER.encode("utf-8"), wrapper_path, "0755"),
            MemoryAsset(script.encode("utf-8"), posixpath.join("/etc/init.d", service), "0755"),
        ]


def _responds(runner, args: Sequence[str]) -> bool:
    try:
        result = runner.run(list(args), check=False)
    except ManagerError as exc:
        log("DEBUG", f"{' '.join(args)} check failed: {exc}")
        return False
    return result.returncode == 0


def detect(runner) -> InitSystem:
    """Return the init system of the runner's target; systemd wins if both answer."""
    if _responds(runner, ["systemctl", "--version"]):
        return Systemd(runner)
    if _responds(runner, ["openrc", "--version"]):
        return OpenRC(runner)
    raise ManagerError("Unable to detect the guest init system: neither systemd nor OpenRC responded")


def install_service(runner, init: InitSystem, service: str, binary: str, unit: str, unit_path: Optional[str] = None) -> None:
    """Copy a unit (plus any init shim) to the guest and (re)start the service."""
    unit_path = unit_path or f"/lib/systemd/system/{service}.service"
    assets = [MemoryAsset(unit.encode("utf-8"), unit_path, "0644")]
    assets.extend(init.generate_init_shim(service, binary, unit_path))
    for asset in assets:
        copy_asset(runner, asset)
    init.enable(service)
    init.restart(service)
