"""Driver contract shared by every minikit backend.

The reconciler only ever talks to :class:`Driver`. Behaviour that differs per
backend is exposed through capability predicates (``is_container_based`` and
friends) rather than by checking concrete types.
"""

from __future__ import annotations

import abc
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple

from minikit.command import InputData, LocalRunner, RunResult, shell
from minikit.constants import ENGINE_PORT, NONE
from minikit.exceptions import CommandError, DriverNotSupportedError, ManagerError
from minikit.models import State
from minikit.utils import log


class Driver(abc.ABC):
    """One backend instance bound to one logical machine."""

    # Attributes written to the host record; subclasses extend this tuple and
    # accept every entry as a keyword argument.
    persisted_fields: Tuple[str, ...] = (
        "machine_name",
        "store_path",
        "ip_address",
        "ssh_user",
        "ssh_port",
        "ssh_key_path",
    )

    def __init__(
        self,
        machine_name: str,
        store_path: str = "",
        ip_address: str = "",
        ssh_user: str = "docker",
        ssh_port: int = 22,
        ssh_key_path: str = "",
    ) -> None:
        self.machine_name = machine_name
        self.store_path = store_path
        self.ip_address = ip_address
        self.ssh_user = ssh_user
        self.ssh_port = ssh_port
        self.ssh_key_path = ssh_key_path

    def __repr__(self) -> str:
        return f"{type(self).__name__}(machine_name={self.machine_name!r})"

    # Persistence

    def to_dict(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in self.persisted_fields}

    @classmethod
    def from_dict(cls, data: Dict[str, Any], **deps: Any) -> "Driver":
        known = {key: value for key, value in data.items() if key in cls.persisted_fields}
        return cls(**known, **deps)

    def resolve_store_path(self, *parts: str) -> Path:
        return Path(self.store_path, "machines", self.machine_name, *parts)

    # Capabilities

    @abc.abstractmethod
    def driver_name(self) -> str:
        ...

    def is_container_based(self) -> bool:
        return False

    def is_iso_based(self) -> bool:
        return False

    def is_managed(self) -> bool:
        return True

    # Lifecycle

    def pre_create_check(self) -> None:
        """Validate the environment before anything is allocated."""

    @abc.abstractmethod
    def create(self) -> None:
        ...

    @abc.abstractmethod
    def start(self) -> None:
        ...

    @abc.abstractmethod
    def stop(self) -> None:
        ...

    def restart(self) -> None:
        self.stop()
        self.start()

    @abc.abstractmethod
    def kill(self) -> None:
        ...

    @abc.abstractmethod
    def remove(self) -> None:
        ...

    @abc.abstractmethod
    def get_state(self) -> State:
        ...

    # Endpoints

    def get_ip(self) -> str:
        if not self.ip_address:
            raise ManagerError(f"IP address is not set for machine {self.machine_name}")
        return self.ip_address

    def get_url(self) -> str:
        return f"tcp://{self.get_ip()}:{ENGINE_PORT}"

    def get_ssh_hostname(self) -> str:
        return self.get_ip()

    def get_ssh_port(self) -> int:
        return self.ssh_port

    def get_ssh_username(self) -> str:
        return self.ssh_user

    def get_ssh_key_path(self) -> str:
        return self.ssh_key_path

    def get_host_ip(self) -> str:
        """Address of the host as seen from inside the guest."""
        raise ManagerError(f"{self.driver_name()} driver cannot report the host address seen by the guest")

    # Guest command execution

    @abc.abstractmethod
    def get_runner(self):
        ...

    def run_cmd(
        self,
        args: Sequence[str],
        input: InputData = None,
        timeout: Optional[float] = None,
        check: bool = True,
    ) -> RunResult:
        return self.get_runner().run(args, input=input, timeout=timeout, check=check)


class NoneDriver(Driver):
    """Runs Kubernetes directly on the host; there is no guest to manage."""

    SERVICE = "kubelet"

    def __init__(self, machine_name: str, runner=None, **kwargs: Any) -> None:
        super().__init__(machine_name, **kwargs)
        self.runner = runner or LocalRunner()

    def driver_name(self) -> str:
        return NONE

    def is_managed(self) -> bool:
        return False

    def _init_system(self):
        from minikit.sysinit import detect

        return detect(self.runner)

    def create(self) -> None:
        self.ip_address = self.get_ip()

    def start(self) -> None:
        init = self._init_system()
        if init.active(self.SERVICE):
            return
        init.start(self.SERVICE)

    def stop(self) -> None:
        init = self._init_system()
        if not init.active(self.SERVICE):
            return
        init.stop(self.SERVICE)

    def kill(self) -> None:
        self.stop()

    def remove(self) -> None:
        try:
            self.stop()
        except CommandError as exc:
            log("WARN", f"Failed to stop {self.SERVICE} before removal: {exc}")
        shell(self.runner, "sudo rm -rf /var/tmp/minikit /etc/kubernetes/manifests", check=False)

    def get_state(self) -> State:
        if self._init_system().active(self.SERVICE):
            return State.RUNNING
        return State.STOPPED

    def get_ip(self) -> str:
        if self.ip_address:
            return self.ip_address
        result = self.runner.run(["hostname", "-I"])
        addresses = result.stdout.split()
        if not addresses:
            raise ManagerError("Unable to determine the host IP address (hostname -I returned nothing)")
        return addresses[0]

    def get_runner(self):
        return self.runner


class DriverNotSupported(Driver):
    """Placeholder for a driver that exists but not on this OS/architecture."""

    persisted_fields = Driver.persisted_fields + ("name",)

    def __init__(self, machine_name: str, name: str = "", **kwargs: Any) -> None:
        super().__init__(machine_name, **kwargs)
        self.name = name

    def _unsupported(self) -> DriverNotSupportedError:
        return DriverNotSupportedError(self.name)

    def driver_name(self) -> str:
        return self.name

    def pre_create_check(self) -> None:
        raise self._unsupported()

    def create(self) -> None:
        raise self._unsupported()

    def start(self) -> None:
        raise self._unsupported()

    def stop(self) -> None:
        raise self._unsupported()

    def restart(self) -> None:
        raise self._unsupported()

    def kill(self) -> None:
        raise self._unsupported()

    def remove(self) -> None:
        raise self._unsupported()

    def get_state(self) -> State:
        raise self._unsupported()

    def get_url(self) -> str:
        raise self._unsupported()

    def get_ip(self) -> str:
        raise self._unsupported()

    def get_ssh_hostname(self) -> str:
        raise self._unsupported()

    def get_runner(self):
        raise self._unsupported()
