"""Container-node driver: one privileged docker/podman container per machine."""

from __future__ import annotations

from typing import Any, List, Optional

from minikit.command import ContainerRunner
from minikit.constants import (
    APISERVER_PORT,
    CREATED_BY_LABEL_KEY,
    DEFAULT_BIND_IPV4,
    DEFAULT_CPUS,
    DEFAULT_KIC_IMAGE,
    DEFAULT_MEMORY_MB,
    DEFAULT_SUBNET,
    DOCKER,
    ENGINE_PORT,
    PROFILE_LABEL_KEY,
    SSH_PORT,
)
from minikit.driver import Driver
from minikit.exceptions import MachineExistsError, MachineNotFoundError, ManagerError
from minikit.models import State
from minikit.oci import OciCli
from minikit.utils import log

PUBLISHED_PORTS = (SSH_PORT, ENGINE_PORT, APISERVER_PORT)


class KicDriver(Driver):
    persisted_fields = Driver.persisted_fields + (
        "oci_binary",
        "image",
        "cpus",
        "memory_mb",
        "network_name",
        "subnet",
    )

    def __init__(
        self,
        machine_name: str,
        oci_binary: str = DOCKER,
        image: str = DEFAULT_KIC_IMAGE,
        cpus: int = DEFAULT_CPUS,
        memory_mb: int = DEFAULT_MEMORY_MB,
        network_name: str = "",
        subnet: str = DEFAULT_SUBNET,
        oci: Optional[OciCli] = None,
        **kwargs: Any,
    ) -> None:
        kwargs.setdefault("ssh_user", "docker")
        super().__init__(machine_name, **kwargs)
        self.oci_binary = oci_binary
        self.image = image
        self.cpus = cpus
        self.memory_mb = memory_mb
        self.network_name = network_name or machine_name
        self.subnet = subnet
        self.oci = oci or OciCli(oci_binary)

    def driver_name(self) -> str:
        return self.oci_binary

    def is_container_based(self) -> bool:
        return True

    def pre_create_check(self) -> None:
        # Fails with DaemonInfoError when the engine is not answering.
        info = self.oci.daemon_info()
        log("DEBUG", f"{self.oci_binary} daemon reports {info.cpus} CPUs and {info.total_memory} bytes of memory")

    def _ensure_network(self) -> str:
        """Create the cluster network; fall back to the engine default on failure."""
        try:
            network = self.oci.create_network(self.network_name, self.subnet)
        except ManagerError as exc:
            log("WARN", f"Unable to create dedicated network {self.network_name} ({exc}); using the default network")
            return ""
        self.subnet = network.subnet
        return network.name

    def _run_args(self, network: str) -> List[str]:
        args = [
            "--privileged",
            "--security-opt",
            "seccomp=unconfined",
            "--tmpfs",
            "/tmp",
            "--tmpfs",
            "/run",
            "-v",
            "/lib/modules:/lib/modules:ro",
            "--hostname",
            self.machine_name,
            "--label",
            f"{CREATED_BY_LABEL_KEY}=true",
            "--label",
            f"{PROFILE_LABEL_KEY}={self.machine_name}",
        ]
        if network:
            args += ["--network", network]
        args += [
            f"--memory={self.memory_mb}mb",
            f"--cpus={self.cpus}",
            "-e",
            "container=docker",
        ]
        args += [f"--publish={DEFAULT_BIND_IPV4}::{port}" for port in PUBLISHED_PORTS]
        return args

    def create(self) -> None:
        if self.oci.container_exists(self.machine_name):
            raise MachineExistsError(f"Container {self.machine_name} already exists")
        network = self._ensure_network()
        if not network:
            self.network_name = ""
        log("INFO", f"Creating {self.oci_binary} container {self.machine_name} ({self.cpus} CPUs, {self.memory_mb} MB)")
        self.oci.run_container(self.machine_name, self.image, self._run_args(network))
        self.ip_address = self.get_ip()

    def start(self) -> None:
        state = self.get_state()
        if state == State.RUNNING:
            return
        if state == State.NONE:
            raise MachineNotFoundError(f"Container {self.machine_name} does not exist")
        if state == State.PAUSED:
            self.oci.unpause_container(self.machine_name)
        else:
            self.oci.start_container(self.machine_name)
        self.ip_address = self.get_ip()

    def stop(self) -> None:
        if self.get_state() in (State.STOPPED, State.NONE):
            return
        self.oci.stop_container(self.machine_name)

    def kill(self) -> None:
        if self.get_state() != State.RUNNING:
            return
        self.oci.kill_container(self.machine_name)

    def remove(self) -> None:
        if not self.oci.container_exists(self.machine_name):
            return
        self.oci.remove_container(self.machine_name)

    def get_state(self) -> State:
        return self.oci.container_status(self.machine_name)

    def get_ip(self) -> str:
        ipv4, _ = self.oci.container_ips(self.machine_name)
        return ipv4

    def get_ssh_hostname(self) -> str:
        return DEFAULT_BIND_IPV4

    def get_ssh_port(self) -> int:
        return self.oci.forwarded_port(self.machine_name, SSH_PORT)

    def get_url(self) -> str:
        port = self.oci.forwarded_port(self.machine_name, ENGINE_PORT)
        return f"tcp://{DEFAULT_BIND_IPV4}:{port}"

    def get_host_ip(self) -> str:
        return self.oci.routable_host_ip(self.network_name or "bridge", self.machine_name)

    def get_runner(self):
        return ContainerRunner(self.oci_binary, self.machine_name)
