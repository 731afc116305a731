"""Container engine (docker / podman) adapter for minikit.

Both engines are driven through their CLIs. Their output differs in small
ways (JSON layout of ``system info``, inspect templates, error wording); this
module absorbs those differences so callers see one shape.
"""

from __future__ import annotations

import ipaddress
import json
import platform
from typing import Any, Dict, List, NoReturn, Optional, Sequence, Tuple

from minikit.command import LocalRunner, RunResult
from minikit.constants import (
    CREATED_BY_LABEL_KEY,
    DEFAULT_BIND_IPV4,
    DEFAULT_SUBNET,
    DOCKER,
    HOST_DNS_NAME,
    OCI_BINARIES,
    PODMAN,
    SUBNET_MAX_ATTEMPTS,
    SUBNET_STEP,
)
from minikit.exceptions import (
    CommandError,
    DaemonInfoError,
    ErrorKind,
    MachineNotFoundError,
    ManagerError,
    NetworkGatewayTakenError,
    NetworkInUseError,
    NetworkNotFoundError,
    NetworkSubnetTakenError,
    ParseError,
    classify_output,
)
from minikit.models import Network, State, SysInfo
from minikit.utils import log

_KIND_ERRORS = {
    ErrorKind.SUBNET_TAKEN: NetworkSubnetTakenError,
    ErrorKind.GATEWAY_TAKEN: NetworkGatewayTakenError,
    ErrorKind.NETWORK_NOT_FOUND: NetworkNotFoundError,
    ErrorKind.NETWORK_IN_USE: NetworkInUseError,
    ErrorKind.CONTAINER_NOT_FOUND: MachineNotFoundError,
}

_CONTAINER_STATES = {
    "running": State.RUNNING,
    "paused": State.PAUSED,
    "exited": State.STOPPED,
    "created": State.STOPPED,
    "dead": State.STOPPED,
}


def normalize_sysinfo(binary: str, data: Dict[str, Any]) -> SysInfo:
    """Project an engine's ``system info`` JSON onto :class:`SysInfo`.

    docker reports ``NCPU``/``MemTotal`` at the top level, podman nests
    ``cpus``/``MemTotal`` under ``host``.
    """
    if binary == PODMAN:
        host = data.get("host") or {}
        return SysInfo(cpus=int(host.get("cpus", 0)), total_memory=int(host.get("MemTotal", 0)))
    return SysInfo(cpus=int(data.get("NCPU", 0)), total_memory=int(data.get("MemTotal", 0)))


def next_subnet(subnet: ipaddress.IPv4Network, step: int = SUBNET_STEP) -> ipaddress.IPv4Network:
    """Move the third octet of a /24 subnet up by ``step``.

    The first two octets never change, so the walk stays inside the private
    range it started in.
    """
    if subnet.prefixlen != 24:
        raise ManagerError(f"Cannot pick another subnet after {subnet}: only /24 subnets can be retried")
    octets = bytearray(subnet.network_address.packed)
    if octets[2] + step > 255:
        raise ManagerError(f"No free subnet left after {subnet}: the third octet would pass 255")
    octets[2] += step
    return ipaddress.IPv4Network((ipaddress.IPv4Address(bytes(octets)), 24))


def gateway_for(subnet: ipaddress.IPv4Network) -> ipaddress.IPv4Address:
    return subnet.network_address + 1


class OciCli:
    """Thin typed wrapper around one container engine CLI."""

    def __init__(self, binary: str = DOCKER, runner=None) -> None:
        if binary not in OCI_BINARIES:
            raise ManagerError(f"Unsupported container engine '{binary}' (expected one of {', '.join(OCI_BINARIES)})")
        self.binary = binary
        self.runner = runner or LocalRunner()

    def _run(self, args: Sequence[str], context: str) -> RunResult:
        try:
            return self.runner.run([self.binary, *args])
        except CommandError as exc:
            self._raise_classified(exc, context)

    @staticmethod
    def _raise_classified(exc: CommandError, context: str) -> NoReturn:
        output = exc.result.output().strip()
        error_cls = _KIND_ERRORS.get(classify_output(output))
        if error_cls is not None:
            raise error_cls(f"{context}: {output}") from exc
        raise ManagerError(f"{context}: {exc}") from exc

    # Daemon

    def daemon_info(self) -> SysInfo:
        try:
            result = self.runner.run([self.binary, "system", "info", "--format", "{{json .}}"])
        except CommandError as exc:
            raise DaemonInfoError(f"get {self.binary} system info: {exc}") from exc
        raw = result.stdout.strip().strip("'")
        try:
            data = json.loads(raw)
        except ValueError as exc:
            raise ParseError(f"unmarshal {self.binary} system info", raw) from exc
        if not isinstance(data, dict):
            raise ParseError(f"unexpected {self.binary} system info", raw)
        return normalize_sysinfo(self.binary, data)

    # Containers

    def inspect(self, name: str, template: str) -> List[str]:
        result = self._run(["container", "inspect", "-f", template, name], f"inspect {name}")
        return result.lines()

    def inspect_one(self, name: str, template: str) -> str:
        """Inspect a container where exactly one line of output is expected."""
        lines = self.inspect(name, template)
        if len(lines) != 1:
            raise ParseError(f"inspect {name} should return exactly one line, got {len(lines)}", "\n".join(lines))
        return lines[0]

    def container_exists(self, name: str) -> bool:
        try:
            self.inspect(name, "{{.Id}}")
        except MachineNotFoundError:
            return False
        return True

    def container_status(self, name: str) -> State:
        try:
            status = self.inspect_one(name, "{{.State.Status}}")
        except MachineNotFoundError:
            return State.NONE
        return _CONTAINER_STATES.get(status.strip().lower(), State.ERROR)

    def forwarded_port(self, name: str, container_port: int) -> int:
        """Return the host port the engine mapped to a container's TCP port."""
        if self.binary == PODMAN:
            template = (
                "{{range .NetworkSettings.Ports}}"
                f"{{{{if eq .ContainerPort {container_port}}}}}{{{{.HostPort}}}}{{{{end}}}}"
                "{{end}}"
            )
        else:
            template = f'{{{{(index (index .NetworkSettings.Ports "{container_port}/tcp") 0).HostPort}}}}'
        raw = self.inspect_one(name, template).strip("'")
        try:
            return int(raw)
        except ValueError as exc:
            raise ParseError(f"convert host port for {container_port}/tcp of {name} to a number", raw) from exc

    def container_ips(self, name: str) -> Tuple[str, str]:
        """Return the (ipv4, ipv6) addresses of a container."""
        if self.binary == PODMAN:
            lines = self.inspect(name, "{{.NetworkSettings.IPAddress}}")
            if not lines:
                # podman reports nothing for rootless port-forwarded containers
                return DEFAULT_BIND_IPV4, ""
            if len(lines) != 1:
                raise ParseError(f"IPs of {name} should be one line, got {len(lines)}", "\n".join(lines))
            return lines[0], ""
        line = self.inspect_one(name, "{{range .NetworkSettings.Networks}}{{.IPAddress}},{{.GlobalIPv6Address}}{{end}}")
        ips = line.split(",")
        if len(ips) != 2:
            raise ParseError(f"container addresses of {name} should have 2 values, got {len(ips)}", line)
        return ips[0], ips[1]

    def run_container(self, name: str, image: str, args: Sequence[str]) -> str:
        result = self._run(["run", "-d", "--name", name, *args, image], f"create container {name}")
        return result.stdout.strip()

    def start_container(self, name: str) -> None:
        self._run(["start", name], f"start container {name}")

    def stop_container(self, name: str) -> None:
        self._run(["stop", name], f"stop container {name}")

    def kill_container(self, name: str) -> None:
        self._run(["kill", name], f"kill container {name}")

    def unpause_container(self, name: str) -> None:
        self._run(["unpause", name], f"unpause container {name}")

    def remove_container(self, name: str) -> None:
        self._run(["rm", "-f", "-v", name], f"remove container {name}")

    # Host addressing

    def routable_host_ip(self, network: str, container: str, system: Optional[str] = None) -> str:
        """Return an address of the host that is reachable from inside the container.

        On Linux the bridge gateway is routable. Docker Desktop on macOS and
        Windows runs containers in a VM where it is not, so the engine's
        internal DNS name is resolved from inside the container instead.
        """
        system = system or platform.system()
        if self.binary == DOCKER:
            if system == "Linux":
                return self.network_inspect(network).gateway
            return self.dig_dns(container, HOST_DNS_NAME)
        if system == "Linux":
            return self.podman_gateway_ip(container)
        raise ManagerError(f"Routable host IP for {self.binary} is only implemented on Linux (running on {system})")

    def dig_dns(self, container: str, dns: str) -> str:
        result = self._run(["exec", "-t", container, "dig", "+short", dns], f"resolve {dns} in {container}")
        raw = result.stdout.strip()
        try:
            ip = str(ipaddress.ip_address(raw))
        except ValueError as exc:
            raise ParseError(f"resolve {dns} to an IP", raw) from exc
        log("DEBUG", f"Host IP for {container} resolved via {dns}: {ip}")
        return ip

    def podman_gateway_ip(self, container: str) -> str:
        raw = self.inspect_one(container, "{{.NetworkSettings.Gateway}}")
        try:
            return str(ipaddress.ip_address(raw))
        except ValueError as exc:
            raise ParseError(f"parse gateway of {container}", raw) from exc

    # Networks

    def network_inspect(self, name: str) -> Network:
        result = self._run(
            [
                "network",
                "inspect",
                name,
                "--format",
                "{{(index .IPAM.Config 0).Subnet}},{{(index .IPAM.Config 0).Gateway}}"
                if self.binary == DOCKER
                else "{{(index .Subnets 0).Subnet}},{{(index .Subnets 0).Gateway}}",
            ],
            f"inspect network {name}",
        )
        lines = result.lines()
        if len(lines) != 1:
            raise ParseError(f"network {name} inspect should return exactly one line, got {len(lines)}", result.stdout)
        parts = lines[0].split(",")
        if len(parts) != 2:
            raise ParseError(f"network {name} inspect should return subnet,gateway", lines[0])
        try:
            subnet = ipaddress.IPv4Network(parts[0])
        except ValueError as exc:
            raise ParseError(f"parse subnet for {name}", parts[0]) from exc
        gateway = parts[1] or str(gateway_for(subnet))
        return Network(name=name, subnet=str(subnet), gateway=gateway)

    def network_exists(self, name: str) -> bool:
        try:
            self.network_inspect(name)
        except NetworkNotFoundError:
            return False
        return True

    def create_network(self, name: str, subnet: str = DEFAULT_SUBNET) -> Network:
        """Create the cluster bridge network, or return it if it already exists.

        A subnet or gateway already taken by another network is not fatal: the
        third octet is bumped by 10 and the create retried, at most
        ``SUBNET_MAX_ATTEMPTS`` times.
        """
        try:
            existing = self.network_inspect(name)
        except NetworkNotFoundError:
            pass
        else:
            log("DEBUG", f"Found existing network {name} with subnet {existing.subnet} and gateway {existing.gateway}")
            return existing

        candidate = ipaddress.IPv4Network(subnet)
        last_error: Optional[ManagerError] = None
        for attempt in range(SUBNET_MAX_ATTEMPTS + 1):
            if attempt:
                try:
                    candidate = next_subnet(candidate)
                except ManagerError as exc:
                    raise ManagerError(f"create network {name}: {exc}") from last_error
            try:
                return self._attempt_create_network(name, candidate)
            except (NetworkSubnetTakenError, NetworkGatewayTakenError) as exc:
                last_error = exc
                log("DEBUG", f"Couldn't create network {name} at {candidate}: {exc}; trying the next subnet")
        assert last_error is not None
        raise last_error

    def _attempt_create_network(self, name: str, subnet: ipaddress.IPv4Network) -> Network:
        gateway = gateway_for(subnet)
        log("DEBUG", f"Attempting to create network {name} with subnet {subnet} and gateway {gateway}")
        args = ["network", "create", "--driver=bridge", f"--subnet={subnet}", f"--gateway={gateway}"]
        if self.binary == DOCKER:
            args += ["-o", "--ip-masq", "-o", "--icc"]
        args += [f"--label={CREATED_BY_LABEL_KEY}=true", name]
        self._run(args, f"create network {name} {subnet}")
        return Network(name=name, subnet=str(subnet), gateway=str(gateway))

    def remove_network(self, name: str) -> None:
        """Remove a network; removing one that does not exist succeeds."""
        if not self.network_exists(name):
            return
        try:
            self._run(["network", "rm", name], f"remove network {name}")
        except NetworkNotFoundError:
            return

    def networks_by_label(self, label: str) -> List[str]:
        result = self._run(
            ["network", "ls", f"--filter=label={label}", "--format", "{{.Name}}"],
            f"list networks labelled {label}",
        )
        return result.lines()

    def delete_networks_by_label(self, label: str = f"{CREATED_BY_LABEL_KEY}=true") -> List[ManagerError]:
        """Remove every network carrying ``label``; return the failures."""
        try:
            names = self.networks_by_label(label)
        except ManagerError as exc:
            return [exc]
        errors: List[ManagerError] = []
        for name in names:
            try:
                self.remove_network(name)
            except ManagerError as exc:
                errors.append(exc)
        return errors
