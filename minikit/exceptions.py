"""Custom exceptions for minikit."""

from __future__ import annotations

import enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:  # pragma: no cover
    from minikit.command import RunResult
    from minikit.models import Host


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ToolNotFoundError(ManagerError):
    """A required external binary is not installed or not on PATH."""

    def __init__(self, tool: str) -> None:
        super().__init__(f"{tool} not found in PATH. Please install {tool} and try again.")
        self.tool = tool


class VersionError(ManagerError):
    """An external tool is installed but too old to be used."""


class DriverNotSupportedError(ManagerError):
    def __init__(self, driver_name: str) -> None:
        super().__init__(f'Driver "{driver_name}" not supported on this platform.')
        self.driver_name = driver_name


class CommandError(ManagerError):
    """An external command ran and exited non-zero."""

    def __init__(self, result: "RunResult", message: Optional[str] = None) -> None:
        if message is None:
            message = f"{result.command()}: exit status {result.returncode}"
            if result.stderr.strip():
                message += f"\nstderr:\n{result.stderr.strip()}"
        super().__init__(message)
        self.result = result


class CommandTimeoutError(ManagerError):
    def __init__(self, command: str, timeout: float) -> None:
        super().__init__(f"{command}: killed after {timeout:g}s timeout")
        self.command = command
        self.timeout = timeout


class RetriableError(ManagerError):
    """Marks a failure the backoff helper is allowed to retry."""


class ObjectNotReadyError(RetriableError):
    """The hypervisor reported an internal object that is not ready yet."""


class NetworkSubnetTakenError(RetriableError):
    """The requested subnet overlaps with another network."""


class NetworkGatewayTakenError(RetriableError):
    """The requested gateway address is already in use."""


class MachineNotFoundError(ManagerError):
    """The backend has no machine (VM or container) with the given name."""


class MachineExistsError(ManagerError):
    pass


class NetworkNotFoundError(ManagerError):
    pass


class NetworkInUseError(ManagerError):
    """The network still has active endpoints attached."""


class ParseError(ManagerError):
    """Tool output did not have the expected shape."""

    def __init__(self, message: str, raw: str) -> None:
        super().__init__(f"{message}; raw output: {raw!r}")
        self.raw = raw


class DaemonInfoError(ManagerError):
    """The container engine daemon did not answer a system info query."""


class HostLoadError(ManagerError):
    """The persisted host record is missing or unreadable."""


class ReconcileError(ManagerError):
    """A reconciliation step failed; the partially reconciled host is kept."""

    def __init__(self, message: str, host: Optional["Host"] = None, stage=None) -> None:
        super().__init__(message)
        self.host = host
        self.stage = stage


class RetriableReconcileError(ReconcileError, RetriableError):
    pass


class ErrorKind(enum.Enum):
    UNKNOWN = "unknown"
    SUBNET_TAKEN = "subnet-taken"
    GATEWAY_TAKEN = "gateway-taken"
    OBJECT_NOT_READY = "object-not-ready"
    NETWORK_NOT_FOUND = "network-not-found"
    NETWORK_IN_USE = "network-in-use"
    CONTAINER_NOT_FOUND = "container-not-found"
    VM_NOT_FOUND = "vm-not-found"


# Ordered: the first matching entry wins. Each entry lists substrings that
# must all be present.
_OUTPUT_SIGNATURES = (
    (ErrorKind.SUBNET_TAKEN, ("Pool overlaps with other one on this address space",)),
    (ErrorKind.SUBNET_TAKEN, ("is already used on the host or by another config",)),
    (ErrorKind.GATEWAY_TAKEN, ("failed to allocate gateway", "Address already in use")),
    (ErrorKind.OBJECT_NOT_READY, ("error: The object is not ready",)),
    (ErrorKind.NETWORK_NOT_FOUND, ("No such network",)),
    (ErrorKind.NETWORK_NOT_FOUND, ("network not found",)),
    (ErrorKind.NETWORK_IN_USE, ("has active endpoints",)),
    (ErrorKind.CONTAINER_NOT_FOUND, ("No such container",)),
    (ErrorKind.CONTAINER_NOT_FOUND, ("no such container",)),
    (ErrorKind.VM_NOT_FOUND, ("Could not find a registered machine",)),
)


def classify_output(text: str) -> ErrorKind:
    """Map the raw output of a failed tool invocation to an error kind.

    External tools report these conditions only as free text, so this is the
    one place that inspects it; callers switch on the returned kind.
    """
    if not text:
        return ErrorKind.UNKNOWN
    for kind, needles in _OUTPUT_SIGNATURES:
        if all(needle in text for needle in needles):
            return kind
    return ErrorKind.UNKNOWN
