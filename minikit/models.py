"""Data models for minikit."""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, NamedTuple, Optional

from minikit.constants import (
    DEFAULT_CONTAINER_RUNTIME,
    DEFAULT_CPUS,
    DEFAULT_DISK_SIZE,
    DEFAULT_ISO_URL,
    DEFAULT_KIC_IMAGE,
    DEFAULT_MEMORY_MB,
    DEFAULT_PROFILE,
    DOCKER,
)


class State(enum.Enum):
    NONE = "None"
    RUNNING = "Running"
    STOPPED = "Stopped"
    PAUSED = "Paused"
    SAVED = "Saved"
    ERROR = "Error"
    TIMEOUT = "Timeout"

    def __str__(self) -> str:
        return self.value


class SysInfo(NamedTuple):
    cpus: int
    total_memory: int


@dataclass
class Network:
    name: str
    subnet: str
    gateway: str


@dataclass
class MemoryAsset:
    """File content destined for a path on a guest."""

    content: bytes
    target_path: str
    permissions: str = "0644"


@dataclass
class EngineOptions:
    env: List[str] = field(default_factory=list)
    insecure_registry: List[str] = field(default_factory=list)
    registry_mirror: List[str] = field(default_factory=list)
    labels: List[str] = field(default_factory=list)
    arbitrary_flags: List[str] = field(default_factory=list)
    storage_driver: str = ""
    log_level: str = ""
    tls_verify: bool = True


@dataclass
class AuthOptions:
    certs_dir: str = ""
    ca_cert_path: str = ""
    ca_key_path: str = ""
    server_cert_path: str = ""
    server_key_path: str = ""
    client_cert_path: str = ""
    client_key_path: str = ""
    remote_certs_dir: str = "/etc/docker"
    server_cert_sans: List[str] = field(default_factory=list)


@dataclass
class SwarmOptions:
    is_swarm: bool = False
    discovery: str = ""
    master: bool = False


@dataclass
class HostOptions:
    engine: EngineOptions = field(default_factory=EngineOptions)
    auth: AuthOptions = field(default_factory=AuthOptions)
    swarm: SwarmOptions = field(default_factory=SwarmOptions)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HostOptions":
        return cls(
            engine=EngineOptions(**data.get("engine", {})),
            auth=AuthOptions(**data.get("auth", {})),
            swarm=SwarmOptions(**data.get("swarm", {})),
        )


@dataclass
class Host:
    """Persisted pairing of a driver with the options used to provision it."""

    name: str
    driver_name: str
    driver: Any
    options: HostOptions = field(default_factory=HostOptions)
    config_version: int = 3


@dataclass
class MachineConfig:
    name: str = DEFAULT_PROFILE
    driver: str = DOCKER
    cpus: int = DEFAULT_CPUS
    memory_mb: int = DEFAULT_MEMORY_MB
    disk_size: str = DEFAULT_DISK_SIZE
    docker_env: List[str] = field(default_factory=list)
    insecure_registry: List[str] = field(default_factory=list)
    registry_mirror: List[str] = field(default_factory=list)
    container_runtime: str = DEFAULT_CONTAINER_RUNTIME
    kic_image: str = DEFAULT_KIC_IMAGE
    iso_url: str = DEFAULT_ISO_URL
    subnet: Optional[str] = None
