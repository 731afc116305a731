"""Known drivers, where they run, and how to build them."""

from __future__ import annotations

import platform
import shutil
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from minikit.constants import (
    DOCKER,
    HYPERKIT,
    HYPERV,
    MINIKIT_HOME,
    NONE,
    PODMAN,
    VIRTUALBOX,
)
from minikit.driver import Driver, DriverNotSupported, NoneDriver
from minikit.exceptions import DriverNotSupportedError, ManagerError
from minikit.kic import KicDriver
from minikit.models import MachineConfig
from minikit.utils import log, parse_size_to_mb
from minikit.virtualbox import VirtualBoxDriver

LINUX = "Linux"
DARWIN = "Darwin"
WINDOWS = "Windows"


@dataclass
class DriverStatus:
    installed: bool = False
    healthy: bool = False
    error: str = ""
    fix: str = ""
    doc: str = ""


@dataclass
class DriverDef:
    name: str
    driver_class: Optional[Type[Driver]]
    config: Optional[Callable[[MachineConfig], Dict[str, Any]]]
    platforms: Tuple[str, ...]
    priority: int
    binary: str = ""
    doc: str = ""
    status: Optional[Callable[[], DriverStatus]] = None
    aliases: List[str] = field(default_factory=list)

    def supported(self, system: Optional[str] = None) -> bool:
        return (system or platform.system()) in self.platforms and self.driver_class is not None


def _kic_config(binary: str) -> Callable[[MachineConfig], Dict[str, Any]]:
    def build(cfg: MachineConfig) -> Dict[str, Any]:
        options: Dict[str, Any] = {
            "oci_binary": binary,
            "image": cfg.kic_image,
            "cpus": cfg.cpus,
            "memory_mb": cfg.memory_mb,
            "network_name": cfg.name,
        }
        if cfg.subnet:
            options["subnet"] = cfg.subnet
        return options

    return build


def _virtualbox_config(cfg: MachineConfig) -> Dict[str, Any]:
    parse_size_to_mb(cfg.disk_size)
    return {
        "cpus": cfg.cpus,
        "memory_mb": cfg.memory_mb,
        "disk_size": cfg.disk_size,
        "iso_url": cfg.iso_url,
    }


def _none_config(cfg: MachineConfig) -> Dict[str, Any]:
    return {}


def _binary_status(binary: str, version_args: List[str], fix: str, doc: str) -> Callable[[], DriverStatus]:
    def check() -> DriverStatus:
        from minikit.command import run_cmd

        if shutil.which(binary) is None:
            return DriverStatus(error=f"{binary} not found in PATH", fix=fix, doc=doc)
        try:
            run_cmd([binary, *version_args], timeout=8)
        except ManagerError as exc:
            return DriverStatus(installed=True, error=str(exc), fix=f"Restart the {binary} service", doc=doc)
        return DriverStatus(installed=True, healthy=True, doc=doc)

    return check


_REGISTRY: Dict[str, DriverDef] = {}


def register(definition: DriverDef) -> None:
    if definition.name in _REGISTRY:
        raise ManagerError(f"Driver {definition.name} is already registered")
    _REGISTRY[definition.name] = definition


def get(name: str) -> DriverDef:
    for definition in _REGISTRY.values():
        if name == definition.name or name in definition.aliases:
            return definition
    raise ManagerError(f"Unknown driver '{name}'. Known drivers: {', '.join(sorted(_REGISTRY))}")


def installed(system: Optional[str] = None) -> List[DriverDef]:
    """Drivers usable on this platform, highest priority first."""
    defs = [definition for definition in _REGISTRY.values() if definition.supported(system)]
    return sorted(defs, key=lambda definition: definition.priority, reverse=True)


def status(name: str) -> DriverStatus:
    definition = get(name)
    if not definition.supported():
        return DriverStatus(error=str(DriverNotSupportedError(name)), doc=definition.doc)
    if definition.status is None:
        return DriverStatus(installed=True, healthy=True, doc=definition.doc)
    return definition.status()


def init_driver(cfg: MachineConfig, store_path: str = str(MINIKIT_HOME), system: Optional[str] = None, **deps: Any) -> Driver:
    """Build a fresh driver for ``cfg``.

    Drivers known to this module but unavailable on the current platform come
    back as a :class:`DriverNotSupported` placeholder; every verb on it fails
    with :class:`DriverNotSupportedError`.
    """
    definition = get(cfg.driver)
    if not definition.supported(system):
        log("DEBUG", f"Driver {cfg.driver} is not supported on {system or platform.system()}")
        return DriverNotSupported(cfg.name, name=definition.name, store_path=store_path)
    options = definition.config(cfg)
    return definition.driver_class(cfg.name, store_path=store_path, **options, **deps)


def driver_from_dict(driver_name: str, data: Dict[str, Any], system: Optional[str] = None, **deps: Any) -> Driver:
    """Rebuild a persisted driver."""
    definition = get(driver_name)
    if not definition.supported(system):
        return DriverNotSupported.from_dict({**data, "name": definition.name})
    return definition.driver_class.from_dict(data, **deps)


register(
    DriverDef(
        name=DOCKER,
        driver_class=KicDriver,
        config=_kic_config(DOCKER),
        platforms=(LINUX, DARWIN, WINDOWS),
        priority=9,
        binary=DOCKER,
        doc="https://docs.docker.com/engine/install/",
        status=_binary_status(DOCKER, ["version", "--format", "{{.Server.Version}}"], "Install Docker", "https://docs.docker.com/engine/install/"),
    )
)
register(
    DriverDef(
        name=PODMAN,
        driver_class=KicDriver,
        config=_kic_config(PODMAN),
        platforms=(LINUX,),
        priority=3,
        binary=PODMAN,
        doc="https://podman.io/getting-started/installation",
        status=_binary_status(PODMAN, ["version", "--format", "{{.Version}}"], "Install Podman", "https://podman.io/getting-started/installation"),
    )
)
register(
    DriverDef(
        name=VIRTUALBOX,
        driver_class=VirtualBoxDriver,
        config=_virtualbox_config,
        platforms=(LINUX, DARWIN, WINDOWS),
        priority=6,
        binary="VBoxManage",
        doc="https://www.virtualbox.org/wiki/Downloads",
        status=_binary_status("VBoxManage", ["--version"], "Install VirtualBox", "https://www.virtualbox.org/wiki/Downloads"),
        aliases=["vbox"],
    )
)
register(
    DriverDef(
        name=NONE,
        driver_class=NoneDriver,
        config=_none_config,
        platforms=(LINUX,),
        priority=1,
        doc="https://kubernetes.io/docs/setup/",
        aliases=["bare-metal"],
    )
)
# Hypervisors only offered on one host OS; elsewhere they resolve to the
# not-supported placeholder.
register(DriverDef(name=HYPERKIT, driver_class=None, config=None, platforms=(DARWIN,), priority=8))
register(DriverDef(name=HYPERV, driver_class=None, config=None, platforms=(WINDOWS,), priority=8))
