"""User configuration: YAML defaults, environment overrides, CLI flags."""

from __future__ import annotations

import ipaddress
from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from minikit.constants import (
    DEFAULT_PROFILE,
    USER_CONFIG_PATH,
)
from minikit.exceptions import ManagerError
from minikit.models import MachineConfig
from minikit.registry import get as get_driver_def
from minikit.utils import get_env, log, parse_int, validate_disk_size, validate_profile_name

# Keys accepted in config.yaml, mapped onto MachineConfig fields.
_YAML_KEYS = {
    "driver": "driver",
    "cpus": "cpus",
    "memory": "memory_mb",
    "disk-size": "disk_size",
    "docker-env": "docker_env",
    "insecure-registry": "insecure_registry",
    "registry-mirror": "registry_mirror",
    "container-runtime": "container_runtime",
    "base-image": "kic_image",
    "iso-url": "iso_url",
    "subnet": "subnet",
}

_ENV_KEYS = {
    "MINIKIT_DRIVER": "driver",
    "MINIKIT_CPUS": "cpus",
    "MINIKIT_MEMORY": "memory_mb",
    "MINIKIT_DISK_SIZE": "disk_size",
    "MINIKIT_DOCKER_ENV": "docker_env",
}

_LIST_FIELDS = {"docker_env", "insecure_registry", "registry_mirror"}


def load_user_config(config_path: Optional[Path] = None) -> Dict[str, Any]:
    if config_path is None:
        config_path = USER_CONFIG_PATH
    if not config_path.exists():
        return {}
    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as exc:
        raise ManagerError(f"Invalid YAML in {config_path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ManagerError(f"{config_path} must contain a mapping of settings")
    settings: Dict[str, Any] = {}
    for key, value in data.items():
        field_name = _YAML_KEYS.get(key)
        if field_name is None:
            log("WARN", f"Ignoring unknown setting '{key}' in {config_path}")
            continue
        settings[field_name] = value
    return settings


def _split_list(raw: Any) -> List[str]:
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        return [str(item).strip() for item in raw if str(item).strip()]
    return [item.strip() for item in str(raw).split(",") if item.strip()]


def env_overrides() -> Dict[str, Any]:
    settings: Dict[str, Any] = {}
    for name, field_name in _ENV_KEYS.items():
        raw = get_env(name)
        if raw is not None and raw.strip():
            settings[field_name] = raw.strip()
    return settings


def build_machine_config(
    profile: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
    config_path: Optional[Path] = None,
) -> MachineConfig:
    """Layer config.yaml, environment and CLI overrides into a MachineConfig.

    Later layers win; ``None`` values in ``overrides`` mean "not given".
    """
    settings: Dict[str, Any] = {}
    settings.update(load_user_config(config_path))
    settings.update(env_overrides())
    settings.update({key: value for key, value in (overrides or {}).items() if value is not None})

    cfg = MachineConfig(name=validate_profile_name(profile or DEFAULT_PROFILE))
    if "driver" in settings:
        cfg.driver = get_driver_def(str(settings["driver"]).strip().lower()).name
    if "cpus" in settings:
        cfg.cpus = parse_int("cpus", settings["cpus"], min_val=1)
    if "memory_mb" in settings:
        cfg.memory_mb = parse_int("memory", settings["memory_mb"], min_val=1)
    if "disk_size" in settings:
        cfg.disk_size = validate_disk_size(str(settings["disk_size"]).strip())
    for field_name in _LIST_FIELDS:
        if field_name in settings:
            setattr(cfg, field_name, _split_list(settings[field_name]))
    for field_name in ("container_runtime", "kic_image", "iso_url", "subnet"):
        if settings.get(field_name):
            setattr(cfg, field_name, str(settings[field_name]).strip())
    if cfg.subnet:
        try:
            network = ipaddress.IPv4Network(cfg.subnet)
        except ValueError as exc:
            raise ManagerError(f"Invalid subnet '{cfg.subnet}': {exc}") from exc
        if network.prefixlen != 24:
            raise ManagerError(f"Invalid subnet '{cfg.subnet}': only /24 networks are supported")
    return cfg
