"""On-disk host records: ``<home>/machines/<name>/config.json``.

The record is a cache of what was last observed; the driver is always asked
for the real state. Writes go through a temporary file and a rename so a
reader never sees a half-written record. There is no locking: one minikit
process per profile at a time.
"""

from __future__ import annotations

import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from minikit.constants import MINIKIT_HOME
from minikit.exceptions import HostLoadError, ManagerError
from minikit.models import Host, HostOptions
from minikit.utils import ensure_directory, log

RECORD_NAME = "config.json"
CONFIG_VERSION = 3

REMEDIATION = "Please try running [minikit delete], then run [minikit start] again."


def _default_driver_loader(driver_name: str, data: Dict[str, Any], **deps: Any):
    from minikit.registry import driver_from_dict

    return driver_from_dict(driver_name, data, **deps)


class HostStore:
    def __init__(self, home: Path = MINIKIT_HOME, driver_loader: Optional[Callable[..., Any]] = None) -> None:
        self.home = Path(home)
        self.machines_dir = self.home / "machines"
        self.driver_loader = driver_loader or _default_driver_loader

    def machine_dir(self, name: str) -> Path:
        return self.machines_dir / name

    def record_path(self, name: str) -> Path:
        return self.machine_dir(name) / RECORD_NAME

    def exists(self, name: str) -> bool:
        return self.record_path(name).is_file()

    def list(self) -> List[str]:
        if not self.machines_dir.is_dir():
            return []
        return sorted(entry.name for entry in self.machines_dir.iterdir() if (entry / RECORD_NAME).is_file())

    def save(self, host: Host) -> None:
        record = {
            "ConfigVersion": host.config_version,
            "Name": host.name,
            "DriverName": host.driver_name,
            "Driver": host.driver.to_dict(),
            "HostOptions": host.options.to_dict(),
        }
        path = self.record_path(host.name)
        ensure_directory(path.parent)
        fd, tmp_name = tempfile.mkstemp(prefix=".config-", suffix=".json", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(record, handle, indent=2, sort_keys=True)
                handle.write("\n")
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        log("DEBUG", f"Saved host record {path}")

    def load(self, name: str, **deps: Any) -> Host:
        path = self.record_path(name)
        if not path.is_file():
            raise HostLoadError(f"Host {name} does not exist ({path} missing). {REMEDIATION}")
        try:
            record = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise HostLoadError(f"Error loading existing host {name}: {exc}. {REMEDIATION}") from exc
        try:
            driver_name = record["DriverName"]
            driver = self.driver_loader(driver_name, record.get("Driver", {}), **deps)
            options = HostOptions.from_dict(record.get("HostOptions", {}))
        except (KeyError, TypeError, ManagerError) as exc:
            raise HostLoadError(f"Error loading existing host {name}: invalid record ({exc}). {REMEDIATION}") from exc
        return Host(
            name=record.get("Name", name),
            driver_name=driver_name,
            driver=driver,
            options=options,
            config_version=record.get("ConfigVersion", CONFIG_VERSION),
        )

    def remove(self, name: str) -> None:
        machine_dir = self.machine_dir(name)
        if machine_dir.exists():
            shutil.rmtree(machine_dir)
