"""Tests for minikit.registry module."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from minikit import registry
from minikit.driver import DriverNotSupported, NoneDriver
from minikit.exceptions import DriverNotSupportedError, ManagerError
from minikit.kic import KicDriver
from minikit.models import MachineConfig
from minikit.virtualbox import VirtualBoxDriver


class TestLookup:
    def test_alias(self):
        assert registry.get("vbox").name == "virtualbox"
        assert registry.get("bare-metal").name == "none"

    def test_unknown(self):
        with pytest.raises(ManagerError, match="Unknown driver 'qemu9000'"):
            registry.get("qemu9000")

    def test_duplicate_registration(self):
        with pytest.raises(ManagerError, match="already registered"):
            registry.register(registry.get("docker"))

    def test_installed_linux_priority_order(self):
        names = [definition.name for definition in registry.installed("Linux")]
        assert names == ["docker", "virtualbox", "podman", "none"]

    def test_installed_darwin(self):
        names = [definition.name for definition in registry.installed("Darwin")]
        assert names == ["docker", "virtualbox"]


class TestInitDriver:
    def test_docker(self, tmp_path):
        cfg = MachineConfig(name="demo", driver="docker", cpus=4, memory_mb=4096, subnet="192.168.100.0/24")
        driver = registry.init_driver(cfg, store_path=str(tmp_path), system="Linux")
        assert isinstance(driver, KicDriver)
        assert driver.cpus == 4
        assert driver.subnet == "192.168.100.0/24"
        assert driver.network_name == "demo"
        assert driver.store_path == str(tmp_path)

    def test_podman(self, tmp_path):
        driver = registry.init_driver(MachineConfig(driver="podman"), store_path=str(tmp_path), system="Linux")
        assert driver.driver_name() == "podman"

    def test_virtualbox(self, tmp_path):
        cfg = MachineConfig(driver="virtualbox", disk_size="30g")
        driver = registry.init_driver(cfg, store_path=str(tmp_path), system="Darwin")
        assert isinstance(driver, VirtualBoxDriver)
        assert driver.disk_size == "30g"

    def test_none(self, tmp_path):
        driver = registry.init_driver(MachineConfig(driver="none"), store_path=str(tmp_path), system="Linux")
        assert isinstance(driver, NoneDriver)

    @pytest.mark.parametrize("driver_name,system", [("hyperkit", "Darwin"), ("hyperv", "Linux"), ("none", "Darwin")])
    def test_unsupported_placeholder(self, tmp_path, driver_name, system):
        driver = registry.init_driver(MachineConfig(driver=driver_name), store_path=str(tmp_path), system=system)
        assert isinstance(driver, DriverNotSupported)
        with pytest.raises(DriverNotSupportedError):
            driver.create()

    def test_driver_from_dict(self):
        data = {"machine_name": "demo", "oci_binary": "podman", "cpus": 3}
        driver = registry.driver_from_dict("podman", data, system="Linux")
        assert isinstance(driver, KicDriver)
        assert driver.cpus == 3

    def test_driver_from_dict_unsupported(self):
        driver = registry.driver_from_dict("podman", {"machine_name": "demo"}, system="Windows")
        assert isinstance(driver, DriverNotSupported)
        assert driver.driver_name() == "podman"


class TestStatus:
    def test_missing_binary(self):
        with patch("minikit.registry.shutil.which", return_value=None):
            status = registry.status("virtualbox")
        assert not status.installed
        assert "VBoxManage not found" in status.error

    def test_healthy(self):
        with (
            patch("minikit.registry.shutil.which", return_value="/usr/bin/docker"),
            patch("minikit.command.run_cmd") as mock_run,
            patch("minikit.registry.platform.system", return_value="Linux"),
        ):
            status = registry.status("docker")
        assert status.installed and status.healthy
        mock_run.assert_called_once()

    def test_unhealthy(self):
        with (
            patch("minikit.registry.shutil.which", return_value="/usr/bin/docker"),
            patch("minikit.command.run_cmd", side_effect=ManagerError("daemon down")),
            patch("minikit.registry.platform.system", return_value="Linux"),
        ):
            status = registry.status("docker")
        assert status.installed and not status.healthy
        assert status.error == "daemon down"
