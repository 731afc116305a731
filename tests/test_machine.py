"""Tests for minikit.machine module."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from conftest import FakeDriver, FakeStore, fail, ok
from minikit import machine
from minikit.exceptions import DriverNotSupportedError, ManagerError, RetriableReconcileError
from minikit.kic import KicDriver
from minikit.models import Host, MachineConfig, State
from minikit.oci import OciCli
from minikit.store import HostStore


@pytest.fixture
def store(tmp_path):
    return HostStore(tmp_path)


class TestCreateHost:
    def test_unmanaged_driver_skips_provisioning(self, store):
        driver = FakeDriver(name="none", managed=False)
        cfg = MachineConfig(name="minikit", driver="none")
        with (
            patch("minikit.machine.init_driver", return_value=driver),
            patch.object(store, "save") as mock_save,
            patch("minikit.machine.detect_provisioner") as mock_detect,
            patch("minikit.machine.configure_auth") as mock_auth,
        ):
            host = machine.create_host(cfg, store)
        assert driver.verbs == ["create"]
        assert host.driver_name == "none"
        mock_save.assert_called_once_with(host)
        mock_detect.assert_not_called()
        mock_auth.assert_not_called()

    def test_provisions_new_vm(self, store):
        driver = FakeDriver(name="virtualbox")
        cfg = MachineConfig(name="minikit", driver="virtualbox", docker_env=["A=1"])
        with (
            patch("minikit.machine.init_driver", return_value=driver),
            patch.object(store, "save") as mock_save,
            patch("minikit.machine.detect_provisioner") as mock_detect,
            patch("minikit.machine.post_start_setup") as mock_post,
            patch("minikit.machine.configure_auth") as mock_auth,
        ):
            host = machine.create_host(cfg, store)
        mock_detect.return_value.provision.assert_called_once_with(host.options, "virtualbox")
        mock_post.assert_called_once_with(host)
        mock_auth.assert_called_once_with(host)
        assert mock_save.call_count == 2
        assert host.options.engine.env == ["A=1"]
        assert host.options.auth.server_cert_path.endswith("machines/minikit/server.pem")

    def test_pre_create_check_runs_first(self, store):
        cfg = MachineConfig(name="minikit", driver="hyperkit")
        with pytest.raises(DriverNotSupportedError):
            machine.create_host(cfg, store)
        assert not store.exists("minikit")


class TestStartHost:
    def test_creates_when_absent(self, store):
        cfg = MachineConfig(name="minikit")
        with patch("minikit.machine.create_host", return_value="host") as mock_create:
            assert machine.start_host(cfg, store) == "host"
        mock_create.assert_called_once_with(cfg, store)

    def test_reconciles_existing_with_backoff(self):
        cfg = MachineConfig(name="minikit")
        store = FakeStore({"minikit": Host(name="minikit", driver_name="fake", driver=FakeDriver())})
        reconciler = MagicMock()
        reconciler.fix.side_effect = [RetriableReconcileError("auth not ready"), "fixed"]
        sleeps = []
        assert machine.start_host(cfg, store, reconciler=reconciler, sleep=sleeps.append) == "fixed"
        assert reconciler.fix.call_count == 2
        assert len(sleeps) == 1

    def test_non_retriable_failure_is_not_retried(self):
        cfg = MachineConfig(name="minikit")
        store = FakeStore({"minikit": Host(name="minikit", driver_name="fake", driver=FakeDriver())})
        reconciler = MagicMock()
        reconciler.fix.side_effect = ManagerError("boom")
        with pytest.raises(ManagerError, match="boom"):
            machine.start_host(cfg, store, reconciler=reconciler, sleep=lambda _: None)
        assert reconciler.fix.call_count == 1


class TestStopStatusIp:
    def test_stop(self, fake_store, fake_driver):
        fake_driver.state = State.RUNNING
        assert machine.stop_host("minikit", fake_store) == State.STOPPED
        assert fake_driver.verbs == ["stop"]
        assert fake_store.saves == 1

    def test_stop_already_stopped(self, fake_store, fake_driver):
        assert machine.stop_host("minikit", fake_store) == State.STOPPED
        assert fake_driver.verbs == []

    def test_status(self, fake_store, fake_driver):
        fake_driver.state = State.PAUSED
        assert machine.host_status("minikit", fake_store) == State.PAUSED
        assert machine.host_status("ghost", fake_store) == State.NONE

    def test_ip(self, fake_store, fake_driver):
        fake_driver.state = State.RUNNING
        assert machine.host_ip("minikit", fake_store) == "192.168.59.100"

    def test_ip_requires_running(self, fake_store):
        with pytest.raises(ManagerError, match="is not running"):
            machine.host_ip("minikit", fake_store)


class TestDeleteHost:
    @pytest.fixture
    def kic_store(self, tmp_path, runner):
        driver = KicDriver("minikit", oci=OciCli("docker", runner=runner), store_path=str(tmp_path))
        store = HostStore(tmp_path, driver_loader=lambda name, data, **deps: driver)
        store.save(Host(name="minikit", driver_name="docker", driver=driver))
        return store

    def test_missing_profile(self, store):
        assert machine.delete_host("ghost", store) is False

    def test_removes_container_network_and_record(self, kic_store, runner):
        runner.on("container inspect", ok("abc"))
        runner.on("network inspect", ok("192.168.49.0/24,192.168.49.1"))
        assert machine.delete_host("minikit", kic_store) is True
        commands = runner.commands()
        assert "docker rm -f -v minikit" in commands
        assert "docker network rm minikit" in commands
        assert not kic_store.exists("minikit")

    def test_network_in_use_only_warns(self, kic_store, runner, capsys):
        runner.on("container inspect", fail("Error: No such container: minikit"))
        runner.on("network inspect", ok("192.168.49.0/24,192.168.49.1"))
        runner.on("network rm", fail("network minikit has active endpoints"))
        assert machine.delete_host("minikit", kic_store) is True
        assert "still in use" in capsys.readouterr().err
        assert not kic_store.exists("minikit")

    def test_vm_has_no_network_step(self, fake_store, fake_driver):
        assert machine.delete_host("minikit", fake_store) is True
        assert fake_driver.verbs == ["remove"]
        assert not fake_store.exists("minikit")


class TestDeleteAll:
    def test_deletes_every_profile_and_labelled_networks(self, tmp_path):
        drivers = {name: FakeDriver(name) for name in ("alpha", "beta")}
        store = HostStore(tmp_path, driver_loader=lambda name, data, **deps: drivers[data["machine_name"]])
        for name, driver in drivers.items():
            store.save(Host(name=name, driver_name="fake", driver=driver))
        oci = MagicMock()
        oci.delete_networks_by_label.return_value = []
        with (
            patch("minikit.machine.driver_status", return_value=MagicMock(healthy=True)),
            patch("minikit.machine.OciCli", return_value=oci) as mock_cli,
        ):
            assert machine.delete_all(store) == 2
        assert store.list() == []
        assert [call.args[0] for call in mock_cli.call_args_list] == ["docker", "podman"]
        assert oci.delete_networks_by_label.call_count == 2

    def test_skips_unavailable_engines(self, store):
        with (
            patch("minikit.machine.driver_status", return_value=MagicMock(healthy=False)),
            patch("minikit.machine.OciCli") as mock_cli,
        ):
            assert machine.delete_all(store) == 0
        mock_cli.assert_not_called()

    def test_network_errors_only_warn(self, store, capsys):
        oci = MagicMock()
        oci.delete_networks_by_label.return_value = [ManagerError("network minikit has active endpoints")]
        with (
            patch("minikit.machine.driver_status", return_value=MagicMock(healthy=True)),
            patch("minikit.machine.OciCli", return_value=oci),
        ):
            machine.delete_all(store, oci_binaries=("docker",))
        assert "Failed to delete docker network" in capsys.readouterr().err
