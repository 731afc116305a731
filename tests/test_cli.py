"""Tests for minikit.cli module."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from conftest import FakeDriver, FakeStore
from minikit import cli
from minikit.exceptions import (
    CommandError,
    DaemonInfoError,
    HostLoadError,
    MachineNotFoundError,
    ManagerError,
    ParseError,
    ReconcileError,
    ToolNotFoundError,
    VersionError,
)
from minikit.command import RunResult
from minikit.models import Host, State


@pytest.fixture
def cli_store(fake_host):
    return FakeStore({"minikit": fake_host})


class TestParser:
    def test_start_flags(self):
        args = cli.build_parser().parse_args(
            ["-p", "dev", "start", "--driver", "vbox", "--cpus", "4", "--docker-env", "A=1", "--docker-env", "B=2"]
        )
        assert args.profile == "dev"
        assert args.command == "start"
        assert args.cpus == "4"
        assert args.docker_env == ["A=1", "B=2"]

    def test_mount_defaults(self):
        args = cli.build_parser().parse_args(["mount", "/src:/dst"])
        assert args.port == 5640
        assert args.version == "9p2000.L"
        assert args.msize == 262144

    def test_unknown_command_is_usage_error(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["frobnicate"])
        assert exc_info.value.code == 64

    def test_missing_command(self):
        with pytest.raises(SystemExit) as exc_info:
            cli.main([])
        assert exc_info.value.code == 64


class TestExitCodes:
    @pytest.mark.parametrize(
        "exc,code",
        [
            (cli.UsageError("bad"), 64),
            (ToolNotFoundError("VBoxManage"), 69),
            (VersionError("old"), 69),
            (DaemonInfoError("down"), 69),
            (HostLoadError("gone"), 66),
            (MachineNotFoundError("Container minikit does not exist"), 66),
            (FileNotFoundError("nope"), 66),
            (ParseError("bad", "raw"), 65),
            (ManagerError("generic"), 1),
            (KeyboardInterrupt(), 2),
        ],
    )
    def test_mapping(self, exc, code):
        assert cli.exit_code_for(exc) == code

    def test_follows_cause(self):
        try:
            try:
                raise VersionError("VirtualBox 4.3")
            except VersionError as inner:
                raise ReconcileError("driver start") from inner
        except ReconcileError as exc:
            assert cli.exit_code_for(exc) == 69

    def test_missing_machine_behind_reconcile_error(self):
        try:
            try:
                raise MachineNotFoundError("VirtualBox machine minikit does not exist")
            except MachineNotFoundError as inner:
                raise ReconcileError("driver start") from inner
        except ReconcileError as exc:
            assert cli.exit_code_for(exc) == 66

    def test_command_error_is_generic_failure(self):
        assert cli.exit_code_for(CommandError(RunResult(("false",), returncode=1))) == 1


class TestStart:
    def test_success(self, clean_env, cli_store, fake_host):
        with (
            patch("minikit.cli.build_machine_config") as mock_cfg,
            patch("minikit.cli.machine.start_host", return_value=fake_host) as mock_start,
        ):
            assert cli.main(["start", "--cpus", "4"], store=cli_store) == 0
        overrides = mock_cfg.call_args.args[1]
        assert overrides["cpus"] == "4"
        assert overrides["driver"] is None
        mock_start.assert_called_once_with(mock_cfg.return_value, cli_store)

    def test_invalid_flag_value(self, clean_env, cli_store, tmp_path, monkeypatch):
        monkeypatch.setattr("minikit.config.USER_CONFIG_PATH", tmp_path / "none.yaml")
        assert cli.main(["start", "--cpus", "zero"], store=cli_store) == 64

    def test_unhealthy_daemon_prints_advice(self, clean_env, cli_store, capsys):
        with (
            patch("minikit.cli.build_machine_config", return_value=MagicMock(driver="docker")),
            patch("minikit.cli.machine.start_host", side_effect=DaemonInfoError("get docker system info: exit 1")),
            patch("minikit.cli.platform.system", return_value="Linux"),
        ):
            assert cli.main(["start"], store=cli_store) == 69
        err = capsys.readouterr().err
        assert "docker couldn't proceed because docker service is not healthy." in err
        assert "Restart your docker service" in err
        assert "minikit delete && minikit start --driver=docker" in err

    def test_missing_tool_prints_fix(self, clean_env, cli_store, capsys):
        status = MagicMock(fix="Install VirtualBox", doc="https://www.virtualbox.org/wiki/Downloads")
        with (
            patch("minikit.cli.build_machine_config", return_value=MagicMock(driver="virtualbox")),
            patch("minikit.cli.machine.start_host", side_effect=ToolNotFoundError("VBoxManage")),
            patch("minikit.cli.driver_status", return_value=status),
        ):
            assert cli.main(["start"], store=cli_store) == 69
        err = capsys.readouterr().err
        assert "Suggestion: Install VirtualBox" in err
        assert "Documentation: https://www.virtualbox.org/wiki/Downloads" in err

    def test_interrupted(self, clean_env, cli_store):
        with (
            patch("minikit.cli.build_machine_config"),
            patch("minikit.cli.machine.start_host", side_effect=KeyboardInterrupt),
        ):
            assert cli.main(["start"], store=cli_store) == 2


class TestOtherCommands:
    def test_status_running(self, cli_store, fake_driver, capsys):
        fake_driver.state = State.RUNNING
        assert cli.main(["status"], store=cli_store) == 0
        assert capsys.readouterr().out.strip() == "host: Running"

    def test_status_missing_profile(self, capsys):
        assert cli.main(["-p", "ghost", "status"], store=FakeStore()) == 66
        assert "host: None" in capsys.readouterr().out

    def test_ip(self, cli_store, fake_driver, capsys):
        fake_driver.state = State.RUNNING
        assert cli.main(["ip"], store=cli_store) == 0
        assert capsys.readouterr().out.strip() == "192.168.59.100"

    def test_ip_missing_profile(self):
        assert cli.main(["-p", "ghost", "ip"], store=FakeStore()) == 66

    def test_stop(self, cli_store, fake_driver):
        fake_driver.state = State.RUNNING
        assert cli.main(["stop"], store=cli_store) == 0
        assert fake_driver.verbs == ["stop"]

    def test_delete(self, cli_store):
        assert cli.main(["delete"], store=cli_store) == 0
        assert not cli_store.exists("minikit")

    def test_delete_all(self, cli_store):
        with patch("minikit.cli.machine.delete_all", return_value=3) as mock_delete_all:
            assert cli.main(["delete", "--all"], store=cli_store) == 0
        mock_delete_all.assert_called_once_with(cli_store)


class TestMount:
    def test_malformed_argument(self, cli_store):
        assert cli.main(["mount", "/only-one-path"], store=cli_store) == 64

    def test_relative_target(self, cli_store, tmp_path):
        assert cli.main(["mount", f"{tmp_path}:relative"], store=cli_store) == 64

    def test_missing_source(self, cli_store, tmp_path):
        assert cli.main(["mount", f"{tmp_path / 'absent'}:/mnt/data"], store=cli_store) == 66

    def test_none_driver_unsupported(self, tmp_path):
        driver = FakeDriver(name="none", managed=False)
        store = FakeStore({"minikit": Host(name="minikit", driver_name="none", driver=driver)})
        assert cli.main(["mount", f"{tmp_path}:/mnt/data"], store=store) == 64

    def test_bad_ip(self, cli_store, tmp_path):
        assert cli.main(["mount", "--ip", "300.1.1.1", f"{tmp_path}:/mnt/data"], store=cli_store) == 65

    def test_runs_bridge(self, cli_store, fake_driver, tmp_path):
        with patch("minikit.cli.run_mount_bridge") as mock_bridge:
            assert cli.main(["mount", "--ip", "10.0.2.2", "--uid", "1000", f"{tmp_path}:/mnt/data"], store=cli_store) == 0
        args, kwargs = mock_bridge.call_args
        assert args[0] is fake_driver.runner
        assert args[1:] == ("10.0.2.2", 5640, tmp_path, "/mnt/data")
        assert kwargs["uid"] == "1000"
        assert kwargs["server_cmd"] is None

    def test_host_ip_from_driver(self, cli_store, fake_driver, tmp_path):
        fake_driver.get_host_ip = MagicMock(return_value="192.168.49.1")
        with patch("minikit.cli.run_mount_bridge") as mock_bridge:
            cli.main(["mount", "--server-cmd", "u9fs -a none", f"{tmp_path}:/mnt/data"], store=cli_store)
        args, kwargs = mock_bridge.call_args
        assert args[1] == "192.168.49.1"
        assert kwargs["server_cmd"] == ["u9fs", "-a", "none"]
