"""Tests for minikit.models module."""

from minikit.constants import DEFAULT_PROFILE, DOCKER
from minikit.models import EngineOptions, HostOptions, MachineConfig, State, SysInfo


class TestState:
    def test_str_is_display_value(self):
        assert str(State.RUNNING) == "Running"
        assert str(State.NONE) == "None"

    def test_lookup_by_value(self):
        assert State("Stopped") is State.STOPPED


class TestSysInfo:
    def test_is_named_tuple(self):
        info = SysInfo(4, 8000000000)
        assert info.cpus == 4
        assert info[1] == 8000000000


class TestHostOptions:
    def test_defaults(self):
        options = HostOptions()
        assert options.engine.env == []
        assert options.engine.tls_verify is True
        assert options.auth.remote_certs_dir == "/etc/docker"
        assert options.swarm.is_swarm is False

    def test_dict_round_trip(self):
        options = HostOptions(engine=EngineOptions(env=["A=1"], insecure_registry=["10.0.0.0/24"]))
        options.auth.server_cert_sans = ["192.168.49.2"]
        restored = HostOptions.from_dict(options.to_dict())
        assert restored == options

    def test_from_partial_dict(self):
        restored = HostOptions.from_dict({"engine": {"env": ["B=2"]}})
        assert restored.engine.env == ["B=2"]
        assert restored.auth.ca_cert_path == ""


class TestMachineConfig:
    def test_defaults(self):
        cfg = MachineConfig()
        assert cfg.name == DEFAULT_PROFILE
        assert cfg.driver == DOCKER
        assert cfg.subnet is None

    def test_lists_are_not_shared(self):
        first, second = MachineConfig(), MachineConfig()
        first.docker_env.append("A=1")
        assert second.docker_env == []
