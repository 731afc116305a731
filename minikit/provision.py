"""Guest provisioning: OS detection, container engine setup and TLS auth."""

from __future__ import annotations

import posixpath
import shlex
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Type

from minikit.command import LocalRunner, copy_asset
from minikit.constants import (
    CERTS_DIR,
    ENGINE_PORT,
    ENGINE_SERVICE,
    GUEST_CERTS_DIR,
    GUEST_REQUIRED_DIRS,
)
from minikit.exceptions import ManagerError
from minikit.models import AuthOptions, Host, HostOptions, MemoryAsset
from minikit.sysinit import InitSystem, detect, install_service, render_unit
from minikit.utils import ensure_directory, log

CERT_DAYS = "1095"
RSA_BITS = "rsa:2048"


def parse_os_release(content: str) -> Dict[str, str]:
    info: Dict[str, str] = {}
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        try:
            parts = shlex.split(value)
        except ValueError:
            parts = [value]
        info[key.strip()] = parts[0] if parts else ""
    return info


def detect_os_release(runner) -> Dict[str, str]:
    result = runner.run(["cat", "/etc/os-release"])
    info = parse_os_release(result.stdout)
    if "ID" not in info:
        raise ManagerError(f"/etc/os-release on the guest has no ID field:\n{result.stdout}")
    return info


def engine_flags(options: HostOptions, driver_name: str) -> List[str]:
    engine = options.engine
    auth = options.auth
    flags = [
        "-H",
        f"tcp://0.0.0.0:{ENGINE_PORT}",
        "-H",
        "unix:///var/run/docker.sock",
    ]
    if engine.tls_verify:
        flags += [
            "--tlsverify",
            "--tlscacert",
            posixpath.join(auth.remote_certs_dir, "ca.pem"),
            "--tlscert",
            posixpath.join(auth.remote_certs_dir, "server.pem"),
            "--tlskey",
            posixpath.join(auth.remote_certs_dir, "server-key.pem"),
        ]
    flags += ["--label", f"provider={driver_name}"]
    for label in engine.labels:
        flags += ["--label", label]
    for registry in engine.insecure_registry:
        flags += ["--insecure-registry", registry]
    for mirror in engine.registry_mirror:
        flags += ["--registry-mirror", mirror]
    if engine.storage_driver:
        flags += ["--storage-driver", engine.storage_driver]
    if engine.log_level:
        flags += ["--log-level", engine.log_level]
    for flag in engine.arbitrary_flags:
        flags.append(f"--{flag}")
    return flags


class Provisioner:
    """Sets up the container engine on one family of guest operating systems."""

    os_ids: Tuple[str, ...] = ()
    engine_binary = "/usr/bin/dockerd"
    unit_path = "/lib/systemd/system/docker.service"
    default_storage_driver = ""

    def __init__(self, runner, os_release: Dict[str, str], init: Optional[InitSystem] = None) -> None:
        self.runner = runner
        self.os_release = os_release
        self._init = init

    @classmethod
    def compatible(cls, os_release: Dict[str, str]) -> bool:
        ids = {os_release.get("ID", "")} | set(os_release.get("ID_LIKE", "").split())
        return bool(ids & set(cls.os_ids))

    @property
    def init(self) -> InitSystem:
        if self._init is None:
            self._init = detect(self.runner)
        return self._init

    def name(self) -> str:
        return self.os_release.get("ID", "unknown")

    def ensure_directories(self) -> None:
        self.runner.run(["sudo", "mkdir", "-p", *GUEST_REQUIRED_DIRS])

    def engine_unit(self, options: HostOptions, driver_name: str) -> str:
        engine = options.engine
        if not engine.storage_driver and self.default_storage_driver:
            engine = replace(engine, storage_driver=self.default_storage_driver)
        options = HostOptions(engine=engine, auth=options.auth, swarm=options.swarm)
        return render_unit(
            self.engine_binary,
            engine_flags(options, driver_name),
            description="Docker Application Container Engine",
            env=engine.env,
        )

    def provision(self, options: HostOptions, driver_name: str) -> None:
        log("INFO", f"Provisioning {self.name()} guest with {self.init.name()}")
        self.ensure_directories()
        install_service(
            self.runner,
            self.init,
            ENGINE_SERVICE,
            self.engine_binary,
            self.engine_unit(options, driver_name),
            self.unit_path,
        )


class BuildrootProvisioner(Provisioner):
    os_ids = ("buildroot",)
    default_storage_driver = "overlay2"


class DebianProvisioner(Provisioner):
    os_ids = ("debian", "ubuntu")
    unit_path = "/etc/systemd/system/docker.service"


class RedHatProvisioner(Provisioner):
    os_ids = ("rhel", "centos", "fedora")
    unit_path = "/etc/systemd/system/docker.service"
    default_storage_driver = "overlay2"


PROVISIONERS: List[Type[Provisioner]] = [BuildrootProvisioner, DebianProvisioner, RedHatProvisioner]


def detect_provisioner(runner) -> Provisioner:
    os_release = detect_os_release(runner)
    for provisioner_cls in PROVISIONERS:
        if provisioner_cls.compatible(os_release):
            log("DEBUG", f"Using {provisioner_cls.__name__} for guest OS {os_release.get('ID')}")
            return provisioner_cls(runner, os_release)
    raise ManagerError(
        f"No provisioner found for guest OS '{os_release.get('ID')}' "
        f"(supported: {', '.join(i for p in PROVISIONERS for i in p.os_ids)})"
    )


# Auth


def auth_options(machine_dir: Path, certs_dir: Path = CERTS_DIR) -> AuthOptions:
    return AuthOptions(
        certs_dir=str(certs_dir),
        ca_cert_path=str(certs_dir / "ca.pem"),
        ca_key_path=str(certs_dir / "ca-key.pem"),
        server_cert_path=str(machine_dir / "server.pem"),
        server_key_path=str(machine_dir / "server-key.pem"),
        client_cert_path=str(certs_dir / "cert.pem"),
        client_key_path=str(certs_dir / "key.pem"),
        remote_certs_dir=GUEST_CERTS_DIR,
    )


def ensure_ca(auth: AuthOptions, local=None) -> None:
    local = local or LocalRunner()
    if Path(auth.ca_cert_path).exists() and Path(auth.ca_key_path).exists():
        return
    ensure_directory(Path(auth.certs_dir))
    log("INFO", "Generating certificate authority for engine TLS")
    local.run(
        [
            "openssl", "req", "-x509", "-new", "-nodes",
            "-newkey", RSA_BITS,
            "-days", CERT_DAYS,
            "-keyout", auth.ca_key_path,
            "-out", auth.ca_cert_path,
            "-subj", "/O=minikit/CN=minikitCA",
        ]
    )


def _signed_cert(local, auth: AuthOptions, cert: Path, key: Path, subject: str, extensions: List[str]) -> None:
    csr = cert.with_suffix(".csr")
    ext = cert.with_suffix(".ext")
    ensure_directory(cert.parent)
    local.run(["openssl", "req", "-new", "-nodes", "-newkey", RSA_BITS, "-keyout", str(key), "-out", str(csr), "-subj", subject])
    ext.write_text("\n".join(extensions) + "\n")
    try:
        local.run(
            [
                "openssl", "x509", "-req",
                "-in", str(csr),
                "-CA", auth.ca_cert_path,
                "-CAkey", auth.ca_key_path,
                "-CAcreateserial",
                "-days", CERT_DAYS,
                "-out", str(cert),
                "-extfile", str(ext),
            ]
        )
    finally:
        csr.unlink(missing_ok=True)
        ext.unlink(missing_ok=True)


def configure_auth(host: Host, local=None) -> None:
    """Generate the server certificate for ``host`` and install it on the guest.

    The CA and client certificate are shared by all machines and only
    generated once. The server certificate is regenerated on every call so it
    always carries the machine's current addresses.
    """
    local = local or LocalRunner()
    driver = host.driver
    auth = host.options.auth
    ensure_ca(auth, local)

    if not (Path(auth.client_cert_path).exists() and Path(auth.client_key_path).exists()):
        _signed_cert(
            local, auth, Path(auth.client_cert_path), Path(auth.client_key_path),
            "/O=minikit/CN=client", ["extendedKeyUsage = clientAuth"],
        )

    ip = driver.get_ip()
    sans = [f"IP:{ip}", "IP:127.0.0.1", "DNS:localhost", f"DNS:{host.name}"]
    sans += [f"DNS:{san}" for san in auth.server_cert_sans]
    log("DEBUG", f"Generating server certificate for {host.name} with SANs {','.join(sans)}")
    _signed_cert(
        local, auth, Path(auth.server_cert_path), Path(auth.server_key_path),
        f"/O=minikit.{host.name}",
        ["extendedKeyUsage = serverAuth", f"subjectAltName = {','.join(sans)}"],
    )

    runner = driver.get_runner()
    for source, name in (
        (auth.ca_cert_path, "ca.pem"),
        (auth.server_cert_path, "server.pem"),
        (auth.server_key_path, "server-key.pem"),
    ):
        permissions = "0600" if name.endswith("key.pem") else "0644"
        copy_asset(runner, MemoryAsset(Path(source).read_bytes(), posixpath.join(auth.remote_certs_dir, name), permissions))
    detect(runner).restart(ENGINE_SERVICE)
