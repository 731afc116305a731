"""VirtualBox driver built on the VBoxManage CLI.

VBoxManage occasionally fails with "The object is not ready" while the
hypervisor is still settling after a previous call. Those failures are retried
in :meth:`VBoxManager.vbm_out_err` without delay; every other failure is
raised with the full command line and the tool's stderr.
"""

from __future__ import annotations

import io
import re
import socket
import tarfile
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

from minikit import download, retry
from minikit.command import LocalRunner, SSHRunner
from minikit.constants import (
    APISERVER_PORT,
    CACHE_DIR,
    DEFAULT_BIND_IPV4,
    DEFAULT_CPUS,
    DEFAULT_DISK_SIZE,
    DEFAULT_ISO_URL,
    DEFAULT_MEMORY_MB,
    ENGINE_PORT,
    MINIKIT_HOME,
    SSH_PORT,
    VBOX_MANAGE,
    VBOX_MIN_MAJOR_VERSION,
    VBOX_RETRY_ATTEMPTS,
    VBOX_UPGRADE_URL,
    VIRTUALBOX,
)
from minikit.driver import Driver
from minikit.exceptions import (
    ErrorKind,
    MachineExistsError,
    MachineNotFoundError,
    ManagerError,
    ObjectNotReadyError,
    RetriableError,
    ToolNotFoundError,
    VersionError,
    classify_output,
)
from minikit.models import State
from minikit.utils import ensure_directory, log, parse_size_to_mb

# The boot2docker ISO formats and mounts a disk that starts with this magic,
# then unpacks the tar that follows it into the docker user's home.
B2D_DISK_MAGIC = b"boot2docker, please format-me"

# The host as seen from a guest behind VirtualBox NAT.
NAT_HOST_IP = "10.0.2.2"

_VM_STATES = {
    "running": State.RUNNING,
    "paused": State.PAUSED,
    "saved": State.SAVED,
    "poweroff": State.STOPPED,
    "aborted": State.STOPPED,
    "starting": State.RUNNING,
    "stopping": State.RUNNING,
}

_VMINFO_LINE = re.compile(r'^(?P<key>[^=]+)="?(?P<value>[^"]*)"?$')


class VBoxManageError(ManagerError):
    def __init__(self, args: Tuple[str, ...], stdout: str, stderr: str) -> None:
        super().__init__(f"{' '.join(args)} failed:\n{stderr}")
        self.command = args
        self.stdout = stdout
        self.stderr = stderr


class VBoxObjectNotReadyError(VBoxManageError, ObjectNotReadyError):
    pass


class VBoxManageNotFoundError(ToolNotFoundError):
    def __init__(self) -> None:
        super().__init__(VBOX_MANAGE)


def check_vbox_manage_version(version: str) -> None:
    """Reject VirtualBox releases older than the minimum supported major."""
    major = version.strip().split(".")[0]
    if not major.isdigit() or int(major) < VBOX_MIN_MAJOR_VERSION:
        raise VersionError(
            f"we support Virtualbox starting with version {VBOX_MIN_MAJOR_VERSION}. "
            f'Your VirtualBox install is "{version}". Please upgrade at {VBOX_UPGRADE_URL}'
        )


class VBoxManager:
    """Runs VBoxManage, retrying calls that race with hypervisor internals."""

    def __init__(self, runner=None, binary: str = VBOX_MANAGE) -> None:
        self.runner = runner or LocalRunner()
        self.binary = binary

    def _run_once(self, argv: Tuple[str, ...], input=None) -> Tuple[str, str]:
        try:
            result = self.runner.run(list(argv), input=input, check=False)
        except ToolNotFoundError as exc:
            raise VBoxManageNotFoundError() from exc
        if result.returncode == 0:
            return result.stdout, result.stderr
        if classify_output(result.stderr) == ErrorKind.OBJECT_NOT_READY:
            raise VBoxObjectNotReadyError(argv, result.stdout, result.stderr)
        raise VBoxManageError(argv, result.stdout, result.stderr)

    def vbm_out_err(self, *args: str, input=None) -> Tuple[str, str]:
        argv = (self.binary, *args)
        return retry.local(
            lambda: self._run_once(argv, input=input),
            interval=0,
            attempts=VBOX_RETRY_ATTEMPTS,
            retry_on=(VBoxObjectNotReadyError,),
        )

    def vbm_out(self, *args: str, input=None) -> str:
        stdout, _ = self.vbm_out_err(*args, input=input)
        return stdout

    def vbm(self, *args: str, input=None) -> None:
        self.vbm_out_err(*args, input=input)

    def version(self) -> str:
        lines = [line.strip() for line in self.vbm_out("--version").splitlines() if line.strip()]
        return lines[-1] if lines else ""


def build_b2d_disk_payload(public_key: bytes) -> bytes:
    """Return the raw disk head that seeds the guest's authorized keys."""
    buf = io.BytesIO()
    buf.write(B2D_DISK_MAGIC)
    with tarfile.open(fileobj=buf, mode="w") as tar:
        directory = tarfile.TarInfo(".ssh")
        directory.type = tarfile.DIRTYPE
        directory.mode = 0o700
        tar.addfile(directory)
        for name in (".ssh/authorized_keys", ".ssh/authorized_keys2"):
            info = tarfile.TarInfo(name)
            info.size = len(public_key)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(public_key))
    return buf.getvalue()


def free_local_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((DEFAULT_BIND_IPV4, 0))
        return sock.getsockname()[1]


class VirtualBoxDriver(Driver):
    """A boot2docker-style VM with NAT port forwards on the loopback address."""

    persisted_fields = Driver.persisted_fields + (
        "cpus",
        "memory_mb",
        "disk_size",
        "iso_url",
        "engine_port",
        "apiserver_port",
    )

    def __init__(
        self,
        machine_name: str,
        cpus: int = DEFAULT_CPUS,
        memory_mb: int = DEFAULT_MEMORY_MB,
        disk_size: str = DEFAULT_DISK_SIZE,
        iso_url: str = DEFAULT_ISO_URL,
        engine_port: int = 0,
        apiserver_port: int = 0,
        vbm: Optional[VBoxManager] = None,
        runner=None,
        sleep: Callable[[float], None] = time.sleep,
        **kwargs: Any,
    ) -> None:
        kwargs.setdefault("store_path", str(MINIKIT_HOME))
        kwargs.setdefault("ip_address", DEFAULT_BIND_IPV4)
        super().__init__(machine_name, **kwargs)
        self.cpus = cpus
        self.memory_mb = memory_mb
        self.disk_size = disk_size
        self.iso_url = iso_url
        self.engine_port = engine_port
        self.apiserver_port = apiserver_port
        self.local = runner or LocalRunner()
        self.vbm = vbm or VBoxManager(self.local)
        self.sleep = sleep

    def driver_name(self) -> str:
        return VIRTUALBOX

    def is_iso_based(self) -> bool:
        return True

    def pre_create_check(self) -> None:
        check_vbox_manage_version(self.vbm.version())

    # Create

    def create(self) -> None:
        if self.get_state() != State.NONE:
            raise MachineExistsError(f"VirtualBox machine {self.machine_name} already exists")
        machine_dir = self.resolve_store_path()
        ensure_directory(machine_dir)

        iso_path = download.cache_file(self.iso_url, CACHE_DIR / "iso")
        self.ssh_key_path = str(machine_dir / "id_rsa")
        public_key = self._generate_ssh_key(Path(self.ssh_key_path))
        disk_path = machine_dir / "disk.vmdk"
        self._create_disk(disk_path, public_key)

        log("INFO", f"Creating VirtualBox VM {self.machine_name} ({self.cpus} CPUs, {self.memory_mb} MB)")
        self.vbm.vbm("createvm", "--basefolder", str(machine_dir.parent), "--name", self.machine_name, "--register")
        self.vbm.vbm(*self._modifyvm_args())
        self._forward_ports()
        self.vbm.vbm(
            "storagectl", self.machine_name, "--name", "SATA", "--add", "sata", "--hostiocache", "on"
        )
        self._attach(0, "dvddrive", iso_path)
        self._attach(1, "hdd", disk_path)
        self.start()

    def _generate_ssh_key(self, key_path: Path) -> bytes:
        if not key_path.exists():
            self.local.run(["ssh-keygen", "-t", "rsa", "-N", "", "-q", "-f", str(key_path)])
        return Path(f"{key_path}.pub").read_bytes()

    def _create_disk(self, disk_path: Path, public_key: bytes) -> None:
        size_bytes = parse_size_to_mb(self.disk_size) * 1024 * 1024
        self.vbm.vbm(
            "convertfromraw", "stdin", str(disk_path), str(size_bytes), "--format", "VMDK",
            input=build_b2d_disk_payload(public_key),
        )

    def _modifyvm_args(self):
        return [
            "modifyvm", self.machine_name,
            "--firmware", "bios",
            "--bioslogofadein", "off",
            "--bioslogofadeout", "off",
            "--bioslogodisplaytime", "0",
            "--biosbootmenu", "disabled",
            "--ostype", "Linux26_64",
            "--cpus", str(self.cpus),
            "--memory", str(self.memory_mb),
            "--acpi", "on",
            "--ioapic", "on",
            "--rtcuseutc", "on",
            "--natdnshostresolver1", "on",
            "--natdnsproxy1", "off",
            "--cpuhotplug", "off",
            "--pae", "on",
            "--hpet", "on",
            "--hwvirtex", "on",
            "--nestedpaging", "on",
            "--largepages", "on",
            "--vtxvpid", "on",
            "--accelerate3d", "off",
            "--boot1", "dvd",
            "--nic1", "nat",
            "--nictype1", "virtio",
            "--cableconnected1", "on",
        ]

    def _forward_ports(self) -> None:
        self.ssh_port = free_local_port()
        self.engine_port = free_local_port()
        self.apiserver_port = free_local_port()
        forwards: Dict[str, Tuple[int, int]] = {
            "ssh": (self.ssh_port, SSH_PORT),
            "docker": (self.engine_port, ENGINE_PORT),
            "apiserver": (self.apiserver_port, APISERVER_PORT),
        }
        for rule, (host_port, guest_port) in forwards.items():
            self.vbm.vbm(
                "modifyvm", self.machine_name, "--natpf1", f"{rule},tcp,{DEFAULT_BIND_IPV4},{host_port},,{guest_port}"
            )

    def _attach(self, port: int, device_type: str, medium: Path) -> None:
        self.vbm.vbm(
            "storageattach", self.machine_name,
            "--storagectl", "SATA",
            "--port", str(port),
            "--device", "0",
            "--type", device_type,
            "--medium", str(medium),
        )

    # Lifecycle

    def get_state(self) -> State:
        try:
            stdout = self.vbm.vbm_out("showvminfo", self.machine_name, "--machinereadable")
        except VBoxManageError as exc:
            if classify_output(exc.stderr) == ErrorKind.VM_NOT_FOUND:
                return State.NONE
            raise
        for line in stdout.splitlines():
            match = _VMINFO_LINE.match(line.strip())
            if match and match.group("key") == "VMState":
                return _VM_STATES.get(match.group("value"), State.ERROR)
        return State.NONE

    def start(self) -> None:
        state = self.get_state()
        if state == State.RUNNING:
            return
        if state == State.NONE:
            raise MachineNotFoundError(f"VirtualBox machine {self.machine_name} does not exist")
        if state == State.PAUSED:
            self.vbm.vbm("controlvm", self.machine_name, "resume")
        else:
            self.vbm.vbm("startvm", self.machine_name, "--type", "headless")
        log("INFO", f"Waiting for SSH on {self.machine_name} ...")
        retry.local(self._ssh_answers, interval=2, attempts=60, sleep=self.sleep)

    def _ssh_answers(self) -> None:
        try:
            self.get_runner().run(["true"], timeout=15)
        except ManagerError as exc:
            raise RetriableError(f"SSH not available yet: {exc}") from exc

    def _wait_for_state(self, wanted: State) -> None:
        def check() -> None:
            state = self.get_state()
            if state != wanted:
                raise RetriableError(f"{self.machine_name} is {state}, waiting for {wanted}")

        retry.local(check, interval=1, attempts=60, sleep=self.sleep)

    def stop(self) -> None:
        state = self.get_state()
        # A saved VM is not running; its saved state is kept for the next start.
        if state in (State.STOPPED, State.SAVED, State.NONE):
            return
        if state == State.PAUSED:
            # A paused guest cannot answer the ACPI request.
            self.vbm.vbm("controlvm", self.machine_name, "resume")
        self.vbm.vbm("controlvm", self.machine_name, "acpipowerbutton")
        self._wait_for_state(State.STOPPED)

    def kill(self) -> None:
        if self.get_state() not in (State.RUNNING, State.PAUSED):
            return
        self.vbm.vbm("controlvm", self.machine_name, "poweroff")

    def remove(self) -> None:
        if self.get_state() == State.NONE:
            return
        self.kill()
        self.vbm.vbm("unregistervm", "--delete", self.machine_name)

    # Endpoints

    def get_ip(self) -> str:
        return DEFAULT_BIND_IPV4

    def get_host_ip(self) -> str:
        return NAT_HOST_IP

    def get_url(self) -> str:
        if not self.engine_port:
            raise ManagerError(f"Engine port is not forwarded for machine {self.machine_name}")
        return f"tcp://{DEFAULT_BIND_IPV4}:{self.engine_port}"

    def get_runner(self):
        key = Path(self.ssh_key_path) if self.ssh_key_path else None
        return SSHRunner(self.get_ssh_hostname(), self.get_ssh_port(), self.get_ssh_username(), key)
