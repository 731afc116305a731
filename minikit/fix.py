"""Bring an existing host back to a running, provisioned, clock-synced state."""

from __future__ import annotations

import enum
import time
from typing import Callable, Optional

from minikit.constants import GUEST_REQUIRED_DIRS, MAX_CLOCK_DESYNC_SECONDS, MOCK, NONE
from minikit.exceptions import MachineNotFoundError, ManagerError, ParseError, ReconcileError, RetriableReconcileError
from minikit.models import Host, MachineConfig, State
from minikit.provision import configure_auth, detect_provisioner
from minikit.store import REMEDIATION
from minikit.utils import log


class Stage(enum.Enum):
    ABSENT = "absent"
    LOADED = "loaded"
    STARTED = "started"
    PROVISIONED = "provisioned"
    AUTH_CONFIGURED = "auth-configured"
    CLOCK_SYNCED = "clock-synced"
    READY = "ready"


def guest_clock_delta(runner, local: float) -> float:
    """Seconds the guest clock is ahead of ``local`` (negative when behind).

    SSH latency is not accounted for; in a synced state the guest reads a
    little ahead.
    """
    result = runner.run(["date", "+%s.%N"])
    raw = result.stdout.strip()
    secs, _, nsecs = raw.partition(".")
    try:
        remote = int(secs) + int(nsecs or "0") / 1e9
    except ValueError as exc:
        raise ParseError("parse guest clock", raw) from exc
    delta = remote - local
    log("DEBUG", f"Guest clock: {remote:.3f} host: {local:.3f} (delta={delta:.3f}s)")
    return delta


def adjust_guest_clock(runner, now: float) -> None:
    result = runner.run(["sudo", "date", "-s", f"@{int(now)}"])
    log("DEBUG", f"clock set: {result.stdout.strip()}")


def ensure_synced_guest_clock(runner, now: Callable[[], float] = time.time) -> bool:
    """Reset the guest clock when it drifted past the tolerance.

    Returns True when a correction was issued. A failed measurement only
    warns; a failed correction raises.
    """
    try:
        delta = guest_clock_delta(runner, now())
    except ManagerError as exc:
        log("WARN", f"Unable to measure system clock delta: {exc}")
        return False
    if abs(delta) < MAX_CLOCK_DESYNC_SECONDS:
        log("DEBUG", f"Guest clock delta is within tolerance: {delta:.3f}s")
        return False
    log("INFO", f"Guest clock is off by {delta:.3f}s, adjusting")
    try:
        adjust_guest_clock(runner, now())
    except ManagerError as exc:
        raise ManagerError(f"adjusting system clock: {exc}") from exc
    return True


def post_start_setup(host: Host) -> None:
    """Backend-specific fixups once the machine is up."""
    runner = host.driver.get_runner()
    runner.run(["sudo", "mkdir", "-p", *GUEST_REQUIRED_DIRS])
    if host.driver.is_container_based():
        # Kubernetes volume mounts need shared propagation inside the node.
        runner.run(["sudo", "mount", "--make-rshared", "/"])


class Reconciler:
    """Runs the fix sequence for one host, remembering the last stage reached.

    Collaborators are injectable: ``store`` needs ``load`` and ``save``,
    ``provisioner_for`` maps a runner to a provisioner, ``auth`` installs TLS
    material for a host.
    """

    def __init__(
        self,
        store,
        provisioner_for: Callable = detect_provisioner,
        auth: Callable[[Host], None] = configure_auth,
        post_start: Callable[[Host], None] = post_start_setup,
        now: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.provisioner_for = provisioner_for
        self.auth = auth
        self.post_start = post_start
        self.now = now
        self.stage = Stage.ABSENT

    def _fail(self, message: str, host: Optional[Host], exc: Exception, retriable: bool = False) -> ReconcileError:
        error_cls = RetriableReconcileError if retriable else ReconcileError
        return error_cls(f"{message}: {exc}", host=host, stage=self.stage)

    def fix(self, cfg: MachineConfig) -> Host:
        log("INFO", "Reconfiguring existing host ...")
        start = time.monotonic()
        try:
            return self._fix(cfg)
        finally:
            log("DEBUG", f"fix host {cfg.name} stopped at stage {self.stage.value} after {time.monotonic() - start:.1f}s")

    def _fix(self, cfg: MachineConfig) -> Host:
        # HostLoadError already names the remediation.
        host = self.store.load(cfg.name)
        self.stage = Stage.LOADED
        driver = host.driver

        try:
            state = driver.get_state()
        except ManagerError as exc:
            raise self._fail("Error getting state for host", host, exc) from exc

        if state == State.RUNNING:
            log("INFO", f'Using the running {host.driver_name} "{cfg.name}" machine ...')
        else:
            log("INFO", f'Starting existing {host.driver_name} machine for "{cfg.name}" ...')
            try:
                driver.start()
            except MachineNotFoundError as exc:
                # The stored record outlived its machine.
                raise ReconcileError(f"driver start: {exc}. {REMEDIATION}", host=host, stage=self.stage) from exc
            except ManagerError as exc:
                raise self._fail("driver start", host, exc) from exc
            try:
                self.store.save(host)
            except (OSError, ManagerError) as exc:
                raise self._fail("save", host, exc) from exc
        self.stage = Stage.STARTED

        if host.driver_name in (NONE, MOCK):
            self.stage = Stage.READY
            return host

        if cfg.docker_env and cfg.docker_env != host.options.engine.env:
            host.options.engine.env = list(cfg.docker_env)
            log("DEBUG", "Detecting provisioner ...")
            try:
                provisioner = self.provisioner_for(driver.get_runner())
                provisioner.provision(host.options, host.driver_name)
                self.store.save(host)
            except (OSError, ManagerError) as exc:
                raise self._fail("provision", host, exc) from exc
        self.stage = Stage.PROVISIONED

        try:
            self.post_start(host)
        except ManagerError as exc:
            raise self._fail("post-start", host, exc) from exc

        log("DEBUG", f"Configuring auth for driver {host.driver_name} ...")
        try:
            self.auth(host)
        except (OSError, ManagerError) as exc:
            raise self._fail("Error configuring auth on host", host, exc, retriable=True) from exc
        self.stage = Stage.AUTH_CONFIGURED

        if is_vm(driver):
            try:
                ensure_synced_guest_clock(driver.get_runner(), self.now)
            except ManagerError as exc:
                raise self._fail("clock sync", host, exc) from exc
        self.stage = Stage.CLOCK_SYNCED

        self.stage = Stage.READY
        return host


def is_vm(driver) -> bool:
    return driver.is_managed() and not driver.is_container_based()


def fix_host(cfg: MachineConfig, store, **collaborators) -> Host:
    return Reconciler(store, **collaborators).fix(cfg)
