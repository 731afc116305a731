"""Host lifecycle API used by the CLI: start, stop, delete, status, ip."""

from __future__ import annotations

import time
from typing import Callable, Optional

from minikit import retry
from minikit.constants import MOCK, NONE, OCI_BINARIES
from minikit.exceptions import MachineNotFoundError, ManagerError, NetworkInUseError
from minikit.fix import Reconciler, post_start_setup
from minikit.models import EngineOptions, Host, HostOptions, MachineConfig, State
from minikit.oci import OciCli
from minikit.provision import auth_options, configure_auth, detect_provisioner
from minikit.registry import get as get_driver_def, init_driver, status as driver_status
from minikit.store import HostStore
from minikit.utils import log

START_INITIAL_INTERVAL = 5.0
START_MAX_TIME = 180.0


def host_options(cfg: MachineConfig, store: HostStore) -> HostOptions:
    return HostOptions(
        engine=EngineOptions(
            env=list(cfg.docker_env),
            insecure_registry=list(cfg.insecure_registry),
            registry_mirror=list(cfg.registry_mirror),
        ),
        auth=auth_options(store.machine_dir(cfg.name)),
    )


def create_host(cfg: MachineConfig, store: HostStore, **deps) -> Host:
    """Create a brand new machine and persist its record."""
    driver_name = get_driver_def(cfg.driver).name
    driver = init_driver(cfg, store_path=str(store.home), **deps)
    driver.pre_create_check()

    host = Host(name=cfg.name, driver_name=driver_name, driver=driver, options=host_options(cfg, store))
    log("INFO", f'Creating {driver_name} machine "{cfg.name}" (CPUs={cfg.cpus}, Memory={cfg.memory_mb}MB) ...')
    driver.create()
    store.save(host)

    if driver_name not in (NONE, MOCK):
        runner = driver.get_runner()
        detect_provisioner(runner).provision(host.options, driver_name)
        post_start_setup(host)
        configure_auth(host)
        store.save(host)
    log("SUCCESS", f'Machine "{cfg.name}" created')
    return host


def start_host(
    cfg: MachineConfig,
    store: Optional[HostStore] = None,
    reconciler: Optional[Reconciler] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Host:
    """Create the machine when absent, otherwise reconcile it.

    Retriable failures of the reconciler (auth racing the engine coming up)
    are retried with exponential backoff.
    """
    store = store or HostStore()
    if not store.exists(cfg.name):
        return create_host(cfg, store)
    reconciler = reconciler or Reconciler(store)
    return retry.expo(
        lambda: reconciler.fix(cfg),
        initial_interval=START_INITIAL_INTERVAL,
        max_time=START_MAX_TIME,
        sleep=sleep,
    )


def stop_host(name: str, store: Optional[HostStore] = None) -> State:
    store = store or HostStore()
    host = store.load(name)
    state = host.driver.get_state()
    if state == State.STOPPED:
        log("INFO", f'"{name}" is already stopped')
        return state
    log("INFO", f'Stopping "{name}" ...')
    host.driver.stop()
    store.save(host)
    return host.driver.get_state()


def delete_host(name: str, store: Optional[HostStore] = None) -> bool:
    """Remove the machine, its network and its record.

    Returns False when there was no record for ``name``.
    """
    store = store or HostStore()
    if not store.exists(name):
        log("WARN", f'Profile "{name}" does not exist; nothing to delete')
        return False
    host = store.load(name)
    driver = host.driver
    log("INFO", f'Deleting "{name}" in {host.driver_name} ...')
    try:
        driver.remove()
    except MachineNotFoundError:
        log("DEBUG", f"{name} was already gone")

    if driver.is_container_based() and getattr(driver, "network_name", ""):
        try:
            driver.oci.remove_network(driver.network_name)
        except NetworkInUseError as exc:
            log("WARN", f"Network {driver.network_name} is still in use and was not removed: {exc}")
        except ManagerError as exc:
            log("WARN", f"Failed to remove network {driver.network_name}: {exc}")
    store.remove(name)
    log("SUCCESS", f'Removed all traces of the "{name}" machine')
    return True


def delete_all(store: Optional[HostStore] = None, oci_binaries=OCI_BINARIES) -> int:
    """Delete every profile, then any leftover network labelled as ours.

    Returns the number of profiles deleted. Failures are reported and skipped
    so one broken profile does not block the rest.
    """
    store = store or HostStore()
    deleted = 0
    for name in store.list():
        try:
            delete_host(name, store)
        except ManagerError as exc:
            log("WARN", f'Failed to delete "{name}": {exc}')
            continue
        deleted += 1
    for binary in oci_binaries:
        if not driver_status(binary).healthy:
            log("DEBUG", f"Skipping network cleanup for {binary}: not available")
            continue
        for exc in OciCli(binary).delete_networks_by_label():
            log("WARN", f"Failed to delete {binary} network: {exc}")
    return deleted


def host_status(name: str, store: Optional[HostStore] = None) -> State:
    store = store or HostStore()
    if not store.exists(name):
        return State.NONE
    return store.load(name).driver.get_state()


def host_ip(name: str, store: Optional[HostStore] = None) -> str:
    store = store or HostStore()
    host = store.load(name)
    state = host.driver.get_state()
    if state != State.RUNNING:
        raise ManagerError(f'"{name}" is not running (state: {state})')
    return host.driver.get_ip()
