"""Global constants and path configuration for minikit."""

from __future__ import annotations

import os
import re
from pathlib import Path

# MINIKIT_HOME provides a single root for all persistent data.
_HOME = os.environ.get("MINIKIT_HOME")
if _HOME:
    MINIKIT_HOME = Path(_HOME)
else:
    MINIKIT_HOME = Path.home() / ".minikit"
CERTS_DIR = MINIKIT_HOME / "certs"
CACHE_DIR = MINIKIT_HOME / "cache"
USER_CONFIG_PATH = MINIKIT_HOME / "config" / "config.yaml"

DEFAULT_PROFILE = "minikit"
TRUTHY = {"1", "true", "yes", "on"}

# Driver names
DOCKER = "docker"
PODMAN = "podman"
VIRTUALBOX = "virtualbox"
NONE = "none"
MOCK = "mock"
HYPERKIT = "hyperkit"
HYPERV = "hyperv"

OCI_BINARIES = (DOCKER, PODMAN)

DEFAULT_CPUS = 2
DEFAULT_MEMORY_MB = 2200
DEFAULT_DISK_SIZE = "20000mb"
DEFAULT_CONTAINER_RUNTIME = "docker"
DEFAULT_KIC_IMAGE = "gcr.io/k8s-minikube/kicbase:v0.0.10"
DEFAULT_ISO_URL = "https://storage.googleapis.com/minikube/iso/minikube-v1.11.0.iso"

# Label put on every OCI object this tool creates, so cleanup never touches
# objects the user made.
CREATED_BY_LABEL_KEY = "created_by.minikit.io"
PROFILE_LABEL_KEY = "name.minikit.io"

DEFAULT_SUBNET = "192.168.49.0/24"
SUBNET_STEP = 10
SUBNET_MAX_ATTEMPTS = 13

DEFAULT_BIND_IPV4 = "127.0.0.1"
HOST_DNS_NAME = "host.docker.internal"

SSH_PORT = 22
ENGINE_PORT = 2376
APISERVER_PORT = 8443

# Guest clock may be this far ahead or behind before it is reset. Generous
# enough to absorb the round trip of the measurement itself.
MAX_CLOCK_DESYNC_SECONDS = 2.1

VBOX_MANAGE = "VBoxManage"
VBOX_MIN_MAJOR_VERSION = 5
VBOX_RETRY_ATTEMPTS = 5
VBOX_UPGRADE_URL = "https://www.virtualbox.org"

GUEST_PERSISTENT_DIR = "/var/lib/minikit"
GUEST_CERTS_DIR = "/etc/docker"
GUEST_REQUIRED_DIRS = ("/etc/kubernetes/addons", "/etc/kubernetes/manifests", "/var/tmp/minikit", GUEST_PERSISTENT_DIR)

ENGINE_SERVICE = "docker"

DISK_SIZE_RE = re.compile(r"^(\d+)(b|k|kb|m|mb|g|gb|t|tb)?$", re.IGNORECASE)
PROFILE_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9._-]*$")

# Process exit codes
EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 2
EXIT_USAGE = 64
EXIT_DATA = 65
EXIT_NO_INPUT = 66
EXIT_UNAVAILABLE = 69

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY
