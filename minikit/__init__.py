"""minikit package."""

__version__ = "0.1.0"

__all__ = [
    "cli",
    "command",
    "config",
    "constants",
    "download",
    "driver",
    "exceptions",
    "fix",
    "kic",
    "machine",
    "models",
    "mount",
    "oci",
    "provision",
    "registry",
    "retry",
    "store",
    "sysinit",
    "utils",
    "virtualbox",
]
