"""VM provisioning: lifecycle contract, polling, backends and the SSH collaborator."""

from vmforge.provisioning.base import VirtualMachine
from vmforge.provisioning.cloud import BACKENDS, build_vm
from vmforge.provisioning.errors import (
    AmbiguousError,
    BackendError,
    ConfigError,
    NoAddressError,
    NotFoundError,
    NotProvisionedError,
    PollTimeoutError,
    PreconditionError,
    ResolutionError,
    TeardownError,
    TerminalStateError,
    UnsupportedOperationError,
    VMError,
)
from vmforge.provisioning.shell import run_shell_cmd
from vmforge.provisioning.ssh import Credentials, SSHConnector, SSHOptions, SSHSession
from vmforge.provisioning.types import PRIVATE_IP, PUBLIC_IP, SideResource, Timeouts, VMState
from vmforge.provisioning.wait import poll_until

__all__ = [
    "VirtualMachine",
    "BACKENDS",
    "build_vm",
    "VMState",
    "Timeouts",
    "SideResource",
    "PUBLIC_IP",
    "PRIVATE_IP",
    "poll_until",
    "run_shell_cmd",
    "Credentials",
    "SSHOptions",
    "SSHConnector",
    "SSHSession",
    "VMError",
    "PreconditionError",
    "NotProvisionedError",
    "ResolutionError",
    "NotFoundError",
    "AmbiguousError",
    "BackendError",
    "TerminalStateError",
    "PollTimeoutError",
    "UnsupportedOperationError",
    "TeardownError",
    "NoAddressError",
    "ConfigError",
]
