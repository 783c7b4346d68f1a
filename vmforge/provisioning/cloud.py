"""Backend registry: map backend names to adapter classes and build VMs from config.

All VM construction for the CLI goes through this module.
"""

import logging
from dataclasses import fields

from vmforge.provisioning.aws import AWSSpec, AWSVM
from vmforge.provisioning.azure import AzureSpec, AzureVM
from vmforge.provisioning.cloudrift import CloudRiftSpec, CloudRiftVM
from vmforge.provisioning.errors import ConfigError
from vmforge.provisioning.exoscale import ExoscaleSpec, ExoscaleVM
from vmforge.provisioning.gcp import GCESpec, GCEVM
from vmforge.provisioning.mock import MockVM
from vmforge.provisioning.openstack import OpenStackSpec, OpenStackVM
from vmforge.provisioning.ssh import Credentials, SSHOptions
from vmforge.provisioning.vmrun import VMRunSpec, VMRunVM

logger = logging.getLogger(__name__)

# name -> (adapter class, spec dataclass or None for free-form dict)
BACKENDS = {
    "aws": (AWSVM, AWSSpec),
    "azure": (AzureVM, AzureSpec),
    "cloudrift": (CloudRiftVM, CloudRiftSpec),
    "exoscale": (ExoscaleVM, ExoscaleSpec),
    "gcp": (GCEVM, GCESpec),
    "mock": (MockVM, None),
    "openstack": (OpenStackVM, OpenStackSpec),
    "vmrun": (VMRunVM, VMRunSpec),
}


def _build_dataclass(cls, values, section):
    if values is None:
        values = {}
    if not isinstance(values, dict):
        raise ConfigError(f"'{section}' must be a mapping")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigError(f"Unknown '{section}' field(s): {', '.join(unknown)}")
    return cls(**values)


def build_vm(config, **adapter_kwargs):
    """Construct a VirtualMachine from a loaded machine config dict.

    *adapter_kwargs* are passed to the adapter constructor (injected clients,
    runners, connectors).
    """
    backend = config.get("backend")
    if backend not in BACKENDS:
        raise ConfigError(f"Unknown backend '{backend}' (expected one of: {', '.join(sorted(BACKENDS))})")
    vm_cls, spec_cls = BACKENDS[backend]

    raw_spec = config.get("spec") or {}
    spec = _build_dataclass(spec_cls, raw_spec, "spec") if spec_cls else dict(raw_spec)

    ssh = dict(config.get("ssh") or {})
    wait_ssh = bool(ssh.pop("wait", False))
    cred_keys = {f.name for f in fields(Credentials)}
    credentials = _build_dataclass(Credentials, {k: v for k, v in ssh.items() if k in cred_keys}, "ssh")
    ssh_options = _build_dataclass(SSHOptions, {k: v for k, v in ssh.items() if k not in cred_keys}, "ssh")

    try:
        timeouts = vm_cls.default_timeouts.merged(config.get("timeouts"))
    except (ValueError, TypeError) as e:
        raise ConfigError(str(e)) from e

    logger.debug(f"Building {backend} VM '{config.get('name', '')}'")
    return vm_cls(
        spec=spec,
        name=config.get("name", ""),
        timeouts=timeouts,
        credentials=credentials,
        ssh_options=ssh_options,
        wait_ssh=wait_ssh,
        **adapter_kwargs,
    )
