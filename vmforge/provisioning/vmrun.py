"""Local hypervisor backend: VMware Workstation/Fusion driven through vmrun."""

import logging
import os
import re
import shutil
from dataclasses import dataclass, field

from vmforge.provisioning.base import VirtualMachine
from vmforge.provisioning.errors import BackendError, PreconditionError
from vmforge.provisioning.shell import run_shell_cmd
from vmforge.provisioning.types import Timeouts, VMState
from vmforge.provisioning.wait import poll_until

logger = logging.getLogger(__name__)

VMRUN_TIMEOUT = 90

_STATES = {
    "running": VMState.RUNNING,
    "suspended": VMState.SUSPENDED,
    "halted": VMState.HALTED,
    "stopped": VMState.HALTED,
}

BACKINGS = {"nat": "nat", "bridged": "bridged"}

NIC_TEMPLATE = """ethernet{idx}.addresstype = "generated"
ethernet{idx}.bsdname = "{device}"
ethernet{idx}.connectiontype = "{backing}"
ethernet{idx}.displayname = "Ethernet"
ethernet{idx}.present = "TRUE"
ethernet{idx}.virtualdev = "vmxnet3"
"""

_ETHERNET_LINE = re.compile(r"^ethernet.*\n?", re.MULTILINE)


def translate_state(state):
    """Map a locally derived vmrun state token to a canonical VMState."""
    if not isinstance(state, str):
        return VMState.UNKNOWN
    return _STATES.get(state.strip().lower(), VMState.UNKNOWN)


@dataclass
class NIC:
    idx: int
    backing: str = "nat"
    device: str = ""


@dataclass
class VMRunSpec:
    src: str = ""
    dst: str = ""
    product: str = "ws"
    gui: bool = False
    halt_mode: str = "soft"
    nics: list = field(default_factory=list)

    def __post_init__(self):
        self.nics = [n if isinstance(n, NIC) else NIC(**n) for n in self.nics]


def rewrite_nics(vmx_text, nics):
    """Replace every ethernet* line of a .vmx file with entries for *nics*."""
    text = _ETHERNET_LINE.sub("", vmx_text)
    if text and not text.endswith("\n"):
        text += "\n"
    for nic in nics:
        backing = BACKINGS.get(nic.backing)
        if backing is None:
            raise PreconditionError(f"Unsupported NIC backing '{nic.backing}' (expected nat or bridged)")
        text += NIC_TEMPLATE.format(idx=nic.idx, device=nic.device, backing=backing)
    return text


class VMRunVM(VirtualMachine):
    backend = "vmrun"
    default_timeouts = Timeouts(action=VMRUN_TIMEOUT, resource=VMRUN_TIMEOUT, ssh=120, interval=1)

    def __init__(self, spec=None, runner=run_shell_cmd, **kwargs):
        super().__init__(spec=spec or VMRunSpec(), **kwargs)
        self._run = runner

    @property
    def vmx_path(self):
        return self.instance_id or os.path.join(self.spec.dst, os.path.basename(self.spec.src))

    def _vmrun(self, step, *args):
        cmd = ["vmrun", "-T", self.spec.product, *args]
        rc, stdout, stderr = self._run(cmd, timeout=VMRUN_TIMEOUT)
        if rc != 0:
            raise BackendError(step, self.vmx_path, (stderr or stdout).strip())
        return stdout

    def validate(self):
        spec = self.spec
        if not spec.src:
            raise PreconditionError("image reference required (source .vmx path)")
        if not spec.dst:
            raise PreconditionError("destination directory required")
        if not os.path.isfile(spec.src):
            raise PreconditionError(f"Source VM '{spec.src}' does not exist")
        if os.path.exists(spec.dst):
            raise PreconditionError(f"Destination '{spec.dst}' already exists")

    # ── State ──────────────────────────────────────────────────────

    def _is_listed(self):
        stdout = self._vmrun("list", "list")
        vmx = self.vmx_path
        candidates = {vmx, os.path.abspath(vmx), os.path.realpath(vmx)}
        return any(line.strip() in candidates for line in stdout.splitlines())

    def _raw_state(self):
        if self._is_listed():
            return "running"
        directory = os.path.dirname(self.vmx_path)
        if not os.path.isdir(directory):
            return None
        if any(name.endswith(".vmss") for name in os.listdir(directory)):
            return "suspended"
        return "halted"

    def _get_state(self):
        return translate_state(self._raw_state())

    def _guest_ip(self):
        cmd = ["vmrun", "-T", self.spec.product, "getGuestIPAddress", self.vmx_path]
        rc, stdout, _ = self._run(cmd, timeout=VMRUN_TIMEOUT)
        address = stdout.strip()
        if rc != 0 or not address or address.lower().startswith("error"):
            return ""
        return address

    def _get_ips(self):
        return [self._guest_ip(), ""]

    # ── Lifecycle ──────────────────────────────────────────────────

    def _provision(self):
        spec = self.spec
        vmx = os.path.join(spec.dst, os.path.basename(spec.src))
        logger.info(f"Copying {os.path.dirname(spec.src)} -> {spec.dst}...")
        self._track_instance(vmx)
        try:
            shutil.copytree(os.path.dirname(os.path.abspath(spec.src)), spec.dst)
        except OSError as e:
            raise BackendError("copy VM", spec.dst, str(e)) from e

        if spec.nics:
            with open(vmx) as f:
                text = f.read()
            with open(vmx, "w") as f:
                f.write(rewrite_nics(text, spec.nics))

        self._power_on()
        poll_until(
            self._guest_ip,
            bool,
            interval=self.timeouts.interval,
            timeout=self.timeouts.resource,
            description=f"guest IP address of {vmx}",
        )

    def _power_on(self):
        args = ["start", self.vmx_path]
        if not self.spec.gui:
            args.append("nogui")
        self._vmrun("start", *args)
        self._wait_for_state(VMState.RUNNING)

    def _start(self):
        self._power_on()

    def _halt(self):
        self._vmrun("stop", "stop", self.vmx_path, self.spec.halt_mode)
        self._wait_for_state(VMState.HALTED)

    def _suspend(self):
        self._vmrun("suspend", "suspend", self.vmx_path)
        self._wait_for_state(VMState.SUSPENDED)

    def _resume(self):
        self._power_on()

    def _teardown_instance(self, resource):
        directory = os.path.dirname(resource.id)
        if not os.path.isdir(directory):
            logger.warning(f"{directory} already removed.")
            return
        if self._is_listed():
            self._vmrun("stop", "stop", resource.id, "hard")
            self._wait_for_state(VMState.HALTED, VMState.SUSPENDED)
        try:
            shutil.rmtree(directory)
        except OSError as e:
            raise BackendError("remove VM directory", directory, str(e)) from e
