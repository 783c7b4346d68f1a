"""CloudRift backend: rent/terminate GPU VMs via the CloudRift REST API."""

import json
import logging
import os
from dataclasses import dataclass, field

import httpx

from vmforge.provisioning.base import VirtualMachine
from vmforge.provisioning.clients import ClientCache
from vmforge.provisioning.errors import BackendError, PreconditionError, wrap_backend_errors
from vmforge.provisioning.ssh import require_public_key
from vmforge.provisioning.types import Timeouts, VMConnectionInfo, VMState
from vmforge.provisioning.wait import poll_until

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.cloudrift.ai"
DEFAULT_IMAGE_URL = "https://storage.googleapis.com/cloudrift-vm-disks/disks/github/ubuntu-noble-server-gpu-580-129-20251015-183936.img"
DEFAULT_CLOUDINIT_URL = "https://storage.googleapis.com/cloudrift-vm-disks/cloudinit/ubuntu-base.cloudinit"
API_VERSION = "~upcoming"

_STATES = {
    "initializing": VMState.STARTING,
    "provisioning": VMState.STARTING,
    "pending": VMState.STARTING,
    "active": VMState.RUNNING,
    "deactivating": VMState.PENDING,
    "terminating": VMState.PENDING,
    "inactive": VMState.HALTED,
    "terminated": VMState.HALTED,
    "failed": VMState.ERROR,
    "error": VMState.ERROR,
}

GONE_STATUSES = {"Inactive", "Terminated"}

_clients = ClientCache("cloudrift")


def translate_state(status):
    """Map a CloudRift instance status to a canonical VMState."""
    if not isinstance(status, str):
        return VMState.UNKNOWN
    return _STATES.get(status.strip().lower(), VMState.UNKNOWN)


# ── API helpers ───────────────────────────────────────────────────


def _api_request(client, method, path, data, api_key, api_url=DEFAULT_API_URL):
    """Make an authenticated CloudRift API request.

    Wraps *data* in the versioned envelope ``{"version": ..., "data": ...}``.

    Returns:
        Parsed JSON response ``data`` dict.
    """
    url = f"{api_url}{path}"
    payload = {"version": API_VERSION, "data": data}
    logger.debug(f"{method} {url} {json.dumps(data)}")
    headers = {"X-API-Key": api_key, "Content-Type": "application/json"}
    resp = client.request(method, url, json=payload, headers=headers, timeout=60)
    resp.raise_for_status()
    body = resp.json()
    return body.get("data", body)


def _rent_instance(client, api_key, instance_type, ssh_public_keys, image_url, cloudinit_url, ports=None, api_url=DEFAULT_API_URL):
    """Rent a new CloudRift VM instance.

    POST /api/v1/instances/rent
    """
    data = {
        "selector": {
            "ByInstanceTypeAndLocation": {
                "instance_type": instance_type,
            },
        },
        "config": {
            "VirtualMachine": {
                "ssh_key": {"PublicKeys": ssh_public_keys},
                "image_url": image_url,
                "cloudinit_url": cloudinit_url,
            },
        },
        "with_public_ip": True,
    }
    if ports:
        data["ports"] = [str(p) for p in ports]
    return _api_request(client, "POST", "/api/v1/instances/rent", data, api_key, api_url)


def _terminate_instance(client, api_key, instance_id, api_url=DEFAULT_API_URL):
    """Terminate a CloudRift instance.

    POST /api/v1/instances/terminate with ById selector.
    """
    data = {"selector": {"ById": [instance_id]}}
    return _api_request(client, "POST", "/api/v1/instances/terminate", data, api_key, api_url)


def _get_instance_info(client, api_key, instance_id, api_url=DEFAULT_API_URL):
    """Get info for a single instance by ID, or None when it does not exist."""
    data = {"selector": {"ById": [instance_id]}}
    result = _api_request(client, "POST", "/api/v1/instances/list", data, api_key, api_url)
    instances = result.get("instances", [])
    return instances[0] if instances else None


def _extract_connection_info(instance):
    """Extract connection info from an instance dict into a VMConnectionInfo.

    VMs provide login credentials in virtual_machines[].login_info.
    Port mappings are [internal_port, external_port] tuples.
    """
    host = instance.get("host_address", "")
    port_mappings = instance.get("port_mappings", [])

    username = "user"
    vms = instance.get("virtual_machines", [])
    if vms:
        login_info = vms[0].get("login_info", {})
        creds = login_info.get("UsernameAndPassword", {})
        username = creds.get("username", username)

    ssh_port = 22
    for mapping in port_mappings:
        if mapping[0] == 22:
            ssh_port = mapping[1]
            break

    return VMConnectionInfo(
        host=host,
        username=username,
        ssh_port=ssh_port,
        port_mappings=[(m[0], m[1]) for m in port_mappings],
    )


# ── Adapter ────────────────────────────────────────────────────────


def reset_clients():
    """Close and forget cached HTTP clients (test isolation)."""
    _clients.reset()


@dataclass
class CloudRiftSpec:
    instance_type: str = ""
    ssh_public_key_path: str = ""
    image_url: str = DEFAULT_IMAGE_URL
    cloudinit_url: str = DEFAULT_CLOUDINIT_URL
    ports: list[int] = field(default_factory=lambda: [22])
    api_key: str = ""
    api_url: str = DEFAULT_API_URL


class CloudRiftVM(VirtualMachine):
    backend = "cloudrift"
    default_timeouts = Timeouts(action=600, resource=600, ssh=120, interval=10)
    supported_operations = frozenset()

    def __init__(self, spec=None, transport=None, **kwargs):
        super().__init__(spec=spec or CloudRiftSpec(), **kwargs)
        self._transport = transport
        self._client = None

    @property
    def client(self):
        if self._transport is None:
            return _clients.get(self.spec.api_url, httpx.Client)
        if self._client is None:
            self._client = httpx.Client(transport=self._transport)
        return self._client

    @property
    def api_key(self):
        return self.spec.api_key or os.environ.get("CLOUDRIFT_API_KEY", "")

    def validate(self):
        spec = self.spec
        if not spec.image_url:
            raise PreconditionError("image reference required")
        if not spec.instance_type:
            raise PreconditionError("instance type required")
        if not spec.ssh_public_key_path:
            raise PreconditionError("SSH public key path required")
        require_public_key(spec.ssh_public_key_path)
        if not self.api_key:
            raise PreconditionError("CloudRift API key required. Set api_key or CLOUDRIFT_API_KEY.")

    def _info(self, instance_id=None):
        instance_id = instance_id or self.instance_id
        with wrap_backend_errors("instance info", instance_id, (httpx.HTTPError,)):
            return _get_instance_info(self.client, self.api_key, instance_id, self.spec.api_url)

    def _status(self, instance_id=None):
        info = self._info(instance_id)
        return info.get("status") if info else None

    def _get_state(self):
        return translate_state(self._status())

    def _get_ips(self):
        info = self._info()
        return [info.get("host_address", "") if info else "", ""]

    def _ssh_port(self, options):
        instance = self._resource("instance")
        mapped = instance.attrs.get("ssh_port") if instance else None
        return mapped if mapped and options.port == 22 else options.port

    def _provision(self):
        spec = self.spec
        with open(os.path.expanduser(spec.ssh_public_key_path)) as f:
            public_key = f.read().strip()

        logger.info(f"Renting CloudRift instance (type={spec.instance_type})...")
        with wrap_backend_errors("rent instance", spec.instance_type, (httpx.HTTPError,)):
            result = _rent_instance(
                self.client, self.api_key, spec.instance_type, [public_key],
                spec.image_url, spec.cloudinit_url, ports=spec.ports, api_url=spec.api_url,
            )
        instance_ids = result.get("instance_ids", [])
        if not instance_ids:
            raise BackendError("rent instance", spec.instance_type, "no instance ID returned")
        instance = self._track_instance(instance_ids[0])
        logger.info(f"Instance rented (id={self.instance_id}). Waiting for Active status (timeout: {self.timeouts.action}s)...")

        # Inactive right after renting means the host rejected the VM.
        self._wait_for_state(VMState.RUNNING, fatal=(VMState.ERROR, VMState.HALTED))

        conn = _extract_connection_info(self._info() or {})
        instance.attrs["ssh_port"] = conn.ssh_port
        if not self.credentials.user:
            self.credentials.user = conn.username
        logger.info(f"Connect:  ssh -p {conn.ssh_port} {conn.address}")

    def _teardown_instance(self, resource):
        with wrap_backend_errors("terminate instance", resource.id, (httpx.HTTPError,)):
            _terminate_instance(self.client, self.api_key, resource.id, self.spec.api_url)
        poll_until(
            lambda: self._status(resource.id),
            lambda s: s is None or s in GONE_STATUSES,
            interval=self.timeouts.interval,
            timeout=self.timeouts.action,
            description=f"instance {resource.id} to terminate",
        )
