"""Azure backend: Resource Manager VMs with a dedicated public IP and NIC.

Credentials and management clients are cached process-wide per
(tenant, client, subscription).
"""

import logging
import os
import random
import string
from dataclasses import dataclass

from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.identity import ClientSecretCredential
from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.network import NetworkManagementClient

from vmforge.provisioning.base import VirtualMachine
from vmforge.provisioning.clients import ClientCache
from vmforge.provisioning.errors import NotFoundError, PreconditionError, wrap_backend_errors
from vmforge.provisioning.ssh import require_public_key
from vmforge.provisioning.types import Timeouts, VMState
from vmforge.provisioning.wait import poll_until, state_in

logger = logging.getLogger(__name__)

_STATES = {
    "vm running": VMState.RUNNING,
    "vm starting": VMState.STARTING,
    "vm deploying": VMState.STARTING,
    "vm stopped": VMState.HALTED,
    "vm deallocated": VMState.HALTED,
    "vm stopping": VMState.PENDING,
    "vm deallocating": VMState.PENDING,
    "vm deleting": VMState.PENDING,
    "vm suspending": VMState.PENDING,
    "vm failed": VMState.ERROR,
    "provisioning failed": VMState.ERROR,
}

OPERATION_FAILED = {"Failed", "Canceled"}
MAX_PUBLIC_IP_NAME = 63
NAME_SUFFIX_LENGTH = 6

_clients = ClientCache("azure")


def translate_state(display_status):
    """Map an instance-view power state (e.g. "VM running") to a canonical VMState."""
    if not isinstance(display_status, str):
        return VMState.UNKNOWN
    return _STATES.get(display_status.strip().lower(), VMState.UNKNOWN)


def random_suffix(length=NAME_SUFFIX_LENGTH):
    return "".join(random.choice(string.ascii_lowercase) for _ in range(length))


@dataclass
class AzureSpec:
    client_id: str = ""
    client_secret: str = ""
    tenant_id: str = ""
    subscription_id: str = ""
    location: str = ""
    resource_group: str = ""
    virtual_network: str = ""
    subnet: str = ""
    size: str = "Standard_B1s"
    image_publisher: str = ""
    image_offer: str = ""
    image_sku: str = ""
    image_version: str = "latest"
    admin_username: str = "azureuser"
    admin_password: str = ""
    ssh_public_key_path: str = ""
    os_disk_size_gb: int = 0


@dataclass
class AzureClients:
    credential: ClientSecretCredential
    compute: ComputeManagementClient
    network: NetworkManagementClient

    def close(self):
        self.compute.close()
        self.network.close()
        self.credential.close()


def _build_clients(spec):
    credential = ClientSecretCredential(spec.tenant_id, spec.client_id, spec.client_secret)
    return AzureClients(
        credential=credential,
        compute=ComputeManagementClient(credential, spec.subscription_id),
        network=NetworkManagementClient(credential, spec.subscription_id),
    )


def reset_clients():
    """Forget cached Azure clients (test isolation)."""
    _clients.reset()


class AzureVM(VirtualMachine):
    backend = "azure"
    default_timeouts = Timeouts(action=900, resource=300, ssh=60, interval=5)
    supported_operations = frozenset({"start", "halt"})

    REQUIRED = (
        "client_id",
        "client_secret",
        "tenant_id",
        "subscription_id",
        "image_publisher",
        "image_offer",
        "image_sku",
        "location",
        "resource_group",
        "subnet",
        "virtual_network",
        "size",
    )

    def __init__(self, spec=None, clients=None, **kwargs):
        super().__init__(spec=spec or AzureSpec(), **kwargs)
        self._injected_clients = clients

    @property
    def clients(self):
        if self._injected_clients is not None:
            return self._injected_clients
        spec = self.spec
        return _clients.get((spec.tenant_id, spec.client_id, spec.subscription_id), lambda: _build_clients(spec))

    def validate(self):
        spec = self.spec
        if not (spec.image_publisher and spec.image_offer and spec.image_sku):
            raise PreconditionError("image reference required (image_publisher, image_offer, image_sku)")
        missing = [f for f in self.REQUIRED if not getattr(spec, f)]
        if missing:
            raise PreconditionError(f"Azure spec missing: {', '.join(missing)}")
        if not spec.admin_password and not spec.ssh_public_key_path:
            raise PreconditionError("admin_password or ssh_public_key_path required")
        if spec.ssh_public_key_path:
            require_public_key(spec.ssh_public_key_path)

    def _wait_operation(self, poller, description, timeout=None):
        """Poll an LRO poller to completion and return its result."""
        poll_until(
            poller.status,
            state_in("Succeeded"),
            is_fatal=lambda s: s in OPERATION_FAILED,
            interval=self.timeouts.interval,
            timeout=self.timeouts.resource if timeout is None else timeout,
            description=description,
        )
        return poller.result()

    # ── Instance ───────────────────────────────────────────────────

    def _power_state(self):
        """Return the PowerState display status, "" while unknown, None when absent."""
        rg = self.spec.resource_group
        try:
            view = self.clients.compute.virtual_machines.instance_view(rg, self.instance_id)
        except ResourceNotFoundError:
            return None
        power = ""
        for status in view.statuses or []:
            code = status.code or ""
            if code.startswith("PowerState/"):
                power = status.display_status
            elif code == "ProvisioningState/failed":
                return "Provisioning failed"
        return power

    def _get_state(self):
        with wrap_backend_errors("instance view", self.instance_id, (AzureError,)):
            return translate_state(self._power_state())

    def _get_ips(self):
        spec = self.spec
        public = private = ""
        nic = self._resource("nic")
        pip = self._resource("public_ip")
        with wrap_backend_errors("address lookup", self.instance_id, (AzureError,)):
            if nic is not None:
                try:
                    iface = self.clients.network.network_interfaces.get(spec.resource_group, nic.id)
                except ResourceNotFoundError:
                    iface = None
                if iface is not None and iface.ip_configurations:
                    private = iface.ip_configurations[0].private_ip_address or ""
            if pip is not None:
                try:
                    address = self.clients.network.public_ip_addresses.get(spec.resource_group, pip.id)
                except ResourceNotFoundError:
                    address = None
                public = (address.ip_address or "") if address is not None else ""
        return [public, private]

    def _os_profile(self):
        spec = self.spec
        profile = {"computer_name": self.name[:15], "admin_username": spec.admin_username}
        if spec.ssh_public_key_path:
            with open(os.path.expanduser(spec.ssh_public_key_path)) as f:
                key_data = f.read().strip()
            profile["linux_configuration"] = {
                "disable_password_authentication": not spec.admin_password,
                "ssh": {
                    "public_keys": [
                        {"path": f"/home/{spec.admin_username}/.ssh/authorized_keys", "key_data": key_data}
                    ]
                },
            }
        if spec.admin_password:
            profile["admin_password"] = spec.admin_password
        return profile

    def _provision(self):
        spec = self.spec
        rg = spec.resource_group
        network = self.clients.network
        compute = self.clients.compute
        suffix = random_suffix()

        subnet_ref = f"{spec.virtual_network}/{spec.subnet}"
        with wrap_backend_errors("subnet lookup", subnet_ref, (AzureError,)):
            try:
                subnet = network.subnets.get(rg, spec.virtual_network, spec.subnet)
            except ResourceNotFoundError:
                raise NotFoundError("subnet", subnet_ref) from None

        pip_name = f"{self.name}-pip-{suffix}"[:MAX_PUBLIC_IP_NAME]
        with wrap_backend_errors("public IP create", pip_name, (AzureError,)):
            poller = network.public_ip_addresses.begin_create_or_update(
                rg, pip_name, {"location": spec.location, "sku": {"name": "Standard"}, "public_ip_allocation_method": "Static"}
            )
            self._track("public_ip", pip_name)
            pip = self._wait_operation(poller, f"public IP {pip_name}")

        nic_name = f"{self.name}-nic-{suffix}"
        with wrap_backend_errors("network interface create", nic_name, (AzureError,)):
            poller = network.network_interfaces.begin_create_or_update(
                rg,
                nic_name,
                {
                    "location": spec.location,
                    "ip_configurations": [
                        {"name": "ipconfig1", "subnet": {"id": subnet.id}, "public_ip_address": {"id": pip.id}}
                    ],
                },
            )
            self._track("nic", nic_name)
            nic = self._wait_operation(poller, f"network interface {nic_name}")

        os_disk = {"create_option": "FromImage", "delete_option": "Delete"}
        if spec.os_disk_size_gb:
            os_disk["disk_size_gb"] = spec.os_disk_size_gb
        params = {
            "location": spec.location,
            "hardware_profile": {"vm_size": spec.size},
            "storage_profile": {
                "image_reference": {
                    "publisher": spec.image_publisher,
                    "offer": spec.image_offer,
                    "sku": spec.image_sku,
                    "version": spec.image_version,
                },
                "os_disk": os_disk,
            },
            "os_profile": self._os_profile(),
            "network_profile": {"network_interfaces": [{"id": nic.id}]},
        }
        logger.info(f"Creating Azure VM '{self.name}' ({spec.size}) in {spec.location}...")
        with wrap_backend_errors("virtual machine create", self.name, (AzureError,)):
            poller = compute.virtual_machines.begin_create_or_update(rg, self.name, params)
            self._track_instance(self.name)
            self._wait_operation(poller, f"deployment of {self.name}", self.timeouts.action)
        self._wait_for_state(VMState.RUNNING)

    # ── Transitions ────────────────────────────────────────────────

    def _start(self):
        with wrap_backend_errors("virtual machine start", self.instance_id, (AzureError,)):
            poller = self.clients.compute.virtual_machines.begin_start(self.spec.resource_group, self.instance_id)
            self._wait_operation(poller, f"start of {self.instance_id}", self.timeouts.action)
        self._wait_for_state(VMState.RUNNING)

    def _halt(self):
        with wrap_backend_errors("virtual machine deallocate", self.instance_id, (AzureError,)):
            poller = self.clients.compute.virtual_machines.begin_deallocate(self.spec.resource_group, self.instance_id)
            self._wait_operation(poller, f"deallocation of {self.instance_id}", self.timeouts.action)
        self._wait_for_state(VMState.HALTED)

    # ── Teardown ───────────────────────────────────────────────────

    def _delete(self, operations, resource, kind):
        with wrap_backend_errors(f"{kind} delete", resource.id, (AzureError,)):
            try:
                poller = operations.begin_delete(self.spec.resource_group, resource.id)
            except ResourceNotFoundError:
                logger.warning(f"{kind} {resource.id} already gone.")
                return
            self._wait_operation(poller, f"deletion of {kind} {resource.id}")

    def _teardown_instance(self, resource):
        self._delete(self.clients.compute.virtual_machines, resource, "virtual machine")
        with wrap_backend_errors("instance view", resource.id, (AzureError,)):
            poll_until(
                self._power_state,
                lambda s: s is None,
                interval=self.timeouts.interval,
                timeout=self.timeouts.action,
                description=f"virtual machine {resource.id} to disappear",
            )

    def _teardown_nic(self, resource):
        self._delete(self.clients.network.network_interfaces, resource, "network interface")

    def _teardown_public_ip(self, resource):
        self._delete(self.clients.network.public_ip_addresses, resource, "public IP")
