"""Exoscale backend: CloudStack-compatible compute API with async jobs.

Every mutating call returns a job id; queryAsyncJobResult is polled until
the job finishes before the VM state itself is polled.
"""

import base64
import hashlib
import hmac
import ipaddress
import logging
import os
from dataclasses import dataclass, field
from urllib.parse import quote

import httpx

from vmforge.provisioning.base import VirtualMachine
from vmforge.provisioning.clients import ClientCache
from vmforge.provisioning.errors import (
    AmbiguousError,
    BackendError,
    NotFoundError,
    PreconditionError,
    wrap_backend_errors,
)
from vmforge.provisioning.types import Timeouts, VMState
from vmforge.provisioning.wait import poll_until

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://api.exoscale.com/compute"

_clients = ClientCache("exoscale")

_STATES = {
    "starting": VMState.STARTING,
    "running": VMState.RUNNING,
    "stopping": VMState.PENDING,
    "destroyed": VMState.PENDING,
    "expunging": VMState.PENDING,
    "migrating": VMState.PENDING,
    "stopped": VMState.HALTED,
    "error": VMState.ERROR,
}

JOB_PENDING = 0
JOB_SUCCEEDED = 1
JOB_FAILED = 2

# States reported by a VM on its way out; treated like absence by destroy.
GONE_STATES = {"Destroyed", "Expunging"}

# CloudStack error code for "entity does not exist".
ERROR_NOT_FOUND = 431


def translate_state(state):
    """Map a CloudStack VM state to a canonical VMState."""
    if not isinstance(state, str):
        return VMState.UNKNOWN
    return _STATES.get(state.strip().lower(), VMState.UNKNOWN)


def _encode(value):
    return quote(str(value), safe="*")


def sign(params, secret):
    """Return the CloudStack signature for *params* (sorted, lower-cased, HMAC-SHA1)."""
    query = "&".join(f"{k}={_encode(v)}" for k, v in sorted(params.items(), key=lambda kv: kv[0].lower()))
    digest = hmac.new(secret.encode(), query.lower().encode(), hashlib.sha1).digest()
    return query, base64.b64encode(digest).decode()


class CloudStackAPIError(Exception):
    def __init__(self, command, status_code, error_code, text):
        self.command = command
        self.status_code = status_code
        self.error_code = error_code
        super().__init__(f"{command}: HTTP {status_code} ({error_code}) {text}")

    @property
    def not_found(self):
        return self.error_code == ERROR_NOT_FOUND


class CloudStackClient:
    """Signed-request client for the CloudStack API."""

    def __init__(self, api_key, api_secret, endpoint=DEFAULT_ENDPOINT, transport=None, timeout=60):
        self.api_key = api_key
        self.api_secret = api_secret
        self.endpoint = endpoint.rstrip("/")
        self._client = httpx.Client(transport=transport, timeout=timeout)

    def call(self, command, **params):
        """Run *command*; returns the unwrapped ``<command>response`` body."""
        params = {k: v for k, v in params.items() if v not in (None, "")}
        params.update({"command": command, "apikey": self.api_key, "response": "json"})
        query, signature = sign(params, self.api_secret)
        resp = self._client.get(f"{self.endpoint}?{query}&signature={_encode(signature)}")
        try:
            data = resp.json() if resp.content else {}
        except ValueError:
            raise CloudStackAPIError(command, resp.status_code, None, resp.text) from None
        body = data.get(f"{command.lower()}response", {})
        if resp.status_code >= 400:
            raise CloudStackAPIError(command, resp.status_code, body.get("errorcode"), body.get("errortext", ""))
        return body

    def close(self):
        self._client.close()


def reset_clients():
    """Close and forget cached API clients (test isolation)."""
    _clients.reset()


@dataclass
class ExoscaleSpec:
    api_key: str = ""
    api_secret: str = ""
    endpoint: str = DEFAULT_ENDPOINT
    zone: str = ""
    template: str = ""
    service_offering: str = ""
    keypair: str = ""
    security_groups: list[str] = field(default_factory=list)
    disk_size_gb: int = 0
    user_data: str = ""


class ExoscaleVM(VirtualMachine):
    backend = "exoscale"
    default_timeouts = Timeouts(action=300, resource=300, ssh=30, interval=2)
    supported_operations = frozenset({"start", "halt"})

    def __init__(self, spec=None, client=None, **kwargs):
        super().__init__(spec=spec or ExoscaleSpec(), **kwargs)
        self._client = client

    @property
    def client(self):
        if self._client is not None:
            return self._client
        spec = self.spec
        api_key = spec.api_key or os.environ.get("EXOSCALE_API_KEY", "")
        api_secret = spec.api_secret or os.environ.get("EXOSCALE_API_SECRET", "")
        key = (api_key, api_secret, spec.endpoint)
        return _clients.get(key, lambda: CloudStackClient(api_key, api_secret, spec.endpoint))

    def _call(self, step, command, resource_id="", **params):
        with wrap_backend_errors(step, resource_id, (httpx.HTTPError, CloudStackAPIError)):
            return self.client.call(command, **params)

    def validate(self):
        spec = self.spec
        if not spec.template:
            raise PreconditionError("image reference required")
        for attr in ("service_offering", "zone", "keypair"):
            if not getattr(spec, attr):
                raise PreconditionError(f"{attr.replace('_', ' ')} required")
        if self._client is None:
            if not (spec.api_key or os.environ.get("EXOSCALE_API_KEY")):
                raise PreconditionError("Exoscale API key required")
            if not (spec.api_secret or os.environ.get("EXOSCALE_API_SECRET")):
                raise PreconditionError("Exoscale API secret required")

    # ── Resolution ─────────────────────────────────────────────────

    def _lookup(self, kind, command, list_key, name, name_field="name", **params):
        body = self._call(f"{kind} lookup", command, name, **params)
        matches = [item for item in body.get(list_key, []) if item.get(name_field) == name]
        if not matches:
            raise NotFoundError(kind, name)
        if len(matches) > 1:
            raise AmbiguousError(kind, name, len(matches))
        return matches[0]["id"]

    # ── Jobs ───────────────────────────────────────────────────────

    def _wait_job(self, job_id, description):
        """Poll an async job; returns its jobresult, raising on job failure."""

        def _probe():
            return self._call("job status", "queryAsyncJobResult", job_id, jobid=job_id)

        job = poll_until(
            _probe,
            lambda j: j.get("jobstatus") == JOB_SUCCEEDED,
            interval=self.timeouts.interval,
            timeout=self.timeouts.action,
            is_fatal=lambda j: j.get("jobstatus") == JOB_FAILED,
            description=description,
        )
        return job.get("jobresult", {})

    # ── Instance ───────────────────────────────────────────────────

    def _vm(self, vm_id=None):
        vm_id = vm_id or self.instance_id
        try:
            body = self.client.call("listVirtualMachines", id=vm_id)
        except CloudStackAPIError as e:
            if e.not_found:
                return None
            raise BackendError("list virtual machines", vm_id, str(e)) from e
        except httpx.HTTPError as e:
            raise BackendError("list virtual machines", vm_id, str(e)) from e
        vms = body.get("virtualmachine", [])
        return vms[0] if vms else None

    def _vm_state(self, vm_id=None):
        vm = self._vm(vm_id)
        return vm.get("state") if vm else None

    def _get_state(self):
        return translate_state(self._vm_state())

    def _get_ips(self):
        vm = self._vm() or {}
        public = private = ""
        for nic in vm.get("nic", []):
            address = nic.get("ipaddress", "")
            if not address:
                continue
            if ipaddress.ip_address(address).is_private:
                private = private or address
            else:
                public = public or address
        return [public, private]

    def _provision(self):
        spec = self.spec
        zone_id = self._lookup("zone", "listZones", "zone", spec.zone)
        template_id = self._lookup(
            "template", "listTemplates", "template", spec.template, templatefilter="featured", zoneid=zone_id
        )
        offering_id = self._lookup("service offering", "listServiceOfferings", "serviceoffering", spec.service_offering)
        group_ids = [
            self._lookup("security group", "listSecurityGroups", "securitygroup", group, securitygroupname=group)
            for group in spec.security_groups
        ]

        params = {
            "templateid": template_id,
            "serviceofferingid": offering_id,
            "zoneid": zone_id,
            "keypair": spec.keypair,
            "name": self.name,
            "displayname": self.name,
        }
        if group_ids:
            params["securitygroupids"] = ",".join(group_ids)
        if spec.disk_size_gb:
            params["rootdisksize"] = spec.disk_size_gb
        if spec.user_data:
            params["userdata"] = base64.b64encode(spec.user_data.encode()).decode()

        logger.info(f"Deploying Exoscale VM '{self.name}' in zone '{spec.zone}'...")
        body = self._call("deploy virtual machine", "deployVirtualMachine", self.name, **params)
        self._track_instance(body["id"])
        self._wait_job(body["jobid"], f"deployment of {self.name}")
        self._wait_for_state(VMState.RUNNING)

    def _transition(self, command, target):
        body = self._call(command, command, self.instance_id, id=self.instance_id)
        self._wait_job(body["jobid"], f"{command} {self.instance_id}")
        self._wait_for_state(target)

    def _start(self):
        self._transition("startVirtualMachine", VMState.RUNNING)

    def _halt(self):
        self._transition("stopVirtualMachine", VMState.HALTED)

    def _teardown_instance(self, resource):
        try:
            body = self.client.call("destroyVirtualMachine", id=resource.id, expunge="true")
        except CloudStackAPIError as e:
            if not e.not_found:
                raise BackendError("destroy virtual machine", resource.id, str(e)) from e
            logger.warning(f"VM {resource.id} already gone.")
            return
        except httpx.HTTPError as e:
            raise BackendError("destroy virtual machine", resource.id, str(e)) from e
        self._wait_job(body["jobid"], f"destruction of {resource.id}")
        poll_until(
            lambda: self._vm_state(resource.id),
            lambda s: s is None or s in GONE_STATES,
            is_fatal=lambda s: s == "Error",
            interval=self.timeouts.interval,
            timeout=self.timeouts.action,
            description=f"VM {resource.id} to be destroyed",
        )
