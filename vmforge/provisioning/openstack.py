"""OpenStack backend: Nova servers with Neutron floating IPs and Cinder volumes.

Talks to the OpenStack REST APIs directly with httpx after a Keystone v3
password login. The authenticated session is shared process-wide.
"""

import base64
import logging
import os
from dataclasses import dataclass, field

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
from vmforge.provisioning.wait import poll_until, state_in

logger = logging.getLogger(__name__)

_STATES = {
    "ACTIVE": VMState.RUNNING,
    "BUILD": VMState.STARTING,
    "REBUILD": VMState.STARTING,
    "SHUTOFF": VMState.HALTED,
    "STOPPED": VMState.HALTED,
    "SUSPENDED": VMState.SUSPENDED,
    "PAUSED": VMState.SUSPENDED,
    "SHELVED": VMState.SUSPENDED,
    "SHELVED_OFFLOADED": VMState.SUSPENDED,
    "REBOOT": VMState.PENDING,
    "HARD_REBOOT": VMState.PENDING,
    "RESIZE": VMState.PENDING,
    "VERIFY_RESIZE": VMState.PENDING,
    "MIGRATING": VMState.PENDING,
    "DELETED": VMState.PENDING,
    "ERROR": VMState.ERROR,
}

# Cinder volume statuses that end a volume poll with failure.
VOLUME_FAILED = {"error", "error_deleting", "error_extending", "error_restoring"}

_sessions = ClientCache("openstack")


def translate_state(status):
    """Map a Nova server status to a canonical VMState."""
    if not isinstance(status, str):
        return VMState.UNKNOWN
    return _STATES.get(status.strip().upper(), VMState.UNKNOWN)


@dataclass
class OpenStackSpec:
    auth_url: str = ""
    username: str = ""
    password: str = ""
    project_name: str = ""
    domain_name: str = ""
    region: str = ""
    image_name: str = ""
    image_id: str = ""
    image_path: str = ""
    image_format: str = "qcow2"
    flavor: str = ""
    network: str = ""
    floating_ip_pool: str = ""
    security_groups: list[str] = field(default_factory=list)
    key_name: str = ""
    user_data: str = ""
    volume_size: int = 0
    volume_type: str = ""
    volume_device: str = ""


def resolve_auth(spec):
    """Fill blank credential fields from the standard OS_* environment variables."""
    env = os.environ
    return {
        "auth_url": spec.auth_url or env.get("OS_AUTH_URL", ""),
        "username": spec.username or env.get("OS_USERNAME", ""),
        "password": spec.password or env.get("OS_PASSWORD", ""),
        "project_name": spec.project_name or env.get("OS_PROJECT_NAME") or env.get("OS_TENANT_NAME", ""),
        "domain_name": spec.domain_name or env.get("OS_USER_DOMAIN_NAME", "Default"),
        "region": spec.region or env.get("OS_REGION_NAME", ""),
    }


# ── Keystone session ───────────────────────────────────────────────


class KeystoneSession:
    """Token-authenticated HTTP session with service-catalog endpoint lookup."""

    def __init__(self, auth, transport=None, timeout=60):
        self.auth = auth
        self._client = httpx.Client(transport=transport, timeout=timeout)
        self.token = ""
        self.catalog = []

    def authenticate(self):
        auth = self.auth
        body = {
            "auth": {
                "identity": {
                    "methods": ["password"],
                    "password": {
                        "user": {
                            "name": auth["username"],
                            "domain": {"name": auth["domain_name"]},
                            "password": auth["password"],
                        }
                    },
                },
                "scope": {
                    "project": {
                        "name": auth["project_name"],
                        "domain": {"name": auth["domain_name"]},
                    }
                },
            }
        }
        url = f"{auth['auth_url'].rstrip('/')}/auth/tokens"
        resp = self._client.post(url, json=body)
        resp.raise_for_status()
        self.token = resp.headers.get("X-Subject-Token", "")
        self.catalog = resp.json().get("token", {}).get("catalog", [])
        logger.debug(f"Authenticated to Keystone at {auth['auth_url']}")

    def endpoint(self, service_type):
        if not self.token:
            self.authenticate()
        region = self.auth.get("region")
        for service in self.catalog:
            if service.get("type") != service_type:
                continue
            for ep in service.get("endpoints", []):
                if ep.get("interface") != "public":
                    continue
                if region and region not in (ep.get("region"), ep.get("region_id")):
                    continue
                return ep["url"].rstrip("/")
        raise BackendError("endpoint lookup", service_type, "service not in catalog")

    def request(self, service_type, method, path, json=None, content=None, headers=None, params=None, allow_missing=False):
        """Send a request to *service_type*; returns parsed JSON, ``{}`` for empty bodies.

        A 404 returns None when *allow_missing* is set. An expired token is
        refreshed once.
        """
        url = f"{self.endpoint(service_type)}{path}"
        for attempt in (1, 2):
            req_headers = {"X-Auth-Token": self.token, **(headers or {})}
            resp = self._client.request(method, url, json=json, content=content, headers=req_headers, params=params)
            if resp.status_code == 401 and attempt == 1:
                logger.debug("Keystone token rejected, re-authenticating")
                self.authenticate()
                continue
            break
        if resp.status_code == 404 and allow_missing:
            return None
        resp.raise_for_status()
        if not resp.content:
            return {}
        return resp.json()

    def close(self):
        self._client.close()


def _open_session(auth):
    session = KeystoneSession(auth)
    session.authenticate()
    return session


def reset_sessions():
    """Forget cached Keystone sessions (test isolation)."""
    _sessions.reset()


# ── Adapter ────────────────────────────────────────────────────────


class OpenStackVM(VirtualMachine):
    backend = "openstack"
    default_timeouts = Timeouts(action=900, resource=900, ssh=900, interval=1)
    supported_operations = frozenset({"start", "halt"})

    def __init__(self, spec=None, session=None, **kwargs):
        super().__init__(spec=spec or OpenStackSpec(), **kwargs)
        self._injected_session = session

    @property
    def session(self):
        if self._injected_session is not None:
            return self._injected_session
        auth = resolve_auth(self.spec)
        key = (auth["auth_url"], auth["username"], auth["project_name"], auth["domain_name"], auth["region"])
        return _sessions.get(key, lambda: _open_session(auth))

    def _call(self, step, service, method, path, resource_id="", **kwargs):
        with wrap_backend_errors(step, resource_id, exc_types=(httpx.HTTPError,)):
            return self.session.request(service, method, path, **kwargs)

    def validate(self):
        spec = self.spec
        if not spec.image_name and not spec.image_id:
            raise PreconditionError("image reference required")
        if not spec.flavor:
            raise PreconditionError("flavor required")
        if not spec.network:
            raise PreconditionError("network reference required")
        if not spec.floating_ip_pool:
            raise PreconditionError("floating IP pool required")
        if self._injected_session is None:
            auth = resolve_auth(spec)
            missing = [k for k in ("auth_url", "username", "password", "project_name") if not auth[k]]
            if missing:
                raise PreconditionError(f"OpenStack credentials missing: {', '.join(missing)}")

    # ── Resolution ─────────────────────────────────────────────────

    @staticmethod
    def _single(kind, name, matches):
        if not matches:
            raise NotFoundError(kind, name)
        if len(matches) > 1:
            raise AmbiguousError(kind, name, len(matches))
        return matches[0]["id"]

    def _resolve_image(self):
        spec = self.spec
        if spec.image_id:
            return spec.image_id
        result = self._call("image lookup", "image", "GET", "/v2/images", params={"name": spec.image_name})
        images = result.get("images", [])
        if not images and spec.image_path:
            return self._upload_image()
        return self._single("image", spec.image_name, images)

    def _upload_image(self):
        spec = self.spec
        logger.info(f"Image '{spec.image_name}' not found; uploading {spec.image_path}...")
        body = {
            "name": spec.image_name,
            "disk_format": spec.image_format,
            "container_format": "bare",
            "visibility": "private",
        }
        image = self._call("image create", "image", "POST", "/v2/images", json=body)
        image_id = image["id"]
        with open(os.path.expanduser(spec.image_path), "rb") as f:
            self._call(
                "image upload", "image", "PUT", f"/v2/images/{image_id}/file", image_id,
                content=f, headers={"Content-Type": "application/octet-stream"},
            )

        def _probe():
            info = self._call("image status", "image", "GET", f"/v2/images/{image_id}", image_id, allow_missing=True)
            return info.get("status") if info else None

        poll_until(
            _probe,
            state_in("active"),
            is_fatal=state_in("killed", "deleted", None),
            interval=self.timeouts.interval,
            timeout=self.timeouts.resource,
            description=f"image {image_id} to become active",
        )
        logger.info(f"Image uploaded (id={image_id}).")
        return image_id

    def _resolve_flavor(self):
        name = self.spec.flavor
        result = self._call("flavor lookup", "compute", "GET", "/flavors/detail")
        flavors = result.get("flavors", [])
        return self._single("flavor", name, [f for f in flavors if name in (f.get("name"), f.get("id"))])

    def _resolve_network(self, name):
        result = self._call("network lookup", "network", "GET", "/v2.0/networks", params={"name": name})
        return self._single("network", name, result.get("networks", []))

    # ── Server ─────────────────────────────────────────────────────

    def _server(self):
        result = self._call(
            "server lookup", "compute", "GET", f"/servers/{self.instance_id}", self.instance_id, allow_missing=True
        )
        return result.get("server") if result else None

    def _server_status(self):
        server = self._server()
        return server.get("status") if server else None

    def _get_state(self):
        status = self._server_status()
        if status is None:
            logger.warning(f"Server {self.instance_id} not found.")
        return translate_state(status)

    def _get_ips(self):
        server = self._server()
        if server is None:
            return ["", ""]
        public = private = ""
        for addresses in server.get("addresses", {}).values():
            for addr in addresses:
                if addr.get("OS-EXT-IPS:type") == "floating":
                    public = public or addr.get("addr", "")
                else:
                    private = private or addr.get("addr", "")
        if not public:
            fip = self._resource("floating_ip")
            public = fip.attrs.get("address", "") if fip else ""
        return [public, private]

    def _provision(self):
        spec = self.spec
        image_id = self._resolve_image()
        flavor_id = self._resolve_flavor()
        network_id = self._resolve_network(spec.network)
        pool_id = self._resolve_network(spec.floating_ip_pool)

        server = {
            "name": self.name,
            "imageRef": image_id,
            "flavorRef": flavor_id,
            "networks": [{"uuid": network_id}],
        }
        if spec.key_name:
            server["key_name"] = spec.key_name
        if spec.security_groups:
            server["security_groups"] = [{"name": g} for g in spec.security_groups]
        if spec.user_data:
            server["user_data"] = base64.b64encode(spec.user_data.encode()).decode()

        result = self._call("server create", "compute", "POST", "/servers", json={"server": server})
        self._track_instance(result["server"]["id"])
        logger.info(f"Server created (id={self.instance_id}). Waiting for ACTIVE (timeout: {self.timeouts.action}s)...")
        self._wait_for_state(VMState.RUNNING)

        self._attach_floating_ip(pool_id)
        if spec.volume_size:
            self._attach_volume()

    def _attach_floating_ip(self, pool_id):
        body = {"floatingip": {"floating_network_id": pool_id}}
        fip = self._call("floating IP create", "network", "POST", "/v2.0/floatingips", json=body)["floatingip"]
        address = fip["floating_ip_address"]
        self._track("floating_ip", fip["id"], address=address)
        logger.info(f"Floating IP {address} allocated.")

        ports = self._call(
            "port lookup", "network", "GET", "/v2.0/ports", self.instance_id, params={"device_id": self.instance_id}
        ).get("ports", [])
        if not ports:
            raise BackendError("port lookup", self.instance_id, "server has no network port")
        self._call(
            "floating IP associate", "network", "PUT", f"/v2.0/floatingips/{fip['id']}", fip["id"],
            json={"floatingip": {"port_id": ports[0]["id"]}},
        )
        poll_until(
            lambda: self._server_has_address(address),
            bool,
            interval=self.timeouts.interval,
            timeout=self.timeouts.resource,
            description=f"floating IP {address} on server {self.instance_id}",
        )

    def _server_has_address(self, address):
        server = self._server() or {}
        return any(a.get("addr") == address for addrs in server.get("addresses", {}).values() for a in addrs)

    def _volume_status(self, volume_id):
        result = self._call("volume lookup", "volumev3", "GET", f"/volumes/{volume_id}", volume_id, allow_missing=True)
        return result["volume"].get("status") if result else None

    def _wait_volume(self, volume_id, *targets, description):
        return poll_until(
            lambda: self._volume_status(volume_id),
            state_in(*targets),
            is_fatal=lambda s: s in VOLUME_FAILED,
            interval=self.timeouts.interval,
            timeout=self.timeouts.resource,
            description=description,
        )

    def _attach_volume(self):
        spec = self.spec
        body = {"volume": {"size": spec.volume_size, "name": f"{self.name}-volume"}}
        if spec.volume_type:
            body["volume"]["volume_type"] = spec.volume_type
        volume_id = self._call("volume create", "volumev3", "POST", "/volumes", json=body)["volume"]["id"]
        self._track("volume", volume_id)
        self._wait_volume(volume_id, "available", description=f"volume {volume_id} to become available")

        attachment = {"volumeId": volume_id}
        if spec.volume_device:
            attachment["device"] = spec.volume_device
        self._call(
            "volume attach", "compute", "POST", f"/servers/{self.instance_id}/os-volume_attachments", volume_id,
            json={"volumeAttachment": attachment},
        )
        self._wait_volume(volume_id, "in-use", description=f"volume {volume_id} to attach")
        logger.info(f"Volume {volume_id} ({spec.volume_size} GB) attached.")

    # ── Transitions ────────────────────────────────────────────────

    def _server_action(self, action):
        self._call(
            f"server {action}", "compute", "POST", f"/servers/{self.instance_id}/action", self.instance_id,
            json={action: None},
        )

    def _halt(self):
        state = self._get_state()
        if state != VMState.RUNNING:
            raise PreconditionError(f"Cannot halt VM '{self.name}' in state '{state}'")
        self._server_action("os-stop")
        self._wait_for_state(VMState.HALTED)

    def _start(self):
        state = self._get_state()
        if state != VMState.HALTED:
            raise PreconditionError(f"Cannot start VM '{self.name}' in state '{state}'")
        self._server_action("os-start")
        self._wait_for_state(VMState.RUNNING)

    # ── Teardown ───────────────────────────────────────────────────

    def _teardown_floating_ip(self, resource):
        path = f"/v2.0/floatingips/{resource.id}"
        if self._call("floating IP disassociate", "network", "PUT", path, resource.id,
                      json={"floatingip": {"port_id": None}}, allow_missing=True) is None:
            logger.warning(f"Floating IP {resource.id} already gone.")
            return
        self._call("floating IP delete", "network", "DELETE", path, resource.id, allow_missing=True)
        poll_until(
            lambda: self._call("floating IP lookup", "network", "GET", path, resource.id, allow_missing=True),
            lambda fip: fip is None,
            interval=self.timeouts.interval,
            timeout=self.timeouts.resource,
            description=f"floating IP {resource.id} to be released",
        )

    def _teardown_volume(self, resource):
        volume_id = resource.id
        if self._volume_status(volume_id) is None:
            logger.warning(f"Volume {volume_id} already gone.")
            return
        if self.instance_id:
            self._call(
                "volume detach", "compute", "DELETE",
                f"/servers/{self.instance_id}/os-volume_attachments/{volume_id}", volume_id, allow_missing=True,
            )
        poll_until(
            lambda: self._volume_status(volume_id),
            state_in("available", "error", None),
            is_fatal=state_in("error_detaching"),
            interval=self.timeouts.interval,
            timeout=self.timeouts.resource,
            description=f"volume {volume_id} to detach",
        )
        self._call("volume delete", "volumev3", "DELETE", f"/volumes/{volume_id}", volume_id, allow_missing=True)
        poll_until(
            lambda: self._volume_status(volume_id),
            lambda s: s is None,
            is_fatal=state_in("error_deleting"),
            interval=self.timeouts.interval,
            timeout=self.timeouts.resource,
            description=f"volume {volume_id} to be deleted",
        )

    def _teardown_instance(self, resource):
        self._call("server delete", "compute", "DELETE", f"/servers/{resource.id}", resource.id, allow_missing=True)
        poll_until(
            self._server_status,
            lambda s: s is None,
            is_fatal=state_in("ERROR"),
            interval=self.timeouts.interval,
            timeout=self.timeouts.action,
            description=f"server {resource.id} to be deleted",
        )
