"""Unit tests for the CloudRift backend using an httpx mock transport."""

import json

import httpx
import pytest

from vmforge.provisioning import cloudrift
from vmforge.provisioning.cloudrift import (
    CloudRiftSpec,
    CloudRiftVM,
    _extract_connection_info,
)
from vmforge.provisioning.errors import BackendError, PreconditionError, TerminalStateError, UnsupportedOperationError


class FakeCloudRift:
    """In-memory CloudRift API; ``statuses`` is walked by successive list calls."""

    def __init__(self, statuses=("Active",)):
        self.statuses = list(statuses)
        self.requests = []
        self.rented = False
        self.terminated = False

    def _status(self):
        if len(self.statuses) > 1:
            return self.statuses.pop(0)
        return self.statuses[0]

    def handler(self, request):
        body = json.loads(request.content)
        self.requests.append((request.url.path, body))
        assert request.headers["X-API-Key"] == "rift-key"
        if request.url.path == "/api/v1/instances/rent":
            self.rented = True
            return httpx.Response(200, json={"data": {"instance_ids": ["inst-1"]}})
        if request.url.path == "/api/v1/instances/terminate":
            self.terminated = True
            return httpx.Response(200, json={"data": {"terminated": ["inst-1"]}})
        if request.url.path == "/api/v1/instances/list":
            if not self.rented:
                return httpx.Response(200, json={"data": {"instances": []}})
            status = "Inactive" if self.terminated else self._status()
            instance = {
                "id": "inst-1",
                "status": status,
                "host_address": "211.21.50.85",
                "port_mappings": [[22, 2201], [8000, 8001]],
                "virtual_machines": [{"login_info": {"UsernameAndPassword": {"username": "riftuser"}}}],
            }
            return httpx.Response(200, json={"data": {"instances": [instance]}})
        return httpx.Response(404)

    def paths(self):
        return [p for p, _ in self.requests]


@pytest.fixture
def pubkey(tmp_path):
    key = tmp_path / "id.pub"
    key.write_text("ssh-ed25519 AAAA rift@test\n")
    return str(key)


def _vm(fake, pubkey, **overrides):
    values = {"instance_type": "rtx49-10c-kn.1", "ssh_public_key_path": pubkey, "api_key": "rift-key"}
    values.update(overrides)
    return CloudRiftVM(spec=CloudRiftSpec(**values), transport=httpx.MockTransport(fake.handler), name="rift-vm")


# ── Helpers ───────────────────────────────────────────────────────


def test_extract_connection_info():
    conn = _extract_connection_info(
        {
            "host_address": "1.2.3.4",
            "port_mappings": [[22, 2222]],
            "virtual_machines": [{"login_info": {"UsernameAndPassword": {"username": "alice"}}}],
        }
    )

    assert (conn.host, conn.username, conn.ssh_port) == ("1.2.3.4", "alice", 2222)
    assert conn.address == "alice@1.2.3.4"


def test_extract_connection_info_defaults():
    conn = _extract_connection_info({"host_address": "1.2.3.4"})
    assert (conn.username, conn.ssh_port, conn.port_mappings) == ("user", 22, [])


def test_http_client_shared_per_api_url_and_closed_on_reset(pubkey):
    cloudrift.reset_clients()

    try:
        a = CloudRiftVM(spec=CloudRiftSpec(ssh_public_key_path=pubkey)).client
        b = CloudRiftVM(spec=CloudRiftSpec(ssh_public_key_path=pubkey)).client
        other = CloudRiftVM(spec=CloudRiftSpec(api_url="https://rift.internal")).client
    finally:
        cloudrift.reset_clients()

    assert a is b
    assert other is not a
    assert a.is_closed


# ── Validation ────────────────────────────────────────────────────


def test_missing_api_key(monkeypatch, pubkey):
    monkeypatch.delenv("CLOUDRIFT_API_KEY", raising=False)
    fake = FakeCloudRift()

    with pytest.raises(PreconditionError, match="API key"):
        _vm(fake, pubkey, api_key="").provision()
    assert fake.requests == []


def test_transitions_unsupported(pubkey):
    vm = _vm(FakeCloudRift(), pubkey)
    for operation in ("start", "halt", "suspend", "resume"):
        with pytest.raises(UnsupportedOperationError):
            getattr(vm, operation)()


def test_missing_public_key_file_is_precondition_error(tmp_path):
    fake = FakeCloudRift()

    with pytest.raises(PreconditionError, match="SSH public key not found"):
        _vm(fake, str(tmp_path / "absent.pub")).provision()
    assert fake.requests == []


# ── Provision ─────────────────────────────────────────────────────


def test_provision_rents_and_waits_for_active(fake_clock, pubkey):
    fake = FakeCloudRift(statuses=["Initializing", "Active"])
    vm = _vm(fake, pubkey, ports=[22, 8000])

    vm.provision()

    assert vm.instance_id == "inst-1"
    rent = fake.requests[0][1]
    assert rent["version"] == "~upcoming"
    vm_config = rent["data"]["config"]["VirtualMachine"]
    assert vm_config["ssh_key"] == {"PublicKeys": ["ssh-ed25519 AAAA rift@test"]}
    assert rent["data"]["ports"] == ["22", "8000"]
    assert vm.resources[0].attrs["ssh_port"] == 2201
    assert vm.credentials.user == "riftuser"
    assert vm.get_ips() == ["211.21.50.85", ""]


def test_inactive_after_rent_is_fatal(fake_clock, pubkey):
    fake = FakeCloudRift(statuses=["Initializing", "Inactive"])
    vm = _vm(fake, pubkey)

    with pytest.raises(TerminalStateError):
        vm.provision()
    assert vm.instance_id == "inst-1"


def test_rent_http_error_is_backend_error(pubkey):
    def handler(request):
        return httpx.Response(503, json={"error": "no capacity"})

    vm = CloudRiftVM(
        spec=CloudRiftSpec(instance_type="x", ssh_public_key_path=pubkey, api_key="rift-key"),
        transport=httpx.MockTransport(handler),
    )

    with pytest.raises(BackendError, match="rent instance"):
        vm.provision()
    assert vm.instance_id == ""


def test_ssh_uses_mapped_port(fake_clock, pubkey):
    fake = FakeCloudRift()
    vm = _vm(fake, pubkey)
    vm.provision()

    assert vm._ssh_port(vm.ssh_options) == 2201


# ── Destroy ───────────────────────────────────────────────────────


def test_destroy_terminates_and_waits(fake_clock, pubkey):
    fake = FakeCloudRift()
    vm = _vm(fake, pubkey)
    vm.provision()

    vm.destroy()

    assert "/api/v1/instances/terminate" in fake.paths()
    terminate = next(b for p, b in fake.requests if p.endswith("/terminate"))
    assert terminate["data"] == {"selector": {"ById": ["inst-1"]}}
    assert vm.instance_id == ""
