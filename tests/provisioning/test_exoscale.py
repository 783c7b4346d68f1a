"""Unit tests for the Exoscale (CloudStack) backend."""

import httpx
import pytest

from vmforge.provisioning import exoscale
from vmforge.provisioning.errors import (
    BackendError,
    NotFoundError,
    PreconditionError,
    TeardownError,
    TerminalStateError,
    UnsupportedOperationError,
)
from vmforge.provisioning.exoscale import (
    CloudStackAPIError,
    CloudStackClient,
    ExoscaleSpec,
    ExoscaleVM,
    sign,
)
from vmforge.provisioning.types import VMState


class FakeCloudStack:
    """Scripted CloudStack API: listVirtualMachines walks through *states*."""

    def __init__(self, states=("Running",), nics=None, job_status=exoscale.JOB_SUCCEEDED):
        self.states = list(states)
        self.nics = nics if nics is not None else [{"ipaddress": "10.0.0.5"}]
        self.job_status = job_status
        self.calls = []
        self.exists = True
        self.destroy_error = None

    def count(self, command):
        return sum(1 for c, _ in self.calls if c == command)

    def _state(self):
        if len(self.states) > 1:
            return self.states.pop(0)
        return self.states[0]

    def call(self, command, **params):
        self.calls.append((command, params))
        if command == "listZones":
            return {"zone": [{"id": "z-1", "name": "ch-gva-2"}]}
        if command == "listTemplates":
            return {"template": [{"id": "t-1", "name": "Linux Ubuntu 22.04 LTS 64-bit"}]}
        if command == "listServiceOfferings":
            return {"serviceoffering": [{"id": "so-1", "name": "Small"}]}
        if command == "listSecurityGroups":
            return {"securitygroup": [{"id": "sg-1", "name": params["securitygroupname"]}]}
        if command == "deployVirtualMachine":
            return {"id": "vm-1", "jobid": "job-deploy"}
        if command in ("startVirtualMachine", "stopVirtualMachine"):
            return {"jobid": f"job-{command}"}
        if command == "queryAsyncJobResult":
            return {"jobstatus": self.job_status, "jobresult": {"errortext": "boom"}}
        if command == "listVirtualMachines":
            if not self.exists:
                raise CloudStackAPIError(command, 431, exoscale.ERROR_NOT_FOUND, "not found")
            return {"virtualmachine": [{"id": "vm-1", "state": self._state(), "nic": self.nics}]}
        if command == "destroyVirtualMachine":
            if self.destroy_error:
                raise self.destroy_error
            if not self.exists:
                raise CloudStackAPIError(command, 431, exoscale.ERROR_NOT_FOUND, "not found")
            self.exists = False
            return {"jobid": "job-destroy"}
        raise AssertionError(f"unexpected command {command}")


def _spec(**overrides):
    values = {
        "zone": "ch-gva-2",
        "template": "Linux Ubuntu 22.04 LTS 64-bit",
        "service_offering": "Small",
        "keypair": "deploy-key",
    }
    values.update(overrides)
    return ExoscaleSpec(**values)


def _vm(fake, **overrides):
    return ExoscaleVM(spec=_spec(**overrides), client=fake, name="exo-vm")


# ── Signing ───────────────────────────────────────────────────────


def test_sign_sorts_parameters_case_insensitively():
    query, _ = sign({"zoneid": "z", "Command": "listZones", "apikey": "k"}, "secret")
    assert query == "apikey=k&Command=listZones&zoneid=z"


def test_sign_is_deterministic_and_key_dependent():
    params = {"command": "listZones", "apikey": "k", "name": "a b"}

    assert sign(params, "s1") == sign(dict(params), "s1")
    assert sign(params, "s1")[1] != sign(params, "s2")[1]
    assert "name=a%20b" in sign(params, "s1")[0]


def test_client_unwraps_response_and_raises_api_errors():
    def handler(request):
        assert request.url.params["signature"]
        if request.url.params["command"] == "listZones":
            return httpx.Response(200, json={"listzonesresponse": {"zone": [{"id": "z-1"}]}})
        return httpx.Response(431, json={"listvirtualmachinesresponse": {"errorcode": 431, "errortext": "gone"}})

    client = CloudStackClient("key", "secret", "https://api.test/compute", transport=httpx.MockTransport(handler))

    assert client.call("listZones") == {"zone": [{"id": "z-1"}]}
    with pytest.raises(CloudStackAPIError) as exc_info:
        client.call("listVirtualMachines", id="vm-1")
    assert exc_info.value.not_found


def test_client_non_json_error_body_is_api_error():
    def handler(request):
        return httpx.Response(502, text="<html>Bad Gateway</html>")

    client = CloudStackClient("key", "secret", "https://api.test/compute", transport=httpx.MockTransport(handler))

    with pytest.raises(CloudStackAPIError, match="Bad Gateway") as exc_info:
        client.call("listZones")
    assert exc_info.value.status_code == 502
    assert not exc_info.value.not_found


def test_gateway_error_during_provision_is_backend_error():
    def handler(request):
        return httpx.Response(502, text="<html>Bad Gateway</html>")

    client = CloudStackClient("key", "secret", "https://api.test/compute", transport=httpx.MockTransport(handler))
    vm = ExoscaleVM(spec=_spec(), client=client)

    with pytest.raises(BackendError, match="HTTP 502"):
        vm.provision()
    assert vm.instance_id == ""


def test_clients_are_shared_per_credentials_and_closed_on_reset():
    exoscale.reset_clients()
    spec = _spec(api_key="EXOkey", api_secret="EXOsecret")

    try:
        a = ExoscaleVM(spec=spec).client
        b = ExoscaleVM(spec=spec).client
        other = ExoscaleVM(spec=_spec(api_key="EXOother", api_secret="EXOsecret")).client
    finally:
        exoscale.reset_clients()

    assert a is b
    assert other is not a
    assert a._client.is_closed


# ── Validation ────────────────────────────────────────────────────


def test_missing_template_fails_first():
    fake = FakeCloudStack()

    with pytest.raises(PreconditionError, match="image reference required"):
        ExoscaleVM(spec=ExoscaleSpec(), client=fake).provision()
    assert fake.calls == []


def test_missing_api_secret(monkeypatch):
    monkeypatch.delenv("EXOSCALE_API_SECRET", raising=False)

    with pytest.raises(PreconditionError, match="API secret"):
        ExoscaleVM(spec=_spec(api_key="EXOkey")).validate()


# ── Provision ─────────────────────────────────────────────────────


def test_provision_polls_until_running(fake_clock):
    fake = FakeCloudStack(states=["Starting", "Starting", "Running"])
    vm = _vm(fake, security_groups=["ssh"])

    vm.provision()

    assert fake.count("listVirtualMachines") == 3
    assert vm.instance_id == "vm-1"
    assert vm.get_ips() == ["", "10.0.0.5"]
    deploy = dict(fake.calls)["deployVirtualMachine"]
    assert deploy["templateid"] == "t-1"
    assert deploy["securitygroupids"] == "sg-1"


def test_public_address_goes_to_public_slot(fake_clock):
    fake = FakeCloudStack(nics=[{"ipaddress": "185.19.28.4"}])
    vm = _vm(fake)
    vm.provision()

    assert vm.get_ips() == ["185.19.28.4", ""]


def test_unknown_offering_stops_before_deploy():
    fake = FakeCloudStack()
    vm = _vm(fake, service_offering="Huge")

    with pytest.raises(NotFoundError, match="service offering 'Huge'"):
        vm.provision()
    assert fake.count("deployVirtualMachine") == 0


def test_failed_job_is_fatal(fake_clock):
    fake = FakeCloudStack(job_status=exoscale.JOB_FAILED)
    vm = _vm(fake)

    with pytest.raises(TerminalStateError):
        vm.provision()
    assert vm.instance_id == "vm-1"


# ── Transitions ───────────────────────────────────────────────────


def test_halt_waits_for_stopped(fake_clock):
    fake = FakeCloudStack()
    vm = _vm(fake)
    vm.provision()
    fake.calls.clear()
    fake.states = ["Running", "Stopping", "Stopped"]
    start = fake_clock.now

    vm.halt()

    assert fake.count("listVirtualMachines") == 3
    assert fake_clock.now - start >= 2 * vm.timeouts.interval
    assert vm.state == VMState.HALTED


def test_start_after_halt(fake_clock):
    fake = FakeCloudStack(states=["Stopped"])
    vm = _vm(fake).restore({"backend": "exoscale", "name": "exo-vm", "instance_id": "vm-1",
                            "resources": [{"kind": "instance", "id": "vm-1"}]})
    fake.states = ["Starting", "Running"]

    vm.start()

    assert fake.count("startVirtualMachine") == 1
    assert vm.get_state() == VMState.RUNNING


def test_suspend_unsupported():
    with pytest.raises(UnsupportedOperationError):
        _vm(FakeCloudStack()).suspend()


# ── Destroy ───────────────────────────────────────────────────────


def test_destroy_expunges_and_waits(fake_clock):
    fake = FakeCloudStack()
    vm = _vm(fake)
    vm.provision()

    vm.destroy()

    assert dict(fake.calls)["destroyVirtualMachine"] == {"id": "vm-1", "expunge": "true"}
    assert vm.instance_id == ""


def test_destroy_when_already_gone(fake_clock):
    fake = FakeCloudStack()
    vm = _vm(fake)
    vm.provision()
    fake.exists = False

    vm.destroy()

    assert vm.instance_id == ""


def test_destroy_api_error_keeps_instance(fake_clock):
    fake = FakeCloudStack()
    vm = _vm(fake)
    vm.provision()
    fake.destroy_error = CloudStackAPIError("destroyVirtualMachine", 530, 530, "internal")

    with pytest.raises(TeardownError, match="vm-1"):
        vm.destroy()
    assert vm.instance_id == "vm-1"
