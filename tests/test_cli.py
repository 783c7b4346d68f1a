"""CLI tests: argument wiring via subprocess, lifecycle handlers in-process with a mock VM."""

import argparse
import json
import logging
import os
from unittest.mock import patch

import pytest

from vmforge.commands import vm as vm_commands
from vmforge.provisioning.errors import BackendError
from vmforge.provisioning.mock import MockVM
from vmforge.redact import redact_secrets


# ── Subprocess ────────────────────────────────────────────────────


def test_help(run_cli):
    rc, stdout, _ = run_cli("--help")
    assert rc == 0
    assert "vm" in stdout and "backends" in stdout


def test_vm_help_lists_actions(run_cli):
    rc, stdout, _ = run_cli("vm", "--help")
    assert rc == 0
    for action in ("provision", "start", "halt", "suspend", "resume", "state", "ips", "destroy", "ssh-check"):
        assert action in stdout


def test_backends_lists_every_backend(run_cli):
    rc, stdout, _ = run_cli("backends")
    assert rc == 0
    for name in ("aws", "azure", "cloudrift", "exoscale", "gcp", "mock", "openstack", "vmrun"):
        assert name in stdout


def test_missing_machine_file(run_cli, tmp_path):
    rc, stdout, _ = run_cli("vm", "provision", str(tmp_path / "missing.yaml"))
    assert rc == 1
    assert "not found" in stdout


def test_state_without_state_file(run_cli, write_machine):
    path = write_machine({"backend": "mock", "name": "m"})

    rc, stdout, _ = run_cli("vm", "state", path)

    assert rc == 1
    assert "provision the VM first" in stdout


def test_corrupt_state_file_reports_error(run_cli, write_machine):
    path = write_machine({"backend": "mock", "name": "m"})
    with open(path.replace(".yaml", ".state.json"), "w") as f:
        f.write("{not json")

    rc, stdout, stderr = run_cli("vm", "state", path)

    assert rc == 1
    assert "is corrupt" in stdout
    assert "Traceback" not in stderr


def test_mock_backend_without_callables_is_unsupported(run_cli, write_machine):
    path = write_machine({"backend": "mock", "name": "m"})

    rc, stdout, _ = run_cli("vm", "provision", path)

    assert rc == 1
    assert "provision is not supported by the mock backend" in stdout
    assert not os.path.exists(path.replace(".yaml", ".state.json"))


def test_missing_image_reference_fails_fast(run_cli, write_machine):
    path = write_machine({"backend": "openstack", "spec": {"flavor": "m1.small"}})

    rc, stdout, _ = run_cli("vm", "provision", path)

    assert rc == 1
    assert "image reference required" in stdout


# ── In-process handlers ───────────────────────────────────────────


class FakeCloud:
    """Backing store for mock VM callables."""

    def __init__(self):
        self.state = "running"
        self.deleted = False
        self.fail_destroy = False

    def provision(self, vm):
        return "mock-42"

    def halt(self, vm):
        self.state = "halted"

    def destroy(self, vm):
        if self.fail_destroy:
            raise BackendError("delete", vm.instance_id, "HTTP 500")
        self.deleted = True


@pytest.fixture
def cloud():
    return FakeCloud()


@pytest.fixture
def patched_build(cloud):
    def _build(config):
        return MockVM(
            name=config.get("name", ""),
            provision_fn=cloud.provision,
            halt_fn=cloud.halt,
            state_fn=lambda vm: cloud.state,
            ips_fn=lambda vm: ["198.51.100.7", "10.0.0.7"],
            destroy_fn=cloud.destroy,
        )

    with patch.object(vm_commands, "build_vm", side_effect=_build) as build:
        yield build


def _args(machine, state_file=None):
    return argparse.Namespace(machine=machine, state_file=state_file)


def test_provision_writes_state_and_destroy_removes_it(patched_build, cloud, write_machine, caplog):
    caplog.set_level(logging.INFO)
    machine = write_machine({"backend": "mock", "name": "web-1"})
    state_path = machine.replace(".yaml", ".state.json")

    vm_commands.handle_provision(_args(machine))

    with open(state_path) as f:
        state = json.load(f)
    assert state["instance_id"] == "mock-42"
    assert state["name"] == "web-1"
    assert "198.51.100.7" in caplog.text

    vm_commands.handle_destroy(_args(machine))

    assert cloud.deleted
    assert not os.path.exists(state_path)


def test_provision_refuses_existing_state(patched_build, write_machine, tmp_path):
    machine = write_machine({"backend": "mock"})
    state_file = tmp_path / "custom.json"
    state_file.write_text("{}")

    with pytest.raises(SystemExit) as exc_info:
        vm_commands.handle_provision(_args(machine, str(state_file)))
    assert exc_info.value.code == 1
    patched_build.assert_not_called()


def test_halt_reports_new_state(patched_build, write_machine, caplog):
    caplog.set_level(logging.INFO)
    machine = write_machine({"backend": "mock", "name": "web-1"})
    vm_commands.handle_provision(_args(machine))

    vm_commands.handle_halt(_args(machine))

    assert "VM 'web-1' is halted." in caplog.text


def test_unsupported_transition_exits_1(patched_build, write_machine, caplog):
    machine = write_machine({"backend": "mock"})
    vm_commands.handle_provision(_args(machine))

    with pytest.raises(SystemExit):
        vm_commands.handle_suspend(_args(machine))
    assert "suspend is not supported" in caplog.text


def test_failed_destroy_keeps_state_for_resume(patched_build, cloud, write_machine):
    machine = write_machine({"backend": "mock"})
    state_path = machine.replace(".yaml", ".state.json")
    vm_commands.handle_provision(_args(machine))
    cloud.fail_destroy = True

    with pytest.raises(SystemExit):
        vm_commands.handle_destroy(_args(machine))

    with open(state_path) as f:
        assert json.load(f)["instance_id"] == "mock-42"

    cloud.fail_destroy = False
    vm_commands.handle_destroy(_args(machine))
    assert not os.path.exists(state_path)


def test_spec_secrets_registered_for_redaction(patched_build, write_machine):
    machine = write_machine({"backend": "mock", "spec": {"api_key": "very-secret-key-1"}})
    vm_commands.handle_provision(_args(machine))

    assert redact_secrets("key=very-secret-key-1") == "key=***"
