"""State translation: every backend maps any input onto the canonical state set."""

import pytest

from vmforge.provisioning import aws, azure, cloudrift, exoscale, gcp, mock, openstack, vmrun
from vmforge.provisioning.types import VMState

TRANSLATORS = {
    "aws": aws.translate_state,
    "azure": azure.translate_state,
    "cloudrift": cloudrift.translate_state,
    "exoscale": exoscale.translate_state,
    "gcp": gcp.translate_state,
    "mock": mock.translate_state,
    "openstack": openstack.translate_state,
    "vmrun": vmrun.translate_state,
}

ODD_INPUTS = [None, "", "   ", "SOMETHING_NEW", "vm exploding", "42", 42, b"ACTIVE", ["running"], "ÄCTIVE"]


# ── Totality ──────────────────────────────────────────────────────


@pytest.mark.parametrize("backend", sorted(TRANSLATORS))
@pytest.mark.parametrize("raw", ODD_INPUTS)
def test_translator_is_total(backend, raw):
    state = TRANSLATORS[backend](raw)
    assert isinstance(state, VMState)


@pytest.mark.parametrize("backend", sorted(TRANSLATORS))
def test_unrecognized_token_is_unknown(backend):
    assert TRANSLATORS[backend]("definitely-not-a-status") == VMState.UNKNOWN


def test_canonical_tokens_are_literal():
    assert [s.value for s in VMState] == [
        "starting", "running", "halted", "suspended", "pending", "error", "unknown",
    ]
    assert str(VMState.RUNNING) == "running"


# ── Backend vocabularies ──────────────────────────────────────────


@pytest.mark.parametrize(
    "translate, raw, expected",
    [
        (openstack.translate_state, "ACTIVE", VMState.RUNNING),
        (openstack.translate_state, "BUILD", VMState.STARTING),
        (openstack.translate_state, "SHUTOFF", VMState.HALTED),
        (openstack.translate_state, "shutoff", VMState.HALTED),
        (openstack.translate_state, "SUSPENDED", VMState.SUSPENDED),
        (openstack.translate_state, "ERROR", VMState.ERROR),
        (aws.translate_state, "pending", VMState.STARTING),
        (aws.translate_state, "stopping", VMState.PENDING),
        (aws.translate_state, "stopped", VMState.HALTED),
        (aws.translate_state, "terminated", VMState.ERROR),
        (azure.translate_state, "VM running", VMState.RUNNING),
        (azure.translate_state, "VM stopped", VMState.HALTED),
        (azure.translate_state, "VM deallocated", VMState.HALTED),
        (azure.translate_state, "VM deploying", VMState.STARTING),
        (azure.translate_state, "VM deleting", VMState.PENDING),
        (azure.translate_state, "Provisioning failed", VMState.ERROR),
        (gcp.translate_state, "STAGING", VMState.STARTING),
        (gcp.translate_state, "RUNNING", VMState.RUNNING),
        (gcp.translate_state, "TERMINATED", VMState.HALTED),
        (gcp.translate_state, "SUSPENDED", VMState.SUSPENDED),
        (exoscale.translate_state, "Starting", VMState.STARTING),
        (exoscale.translate_state, "Running", VMState.RUNNING),
        (exoscale.translate_state, "Stopping", VMState.PENDING),
        (exoscale.translate_state, "Stopped", VMState.HALTED),
        (exoscale.translate_state, "Error", VMState.ERROR),
        (vmrun.translate_state, "running", VMState.RUNNING),
        (vmrun.translate_state, "suspended", VMState.SUSPENDED),
        (vmrun.translate_state, "halted", VMState.HALTED),
        (cloudrift.translate_state, "Active", VMState.RUNNING),
        (cloudrift.translate_state, "Inactive", VMState.HALTED),
        (cloudrift.translate_state, "Initializing", VMState.STARTING),
        (mock.translate_state, "suspended", VMState.SUSPENDED),
    ],
)
def test_known_statuses(translate, raw, expected):
    assert translate(raw) == expected
