"""Mock backend: every operation delegates to an optional caller-supplied callable.

Useful for exercising code that drives a VirtualMachine without any real
backend. Operations whose callable is unset raise UnsupportedOperationError.
"""

import uuid

from vmforge.provisioning.base import VirtualMachine
from vmforge.provisioning.errors import UnsupportedOperationError
from vmforge.provisioning.types import Timeouts, VMState


def translate_state(state):
    """Accept canonical tokens as-is; anything else is unknown."""
    try:
        return VMState(state)
    except (ValueError, TypeError):
        return VMState.UNKNOWN


class MockVM(VirtualMachine):
    backend = "mock"
    default_timeouts = Timeouts(action=5, resource=5, ssh=5, interval=0)

    def __init__(
        self,
        spec=None,
        provision_fn=None,
        start_fn=None,
        halt_fn=None,
        suspend_fn=None,
        resume_fn=None,
        state_fn=None,
        ips_fn=None,
        destroy_fn=None,
        **kwargs,
    ):
        super().__init__(spec=spec or {}, **kwargs)
        self.provision_fn = provision_fn
        self.start_fn = start_fn
        self.halt_fn = halt_fn
        self.suspend_fn = suspend_fn
        self.resume_fn = resume_fn
        self.state_fn = state_fn
        self.ips_fn = ips_fn
        self.destroy_fn = destroy_fn

    def _invoke(self, operation, *args):
        fn = getattr(self, f"{operation}_fn")
        if fn is None:
            raise UnsupportedOperationError(operation, self.backend)
        return fn(*args)

    def _provision(self):
        instance_id = self._invoke("provision", self)
        self._track_instance(instance_id or f"mock-{uuid.uuid4().hex[:8]}")

    def _start(self):
        self._invoke("start", self)

    def _halt(self):
        self._invoke("halt", self)

    def _suspend(self):
        self._invoke("suspend", self)

    def _resume(self):
        self._invoke("resume", self)

    def _get_state(self):
        return translate_state(self._invoke("state", self))

    def _get_ips(self):
        return self._invoke("ips", self)

    def _teardown_instance(self, resource):
        self._invoke("destroy", self)
