"""Lifecycle contract every backend adapter implements.

Public methods on VirtualMachine do the backend-independent bookkeeping
(capability checks, "not provisioned" checks, the LIFO side-resource stack,
SSH hand-off) and delegate the backend work to underscore hooks.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import replace

from vmforge.provisioning.errors import (
    NoAddressError,
    NotProvisionedError,
    PreconditionError,
    TeardownError,
    UnsupportedOperationError,
    VMError,
)
from vmforge.provisioning.ssh import Credentials, SSHConnector, SSHOptions
from vmforge.provisioning.types import PRIVATE_IP, PUBLIC_IP, SideResource, Timeouts, VMState
from vmforge.provisioning.wait import poll_until

logger = logging.getLogger(__name__)

INSTANCE = "instance"
ALL_OPERATIONS = frozenset({"start", "halt", "suspend", "resume"})


def default_name():
    return f"vmforge-{uuid.uuid4().hex}"


class VirtualMachine(ABC):
    """One VM on one backend, driven by one caller at a time."""

    backend = "abstract"
    default_timeouts = Timeouts()
    supported_operations = ALL_OPERATIONS

    def __init__(self, spec=None, name="", timeouts=None, credentials=None, ssh_options=None, wait_ssh=False, connector=None):
        self.spec = spec
        self.name = name or default_name()
        self.instance_id = ""
        self.resources: list[SideResource] = []
        self.timeouts = timeouts or replace(self.default_timeouts)
        self.credentials = credentials or Credentials()
        self.ssh_options = ssh_options or SSHOptions()
        self.wait_ssh = wait_ssh
        self.connector = connector or SSHConnector()
        # Last observed values; never trusted across calls.
        self.state = VMState.UNKNOWN
        self.ips = ["", ""]
        self._destroyed = False

    # ── Hooks ──────────────────────────────────────────────────────

    def validate(self):
        """Raise PreconditionError when a mandatory spec field is missing."""

    @abstractmethod
    def _provision(self):
        """Create the VM. Must call _track_instance() as soon as an id exists."""

    @abstractmethod
    def _get_state(self) -> VMState: ...

    @abstractmethod
    def _get_ips(self) -> list[str]: ...

    @abstractmethod
    def _teardown_instance(self, resource: SideResource): ...

    def _start(self):
        raise UnsupportedOperationError("start", self.backend)

    def _halt(self):
        raise UnsupportedOperationError("halt", self.backend)

    def _suspend(self):
        raise UnsupportedOperationError("suspend", self.backend)

    def _resume(self):
        raise UnsupportedOperationError("resume", self.backend)

    def _ssh_port(self, options):
        return options.port

    # ── Side-resource stack ────────────────────────────────────────

    def _track(self, kind, resource_id, **attrs):
        resource = SideResource(kind, resource_id, attrs)
        self.resources.append(resource)
        logger.debug(f"Tracking {kind} '{resource_id}' for VM '{self.name}'")
        return resource

    def _track_instance(self, instance_id, **attrs):
        self.instance_id = instance_id
        return self._track(INSTANCE, instance_id, **attrs)

    def _resource(self, kind):
        for resource in reversed(self.resources):
            if resource.kind == kind:
                return resource
        return None

    # ── Helpers ────────────────────────────────────────────────────

    def _require_instance(self, operation):
        if not self.instance_id:
            raise NotProvisionedError(self.name, operation)

    def _check_supported(self, operation):
        if operation not in self.supported_operations:
            raise UnsupportedOperationError(operation, self.backend)

    def _wait_for_state(self, *targets, timeout=None, fatal=(VMState.ERROR,), description=None):
        """Poll _get_state() until it reaches one of *targets*."""
        wanted = set(targets)
        fatal = set(fatal) - wanted
        state = poll_until(
            self._get_state,
            lambda s: s in wanted,
            is_fatal=lambda s: s in fatal,
            interval=self.timeouts.interval,
            timeout=self.timeouts.action if timeout is None else timeout,
            description=description or f"{self.name} to become {'/'.join(str(t) for t in targets)}",
        )
        self.state = state
        return state

    # ── Lifecycle contract ─────────────────────────────────────────

    def get_name(self):
        return self.name

    def provision(self):
        """Create the VM and block until it is usable.

        Not idempotent: a VM handle that already holds an instance id is
        rejected rather than provisioned twice.
        """
        if self.instance_id:
            raise PreconditionError(f"VM '{self.name}' is already provisioned ({self.instance_id})")
        self.validate()
        self._destroyed = False
        logger.info(f"Provisioning {self.backend} VM '{self.name}'...")
        self._provision()
        self.state = VMState.RUNNING
        logger.info(f"VM '{self.name}' is running (id={self.instance_id}).")
        if self.wait_ssh:
            self.get_ssh(self.ssh_options)

    def start(self):
        self._check_supported("start")
        self._require_instance("start")
        logger.info(f"Starting VM '{self.name}'...")
        self._start()

    def halt(self):
        self._check_supported("halt")
        self._require_instance("halt")
        logger.info(f"Halting VM '{self.name}'...")
        self._halt()

    def suspend(self):
        self._check_supported("suspend")
        self._require_instance("suspend")
        logger.info(f"Suspending VM '{self.name}'...")
        self._suspend()

    def resume(self):
        self._check_supported("resume")
        self._require_instance("resume")
        logger.info(f"Resuming VM '{self.name}'...")
        self._resume()

    def get_state(self) -> VMState:
        self._require_instance("get_state")
        self.state = self._get_state()
        return self.state

    def get_ips(self) -> list[str]:
        """Return ``[public, private]``; an absent address class is ``""``."""
        self._require_instance("get_ips")
        ips = list(self._get_ips())
        ips += [""] * (2 - len(ips))
        self.ips = ips
        return ips

    def destroy(self):
        """Tear down side-resources in reverse creation order, then the instance.

        A failing step raises TeardownError and leaves that resource (and
        everything created before it) on the stack, so calling destroy()
        again resumes where it stopped.
        """
        if not self.instance_id and not self.resources:
            if self._destroyed:
                logger.info(f"VM '{self.name}' is already destroyed.")
                return
            raise NotProvisionedError(self.name, "destroy")

        logger.info(f"Destroying VM '{self.name}'...")
        while self.resources:
            resource = self.resources[-1]
            teardown = getattr(self, f"_teardown_{resource.kind}")
            logger.info(f"  Removing {resource.kind} '{resource.id}'...")
            try:
                teardown(resource)
            except VMError as e:
                raise TeardownError(resource.kind, resource.id, str(e)) from e
            self.resources.pop()

        self.instance_id = ""
        self.ips = ["", ""]
        self.state = VMState.UNKNOWN
        self._destroyed = True
        logger.info(f"VM '{self.name}' destroyed.")

    def get_ssh(self, options=None):
        """Resolve the VM's address and block until SSH is reachable."""
        options = options or self.ssh_options
        self._require_instance("get_ssh")
        ips = self.get_ips()
        slot = PRIVATE_IP if options.use_private_ip else PUBLIC_IP
        ip = ips[slot]
        if not ip:
            kind = "private" if options.use_private_ip else "public"
            raise NoAddressError(f"VM '{self.name}' has no {kind} IP address")
        session = self.connector.connect(ip, self._ssh_port(options), self.credentials, options)
        session.wait_reachable(self.timeouts.ssh)
        return session

    # ── Persistence ────────────────────────────────────────────────

    def to_dict(self):
        return {
            "backend": self.backend,
            "name": self.name,
            "instance_id": self.instance_id,
            "resources": [r.to_dict() for r in self.resources],
        }

    def restore(self, data):
        """Re-attach this handle to a VM recorded by to_dict()."""
        if data.get("backend", self.backend) != self.backend:
            raise PreconditionError(f"State belongs to backend '{data['backend']}', not '{self.backend}'")
        self.name = data.get("name") or self.name
        self.instance_id = data.get("instance_id", "")
        self.resources = [SideResource.from_dict(r) for r in data.get("resources", [])]
        return self
