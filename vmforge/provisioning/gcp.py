"""GCE backend: Compute Engine instances managed through the gcloud CLI."""

import json
import logging
import os
import shlex
from dataclasses import dataclass, field

from vmforge.provisioning.base import VirtualMachine
from vmforge.provisioning.errors import (
    AmbiguousError,
    BackendError,
    NotFoundError,
    PreconditionError,
    TerminalStateError,
)
from vmforge.provisioning.shell import run_shell_cmd
from vmforge.provisioning.ssh import require_public_key
from vmforge.provisioning.types import Timeouts, VMState
from vmforge.provisioning.wait import poll_until, state_in

logger = logging.getLogger(__name__)

_STATES = {
    "PROVISIONING": VMState.STARTING,
    "STAGING": VMState.STARTING,
    "RUNNING": VMState.RUNNING,
    "STOPPING": VMState.PENDING,
    "SUSPENDING": VMState.PENDING,
    "REPAIRING": VMState.PENDING,
    "STOPPED": VMState.HALTED,
    "TERMINATED": VMState.HALTED,
    "SUSPENDED": VMState.SUSPENDED,
}

PUBLIC_IMAGE_PROJECTS = [
    "debian-cloud",
    "ubuntu-os-cloud",
    "centos-cloud",
    "rocky-linux-cloud",
    "cos-cloud",
]


def translate_state(status):
    """Map a GCE instance status to a canonical VMState."""
    if not isinstance(status, str):
        return VMState.UNKNOWN
    return _STATES.get(status.strip().upper(), VMState.UNKNOWN)


def _is_not_found(stderr):
    return "was not found" in stderr or "notFound" in stderr


@dataclass
class GCESpec:
    project: str = ""
    zone: str = "us-central1-a"
    machine_type: str = "n1-standard-1"
    image: str = ""
    image_project: str = ""
    disk_type: str = "pd-standard"
    disk_size_gb: int = 10
    provisioning_model: str = "STANDARD"
    network: str = ""
    subnet: str = ""
    tags: list[str] = field(default_factory=list)
    service_account: str = ""
    ssh_user: str = ""
    ssh_public_key_path: str = ""
    extra_gcloud_args: str = ""


# ── Command builders ───────────────────────────────────────────────


def _project_args(project):
    return ["--project", project] if project else []


def _gcloud_create_cmd(instance, spec, image_args):
    """Build gcloud command to create an instance asynchronously."""
    cmd = [
        "gcloud",
        "compute",
        "instances",
        "create",
        instance,
        "--zone",
        spec.zone,
        "--machine-type",
        spec.machine_type,
        f"--provisioning-model={spec.provisioning_model}",
        "--boot-disk-type",
        spec.disk_type,
        "--boot-disk-size",
        f"{spec.disk_size_gb}GB",
        *image_args,
        *_project_args(spec.project),
    ]
    if spec.network:
        cmd.extend(["--network", spec.network])
    if spec.subnet:
        cmd.extend(["--subnet", spec.subnet])
    if spec.tags:
        cmd.append(f"--tags={','.join(spec.tags)}")
    if spec.service_account:
        cmd.append(f"--service-account={spec.service_account}")
        cmd.append("--scopes=https://www.googleapis.com/auth/cloud-platform")
    if spec.ssh_public_key_path:
        with open(os.path.expanduser(spec.ssh_public_key_path)) as f:
            pub_key = f.read().strip()
        user = spec.ssh_user or os.environ.get("USER", "vmforge")
        cmd.append(f"--metadata=ssh-keys={user}:{pub_key}")
    if spec.extra_gcloud_args:
        cmd.extend(shlex.split(spec.extra_gcloud_args))
    cmd.extend(["--async", "--format=json"])
    return cmd


def _gcloud_instance_action_cmd(action, instance, zone, project=""):
    """Build gcloud command for start/stop/suspend/resume/delete, returning an operation."""
    cmd = ["gcloud", "compute", "instances", action, instance, "--zone", zone, *_project_args(project)]
    if action == "delete":
        cmd.append("--quiet")
    cmd.extend(["--async", "--format=json"])
    return cmd


def _gcloud_describe_cmd(instance, zone, project=""):
    """Build gcloud command to describe an instance as JSON."""
    return ["gcloud", "compute", "instances", "describe", instance, "--zone", zone, *_project_args(project), "--format=json"]


def _gcloud_operation_cmd(operation, zone, project=""):
    """Build gcloud command to describe a zonal operation."""
    return ["gcloud", "compute", "operations", "describe", operation, "--zone", zone, *_project_args(project), "--format=json"]


def _gcloud_image_search_cmd(image, project):
    """Build gcloud command listing images in *project* whose name or family is *image*."""
    return [
        "gcloud",
        "compute",
        "images",
        "list",
        "--project",
        project,
        "--no-standard-images",
        f"--filter=name={image} OR family={image}",
        "--format=json",
    ]


# ── Adapter ────────────────────────────────────────────────────────


class GCEVM(VirtualMachine):
    backend = "gcp"
    default_timeouts = Timeouts(action=300, resource=300, ssh=180, interval=5)

    def __init__(self, spec=None, runner=run_shell_cmd, **kwargs):
        super().__init__(spec=spec or GCESpec(), **kwargs)
        self._run = runner

    def validate(self):
        spec = self.spec
        if not spec.image:
            raise PreconditionError("image reference required")
        if not spec.zone:
            raise PreconditionError("zone required")
        if not spec.machine_type:
            raise PreconditionError("machine type required")
        if spec.ssh_public_key_path:
            require_public_key(spec.ssh_public_key_path)

    def _gcloud_json(self, step, cmd, resource_id="", allow_missing=False):
        rc, stdout, stderr = self._run(cmd)
        if rc != 0:
            if allow_missing and _is_not_found(stderr):
                return None
            raise BackendError(step, resource_id, stderr.strip())
        try:
            return json.loads(stdout) if stdout.strip() else {}
        except json.JSONDecodeError as e:
            raise BackendError(step, resource_id, f"unparseable gcloud output: {e}") from e

    # ── Resolution ─────────────────────────────────────────────────

    def _resolve_image(self):
        spec = self.spec
        projects = [spec.image_project] if spec.image_project else PUBLIC_IMAGE_PROJECTS
        matches = []
        for project in projects:
            found = self._gcloud_json("image search", _gcloud_image_search_cmd(spec.image, project), spec.image) or []
            matches.extend((project, image) for image in found)
        if not matches:
            raise NotFoundError("image", spec.image)
        exact = [(p, i) for p, i in matches if i.get("name") == spec.image]
        if len(exact) == 1:
            project, image = exact[0]
            return ["--image", image["name"], "--image-project", project]
        owners = {p for p, _ in matches}
        if len(owners) > 1 or len(exact) > 1:
            raise AmbiguousError("image", spec.image, len(matches))
        return ["--image-family", spec.image, "--image-project", matches[0][0]]

    # ── Operations ─────────────────────────────────────────────────

    def _operation_name(self, step, result):
        ops = result if isinstance(result, list) else [result]
        if not ops or not isinstance(ops[0], dict) or "name" not in ops[0]:
            raise BackendError(step, self.name, "no operation returned")
        return ops[0]["name"]

    def _wait_operation(self, operation, description):
        spec = self.spec

        def _probe():
            return self._gcloud_json("operation status", _gcloud_operation_cmd(operation, spec.zone, spec.project), operation)

        op = poll_until(
            _probe,
            lambda o: o.get("status") == "DONE",
            interval=self.timeouts.interval,
            timeout=self.timeouts.action,
            description=description,
        )
        if op.get("error"):
            errors = op["error"].get("errors", [])
            detail = "; ".join(e.get("message", "") for e in errors) or str(op["error"])
            raise TerminalStateError(description, detail)
        return op

    def _action(self, action):
        spec = self.spec
        cmd = _gcloud_instance_action_cmd(action, self.instance_id, spec.zone, spec.project)
        result = self._gcloud_json(f"instance {action}", cmd, self.instance_id)
        self._wait_operation(self._operation_name(f"instance {action}", result), f"{action} of {self.instance_id}")

    # ── Instance ───────────────────────────────────────────────────

    def _describe(self):
        spec = self.spec
        cmd = _gcloud_describe_cmd(self.instance_id, spec.zone, spec.project)
        return self._gcloud_json("instance describe", cmd, self.instance_id, allow_missing=True)

    def _status(self):
        info = self._describe()
        return info.get("status") if info is not None else None

    def _get_state(self):
        return translate_state(self._status())

    def _get_ips(self):
        info = self._describe() or {}
        public = private = ""
        for nic in info.get("networkInterfaces", []):
            private = private or nic.get("networkIP", "")
            for access in nic.get("accessConfigs", []):
                public = public or access.get("natIP", "")
        return [public, private]

    def _provision(self):
        spec = self.spec
        image_args = self._resolve_image()
        logger.info(f"Creating instance '{self.name}' in zone '{spec.zone}' ({spec.machine_type})...")
        result = self._gcloud_json("instance create", _gcloud_create_cmd(self.name, spec, image_args), self.name)
        operation = self._operation_name("instance create", result)
        self._track_instance(self.name, zone=spec.zone)
        self._wait_operation(operation, f"creation of {self.name}")
        logger.info("Waiting for instance to reach RUNNING status...")
        self._wait_for_state(VMState.RUNNING)

    def _start(self):
        self._action("start")
        self._wait_for_state(VMState.RUNNING)

    def _halt(self):
        self._action("stop")
        self._wait_for_state(VMState.HALTED)

    def _suspend(self):
        self._action("suspend")
        self._wait_for_state(VMState.SUSPENDED)

    def _resume(self):
        self._action("resume")
        self._wait_for_state(VMState.RUNNING)

    def _teardown_instance(self, resource):
        spec = self.spec
        cmd = _gcloud_instance_action_cmd("delete", resource.id, resource.attrs.get("zone", spec.zone), spec.project)
        result = self._gcloud_json("instance delete", cmd, resource.id, allow_missing=True)
        if result is None:
            logger.warning(f"Instance {resource.id} already gone.")
            return
        self._wait_operation(self._operation_name("instance delete", result), f"deletion of {resource.id}")
        poll_until(
            self._status,
            state_in(None),
            interval=self.timeouts.interval,
            timeout=self.timeouts.action,
            description=f"instance {resource.id} to disappear",
        )
