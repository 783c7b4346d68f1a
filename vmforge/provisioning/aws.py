"""AWS backend: EC2 instances with an optional Elastic IP, via boto3."""

import logging
import os
from dataclasses import dataclass, field

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from vmforge.provisioning.base import VirtualMachine
from vmforge.provisioning.errors import AmbiguousError, NotFoundError, PreconditionError, wrap_backend_errors
from vmforge.provisioning.types import Timeouts, VMState
from vmforge.provisioning.wait import poll_until, state_in

logger = logging.getLogger(__name__)

_STATES = {
    "pending": VMState.STARTING,
    "running": VMState.RUNNING,
    "stopping": VMState.PENDING,
    "shutting-down": VMState.PENDING,
    "stopped": VMState.HALTED,
    "terminated": VMState.ERROR,
}

# Error codes meaning the resource no longer exists.
NOT_FOUND_CODES = {
    "InvalidInstanceID.NotFound",
    "InvalidAllocationID.NotFound",
    "InvalidAssociationID.NotFound",
    "InvalidAddress.NotFound",
}

AWS_ERRORS = (ClientError, BotoCoreError)


def translate_state(state_name):
    """Map an EC2 instance state name to a canonical VMState."""
    if not isinstance(state_name, str):
        return VMState.UNKNOWN
    return _STATES.get(state_name.strip().lower(), VMState.UNKNOWN)


def _is_not_found(error):
    return isinstance(error, ClientError) and error.response.get("Error", {}).get("Code") in NOT_FOUND_CODES


def default_region():
    return os.environ.get("AWS_DEFAULT_REGION") or os.environ.get("AWS_REGION", "")


@dataclass
class AWSSpec:
    region: str = ""
    image: str = ""
    image_owners: list[str] = field(default_factory=lambda: ["self", "amazon"])
    instance_type: str = ""
    key_name: str = ""
    security_groups: list[str] = field(default_factory=list)
    subnet_id: str = ""
    user_data: str = ""
    elastic_ip: bool = False
    delete_non_root_volumes: bool = False
    tags: dict = field(default_factory=dict)


def check_credentials(region=""):
    """Raise PreconditionError unless boto3 can find a region and credentials."""
    region = region or default_region()
    if not region:
        raise PreconditionError("AWS region required (set 'region' or AWS_DEFAULT_REGION)")
    if boto3.Session(region_name=region).get_credentials() is None:
        raise PreconditionError("AWS credentials not found")


class AWSVM(VirtualMachine):
    backend = "aws"
    default_timeouts = Timeouts(action=300, resource=300, ssh=120, interval=5)
    supported_operations = frozenset({"start", "halt"})

    def __init__(self, spec=None, client_factory=None, **kwargs):
        super().__init__(spec=spec or AWSSpec(), **kwargs)
        self._client_factory = client_factory
        self._client = None

    @property
    def region(self):
        return self.spec.region or default_region()

    @property
    def ec2(self):
        if self._client is None:
            if self._client_factory is not None:
                self._client = self._client_factory(self.region)
            else:
                self._client = boto3.client("ec2", region_name=self.region)
        return self._client

    def validate(self):
        spec = self.spec
        if not spec.image:
            raise PreconditionError("image reference required")
        if not spec.instance_type:
            raise PreconditionError("instance type required")
        if not spec.key_name:
            raise PreconditionError("key pair name required")
        if self._client_factory is None:
            check_credentials(spec.region)

    # ── Resolution ─────────────────────────────────────────────────

    def _resolve_image(self):
        image = self.spec.image
        if image.startswith("ami-"):
            return image
        with wrap_backend_errors("image lookup", image, AWS_ERRORS):
            resp = self.ec2.describe_images(
                Filters=[{"Name": "name", "Values": [image]}, {"Name": "state", "Values": ["available"]}],
                Owners=self.spec.image_owners,
            )
        images = resp.get("Images", [])
        if not images:
            raise NotFoundError("image", image)
        if len(images) > 1:
            raise AmbiguousError("image", image, len(images))
        return images[0]["ImageId"]

    def _resolve_security_groups(self):
        groups = self.spec.security_groups
        names = [g for g in groups if not g.startswith("sg-")]
        ids = [g for g in groups if g.startswith("sg-")]
        if not names:
            return ids
        with wrap_backend_errors("security group lookup", ",".join(names), AWS_ERRORS):
            resp = self.ec2.describe_security_groups(Filters=[{"Name": "group-name", "Values": names}])
        found = {}
        for group in resp.get("SecurityGroups", []):
            found.setdefault(group["GroupName"], []).append(group["GroupId"])
        for name in names:
            matches = found.get(name, [])
            if not matches:
                raise NotFoundError("security group", name)
            if len(matches) > 1:
                raise AmbiguousError("security group", name, len(matches))
            ids.append(matches[0])
        return ids

    # ── Instance ───────────────────────────────────────────────────

    def _describe(self):
        try:
            resp = self.ec2.describe_instances(InstanceIds=[self.instance_id])
        except ClientError as e:
            if _is_not_found(e):
                return None
            raise
        for reservation in resp.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                return instance
        return None

    def _instance(self):
        with wrap_backend_errors("describe instance", self.instance_id, AWS_ERRORS):
            return self._describe()

    def _state_name(self):
        instance = self._instance()
        return instance["State"]["Name"] if instance else None

    def _get_state(self):
        return translate_state(self._state_name())

    def _get_ips(self):
        instance = self._instance() or {}
        return [instance.get("PublicIpAddress", ""), instance.get("PrivateIpAddress", "")]

    def _provision(self):
        spec = self.spec
        image_id = self._resolve_image()
        group_ids = self._resolve_security_groups()

        tags = [{"Key": "Name", "Value": self.name}] + [{"Key": k, "Value": str(v)} for k, v in spec.tags.items()]
        params = {
            "ImageId": image_id,
            "InstanceType": spec.instance_type,
            "KeyName": spec.key_name,
            "MinCount": 1,
            "MaxCount": 1,
            "TagSpecifications": [{"ResourceType": "instance", "Tags": tags}],
        }
        if spec.subnet_id:
            params["SubnetId"] = spec.subnet_id
        if group_ids:
            params["SecurityGroupIds"] = group_ids
        if spec.user_data:
            params["UserData"] = spec.user_data

        logger.info(f"Launching EC2 instance '{self.name}' ({spec.instance_type}, {image_id})...")
        with wrap_backend_errors("run instances", self.name, AWS_ERRORS):
            resp = self.ec2.run_instances(**params)
        self._track_instance(resp["Instances"][0]["InstanceId"])
        logger.info(f"Instance launched (id={self.instance_id}). Waiting for running state...")
        self._wait_for_state(VMState.RUNNING)

        if spec.delete_non_root_volumes:
            self._set_delete_on_termination()
        if spec.elastic_ip:
            self._attach_elastic_ip()

    def _set_delete_on_termination(self):
        instance = self._instance() or {}
        root = instance.get("RootDeviceName")
        mappings = [
            {"DeviceName": m["DeviceName"], "Ebs": {"DeleteOnTermination": True}}
            for m in instance.get("BlockDeviceMappings", [])
            if m.get("DeviceName") != root and "Ebs" in m
        ]
        if not mappings:
            return
        with wrap_backend_errors("set delete-on-termination", self.instance_id, AWS_ERRORS):
            self.ec2.modify_instance_attribute(InstanceId=self.instance_id, BlockDeviceMappings=mappings)

    def _attach_elastic_ip(self):
        with wrap_backend_errors("allocate address", self.instance_id, AWS_ERRORS):
            alloc = self.ec2.allocate_address(Domain="vpc")
        allocation_id = alloc["AllocationId"]
        resource = self._track("elastic_ip", allocation_id, address=alloc.get("PublicIp", ""))
        with wrap_backend_errors("associate address", allocation_id, AWS_ERRORS):
            assoc = self.ec2.associate_address(AllocationId=allocation_id, InstanceId=self.instance_id)
        resource.attrs["association_id"] = assoc.get("AssociationId", "")
        address = resource.attrs["address"]
        poll_until(
            lambda: self._get_ips()[0],
            lambda ip: ip == address,
            interval=self.timeouts.interval,
            timeout=self.timeouts.resource,
            description=f"elastic IP {address} on {self.instance_id}",
        )
        logger.info(f"Elastic IP {address} associated.")

    # ── Transitions ────────────────────────────────────────────────

    def _start(self):
        with wrap_backend_errors("start instance", self.instance_id, AWS_ERRORS):
            self.ec2.start_instances(InstanceIds=[self.instance_id])
        self._wait_for_state(VMState.RUNNING)

    def _halt(self):
        with wrap_backend_errors("stop instance", self.instance_id, AWS_ERRORS):
            self.ec2.stop_instances(InstanceIds=[self.instance_id])
        self._wait_for_state(VMState.HALTED)

    # ── Teardown ───────────────────────────────────────────────────

    def _tolerate_missing(self, step, resource_id, call, **kwargs):
        try:
            call(**kwargs)
        except ClientError as e:
            if not _is_not_found(e):
                raise
            logger.warning(f"{step}: {resource_id} already gone.")

    def _teardown_elastic_ip(self, resource):
        association_id = resource.attrs.get("association_id")
        with wrap_backend_errors("release address", resource.id, AWS_ERRORS):
            if association_id:
                self._tolerate_missing(
                    "disassociate address", association_id, self.ec2.disassociate_address, AssociationId=association_id
                )
            self._tolerate_missing("release address", resource.id, self.ec2.release_address, AllocationId=resource.id)

    def _teardown_instance(self, resource):
        with wrap_backend_errors("terminate instance", resource.id, AWS_ERRORS):
            self._tolerate_missing(
                "terminate instance", resource.id, self.ec2.terminate_instances, InstanceIds=[resource.id]
            )
        poll_until(
            self._state_name,
            state_in("terminated", None),
            interval=self.timeouts.interval,
            timeout=self.timeouts.action,
            description=f"instance {resource.id} to terminate",
        )
