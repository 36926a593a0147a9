from __future__ import annotations

import copy
import itertools
from collections import defaultdict
from collections.abc import Iterable
from typing import Any

import pytest
from botocore.exceptions import ClientError

import skyfleet.retry
from skyfleet.config import ProviderConfig, Timeouts
from skyfleet.constants import FleetTag
from skyfleet.template import Template


def make_client_error(
    code: str,
    message: str = "",
    operation: str = "Operation",
    *,
    status: int | None = None,
) -> ClientError:
    """A botocore ClientError; with ``status`` it is an HTTP 4xx/5xx Sender error."""
    response: dict[str, Any] = {"Error": {"Code": code, "Message": message}}
    if status is not None:
        response["ResponseMetadata"] = {"HTTPStatusCode": status}
        response["Error"]["Type"] = "Sender" if status < 500 else "Receiver"
    return ClientError(response, operation)


class FakeClock:
    """Stands in for the ``time`` module inside skyfleet.retry."""

    def __init__(self) -> None:
        self.now = 1000.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture(autouse=True)
def clock(monkeypatch: pytest.MonkeyPatch) -> FakeClock:
    fake = FakeClock()
    monkeypatch.setattr(skyfleet.retry, "time", fake)
    return fake


@pytest.fixture
def template() -> Template:
    return Template(
        name="workers",
        image="ami-123",
        instance_type="m5.xlarge",
        subnet_id="subnet-1",
        security_group_ids=("sg-1",),
        key_name="deploy",
        tags={"team": "data"},
    )


@pytest.fixture
def config() -> ProviderConfig:
    return ProviderConfig()


def short_timeouts(**overrides: float) -> Timeouts:
    values: dict[str, float] = {
        "ec2.spot.requestDurationMilliseconds": 5_000,
        "ec2.asg.requestDurationMilliseconds": 5_000,
        "ec2.instance.waitUntilFindableMilliseconds": 5_000,
        "ec2.instance.waitUntilStartedMilliseconds": 5_000,
        "ec2.ebs.availableSeconds": 20,
        "ec2.ebs.attachSeconds": 20,
        "ec2.ebs.detachSeconds": 20,
    }
    values.update(overrides)
    return Timeouts(values)


# =============================================================================
# Fake EC2
# =============================================================================


def _tags_of(resource: dict[str, Any]) -> dict[str, str]:
    return {t["Key"]: t["Value"] for t in resource.get("Tags", [])}


class FakeEC2:
    """In-memory EC2 with instances, volumes, spot requests and launch templates.

    Instances come up running with a private IP. Queue exceptions in
    ``failures[operation]`` to make the next calls of that operation fail.
    """

    def __init__(self) -> None:
        self.instances: dict[str, dict[str, Any]] = {}
        self.volumes: dict[str, dict[str, Any]] = {}
        self.spot_requests: dict[str, dict[str, Any]] = {}
        self.launch_templates: dict[str, dict[str, Any]] = {}
        self.console: dict[str, str] = {}
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.failures: dict[str, list[BaseException]] = defaultdict(list)
        self.attach_failures: set[tuple[str, str]] = set()
        self.capacity: int | None = None
        self.fulfil_spot = True
        self.deleted_volumes: list[str] = []
        self.image = {
            "ImageId": "ami-123",
            "RootDeviceName": "/dev/sda1",
            "BlockDeviceMappings": [{"DeviceName": "/dev/sda1", "Ebs": {}}],
        }
        self._ids = itertools.count(1)

    # -- bookkeeping ---------------------------------------------------------

    def _call(self, operation: str, kwargs: dict[str, Any]) -> None:
        self.calls.append((operation, kwargs))
        if self.failures[operation]:
            raise self.failures[operation].pop(0)

    def calls_to(self, operation: str) -> list[dict[str, Any]]:
        return [kwargs for op, kwargs in self.calls if op == operation]

    def add_instance(
        self, virtual_id: str | None = None, *, state: str = "running", tag: str = FleetTag.INSTANCE_ID,
    ) -> dict[str, Any]:
        instance_id = f"i-{next(self._ids):04d}"
        instance = {
            "InstanceId": instance_id,
            "ImageId": "ami-123",
            "InstanceType": "m5.xlarge",
            "KeyName": "deploy",
            "State": {"Name": state},
            "PrivateIpAddress": f"10.0.0.{len(self.instances) + 1}",
            "Tags": [{"Key": tag, "Value": virtual_id}] if virtual_id else [],
            "BlockDeviceMappings": [],
        }
        self.instances[instance_id] = instance
        return instance

    def live_instances(self) -> list[dict[str, Any]]:
        return [
            i for i in self.instances.values()
            if i["State"]["Name"] not in ("terminated", "shutting-down")
        ]

    def _not_found(self, code: str, ids: Iterable[str], operation: str) -> ClientError:
        return make_client_error(code, f"The ids '{', '.join(ids)}' do not exist", operation)

    # -- images and subnets --------------------------------------------------

    def describe_images(self, **kwargs: Any) -> dict[str, Any]:
        self._call("describe_images", kwargs)
        return {"Images": [copy.deepcopy(self.image)]}

    def describe_subnets(self, **kwargs: Any) -> dict[str, Any]:
        self._call("describe_subnets", kwargs)
        return {"Subnets": [{"SubnetId": s, "AvailabilityZone": "us-east-1a"} for s in kwargs["SubnetIds"]]}

    # -- instances -----------------------------------------------------------

    def run_instances(self, **kwargs: Any) -> dict[str, Any]:
        self._call("run_instances", kwargs)
        count = kwargs["MaxCount"]
        if self.capacity is not None:
            if self.capacity < kwargs["MinCount"]:
                raise make_client_error("InsufficientInstanceCapacity", "No capacity", "RunInstances")
            count = min(count, self.capacity)
            self.capacity -= count
        tags = [
            tag
            for spec in kwargs.get("TagSpecifications", [])
            if spec["ResourceType"] == "instance"
            for tag in spec["Tags"]
        ]
        launched = []
        for _ in range(count):
            instance = self.add_instance()
            instance["Tags"] = list(tags)
            launched.append(copy.deepcopy(instance))
        return {"ReservationId": "r-1", "Instances": launched}

    def describe_instances(self, **kwargs: Any) -> dict[str, Any]:
        self._call("describe_instances", kwargs)
        if "InstanceIds" in kwargs:
            missing = [i for i in kwargs["InstanceIds"] if i not in self.instances]
            if missing:
                raise self._not_found("InvalidInstanceID.NotFound", missing, "DescribeInstances")
            found = [self.instances[i] for i in kwargs["InstanceIds"]]
        else:
            found = list(self.instances.values())
        for f in kwargs.get("Filters", []):
            key = f["Name"].removeprefix("tag:")
            found = [i for i in found if _tags_of(i).get(key) in f["Values"]]
        return {"Reservations": [{"Instances": copy.deepcopy(found)}] if found else []}

    def describe_instance_status(self, **kwargs: Any) -> dict[str, Any]:
        self._call("describe_instance_status", kwargs)
        return {
            "InstanceStatuses": [
                {"InstanceId": i, "InstanceState": dict(self.instances[i]["State"])}
                for i in kwargs["InstanceIds"]
                if i in self.instances
            ]
        }

    def create_tags(self, **kwargs: Any) -> dict[str, Any]:
        self._call("create_tags", kwargs)
        for resource_id in kwargs["Resources"]:
            resource = (
                self.instances.get(resource_id)
                or self.volumes.get(resource_id)
                or self.spot_requests.get(resource_id)
            )
            if resource is None:
                raise self._not_found("InvalidID.NotFound", [resource_id], "CreateTags")
            merged = _tags_of(resource) | {t["Key"]: t["Value"] for t in kwargs["Tags"]}
            resource["Tags"] = [{"Key": k, "Value": v} for k, v in merged.items()]
        return {}

    def terminate_instances(self, **kwargs: Any) -> dict[str, Any]:
        self._call("terminate_instances", kwargs)
        for instance_id in kwargs["InstanceIds"]:
            if instance_id in self.instances:
                self.instances[instance_id]["State"] = {"Name": "terminated"}
        return {}

    def get_console_output(self, **kwargs: Any) -> dict[str, Any]:
        self._call("get_console_output", kwargs)
        output = self.console.get(kwargs["InstanceId"])
        return {"InstanceId": kwargs["InstanceId"], **({"Output": output} if output else {})}

    # -- volumes -------------------------------------------------------------

    def create_volume(self, **kwargs: Any) -> dict[str, Any]:
        self._call("create_volume", kwargs)
        volume_id = f"vol-{next(self._ids):04d}"
        tags = [t for spec in kwargs.get("TagSpecifications", []) for t in spec["Tags"]]
        self.volumes[volume_id] = {
            "VolumeId": volume_id, "State": "available", "Attachments": [], "Tags": tags,
        }
        return {"VolumeId": volume_id, "State": "creating"}

    def describe_volumes(self, **kwargs: Any) -> dict[str, Any]:
        self._call("describe_volumes", kwargs)
        missing = [v for v in kwargs["VolumeIds"] if v not in self.volumes]
        if missing:
            raise self._not_found("InvalidVolume.NotFound", missing, "DescribeVolumes")
        return {"Volumes": [copy.deepcopy(self.volumes[v]) for v in kwargs["VolumeIds"]]}

    def attach_volume(self, **kwargs: Any) -> dict[str, Any]:
        self._call("attach_volume", kwargs)
        instance_id, device = kwargs["InstanceId"], kwargs["Device"]
        if (instance_id, device) in self.attach_failures:
            raise make_client_error("IncorrectState", "Volume cannot be attached", "AttachVolume")
        volume = self.volumes[kwargs["VolumeId"]]
        volume["State"] = "in-use"
        volume["Attachments"] = [{"InstanceId": instance_id, "Device": device, "State": "attached"}]
        self.instances[instance_id]["BlockDeviceMappings"].append({
            "DeviceName": device,
            "Ebs": {"VolumeId": kwargs["VolumeId"], "Status": "attached", "DeleteOnTermination": False},
        })
        return {}

    def describe_instance_attribute(self, **kwargs: Any) -> dict[str, Any]:
        self._call("describe_instance_attribute", kwargs)
        instance = self.instances[kwargs["InstanceId"]]
        return {
            "InstanceId": kwargs["InstanceId"],
            "BlockDeviceMappings": copy.deepcopy(instance["BlockDeviceMappings"]),
        }

    def modify_instance_attribute(self, **kwargs: Any) -> dict[str, Any]:
        self._call("modify_instance_attribute", kwargs)
        instance = self.instances[kwargs["InstanceId"]]
        for change in kwargs["BlockDeviceMappings"]:
            for mapping in instance["BlockDeviceMappings"]:
                if mapping["DeviceName"] == change["DeviceName"]:
                    mapping["Ebs"]["DeleteOnTermination"] = change["Ebs"]["DeleteOnTermination"]
        return {}

    def delete_on_termination(self, instance_id: str) -> list[str]:
        return [
            m["Ebs"]["VolumeId"]
            for m in self.instances[instance_id]["BlockDeviceMappings"]
            if m["Ebs"].get("DeleteOnTermination")
        ]

    def detach_volume(self, **kwargs: Any) -> dict[str, Any]:
        self._call("detach_volume", kwargs)
        volume = self.volumes[kwargs["VolumeId"]]
        for attachment in volume["Attachments"]:
            mappings = self.instances[attachment["InstanceId"]]["BlockDeviceMappings"]
            mappings[:] = [m for m in mappings if m["Ebs"]["VolumeId"] != kwargs["VolumeId"]]
        volume["State"] = "available"
        volume["Attachments"] = []
        return {}

    def delete_volume(self, **kwargs: Any) -> dict[str, Any]:
        self._call("delete_volume", kwargs)
        del self.volumes[kwargs["VolumeId"]]
        self.deleted_volumes.append(kwargs["VolumeId"])
        return {}

    # -- spot ----------------------------------------------------------------

    def request_spot_instances(self, **kwargs: Any) -> dict[str, Any]:
        self._call("request_spot_instances", kwargs)
        request_id = f"sir-{next(self._ids):04d}"
        self.spot_requests[request_id] = {
            "SpotInstanceRequestId": request_id,
            "State": "open",
            "Status": {"Code": "pending-evaluation"},
            "ValidUntil": kwargs["ValidUntil"],
            "Tags": [],
        }
        return {"SpotInstanceRequests": [copy.deepcopy(self.spot_requests[request_id])]}

    def _fulfil(self, request: dict[str, Any]) -> None:
        if request["State"] == "open" and self.fulfil_spot:
            request["State"] = "active"
            request["Status"] = {"Code": "fulfilled"}
            request["InstanceId"] = self.add_instance()["InstanceId"]

    def describe_spot_instance_requests(self, **kwargs: Any) -> dict[str, Any]:
        self._call("describe_spot_instance_requests", kwargs)
        if "SpotInstanceRequestIds" in kwargs:
            found = [self.spot_requests[r] for r in kwargs["SpotInstanceRequestIds"]]
            for request in found:
                self._fulfil(request)
        else:
            found = list(self.spot_requests.values())
        for f in kwargs.get("Filters", []):
            key = f["Name"].removeprefix("tag:")
            found = [r for r in found if _tags_of(r).get(key) in f["Values"]]
        return {"SpotInstanceRequests": copy.deepcopy(found)}

    def cancel_spot_instance_requests(self, **kwargs: Any) -> dict[str, Any]:
        self._call("cancel_spot_instance_requests", kwargs)
        for request_id in kwargs["SpotInstanceRequestIds"]:
            request = self.spot_requests[request_id]
            if request["State"] == "active":
                request["Status"] = {"Code": "request-canceled-and-instance-running"}
            else:
                request["Status"] = {"Code": "canceled-before-fulfillment"}
            request["State"] = "cancelled"
        return {}

    # -- launch templates ----------------------------------------------------

    def create_launch_template(self, **kwargs: Any) -> dict[str, Any]:
        self._call("create_launch_template", kwargs)
        name = kwargs["LaunchTemplateName"]
        if name in self.launch_templates:
            raise make_client_error(
                "InvalidLaunchTemplateName.AlreadyExistsException", "exists", "CreateLaunchTemplate",
                status=400,
            )
        self.launch_templates[name] = kwargs["LaunchTemplateData"]
        return {"LaunchTemplate": {"LaunchTemplateName": name}}

    def delete_launch_template(self, **kwargs: Any) -> dict[str, Any]:
        self._call("delete_launch_template", kwargs)
        name = kwargs["LaunchTemplateName"]
        if name not in self.launch_templates:
            raise make_client_error(
                "InvalidLaunchTemplateName.NotFoundException", "not found", "DeleteLaunchTemplate",
                status=400,
            )
        del self.launch_templates[name]
        return {}


@pytest.fixture
def ec2() -> FakeEC2:
    return FakeEC2()
