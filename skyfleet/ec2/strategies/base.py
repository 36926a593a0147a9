"""Shared plumbing of the allocation strategies.

A strategy object lives for one allocate or delete call. It holds the
template, the virtual ids and the minimum count, and gets its clients and
helpers from an AllocationContext built by the orchestrator.
"""

from __future__ import annotations

import hashlib
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from functools import cached_property
from typing import TYPE_CHECKING, Any, Protocol

from botocore.exceptions import ClientError
from loguru import logger

from skyfleet.constants import (
    INVALID_INSTANCE_ID_NOT_FOUND,
    PRIVATE_IP_POLL_INTERVAL,
    InstanceState,
    TimeoutKey,
)
from skyfleet.ec2.errors import translate_client_error
from skyfleet.ec2.volumes import EbsPlacement, block_device_mappings, ebs_placement
from skyfleet.exceptions import ConfigurationError, RetryDeadlineExceeded
from skyfleet.model import InstanceDescription, InstanceRecord, state_of
from skyfleet.retry import deadline_in, is_not_found, poll_until, retry_until

if TYPE_CHECKING:
    from mypy_boto3_autoscaling import AutoScalingClient
    from mypy_boto3_ec2 import EC2Client

    from skyfleet.config import ProviderConfig, Timeouts
    from skyfleet.ec2.reconciler import InstanceReconciler
    from skyfleet.ec2.tagging import IdentityTagger
    from skyfleet.template import Template

log = logger.bind(component="strategy")


# =============================================================================
# Context
# =============================================================================


@dataclass(frozen=True, slots=True)
class AllocationContext:
    """Clients and helpers shared by every strategy of one orchestrator."""

    ec2: EC2Client
    tagger: IdentityTagger
    reconciler: InstanceReconciler
    config: ProviderConfig
    autoscaling: AutoScalingClient | None = None
    cancel: threading.Event | None = None

    @property
    def timeouts(self) -> Timeouts:
        return self.config.timeouts


class AllocationStrategy(Protocol):
    """One way of turning virtual instance ids into running EC2 instances."""

    template: Template
    virtual_ids: Sequence[str]
    min_count: int

    def allocate(self) -> list[InstanceRecord]:
        """Allocate up to ``len(virtual_ids)`` instances, at least ``min_count``."""
        ...

    def delete(self) -> None:
        """Release the instances of ``virtual_ids``. Idempotent."""
        ...


# =============================================================================
# Base strategy
# =============================================================================


class BaseStrategy:
    """Helpers for launching, tagging and waiting on EC2 instances."""

    def __init__(
        self,
        context: AllocationContext,
        template: Template,
        virtual_ids: Sequence[str],
        min_count: int,
    ) -> None:
        self.context = context
        self.ec2 = context.ec2
        self.tagger = context.tagger
        self.reconciler = context.reconciler
        self.cancel = context.cancel
        self.template = template
        self.virtual_ids = list(virtual_ids)
        self.min_count = min_count
        self.started_timeout = context.timeouts.seconds(TimeoutKey.INSTANCE_STARTED_MS)
        self.findable_timeout = context.timeouts.seconds(TimeoutKey.INSTANCE_FINDABLE_MS)

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(template={getattr(self.template, 'name', None)!r}, "
            f"count={len(self.virtual_ids)}, min_count={self.min_count})"
        )

    # -------------------------------------------------------------------------
    # Launch request
    # -------------------------------------------------------------------------

    @cached_property
    def image(self) -> dict[str, Any]:
        images = self.ec2.describe_images(ImageIds=[self.template.image]).get("Images", [])
        if not images:
            raise ConfigurationError(f"Image {self.template.image} not found")
        return images[0]

    @cached_property
    def placement(self) -> EbsPlacement:
        return ebs_placement(self.template, self.context.config.allocate_ebs_separately)

    @property
    def tag_ebs_volumes(self) -> bool:
        """Volumes from the launch request need tagging along with the instance."""
        return self.placement is EbsPlacement.AS_INSTANCE_REQUEST

    def block_device_mappings(self) -> list[dict[str, Any]]:
        return block_device_mappings(self.template, self.image, self.placement)

    def network_interface(self, *, public_ip: bool = True) -> dict[str, Any]:
        interface: dict[str, Any] = {
            "DeviceIndex": 0,
            "SubnetId": self.template.subnet_id,
            "Groups": list(self.template.security_group_ids),
            "DeleteOnTermination": True,
        }
        if public_ip:
            interface["AssociatePublicIpAddress"] = self.context.config.associate_public_ip
        return interface

    def launch_specification(self, *, tenancy: bool = True) -> dict[str, Any]:
        """Fields common to run requests, spot launch specs and launch templates."""
        t = self.template
        spec: dict[str, Any] = {
            "ImageId": t.image,
            "InstanceType": t.instance_type,
            "NetworkInterfaces": [self.network_interface()],
            "BlockDeviceMappings": self.block_device_mappings(),
            "EbsOptimized": t.ebs_optimized,
        }
        if t.iam_profile_name:
            spec["IamInstanceProfile"] = {"Name": t.iam_profile_name}
        if t.key_name:
            spec["KeyName"] = t.key_name

        placement: dict[str, str] = {}
        if t.availability_zone:
            placement["AvailabilityZone"] = t.availability_zone
        if t.placement_group:
            placement["GroupName"] = t.placement_group
        if tenancy:
            placement["Tenancy"] = t.tenancy
        if placement:
            spec["Placement"] = placement

        if t.user_data:
            spec["UserData"] = t.user_data
        log.info(
            "Instance request type: {type}, image: {image}", type=t.instance_type, image=t.image,
        )
        return spec

    def client_token(self, virtual_id: str, discriminator: int) -> str:
        """Idempotency token; md5 keeps it under EC2's 64 character limit."""
        digest = hashlib.md5(usedforsecurity=False)
        digest.update(virtual_id.encode())
        digest.update(discriminator.to_bytes(8, "big", signed=True))
        return digest.hexdigest()

    # -------------------------------------------------------------------------
    # Waits
    # -------------------------------------------------------------------------

    def _started(self, instance_id: str) -> bool:
        response = self.ec2.describe_instance_status(
            IncludeAllInstances=True, InstanceIds=[instance_id],
        )
        for status in response.get("InstanceStatuses", []):
            if status.get("InstanceId") != instance_id:
                continue
            state = status.get("InstanceState", {}).get("Name")
            if state in (InstanceState.TERMINATED, InstanceState.SHUTTING_DOWN):
                log.error("Instance {id} has unexpectedly terminated", id=instance_id)
                return False
            if state != InstanceState.PENDING:
                return True
        raise ClientError(
            {"Error": {"Code": INVALID_INSTANCE_ID_NOT_FOUND, "Message": f"{instance_id} is pending"}},
            "DescribeInstanceStatus",
        )

    def wait_until_started(self, instance_id: str, deadline: float) -> bool:
        """True once the instance left ``pending``; False if it terminated or timed out."""
        try:
            return retry_until(lambda: self._started(instance_id), deadline, cancel=self.cancel)
        except RetryDeadlineExceeded:
            log.info("Timed out waiting for instance {id} to start", id=instance_id)
            return False
        except ClientError as e:
            raise translate_client_error(e) from e

    def wait_for_private_ips(
        self, instances: Mapping[str, str], deadline: float | None = None,
    ) -> dict[str, InstanceDescription]:
        """Poll until every instance has a private IP or has terminated.

        Args:
            instances: Virtual id -> EC2 id.

        Returns:
            Virtual id -> description for the instances that got an IP.
        """
        waiting = {ec2_id: vid for vid, ec2_id in instances.items()}
        result: dict[str, InstanceDescription] = {}
        if not waiting:
            return result

        def check() -> bool:
            log.info("Waiting for {n} instance(s) to get a private IP", n=len(waiting))
            try:
                response = self.ec2.describe_instances(InstanceIds=list(waiting))
            except ClientError as e:
                if not is_not_found(e):
                    raise
                return False
            for reservation in response.get("Reservations", []):
                for instance in reservation.get("Instances", []):
                    ec2_id = instance["InstanceId"]
                    if ec2_id not in waiting:
                        continue
                    if state_of(instance).is_terminal:
                        log.info("Instance {id} terminated unexpectedly", id=ec2_id)
                        del waiting[ec2_id]
                    elif instance.get("PrivateIpAddress"):
                        log.info(
                            "Instance {id} got IP {ip}", id=ec2_id, ip=instance["PrivateIpAddress"],
                        )
                        result[waiting.pop(ec2_id)] = instance
            return not waiting

        if deadline is None:
            deadline = deadline_in(self.started_timeout)
        if not poll_until(check, deadline, interval=PRIVATE_IP_POLL_INTERVAL, cancel=self.cancel):
            log.warning("Instances {ids} never got a private IP", ids=sorted(waiting))
        return result

    # -------------------------------------------------------------------------
    # Tagging
    # -------------------------------------------------------------------------

    def tag_instance(self, virtual_id: str, instance_id: str, deadline: float) -> bool:
        """Tag a launched instance once it has started.

        Returns:
            False if the instance terminated or never started.
        """
        log.info("Tagging instance {id} / {vid}", id=instance_id, vid=virtual_id)
        if not self.wait_until_started(instance_id, deadline):
            return False
        try:
            self.tagger.tag(
                self.ec2, [instance_id], self.template, virtual_id,
                deadline=deadline, cancel=self.cancel,
            )
        except RetryDeadlineExceeded:
            log.warning("Timed out tagging instance {id}", id=instance_id)
        except ClientError as e:
            raise translate_client_error(e) from e
        if self.tag_ebs_volumes:
            self._tag_volumes(virtual_id, instance_id, deadline)
        return True

    def _tag_volumes(self, virtual_id: str, instance_id: str, deadline: float) -> None:
        try:
            response = retry_until(
                lambda: self.ec2.describe_instances(InstanceIds=[instance_id]),
                deadline,
                cancel=self.cancel,
            )
        except RetryDeadlineExceeded:
            log.warning("Timed out describing instance {id}", id=instance_id)
            return
        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                volume_ids = [
                    m["Ebs"]["VolumeId"]
                    for m in instance.get("BlockDeviceMappings", [])
                    if m.get("Ebs", {}).get("VolumeId")
                ]
                if volume_ids:
                    self.tagger.tag(self.ec2, volume_ids, self.template, virtual_id, deadline=deadline)

    # -------------------------------------------------------------------------
    # Termination
    # -------------------------------------------------------------------------

    def terminate(self, instance_ids: Sequence[str]) -> None:
        if not instance_ids:
            return
        log.info("Terminating {ids}", ids=list(instance_ids))
        try:
            self.ec2.terminate_instances(InstanceIds=list(instance_ids))
        except ClientError as e:
            raise translate_client_error(e) from e

    def delete(self) -> None:
        """Terminate the live instances backing ``virtual_ids``."""
        found = self.reconciler.provider_ids(self.template, self.virtual_ids)
        unknown = set(self.virtual_ids) - found.keys()
        if unknown:
            log.info("Unable to terminate instances, unknown {ids}", ids=sorted(unknown))
        self.terminate(list(found.values()))

    def state_reasons(self, instance_ids: Sequence[str]) -> tuple[str, ...]:
        """Distinct state reasons of the given instances that terminated."""
        if not instance_ids:
            return ()
        reasons: dict[str, str] = {}
        response = self.ec2.describe_instances(InstanceIds=list(instance_ids))
        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                if not state_of(instance).is_terminal:
                    continue
                reason = instance.get("StateReason") or {}
                if not reason.get("Code"):
                    log.error("Instance {id} terminated for unknown reason", id=instance["InstanceId"])
                    continue
                log.error(
                    "Instance {id} termination reason: {msg} (code {code})",
                    id=instance["InstanceId"], msg=reason.get("Message"), code=reason["Code"],
                )
                reasons[reason["Code"]] = f"{reason['Code']}: {reason.get('Message', '')}"
        return tuple(reasons.values())
