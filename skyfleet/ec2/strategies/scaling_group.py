"""Allocation through an EC2 Auto Scaling group.

The template's ``group_id`` names both the launch template and the Auto
Scaling group. Instances of a scaling group are addressed by their EC2
ids; virtual ids play no part.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any

from botocore.exceptions import ClientError
from loguru import logger

from skyfleet.constants import (
    SCALING_GROUP_RETRY_INTERVAL,
    SCALING_PROCESS_AZ_REBALANCE,
    SCALING_PROCESS_REPLACE_UNHEALTHY,
    TimeoutKey,
)
from skyfleet.ec2.errors import ErrorCollector, is_unrecoverable, translate_client_error
from skyfleet.exceptions import AllocationError, ConfigurationError, FleetError, ProvisioningError
from skyfleet.model import InstanceRecord
from skyfleet.retry import (
    any_of,
    deadline_in,
    error_code,
    error_message,
    expired,
    on_error_codes,
    retry_until,
    sleep,
)

from .base import AllocationContext, BaseStrategy

if TYPE_CHECKING:
    from mypy_boto3_autoscaling import AutoScalingClient

    from skyfleet.retry import RetryPredicate
    from skyfleet.template import Template

log = logger.bind(component="scaling-group")

LAUNCH_TEMPLATE_NOT_FOUND = "InvalidLaunchTemplateName.NotFoundException"
LAUNCH_TEMPLATE_ALREADY_EXISTS = "InvalidLaunchTemplateName.AlreadyExistsException"
GROUP_ALREADY_EXISTS = "AlreadyExists"
VALIDATION_ERROR = "ValidationError"

_NOT_IN_GROUP = re.compile(r"The instance (.+) is not part of Auto Scaling group .+[.].*")
_NOT_IN_STATE = re.compile(r"The instance (.+) is not in .+[.].*")

is_launch_template_not_found = on_error_codes(LAUNCH_TEMPLATE_NOT_FOUND)


def _recoverable(exc: BaseException) -> bool:
    return not is_unrecoverable(exc)


def is_instance_not_in_group(exc: BaseException) -> bool:
    return error_code(exc) == VALIDATION_ERROR and bool(_NOT_IN_GROUP.match(error_message(exc)))


def is_instance_not_in_state(exc: BaseException) -> bool:
    return error_code(exc) == VALIDATION_ERROR and bool(_NOT_IN_STATE.match(error_message(exc)))


class ScalingGroupStrategy(BaseStrategy):
    """Create (or grow) an Auto Scaling group and wait for its instances."""

    def __init__(
        self,
        context: AllocationContext,
        template: Template,
        virtual_ids: Sequence[str],
        min_count: int,
    ) -> None:
        super().__init__(context, template, virtual_ids, min_count)
        if context.autoscaling is None:
            raise ConfigurationError("Scaling group templates need an Auto Scaling client")
        if not template.group_id:
            raise ConfigurationError(f"Template '{template.name}' has no group_id")
        self.autoscaling: AutoScalingClient = context.autoscaling
        self.group_name = template.group_id
        self.launch_template_name = template.group_id
        self.desired_count = len(self.virtual_ids)
        self.deadline = deadline_in(context.timeouts.seconds(TimeoutKey.ASG_REQUEST_DURATION_MS))
        self.poll_interval = context.timeouts.seconds(TimeoutKey.ASG_INSTANCE_POLL_MS)

    def _retry_and_propagate[T](
        self, fn: Callable[[], T], also_retry: RetryPredicate | None = None,
    ) -> T:
        """Retry everything but unrecoverable errors until the request expires."""
        return retry_until(
            fn,
            self.deadline,
            backoff=SCALING_GROUP_RETRY_INTERVAL,
            retry_on=any_of(_recoverable, also_retry) if also_retry else _recoverable,
            cancel=self.cancel,
        )

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    def launch_template_data(self) -> dict[str, Any]:
        data = self.launch_specification()
        data["NetworkInterfaces"] = [self.network_interface(public_ip=False)]
        data["Placement"] = {"Tenancy": self.template.tenancy}
        return data

    def _group_tags(self) -> list[dict[str, Any]]:
        return [
            {
                "ResourceType": "auto-scaling-group",
                "ResourceId": self.group_name,
                "Key": tag["Key"],
                "Value": tag["Value"],
                "PropagateAtLaunch": True,
            }
            for tag in self.tagger.instance_tags(self.template, self.group_name)
        ]

    def _group_request(self) -> dict[str, Any]:
        request: dict[str, Any] = {
            "AutoScalingGroupName": self.group_name,
            "LaunchTemplate": {"LaunchTemplateName": self.launch_template_name},
            "MinSize": self.min_count,
            "MaxSize": self.desired_count,
            "DesiredCapacity": self.desired_count,
            "VPCZoneIdentifier": self.template.subnet_id,
        }
        if self.template.availability_zone:
            request["AvailabilityZones"] = [self.template.availability_zone]
        if self.template.placement_group:
            request["PlacementGroup"] = self.template.placement_group
        return request

    def _describe_groups(self) -> list[dict[str, Any]]:
        response = self.autoscaling.describe_auto_scaling_groups(
            AutoScalingGroupNames=[self.group_name],
        )
        return response.get("AutoScalingGroups", [])

    def _instance_ids(self) -> list[str]:
        return [i["InstanceId"] for g in self._describe_groups() for i in g.get("Instances", [])]

    def _create_launch_template(self) -> None:
        log.info("Creating launch template {name}", name=self.launch_template_name)
        try:
            self.ec2.create_launch_template(
                LaunchTemplateName=self.launch_template_name,
                LaunchTemplateData=self.launch_template_data(),
            )
        except ClientError as e:
            if error_code(e) != LAUNCH_TEMPLATE_ALREADY_EXISTS:
                raise

    def _create_or_update_group(self) -> None:
        log.info("Creating Auto Scaling group {name}", name=self.group_name)
        request = self._group_request()
        try:
            self.autoscaling.create_auto_scaling_group(**request, Tags=self._group_tags())
            return
        except ClientError as e:
            if error_code(e) != GROUP_ALREADY_EXISTS:
                raise
        for group in self._describe_groups():
            if group.get("DesiredCapacity", 0) < self.desired_count:
                log.info("Updating Auto Scaling group {name}", name=self.group_name)
                self.autoscaling.update_auto_scaling_group(**request)

    def _suspend_processes(self) -> None:
        log.info("Disabling automatic instance processing for {name}", name=self.group_name)
        self.autoscaling.suspend_processes(
            AutoScalingGroupName=self.group_name,
            ScalingProcesses=[SCALING_PROCESS_REPLACE_UNHEALTHY, SCALING_PROCESS_AZ_REBALANCE],
        )

    def _delete_group(self) -> None:
        errors = ErrorCollector()
        with errors.attempt(f"delete Auto Scaling group {self.group_name}"):
            self.autoscaling.delete_auto_scaling_group(
                AutoScalingGroupName=self.group_name, ForceDelete=True,
            )
        with errors.attempt(f"delete launch template {self.launch_template_name}"):
            try:
                self.ec2.delete_launch_template(LaunchTemplateName=self.launch_template_name)
            except ClientError as e:
                if not is_launch_template_not_found(e):
                    raise
        errors.raise_if_any(f"Problem deleting Auto Scaling group {self.group_name}")

    # -------------------------------------------------------------------------
    # Allocate
    # -------------------------------------------------------------------------

    def allocate(self) -> list[InstanceRecord]:
        log.info(
            "Requesting Auto Scaling group of {min} - {count} instances for {template}",
            min=self.min_count, count=self.desired_count, template=self.template.name,
        )
        try:
            self._retry_and_propagate(self._create_launch_template)
            self._retry_and_propagate(self._create_or_update_group, is_launch_template_not_found)
            if not self.template.enable_automatic_instance_processing:
                self._retry_and_propagate(self._suspend_processes)

            instance_ids: set[str] = set()
            while True:
                instance_ids.update(self._retry_and_propagate(self._instance_ids))
                if len(instance_ids) >= self.desired_count or expired(self.deadline):
                    break
                sleep(self.poll_interval, self.cancel)

            if len(instance_ids) < self.min_count:
                raise ProvisioningError(
                    f"Only allocated {len(instance_ids)} of {self.min_count} instances "
                    "in configured time"
                )
            return self.reconciler.find(self.template, sorted(instance_ids))
        except Exception as e:
            log.error("Problem allocating Auto Scaling group {name}: {err}", name=self.group_name, err=e)
            errors = ErrorCollector()
            errors.add(translate_client_error(e))
            with errors.attempt(f"clean up Auto Scaling group {self.group_name}"):
                self._retry_and_propagate(self._delete_group)
            if len(errors.errors) > 1:
                log.warning(
                    "Check the AWS console for leaked resources of Auto Scaling group {name}",
                    name=self.group_name,
                )
            raise AllocationError(
                "Problem allocating Auto Scaling group", errors.errors,
            ) from e

    # -------------------------------------------------------------------------
    # Delete
    # -------------------------------------------------------------------------

    def _detach_each(self, instance_ids: list[str]) -> None:
        for instance_id in instance_ids:
            log.info("Detaching instance {id} from {name}", id=instance_id, name=self.group_name)
            try:
                self._retry_and_propagate(
                    lambda i=instance_id: self.autoscaling.detach_instances(
                        AutoScalingGroupName=self.group_name,
                        InstanceIds=[i],
                        ShouldDecrementDesiredCapacity=True,
                    ),
                    is_instance_not_in_state,
                )
            except ClientError as e:
                if not is_instance_not_in_group(e):
                    raise
                log.warning(
                    "Instance {id} not in Auto Scaling group {name}, ignoring",
                    id=instance_id, name=self.group_name,
                )

    def _delete_instances(self) -> None:
        groups = self._describe_groups()
        current_size = sum(g.get("DesiredCapacity", 0) for g in groups)
        current_min = sum(g.get("MinSize", 0) for g in groups)
        target_size = max(0, current_size - len(self.virtual_ids))
        if target_size < current_min:
            log.info("Updating min size of {name} to {size}", name=self.group_name, size=target_size)
            self._retry_and_propagate(
                lambda: self.autoscaling.update_auto_scaling_group(
                    AutoScalingGroupName=self.group_name, MinSize=target_size,
                )
            )

        log.info("Detaching instances from {name}", name=self.group_name)
        try:
            self._retry_and_propagate(
                lambda: self.autoscaling.detach_instances(
                    AutoScalingGroupName=self.group_name,
                    InstanceIds=self.virtual_ids,
                    ShouldDecrementDesiredCapacity=True,
                )
            )
        except ClientError as e:
            if not (is_instance_not_in_group(e) or is_instance_not_in_state(e)):
                raise
            self._detach_each(self.virtual_ids)

        log.info("Terminating instances from {name}", name=self.group_name)
        self.terminate(self.virtual_ids)

    def delete(self) -> None:
        """Delete the whole group when no ids are given, else only those instances."""
        try:
            if not self.virtual_ids:
                self._retry_and_propagate(self._delete_group)
            else:
                self._delete_instances()
        except FleetError:
            raise
        except ClientError as e:
            raise translate_client_error(e) from e
