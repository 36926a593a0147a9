"""EBS data volumes.

Data volumes reach an instance in one of two ways. Usually they are block
device mappings in the launch request itself. When a customer managed KMS
key must be used and the region cannot do that at launch time, the volumes
are created, attached and flagged delete-on-termination one by one after the
instances are running; ``EBSVolumeOrchestrator`` owns that path.
"""

from __future__ import annotations

import threading
from collections.abc import Mapping, Sequence
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from botocore.exceptions import ClientError
from loguru import logger

from skyfleet.constants import (
    DEVICE_NAME_PREFIX,
    DEVICE_NAME_START_CHAR,
    INVALID_VOLUME_NOT_FOUND,
    VOLUME_POLL_INTERVAL,
    TimeoutKey,
)
from skyfleet.ec2.errors import ErrorCollector, raise_if_unrecoverable
from skyfleet.exceptions import (
    AllocationError,
    ConfigurationError,
    FleetError,
    ProvisioningError,
    RetryDeadlineExceeded,
)
from skyfleet.model import (
    InstanceVolumes,
    VolumeState,
    is_uncreated,
    uncreated_volume_id,
)
from skyfleet.retry import deadline_in, error_code, is_not_found, poll_until, retry_until

if TYPE_CHECKING:
    from mypy_boto3_ec2 import EC2Client

    from skyfleet.config import Timeouts
    from skyfleet.ec2.tagging import IdentityTagger
    from skyfleet.template import Template

log = logger.bind(component="ebs")

type VolumeSpec = dict[str, Any]


# =============================================================================
# Placement
# =============================================================================


class EbsPlacement(StrEnum):
    NO_EBS_VOLUMES = "none"
    AS_INSTANCE_REQUEST = "instance-request"
    AS_SEPARATE_REQUESTS = "separate-requests"


def _has_volumes_with_kms_key(template: Template) -> bool:
    keyed = [d.kms_key_id is not None for d in template.system_disks]
    if template.ebs_volume_count:
        keyed.append(template.ebs_kms_key_id is not None)
    if any(keyed) and not all(keyed):
        raise ConfigurationError("Either all volumes should be encrypted with KMS Key ID or none")
    return any(keyed)


def ebs_placement(template: Template, allocate_separately: bool) -> EbsPlacement:
    """Decide how the data volumes of ``template`` are provisioned.

    Volumes go in the launch request unless separate allocation is enabled
    and they are encrypted with a customer managed KMS key.
    """
    if not template.has_volumes:
        return EbsPlacement.NO_EBS_VOLUMES
    if allocate_separately and _has_volumes_with_kms_key(template):
        return EbsPlacement.AS_SEPARATE_REQUESTS
    return EbsPlacement.AS_INSTANCE_REQUEST


# =============================================================================
# Device names
# =============================================================================


class DeviceNames:
    """Hands out ``/dev/sd<x>`` names, skipping names already in use.

    The suffix starts at ``start`` and wraps from ``z`` back to ``b``; ``a``
    is left to the root volume.
    """

    def __init__(self, prefix: str = DEVICE_NAME_PREFIX, start: str = DEVICE_NAME_START_CHAR) -> None:
        if len(start) != 1 or not "b" <= start <= "z":
            raise ValueError("start should be between 'b' and 'z'")
        self.prefix = prefix
        self.start = start

    def take(self, count: int, exclude: frozenset[str] | set[str] = frozenset()) -> list[str]:
        offset = ord(self.start) - ord("b")
        letters = [chr(ord("b") + (offset + i) % 25) for i in range(25)]
        names = [f"{self.prefix}{c}" for c in letters if f"{self.prefix}{c}" not in exclude]
        if count > len(names):
            raise ConfigurationError(
                f"Cannot assign {count} device names, only {len(names)} are free"
            )
        return names[:count]


def device_names_of(mappings: Sequence[Mapping[str, Any]] | None) -> frozenset[str]:
    return frozenset(m["DeviceName"] for m in mappings or () if m.get("DeviceName"))


# =============================================================================
# Launch request mappings
# =============================================================================


def _volume_specs(template: Template) -> list[VolumeSpec]:
    """System disks first, then the template's data volumes."""
    specs: list[VolumeSpec] = [
        {
            "VolumeType": d.volume_type,
            "Size": d.size_gib,
            "Encrypted": d.encrypted,
            **({"KmsKeyId": d.kms_key_id} if d.kms_key_id else {}),
            **({"Iops": d.iops} if d.iops else {}),
        }
        for d in template.system_disks
    ]
    for _ in range(template.ebs_volume_count):
        specs.append({
            "VolumeType": template.ebs_volume_type,
            "Size": template.ebs_volume_size_gib,
            "Encrypted": template.enable_ebs_encryption,
            **({"KmsKeyId": template.ebs_kms_key_id} if template.ebs_kms_key_id else {}),
            **({"Iops": template.ebs_iops} if template.ebs_iops else {}),
        })
    return specs


def block_device_mappings(
    template: Template,
    image: Mapping[str, Any],
    placement: EbsPlacement,
    device_names: DeviceNames | None = None,
) -> list[dict[str, Any]]:
    """Root volume mapping plus, when requested at launch, the data volumes.

    ``image`` is the ``describe_images`` entry of the template's AMI.
    """
    root_name = image.get("RootDeviceName")
    if not root_name:
        raise ConfigurationError(f"Image {template.image} has no root device name")
    mappings: list[dict[str, Any]] = [{
        "DeviceName": root_name,
        "Ebs": {
            "VolumeSize": template.root_volume_size_gib,
            "VolumeType": template.root_volume_type,
            "DeleteOnTermination": True,
        },
    }]
    if placement is not EbsPlacement.AS_INSTANCE_REQUEST:
        return mappings

    specs = _volume_specs(template)
    names = (device_names or DeviceNames()).take(
        len(specs), device_names_of(image.get("BlockDeviceMappings")),
    )
    for name, spec in zip(names, specs, strict=True):
        ebs = {("VolumeSize" if k == "Size" else k): v for k, v in spec.items()}
        mappings.append({"DeviceName": name, "Ebs": {**ebs, "DeleteOnTermination": True}})
    log.debug("Block device mappings: {mappings}", mappings=mappings)
    return mappings


# =============================================================================
# Separate allocation
# =============================================================================


class EBSVolumeOrchestrator:
    """Creates, attaches and cleans up data volumes for running instances.

    Args:
        ec2: EC2 client.
        tagger: Builds the volume tags.
        timeouts: Source of the available/attach/detach timeouts.
        tag_on_create: Tag volumes in ``create_volume``; otherwise they are
            tagged right before being attached.
        device_names: Device name allocator.
        cancel: Optional event interrupting the waits.
    """

    def __init__(
        self,
        ec2: EC2Client,
        tagger: IdentityTagger,
        timeouts: Timeouts,
        *,
        tag_on_create: bool = True,
        device_names: DeviceNames | None = None,
        cancel: threading.Event | None = None,
    ) -> None:
        self.ec2 = ec2
        self.tagger = tagger
        self.tag_on_create = tag_on_create
        self.device_names = device_names or DeviceNames()
        self.cancel = cancel
        self.available_timeout = timeouts.seconds(TimeoutKey.EBS_AVAILABLE_SECONDS)
        self.attach_timeout = timeouts.seconds(TimeoutKey.EBS_ATTACH_SECONDS)
        self.detach_timeout = timeouts.seconds(TimeoutKey.EBS_DETACH_SECONDS)

    def excluded_device_names(self, image_id: str) -> frozenset[str]:
        images = self.ec2.describe_images(ImageIds=[image_id]).get("Images", [])
        if not images:
            raise ConfigurationError(f"Image {image_id} not found")
        return device_names_of(images[0].get("BlockDeviceMappings"))

    def _availability_zone(self, template: Template) -> str:
        if template.availability_zone:
            return template.availability_zone
        subnets = self.ec2.describe_subnets(SubnetIds=[template.subnet_id])["Subnets"]
        return subnets[0]["AvailabilityZone"]

    def create_volumes(
        self, template: Template, instances: Mapping[str, str],
    ) -> list[InstanceVolumes]:
        """One ``create_volume`` per volume per instance.

        Args:
            instances: Virtual id -> EC2 id.

        Returns:
            Volumes per instance; failed requests show up as ``uncreated<N>``
            entries in the error state.
        """
        zone = self._availability_zone(template)
        specs = _volume_specs(template)
        result = []
        uncreated = 0
        for virtual_id, instance_id in instances.items():
            tagging = (
                {"TagSpecifications": self.tagger.tag_specifications(template, virtual_id, "volume")}
                if self.tag_on_create else {}
            )
            volumes: dict[str, VolumeState] = {}
            for spec in specs:
                try:
                    response = self.ec2.create_volume(AvailabilityZone=zone, **spec, **tagging)
                    volumes[response["VolumeId"]] = VolumeState.CREATING
                except ClientError as e:
                    log.error(
                        "Failed to request an EBS volume for {vid}: {err}", vid=virtual_id, err=e,
                    )
                    volumes[uncreated_volume_id(uncreated)] = VolumeState.ERROR
                    uncreated += 1
            result.append(InstanceVolumes(virtual_id, instance_id, volumes))
        return result

    def wait_until_available(self, instances: Sequence[InstanceVolumes]) -> list[InstanceVolumes]:
        """Poll until created volumes settle; anything not available ends in error."""
        to_check = {v for i in instances for v in i.ids_in(VolumeState.CREATING)}
        requested = len(to_check)
        available: set[str] = set()

        def check() -> bool:
            try:
                response = self.ec2.describe_volumes(VolumeIds=sorted(to_check))
            except ClientError as e:
                if error_code(e) != INVALID_VOLUME_NOT_FOUND:
                    raise
                log.info("Requested volume(s) not yet found")
                return False
            for volume in response.get("Volumes", []):
                volume_id = volume["VolumeId"]
                match VolumeState.parse(volume.get("State")):
                    case VolumeState.CREATING:
                        pass
                    case VolumeState.AVAILABLE:
                        to_check.discard(volume_id)
                        available.add(volume_id)
                    case VolumeState.ERROR:
                        to_check.discard(volume_id)
                    case state:
                        raise ProvisioningError(
                            f"Volume {volume_id} went into unexpected state {state} "
                            "while waiting for it to become available"
                        )
            if to_check:
                log.info(
                    "Waiting on {n} out of {total} volumes to reach a final state",
                    n=len(to_check), total=requested,
                )
            return not to_check

        if requested:
            log.info("Waiting up to {s}s for volumes to become available", s=self.available_timeout)
            if not poll_until(
                check, deadline_in(self.available_timeout),
                interval=VOLUME_POLL_INTERVAL, cancel=self.cancel,
            ):
                log.error(
                    "Timed out waiting for volumes, {n} out of {total} became available",
                    n=len(available), total=requested,
                )

        return [
            i.with_states({
                v: VolumeState.AVAILABLE if v in available else VolumeState.ERROR
                for v in i.volumes
            })
            for i in instances
        ]

    def attach_volumes(
        self,
        template: Template,
        instances: Sequence[InstanceVolumes],
        exclude: frozenset[str] = frozenset(),
    ) -> list[InstanceVolumes]:
        """Attach the volumes of instances whose volumes are all available."""
        deadline = deadline_in(self.available_timeout)
        requested: set[str] = set()

        for instance in instances:
            if not instance.all_in(VolumeState.AVAILABLE):
                continue
            names = self.device_names.take(len(instance.volumes), exclude)
            for volume_id, device in zip(instance.volumes, names, strict=True):
                if not self.tag_on_create:
                    self.tagger.tag(
                        self.ec2, [volume_id], template, instance.virtual_id,
                        deadline=deadline, cancel=self.cancel,
                    )
                log.info(
                    "Attaching volume {vol} to {instance} as {device}",
                    vol=volume_id, instance=instance.provider_id, device=device,
                )
                try:
                    retry_until(
                        lambda v=volume_id, d=device, i=instance.provider_id: self.ec2.attach_volume(
                            VolumeId=v, InstanceId=i, Device=d,
                        ),
                        deadline,
                        cancel=self.cancel,
                    )
                    requested.add(volume_id)
                except RetryDeadlineExceeded:
                    log.warning(
                        "Timed out attaching volume {vol} to {instance}",
                        vol=volume_id, instance=instance.provider_id,
                    )
                except ClientError as e:
                    raise_if_unrecoverable(e)
                    log.error(
                        "Failed to attach volume {vol} to {instance} as {device}: {err}",
                        vol=volume_id, instance=instance.provider_id, device=device, err=e,
                    )

        attached = self._wait_until_attached(requested)
        return [
            i.with_states({
                v: VolumeState.IN_USE if v in attached else VolumeState.ERROR for v in i.volumes
            })
            for i in instances
        ]

    def _wait_until_attached(self, volume_ids: set[str]) -> set[str]:
        if not volume_ids:
            log.info("No volumes are being attached, skipping wait")
            return set()

        unattached = set(volume_ids)
        attached: set[str] = set()

        def check() -> bool:
            response = self.ec2.describe_volumes(VolumeIds=sorted(unattached))
            for volume in response.get("Volumes", []):
                if any(a.get("State") == "attached" for a in volume.get("Attachments", [])):
                    unattached.discard(volume["VolumeId"])
                    attached.add(volume["VolumeId"])
            return not unattached

        if not poll_until(
            check, deadline_in(self.attach_timeout),
            interval=VOLUME_POLL_INTERVAL, cancel=self.cancel,
        ):
            log.error(
                "Timed out waiting for attachments, {n} out of {total} volumes attached",
                n=len(attached), total=len(volume_ids),
            )
        return attached

    def refresh_volumes(self, instances: Sequence[InstanceVolumes]) -> list[InstanceVolumes]:
        """Re-describe volumes; anything EC2 no longer reports is in error."""
        refreshed = []
        for instance in instances:
            ids = [v for v in instance.volumes if not is_uncreated(v)]
            states: dict[str, VolumeState] = {}
            if ids:
                for volume in self.ec2.describe_volumes(VolumeIds=ids).get("Volumes", []):
                    states[volume["VolumeId"]] = VolumeState.parse(volume.get("State"))
            refreshed.append(instance.with_states({
                v: states.get(v, VolumeState.ERROR) for v in instance.volumes
            }))
        return refreshed

    def add_delete_on_termination(self, instances: Sequence[InstanceVolumes]) -> None:
        """Flag managed volumes found in each instance's mappings delete-on-termination."""
        deadline = deadline_in(self.available_timeout)
        for instance in instances:
            retry_until(
                lambda i=instance: self._flag_delete_on_termination(i),
                deadline,
                cancel=self.cancel,
            )

    def _flag_delete_on_termination(self, instance: InstanceVolumes) -> None:
        response = self.ec2.describe_instance_attribute(
            InstanceId=instance.provider_id, Attribute="blockDeviceMapping",
        )
        for mapping in response.get("BlockDeviceMappings", []):
            volume_id = mapping.get("Ebs", {}).get("VolumeId")
            if volume_id not in instance.volumes:
                continue
            try:
                self.ec2.modify_instance_attribute(
                    InstanceId=instance.provider_id,
                    BlockDeviceMappings=[{
                        "DeviceName": mapping["DeviceName"],
                        "Ebs": {"VolumeId": volume_id, "DeleteOnTermination": True},
                    }],
                )
            except ClientError as e:
                log.error(
                    "Could not set delete-on-termination on volume {vol}: {err}",
                    vol=volume_id, err=e,
                )

    def _detach(self, volume_id: str) -> bool:
        self.ec2.detach_volume(VolumeId=volume_id)

        def detached() -> bool:
            volumes = self.ec2.describe_volumes(VolumeIds=[volume_id]).get("Volumes", [])
            if len(volumes) != 1:
                return False
            return all(a.get("State") == "detached" for a in volumes[0].get("Attachments", []))

        return poll_until(
            detached, deadline_in(self.detach_timeout),
            interval=VOLUME_POLL_INTERVAL, cancel=self.cancel,
        )

    def delete_volumes(self, volumes: Mapping[str, VolumeState]) -> None:
        """Delete every volume, detaching in-use ones first.

        Every volume is attempted; the first delete failure is re-raised at
        the end.
        """
        log.info("Deleting {n} volumes", n=len(volumes))
        first_error: ClientError | None = None
        for volume_id, state in volumes.items():
            if is_uncreated(volume_id):
                continue
            if state == VolumeState.IN_USE:
                try:
                    if not self._detach(volume_id):
                        log.warning("Unable to detach {vol}, skipping it", vol=volume_id)
                        continue
                except ClientError as e:
                    if is_not_found(e):
                        log.warning("Unable to find {vol}, skipping it", vol=volume_id)
                        continue
                    log.error("Failed to detach volume {vol}: {err}", vol=volume_id, err=e)
            try:
                self.ec2.delete_volume(VolumeId=volume_id)
                log.info("Volume {vol} deleted", vol=volume_id)
            except ClientError as e:
                log.error("Failed to delete volume {vol}: {err}", vol=volume_id, err=e)
                first_error = first_error or e
        if first_error is not None:
            raise first_error

    # -------------------------------------------------------------------------
    # Allocation
    # -------------------------------------------------------------------------

    def _terminate(self, instance_ids: list[str]) -> None:
        if instance_ids:
            log.info("Terminating instances {ids}", ids=instance_ids)
            self.ec2.terminate_instances(InstanceIds=instance_ids)

    def _clean_up(self, instances: Sequence[InstanceVolumes], everything: bool) -> ErrorCollector:
        doomed = [i for i in instances if everything or not i.all_in(VolumeState.IN_USE)]
        errors = ErrorCollector()
        with errors.attempt("terminate instances"):
            self._terminate([i.provider_id for i in doomed])
        for instance in doomed:
            with errors.attempt(f"delete volumes of {instance.virtual_id}"):
                self.delete_volumes(instance.volumes)
        return errors

    def allocate_volumes(
        self, template: Template, instances: Mapping[str, str], min_count: int,
    ) -> dict[str, str]:
        """Give every instance its data volumes.

        Instances that end up without all their volumes attached are
        terminated and their volumes deleted. When fewer than ``min_count``
        instances succeed, every instance and volume is removed and
        AllocationError is raised.

        Args:
            instances: Virtual id -> EC2 id of the running instances.

        Returns:
            Virtual id -> EC2 id of the instances that kept their volumes.
        """
        exclude = self.excluded_device_names(template.image)
        volumes = self.create_volumes(template, instances)
        success = False
        try:
            try:
                volumes = self.wait_until_available(volumes)
                volumes = self.attach_volumes(template, volumes, exclude)
            finally:
                # attachments may complete after their wait timed out
                volumes = self.refresh_volumes(volumes)
                self.add_delete_on_termination(volumes)

            successful = sum(1 for i in volumes if i.all_in(VolumeState.IN_USE))
            log.info(
                "{n} out of {total} instances acquired EBS volumes",
                n=successful, total=len(instances),
            )
            if successful < min_count:
                log.warning(
                    "Fewer than {min} instances acquired EBS volumes, deleting all instances and volumes",
                    min=min_count,
                )
            else:
                success = True
        except FleetError:
            raise
        except Exception as e:
            raise ProvisioningError("Unexpected problem allocating EBS volumes") from e
        finally:
            cleanup = self._clean_up(volumes, everything=not success)

        if not success:
            raise AllocationError(
                f"A minimum of {min_count} instances could not acquire EBS volumes",
                cleanup.errors,
            )
        cleanup.raise_if_any("Problem cleaning up instances without EBS volumes")
        return {
            i.virtual_id: i.provider_id for i in volumes if i.all_in(VolumeState.IN_USE)
        }
