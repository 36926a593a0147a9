"""Instance templates.

A Template is the immutable, already-validated description of the instances
to launch. The allocation engine only reads typed fields from it; parsing
happens once, in ``Template.from_mapping``.

Example:
    >>> from skyfleet.template import Template
    >>> template = Template(
    ...     name="workers",
    ...     image="ami-0abcdef1234567890",
    ...     instance_type="m5.xlarge",
    ...     subnet_id="subnet-0123456789abcdef0",
    ...     ebs_volume_count=2,
    ... )
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from typing import Any

from skyfleet.exceptions import ConfigurationError


@dataclass(frozen=True, slots=True)
class SystemDisk:
    """An extra EBS volume with its own type, size and encryption settings."""

    volume_type: str
    size_gib: int
    encrypted: bool = False
    kms_key_id: str | None = None
    iops: int | None = None


@dataclass(frozen=True, slots=True)
class Template:
    """Immutable description of the instances of one group.

    Args:
        name: Template name, written to the template-name tag.
        image: AMI id.
        instance_type: EC2 instance type.
        subnet_id: Subnet the instances are launched into.
        security_group_ids: Security groups of the primary network interface.
        key_name: EC2 key pair name.
        availability_zone: Placement AZ. If None, derived from the subnet.
        placement_group: Placement group name.
        tenancy: Placement tenancy.
        iam_profile_name: Instance profile name.
        user_data: Base64 user data passed to the instances.
        ebs_optimized: Request EBS-optimized instances.
        root_volume_size_gib: Root volume size.
        root_volume_type: Root volume type.
        ebs_volume_count: Number of data volumes per instance.
        ebs_volume_size_gib: Size of each data volume.
        ebs_volume_type: Type of each data volume.
        ebs_iops: Provisioned IOPS for data volumes.
        enable_ebs_encryption: Encrypt data volumes.
        ebs_kms_key_id: Customer managed KMS key for data volumes.
        system_disks: Additional volumes with their own settings.
        use_spot_instances: Launch through spot instance requests.
        spot_price_usd_per_hour: Maximum spot bid. None bids the on-demand price.
        block_duration_minutes: Spot block duration.
        automatic: The group is managed by an Auto Scaling group.
        group_id: Name of the Auto Scaling group and its launch template.
        enable_automatic_instance_processing: Leave ReplaceUnhealthy and
            AZRebalance enabled on the Auto Scaling group.
        tags: User tags applied to every resource of the group.
    """

    name: str
    image: str
    instance_type: str
    subnet_id: str
    security_group_ids: tuple[str, ...] = ()
    key_name: str | None = None
    availability_zone: str | None = None
    placement_group: str | None = None
    tenancy: str = "default"
    iam_profile_name: str | None = None
    user_data: str | None = None
    ebs_optimized: bool = False
    root_volume_size_gib: int = 50
    root_volume_type: str = "gp3"
    ebs_volume_count: int = 0
    ebs_volume_size_gib: int = 500
    ebs_volume_type: str = "st1"
    ebs_iops: int | None = None
    enable_ebs_encryption: bool = False
    ebs_kms_key_id: str | None = None
    system_disks: tuple[SystemDisk, ...] = ()
    use_spot_instances: bool = False
    spot_price_usd_per_hour: float | None = None
    block_duration_minutes: int | None = None
    automatic: bool = False
    group_id: str | None = None
    enable_automatic_instance_processing: bool = False
    tags: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.ebs_volume_count < 0:
            raise ConfigurationError("ebs_volume_count must not be negative")
        if self.automatic and not self.group_id:
            raise ConfigurationError(f"Template '{self.name}' is automatic but has no group_id")

    @property
    def has_volumes(self) -> bool:
        return self.ebs_volume_count > 0 or bool(self.system_disks)

    @classmethod
    def from_mapping(cls, name: str, raw: Mapping[str, Any]) -> Template:
        """Build a template from a ``[templates.<name>]`` TOML table."""
        raw = dict(raw)
        known = {f.name for f in fields(cls)}
        unknown = set(raw) - known
        if unknown:
            raise ConfigurationError(
                f"Unknown template field(s) for '{name}': {', '.join(sorted(unknown))}"
            )
        raw.setdefault("name", name)
        if "security_group_ids" in raw:
            raw["security_group_ids"] = tuple(raw["security_group_ids"])
        if "system_disks" in raw:
            raw["system_disks"] = tuple(SystemDisk(**d) for d in raw["system_disks"])
        try:
            return cls(**raw)
        except TypeError as e:
            raise ConfigurationError(f"Invalid template '{name}': {e}") from e
