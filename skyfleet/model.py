"""Records produced and consumed by the allocation engine.

Records are immutable snapshots of what EC2 reported. They are built from a
describe result and never transitioned locally; a newer state means a new
describe call. Nothing here is cached across orchestrator calls.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from skyfleet.constants import TERMINAL_STATES, UNCREATED_VOLUME_ID
from skyfleet.exceptions import ConfigurationError

if TYPE_CHECKING:
    from skyfleet.template import Template

type VirtualInstanceId = str
type ProviderInstanceId = str
type InstanceDescription = Mapping[str, Any]
"""A single ``Instances[]`` entry of an EC2 ``describe_instances`` response."""


# =============================================================================
# States
# =============================================================================


class LifecycleState(StrEnum):
    """EC2 lifecycle state as observed by the last describe call."""

    PENDING = "pending"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting-down"
    TERMINATED = "terminated"
    STOPPING = "stopping"
    STOPPED = "stopped"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, name: str | None) -> LifecycleState:
        try:
            return cls(name) if name else cls.UNKNOWN
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_terminal(self) -> bool:
        return self.value in TERMINAL_STATES


class InstanceStatus(StrEnum):
    """Portable instance status reported to callers."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"
    DELETING = "DELETING"
    DELETED = "DELETED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def from_lifecycle(cls, state: LifecycleState) -> InstanceStatus:
        match state:
            case LifecycleState.PENDING:
                return cls.PENDING
            case LifecycleState.RUNNING:
                return cls.RUNNING
            case LifecycleState.SHUTTING_DOWN:
                return cls.DELETING
            case LifecycleState.TERMINATED:
                return cls.DELETED
            case LifecycleState.STOPPING:
                return cls.STOPPING
            case LifecycleState.STOPPED:
                return cls.STOPPED
            case _:
                return cls.UNKNOWN


class VolumeState(StrEnum):
    """EBS volume states, plus the local ``error`` verdict."""

    CREATING = "creating"
    AVAILABLE = "available"
    IN_USE = "in-use"
    DELETING = "deleting"
    DELETED = "deleted"
    ERROR = "error"

    @classmethod
    def parse(cls, name: str | None) -> VolumeState:
        try:
            return cls(name) if name else cls.ERROR
        except ValueError:
            return cls.ERROR


def state_of(description: InstanceDescription) -> LifecycleState:
    return LifecycleState.parse(description.get("State", {}).get("Name"))


def tags_of(description: Mapping[str, Any]) -> dict[str, str]:
    return {t["Key"]: t["Value"] for t in description.get("Tags", []) or []}


# =============================================================================
# Instances
# =============================================================================


@dataclass(frozen=True, slots=True)
class InstanceRecord:
    """An EC2 instance resolved to its virtual instance id."""

    virtual_id: VirtualInstanceId
    provider_id: ProviderInstanceId
    state: LifecycleState
    tags: Mapping[str, str] = field(default_factory=dict)
    private_ip: str | None = None
    public_ip: str | None = None
    instance_type: str | None = None
    image_id: str | None = None
    key_name: str | None = None

    @classmethod
    def from_description(
        cls, virtual_id: VirtualInstanceId, description: InstanceDescription,
    ) -> InstanceRecord:
        return cls(
            virtual_id=virtual_id,
            provider_id=description["InstanceId"],
            state=state_of(description),
            tags=tags_of(description),
            private_ip=description.get("PrivateIpAddress"),
            public_ip=description.get("PublicIpAddress"),
            instance_type=description.get("InstanceType"),
            image_id=description.get("ImageId"),
            key_name=description.get("KeyName"),
        )

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def status(self) -> InstanceStatus:
        return InstanceStatus.from_lifecycle(self.state)


@dataclass(frozen=True, slots=True)
class AllocationRequest:
    """Best effort to allocate ``len(virtual_ids)``; success needs ``min_count``."""

    template: Template
    virtual_ids: tuple[VirtualInstanceId, ...]
    min_count: int

    def __post_init__(self) -> None:
        if len(set(self.virtual_ids)) != len(self.virtual_ids):
            raise ConfigurationError("virtual instance ids must be unique")
        if not 0 <= self.min_count <= len(self.virtual_ids):
            raise ConfigurationError(
                f"min_count must be between 0 and {len(self.virtual_ids)}, got {self.min_count}"
            )

    @classmethod
    def of(
        cls, template: Template, virtual_ids: Sequence[str], min_count: int,
    ) -> AllocationRequest:
        return cls(template=template, virtual_ids=tuple(virtual_ids), min_count=min_count)

    @property
    def count(self) -> int:
        return len(self.virtual_ids)


# =============================================================================
# Volumes
# =============================================================================


def uncreated_volume_id(n: int) -> str:
    return f"{UNCREATED_VOLUME_ID}{n}"


def is_uncreated(volume_id: str) -> bool:
    return volume_id.startswith(UNCREATED_VOLUME_ID)


@dataclass(frozen=True, slots=True)
class InstanceVolumes:
    """Volumes requested for one instance, keyed by volume id in creation order."""

    virtual_id: VirtualInstanceId
    provider_id: ProviderInstanceId
    volumes: Mapping[str, VolumeState]

    def with_states(self, volumes: Mapping[str, VolumeState]) -> InstanceVolumes:
        return InstanceVolumes(self.virtual_id, self.provider_id, dict(volumes))

    def all_in(self, state: VolumeState) -> bool:
        return all(s == state for s in self.volumes.values())

    def ids_in(self, state: VolumeState) -> list[str]:
        return [v for v, s in self.volumes.items() if s == state]
