"""Centralized constants and enums for skyfleet.

EC2 limits, tag names, wait intervals and timeout keys live here so the
allocation code never carries magic strings.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Final

# =============================================================================
# Resource Tags
# =============================================================================


class FleetTag(StrEnum):
    """Default tag keys reserved by skyfleet on every managed resource."""

    INSTANCE_ID = "skyfleet:instance-id"
    TEMPLATE_NAME = "skyfleet:template-name"
    NAME = "Name"


MAX_TAGS_PER_RESOURCE: Final = 50
MAX_USER_TAGS: Final = MAX_TAGS_PER_RESOURCE - len(FleetTag)


# =============================================================================
# EC2 Instance States
# =============================================================================


class InstanceState(StrEnum):
    """EC2 instance state names."""

    PENDING = "pending"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting-down"
    TERMINATED = "terminated"
    STOPPING = "stopping"
    STOPPED = "stopped"


TERMINAL_STATES: Final = frozenset({InstanceState.TERMINATED, InstanceState.SHUTTING_DOWN})


# =============================================================================
# EC2 Spot Request States
# =============================================================================


class SpotRequestState(StrEnum):
    OPEN = "open"
    ACTIVE = "active"
    CLOSED = "closed"
    CANCELLED = "cancelled"
    FAILED = "failed"


SPOT_STATUS_CANCELED_AND_RUNNING: Final = "request-canceled-and-instance-running"
SPOT_STATUS_PRICE_TOO_LOW: Final = "price-too-low"


# =============================================================================
# Batching
# =============================================================================

TAG_FILTER_BATCH_SIZE: Final = 200
STATUS_BATCH_SIZE: Final = 95


# =============================================================================
# AWS Error Codes
# =============================================================================

INVALID_INSTANCE_ID_NOT_FOUND: Final = "InvalidInstanceID.NotFound"
INVALID_INSTANCE_ID_MALFORMED: Final = "InvalidInstanceID.Malformed"
INVALID_VOLUME_NOT_FOUND: Final = "InvalidVolume.NotFound"
INSUFFICIENT_INSTANCE_CAPACITY: Final = "InsufficientInstanceCapacity"
INSTANCE_LIMIT_EXCEEDED: Final = "InstanceLimitExceeded"
REQUEST_LIMIT_EXCEEDED: Final = "RequestLimitExceeded"
MAX_SPOT_INSTANCE_COUNT_EXCEEDED: Final = "MaxSpotInstanceCountExceeded"


# =============================================================================
# EBS
# =============================================================================

UNCREATED_VOLUME_ID: Final = "uncreated"
DEVICE_NAME_PREFIX: Final = "/dev/sd"
DEVICE_NAME_START_CHAR: Final = "f"
VOLUME_POLL_INTERVAL: Final = 5.0


# =============================================================================
# Scaling Groups
# =============================================================================

SCALING_PROCESS_REPLACE_UNHEALTHY: Final = "ReplaceUnhealthy"
SCALING_PROCESS_AZ_REBALANCE: Final = "AZRebalance"


# =============================================================================
# Wait Intervals (seconds)
# =============================================================================

DEFAULT_RETRY_BACKOFF: Final = 5.0
FIND_POLL_INTERVAL: Final = 1.0
PRIVATE_IP_POLL_INTERVAL: Final = 5.0
SPOT_POLL_INTERVAL: Final = 1.0
FINDABLE_POLL_INTERVAL: Final = 5.0
SCALING_GROUP_RETRY_INTERVAL: Final = 1.0
HOST_KEY_POLL_INTERVAL: Final = 10.0
HOST_KEY_WAIT_SECONDS: Final = 6 * 60


# =============================================================================
# Timeout Keys
# =============================================================================


class TimeoutKey(StrEnum):
    """Keys accepted in the ``[timeouts]`` configuration table."""

    EBS_AVAILABLE_SECONDS = "ec2.ebs.availableSeconds"
    EBS_ATTACH_SECONDS = "ec2.ebs.attachSeconds"
    EBS_DETACH_SECONDS = "ec2.ebs.detachSeconds"
    INSTANCE_STARTED_MS = "ec2.instance.waitUntilStartedMilliseconds"
    INSTANCE_FINDABLE_MS = "ec2.instance.waitUntilFindableMilliseconds"
    SPOT_REQUEST_DURATION_MS = "ec2.spot.requestDurationMilliseconds"
    ASG_REQUEST_DURATION_MS = "ec2.asg.requestDurationMilliseconds"
    ASG_INSTANCE_POLL_MS = "ec2.asg.instancePollDurationMilliseconds"


DEFAULT_TIMEOUTS: Final[dict[TimeoutKey, float]] = {
    TimeoutKey.EBS_AVAILABLE_SECONDS: 180,
    TimeoutKey.EBS_ATTACH_SECONDS: 180,
    TimeoutKey.EBS_DETACH_SECONDS: 180,
    TimeoutKey.INSTANCE_STARTED_MS: 30 * 60 * 1000,
    TimeoutKey.INSTANCE_FINDABLE_MS: 10 * 60 * 1000,
    TimeoutKey.SPOT_REQUEST_DURATION_MS: 10 * 60 * 1000,
    TimeoutKey.ASG_REQUEST_DURATION_MS: 10 * 60 * 1000,
    TimeoutKey.ASG_INSTANCE_POLL_MS: 1000,
}
