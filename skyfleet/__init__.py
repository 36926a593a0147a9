"""skyfleet - allocate and release groups of EC2 instances as one operation.

Example:

    from skyfleet import AllocationOrchestrator, load_provider_config, resolve_template

    config = load_provider_config()
    orchestrator = AllocationOrchestrator(boto3.client("ec2"), config)

    records = orchestrator.allocate(resolve_template("workers"), ["vm-1", "vm-2"], min_count=1)
    orchestrator.delete(resolve_template("workers"), ["vm-1", "vm-2"])
"""

from loguru import logger

from skyfleet.clients import (
    AutoScalingClientProvider,
    ClientProvider,
    EC2ClientProvider,
    FleetModule,
    STSClientProvider,
)
from skyfleet.config import (
    ProviderConfig,
    TagNames,
    Timeouts,
    load_provider_config,
    load_templates,
    resolve_template,
)
from skyfleet.ec2 import AllocationOrchestrator, EbsPlacement
from skyfleet.ec2.strategies import StrategyKind, select_strategy
from skyfleet.exceptions import (
    AllocationError,
    ConfigurationError,
    FleetError,
    InvalidCredentialsError,
    InvariantViolation,
    OperationCancelled,
    OwnershipError,
    ProvisioningError,
    ResourceLimitExceeded,
    RetryDeadlineExceeded,
    TransientProviderError,
)
from skyfleet.model import InstanceRecord, InstanceStatus, LifecycleState
from skyfleet.observability import LogConfig, setup_logging, teardown_logging
from skyfleet.template import SystemDisk, Template

logger.disable("skyfleet")

__version__ = "0.1.0"

__all__ = [
    # Orchestration
    "AllocationOrchestrator",
    "EbsPlacement",
    "StrategyKind",
    "select_strategy",
    # Clients
    "AutoScalingClientProvider",
    "ClientProvider",
    "EC2ClientProvider",
    "FleetModule",
    "STSClientProvider",
    # Configuration
    "ProviderConfig",
    "SystemDisk",
    "TagNames",
    "Template",
    "Timeouts",
    "load_provider_config",
    "load_templates",
    "resolve_template",
    # Records
    "InstanceRecord",
    "InstanceStatus",
    "LifecycleState",
    # Logging
    "LogConfig",
    "setup_logging",
    "teardown_logging",
    # Errors
    "AllocationError",
    "ConfigurationError",
    "FleetError",
    "InvalidCredentialsError",
    "InvariantViolation",
    "OperationCancelled",
    "OwnershipError",
    "ProvisioningError",
    "ResourceLimitExceeded",
    "RetryDeadlineExceeded",
    "TransientProviderError",
    "__version__",
]
