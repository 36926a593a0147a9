"""AWS client providers with dependency injection.

A client provider creates its boto3 client on first use, optionally
verifying credentials and connectivity with one cheap call, and hands the
same client out afterwards. The configuration a provider was first used
with is immutable: asking again with a different one is a programming
error.

Usage:
    >>> from injector import Injector
    >>> from skyfleet.clients import FleetModule
    >>> from skyfleet.config import ProviderConfig
    >>> from skyfleet.ec2.orchestrator import AllocationOrchestrator
    >>>
    >>> injector = Injector([FleetModule(ProviderConfig(region="us-west-2"))])
    >>> orchestrator = injector.get(AllocationOrchestrator)
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Any, ClassVar

import boto3
from injector import Binder, Module, provider, singleton
from loguru import logger

from skyfleet.config import ProviderConfig
from skyfleet.ec2.errors import propagate_aws_errors
from skyfleet.ec2.orchestrator import AllocationOrchestrator
from skyfleet.exceptions import InvariantViolation

if TYPE_CHECKING:
    from mypy_boto3_autoscaling import AutoScalingClient
    from mypy_boto3_ec2 import EC2Client
    from mypy_boto3_sts import STSClient

log = logger.bind(component="clients")


# =============================================================================
# Client Providers
# =============================================================================


class ClientProvider[T]:
    """Creates a client once per configuration and memoises it.

    Args:
        session: boto3 session the client is created from.
    """

    service: ClassVar[str]

    def __init__(self, session: boto3.Session | None = None) -> None:
        self._session = session or boto3.Session()
        self._lock = threading.Lock()
        self._client: T | None = None
        self._config: ProviderConfig | None = None

    def get_client(self, config: ProviderConfig, verify: bool = False) -> T:
        """Return the client for ``config``, creating it on first use.

        Raises:
            InvariantViolation: A client was already created for a
                different configuration.
        """
        with self._lock:
            if self._client is None:
                self._client = self._configure(config, verify)
                self._config = config
            elif config != self._config:
                raise InvariantViolation("invariance violation: configuration immutable but changed")
            return self._client

    @propagate_aws_errors
    def _configure(self, config: ProviderConfig, verify: bool) -> T:
        log.info("Creating {service} client for {region}", service=self.service, region=config.region)
        client: Any = self._session.client(self.service, region_name=config.region)
        if verify:
            log.debug("Verifying {service} client", service=self.service)
            self.verify(client)
        return client

    def verify(self, client: T) -> None:
        """One read-only call proving credentials and connectivity."""
        raise NotImplementedError


class EC2ClientProvider(ClientProvider["EC2Client"]):
    service = "ec2"

    def verify(self, client: EC2Client) -> None:
        client.describe_regions()


class AutoScalingClientProvider(ClientProvider["AutoScalingClient"]):
    service = "autoscaling"

    def verify(self, client: AutoScalingClient) -> None:
        client.describe_account_limits()


class STSClientProvider(ClientProvider["STSClient"]):
    service = "sts"

    def verify(self, client: STSClient) -> None:
        identity = client.get_caller_identity()
        log.info("Using AWS account {account}", account=identity.get("Account"))


# =============================================================================
# Fleet Module
# =============================================================================


class FleetModule(Module):
    """DI module providing the client providers and the orchestrator.

    Args:
        config: Provider configuration. When None, it must be bound by
            another module.
        verify: Verify every client when it is created.
    """

    def __init__(self, config: ProviderConfig | None = None, *, verify: bool = False) -> None:
        self._config = config
        self._verify = verify

    def configure(self, binder: Binder) -> None:
        if self._config is not None:
            binder.bind(ProviderConfig, to=self._config)

    @singleton
    @provider
    def provide_session(self) -> boto3.Session:
        """Provide singleton boto3 session."""
        return boto3.Session()

    @singleton
    @provider
    def provide_ec2(self, session: boto3.Session) -> EC2ClientProvider:
        return EC2ClientProvider(session)

    @singleton
    @provider
    def provide_autoscaling(self, session: boto3.Session) -> AutoScalingClientProvider:
        return AutoScalingClientProvider(session)

    @singleton
    @provider
    def provide_sts(self, session: boto3.Session) -> STSClientProvider:
        return STSClientProvider(session)

    @singleton
    @provider
    def provide_orchestrator(
        self,
        config: ProviderConfig,
        ec2: EC2ClientProvider,
        autoscaling: AutoScalingClientProvider,
    ) -> AllocationOrchestrator:
        """Provide the orchestrator wired to this configuration's clients."""
        return AllocationOrchestrator(
            ec2.get_client(config, self._verify),
            config,
            autoscaling.get_client(config, self._verify),
        )


__all__ = [
    "AutoScalingClientProvider",
    "ClientProvider",
    "EC2ClientProvider",
    "FleetModule",
    "STSClientProvider",
]
