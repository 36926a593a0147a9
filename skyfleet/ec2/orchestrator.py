"""AllocationOrchestrator - entry points of the allocation engine.

Every call builds a fresh strategy for the template and the ids it was
given; nothing is cached between calls, so each one starts from what EC2
reports right now.

Flow of ``allocate``:

1. Validate the template's user tags
2. Pick a strategy (scaling group, spot or on-demand) and allocate
3. When volumes are created separately, give every allocated instance its
   volumes and drop the instances that could not get them
"""

from __future__ import annotations

import threading
from collections.abc import Sequence
from typing import TYPE_CHECKING

from loguru import logger

from skyfleet.ec2.errors import propagate_aws_errors
from skyfleet.ec2.fingerprints import wait_for_fingerprints
from skyfleet.ec2.reconciler import IdType, InstanceReconciler, id_type_for
from skyfleet.ec2.strategies import AllocationContext, select_strategy
from skyfleet.ec2.tagging import IdentityTagger
from skyfleet.ec2.volumes import EBSVolumeOrchestrator, EbsPlacement, ebs_placement
from skyfleet.model import AllocationRequest, InstanceRecord, InstanceStatus

if TYPE_CHECKING:
    from mypy_boto3_autoscaling import AutoScalingClient
    from mypy_boto3_ec2 import EC2Client

    from skyfleet.config import ProviderConfig
    from skyfleet.template import Template

log = logger.bind(component="orchestrator")


class AllocationOrchestrator:
    """Allocate, delete and inspect groups of EC2 instances.

    Args:
        ec2: EC2 client.
        config: Provider configuration.
        autoscaling: Auto Scaling client, needed for automatic templates.
        cancel: Optional event interrupting every wait of every call.
    """

    def __init__(
        self,
        ec2: EC2Client,
        config: ProviderConfig,
        autoscaling: AutoScalingClient | None = None,
        *,
        cancel: threading.Event | None = None,
    ) -> None:
        self.ec2 = ec2
        self.config = config
        self.cancel = cancel
        self.tagger = IdentityTagger(config.tags)
        self.reconciler = InstanceReconciler(ec2, self.tagger, cancel=cancel)
        self.context = AllocationContext(
            ec2=ec2,
            tagger=self.tagger,
            reconciler=self.reconciler,
            config=config,
            autoscaling=autoscaling,
            cancel=cancel,
        )
        self.volumes = EBSVolumeOrchestrator(
            ec2,
            self.tagger,
            config.timeouts,
            tag_on_create=config.tag_on_create,
            cancel=cancel,
        )

    @propagate_aws_errors
    def allocate(
        self, template: Template, virtual_ids: Sequence[str], min_count: int,
    ) -> list[InstanceRecord]:
        """Allocate up to ``len(virtual_ids)`` instances, at least ``min_count``.

        Returns:
            Only instances that are usable: started, with a private IP, and
            with their data volumes attached.

        Raises:
            AllocationError: Fewer than ``min_count`` instances could be
                allocated. Everything launched by this call was released.
        """
        request = AllocationRequest.of(template, virtual_ids, min_count)
        self.tagger.validate_tags(template.tags)

        strategy = select_strategy(template)(
            self.context, template, request.virtual_ids, request.min_count,
        )
        log.info("Allocating {n} instances with {strategy}", n=request.count, strategy=strategy)
        records = strategy.allocate()

        if ebs_placement(template, self.config.allocate_ebs_separately) is not (
            EbsPlacement.AS_SEPARATE_REQUESTS
        ):
            return records
        if not records:
            log.info("Skipping EBS volume allocation since no instances were allocated")
            return records

        log.info("Allocating EBS volumes for {n} instances", n=len(records))
        kept = self.volumes.allocate_volumes(
            template, {r.virtual_id: r.provider_id for r in records}, request.min_count,
        )
        return [r for r in records if r.virtual_id in kept]

    @propagate_aws_errors
    def delete(self, template: Template | None, virtual_ids: Sequence[str]) -> None:
        """Release the instances of ``virtual_ids``. Idempotent.

        With an automatic template and no ids, the whole scaling group and
        its launch template are deleted. A None template is treated as an
        on-demand one.
        """
        if not virtual_ids and id_type_for(template) is IdType.VIRTUAL_INSTANCE_ID:
            log.debug("Nothing to delete")
            return
        strategy = select_strategy(template)(self.context, template, virtual_ids, 0)  # type: ignore[arg-type]
        log.info("Deleting {n} instances with {strategy}", n=len(virtual_ids), strategy=strategy)
        strategy.delete()

    @propagate_aws_errors
    def get_state(
        self, template: Template | None, virtual_ids: Sequence[str],
    ) -> dict[str, InstanceStatus]:
        """Status per id; ids without an instance are UNKNOWN."""
        return self.reconciler.instance_states(template, virtual_ids)

    @propagate_aws_errors
    def find(self, template: Template | None, virtual_ids: Sequence[str]) -> list[InstanceRecord]:
        log.debug("Finding instances {ids}", ids=list(virtual_ids))
        records = self.reconciler.find(template, virtual_ids)
        log.debug(
            "Found {n} instances for {total} instance ids", n=len(records), total=len(virtual_ids),
        )
        return records

    @propagate_aws_errors
    def host_key_fingerprints(
        self, template: Template | None, virtual_ids: Sequence[str],
    ) -> dict[str, frozenset[str]]:
        """SSH host key fingerprints per id, read from the console output."""
        if id_type_for(template) is IdType.EC2_INSTANCE_ID:
            instances = {i: i for i in virtual_ids}
        else:
            instances = self.reconciler.provider_ids(template, virtual_ids)
        return wait_for_fingerprints(self.ec2, instances, cancel=self.cancel)
