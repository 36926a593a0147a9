"""On-demand allocation through ``run_instances``."""

from __future__ import annotations

import uuid
from typing import Any

from botocore.exceptions import ClientError
from loguru import logger

from skyfleet.constants import INSTANCE_LIMIT_EXCEEDED, INSUFFICIENT_INSTANCE_CAPACITY
from skyfleet.ec2.errors import ErrorCollector, raise_if_unrecoverable, translate_client_error
from skyfleet.ec2.reconciler import is_alive
from skyfleet.exceptions import AllocationError, FleetError, ProvisioningError
from skyfleet.model import InstanceDescription, InstanceRecord
from skyfleet.retry import deadline_in, error_code

from .base import BaseStrategy

log = logger.bind(component="on-demand")


class OnDemandStrategy(BaseStrategy):
    """Launch on-demand instances, reusing any found alive for the same ids.

    With tag-on-create, every missing virtual id gets its own request with
    the tags in it. Otherwise one bulk request launches every missing
    instance and each one is tagged once it has started.
    """

    def _run_request(self, **extra: Any) -> dict[str, Any]:
        return {
            **self.launch_specification(),
            "ClientToken": str(uuid.uuid4()),
            **extra,
        }

    def _launch_tagged(
        self, missing: list[str], instances: dict[str, InstanceDescription], errors: ErrorCollector,
    ) -> None:
        for virtual_id in missing:
            tags = self.tagger.tag_specifications(self.template, virtual_id, "instance", "volume")
            try:
                response = self.ec2.run_instances(
                    **self._run_request(MinCount=1, MaxCount=1, TagSpecifications=tags),
                )
            except ClientError as e:
                log.error(
                    "AWS error while requesting instance {vid}, code: {code}",
                    vid=virtual_id, code=error_code(e),
                )
                errors.add(e)
                continue
            instances[virtual_id] = response["Instances"][0]
            log.info(
                "Reservation {res}: instance {id}",
                res=response.get("ReservationId"), id=instances[virtual_id]["InstanceId"],
            )

    def _launch_bulk(
        self,
        missing: list[str],
        instances: dict[str, InstanceDescription],
        unsuccessful: dict[str, InstanceDescription],
        errors: ErrorCollector,
    ) -> None:
        min_count = max(1, self.min_count - len(instances))
        launched: list[InstanceDescription] = []
        try:
            response = self.ec2.run_instances(
                **self._run_request(MinCount=min_count, MaxCount=len(missing)),
            )
            launched = response.get("Instances", [])
        except ClientError as e:
            raise_if_unrecoverable(e)
            if error_code(e) not in (INSUFFICIENT_INSTANCE_CAPACITY, INSTANCE_LIMIT_EXCEEDED):
                raise translate_client_error(e) from e
            log.warning("Hit instance capacity issues, attempting to proceed: {err}", err=e)
            errors.add(e)

        deadline = deadline_in(self.findable_timeout)
        for virtual_id, instance in zip(missing, launched, strict=False):
            if self.tag_instance(virtual_id, instance["InstanceId"], deadline):
                instances[virtual_id] = instance
            else:
                log.info("Instance {id} could not be tagged", id=instance["InstanceId"])
                unsuccessful[virtual_id] = instance

    def _usable(
        self,
        instances: dict[str, InstanceDescription],
        unsuccessful: dict[str, InstanceDescription],
    ) -> dict[str, InstanceDescription]:
        """Started instances with a private IP; the rest move to ``unsuccessful``."""
        deadline = deadline_in(self.started_timeout)
        usable: dict[str, InstanceDescription] = {}
        without_ip: dict[str, str] = {}
        for virtual_id, instance in instances.items():
            instance_id = instance["InstanceId"]
            if not self.wait_until_started(instance_id, deadline):
                log.info("Instance {id} did not start", id=instance_id)
            elif instance.get("PrivateIpAddress"):
                usable[virtual_id] = instance
            else:
                without_ip[virtual_id] = instance_id
        usable.update(self.wait_for_private_ips(without_ip, deadline))
        for virtual_id, instance in instances.items():
            if virtual_id not in usable:
                unsuccessful[virtual_id] = instance
        return usable

    def allocate(self) -> list[InstanceRecord]:
        log.info(
            "Requesting {n} instances for {template}",
            n=len(self.virtual_ids), template=self.template.name,
        )
        success = False
        instances = self.reconciler.describe(self.virtual_ids, self.template, is_alive)
        unsuccessful: dict[str, InstanceDescription] = {}
        errors = ErrorCollector()
        if instances:
            log.info("Instances already allocated: {ids}", ids=sorted(instances))

        try:
            missing = [v for v in self.virtual_ids if v not in instances]
            log.info("Building {n} instance requests", n=len(missing))
            if missing and self.context.config.tag_on_create:
                self._launch_tagged(missing, instances, errors)
            elif missing:
                self._launch_bulk(missing, instances, unsuccessful, errors)

            usable: dict[str, InstanceDescription] = {}
            if len(instances) >= self.min_count:
                usable = self._usable(instances, unsuccessful)
                if len(usable) >= self.min_count:
                    success = True
                    if unsuccessful:
                        self.terminate([i["InstanceId"] for i in unsuccessful.values()])
                    return [
                        InstanceRecord.from_description(vid, desc) for vid, desc in usable.items()
                    ]

            reasons = self.state_reasons([i["InstanceId"] for i in unsuccessful.values()])
            raise AllocationError(
                "Problem allocating on-demand instances",
                [translate_client_error(e) for e in errors.errors],
                reasons,
            )
        except FleetError:
            raise
        except Exception as e:
            raise ProvisioningError("Unexpected problem during instance allocation") from e
        finally:
            if not success:
                log.error("Unsuccessful allocation of on-demand instances, terminating instances")
                try:
                    self.terminate(list(dict.fromkeys(
                        i["InstanceId"] for i in (*instances.values(), *unsuccessful.values())
                    )))
                except FleetError as e:
                    log.error("Error terminating instances after failed allocation: {err}", err=e)
