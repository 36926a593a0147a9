"""Spot allocation through one-instance spot requests.

Each virtual id gets its own spot request, tagged with the virtual id so
that a retried allocation can pick up requests and instances left behind by
an earlier attempt. Whatever the outcome, every request is cancelled before
returning, and instances that cannot be tied to a virtual id are
terminated.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from botocore.exceptions import ClientError
from loguru import logger

from skyfleet.constants import (
    FINDABLE_POLL_INTERVAL,
    INSTANCE_LIMIT_EXCEEDED,
    INSUFFICIENT_INSTANCE_CAPACITY,
    MAX_SPOT_INSTANCE_COUNT_EXCEEDED,
    REQUEST_LIMIT_EXCEEDED,
    SPOT_POLL_INTERVAL,
    SPOT_STATUS_CANCELED_AND_RUNNING,
    SPOT_STATUS_PRICE_TOO_LOW,
    SpotRequestState,
    TimeoutKey,
)
from skyfleet.ec2.errors import ErrorCollector, raise_if_unrecoverable
from skyfleet.ec2.reconciler import is_alive
from skyfleet.exceptions import AllocationError, FleetError, ProvisioningError, RetryDeadlineExceeded
from skyfleet.model import InstanceRecord
from skyfleet.retry import deadline_in, error_code, poll_until, retry_until

from .base import AllocationContext, BaseStrategy

if TYPE_CHECKING:
    from skyfleet.template import Template

log = logger.bind(component="spot")

_REQUEST_WARNINGS = {
    MAX_SPOT_INSTANCE_COUNT_EXCEEDED:
        "Some spot instances were not allocated due to reaching the max spot instance request limit",
    INSUFFICIENT_INSTANCE_CAPACITY:
        "Some instances were not allocated due to instance limits or capacity issues",
    INSTANCE_LIMIT_EXCEEDED:
        "Some instances were not allocated due to instance limits or capacity issues",
    REQUEST_LIMIT_EXCEEDED: "Encountered rate limit errors while allocating instances",
}


@dataclass(slots=True)
class SpotAllocationRecord:
    """Progress of one virtual instance through the spot workflow."""

    virtual_id: str
    request_id: str | None = None
    instance_id: str | None = None
    tagged: bool = False
    private_ip: str | None = None

    @property
    def allocated(self) -> bool:
        return self.instance_id is not None and self.tagged


class SpotStrategy(BaseStrategy):
    """Allocate spot instances, one request per virtual id."""

    def __init__(
        self,
        context: AllocationContext,
        template: Template,
        virtual_ids: Sequence[str],
        min_count: int,
    ) -> None:
        super().__init__(context, template, virtual_ids, min_count)
        duration = context.timeouts.seconds(TimeoutKey.SPOT_REQUEST_DURATION_MS)
        self.expires_at = datetime.now(UTC) + timedelta(seconds=duration)
        self.deadline = deadline_in(duration)
        self.records = {vid: SpotAllocationRecord(vid) for vid in self.virtual_ids}
        self.untagged_requests: dict[str, str] = {}
        self.warnings: list[str] = []

    # -------------------------------------------------------------------------
    # Orphans
    # -------------------------------------------------------------------------

    def _reuse_orphaned_instances(self) -> None:
        log.info("Checking for orphaned spot instances")
        found = self.reconciler.describe(self.virtual_ids, self.template, is_alive)
        for virtual_id, instance in found.items():
            log.info(
                "Found orphaned instance {id} / {vid}, will reuse",
                id=instance["InstanceId"], vid=virtual_id,
            )
            record = self.records[virtual_id]
            record.instance_id = instance["InstanceId"]
            record.tagged = True
            record.private_ip = instance.get("PrivateIpAddress")

    def _reuse_orphaned_requests(self) -> set[str]:
        log.info("Checking for orphaned spot instance requests")
        reused: set[str] = set()
        response = self.ec2.describe_spot_instance_requests(
            Filters=[{"Name": f"tag:{self.tagger.id_tag}", "Values": self.virtual_ids}],
        )
        for request in response.get("SpotInstanceRequests", []):
            request_id = request["SpotInstanceRequestId"]
            virtual_id = self.tagger.find_virtual_id(request.get("Tags"))
            if virtual_id is None or virtual_id not in self.records:
                log.warning("Orphaned spot request {id} has no virtual instance id", id=request_id)
                continue
            record = self.records[virtual_id]
            match request.get("State"):
                case SpotRequestState.ACTIVE:
                    log.info(
                        "Reusing fulfilled orphaned spot request {id} / {vid}",
                        id=request_id, vid=virtual_id,
                    )
                    record.request_id = request_id
                    record.instance_id = record.instance_id or request.get("InstanceId")
                    reused.add(request_id)
                case SpotRequestState.CANCELLED | SpotRequestState.CLOSED | SpotRequestState.FAILED:
                    pass
                case _:
                    valid_until = request.get("ValidUntil")
                    if valid_until is not None and valid_until > datetime.now(UTC):
                        log.info(
                            "Reusing pending orphaned spot request {id} / {vid}",
                            id=request_id, vid=virtual_id,
                        )
                        record.request_id = request_id
                        reused.add(request_id)
        return reused

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    def _spot_request(self, virtual_id: str) -> dict[str, Any]:
        request: dict[str, Any] = {
            "LaunchSpecification": self.launch_specification(tenancy=False),
            "InstanceCount": 1,
            "ClientToken": self.client_token(virtual_id, int(self.expires_at.timestamp() * 1000)),
            "ValidUntil": self.expires_at,
        }
        if self.template.spot_price_usd_per_hour is not None:
            request["SpotPrice"] = str(self.template.spot_price_usd_per_hour)
        if self.template.block_duration_minutes is not None:
            request["BlockDurationMinutes"] = self.template.block_duration_minutes
        return request

    def _request_spot_instances(self, virtual_ids: list[str]) -> dict[str, str]:
        log.info("Requesting {n} spot instances", n=len(virtual_ids))
        request_ids: dict[str, str] = {}
        for virtual_id in virtual_ids:
            try:
                response = self.ec2.request_spot_instances(**self._spot_request(virtual_id))
            except ClientError as e:
                raise_if_unrecoverable(e)
                message = _REQUEST_WARNINGS.get(
                    error_code(e), "Exception while trying to allocate instance",
                )
                log.warning(message)
                self.warnings.append(message)
                continue
            request_id = response["SpotInstanceRequests"][0]["SpotInstanceRequestId"]
            log.info("Created spot request {id}", id=request_id)
            request_ids[virtual_id] = request_id
        lost = len(virtual_ids) - len(request_ids)
        if lost:
            log.warning("Lost {n} spot requests", n=lost)
        return request_ids

    def _tag_requests(self, request_ids: dict[str, str]) -> None:
        for virtual_id, request_id in request_ids.items():
            log.info("Tagging spot request {id} / {vid}", id=request_id, vid=virtual_id)
            try:
                self.tagger.tag(
                    self.ec2, [request_id], self.template, virtual_id,
                    deadline=self.deadline, cancel=self.cancel,
                )
            except RetryDeadlineExceeded:
                log.warning("Timed out tagging spot request {id}", id=request_id)
            self.records[virtual_id].request_id = request_id

    def _wait_for_spot_instances(self, pending: set[str], *, cancelling: bool = False) -> None:
        """Follow spot requests until they settle or the requests expire."""

        def check() -> bool:
            response = self.ec2.describe_spot_instance_requests(
                SpotInstanceRequestIds=sorted(pending),
            )
            for request in response.get("SpotInstanceRequests", []):
                self._observe(request, pending, cancelling)
            return not pending

        if pending:
            poll_until(check, self.deadline, interval=SPOT_POLL_INTERVAL, cancel=self.cancel)

    def _observe(self, request: dict[str, Any], pending: set[str], cancelling: bool) -> None:
        request_id = request["SpotInstanceRequestId"]
        status = (request.get("Status") or {}).get("Code")
        # tags may not be visible yet
        virtual_id = self.tagger.find_virtual_id(request.get("Tags"))
        record = self.records.get(virtual_id) if virtual_id else None

        match request.get("State"):
            case SpotRequestState.ACTIVE:
                if cancelling:
                    log.info("Waiting, request {id} is still active", id=request_id)
                elif record is None:
                    log.info("Waiting, request {id} not yet tagged", id=request_id)
                else:
                    pending.discard(request_id)
                    record.instance_id = record.instance_id or request.get("InstanceId")
            case SpotRequestState.CANCELLED:
                pending.discard(request_id)
                if status == SPOT_STATUS_CANCELED_AND_RUNNING:
                    if record is None:
                        log.info(
                            "Untagged request {id} has instance {instance}",
                            id=request_id, instance=request.get("InstanceId"),
                        )
                        self.untagged_requests[request_id] = request["InstanceId"]
                    else:
                        record.instance_id = record.instance_id or request.get("InstanceId")
            case SpotRequestState.CLOSED | SpotRequestState.FAILED:
                pending.discard(request_id)
            case _:
                if status == SPOT_STATUS_PRICE_TOO_LOW:
                    log.info("Spot price too low for request {id}", id=request_id)
                    pending.discard(request_id)
                else:
                    log.info("Waiting, request {id} is {status}", id=request_id, status=status)

    # -------------------------------------------------------------------------
    # Instances
    # -------------------------------------------------------------------------

    def _tag_instances(self) -> None:
        deadline = deadline_in(self.started_timeout)
        for record in self.records.values():
            if record.instance_id is not None and not record.tagged:
                record.tagged = self.tag_instance(record.virtual_id, record.instance_id, deadline)

    def _wait_for_private_ips(self) -> None:
        waiting = {
            r.virtual_id: r.instance_id
            for r in self.records.values()
            if r.private_ip is None and r.instance_id is not None and r.tagged
        }
        found = self.wait_for_private_ips(waiting)
        for virtual_id in waiting:
            if virtual_id in found:
                self.records[virtual_id].private_ip = found[virtual_id].get("PrivateIpAddress")
            else:
                # unusable; terminated with the untagged instances
                self.records[virtual_id].tagged = False

    def _wait_until_findable(self, virtual_ids: list[str]) -> list[InstanceRecord]:
        found = self.reconciler.wait_until_found(
            virtual_ids, self.template, is_alive, self.findable_timeout,
            interval=FINDABLE_POLL_INTERVAL,
        )
        if len(found) != len(virtual_ids):
            log.warning(
                "Found only {n} of {total} spot instances, continuing anyway",
                n=len(found), total=len(virtual_ids),
            )
        return self.reconciler.records_of(self.template, found)

    # -------------------------------------------------------------------------
    # Cleanup
    # -------------------------------------------------------------------------

    def _cancel_requests(self) -> None:
        request_ids = {r.request_id for r in self.records.values() if r.request_id}
        if not request_ids:
            return
        log.info("Cancelling spot requests {ids}", ids=sorted(request_ids))
        try:
            retry_until(
                lambda: self.ec2.cancel_spot_instance_requests(
                    SpotInstanceRequestIds=sorted(request_ids),
                ),
                self.deadline,
                cancel=self.cancel,
            )
        except RetryDeadlineExceeded:
            log.warning("Timed out cancelling spot requests {ids}", ids=sorted(request_ids))
        self._wait_for_spot_instances(request_ids, cancelling=True)

    def _terminate_instances(self, success: bool) -> None:
        if success:
            log.info("Allocation successful, cleaning up untagged instances")
            doomed = {
                r.instance_id for r in self.records.values() if r.instance_id and not r.tagged
            }
        else:
            log.info("Allocation unsuccessful, cleaning up all instances")
            doomed = {r.instance_id for r in self.records.values() if r.instance_id}
        doomed.update(self.untagged_requests.values())
        self.terminate(sorted(doomed))

    # -------------------------------------------------------------------------
    # Allocate
    # -------------------------------------------------------------------------

    def allocate(self) -> list[InstanceRecord]:
        log.info(
            "Requesting {n} spot instances for {template}",
            n=len(self.virtual_ids), template=self.template.name,
        )
        success = False
        errors = ErrorCollector()
        result: list[InstanceRecord] = []
        try:
            try:
                self._reuse_orphaned_instances()
                pending = self._reuse_orphaned_requests()

                needing = [
                    r.virtual_id for r in self.records.values()
                    if r.instance_id is None and r.request_id is None
                ]
                if needing:
                    request_ids = self._request_spot_instances(needing)
                    self._tag_requests(request_ids)
                    pending.update(request_ids.values())

                self._wait_for_spot_instances(pending)
                self._tag_instances()
                self._wait_for_private_ips()

                allocated = [r.virtual_id for r in self.records.values() if r.allocated]
                if len(allocated) < self.min_count:
                    log.info(
                        "Failed to acquire required number of spot instances "
                        "(desired {desired}, required {min}, acquired {n})",
                        desired=len(self.virtual_ids), min=self.min_count, n=len(allocated),
                    )
                    raise AllocationError(
                        f"Acquired {len(allocated)} of the {self.min_count} required spot instances",
                        reasons=tuple(dict.fromkeys(self.warnings)),
                    )
                result = self._wait_until_findable(allocated)
                success = True
            finally:
                with errors.attempt("cancel spot instance requests"):
                    self._cancel_requests()
                with errors.attempt("terminate spot instances"):
                    self._terminate_instances(success)
        except FleetError as e:
            errors.add(e)
        except Exception as e:
            log.error("Problem allocating spot instances: {err}", err=e)
            errors.add(ProvisioningError(f"Problem allocating spot instances: {e}"))

        errors.raise_if_any("Problem allocating spot instances")
        return result
