"""Mapping virtual instance ids to live EC2 instances.

The reconciler turns a list of virtual instance ids into the EC2
descriptions currently backing them. It is stateless: every call asks EC2
again, and EC2's eventual consistency is handled by ``wait_until_found``,
which keeps asking for the ids still missing until a deadline passes.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator, Mapping, Sequence
from enum import Enum, auto
from typing import TYPE_CHECKING, Any

from botocore.exceptions import ClientError
from loguru import logger

from skyfleet.constants import (
    FIND_POLL_INTERVAL,
    INVALID_INSTANCE_ID_MALFORMED,
    INVALID_INSTANCE_ID_NOT_FOUND,
    STATUS_BATCH_SIZE,
    TAG_FILTER_BATCH_SIZE,
)
from skyfleet.model import (
    InstanceDescription,
    InstanceRecord,
    InstanceStatus,
    state_of,
)
from skyfleet.retry import deadline_in, error_code, is_not_found, poll_until

if TYPE_CHECKING:
    from mypy_boto3_ec2 import EC2Client

    from skyfleet.ec2.tagging import IdentityTagger
    from skyfleet.template import Template

log = logger.bind(component="reconciler")

type InstanceHandler = Callable[[str, InstanceDescription], None]
type InstancePredicate = Callable[[InstanceDescription], bool]


class IdType(Enum):
    """How the ids handed to the reconciler are matched against EC2."""

    VIRTUAL_INSTANCE_ID = auto()
    EC2_INSTANCE_ID = auto()


def id_type_for(template: Template | None) -> IdType:
    """Scaling-group instances are addressed by their EC2 ids."""
    if template is not None and template.automatic:
        return IdType.EC2_INSTANCE_ID
    return IdType.VIRTUAL_INSTANCE_ID


def _batched(ids: Sequence[str], size: int) -> Iterator[list[str]]:
    for i in range(0, len(ids), size):
        yield list(ids[i : i + size])


def is_alive(description: InstanceDescription) -> bool:
    return not state_of(description).is_terminal


def _any(description: InstanceDescription) -> bool:
    return True


class InstanceReconciler:
    """Resolves virtual instance ids to EC2 instance descriptions.

    Args:
        ec2: EC2 client.
        tagger: Reads the ownership tag off described instances.
        cancel: Optional event interrupting ``wait_until_found``.
    """

    def __init__(
        self,
        ec2: EC2Client,
        tagger: IdentityTagger,
        *,
        cancel: threading.Event | None = None,
    ) -> None:
        self.ec2 = ec2
        self.tagger = tagger
        self.cancel = cancel

    # -------------------------------------------------------------------------
    # Describe
    # -------------------------------------------------------------------------

    def _pages(self, batch: list[str], id_type: IdType) -> Iterator[dict[str, Any]]:
        kwargs: dict[str, Any]
        match id_type:
            case IdType.EC2_INSTANCE_ID:
                kwargs = {"InstanceIds": batch}
            case IdType.VIRTUAL_INSTANCE_ID:
                kwargs = {"Filters": [{"Name": f"tag:{self.tagger.id_tag}", "Values": batch}]}
        token: str | None = None
        while True:
            page = self.ec2.describe_instances(**kwargs, **({"NextToken": token} if token else {}))
            yield page
            token = page.get("NextToken")
            if not token:
                return

    def _resolve_id(self, description: InstanceDescription, id_type: IdType) -> str | None:
        if id_type is IdType.EC2_INSTANCE_ID:
            return description["InstanceId"]
        virtual_id = self.tagger.find_virtual_id(description.get("Tags"))
        if virtual_id is None:
            log.error(
                "Instance {id} has no {tag} tag, skipping",
                id=description.get("InstanceId"), tag=self.tagger.id_tag,
            )
        return virtual_id

    def _describe_batch(
        self, batch: list[str], id_type: IdType, selected: dict[str, InstanceDescription],
    ) -> None:
        for page in self._pages(batch, id_type):
            for reservation in page.get("Reservations", []):
                for instance in reservation.get("Instances", []):
                    resolved = self._resolve_id(instance, id_type)
                    if resolved is not None:
                        self._select(selected, resolved, instance)

    def for_each_instance(
        self,
        ids: Sequence[str],
        handler: InstanceHandler,
        id_type: IdType = IdType.VIRTUAL_INSTANCE_ID,
        *,
        batch_size: int = TAG_FILTER_BATCH_SIZE,
        ignore_codes: frozenset[str] = frozenset({INVALID_INSTANCE_ID_MALFORMED}),
    ) -> None:
        """Describe ``ids`` batch by batch and call ``handler(id, description)``.

        Each id is handed over at most once. When EC2 reports several
        instances for one id, the non-terminal one wins; two non-terminal
        instances are logged as an error and the first one is kept.

        ``ignore_codes`` only applies to EC2 ids. EC2 rejects a whole batch
        when one of its ids fails, so such a batch is described again one id
        at a time and only the failing ids are skipped.
        """
        selected: dict[str, InstanceDescription] = {}
        for batch in _batched(ids, batch_size):
            try:
                self._describe_batch(batch, id_type, selected)
            except ClientError as e:
                if id_type is not IdType.EC2_INSTANCE_ID or error_code(e) not in ignore_codes:
                    raise
                if len(batch) == 1:
                    log.warning("Ignoring {code} for {id}", code=error_code(e), id=batch[0])
                    continue
                log.debug("{code} for batch {batch}, retrying per id", code=error_code(e), batch=batch)
                self.for_each_instance(
                    batch,
                    lambda resolved, description: self._select(selected, resolved, description),
                    id_type,
                    batch_size=1,
                    ignore_codes=ignore_codes,
                )

        for resolved, description in selected.items():
            handler(resolved, description)

    @staticmethod
    def _select(
        selected: dict[str, InstanceDescription], resolved: str, instance: InstanceDescription,
    ) -> None:
        current = selected.get(resolved)
        if current is not None and current.get("InstanceId") == instance.get("InstanceId"):
            return
        if current is None:
            selected[resolved] = instance
            return
        if not state_of(current).is_terminal:
            if not state_of(instance).is_terminal:
                log.error(
                    "Found multiple live instances for {id}: {first} and {second}, keeping {first}",
                    id=resolved, first=current.get("InstanceId"), second=instance.get("InstanceId"),
                )
            return
        if not state_of(instance).is_terminal:
            selected[resolved] = instance

    def describe(
        self,
        ids: Sequence[str],
        template: Template | None,
        predicate: InstancePredicate = _any,
    ) -> dict[str, InstanceDescription]:
        """One pass: id -> description for ids found and accepted by ``predicate``."""
        found: dict[str, InstanceDescription] = {}

        def collect(resolved: str, description: InstanceDescription) -> None:
            if predicate(description):
                found[resolved] = description

        self.for_each_instance(ids, collect, id_type_for(template))
        return found

    def wait_until_found(
        self,
        ids: Sequence[str],
        template: Template | None,
        predicate: InstancePredicate,
        timeout: float,
        *,
        interval: float = FIND_POLL_INTERVAL,
    ) -> dict[str, InstanceDescription]:
        """Describe until every id is found or ``timeout`` seconds pass.

        Only the ids still missing are asked for on each pass. NotFound
        errors count as a pass that found nothing. Partial results are
        returned when the timeout passes.
        """
        wanted = set(ids)
        found: dict[str, InstanceDescription] = {}

        def attempt() -> bool:
            missing = [i for i in ids if i not in found]
            try:
                found.update(self.describe(missing, template, predicate))
            except ClientError as e:
                if not is_not_found(e):
                    raise
                log.debug("Instances not visible yet: {err}", err=error_code(e))
                return False
            return wanted <= found.keys()

        if not poll_until(attempt, deadline_in(timeout), interval=interval, cancel=self.cancel):
            log.warning(
                "Found {found} of {total} instances before timing out",
                found=len(found), total=len(wanted),
            )
        return found

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def records_of(
        self, template: Template | None, descriptions: Mapping[str, InstanceDescription],
    ) -> list[InstanceRecord]:
        """Records of described instances, checked for ownership."""
        records = []
        for resolved, description in descriptions.items():
            if id_type_for(template) is IdType.VIRTUAL_INSTANCE_ID:
                self.tagger.resolve_ownership(description, template)
            records.append(InstanceRecord.from_description(resolved, description))
        return records

    def find(self, template: Template | None, ids: Sequence[str]) -> list[InstanceRecord]:
        """Non-terminal instances backing ``ids``, checked for ownership."""
        return self.records_of(template, self.describe(ids, template, is_alive))

    def provider_ids(self, template: Template | None, ids: Sequence[str]) -> dict[str, str]:
        """Virtual id -> EC2 id for every id with a non-terminal instance."""
        return {
            resolved: description["InstanceId"]
            for resolved, description in self.describe(ids, template, is_alive).items()
        }

    def instance_states(
        self, template: Template | None, ids: Sequence[str],
    ) -> dict[str, InstanceStatus]:
        """Status per id; ids no instance was seen for are UNKNOWN."""
        states = dict.fromkeys(ids, InstanceStatus.UNKNOWN)

        def record(resolved: str, description: InstanceDescription) -> None:
            states[resolved] = InstanceStatus.from_lifecycle(state_of(description))

        self.for_each_instance(
            ids,
            record,
            id_type_for(template),
            batch_size=STATUS_BATCH_SIZE,
            ignore_codes=frozenset({INVALID_INSTANCE_ID_MALFORMED, INVALID_INSTANCE_ID_NOT_FOUND}),
        )
        return states
