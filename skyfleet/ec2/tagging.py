"""Ownership tags.

Every resource skyfleet creates carries a tag whose value is the caller's
virtual instance id. That tag is the only link between a virtual instance
and the EC2 instance currently backing it: instances are found by filtering
on it, and an instance without it is never returned as managed.
"""

from __future__ import annotations

import threading
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any

from loguru import logger

from skyfleet.config import TagNames
from skyfleet.constants import MAX_USER_TAGS
from skyfleet.exceptions import ConfigurationError, OwnershipError
from skyfleet.retry import retry_until

if TYPE_CHECKING:
    from mypy_boto3_ec2 import EC2Client

    from skyfleet.model import InstanceDescription
    from skyfleet.template import Template

log = logger.bind(component="tagging")

type Tag = dict[str, str]


def _tag(key: str, value: str) -> Tag:
    return {"Key": key, "Value": value}


class IdentityTagger:
    """Builds, applies and reads the tags identifying managed resources."""

    def __init__(self, names: TagNames | None = None) -> None:
        self.names = names or TagNames()

    @property
    def id_tag(self) -> str:
        return self.names.instance_id

    def validate_tags(self, tags: Mapping[str, str] | None) -> None:
        if tags and len(tags) > MAX_USER_TAGS:
            raise ConfigurationError(
                f"Number of tags exceeds the maximum of {MAX_USER_TAGS} ({len(tags)} given)"
            )

    def user_tags(self, template: Template) -> list[Tag]:
        return [_tag(k, v) for k, v in template.tags.items()]

    def instance_tags(self, template: Template, virtual_id: str) -> list[Tag]:
        """Ownership tag, template-name tag, Name tag, then user tags."""
        tags = [
            _tag(self.names.instance_id, virtual_id),
            _tag(self.names.template_name, template.name),
        ]
        if self.names.name not in template.tags:
            tags.append(_tag(self.names.name, virtual_id))
        return tags + self.user_tags(template)

    def tag_specifications(
        self, template: Template, virtual_id: str, *resource_types: str,
    ) -> list[dict[str, Any]]:
        tags = self.instance_tags(template, virtual_id)
        return [{"ResourceType": rt, "Tags": tags} for rt in resource_types]

    def tag(
        self,
        ec2: EC2Client,
        resource_ids: Sequence[str],
        template: Template,
        virtual_id: str,
        *,
        deadline: float | None = None,
        cancel: threading.Event | None = None,
    ) -> None:
        """Apply the instance tags, retrying while the resources are not visible yet."""
        tags = self.instance_tags(template, virtual_id)
        log.info("Tagging {ids} as {vid}", ids=list(resource_ids), vid=virtual_id)
        retry_until(
            lambda: ec2.create_tags(Resources=list(resource_ids), Tags=tags),
            deadline,
            cancel=cancel,
        )

    def find_virtual_id(self, tags: Sequence[Mapping[str, str]] | None) -> str | None:
        for tag in tags or ():
            if tag.get("Key") == self.names.instance_id:
                return tag.get("Value")
        return None

    def virtual_id_of(
        self, tags: Sequence[Mapping[str, str]] | None, resource_id: str, kind: str = "instance",
    ) -> str:
        virtual_id = self.find_virtual_id(tags)
        if virtual_id is None:
            raise OwnershipError(resource_id, self.names.instance_id, kind)
        return virtual_id

    def resolve_ownership(
        self, description: InstanceDescription, template: Template | None = None,
    ) -> str:
        """Return the virtual instance id of a described instance.

        Raises:
            OwnershipError: The instance carries no ownership tag.

        With a template, key name, instance type and image are compared
        against it; mismatches are logged as warnings and do not fail.
        """
        instance_id = description.get("InstanceId", "?")
        virtual_id = self.virtual_id_of(description.get("Tags"), instance_id)
        if template is not None:
            ids = f"{instance_id} / {virtual_id}"
            if description.get("KeyName") != template.key_name:
                log.warning(
                    "Found unexpected key name: {key} for instance: {ids}",
                    key=description.get("KeyName"), ids=ids,
                )
            if description.get("InstanceType") != template.instance_type:
                log.warning(
                    "Found unexpected type: {type} for instance: {ids}",
                    type=description.get("InstanceType"), ids=ids,
                )
            if description.get("ImageId") != template.image:
                log.warning(
                    "Found unexpected image: {image} for instance: {ids}",
                    image=description.get("ImageId"), ids=ids,
                )
        return virtual_id
