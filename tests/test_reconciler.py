from __future__ import annotations

from dataclasses import replace
from typing import Any
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from skyfleet.constants import FleetTag
from skyfleet.ec2.reconciler import IdType, InstanceReconciler, id_type_for, is_alive
from skyfleet.ec2.tagging import IdentityTagger
from skyfleet.model import InstanceStatus, LifecycleState
from skyfleet.template import Template
from tests.conftest import FakeEC2, make_client_error

pytestmark = [pytest.mark.xdist_group("unit")]


def described(instance_id: str, virtual_id: str | None, state: str = "running") -> dict[str, Any]:
    tags = [{"Key": FleetTag.INSTANCE_ID, "Value": virtual_id}] if virtual_id else []
    return {"InstanceId": instance_id, "State": {"Name": state}, "Tags": tags}


def page(*instances: dict[str, Any], token: str | None = None) -> dict[str, Any]:
    response: dict[str, Any] = {"Reservations": [{"Instances": list(instances)}]}
    if token:
        response["NextToken"] = token
    return response


def reconciler_for(ec2: Any) -> InstanceReconciler:
    return InstanceReconciler(ec2, IdentityTagger())


class TestIdType:
    def test_virtual_ids_by_default(self, template: Template):
        assert id_type_for(template) is IdType.VIRTUAL_INSTANCE_ID
        assert id_type_for(None) is IdType.VIRTUAL_INSTANCE_ID

    def test_scaling_groups_use_ec2_ids(self, template: Template):
        automatic = replace(template, automatic=True, group_id="asg-1")
        assert id_type_for(automatic) is IdType.EC2_INSTANCE_ID


class TestForEachInstance:
    def test_filters_by_ownership_tag(self):
        ec2 = MagicMock()
        ec2.describe_instances.return_value = page()
        reconciler_for(ec2).for_each_instance(["vm-1", "vm-2"], MagicMock())
        ec2.describe_instances.assert_called_once_with(
            Filters=[{"Name": f"tag:{FleetTag.INSTANCE_ID}", "Values": ["vm-1", "vm-2"]}],
        )

    def test_batches_tag_filters_by_200(self):
        ec2 = MagicMock()
        ec2.describe_instances.return_value = page()
        reconciler_for(ec2).for_each_instance([f"vm-{i}" for i in range(450)], MagicMock())
        sizes = [len(c.kwargs["Filters"][0]["Values"]) for c in ec2.describe_instances.call_args_list]
        assert sizes == [200, 200, 50]

    def test_follows_next_token(self):
        ec2 = MagicMock()
        ec2.describe_instances.side_effect = [
            page(described("i-1", "vm-1"), token="t1"),
            page(described("i-2", "vm-2")),
        ]
        handler = MagicMock()
        reconciler_for(ec2).for_each_instance(["vm-1", "vm-2"], handler)
        assert ec2.describe_instances.call_args_list[1].kwargs["NextToken"] == "t1"
        assert [c.args[0] for c in handler.call_args_list] == ["vm-1", "vm-2"]

    def test_prefers_non_terminal_instance(self):
        ec2 = MagicMock()
        ec2.describe_instances.return_value = page(
            described("i-old", "vm-1", "terminated"),
            described("i-new", "vm-1", "running"),
            described("i-older", "vm-1", "shutting-down"),
        )
        handler = MagicMock()
        reconciler_for(ec2).for_each_instance(["vm-1"], handler)
        handler.assert_called_once()
        assert handler.call_args.args[1]["InstanceId"] == "i-new"

    def test_two_live_instances_keep_the_first(self):
        ec2 = MagicMock()
        ec2.describe_instances.return_value = page(
            described("i-1", "vm-1"), described("i-2", "vm-1", "pending"),
        )
        handler = MagicMock()
        reconciler_for(ec2).for_each_instance(["vm-1"], handler)
        assert handler.call_args.args[1]["InstanceId"] == "i-1"

    def test_instances_without_tag_are_skipped(self):
        ec2 = MagicMock()
        ec2.describe_instances.return_value = page(described("i-1", None))
        handler = MagicMock()
        reconciler_for(ec2).for_each_instance(["vm-1"], handler)
        handler.assert_not_called()

    def test_malformed_ec2_ids_are_ignored(self):
        ec2 = MagicMock()
        ec2.describe_instances.side_effect = make_client_error("InvalidInstanceID.Malformed")
        handler = MagicMock()
        reconciler_for(ec2).for_each_instance(["bogus"], handler, IdType.EC2_INSTANCE_ID)
        handler.assert_not_called()

    def test_malformed_is_raised_for_virtual_ids(self):
        ec2 = MagicMock()
        ec2.describe_instances.side_effect = make_client_error("InvalidInstanceID.Malformed")
        with pytest.raises(ClientError, match="Malformed"):
            reconciler_for(ec2).for_each_instance(["vm-1"], MagicMock())


class TestWaitUntilFound:
    def test_not_found_twice_then_success(self, template: Template):
        ids = [f"vm-{i}" for i in range(5)]
        ec2 = MagicMock()
        ec2.describe_instances.side_effect = [
            make_client_error("InvalidInstanceID.NotFound"),
            make_client_error("InvalidInstanceID.NotFound"),
            page(*(described(f"i-{i}", vid) for i, vid in enumerate(ids))),
        ]
        found = reconciler_for(ec2).wait_until_found(ids, template, is_alive, timeout=60)
        assert sorted(found) == ids
        assert ec2.describe_instances.call_count == 3

    def test_asks_only_for_missing_ids(self, template: Template):
        ec2 = MagicMock()
        ec2.describe_instances.side_effect = [
            page(described("i-1", "vm-1")),
            page(described("i-2", "vm-2")),
        ]
        found = reconciler_for(ec2).wait_until_found(["vm-1", "vm-2"], template, is_alive, timeout=60)
        assert set(found) == {"vm-1", "vm-2"}
        second = ec2.describe_instances.call_args_list[1].kwargs["Filters"][0]["Values"]
        assert second == ["vm-2"]

    def test_returns_partial_result_at_timeout(self, template: Template):
        ec2 = MagicMock()
        ec2.describe_instances.return_value = page(described("i-1", "vm-1"))
        found = reconciler_for(ec2).wait_until_found(["vm-1", "vm-2"], template, is_alive, timeout=5)
        assert list(found) == ["vm-1"]


class TestQueries:
    def test_find_returns_live_owned_instances(self, ec2: FakeEC2, template: Template):
        ec2.add_instance("vm-1")
        ec2.add_instance("vm-2", state="terminated")
        records = reconciler_for(ec2).find(template, ["vm-1", "vm-2", "vm-3"])
        assert [r.virtual_id for r in records] == ["vm-1"]
        assert records[0].state is LifecycleState.RUNNING
        assert records[0].private_ip is not None

    def test_find_by_ec2_id_skips_ownership(self, ec2: FakeEC2, template: Template):
        instance = ec2.add_instance()
        automatic = replace(template, automatic=True, group_id="asg-1")
        records = reconciler_for(ec2).find(automatic, [instance["InstanceId"]])
        assert records[0].virtual_id == instance["InstanceId"]

    def test_provider_ids(self, ec2: FakeEC2, template: Template):
        instance = ec2.add_instance("vm-1")
        ec2.add_instance("vm-2", state="shutting-down")
        assert reconciler_for(ec2).provider_ids(template, ["vm-1", "vm-2"]) == {
            "vm-1": instance["InstanceId"],
        }

    def test_states_batch_by_95(self, template: Template):
        ec2 = MagicMock()
        ec2.describe_instances.return_value = page()
        states = reconciler_for(ec2).instance_states(template, [f"vm-{i}" for i in range(450)])
        assert ec2.describe_instances.call_count == 5
        assert set(states.values()) == {InstanceStatus.UNKNOWN}

    def test_states_map_lifecycle(self, ec2: FakeEC2, template: Template):
        ec2.add_instance("vm-1")
        ec2.add_instance("vm-2", state="shutting-down")
        ec2.add_instance("vm-3", state="stopped")
        states = reconciler_for(ec2).instance_states(template, ["vm-1", "vm-2", "vm-3", "vm-4"])
        assert states == {
            "vm-1": InstanceStatus.RUNNING,
            "vm-2": InstanceStatus.DELETING,
            "vm-3": InstanceStatus.STOPPED,
            "vm-4": InstanceStatus.UNKNOWN,
        }

    def test_states_of_unknown_ec2_ids(self, ec2: FakeEC2, template: Template):
        automatic = replace(template, automatic=True, group_id="asg-1")
        states = reconciler_for(ec2).instance_states(automatic, ["i-missing"])
        assert states == {"i-missing": InstanceStatus.UNKNOWN}

    def test_stale_ec2_id_does_not_hide_its_batch(self, ec2: FakeEC2, template: Template):
        first = ec2.add_instance()["InstanceId"]
        second = ec2.add_instance(state="stopped")["InstanceId"]
        automatic = replace(template, automatic=True, group_id="asg-1")
        states = reconciler_for(ec2).instance_states(automatic, [first, "i-gone", second])
        assert states == {
            first: InstanceStatus.RUNNING,
            "i-gone": InstanceStatus.UNKNOWN,
            second: InstanceStatus.STOPPED,
        }
        assert len(ec2.calls_to("describe_instances")) == 4
