from __future__ import annotations

from dataclasses import replace
from unittest.mock import MagicMock

import pytest

from skyfleet.config import ProviderConfig
from skyfleet.ec2.orchestrator import AllocationOrchestrator
from skyfleet.exceptions import (
    AllocationError,
    ConfigurationError,
    InvalidCredentialsError,
    TransientProviderError,
)
from skyfleet.model import InstanceStatus
from skyfleet.template import Template
from tests.conftest import FakeEC2, make_client_error, short_timeouts

pytestmark = [pytest.mark.xdist_group("unit")]

FINGERPRINTS = """\
cloud-init: -----BEGIN SSH HOST KEY FINGERPRINTS-----
cloud-init: 256 1f:2e:3d:4c:5b:6a:79:88:97:a6:b5:c4:d3:e2:f1:00 root@ip-10-0-0-1 (ECDSA)
cloud-init: 2048 aa:bb:cc:dd:ee:ff:00:11:22:33:44:55:66:77:88:99 root@ip-10-0-0-1 (RSA)
cloud-init: -----END SSH HOST KEY FINGERPRINTS-----
"""


def orchestrator_for(ec2: FakeEC2, **config) -> AllocationOrchestrator:
    return AllocationOrchestrator(ec2, ProviderConfig(timeouts=short_timeouts(), **config))  # type: ignore[arg-type]


class TestAllocate:
    def test_on_demand(self, ec2: FakeEC2, template: Template):
        records = orchestrator_for(ec2).allocate(template, ["vm-1", "vm-2"], 2)
        assert sorted(r.virtual_id for r in records) == ["vm-1", "vm-2"]
        assert all(r.private_ip for r in records)

    def test_validates_user_tags(self, ec2: FakeEC2, template: Template):
        template = replace(template, tags={f"k{i}": "v" for i in range(100)})
        with pytest.raises(ConfigurationError, match="exceeds the maximum"):
            orchestrator_for(ec2).allocate(template, ["vm-1"], 1)
        assert ec2.calls_to("run_instances") == []

    def test_rejects_invalid_min_count(self, ec2: FakeEC2, template: Template):
        with pytest.raises(ConfigurationError, match="min_count"):
            orchestrator_for(ec2).allocate(template, ["vm-1"], 2)

    def test_rejects_duplicate_ids(self, ec2: FakeEC2, template: Template):
        with pytest.raises(ConfigurationError, match="unique"):
            orchestrator_for(ec2).allocate(template, ["vm-1", "vm-1"], 1)

    def test_volumes_in_launch_request(self, ec2: FakeEC2, template: Template):
        template = replace(template, ebs_volume_count=2)
        orchestrator_for(ec2, allocate_ebs_separately=True).allocate(template, ["vm-1"], 1)
        [request] = ec2.calls_to("run_instances")
        assert len(request["BlockDeviceMappings"]) == 3
        assert ec2.calls_to("create_volume") == []

    def test_separate_volumes_drop_instances_without_them(self, ec2: FakeEC2, template: Template):
        template = replace(
            template,
            ebs_volume_count=2,
            enable_ebs_encryption=True,
            ebs_kms_key_id="arn:aws:kms:us-east-1:111122223333:key/abc",
        )
        # instances are numbered in launch order: vm-3 is i-0003
        ec2.attach_failures.add(("i-0003", "/dev/sdg"))

        records = orchestrator_for(ec2, allocate_ebs_separately=True).allocate(
            template, ["vm-1", "vm-2", "vm-3"], 2,
        )

        assert sorted(r.virtual_id for r in records) == ["vm-1", "vm-2"]
        assert all(len(r["BlockDeviceMappings"]) == 1 for r in ec2.calls_to("run_instances"))
        for record in records:
            assert len(ec2.delete_on_termination(record.provider_id)) == 2
        assert ec2.instances["i-0003"]["State"]["Name"] == "terminated"

    def test_separate_volumes_below_min_count(self, ec2: FakeEC2, template: Template):
        template = replace(
            template, ebs_volume_count=1, enable_ebs_encryption=True, ebs_kms_key_id="key-1",
        )
        ec2.attach_failures.add(("i-0002", "/dev/sdf"))
        with pytest.raises(AllocationError):
            orchestrator_for(ec2, allocate_ebs_separately=True).allocate(
                template, ["vm-1", "vm-2"], 2,
            )
        assert ec2.live_instances() == []
        assert ec2.volumes == {}

    def test_failed_allocation_releases_instances(self, ec2: FakeEC2, template: Template):
        ec2.capacity = 1
        with pytest.raises(AllocationError) as exc_info:
            orchestrator_for(ec2).allocate(template, ["vm-1", "vm-2"], 2)
        assert exc_info.value.codes == {"InsufficientInstanceCapacity"}
        assert ec2.live_instances() == []

    def test_scaling_group_needs_autoscaling_client(self, ec2: FakeEC2, template: Template):
        automatic = replace(template, automatic=True, group_id="workers-asg")
        with pytest.raises(ConfigurationError):
            orchestrator_for(ec2).allocate(automatic, ["a"], 1)

    def test_throttled_lookup_is_transient(self, ec2: FakeEC2, template: Template):
        ec2.failures["describe_instances"].append(make_client_error("RequestLimitExceeded"))
        with pytest.raises(TransientProviderError, match="RequestLimitExceeded"):
            orchestrator_for(ec2).allocate(template, ["vm-1"], 1)
        assert ec2.calls_to("run_instances") == []


class TestDelete:
    def test_empty_ids_make_no_calls(self, ec2: FakeEC2, template: Template):
        orchestrator_for(ec2).delete(template, [])
        assert ec2.calls == []

    def test_none_template_is_on_demand(self, ec2: FakeEC2):
        instance = ec2.add_instance("vm-1")
        orchestrator_for(ec2).delete(None, ["vm-1"])
        assert ec2.calls_to("terminate_instances") == [{"InstanceIds": [instance["InstanceId"]]}]

    def test_delete_twice(self, ec2: FakeEC2, template: Template):
        ec2.add_instance("vm-1")
        orchestrator = orchestrator_for(ec2)
        orchestrator.delete(template, ["vm-1"])
        orchestrator.delete(template, ["vm-1"])
        assert len(ec2.calls_to("terminate_instances")) == 1

    def test_scaling_group_without_ids_deletes_group(self, ec2: FakeEC2, template: Template):
        autoscaling = MagicMock()
        automatic = replace(template, automatic=True, group_id="workers-asg")
        orchestrator = AllocationOrchestrator(
            ec2, ProviderConfig(timeouts=short_timeouts()), autoscaling,  # type: ignore[arg-type]
        )
        orchestrator.delete(automatic, [])
        autoscaling.delete_auto_scaling_group.assert_called_once_with(
            AutoScalingGroupName="workers-asg", ForceDelete=True,
        )

    def test_throttled_delete_is_transient(self, ec2: FakeEC2, template: Template):
        ec2.add_instance("vm-1")
        ec2.failures["describe_instances"].append(make_client_error("RequestLimitExceeded"))
        with pytest.raises(TransientProviderError, match="RequestLimitExceeded"):
            orchestrator_for(ec2).delete(template, ["vm-1"])
        assert ec2.calls_to("terminate_instances") == []


class TestQueries:
    def test_get_state(self, ec2: FakeEC2, template: Template):
        ec2.add_instance("vm-1")
        ec2.add_instance("vm-2", state="pending")
        states = orchestrator_for(ec2).get_state(template, ["vm-1", "vm-2", "vm-3"])
        assert states == {
            "vm-1": InstanceStatus.RUNNING,
            "vm-2": InstanceStatus.PENDING,
            "vm-3": InstanceStatus.UNKNOWN,
        }

    def test_scaling_group_states_per_id(self, ec2: FakeEC2, template: Template):
        instance = ec2.add_instance()
        automatic = replace(template, automatic=True, group_id="workers-asg")
        states = orchestrator_for(ec2).get_state(automatic, [instance["InstanceId"], "i-gone"])
        assert states == {
            instance["InstanceId"]: InstanceStatus.RUNNING,
            "i-gone": InstanceStatus.UNKNOWN,
        }

    def test_get_state_translates_errors(self, template: Template):
        ec2 = MagicMock()
        ec2.describe_instances.side_effect = make_client_error("AuthFailure", "bad key")
        orchestrator = AllocationOrchestrator(ec2, ProviderConfig())
        with pytest.raises(InvalidCredentialsError, match="bad key"):
            orchestrator.get_state(template, ["vm-1"])

    def test_find(self, ec2: FakeEC2, template: Template):
        ec2.add_instance("vm-1")
        ec2.add_instance("vm-2", state="terminated")
        records = orchestrator_for(ec2).find(template, ["vm-1", "vm-2"])
        assert [r.virtual_id for r in records] == ["vm-1"]

    def test_find_translates_throttling(self, template: Template):
        ec2 = MagicMock()
        ec2.describe_instances.side_effect = make_client_error("RequestLimitExceeded")
        with pytest.raises(TransientProviderError):
            AllocationOrchestrator(ec2, ProviderConfig()).find(template, ["vm-1"])

    def test_host_key_fingerprints(self, ec2: FakeEC2, template: Template):
        instance = ec2.add_instance("vm-1")
        ec2.console[instance["InstanceId"]] = FINGERPRINTS
        fingerprints = orchestrator_for(ec2).host_key_fingerprints(template, ["vm-1"])
        assert fingerprints == {
            "vm-1": frozenset({
                "1f:2e:3d:4c:5b:6a:79:88:97:a6:b5:c4:d3:e2:f1:00",
                "aa:bb:cc:dd:ee:ff:00:11:22:33:44:55:66:77:88:99",
            }),
        }

    def test_host_key_fingerprints_by_ec2_id(self, ec2: FakeEC2, template: Template):
        instance = ec2.add_instance()
        ec2.console[instance["InstanceId"]] = FINGERPRINTS
        automatic = replace(template, automatic=True, group_id="workers-asg")
        fingerprints = orchestrator_for(ec2).host_key_fingerprints(automatic, [instance["InstanceId"]])
        assert list(fingerprints) == [instance["InstanceId"]]
