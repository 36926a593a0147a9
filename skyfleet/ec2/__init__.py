"""EC2 allocation engine.

Example:
    from skyfleet.ec2 import AllocationOrchestrator

    orchestrator = AllocationOrchestrator(ec2, config, autoscaling)
    records = orchestrator.allocate(template, ["vm-1", "vm-2", "vm-3"], min_count=2)
"""

from skyfleet.ec2.orchestrator import AllocationOrchestrator
from skyfleet.ec2.reconciler import IdType, InstanceReconciler
from skyfleet.ec2.tagging import IdentityTagger
from skyfleet.ec2.volumes import EBSVolumeOrchestrator, EbsPlacement, ebs_placement

__all__ = [
    "AllocationOrchestrator",
    "EBSVolumeOrchestrator",
    "EbsPlacement",
    "IdType",
    "IdentityTagger",
    "InstanceReconciler",
    "ebs_placement",
]
