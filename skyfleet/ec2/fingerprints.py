"""SSH host key fingerprints read from the EC2 console output.

cloud-init prints the host key fingerprints of a freshly booted instance
between ``BEGIN SSH HOST KEY FINGERPRINTS`` and ``END SSH HOST KEY
FINGERPRINTS`` markers. The console output only becomes available a few
minutes after boot, so callers poll for it.
"""

from __future__ import annotations

import re
import threading
from collections.abc import Mapping
from typing import TYPE_CHECKING

from loguru import logger

from skyfleet.constants import HOST_KEY_POLL_INTERVAL, HOST_KEY_WAIT_SECONDS
from skyfleet.retry import deadline_in, poll_until

if TYPE_CHECKING:
    from mypy_boto3_ec2 import EC2Client

log = logger.bind(component="fingerprints")

_BLOCK = re.compile(
    r"(BEGIN SSH HOST KEY FINGERPRINTS)(.*)(END SSH HOST KEY FINGERPRINTS)", re.DOTALL,
)
_FINGERPRINT = re.compile(r"\s(([0-9a-f]{2}:){15}[0-9a-f]{2})\s")


def has_fingerprint_block(console_output: str) -> bool:
    return _BLOCK.search(console_output) is not None


def extract_fingerprints(console_output: str) -> frozenset[str]:
    """Colon separated MD5 fingerprints inside the fingerprint block.

    Raises:
        ValueError: The output has no fingerprint block.
    """
    match = _BLOCK.search(console_output)
    if match is None:
        raise ValueError("No SSH host key fingerprint section in console output")
    return frozenset(m.group(1) for m in _FINGERPRINT.finditer(match.group(2)))


def wait_for_fingerprints(
    ec2: EC2Client,
    instances: Mapping[str, str],
    *,
    timeout: float = HOST_KEY_WAIT_SECONDS,
    interval: float = HOST_KEY_POLL_INTERVAL,
    cancel: threading.Event | None = None,
) -> dict[str, frozenset[str]]:
    """Poll console outputs until every instance printed its fingerprints.

    Args:
        instances: Caller id -> EC2 instance id.

    Returns:
        Caller id -> fingerprints. Instances still silent at the timeout
        are logged and left out.
    """
    waiting = dict(instances)
    fingerprints: dict[str, frozenset[str]] = {}
    if not waiting:
        return fingerprints
    log.info(
        "Waiting for console output to display host key fingerprints for {ids}",
        ids=sorted(waiting),
    )

    def check() -> bool:
        for caller_id, instance_id in list(waiting.items()):
            output = ec2.get_console_output(InstanceId=instance_id).get("Output")
            if not output:
                log.debug("Console output of {id} empty, retrying soon", id=instance_id)
                continue
            if not has_fingerprint_block(output):
                log.debug("Console output of {id} has no fingerprints yet", id=instance_id)
                continue
            fingerprints[caller_id] = extract_fingerprints(output)
            log.debug(
                "Host key fingerprints for {id} are {fp}", id=caller_id, fp=sorted(fingerprints[caller_id]),
            )
            del waiting[caller_id]
        return not waiting

    if not poll_until(check, deadline_in(timeout), interval=interval, cancel=cancel):
        log.warning(
            "Couldn't retrieve SSH host key fingerprints for {n} instance(s): {ids}",
            n=len(waiting), ids=sorted(waiting),
        )
    return fingerprints
