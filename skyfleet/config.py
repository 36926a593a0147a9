"""TOML-based provider configuration.

Loads ~/.skyfleet/defaults.toml (global) and skyfleet.toml (project), merges
them, and resolves the ``[provider]``, ``[tags]``, ``[timeouts]`` and
``[templates.*]`` tables into immutable objects.

Example skyfleet.toml::

    [provider]
    region = "us-west-2"
    tag_on_create = true

    [timeouts.ec2.ebs]
    availableSeconds = 300

    [templates.workers]
    image = "ami-0abcdef1234567890"
    instance_type = "m5.xlarge"
    subnet_id = "subnet-0123456789abcdef0"
"""

from __future__ import annotations

import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from skyfleet.constants import DEFAULT_TIMEOUTS, FleetTag, TimeoutKey
from skyfleet.exceptions import ConfigurationError
from skyfleet.template import Template

type RawConfig = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / ".skyfleet" / "defaults.toml"
PROJECT_CONFIG_NAME = "skyfleet.toml"


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _flatten(raw: Mapping[str, Any], prefix: str = "") -> dict[str, Any]:
    flat: dict[str, Any] = {}
    for key, value in raw.items():
        name = f"{prefix}.{key}" if prefix else key
        if isinstance(value, Mapping):
            flat.update(_flatten(value, name))
        else:
            flat[name] = value
    return flat


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    with path.open("rb") as f:
        return tomllib.load(f)


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> RawConfig:
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_path = (project_dir or Path.cwd()) / PROJECT_CONFIG_NAME
    project_cfg = _read_toml(project_path)

    merged = _deep_merge(global_cfg, project_cfg)
    merged.setdefault("provider", {})
    merged.setdefault("tags", {})
    merged.setdefault("timeouts", {})
    merged.setdefault("templates", {})
    return merged


# =============================================================================
# Timeouts
# =============================================================================


class Timeouts:
    """Positive timeouts keyed by dotted name.

    Keys ending in ``Seconds`` hold seconds and keys ending in
    ``Milliseconds`` hold milliseconds; ``seconds()`` normalizes both.
    """

    __slots__ = ("_values",)

    def __init__(self, values: Mapping[str, Any] | None = None) -> None:
        parsed: dict[str, float] = {}
        for key, value in (values or {}).items():
            if isinstance(value, bool):
                raise ConfigurationError(f"Timeout '{key}' must be a number, got {value!r}")
            try:
                number = float(value)
            except (TypeError, ValueError) as e:
                raise ConfigurationError(
                    f"Timeout '{key}' must be a number, got {value!r}"
                ) from e
            if number <= 0:
                raise ConfigurationError(f"Timeout '{key}' must be positive, got {value!r}")
            parsed[key] = number
        self._values = parsed

    def seconds(self, key: TimeoutKey) -> float:
        value = self._values.get(key, DEFAULT_TIMEOUTS[key])
        return value / 1000 if key.endswith("Milliseconds") else value

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Timeouts) and self._values == other._values

    def __hash__(self) -> int:
        return hash(frozenset(self._values.items()))

    def __repr__(self) -> str:
        return f"Timeouts({self._values!r})"


# =============================================================================
# Provider
# =============================================================================


@dataclass(frozen=True, slots=True)
class TagNames:
    """Names of the tags skyfleet reserves on managed resources."""

    instance_id: str = FleetTag.INSTANCE_ID
    template_name: str = FleetTag.TEMPLATE_NAME
    name: str = FleetTag.NAME


@dataclass(frozen=True, slots=True)
class ProviderConfig:
    """EC2 provider configuration.

    Args:
        region: AWS region. Default: us-east-1
        tag_on_create: Tag instances and volumes in the launch request
            instead of after launch.
        allocate_ebs_separately: Create KMS-encrypted data volumes with
            separate requests after launch.
        associate_public_ip: Give instances a public IP address.
        tags: Names of the reserved tags.
        timeouts: Wait budgets for the polling loops.
    """

    region: str = "us-east-1"
    tag_on_create: bool = True
    allocate_ebs_separately: bool = False
    associate_public_ip: bool = True
    tags: TagNames = field(default_factory=TagNames)
    timeouts: Timeouts = field(default_factory=Timeouts)

    @classmethod
    def from_raw(cls, raw: RawConfig) -> ProviderConfig:
        provider = dict(raw.get("provider", {}))
        try:
            return cls(
                tags=TagNames(**raw.get("tags", {})),
                timeouts=Timeouts(_flatten(raw.get("timeouts", {}))),
                **provider,
            )
        except TypeError as e:
            raise ConfigurationError(f"Invalid provider configuration: {e}") from e


def load_provider_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> ProviderConfig:
    return ProviderConfig.from_raw(load_config(project_dir=project_dir, global_path=global_path))


def load_templates(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> dict[str, Template]:
    config = load_config(project_dir=project_dir, global_path=global_path)
    return {
        name: Template.from_mapping(name, raw)
        for name, raw in config["templates"].items()
    }


def resolve_template(
    name: str,
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> Template:
    templates = load_templates(project_dir=project_dir, global_path=global_path)
    if name not in templates:
        raise KeyError(
            f"Template '{name}' not found. Available: {', '.join(templates) or 'none'}"
        )
    return templates[name]
