"""Config loading and validation for the YAML-based hotplugctl config file."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from hotplugctl.core.device_match import parse_bindings, parse_target_spec, parse_target_specs
from hotplugctl.core.errors import ConfigLoadError, ConfigValidationError, SpecFormatError
from hotplugctl.core.introspect import DEFAULT_QOM_ROOT
from hotplugctl.core.model import TargetDeviceSpec, VmBinding
from hotplugctl.transports.qmp import (
    DEFAULT_CALL_TIMEOUT_S,
    DEFAULT_CONNECT_TIMEOUT_S,
    DEFAULT_SOCKET_DIR,
)

CONFIG_ENV_VAR = "HOTPLUGCTL_CONFIG"
LOGGER = logging.getLogger(__name__)


class UniqueKeyLoader(yaml.SafeLoader):
    """YAML loader that rejects duplicate mapping keys."""


UniqueKeyLoader.yaml_implicit_resolvers = {
    key: list(value) for key, value in yaml.SafeLoader.yaml_implicit_resolvers.items()
}

for first_char, mappings in list(UniqueKeyLoader.yaml_implicit_resolvers.items()):
    UniqueKeyLoader.yaml_implicit_resolvers[first_char] = [
        (tag, regexp)
        for tag, regexp in mappings
        if tag != "tag:yaml.org,2002:bool"
    ]


def _construct_mapping(loader: UniqueKeyLoader, node: yaml.Node, deep: bool = False) -> dict[str, Any]:
    mapping: dict[str, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise ConfigValidationError(f"Duplicate key '{key}' in YAML document")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


@dataclass(frozen=True)
class HotplugConfig:
    socket_dir: str = DEFAULT_SOCKET_DIR
    connect_timeout_s: float = DEFAULT_CONNECT_TIMEOUT_S
    call_timeout_s: float = DEFAULT_CALL_TIMEOUT_S
    qom_root: str = DEFAULT_QOM_ROOT
    phase_settle_s: float = 1.0
    attach_settle_s: float = 5.0
    targets: tuple[TargetDeviceSpec, ...] = ()
    bindings: tuple[VmBinding, ...] = ()
    detect_device: TargetDeviceSpec | None = None
    reverse: bool = False
    source: Path | None = field(default=None, compare=False)


def _load_schema_validator() -> Any:
    schema_text = resources.files("hotplugctl.schemas").joinpath("config.schema.json").read_text(
        encoding="utf-8"
    )
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def default_config_path() -> Path:
    override = os.environ.get(CONFIG_ENV_VAR)
    if override:
        return Path(override)
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return xdg_config / "hotplugctl/config.yaml"


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigLoadError(f"Could not read config file {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise ConfigValidationError(f"Invalid YAML in {path}: {exc}") from exc

    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigValidationError(f"Config file {path} must contain a mapping at root")
    return loaded


def _normalize_bool(value: Any, *, context: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
    raise ConfigValidationError(f"{context} must be boolean true/false")


def build_config(doc: dict[str, Any], source: Path | None = None) -> HotplugConfig:
    validator = _load_schema_validator()
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise ConfigValidationError(f"Schema validation failed for {source or '<config>'}{where}: {exc.message}") from exc

    defaults = HotplugConfig()
    try:
        targets = tuple(parse_target_specs(doc.get("targets", [])))
        bindings = tuple(parse_bindings(doc.get("bindings", [])))
        detect_device = parse_target_spec(doc["detect_device"]) if "detect_device" in doc else None
    except SpecFormatError as exc:
        raise ConfigValidationError(f"{source or '<config>'}: {exc}") from exc

    return HotplugConfig(
        socket_dir=doc.get("socket_dir", defaults.socket_dir),
        connect_timeout_s=float(doc.get("connect_timeout_s", defaults.connect_timeout_s)),
        call_timeout_s=float(doc.get("call_timeout_s", defaults.call_timeout_s)),
        qom_root=doc.get("qom_root", defaults.qom_root),
        phase_settle_s=float(doc.get("phase_settle_s", defaults.phase_settle_s)),
        attach_settle_s=float(doc.get("attach_settle_s", defaults.attach_settle_s)),
        targets=targets,
        bindings=bindings,
        detect_device=detect_device,
        reverse=_normalize_bool(doc.get("reverse", False), context="reverse"),
        source=source,
    )


def load_config(path: Path | None = None) -> HotplugConfig:
    """Load the config file, falling back to defaults when no file exists.

    An explicitly given ``path`` must exist.
    """
    if path is None:
        path = default_config_path()
        if not path.exists():
            LOGGER.debug("No config file at %s, using defaults", path)
            return HotplugConfig()
    doc = _read_yaml(path)
    LOGGER.debug("Loaded config from %s", path)
    return build_config(doc, path)
