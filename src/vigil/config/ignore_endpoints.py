"""Ignore-endpoints configuration: parsing, normalization and merging.

The configuration maps a service (span family) to an ordered list of
rules. It can come from three places, all normalized to the same shape:

- an in-code mapping (``VigilSettings.tracing.ignore_endpoints``),
- a flat environment string ``service:method1,method2;service2:method3``,
- a YAML file with root key ``tracing`` and subkey ``ignore-endpoints``.

Parse failures raise :class:`MalformedConfigError` internally; the public
``from_*`` helpers log it once and return an empty configuration.
"""

from __future__ import annotations

__all__ = [
    "IgnoreEndpoints",
    "IgnoreRule",
    "from_env",
    "from_yaml",
    "load_ignore_endpoints",
    "merge",
    "normalize_config",
    "parse_env",
    "parse_yaml",
]

import os
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

import structlog
import yaml
from pydantic import BaseModel

from vigil.core.errors import MalformedConfigError

if TYPE_CHECKING:
    from vigil.config.settings import VigilSettings

logger = structlog.get_logger(__name__)

_YAML_ROOT_KEYS = ("tracing", "com.instana.tracing")
_YAML_SECTION_KEY = "ignore-endpoints"


class IgnoreRule(BaseModel):
    """A single ignore rule. Absent criteria are ``None``."""

    methods: list[str] | None = None
    endpoints: list[str] | None = None
    connections: list[str] | None = None

    @property
    def has_criteria(self) -> bool:
        return self.methods is not None or self.endpoints is not None or self.connections is not None


IgnoreEndpoints = dict[str, list[IgnoreRule]]


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple)):
        return [item for item in value if isinstance(item, str)]
    return []


def _lowered(values: list[str]) -> list[str]:
    return [v.strip().lower() for v in values if v.strip()]


def _normalize_rule(raw: Mapping[Any, Any]) -> IgnoreRule:
    fields: dict[str, list[str]] = {}
    for key, value in raw.items():
        name = str(key).strip().lower()
        if name == "methods":
            fields["methods"] = _lowered(_as_list(value))
        elif name == "endpoints":
            fields["endpoints"] = _lowered(_as_list(value))
        elif name == "connections":
            fields["connections"] = [v.strip() for v in _as_list(value) if v.strip()]
    return IgnoreRule(**fields)


def _normalize_rules(value: Any) -> list[IgnoreRule]:
    if isinstance(value, IgnoreRule):
        return [value]
    if isinstance(value, str):
        methods = _lowered([value])
        return [IgnoreRule(methods=methods)] if methods else []
    if isinstance(value, Mapping):
        return [_normalize_rule(value)]
    if not isinstance(value, (list, tuple)):
        return []

    # Bare strings in a list are method names and collapse into one rule,
    # which comes before any explicit rule objects.
    methods = _lowered([item for item in value if isinstance(item, str)])
    rules = [IgnoreRule(methods=methods)] if methods else []
    for item in value:
        if isinstance(item, IgnoreRule):
            rules.append(item)
        elif isinstance(item, Mapping):
            rules.append(_normalize_rule(item))
    return rules


def normalize_config(config: Any) -> IgnoreEndpoints:
    """Normalize an in-code ignore-endpoints mapping.

    Service names, methods and endpoints are trimmed and lower-cased;
    connections are trimmed only. Single strings are promoted to lists and
    unknown rule keys are dropped. Anything that is not a mapping yields
    an empty configuration.
    """
    if not isinstance(config, Mapping):
        return {}
    normalized: IgnoreEndpoints = {}
    for service, value in config.items():
        name = str(service).strip().lower()
        if not name:
            continue
        normalized.setdefault(name, []).extend(_normalize_rules(value))
    return normalized


def merge(*configs: IgnoreEndpoints) -> IgnoreEndpoints:
    """Merge configurations; rules of later configs are appended per service."""
    merged: IgnoreEndpoints = {}
    for config in configs:
        for service, rules in config.items():
            merged.setdefault(service, []).extend(rules)
    return merged


# ---------------------------------------------------------------------------
# Environment variable mini-language
# ---------------------------------------------------------------------------


def parse_env(value: Any) -> IgnoreEndpoints:
    """Parse ``service:m1,m2;service2:m3``.

    Entries with an empty service name or method list are skipped.

    Raises:
        MalformedConfigError: If *value* is not a string or an entry has
            no ``:`` separator.
    """
    if value is None:
        return {}
    if not isinstance(value, str):
        raise MalformedConfigError(f"ignore-endpoints value must be a string, got {type(value).__name__}")
    raw: dict[str, list[str]] = {}
    for entry in value.split(";"):
        if not entry.strip():
            continue
        if ":" not in entry:
            raise MalformedConfigError(f"ignore-endpoints entry {entry.strip()!r} has no ':' separator")
        service, _, methods = entry.partition(":")
        service = service.strip()
        method_list = [m for m in (part.strip() for part in methods.split(",")) if m]
        if not service or not method_list:
            continue
        raw.setdefault(service, []).extend(method_list)
    return normalize_config(raw)


def from_env(value: Any) -> IgnoreEndpoints:
    """Like :func:`parse_env`, but logs failures and returns ``{}``."""
    try:
        return parse_env(value)
    except MalformedConfigError as exc:
        logger.warning("ignore_endpoints_env_malformed", error=str(exc))
        return {}


# ---------------------------------------------------------------------------
# YAML
# ---------------------------------------------------------------------------


def parse_yaml(path: str) -> IgnoreEndpoints:
    """Read ignore-endpoints from the YAML file at *path*.

    Raises:
        MalformedConfigError: If the path is not absolute, cannot be read,
            or does not contain valid YAML.
    """
    if not os.path.isabs(path):
        raise MalformedConfigError(f"ignore-endpoints path {path!r} is not absolute")
    try:
        with open(path, encoding="utf-8") as fh:
            document = yaml.safe_load(fh)
    except OSError as exc:
        raise MalformedConfigError(f"cannot read {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise MalformedConfigError(f"invalid YAML in {path}: {exc}") from exc

    if not isinstance(document, Mapping):
        raise MalformedConfigError(f"{path} does not contain a YAML mapping")

    root = next((document[key] for key in _YAML_ROOT_KEYS if key in document), None)
    if root is None:
        logger.debug("ignore_endpoints_yaml_no_root", path=path, expected=list(_YAML_ROOT_KEYS))
        return {}
    if not isinstance(root, Mapping):
        raise MalformedConfigError(f"{path}: tracing section is not a mapping")
    return normalize_config(root.get(_YAML_SECTION_KEY))


def from_yaml(path: str) -> IgnoreEndpoints:
    """Like :func:`parse_yaml`, but logs failures and returns ``{}``."""
    try:
        return parse_yaml(path)
    except MalformedConfigError as exc:
        logger.warning("ignore_endpoints_yaml_malformed", path=path, error=str(exc))
        return {}


def load_ignore_endpoints(settings: VigilSettings) -> IgnoreEndpoints:
    """Build the process-wide configuration from all configured sources.

    In-code rules come first, then the YAML file, then the environment
    string.
    """
    sources: list[IgnoreEndpoints] = [normalize_config(settings.tracing.ignore_endpoints)]
    if settings.ignore_endpoints_path:
        sources.append(from_yaml(settings.ignore_endpoints_path))
    if settings.ignore_endpoints:
        sources.append(from_env(settings.ignore_endpoints))
    config = merge(*sources)
    if config:
        logger.info("ignore_endpoints_loaded", services=sorted(config))
    return config
