"""Descriptor file loading with validation.

A descriptor file is an overlay: it only lists what differs from the chain
derived from configuration, and is deep-merged onto it before validation.

SECURITY: File size is limited before reading, secret values are rejected
outright, and validation runs on the merged result so an overlay cannot
bypass the chain invariants.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from deepmerge import Merger
from pydantic import BaseModel, ValidationError

from .config import MAX_DESCRIPTOR_FILE_SIZE_BYTES, Config
from .models import (
    ConsumerWorkload,
    DescriptorSet,
    IdentityBinding,
    PolicyDescriptor,
    SecretDescriptor,
    SecretSyncRequest,
    StoreBinding,
)

logger = logging.getLogger(__name__)


class DescriptorLoadError(Exception):
    """Raised when descriptor loading or validation fails."""

    pass


# Lists (actions) replace the default instead of being appended to it
overlay_merger = Merger(
    [(list, ["override"]), (dict, ["merge"]), (set, ["union"])],
    ["override"],
    ["override"],
)

SECTION_MODELS: dict[str, type[BaseModel]] = {
    "secret": SecretDescriptor,
    "policy": PolicyDescriptor,
    "identity": IdentityBinding,
    "store": StoreBinding,
    "sync": SecretSyncRequest,
    "consumer": ConsumerWorkload,
}


def _to_aliases(model: type[BaseModel], data: dict[str, Any]) -> dict[str, Any]:
    """Rename snake_case keys to the camelCase aliases the defaults use."""
    aliases = {name: f.alias or name for name, f in model.model_fields.items()}
    return {aliases.get(key, key): value for key, value in data.items()}


def normalize_overlay(raw: dict[str, Any]) -> dict[str, Any]:
    overlay = _to_aliases(DescriptorSet, raw)
    for section, model in SECTION_MODELS.items():
        if isinstance(overlay.get(section), dict):
            overlay[section] = _to_aliases(model, overlay[section])
    return overlay


def merge_descriptors(config: Config, raw: dict[str, Any]) -> DescriptorSet:
    """Overlay raw descriptor data onto the chain derived from config.

    Raises:
        DescriptorLoadError: If a secret value is present or validation fails.
    """
    secret = raw.get("secret")
    if isinstance(secret, dict) and "value" in secret:
        raise DescriptorLoadError(
            "secret.value must not be stored in a descriptor file; "
            "supply it with --value-stdin or the prompt"
        )

    defaults = DescriptorSet.from_config(config).model_dump(by_alias=True)
    # Re-derived from the merged namespace and service account
    defaults["identity"].pop("subject", None)

    merged = overlay_merger.merge(defaults, normalize_overlay(raw))

    try:
        return DescriptorSet.model_validate(merged)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"]) or "descriptors"
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise DescriptorLoadError(f"Descriptor validation failed:\n{error_list}") from e


def load_descriptor_set(path: Path, config: Config) -> DescriptorSet:
    """Load a descriptor overlay from YAML and validate the merged chain.

    Args:
        path: YAML file, flat or wrapped in apiVersion/kind/spec.
        config: Configuration the default chain is derived from.

    Raises:
        DescriptorLoadError: If the file cannot be loaded or fails validation.
    """
    if not path.exists():
        raise DescriptorLoadError(f"Descriptor file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise DescriptorLoadError(f"Failed to stat descriptor file {path}: {e}") from e

    if file_size > MAX_DESCRIPTOR_FILE_SIZE_BYTES:
        raise DescriptorLoadError(
            f"Descriptor file exceeds maximum size of "
            f"{MAX_DESCRIPTOR_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise DescriptorLoadError(f"Failed to read descriptor file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise DescriptorLoadError(f"Invalid YAML in {path}: {e}") from e

    if raw_data is None:
        raw_data = {}
    if not isinstance(raw_data, dict):
        raise DescriptorLoadError(f"Descriptor file must contain a YAML mapping: {path}")

    # Support both flat format and Kubernetes-style wrapper
    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec") or {}
        if not isinstance(spec_data, dict):
            raise DescriptorLoadError(f"'spec' section must be a mapping: {path}")
    else:
        spec_data = raw_data

    try:
        descriptors = merge_descriptors(config, spec_data)
    except DescriptorLoadError as e:
        raise DescriptorLoadError(f"{path}: {e}") from e

    logger.info("Loaded descriptors for '%s' from %s", descriptors.app_name, path)
    return descriptors
