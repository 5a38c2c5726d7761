"""Target catalogue loading.

This module loads target catalogues from YAML files. A catalogue
replaces the built-in target set.

Example:

    version_label: 1.2.0
    targets:
      - name: jammy
        base_image_ref: ubuntu:jammy
      - name: bookworm
        base_image_ref: debian:bookworm
        version_label: 1.2.0-rc1
"""

from pathlib import Path
from typing import Any

import yaml

from kfx_packager.targets.schema import TargetCatalogSchema, TargetSchema


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the content is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def parse_catalog(data: dict[str, Any], default_version: str) -> list[TargetSchema]:
    """Validate catalogue data and build the target list.

    Args:
        data: Parsed catalogue mapping.
        default_version: Version label for entries that specify none and
                         when the catalogue has no default of its own.

    Returns:
        Targets in file order.

    Raises:
        pydantic.ValidationError: If data does not match the schema.
    """
    catalog = TargetCatalogSchema.model_validate(data)
    fallback = catalog.version_label or default_version
    return [
        TargetSchema(
            name=entry.name,
            base_image_ref=entry.base_image_ref,
            version_label=entry.version_label or fallback,
        )
        for entry in catalog.targets
    ]


def load_targets_from_yaml(path: Path, default_version: str) -> list[TargetSchema]:
    """Load and validate a target catalogue from a YAML file."""
    return parse_catalog(load_yaml(path), default_version)


__all__ = ["load_targets_from_yaml", "load_yaml", "parse_catalog"]
